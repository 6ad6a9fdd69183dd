"""
tripsync -- travel journal synchronization engine.

Keeps trips, memories, tags, GPS tracks and media consistent across
every device through a central server. Metadata travels as deltas,
binaries travel on their own through presigned URLs.
"""

import os

__version__ = "0.1.0"
__author__ = "tripsync"

SYNC_HOME = os.environ.get("TRIPSYNC_HOME", "~/.tripsync")
