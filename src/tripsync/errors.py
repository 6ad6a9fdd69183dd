"""
Error taxonomy for the sync engine.

Transient failures are retried, auth failures abort the cycle,
conflicts and integrity findings stay per-entity.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every sync engine error."""


class TransientNetworkError(SyncError):
    """A network call failed in a way that may succeed on retry."""


class URLExpiredError(TransientNetworkError):
    """A presigned URL was rejected because it expired."""


class AuthRejectedError(SyncError):
    """The server rejected our credentials. The cycle must abort."""


class ConflictUnresolved(SyncError):
    """Local and remote versions could not be merged automatically."""

    def __init__(self, entity_id: str, fields: Optional[list[str]] = None):
        self.entity_id = entity_id
        self.fields = fields or []
        super().__init__(f"Unresolved conflict on {entity_id}")


class IntegrityViolation(SyncError):
    """Post-cycle local state breaks a consistency rule."""


class CycleDetected(SyncError):
    """The static entity type dependency graph contains a cycle."""

    def __init__(self, types: list[str]):
        self.types = types
        super().__init__(
            "Dependency cycle among entity types: " + ", ".join(types)
        )


class SyncBusy(SyncError):
    """A cycle was triggered while another one is still running."""


class SyncCancelled(SyncError):
    """The running cycle was cancelled at a phase boundary."""
