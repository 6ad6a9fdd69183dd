"""
Network quality tiers and batch sizing.

Four tiers, each mapping to a fixed worker concurrency and batch
size for binary transfers. Lower quality means fewer parallel
transfers and smaller batches.

Metadata mutations are batched per entity type by an
:class:`AdaptiveBatcher`: it starts from the tier's sizes and scales
them with measured batch performance, shrinking after failures and
growing back while batches finish quickly and cleanly.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .models import EntityType

logger = logging.getLogger("tripsync.network")


class NetworkQuality(str, Enum):
    """Coarse classification of the current connection."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class TransferLimits(BaseModel):
    """Concurrency bound and batch size for one tier."""

    concurrency: int
    batch_size: int


TIER_LIMITS: dict[NetworkQuality, TransferLimits] = {
    NetworkQuality.EXCELLENT: TransferLimits(concurrency=6, batch_size=15),
    NetworkQuality.GOOD: TransferLimits(concurrency=4, batch_size=10),
    NetworkQuality.FAIR: TransferLimits(concurrency=3, batch_size=7),
    NetworkQuality.POOR: TransferLimits(concurrency=1, batch_size=3),
}


def limits_for(quality: NetworkQuality) -> TransferLimits:
    """Transfer limits of a tier."""
    return TIER_LIMITS[NetworkQuality(quality)]


def classify(
    connected: bool,
    interface: Optional[str] = None,
    expensive: bool = False,
    constrained: bool = False,
) -> NetworkQuality:
    """Classify a connection into a quality tier.

    Args:
        connected: Whether any route is available.
        interface: ``wifi``, ``ethernet``, ``cellular`` or None.
        expensive: Metered connection (hotspot, roaming).
        constrained: Low-data mode or similar OS restriction.

    Returns:
        The matching tier. No connectivity classifies as POOR.
    """
    if not connected or constrained:
        return NetworkQuality.POOR
    if interface in ("wifi", "ethernet"):
        return NetworkQuality.GOOD if expensive else NetworkQuality.EXCELLENT
    if interface == "cellular":
        return NetworkQuality.POOR if expensive else NetworkQuality.FAIR
    return NetworkQuality.FAIR


# ---------------------------------------------------------------------------
# Adaptive metadata batching
# ---------------------------------------------------------------------------

# Records per metadata batch, per tier. Types not listed use DEFAULT_BATCH.
METADATA_BATCHES: dict[NetworkQuality, dict[EntityType, int]] = {
    NetworkQuality.EXCELLENT: {EntityType.MEDIA_ITEM: 15, EntityType.GPX_TRACK: 25, EntityType.MEMORY: 50},
    NetworkQuality.GOOD: {EntityType.MEDIA_ITEM: 10, EntityType.GPX_TRACK: 20, EntityType.MEMORY: 35},
    NetworkQuality.FAIR: {EntityType.MEDIA_ITEM: 7, EntityType.GPX_TRACK: 15, EntityType.MEMORY: 25},
    NetworkQuality.POOR: {EntityType.MEDIA_ITEM: 3, EntityType.GPX_TRACK: 8, EntityType.MEMORY: 15},
}
METADATA_CEILINGS: dict[EntityType, int] = {
    EntityType.MEDIA_ITEM: 20,
    EntityType.GPX_TRACK: 30,
    EntityType.MEMORY: 60,
}
DEFAULT_BATCH = 10
DEFAULT_CEILING = 15

HISTORY_SIZE = 20
WINDOW = 5
SHRINK = 0.8
GROW = 1.1
MIN_SUCCESS_RATE = 0.8
FAST_SUCCESS_RATE = 0.95
FAST_ITEMS_PER_SECOND = 20.0


class BatchTiming(BaseModel):
    """How one batch of metadata mutations went."""

    entity_type: EntityType
    size: int
    duration: float
    failures: int = 0

    @property
    def success(self) -> bool:
        return self.failures == 0

    @property
    def items_per_second(self) -> float:
        return self.size / self.duration if self.duration > 0 else 0.0


class AdaptiveBatcher:
    """Per-type metadata batch sizes following the tier and measured batches.

    Once ``WINDOW`` batches have been reported, every new report looks
    at the most recent ones: a success rate under 80% shrinks all sizes
    by a fifth, while a clean run above ``FAST_ITEMS_PER_SECOND`` grows
    them by a tenth, each up to its type's ceiling. A tier change
    starts over from that tier's sizes.

    Args:
        quality: Initial network quality tier.
    """

    def __init__(self, quality: NetworkQuality = NetworkQuality.FAIR):
        self._lock = threading.Lock()
        self._quality = NetworkQuality(quality)
        self._sizes = _tier_sizes(self._quality)
        self._history: deque[BatchTiming] = deque(maxlen=HISTORY_SIZE)

    @property
    def quality(self) -> NetworkQuality:
        return self._quality

    @property
    def concurrency(self) -> int:
        """Parallel mutations within a batch, bounded by the tier."""
        return limits_for(self._quality).concurrency

    def set_network_quality(self, quality: NetworkQuality) -> None:
        quality = NetworkQuality(quality)
        with self._lock:
            if quality == self._quality:
                return
            self._quality = quality
            self._sizes = _tier_sizes(quality)
            self._history.clear()
        logger.info("Metadata batching reset for %s network", quality.value)

    def batch_size(self, entity_type: EntityType) -> int:
        """Recommended number of records per batch for a type."""
        with self._lock:
            return max(1, int(self._sizes[EntityType(entity_type)]))

    def report(self, timing: BatchTiming) -> None:
        """Record a finished batch and adjust future sizes."""
        with self._lock:
            self._history.append(timing)
            if len(self._history) < WINDOW:
                return
            recent = list(self._history)[-WINDOW:]
            success_rate = sum(1 for t in recent if t.success) / len(recent)
            speed = sum(t.items_per_second for t in recent) / len(recent)

            if success_rate < MIN_SUCCESS_RATE:
                self._sizes = {etype: max(1.0, size * SHRINK) for etype, size in self._sizes.items()}
                logger.info("Shrinking metadata batches (success rate %.0f%%)", success_rate * 100)
            elif success_rate >= FAST_SUCCESS_RATE and speed > FAST_ITEMS_PER_SECOND:
                self._sizes = {
                    etype: min(float(METADATA_CEILINGS.get(etype, DEFAULT_CEILING)), size * GROW)
                    for etype, size in self._sizes.items()
                }
                logger.debug("Growing metadata batches (%.1f records/s)", speed)

    def status(self) -> dict:
        with self._lock:
            return {
                "network_quality": self._quality.value,
                "batch_sizes": {etype.value: max(1, int(size)) for etype, size in self._sizes.items()},
                "history": len(self._history),
            }


def _tier_sizes(quality: NetworkQuality) -> dict[EntityType, float]:
    tier = METADATA_BATCHES[quality]
    return {etype: float(tier.get(etype, DEFAULT_BATCH)) for etype in EntityType}
