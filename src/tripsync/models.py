"""
Pydantic models for everything the sync engine persists or exchanges.

An entity is a tagged union: ``entity_type`` selects the row of the
type table in :mod:`tripsync.schema`, ``fields`` carries the
type-specific values. References to other entities are plain UUID
strings inside ``fields``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

SYSTEM_KEYS = ("id", "type", "created_at", "updated_at", "conflict_marker")


def utcnow() -> datetime:
    """Current wall-clock time, timezone-aware."""
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    """Every kind of record that travels through a sync cycle."""

    TAG_CATEGORY = "TagCategory"
    TAG = "Tag"
    BUCKET_LIST_ITEM = "BucketListItem"
    TRIP = "Trip"
    TRIP_MEMBERSHIP = "TripMembership"
    MEMORY = "Memory"
    MEDIA_ITEM = "MediaItem"
    GPX_TRACK = "GPXTrack"
    MEMORY_TAG = "MemoryTag"
    MEMORY_BUCKET_LIST_ITEM = "MemoryBucketListItem"


class SyncStatus(str, Enum):
    """Where a record (or its binary payload) stands in the sync lifecycle."""

    LOCAL_ONLY = "local_only"
    NEEDS_UPLOAD = "needs_upload"
    UPLOADING = "uploading"
    NEEDS_DOWNLOAD = "needs_download"
    DOWNLOADING = "downloading"
    IN_SYNC = "in_sync"
    CONFLICT = "conflict"
    SYNC_ERROR = "sync_error"
    FILES_PENDING = "files_pending"


TRANSIENT_STATUSES = (SyncStatus.UPLOADING, SyncStatus.DOWNLOADING)


class SyncableEntity(BaseModel):
    """One record of a given entity type."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_type: EntityType
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    sync_status: SyncStatus = SyncStatus.LOCAL_ONLY
    fields: dict[str, Any] = Field(default_factory=dict)
    file_status: Optional[SyncStatus] = None
    conflict_marker: bool = False
    conflict_remote: Optional[dict[str, Any]] = None
    # Fields as last agreed with the server; never sent on the wire.
    base_fields: Optional[dict[str, Any]] = None

    def touch(self, now: Optional[datetime] = None) -> None:
        """Advance ``updated_at`` for a local mutation.

        The new value is strictly greater than the previous one even
        when the clock has not moved (or moved backwards).
        """
        now = now or utcnow()
        floor = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now if now > floor else floor

    def to_record(self) -> dict[str, Any]:
        """Wire representation: id, type discriminator, timestamps, fields."""
        record: dict[str, Any] = dict(self.fields)
        record.update({
            "id": self.id,
            "type": self.entity_type.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        })
        if self.conflict_marker:
            record["conflict_marker"] = True
        return record

    @classmethod
    def from_record(
        cls,
        record: dict[str, Any],
        entity_type: Optional[EntityType] = None,
        sync_status: SyncStatus = SyncStatus.IN_SYNC,
    ) -> "SyncableEntity":
        """Build an entity from a wire record.

        Args:
            record: Dict bearing ``id``, ``updated_at`` and all fields.
            entity_type: Type discriminator if the record lacks ``type``.
            sync_status: Status to assign to the new entity.

        Raises:
            ValueError: If the record has no id or no type.
        """
        if not record.get("id"):
            raise ValueError("Record without id")
        etype = entity_type or record.get("type")
        if etype is None:
            raise ValueError(f"Record {record['id']} has no type")

        updated = parse_timestamp(record.get("updated_at")) or utcnow()
        created = parse_timestamp(record.get("created_at")) or updated
        fields = {k: v for k, v in record.items() if k not in SYSTEM_KEYS}
        return cls(
            id=str(record["id"]),
            entity_type=EntityType(etype),
            created_at=created,
            updated_at=updated,
            sync_status=sync_status,
            fields=fields,
            conflict_marker=bool(record.get("conflict_marker", False)),
        )


class Tombstone(BaseModel):
    """Retained marker of a deleted entity's identity."""

    entity_id: str
    entity_type: EntityType
    deleted_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        """Whether the server has not yet accepted this deletion."""
        return self.acknowledged_at is None


class SyncCycleState(BaseModel):
    """Durable, process-wide cycle state."""

    last_synced_at: Optional[datetime] = None
    cycle_in_progress: bool = False
    last_cycle_started_at: Optional[datetime] = None
    last_cycle_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    cycles_completed: int = 0


class DependencyEdge(BaseModel):
    """``before`` must be fully applied before ``after``."""

    before: EntityType
    after: EntityType


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
