"""
Local store -- the device-side state the sync engine owns.

Holds syncable entities, tombstones of deleted entities, and the
durable cycle state (watermark + single-flight flag). Everything is
kept in memory and flushed to JSON files on every committed
transaction.

Storage layout:
    ~/.tripsync/
    ├── store/
    │   ├── entities/
    │   │   ├── Trip.json        # {id: entity}
    │   │   ├── Memory.json
    │   │   └── ...
    │   ├── tombstones.json      # {id: tombstone}
    │   └── state.json           # SyncCycleState
    └── files/                   # local binaries, by object key

Usage:
    store = LocalStore(home)
    store.initialize()
    trip = store.create(EntityType.TRIP, {"name": "Alps"})
    with store.transaction():
        ...
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .models import (
    EntityType,
    SyncableEntity,
    SyncCycleState,
    SyncStatus,
    Tombstone,
    utcnow,
)

logger = logging.getLogger("tripsync.store")

UPLOADABLE_STATUSES = (SyncStatus.NEEDS_UPLOAD, SyncStatus.SYNC_ERROR)


class LocalStore:
    """Durable local state with transaction-equivalent scopes.

    A transaction holds the store lock, snapshots the in-memory state,
    and either flushes every touched file on success or restores the
    snapshot when the block raises.

    Args:
        home: Sync home directory (~/.tripsync).
    """

    def __init__(self, home: Path):
        self._home = Path(home)
        self._store_dir = self._home / "store"
        self._entities_dir = self._store_dir / "entities"
        self._tombstones_file = self._store_dir / "tombstones.json"
        self._state_file = self._store_dir / "state.json"
        self.files_dir = self._home / "files"

        self._lock = threading.RLock()
        self._depth = 0
        self._dirty: set[str] = set()
        self._entities: dict[EntityType, dict[str, SyncableEntity]] = {}
        self._tombstones: dict[str, Tombstone] = {}
        self._state = SyncCycleState()
        self._loaded = False

    @property
    def home(self) -> Path:
        return self._home

    def initialize(self) -> None:
        """Create the directory structure and load persisted state."""
        with self._lock:
            self._entities_dir.mkdir(parents=True, exist_ok=True)
            self.files_dir.mkdir(parents=True, exist_ok=True)
            if not self._loaded:
                self._load()
                self._loaded = True

    # -------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["LocalStore"]:
        """Run a block atomically against the store.

        Nested transactions join the outermost one.
        """
        with self._lock:
            self.initialize()
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = (
                copy.deepcopy(self._entities),
                copy.deepcopy(self._tombstones),
                self._state.model_copy(deep=True),
            )
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._entities, self._tombstones, self._state = snapshot
                self._dirty.clear()
                raise
            finally:
                self._depth = 0
            self._flush()

    # -------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------

    def get(self, entity_id: str) -> Optional[SyncableEntity]:
        """Return a copy of an entity by id, or None."""
        with self._lock:
            self.initialize()
            for bucket in self._entities.values():
                if entity_id in bucket:
                    return bucket[entity_id].model_copy(deep=True)
            return None

    def exists(self, entity_id: str) -> bool:
        with self._lock:
            self.initialize()
            return any(entity_id in bucket for bucket in self._entities.values())

    def all(self, entity_type: Optional[EntityType] = None) -> list[SyncableEntity]:
        """Copies of all entities, optionally of one type."""
        with self._lock:
            self.initialize()
            if entity_type is not None:
                buckets = [self._entities.get(EntityType(entity_type), {})]
            else:
                buckets = list(self._entities.values())
            return [e.model_copy(deep=True) for b in buckets for e in b.values()]

    def put(self, entity: SyncableEntity) -> SyncableEntity:
        """Insert or replace an entity."""
        with self.transaction():
            bucket = self._entities.setdefault(entity.entity_type, {})
            bucket[entity.id] = entity.model_copy(deep=True)
            self._dirty.add(entity.entity_type.value)
        return entity

    def remove(self, entity_id: str) -> Optional[SyncableEntity]:
        """Drop an entity without leaving a tombstone."""
        with self.transaction():
            for etype, bucket in self._entities.items():
                if entity_id in bucket:
                    self._dirty.add(etype.value)
                    return bucket.pop(entity_id)
        return None

    def pending_uploads(self, entity_type: EntityType) -> list[SyncableEntity]:
        """Entities of a type whose local changes still need sending."""
        return [
            e for e in self.all(entity_type)
            if e.sync_status in UPLOADABLE_STATUSES
        ]

    def with_status(self, *statuses: SyncStatus, file_status: bool = False) -> list[SyncableEntity]:
        """Entities whose metadata (or file) status is one of ``statuses``."""
        wanted = set(statuses)
        return [
            e for e in self.all()
            if (e.file_status if file_status else e.sync_status) in wanted
        ]

    # -------------------------------------------------------------------
    # Local mutation paths
    # -------------------------------------------------------------------

    def create(
        self,
        entity_type: EntityType,
        fields: Optional[dict[str, Any]] = None,
        sync: bool = True,
        entity_id: Optional[str] = None,
        file_status: Optional[SyncStatus] = None,
    ) -> SyncableEntity:
        """Create a new entity on this device.

        Args:
            entity_type: Type of the new entity.
            fields: Type-specific values.
            sync: If False the entity stays ``local_only``.
            entity_id: Explicit UUID (generated when omitted).
            file_status: Initial binary status for file-bearing types.

        Returns:
            The created entity.
        """
        kwargs: dict[str, Any] = {}
        if entity_id:
            kwargs["id"] = entity_id
        entity = SyncableEntity(
            entity_type=EntityType(entity_type),
            fields=dict(fields or {}),
            sync_status=SyncStatus.NEEDS_UPLOAD if sync else SyncStatus.LOCAL_ONLY,
            file_status=file_status,
            **kwargs,
        )
        self.put(entity)
        logger.debug("Created %s %s", entity.entity_type.value, entity.id)
        return entity

    def update(self, entity_id: str, changes: dict[str, Any]) -> SyncableEntity:
        """Apply a local edit: merge fields, bump updated_at, mark for upload.

        Raises:
            KeyError: If the entity does not exist.
        """
        with self.transaction():
            entity = self.get(entity_id)
            if entity is None:
                raise KeyError(entity_id)
            entity.fields.update(changes)
            entity.touch()
            entity.sync_status = SyncStatus.NEEDS_UPLOAD
            entity.conflict_remote = None
            self.put(entity)
        return entity

    def delete(self, entity_id: str) -> Optional[Tombstone]:
        """Delete an entity locally, leaving a tombstone to propagate it.

        Entities that never left the device (``local_only``) are dropped
        without a tombstone.

        Raises:
            KeyError: If the entity does not exist.
        """
        with self.transaction():
            entity = self.remove(entity_id)
            if entity is None:
                raise KeyError(entity_id)
            if entity.sync_status == SyncStatus.LOCAL_ONLY:
                return None
            tomb = Tombstone(entity_id=entity.id, entity_type=entity.entity_type)
            self.add_tombstone(tomb)
        logger.debug("Deleted %s %s", entity.entity_type.value, entity_id)
        return tomb

    def set_file_status(self, entity_id: str, status: Optional[SyncStatus]) -> bool:
        """Update the binary status of an entity. False if it is gone."""
        with self.transaction():
            entity = self.get(entity_id)
            if entity is None:
                return False
            entity.file_status = status
            self.put(entity)
        return True

    def file_path(self, object_key: str) -> Path:
        """Local path of a binary by object key."""
        return self.files_dir / object_key

    # -------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------

    def add_tombstone(self, tombstone: Tombstone) -> None:
        with self.transaction():
            self._tombstones[tombstone.entity_id] = tombstone.model_copy()
            self._dirty.add("tombstones")

    def get_tombstone(self, entity_id: str) -> Optional[Tombstone]:
        with self._lock:
            self.initialize()
            tomb = self._tombstones.get(entity_id)
            return tomb.model_copy() if tomb else None

    def tombstones(
        self,
        entity_type: Optional[EntityType] = None,
        pending_only: bool = False,
    ) -> list[Tombstone]:
        """Tombstones, optionally of one type and/or not yet acknowledged."""
        with self._lock:
            self.initialize()
            return [
                t.model_copy() for t in self._tombstones.values()
                if (entity_type is None or t.entity_type == entity_type)
                and (not pending_only or t.is_pending)
            ]

    def acknowledge_tombstone(self, entity_id: str, at: Optional[datetime] = None) -> None:
        """Record that the server accepted a deletion."""
        with self.transaction():
            tomb = self._tombstones.get(entity_id)
            if tomb is not None:
                tomb.acknowledged_at = at or utcnow()
                self._dirty.add("tombstones")

    def drop_tombstone(self, entity_id: str) -> bool:
        with self.transaction():
            if self._tombstones.pop(entity_id, None) is None:
                return False
            self._dirty.add("tombstones")
        return True

    def prune_tombstones(self, older_than: datetime) -> int:
        """Forget acknowledged tombstones deleted before ``older_than``.

        Pending tombstones are never pruned.

        Returns:
            Number of tombstones removed.
        """
        with self.transaction():
            stale = [
                tid for tid, t in self._tombstones.items()
                if not t.is_pending and t.deleted_at < older_than
            ]
            for tid in stale:
                del self._tombstones[tid]
            if stale:
                self._dirty.add("tombstones")
        return len(stale)

    # -------------------------------------------------------------------
    # Cycle state
    # -------------------------------------------------------------------

    def load_state(self) -> SyncCycleState:
        with self._lock:
            self.initialize()
            return self._state.model_copy()

    def save_state(self, state: SyncCycleState) -> None:
        with self.transaction():
            self._state = state.model_copy()
            self._dirty.add("state")

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _load(self) -> None:
        for path in self._entities_dir.glob("*.json"):
            try:
                etype = EntityType(path.stem)
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (ValueError, OSError) as exc:
                logger.warning("Skipping unreadable store file %s: %s", path.name, exc)
                continue
            self._entities[etype] = {
                eid: SyncableEntity.model_validate(data) for eid, data in raw.items()
            }

        if self._tombstones_file.exists():
            try:
                raw = json.loads(self._tombstones_file.read_text(encoding="utf-8"))
                self._tombstones = {
                    tid: Tombstone.model_validate(data) for tid, data in raw.items()
                }
            except (ValueError, OSError) as exc:
                logger.warning("Failed to load tombstones: %s", exc)

        if self._state_file.exists():
            try:
                self._state = SyncCycleState.model_validate_json(
                    self._state_file.read_text(encoding="utf-8")
                )
            except (ValueError, OSError) as exc:
                logger.warning("Failed to load cycle state: %s", exc)

    def _flush(self) -> None:
        dirty, self._dirty = self._dirty, set()
        for name in dirty:
            if name == "tombstones":
                payload = {tid: t.model_dump(mode="json") for tid, t in self._tombstones.items()}
                _atomic_write(self._tombstones_file, json.dumps(payload, indent=2))
            elif name == "state":
                _atomic_write(self._state_file, self._state.model_dump_json(indent=2))
            else:
                bucket = self._entities.get(EntityType(name), {})
                payload = {eid: e.model_dump(mode="json") for eid, e in bucket.items()}
                _atomic_write(self._entities_dir / f"{name}.json", json.dumps(payload, indent=2))


def _atomic_write(path: Path, text: str) -> None:
    """Write through a temp file and rename so readers never see partial JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.tmp"
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)
