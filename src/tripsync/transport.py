"""
Sync transports -- how metadata and presigned URLs reach the server.

The engine only needs a handful of request/response calls: one delta
query, idempotent upsert/delete mutations, and presigned URL exchange.
Any RPC mechanism that preserves ids, timestamps and type
discriminators will do.

GraphQL: the production API. One POST per call, bearer token auth.
Local: a server living in a plain directory. For a NAS, a USB drive,
    or several devices sharing one folder (and for tests).
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field

from .errors import AuthRejectedError, SyncError, TransientNetworkError
from .models import EntityType, parse_timestamp, utcnow

logger = logging.getLogger("tripsync.transport")

DEFAULT_URL_TTL = timedelta(minutes=15)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TypeDelta(BaseModel):
    """Changes of one entity type since the watermark."""

    updated: list[dict[str, Any]] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class DeltaResponse(BaseModel):
    """Everything that changed on the server since ``last_synced_at``."""

    changes: dict[EntityType, TypeDelta] = Field(default_factory=dict)
    server_time: Optional[datetime] = None

    def for_type(self, entity_type: EntityType) -> TypeDelta:
        return self.changes.get(entity_type, TypeDelta())

    @property
    def total(self) -> int:
        return sum(len(d.updated) + len(d.deleted) for d in self.changes.values())


class PresignedURL(BaseModel):
    """Time-limited URL authorizing one direct read or write."""

    object_key: str
    url: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None, skew: timedelta = timedelta(seconds=5)) -> bool:
        """Whether an attempt starting now would run past expiry."""
        return (now or utcnow()) + skew >= self.expires_at


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class SyncTransport(ABC):
    """Abstract server connection used by the orchestrator and file manager."""

    @abstractmethod
    def fetch_delta(self, since: Optional[datetime]) -> DeltaResponse:
        """Query everything created, updated or deleted after ``since``."""

    @abstractmethod
    def upsert(self, entity_type: EntityType, record: dict[str, Any]) -> None:
        """Create or update one record by UUID. Must be idempotent."""

    @abstractmethod
    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Delete one record by UUID. Must be idempotent."""

    @abstractmethod
    def request_upload_url(self, object_key: str) -> PresignedURL:
        """Presigned URL to write an object."""

    @abstractmethod
    def request_download_url(self, object_key: str) -> PresignedURL:
        """Presigned URL to read an object."""

    def mark_file_upload_complete(
        self, entity_type: EntityType, entity_id: str, object_key: str,
    ) -> None:
        """Tell the server a binary finished uploading."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable transport name."""


# ---------------------------------------------------------------------------
# GraphQL
# ---------------------------------------------------------------------------

COLLECTION_NAMES: dict[EntityType, str] = {
    EntityType.TAG_CATEGORY: "tagCategories",
    EntityType.TAG: "tags",
    EntityType.BUCKET_LIST_ITEM: "bucketListItems",
    EntityType.TRIP: "trips",
    EntityType.TRIP_MEMBERSHIP: "tripMemberships",
    EntityType.MEMORY: "memories",
    EntityType.MEDIA_ITEM: "mediaItems",
    EntityType.GPX_TRACK: "gpxTracks",
    EntityType.MEMORY_TAG: "memoryTags",
    EntityType.MEMORY_BUCKET_LIST_ITEM: "memoryBucketListItems",
}

_RECORD_SELECTION = "id createdAt updatedAt conflictMarker fields"


def _delta_query() -> str:
    updated = " ".join(f"{c} {{ {_RECORD_SELECTION} }}" for c in COLLECTION_NAMES.values())
    deleted = " ".join(COLLECTION_NAMES.values())
    return (
        "query Sync($lastSyncedAt: DateTime) { sync(lastSyncedAt: $lastSyncedAt) { "
        f"{updated} deleted {{ {deleted} }} serverTimestamp }} }}"
    )


UPSERT_MUTATION = (
    "mutation Upsert($type: String!, $input: SyncRecordInput!) "
    "{ upsertRecord(type: $type, input: $input) { id } }"
)
DELETE_MUTATION = (
    "mutation Delete($type: String!, $id: ID!) { deleteRecord(type: $type, id: $id) }"
)
UPLOAD_URL_MUTATION = (
    "mutation UploadUrl($objectName: String!) "
    "{ getPresignedUploadUrl(objectName: $objectName) { url expiresAt } }"
)
DOWNLOAD_URL_QUERY = (
    "query DownloadUrl($objectName: String!) "
    "{ getPresignedDownloadUrl(objectName: $objectName) { url expiresAt } }"
)
UPLOAD_COMPLETE_MUTATION = (
    "mutation Complete($entityId: ID!, $entityType: String!, $objectName: String!) "
    "{ markFileUploadComplete(entityId: $entityId, entityType: $entityType, objectName: $objectName) }"
)


class GraphQLTransport(SyncTransport):
    """Talks to the sync server's GraphQL endpoint over HTTPS.

    Timeouts apply per call. Timeouts, connection failures, 429 and 5xx
    become :class:`TransientNetworkError`; 401/403 and UNAUTHENTICATED
    errors become :class:`AuthRejectedError`.

    Args:
        server_url: Base URL of the server (``/graphql`` is appended).
        token: Bearer token from the auth collaborator.
        timeout: Per-request timeout in seconds.
        session: Optional preconfigured requests session.
    """

    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._endpoint = server_url.rstrip("/") + "/graphql"
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "graphql"

    def fetch_delta(self, since: Optional[datetime]) -> DeltaResponse:
        data = self._execute(
            _delta_query(),
            {"lastSyncedAt": since.isoformat() if since else None},
        )
        payload = data.get("sync") or {}
        deleted = payload.get("deleted") or {}

        changes: dict[EntityType, TypeDelta] = {}
        for etype, collection in COLLECTION_NAMES.items():
            updated = [self._from_wire(etype, r) for r in payload.get(collection) or []]
            removed = [str(i) for i in deleted.get(collection) or []]
            if updated or removed:
                changes[etype] = TypeDelta(updated=updated, deleted=removed)

        return DeltaResponse(
            changes=changes,
            server_time=parse_timestamp(payload.get("serverTimestamp")),
        )

    def upsert(self, entity_type: EntityType, record: dict[str, Any]) -> None:
        fields = {
            k: v for k, v in record.items()
            if k not in ("id", "type", "created_at", "updated_at", "conflict_marker")
        }
        self._execute(UPSERT_MUTATION, {
            "type": entity_type.value,
            "input": {
                "id": record["id"],
                "createdAt": record.get("created_at"),
                "updatedAt": record.get("updated_at"),
                "conflictMarker": bool(record.get("conflict_marker", False)),
                "fields": json.dumps(fields),
            },
        })

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        self._execute(DELETE_MUTATION, {"type": entity_type.value, "id": entity_id})

    def request_upload_url(self, object_key: str) -> PresignedURL:
        data = self._execute(UPLOAD_URL_MUTATION, {"objectName": object_key})
        return self._presigned(object_key, data.get("getPresignedUploadUrl"))

    def request_download_url(self, object_key: str) -> PresignedURL:
        data = self._execute(DOWNLOAD_URL_QUERY, {"objectName": object_key})
        return self._presigned(object_key, data.get("getPresignedDownloadUrl"))

    def mark_file_upload_complete(
        self, entity_type: EntityType, entity_id: str, object_key: str,
    ) -> None:
        self._execute(UPLOAD_COMPLETE_MUTATION, {
            "entityId": entity_id,
            "entityType": entity_type.value,
            "objectName": object_key,
        })

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """POST one GraphQL operation and return its ``data`` member."""
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = self._session.post(
                self._endpoint,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=self._timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientNetworkError(f"GraphQL request failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise AuthRejectedError(f"Server rejected credentials ({resp.status_code})")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientNetworkError(f"GraphQL server error {resp.status_code}")
        if resp.status_code >= 400:
            raise SyncError(f"GraphQL request failed: {resp.status_code} {resp.text}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientNetworkError(f"Malformed GraphQL response: {exc}") from exc

        errors = body.get("errors") or []
        if errors:
            codes = {(e.get("extensions") or {}).get("code") for e in errors}
            message = "; ".join(str(e.get("message", "")) for e in errors)
            if "UNAUTHENTICATED" in codes or "FORBIDDEN" in codes:
                raise AuthRejectedError(message)
            raise SyncError(f"GraphQL errors: {message}")
        return body.get("data") or {}

    @staticmethod
    def _from_wire(entity_type: EntityType, wire: dict[str, Any]) -> dict[str, Any]:
        fields = wire.get("fields") or {}
        if isinstance(fields, str):
            try:
                fields = json.loads(fields)
            except ValueError as exc:
                raise SyncError(
                    f"Malformed fields for {entity_type.value} {wire.get('id')}: {exc}"
                ) from exc
        if not isinstance(fields, dict):
            raise SyncError(f"Fields of {entity_type.value} {wire.get('id')} are not an object")
        record = dict(fields)
        record.update({
            "id": wire["id"],
            "type": entity_type.value,
            "created_at": wire.get("createdAt"),
            "updated_at": wire.get("updatedAt"),
        })
        if wire.get("conflictMarker"):
            record["conflict_marker"] = True
        return record

    @staticmethod
    def _presigned(object_key: str, data: Optional[dict[str, Any]]) -> PresignedURL:
        if not data or not data.get("url"):
            raise SyncError(f"No presigned URL returned for {object_key}")
        expires = parse_timestamp(data.get("expiresAt")) or utcnow() + DEFAULT_URL_TTL
        return PresignedURL(object_key=object_key, url=data["url"], expires_at=expires)


# ---------------------------------------------------------------------------
# Local directory server
# ---------------------------------------------------------------------------

_ROOT_LOCKS: dict[str, threading.RLock] = {}
_ROOT_LOCKS_GUARD = threading.Lock()


def _root_lock(root: Path) -> threading.RLock:
    key = str(root.absolute())
    with _ROOT_LOCKS_GUARD:
        return _ROOT_LOCKS.setdefault(key, threading.RLock())


class LocalServerTransport(SyncTransport):
    """A sync server kept in a plain directory.

    Records are upserted by UUID and stamped with the server time of
    their arrival, which is what delta queries filter on. Deletions are
    logged so every device observes them, and a deleted id is never
    resurrected by a late update. Presigned URLs are ``file://`` URLs
    into the objects folder.

    Storage layout:
        <root>/
        ├── records/<Type>.json   # {id: {"record": {...}, "received_at": ts}}
        ├── deletions.json        # {id: {"type": ..., "deleted_at": ts}}
        └── objects/<key>

    Args:
        root: Server directory.
        url_ttl: Lifetime of presigned URLs.
    """

    def __init__(self, root: Path, url_ttl: timedelta = DEFAULT_URL_TTL):
        self.root = Path(root).expanduser()
        self._records_dir = self.root / "records"
        self._deletions_file = self.root / "deletions.json"
        self.objects_dir = self.root / "objects"
        self._url_ttl = url_ttl
        self._lock = _root_lock(self.root)
        self.completed_uploads: list[tuple[str, str, str]] = []

    @property
    def name(self) -> str:
        return "local"

    def initialize(self) -> None:
        """Create the server directory structure."""
        self._records_dir.mkdir(parents=True, exist_ok=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    def fetch_delta(self, since: Optional[datetime]) -> DeltaResponse:
        self.initialize()
        with self._lock:
            now = utcnow()
            changes: dict[EntityType, TypeDelta] = {}
            for etype in EntityType:
                rows = self._read_records(etype)
                updated = [
                    row["record"] for row in rows.values()
                    if since is None or parse_timestamp(row["received_at"]) > since
                ]
                if updated:
                    changes.setdefault(etype, TypeDelta()).updated = updated

            for entity_id, entry in self._read_deletions().items():
                if since is not None and parse_timestamp(entry["deleted_at"]) <= since:
                    continue
                etype = EntityType(entry["type"])
                changes.setdefault(etype, TypeDelta()).deleted.append(entity_id)

        return DeltaResponse(changes=changes, server_time=now)

    def upsert(self, entity_type: EntityType, record: dict[str, Any]) -> None:
        self.initialize()
        with self._lock:
            entity_id = str(record["id"])
            if entity_id in self._read_deletions():
                logger.info(
                    "Ignoring update of deleted %s %s", entity_type.value, entity_id
                )
                return
            rows = self._read_records(entity_type)
            rows[entity_id] = {"record": dict(record), "received_at": utcnow().isoformat()}
            self._write_json(self._records_dir / f"{entity_type.value}.json", rows)

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        self.initialize()
        with self._lock:
            rows = self._read_records(entity_type)
            if rows.pop(entity_id, None) is not None:
                self._write_json(self._records_dir / f"{entity_type.value}.json", rows)
            deletions = self._read_deletions()
            if entity_id not in deletions:
                deletions[entity_id] = {
                    "type": entity_type.value,
                    "deleted_at": utcnow().isoformat(),
                }
                self._write_json(self._deletions_file, deletions)

    def request_upload_url(self, object_key: str) -> PresignedURL:
        return self._presign(object_key)

    def request_download_url(self, object_key: str) -> PresignedURL:
        self.initialize()
        if not (self.objects_dir / object_key).exists():
            raise TransientNetworkError(f"Object not yet uploaded: {object_key}")
        return self._presign(object_key)

    def mark_file_upload_complete(
        self, entity_type: EntityType, entity_id: str, object_key: str,
    ) -> None:
        self.completed_uploads.append((entity_type.value, entity_id, object_key))

    def get_record(self, entity_type: EntityType, entity_id: str) -> Optional[dict[str, Any]]:
        """Read one stored record (None if absent)."""
        self.initialize()
        with self._lock:
            row = self._read_records(entity_type).get(entity_id)
            return row["record"] if row else None

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _presign(self, object_key: str) -> PresignedURL:
        self.initialize()
        path = (self.objects_dir / object_key).resolve()
        return PresignedURL(
            object_key=object_key,
            url=path.as_uri(),
            expires_at=utcnow() + self._url_ttl,
        )

    def _read_records(self, entity_type: EntityType) -> dict[str, Any]:
        path = self._records_dir / f"{entity_type.value}.json"
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SyncError(f"Corrupt server file {path.name}: {exc}") from exc

    def _read_deletions(self) -> dict[str, Any]:
        if not self._deletions_file.exists():
            return {}
        try:
            return json.loads(self._deletions_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SyncError(f"Corrupt deletion log: {exc}") from exc

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        tmp_path = path.parent / f".{path.name}.tmp"
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(path)
