"""
File Transfer Manager -- binary payloads, decoupled from metadata.

Photos and GPX files move on their own schedule: a MediaItem's record
can be ``in_sync`` while its binary is still ``files_pending``. The two
subsystems only talk through that status field.

Architecture:
    1. enqueue_upload / enqueue_download place a transfer in one of
       three priority bands (immediate, normal, background).
    2. process_pending drains bands highest first, in batches sized by
       the network quality tier, each batch running on a bounded
       worker pool.
    3. Every transfer is two-phase: request a presigned URL for the
       object key, then move the bytes directly against that URL.
       Expired URLs are requested again.
    4. Transient failures are retried with capped exponential backoff.
       Once the retry budget is spent the file is marked sync_error;
       the other files keep moving.

Usage:
    files = FileTransferManager(store, transport)
    files.enqueue_upload(FileRef.from_entity(media_item))
    files.start()          # background worker, outlives sync cycles
    ...
    files.stop()
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, Field

from .blobs import BlobClient
from .errors import AuthRejectedError, SyncError, TransientNetworkError, URLExpiredError
from .models import EntityType, SyncableEntity, SyncStatus, utcnow
from .network import NetworkQuality, TransferLimits, limits_for
from .retry import RetryPolicy, call_with_retry
from .store import LocalStore
from .transport import PresignedURL, SyncTransport

logger = logging.getLogger("tripsync.file_transfer")

SMALL_FILE_BYTES = 1_000_000
LARGE_FILE_BYTES = 50_000_000
ARCHIVE_AGE = timedelta(days=30)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferPriority(str, Enum):
    """Priority bands, drained in declaration order."""

    IMMEDIATE = "immediate"
    NORMAL = "normal"
    BACKGROUND = "background"


BAND_ORDER = (TransferPriority.IMMEDIATE, TransferPriority.NORMAL, TransferPriority.BACKGROUND)


class FileRef(BaseModel):
    """The binary payload of one file-bearing entity."""

    entity_id: str
    entity_type: EntityType
    object_key: str
    size: Optional[int] = None
    created_at: Optional[datetime] = None
    is_thumbnail: bool = False
    is_active: bool = False
    archived: bool = False

    @classmethod
    def from_entity(cls, entity: SyncableEntity, is_active: bool = False) -> "FileRef":
        """Build a reference from a MediaItem or GPXTrack.

        Raises:
            ValueError: If the entity has no object key.
        """
        key = entity.fields.get("object_key")
        if not key:
            raise ValueError(f"{entity.entity_type.value} {entity.id} has no object_key")
        return cls(
            entity_id=entity.id,
            entity_type=entity.entity_type,
            object_key=key,
            size=entity.fields.get("file_size"),
            created_at=entity.created_at,
            is_thumbnail=bool(entity.fields.get("is_thumbnail", False)),
            is_active=is_active,
            archived=bool(entity.fields.get("archived", False)),
        )


class QueuedTransfer(BaseModel):
    """A transfer waiting in (or taken from) a priority band."""

    transfer_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    direction: TransferDirection
    ref: FileRef
    priority: TransferPriority
    enqueued_at: datetime = Field(default_factory=utcnow)


class TransferOutcome(BaseModel):
    """Result of running one transfer to completion or abandonment."""

    transfer_id: str
    entity_id: str
    object_key: str
    direction: TransferDirection
    success: bool
    attempts: int = 0
    bytes: int = 0
    error: Optional[str] = None


def classify_priority(
    ref: FileRef,
    now: Optional[datetime] = None,
    small_bytes: int = SMALL_FILE_BYTES,
    large_bytes: int = LARGE_FILE_BYTES,
    archive_age: timedelta = ARCHIVE_AGE,
) -> TransferPriority:
    """Pick a band for a file.

    Thumbnails and currently-viewed content under ``small_bytes`` go
    first; archived, large or old files go last.
    """
    now = now or utcnow()
    small = ref.size is not None and ref.size < small_bytes
    if ref.is_thumbnail or (ref.is_active and small):
        return TransferPriority.IMMEDIATE
    if ref.archived:
        return TransferPriority.BACKGROUND
    if ref.size is not None and ref.size > large_bytes:
        return TransferPriority.BACKGROUND
    if not ref.is_active and ref.created_at is not None and now - ref.created_at > archive_age:
        return TransferPriority.BACKGROUND
    return TransferPriority.NORMAL


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class FileTransferManager:
    """Priority-queued, retrying transfers of binary payloads.

    Args:
        store: Local store (file statuses and local file paths).
        transport: Server connection for presigned URLs.
        blob_client: Raw transfer client.
        retry_policy: Backoff parameters per transfer.
        quality: Initial network quality tier.
        sleep: Sleep function (injectable for tests).
        small_bytes: Immediate-band size threshold.
        large_bytes: Background-band size threshold.
    """

    def __init__(
        self,
        store: LocalStore,
        transport: SyncTransport,
        blob_client: Optional[BlobClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        quality: NetworkQuality = NetworkQuality.FAIR,
        sleep: Callable[[float], None] = time.sleep,
        small_bytes: int = SMALL_FILE_BYTES,
        large_bytes: int = LARGE_FILE_BYTES,
    ) -> None:
        self._store = store
        self._transport = transport
        self._blobs = blob_client or BlobClient()
        self._retry = retry_policy or RetryPolicy()
        self._quality = NetworkQuality(quality)
        self._sleep = sleep
        self._small_bytes = small_bytes
        self._large_bytes = large_bytes

        self._lock = threading.Lock()
        self._bands: dict[TransferPriority, list[QueuedTransfer]] = {b: [] for b in BAND_ORDER}
        self._urls: dict[tuple[TransferDirection, str], PresignedURL] = {}
        self._active_ids: set[str] = set()
        self._in_flight: set[str] = set()
        self._completed = 0
        self._failed = 0
        self._auth_rejected = False

        self._process_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # -------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------

    @property
    def quality(self) -> NetworkQuality:
        return self._quality

    @property
    def limits(self) -> TransferLimits:
        """Concurrency and batch size for the current tier."""
        return limits_for(self._quality)

    def set_network_quality(self, quality: NetworkQuality) -> None:
        """Switch tier. Applies from the next batch on."""
        quality = NetworkQuality(quality)
        if quality != self._quality:
            logger.info("Network quality %s -> %s", self._quality.value, quality.value)
            self._quality = quality

    def mark_active(self, entity_ids: Iterable[str]) -> None:
        """Declare which entities the user is currently viewing."""
        with self._lock:
            self._active_ids = set(entity_ids)

    # -------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------

    def enqueue_upload(
        self, ref: FileRef, priority: Optional[TransferPriority] = None,
    ) -> QueuedTransfer:
        """Queue a binary for upload. The entity's file becomes files_pending."""
        return self._enqueue(TransferDirection.UPLOAD, ref, priority)

    def enqueue_download(
        self, ref: FileRef, priority: Optional[TransferPriority] = None,
    ) -> QueuedTransfer:
        """Queue a binary for download. The entity's file becomes files_pending."""
        return self._enqueue(TransferDirection.DOWNLOAD, ref, priority)

    def _enqueue(
        self,
        direction: TransferDirection,
        ref: FileRef,
        priority: Optional[TransferPriority],
    ) -> QueuedTransfer:
        with self._lock:
            if ref.entity_id in self._active_ids and not ref.is_active:
                ref = ref.model_copy(update={"is_active": True})
            band = TransferPriority(priority) if priority else classify_priority(
                ref, small_bytes=self._small_bytes, large_bytes=self._large_bytes,
            )

            existing = self._promote(direction, ref.object_key, band)
            if existing is not None:
                return existing

        # The status must be written before a worker can see the job,
        # or a finished transfer's in_sync would be overwritten.
        self._store.set_file_status(ref.entity_id, SyncStatus.FILES_PENDING)

        with self._lock:
            existing = self._promote(direction, ref.object_key, band)
            if existing is not None:
                return existing
            job = QueuedTransfer(direction=direction, ref=ref, priority=band)
            self._bands[band].append(job)
            self._auth_rejected = False

        logger.debug(
            "Queued %s of %s (%s band)", direction.value, ref.object_key, band.value,
        )
        self._wake.set()
        return job

    def _promote(
        self, direction: TransferDirection, object_key: str, band: TransferPriority,
    ) -> Optional[QueuedTransfer]:
        """Return an already queued job, moved up to ``band`` if higher. Needs ``_lock``."""
        existing = self._find(direction, object_key)
        if existing is None:
            return None
        current_band, job = existing
        if BAND_ORDER.index(band) < BAND_ORDER.index(current_band):
            self._bands[current_band].remove(job)
            job.priority = band
            self._bands[band].append(job)
        return job

    def _find(
        self, direction: TransferDirection, object_key: str,
    ) -> Optional[tuple[TransferPriority, QueuedTransfer]]:
        for band, jobs in self._bands.items():
            for job in jobs:
                if job.direction == direction and job.ref.object_key == object_key:
                    return band, job
        return None

    def pending(self) -> list[QueuedTransfer]:
        """Queued transfers in the order they would run."""
        with self._lock:
            return [job for band in BAND_ORDER for job in self._bands[band]]

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(jobs) for jobs in self._bands.values())

    def status(self) -> dict[str, Any]:
        """Queue depth per band and lifetime counters."""
        with self._lock:
            return {
                "network_quality": self._quality.value,
                "concurrency": self.limits.concurrency,
                "batch_size": self.limits.batch_size,
                "bands": {b.value: len(self._bands[b]) for b in BAND_ORDER},
                "in_flight": len(self._in_flight),
                "cached_urls": len(self._urls),
                "completed": self._completed,
                "failed": self._failed,
                "running": self.is_running,
            }

    # -------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------

    def process_pending(self) -> list[TransferOutcome]:
        """Drain every band, highest priority first.

        Each batch runs concurrently up to the tier's bound and is
        awaited before the next batch is taken, so newly queued
        immediate transfers overtake the rest of a lower band. Stops
        early if storage rejects our credentials.

        Returns:
            Outcomes of every transfer run, in completion order per batch.
        """
        if not self._process_lock.acquire(blocking=False):
            logger.debug("Transfer processing already running")
            return []

        outcomes: list[TransferOutcome] = []
        try:
            while not self._stop_event.is_set():
                batch = self._next_batch()
                if not batch:
                    break
                limits = self.limits
                with ThreadPoolExecutor(
                    max_workers=limits.concurrency, thread_name_prefix="tripsync-xfer",
                ) as pool:
                    outcomes.extend(pool.map(self._run, batch))
                if self._auth_rejected:
                    logger.error("Storage rejected credentials, pausing transfers")
                    break
        finally:
            self._process_lock.release()
        return outcomes

    def _next_batch(self) -> list[QueuedTransfer]:
        with self._lock:
            if self._auth_rejected:
                return []
            size = self.limits.batch_size
            for band in BAND_ORDER:
                jobs = self._bands[band]
                if jobs:
                    batch, self._bands[band] = jobs[:size], jobs[size:]
                    self._in_flight.update(job.ref.entity_id for job in batch)
                    return batch
        return []

    def _run(self, job: QueuedTransfer) -> TransferOutcome:
        ref = job.ref
        upload = job.direction == TransferDirection.UPLOAD
        self._store.set_file_status(
            ref.entity_id, SyncStatus.UPLOADING if upload else SyncStatus.DOWNLOADING,
        )
        attempts = 0

        def attempt() -> int:
            nonlocal attempts
            attempts += 1
            presigned = self._url_for(job.direction, ref.object_key)
            path = self._store.file_path(ref.object_key)
            try:
                if upload:
                    return self._blobs.upload(presigned.url, path)
                return self._blobs.download(presigned.url, path)
            except URLExpiredError:
                self._forget_url(job.direction, ref.object_key)
                raise

        outcome = TransferOutcome(
            transfer_id=job.transfer_id,
            entity_id=ref.entity_id,
            object_key=ref.object_key,
            direction=job.direction,
            success=False,
        )
        final_status = SyncStatus.SYNC_ERROR
        try:
            outcome.bytes = call_with_retry(
                attempt, self._retry, sleep=self._sleep,
                label=f"{job.direction.value} {ref.object_key}",
            )
            if upload:
                call_with_retry(
                    lambda: self._transport.mark_file_upload_complete(
                        ref.entity_type, ref.entity_id, ref.object_key,
                    ),
                    self._retry, sleep=self._sleep,
                    label=f"confirm {ref.object_key}",
                )
            outcome.success = True
            final_status = SyncStatus.IN_SYNC
            logger.info(
                "%s %s %s (%d bytes)",
                "Uploaded" if upload else "Downloaded",
                ref.entity_type.value, ref.object_key, outcome.bytes,
            )
        except AuthRejectedError as exc:
            self._auth_rejected = True
            outcome.error = str(exc)
            final_status = SyncStatus.NEEDS_UPLOAD if upload else SyncStatus.NEEDS_DOWNLOAD
        except (TransientNetworkError, SyncError, OSError) as exc:
            outcome.error = str(exc)
            logger.error(
                "Giving up on %s of %s after %d attempt(s): %s",
                job.direction.value, ref.object_key, attempts, exc,
            )
        finally:
            outcome.attempts = attempts
            self._store.set_file_status(ref.entity_id, final_status)
            with self._lock:
                # URLs are only reused across attempts of one transfer.
                self._urls.pop((job.direction, ref.object_key), None)
                self._in_flight.discard(ref.entity_id)
                if outcome.success:
                    self._completed += 1
                elif final_status == SyncStatus.SYNC_ERROR:
                    self._failed += 1
        return outcome

    def in_flight(self) -> set[str]:
        """Entity ids whose binaries are being transferred right now."""
        with self._lock:
            return set(self._in_flight)

    def _url_for(self, direction: TransferDirection, object_key: str) -> PresignedURL:
        """Cached presigned URL, requested again once expired."""
        cache_key = (direction, object_key)
        with self._lock:
            cached = self._urls.get(cache_key)
        if cached is not None and not cached.is_expired():
            return cached

        if direction == TransferDirection.UPLOAD:
            presigned = self._transport.request_upload_url(object_key)
        else:
            presigned = self._transport.request_download_url(object_key)
        with self._lock:
            self._urls[cache_key] = presigned
        return presigned

    def _forget_url(self, direction: TransferDirection, object_key: str) -> None:
        with self._lock:
            self._urls.pop((direction, object_key), None)

    # -------------------------------------------------------------------
    # Background worker
    # -------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self, idle_interval: float = 30.0) -> None:
        """Run transfers on a background thread until stop()."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._worker = threading.Thread(
            target=self._loop, args=(idle_interval,), name="tripsync-files", daemon=True,
        )
        self._worker.start()
        logger.info("File transfer worker started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the background worker after the running batch."""
        self._stop_event.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        self._stop_event.clear()
        logger.info("File transfer worker stopped")

    def _loop(self, idle_interval: float) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(timeout=idle_interval)
            self._wake.clear()
            if self._stop_event.is_set():
                break
            try:
                self.process_pending()
            except Exception as exc:
                logger.error("File transfer worker error: %s", exc)
