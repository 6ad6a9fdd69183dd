"""
Sync Orchestrator -- one upload/download cycle, start to finish.

A cycle walks through fixed phases:

    Idle -> Uploading -> Downloading -> Validating -> Finalizing -> Idle

Any phase may instead end in Failed, which returns to Idle without
moving the ``last_synced_at`` watermark, so the next cycle retries the
same window. Only one cycle runs at a time; a second trigger raises
SyncBusy.

Uploads go type by type in dependency order (parents before
children), deletions travel as tombstones, and downloads are applied
type by type through the Conflict Resolution Engine. Binary payloads
are handed off to the File Transfer Manager and never block a cycle.

Usage:
    orchestrator = SyncOrchestrator(store, transport, files=files)
    report = orchestrator.run_cycle()
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, Field

from .conflict import ConflictResolver, Winner
from .dependency import DependencyResolver
from .errors import (
    AuthRejectedError,
    ConflictUnresolved,
    SyncBusy,
    SyncCancelled,
    SyncError,
    TransientNetworkError,
)
from .file_transfer import FileRef, FileTransferManager
from .models import (
    EntityType,
    SyncableEntity,
    SyncCycleState,
    SyncStatus,
    utcnow,
)
from .network import AdaptiveBatcher, BatchTiming, NetworkQuality
from .retry import RetryPolicy, call_with_retry
from .schema import TYPE_TABLE, TypeSpec, file_types
from .store import LocalStore
from .transport import SyncTransport, TypeDelta
from .validator import ConsistencyValidator, ValidationReport

logger = logging.getLogger("tripsync.orchestrator")

DEFAULT_RETENTION = timedelta(days=30)

# Binary statuses that mean a transfer is already arranged.
_FILE_BUSY = (SyncStatus.FILES_PENDING, SyncStatus.UPLOADING, SyncStatus.DOWNLOADING)


class SyncPhase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    FINALIZING = "finalizing"
    FAILED = "failed"


class EntityFailure(BaseModel):
    """An entity (or tombstone) the server did not accept this cycle."""

    entity_type: EntityType
    entity_id: str
    operation: str
    error: str


class CycleReport(BaseModel):
    """What happened during one cycle."""

    cycle_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    phase: SyncPhase = SyncPhase.IDLE
    phases: list[SyncPhase] = Field(default_factory=list)
    success: bool = False
    cancelled: bool = False
    auth_rejected: bool = False
    error: Optional[str] = None

    uploaded: int = 0
    deletions_sent: int = 0
    created: int = 0
    updated: int = 0
    kept_local: int = 0
    merged: int = 0
    conflicts: list[str] = Field(default_factory=list)
    removed: int = 0
    skipped_tombstoned: int = 0
    malformed: int = 0
    files_enqueued: int = 0
    pruned_tombstones: int = 0
    failures: list[EntityFailure] = Field(default_factory=list)
    batches: list[BatchTiming] = Field(default_factory=list)
    validation: Optional[ValidationReport] = None

    @property
    def downloaded(self) -> int:
        return self.created + self.updated + self.kept_local + self.merged + len(self.conflicts)


class SyncOrchestrator:
    """Runs sync cycles against one store and one transport.

    Every collaborator is injected; nothing is a process-wide singleton.

    Args:
        store: Local store.
        transport: Server connection.
        resolver: Dependency resolver for upload/download order.
        conflicts: Conflict resolution engine.
        files: File transfer manager (binaries are skipped when None).
        validator: Post-cycle consistency validator.
        retry_policy: Backoff for metadata calls.
        batch_size: Fixed mutations per concurrent batch. When None,
            the batcher sizes batches per type.
        concurrency: Fixed parallel mutations within a batch. When
            None, the batcher's tier bound applies.
        batcher: Adaptive metadata batch sizing (follows the file
            manager's network tier when there is one).
        tombstone_retention: Age after which acknowledged tombstones
            are forgotten.
        on_auth_rejected: Called with the error when the server rejects
            our credentials, so the owner of the session can refresh it.
        sleep: Sleep function (injectable for tests).
        clock: Wall-clock function (injectable for tests).
    """

    def __init__(
        self,
        store: LocalStore,
        transport: SyncTransport,
        resolver: Optional[DependencyResolver] = None,
        conflicts: Optional[ConflictResolver] = None,
        files: Optional[FileTransferManager] = None,
        validator: Optional[ConsistencyValidator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        batcher: Optional[AdaptiveBatcher] = None,
        tombstone_retention: timedelta = DEFAULT_RETENTION,
        on_auth_rejected: Optional[Callable[[AuthRejectedError], None]] = None,
        table: tuple[TypeSpec, ...] = TYPE_TABLE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.transport = transport
        self.resolver = resolver or DependencyResolver(table)
        self.conflicts = conflicts or ConflictResolver(table)
        self.files = files
        self.validator = validator or ConsistencyValidator(table)
        self._retry = retry_policy or RetryPolicy()
        self.batcher = batcher or AdaptiveBatcher(files.quality if files else NetworkQuality.FAIR)
        self._batch_size = max(1, batch_size) if batch_size is not None else None
        self._concurrency = max(1, concurrency) if concurrency is not None else None
        self._retention = tombstone_retention
        self._on_auth_rejected = on_auth_rejected
        self._file_types = set(file_types(table))
        self._sleep = sleep
        self._clock = clock

        self._flight = threading.Lock()
        self._cancel = threading.Event()
        self._phase = SyncPhase.IDLE

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._flight.locked()

    def cancel(self) -> None:
        """Ask the running cycle to stop at the next phase or type boundary."""
        if self.is_running:
            logger.info("Cancellation requested")
            self._cancel.set()

    # -------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        """Run one full sync cycle.

        Returns:
            The cycle report. Failures, cancellation and auth rejection
            are reported, not raised.

        Raises:
            SyncBusy: If a cycle is already running (here or, per the
                persisted flag, in another process).
        """
        if not self._flight.acquire(blocking=False):
            raise SyncBusy("A sync cycle is already running")

        try:
            state = self.store.load_state()
            if state.cycle_in_progress:
                raise SyncBusy(
                    "A sync cycle is marked in progress; run recover if its process died"
                )
            self._cancel.clear()
            started = self._clock()
            state.cycle_in_progress = True
            state.last_cycle_started_at = started
            self.store.save_state(state)

            report = CycleReport(started_at=started)
            logger.info("Sync cycle %s started (watermark %s)", report.cycle_id, state.last_synced_at)
            auth_error: Optional[AuthRejectedError] = None
            try:
                self._run_phases(state, report)
            except SyncCancelled as exc:
                report.cancelled = True
                self._fail(report, str(exc))
            except AuthRejectedError as exc:
                auth_error = exc
                report.auth_rejected = True
                self._fail(report, f"Authentication rejected: {exc}")
            except SyncError as exc:
                self._fail(report, str(exc))
            finally:
                if not report.success:
                    self._release_in_flight()
                state.cycle_in_progress = False
                state.last_cycle_finished_at = self._clock()
                state.last_error = report.error
                self.store.save_state(state)
                report.finished_at = state.last_cycle_finished_at
                self._phase = SyncPhase.IDLE

            logger.info(
                "Sync cycle %s %s: %d uploaded, %d downloaded, %d failure(s)",
                report.cycle_id,
                "completed" if report.success else "failed",
                report.uploaded, report.downloaded, len(report.failures),
            )
            if auth_error is not None and self._on_auth_rejected is not None:
                self._on_auth_rejected(auth_error)
            return report
        finally:
            self._flight.release()

    def _run_phases(self, state: SyncCycleState, report: CycleReport) -> None:
        if self.files is not None:
            self.batcher.set_network_quality(self.files.quality)
        self._enter(SyncPhase.UPLOADING, report)
        self._upload_phase(report)
        if report.failures:
            raise SyncError(f"{len(report.failures)} upload(s) failed, download skipped")

        self._check_cancel()
        self._enter(SyncPhase.DOWNLOADING, report)
        self._download_phase(state, report)

        self._check_cancel()
        self._enter(SyncPhase.VALIDATING, report)
        in_flight = self.files.in_flight() if self.files else ()
        report.validation = self.validator.validate(self.store, in_flight=in_flight)

        self._check_cancel()
        self._enter(SyncPhase.FINALIZING, report)
        self._finalize(state, report)
        report.success = True

    def _enter(self, phase: SyncPhase, report: CycleReport) -> None:
        self._phase = phase
        report.phase = phase
        report.phases.append(phase)
        logger.info("Sync phase: %s", phase.value)

    def _fail(self, report: CycleReport, error: str) -> None:
        logger.error("Sync cycle %s failed in %s: %s", report.cycle_id, report.phase.value, error)
        report.error = error
        report.phase = SyncPhase.FAILED
        report.phases.append(SyncPhase.FAILED)
        self._phase = SyncPhase.FAILED

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise SyncCancelled("Sync cycle cancelled")

    # -------------------------------------------------------------------
    # Uploading
    # -------------------------------------------------------------------

    def _upload_phase(self, report: CycleReport) -> None:
        for etype in self.resolver.order_for_upload():
            self._check_cancel()
            self._upload_type(etype, report)
            if report.failures:
                return
            if etype in self._file_types:
                report.files_enqueued += self.handoff_files(etype)

    def _upload_type(self, etype: EntityType, report: CycleReport) -> None:
        with self.store.transaction():
            pending = self.store.pending_uploads(etype)
            for entity in pending:
                entity.sync_status = SyncStatus.UPLOADING
                self.store.put(entity)
        tombstones = self.store.tombstones(etype, pending_only=True)
        if not pending and not tombstones:
            return

        logger.info(
            "Uploading %s: %d record(s), %d deletion(s)",
            etype.value, len(pending), len(tombstones),
        )
        auth_error: Optional[AuthRejectedError] = None
        size = self._batch_size or self.batcher.batch_size(etype)

        for chunk in _chunks(pending, size):
            results = self._run_batch(
                etype, chunk, report,
                lambda e: self.transport.upsert(etype, e.to_record()),
                lambda e: f"upsert {etype.value} {e.id}",
            )
            auth_error = auth_error or self._apply_upsert_acks(etype, results, report)
            if auth_error:
                raise auth_error

        for chunk in _chunks(tombstones, size):
            results = self._run_batch(
                etype, chunk, report,
                lambda t: self.transport.delete(etype, t.entity_id),
                lambda t: f"delete {etype.value} {t.entity_id}",
            )
            for tomb, exc in results:
                if exc is None:
                    self.store.acknowledge_tombstone(tomb.entity_id, at=self._clock())
                    report.deletions_sent += 1
                elif isinstance(exc, AuthRejectedError):
                    auth_error = auth_error or exc
                else:
                    report.failures.append(EntityFailure(
                        entity_type=etype, entity_id=tomb.entity_id,
                        operation="delete", error=str(exc),
                    ))
            if auth_error:
                raise auth_error

    def _apply_upsert_acks(
        self,
        etype: EntityType,
        results: list[tuple[SyncableEntity, Optional[SyncError]]],
        report: CycleReport,
    ) -> Optional[AuthRejectedError]:
        auth_error = None
        with self.store.transaction():
            for sent, exc in results:
                current = self.store.get(sent.id)
                if current is None:
                    continue
                if exc is None:
                    report.uploaded += 1
                    current.base_fields = dict(sent.fields)
                    if current.sync_status == SyncStatus.UPLOADING and current.updated_at == sent.updated_at:
                        current.sync_status = SyncStatus.IN_SYNC
                    elif current.sync_status == SyncStatus.UPLOADING:
                        current.sync_status = SyncStatus.NEEDS_UPLOAD
                elif isinstance(exc, AuthRejectedError):
                    auth_error = auth_error or exc
                    if current.sync_status == SyncStatus.UPLOADING:
                        current.sync_status = SyncStatus.NEEDS_UPLOAD
                else:
                    current.sync_status = SyncStatus.SYNC_ERROR
                    report.failures.append(EntityFailure(
                        entity_type=etype, entity_id=sent.id,
                        operation="upsert", error=str(exc),
                    ))
                self.store.put(current)
        return auth_error

    def _run_batch(
        self,
        etype: EntityType,
        items: Sequence[Any],
        report: CycleReport,
        call: Callable[[Any], None],
        label: Callable[[Any], str],
    ) -> list[tuple[Any, Optional[SyncError]]]:
        """Issue one call per item concurrently and wait for all of them.

        The batch is timed; without fixed sizes the timing feeds the
        batcher.
        """
        concurrency = self._concurrency or self.batcher.concurrency
        started = time.monotonic()
        with ThreadPoolExecutor(
            max_workers=min(concurrency, len(items)),
            thread_name_prefix="tripsync-meta",
        ) as pool:
            futures = [
                pool.submit(
                    call_with_retry,
                    lambda item=item: call(item),
                    self._retry,
                    self._sleep,
                    None,
                    label(item),
                )
                for item in items
            ]
            results: list[tuple[Any, Optional[SyncError]]] = []
            for item, future in zip(items, futures):
                try:
                    future.result()
                    results.append((item, None))
                except SyncError as exc:
                    results.append((item, exc))

        timing = BatchTiming(
            entity_type=etype,
            size=len(items),
            duration=time.monotonic() - started,
            failures=sum(1 for _, exc in results if exc is not None),
        )
        report.batches.append(timing)
        if self._batch_size is None:
            self.batcher.report(timing)
        return results

    # -------------------------------------------------------------------
    # Downloading
    # -------------------------------------------------------------------

    def _download_phase(self, state: SyncCycleState, report: CycleReport) -> None:
        since = state.last_synced_at
        try:
            delta = call_with_retry(
                lambda: self.transport.fetch_delta(since),
                self._retry, sleep=self._sleep, label="delta query",
            )
        except TransientNetworkError as exc:
            raise SyncError(f"Delta query failed: {exc}") from exc

        logger.info("Delta since %s: %d change(s)", since, delta.total)
        for etype in self.resolver.order_for_download(list(delta.changes)):
            self._check_cancel()
            self._apply_type(etype, delta.for_type(etype), report)
            if etype in self._file_types:
                report.files_enqueued += self.handoff_files(etype)

    def _apply_type(self, etype: EntityType, delta: TypeDelta, report: CycleReport) -> None:
        with self.store.transaction():
            for record in delta.updated:
                try:
                    remote = SyncableEntity.from_record(record, entity_type=etype)
                except ValueError as exc:
                    logger.warning("Skipping malformed %s record: %s", etype.value, exc)
                    report.malformed += 1
                    continue

                if self.store.get_tombstone(remote.id) is not None:
                    report.skipped_tombstoned += 1
                    continue

                local = self.store.get(remote.id)
                if local is None:
                    entity = remote
                    entity.base_fields = dict(remote.fields)
                    report.created += 1
                else:
                    entity = self._reconcile(local, remote, report)

                if etype in self._file_types and self._binary_missing(entity):
                    entity.file_status = SyncStatus.NEEDS_DOWNLOAD
                self.store.put(entity)

            for entity_id in delta.deleted:
                removed = self.store.remove(entity_id)
                dropped = self.store.drop_tombstone(entity_id)
                if removed is not None or dropped:
                    report.removed += 1

        logger.debug(
            "Applied %s: %d update(s), %d deletion(s)",
            etype.value, len(delta.updated), len(delta.deleted),
        )

    def _reconcile(
        self, local: SyncableEntity, remote: SyncableEntity, report: CycleReport,
    ) -> SyncableEntity:
        resolution = self.conflicts.resolve(local, remote)
        entity = local.model_copy(deep=True)
        if resolution.winner != Winner.CONFLICT:
            entity.base_fields = dict(remote.fields)

        if resolution.winner == Winner.REMOTE:
            if local.fields != remote.fields or local.updated_at != remote.updated_at:
                report.updated += 1
            entity.fields = dict(remote.fields)
            entity.updated_at = remote.updated_at
            entity.conflict_marker = remote.conflict_marker
            entity.conflict_remote = None
            entity.sync_status = SyncStatus.IN_SYNC
        elif resolution.winner == Winner.LOCAL:
            report.kept_local += 1
            entity.sync_status = SyncStatus.NEEDS_UPLOAD
        elif resolution.winner == Winner.MERGED:
            report.merged += 1
            entity.fields = dict(resolution.merged_fields or {})
            entity.updated_at = max(local.updated_at, remote.updated_at)
            entity.touch(self._clock())
            entity.sync_status = SyncStatus.NEEDS_UPLOAD
        else:
            report.conflicts.append(local.id)
            logger.warning("%s", ConflictUnresolved(local.id, resolution.conflicted_fields))
            entity.sync_status = SyncStatus.CONFLICT
            entity.conflict_remote = remote.to_record()
        return entity

    def _binary_missing(self, entity: SyncableEntity) -> bool:
        key = entity.fields.get("object_key")
        if not key or entity.file_status in _FILE_BUSY:
            return False
        if entity.file_status == SyncStatus.NEEDS_UPLOAD:
            return False
        return self._binary_absent(entity)

    def _binary_absent(self, entity: SyncableEntity) -> bool:
        key = entity.fields.get("object_key")
        return bool(key) and not self.store.file_path(key).exists()

    # -------------------------------------------------------------------
    # File handoff
    # -------------------------------------------------------------------

    def handoff_files(self, etype: EntityType) -> int:
        """Queue binaries of one type whose metadata is settled.

        A download that ended in ``sync_error`` is queued again each
        cycle while the file is still missing locally, since the owner
        may simply not have uploaded it yet.
        """
        if self.files is None:
            return 0
        queued = 0
        for entity in self.store.all(etype):
            settled = entity.sync_status == SyncStatus.IN_SYNC
            if entity.file_status == SyncStatus.NEEDS_UPLOAD and settled:
                enqueue = self.files.enqueue_upload
            elif entity.file_status == SyncStatus.NEEDS_DOWNLOAD:
                enqueue = self.files.enqueue_download
            elif entity.file_status == SyncStatus.SYNC_ERROR and settled and self._binary_absent(entity):
                enqueue = self.files.enqueue_download
            else:
                continue
            try:
                enqueue(FileRef.from_entity(entity))
            except ValueError as exc:
                logger.warning("Cannot queue binary: %s", exc)
                continue
            queued += 1
        return queued

    def retry_failed_files(self) -> int:
        """Make binaries in ``sync_error`` eligible for transfer again.

        A binary present locally is retried as an upload, a missing one
        as a download.
        """
        reset = 0
        with self.store.transaction():
            for entity in self.store.with_status(SyncStatus.SYNC_ERROR, file_status=True):
                key = entity.fields.get("object_key")
                if key and self.store.file_path(key).exists():
                    entity.file_status = SyncStatus.NEEDS_UPLOAD
                else:
                    entity.file_status = SyncStatus.NEEDS_DOWNLOAD
                self.store.put(entity)
                reset += 1
        return reset

    # -------------------------------------------------------------------
    # Finalizing
    # -------------------------------------------------------------------

    def _finalize(self, state: SyncCycleState, report: CycleReport) -> None:
        state.last_synced_at = report.started_at
        state.cycles_completed += 1
        report.pruned_tombstones = self.store.prune_tombstones(self._clock() - self._retention)
        if report.pruned_tombstones:
            logger.info("Pruned %d acknowledged tombstone(s)", report.pruned_tombstones)

    # -------------------------------------------------------------------
    # Recovery and status
    # -------------------------------------------------------------------

    def _release_in_flight(self) -> None:
        """Return records stuck in ``uploading`` to ``needs_upload``."""
        with self.store.transaction():
            for entity in self.store.with_status(SyncStatus.UPLOADING):
                entity.sync_status = SyncStatus.NEEDS_UPLOAD
                self.store.put(entity)

    def recover(self) -> dict[str, int]:
        """Clean up after a process that died mid-cycle.

        Clears a stale ``cycle_in_progress`` flag and resets transient
        statuses so the next cycle retries them.

        Returns:
            Counts of what was reset.

        Raises:
            SyncBusy: If a cycle is running in this process.
        """
        if not self._flight.acquire(blocking=False):
            raise SyncBusy("Cannot recover while a cycle is running")
        try:
            counts = {"flag_cleared": 0, "records": 0, "files": 0}
            busy = self.files.in_flight() if self.files else set()
            with self.store.transaction():
                state = self.store.load_state()
                if state.cycle_in_progress:
                    state.cycle_in_progress = False
                    state.last_error = "Recovered from interrupted cycle"
                    self.store.save_state(state)
                    counts["flag_cleared"] = 1

                for entity in self.store.all():
                    changed = False
                    if entity.sync_status == SyncStatus.UPLOADING:
                        entity.sync_status = SyncStatus.NEEDS_UPLOAD
                        changed = True
                    elif entity.sync_status == SyncStatus.DOWNLOADING:
                        entity.sync_status = SyncStatus.NEEDS_DOWNLOAD
                        changed = True
                    if changed:
                        counts["records"] += 1

                    if entity.file_status in _FILE_BUSY and entity.id not in busy:
                        key = entity.fields.get("object_key")
                        local = bool(key) and self.store.file_path(key).exists()
                        if entity.file_status == SyncStatus.UPLOADING or (
                            entity.file_status == SyncStatus.FILES_PENDING and local
                        ):
                            entity.file_status = SyncStatus.NEEDS_UPLOAD
                        else:
                            entity.file_status = SyncStatus.NEEDS_DOWNLOAD
                        counts["files"] += 1
                        changed = True
                    if changed:
                        self.store.put(entity)

            logger.info(
                "Recovery: flag cleared=%d, %d record(s), %d file(s) reset",
                counts["flag_cleared"], counts["records"], counts["files"],
            )
            return counts
        finally:
            self._flight.release()

    def status(self) -> dict[str, Any]:
        """Cycle state plus entity counts by status."""
        state = self.store.load_state()
        by_status: dict[str, int] = {}
        files: dict[str, int] = {}
        for entity in self.store.all():
            by_status[entity.sync_status.value] = by_status.get(entity.sync_status.value, 0) + 1
            if entity.file_status is not None:
                files[entity.file_status.value] = files.get(entity.file_status.value, 0) + 1
        return {
            "phase": self._phase.value,
            "transport": self.transport.name,
            "last_synced_at": state.last_synced_at.isoformat() if state.last_synced_at else None,
            "cycle_in_progress": state.cycle_in_progress,
            "cycles_completed": state.cycles_completed,
            "last_error": state.last_error,
            "entities": by_status,
            "files": files,
            "pending_tombstones": len(self.store.tombstones(pending_only=True)),
            "batching": self.batcher.status(),
        }


def _chunks(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]
