"""Tests for the sync orchestrator, end to end against a local directory server."""

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from tripsync.dependency import DependencyResolver
from tripsync.errors import AuthRejectedError, SyncBusy, SyncError, TransientNetworkError
from tripsync.file_transfer import FileTransferManager
from tripsync.models import EntityType, SyncCycleState, SyncStatus, Tombstone
from tripsync.network import NetworkQuality
from tripsync.orchestrator import SyncOrchestrator, SyncPhase
from tripsync.store import LocalStore
from tripsync.transport import GraphQLTransport, LocalServerTransport


class ScriptedServer(LocalServerTransport):
    """Local server with hooks for injecting failures and observing calls."""

    def __init__(self, root: Path):
        super().__init__(root)
        self.upserts: list[tuple[EntityType, str]] = []
        self.upsert_hook = None
        self.delete_hook = None
        self.fetch_failures = 0
        self.fetch_calls = 0

    def upsert(self, entity_type, record):
        self.upserts.append((entity_type, record["id"]))
        if self.upsert_hook is not None:
            self.upsert_hook(entity_type, record)
        super().upsert(entity_type, record)

    def delete(self, entity_type, entity_id):
        if self.delete_hook is not None:
            self.delete_hook(entity_type, entity_id)
            return
        super().delete(entity_type, entity_id)

    def fetch_delta(self, since):
        self.fetch_calls += 1
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise TransientNetworkError("delta query timed out")
        return super().fetch_delta(since)


@pytest.fixture
def shared(tmp_path: Path) -> ScriptedServer:
    s = ScriptedServer(tmp_path / "server")
    s.initialize()
    return s


def device(tmp_path: Path, name: str, server: ScriptedServer, **kw) -> SyncOrchestrator:
    store = LocalStore(tmp_path / name)
    store.initialize()
    files = FileTransferManager(store, server, sleep=lambda s: None)
    return SyncOrchestrator(store, server, files=files, sleep=lambda s: None, **kw)


@pytest.fixture
def a(tmp_path: Path, shared: ScriptedServer) -> SyncOrchestrator:
    return device(tmp_path, "device-a", shared)


@pytest.fixture
def b(tmp_path: Path, shared: ScriptedServer) -> SyncOrchestrator:
    return device(tmp_path, "device-b", shared)


def seed_journal(store: LocalStore) -> dict:
    """A trip with a tagged memory."""
    category = store.create(EntityType.TAG_CATEGORY, {"name": "activity"})
    tag = store.create(EntityType.TAG, {"name": "hiking", "category_id": category.id})
    trip = store.create(EntityType.TRIP, {"name": "Alps"})
    memory = store.create(
        EntityType.MEMORY, {"trip_id": trip.id, "title": "Summit", "tag_ids": [tag.id]},
    )
    link = store.create(EntityType.MEMORY_TAG, {"memory_id": memory.id, "tag_id": tag.id})
    return {"category": category, "tag": tag, "trip": trip, "memory": memory, "link": link}


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCycle:
    """Tests for complete cycles."""

    def test_uploads_everything(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        seed = seed_journal(a.store)
        report = a.run_cycle()

        assert report.success
        assert report.uploaded == 5
        assert report.phases == [
            SyncPhase.UPLOADING, SyncPhase.DOWNLOADING,
            SyncPhase.VALIDATING, SyncPhase.FINALIZING,
        ]
        assert report.validation is not None and report.validation.ok
        assert all(e.sync_status == SyncStatus.IN_SYNC for e in a.store.all())
        assert shared.get_record(EntityType.TRIP, seed["trip"].id)["name"] == "Alps"

        state = a.store.load_state()
        assert state.last_synced_at == report.started_at
        assert state.cycles_completed == 1
        assert not state.cycle_in_progress
        assert a.phase == SyncPhase.IDLE

    def test_upload_in_dependency_order(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        """Parents reach the server before anything referencing them."""
        seed_journal(a.store)
        a.run_cycle()
        order = DependencyResolver().order_for_upload()
        ranks = [order.index(etype) for etype, _ in shared.upserts]
        assert ranks == sorted(ranks)

    def test_second_cycle_is_noop(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        """Re-running with nothing changed sends nothing and changes nothing."""
        seed_journal(a.store)
        a.run_cycle()
        before = {e.id: e for e in a.store.all()}
        sent = len(shared.upserts)

        report = a.run_cycle()
        assert report.success
        assert report.uploaded == 0
        assert report.created == report.updated == report.merged == 0
        assert len(shared.upserts) == sent
        assert {e.id: e for e in a.store.all()} == before

    def test_other_device_receives(self, a: SyncOrchestrator, b: SyncOrchestrator) -> None:
        seed = seed_journal(a.store)
        a.run_cycle()
        report = b.run_cycle()

        assert report.success
        assert report.created == 5
        trip = b.store.get(seed["trip"].id)
        assert trip.fields["name"] == "Alps"
        assert trip.sync_status == SyncStatus.IN_SYNC
        assert trip.updated_at == seed["trip"].updated_at
        assert report.validation.ok

    def test_remote_newer_replaces(self, a: SyncOrchestrator, b: SyncOrchestrator) -> None:
        """'Alps' becomes 'Alps Trip' after the other device's later edit."""
        seed = seed_journal(a.store)
        a.run_cycle()
        b.run_cycle()
        b.store.update(seed["trip"].id, {"name": "Alps Trip"})
        b.run_cycle()

        report = a.run_cycle()
        assert report.updated == 1
        trip = a.store.get(seed["trip"].id)
        assert trip.fields["name"] == "Alps Trip"
        assert trip.sync_status == SyncStatus.IN_SYNC

    def test_applying_same_delta_twice(self, a: SyncOrchestrator, b: SyncOrchestrator) -> None:
        """Download apply is idempotent: a replayed window changes nothing."""
        seed_journal(a.store)
        a.run_cycle()
        b.run_cycle()
        snapshot = {e.id: e for e in b.store.all()}

        state = b.store.load_state()
        state.last_synced_at = None
        b.store.save_state(state)
        report = b.run_cycle()

        assert report.created == report.updated == report.merged == 0
        assert {e.id: e for e in b.store.all()} == snapshot

    def test_batches_follow_network_tier(self, a: SyncOrchestrator) -> None:
        """A poor link sends media records three at a time."""
        a.files.set_network_quality(NetworkQuality.POOR)
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})
        memory = a.store.create(EntityType.MEMORY, {"trip_id": trip.id})
        for i in range(5):
            a.store.create(EntityType.MEDIA_ITEM, {"memory_id": memory.id, "caption": f"shot {i}"})

        report = a.run_cycle()
        assert report.success
        assert a.batcher.quality == NetworkQuality.POOR
        media = [b for b in report.batches if b.entity_type == EntityType.MEDIA_ITEM]
        assert [b.size for b in media] == [3, 2]
        assert all(b.success for b in report.batches)

    def test_failed_uploads_recorded_in_batches(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        def reject(etype, record):
            raise SyncError("bad input")

        shared.upsert_hook = reject
        a.store.create(EntityType.TRIP, {"name": "Alps"})
        report = a.run_cycle()
        assert [(b.entity_type, b.size, b.failures) for b in report.batches] == [(EntityType.TRIP, 1, 1)]


# ---------------------------------------------------------------------------
# Deletions
# ---------------------------------------------------------------------------


class TestTombstones:
    """Tests for deletion propagation."""

    def test_deletion_propagates_without_resurrection(
        self, a: SyncOrchestrator, b: SyncOrchestrator, shared: ScriptedServer,
    ) -> None:
        """A delete beats a concurrent offline edit on another device."""
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})
        a.run_cycle()
        b.run_cycle()

        a.store.delete(trip.id)
        b.store.update(trip.id, {"name": "edited offline"})

        report_a = a.run_cycle()
        assert report_a.deletions_sent == 1
        # The server's deletion came back in the same cycle's delta.
        assert a.store.get_tombstone(trip.id) is None

        report_b = b.run_cycle()
        assert report_b.removed == 1
        assert b.store.get(trip.id) is None
        assert shared.get_record(EntityType.TRIP, trip.id) is None

        a.run_cycle()
        assert a.store.get(trip.id) is None

    def test_incoming_update_for_tombstoned_id_ignored(
        self, a: SyncOrchestrator, shared: ScriptedServer,
    ) -> None:
        shared.upsert(EntityType.TRIP, {"id": "t1", "type": "Trip", "name": "Alps"})
        a.store.add_tombstone(Tombstone(entity_id="t1", entity_type=EntityType.TRIP))
        shared.delete_hook = lambda etype, eid: None

        report = a.run_cycle()
        assert report.skipped_tombstoned == 1
        assert a.store.get("t1") is None

    def test_acknowledged_tombstones_pruned(self, tmp_path: Path, shared: ScriptedServer) -> None:
        orch = device(tmp_path, "device-p", shared, tombstone_retention=timedelta(0))
        trip = orch.store.create(EntityType.TRIP, {"name": "x"})
        orch.run_cycle()
        orch.store.delete(trip.id)
        # Accepted but never echoed back as a deletion.
        shared.delete_hook = lambda etype, eid: None

        report = orch.run_cycle()
        assert report.deletions_sent == 1
        assert report.pruned_tombstones == 1
        assert orch.store.tombstones() == []

    def test_recent_tombstones_kept(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        trip = a.store.create(EntityType.TRIP, {"name": "x"})
        a.run_cycle()
        a.store.delete(trip.id)
        shared.delete_hook = lambda etype, eid: None

        report = a.run_cycle()
        assert report.pruned_tombstones == 0
        tomb = a.store.get_tombstone(trip.id)
        assert tomb is not None and not tomb.is_pending

    def test_pending_tombstones_never_pruned(self, tmp_path: Path, shared: ScriptedServer) -> None:
        orch = device(tmp_path, "device-p", shared, tombstone_retention=timedelta(0))
        trip = orch.store.create(EntityType.TRIP, {"name": "x"})
        orch.run_cycle()
        orch.store.delete(trip.id)

        def refuse(etype, eid):
            raise SyncError("server refused")

        shared.delete_hook = refuse
        report = orch.run_cycle()
        assert not report.success
        assert orch.store.get_tombstone(trip.id).is_pending


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflicts:
    """Tests for conflicts met during download."""

    def test_edit_during_upload_stays_pending(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        """A record edited while its upload is in flight is sent again next cycle."""
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})

        def edit_once(etype, record):
            if record["name"] == "Alps":
                a.store.update(trip.id, {"name": "Alps (edited)"})

        shared.upsert_hook = edit_once
        report = a.run_cycle()
        assert report.success
        # The echo of the older version lost to the newer local edit.
        assert report.kept_local == 1
        assert a.store.get(trip.id).sync_status == SyncStatus.NEEDS_UPLOAD
        assert a.store.get(trip.id).fields["name"] == "Alps (edited)"

        shared.upsert_hook = None
        a.run_cycle()
        assert shared.get_record(EntityType.TRIP, trip.id)["name"] == "Alps (edited)"
        assert a.store.get(trip.id).sync_status == SyncStatus.IN_SYNC

    def test_one_sided_edit_not_reverted(self, a: SyncOrchestrator, b: SyncOrchestrator) -> None:
        """Shortening a title and dropping a tag on one device sticks everywhere."""
        seed = seed_journal(a.store)
        sunrise = a.store.create(EntityType.TAG, {"name": "sunrise", "category_id": seed["category"].id})
        memory_id = seed["memory"].id
        a.store.update(memory_id, {"title": "Summit day at dawn", "tag_ids": [seed["tag"].id, sunrise.id]})
        a.run_cycle()
        b.run_cycle()

        a.store.update(memory_id, {"title": "Summit", "tag_ids": [seed["tag"].id]})
        a.run_cycle()
        report = b.run_cycle()

        assert report.merged == 0
        assert report.updated == 1
        memory = b.store.get(memory_id)
        assert memory.fields["title"] == "Summit"
        assert memory.fields["tag_ids"] == [seed["tag"].id]
        assert memory.sync_status == SyncStatus.IN_SYNC

        a.run_cycle()
        assert a.store.get(memory_id).fields["title"] == "Summit"
        assert a.store.get(memory_id).fields["tag_ids"] == [seed["tag"].id]

    def test_concurrent_memory_edits_merged(
        self, a: SyncOrchestrator, b: SyncOrchestrator, shared: ScriptedServer,
    ) -> None:
        """A adds a tag while B retitles: B merges, re-sends, and A converges."""
        seed = seed_journal(a.store)
        sunrise = a.store.create(EntityType.TAG, {"name": "sunrise", "category_id": seed["category"].id})
        memory_id = seed["memory"].id
        a.run_cycle()
        b.run_cycle()

        a.store.update(memory_id, {"tag_ids": [seed["tag"].id, sunrise.id]})
        a.run_cycle()
        remote_version = a.store.get(memory_id)

        # B retitles after its Memory uploads went out, so its edit is still local.
        link = b.store.create(EntityType.MEMORY_TAG, {"memory_id": memory_id, "tag_id": sunrise.id})
        edits = []

        def retitle(etype, record):
            if record["id"] == link.id:
                edits.append(b.store.update(memory_id, {"title": "Summit at dawn"}))

        shared.upsert_hook = retitle
        report = b.run_cycle()
        shared.upsert_hook = None

        assert report.success
        assert report.merged == 1
        merged = b.store.get(memory_id)
        assert merged.fields["title"] == "Summit at dawn"
        assert merged.fields["tag_ids"] == [seed["tag"].id, sunrise.id]
        assert merged.sync_status == SyncStatus.NEEDS_UPLOAD
        assert merged.updated_at > remote_version.updated_at
        assert merged.updated_at > edits[0].updated_at

        assert b.run_cycle().uploaded == 1
        assert b.store.get(memory_id).sync_status == SyncStatus.IN_SYNC
        a.run_cycle()
        converged = a.store.get(memory_id)
        assert converged.fields["title"] == "Summit at dawn"
        assert converged.fields["tag_ids"] == [seed["tag"].id, sunrise.id]

    def test_hard_conflict(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        trip = a.store.create(EntityType.TRIP, {"name": "mine"})
        a.run_cycle()
        local = a.store.get(trip.id)
        local.conflict_marker = True
        a.store.put(local)
        shared.upsert(EntityType.TRIP, {
            "id": trip.id, "type": "Trip", "name": "theirs",
            "updated_at": (local.updated_at + timedelta(minutes=1)).isoformat(),
            "conflict_marker": True,
        })

        report = a.run_cycle()
        assert report.conflicts == [trip.id]
        entity = a.store.get(trip.id)
        assert entity.sync_status == SyncStatus.CONFLICT
        assert entity.fields["name"] == "mine"
        assert entity.conflict_remote["name"] == "theirs"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Tests for failed, aborted and cancelled cycles."""

    def test_download_timeout_keeps_watermark(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        """Upload succeeds, delta query times out: watermark stays, retry re-sends nothing."""
        seed_journal(a.store)
        shared.fetch_failures = 100
        report = a.run_cycle()

        assert not report.success
        assert report.phase == SyncPhase.FAILED
        assert shared.fetch_calls == 4
        assert a.store.load_state().last_synced_at is None
        assert all(e.sync_status == SyncStatus.IN_SYNC for e in a.store.all())

        shared.fetch_failures = 0
        sent = len(shared.upserts)
        retry = a.run_cycle()
        assert retry.success
        assert len(shared.upserts) == sent
        assert a.store.load_state().last_synced_at == retry.started_at

    def test_upload_failure_skips_download(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        seed = seed_journal(a.store)
        bad_id = seed["trip"].id

        def reject(etype, record):
            if record["id"] == bad_id:
                raise SyncError("validation failed")

        shared.upsert_hook = reject
        report = a.run_cycle()

        assert not report.success
        assert not report.auth_rejected
        assert [f.entity_id for f in report.failures] == [bad_id]
        assert shared.fetch_calls == 0
        assert a.store.get(bad_id).sync_status == SyncStatus.SYNC_ERROR
        assert a.store.get(seed["tag"].id).sync_status == SyncStatus.IN_SYNC
        # Types after Trip were never sent.
        assert a.store.get(seed["memory"].id).sync_status == SyncStatus.NEEDS_UPLOAD

        shared.upsert_hook = None
        assert a.run_cycle().success
        assert a.store.get(bad_id).sync_status == SyncStatus.IN_SYNC

    def test_transient_upload_retried(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        trip = a.store.create(EntityType.TRIP, {"name": "x"})
        failures = [TransientNetworkError("reset"), TransientNetworkError("reset")]

        def flaky(etype, record):
            if failures:
                raise failures.pop()

        shared.upsert_hook = flaky
        report = a.run_cycle()
        assert report.success
        assert a.store.get(trip.id).sync_status == SyncStatus.IN_SYNC

    def test_auth_rejected_aborts(self, tmp_path: Path, shared: ScriptedServer) -> None:
        """Rejected credentials abort the cycle and reach the session owner."""
        rejected: list[AuthRejectedError] = []
        a = device(tmp_path, "device-a", shared, on_auth_rejected=rejected.append)
        trip = a.store.create(EntityType.TRIP, {"name": "x"})

        def deny(etype, record):
            raise AuthRejectedError("token expired")

        shared.upsert_hook = deny
        report = a.run_cycle()

        assert not report.success
        assert report.auth_rejected
        assert [str(exc) for exc in rejected] == ["token expired"]
        assert "Authentication rejected" in report.error
        assert report.failures == []
        assert shared.fetch_calls == 0
        assert a.store.get(trip.id).sync_status == SyncStatus.NEEDS_UPLOAD
        assert a.store.load_state().last_error == report.error

    def test_malformed_delta_fails_cycle(self, tmp_path: Path) -> None:
        """Unparseable server fields fail the cycle and keep the watermark."""
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"data": {"sync": {"trips": [{"id": "t1", "fields": "{oops"}]}}}
        session = MagicMock(spec=requests.Session)
        session.post.return_value = resp
        store = LocalStore(tmp_path / "graphql-device")
        store.initialize()
        orch = SyncOrchestrator(
            store, GraphQLTransport("https://sync.example.com", session=session), sleep=lambda s: None,
        )

        report = orch.run_cycle()
        assert not report.success
        assert report.phase == SyncPhase.FAILED
        assert "Malformed fields" in report.error
        assert session.post.call_count == 1
        state = store.load_state()
        assert state.last_synced_at is None
        assert not state.cycle_in_progress

    def test_cancel_between_types(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        seed = seed_journal(a.store)
        shared.upsert_hook = lambda etype, record: a.cancel()

        report = a.run_cycle()
        assert report.cancelled
        assert not report.success
        assert a.store.load_state().last_synced_at is None
        # The first type finished; the rest wait for the next cycle.
        assert a.store.get(seed["category"].id).sync_status == SyncStatus.IN_SYNC
        assert a.store.get(seed["trip"].id).sync_status == SyncStatus.NEEDS_UPLOAD

        shared.upsert_hook = None
        assert a.run_cycle().success

    def test_busy_while_running(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        a.store.create(EntityType.TRIP, {"name": "x"})
        entered = threading.Event()
        release = threading.Event()

        def block(etype, record):
            entered.set()
            release.wait(5)

        shared.upsert_hook = block
        worker = threading.Thread(target=a.run_cycle)
        worker.start()
        try:
            assert entered.wait(5)
            assert a.is_running
            with pytest.raises(SyncBusy):
                a.run_cycle()
        finally:
            release.set()
            worker.join(5)
        assert not a.is_running

    def test_busy_from_persisted_flag(self, a: SyncOrchestrator) -> None:
        a.store.save_state(SyncCycleState(cycle_in_progress=True))
        with pytest.raises(SyncBusy):
            a.run_cycle()


# ---------------------------------------------------------------------------
# Binaries
# ---------------------------------------------------------------------------


class TestFiles:
    """Tests for the handoff to the file transfer manager."""

    def test_photo_reaches_other_device(
        self, a: SyncOrchestrator, b: SyncOrchestrator, shared: ScriptedServer,
    ) -> None:
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})
        memory = a.store.create(EntityType.MEMORY, {"trip_id": trip.id})
        a.store.file_path("photos/summit.jpg").parent.mkdir(parents=True)
        a.store.file_path("photos/summit.jpg").write_bytes(b"jpeg")
        media = a.store.create(
            EntityType.MEDIA_ITEM,
            {"memory_id": memory.id, "object_key": "photos/summit.jpg", "file_size": 4},
            file_status=SyncStatus.NEEDS_UPLOAD,
        )

        report = a.run_cycle()
        assert report.files_enqueued == 1
        assert a.store.get(media.id).file_status == SyncStatus.FILES_PENDING
        a.files.process_pending()
        assert a.store.get(media.id).file_status == SyncStatus.IN_SYNC
        assert (shared.objects_dir / "photos" / "summit.jpg").exists()

        report_b = b.run_cycle()
        assert report_b.files_enqueued == 1
        b.files.process_pending()
        assert b.store.file_path("photos/summit.jpg").read_bytes() == b"jpeg"
        assert b.store.get(media.id).file_status == SyncStatus.IN_SYNC

    def test_record_arrives_before_bytes(
        self, a: SyncOrchestrator, b: SyncOrchestrator, shared: ScriptedServer,
    ) -> None:
        """B fetches a photo A has not uploaded yet; a later cycle gets it."""
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})
        memory = a.store.create(EntityType.MEMORY, {"trip_id": trip.id})
        a.store.file_path("summit.jpg").write_bytes(b"jpeg")
        media = a.store.create(
            EntityType.MEDIA_ITEM,
            {"memory_id": memory.id, "object_key": "summit.jpg", "file_size": 4},
            file_status=SyncStatus.NEEDS_UPLOAD,
        )
        a.run_cycle()

        assert b.run_cycle().files_enqueued == 1
        [outcome] = b.files.process_pending()
        assert not outcome.success
        assert outcome.attempts == 4
        assert b.store.get(media.id).file_status == SyncStatus.SYNC_ERROR

        a.files.process_pending()
        report = b.run_cycle()
        assert report.files_enqueued == 1
        b.files.process_pending()
        assert b.store.get(media.id).file_status == SyncStatus.IN_SYNC
        assert b.store.file_path("summit.jpg").read_bytes() == b"jpeg"

    def test_binary_waits_for_metadata(self, a: SyncOrchestrator, shared: ScriptedServer) -> None:
        """A file is not queued while its record failed to upload."""
        trip = a.store.create(EntityType.TRIP, {"name": "Alps"})
        memory = a.store.create(EntityType.MEMORY, {"trip_id": trip.id})
        media = a.store.create(
            EntityType.MEDIA_ITEM,
            {"memory_id": memory.id, "object_key": "a.jpg"},
            file_status=SyncStatus.NEEDS_UPLOAD,
        )

        def reject_media(etype, record):
            if record["id"] == media.id:
                raise SyncError("rejected")

        shared.upsert_hook = reject_media
        report = a.run_cycle()
        assert report.files_enqueued == 0
        assert a.store.get(media.id).file_status == SyncStatus.NEEDS_UPLOAD


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    """Tests for cleaning up after a crashed process."""

    def test_recover(self, a: SyncOrchestrator) -> None:
        trip = a.store.create(EntityType.TRIP, {"name": "x"})
        entity = a.store.get(trip.id)
        entity.sync_status = SyncStatus.UPLOADING
        a.store.put(entity)
        media = a.store.create(
            EntityType.MEDIA_ITEM, {"object_key": "a.jpg"}, file_status=SyncStatus.DOWNLOADING,
        )
        a.store.save_state(SyncCycleState(cycle_in_progress=True))

        counts = a.recover()
        assert counts == {"flag_cleared": 1, "records": 1, "files": 1}
        assert a.store.get(trip.id).sync_status == SyncStatus.NEEDS_UPLOAD
        assert a.store.get(media.id).file_status == SyncStatus.NEEDS_DOWNLOAD
        assert not a.store.load_state().cycle_in_progress
        assert a.run_cycle().success

    def test_retry_failed_files(self, a: SyncOrchestrator) -> None:
        a.store.file_path("here.jpg").write_bytes(b"x")
        here = a.store.create(EntityType.MEDIA_ITEM, {"object_key": "here.jpg"}, file_status=SyncStatus.SYNC_ERROR)
        gone = a.store.create(EntityType.MEDIA_ITEM, {"object_key": "gone.jpg"}, file_status=SyncStatus.SYNC_ERROR)
        assert a.retry_failed_files() == 2
        assert a.store.get(here.id).file_status == SyncStatus.NEEDS_UPLOAD
        assert a.store.get(gone.id).file_status == SyncStatus.NEEDS_DOWNLOAD

    def test_status(self, a: SyncOrchestrator) -> None:
        a.store.create(EntityType.TRIP, {"name": "x"})
        info = a.status()
        assert info["entities"] == {"needs_upload": 1}
        assert info["transport"] == "local"
        assert info["last_synced_at"] is None
        assert info["batching"]["network_quality"] == "fair"
        assert info["batching"]["batch_sizes"]["Memory"] == 25
