"""Tests for the tripsync CLI via CliRunner."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from tripsync import __version__
from tripsync.cli import main
from tripsync.errors import AuthRejectedError
from tripsync.models import EntityType, SyncCycleState, SyncStatus
from tripsync.store import LocalStore


@pytest.fixture(autouse=True)
def reset_logging():
    """Detach the CLI's stderr handler so it does not outlive the runner."""
    yield
    root = logging.getLogger("tripsync")
    for handler in [h for h in root.handlers if h.get_name() == "tripsync-cli"]:
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_home(tmp_path: Path, runner: CliRunner) -> Path:
    """A sync home configured for a local server under tmp_path."""
    home = tmp_path / "home"
    result = runner.invoke(main, [
        "config", "init", "--home", str(home), "--local-path", str(tmp_path / "server"),
    ])
    assert result.exit_code == 0, result.output
    return home


def open_store(home: Path) -> LocalStore:
    store = LocalStore(home)
    store.initialize()
    return store


class TestConfigCommands:
    """Tests for config init/show."""

    def test_init_writes_file(self, cli_home: Path) -> None:
        assert (cli_home / "config.yaml").exists()

    def test_init_refuses_overwrite(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config", "init", "--home", str(cli_home)])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_init_force(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, [
            "config", "init", "--home", str(cli_home), "--force",
            "--transport", "graphql", "--server-url", "https://api.example.com",
        ])
        assert result.exit_code == 0
        show = runner.invoke(main, ["config", "show", "--home", str(cli_home)])
        assert "transport: graphql" in show.output
        assert "https://api.example.com" in show.output

    def test_graphql_needs_url(self, tmp_path: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, [
            "config", "init", "--home", str(tmp_path / "h"), "--transport", "graphql",
        ])
        assert result.exit_code == 1
        assert not (tmp_path / "h" / "config.yaml").exists()

    def test_show(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config", "show", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "transport: local" in result.output
        assert "metadata_batch_size: null" in result.output


class TestSyncCommands:
    """Tests for sync run/status/validate/recover."""

    def test_run(self, cli_home: Path, runner: CliRunner) -> None:
        trip = open_store(cli_home).create(EntityType.TRIP, {"name": "Alps"})

        result = runner.invoke(main, ["sync", "run", "--home", str(cli_home)])
        assert result.exit_code == 0, result.output
        assert "Cycle completed" in result.output
        assert open_store(cli_home).get(trip.id).sync_status == SyncStatus.IN_SYNC

    def test_run_transfers_files(self, cli_home: Path, runner: CliRunner) -> None:
        store = open_store(cli_home)
        trip = store.create(EntityType.TRIP, {"name": "Alps"})
        memory = store.create(EntityType.MEMORY, {"trip_id": trip.id})
        store.file_path("a.jpg").write_bytes(b"jpeg")
        media = store.create(
            EntityType.MEDIA_ITEM,
            {"memory_id": memory.id, "object_key": "a.jpg", "file_size": 4},
            file_status=SyncStatus.NEEDS_UPLOAD,
        )

        result = runner.invoke(main, ["sync", "run", "--home", str(cli_home)])
        assert result.exit_code == 0, result.output
        assert "1 transferred" in result.output
        assert open_store(cli_home).get(media.id).file_status == SyncStatus.IN_SYNC

    def test_run_no_files(self, cli_home: Path, runner: CliRunner) -> None:
        store = open_store(cli_home)
        store.file_path("a.jpg").write_bytes(b"jpeg")
        media = store.create(
            EntityType.MEDIA_ITEM, {"object_key": "a.jpg"}, file_status=SyncStatus.NEEDS_UPLOAD,
        )
        result = runner.invoke(main, ["sync", "run", "--home", str(cli_home), "--no-files"])
        assert result.exit_code == 0, result.output
        assert open_store(cli_home).get(media.id).file_status == SyncStatus.FILES_PENDING

    def test_run_busy(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).save_state(SyncCycleState(cycle_in_progress=True))
        result = runner.invoke(main, ["sync", "run", "--home", str(cli_home)])
        assert result.exit_code == 1
        assert "Busy" in result.output

    def test_run_auth_rejected(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).create(EntityType.TRIP, {"name": "Alps"})
        with patch(
            "tripsync.transport.LocalServerTransport.upsert",
            side_effect=AuthRejectedError("token expired"),
        ):
            result = runner.invoke(main, ["sync", "run", "--home", str(cli_home)])
        assert result.exit_code == 3
        assert "Credentials rejected" in result.output
        assert "TRIPSYNC_TOKEN" in result.output

    def test_status_json(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).create(EntityType.TRIP, {"name": "Alps"})
        runner.invoke(main, ["sync", "run", "--home", str(cli_home)])

        result = runner.invoke(main, ["sync", "status", "--home", str(cli_home), "--json-out"])
        assert result.exit_code == 0
        info = json.loads(result.output)
        assert info["cycles_completed"] == 1
        assert info["entities"] == {"in_sync": 1}
        assert info["transport"] == "local"
        assert "device_id" in info

    def test_status_table(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).save_state(SyncCycleState(cycle_in_progress=True))
        result = runner.invoke(main, ["sync", "status", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "Sync Status" in result.output
        assert "marked in progress" in result.output

    def test_recover(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).save_state(SyncCycleState(cycle_in_progress=True))
        result = runner.invoke(main, ["sync", "recover", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "Cycle flag cleared: yes" in result.output
        assert not open_store(cli_home).load_state().cycle_in_progress

    def test_recover_nothing(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, ["sync", "recover", "--home", str(cli_home)])
        assert "Nothing to recover" in result.output

    def test_validate_clean(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).create(EntityType.TRIP, {"name": "Alps"})
        result = runner.invoke(main, ["sync", "validate", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "No violations" in result.output

    def test_validate_strict(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).create(EntityType.MEMORY, {"trip_id": "ghost"})
        result = runner.invoke(main, ["sync", "validate", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "1 violation(s)" in result.output

        strict = runner.invoke(main, ["sync", "validate", "--home", str(cli_home), "--strict"])
        assert strict.exit_code == 1


class TestFilesCommands:
    """Tests for files status/process."""

    def test_status_empty(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, ["files", "status", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "All files in sync" in result.output

    def test_status_lists_pending(self, cli_home: Path, runner: CliRunner) -> None:
        open_store(cli_home).create(
            EntityType.GPX_TRACK, {"object_key": "day1.gpx", "file_size": 2048},
            file_status=SyncStatus.NEEDS_DOWNLOAD,
        )
        result = runner.invoke(main, ["files", "status", "--home", str(cli_home)])
        assert "day1.gpx" in result.output
        assert "2,048" in result.output

    def test_process_nothing(self, cli_home: Path, runner: CliRunner) -> None:
        result = runner.invoke(main, ["files", "process", "--home", str(cli_home)])
        assert result.exit_code == 0
        assert "Nothing to transfer" in result.output

    def test_process_retry_failed(self, cli_home: Path, runner: CliRunner) -> None:
        store = open_store(cli_home)
        store.file_path("a.jpg").write_bytes(b"jpeg")
        media = store.create(
            EntityType.MEDIA_ITEM, {"object_key": "a.jpg"},
            sync=False, file_status=SyncStatus.SYNC_ERROR,
        )
        entity = store.get(media.id)
        entity.sync_status = SyncStatus.IN_SYNC
        store.put(entity)

        result = runner.invoke(main, [
            "files", "process", "--home", str(cli_home), "--retry-failed", "--quality", "poor",
        ])
        assert result.exit_code == 0, result.output
        assert "poor" in result.output
        assert "ok" in result.output
        assert open_store(cli_home).get(media.id).file_status == SyncStatus.IN_SYNC


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
