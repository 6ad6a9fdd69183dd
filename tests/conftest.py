"""Shared test fixtures for tripsync."""

from __future__ import annotations

from pathlib import Path

import pytest

from tripsync.store import LocalStore
from tripsync.transport import LocalServerTransport


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary sync home directory."""
    sync_home = tmp_path / ".tripsync"
    sync_home.mkdir()
    return sync_home

@pytest.fixture
def store(home: Path) -> LocalStore:
    """Provide an initialized local store."""
    s = LocalStore(home)
    s.initialize()
    return s

@pytest.fixture
def server(tmp_path: Path) -> LocalServerTransport:
    """Provide a local directory server."""
    t = LocalServerTransport(tmp_path / "server")
    t.initialize()
    return t

@pytest.fixture
def sleeps() -> list[float]:
    """Collects backoff delays instead of sleeping."""
    return []
