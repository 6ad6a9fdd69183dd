"""
Sync configuration -- ~/.tripsync/config.yaml.

Everything tunable about the engine lives in one pydantic model,
persisted as YAML. A missing or broken file means defaults.

Example config.yaml:
    transport: graphql
    server_url: https://api.example.com
    token_env_var: TRIPSYNC_TOKEN
    network_quality: good
    metadata_batch_size: 20   # omit to size batches by network quality
    retry:
      base_delay: 1.0
      max_retries: 3
"""

from __future__ import annotations

import logging
import os
import socket
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SYNC_HOME
from .blobs import BlobClient
from .conflict import ConflictResolver
from .dependency import DependencyResolver
from .file_transfer import FileTransferManager
from .network import NetworkQuality
from .orchestrator import SyncOrchestrator
from .retry import RetryPolicy
from .store import LocalStore
from .transport import GraphQLTransport, LocalServerTransport, SyncTransport
from .validator import ConsistencyValidator

logger = logging.getLogger("tripsync.config")

CONFIG_FILENAME = "config.yaml"


class TransportType(str, Enum):
    GRAPHQL = "graphql"
    LOCAL = "local"


class SyncConfig(BaseModel):
    """Engine configuration."""

    transport: TransportType = TransportType.LOCAL
    server_url: Optional[str] = None
    local_server_path: str = "~/.tripsync/server"
    token_env_var: str = "TRIPSYNC_TOKEN"
    device_id: str = Field(default_factory=socket.gethostname)

    request_timeout: float = Field(default=30.0, gt=0)
    transfer_timeout: float = Field(default=120.0, gt=0)
    # Fixed overrides; unset means sized from the network quality tier.
    metadata_batch_size: Optional[int] = Field(default=None, ge=1)
    metadata_concurrency: Optional[int] = Field(default=None, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    network_quality: NetworkQuality = NetworkQuality.FAIR
    tombstone_retention_days: int = Field(default=30, ge=0)
    small_file_bytes: int = Field(default=1_000_000, ge=0)
    large_file_bytes: int = Field(default=50_000_000, ge=0)


def resolve_home(home: Optional[Path] = None) -> Path:
    return Path(home or SYNC_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> SyncConfig:
    """Load configuration from ``<home>/config.yaml``.

    Falls back to defaults (with a warning) on unreadable files.
    """
    config_file = resolve_home(home) / CONFIG_FILENAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load sync config: %s", exc)
    return SyncConfig()


def save_config(config: SyncConfig, home: Optional[Path] = None) -> Path:
    """Write configuration to ``<home>/config.yaml``."""
    home_path = resolve_home(home)
    home_path.mkdir(parents=True, exist_ok=True)
    config_file = home_path / CONFIG_FILENAME
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file


def create_transport(config: SyncConfig) -> SyncTransport:
    """Build the transport a config asks for.

    Raises:
        ValueError: If the graphql transport has no server URL.
    """
    if config.transport == TransportType.GRAPHQL:
        if not config.server_url:
            raise ValueError("server_url is required for the graphql transport")
        token = os.environ.get(config.token_env_var)
        if not token:
            logger.warning("No token in $%s, requests will be unauthenticated", config.token_env_var)
        return GraphQLTransport(config.server_url, token=token, timeout=config.request_timeout)

    transport = LocalServerTransport(Path(config.local_server_path).expanduser())
    transport.initialize()
    return transport


def build_engine(
    config: SyncConfig,
    home: Optional[Path] = None,
    transport: Optional[SyncTransport] = None,
) -> SyncOrchestrator:
    """Wire store, transport, file manager and orchestrator from a config."""
    store = LocalStore(resolve_home(home))
    store.initialize()
    transport = transport or create_transport(config)

    files = FileTransferManager(
        store,
        transport,
        blob_client=BlobClient(timeout=config.transfer_timeout),
        retry_policy=config.retry,
        quality=config.network_quality,
        small_bytes=config.small_file_bytes,
        large_bytes=config.large_file_bytes,
    )
    return SyncOrchestrator(
        store,
        transport,
        resolver=DependencyResolver(),
        conflicts=ConflictResolver(),
        files=files,
        validator=ConsistencyValidator(),
        retry_policy=config.retry,
        batch_size=config.metadata_batch_size,
        concurrency=config.metadata_concurrency,
        tombstone_retention=timedelta(days=config.tombstone_retention_days),
    )
