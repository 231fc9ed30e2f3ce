# File: src/eds_data_client/__init__.py

from typing import Optional

import httpx
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from .client import EDSClient
from .config import get_settings, DataClientConfig, PostgresConfig, DriveConfig, QuotaConfig, VaultConfig
from .quota_manager import QuotaManager
from .repositories import (
    ActivityRepository,
    DriveRepository,
    FileRepository,
    FolderRepository,
    NodeRepository,
)
from .sweeper import ReservationSweeper
from .tokens import NodeTokenProvider
from .upload import UploadOrchestrator
from .vault import TokenVault
from .exceptions import *


def create_engine_for(config: PostgresConfig):
    """Pool options and server settings only apply to the PostgreSQL driver."""
    dsn = config.get_pg_dsn()
    if make_url(dsn).get_backend_name() != "postgresql":
        return create_async_engine(dsn)
    return create_async_engine(
        dsn,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=config.pool_pre_ping,
        connect_args={"server_settings": {"application_name": config.application_name}},
    )


def create_data_client(
    config: Optional[DataClientConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EDSClient:
    """
    Builds an EDSClient with all of its collaborators.

    :param config: Full configuration. Read from the environment / .env when omitted.
    :param http_client: Shared client for the Drive API (tests pass one with a mock transport).
    """
    if config is None:
        config = get_settings().to_client_config()

    engine = create_engine_for(config.postgres)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)

    node_repo = NodeRepository(session_factory)
    folder_repo = FolderRepository(session_factory)
    file_repo = FileRepository(session_factory)
    activity_repo = ActivityRepository(session_factory)
    drive_repo = DriveRepository(config.drive, http_client=http_client)
    vault = TokenVault(config.vault)

    quota = QuotaManager(
        session_factory,
        activity_repo=activity_repo,
        reservation_ttl_seconds=config.quota.reservation_ttl_seconds,
    )
    tokens = NodeTokenProvider(
        node_repo, vault, drive_repo, refresh_buffer_seconds=config.quota.token_refresh_buffer_seconds
    )
    uploads = UploadOrchestrator(
        quota=quota,
        tokens=tokens,
        drive=drive_repo,
        folders=folder_repo,
        activity=activity_repo,
        max_node_attempts=config.quota.max_node_attempts,
        reservation_ttl_seconds=config.quota.reservation_ttl_seconds,
    )
    sweeper = ReservationSweeper(quota, interval_seconds=config.quota.sweep_interval_seconds)

    return EDSClient(
        node_repo=node_repo,
        folder_repo=folder_repo,
        file_repo=file_repo,
        activity_repo=activity_repo,
        drive_repo=drive_repo,
        vault=vault,
        quota=quota,
        tokens=tokens,
        uploads=uploads,
        sweeper=sweeper,
        engine=engine,
        session_factory=session_factory,
    )


__all__ = [
    "EDSClient", "create_data_client", "create_engine_for",
    "DataClientConfig", "PostgresConfig", "DriveConfig", "QuotaConfig", "VaultConfig",
    "QuotaManager", "UploadOrchestrator", "ReservationSweeper", "TokenVault",
    "DataClientError", "DatabaseError", "CapacityExceededError", "NotFoundError",
]
