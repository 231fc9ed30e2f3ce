import logging
from typing import AsyncIterator, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eds_data_client.db.activity.activity_orm import ActivityAction, TargetType
from eds_data_client.db import Base
from eds_data_client.exceptions import DatabaseError, DriveError
from eds_data_client.models import (
    ActivityPage,
    EDSFileInDB,
    FolderInDB,
    NodeInDB,
    SearchResult,
    StorageStats,
)
from eds_data_client.quota_manager import QuotaManager
from eds_data_client.repositories import (
    ActivityRepository,
    DriveRepository,
    FileRepository,
    FolderRepository,
    NodeRepository,
)
from eds_data_client.sweeper import ReservationSweeper
from eds_data_client.tokens import NodeTokenProvider
from eds_data_client.upload import UploadOrchestrator
from eds_data_client.vault import TokenVault

logger = logging.getLogger(__name__)

SEARCH_MIN_CHARS = 2
SEARCH_LIMIT = 5


class EDSClient:
    """
    Single entry point for the storage aggregator.
    Uploads go through `uploads`; everything else is administrative.
    """

    def __init__(
        self,
        node_repo: NodeRepository,
        folder_repo: FolderRepository,
        file_repo: FileRepository,
        activity_repo: ActivityRepository,
        drive_repo: DriveRepository,
        vault: TokenVault,
        quota: QuotaManager,
        tokens: NodeTokenProvider,
        uploads: UploadOrchestrator,
        sweeper: ReservationSweeper,
        engine: Optional[AsyncEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.nodes = node_repo
        self.folders = folder_repo
        self.files = file_repo
        self.activity = activity_repo
        self.drive = drive_repo
        self.vault = vault
        self.quota = quota
        self.tokens = tokens
        self.uploads = uploads
        self.sweeper = sweeper
        self._engine = engine
        self.session_factory = session_factory

    async def check_connections(self) -> dict[str, str]:
        """Returns a status per dependency: "ok" or "failed: <reason>"."""
        statuses = {}
        try:
            await self.nodes.check_connection()
            statuses["postgres"] = "ok"
        except DatabaseError as e:
            statuses["postgres"] = f"failed: {e}"

        statuses["vault"] = "ok" if self.vault.configured else "failed: VAULT__ENCRYPTION_KEY is not set"
        return statuses

    async def create_tables(self):
        """Creates every table that does not exist yet."""
        if self._engine is None:
            raise DatabaseError("Client was built without an engine.")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def aclose(self):
        await self.sweeper.stop()
        await self.drive.aclose()
        if self._engine is not None:
            await self._engine.dispose()

    # ――― nodes ――― #

    def get_auth_url(self) -> str:
        return self.drive.build_auth_url()

    async def link_node_from_code(self, code: str) -> NodeInDB:
        """
        Completes the OAuth consent flow. A known account gets fresh tokens and is reactivated;
        a new one becomes a node sized from the backend's quota.
        """
        tokens = await self.drive.exchange_code(code)
        if not tokens.refresh_token:
            raise DriveError("Authorization returned no refresh token")
        email = await self.drive.get_user_email(tokens.access_token)
        if not email:
            raise DriveError("Authorization returned no account email")

        access_enc = self.vault.encrypt(tokens.access_token)
        refresh_enc = self.vault.encrypt(tokens.refresh_token)

        existing = await self.nodes.get_by_email(email)
        if existing:
            await self.nodes.update_tokens(
                existing.id, access_enc, tokens.expires_at, refresh_token_encrypted=refresh_enc, reactivate=True
            )
            logger.info(f"Re-linked storage node {existing.id} ({email})")
            return await self.nodes.get(existing.id)

        quota = await self.drive.get_storage_quota(tokens.access_token)
        node = await self.nodes.create(
            email=email,
            access_token_encrypted=access_enc,
            refresh_token_encrypted=refresh_enc,
            token_expires_at=tokens.expires_at,
            total_space=quota.total_space,
            used_space=quota.used_space,
        )
        await self.activity.record(ActivityAction.NODE_ADDED, TargetType.NODE, node.id, {"email": email})
        return await self.nodes.get(node.id)

    async def list_nodes(self) -> List[NodeInDB]:
        return await self.nodes.list_all()

    async def toggle_node(self, node_id: UUID, is_active: bool) -> NodeInDB:
        node = await self.nodes.set_active(node_id, is_active)
        await self.activity.record(
            ActivityAction.NODE_TOGGLED, TargetType.NODE, node_id, {"email": node.email, "isActive": is_active}
        )
        return node

    async def delete_node(self, node_id: UUID) -> None:
        node = await self.nodes.delete(node_id)
        await self.activity.record(ActivityAction.NODE_REMOVED, TargetType.NODE, node_id, {"email": node.email})

    async def sync_node(self, node_id: UUID) -> NodeInDB:
        """Overwrites total/used with the backend's numbers. Reserved bytes are left as they are."""
        await self.nodes.get(node_id)
        access_token = await self.tokens.get_valid_access_token(node_id)
        quota = await self.drive.get_storage_quota(access_token)
        node = await self.nodes.apply_quota_sync(node_id, quota.total_space, quota.used_space)
        await self.activity.record(
            ActivityAction.NODE_SYNC, TargetType.NODE, node_id,
            {"email": node.email, "totalSpace": str(node.total_space), "usedSpace": str(node.used_space)},
        )
        return node

    async def stats(self) -> StorageStats:
        return await self.quota.get_total_storage_stats()

    # ――― folders ――― #

    async def list_folders(self, parent_id: Optional[UUID] = None) -> List[FolderInDB]:
        return await self.folders.list_children(parent_id)

    async def create_folder(self, name: str, parent_id: Optional[UUID] = None) -> FolderInDB:
        folder = await self.folders.create(name, parent_id)
        await self.activity.record(
            ActivityAction.CREATE_FOLDER, TargetType.FOLDER, folder.id, {"name": folder.name, "path": folder.path}
        )
        return folder

    async def rename_folder(self, folder_id: UUID, name: str) -> FolderInDB:
        before = await self.folders.get(folder_id)
        folder = await self.folders.rename(folder_id, name)
        await self.activity.record(
            ActivityAction.RENAME_FOLDER, TargetType.FOLDER, folder_id,
            {"from": before.name, "to": folder.name, "path": folder.path},
        )
        return folder

    async def delete_folder(self, folder_id: UUID) -> None:
        folder = await self.folders.delete(folder_id)
        await self.activity.record(
            ActivityAction.DELETE_FOLDER, TargetType.FOLDER, folder_id, {"name": folder.name, "path": folder.path}
        )

    # ――― files ――― #

    async def list_files(self, folder_id: Optional[UUID] = None) -> List[EDSFileInDB]:
        return await self.files.list_in_folder(folder_id)

    async def get_file(self, file_id: UUID) -> EDSFileInDB:
        return await self.files.get(file_id)

    async def download_file(self, file_id: UUID) -> Tuple[EDSFileInDB, AsyncIterator[bytes]]:
        """Raises FileDeletedError for soft-deleted files. The stream is already open when this returns."""
        file = await self.files.get(file_id)
        access_token = await self.tokens.get_valid_access_token(file.node_id)
        stream = await self.drive.open_file_stream(access_token, file.backend_file_id)
        await self.activity.record(ActivityAction.DOWNLOAD, TargetType.FILE, file_id, {"name": file.name})
        return file, stream

    async def move_file(self, file_id: UUID, folder_id: Optional[UUID]) -> EDSFileInDB:
        file, from_folder = await self.files.move(file_id, folder_id)
        await self.activity.record(
            ActivityAction.MOVE_FILE, TargetType.FILE, file_id,
            {
                "name": file.name,
                "fromFolderId": str(from_folder) if from_folder else None,
                "toFolderId": str(folder_id) if folder_id else None,
            },
        )
        return file

    async def delete_file(self, file_id: UUID) -> EDSFileInDB:
        """Soft delete; the backend object is kept."""
        file = await self.quota.delete_file(file_id)
        await self.activity.record(
            ActivityAction.DELETE, TargetType.FILE, file_id, {"name": file.name, "size": str(file.size)}
        )
        return file

    async def search(self, query: str) -> List[SearchResult]:
        """Up to five folders followed by up to five live files whose names contain `query`."""
        query = (query or "").strip()
        if len(query) < SEARCH_MIN_CHARS:
            return []
        folders = await self.folders.search(query, SEARCH_LIMIT)
        files = await self.files.search(query, SEARCH_LIMIT)
        return [SearchResult(type="FOLDER", data=f) for f in folders] + [
            SearchResult(type="FILE", data=f) for f in files
        ]

    # ――― activity ――― #

    async def list_activity(self, page: int = 1, limit: int = 50) -> ActivityPage:
        return await self.activity.list_page(page, limit)

    async def clear_activity(self) -> int:
        return await self.activity.clear()
