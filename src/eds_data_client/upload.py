import logging
from typing import List, Optional
from uuid import UUID

from eds_data_client.db.activity.activity_orm import ActivityAction, TargetType
from eds_data_client.exceptions import (
    BackendUploadError,
    CapacityExceededError,
    DataClientError,
    DriveError,
    NodeTokenError,
    ReservationNotFoundError,
)
from eds_data_client.models.file import EDSFileInDB, FileMeta
from eds_data_client.models.reservation import UploadSession
from eds_data_client.quota_manager import QuotaManager
from eds_data_client.repositories.drive_repository import DriveRepository
from eds_data_client.repositories.pg_repositoryActivity import ActivityRepository
from eds_data_client.repositories.pg_repositoryFolder import FolderRepository
from eds_data_client.tokens import NodeTokenProvider

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """
    Drives an upload across the quota manager and the storage backend.

    Once a reservation exists, every exit path other than a successful finalize
    releases it before the error leaves this class.
    """

    def __init__(
        self,
        quota: QuotaManager,
        tokens: NodeTokenProvider,
        drive: DriveRepository,
        folders: FolderRepository,
        activity: ActivityRepository,
        max_node_attempts: int = 3,
        reservation_ttl_seconds: int = 3600,
    ):
        self.quota = quota
        self.tokens = tokens
        self.drive = drive
        self.folders = folders
        self.activity = activity
        self.max_node_attempts = max_node_attempts
        self.reservation_ttl_seconds = reservation_ttl_seconds

    async def init_upload(
        self,
        name: str,
        size: int,
        mime_type: str,
        folder_id: Optional[UUID] = None,
        folder_path: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> UploadSession:
        """
        Reserves space and opens a resumable session on the backend; the caller uploads the bytes itself.

        Up to `max_node_attempts` nodes are tried. A node is skipped when its token cannot be
        refreshed, when a concurrent upload took its space, or when the backend refuses the session.
        """
        name = (name or "").strip()
        if not name or not mime_type or not size:
            raise ValueError("Missing required fields: name, size, mimeType")
        if size <= 0:
            raise ValueError("size must be positive")

        folder_id = await self._resolve_folder(folder_id, folder_path)

        attempted: List[UUID] = []
        capacity_only = True
        last_error = "No available nodes"
        for _ in range(self.max_node_attempts):
            selection = await self.quota.select_node_for_upload(size, attempted)
            if selection is None:
                break
            node_id = selection.node_id
            attempted.append(node_id)

            try:
                access_token = await self.tokens.get_valid_access_token(node_id)
            except NodeTokenError as e:
                logger.warning(f"Node {node_id} token invalid, trying next node: {e}")
                capacity_only = False
                last_error = str(e)
                continue

            try:
                reservation_id = await self.quota.create_reservation(node_id, size)
            except CapacityExceededError:
                logger.info(f"Lost the race for space on node {node_id}, trying next node")
                last_error = f"Node {node_id} ran out of space"
                continue

            try:
                upload_url = await self.drive.create_resumable_session(access_token, name, mime_type, size, origin)
            except DriveError as e:
                logger.warning(f"Node {node_id} refused the upload session ({e.status_code}), trying next node")
                await self._release(reservation_id, "failed")
                capacity_only = False
                last_error = str(e)
                continue
            except BaseException:
                await self._release(reservation_id, "failed")
                raise

            await self.activity.record(
                ActivityAction.UPLOAD_INIT, TargetType.RESERVATION, reservation_id,
                {"name": name, "size": str(size), "nodeId": str(node_id)},
            )
            return UploadSession(
                upload_url=upload_url,
                node_id=node_id,
                reservation_id=reservation_id,
                access_token=access_token,
                folder_id=folder_id,
                expires_in=self.reservation_ttl_seconds,
            )

        if not attempted or capacity_only:
            raise CapacityExceededError(size)
        raise BackendUploadError(f"Upload failed after {len(attempted)} attempts: {last_error}")

    async def finalize_upload(
        self, backend_file_id: str, node_id: UUID, reservation_id: UUID, file_meta: FileMeta
    ) -> EDSFileInDB:
        try:
            return await self.quota.finalize_upload(node_id, reservation_id, file_meta, backend_file_id)
        except BaseException:
            await self._release(reservation_id, "failed")
            raise

    async def cancel_upload(self, reservation_id: UUID) -> bool:
        return await self.quota.release_reservation(reservation_id, "cancelled")

    async def upload_file(
        self, name: str, content: bytes, mime_type: Optional[str] = None, folder_id: Optional[UUID] = None
    ) -> EDSFileInDB:
        """One-shot upload through the server: reserve, push, finalize."""
        name = (name or "").strip()
        if not name:
            raise ValueError("No file provided")
        size = len(content)
        if size <= 0:
            raise ValueError("Empty files cannot be uploaded")
        mime_type = mime_type or "application/octet-stream"
        if folder_id is not None:
            await self.folders.get(folder_id)

        node_id, reservation_id = await self._reserve_any(size)

        backend_file_id: Optional[str] = None
        access_token: Optional[str] = None
        try:
            access_token = await self.tokens.get_valid_access_token(node_id)
            backend_file_id = await self.drive.upload_simple(access_token, name, mime_type, content)
            meta = FileMeta(name=name, size=size, mime_type=mime_type, folder_id=folder_id)
            return await self.quota.finalize_upload(node_id, reservation_id, meta, backend_file_id)
        except BaseException as e:
            logger.error(f"Upload of '{name}' to node {node_id} failed: {e!r}")
            await self._release(reservation_id, "failed")
            if backend_file_id and access_token:
                await self._discard_backend_object(access_token, backend_file_id)
            raise

    # ――― helpers ――― #

    async def _resolve_folder(self, folder_id: Optional[UUID], folder_path: Optional[str]) -> Optional[UUID]:
        if folder_id is not None:
            await self.folders.get(folder_id)
            return folder_id
        if not folder_path:
            return None
        folder_id, created = await self.folders.ensure_path(folder_path)
        for folder in created:
            await self.activity.record(
                ActivityAction.CREATE_FOLDER, TargetType.FOLDER, folder.id,
                {"name": folder.name, "path": folder.path},
            )
        return folder_id

    async def _reserve_any(self, size: int) -> tuple[UUID, UUID]:
        attempted: List[UUID] = []
        for _ in range(self.max_node_attempts):
            selection = await self.quota.select_node_for_upload(size, attempted)
            if selection is None:
                break
            attempted.append(selection.node_id)
            try:
                return selection.node_id, await self.quota.create_reservation(selection.node_id, size)
            except CapacityExceededError:
                logger.info(f"Lost the race for space on node {selection.node_id}, trying next node")
        raise CapacityExceededError(size)

    async def _release(self, reservation_id: UUID, reason: str) -> None:
        # runs on error paths: the original exception must win over a failed release
        try:
            await self.quota.release_reservation(reservation_id, reason)
        except ReservationNotFoundError:
            logger.warning(f"Reservation {reservation_id} vanished before it could be released")
        except DataClientError:
            logger.exception(f"Could not release reservation {reservation_id}; the sweeper will reclaim it")

    async def _discard_backend_object(self, access_token: str, backend_file_id: str) -> None:
        try:
            await self.drive.delete_file(access_token, backend_file_id)
        except DriveError:
            logger.exception(f"Orphaned backend object {backend_file_id} could not be removed")
