import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, update, func, case
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from eds_data_client.db.activity.activity_orm import ActivityAction, TargetType
from eds_data_client.db.base import get_session
from eds_data_client.db.drive.file_orm import EDSFileORM
from eds_data_client.db.drive.folder_orm import EDSFolderORM
from eds_data_client.db.nodes.node_orm import StorageNodeORM
from eds_data_client.db.nodes.reservation_orm import ReservationORM, ReservationStatus
from eds_data_client.db.uow import AsyncUnitOfWork
from eds_data_client.exceptions import (
    CapacityExceededError,
    DatabaseError,
    EDSFileNotFoundError,
    FileDeletedError,
    FolderNotFoundError,
    InvalidReservationError,
    NodeNotFoundError,
    ReservationNotFoundError,
    SizeMismatchError,
)
from eds_data_client.models.file import EDSFileInDB, FileMeta
from eds_data_client.models.node import NodeQuota, NodeSelection, StorageStats
from eds_data_client.models.reservation import ReservationInDB
from eds_data_client.repositories.pg_repositoryActivity import ActivityRepository
from eds_data_client.repositories.pg_repositoryFile import sibling_file_slugs
from eds_data_client.utils.slug import generate_unique_slug, sanitize_file_name

logger = logging.getLogger(__name__)

# free bytes of a node, evaluated inside the database
AVAILABLE = StorageNodeORM.total_space - StorageNodeORM.used_space - StorageNodeORM.reserved_space


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaManager:
    """
    Space accounting across storage nodes.

    Every counter change is a conditional UPDATE keyed on the row's current state,
    so concurrent callers cannot both pass a capacity check or both close the same reservation.
    No method here talks to the storage backend.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        activity_repo: Optional[ActivityRepository] = None,
        reservation_ttl_seconds: int = 3600,
    ):
        self._session_factory = session_factory
        self._activity = activity_repo
        self._ttl = timedelta(seconds=reservation_ttl_seconds)

    # ――― selection ――― #

    async def get_active_nodes(self) -> List[NodeQuota]:
        async with get_session(self._session_factory) as session:
            q = (
                select(StorageNodeORM)
                .where(StorageNodeORM.is_active.is_(True))
                .order_by(StorageNodeORM.created_at.asc())
            )
            nodes = (await session.execute(q)).scalars().all()
            return [
                NodeQuota(
                    id=n.id,
                    email=n.email,
                    total_space=n.total_space,
                    used_space=n.used_space,
                    reserved_space=n.reserved_space,
                    available_space=n.available_space,
                )
                for n in nodes
            ]

    async def select_node_for_upload(
        self, requested_bytes: int, exclude_node_ids: Iterable[UUID] = ()
    ) -> Optional[NodeSelection]:
        """
        Greedy pick: the active node with the most free space that still fits the request.
        Ties go to the node with less used space, then the lower id.
        Read-only; the space is only claimed by `create_reservation`.
        """
        if requested_bytes <= 0:
            raise ValueError("requested_bytes must be positive")

        excluded = list(exclude_node_ids)
        q = (
            select(StorageNodeORM.id, AVAILABLE.label("available"))
            .where(StorageNodeORM.is_active.is_(True), AVAILABLE >= requested_bytes)
            .order_by(AVAILABLE.desc(), StorageNodeORM.used_space.asc(), StorageNodeORM.id.asc())
            .limit(1)
        )
        if excluded:
            q = q.where(StorageNodeORM.id.not_in(excluded))

        async with get_session(self._session_factory) as session:
            row = (await session.execute(q)).first()
        if row is None:
            return None
        return NodeSelection(node_id=row.id, available_space=row.available)

    # ――― reservation lifecycle ――― #

    async def create_reservation(self, node_id: UUID, size: int) -> UUID:
        """
        Claims `size` bytes on the node and opens an active reservation for them.
        The capacity check and the increment are one statement.
        """
        if size <= 0:
            raise ValueError("Reservation size must be positive")

        async with AsyncUnitOfWork(self._session_factory) as uow:
            session = uow.session
            res = await session.execute(
                update(StorageNodeORM)
                .where(
                    StorageNodeORM.id == node_id,
                    StorageNodeORM.is_active.is_(True),
                    AVAILABLE >= size,
                )
                .values(reserved_space=StorageNodeORM.reserved_space + size)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                if await session.get(StorageNodeORM, node_id) is None:
                    raise NodeNotFoundError(f"Storage node {node_id} not found.")
                raise CapacityExceededError(size, node_id)

            now = _utcnow()
            reservation = ReservationORM(
                node_id=node_id,
                size=size,
                status=ReservationStatus.active,
                created_at=now,
                expires_at=now + self._ttl,
            )
            session.add(reservation)
            await session.flush()
            reservation_id = reservation.id

        logger.info(f"Reserved {size} bytes on node {node_id} (reservation {reservation_id})")
        return reservation_id

    async def finalize_upload(
        self,
        node_id: UUID,
        reservation_id: UUID,
        file_meta: FileMeta,
        backend_file_id: str,
    ) -> EDSFileInDB:
        """
        Turns an active reservation into committed space plus a file record, in one transaction.
        A reservation that is unknown, owned by another node or already closed gives
        InvalidReservationError; a size that differs from the reserved count gives SizeMismatchError.
        Either way nothing changes.
        """
        async with AsyncUnitOfWork(self._session_factory) as uow:
            session = uow.session
            res = await session.execute(
                update(ReservationORM)
                .where(
                    ReservationORM.id == reservation_id,
                    ReservationORM.node_id == node_id,
                    ReservationORM.status == ReservationStatus.active,
                    ReservationORM.size == file_meta.size,
                )
                .values(status=ReservationStatus.finalized, closed_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                reservation = await session.get(ReservationORM, reservation_id)
                if (
                    reservation is None
                    or reservation.node_id != node_id
                    or reservation.status != ReservationStatus.active
                ):
                    raise InvalidReservationError(
                        f"Reservation {reservation_id} is not an active reservation on node {node_id}."
                    )
                raise SizeMismatchError(reservation.size, file_meta.size)

            await session.execute(
                update(StorageNodeORM)
                .where(StorageNodeORM.id == node_id)
                .values(
                    reserved_space=StorageNodeORM.reserved_space - file_meta.size,
                    used_space=StorageNodeORM.used_space + file_meta.size,
                )
                .execution_options(synchronize_session=False)
            )

            if file_meta.folder_id is not None and await session.get(EDSFolderORM, file_meta.folder_id) is None:
                raise FolderNotFoundError(f"Folder {file_meta.folder_id} not found.")

            taken = await sibling_file_slugs(session, file_meta.folder_id)
            base_slug = sanitize_file_name(file_meta.slug or file_meta.name) or "file"
            file = EDSFileORM(
                name=file_meta.name,
                slug=generate_unique_slug(base_slug, taken),
                backend_file_id=backend_file_id,
                mime_type=file_meta.mime_type,
                size=file_meta.size,
                folder_id=file_meta.folder_id,
                node_id=node_id,
            )
            session.add(file)
            await session.flush()
            await session.refresh(file)
            result = file.to_pydantic()

        logger.info(f"Finalized reservation {reservation_id}: file {result.id} ({result.size} bytes) on node {node_id}")
        await self._record(
            ActivityAction.UPLOAD, TargetType.FILE, result.id,
            {"name": result.name, "size": str(result.size), "nodeId": str(node_id)},
        )
        return result

    async def release_reservation(self, reservation_id: UUID, reason: Optional[str] = None) -> bool:
        """
        Gives the reserved bytes back. Returns False when the reservation was already
        finalized or released, which makes repeated calls harmless.
        """
        row = await self._release(reservation_id, reason)
        if row is None:
            if await self.get_reservation(reservation_id) is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found.")
            return False
        logger.info(f"Released reservation {reservation_id} ({row.size} bytes on node {row.node_id}), reason={reason}")
        return True

    async def expire_stale_reservations(self, now: Optional[datetime] = None) -> int:
        """Releases every active reservation whose expiry has passed. Returns how many were reclaimed."""
        now = now or _utcnow()
        async with get_session(self._session_factory) as session:
            q = select(ReservationORM.id).where(
                ReservationORM.status == ReservationStatus.active,
                ReservationORM.expires_at <= now,
            )
            try:
                stale = (await session.execute(q)).scalars().all()
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to look up stale reservations: {e}") from e

        reclaimed = 0
        for reservation_id in stale:
            # may have been finalized since the select
            row = await self._release(reservation_id, "expired")
            if row is None:
                continue
            reclaimed += 1
            await self._record(
                ActivityAction.RESERVATION_EXPIRED, TargetType.RESERVATION, reservation_id,
                {"nodeId": str(row.node_id), "size": str(row.size)},
            )
        if reclaimed:
            logger.warning(f"Expired {reclaimed} stale reservation(s)")
        return reclaimed

    async def get_reservation(self, reservation_id: UUID) -> Optional[ReservationInDB]:
        async with get_session(self._session_factory) as session:
            reservation = await session.get(ReservationORM, reservation_id)
            return ReservationInDB.model_validate(reservation) if reservation else None

    async def _release(self, reservation_id: UUID, reason: Optional[str]) -> Optional[Row]:
        async with AsyncUnitOfWork(self._session_factory) as uow:
            session = uow.session
            res = await session.execute(
                update(ReservationORM)
                .where(
                    ReservationORM.id == reservation_id,
                    ReservationORM.status == ReservationStatus.active,
                )
                .values(status=ReservationStatus.released, closed_at=_utcnow(), reason=reason)
                .returning(ReservationORM.node_id, ReservationORM.size)
                .execution_options(synchronize_session=False)
            )
            row = res.first()
            if row is None:
                return None
            await session.execute(
                update(StorageNodeORM)
                .where(StorageNodeORM.id == row.node_id)
                .values(reserved_space=StorageNodeORM.reserved_space - row.size)
                .execution_options(synchronize_session=False)
            )
        return row

    # ――― committed files ――― #

    async def delete_file(self, file_id: UUID) -> EDSFileInDB:
        """Soft-deletes a file and returns its bytes to the node, exactly once."""
        async with AsyncUnitOfWork(self._session_factory) as uow:
            session = uow.session
            res = await session.execute(
                update(EDSFileORM)
                .where(EDSFileORM.id == file_id, EDSFileORM.deleted_at.is_(None))
                .values(deleted_at=_utcnow())
                .returning(EDSFileORM.node_id, EDSFileORM.size)
                .execution_options(synchronize_session=False)
            )
            row = res.first()
            if row is None:
                if await session.get(EDSFileORM, file_id) is None:
                    raise EDSFileNotFoundError(f"File {file_id} not found.")
                raise FileDeletedError(f"File {file_id} has already been deleted.")

            # a sync may have lowered used below this file's size
            await session.execute(
                update(StorageNodeORM)
                .where(StorageNodeORM.id == row.node_id)
                .values(used_space=case(
                    (StorageNodeORM.used_space >= row.size, StorageNodeORM.used_space - row.size),
                    else_=0,
                ))
                .execution_options(synchronize_session=False)
            )
            file = await session.get(EDSFileORM, file_id, populate_existing=True)
            result = file.to_pydantic()

        logger.info(f"File {file_id} soft-deleted, {row.size} bytes returned to node {row.node_id}")
        return result

    async def get_total_storage_stats(self) -> StorageStats:
        async with get_session(self._session_factory) as session:
            q = select(
                func.coalesce(func.sum(StorageNodeORM.total_space), 0),
                func.coalesce(func.sum(StorageNodeORM.used_space), 0),
                func.coalesce(func.sum(StorageNodeORM.reserved_space), 0),
                func.count(StorageNodeORM.id),
            ).where(StorageNodeORM.is_active.is_(True))
            total, used, reserved, count = (await session.execute(q)).one()
        return StorageStats(
            total_space=int(total),
            used_space=int(used),
            reserved_space=int(reserved),
            available_space=int(total) - int(used) - int(reserved),
            node_count=count,
        )

    async def _record(self, action: ActivityAction, target_type: TargetType, target_id, metadata: dict) -> None:
        if self._activity is not None:
            await self._activity.record(action, target_type, target_id, metadata)
