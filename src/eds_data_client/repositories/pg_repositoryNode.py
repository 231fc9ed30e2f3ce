import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update, delete, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from eds_data_client.db.base import get_session
from eds_data_client.db.nodes.node_orm import StorageNodeORM
from eds_data_client.db.nodes.reservation_orm import ReservationORM, ReservationStatus
from eds_data_client.db.drive.file_orm import EDSFileORM
from eds_data_client.exceptions import DatabaseError, NodeNotFoundError, NodeInUseError
from eds_data_client.models.node import NodeInDB

logger = logging.getLogger(__name__)


class NodeRepository:
    """
    Administrative CRUD over storage nodes.
    reserved_space is never written here, only by the QuotaManager.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_connection(self):
        """Runs a trivial query against the database."""
        logger.debug("Checking database connection...")
        async with get_session(self._session_factory) as session:
            try:
                await session.execute(text("SELECT 1"))
                logger.debug("Database connection successful.")
            except SQLAlchemyError as e:
                logger.error(f"Database connection failed: {e}")
                raise DatabaseError("Failed to connect to the database.") from e

    async def get_orm(self, node_id: UUID) -> Optional[StorageNodeORM]:
        async with get_session(self._session_factory) as session:
            return await session.get(StorageNodeORM, node_id)

    async def get_by_email(self, email: str) -> Optional[StorageNodeORM]:
        async with get_session(self._session_factory) as session:
            res = await session.execute(select(StorageNodeORM).where(StorageNodeORM.email == email))
            return res.scalar_one_or_none()

    async def get(self, node_id: UUID) -> NodeInDB:
        node = await self.get_orm(node_id)
        if not node:
            raise NodeNotFoundError(f"Storage node {node_id} not found.")
        return NodeInDB.model_validate(node)

    async def list_all(self) -> List[NodeInDB]:
        """All nodes, newest first, with the number of live files on each."""
        async with get_session(self._session_factory) as session:
            file_count = (
                select(func.count(EDSFileORM.id))
                .where(EDSFileORM.node_id == StorageNodeORM.id, EDSFileORM.deleted_at.is_(None))
                .correlate(StorageNodeORM)
                .scalar_subquery()
            )
            q = select(StorageNodeORM, file_count).order_by(StorageNodeORM.created_at.desc())
            rows = (await session.execute(q)).all()
            result = []
            for node, count in rows:
                item = NodeInDB.model_validate(node)
                item.file_count = count
                result.append(item)
            return result

    async def create(
        self,
        email: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str,
        token_expires_at: Optional[datetime],
        total_space: int,
        used_space: int,
    ) -> StorageNodeORM:
        async with get_session(self._session_factory) as session:
            try:
                node = StorageNodeORM(
                    email=email,
                    access_token_encrypted=access_token_encrypted,
                    refresh_token_encrypted=refresh_token_encrypted,
                    token_expires_at=token_expires_at,
                    total_space=total_space,
                    used_space=used_space,
                    reserved_space=0,
                    is_active=True,
                    last_sync_at=datetime.now(timezone.utc),
                )
                session.add(node)
                await session.flush()
                await session.refresh(node)
                await session.commit()
                logger.info(f"Storage node {node.id} linked for {email}")
                return node
            except IntegrityError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to create storage node for {email}: {e}") from e

    async def update_tokens(
        self,
        node_id: UUID,
        access_token_encrypted: str,
        token_expires_at: Optional[datetime],
        refresh_token_encrypted: Optional[str] = None,
        reactivate: bool = False,
    ) -> None:
        values = {
            "access_token_encrypted": access_token_encrypted,
            "token_expires_at": token_expires_at,
            "updated_at": func.now(),
        }
        if refresh_token_encrypted:
            values["refresh_token_encrypted"] = refresh_token_encrypted
        if reactivate:
            values["is_active"] = True
        await self._update(node_id, values)

    async def set_active(self, node_id: UUID, is_active: bool) -> NodeInDB:
        await self._update(node_id, {"is_active": is_active, "updated_at": func.now()})
        return await self.get(node_id)

    async def apply_quota_sync(self, node_id: UUID, total_space: int, used_space: int) -> NodeInDB:
        """
        Overwrites total/used with what the backend reports.
        In-flight reservations are left alone.
        """
        await self._update(node_id, {
            "total_space": total_space,
            "used_space": used_space,
            "last_sync_at": datetime.now(timezone.utc),
            "updated_at": func.now(),
        })
        return await self.get(node_id)

    async def delete(self, node_id: UUID) -> StorageNodeORM:
        """
        Hard delete, only for nodes that own no live files and hold no active reservations.
        Otherwise the node should be deactivated instead.

        The node row is locked first; reserve and finalize both update that row,
        so they wait for this transaction instead of racing it.
        """
        async with get_session(self._session_factory) as session:
            try:
                node = (await session.execute(
                    select(StorageNodeORM).where(StorageNodeORM.id == node_id).with_for_update()
                )).scalar_one_or_none()
                if not node:
                    raise NodeNotFoundError(f"Storage node {node_id} not found.")

                live_files = select(EDSFileORM.id).where(
                    EDSFileORM.node_id == node_id, EDSFileORM.deleted_at.is_(None)
                )
                open_reservations = select(ReservationORM.id).where(
                    ReservationORM.node_id == node_id, ReservationORM.status == ReservationStatus.active
                )
                if (await session.execute(select(live_files.exists()))).scalar():
                    raise NodeInUseError("Cannot delete node with existing files. Delete files first.")
                if node.reserved_space > 0 or (await session.execute(select(open_reservations.exists()))).scalar():
                    raise NodeInUseError("Cannot delete node while uploads are in flight.")

                # only soft-deleted files and closed reservations go with the node
                await session.execute(
                    delete(EDSFileORM)
                    .where(EDSFileORM.node_id == node_id, EDSFileORM.deleted_at.is_not(None))
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    delete(ReservationORM)
                    .where(ReservationORM.node_id == node_id, ReservationORM.status != ReservationStatus.active)
                    .execution_options(synchronize_session=False)
                )
                res = await session.execute(
                    delete(StorageNodeORM)
                    .where(
                        StorageNodeORM.id == node_id,
                        StorageNodeORM.reserved_space == 0,
                        ~live_files.exists(),
                        ~open_reservations.exists(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    await session.rollback()
                    raise NodeInUseError("Node picked up an upload while being deleted.")
                await session.commit()
                return node
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to delete node {node_id}: {e}") from e

    async def _update(self, node_id: UUID, values: dict) -> None:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(
                    update(StorageNodeORM)
                    .where(StorageNodeORM.id == node_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    raise NodeNotFoundError(f"Storage node {node_id} not found.")
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to update node {node_id}: {e}") from e
