import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from eds_data_client.db.activity.activity_orm import ActivityLogORM, ActivityAction, TargetType
from eds_data_client.db.base import get_session
from eds_data_client.exceptions import DatabaseError
from eds_data_client.models.activity import ActivityEntry, ActivityPage, Pagination

logger = logging.getLogger(__name__)


class ActivityRepository:
    """
    Append-only audit trail.

    `record` is best-effort: an audit write never fails the operation that triggered it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        action: ActivityAction,
        target_type: TargetType,
        target_id: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        async with get_session(self._session_factory) as session:
            try:
                entry = ActivityLogORM(
                    action=action,
                    target_type=target_type,
                    target_id=str(target_id) if target_id is not None else None,
                    metadata_=metadata or {},
                )
                session.add(entry)
                await session.commit()
                return ActivityEntry.model_validate(entry)
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to write activity entry: {e}") from e

    async def record(
        self,
        action: ActivityAction,
        target_type: TargetType,
        target_id: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.append(action, target_type, target_id, metadata)
        except DatabaseError as e:
            logger.warning(f"Activity entry {action.value} for {target_type.value} {target_id} dropped: {e}")

    async def list_page(self, page: int = 1, limit: int = 50) -> ActivityPage:
        page = max(page, 1)
        limit = max(min(limit, 500), 1)
        async with get_session(self._session_factory) as session:
            total = (await session.execute(select(func.count(ActivityLogORM.id)))).scalar_one()
            q = (
                select(ActivityLogORM)
                .order_by(ActivityLogORM.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = (await session.execute(q)).scalars().all()
            return ActivityPage(
                activities=[ActivityEntry.model_validate(r) for r in rows],
                pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
            )

    async def clear(self) -> int:
        """Deletes every entry. The only way rows ever leave this table."""
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(delete(ActivityLogORM))
                await session.commit()
                return res.rowcount
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to clear activity log: {e}") from e
