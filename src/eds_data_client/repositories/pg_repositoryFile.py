import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from eds_data_client.db.base import get_session
from eds_data_client.db.drive.file_orm import EDSFileORM
from eds_data_client.db.drive.folder_orm import EDSFolderORM
from eds_data_client.exceptions import (
    DatabaseError,
    EDSFileNotFoundError,
    FileDeletedError,
    FolderNotFoundError,
)
from eds_data_client.models.file import EDSFileInDB
from eds_data_client.utils.slug import generate_unique_slug

logger = logging.getLogger(__name__)


async def sibling_file_slugs(session: AsyncSession, folder_id: Optional[UUID], exclude_id: Optional[UUID] = None) -> set[str]:
    """Slugs already used in a folder, soft-deleted rows included (they keep their unique key)."""
    folder_clause = EDSFileORM.folder_id.is_(None) if folder_id is None else EDSFileORM.folder_id == folder_id
    q = select(EDSFileORM.slug).where(folder_clause)
    if exclude_id is not None:
        q = q.where(EDSFileORM.id != exclude_id)
    return set((await session.execute(q)).scalars().all())


class FileRepository:
    """
    Read side of committed files plus moves.
    Creation and soft-delete change node accounting and live in QuotaManager.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, file_id: UUID, include_deleted: bool = False) -> EDSFileInDB:
        async with get_session(self._session_factory) as session:
            orm = await session.get(EDSFileORM, file_id)
            if not orm:
                raise EDSFileNotFoundError(f"File {file_id} not found.")
            if orm.deleted_at is not None and not include_deleted:
                raise FileDeletedError(f"File {file_id} has been deleted.")
            return orm.to_pydantic()

    async def list_in_folder(self, folder_id: Optional[UUID] = None) -> List[EDSFileInDB]:
        async with get_session(self._session_factory) as session:
            folder_clause = EDSFileORM.folder_id.is_(None) if folder_id is None else EDSFileORM.folder_id == folder_id
            q = (
                select(EDSFileORM)
                .where(folder_clause, EDSFileORM.deleted_at.is_(None))
                .order_by(EDSFileORM.name.asc())
            )
            return [f.to_pydantic() for f in (await session.execute(q)).scalars().all()]

    async def move(self, file_id: UUID, folder_id: Optional[UUID]) -> tuple[EDSFileInDB, Optional[UUID]]:
        """
        Re-parents a live file. Node accounting is untouched.
        The slug is re-suffixed if it collides in the target folder.
        Returns the moved file and the folder it came from.
        """
        async with get_session(self._session_factory) as session:
            try:
                orm = await session.get(EDSFileORM, file_id)
                if not orm:
                    raise EDSFileNotFoundError(f"File {file_id} not found.")
                if orm.deleted_at is not None:
                    raise FileDeletedError(f"File {file_id} has been deleted.")
                if folder_id is not None and not await session.get(EDSFolderORM, folder_id):
                    raise FolderNotFoundError(f"Folder {folder_id} not found.")

                from_folder = orm.folder_id
                if from_folder != folder_id:
                    taken = await sibling_file_slugs(session, folder_id, exclude_id=file_id)
                    orm.slug = generate_unique_slug(orm.slug, taken)
                    orm.folder_id = folder_id
                    await session.flush()
                    await session.refresh(orm)
                await session.commit()
                return orm.to_pydantic(), from_folder
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to move file {file_id}: {e}") from e

    async def search(self, query: str, limit: int = 5) -> List[EDSFileInDB]:
        async with get_session(self._session_factory) as session:
            q = (
                select(EDSFileORM)
                .where(EDSFileORM.name.icontains(query, autoescape=True), EDSFileORM.deleted_at.is_(None))
                .order_by(EDSFileORM.uploaded_at.desc())
                .limit(limit)
            )
            return [f.to_pydantic() for f in (await session.execute(q)).scalars().all()]
