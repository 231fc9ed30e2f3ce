import logging
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from eds_data_client.db.base import get_session
from eds_data_client.db.drive.folder_orm import EDSFolderORM
from eds_data_client.db.drive.file_orm import EDSFileORM
from eds_data_client.exceptions import (
    DatabaseError,
    FolderExistsError,
    FolderNotEmptyError,
    FolderNotFoundError,
)
from eds_data_client.models.folder import FolderInDB
from eds_data_client.utils.slug import unique_folder_slug

logger = logging.getLogger(__name__)


def _child_path(parent_path: Optional[str], slug: str) -> str:
    return f"{parent_path or ''}/{slug}"


class FolderRepository:
    """
    Folder tree. `path` is always the parent's path plus "/" plus the folder's own slug.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, folder_id: UUID) -> FolderInDB:
        async with get_session(self._session_factory) as session:
            folder = await session.get(EDSFolderORM, folder_id)
            if not folder:
                raise FolderNotFoundError(f"Folder {folder_id} not found.")
            return FolderInDB.model_validate(folder)

    async def list_children(self, parent_id: Optional[UUID] = None) -> List[FolderInDB]:
        """Direct children of `parent_id` (root when None), by name, with content counts."""
        async with get_session(self._session_factory) as session:
            files = (
                select(func.count(EDSFileORM.id))
                .where(EDSFileORM.folder_id == EDSFolderORM.id, EDSFileORM.deleted_at.is_(None))
                .correlate(EDSFolderORM)
                .scalar_subquery()
            )
            child = EDSFolderORM.__table__.alias("child")
            children = (
                select(func.count(child.c.id))
                .where(child.c.parent_id == EDSFolderORM.id)
                .correlate(EDSFolderORM)
                .scalar_subquery()
            )
            parent_clause = EDSFolderORM.parent_id.is_(None) if parent_id is None else EDSFolderORM.parent_id == parent_id
            q = select(EDSFolderORM, files, children).where(parent_clause).order_by(EDSFolderORM.name.asc())
            result = []
            for folder, file_count, child_count in (await session.execute(q)).all():
                item = FolderInDB.model_validate(folder)
                item.file_count = file_count
                item.child_count = child_count
                result.append(item)
            return result

    async def create(self, name: str, parent_id: Optional[UUID] = None) -> FolderInDB:
        name = (name or "").strip()
        if not name:
            raise ValueError("Folder name is required")

        async with get_session(self._session_factory) as session:
            try:
                folder = await self._create_in(session, name, parent_id)
                await session.commit()
                logger.info(f"Folder {folder.id} created at {folder.path}")
                return FolderInDB.model_validate(folder)
            except IntegrityError as e:
                await session.rollback()
                raise FolderExistsError(f"A folder named '{name}' already exists here.") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to create folder '{name}': {e}") from e

    async def ensure_path(self, folder_path: str) -> Tuple[Optional[UUID], List[FolderInDB]]:
        """
        Walks "/backups/server-a" segment by segment, creating what is missing.
        Returns the deepest folder id (None for root) and the folders that were created.
        """
        parts = [p for p in (folder_path or "").split("/") if p.strip()]
        if not parts:
            return None, []

        created: List[FolderInDB] = []
        async with get_session(self._session_factory) as session:
            try:
                parent_id: Optional[UUID] = None
                for part in parts:
                    part = part.strip()
                    parent_clause = EDSFolderORM.parent_id.is_(None) if parent_id is None else EDSFolderORM.parent_id == parent_id
                    existing = (await session.execute(
                        select(EDSFolderORM).where(parent_clause, EDSFolderORM.name == part).limit(1)
                    )).scalar_one_or_none()
                    if existing is None:
                        existing = await self._create_in(session, part, parent_id)
                        created.append(FolderInDB.model_validate(existing))
                    parent_id = existing.id
                await session.commit()
                return parent_id, created
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to create folder path '{folder_path}': {e}") from e

    async def rename(self, folder_id: UUID, name: str) -> FolderInDB:
        """Renames the folder and rewrites the path prefix of every descendant."""
        name = (name or "").strip()
        if not name:
            raise ValueError("Folder name is required")

        async with get_session(self._session_factory) as session:
            try:
                folder = await session.get(EDSFolderORM, folder_id)
                if not folder:
                    raise FolderNotFoundError(f"Folder {folder_id} not found.")
                if await self._name_taken(session, name, folder.parent_id, exclude_id=folder_id):
                    raise FolderExistsError(f"A folder named '{name}' already exists here.")

                siblings = await self._sibling_slugs(session, folder.parent_id, exclude_id=folder_id)
                new_slug = unique_folder_slug(name, siblings)
                old_path = folder.path
                parent_path = old_path[: old_path.rfind("/")]
                new_path = _child_path(parent_path, new_slug)

                folder.name = name
                folder.slug = new_slug
                folder.path = new_path

                if new_path != old_path:
                    descendants = (await session.execute(
                        select(EDSFolderORM).where(EDSFolderORM.path.startswith(old_path + "/", autoescape=True))
                    )).scalars().all()
                    for d in descendants:
                        d.path = new_path + d.path[len(old_path):]

                await session.flush()
                await session.refresh(folder)
                await session.commit()
                return FolderInDB.model_validate(folder)
            except IntegrityError as e:
                await session.rollback()
                raise FolderExistsError(f"A folder named '{name}' already exists here.") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to rename folder {folder_id}: {e}") from e

    async def delete(self, folder_id: UUID) -> FolderInDB:
        """Deletes an empty folder. Soft-deleted files are detached to root."""
        async with get_session(self._session_factory) as session:
            try:
                folder = await session.get(EDSFolderORM, folder_id)
                if not folder:
                    raise FolderNotFoundError(f"Folder {folder_id} not found.")
                files = (await session.execute(
                    select(func.count(EDSFileORM.id)).where(
                        EDSFileORM.folder_id == folder_id, EDSFileORM.deleted_at.is_(None)
                    )
                )).scalar_one()
                children = (await session.execute(
                    select(func.count(EDSFolderORM.id)).where(EDSFolderORM.parent_id == folder_id)
                )).scalar_one()
                if files > 0 or children > 0:
                    raise FolderNotEmptyError(
                        "Cannot delete folder with contents. Delete files and subfolders first."
                    )
                snapshot = FolderInDB.model_validate(folder)
                await session.execute(
                    update(EDSFileORM)
                    .where(EDSFileORM.folder_id == folder_id)
                    .values(folder_id=None)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    delete(EDSFolderORM)
                    .where(EDSFolderORM.id == folder_id)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return snapshot
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to delete folder {folder_id}: {e}") from e

    async def search(self, query: str, limit: int = 5) -> List[FolderInDB]:
        async with get_session(self._session_factory) as session:
            q = (
                select(EDSFolderORM)
                .where(EDSFolderORM.name.icontains(query, autoescape=True))
                .order_by(EDSFolderORM.updated_at.desc())
                .limit(limit)
            )
            return [FolderInDB.model_validate(f) for f in (await session.execute(q)).scalars().all()]

    # ――― helpers ――― #

    async def _create_in(self, session: AsyncSession, name: str, parent_id: Optional[UUID]) -> EDSFolderORM:
        parent_path = None
        if parent_id is not None:
            parent = await session.get(EDSFolderORM, parent_id)
            if not parent:
                raise FolderNotFoundError(f"Parent folder {parent_id} not found.")
            parent_path = parent.path

        if await self._name_taken(session, name, parent_id):
            raise FolderExistsError(f"A folder named '{name}' already exists here.")

        slug = unique_folder_slug(name, await self._sibling_slugs(session, parent_id))
        folder = EDSFolderORM(name=name, slug=slug, path=_child_path(parent_path, slug), parent_id=parent_id)
        session.add(folder)
        await session.flush()
        await session.refresh(folder)
        return folder

    @staticmethod
    async def _sibling_slugs(session: AsyncSession, parent_id: Optional[UUID], exclude_id: Optional[UUID] = None) -> set[str]:
        parent_clause = EDSFolderORM.parent_id.is_(None) if parent_id is None else EDSFolderORM.parent_id == parent_id
        q = select(EDSFolderORM.slug).where(parent_clause)
        if exclude_id is not None:
            q = q.where(EDSFolderORM.id != exclude_id)
        return set((await session.execute(q)).scalars().all())

    @staticmethod
    async def _name_taken(session: AsyncSession, name: str, parent_id: Optional[UUID], exclude_id: Optional[UUID] = None) -> bool:
        parent_clause = EDSFolderORM.parent_id.is_(None) if parent_id is None else EDSFolderORM.parent_id == parent_id
        q = select(EDSFolderORM.id).where(parent_clause, EDSFolderORM.name == name)
        if exclude_id is not None:
            q = q.where(EDSFolderORM.id != exclude_id)
        return (await session.execute(q.limit(1))).first() is not None

