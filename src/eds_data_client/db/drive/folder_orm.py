from __future__ import annotations
from uuid import UUID, uuid4
from typing import List, Optional

from sqlalchemy import String, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import Base, CreatedAt, UpdatedAt
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .file_orm import EDSFileORM


class EDSFolderORM(Base):
    __tablename__ = "eds_folders"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    # "/" + ancestor slugs + own slug, e.g. /backups/server-a
    path: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    parent_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("eds_folders.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    parent: Mapped[Optional["EDSFolderORM"]] = relationship(remote_side="EDSFolderORM.id", back_populates="children")
    children: Mapped[List["EDSFolderORM"]] = relationship(back_populates="parent")
    files: Mapped[List["EDSFileORM"]] = relationship(back_populates="folder")

    __table_args__ = (
        UniqueConstraint("parent_id", "slug", name="uq_eds_folders_parent_slug"),
    )
