from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime
from typing import Optional

from sqlalchemy import String, BigInteger, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import Base, CreatedAt, UpdatedAt
from eds_data_client.models.file import EDSFileInDB
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from ..nodes.node_orm import StorageNodeORM
    from .folder_orm import EDSFolderORM


class EDSFileORM(Base):
    __tablename__ = "eds_files"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(1024), nullable=False)
    slug: Mapped[str] = mapped_column(String(1024), nullable=False)
    backend_file_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    # set once at finalize, never updated
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    folder_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("eds_folders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    node_id: Mapped[UUID] = mapped_column(ForeignKey("storage_nodes.id", ondelete="CASCADE"), nullable=False, index=True)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    uploaded_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    node: Mapped["StorageNodeORM"] = relationship(back_populates="files")
    folder: Mapped[Optional["EDSFolderORM"]] = relationship(back_populates="files")

    __table_args__ = (
        UniqueConstraint("folder_id", "slug", name="uq_eds_files_folder_slug"),
        Index("idx_eds_files_node_deleted", "node_id", "deleted_at"),
    )

    def to_pydantic(self) -> EDSFileInDB:
        return EDSFileInDB.model_validate(self)
