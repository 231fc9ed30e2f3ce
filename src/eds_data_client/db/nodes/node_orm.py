from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime
from typing import List, Optional

from sqlalchemy import String, Boolean, DateTime, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import Base, ByteCounter, CreatedAt, UpdatedAt
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .reservation_orm import ReservationORM
    from ..drive.file_orm import EDSFileORM


class StorageNodeORM(Base):
    """
    One linked backend account. total/used/reserved are byte counters:
    used is committed, reserved is the running sum of active reservations.
    """
    __tablename__ = "storage_nodes"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)

    # Fernet tokens, opaque to the allocator
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    total_space: Mapped[ByteCounter]
    used_space: Mapped[ByteCounter]
    reserved_space: Mapped[ByteCounter]

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    reservations: Mapped[List["ReservationORM"]] = relationship(
        back_populates="node", cascade="all, delete-orphan", passive_deletes=True
    )
    files: Mapped[List["EDSFileORM"]] = relationship(
        back_populates="node", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def available_space(self) -> int:
        return self.total_space - self.used_space - self.reserved_space
