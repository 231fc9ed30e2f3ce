from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, BigInteger, DateTime, ForeignKey, Index
from sqlalchemy import Enum as PgEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import Base
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .node_orm import StorageNodeORM


class ReservationStatus(str, enum.Enum):
    active    = "active"
    finalized = "finalized"
    released  = "released"


class ReservationORM(Base):
    """
    Provisional hold of `size` bytes on a node while an upload is in flight.
    active -> finalized | released; both are terminal.
    """
    __tablename__ = "eds_reservations"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    node_id: Mapped[UUID] = mapped_column(ForeignKey("storage_nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[ReservationStatus] = mapped_column(
        PgEnum(ReservationStatus, name="reservation_status_enum"),
        nullable=False,
        default=ReservationStatus.active,
        server_default=ReservationStatus.active.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # expired / cancelled / failed, only set on release
    reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    node: Mapped["StorageNodeORM"] = relationship(back_populates="reservations")

    __table_args__ = (
        Index("idx_eds_reservations_status_expires", "status", "expires_at"),
    )
