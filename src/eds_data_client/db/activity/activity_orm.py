from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, JSON, DateTime
from sqlalchemy import Enum as PgEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base


class ActivityAction(str, enum.Enum):
    UPLOAD              = "UPLOAD"
    UPLOAD_INIT         = "UPLOAD_INIT"
    DOWNLOAD            = "DOWNLOAD"
    DELETE              = "DELETE"
    MOVE_FILE           = "MOVE_FILE"
    CREATE_FOLDER       = "CREATE_FOLDER"
    RENAME_FOLDER       = "RENAME_FOLDER"
    DELETE_FOLDER       = "DELETE_FOLDER"
    NODE_ADDED          = "NODE_ADDED"
    NODE_SYNC           = "NODE_SYNC"
    NODE_TOGGLED        = "NODE_TOGGLED"
    NODE_REMOVED        = "NODE_REMOVED"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"


class TargetType(str, enum.Enum):
    FILE        = "FILE"
    FOLDER      = "FOLDER"
    NODE        = "NODE"
    RESERVATION = "RESERVATION"


class ActivityLogORM(Base):
    """Append-only. Rows are only ever removed by the clear-all operation."""
    __tablename__ = "eds_activity_logs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    action: Mapped[ActivityAction] = mapped_column(PgEnum(ActivityAction, name="activity_action_enum"), nullable=False, index=True)
    target_type: Mapped[TargetType] = mapped_column(PgEnum(TargetType, name="activity_target_enum"), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True, default=lambda: datetime.now(timezone.utc)
    )
