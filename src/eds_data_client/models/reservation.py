from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import field_validator

from .common import APIModel, ByteCount


class ReservationInDB(APIModel):
    id: UUID
    node_id: UUID
    size: ByteCount
    status: str
    created_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None
    reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _enum_value(cls, v):
        return getattr(v, "value", v)


class UploadSession(APIModel):
    """What the browser needs to push bytes straight to the backend."""
    upload_url: str
    node_id: UUID
    reservation_id: UUID
    access_token: str
    folder_id: Optional[UUID] = None
    expires_in: int
