from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from .common import APIModel, ByteCount


class FileMeta(APIModel):
    name: str = Field(..., min_length=1, max_length=1024)
    size: ByteCount = Field(..., gt=0)
    mime_type: str = Field("application/octet-stream", min_length=1)
    folder_id: Optional[UUID] = None
    slug: Optional[str] = None


class EDSFileInDB(APIModel):
    id: UUID
    name: str
    slug: str
    backend_file_id: str
    mime_type: str
    size: ByteCount
    folder_id: Optional[UUID] = None
    node_id: UUID
    deleted_at: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
