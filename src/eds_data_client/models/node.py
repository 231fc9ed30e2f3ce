from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import computed_field

from .common import APIModel, ByteCount


class NodeInDB(APIModel):
    id: UUID
    email: str
    total_space: ByteCount
    used_space: ByteCount
    reserved_space: ByteCount
    is_active: bool
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    file_count: int = 0

    @computed_field
    @property
    def available_space(self) -> ByteCount:
        return self.total_space - self.used_space - self.reserved_space


class NodeQuota(APIModel):
    """Snapshot of one active node used by the selection policy."""
    id: UUID
    email: str
    total_space: ByteCount
    used_space: ByteCount
    reserved_space: ByteCount
    available_space: ByteCount


class NodeSelection(APIModel):
    node_id: UUID
    available_space: ByteCount


class StorageStats(APIModel):
    total_space: ByteCount
    used_space: ByteCount
    reserved_space: ByteCount
    available_space: ByteCount
    node_count: int


class DriveQuota(APIModel):
    total_space: ByteCount
    used_space: ByteCount


class OAuthTokens(APIModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
