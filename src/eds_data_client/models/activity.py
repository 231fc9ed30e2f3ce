from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import Field, field_validator

from .common import APIModel
from .file import EDSFileInDB
from .folder import FolderInDB


class ActivityEntry(APIModel):
    id: UUID
    action: str
    target_type: str
    target_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime

    @field_validator("action", "target_type", mode="before")
    @classmethod
    def _enum_value(cls, v):
        return getattr(v, "value", v)


class Pagination(APIModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ActivityPage(APIModel):
    activities: List[ActivityEntry]
    pagination: Pagination


class SearchResult(APIModel):
    type: Literal["FOLDER", "FILE"]
    data: Union[FolderInDB, EDSFileInDB]
