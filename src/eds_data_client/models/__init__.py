from .common import ByteCount
from .node import NodeInDB, NodeQuota, NodeSelection, StorageStats, DriveQuota, OAuthTokens
from .reservation import ReservationInDB, UploadSession
from .file import FileMeta, EDSFileInDB
from .folder import FolderCreate, FolderInDB
from .activity import ActivityEntry, ActivityPage, Pagination, SearchResult

__all__ = [
    "ByteCount",
    "NodeInDB", "NodeQuota", "NodeSelection", "StorageStats", "DriveQuota", "OAuthTokens",
    "ReservationInDB", "UploadSession",
    "FileMeta", "EDSFileInDB",
    "FolderCreate", "FolderInDB",
    "ActivityEntry", "ActivityPage", "Pagination", "SearchResult",
]
