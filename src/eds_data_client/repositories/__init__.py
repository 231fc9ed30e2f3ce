from .drive_repository import DriveRepository
from .pg_repositoryNode import NodeRepository
from .pg_repositoryFolder import FolderRepository
from .pg_repositoryFile import FileRepository
from .pg_repositoryActivity import ActivityRepository

__all__ = [
    "DriveRepository",
    "NodeRepository",
    "FolderRepository",
    "FileRepository",
    "ActivityRepository",
]
