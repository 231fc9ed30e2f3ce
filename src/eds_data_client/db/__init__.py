# eds_data_client/db/__init__.py

from .base import Base

from .nodes.node_orm import StorageNodeORM
from .nodes.reservation_orm import ReservationORM, ReservationStatus

# tables that depend on them
from .drive.folder_orm import EDSFolderORM
from .drive.file_orm import EDSFileORM

from .activity.activity_orm import ActivityLogORM, ActivityAction, TargetType


__all__ = [
    "Base",
    "StorageNodeORM",
    "ReservationORM",
    "ReservationStatus",
    "EDSFolderORM",
    "EDSFileORM",
    "ActivityLogORM",
    "ActivityAction",
    "TargetType",
]
