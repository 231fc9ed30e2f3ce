class DataClientError(Exception):
    """Base class."""


class DatabaseError(DataClientError):
    pass


class NotFoundError(DataClientError):
    pass


class NodeNotFoundError(NotFoundError):
    pass


class ReservationNotFoundError(NotFoundError):
    pass


class EDSFileNotFoundError(NotFoundError):
    pass


class FolderNotFoundError(NotFoundError):
    pass


class CapacityExceededError(DataClientError):
    """No active node can hold the requested bytes, or a concurrent reservation took the space."""

    def __init__(self, requested: int, node_id=None):
        self.requested = requested
        self.node_id = node_id
        where = f"node {node_id}" if node_id else "any active node"
        super().__init__(f"Insufficient storage: {requested} bytes do not fit on {where}.")


class InvalidReservationError(DataClientError):
    pass


class SizeMismatchError(DataClientError):
    def __init__(self, reserved: int, actual: int):
        self.reserved = reserved
        self.actual = actual
        super().__init__(f"Reserved {reserved} bytes but the file has {actual} bytes.")


class FileDeletedError(DataClientError):
    pass


class ConflictError(DataClientError):
    pass


class NodeInUseError(ConflictError):
    pass


class FolderNotEmptyError(ConflictError):
    pass


class FolderExistsError(ConflictError):
    pass


class DriveError(DataClientError):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BackendUploadError(DriveError):
    pass


class NodeTokenError(DriveError):
    def __init__(self, node_id, message: str | None = None):
        self.node_id = node_id
        super().__init__(message or f"Token refresh failed for node {node_id}")


class VaultError(DataClientError):
    pass
