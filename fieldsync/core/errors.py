"""Error taxonomy shared by the sync core."""


class SyncError(Exception):
    """Base class for errors raised by the sync core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """A required field is missing or malformed. Never retried."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NetworkError(SyncError):
    """Timeout or connection failure talking to the remote service."""
    pass


class ServerError(SyncError):
    """The remote service answered with something other than HTTP 200."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CacheError(SyncError):
    """Local persistence failed."""
    pass


class MigrationError(SyncError):
    """Legacy storage migration was invoked out of order or failed."""
    pass
