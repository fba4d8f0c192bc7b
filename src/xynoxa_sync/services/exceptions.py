class SyncError(Exception):
    """Base class for sync engine errors"""

    pass


class ConfigError(SyncError):
    """Raised when configuration values are missing or invalid"""

    pass


class TransientNetworkError(SyncError):
    """Raised when a remote call fails in a way that may succeed on retry"""

    pass


class AuthError(SyncError):
    """Raised when the remote rejects our credentials"""

    pass


class RemoteNotFoundError(SyncError):
    """Raised when a remote object no longer exists"""

    pass


class LocalIOError(SyncError):
    """Raised when reading or writing a local file fails"""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class IndexCorruptionError(SyncError):
    """Raised when a group folder's index can no longer be trusted"""

    pass


class WatcherOverflow(SyncError):
    """Raised when filesystem events were dropped"""

    pass


class StopRequested(SyncError):
    """Raised at an atomic-unit boundary after stop() was called"""

    pass
