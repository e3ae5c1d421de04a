"""
Exceptions for the note sync engine.
"""


class NoteSyncError(Exception):
    """Base exception for sync operations."""


class RemoteError(NoteSyncError):
    """Raised when the remote store rejects or fails an operation."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(RemoteError):
    """Raised when a path does not exist remotely."""

    def __init__(self, path: str, message: str = ""):
        self.path = path
        super().__init__(message or f"Remote file not found: {path}", 404)


class ConflictError(RemoteError):
    """Raised when the remote hash does not match the caller's expected hash."""

    def __init__(
        self,
        path: str,
        expected_hash: str | None,
        current_hash: str | None = None,
        message: str = "",
    ):
        self.path = path
        self.expected_hash = expected_hash
        self.current_hash = current_hash
        super().__init__(
            message
            or f"Remote hash mismatch for {path} "
            f"(expected {expected_hash}, remote {current_hash or 'unknown'})",
            409,
        )


class NetworkError(RemoteError):
    """Raised when the remote store cannot be reached."""


class AuthenticationError(RemoteError):
    """Raised when the remote store rejects the credential."""


class PartialRenameError(RemoteError):
    """Raised when a rename deleted the old path but failed to create the new one.

    Neither path exists remotely afterwards. The caller still holds the
    content and can re-create ``new_path`` from it.
    """

    def __init__(self, old_path: str, new_path: str, content: str, cause: Exception):
        self.old_path = old_path
        self.new_path = new_path
        self.content = content
        self.cause = cause
        super().__init__(
            f"Rename {old_path} -> {new_path} deleted the old file but "
            f"failed to create the new one: {cause}"
        )


class LocalIOError(NoteSyncError):
    """Raised when reading or writing a local note fails."""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Local I/O failed for {path}: {cause}")


class SyncDisabledError(NoteSyncError):
    """Raised when a remote operation runs without a repository binding."""

    def __init__(self, message: str = "No repository configured, sync is disabled"):
        super().__init__(message)


class ConfigError(NoteSyncError):
    """Raised when the configuration is invalid."""
