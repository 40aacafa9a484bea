"""Exception types raised inside the FileHost service.

Client-facing failures (bad method, bad content type, bad credential) are
answered directly by the HTTP handlers and never raised; the types below
cover configuration and storage problems that need to cross module
boundaries.
"""


class FileHostError(Exception):
    """Base class for all FileHost errors."""


class TokenConfigurationError(FileHostError):
    """Raised when the token service cannot be built from the configuration.

    This is a fatal startup error (e.g. no signing secret configured), not
    something a request can trigger.
    """


class StorageError(FileHostError):
    """Raised when the file store fails to write or read a file."""


class UploadTooLargeError(FileHostError):
    """Raised when an upload body crosses the configured size ceiling."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Upload exceeds limit of {limit} bytes")
        self.limit = limit


class FileConflictError(FileHostError):
    """Raised when an upload would replace an already stored file."""

    def __init__(self, filename: str) -> None:
        super().__init__(f"File already exists: {filename}")
        self.filename = filename
