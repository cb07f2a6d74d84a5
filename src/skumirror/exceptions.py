"""
Custom exception hierarchy for the image mirror.

All exceptions inherit from MirrorError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any

from skumirror.types import ErrorKind


class MirrorError(Exception):
    """Base exception for all image mirror errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    kind: ErrorKind | None = None

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(MirrorError):
    """Raised when configuration is invalid or missing."""

    pass


class InvalidKeyError(MirrorError):
    """Raised when a SKU or image index cannot be used as a storage address.

    Context should include:
        - sku: The rejected SKU
        - image_index: The rejected index, if relevant
    """

    kind = ErrorKind.INVALID_KEY


class NetworkError(MirrorError):
    """Raised when fetching a remote image fails.

    Attributes:
        retryable: Whether another attempt may succeed.
        status_code: HTTP status of the remote response, if one arrived.
    """

    kind = ErrorKind.NETWORK_ERROR

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, context)
        self.retryable = retryable
        self.status_code = status_code


class RemoteStatusError(NetworkError):
    """Raised when the remote host answers with a non-2xx status.

    5xx, 408 and 429 are retryable; every other status is not.
    """

    RETRYABLE_STATUSES = frozenset({408, 429})

    def __init__(self, status_code: int, url: str, reason: str = "") -> None:
        retryable = status_code >= 500 or status_code in self.RETRYABLE_STATUSES
        message = f"HTTP {status_code}" + (f": {reason}" if reason else "")
        super().__init__(
            message,
            context={"url": url},
            retryable=retryable,
            status_code=status_code,
        )


class StorageError(MirrorError):
    """Raised when writing or moving a file into the local store fails.

    Context should include:
        - path: The destination path
        - error: The underlying OS error
    """

    kind = ErrorKind.STORAGE_ERROR


class ClientTransportError(MirrorError):
    """Raised when a consumer cannot reach the mirror service.

    Context should include:
        - operation: "check_exists" or "materialize"
        - url: The service URL that was called
    """

    kind = ErrorKind.CLIENT_TRANSPORT
