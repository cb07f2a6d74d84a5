"""
Core types for the image mirror.

This module defines the data structures shared by every layer:
- CacheKey: the (SKU, image index) pair that addresses one image slot
- EntryStatus / CacheEntry: lifecycle state owned by the registry
- ErrorKind: the failure categories surfaced to callers
- CheckResult / MaterializeResult: results of the two service operations
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# SKUs become file names, so only a conservative character set is allowed.
SKU_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
MAX_SKU_LENGTH = 128
MAX_IMAGE_INDEX = 24


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class EntryStatus(str, Enum):
    """Lifecycle states of a cache entry."""

    MISSING = "missing"
    DOWNLOADING = "downloading"
    READY = "ready"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Failure categories reported by the mirror."""

    NETWORK_ERROR = "network_error"
    INVALID_KEY = "invalid_key"
    STORAGE_ERROR = "storage_error"
    CLIENT_TRANSPORT = "client_transport"


@dataclass(frozen=True)
class CacheKey:
    """Identifier of one image slot of one inventory item.

    Two keys are equal iff both the SKU and the index match exactly.
    Every key is validated on construction, so a key that exists is always
    safe to use as a storage address.

    Raises:
        InvalidKeyError: If the SKU or index is unusable.
    """

    sku: str
    image_index: int = 1

    def __post_init__(self) -> None:
        from skumirror.exceptions import InvalidKeyError

        sku = self.sku
        image_index = self.image_index
        if not isinstance(sku, str):
            raise InvalidKeyError("SKU must be a string", context={"sku": sku})
        if not sku or len(sku) > MAX_SKU_LENGTH:
            raise InvalidKeyError(
                f"SKU must be 1-{MAX_SKU_LENGTH} characters", context={"sku": sku}
            )
        if not SKU_PATTERN.match(sku):
            raise InvalidKeyError(
                "SKU contains characters that are not allowed", context={"sku": sku}
            )

        if isinstance(image_index, bool) or not isinstance(image_index, int):
            raise InvalidKeyError(
                "Image index must be an integer",
                context={"sku": sku, "image_index": image_index},
            )
        if not 1 <= image_index <= MAX_IMAGE_INDEX:
            raise InvalidKeyError(
                f"Image index must be between 1 and {MAX_IMAGE_INDEX}",
                context={"sku": sku, "image_index": image_index},
            )

    @classmethod
    def create(cls, sku: Any, image_index: Any = 1) -> CacheKey:
        """Build a key from loosely formatted input.

        Surrounding whitespace of the SKU is dropped; everything else must
        already be safe to use in a file name.

        Raises:
            InvalidKeyError: If the SKU or index is unusable.
        """
        if isinstance(sku, str):
            sku = sku.strip()
        return cls(sku=sku, image_index=image_index)

    @classmethod
    def parse(cls, token: str) -> CacheKey:
        """Parse the ``<sku>_<index>`` form used on the wire.

        The index is taken from the last underscore-separated segment when
        that segment is numeric; otherwise the whole token is the SKU and
        the index is 1.
        """
        from skumirror.exceptions import InvalidKeyError

        if not isinstance(token, str):
            raise InvalidKeyError("Key token must be a string", context={"token": token})
        token = token.strip()
        head, sep, tail = token.rpartition("_")
        if sep and head and tail.isdigit():
            return cls.create(head, int(tail))
        return cls.create(token, 1)

    @property
    def slug(self) -> str:
        """Storage-safe name; unique per key and reversible by ``parse``."""
        return f"{self.sku}_{self.image_index}"

    def __str__(self) -> str:
        return self.slug


@dataclass
class CacheEntry:
    """Mutable state attached to a cache key.

    ``local_path`` is set iff ``status`` is READY; transitions go through
    the methods below so the two fields never disagree.
    """

    key: CacheKey
    status: EntryStatus = EntryStatus.MISSING
    remote_url: str | None = None
    local_path: str | None = None
    attempt_count: int = 0
    last_error: str | None = None
    last_error_kind: ErrorKind | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    def mark_downloading(self, remote_url: str) -> None:
        self.status = EntryStatus.DOWNLOADING
        self.remote_url = remote_url
        self.local_path = None

    def record_attempt(self) -> None:
        self.attempt_count += 1
        self.last_attempt_at = utc_now()

    def mark_ready(self, local_path: str) -> None:
        if not local_path:
            raise ValueError("READY entries need a local path")
        self.local_path = local_path
        self.status = EntryStatus.READY
        self.last_error = None
        self.last_error_kind = None

    def mark_failed(self, kind: ErrorKind, error: str) -> None:
        self.status = EntryStatus.FAILED
        self.local_path = None
        self.last_error = error
        self.last_error_kind = kind

    def snapshot(self) -> CacheEntry:
        """Return a detached copy safe to hand to readers."""
        return CacheEntry(
            key=self.key,
            status=self.status,
            remote_url=self.remote_url,
            local_path=self.local_path,
            attempt_count=self.attempt_count,
            last_error=self.last_error,
            last_error_kind=self.last_error_kind,
            last_attempt_at=self.last_attempt_at,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.key.sku,
            "imageIndex": self.key.image_index,
            "status": self.status.value,
            "remoteUrl": self.remote_url,
            "localPath": self.local_path,
            "attemptCount": self.attempt_count,
            "lastError": self.last_error,
            "lastAttemptAt": (
                self.last_attempt_at.isoformat() if self.last_attempt_at else None
            ),
        }


@dataclass(frozen=True)
class CheckResult:
    """Outcome of an existence check."""

    exists: bool
    local_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"exists": self.exists, "localPath": self.local_path}


@dataclass(frozen=True)
class MaterializeResult:
    """Outcome of a materialize call.

    ``local_path`` is present on success; ``error`` and ``detail`` on failure.
    """

    success: bool
    local_path: str | None = None
    error: ErrorKind | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, local_path: str) -> MaterializeResult:
        return cls(success=True, local_path=local_path)

    @classmethod
    def failed(cls, error: ErrorKind, detail: str | None = None) -> MaterializeResult:
        return cls(success=False, error=error, detail=detail)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.local_path is not None:
            data["localPath"] = self.local_path
        if self.error is not None:
            data["error"] = self.error.value
        if self.detail is not None:
            data["detail"] = self.detail
        return data


@dataclass
class CacheStats:
    """Coverage figures for the report command."""

    entries: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    stored_files: int = 0
    stored_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": self.entries,
            "byStatus": dict(self.by_status),
            "storedFiles": self.stored_files,
            "storedBytes": self.stored_bytes,
        }
