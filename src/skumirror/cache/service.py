"""
Image cache service.

ImageCache ties the registry, the local store and the materializer
together and exposes the two operations consumers use:

- check_exists: read-only registry lookup, never touches the network
- materialize: single-flight download into the local store

It also carries the administrative helpers used by the CLI and the HTTP
layer: warm start from files already on disk, coverage stats and removal.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

import httpx

from skumirror.cache.base import CacheBackend
from skumirror.cache.materializer import Materializer
from skumirror.cache.registry import CacheRegistry, FlightInProgressError
from skumirror.config import Settings, get_settings
from skumirror.exceptions import StorageError
from skumirror.logging import get_logger
from skumirror.store.local import LocalStore
from skumirror.types import (
    CacheEntry,
    CacheKey,
    CacheStats,
    CheckResult,
    EntryStatus,
    MaterializeResult,
)

logger = get_logger(__name__)


class ImageCache(CacheBackend):
    """In-process image mirror cache."""

    def __init__(
        self,
        store: LocalStore,
        registry: CacheRegistry | None = None,
        materializer: Materializer | None = None,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else CacheRegistry()
        if materializer is None:
            materializer = Materializer(self.registry, store)
        self.materializer = materializer

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ImageCache:
        """Build a cache wired from configuration.

        Args:
            settings: Settings to use; defaults to the cached singleton.
            transport: Optional httpx transport for remote fetches.
        """
        settings = settings or get_settings()
        store = LocalStore(
            settings.IMAGES_DIR,
            public_prefix=settings.PUBLIC_PREFIX,
            extension=settings.IMAGE_EXTENSION,
        )
        registry = CacheRegistry()
        materializer = Materializer.from_settings(
            registry, store, settings=settings, transport=transport
        )
        return cls(store, registry=registry, materializer=materializer)

    async def close(self) -> None:
        """Wait for running downloads, then release the HTTP client."""
        pending = self.registry.active_flights()
        if pending:
            logger.info("Waiting for in-flight downloads", count=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        await self.materializer.close()

    async def check_exists(self, key: CacheKey) -> CheckResult:
        """Report whether a READY copy exists for ``key``.

        Side-effect free apart from registering an unseen key as MISSING.
        """
        entry = self.registry.lookup(key)
        if entry.status is EntryStatus.READY:
            return CheckResult(exists=True, local_path=entry.local_path)
        return CheckResult(exists=False)

    async def materialize(self, key: CacheKey, remote_url: str) -> MaterializeResult:
        return await self.materializer.materialize(key, remote_url)

    async def materialize_many(
        self, items: Iterable[tuple[CacheKey, str]]
    ) -> list[MaterializeResult]:
        """Materialize several keys concurrently.

        Concurrency is bounded by the materializer's fetch limit.
        """
        return list(
            await asyncio.gather(
                *(self.materialize(key, url) for key, url in items)
            )
        )

    def entry(self, key: CacheKey) -> CacheEntry | None:
        return self.registry.get(key)

    def rehydrate(self) -> int:
        """Register files already present in the store as READY entries.

        Returns:
            Number of entries that became READY.
        """
        restored = 0
        for key, _size in self.store.scan():
            if self.registry.register_stored(key, self.store.public_path(key)):
                restored += 1
        logger.info("Rehydrated cache from disk", restored=restored, root=str(self.store.root))
        return restored

    def stats(self) -> CacheStats:
        files = 0
        total = 0
        for _key, size in self.store.scan():
            files += 1
            total += size
        return CacheStats(
            entries=len(self.registry),
            by_status=self.registry.status_counts(),
            stored_files=files,
            stored_bytes=total,
        )

    def forget(self, key: CacheKey) -> bool:
        """Administratively remove the stored file and entry for ``key``.

        Returns:
            True if a file or an entry was removed.

        Raises:
            FlightInProgressError: If ``key`` is currently downloading.
            StorageError: If the file exists but cannot be deleted.
        """
        if self.registry.flight(key) is not None:
            raise FlightInProgressError(f"{key} is downloading")
        try:
            removed_file = self.store.remove(key)
        except StorageError:
            logger.error("Could not remove stored image", key=str(key))
            raise
        removed_entry = self.registry.discard(key)
        if removed_file or removed_entry:
            logger.info("Forgot cached image", key=str(key), removed_file=removed_file)
        return removed_file or removed_entry
