"""
In-memory registry of cache entries.

The registry exclusively owns entry state. All transitions go through its
methods, which keep ``local_path`` set iff the entry is READY.

Single-flight bookkeeping also lives here: at most one download task is
registered per key, and callers arriving while it runs await that task
instead of starting another. The event loop is the only writer, so the
check-then-register step in ``start_flight`` cannot interleave with another
caller; keys never wait on each other.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Coroutine

from skumirror.types import (
    CacheEntry,
    CacheKey,
    EntryStatus,
    ErrorKind,
    MaterializeResult,
)


class FlightInProgressError(RuntimeError):
    """Raised when an operation needs a key that is currently downloading."""


class CacheRegistry:
    """Keyed store of CacheEntry objects with per-key download tracking."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._flights: dict[CacheKey, asyncio.Task[MaterializeResult]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _ensure(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def lookup(self, key: CacheKey) -> CacheEntry:
        """Return a snapshot of the entry, creating a MISSING one if unseen."""
        return self._ensure(key).snapshot()

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Return a snapshot of the entry without creating it."""
        entry = self._entries.get(key)
        return entry.snapshot() if entry else None

    def entries(self) -> list[CacheEntry]:
        return [entry.snapshot() for entry in self._entries.values()]

    def status_counts(self) -> dict[str, int]:
        counts = Counter(entry.status.value for entry in self._entries.values())
        return {status.value: counts.get(status.value, 0) for status in EntryStatus}

    # Transitions

    def begin_download(self, key: CacheKey, remote_url: str) -> None:
        self._ensure(key).mark_downloading(remote_url)

    def record_attempt(self, key: CacheKey) -> int:
        entry = self._ensure(key)
        entry.record_attempt()
        return entry.attempt_count

    def mark_ready(self, key: CacheKey, local_path: str) -> None:
        self._ensure(key).mark_ready(local_path)

    def mark_failed(self, key: CacheKey, kind: ErrorKind, error: str) -> None:
        self._ensure(key).mark_failed(kind, error)

    def register_stored(self, key: CacheKey, local_path: str) -> bool:
        """Record a file found in the store as READY.

        Entries that are already READY or downloading are left alone.

        Returns:
            True if the entry was changed.
        """
        entry = self._ensure(key)
        if entry.status in (EntryStatus.READY, EntryStatus.DOWNLOADING):
            return False
        entry.mark_ready(local_path)
        return True

    def discard(self, key: CacheKey) -> bool:
        """Drop the entry for ``key``.

        Raises:
            FlightInProgressError: If a download for ``key`` is running.
        """
        if self.flight(key) is not None:
            raise FlightInProgressError(f"{key} is downloading")
        return self._entries.pop(key, None) is not None

    # Single-flight

    def flight(self, key: CacheKey) -> asyncio.Task[MaterializeResult] | None:
        """Return the running download task for ``key``, if any."""
        task = self._flights.get(key)
        if task is not None and task.done():
            return None
        return task

    def start_flight(
        self,
        key: CacheKey,
        remote_url: str,
        download: Coroutine[Any, Any, MaterializeResult],
    ) -> asyncio.Task[MaterializeResult]:
        """Move ``key`` to DOWNLOADING and run ``download`` as its only flight.

        Must not be called while ``flight(key)`` returns a task.
        """
        if self.flight(key) is not None:
            download.close()
            raise FlightInProgressError(f"{key} is already downloading")

        self.begin_download(key, remote_url)
        task = asyncio.create_task(download, name=f"materialize:{key}")
        self._flights[key] = task

        def _finished(done: asyncio.Task[MaterializeResult]) -> None:
            if self._flights.get(key) is done:
                del self._flights[key]

        task.add_done_callback(_finished)
        return task

    def active_flights(self) -> list[asyncio.Task[MaterializeResult]]:
        return [task for task in self._flights.values() if not task.done()]
