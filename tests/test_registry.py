"""
Tests for the cache registry.
"""

from __future__ import annotations

import asyncio

import pytest

from skumirror.cache.registry import CacheRegistry, FlightInProgressError
from skumirror.types import CacheKey, EntryStatus, ErrorKind, MaterializeResult

KEY = CacheKey("SKU123", 1)


class TestRegistryEntries:
    """Tests for entry bookkeeping."""

    def test_lookup_creates_missing_entry(self, registry: CacheRegistry) -> None:
        """Test that an unseen key is registered as MISSING."""
        assert KEY not in registry
        entry = registry.lookup(KEY)
        assert entry.status is EntryStatus.MISSING
        assert KEY in registry
        assert len(registry) == 1

    def test_get_does_not_create(self, registry: CacheRegistry) -> None:
        """Test that get leaves unseen keys alone."""
        assert registry.get(KEY) is None
        assert len(registry) == 0

    def test_snapshots_do_not_leak_mutation(self, registry: CacheRegistry) -> None:
        """Test that callers cannot change state through a snapshot."""
        snap = registry.lookup(KEY)
        snap.status = EntryStatus.READY
        assert registry.lookup(KEY).status is EntryStatus.MISSING

    def test_transitions(self, registry: CacheRegistry) -> None:
        """Test the normal lifecycle through the registry."""
        registry.begin_download(KEY, "https://cdn.example.com/a.jpg")
        assert registry.record_attempt(KEY) == 1
        assert registry.lookup(KEY).status is EntryStatus.DOWNLOADING

        registry.mark_ready(KEY, "/images/products/SKU123_1.jpg")
        entry = registry.lookup(KEY)
        assert entry.status is EntryStatus.READY
        assert entry.remote_url == "https://cdn.example.com/a.jpg"

    def test_register_stored_respects_existing_state(self, registry: CacheRegistry) -> None:
        """Test that warm start does not override READY or DOWNLOADING entries."""
        assert registry.register_stored(KEY, "/p/SKU123_1.jpg") is True
        assert registry.register_stored(KEY, "/p/other.jpg") is False
        assert registry.lookup(KEY).local_path == "/p/SKU123_1.jpg"

        other = CacheKey("SKU123", 2)
        registry.begin_download(other, "https://cdn.example.com/b.jpg")
        assert registry.register_stored(other, "/p/SKU123_2.jpg") is False

    def test_register_stored_recovers_failed(self, registry: CacheRegistry) -> None:
        """Test that a FAILED entry whose file exists becomes READY."""
        registry.mark_failed(KEY, ErrorKind.NETWORK_ERROR, "HTTP 503")
        assert registry.register_stored(KEY, "/p/SKU123_1.jpg") is True
        assert registry.lookup(KEY).status is EntryStatus.READY

    def test_status_counts(self, registry: CacheRegistry) -> None:
        """Test per-status counting includes zero rows."""
        registry.lookup(KEY)
        registry.mark_ready(CacheKey("SKU123", 2), "/p/SKU123_2.jpg")
        assert registry.status_counts() == {
            "missing": 1,
            "downloading": 0,
            "ready": 1,
            "failed": 0,
        }


class TestRegistryFlights:
    """Tests for single-flight bookkeeping."""

    @pytest.mark.asyncio
    async def test_start_flight_marks_downloading(self, registry: CacheRegistry) -> None:
        """Test that starting a flight moves the entry to DOWNLOADING."""
        gate = asyncio.Event()

        async def download() -> MaterializeResult:
            await gate.wait()
            return MaterializeResult.ok("/p/x.jpg")

        task = registry.start_flight(KEY, "https://cdn.example.com/a.jpg", download())
        assert registry.lookup(KEY).status is EntryStatus.DOWNLOADING
        assert registry.flight(KEY) is task

        gate.set()
        await task
        await asyncio.sleep(0)
        assert registry.flight(KEY) is None
        assert registry.active_flights() == []

    @pytest.mark.asyncio
    async def test_second_flight_is_refused(self, registry: CacheRegistry) -> None:
        """Test that a key cannot have two flights."""
        gate = asyncio.Event()

        async def download() -> MaterializeResult:
            await gate.wait()
            return MaterializeResult.ok("/p/x.jpg")

        task = registry.start_flight(KEY, "https://cdn.example.com/a.jpg", download())
        with pytest.raises(FlightInProgressError):
            registry.start_flight(KEY, "https://cdn.example.com/b.jpg", download())

        assert registry.lookup(KEY).remote_url == "https://cdn.example.com/a.jpg"
        gate.set()
        await task

    @pytest.mark.asyncio
    async def test_discard_refuses_while_downloading(self, registry: CacheRegistry) -> None:
        """Test that an in-flight entry cannot be discarded."""
        gate = asyncio.Event()

        async def download() -> MaterializeResult:
            await gate.wait()
            return MaterializeResult.ok("/p/x.jpg")

        task = registry.start_flight(KEY, "https://cdn.example.com/a.jpg", download())
        with pytest.raises(FlightInProgressError):
            registry.discard(KEY)

        gate.set()
        await task
        assert registry.discard(KEY) is True
        assert registry.discard(KEY) is False
