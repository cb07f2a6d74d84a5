"""
Base interface shared by the in-process cache and the HTTP client.

The client resolver only needs the two service operations, so anything
implementing CacheBackend can sit behind it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from skumirror.types import CacheKey, CheckResult, MaterializeResult


class CacheBackend(ABC):
    """Abstract interface for the existence check and materialize operations."""

    @abstractmethod
    async def check_exists(self, key: CacheKey) -> CheckResult:
        """Report whether a READY copy exists for ``key``."""
        ...

    @abstractmethod
    async def materialize(self, key: CacheKey, remote_url: str) -> MaterializeResult:
        """Ensure a local copy of ``remote_url`` exists under ``key``."""
        ...
