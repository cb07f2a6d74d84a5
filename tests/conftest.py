"""
Pytest configuration and fixtures for image mirror tests.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import patch

import httpx
import pytest

from skumirror.cache.materializer import Materializer
from skumirror.cache.registry import CacheRegistry
from skumirror.cache.service import ImageCache
from skumirror.config import Settings, clear_settings_cache
from skumirror.store.local import LocalStore

# Smallest valid PNG header plus padding; content is never decoded.
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256

Handler = Callable[[httpx.Request], Any]


@dataclass
class FakeRemote:
    """Scriptable stand-in for remote image hosts.

    Each URL maps to a list of steps consumed one per request; the last
    step repeats. A step is an httpx.Response, an exception instance to
    raise, or a callable taking the request.
    """

    routes: dict[str, list[Any]] = field(default_factory=dict)
    hits: dict[str, int] = field(default_factory=dict)
    delay: float = 0.0

    def add(self, url: str, *steps: Any) -> None:
        self.routes[url] = list(steps)

    def image(self, url: str, content: bytes = PNG_BYTES) -> None:
        self.add(url, httpx.Response(200, content=content, headers={"content-type": "image/png"}))

    def streamed(
        self, url: str, content: bytes = PNG_BYTES, headers: dict[str, str] | None = None
    ) -> None:
        """Serve ``content`` as an unread stream, like a real connection."""

        def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                stream=httpx.ByteStream(content),
                headers={"content-type": "image/png", **(headers or {})},
            )

        self.add(url, respond)

    def count(self, url: str) -> int:
        return self.hits.get(url, 0)

    @property
    def total_hits(self) -> int:
        return sum(self.hits.values())

    async def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] = self.hits.get(url, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)

        steps = self.routes.get(url)
        if not steps:
            return httpx.Response(404)
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if callable(step) and not isinstance(step, httpx.Response):
            step = step(request)
            if asyncio.iscoroutine(step):
                step = await step
        if isinstance(step, BaseException):
            raise step
        return step

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "IMAGES_DIR": str(temp_dir / "images"),
        "PUBLIC_PREFIX": "/images/products",
        "IMAGE_EXTENSION": ".jpg",
        "FETCH_TIMEOUT_SECONDS": "2.0",
        "MAX_ATTEMPTS": "3",
        "BACKOFF_MIN_SECONDS": "0",
        "BACKOFF_MAX_SECONDS": "0",
        "MAX_CONCURRENT_FETCHES": "4",
        "SERVICE_URL": "http://mirror.test",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    clear_settings_cache()
    from skumirror.config import get_settings

    settings = get_settings()
    settings.ensure_directories()
    yield settings
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def store(temp_dir: Path) -> LocalStore:
    return LocalStore(temp_dir / "images")


@pytest.fixture
def registry() -> CacheRegistry:
    return CacheRegistry()


@pytest.fixture
async def materializer(
    registry: CacheRegistry, store: LocalStore, remote: FakeRemote
) -> Materializer:
    """Materializer with zero backoff talking to the fake remote."""
    materializer = Materializer(
        registry,
        store,
        timeout=2.0,
        max_attempts=3,
        backoff_min=0,
        backoff_max=0,
        max_concurrency=4,
        transport=remote.transport,
    )
    yield materializer
    await materializer.close()


@pytest.fixture
async def image_cache(
    registry: CacheRegistry, store: LocalStore, materializer: Materializer
) -> ImageCache:
    return ImageCache(store, registry=registry, materializer=materializer)
