"""
Per-image render state machine used by consumers of the mirror.

    INIT -> CHECKING_LOCAL -> SHOWING_LOCAL
                           -> SHOWING_REMOTE -> SHOWING_LOCAL (after swap)
    any state -> SHOWING_PLACEHOLDER (render failure, or no remote URL)

SHOWING_REMOTE renders the remote URL right away while a materialize call
runs in the background. SHOWING_PLACEHOLDER is terminal; a new key needs a
new resolver. Nothing raised by the backend reaches the caller: the worst
outcome is the placeholder.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from skumirror.cache.base import CacheBackend
from skumirror.exceptions import InvalidKeyError
from skumirror.logging import get_logger
from skumirror.types import CacheKey

logger = get_logger(__name__)



class ResolverState(str, Enum):
    INIT = "init"
    CHECKING_LOCAL = "checking_local"
    SHOWING_LOCAL = "showing_local"
    SHOWING_REMOTE = "showing_remote_pending_materialize"
    SHOWING_PLACEHOLDER = "showing_placeholder"


class RenderKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class RenderedImage:
    """What the UI should draw for one image slot."""

    kind: RenderKind
    src: str | None = None


PLACEHOLDER = RenderedImage(RenderKind.PLACEHOLDER)


class ImageResolver:
    """Decides which source to render for one (sku, image index) slot."""

    def __init__(
        self,
        sku: str,
        remote_url: str | None,
        backend: CacheBackend,
        image_index: int = 1,
        on_change: Callable[[RenderedImage], None] | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            sku: Item SKU.
            remote_url: Source URL of the image, or None if the item has none.
            backend: ImageCache or MirrorClient.
            image_index: Image slot of the item (1-based).
            on_change: Called with the new RenderedImage after every change.
        """
        self.sku = sku
        self.image_index = image_index
        self.remote_url = remote_url or None
        self.backend = backend
        self.on_change = on_change
        self._state = ResolverState.INIT
        self._rendered: RenderedImage | None = None
        self._closed = False
        self._materialize_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ResolverState:
        return self._state

    @property
    def rendered(self) -> RenderedImage | None:
        """Current render target; None until the local check finishes."""
        return self._rendered

    @property
    def closed(self) -> bool:
        return self._closed

    def _enter(self, state: ResolverState, rendered: RenderedImage | None = None) -> None:
        self._state = state
        if rendered is not None and rendered != self._rendered:
            self._rendered = rendered
            if self.on_change and not self._closed:
                self.on_change(rendered)

    async def start(self) -> RenderedImage:
        """Run the initial check and return the first thing to render."""
        if self._state is not ResolverState.INIT:
            return self._rendered or PLACEHOLDER

        if not self.remote_url:
            self._enter(ResolverState.SHOWING_PLACEHOLDER, PLACEHOLDER)
            return PLACEHOLDER

        remote = RenderedImage(RenderKind.REMOTE, self.remote_url)
        try:
            key = CacheKey.create(self.sku, self.image_index)
        except InvalidKeyError as e:
            logger.warning("Unusable image key, showing remote only", error=str(e))
            self._enter(ResolverState.SHOWING_REMOTE, remote)
            return remote

        self._enter(ResolverState.CHECKING_LOCAL)
        try:
            result = await self.backend.check_exists(key)
        except Exception as e:
            logger.warning(
                "Failed to check local image", key=str(key), error=str(e)
            )
            if self._state is ResolverState.CHECKING_LOCAL:
                self._enter(ResolverState.SHOWING_REMOTE, remote)
            return self._rendered or PLACEHOLDER

        if self._state is not ResolverState.CHECKING_LOCAL:
            # A render failure arrived while checking.
            return self._rendered or PLACEHOLDER

        if result.exists and result.local_path:
            self._enter(
                ResolverState.SHOWING_LOCAL,
                RenderedImage(RenderKind.LOCAL, result.local_path),
            )
            return self._rendered or PLACEHOLDER

        self._enter(ResolverState.SHOWING_REMOTE, remote)
        task = asyncio.create_task(
            self._materialize_in_background(key, self.remote_url),
            name=f"resolve:{key}",
        )
        self._materialize_task = task
        return remote

    async def _materialize_in_background(self, key: CacheKey, remote_url: str) -> None:
        try:
            result = await self.backend.materialize(key, remote_url)
        except Exception as e:
            logger.warning("Background download failed", key=str(key), error=str(e))
            return

        if not result.success or not result.local_path:
            logger.info(
                "Image not mirrored",
                key=str(key),
                error=result.error.value if result.error else None,
                detail=result.detail,
            )
            return
        if self._closed:
            logger.debug("Resolver closed before swap", key=str(key))
            return
        if self._state is ResolverState.SHOWING_REMOTE:
            self._enter(
                ResolverState.SHOWING_LOCAL,
                RenderedImage(RenderKind.LOCAL, result.local_path),
            )

    def on_render_error(self) -> RenderedImage:
        """Report that the currently displayed image failed to load."""
        if self._state is not ResolverState.SHOWING_PLACEHOLDER:
            logger.debug("Image failed to render", sku=self.sku, src=self._rendered)
            self._enter(ResolverState.SHOWING_PLACEHOLDER, PLACEHOLDER)
        return PLACEHOLDER

    def close(self) -> None:
        """Tear down the resolver. A running download is left to finish."""
        self._closed = True

    async def wait_settled(self) -> None:
        """Wait for the background materialize call, if one was started."""
        if self._materialize_task is not None:
            await asyncio.shield(self._materialize_task)
