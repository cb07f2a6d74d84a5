"""
Image mirror HTTP API.

Endpoints keep the paths the inventory frontend already calls:
    GET    /api/inventory/image/{token}       existence check
    POST   /api/inventory/download-image      materialize
    DELETE /api/inventory/image/{token}       administrative removal
    GET    /api/inventory/image-cache/stats   coverage figures
    GET    /health

Stored files are served under PUBLIC_PREFIX so returned local paths can be
rendered directly.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from uuid6 import uuid7

from skumirror import __version__
from skumirror.cache.registry import FlightInProgressError
from skumirror.cache.service import ImageCache
from skumirror.config import Settings, get_settings
from skumirror.exceptions import InvalidKeyError, StorageError
from skumirror.logging import get_logger, log_context
from skumirror.types import CacheKey, ErrorKind

logger = get_logger(__name__)


# ============== Types ==============

class DownloadRequest(BaseModel):
    """Body of a materialize request.

    ``sku`` is either the combined ``<sku>_<index>`` token, or a bare SKU
    together with ``imageIndex``.
    """

    model_config = ConfigDict(populate_by_name=True)

    sku: str
    image_url: str = Field(alias="imageUrl")
    image_index: Optional[int] = Field(default=None, alias="imageIndex")

    def cache_key(self) -> CacheKey:
        if self.image_index is not None:
            return CacheKey.create(self.sku, self.image_index)
        return CacheKey.parse(self.sku)


def _invalid_key_response(error: InvalidKeyError, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"error": ErrorKind.INVALID_KEY.value, "detail": error.message}
    body.update(extra)
    return JSONResponse(status_code=400, content=body)


# ============== App ==============

def create_app(
    settings: Settings | None = None,
    cache: ImageCache | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        settings: Settings to use; defaults to the cached singleton.
        cache: Pre-built cache (tests inject one with a mock transport).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings.ensure_directories()
        image_cache = cache if cache is not None else ImageCache.from_settings(settings)
        image_cache.rehydrate()
        app.state.cache = image_cache
        logger.info("Image mirror started", images_dir=str(settings.IMAGES_DIR))
        try:
            yield
        finally:
            await image_cache.close()
            logger.info("Image mirror stopped")

    app = FastAPI(title="SKU Image Mirror", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def request_context(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("x-request-id") or uuid7().hex
        with log_context(request_id=request_id):
            response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    def _cache(request: Request) -> ImageCache:
        return request.app.state.cache

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        return {"status": "ok", "version": __version__, "entries": len(_cache(request).registry)}

    @app.get("/api/inventory/image/{token}")
    async def check_image(token: str, request: Request) -> Any:
        try:
            key = CacheKey.parse(token)
        except InvalidKeyError as e:
            return _invalid_key_response(e, exists=False, localPath=None)
        result = await _cache(request).check_exists(key)
        return result.to_dict()

    @app.post("/api/inventory/download-image")
    async def download_image(body: DownloadRequest, request: Request) -> Any:
        try:
            key = body.cache_key()
        except InvalidKeyError as e:
            return _invalid_key_response(e, success=False)
        with log_context(cache_key=str(key)):
            result = await _cache(request).materialize(key, body.image_url)
        return result.to_dict()

    @app.delete("/api/inventory/image/{token}")
    async def forget_image(token: str, request: Request) -> Any:
        try:
            key = CacheKey.parse(token)
        except InvalidKeyError as e:
            return _invalid_key_response(e, removed=False)
        try:
            removed = _cache(request).forget(key)
        except FlightInProgressError as e:
            return JSONResponse(status_code=409, content={"removed": False, "detail": str(e)})
        except StorageError as e:
            return JSONResponse(
                status_code=500,
                content={"removed": False, "error": ErrorKind.STORAGE_ERROR.value, "detail": e.message},
            )
        return {"removed": removed}

    @app.get("/api/inventory/image-cache/stats")
    async def cache_stats(request: Request) -> dict[str, Any]:
        return _cache(request).stats().to_dict()

    app.mount(
        settings.PUBLIC_PREFIX,
        StaticFiles(directory=settings.IMAGES_DIR, check_dir=False),
        name="images",
    )

    return app


def run(host: str = "127.0.0.1", port: int = 8000) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.LOG_LEVEL.lower())
