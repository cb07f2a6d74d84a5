"""
Cache package for mirrored images.

This package provides:
- Registry (registry.py): entry state and single-flight bookkeeping
- Materializer (materializer.py): remote fetch, retry and store
- Service (service.py): ImageCache facade with the existence check
"""

from skumirror.cache.base import CacheBackend
from skumirror.cache.materializer import Materializer
from skumirror.cache.registry import CacheRegistry, FlightInProgressError
from skumirror.cache.service import ImageCache

__all__ = [
    "CacheBackend",
    "CacheRegistry",
    "FlightInProgressError",
    "ImageCache",
    "Materializer",
]
