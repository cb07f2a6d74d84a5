"""
Consumer-side access to the image mirror.
"""

from skumirror.client.http import MirrorClient
from skumirror.client.resolver import (
    ImageResolver,
    RenderedImage,
    RenderKind,
    ResolverState,
)

__all__ = [
    "ImageResolver",
    "MirrorClient",
    "RenderKind",
    "RenderedImage",
    "ResolverState",
]
