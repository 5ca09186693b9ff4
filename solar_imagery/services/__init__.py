"""Imagery services exposed by the ``solar_imagery.services`` package."""

from .cache import CachedImage, ImageCache
from .imagery import ImageRequest, ImageResolver, ResolvedImage, cache_key
from .placeholder import generate_placeholder
from .providers import list_providers

__all__ = [
    "CachedImage",
    "ImageCache",
    "ImageRequest",
    "ImageResolver",
    "ResolvedImage",
    "cache_key",
    "generate_placeholder",
    "list_providers",
]
