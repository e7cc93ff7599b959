"""Provider interfaces for luceectl."""
from __future__ import annotations

from .version_catalog import (
    VersionCacheEntry,
    VersionCatalog,
    VersionCatalogError,
)

__all__ = [
    "VersionCacheEntry",
    "VersionCatalog",
    "VersionCatalogError",
]
