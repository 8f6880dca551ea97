"""
Providers for the media library.

- Asset sources enumerate items and supply content (``directory``)
- Analyzers implement any subset of the capability protocols (``null``)

Concrete providers are auto-registered when this module is imported.
"""

from .base import (
    NullAnalyzer,
    ProviderRegistry,
    get_registry,
)

# Import concrete providers to trigger registration
from . import filesystem
from .filesystem import DirectoryAssetSource

__all__ = [
    "DirectoryAssetSource",
    "NullAnalyzer",
    "ProviderRegistry",
    "filesystem",
    "get_registry",
]
