"""
Provider registry.

Asset sources and analyzers are registered by name so the library
configuration (TOML) can select them without code changes. Third-party
packages add providers through the ``mediadex.sources`` and
``mediadex.analyzers`` entry-point groups.
"""

import logging

from ..protocol import AssetSource

logger = logging.getLogger(__name__)

SOURCE_ENTRY_POINTS = "mediadex.sources"
ANALYZER_ENTRY_POINTS = "mediadex.analyzers"


class NullAnalyzer:
    """
    Analyzer with no capabilities.

    Items analysed with it become Processed with empty attributes. Useful
    as a default until a real analyzer is configured, and for browsing a
    library by date and favorites only.
    """

    def __init__(self, **params):
        if params:
            logger.debug("NullAnalyzer ignoring params: %s", sorted(params))


class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Example:
        registry = ProviderRegistry()
        registry.register_analyzer("vision", VisionAnalyzer)

        # Later, from config:
        analyzer = registry.create_analyzer("vision", {"model": "small"})
    """

    def __init__(self):
        self._source_providers: dict[str, type] = {}
        self._analyzer_providers: dict[str, type] = {}
        self._entry_points_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily register providers published through entry points."""
        if self._entry_points_loaded:
            return
        self._entry_points_loaded = True

        # Built-in providers register themselves on import
        from . import filesystem  # noqa: F401
        from importlib.metadata import entry_points

        for group, providers in (
            (SOURCE_ENTRY_POINTS, self._source_providers),
            (ANALYZER_ENTRY_POINTS, self._analyzer_providers),
        ):
            for ep in entry_points(group=group):
                if ep.name in providers:
                    continue
                try:
                    providers[ep.name] = ep.load()
                except Exception as e:
                    logger.warning("Could not load provider %r from %s: %s", ep.name, group, e)

    # Registration methods

    def register_source(self, name: str, provider_class: type) -> None:
        """Register an asset source class."""
        self._source_providers[name] = provider_class

    def register_analyzer(self, name: str, provider_class: type) -> None:
        """Register an analyzer class."""
        self._analyzer_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(sorted(providers)) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_source(self, name: str, params: dict | None = None) -> AssetSource:
        """Create an asset source instance."""
        self._ensure_providers_loaded()
        source = self._create_provider("source", name, self._source_providers, params)
        if not isinstance(source, AssetSource):
            raise RuntimeError(f"Source provider '{name}' does not implement AssetSource")
        return source

    def create_analyzer(self, name: str, params: dict | None = None):
        """Create an analyzer instance. It may implement any subset of capabilities."""
        self._ensure_providers_loaded()
        return self._create_provider("analyzer", name, self._analyzer_providers, params)

    # Introspection

    def list_source_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._source_providers)

    def list_analyzer_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._analyzer_providers)


# Global registry instance
_registry = ProviderRegistry()
_registry.register_analyzer("null", NullAnalyzer)


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
