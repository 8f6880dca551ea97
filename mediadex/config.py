"""
Configuration management for media libraries.

The configuration is stored as a TOML file in the library directory.
It specifies the asset source, the analyzer provider and the pipeline
parameters (concurrency, retry policy, capability toggles).
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# tomli_w for writing TOML (tomllib is read-only)
import tomli_w

from .types import MergePolicy


CONFIG_FILENAME = "mediadex.toml"
CONFIG_VERSION = 1

DEFAULT_LIBRARY_DIR = Path.home() / ".mediadex"

CAPABILITY_NAMES = ("tagging", "ocr", "faces", "geocoding")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineConfig:
    """Worker pool and retry parameters."""
    concurrency: int = 4
    max_attempts: int = 3
    backoff_base: float = 0.5      # seconds; delay = base * 2^(attempt-1)
    backoff_max: float = 30.0
    capability_timeout: float = 30.0
    prioritize_by_year: bool = False
    auto_analysis: bool = True
    merge_policy: MergePolicy = MergePolicy.REPLACE

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff values must be non-negative")
        if self.capability_timeout <= 0:
            raise ValueError(f"capability_timeout must be positive, got {self.capability_timeout}")


@dataclass
class LibraryConfig:
    """Complete library configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    source: ProviderConfig = field(default_factory=lambda: ProviderConfig("directory"))
    analyzer: ProviderConfig = field(default_factory=lambda: ProviderConfig("null"))
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    capabilities: dict[str, bool] = field(
        default_factory=lambda: {name: True for name in CAPABILITY_NAMES}
    )

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def snapshot_path(self) -> Path:
        return self.path / "library.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def enabled_capabilities(self) -> frozenset[str]:
        return frozenset(n for n in CAPABILITY_NAMES if self.capabilities.get(n, True))


def get_library_directory(override: Path | None = None) -> Path:
    """Resolve the library directory: explicit override, env var, then default."""
    if override is not None:
        return Path(override).expanduser().resolve()
    env = os.environ.get("MEDIADEX_LIBRARY_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return DEFAULT_LIBRARY_DIR


def _parse_pipeline(section: dict) -> PipelineConfig:
    defaults = PipelineConfig()
    policy = section.get("merge_policy", defaults.merge_policy.value)
    try:
        merge_policy = MergePolicy(policy)
    except ValueError:
        raise ValueError(
            f"Unknown merge_policy {policy!r} "
            f"(expected one of: {', '.join(p.value for p in MergePolicy)})"
        ) from None
    pipeline = PipelineConfig(
        concurrency=int(section.get("concurrency", defaults.concurrency)),
        max_attempts=int(section.get("max_attempts", defaults.max_attempts)),
        backoff_base=float(section.get("backoff_base", defaults.backoff_base)),
        backoff_max=float(section.get("backoff_max", defaults.backoff_max)),
        capability_timeout=float(section.get("capability_timeout", defaults.capability_timeout)),
        prioritize_by_year=bool(section.get("prioritize_by_year", defaults.prioritize_by_year)),
        auto_analysis=bool(section.get("auto_analysis", defaults.auto_analysis)),
        merge_policy=merge_policy,
    )
    pipeline.validate()
    return pipeline


def load_config(library_path: Path) -> LibraryConfig:
    """
    Load configuration from a library directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = library_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("library", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    caps = data.get("capabilities", {})
    unknown = set(caps) - set(CAPABILITY_NAMES)
    if unknown:
        raise ValueError(f"Unknown capabilities in config: {', '.join(sorted(unknown))}")

    return LibraryConfig(
        path=library_path,
        version=version,
        created=data.get("library", {}).get("created", ""),
        source=parse_provider(data.get("source", {"name": "directory"})),
        analyzer=parse_provider(data.get("analyzer", {"name": "null"})),
        pipeline=_parse_pipeline(data.get("pipeline", {})),
        capabilities={name: bool(caps.get(name, True)) for name in CAPABILITY_NAMES},
    )


def save_config(config: LibraryConfig) -> None:
    """
    Save configuration to the library directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    pipeline = config.pipeline
    data = {
        "library": {
            "version": config.version,
            "created": config.created,
        },
        "source": provider_to_dict(config.source),
        "analyzer": provider_to_dict(config.analyzer),
        "pipeline": {
            "concurrency": pipeline.concurrency,
            "max_attempts": pipeline.max_attempts,
            "backoff_base": pipeline.backoff_base,
            "backoff_max": pipeline.backoff_max,
            "capability_timeout": pipeline.capability_timeout,
            "prioritize_by_year": pipeline.prioritize_by_year,
            "auto_analysis": pipeline.auto_analysis,
            "merge_policy": pipeline.merge_policy.value,
        },
        "capabilities": dict(config.capabilities),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(library_path: Path) -> LibraryConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = library_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(library_path)
    config = LibraryConfig(path=library_path)
    save_config(config)
    return config
