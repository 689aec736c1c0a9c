"""
Configuration management for ark stores.

The configuration is stored as a TOML file in the store's ``.ark`` folder.
It holds the lock tuning and the default tag matching policy for queries.
"""

import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import tomli_w

from .locking import replace_atomic


CONFIG_FILENAME = "ark.toml"
CONFIG_VERSION = 1

TAG_MATCH_POLICIES = ("exact", "substring")


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Seconds to wait for a history lock before giving up, and retry interval
    lock_timeout: float = 10.0
    lock_poll_interval: float = 0.01

    # Default policy for query(filter_by_tag=...)
    tag_match: str = "exact"

    def __post_init__(self):
        self.path = Path(self.path)
        if self.tag_match not in TAG_MATCH_POLICIES:
            raise ValueError(
                f"Unknown tag_match {self.tag_match!r} (expected one of: {', '.join(TAG_MATCH_POLICIES)})"
            )
        if self.lock_timeout < 0 or self.lock_poll_interval <= 0:
            raise ValueError("lock_timeout must be >= 0 and lock_poll_interval > 0")

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def load_config(ark_dir: Path) -> StoreConfig:
    """
    Load configuration from a store's .ark directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = ark_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from None

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    lock = data.get("lock", {})
    query = data.get("query", {})
    return StoreConfig(
        path=ark_dir,
        version=version,
        created=store.get("created", ""),
        lock_timeout=float(lock.get("timeout", 10.0)),
        lock_poll_interval=float(lock.get("poll_interval", 0.01)),
        tag_match=query.get("tag_match", "exact"),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store's .ark directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "lock": {
            "timeout": config.lock_timeout,
            "poll_interval": config.lock_poll_interval,
        },
        "query": {
            "tag_match": config.tag_match,
        },
    }

    # Concurrent first runs may both write it
    replace_atomic(config.config_path, tomli_w.dumps(data).encode("utf-8"))


def load_or_create_config(ark_dir: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config = StoreConfig(path=ark_dir)
    if config.exists():
        return load_config(ark_dir)
    save_config(config)
    return config
