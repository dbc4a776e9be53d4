"""Cache configuration management."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pullcache.utils import DEFAULT_SUBDIR


@dataclass
class CacheConfig:
    """Configuration for the resource cache.

    Attributes:
        cache_root: Root directory for cache storage
        subdir: Directory below cache_root holding cached files
        probe_timeout: Timeout in seconds for version probe requests
        fetch_timeout: Timeout in seconds for body downloads
        max_redirects: Maximum number of redirects followed while probing
        chunk_size: Size in bytes of chunks streamed to disk
        lock_timeout: Seconds to wait for a checkpoint file lock
    """

    cache_root: Path = Path.home() / ".pullcache"
    subdir: str = DEFAULT_SUBDIR
    probe_timeout: float = 30.0
    fetch_timeout: float = 300.0
    max_redirects: int = 10
    chunk_size: int = 64 * 1024
    lock_timeout: float = 30.0

    def __post_init__(self):
        """Ensure cache_root is an expanded Path object."""
        if self.cache_root is None:
            self.cache_root = Path.home() / ".pullcache"
        self.cache_root = Path(self.cache_root).expanduser()
        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must be >= 0, got {self.max_redirects}")

    @property
    def cache_dir(self) -> Path:
        """Directory under which per-owner cache directories are created."""
        return self.cache_root / self.subdir

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "CacheConfig":
        """Load configuration from file.

        Args:
            config_path: Path to config file. If None, uses default location.

        Returns:
            CacheConfig instance
        """
        if config_path is None:
            config_path = Path.home() / ".pullcache" / "config.json"

        if not config_path.exists():
            return cls()

        with open(config_path, "r") as f:
            data = json.load(f)

        if "cache_root" in data:
            data["cache_root"] = Path(data["cache_root"])

        return cls(**data)

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to file.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        if config_path is None:
            config_path = self.cache_root / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "cache_root": str(self.cache_root),
            "subdir": self.subdir,
            "probe_timeout": self.probe_timeout,
            "fetch_timeout": self.fetch_timeout,
            "max_redirects": self.max_redirects,
            "chunk_size": self.chunk_size,
            "lock_timeout": self.lock_timeout,
        }

        with open(config_path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Create configuration from environment variables.

        Environment variables:
            PULLCACHE_ROOT: Cache root directory
            PULLCACHE_SUBDIR: Cache subdirectory name
            PULLCACHE_PROBE_TIMEOUT: Probe timeout in seconds
            PULLCACHE_FETCH_TIMEOUT: Download timeout in seconds
            PULLCACHE_MAX_REDIRECTS: Maximum redirects followed per probe

        Returns:
            CacheConfig instance
        """
        config = cls()

        if os.getenv("PULLCACHE_ROOT"):
            config.cache_root = Path(os.getenv("PULLCACHE_ROOT")).expanduser()

        if os.getenv("PULLCACHE_SUBDIR"):
            config.subdir = os.getenv("PULLCACHE_SUBDIR")

        if os.getenv("PULLCACHE_PROBE_TIMEOUT"):
            config.probe_timeout = float(os.getenv("PULLCACHE_PROBE_TIMEOUT"))

        if os.getenv("PULLCACHE_FETCH_TIMEOUT"):
            config.fetch_timeout = float(os.getenv("PULLCACHE_FETCH_TIMEOUT"))

        if os.getenv("PULLCACHE_MAX_REDIRECTS"):
            config.max_redirects = int(os.getenv("PULLCACHE_MAX_REDIRECTS"))

        return config


# Global cache configuration instance
_global_config: Optional[CacheConfig] = None


def get_global_config() -> CacheConfig:
    """Get global cache configuration.

    Returns:
        Global CacheConfig instance
    """
    global _global_config
    if _global_config is None:
        # File first, then environment
        config_path = Path.home() / ".pullcache" / "config.json"
        if config_path.exists():
            _global_config = CacheConfig.load(config_path)
        else:
            _global_config = CacheConfig.from_env()
    return _global_config


def set_global_config(config: Optional[CacheConfig]) -> None:
    """Set global cache configuration.

    Args:
        config: CacheConfig instance to use globally, or None to reset
    """
    global _global_config
    _global_config = config
