"""Local caching of remote resources.

Key components:
- ResourceCacheEngine: registrations and per-resource serialized job queues
- ResourceFetcher: version probing and idempotent body download
- CacheConfig: Configuration management
"""

from pullcache.cache.config import CacheConfig, get_global_config, set_global_config
from pullcache.cache.engine import (
    JobOutcome,
    ResourceCacheEngine,
    ResourceKey,
    ResourceStatus,
    SerialJobQueue,
)
from pullcache.cache.fetcher import ProbeResult, ResourceFetcher

__all__ = [
    "CacheConfig",
    "get_global_config",
    "set_global_config",
    "JobOutcome",
    "ProbeResult",
    "ResourceCacheEngine",
    "ResourceFetcher",
    "ResourceKey",
    "ResourceStatus",
    "SerialJobQueue",
]
