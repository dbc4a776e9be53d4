"""pullcache: transactional declaration and local caching of remote resources."""

__version__ = "0.1.0"

from pullcache.cache import CacheConfig, ResourceCacheEngine, ResourceFetcher
from pullcache.ledger import CheckpointStore, ResourceLedger, ResourceProxy

__all__ = [
    "CacheConfig",
    "CheckpointStore",
    "ResourceCacheEngine",
    "ResourceFetcher",
    "ResourceLedger",
    "ResourceProxy",
    "__version__",
]
