"""
Resource cache with expiry, hit/miss stats, tag and prefix invalidation,
preloading of critical URLs and optional SQLite persistence.
"""
from .core import (
    MISS,
    CacheEntry,
    CacheError,
    CacheStats,
    FetchResult,
    PersistenceError,
    PreloadFailure,
    PreloadResult,
    Priority,
    ResourceCategory,
    UnknownCacheError,
)
from .ttl_policies import (
    TTL_CONFIG,
    get_category_for_key,
    get_ttl_for_category,
    get_ttl_for_key,
)
from .coalescer import FetchCoalescer
from .fetcher import HttpResourceFetcher, ResourceFetcher
from .persistence import PersistenceBackend, SQLiteCacheStore
from .manager import (
    CacheManager,
    build_cache_manager,
    check_cache_name,
    estimate_size,
    get_cache_manager,
    reset_cache_managers,
    start_cache_managers,
)

__all__ = [
    # Core types
    "MISS",
    "CacheEntry",
    "CacheError",
    "CacheStats",
    "FetchResult",
    "PersistenceError",
    "PreloadFailure",
    "PreloadResult",
    "Priority",
    "ResourceCategory",
    "UnknownCacheError",
    # TTL policies
    "TTL_CONFIG",
    "get_category_for_key",
    "get_ttl_for_category",
    "get_ttl_for_key",
    # Coalescing
    "FetchCoalescer",
    # Collaborators
    "HttpResourceFetcher",
    "ResourceFetcher",
    "PersistenceBackend",
    "SQLiteCacheStore",
    # Manager
    "CacheManager",
    "build_cache_manager",
    "check_cache_name",
    "estimate_size",
    "get_cache_manager",
    "reset_cache_managers",
    "start_cache_managers",
]
