"""
Main cache orchestration: keyed entries with expiry, stats, cleanup and preload.
"""
import threading
import logging
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Set, Union
from concurrent.futures import ThreadPoolExecutor, as_completed

from config.settings import settings

from .core import (
    MISS,
    CacheEntry,
    CacheError,
    CacheStats,
    PersistenceError,
    PreloadFailure,
    PreloadResult,
    Priority,
    UnknownCacheError,
    V,
)
from .coalescer import FetchCoalescer
from .fetcher import HttpResourceFetcher, ResourceFetcher
from .persistence import PersistenceBackend, SQLiteCacheStore
from .ttl_policies import get_ttl_for_key

logger = logging.getLogger("cache.manager")

PRELOAD_TAG = "preload"

CACHE_NAME_PATTERN = re.compile(r"^[a-z0-9_-]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_size(value: Any) -> int:
    """
    Best-effort byte size of a value.

    bytes count as-is, strings by their UTF-8 length and anything else by
    its compact JSON encoding. Unserializable values count as 0.
    """
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, memoryview):
        return value.nbytes
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    except (TypeError, ValueError) as e:
        logger.warning(f"Cannot estimate size of {type(value).__name__} value, using 0: {e}")
        return 0


class CacheManager(Generic[V]):
    """
    Resource cache with:
    - Optional per-entry expiry (lazy on read, or by sweep)
    - Hit/miss accounting and aggregate stats
    - Prefix and tag based invalidation
    - Parallel preload of critical URLs with per-URL failure isolation
    - Optional best-effort persistence across restarts
    """

    def __init__(
        self,
        name: str = "default",
        fetcher: Optional[ResourceFetcher] = None,
        persistence: Optional[PersistenceBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
        preload_workers: int = 4,
        preload_ttl_seconds: Optional[int] = None,
        coalesce_timeout: float = 30.0,
        cleanup_interval_seconds: Optional[float] = None,
    ):
        """
        Initialize the cache manager.

        Args:
            name: Name of this cache instance, used in logs
            fetcher: Loader used by preload; preload is unavailable without one
            persistence: Optional durable store, read on start() and written after mutations
            clock: Returns the current aware UTC datetime
            preload_workers: Thread pool size for preload fetches
            preload_ttl_seconds: TTL for preloaded entries; None falls back to category policy
            coalesce_timeout: Timeout for waiting on a duplicate in-flight fetch
            cleanup_interval_seconds: Period of the background expiry sweep, None disables it
        """
        self.name = name
        self._fetcher = fetcher
        self._persistence = persistence
        self._clock = clock or _utcnow
        self._preload_workers = max(1, preload_workers)
        self._preload_ttl = preload_ttl_seconds
        self._cleanup_interval = cleanup_interval_seconds

        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._coalescer = FetchCoalescer(timeout=coalesce_timeout)

        # Stats tracking
        self._stats = {
            "hits": 0,
            "misses": 0,
            "expired_evictions": 0,
            "fetches": 0,
            "coalesced_fetches": 0,
            "revalidations": 0,
        }
        self._last_cleanup: Optional[datetime] = None

        # Persistence writes happen off the request path, one at a time, once started
        self._persist_pool: Optional[ThreadPoolExecutor] = None
        self._persist_pending = False

        # Stale entries are refreshed in the background, one refresh per key
        self._revalidation_pool: Optional[ThreadPoolExecutor] = None
        self._revalidating: Set[str] = set()

        self._stop_event = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Load persisted entries and start the periodic expiry sweep."""
        if self._started:
            return
        self._started = True
        self._stop_event.clear()

        if self._persistence is not None:
            self._open_persist_pool()
            self._restore()

        if self._cleanup_interval:
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                name=f"cache-cleanup-{self.name}",
                daemon=True,
            )
            self._cleanup_thread.start()

        logger.info(f"Cache '{self.name}' started with {len(self._entries)} entries")

    def shutdown(self) -> None:
        """Stop background work and write a final snapshot."""
        self._stop_event.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=5)
            self._cleanup_thread = None

        with self._lock:
            revalidation_pool = self._revalidation_pool
            self._revalidation_pool = None
        if revalidation_pool is not None:
            revalidation_pool.shutdown(wait=True)

        if self._persist_pool is not None:
            self._persist_pool.shutdown(wait=True)
            self._persist_pool = None
            self._flush()

        close = getattr(self._fetcher, "close", None)
        if callable(close):
            close()

        self._started = False
        logger.info(f"Cache '{self.name}' shut down")

    def _restore(self) -> None:
        try:
            stored = self._persistence.load()
        except PersistenceError as e:
            logger.warning(f"Cache '{self.name}' starting empty, could not load persisted entries: {e}")
            return

        now = self._clock()
        restored = 0
        with self._lock:
            for key, entry in stored.items():
                if entry.is_expired(now) or key in self._entries:
                    continue
                self._entries[key] = entry
                restored += 1
        logger.info(f"Restored {restored} of {len(stored)} persisted entries into '{self.name}'")

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self._cleanup_interval):
            self.cleanup_expired()

    # =========================================================================
    # Read / write
    # =========================================================================

    def get(self, key: str) -> Union[V, Any]:
        """
        Look up a key.

        Returns:
            The cached value, or MISS if the key is absent or expired
        """
        with self._lock:
            entry = self._entries.get(key)

            if entry is None:
                logger.debug(f"CACHE MISS: {key}")
                self._stats["misses"] += 1
                return MISS

            if entry.is_expired(self._clock()):
                logger.debug(f"CACHE EXPIRED: {key}")
                del self._entries[key]
                self._stats["misses"] += 1
                self._stats["expired_evictions"] += 1
                self._schedule_persist()
                return MISS

            entry.hit_count += 1
            self._stats["hits"] += 1
            logger.debug(f"CACHE HIT: {key} [hits={entry.hit_count}]")
            return entry.value

    def set(
        self,
        key: str,
        value: V,
        ttl_seconds: Optional[float] = None,
        size_bytes: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> None:
        """
        Insert or overwrite an entry.

        Args:
            key: Unique resource key
            value: Payload, opaque to the cache
            ttl_seconds: Lifetime; None means no expiry, 0 means already expired
            size_bytes: Size for accounting; estimated from the value when omitted
            tags: Labels for clear_by_tags
            priority: Informational priority

        Raises:
            ValueError: Negative ttl_seconds or size_bytes, or unknown priority
        """
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        if size_bytes is not None and size_bytes < 0:
            raise ValueError(f"size_bytes must be >= 0, got {size_bytes}")
        priority = Priority.coerce(priority)

        if size_bytes is None:
            size_bytes = estimate_size(value)

        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                size_bytes=size_bytes,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None,
                tags=list(dict.fromkeys(tags or [])),
                priority=priority,
            )
            self._schedule_persist()

    def set_resource(
        self,
        key: str,
        value: V,
        size_bytes: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> Optional[int]:
        """
        Store a resource with the default TTL of its category.

        Returns:
            The TTL applied (None for no expiry)
        """
        ttl = get_ttl_for_key(key)
        self.set(key, value, ttl_seconds=ttl, size_bytes=size_bytes, tags=tags, priority=priority)
        return ttl

    def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], V],
        ttl_seconds: Optional[float] = None,
        revalidate: bool = True,
        tags: Optional[Iterable[str]] = None,
    ) -> V:
        """
        Read-through lookup.

        A hit returns the cached value; when the entry is stale and
        revalidate is set, a background refresh replaces it. A miss calls
        fetch_fn (once per key across concurrent callers) and stores the
        result.

        Args:
            key: Resource key
            fetch_fn: Loads the value on a miss or refresh
            ttl_seconds: TTL for stored values; None uses the category policy
            revalidate: Refresh stale hits in the background
            tags: Tags for stored values

        Raises:
            Whatever fetch_fn raises on a miss; nothing is cached then
        """
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        if ttl_seconds is None:
            ttl_seconds = get_ttl_for_key(key)

        value = self.get(key)
        if value is not MISS:
            if revalidate and self.is_stale(key):
                self._trigger_background_revalidate(key, fetch_fn, ttl_seconds, tags)
            return value

        result, joined = self._coalescer.fetch_once(key, fetch_fn)
        self._count_fetch(joined)
        if not joined:
            self.set(key, result, ttl_seconds=ttl_seconds, tags=tags)
        return result

    def _trigger_background_revalidate(
        self,
        key: str,
        fetch_fn: Callable[[], V],
        ttl_seconds: Optional[float],
        tags: Optional[Iterable[str]],
    ) -> None:
        with self._lock:
            if key in self._revalidating:
                return
            self._revalidating.add(key)
            if self._revalidation_pool is None:
                self._revalidation_pool = ThreadPoolExecutor(
                    max_workers=2,
                    thread_name_prefix=f"cache-revalidate-{self.name}",
                )
            pool = self._revalidation_pool

        def do_revalidate():
            try:
                result, joined = self._coalescer.fetch_once(key, fetch_fn)
                self._count_fetch(joined)
                if not joined:
                    self.set(key, result, ttl_seconds=ttl_seconds, tags=tags)
                with self._lock:
                    self._stats["revalidations"] += 1
                logger.debug(f"Revalidated {key}")
            except Exception as e:
                logger.warning(f"Background revalidation failed for {key}: {e}")
            finally:
                with self._lock:
                    self._revalidating.discard(key)

        logger.debug(f"Stale entry {key}, refreshing in background")
        try:
            pool.submit(do_revalidate)
        except RuntimeError:
            # Shut down meanwhile, keep serving the stale value
            with self._lock:
                self._revalidating.discard(key)

    def _count_fetch(self, joined: bool) -> None:
        with self._lock:
            self._stats["coalesced_fetches" if joined else "fetches"] += 1

    def is_stale(self, key: str, max_age_seconds: Optional[float] = None) -> bool:
        """
        Check whether an entry should be refreshed. Does not touch hit/miss counters.

        An absent or expired entry is stale. Otherwise the entry is stale when
        older than max_age_seconds, or past 80% of its TTL when no max age
        is given. Entries without expiry are never stale by default.
        """
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is None or entry.is_expired(now):
                return True

            age = entry.age_seconds(now)
            if max_age_seconds is not None:
                return age > max_age_seconds

            ttl = entry.ttl_seconds
            if ttl is None:
                return False
            return age > ttl * 0.8

    # =========================================================================
    # Eviction
    # =========================================================================

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                logger.info(f"Invalidated cache: {key}")
                self._schedule_persist()
                return True
            return False

    def cleanup_expired(self) -> int:
        """
        Remove every entry whose expiry has been reached.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expired_evictions"] += len(expired)
            self._last_cleanup = now

            if expired:
                logger.info(f"Cleaned {len(expired)} expired entries from '{self.name}'")
                self._schedule_persist()
            return len(expired)

    def clear(self, scope: Optional[str] = "all") -> int:
        """
        Clear all entries, or all entries whose key starts with a prefix.

        Hit/miss counters are reset only for a full clear.

        Args:
            scope: "all" (or None) for everything, otherwise a key prefix

        Returns:
            Number of entries cleared
        """
        with self._lock:
            if scope is None or scope == "all":
                count = len(self._entries)
                self._entries.clear()
                for counter in self._stats:
                    self._stats[counter] = 0
                logger.info(f"Cleared {count} cache entries from '{self.name}'")
            else:
                to_delete = [k for k in self._entries if k.startswith(scope)]
                for key in to_delete:
                    del self._entries[key]
                count = len(to_delete)
                if count:
                    logger.info(f"Cleared {count} entries with prefix '{scope}'")

            if count:
                self._schedule_persist()
            return count

    def clear_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove entries carrying any of the given tags.

        Returns:
            Number of entries removed
        """
        wanted = set(tags)
        with self._lock:
            to_delete = [k for k, e in self._entries.items() if wanted.intersection(e.tags)]
            for key in to_delete:
                del self._entries[key]
            if to_delete:
                logger.info(f"Cleared {len(to_delete)} entries tagged {sorted(wanted)}")
                self._schedule_persist()
            return len(to_delete)

    # =========================================================================
    # Preload
    # =========================================================================

    def preload(
        self,
        urls: Iterable[str],
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        priority: Union[Priority, str] = Priority.HIGH,
    ) -> PreloadResult:
        """
        Fetch and cache every URL not already live in the cache.

        Duplicate URLs are fetched once. Fetches run in parallel and a failing
        URL is recorded in the result without affecting the others.

        Args:
            urls: Resource URLs to warm
            ttl_seconds: TTL for the new entries; defaults to the configured
                preload TTL, then to the category policy
            tags: Extra tags; "preload" is always applied
            priority: Priority for the new entries

        Raises:
            CacheError: No fetcher was configured for this cache
        """
        if self._fetcher is None:
            raise CacheError(f"Cache '{self.name}' has no fetcher configured for preload")
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        priority = Priority.coerce(priority)
        entry_tags = [PRELOAD_TAG] + [t for t in (tags or []) if t != PRELOAD_TAG]

        result = PreloadResult()
        to_fetch: List[str] = []
        with self._lock:
            now = self._clock()
            for url in dict.fromkeys(urls):
                entry = self._entries.get(url)
                if entry is not None and not entry.is_expired(now):
                    result.succeeded.append(url)
                else:
                    to_fetch.append(url)

        if not to_fetch:
            return result

        logger.info(
            f"Preloading {len(to_fetch)} resources into '{self.name}' "
            f"({len(result.succeeded)} already cached)"
        )

        workers = min(self._preload_workers, len(to_fetch))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cache-preload") as pool:
            future_to_url = {
                pool.submit(self._fetch_and_store, url, ttl_seconds, entry_tags, priority): url
                for url in to_fetch
            }
            for future in as_completed(future_to_url):
                url = future_to_url[future]
                try:
                    future.result()
                    result.succeeded.append(url)
                except Exception as e:
                    logger.warning(f"Preload failed for {url}: {e}")
                    result.failed.append(PreloadFailure(url=url, error=str(e) or type(e).__name__))

        logger.info(
            f"Preload finished for '{self.name}': "
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    def _fetch_and_store(
        self,
        url: str,
        ttl_seconds: Optional[float],
        tags: List[str],
        priority: Priority,
    ) -> None:
        fetched, joined = self._coalescer.fetch_once(url, lambda: self._fetcher.fetch(url))
        self._count_fetch(joined)
        if joined:
            # The caller that made the fetch stores it
            return

        if ttl_seconds is None:
            ttl_seconds = self._preload_ttl if self._preload_ttl is not None else get_ttl_for_key(url)

        size = fetched.size_bytes if fetched.size_bytes is not None and fetched.size_bytes >= 0 else None
        self.set(url, fetched.content, ttl_seconds=ttl_seconds, size_bytes=size, tags=tags, priority=priority)

    # =========================================================================
    # Introspection
    # =========================================================================

    def entries(self) -> List[CacheEntry[V]]:
        """Snapshot of live entries, oldest first."""
        with self._lock:
            now = self._clock()
            live = [e for e in self._entries.values() if not e.is_expired(now)]
        return sorted(live, key=lambda e: e.created_at)

    def keys(self) -> List[str]:
        """Keys of live entries."""
        return [e.key for e in self.entries()]

    def stats(self) -> CacheStats:
        """Get cache statistics over live entries."""
        with self._lock:
            now = self._clock()
            live = [e for e in self._entries.values() if not e.is_expired(now)]
            hits = self._stats["hits"]
            misses = self._stats["misses"]
            total_requests = hits + misses

            return CacheStats(
                item_count=len(live),
                total_size=sum(e.size_bytes for e in live),
                hit_rate=(hits / total_requests) if total_requests > 0 else 0.0,
                hits=hits,
                misses=misses,
                expired_evictions=self._stats["expired_evictions"],
                last_cleanup=self._last_cleanup,
                active_fetches=self._coalescer.in_flight,
                fetches=self._stats["fetches"],
                coalesced_fetches=self._stats["coalesced_fetches"],
                revalidations=self._stats["revalidations"],
            )

    # =========================================================================
    # Persistence
    # =========================================================================

    def _open_persist_pool(self) -> None:
        if self._persistence is not None and self._persist_pool is None:
            self._persist_pool = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=f"cache-persist-{self.name}",
            )

    def _schedule_persist(self) -> None:
        """Queue a snapshot write; caller holds the lock."""
        pool = self._persist_pool
        if pool is None or self._persist_pending:
            return
        self._persist_pending = True
        try:
            pool.submit(self._flush)
        except RuntimeError:
            # Pool already shut down, the final snapshot covers this change
            self._persist_pending = False

    def _flush(self) -> None:
        if self._persistence is None:
            return
        with self._lock:
            self._persist_pending = False
            snapshot = dict(self._entries)
        try:
            self._persistence.save(snapshot)
        except Exception as e:
            logger.warning(f"Persisting cache '{self.name}' failed: {e}")


# Named cache manager instances
_cache_managers: Dict[str, CacheManager] = {}
_registry_lock = threading.Lock()


def check_cache_name(name: str) -> str:
    """
    Validate a cache name against the configured set.

    Names double as database file names, so only configured names made of
    lowercase letters, digits, "_" and "-" are accepted.

    Raises:
        UnknownCacheError: The name is malformed or not configured
    """
    if not CACHE_NAME_PATTERN.match(name) or name not in settings.cache_names:
        raise UnknownCacheError(f"Unknown cache '{name}'")
    return name


def build_cache_manager(name: str = "default") -> CacheManager:
    """Construct a cache manager wired from settings."""
    check_cache_name(name)
    fetcher = HttpResourceFetcher(
        base_url=settings.site_base_url,
        timeout=settings.fetch_timeout_seconds,
        max_attempts=settings.fetch_max_attempts,
    )
    persistence = None
    if settings.cache_persist:
        persistence = SQLiteCacheStore(
            db_path=settings.cache_directory / f"{name}.db",
            format_version=settings.cache_format_version,
        )
    return CacheManager(
        name=name,
        fetcher=fetcher,
        persistence=persistence,
        preload_workers=settings.preload_max_workers,
        preload_ttl_seconds=settings.cache_preload_ttl_seconds,
        cleanup_interval_seconds=settings.cache_cleanup_interval_seconds or None,
    )


def get_cache_manager(name: str = "default") -> CacheManager:
    """
    Get the named cache manager, creating and starting it on first use.

    Raises:
        UnknownCacheError: The name is not one of settings.cache_names
    """
    with _registry_lock:
        manager = _cache_managers.get(name)
        if manager is None:
            manager = build_cache_manager(name)
            manager.start()
            _cache_managers[name] = manager
        return manager


def start_cache_managers() -> List[CacheManager]:
    """Create and start every configured cache."""
    return [get_cache_manager(name) for name in settings.cache_names]


def reset_cache_managers() -> None:
    """Shut down and forget every named cache manager."""
    with _registry_lock:
        managers = list(_cache_managers.values())
        _cache_managers.clear()
    for manager in managers:
        manager.shutdown()
