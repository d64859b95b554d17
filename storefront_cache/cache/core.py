"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar
from enum import Enum

V = TypeVar("V")


class _Miss:
    """Sentinel returned by CacheManager.get when a key is absent or expired."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Miss, ())


MISS = _Miss()


class ResourceCategory(Enum):
    """Categories of storefront resources with different caching behaviors."""
    API_RESPONSE = "api_response"     # product lists, orders, settings JSON
    PAGE_CONTENT = "page_content"     # hero slides, SEO metadata, about/footer
    IMAGE = "image"                   # product and slider images
    STATIC_ASSET = "static_asset"     # js/css bundles, manifest
    FONT = "font"                     # web fonts, effectively immutable


class Priority(Enum):
    """Informational priority carried by an entry."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def coerce(cls, value: Any) -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown priority {value!r}, expected one of "
                f"{[p.value for p in cls]}"
            ) from None


@dataclass
class CacheEntry(Generic[V]):
    """
    A cached resource with size, timestamps and access accounting.
    """
    key: str
    value: V
    size_bytes: int
    created_at: datetime
    expires_at: Optional[datetime] = None  # None = lives until evicted
    hit_count: int = 0
    tags: List[str] = field(default_factory=list)
    priority: Priority = Priority.MEDIUM

    def is_expired(self, now: datetime) -> bool:
        """Expired once expires_at has been reached."""
        return self.expires_at is not None and self.expires_at <= now

    def age_seconds(self, now: datetime) -> float:
        """Seconds since the entry was stored."""
        return (now - self.created_at).total_seconds()

    @property
    def ttl_seconds(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - self.created_at).total_seconds()

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Describe the entry (without its payload) for the operator screen."""
        result = {
            "key": self.key,
            "sizeBytes": self.size_bytes,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "hitCount": self.hit_count,
            "tags": list(self.tags),
            "priority": self.priority.value,
        }
        if now is not None:
            result["ageSeconds"] = round(self.age_seconds(now), 1)
        return result


@dataclass
class CacheStats:
    """
    Aggregate counters for a cache instance, read by the admin dashboard.
    """
    item_count: int
    total_size: int
    hit_rate: float  # hits / (hits + misses), 0.0 before any lookup
    hits: int = 0
    misses: int = 0
    expired_evictions: int = 0
    last_cleanup: Optional[datetime] = None
    active_fetches: int = 0
    fetches: int = 0             # upstream fetches made to fill the cache
    coalesced_fetches: int = 0   # fills that reused another caller's fetch
    revalidations: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "itemCount": self.item_count,
            "totalSize": self.total_size,
            "hitRate": round(self.hit_rate, 4),
            "hitRatePercent": round(self.hit_rate * 100, 1),
            "hits": self.hits,
            "misses": self.misses,
            "expiredEvictions": self.expired_evictions,
            "lastCleanup": self.last_cleanup.isoformat() if self.last_cleanup else None,
            "activeFetches": self.active_fetches,
            "fetches": self.fetches,
            "coalescedFetches": self.coalesced_fetches,
            "revalidations": self.revalidations,
        }


@dataclass
class FetchResult:
    """Payload returned by a resource fetcher."""
    content: Any
    size_bytes: int
    content_type: str = ""


@dataclass
class PreloadFailure:
    """One URL that could not be preloaded."""
    url: str
    error: str


@dataclass
class PreloadResult:
    """Outcome of a preload batch."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[PreloadFailure] = field(default_factory=list)

    @property
    def failed_urls(self) -> List[str]:
        return [f.url for f in self.failed]

    def to_dict(self) -> dict:
        return {
            "succeeded": list(self.succeeded),
            "failed": [{"url": f.url, "error": f.error} for f in self.failed],
            "succeededCount": len(self.succeeded),
            "failedCount": len(self.failed),
        }


class CacheError(Exception):
    """Base error for the cache package."""


class PersistenceError(CacheError):
    """The persistence backend could not be read or written."""


class UnknownCacheError(CacheError):
    """A cache name that is not configured was requested."""
