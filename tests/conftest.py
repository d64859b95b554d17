"""
Shared fixtures: a controllable clock and an in-memory fetcher.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from storefront_cache.cache import CacheManager, FetchResult, ResourceFetcher


class FakeClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeFetcher(ResourceFetcher):
    """
    Serves canned responses. A response that is an Exception instance is raised.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def fetch(self, url: str) -> FetchResult:
        with self._lock:
            self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise ConnectionError(f"no route to {url}")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, bytes):
            return FetchResult(content=response, size_bytes=len(response), content_type="image/png")
        return FetchResult(content=response, size_bytes=len(str(response)), content_type="application/json")

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetcher():
    return FakeFetcher({
        "/images/logo.png": b"\x89PNG logo",
        "/images/favicon.png": b"\x89PNG favicon",
        "/manifest.json": {"name": "SPIRITHUB ROASTERY", "short_name": "SPIRITHUB"},
    })


@pytest.fixture
def cache(clock, fetcher):
    manager = CacheManager(name="test", fetcher=fetcher, clock=clock)
    yield manager
    manager.shutdown()
