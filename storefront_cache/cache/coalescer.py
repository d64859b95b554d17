"""
Single-flight fetching for cache fills.

Preload batches and read-through lookups can ask for the same URL at the
same time. Only the first caller reaches the fetcher; later callers block
until it finishes and receive the same result or the same exception.
Callers learn whether they joined so the manager stores each fill once and
counts shared fetches.
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("cache.coalescer")


class _Flight:
    """One fetch in progress."""

    __slots__ = ("done", "result", "error", "joined")

    def __init__(self):
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.joined = 0


class FetchCoalescer:
    def __init__(self, timeout: float = 30.0):
        self._flights: Dict[str, _Flight] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def fetch_once(self, key: str, fetch_fn: Callable[[], Any]) -> Tuple[Any, bool]:
        """
        Run fetch_fn for key unless a fetch for key is already running.

        Returns:
            (result, joined). joined is True when this caller reused a fetch
            started by someone else.

        Raises:
            Whatever fetch_fn raised, in every caller that shared the fetch.
            TimeoutError if a shared fetch is still running after the timeout.
        """
        with self._lock:
            flight = self._flights.get(key)
            joined = flight is not None
            if joined:
                flight.joined += 1
            else:
                flight = _Flight()
                self._flights[key] = flight

        if joined:
            if not flight.done.wait(timeout=self._timeout):
                raise TimeoutError(f"Fetch for {key} still running after {self._timeout}s")
            logger.debug(f"Joined in-flight fetch for {key}")
        else:
            try:
                flight.result = fetch_fn()
            except Exception as e:
                flight.error = e
            finally:
                with self._lock:
                    self._flights.pop(key, None)
                flight.done.set()
            if flight.joined:
                logger.debug(f"Fetch for {key} shared with {flight.joined} caller(s)")

        if flight.error is not None:
            raise flight.error
        return flight.result, joined

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._flights)
