"""
Resource fetchers wrapped by the cache manager.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import urljoin

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .core import FetchResult

logger = logging.getLogger("cache.fetcher")


class ResourceFetcher(ABC):
    """
    Loads a resource by URL for the cache.

    Implementations raise on any failure; the cache manager converts
    the exception into a per-URL failure record.
    """

    @abstractmethod
    def fetch(self, url: str) -> FetchResult:
        """Fetch a resource and report its size."""
        pass


class HttpResourceFetcher(ResourceFetcher):
    """
    Fetch resources over HTTP with a per-request timeout and retry on
    transient network errors.

    JSON responses are decoded, text/* responses become str and anything
    else (images, fonts) stays bytes.
    """

    RETRYABLE = (requests.ConnectionError, requests.Timeout)

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: Origin used to resolve site-relative URLs like /images/logo.png
            timeout: Seconds per request attempt
            max_attempts: Attempts per URL, including the first
            session: Optional shared requests session
        """
        self.base_url = base_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._session = session or requests.Session()

    def resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))
        return url

    def fetch(self, url: str) -> FetchResult:
        target = self.resolve(url)

        for attempt in Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(self.RETRYABLE),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying {target} (attempt {attempt.retry_state.attempt_number})"
                    )
                response = self._session.get(target, timeout=self.timeout)
                response.raise_for_status()

        raw = response.content
        content_type = response.headers.get("content-type", "")

        if "application/json" in content_type:
            try:
                content = response.json()
            except (ValueError, json.JSONDecodeError):
                logger.warning(f"Invalid JSON body from {target}, keeping raw bytes")
                content = raw
        elif content_type.startswith("text/"):
            content = response.text
        else:
            content = raw

        logger.debug(f"Fetched {target} ({len(raw)} bytes, {content_type or 'unknown type'})")
        return FetchResult(content=content, size_bytes=len(raw), content_type=content_type)

    def close(self) -> None:
        self._session.close()
