"""
Tests for the HTTP resource fetcher using a stubbed requests session.
"""
import json

import pytest
import requests

from storefront_cache.cache import HttpResourceFetcher


def make_response(status=200, body=b"", content_type=""):
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.encoding = "utf-8"
    if content_type:
        response.headers["content-type"] = content_type
    response.url = "https://shop.example/test"
    return response


class StubSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append((url, timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


class TestHttpResourceFetcher:
    """Tests for content decoding, URL resolution and retries."""

    def test_json_is_decoded(self):
        payload = {"products": [{"id": 1}]}
        body = json.dumps(payload).encode()
        session = StubSession(make_response(body=body, content_type="application/json; charset=utf-8"))
        fetcher = HttpResourceFetcher(session=session)

        result = fetcher.fetch("https://shop.example/api/products")

        assert result.content == payload
        assert result.size_bytes == len(body)
        assert result.content_type.startswith("application/json")

    def test_text_is_decoded(self):
        body = "<h1>قهوة</h1>".encode("utf-8")
        session = StubSession(make_response(body=body, content_type="text/html"))

        result = HttpResourceFetcher(session=session).fetch("https://shop.example/about")

        assert result.content == "<h1>قهوة</h1>"
        assert result.size_bytes == len(body)

    def test_binary_stays_bytes(self):
        body = b"\x89PNG\r\n\x1a\n"
        session = StubSession(make_response(body=body, content_type="image/png"))

        result = HttpResourceFetcher(session=session).fetch("https://shop.example/images/logo.png")

        assert result.content == body
        assert result.size_bytes == 8

    def test_relative_urls_use_base(self):
        session = StubSession(make_response(body=b"x", content_type="image/png"))
        fetcher = HttpResourceFetcher(base_url="https://shop.example/", timeout=3, session=session)

        fetcher.fetch("/images/logo.png")

        assert session.requested == [("https://shop.example/images/logo.png", 3)]

    def test_absolute_urls_untouched(self):
        fetcher = HttpResourceFetcher(base_url="https://shop.example")
        assert fetcher.resolve("https://cdn.example/a.png") == "https://cdn.example/a.png"

    def test_retries_connection_errors(self):
        session = StubSession(
            requests.ConnectionError("reset"),
            make_response(body=b"ok", content_type="text/plain"),
        )
        fetcher = HttpResourceFetcher(session=session, max_attempts=3)

        result = fetcher.fetch("https://shop.example/robots.txt")

        assert result.content == "ok"
        assert len(session.requested) == 2

    def test_gives_up_after_max_attempts(self):
        session = StubSession(requests.Timeout("slow"), requests.Timeout("slow"))
        fetcher = HttpResourceFetcher(session=session, max_attempts=2)

        with pytest.raises(requests.Timeout):
            fetcher.fetch("https://shop.example/slow")
        assert len(session.requested) == 2

    def test_http_errors_not_retried(self):
        session = StubSession(make_response(status=404, body=b"missing"))
        fetcher = HttpResourceFetcher(session=session, max_attempts=3)

        with pytest.raises(requests.HTTPError):
            fetcher.fetch("https://shop.example/gone.png")
        assert len(session.requested) == 1
