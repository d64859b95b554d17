"""
Tests for the cache operator API.
"""
import pytest
from fastapi.testclient import TestClient

from config.settings import settings
from storefront_cache.cache import CacheManager, get_cache_manager, reset_cache_managers
from storefront_cache.main import app, get_manager

client = TestClient(app)


@pytest.fixture
def manager(clock, fetcher):
    manager = CacheManager(name="api-test", fetcher=fetcher, clock=clock)
    app.dependency_overrides[get_manager] = lambda: manager
    yield manager
    app.dependency_overrides.clear()
    manager.shutdown()


def test_health_endpoint_returns_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_version_endpoint():
    data = client.get("/version").json()
    assert data["name"] == "Storefront Cache"


def test_stats(manager):
    manager.set("api:products", [1, 2, 3], size_bytes=10)
    manager.get("api:products")
    manager.get("api:orders")

    data = client.get("/cache/stats").json()

    assert data["cache"] == "api-test"
    assert data["itemCount"] == 1
    assert data["totalSize"] == 10
    assert data["hitRate"] == 0.5


def test_entries_listing(manager):
    manager.set("api:products", [], tags=["catalog"])
    manager.set("seo:home", {})

    data = client.get("/cache/entries", params={"prefix": "api:"}).json()

    assert data["count"] == 1
    assert data["entries"][0]["key"] == "api:products"
    assert data["entries"][0]["tags"] == ["catalog"]
    assert "value" not in data["entries"][0]


def test_cleanup(manager, clock):
    manager.set("a", 1, ttl_seconds=1)
    manager.set("b", 2)
    clock.advance(2)

    assert client.post("/cache/cleanup").json()["removed"] == 1
    assert client.post("/cache/cleanup").json()["removed"] == 0


def test_clear_all(manager):
    for i in range(5):
        manager.set(f"k{i}", i)

    data = client.delete("/cache").json()

    assert data["cleared"] == 5
    assert manager.stats().item_count == 0


def test_clear_prefix(manager):
    manager.set("api:products", [])
    manager.set("api:orders", [])
    manager.set("seo:home", {})

    data = client.delete("/cache", params={"scope": "api:"}).json()

    assert data["cleared"] == 2
    assert manager.keys() == ["seo:home"]


def test_invalidate_entry(manager):
    manager.set("api:products", [])

    assert client.delete("/cache/entries/api:products").status_code == 200
    assert client.delete("/cache/entries/api:products").status_code == 404


def test_clear_tags(manager):
    manager.set("hero:1", {}, tags=["hero"])
    manager.set("footer", {}, tags=["layout"])

    data = client.post("/cache/clear-tags", json={"tags": ["hero"]}).json()

    assert data["cleared"] == 1
    assert manager.keys() == ["footer"]


def test_clear_tags_requires_tags(manager):
    assert client.post("/cache/clear-tags", json={"tags": []}).status_code == 422


def test_preload_reports_failures(manager):
    response = client.post(
        "/cache/preload",
        json={"urls": ["/images/logo.png", "/missing.png", "/images/logo.png"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["succeeded"] == ["/images/logo.png"]
    assert data["failedCount"] == 1
    assert data["failed"][0]["url"] == "/missing.png"
    assert manager.get("/images/logo.png") == b"\x89PNG logo"


def test_preload_defaults_to_critical_resources(manager, fetcher):
    data = client.post("/cache/preload", json={}).json()

    assert data["failedCount"] == 0
    assert sorted(fetcher.calls) == ["/images/favicon.png", "/images/logo.png", "/manifest.json"]
    assert all("critical" in e.tags for e in manager.entries())


def test_preload_rejects_negative_ttl(manager):
    response = client.post("/cache/preload", json={"urls": ["/a"], "ttl_seconds": -1})
    assert response.status_code == 422


def test_preload_without_fetcher(clock):
    bare = CacheManager(clock=clock)
    app.dependency_overrides[get_manager] = lambda: bare
    try:
        response = client.post("/cache/preload", json={"urls": ["/a"]})
        assert response.status_code == 503
    finally:
        app.dependency_overrides.clear()


@pytest.mark.parametrize("name", ["thumbnails", "../../escaped/evil", "Images"])
def test_unknown_cache_is_404(name, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "cache_persist", True)
    monkeypatch.setattr(settings, "cache_directory", tmp_path / "data" / "cache")
    try:
        response = client.get("/cache/stats", params={"cache": name})
        assert response.status_code == 404
        assert list(tmp_path.iterdir()) == []
    finally:
        reset_cache_managers()


def test_named_cache_persists_across_restart(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "cache_persist", True)
    monkeypatch.setattr(settings, "cache_directory", tmp_path)
    monkeypatch.setattr(settings, "preload_on_startup", False)

    with TestClient(app) as running:
        get_cache_manager("images").set("/images/logo.png", b"\x89PNG logo", ttl_seconds=3600)
        assert running.get("/cache/stats", params={"cache": "images"}).json()["itemCount"] == 1

    assert (tmp_path / "images.db").exists()

    with TestClient(app) as running:
        data = running.get("/cache/entries", params={"cache": "images"}).json()
        assert [e["key"] for e in data["entries"]] == ["/images/logo.png"]
        assert running.get("/cache/stats", params={"cache": "default"}).json()["itemCount"] == 0
