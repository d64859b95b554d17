"""
Tests for resource categorization and default TTLs.
"""
import pytest

from storefront_cache.cache import (
    ResourceCategory,
    get_category_for_key,
    get_ttl_for_category,
    get_ttl_for_key,
)


@pytest.mark.parametrize("key, category", [
    ("/images/logo.png", ResourceCategory.IMAGE),
    ("https://firebasestorage.googleapis.com/v0/b/shop/o/beans.jpg", ResourceCategory.IMAGE),
    ("/assets/index-4f9a.js", ResourceCategory.STATIC_ASSET),
    ("/manifest.json", ResourceCategory.STATIC_ASSET),
    ("/fonts/Cairo.woff2", ResourceCategory.FONT),
    ("https://firestore.googleapis.com/v1/projects/shop/documents/products", ResourceCategory.API_RESPONSE),
    ("/api/orders", ResourceCategory.API_RESPONSE),
    ("api:products", ResourceCategory.API_RESPONSE),
    ("/data/hero-slider.json", ResourceCategory.PAGE_CONTENT),
    ("seo:home", ResourceCategory.PAGE_CONTENT),
    ("something-else", ResourceCategory.API_RESPONSE),
])
def test_category_for_key(key, category):
    assert get_category_for_key(key) == category


def test_remote_images_expire_sooner():
    local = get_ttl_for_key("/images/logo.png")
    remote = get_ttl_for_key("https://firebasestorage.googleapis.com/v0/b/shop/o/logo.png")
    assert local == 30 * 24 * 3600
    assert remote == 7 * 24 * 3600


def test_fonts_never_expire():
    assert get_ttl_for_category(ResourceCategory.FONT) is None


def test_api_responses_are_short_lived():
    assert get_ttl_for_category(ResourceCategory.API_RESPONSE) == 300
