"""
TTL configuration and key-to-category mapping.
"""
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .core import ResourceCategory


# TTL Configuration by category (in seconds, None = no expiry)
TTL_CONFIG: Dict[ResourceCategory, Dict[str, Any]] = {
    ResourceCategory.API_RESPONSE: {
        "ttl": 300,               # 5 minutes, Firestore/API data changes often
    },
    ResourceCategory.PAGE_CONTENT: {
        "ttl": 1800,              # 30 minutes, hero slides, SEO, footer
    },
    ResourceCategory.IMAGE: {
        "ttl": 30 * 24 * 3600,    # 30 days
        "ttl_remote": 7 * 24 * 3600,  # 7 days for bucket-hosted images
    },
    ResourceCategory.STATIC_ASSET: {
        "ttl": 24 * 3600,         # 1 day, bundles are fingerprinted on deploy
    },
    ResourceCategory.FONT: {
        "ttl": None,              # Immutable
    },
}

_IMAGE_EXT = re.compile(r"\.(png|jpe?g|gif|webp|avif|svg|ico)$", re.IGNORECASE)
_FONT_EXT = re.compile(r"\.(woff2?|ttf|otf|eot)$", re.IGNORECASE)
_STATIC_EXT = re.compile(r"\.(js|mjs|css|map|webmanifest)$", re.IGNORECASE)

_API_HOSTS = ("firestore.googleapis.com",)
_REMOTE_IMAGE_HOSTS = ("firebasestorage.googleapis.com",)
_PAGE_CONTENT_NAMES = ("hero", "slider", "seo", "about", "footer", "homepage", "pages")


def get_category_for_key(key: str) -> ResourceCategory:
    """
    Determine the resource category for a cache key.

    Keys are either URLs (absolute or site-relative) or logical names
    such as "api:products" or "seo:home".

    Args:
        key: Cache key

    Returns:
        ResourceCategory for caching behavior
    """
    parsed = urlparse(key)
    path = parsed.path or key
    host = parsed.netloc.lower()

    if host in _API_HOSTS or path.startswith("/api/") or key.startswith("api:"):
        return ResourceCategory.API_RESPONSE

    if _IMAGE_EXT.search(path) or key.startswith("image:"):
        return ResourceCategory.IMAGE

    if _FONT_EXT.search(path):
        return ResourceCategory.FONT

    # manifest.json is a static asset, other .json is page/API data
    if _STATIC_EXT.search(path) or path.endswith("manifest.json"):
        return ResourceCategory.STATIC_ASSET

    lowered = key.lower()
    if any(name in lowered for name in _PAGE_CONTENT_NAMES):
        return ResourceCategory.PAGE_CONTENT

    # Default to the shortest-lived category
    return ResourceCategory.API_RESPONSE


def get_ttl_for_category(
    category: ResourceCategory,
    is_remote: bool = False,
) -> Optional[int]:
    """
    Get the default TTL for a resource category.

    Args:
        category: The resource category
        is_remote: True for images served from a storage bucket

    Returns:
        TTL in seconds, or None for no expiry
    """
    config = TTL_CONFIG.get(category, TTL_CONFIG[ResourceCategory.API_RESPONSE])

    if category == ResourceCategory.IMAGE and is_remote:
        return config.get("ttl_remote", config["ttl"])

    return config["ttl"]


def get_ttl_for_key(key: str) -> Optional[int]:
    """Default TTL for a key, combining category and host."""
    category = get_category_for_key(key)
    host = urlparse(key).netloc.lower()
    return get_ttl_for_category(category, is_remote=host in _REMOTE_IMAGE_HOSTS)
