"""
Storefront Cache - operator API for the resource cache
Stats, cleanup, clearing and preloading for the admin cache-management screen
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from storefront_cache.cache import (
    CacheError,
    CacheManager,
    UnknownCacheError,
    get_cache_manager,
    reset_cache_managers,
    start_cache_managers,
)
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("storefront_cache")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Storefront Cache"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Restoring and preloading block, keep them off the event loop
    await run_in_threadpool(start_cache_managers)
    if settings.preload_on_startup and settings.critical_resources:
        manager = get_cache_manager()
        result = await run_in_threadpool(manager.preload, settings.critical_resources)
        if result.failed:
            logger.warning(f"Startup preload: {len(result.failed)} resources failed: {result.failed_urls}")
    yield
    await run_in_threadpool(reset_cache_managers)


app = FastAPI(
    title=APP_NAME,
    description="Operator API for the storefront resource cache",
    version=APP_VERSION,
    lifespan=lifespan,
)


def get_manager(cache: str = Query("default", description="Named cache instance")) -> CacheManager:
    """Resolve the cache instance a request operates on."""
    try:
        return get_cache_manager(cache)
    except UnknownCacheError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


# =============================================================================
# CACHE ADMIN API
# =============================================================================

@app.get("/cache/stats")
def cache_stats(manager: CacheManager = Depends(get_manager)):
    """Get cache statistics."""
    return {"cache": manager.name, **manager.stats().to_dict()}


@app.get("/cache/entries")
def cache_entries(
    prefix: Optional[str] = Query(None, description="Only keys starting with this prefix"),
    manager: CacheManager = Depends(get_manager),
):
    """List live entries without their payloads."""
    entries = manager.entries()
    if prefix:
        entries = [e for e in entries if e.key.startswith(prefix)]
    return {"cache": manager.name, "count": len(entries), "entries": [e.to_dict() for e in entries]}


@app.post("/cache/cleanup")
def cache_cleanup(manager: CacheManager = Depends(get_manager)):
    """Remove expired entries."""
    removed = manager.cleanup_expired()
    return {"cache": manager.name, "removed": removed}


@app.delete("/cache")
def cache_clear(
    scope: str = Query("all", min_length=1, description="'all' or a key prefix"),
    manager: CacheManager = Depends(get_manager),
):
    """Clear the whole cache or every key under a prefix."""
    cleared = manager.clear(scope)
    return {"cache": manager.name, "scope": scope, "cleared": cleared}


@app.delete("/cache/entries/{key:path}")
def cache_invalidate(key: str, manager: CacheManager = Depends(get_manager)):
    """Invalidate a single entry."""
    if not manager.invalidate(key):
        raise HTTPException(status_code=404, detail=f"No cache entry for '{key}'")
    return {"cache": manager.name, "invalidated": key}


class ClearTagsRequest(BaseModel):
    """Request body for tag invalidation."""
    tags: List[str] = Field(..., min_length=1)


@app.post("/cache/clear-tags")
def cache_clear_tags(request: ClearTagsRequest, manager: CacheManager = Depends(get_manager)):
    """Remove every entry carrying any of the given tags."""
    cleared = manager.clear_by_tags(request.tags)
    return {"cache": manager.name, "tags": request.tags, "cleared": cleared}


class PreloadRequest(BaseModel):
    """Request body for preload. Omitted urls means the configured critical resources."""
    urls: Optional[List[str]] = None
    ttl_seconds: Optional[int] = Field(None, ge=0)
    tags: List[str] = Field(default_factory=lambda: ["critical"])


@app.post("/cache/preload")
def cache_preload(request: PreloadRequest, manager: CacheManager = Depends(get_manager)):
    """
    Fetch and cache a list of resources.

    Individual failures are reported in the response body; the request
    itself succeeds as long as the cache can fetch at all.
    """
    urls = request.urls if request.urls is not None else settings.critical_resources
    try:
        result = manager.preload(urls, ttl_seconds=request.ttl_seconds, tags=request.tags)
    except CacheError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"cache": manager.name, **result.to_dict()}
