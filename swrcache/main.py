"""
swr-cache admin service - FastAPI application

Exposes cache statistics, entry inspection, invalidation, and delivery of
focus/reconnect triggers to an engine owned by the application.
"""
import logging

from fastapi import FastAPI, HTTPException, Request

from config.settings import settings
from swrcache import __version__
from swrcache.cache import CacheEngine, Signal

APP_NAME = "swr-cache"
APP_VERSION = __version__

logging.basicConfig(level=settings.log_level)

app = FastAPI(
    title=f"{APP_NAME} admin",
    description="Inspect and control an in-process stale-while-revalidate cache",
    version=APP_VERSION,
)

# Signals are emittable here so POST /signals/* reaches bound observers
app.state.engine = CacheEngine(
    settings=settings,
    focus_signal=Signal("focus"),
    reconnect_signal=Signal("reconnect"),
)


def get_engine(request: Request) -> CacheEngine:
    return request.app.state.engine


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "mode": "in-memory"}


@app.get("/version")
async def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/cache/stats")
async def cache_stats(request: Request):
    """Get cache statistics."""
    return get_engine(request).get_stats()


@app.get("/cache/keys")
async def cache_keys(request: Request):
    """List cached keys."""
    keys = get_engine(request).store.keys()
    return {"keys": keys, "count": len(keys)}


@app.get("/cache/entries/{key:path}")
async def cache_entry(key: str, request: Request):
    """Describe one cache entry (metadata only)."""
    description = get_engine(request).describe_entry(key)
    if description is None:
        raise HTTPException(status_code=404, detail=f"No cache entry for {key}")
    return description


@app.delete("/cache/entries/{key:path}")
async def invalidate_entry(key: str, request: Request):
    """Invalidate one key. Observers of the key refetch."""
    removed = get_engine(request).invalidate(key)
    return {"key": key, "removed": removed}


@app.delete("/cache")
async def invalidate_all(request: Request):
    """Invalidate every key."""
    removed = get_engine(request).invalidate()
    return {"removed": removed}


@app.post("/signals/{name}")
async def emit_signal(name: str, request: Request):
    """Deliver a focus or reconnect trigger to the engine."""
    engine = get_engine(request)
    signals = {
        "focus": engine.focus_signal,
        "reconnect": engine.reconnect_signal,
    }
    signal = signals.get(name)
    if signal is None:
        raise HTTPException(status_code=404, detail=f"Unknown signal: {name}")
    if not isinstance(signal, Signal):
        raise HTTPException(status_code=409, detail=f"Signal '{name}' is not emittable")
    return {"signal": name, "listeners": signal.emit()}
