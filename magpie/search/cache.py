# magpie/search/cache.py
from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any

from magpie.config import SEARCH_CACHE_ENABLED, SEARCH_CACHE_TTL_SECONDS
from magpie.exceptions import RetrievalError
from magpie.search.backend import SearchBackend, SearchPage
from magpie.search.query import SearchQuery

log = logging.getLogger(__name__)

# Cache key version. Bump when changing key construction to avoid stale collisions.
CACHE_KEY_VERSION = "v2"


def _hash_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _get_cache_namespace(backend: SearchBackend) -> str:
    """
    Return a namespace string that scopes cache entries to the active backend / DB.

    Resolution order:
      1) Explicit env override: SEARCH_CACHE_NAMESPACE
      2) backend.cache_namespace() if present
      3) Fallback: class identity + instance id
    """
    env_ns = os.getenv("SEARCH_CACHE_NAMESPACE")
    if env_ns and env_ns.strip():
        return env_ns.strip()

    cache_ns_fn = getattr(backend, "cache_namespace", None)
    if callable(cache_ns_fn):
        ns = cache_ns_fn()
        if isinstance(ns, str) and ns.strip():
            return ns.strip()

    return f"{backend.__class__.__module__}.{backend.__class__.__name__}:{id(backend)}"


def _build_cache_key(
    backend: SearchBackend,
    query: SearchQuery,
    corpus_version: int | None = None,
) -> str:
    """
    Build a deterministic cache key from a first-page SearchQuery.

    Every input that changes the first page is part of the key. Tags are
    compared case-insensitively by the filter, so they are lowercased and
    sorted here; "React,hooks" and "hooks,react" share one entry.

    corpus_version ties the entry to the state of the links table, so any
    write starts a fresh entry and page 1 never reports a stale total.
    """
    key_payload = {
        "q": query.text,
        "category": query.category,
        "domain": query.domain,
        "tags": sorted({tag.lower() for tag in query.tags}) or None,
        "before": query.before,
        "after": query.after,
        "sort": query.sort,
        "limit": query.limit,
        "highlight": query.highlight,
        "corpus": corpus_version,
    }

    namespace_digest = _hash_hex(_get_cache_namespace(backend))[:16]
    raw = json.dumps(key_payload, sort_keys=True, separators=(",", ":"))
    return f"link_search:{CACHE_KEY_VERSION}:{namespace_digest}:{_hash_hex(raw)}"


def _get_corpus_version(backend: SearchBackend) -> int | None:
    """backend.corpus_version() if the backend tracks writes, else None."""
    version_fn = getattr(backend, "corpus_version", None)
    if not callable(version_fn):
        return None
    return int(version_fn())


def _get_redis_client() -> Any | None:
    """
    Best-effort helper to obtain a Redis client.

    The returned object is expected to support:
      - get(key: str) -> bytes | str | None
      - setex(key: str, ttl: int, value: str | bytes) -> Any
    """
    from redis.exceptions import RedisError

    from magpie.redis_conn import get_redis

    try:
        return get_redis()
    except (RedisError, ValueError) as err:
        log.debug("Search cache disabled: no Redis client", extra={"error": str(err)})
        return None


def search_with_cache(backend: SearchBackend, query: SearchQuery) -> SearchPage:
    """
    Execute a search with an optional Redis-backed cache.

    Cache policy:

      - Only the first page is cached.
      - The key covers the query text, facets, sort, limit, highlight flag and
        the backend's corpus version, namespaced by backend/database identity.
      - TTL is SEARCH_CACHE_TTL_SECONDS.
      - If Redis is unavailable or any cache error occurs, falls back to
        backend.search() without failing the request. Errors from the backend
        itself propagate unchanged.

    The cached payload is SearchPage.to_dict() as JSON.
    """
    if query.page != 1:
        return backend.search(query)

    if not SEARCH_CACHE_ENABLED or SEARCH_CACHE_TTL_SECONDS <= 0:
        return backend.search(query)

    redis_client = _get_redis_client()
    if redis_client is None:
        return backend.search(query)

    try:
        corpus_version = _get_corpus_version(backend)
    except RetrievalError as err:
        log.debug("Search cache bypassed: no corpus version", extra={"error": str(err)})
        return backend.search(query)

    key = _build_cache_key(backend, query, corpus_version)

    try:
        cached = redis_client.get(key)
    except Exception as err:
        log.debug("Search cache read failed", extra={"key": key, "error": str(err)})
        cached = None

    if cached is not None:
        try:
            if isinstance(cached, bytes):
                cached = cached.decode("utf-8")
            data = json.loads(cached)
            if isinstance(data, dict):
                return SearchPage.from_dict(data)
        except (TypeError, ValueError, KeyError) as err:
            # Treat undecodable entries as a miss; the write below replaces them.
            log.debug("Ignoring undecodable cache entry", extra={"key": key, "error": str(err)})

    page = backend.search(query)

    try:
        payload = json.dumps(page.to_dict(), separators=(",", ":"))
        redis_client.setex(key, SEARCH_CACHE_TTL_SECONDS, payload)
    except Exception as err:
        log.debug("Search cache write failed", extra={"key": key, "error": str(err)})

    return page
