# magpie/api/app.py
from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from magpie.config import DB_PATH, SEARCH_LOG_ENABLED, SearchConfig, load_search_config
from magpie.db import record_search_log
from magpie.exceptions import RetrievalError, SearchValidationError
from magpie.search.backend import SearchBackend, SearchPage, SqliteFtsBackend
from magpie.search.cache import search_with_cache
from magpie.search.query import SearchQuery, SuggestionQuery

log = logging.getLogger(__name__)

app = FastAPI(title="Magpie Link Search API")


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    """
    Helper to return a JSON error payload with a consistent shape.

    Example:
        { "error": "invalid_sort", "detail": "sort must be one of ..." }
    """
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail},
    )


def _validation_response(err: SearchValidationError) -> JSONResponse:
    return _error_response(400, err.code, err.detail)


def _get_search_backend(request: Request) -> SearchBackend:
    """
    Lazily construct and cache a SqliteFtsBackend instance on app.state.

    Tests inject a different backend by setting app.state.search_backend.
    """
    backend: SearchBackend | None = getattr(request.app.state, "search_backend", None)
    if backend is not None:
        return backend

    # Import here to avoid circular import issues at module import time.
    from magpie.db import ensure_schema, get_connection

    conn = get_connection(DB_PATH)
    ensure_schema(conn)
    backend = SqliteFtsBackend(conn)
    request.app.state.search_backend = backend
    return backend


def _search_config(backend: SearchBackend) -> SearchConfig:
    cfg = getattr(backend, "config", None)
    return cfg if isinstance(cfg, SearchConfig) else load_search_config()


def _record_search(
    backend: SearchBackend,
    query: SearchQuery,
    page: SearchPage,
    elapsed_ms: int,
) -> None:
    """Best-effort search log write; failures are logged, never returned."""
    if not SEARCH_LOG_ENABLED:
        return
    conn = getattr(backend, "conn", None)
    if not isinstance(conn, sqlite3.Connection):
        return
    try:
        record_search_log(
            conn,
            query=query.text,
            normalized_query=query.normalized_text,
            results_count=page.total,
            response_time_ms=elapsed_ms,
            filters=query.filters(),
            sort_by=query.sort,
        )
    except sqlite3.Error as err:
        log.warning("Failed to record search log", extra={"query": query.text, "error": str(err)})


@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/api/search")
async def search_links_endpoint(
    request: Request,
    q: str | None = None,
    page: str | None = None,
    limit: str | None = None,
    category: str | None = None,
    tags: str | None = None,
    domain: str | None = None,
    before: str | None = None,
    after: str | None = None,
    sort: str | None = None,
    highlight: str | None = None,
):
    """
    Full-text search over published links.

    Query parameters:
      - q (required): search text
      - page (default 1), limit (1..100, default 20)
      - category, domain: exact facet filters
      - tags: comma-separated; a link matches if it carries any of them
      - before / after: YYYY-MM-DD, inclusive UTC day bounds on published_at
      - sort: relevance (default), newest, oldest
      - highlight: true (default) / false

    Scores are "higher is better" in every sort mode. When the first page has
    fewer results than the sparsity threshold, "suggestions" carries
    alternative query terms; otherwise it is null.
    """
    started = time.perf_counter()
    backend = _get_search_backend(request)
    cfg = _search_config(backend)

    try:
        query = SearchQuery.from_params(
            q,
            page=page,
            limit=limit,
            category=category,
            domain=domain,
            tags=tags,
            before=before,
            after=after,
            sort=sort,
            highlight=highlight,
            config=cfg,
        )
    except SearchValidationError as err:
        return _validation_response(err)

    try:
        result = search_with_cache(backend, query)
        suggestions: list[str] | None = None
        if result.total < cfg.sparsity_threshold and query.page == 1:
            suggestions = backend.did_you_mean(query)
    except RetrievalError:
        log.exception("Search failed", extra={"query": query.text})
        return _error_response(500, "retrieval_failed", "Failed to search links")

    if result.skipped_tag_rows:
        log.warning(
            "Search returned rows with malformed tags",
            extra={"query": query.text, "skipped_rows": result.skipped_tag_rows},
        )

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    _record_search(backend, query, result, elapsed_ms)

    body: dict[str, Any] = {
        "results": result.results,
        "pagination": result.pagination(),
        "query": {
            "original_query": query.text,
            "processed_query": query.index_query().to_match(),
            "filters": query.filters(),
        },
        "suggestions": suggestions,
        "total_time_ms": elapsed_ms,
    }
    return body


@app.get("/api/search/suggestions")
async def search_suggestions_endpoint(
    request: Request,
    q: str | None = None,
    type: str | None = None,
    limit: str | None = None,
):
    """
    Type-ahead suggestions from link titles, categories, tags and domains.

    Query parameters:
      - q (required): partial input
      - type: restrict to one of title, tag, category, domain
      - limit: 1..50, default 10
    """
    backend = _get_search_backend(request)
    cfg = _search_config(backend)

    try:
        query = SuggestionQuery.from_params(q, type=type, limit=limit, config=cfg)
    except SearchValidationError as err:
        return _validation_response(err)

    try:
        suggestions = backend.suggest(query)
    except RetrievalError:
        log.exception("Suggestions failed", extra={"query": query.text})
        return _error_response(500, "retrieval_failed", "Failed to get suggestions")

    return {"suggestions": [s.to_dict() for s in suggestions]}
