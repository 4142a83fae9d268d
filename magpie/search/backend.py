# magpie/search/backend.py
from __future__ import annotations

import math
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from magpie.config import SearchConfig, load_search_config
from magpie.db import links_version
from magpie.exceptions import RetrievalError
from magpie.search.fallback import generate_fallback_suggestions
from magpie.search.indexing import search_links
from magpie.search.query import SearchQuery, SuggestionQuery
from magpie.search.suggest import Suggestion, suggest


@dataclass
class SearchPage:
    """
    One page of search results plus its pagination envelope.

    Attributes:
        results:
            Serialized result dicts (SearchHit.to_dict()), in display order.
        total:
            Number of published links matching the query and facets, counted
            with the same predicate that produced this page.
        page / limit:
            The requested page (1-based) and page size.
        skipped_tag_rows:
            Rows on this page whose stored tag set could not be decoded; their
            tags are returned empty. Logged, never shown to end users.
    """

    results: list[dict[str, Any]]
    total: int
    page: int
    limit: int
    skipped_tag_rows: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": self.results,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "skipped_tag_rows": self.skipped_tag_rows,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SearchPage:
        results = data.get("results")
        if not isinstance(results, list):
            raise ValueError("cached search page has no results list")
        return cls(
            results=results,
            total=int(data["total"]),
            page=int(data["page"]),
            limit=int(data["limit"]),
            skipped_tag_rows=int(data.get("skipped_tag_rows") or 0),
        )


class SearchBackend(Protocol):
    """
    Interface the HTTP layer, CLI and cache depend on.

    Only a SQLite FTS5 implementation exists (SqliteFtsBackend); tests use
    small fakes that satisfy the same protocol.
    """

    def search(self, query: SearchQuery) -> SearchPage:
        """Run a search and return one page with its total."""
        ...

    def suggest(self, query: SuggestionQuery) -> list[Suggestion]:
        """Type-ahead suggestions for partial input."""
        ...

    def did_you_mean(self, query: SearchQuery) -> list[str]:
        """Alternative terms for a sparse result set."""
        ...


class SqliteFtsBackend:
    """
    SearchBackend over a SQLite connection with the links_fts index.

    A thin wrapper over search_links(), suggest() and
    generate_fallback_suggestions() so callers never import the query
    modules directly.
    """

    def __init__(self, conn: sqlite3.Connection, config: SearchConfig | None = None) -> None:
        self._conn = conn
        self._config = config or load_search_config()
        self._memory_namespace: str | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def config(self) -> SearchConfig:
        return self._config

    def search(self, query: SearchQuery) -> SearchPage:
        ranked = search_links(self._conn, query, self._config)
        return SearchPage(
            results=[hit.to_dict() for hit in ranked.hits],
            total=ranked.total,
            page=query.page,
            limit=query.limit,
            skipped_tag_rows=ranked.skipped_tag_rows,
        )

    def suggest(self, query: SuggestionQuery) -> list[Suggestion]:
        return suggest(self._conn, query)

    def did_you_mean(self, query: SearchQuery) -> list[str]:
        return generate_fallback_suggestions(self._conn, query, self._config)

    def cache_namespace(self) -> str:
        """
        Identity of the underlying database for cache keys.

        File-backed databases use their absolute path. In-memory databases get
        a random per-backend token, since connection ids can be reused within
        a process.
        """
        row = self._conn.execute("PRAGMA database_list").fetchone()
        path = row[2] if row is not None else ""
        if path:
            return f"sqlite:{path}"
        if self._memory_namespace is None:
            self._memory_namespace = f"sqlite-memory:{uuid.uuid4().hex}"
        return self._memory_namespace

    def corpus_version(self) -> int:
        """
        Write counter of the links table, bumped by every insert, update,
        delete and index rebuild. Cached first pages are keyed on it so a
        cached total never disagrees with a live later page.
        """
        try:
            return links_version(self._conn)
        except sqlite3.Error as err:
            raise RetrievalError(f"corpus version lookup failed: {err}") from err
