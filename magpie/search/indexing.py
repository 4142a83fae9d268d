# magpie/search/indexing.py
from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from magpie.config import SearchConfig, load_search_config
from magpie.db import PUBLISHED
from magpie.exceptions import RetrievalError
from magpie.search.highlight import highlight_hit
from magpie.search.query import IndexQuery, SearchQuery

log = logging.getLogger(__name__)

# Columns projected for search results. final_* are already resolved
# (user-confirmed value wins over the AI one) by the write path.
_RESULT_COLUMNS = """
          l.id AS id,
          l.url AS url,
          l.title AS title,
          l.final_description AS description,
          l.final_category AS category,
          l.final_tags AS tags,
          l.domain AS domain,
          l.ai_reading_time AS reading_time,
          l.published_at AS published_at,
          l.created_at AS created_at
"""

_ORDER_BY = {
    "relevance": "fts_rank ASC, l.id ASC",
    "newest": "l.published_at DESC, l.id DESC",
    "oldest": "l.published_at ASC, l.id ASC",
}


@dataclass(frozen=True)
class FacetFilter:
    """
    Structured filters applied in SQL next to the full-text match.

    Publication status is not a field here: every predicate built from a
    FacetFilter requires status = 'published'.
    """

    category: str | None = None
    domain: str | None = None
    tags: tuple[str, ...] = ()
    after_ts: int | None = None
    before_ts: int | None = None

    @classmethod
    def from_query(cls, query: SearchQuery) -> FacetFilter:
        return cls(
            category=query.category,
            domain=query.domain,
            tags=query.tags,
            after_ts=query.after_ts,
            before_ts=query.before_ts,
        )


@dataclass(frozen=True)
class Predicate:
    """A SQL conjunction over the links table (alias l) plus its bound parameters."""

    sql: str
    params: dict[str, Any]


@dataclass
class SearchHit:
    """
    One search result.

    score is "higher is better" for every sort mode: it is the negated FTS5
    bm25 rank, clipped at zero. highlights is empty unless highlighting was
    requested and at least one field matched.
    """

    id: int
    url: str
    title: str
    description: str
    category: str
    tags: list[str]
    domain: str
    reading_time: int | None
    published_at: int | None
    created_at: int
    score: float
    highlights: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
            "domain": self.domain,
            "reading_time": self.reading_time,
            "published_at": _to_iso(self.published_at),
            "created_at": _to_iso(self.created_at),
            "score": self.score,
            "highlights": dict(self.highlights),
        }


@dataclass
class RankedResults:
    hits: list[SearchHit]
    total: int
    skipped_tag_rows: int = 0


def _to_iso(ts: int | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=UTC).isoformat().replace("+00:00", "Z")


def _rows_to_dicts(cursor: sqlite3.Cursor, rows: Sequence[Sequence[Any]]) -> list[dict[str, Any]]:
    cols = [desc[0] for desc in cursor.description]
    return [dict(zip(cols, row, strict=False)) for row in rows]


def decode_tags(raw: str | None, link_id: Any = None) -> list[str] | None:
    """
    Deserialize a stored tag set.

    Returns [] for a missing value and None when the stored JSON is malformed
    (or not a list); callers skip that record's tags and count it as a data
    quality problem.
    """
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("Skipping malformed tag set", extra={"link_id": link_id})
        return None
    if not isinstance(data, list):
        log.warning("Skipping non-list tag set", extra={"link_id": link_id})
        return None
    return [str(tag) for tag in data if tag is not None]


# ---------------------------------------------------------------------------
# Facet predicate
# ---------------------------------------------------------------------------


def _apply_published_filter(conditions: list[str], sql_params: dict[str, Any]) -> None:
    conditions.append("l.status = :status")
    sql_params["status"] = PUBLISHED


def _apply_category_filter(
    facets: FacetFilter,
    conditions: list[str],
    sql_params: dict[str, Any],
) -> None:
    if facets.category is None:
        return
    conditions.append("l.final_category = :category")
    sql_params["category"] = facets.category


def _apply_domain_filter(
    facets: FacetFilter,
    conditions: list[str],
    sql_params: dict[str, Any],
) -> None:
    if facets.domain is None:
        return
    conditions.append("l.domain = :domain")
    sql_params["domain"] = facets.domain


def _apply_tag_filter(
    facets: FacetFilter,
    conditions: list[str],
    sql_params: dict[str, Any],
) -> None:
    if not facets.tags:
        return

    placeholders: list[str] = []
    for idx, tag in enumerate(facets.tags):
        key = f"tag_{idx}"
        placeholders.append(f":{key}")
        sql_params[key] = tag.lower()
    # CASE guarantees json_each never sees a malformed tag set.
    conditions.append(
        f"""
        CASE WHEN json_valid(l.final_tags) THEN EXISTS (
          SELECT 1 FROM json_each(l.final_tags) AS jt
          WHERE lower(jt.value) IN ({", ".join(placeholders)})
        ) ELSE 0 END
        """.strip(),
    )


def _apply_date_filter(
    facets: FacetFilter,
    conditions: list[str],
    sql_params: dict[str, Any],
) -> None:
    if facets.after_ts is not None:
        conditions.append("l.published_at >= :after_ts")
        sql_params["after_ts"] = facets.after_ts
    if facets.before_ts is not None:
        conditions.append("l.published_at <= :before_ts")
        sql_params["before_ts"] = facets.before_ts


def build_facet_predicate(facets: FacetFilter | None = None) -> Predicate:
    """
    Build the conjunction shared by every query against the corpus.

    Always requires status = 'published', then adds category, domain, exact
    tag and date bounds when present.
    """
    facets = facets or FacetFilter()
    conditions: list[str] = []
    sql_params: dict[str, Any] = {}

    _apply_published_filter(conditions, sql_params)
    _apply_category_filter(facets, conditions, sql_params)
    _apply_domain_filter(facets, conditions, sql_params)
    _apply_tag_filter(facets, conditions, sql_params)
    _apply_date_filter(facets, conditions, sql_params)

    return Predicate(sql=" AND ".join(conditions), params=sql_params)


# ---------------------------------------------------------------------------
# Store queries
# ---------------------------------------------------------------------------


def _index_from_where(expr: IndexQuery, predicate: Predicate) -> tuple[str, dict[str, Any]]:
    """
    FROM/JOIN/WHERE clause for index-backed queries.

    count_index() and query_index() both use this so the row set being counted
    is exactly the row set being paged.
    """
    sql = f"""
        FROM links_fts
        JOIN links AS l
          ON l.id = links_fts.rowid
        WHERE links_fts MATCH :match
          AND {predicate.sql}
    """
    sql_params = dict(predicate.params)
    sql_params["match"] = expr.to_match()
    return sql, sql_params


def _execute(conn: sqlite3.Connection, sql: str, sql_params: dict[str, Any]) -> list[dict[str, Any]]:
    try:
        cur = conn.execute(sql, sql_params)
        rows = cur.fetchall()
    except sqlite3.Error as err:
        raise RetrievalError(f"search query failed: {err}") from err
    return _rows_to_dicts(cur, rows)


def count_index(conn: sqlite3.Connection, expr: IndexQuery, predicate: Predicate) -> int:
    from_where, sql_params = _index_from_where(expr, predicate)
    rows = _execute(conn, f"SELECT COUNT(*) AS total {from_where}", sql_params)
    return int(rows[0]["total"]) if rows else 0


def query_index(
    conn: sqlite3.Connection,
    expr: IndexQuery,
    predicate: Predicate,
    *,
    sort: str = "relevance",
    limit: int | None = None,
    offset: int = 0,
    columns: str = _RESULT_COLUMNS,
) -> list[dict[str, Any]]:
    """
    Run an index-backed query and return plain dicts.

    Ordering is applied before LIMIT/OFFSET. Every row carries an fts_rank column
    (FTS5 bm25, more negative is more relevant).
    """
    if sort not in _ORDER_BY:
        raise ValueError(f"Unsupported sort value: {sort!r}")

    from_where, sql_params = _index_from_where(expr, predicate)
    sql = f"""
        SELECT
          {columns.strip()},
          bm25(links_fts) AS fts_rank
        {from_where}
        ORDER BY {_ORDER_BY[sort]}
    """
    if limit is not None:
        sql += " LIMIT :limit OFFSET :offset"
        sql_params["limit"] = limit
        sql_params["offset"] = offset
    return _execute(conn, sql, sql_params)


def group_index(
    conn: sqlite3.Connection,
    expr: IndexQuery,
    predicate: Predicate,
    column: str,
    limit: int,
) -> list[dict[str, Any]]:
    """
    Index-matched rows grouped by a links column, as {value, count} dicts
    ordered by count descending.
    """
    from_where, sql_params = _index_from_where(expr, predicate)
    sql_params["limit"] = limit
    sql = f"""
        SELECT l.{column} AS value, COUNT(*) AS count
        {from_where}
          AND l.{column} IS NOT NULL
        GROUP BY l.{column}
        ORDER BY count DESC, value ASC
        LIMIT :limit
    """
    return _execute(conn, sql, sql_params)


def scan_published(
    conn: sqlite3.Connection,
    predicate: Predicate,
    *,
    columns: str = "l.id AS id, l.final_tags AS tags",
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """
    Plain table scan over published links, for paths the index cannot serve
    (per-element tag matching).
    """
    sql = f"""
        SELECT {columns}
        FROM links AS l
        WHERE {predicate.sql}
        ORDER BY l.id ASC
    """
    sql_params = dict(predicate.params)
    if limit is not None:
        sql += " LIMIT :limit"
        sql_params["limit"] = limit
    return _execute(conn, sql, sql_params)


def group_published(
    conn: sqlite3.Connection,
    predicate: Predicate,
    column: str,
    limit: int,
) -> list[dict[str, Any]]:
    """Most frequent values of a links column among published rows."""
    sql = f"""
        SELECT l.{column} AS value, COUNT(*) AS count
        FROM links AS l
        WHERE {predicate.sql}
          AND l.{column} IS NOT NULL
        GROUP BY l.{column}
        ORDER BY count DESC, value ASC
        LIMIT :limit
    """
    sql_params = dict(predicate.params)
    sql_params["limit"] = limit
    return _execute(conn, sql, sql_params)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def _row_to_hit(row: dict[str, Any], tags: list[str]) -> SearchHit:
    rank = row.get("fts_rank")
    return SearchHit(
        id=int(row["id"]),
        url=row.get("url") or "",
        title=row.get("title") or "",
        description=row.get("description") or "",
        category=row.get("category") or "",
        tags=tags,
        domain=row.get("domain") or "",
        reading_time=row.get("reading_time"),
        published_at=row.get("published_at"),
        created_at=int(row.get("created_at") or 0),
        score=max(0.0, -float(rank)) if rank is not None else 0.0,
    )


def search_links(
    conn: sqlite3.Connection,
    query: SearchQuery,
    config: SearchConfig | None = None,
) -> RankedResults:
    """
    Full-text search over published links.

    Steps:
      * Builds the MATCH expression from query.text (+ tag hint).
      * Builds one facet predicate (published + category/domain/tags/dates).
      * Counts matches, then fetches the requested page, both with that same
        predicate.
      * Maps rows to SearchHit and, when query.highlight is set, attaches
        highlights computed from the raw field values.

    Raises RetrievalError if either query fails; a failure after a
    successful count never yields a partial page.
    """
    cfg = config or load_search_config()
    if not query.matchable:
        log.debug("Link search skipped: no index terms", extra={"query": query.text})
        return RankedResults(hits=[], total=0)

    expr = query.index_query()
    predicate = build_facet_predicate(FacetFilter.from_query(query))

    total = count_index(conn, expr, predicate)
    rows = query_index(
        conn,
        expr,
        predicate,
        sort=query.sort,
        limit=query.limit,
        offset=query.offset,
    )

    hits: list[SearchHit] = []
    skipped = 0
    for row in rows:
        tags = decode_tags(row.get("tags"), row.get("id"))
        if tags is None:
            skipped += 1
            tags = []
        hit = _row_to_hit(row, tags)
        if query.highlight:
            hit.highlights = highlight_hit(hit.title, hit.description, hit.tags, query.text, cfg)
        hits.append(hit)

    log.debug(
        "Link search executed",
        extra={
            "match": expr.to_match(),
            "total": total,
            "returned": len(hits),
            "page": query.page,
            "sort": query.sort,
        },
    )
    return RankedResults(hits=hits, total=total, skipped_tag_rows=skipped)
