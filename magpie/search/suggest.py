# magpie/search/suggest.py
from __future__ import annotations

import logging
import math
import sqlite3
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from magpie.search.indexing import (
    build_facet_predicate,
    decode_tags,
    group_index,
    scan_published,
)
from magpie.search.query import (
    CATEGORY_COLUMN,
    DOMAIN_COLUMN,
    TITLE_COLUMN,
    SuggestionQuery,
    build_prefix_query,
    has_index_terms,
)

log = logging.getLogger(__name__)

# Corpus scan order; on duplicate text the earlier corpus wins.
CORPUS_ORDER = ("title", "category", "tag", "domain")


@dataclass(frozen=True)
class Suggestion:
    """
    A type-ahead candidate.

    count is the number of published links carrying the value; titles are not
    aggregated and always report 1.
    """

    text: str
    type: str
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "type": self.type, "count": self.count}


def corpus_quotas(limit: int, suggestion_type: str | None) -> dict[str, int]:
    """
    Raw candidate quota per corpus.

    With no type, titles and categories get ceil(limit/3) each and tags and
    domains ceil(limit/4) each, so no single corpus crowds out the others.
    An explicit type gets the whole limit.
    """
    if suggestion_type:
        return {suggestion_type: limit}
    third = math.ceil(limit / 3)
    quarter = math.ceil(limit / 4)
    return {"title": third, "category": third, "tag": quarter, "domain": quarter}


def _title_candidates(conn: sqlite3.Connection, partial: str, quota: int) -> list[Suggestion]:
    if not has_index_terms(partial):
        return []
    # Grouped in SQL so repeated titles do not use up the quota.
    rows = group_index(
        conn,
        build_prefix_query(partial, TITLE_COLUMN),
        build_facet_predicate(),
        TITLE_COLUMN,
        quota,
    )
    return [Suggestion(text=str(row["value"]), type="title", count=1) for row in rows if row["value"]]


def _grouped_candidates(
    conn: sqlite3.Connection,
    partial: str,
    quota: int,
    *,
    column: str,
    suggestion_type: str,
) -> list[Suggestion]:
    if not has_index_terms(partial):
        return []
    needle = partial.lower()
    rows = group_index(
        conn,
        build_prefix_query(partial, column),
        build_facet_predicate(),
        column,
        quota,
    )
    return [
        Suggestion(text=str(row["value"]), type=suggestion_type, count=int(row["count"]))
        for row in rows
        if row["value"] and needle in str(row["value"]).lower()
    ]


def _category_candidates(conn: sqlite3.Connection, partial: str, quota: int) -> list[Suggestion]:
    return _grouped_candidates(
        conn,
        partial,
        quota,
        column=CATEGORY_COLUMN,
        suggestion_type="category",
    )


def _domain_candidates(conn: sqlite3.Connection, partial: str, quota: int) -> list[Suggestion]:
    return _grouped_candidates(
        conn,
        partial,
        quota,
        column=DOMAIN_COLUMN,
        suggestion_type="domain",
    )


def _tag_candidates(conn: sqlite3.Connection, partial: str, quota: int) -> list[Suggestion]:
    """
    Count tags containing the partial text across every published link.

    Tags are stored as a serialized set and are not indexed per element, so
    this scans the whole published corpus instead of using the index.
    """
    needle = partial.lower()
    counts: Counter[str] = Counter()
    skipped = 0
    for row in scan_published(conn, build_facet_predicate()):
        tags = decode_tags(row.get("tags"), row.get("id"))
        if tags is None:
            skipped += 1
            continue
        for tag in tags:
            if needle in tag.lower():
                counts[tag] += 1

    if skipped:
        log.warning("Tag suggestions skipped malformed rows", extra={"skipped_rows": skipped})

    # Counter.most_common keeps first-seen order for equal counts.
    return [Suggestion(text=tag, type="tag", count=count) for tag, count in counts.most_common(quota)]


_COLLECTORS: dict[str, Callable[[sqlite3.Connection, str, int], list[Suggestion]]] = {
    "title": _title_candidates,
    "category": _category_candidates,
    "tag": _tag_candidates,
    "domain": _domain_candidates,
}


def rank_suggestions(candidates: Iterable[Suggestion], partial: str, limit: int) -> list[Suggestion]:
    """
    Order merged candidates and cut them to limit.

    Candidates whose text starts with the partial text come first; within each
    tier higher counts come first. The sort is stable, so equal candidates
    keep corpus scan order.
    """
    needle = partial.lower()
    ordered = sorted(
        candidates,
        key=lambda s: (not s.text.lower().startswith(needle), -s.count),
    )
    return ordered[:limit]


def suggest(conn: sqlite3.Connection, query: SuggestionQuery) -> list[Suggestion]:
    """
    Type-ahead suggestions from titles, categories, tags and domains.

    Only published links contribute. Candidates are deduplicated by exact
    text (first corpus in CORPUS_ORDER wins), merged, re-ranked and
    truncated to query.limit.

    Raises RetrievalError if any corpus query fails.
    """
    quotas = corpus_quotas(query.limit, query.type)
    merged: list[Suggestion] = []
    seen: set[str] = set()

    for corpus in CORPUS_ORDER:
        quota = quotas.get(corpus)
        if not quota:
            continue
        for candidate in _COLLECTORS[corpus](conn, query.text, quota):
            if candidate.text in seen:
                continue
            seen.add(candidate.text)
            merged.append(candidate)

    return rank_suggestions(merged, query.text, query.limit)
