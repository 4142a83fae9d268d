# magpie/search/fallback.py
"""
"Did you mean" suggestions for sparse first pages.

The caller decides when to run this (first page, total below the sparsity
threshold); generate_fallback_suggestions() itself is a pure function of the
query, its facets and the current corpus.

Candidates come from three strategies, run in order and merged in insertion
order:

  1. title_words      words from up to N index-matched titles
  2. popular_category the most frequent categories (only without a category
                      filter) whose name contains the query
  3. tags             the most frequent near-matching tags from up to N
                      index-matched tag sets

A word or tag is "near" the query when either contains the other or their
edit distance is within the configured cutoff. A strategy that fails is
logged and skipped; the others still contribute.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from rapidfuzz.distance import Levenshtein

from magpie.config import SearchConfig, load_search_config
from magpie.exceptions import RetrievalError
from magpie.search.indexing import (
    FacetFilter,
    build_facet_predicate,
    decode_tags,
    group_published,
    query_index,
)
from magpie.search.query import SearchQuery

log = logging.getLogger(__name__)

_WORD_SPLIT_RE = re.compile(r"\w+")


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings, case-insensitively."""
    return Levenshtein.distance(a.lower(), b.lower())


def is_near(candidate: str, needle: str, max_distance: int) -> bool:
    """True if candidate contains needle, needle contains candidate, or they are within max_distance edits."""
    c = candidate.lower()
    n = needle.lower()
    if n in c or c in n:
        return True
    return Levenshtein.distance(c, n, score_cutoff=max_distance) <= max_distance


@dataclass
class StrategyResult:
    """Outcome of one fallback strategy: the terms it produced, or why it failed."""

    name: str
    terms: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class FallbackContext:
    conn: sqlite3.Connection
    query: SearchQuery
    needle: str
    config: SearchConfig

    def facets(self) -> FacetFilter:
        return FacetFilter.from_query(self.query)


Strategy = Callable[[FallbackContext, Sequence[str]], list[str]]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def title_words(ctx: FallbackContext, collected: Sequence[str]) -> list[str]:
    cfg = ctx.config
    if not ctx.query.matchable:
        return []
    rows = query_index(
        ctx.conn,
        ctx.query.index_query(),
        build_facet_predicate(ctx.facets()),
        columns="l.id AS id, l.title AS title",
        limit=cfg.fallback_title_rows,
    )

    seen = set(collected)
    out: list[str] = []
    for row in rows:
        title = row.get("title")
        if not title:
            continue
        for word in _WORD_SPLIT_RE.findall(title.lower()):
            if len(word) < cfg.fallback_min_word_length:
                continue
            if word == ctx.needle or word in seen:
                continue
            if is_near(word, ctx.needle, cfg.edit_distance_max):
                seen.add(word)
                out.append(word)
    return out


def popular_category(ctx: FallbackContext, collected: Sequence[str]) -> list[str]:
    if ctx.query.category:
        return []
    rows = group_published(
        ctx.conn,
        build_facet_predicate(),
        "final_category",
        ctx.config.fallback_popular_categories,
    )
    out: list[str] = []
    for row in rows:
        value = row.get("value")
        if not value:
            continue
        lowered = str(value).lower()
        if ctx.needle in lowered and lowered != ctx.needle and value not in collected:
            out.append(str(value))
    return out


def tags(ctx: FallbackContext, collected: Sequence[str]) -> list[str]:
    cfg = ctx.config
    if not ctx.query.matchable:
        return []
    rows = query_index(
        ctx.conn,
        ctx.query.index_query(),
        build_facet_predicate(ctx.facets()),
        columns="l.id AS id, l.final_tags AS tags",
        limit=cfg.fallback_tag_rows,
    )

    counts: Counter[str] = Counter()
    for row in rows:
        decoded = decode_tags(row.get("tags"), row.get("id"))
        if not decoded:
            continue
        for tag in decoded:
            if tag.lower() == ctx.needle:
                continue
            if is_near(tag, ctx.needle, cfg.edit_distance_max):
                counts[tag] += 1

    return [tag for tag, _ in counts.most_common(cfg.fallback_top_tags) if tag not in collected]


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("title_words", title_words),
    ("popular_category", popular_category),
    ("tags", tags),
)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def run_strategies(
    ctx: FallbackContext,
    strategies: Sequence[tuple[str, Strategy]] = STRATEGIES,
) -> list[StrategyResult]:
    """
    Run every strategy in order and return one StrategyResult each.

    Each strategy sees the terms collected so far. A RetrievalError turns into
    a failed result; later strategies still run.
    """
    results: list[StrategyResult] = []
    collected: list[str] = []
    for name, strategy in strategies:
        try:
            terms = strategy(ctx, tuple(collected))
        except RetrievalError as err:
            log.warning(
                "Fallback strategy failed",
                extra={"strategy": name, "query": ctx.query.text, "error": str(err)},
            )
            results.append(StrategyResult(name=name, error=str(err)))
            continue
        results.append(StrategyResult(name=name, terms=terms))
        collected.extend(terms)
    return results


def merge_terms(results: Sequence[StrategyResult], cap: int) -> list[str]:
    """Insertion-order merge of successful strategy terms, deduplicated and capped."""
    merged: list[str] = []
    for result in results:
        if not result.ok:
            continue
        for term in result.terms:
            if term not in merged:
                merged.append(term)
    return merged[:cap]


def generate_fallback_suggestions(
    conn: sqlite3.Connection,
    query: SearchQuery,
    config: SearchConfig | None = None,
) -> list[str]:
    """
    Alternative query terms for a search that found little or nothing.

    Returns at most fallback_max_suggestions terms, none equal to the query
    text (case-insensitively).
    """
    cfg = config or load_search_config()
    ctx = FallbackContext(conn=conn, query=query, needle=query.normalized_text, config=cfg)
    results = run_strategies(ctx)
    terms = merge_terms(results, cfg.fallback_max_suggestions)

    log.debug(
        "Fallback suggestions generated",
        extra={
            "query": query.text,
            "strategies": {r.name: len(r.terms) if r.ok else "failed" for r in results},
            "returned": len(terms),
        },
    )
    return terms
