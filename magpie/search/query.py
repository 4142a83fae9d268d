# magpie/search/query.py
"""
Query normalization for link search.

Turns raw caller input into validated SearchQuery / SuggestionQuery objects and
builds the FTS5 MATCH expression as a small tagged tree (Phrase / And / Or)
instead of interpolating strings. Escaping lives in exactly one place:
escape_phrase().

Facet filters (category, domain, dates, exact tags) are NOT part of the MATCH
expression; they are applied as SQL predicates in magpie.search.indexing.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from magpie.config import SearchConfig, load_search_config
from magpie.exceptions import SearchValidationError

SORT_VALUES = ("relevance", "newest", "oldest")
SUGGESTION_TYPES = ("title", "tag", "category", "domain")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WORD_RE = re.compile(r"\w")

# FTS5 column names for each suggestion corpus.
TITLE_COLUMN = "title"
CATEGORY_COLUMN = "final_category"
DOMAIN_COLUMN = "domain"


# ---------------------------------------------------------------------------
# MATCH expression tree
# ---------------------------------------------------------------------------


def escape_phrase(text: str) -> str:
    """
    Quote text as a single FTS5 string.

    Inside an FTS5 string the only special character is the double quote,
    which is escaped by doubling it. Everything else (AND, OR, NEAR, ':', '*',
    parentheses) is literal once quoted.
    """
    return '"' + text.replace('"', '""') + '"'


@dataclass(frozen=True)
class Phrase:
    """A quoted phrase, optionally prefix-matched and/or scoped to one column."""

    text: str
    prefix: bool = False
    column: str | None = None

    def to_match(self) -> str:
        expr = escape_phrase(self.text)
        if self.prefix:
            expr += "*"
        if self.column:
            expr = f"{self.column} : {expr}"
        return expr


@dataclass(frozen=True)
class And:
    terms: tuple[IndexQuery, ...]

    def to_match(self) -> str:
        return " AND ".join(f"({term.to_match()})" for term in self.terms)


@dataclass(frozen=True)
class Or:
    terms: tuple[IndexQuery, ...]

    def to_match(self) -> str:
        return " OR ".join(term.to_match() for term in self.terms)


IndexQuery = Phrase | And | Or


def has_index_terms(text: str | None) -> bool:
    """True if text contains at least one character the FTS tokenizer keeps."""
    return bool(text) and _WORD_RE.search(text) is not None


def parse_tags(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated tag list, trimming items and dropping blanks."""
    if raw is None:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def build_index_query(text: str, tags: tuple[str, ...] | list[str] = ()) -> IndexQuery:
    """
    Build the MATCH expression for a search.

    The text becomes a single phrase. When tags are given they are OR'd
    together and AND'ed with the phrase:

        ("react hooks") AND ("frontend" OR "javascript")

    The tag disjunction only steers the index; exact tag filtering happens in
    the facet predicate because tags are stored as a serialized set.
    """
    phrase = Phrase(text.strip())
    tag_terms = tuple(Phrase(tag) for tag in tags if has_index_terms(tag))
    if not tag_terms:
        return phrase
    return And((phrase, Or(tag_terms)))


def build_prefix_query(text: str, column: str | None = None) -> Phrase:
    """Prefix phrase for type-ahead input, e.g. title : "reac"*."""
    return Phrase(text.strip(), prefix=True, column=column)


# ---------------------------------------------------------------------------
# Input parsing helpers
# ---------------------------------------------------------------------------


def _parse_int(raw: Any, name: str, default: int, lo: int, hi: int | None) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        value = default
    elif isinstance(raw, bool):
        raise SearchValidationError(f"invalid_{name}", f"{name} must be an integer")
    elif isinstance(raw, int):
        value = raw
    else:
        try:
            value = int(str(raw).strip())
        except ValueError as err:
            raise SearchValidationError(f"invalid_{name}", f"{name} must be an integer") from err

    if value < lo or (hi is not None and value > hi):
        if hi is None:
            detail = f"{name} must be >= {lo}"
        else:
            detail = f"{name} must be between {lo} and {hi}"
        raise SearchValidationError(f"invalid_{name}", detail)
    return value


def _parse_bool(raw: Any, name: str, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    v = str(raw).strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    if not v:
        return default
    raise SearchValidationError(f"invalid_{name}", f"{name} must be true or false")


def _clean_optional(raw: str | None) -> str | None:
    if raw is None:
        return None
    cleaned = raw.strip()
    return cleaned or None


def parse_date_bound(raw: str, *, end_of_day: bool) -> int:
    """
    Parse a YYYY-MM-DD date into a Unix timestamp at a UTC day boundary.

    Lower bounds ("after") map to 00:00:00, upper bounds ("before") to
    23:59:59 of the same day; both are inclusive.
    """
    value = raw.strip()
    if not _DATE_RE.match(value):
        raise SearchValidationError("invalid_date", f"date must be YYYY-MM-DD; got {raw!r}")
    try:
        day = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as err:
        raise SearchValidationError("invalid_date", f"date is not a valid calendar day: {raw!r}") from err

    start = calendar.timegm(day.timetuple())
    return start + 86399 if end_of_day else start


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchQuery:
    """
    Validated parameters for a link search.

    Attributes:
        text:
            Trimmed, non-empty query text. Text without any letter or digit
            (e.g. "!!!") is accepted but matches nothing; see matchable.
        page / limit:
            1-based page number and page size (1..max_limit).
        category / domain:
            Optional exact-match facets.
        tags:
            Optional tag list (from a comma-separated string). OR'd into the
            MATCH expression as a hint and filtered exactly in SQL.
        before / after:
            Optional YYYY-MM-DD strings as supplied by the caller; the
            corresponding Unix bounds are in before_ts / after_ts.
        sort:
            "relevance" (default), "newest" or "oldest".
        highlight:
            Whether to build highlights / snippets for each result.
    """

    text: str
    page: int = 1
    limit: int = 20
    category: str | None = None
    domain: str | None = None
    tags: tuple[str, ...] = ()
    before: str | None = None
    after: str | None = None
    sort: str = "relevance"
    highlight: bool = True

    @classmethod
    def from_params(
        cls,
        q: str | None,
        *,
        page: Any = None,
        limit: Any = None,
        category: str | None = None,
        domain: str | None = None,
        tags: str | None = None,
        before: str | None = None,
        after: str | None = None,
        sort: str | None = None,
        highlight: Any = None,
        config: SearchConfig | None = None,
    ) -> SearchQuery:
        """
        Validate raw (usually string) parameters and build a SearchQuery.

        Raises SearchValidationError before any index access when something
        is missing, out of range or unparseable.
        """
        cfg = config or load_search_config()

        text = (q or "").strip()
        if not text:
            raise SearchValidationError("invalid_query", "q must be a non-empty search query")

        normalized_sort = (sort or "relevance").strip().lower() or "relevance"
        if normalized_sort not in SORT_VALUES:
            raise SearchValidationError(
                "invalid_sort",
                "sort must be one of: " + ", ".join(SORT_VALUES),
            )

        before_clean = _clean_optional(before)
        after_clean = _clean_optional(after)
        if before_clean:
            parse_date_bound(before_clean, end_of_day=True)
        if after_clean:
            parse_date_bound(after_clean, end_of_day=False)

        return cls(
            text=text,
            page=_parse_int(page, "page", 1, 1, None),
            limit=_parse_int(limit, "limit", cfg.default_limit, 1, cfg.max_limit),
            category=_clean_optional(category),
            domain=_clean_optional(domain),
            tags=parse_tags(tags),
            before=before_clean,
            after=after_clean,
            sort=normalized_sort,
            highlight=_parse_bool(highlight, "highlight", True),
        )

    @property
    def before_ts(self) -> int | None:
        return parse_date_bound(self.before, end_of_day=True) if self.before else None

    @property
    def after_ts(self) -> int | None:
        return parse_date_bound(self.after, end_of_day=False) if self.after else None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def normalized_text(self) -> str:
        return self.text.lower()

    @property
    def matchable(self) -> bool:
        """False when the text has no token the index could match."""
        return has_index_terms(self.text)

    def index_query(self) -> IndexQuery:
        return build_index_query(self.text, self.tags)

    def filters(self) -> dict[str, Any]:
        """Echo of the applied filters, e.g. for responses and search logs."""
        return {
            "category": self.category,
            "tags": list(self.tags) or None,
            "domain": self.domain,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class SuggestionQuery:
    """Validated type-ahead request: partial text, optional corpus type, limit."""

    text: str
    type: str | None = None
    limit: int = 10

    @classmethod
    def from_params(
        cls,
        q: str | None,
        *,
        type: str | None = None,
        limit: Any = None,
        config: SearchConfig | None = None,
    ) -> SuggestionQuery:
        cfg = config or load_search_config()

        text = (q or "").strip()
        if not text:
            raise SearchValidationError("invalid_query", "q must be a non-empty search query")

        suggestion_type = _clean_optional(type)
        if suggestion_type is not None:
            suggestion_type = suggestion_type.lower()
            if suggestion_type not in SUGGESTION_TYPES:
                raise SearchValidationError(
                    "invalid_type",
                    "type must be one of: " + ", ".join(SUGGESTION_TYPES),
                )

        return cls(
            text=text,
            type=suggestion_type,
            limit=_parse_int(
                limit,
                "limit",
                cfg.suggest_default_limit,
                1,
                cfg.suggest_max_limit,
            ),
        )
