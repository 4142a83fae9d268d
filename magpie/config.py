# magpie/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name, str(default)).strip()
    try:
        return int(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be an integer; got {v!r}") from err


def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name, str(default)).strip()
    try:
        return float(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be a number; got {v!r}") from err


def _getenv_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    """
    Read a loosely-typed boolean from the environment.

    Treats "1", "true", "yes", "on" (case-insensitive) as True;
    "0", "false", "no", "off", "" as False. If unset, returns default.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    # Fallback: any other non-empty value -> True
    return True


# Load .env from project root if present
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env", override=False)

DB_PATH: str = _getenv_str("DB_PATH", "data/magpie.db")

# -------------------------------
# Search thresholds (env-overridable)
# -------------------------------
# Fallback "did you mean" suggestions run when a first page has fewer hits than this.
SEARCH_SPARSITY_THRESHOLD: int = _getenv_int("SEARCH_SPARSITY_THRESHOLD", 5)
SEARCH_SNIPPET_LENGTH: int = _getenv_int("SEARCH_SNIPPET_LENGTH", 200)
SEARCH_SNIPPET_LOOKAHEAD: int = _getenv_int("SEARCH_SNIPPET_LOOKAHEAD", 20)
SEARCH_SNIPPET_TRIM_RATIO: float = _getenv_float("SEARCH_SNIPPET_TRIM_RATIO", 0.8)
SEARCH_EDIT_DISTANCE_MAX: int = _getenv_int("SEARCH_EDIT_DISTANCE_MAX", 2)

SEARCH_FALLBACK_TITLE_ROWS: int = _getenv_int("SEARCH_FALLBACK_TITLE_ROWS", 20)
SEARCH_FALLBACK_TAG_ROWS: int = _getenv_int("SEARCH_FALLBACK_TAG_ROWS", 50)
SEARCH_FALLBACK_POPULAR_CATEGORIES: int = _getenv_int("SEARCH_FALLBACK_POPULAR_CATEGORIES", 5)
SEARCH_FALLBACK_TOP_TAGS: int = _getenv_int("SEARCH_FALLBACK_TOP_TAGS", 3)
SEARCH_FALLBACK_MAX_SUGGESTIONS: int = _getenv_int("SEARCH_FALLBACK_MAX_SUGGESTIONS", 5)
SEARCH_FALLBACK_MIN_WORD_LENGTH: int = _getenv_int("SEARCH_FALLBACK_MIN_WORD_LENGTH", 3)

SEARCH_HIGHLIGHT_OPEN: str = os.getenv("SEARCH_HIGHLIGHT_OPEN", "<mark>")
SEARCH_HIGHLIGHT_CLOSE: str = os.getenv("SEARCH_HIGHLIGHT_CLOSE", "</mark>")

SEARCH_DEFAULT_LIMIT: int = _getenv_int("SEARCH_DEFAULT_LIMIT", 20)
SEARCH_MAX_LIMIT: int = _getenv_int("SEARCH_MAX_LIMIT", 100)
SUGGEST_DEFAULT_LIMIT: int = _getenv_int("SUGGEST_DEFAULT_LIMIT", 10)
SUGGEST_MAX_LIMIT: int = _getenv_int("SUGGEST_MAX_LIMIT", 50)

# -------------------------------
# First-page cache + search log
# -------------------------------
REDIS_URL: str = _getenv_str("REDIS_URL", "redis://127.0.0.1:6379/0")
SEARCH_CACHE_ENABLED: bool = _getenv_bool("SEARCH_CACHE_ENABLED", True)
SEARCH_CACHE_TTL_SECONDS: int = _getenv_int("SEARCH_CACHE_TTL_SECONDS", 300)
SEARCH_LOG_ENABLED: bool = _getenv_bool("SEARCH_LOG_ENABLED", True)


@dataclass(frozen=True)
class SearchConfig:
    """
    Thresholds shared by the search, highlight, suggestion and fallback code.

    Components take one of these explicitly so tests can exercise boundary
    values without touching the environment.
    """

    sparsity_threshold: int = 5
    snippet_length: int = 200
    snippet_lookahead: int = 20
    snippet_trim_ratio: float = 0.8
    edit_distance_max: int = 2
    fallback_title_rows: int = 20
    fallback_tag_rows: int = 50
    fallback_popular_categories: int = 5
    fallback_top_tags: int = 3
    fallback_max_suggestions: int = 5
    fallback_min_word_length: int = 3
    highlight_open: str = "<mark>"
    highlight_close: str = "</mark>"
    default_limit: int = 20
    max_limit: int = 100
    suggest_default_limit: int = 10
    suggest_max_limit: int = 50


def load_search_config() -> SearchConfig:
    return SearchConfig(
        sparsity_threshold=SEARCH_SPARSITY_THRESHOLD,
        snippet_length=SEARCH_SNIPPET_LENGTH,
        snippet_lookahead=SEARCH_SNIPPET_LOOKAHEAD,
        snippet_trim_ratio=SEARCH_SNIPPET_TRIM_RATIO,
        edit_distance_max=SEARCH_EDIT_DISTANCE_MAX,
        fallback_title_rows=SEARCH_FALLBACK_TITLE_ROWS,
        fallback_tag_rows=SEARCH_FALLBACK_TAG_ROWS,
        fallback_popular_categories=SEARCH_FALLBACK_POPULAR_CATEGORIES,
        fallback_top_tags=SEARCH_FALLBACK_TOP_TAGS,
        fallback_max_suggestions=SEARCH_FALLBACK_MAX_SUGGESTIONS,
        fallback_min_word_length=SEARCH_FALLBACK_MIN_WORD_LENGTH,
        highlight_open=SEARCH_HIGHLIGHT_OPEN,
        highlight_close=SEARCH_HIGHLIGHT_CLOSE,
        default_limit=SEARCH_DEFAULT_LIMIT,
        max_limit=SEARCH_MAX_LIMIT,
        suggest_default_limit=SUGGEST_DEFAULT_LIMIT,
        suggest_max_limit=SUGGEST_MAX_LIMIT,
    )


__all__ = [
    "DB_PATH",
    "REDIS_URL",
    "SEARCH_CACHE_ENABLED",
    "SEARCH_CACHE_TTL_SECONDS",
    "SEARCH_LOG_ENABLED",
    "SearchConfig",
    "load_search_config",
]
