# magpie/search/__init__.py
"""
Full-text search, type-ahead suggestions and "did you mean" fallback over
published links.

Callers (the HTTP API, the CLI) go through a SearchBackend, normally
SqliteFtsBackend, so the query modules stay swappable behind one interface.
"""

from .backend import SearchBackend, SearchPage, SqliteFtsBackend
from .fallback import edit_distance, generate_fallback_suggestions
from .highlight import generate_snippet, highlight_hit
from .indexing import SearchHit, search_links
from .query import SearchQuery, SuggestionQuery, build_index_query
from .suggest import Suggestion, suggest

__all__ = [
    "SearchBackend",
    "SearchHit",
    "SearchPage",
    "SearchQuery",
    "SqliteFtsBackend",
    "Suggestion",
    "SuggestionQuery",
    "build_index_query",
    "edit_distance",
    "generate_fallback_suggestions",
    "generate_snippet",
    "highlight_hit",
    "search_links",
    "suggest",
]
