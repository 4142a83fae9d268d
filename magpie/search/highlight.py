# magpie/search/highlight.py
"""
Highlight markup and description snippets for search results.

Matching is a case-insensitive literal substring match on the raw query text;
the text is regex-escaped before it is compiled. Highlighting is applied once,
to raw field values only.
"""

from __future__ import annotations

import re
from typing import Any

from magpie.config import SearchConfig, load_search_config

ELLIPSIS = "..."


def _pattern(query: str) -> re.Pattern[str]:
    return re.compile(re.escape(query), re.IGNORECASE)


def mark(text: str, query: str, config: SearchConfig | None = None) -> str:
    """Wrap every case-insensitive occurrence of query in the highlight markers."""
    cfg = config or load_search_config()
    if not query:
        return text
    return _pattern(query).sub(
        lambda m: f"{cfg.highlight_open}{m.group(0)}{cfg.highlight_close}",
        text,
    )


def _contains(text: str, query: str) -> bool:
    return bool(query) and _pattern(query).search(text) is not None


def generate_snippet(text: str, query: str, config: SearchConfig | None = None) -> str:
    """
    Cut a window of at most snippet_length characters around the first match.

    - Text that already fits is returned whole.
    - The window is centred on the match; a left edge that lands mid-word is
      moved forward to the next word start when one is within
      snippet_lookahead characters (never past the match itself).
    - A window that stops short of the end is trimmed back to its last space
      when that space lies beyond snippet_trim_ratio of the window, and gets a
      trailing ellipsis. A window that does not start at 0 gets a leading one.
    - Without a match, the head of the text is returned with an ellipsis.
    """
    cfg = config or load_search_config()
    max_length = cfg.snippet_length

    if not text or len(text) <= max_length:
        return text

    # Offsets come from the original text; lower() can change its length.
    match = _pattern(query).search(text) if query else None
    if match is None:
        return text[:max_length] + ELLIPSIS
    match_index = match.start()

    context_length = max(0, (max_length - len(query)) // 2)
    start = max(0, match_index - context_length)

    if start > 0 and not text[start - 1].isspace():
        space_index = text.find(" ", start)
        if space_index != -1 and space_index < start + cfg.snippet_lookahead and space_index < match_index:
            start = space_index + 1

    snippet = text[start : start + max_length]

    if start + max_length < len(text):
        last_space = snippet.rfind(" ")
        if last_space > max_length * cfg.snippet_trim_ratio:
            snippet = snippet[:last_space]
        snippet += ELLIPSIS

    if start > 0:
        snippet = ELLIPSIS + snippet

    return snippet


def highlight_hit(
    title: str,
    description: str,
    tags: list[str],
    query: str,
    config: SearchConfig | None = None,
) -> dict[str, Any]:
    """
    Build the highlights map for one result.

    Keys are only present for fields that matched:
      - "title": the marked-up title
      - "description": a marked-up snippet of the description
      - "tags": the full tag list with matching tags marked, present only
        when at least one tag matched
    """
    cfg = config or load_search_config()
    highlights: dict[str, Any] = {}

    if _contains(title, query):
        highlights["title"] = mark(title, query, cfg)

    if _contains(description, query):
        highlights["description"] = mark(generate_snippet(description, query, cfg), query, cfg)

    if any(_contains(tag, query) for tag in tags):
        highlights["tags"] = [mark(tag, query, cfg) if _contains(tag, query) else tag for tag in tags]

    return highlights
