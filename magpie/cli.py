# magpie/cli.py
from __future__ import annotations

import argparse
import json
import sqlite3
import sys
from typing import Any

from magpie.db import ensure_schema, get_connection, rebuild_search_index
from magpie.exceptions import RetrievalError, SearchValidationError
from magpie.search.backend import SearchPage, SqliteFtsBackend
from magpie.search.query import SORT_VALUES, SUGGESTION_TYPES, SearchQuery, SuggestionQuery
from magpie.search.suggest import Suggestion


def _section(title: str) -> None:
    print(f"=== {title} ===")


def _open_backend(args: argparse.Namespace) -> SqliteFtsBackend:
    conn = get_connection(args.db)
    ensure_schema(conn)
    return SqliteFtsBackend(conn)


def _print_results(page: SearchPage, did_you_mean: list[str] | None) -> None:
    _section("Results")

    if not page.results:
        print("  (no results)")
        print()
    else:
        for row in page.results:
            print(f"  [{row['id']}] {row['title']}  (score {row['score']:.3f})")
            print(f"      {row['url']}")
            meta = [row.get("category") or "", row.get("domain") or ""]
            tags = row.get("tags") or []
            if tags:
                meta.append(", ".join(tags))
            print("      " + " | ".join(m for m in meta if m))
        print()

    p = page.pagination()
    print(f"  Page {p['page']} of {p['pages']}  ({p['total']} total)")
    print()

    if did_you_mean:
        _section("Did you mean")
        for term in did_you_mean:
            print(f"  {term}")
        print()


def _print_suggestions(suggestions: list[Suggestion]) -> None:
    _section("Suggestions")

    if not suggestions:
        print("  (no suggestions)")
        print()
        return

    header = f"{'type':10} {'count':>6} text"
    print("  " + header)
    print("  " + "-" * len(header))
    for s in suggestions:
        print(f"  {s.type:10} {s.count:6d} {s.text}")
    print()


def _fail(err: Exception) -> int:
    if isinstance(err, SearchValidationError):
        print(f"error: {err.code}: {err.detail}", file=sys.stderr)
        return 2
    print(f"error: {err}", file=sys.stderr)
    return 1


def _cmd_search(args: argparse.Namespace) -> int:
    backend = _open_backend(args)
    try:
        query = SearchQuery.from_params(
            args.query,
            page=args.page,
            limit=args.limit,
            category=args.category,
            domain=args.domain,
            tags=args.tags,
            before=args.before,
            after=args.after,
            sort=args.sort,
            highlight=not args.no_highlight,
            config=backend.config,
        )
        page = backend.search(query)
        did_you_mean: list[str] | None = None
        if page.total < backend.config.sparsity_threshold and query.page == 1:
            did_you_mean = backend.did_you_mean(query)
    except (SearchValidationError, RetrievalError) as err:
        return _fail(err)
    finally:
        backend.conn.close()

    if args.json:
        payload: dict[str, Any] = {
            "results": page.results,
            "pagination": page.pagination(),
            "suggestions": did_you_mean,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    _print_results(page, did_you_mean)
    return 0


def _cmd_suggest(args: argparse.Namespace) -> int:
    backend = _open_backend(args)
    try:
        query = SuggestionQuery.from_params(
            args.query,
            type=args.type,
            limit=args.limit,
            config=backend.config,
        )
        suggestions = backend.suggest(query)
    except (SearchValidationError, RetrievalError) as err:
        return _fail(err)
    finally:
        backend.conn.close()

    if args.json:
        print(json.dumps({"suggestions": [s.to_dict() for s in suggestions]}, indent=2))
        return 0

    _print_suggestions(suggestions)
    return 0


def _cmd_index_rebuild(args: argparse.Namespace) -> int:
    conn = get_connection(args.db)
    try:
        ensure_schema(conn)
        count = rebuild_search_index(conn)
    except sqlite3.Error as err:
        return _fail(err)
    finally:
        conn.close()
    print(f"Rebuilt search index over {count} links")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="magpie",
        description="Search, suggest and maintain the link search index.",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path (default: DATABASE_URL / DB_PATH / data/magpie.db).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    search_parser = subparsers.add_parser("search", help="Full-text search over published links.")
    search_parser.add_argument("query", help="Search text.")
    search_parser.add_argument("--page", type=int, default=1)
    search_parser.add_argument("--limit", type=int, default=None, help="Page size (1-100, default: 20).")
    search_parser.add_argument("--category", default=None)
    search_parser.add_argument("--domain", default=None)
    search_parser.add_argument("--tags", default=None, help="Comma-separated tags; any may match.")
    search_parser.add_argument("--before", default=None, help="YYYY-MM-DD, inclusive.")
    search_parser.add_argument("--after", default=None, help="YYYY-MM-DD, inclusive.")
    search_parser.add_argument("--sort", choices=SORT_VALUES, default="relevance")
    search_parser.add_argument(
        "--no-highlight",
        action="store_true",
        help="Skip highlight markup in the results.",
    )
    search_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text.")
    search_parser.set_defaults(func=_cmd_search)

    suggest_parser = subparsers.add_parser("suggest", help="Type-ahead suggestions for partial input.")
    suggest_parser.add_argument("query", help="Partial input.")
    suggest_parser.add_argument("--type", choices=SUGGESTION_TYPES, default=None)
    suggest_parser.add_argument("--limit", type=int, default=None, help="1-50 (default: 10).")
    suggest_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text.")
    suggest_parser.set_defaults(func=_cmd_suggest)

    index_parser = subparsers.add_parser("index", help="Search index maintenance.")
    index_subparsers = index_parser.add_subparsers(dest="index_command", required=True)
    rebuild_parser = index_subparsers.add_parser(
        "rebuild",
        help="Rebuild links_fts from the links table.",
    )
    rebuild_parser.set_defaults(func=_cmd_index_rebuild)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    func = getattr(args, "func", None)
    if func is None:
        parser.error("no command specified")
        return 1

    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
