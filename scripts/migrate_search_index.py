# scripts/migrate_search_index.py
from __future__ import annotations

import argparse
from pathlib import Path

from magpie.config import DB_PATH
from magpie.db import ensure_schema, get_connection, rebuild_search_index


def run_migration(db_path: str) -> int:
    """
    Create links / links_fts / search_logs (with the FTS sync triggers) if
    missing, then rebuild links_fts from the links table.

    Safe to re-run; returns the number of links indexed.
    """
    db_file = Path(db_path)
    print(f"[search] Using SQLite database at: {db_file}")

    conn = get_connection(str(db_file))
    try:
        print("[search] Creating tables, FTS5 index and triggers if missing ...")
        ensure_schema(conn)

        print("[search] Rebuilding links_fts from links ...")
        count = rebuild_search_index(conn)

        print(f"[search] Search index migration applied; {count} links indexed.")
        return count
    finally:
        conn.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the link search index (FTS5 + triggers) and backfill it."
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=DB_PATH,
        help=f"Path to SQLite database file (default: {DB_PATH})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    run_migration(args.db_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
