# magpie/db.py
from __future__ import annotations

import json
import os
import sqlite3
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

PUBLISHED = "published"

# -------------------- basics --------------------


def _db_path() -> str:
    # Prefer DATABASE_URL if set; otherwise fall back to DB_PATH; otherwise data/magpie.db
    url = os.environ.get("DATABASE_URL")
    if url:
        if not url.startswith("sqlite:///"):
            raise RuntimeError(f"Only sqlite is supported; got {url}")
        return url.removeprefix("sqlite:///")
    path = os.environ.get("DB_PATH")
    if path:
        return path
    return "data/magpie.db"


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Shared SQLite connection helper for the API, CLI and scripts.

    - If db_path is None, uses _db_path() (DATABASE_URL/DB_PATH/data/magpie.db).
    - Creates the parent directory for file-backed databases.
    - Sets row_factory to sqlite3.Row for dict-like access.
    - check_same_thread=False so FastAPI's worker threads can share it.
    """
    if db_path is None:
        db_path = _db_path()
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(db_path, check_same_thread=False)
    con.row_factory = sqlite3.Row
    return con


# -------------------- schema --------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT NOT NULL,
  domain TEXT NOT NULL,
  title TEXT,
  original_description TEXT,
  ai_summary TEXT,
  ai_category TEXT,
  ai_tags TEXT,
  ai_reading_time INTEGER,
  user_description TEXT,
  user_category TEXT,
  user_tags TEXT,
  final_description TEXT,
  final_category TEXT,
  final_tags TEXT,
  status TEXT NOT NULL DEFAULT 'pending',
  click_count INTEGER NOT NULL DEFAULT 0,
  created_at INTEGER NOT NULL,
  updated_at INTEGER,
  published_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_links_status ON links(status);
CREATE INDEX IF NOT EXISTS idx_links_domain ON links(domain);
CREATE INDEX IF NOT EXISTS idx_links_category ON links(final_category);
CREATE INDEX IF NOT EXISTS idx_links_status_published_at ON links(status, published_at);

-- External-content FTS5 index; rowid == links.id.
CREATE VIRTUAL TABLE IF NOT EXISTS links_fts USING fts5(
  title,
  final_description,
  final_tags,
  domain,
  final_category,
  content=links,
  content_rowid=id
);

CREATE TRIGGER IF NOT EXISTS links_fts_insert AFTER INSERT ON links BEGIN
  INSERT INTO links_fts(rowid, title, final_description, final_tags, domain, final_category)
  VALUES (NEW.id, NEW.title, NEW.final_description, NEW.final_tags, NEW.domain, NEW.final_category);
END;

CREATE TRIGGER IF NOT EXISTS links_fts_delete AFTER DELETE ON links BEGIN
  INSERT INTO links_fts(links_fts, rowid, title, final_description, final_tags, domain, final_category)
  VALUES ('delete', OLD.id, OLD.title, OLD.final_description, OLD.final_tags, OLD.domain, OLD.final_category);
END;

CREATE TRIGGER IF NOT EXISTS links_fts_update AFTER UPDATE ON links BEGIN
  INSERT INTO links_fts(links_fts, rowid, title, final_description, final_tags, domain, final_category)
  VALUES ('delete', OLD.id, OLD.title, OLD.final_description, OLD.final_tags, OLD.domain, OLD.final_category);
  INSERT INTO links_fts(rowid, title, final_description, final_tags, domain, final_category)
  VALUES (NEW.id, NEW.title, NEW.final_description, NEW.final_tags, NEW.domain, NEW.final_category);
END;

-- Single-row write counter; cached search pages are keyed on it.
CREATE TABLE IF NOT EXISTS links_version (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  version INTEGER NOT NULL
);
INSERT OR IGNORE INTO links_version (id, version) VALUES (1, 0);

CREATE TRIGGER IF NOT EXISTS links_version_insert AFTER INSERT ON links BEGIN
  UPDATE links_version SET version = version + 1 WHERE id = 1;
END;

CREATE TRIGGER IF NOT EXISTS links_version_update AFTER UPDATE ON links BEGIN
  UPDATE links_version SET version = version + 1 WHERE id = 1;
END;

CREATE TRIGGER IF NOT EXISTS links_version_delete AFTER DELETE ON links BEGIN
  UPDATE links_version SET version = version + 1 WHERE id = 1;
END;

CREATE TABLE IF NOT EXISTS search_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  query TEXT NOT NULL,
  normalized_query TEXT,
  results_count INTEGER,
  response_time INTEGER,
  filters TEXT,
  sort_by TEXT,
  no_results_found INTEGER NOT NULL DEFAULT 0,
  created_at INTEGER NOT NULL
);
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create links, links_fts (+ sync triggers) and search_logs if missing."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def rebuild_search_index(conn: sqlite3.Connection) -> int:
    """
    Rebuild links_fts from the links table and return the number of indexed rows.

    Needed after bulk loads that bypassed the triggers, or after restoring a
    links table from backup.
    """
    with conn:
        conn.execute("INSERT INTO links_fts(links_fts) VALUES ('rebuild')")
        conn.execute("UPDATE links_version SET version = version + 1 WHERE id = 1")
    row = conn.execute("SELECT COUNT(*) FROM links").fetchone()
    return int(row[0])


def links_version(conn: sqlite3.Connection) -> int:
    """Current value of the links write counter (0 on a fresh schema)."""
    row = conn.execute("SELECT version FROM links_version WHERE id = 1").fetchone()
    return int(row[0]) if row is not None else 0


# -------------------- write path --------------------


def _json_tags(tags: Iterable[str] | None) -> str | None:
    if tags is None:
        return None
    return json.dumps([str(t) for t in tags], ensure_ascii=False)


def save_link(
    conn: sqlite3.Connection,
    *,
    url: str,
    domain: str,
    title: str | None = None,
    ai_summary: str | None = None,
    ai_category: str | None = None,
    ai_tags: Iterable[str] | None = None,
    ai_reading_time: int | None = None,
    user_description: str | None = None,
    user_category: str | None = None,
    user_tags: Iterable[str] | None = None,
    status: str = PUBLISHED,
    created_at: int | None = None,
    published_at: int | None = None,
    raw_final_tags: str | None = None,
) -> int:
    """
    Insert a link and return its id.

    The final_* columns are resolved here, user-confirmed values winning over
    AI-generated ones, so search only ever reads the resolved fields.
    raw_final_tags overrides the serialized tag set verbatim (used to load
    legacy rows and in tests for malformed data).
    """
    now = int(time.time())
    created = created_at if created_at is not None else now
    if published_at is None and status == PUBLISHED:
        published_at = created

    user_tags_json = _json_tags(user_tags)
    ai_tags_json = _json_tags(ai_tags)
    final_tags = raw_final_tags if raw_final_tags is not None else (user_tags_json or ai_tags_json)

    cur = conn.execute(
        """
        INSERT INTO links (
          url, domain, title,
          ai_summary, ai_category, ai_tags, ai_reading_time,
          user_description, user_category, user_tags,
          final_description, final_category, final_tags,
          status, created_at, updated_at, published_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            url,
            domain,
            title,
            ai_summary,
            ai_category,
            ai_tags_json,
            ai_reading_time,
            user_description,
            user_category,
            user_tags_json,
            user_description or ai_summary,
            user_category or ai_category,
            final_tags,
            status,
            created,
            created,
            published_at,
        ),
    )
    conn.commit()
    return int(cur.lastrowid)


def record_search_log(
    conn: sqlite3.Connection,
    *,
    query: str,
    normalized_query: str,
    results_count: int,
    response_time_ms: int,
    filters: Mapping[str, Any],
    sort_by: str,
) -> None:
    """Append one row to search_logs."""
    with conn:
        conn.execute(
            """
            INSERT INTO search_logs (
              query, normalized_query, results_count, response_time,
              filters, sort_by, no_results_found, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                query,
                normalized_query,
                results_count,
                response_time_ms,
                json.dumps(dict(filters), sort_keys=True),
                sort_by,
                1 if results_count == 0 else 0,
                int(time.time()),
            ),
        )
