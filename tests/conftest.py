# tests/conftest.py
from __future__ import annotations

import calendar
import sqlite3
import sys
from collections.abc import Generator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

# Ensure project root importable (scripts/ is imported as a namespace package)
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from magpie.db import PUBLISHED, ensure_schema, get_connection, save_link  # noqa: E402


def ts(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    """UTC Unix timestamp for a calendar moment."""
    return calendar.timegm((year, month, day, hour, minute, second, 0, 0, 0))


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Autouse: keep the first-page cache away from any real Redis. Cache tests
    patch _get_redis_client again with a FakeRedis.
    """
    monkeypatch.setattr("magpie.search.cache._get_redis_client", lambda: None)


def _seed_helper(conn: sqlite3.Connection):
    counter = {"n": 0}

    def add(
        title: str,
        *,
        description: str = "",
        category: str = "general",
        tags: list[str] | None = None,
        domain: str = "example.com",
        status: str = PUBLISHED,
        created_at: int | None = None,
        published_at: int | None = None,
        **extra: Any,
    ) -> int:
        counter["n"] += 1
        created = created_at if created_at is not None else ts(2024, 1, 1) + counter["n"]
        return save_link(
            conn,
            url=f"https://{domain}/post-{counter['n']}",
            domain=domain,
            title=title,
            ai_summary=description,
            ai_category=category,
            ai_tags=tags or [],
            status=status,
            created_at=created,
            published_at=published_at,
            **extra,
        )

    return add


@pytest.fixture()
def link_db() -> Generator[SimpleNamespace, None, None]:
    """
    In-memory database with the full schema (links, links_fts + triggers,
    search_logs) and an add(...) helper that inserts one link through the
    real write path and returns its id.
    """
    conn = get_connection(":memory:")
    ensure_schema(conn)
    try:
        yield SimpleNamespace(conn=conn, add=_seed_helper(conn))
    finally:
        conn.close()
