# tests/test_search_cache.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from magpie.config import SearchConfig
from magpie.search.backend import SearchPage
from magpie.search.cache import _build_cache_key, search_with_cache
from magpie.search.query import SearchQuery

CFG = SearchConfig()


@dataclass
class FakeBackend:
    """
    Simple in-memory SearchBackend stub for cache tests.

    Tracks how many times search() was called and returns the configured rows.
    """

    rows_to_return: list[dict[str, Any]]
    total: int = 1
    namespace: str = "fake-db"
    call_count: int = 0
    seen_pages: list[int] = field(default_factory=list)

    def search(self, query: SearchQuery) -> SearchPage:
        self.call_count += 1
        self.seen_pages.append(query.page)
        return SearchPage(
            results=list(self.rows_to_return),
            total=self.total,
            page=query.page,
            limit=query.limit,
        )

    def cache_namespace(self) -> str:
        return self.namespace


class FakeRedis:
    """
    Minimal Redis-like stub implementing get/setex against an in-memory dict.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.setex_calls: list[tuple[str, int, str]] = []

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self.setex_calls.append((key, ttl, value))


class BrokenRedis:
    def get(self, key: str) -> str | None:
        raise ConnectionError("redis down")

    def setex(self, key: str, ttl: int, value: str) -> None:
        raise ConnectionError("redis down")


@pytest.fixture(autouse=True)
def _cache_on(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("magpie.search.cache.SEARCH_CACHE_ENABLED", True)
    monkeypatch.setattr("magpie.search.cache.SEARCH_CACHE_TTL_SECONDS", 300)
    monkeypatch.delenv("SEARCH_CACHE_NAMESPACE", raising=False)


@pytest.fixture()
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    client = FakeRedis()
    monkeypatch.setattr("magpie.search.cache._get_redis_client", lambda: client)
    return client


def _query(q: str = "react", **kwargs) -> SearchQuery:
    return SearchQuery.from_params(q, config=CFG, **kwargs)


# ---------------------------------------------------------------------------
# Cache behavior tests
# ---------------------------------------------------------------------------


def test_second_identical_first_page_is_served_from_cache(fake_redis: FakeRedis) -> None:
    backend = FakeBackend(rows_to_return=[{"id": 1, "title": "React"}], total=1)

    page1 = search_with_cache(backend, _query())
    assert backend.call_count == 1
    assert len(fake_redis.setex_calls) == 1
    assert fake_redis.setex_calls[0][1] == 300

    # Mutate backend to prove the second call is served from cache.
    backend.rows_to_return = [{"id": 2, "title": "Changed"}]
    backend.total = 9

    page2 = search_with_cache(backend, _query())

    assert backend.call_count == 1
    assert page2.results == page1.results == [{"id": 1, "title": "React"}]
    assert page2.total == 1
    assert page2.pagination() == page1.pagination()


def test_later_pages_bypass_cache(fake_redis: FakeRedis) -> None:
    backend = FakeBackend(rows_to_return=[{"id": 1}], total=40)

    search_with_cache(backend, _query(page="2"))
    search_with_cache(backend, _query(page="2"))

    assert backend.call_count == 2
    assert backend.seen_pages == [2, 2]
    assert not fake_redis.setex_calls


@pytest.mark.parametrize(
    "other",
    [
        {"q": "vue"},
        {"category": "programming"},
        {"domain": "example.com"},
        {"tags": "frontend"},
        {"before": "2024-01-01"},
        {"after": "2024-01-01"},
        {"sort": "newest"},
        {"limit": "5"},
        {"highlight": "false"},
    ],
)
def test_every_first_page_input_changes_the_key(fake_redis: FakeRedis, other: dict) -> None:
    backend = FakeBackend(rows_to_return=[{"id": 1}])
    other = dict(other)
    q = other.pop("q", "react")

    search_with_cache(backend, _query())
    search_with_cache(backend, _query(q, **other))

    assert backend.call_count == 2


def test_tag_order_and_case_share_a_key() -> None:
    backend = FakeBackend(rows_to_return=[])
    a = _build_cache_key(backend, _query(tags="React, hooks"))
    b = _build_cache_key(backend, _query(tags="hooks,react"))
    assert a == b
    assert a.startswith("link_search:v1:")


def test_namespace_separates_databases(monkeypatch: pytest.MonkeyPatch) -> None:
    one = FakeBackend(rows_to_return=[], namespace="sqlite:/tmp/one.db")
    two = FakeBackend(rows_to_return=[], namespace="sqlite:/tmp/two.db")
    assert _build_cache_key(one, _query()) != _build_cache_key(two, _query())

    monkeypatch.setenv("SEARCH_CACHE_NAMESPACE", "shared")
    assert _build_cache_key(one, _query()) == _build_cache_key(two, _query())


def test_no_redis_falls_back_to_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("magpie.search.cache._get_redis_client", lambda: None)
    backend = FakeBackend(rows_to_return=[{"id": 1}])

    search_with_cache(backend, _query())
    search_with_cache(backend, _query())

    assert backend.call_count == 2


def test_redis_errors_fall_back_to_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("magpie.search.cache._get_redis_client", lambda: BrokenRedis())
    backend = FakeBackend(rows_to_return=[{"id": 1}])

    page = search_with_cache(backend, _query())

    assert page.results == [{"id": 1}]
    assert backend.call_count == 1


def test_undecodable_entry_is_a_miss(fake_redis: FakeRedis) -> None:
    backend = FakeBackend(rows_to_return=[{"id": 1}])
    key = _build_cache_key(backend, _query())
    fake_redis._store[key] = "{not json"

    page = search_with_cache(backend, _query())

    assert backend.call_count == 1
    assert page.results == [{"id": 1}]
    assert json.loads(fake_redis._store[key])["results"] == [{"id": 1}]


def test_disabled_cache_never_touches_redis(
    monkeypatch: pytest.MonkeyPatch,
    fake_redis: FakeRedis,
) -> None:
    monkeypatch.setattr("magpie.search.cache.SEARCH_CACHE_ENABLED", False)
    backend = FakeBackend(rows_to_return=[{"id": 1}])

    search_with_cache(backend, _query())
    search_with_cache(backend, _query())

    assert backend.call_count == 2
    assert not fake_redis.setex_calls


# ---------------------------------------------------------------------------
# Cached totals stay consistent with live pages
# ---------------------------------------------------------------------------


def test_write_invalidates_cached_first_page(link_db, fake_redis: FakeRedis) -> None:
    from magpie.search.backend import SqliteFtsBackend

    for i in range(3):
        link_db.add(f"React pattern {i}")
    backend = SqliteFtsBackend(link_db.conn, CFG)

    cached = search_with_cache(backend, _query(limit="2"))
    assert cached.total == 3

    link_db.add("React pattern 3")

    page1 = search_with_cache(backend, _query(limit="2"))
    page2 = search_with_cache(backend, _query(limit="2", page="2"))

    assert page1.total == page2.total == 4
    ids = [row["id"] for row in page1.results + page2.results]
    assert sorted(ids) == sorted(set(ids))
    assert len(ids) == 4
    assert len(fake_redis.setex_calls) == 2


def test_unchanged_corpus_reuses_cached_first_page(link_db, fake_redis: FakeRedis) -> None:
    from magpie.search.backend import SqliteFtsBackend

    link_db.add("React pattern")
    backend = SqliteFtsBackend(link_db.conn, CFG)

    search_with_cache(backend, _query())
    search_with_cache(backend, _query())

    assert len(fake_redis.setex_calls) == 1


def test_corpus_version_changes_the_key() -> None:
    backend = FakeBackend(rows_to_return=[])
    assert _build_cache_key(backend, _query(), 1) != _build_cache_key(backend, _query(), 2)
