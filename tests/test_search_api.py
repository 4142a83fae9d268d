# tests/test_search_api.py
from __future__ import annotations

from collections.abc import Generator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from magpie.api.app import app
from magpie.config import SearchConfig
from magpie.exceptions import RetrievalError
from magpie.search.backend import SqliteFtsBackend

# ---------------------------------------------------------------------------
# TestClient fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_env(
    link_db: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[SimpleNamespace, None, None]:
    """
    TestClient wired to an in-memory SqliteFtsBackend via app.state, plus the
    link_db seed helper.
    """
    monkeypatch.setattr("magpie.api.app.SEARCH_LOG_ENABLED", True)
    backend = SqliteFtsBackend(link_db.conn, SearchConfig())
    app.state.search_backend = backend
    client = TestClient(app)
    try:
        yield SimpleNamespace(client=client, conn=link_db.conn, add=link_db.add, backend=backend)
    finally:
        app.state.search_backend = None


class FailingBackend:
    config = SearchConfig()

    def search(self, query):
        raise RetrievalError("database is locked")

    def suggest(self, query):
        raise RetrievalError("database is locked")

    def did_you_mean(self, query):
        return []


@pytest.fixture()
def failing_client() -> Generator[TestClient, None, None]:
    app.state.search_backend = FailingBackend()
    try:
        yield TestClient(app)
    finally:
        app.state.search_backend = None


# ---------------------------------------------------------------------------
# /health
# ---------------------------------------------------------------------------


def test_health(api_env: SimpleNamespace) -> None:
    resp = api_env.client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


# ---------------------------------------------------------------------------
# /api/search
# ---------------------------------------------------------------------------


def test_search_returns_highlighted_results(api_env: SimpleNamespace) -> None:
    api_env.add("React Tutorial for Beginners", description="Components.", tags=["frontend"])

    resp = api_env.client.get("/api/search", params={"q": "React"})

    assert resp.status_code == 200
    body = resp.json()
    assert len(body["results"]) == 1
    row = body["results"][0]
    assert "<mark>React</mark>" in row["highlights"]["title"]
    assert row["tags"] == ["frontend"]
    assert row["created_at"].endswith("Z")
    assert body["pagination"] == {
        "page": 1,
        "limit": 20,
        "total": 1,
        "pages": 1,
        "has_next": False,
        "has_prev": False,
    }
    assert body["query"]["original_query"] == "React"
    assert body["query"]["processed_query"] == '"React"'
    assert body["query"]["filters"] == {
        "category": None,
        "tags": None,
        "domain": None,
        "before": None,
        "after": None,
    }
    assert isinstance(body["total_time_ms"], int)


def test_sparse_first_page_carries_fallback_suggestions(api_env: SimpleNamespace) -> None:
    api_env.add("React Tutorial", category="programming")

    resp = api_env.client.get("/api/search", params={"q": "nonexistentxyz"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["results"] == []
    assert body["pagination"]["total"] == 0
    assert isinstance(body["suggestions"], list)
    assert len(body["suggestions"]) <= 5
    assert "nonexistentxyz" not in [s.lower() for s in body["suggestions"]]


def test_full_first_page_has_no_suggestions(api_env: SimpleNamespace) -> None:
    for i in range(6):
        api_env.add(f"Python tip {i}")

    body = api_env.client.get("/api/search", params={"q": "python"}).json()

    assert body["pagination"]["total"] == 6
    assert body["suggestions"] is None


def test_later_pages_never_run_fallback(api_env: SimpleNamespace) -> None:
    for i in range(3):
        api_env.add(f"Ruby tip {i}")

    body = api_env.client.get("/api/search", params={"q": "ruby", "page": "2", "limit": "2"}).json()

    assert len(body["results"]) == 1
    assert body["pagination"]["has_prev"] is True
    assert body["pagination"]["has_next"] is False
    assert body["suggestions"] is None


def test_filters_are_echoed(api_env: SimpleNamespace) -> None:
    api_env.add("Testing guide", category="qa", tags=["pytest"], domain="docs.pytest.org")

    body = api_env.client.get(
        "/api/search",
        params={
            "q": "guide",
            "category": "qa",
            "tags": "pytest,unittest",
            "domain": "docs.pytest.org",
            "after": "2020-01-01",
            "sort": "newest",
        },
    ).json()

    assert body["pagination"]["total"] == 1
    assert body["query"]["filters"] == {
        "category": "qa",
        "tags": ["pytest", "unittest"],
        "domain": "docs.pytest.org",
        "before": None,
        "after": "2020-01-01",
    }
    assert body["query"]["processed_query"] == '("guide") AND ("pytest" OR "unittest")'


@pytest.mark.parametrize(
    "params, error",
    [
        ({}, "invalid_query"),
        ({"q": "   "}, "invalid_query"),
        ({"q": "x", "page": "0"}, "invalid_page"),
        ({"q": "x", "limit": "500"}, "invalid_limit"),
        ({"q": "x", "sort": "popular"}, "invalid_sort"),
        ({"q": "x", "before": "last week"}, "invalid_date"),
        ({"q": "x", "highlight": "perhaps"}, "invalid_highlight"),
    ],
)
def test_search_validation_errors(api_env: SimpleNamespace, params: dict, error: str) -> None:
    resp = api_env.client.get("/api/search", params=params)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == error
    assert body["detail"]


def test_search_storage_failure_is_opaque(failing_client: TestClient) -> None:
    resp = failing_client.get("/api/search", params={"q": "anything"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "retrieval_failed", "detail": "Failed to search links"}


def test_page_failure_after_count_returns_no_partial_body(
    api_env: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    api_env.add("Scala implicits")

    def failing_page(*args, **kwargs):
        raise RetrievalError("disk I/O error")

    monkeypatch.setattr("magpie.search.indexing.query_index", failing_page)

    resp = api_env.client.get("/api/search", params={"q": "scala"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "retrieval_failed", "detail": "Failed to search links"}
    assert api_env.conn.execute("SELECT COUNT(*) FROM search_logs").fetchone()[0] == 0


@pytest.mark.parametrize("q", ["!!!", "++", "🙂"])
def test_punctuation_only_query_returns_empty_first_page(api_env: SimpleNamespace, q: str) -> None:
    api_env.add("C++ templates", category="programming")

    resp = api_env.client.get("/api/search", params={"q": q})

    assert resp.status_code == 200
    body = resp.json()
    assert body["results"] == []
    assert body["pagination"]["total"] == 0
    assert body["query"]["original_query"] == q
    assert isinstance(body["suggestions"], list)


def test_search_is_logged(api_env: SimpleNamespace) -> None:
    api_env.add("Go generics")

    api_env.client.get("/api/search", params={"q": "Go", "sort": "oldest"})
    api_env.client.get("/api/search", params={"q": "cobol"})

    rows = api_env.conn.execute(
        "SELECT query, normalized_query, results_count, sort_by, no_results_found "
        "FROM search_logs ORDER BY id"
    ).fetchall()
    assert [tuple(r) for r in rows] == [
        ("Go", "go", 1, "oldest", 0),
        ("cobol", "cobol", 0, "relevance", 1),
    ]


def test_search_log_can_be_disabled(api_env: SimpleNamespace, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("magpie.api.app.SEARCH_LOG_ENABLED", False)
    api_env.client.get("/api/search", params={"q": "anything"})
    count = api_env.conn.execute("SELECT COUNT(*) FROM search_logs").fetchone()[0]
    assert count == 0


# ---------------------------------------------------------------------------
# /api/search/suggestions
# ---------------------------------------------------------------------------


def test_domain_suggestions(api_env: SimpleNamespace) -> None:
    for _ in range(2):
        api_env.add("Post", domain="example.com")
    api_env.add("Post", domain="exercism.io")
    api_env.add("Post", domain="github.com")

    resp = api_env.client.get(
        "/api/search/suggestions",
        params={"q": "e", "type": "domain", "limit": "5"},
    )

    assert resp.status_code == 200
    suggestions = resp.json()["suggestions"]
    assert suggestions[0] == {"text": "example.com", "type": "domain", "count": 2}
    assert len(suggestions) <= 5
    assert all(s["type"] == "domain" and "e" in s["text"] for s in suggestions)


def test_mixed_suggestions(api_env: SimpleNamespace) -> None:
    api_env.add("Svelte stores", category="frontend", tags=["svelte"], domain="svelte.dev")

    suggestions = api_env.client.get("/api/search/suggestions", params={"q": "svel"}).json()[
        "suggestions"
    ]

    assert {s["type"] for s in suggestions} == {"title", "tag", "domain"}
    texts = [s["text"] for s in suggestions]
    assert len(texts) == len(set(texts))


@pytest.mark.parametrize(
    "params, error",
    [
        ({}, "invalid_query"),
        ({"q": "x", "type": "author"}, "invalid_type"),
        ({"q": "x", "limit": "51"}, "invalid_limit"),
    ],
)
def test_suggestion_validation_errors(api_env: SimpleNamespace, params: dict, error: str) -> None:
    resp = api_env.client.get("/api/search/suggestions", params=params)
    assert resp.status_code == 400
    assert resp.json()["error"] == error


def test_suggestion_storage_failure_is_opaque(failing_client: TestClient) -> None:
    resp = failing_client.get("/api/search/suggestions", params={"q": "x"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "retrieval_failed", "detail": "Failed to get suggestions"}
