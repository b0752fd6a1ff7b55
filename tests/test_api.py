import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_scored
from src.lorekeeper.api import app, get_pipeline
from src.lorekeeper.errors import AuthorizationError, BackendError, NotFoundError
from src.lorekeeper.models import (
    ChunkEvent,
    DoneEvent,
    QueryMetadata,
    RAGResponse,
    SourcesEvent,
)

HEADERS = {"X-User-Id": "user-owner"}
QUESTION = "What does fireball do?"


@pytest.fixture
def client():
    """Test client with the pipeline and store replaced by mocks."""
    mock_pipe = MagicMock()
    mock_store = MagicMock()
    mock_store.count = 42
    app.dependency_overrides[get_pipeline] = lambda: mock_pipe

    with patch("src.lorekeeper.api.get_store", return_value=mock_store):
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c, mock_pipe

    app.dependency_overrides.clear()


def _response() -> RAGResponse:
    return RAGResponse(
        query_id="q-1",
        answer="Fireball deals 8d6 [Page 1, Section 1].",
        sources=[],
        metadata=QueryMetadata(model="gemini-test-001", chunks_retrieved=1, conversation_id="conv-1"),
    )


def test_health(client):
    c, _ = client
    resp = c.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ready", "chunks": "42"}


def test_query_success(client):
    c, mock_pipe = client
    mock_pipe.query = AsyncMock(return_value=_response())
    conversation_id = str(uuid.uuid4())

    resp = c.post(
        "/campaigns/campaign-a/rag/query",
        json={"query": QUESTION, "top_k": 5, "conversation_id": conversation_id},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["query_id"] == "q-1"
    assert data["metadata"]["model"] == "gemini-test-001"

    user_id, campaign_id, question, options = mock_pipe.query.await_args.args
    assert (user_id, campaign_id, question) == ("user-owner", "campaign-a", QUESTION)
    assert options.top_k == 5
    assert options.conversation_id == conversation_id


@pytest.mark.parametrize(
    "body",
    [
        {"query": "too short"},
        {"query": "x" * 501},
        {"query": QUESTION, "top_k": 0},
        {"query": QUESTION, "top_k": 21},
        {"query": QUESTION, "resource_ids": ["not-a-uuid"]},
    ],
)
def test_query_validation(client, body):
    c, mock_pipe = client
    mock_pipe.query = AsyncMock(return_value=_response())

    resp = c.post("/campaigns/campaign-a/rag/query", json=body, headers=HEADERS)
    assert resp.status_code == 422
    mock_pipe.query.assert_not_awaited()


def test_missing_user_header(client):
    c, _ = client
    resp = c.post("/campaigns/campaign-a/rag/query", json={"query": QUESTION})
    assert resp.status_code == 422


def test_forbidden_campaign(client):
    c, mock_pipe = client
    mock_pipe.query = AsyncMock(side_effect=AuthorizationError("You do not have permission"))

    resp = c.post("/campaigns/campaign-a/rag/query", json={"query": QUESTION}, headers=HEADERS)
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN"


def test_backend_error_hides_details(client):
    c, mock_pipe = client
    mock_pipe.query = AsyncMock(side_effect=BackendError("chroma exploded at /var/lib"))

    resp = c.post("/campaigns/campaign-a/rag/query", json={"query": QUESTION}, headers=HEADERS)
    assert resp.status_code == 502
    assert resp.json()["code"] == "BACKEND_FAILURE"
    assert "chroma" not in resp.json()["error"]


def test_unexpected_error(client):
    c, mock_pipe = client
    mock_pipe.query = AsyncMock(side_effect=RuntimeError("unexpected"))

    resp = c.post("/campaigns/campaign-a/rag/query", json={"query": QUESTION}, headers=HEADERS)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


def test_query_stream(client):
    c, mock_pipe = client

    async def events(*args):
        yield ChunkEvent(content="Fireball ")
        yield ChunkEvent(content="deals 8d6")
        yield SourcesEvent(sources=[])
        yield DoneEvent(metadata=QueryMetadata(model="gemini-test-001"), query_id="q-1")

    mock_pipe.query_stream = events

    resp = c.post(
        "/campaigns/campaign-a/rag/query",
        json={"query": QUESTION, "stream": True},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    payloads = [
        json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")
    ]
    assert [p["type"] for p in payloads] == ["chunk", "chunk", "sources", "done"]
    assert payloads[-1]["query_id"] == "q-1"


def test_query_stream_forbidden_before_streaming(client):
    c, mock_pipe = client

    async def events(*args):
        raise AuthorizationError("You do not have permission")
        yield  # pragma: no cover

    mock_pipe.query_stream = events

    resp = c.post(
        "/campaigns/campaign-a/rag/query",
        json={"query": QUESTION, "stream": True},
        headers=HEADERS,
    )
    assert resp.status_code == 403


def test_search(client):
    c, mock_pipe = client
    mock_pipe.search = AsyncMock(return_value=make_scored(["Fireball deals 8d6"]))

    resp = c.post(
        "/campaigns/campaign-a/rag/search",
        json={"query": "fireball", "mode": "keyword", "page_numbers": [1]},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["mode"] == "keyword"
    assert data["results"][0]["rank"] == 1
    filters = mock_pipe.search.await_args.args[5]
    assert filters.page_numbers == [1]


def test_feedback(client):
    c, mock_pipe = client
    mock_pipe.submit_feedback = AsyncMock()

    resp = c.post("/rag/queries/q-1/feedback", json={"rating": 5}, headers=HEADERS)

    assert resp.status_code == 204
    mock_pipe.submit_feedback.assert_awaited_once_with("user-owner", "q-1", 5, None)


def test_feedback_invalid_rating(client):
    c, _ = client
    resp = c.post("/rag/queries/q-1/feedback", json={"rating": 6}, headers=HEADERS)
    assert resp.status_code == 422


def test_feedback_unknown_query(client):
    c, mock_pipe = client
    mock_pipe.submit_feedback = AsyncMock(side_effect=NotFoundError("Query"))

    resp = c.post("/rag/queries/missing/feedback", json={"rating": 3}, headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Query not found", "code": "NOT_FOUND"}
