from __future__ import annotations

from functools import lru_cache
from typing import AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import TypeAdapter

from .campaigns import InMemoryCampaignDirectory
from .citations import to_source_chunks
from .config import settings
from .embeddings import SentenceTransformerEmbedder
from .errors import BackendError, RAGError
from .generator import AnswerGenerator
from .hybrid_retriever import HybridRetriever
from .keyword_index import KeywordIndex
from .llm import GeminiClient
from .models import (
    FeedbackRequest,
    QueryOptions,
    RAGQueryRequest,
    RAGResponse,
    SearchFilters,
    SearchRequest,
    SearchResponse,
    StreamEvent,
)
from .pipeline import RAGPipeline
from .query_log import QueryLogStore
from .vector_store import VectorStore

log = structlog.get_logger()

_stream_event = TypeAdapter(StreamEvent)


@lru_cache
def get_store() -> VectorStore:
    return VectorStore()


@lru_cache
def get_pipeline() -> RAGPipeline:
    store = get_store()
    campaigns = InMemoryCampaignDirectory(settings.campaign_owners)
    retriever = HybridRetriever(store, KeywordIndex(store), SentenceTransformerEmbedder(), campaigns)
    return RAGPipeline(
        campaigns=campaigns,
        retriever=retriever,
        generator=AnswerGenerator(GeminiClient()),
        query_log=QueryLogStore(settings.query_log_path),
    )


def current_user(x_user_id: str = Header(..., min_length=1)) -> str:
    """Caller identity, already authenticated upstream."""
    return x_user_id


app = FastAPI(
    title="Lorekeeper",
    description="Grounded Q&A over campaign materials with hybrid retrieval and citations",
    version="0.1.0",
)


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    if isinstance(exc, BackendError):
        # Internal error text stays in the logs
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        message = "Unable to answer right now. Please try again later."
    else:
        message = exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": message, "code": exc.code})


@app.exception_handler(TimeoutError)
async def timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    log.error("request_timed_out", path=request.url.path)
    return JSONResponse(status_code=504, content={"error": "Request timed out", "code": "TIMEOUT"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled_error", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


@app.get("/health")
def health() -> dict[str, str]:
    store = get_store()
    return {"status": "ready", "chunks": str(store.count)}


@app.post("/campaigns/{campaign_id}/rag/search", response_model=SearchResponse)
async def search_chunks(
    campaign_id: str,
    req: SearchRequest,
    user_id: str = Depends(current_user),
    pipeline: RAGPipeline = Depends(get_pipeline),
) -> SearchResponse:
    """Retrieve relevant passages without generating an answer."""
    filters = SearchFilters(
        resource_ids=[str(r) for r in req.resource_ids] if req.resource_ids else None,
        page_numbers=req.page_numbers,
        tags=req.tags,
    )
    chunks = await pipeline.search(user_id, campaign_id, req.query, req.mode, req.top_k, filters)
    return SearchResponse(results=to_source_chunks(chunks), mode=req.mode, query=req.query)


async def _sse(first: StreamEvent, events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    yield f"data: {first.model_dump_json()}\n\n"
    try:
        async for event in events:
            yield f"data: {_stream_event.dump_json(event).decode()}\n\n"
    except RAGError as exc:
        yield f'data: {{"type": "error", "code": "{exc.code}"}}\n\n'
    except Exception:
        log.exception("streaming_query_failed")
        yield 'data: {"type": "error", "code": "INTERNAL_ERROR"}\n\n'


@app.post("/campaigns/{campaign_id}/rag/query", response_model=RAGResponse)
async def query_campaign(
    campaign_id: str,
    req: RAGQueryRequest,
    user_id: str = Depends(current_user),
    pipeline: RAGPipeline = Depends(get_pipeline),
) -> RAGResponse | StreamingResponse:
    """Ask a question about campaign materials; set ``stream`` for SSE."""
    options = QueryOptions(
        top_k=req.top_k,
        resource_ids=[str(r) for r in req.resource_ids] if req.resource_ids else None,
        conversation_id=str(req.conversation_id) if req.conversation_id else None,
    )
    log.info(
        "rag_query_request",
        user_id=user_id,
        campaign_id=campaign_id,
        query_length=len(req.query),
        streaming=req.stream,
    )

    if not req.stream:
        return await pipeline.query(user_id, campaign_id, req.query, options)

    events = pipeline.query_stream(user_id, campaign_id, req.query, options)
    # Pull the first event here so ownership and search errors get a normal status
    first = await anext(events)
    return StreamingResponse(
        _sse(first, events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/rag/queries/{query_id}/feedback", status_code=204)
async def submit_feedback(
    query_id: str,
    req: FeedbackRequest,
    user_id: str = Depends(current_user),
    pipeline: RAGPipeline = Depends(get_pipeline),
) -> Response:
    """Rate an answer you received."""
    await pipeline.submit_feedback(user_id, query_id, req.rating, req.comment)
    return Response(status_code=204)


def create_app() -> FastAPI:
    """Factory for testing."""
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.lorekeeper.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )
