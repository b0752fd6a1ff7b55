from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field

SearchMode = Literal["vector", "keyword", "hybrid"]
Origin = Literal["vector", "keyword", "hybrid"]
QueryStatus = Literal["answered", "failed"]


class Passage(BaseModel):
    """A searchable span of an uploaded campaign resource."""

    chunk_id: str
    campaign_id: str
    resource_id: str
    text: str
    file_name: str = ""
    page_number: int | None = None
    section_heading: str | None = None
    tags: list[str] = Field(default_factory=list)
    ingestion_status: str = "completed"

    def citation_label(self) -> str:
        page = f"Page {self.page_number}" if self.page_number else "Unknown Page"
        return f"{page}, {self.section_heading or 'Untitled'}"


class SearchFilters(BaseModel):
    """Conjunctive search constraints; empty or missing fields impose nothing."""

    resource_ids: list[str] | None = None
    page_numbers: list[int] | None = None
    tags: list[str] | None = None


class ScoredChunk(BaseModel):
    """A passage with a retrieval score.

    Scores compare only within one origin and one query; only ``hybrid``
    (fused) scores are comparable across strategies.
    """

    chunk: Passage
    score: float
    origin: Origin


class SourceChunk(BaseModel):
    """Citation form of a retrieved passage returned to callers."""

    chunk_id: str
    resource_id: str
    file_name: str
    page_number: int | None
    section_heading: str | None
    content_preview: str
    similarity_score: float
    rank: int


class QueryMetadata(BaseModel):
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0
    search_latency_ms: int = 0
    llm_latency_ms: int = 0
    chunks_retrieved: int = 0
    conversation_id: str | None = None


class RAGResponse(BaseModel):
    query_id: str
    answer: str
    sources: list[SourceChunk]
    metadata: QueryMetadata


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class GeneratedAnswer(BaseModel):
    answer: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    content: str


class SourcesEvent(BaseModel):
    type: Literal["sources"] = "sources"
    sources: list[SourceChunk]


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    metadata: QueryMetadata
    query_id: str = ""


StreamEvent = Annotated[
    Union[ChunkEvent, SourcesEvent, DoneEvent],
    Field(discriminator="type"),
]


class QueryOptions(BaseModel):
    top_k: int | None = None
    resource_ids: list[str] | None = None
    conversation_id: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueryLogRecord(BaseModel):
    """Durable record of one query, plus later feedback.

    Failed rows keep whatever answer text arrived before the failure.
    """

    id: str
    campaign_id: str
    user_id: str
    query_text: str
    retrieved_chunk_ids: list[str]
    retrieved_chunk_scores: list[float]
    answer: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    conversation_id: str | None = None
    status: QueryStatus = "answered"
    error: str | None = None
    feedback_rating: int | None = None
    feedback_comment: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    feedback_updated_at: datetime | None = None


# Request bodies for the HTTP surface


class RAGQueryRequest(BaseModel):
    query: str = Field(..., min_length=10, max_length=500)
    resource_ids: list[UUID] | None = None
    conversation_id: UUID | None = None
    top_k: int | None = Field(default=None, ge=1, le=20)
    stream: bool = False


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)
    mode: SearchMode = "hybrid"
    top_k: int | None = Field(default=None, ge=1, le=20)
    resource_ids: list[UUID] | None = None
    page_numbers: list[int] | None = None
    tags: list[str] | None = None


class SearchResponse(BaseModel):
    results: list[SourceChunk]
    mode: SearchMode
    query: str


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)
