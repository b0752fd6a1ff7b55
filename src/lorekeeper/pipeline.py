from __future__ import annotations

import asyncio
import time
import uuid
from typing import AsyncIterator

import structlog

from .campaigns import CampaignDirectory, verify_campaign_ownership
from .citations import to_source_chunks
from .config import settings
from .errors import (
    AuthorizationError,
    BackendError,
    GenerationError,
    NotFoundError,
    ValidationError,
)
from .generator import AnswerGenerator
from .hybrid_retriever import HybridRetriever
from .models import (
    ChunkEvent,
    ConversationMessage,
    DoneEvent,
    QueryLogRecord,
    QueryMetadata,
    QueryOptions,
    RAGResponse,
    ScoredChunk,
    SearchFilters,
    SearchMode,
    SourcesEvent,
    StreamEvent,
)
from .query_log import QueryLogStore

log = structlog.get_logger()

NO_INFORMATION_ANSWER = (
    "I don't have any information about that in your uploaded materials. "
    "You may need to upload relevant resources first, or try rephrasing your question."
)

MAX_COMMENT_CHARS = 500


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class RAGPipeline:
    """Query orchestration: ownership -> hybrid retrieval -> generation -> query log."""

    def __init__(
        self,
        campaigns: CampaignDirectory,
        retriever: HybridRetriever,
        generator: AnswerGenerator,
        query_log: QueryLogStore,
        generation_timeout_s: float | None = None,
    ) -> None:
        self._campaigns = campaigns
        self._retriever = retriever
        self._generator = generator
        self._query_log = query_log
        self._generation_timeout = (
            settings.generation_timeout_s if generation_timeout_s is None else generation_timeout_s
        )

    async def search(
        self,
        user_id: str,
        campaign_id: str,
        query: str,
        mode: SearchMode = "hybrid",
        top_k: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        """Retrieval only, no generation."""
        return await self._retriever.search(user_id, campaign_id, query, mode, top_k, filters)

    async def _retrieve(
        self,
        user_id: str,
        campaign_id: str,
        question: str,
        options: QueryOptions,
    ) -> tuple[list[ScoredChunk], int]:
        await verify_campaign_ownership(self._campaigns, user_id, campaign_id)

        top_k = min(options.top_k or settings.default_top_k, settings.max_top_k)
        filters = SearchFilters(resource_ids=options.resource_ids)
        search_start = time.perf_counter()
        try:
            chunks = await self._retriever.hybrid_search(campaign_id, question, top_k, filters)
        except Exception:
            log.exception(
                "rag_search_failed",
                campaign_id=campaign_id,
                query=question[: settings.log_query_chars],
                duration_ms=_elapsed_ms(search_start),
            )
            raise

        search_ms = _elapsed_ms(search_start)
        log.debug("chunks_retrieved", count=len(chunks), search_latency_ms=search_ms)
        return chunks, search_ms

    async def _history(
        self,
        user_id: str,
        campaign_id: str,
        conversation_id: str | None,
    ) -> list[ConversationMessage]:
        if not conversation_id:
            return []
        return await self._query_log.conversation_history(
            conversation_id, user_id, campaign_id, limit=settings.history_messages
        )

    def _no_information(
        self,
        start: float,
        search_ms: int,
        conversation_id: str,
    ) -> QueryMetadata:
        return QueryMetadata(
            model="none",
            latency_ms=_elapsed_ms(start),
            search_latency_ms=search_ms,
            chunks_retrieved=0,
            conversation_id=conversation_id,
        )

    async def _record_failure(
        self,
        user_id: str,
        campaign_id: str,
        question: str,
        chunks: list[ScoredChunk],
        conversation_id: str,
        start: float,
        error: str,
        answer: str = "",
    ) -> None:
        """Best-effort log row for a query whose generation failed."""
        try:
            await self._query_log.insert(
                campaign_id=campaign_id,
                user_id=user_id,
                query_text=question,
                retrieved_chunk_ids=[c.chunk.chunk_id for c in chunks],
                retrieved_chunk_scores=[c.score for c in chunks],
                answer=answer,
                model=self._generator.model,
                prompt_tokens=0,
                completion_tokens=0,
                latency_ms=_elapsed_ms(start),
                conversation_id=conversation_id,
                status="failed",
                error=error,
            )
        except BackendError:
            log.warning("rag_failure_not_logged", campaign_id=campaign_id, user_id=user_id)

    async def query(
        self,
        user_id: str,
        campaign_id: str,
        question: str,
        options: QueryOptions | None = None,
    ) -> RAGResponse:
        """Answer a question from the campaign's materials, with cited sources."""
        options = options or QueryOptions()
        start = time.perf_counter()
        log.info(
            "rag_query_started",
            user_id=user_id,
            campaign_id=campaign_id,
            query=question[: settings.log_query_chars],
            top_k=options.top_k,
            resource_filters=len(options.resource_ids or []),
        )

        chunks, search_ms = await self._retrieve(user_id, campaign_id, question, options)
        conversation_id = options.conversation_id or str(uuid.uuid4())

        # Nothing to ground on: skip the generation call entirely
        if not chunks:
            log.info(
                "rag_query_no_chunks",
                user_id=user_id,
                campaign_id=campaign_id,
                query=question[: settings.log_query_chars],
            )
            return RAGResponse(
                query_id=str(uuid.uuid4()),
                answer=NO_INFORMATION_ANSWER,
                sources=[],
                metadata=self._no_information(start, search_ms, conversation_id),
            )

        history = await self._history(user_id, campaign_id, options.conversation_id)

        llm_start = time.perf_counter()
        try:
            async with asyncio.timeout(self._generation_timeout):
                generated = await self._generator.generate(question, chunks, history)
        except TimeoutError as exc:
            log.error(
                "rag_query_failed",
                stage="generation",
                reason="timeout",
                campaign_id=campaign_id,
                query=question[: settings.log_query_chars],
                duration_ms=_elapsed_ms(start),
            )
            await self._record_failure(
                user_id, campaign_id, question, chunks, conversation_id, start, "timeout"
            )
            raise GenerationError("Answer generation timed out") from exc
        except GenerationError as exc:
            log.error(
                "rag_query_failed",
                stage="generation",
                campaign_id=campaign_id,
                query=question[: settings.log_query_chars],
                duration_ms=_elapsed_ms(start),
            )
            await self._record_failure(
                user_id, campaign_id, question, chunks, conversation_id, start, exc.message
            )
            raise
        llm_ms = _elapsed_ms(llm_start)

        query_id = await self._query_log.insert(
            campaign_id=campaign_id,
            user_id=user_id,
            query_text=question,
            retrieved_chunk_ids=[c.chunk.chunk_id for c in chunks],
            retrieved_chunk_scores=[c.score for c in chunks],
            answer=generated.answer,
            model=generated.model,
            prompt_tokens=generated.prompt_tokens,
            completion_tokens=generated.completion_tokens,
            latency_ms=_elapsed_ms(start),
            conversation_id=conversation_id,
        )

        total_ms = _elapsed_ms(start)
        log.info(
            "rag_query_completed",
            query_id=query_id,
            campaign_id=campaign_id,
            user_id=user_id,
            total_latency_ms=total_ms,
            search_latency_ms=search_ms,
            llm_latency_ms=llm_ms,
            prompt_tokens=generated.prompt_tokens,
            completion_tokens=generated.completion_tokens,
            chunks_retrieved=len(chunks),
        )

        return RAGResponse(
            query_id=query_id,
            answer=generated.answer,
            sources=to_source_chunks(chunks),
            metadata=QueryMetadata(
                model=generated.model,
                prompt_tokens=generated.prompt_tokens,
                completion_tokens=generated.completion_tokens,
                latency_ms=total_ms,
                search_latency_ms=search_ms,
                llm_latency_ms=llm_ms,
                chunks_retrieved=len(chunks),
                conversation_id=conversation_id,
            ),
        )

    async def query_stream(
        self,
        user_id: str,
        campaign_id: str,
        question: str,
        options: QueryOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming variant of :meth:`query`.

        Yields ``chunk`` events as text arrives, then exactly one ``sources``
        and one ``done`` event. ``done`` carries the logged query id.
        """
        options = options or QueryOptions()
        start = time.perf_counter()
        log.info(
            "rag_stream_started",
            user_id=user_id,
            campaign_id=campaign_id,
            query=question[: settings.log_query_chars],
        )

        chunks, search_ms = await self._retrieve(user_id, campaign_id, question, options)
        conversation_id = options.conversation_id or str(uuid.uuid4())

        if not chunks:
            yield ChunkEvent(content=NO_INFORMATION_ANSWER)
            yield SourcesEvent(sources=[])
            yield DoneEvent(
                metadata=self._no_information(start, search_ms, conversation_id),
                query_id=str(uuid.uuid4()),
            )
            return

        history = await self._history(user_id, campaign_id, options.conversation_id)

        parts: list[str] = []
        done: DoneEvent | None = None
        try:
            async for event in self._generator.generate_stream(question, chunks, history):
                if isinstance(event, DoneEvent):
                    done = event
                    continue
                if isinstance(event, ChunkEvent):
                    parts.append(event.content)
                yield event
        except GenerationError as exc:
            log.error(
                "rag_query_failed",
                stage="streaming_generation",
                campaign_id=campaign_id,
                query=question[: settings.log_query_chars],
                partial_answer_length=sum(len(p) for p in parts),
                duration_ms=_elapsed_ms(start),
            )
            await self._record_failure(
                user_id,
                campaign_id,
                question,
                chunks,
                conversation_id,
                start,
                exc.message,
                answer="".join(parts),
            )
            raise

        answer = "".join(parts)
        metadata = done.metadata if done is not None else QueryMetadata(model=self._generator.model)
        metadata = metadata.model_copy(
            update={
                "search_latency_ms": search_ms,
                "latency_ms": _elapsed_ms(start),
                "chunks_retrieved": len(chunks),
                "conversation_id": conversation_id,
            }
        )

        if answer:
            query_id = await self._query_log.insert(
                campaign_id=campaign_id,
                user_id=user_id,
                query_text=question,
                retrieved_chunk_ids=[c.chunk.chunk_id for c in chunks],
                retrieved_chunk_scores=[c.score for c in chunks],
                answer=answer,
                model=metadata.model,
                prompt_tokens=metadata.prompt_tokens,
                completion_tokens=metadata.completion_tokens,
                latency_ms=metadata.latency_ms,
                conversation_id=conversation_id,
            )
        else:
            log.warning("rag_stream_empty_answer", campaign_id=campaign_id)
            query_id = str(uuid.uuid4())

        log.info(
            "rag_stream_completed",
            query_id=query_id,
            campaign_id=campaign_id,
            total_latency_ms=metadata.latency_ms,
            search_latency_ms=search_ms,
            llm_latency_ms=metadata.llm_latency_ms,
            chunks_retrieved=len(chunks),
        )
        yield DoneEvent(metadata=metadata, query_id=query_id)

    async def submit_feedback(
        self,
        user_id: str,
        query_id: str,
        rating: int,
        comment: str | None = None,
    ) -> QueryLogRecord:
        """Rate a logged answer; only the user who asked may do so."""
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")
        if comment is not None and len(comment) > MAX_COMMENT_CHARS:
            raise ValidationError(f"Comment must be at most {MAX_COMMENT_CHARS} characters")

        record = await self._query_log.get(query_id)
        if record is None:
            raise NotFoundError("Query")
        if record.user_id != user_id:
            log.warning("feedback_denied", query_id=query_id, user_id=user_id)
            raise AuthorizationError("You can only provide feedback on your own queries")

        updated = await self._query_log.update_feedback(query_id, rating, comment)
        log.info("rag_feedback_saved", query_id=query_id, rating=rating, has_comment=bool(comment))
        return updated
