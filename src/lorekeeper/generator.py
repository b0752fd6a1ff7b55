from __future__ import annotations

import time
from typing import AsyncIterator

import structlog

from .citations import citation_coverage, to_source_chunks, validate_citations
from .config import settings
from .errors import GenerationError
from .llm import ChatMessage, Completion, GenerationClient
from .models import (
    ChunkEvent,
    ConversationMessage,
    DoneEvent,
    GeneratedAnswer,
    QueryMetadata,
    ScoredChunk,
    SourcesEvent,
    StreamEvent,
)

log = structlog.get_logger()

NO_ANSWER_SENTENCE = "I don't have that information in the provided materials"

SYSTEM_PROMPT = f"""\
You are a tabletop RPG rules and lore assistant for a Game Master.

Answer questions using ONLY the excerpts supplied with each question. The \
excerpts come from the Game Master's own campaign materials.

GROUNDING RULES:
1. Base your answer ONLY on the provided excerpts.
2. If the excerpts do not contain the answer, say "{NO_ANSWER_SENTENCE}" and \
suggest what the Game Master might decide or where else they could look.
3. Cite every factual claim inline using the exact form [Page X, Section Name], \
copying the page and section shown on the excerpt (for example \
[Unknown Page, Untitled] when that is what the excerpt shows).
4. If excerpts contradict each other, present both with their citations and \
point out the discrepancy. Do not pick one silently.

DO NOT:
- Invent information that is not in the excerpts.
- Use general knowledge about RPGs, game systems or settings.
- Make assumptions beyond what the excerpts explicitly state.

FORMATTING:
- Use clear, concise language.
- Use bullet points or numbered lists when they help.
- Highlight key rules and important details.
"""


def build_context_block(chunks: list[ScoredChunk]) -> str:
    lines: list[str] = []
    for i, sc in enumerate(chunks, start=1):
        page = f"Page {sc.chunk.page_number}" if sc.chunk.page_number else "Unknown Page"
        section = sc.chunk.section_heading or "Untitled"
        lines.append(
            f"[Excerpt {i}]\nPage: {page}\nSection: {section}\nContent: {sc.chunk.text}\n---"
        )
    return "\n".join(lines)


def build_messages(
    query: str,
    chunks: list[ScoredChunk],
    conversation_history: list[ConversationMessage] | None = None,
    history_limit: int | None = None,
) -> list[ChatMessage]:
    """System prompt, then the most recent history, then the grounded question."""
    limit = settings.history_messages if history_limit is None else history_limit
    messages = [ChatMessage(role="system", content=SYSTEM_PROMPT)]

    if conversation_history and limit > 0:
        messages.extend(
            ChatMessage(role=m.role, content=m.content) for m in conversation_history[-limit:]
        )

    user_prompt = (
        f"QUESTION: {query}\n\n"
        f"RELEVANT EXCERPTS:\n{build_context_block(chunks)}\n\n"
        "Please answer the question based strictly on the excerpts above."
    )
    messages.append(ChatMessage(role="user", content=user_prompt))
    return messages


class AnswerGenerator:
    """Grounded, cited answers from the generation service (batch or streamed)."""

    def __init__(
        self,
        client: GenerationClient,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.llm_model
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.llm_max_output_tokens

    async def generate(
        self,
        query: str,
        chunks: list[ScoredChunk],
        conversation_history: list[ConversationMessage] | None = None,
    ) -> GeneratedAnswer:
        start = time.perf_counter()
        messages = build_messages(query, chunks, conversation_history)
        log.debug(
            "generating_answer",
            query=query[: settings.log_query_chars],
            chunk_count=len(chunks),
            history=len(messages) - 2,
        )

        try:
            completion = await self._client.complete(
                messages,
                self.model,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as exc:
            log.error(
                "answer_generation_failed",
                query=query[: settings.log_query_chars],
                duration_ms=int((time.perf_counter() - start) * 1000),
                error=str(exc),
            )
            raise GenerationError(f"Failed to generate answer: {exc}") from exc

        self._check_citations(query, completion.content, chunks)
        log.info(
            "answer_generated",
            query=query[: settings.log_query_chars],
            answer_length=len(completion.content),
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            duration_ms=int((time.perf_counter() - start) * 1000),
            model=completion.model,
        )
        return GeneratedAnswer(
            answer=completion.content,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            model=completion.model or self.model,
        )

    async def generate_stream(
        self,
        query: str,
        chunks: list[ScoredChunk],
        conversation_history: list[ConversationMessage] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield ``chunk`` events, then one ``sources`` and one ``done`` event.

        The ``done`` event carries an empty ``query_id``; the caller assigns it
        once the query is logged.
        """
        start = time.perf_counter()
        messages = build_messages(query, chunks, conversation_history)
        parts: list[str] = []
        final: Completion | None = None

        try:
            async for item in self._client.stream_complete(
                messages,
                self.model,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            ):
                if isinstance(item, Completion):
                    final = item
                    continue
                parts.append(item.content)
                yield ChunkEvent(content=item.content)
        except Exception as exc:
            log.error(
                "streaming_generation_failed",
                query=query[: settings.log_query_chars],
                duration_ms=int((time.perf_counter() - start) * 1000),
                error=str(exc),
            )
            raise GenerationError(f"Failed to generate streaming answer: {exc}") from exc

        if final is None:
            final = Completion(content="".join(parts), model=self.model)

        duration_ms = int((time.perf_counter() - start) * 1000)
        self._check_citations(query, final.content, chunks)
        log.info(
            "streaming_answer_completed",
            query=query[: settings.log_query_chars],
            answer_length=len(final.content),
            prompt_tokens=final.prompt_tokens,
            completion_tokens=final.completion_tokens,
            duration_ms=duration_ms,
            model=final.model,
        )

        yield SourcesEvent(sources=to_source_chunks(chunks))
        yield DoneEvent(
            metadata=QueryMetadata(
                model=final.model or self.model,
                prompt_tokens=final.prompt_tokens,
                completion_tokens=final.completion_tokens,
                latency_ms=duration_ms,
                llm_latency_ms=duration_ms,
                chunks_retrieved=len(chunks),
            ),
        )

    @staticmethod
    def _check_citations(query: str, answer: str, chunks: list[ScoredChunk]) -> None:
        known, unknown = validate_citations(answer, chunks)
        if unknown:
            log.warning("unknown_citations_in_answer", query=query[: settings.log_query_chars], citations=unknown)
        if not known and NO_ANSWER_SENTENCE not in answer:
            log.warning("no_citations_in_answer", query=query[: settings.log_query_chars])
        else:
            log.debug("citation_coverage", coverage=round(citation_coverage(answer, chunks), 3))
