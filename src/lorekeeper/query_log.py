from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

import structlog

from .errors import BackendError
from .models import ConversationMessage, QueryLogRecord, QueryStatus

log = structlog.get_logger()


class QueryLogStore:
    """Durable log of answered and failed queries, with feedback updates.

    Rows are kept in memory and, when a path is given, mirrored to a JSON file
    after every write.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._records: dict[str, QueryLogRecord] = {}
        self._lock = asyncio.Lock()
        if path is not None and path.exists():
            self._load(path)

    def _load(self, path: Path) -> None:
        data = json.loads(path.read_text(encoding="utf-8"))
        for row in data.get("queries", []):
            record = QueryLogRecord(**row)
            self._records[record.id] = record
        log.info("query_log_loaded", path=str(path), rows=len(self._records))

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {"queries": [r.model_dump(mode="json") for r in self._records.values()]}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self._path)

    async def _persist(self) -> None:
        try:
            await asyncio.to_thread(self._save)
        except OSError as exc:
            log.error("query_log_write_failed", path=str(self._path), error=str(exc))
            raise BackendError("Failed to persist query log") from exc

    async def insert(
        self,
        *,
        campaign_id: str,
        user_id: str,
        query_text: str,
        retrieved_chunk_ids: list[str],
        retrieved_chunk_scores: list[float],
        answer: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        conversation_id: str | None = None,
        status: QueryStatus = "answered",
        error: str | None = None,
    ) -> str:
        record = QueryLogRecord(
            id=str(uuid.uuid4()),
            campaign_id=campaign_id,
            user_id=user_id,
            query_text=query_text,
            retrieved_chunk_ids=retrieved_chunk_ids,
            retrieved_chunk_scores=retrieved_chunk_scores,
            answer=answer,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            conversation_id=conversation_id,
            status=status,
            error=error,
        )
        async with self._lock:
            self._records[record.id] = record
            try:
                await self._persist()
            except BackendError:
                del self._records[record.id]
                raise

        log.info("rag_query_logged", query_id=record.id, campaign_id=campaign_id)
        return record.id

    async def get(self, query_id: str) -> QueryLogRecord | None:
        return self._records.get(query_id)

    async def update_feedback(
        self,
        query_id: str,
        rating: int,
        comment: str | None,
    ) -> QueryLogRecord:
        async with self._lock:
            previous = self._records[query_id]
            record = previous.model_copy(
                update={
                    "feedback_rating": rating,
                    "feedback_comment": comment,
                    "feedback_updated_at": datetime.now(timezone.utc),
                }
            )
            self._records[query_id] = record
            try:
                await self._persist()
            except BackendError:
                self._records[query_id] = previous
                raise
        return record

    async def conversation_history(
        self,
        conversation_id: str,
        user_id: str,
        campaign_id: str,
        limit: int = 4,
    ) -> list[ConversationMessage]:
        """Most recent ``limit`` messages of a conversation, oldest first."""
        turns = sorted(
            (
                r
                for r in self._records.values()
                if r.conversation_id == conversation_id
                and r.user_id == user_id
                and r.campaign_id == campaign_id
                and r.status == "answered"
            ),
            key=lambda r: r.created_at,
        )
        messages: list[ConversationMessage] = []
        for r in turns:
            messages.append(ConversationMessage(role="user", content=r.query_text))
            messages.append(ConversationMessage(role="assistant", content=r.answer))
        return messages[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        return len(self._records)
