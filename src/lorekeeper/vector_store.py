from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import chromadb
import structlog

from .config import settings
from .models import Passage, ScoredChunk, SearchFilters

log = structlog.get_logger()

_TAG_PREFIX = "tag:"


def build_where(
    campaign_id: str,
    filters: SearchFilters | None = None,
    require_embedding: bool = False,
) -> dict[str, Any]:
    """Build the Chroma metadata filter for eligible passages of a campaign.

    All predicates are ANDed; tags match on overlap.
    """
    clauses: list[dict[str, Any]] = [
        {"campaign_id": campaign_id},
        {"ingestion_status": "completed"},
    ]
    if require_embedding:
        clauses.append({"has_embedding": True})

    if filters is not None:
        if filters.resource_ids:
            clauses.append({"resource_id": {"$in": list(filters.resource_ids)}})
        if filters.page_numbers:
            clauses.append({"page_number": {"$in": list(filters.page_numbers)}})
        if filters.tags:
            tag_clauses = [{f"{_TAG_PREFIX}{tag}": True} for tag in filters.tags]
            clauses.append(tag_clauses[0] if len(tag_clauses) == 1 else {"$or": tag_clauses})

    return {"$and": clauses}


def _to_metadata(passage: Passage, has_embedding: bool) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "campaign_id": passage.campaign_id,
        "resource_id": passage.resource_id,
        "file_name": passage.file_name,
        "page_number": passage.page_number or 0,
        "section_heading": passage.section_heading or "",
        "ingestion_status": passage.ingestion_status,
        "has_embedding": has_embedding,
    }
    for tag in passage.tags:
        meta[f"{_TAG_PREFIX}{tag}"] = True
    return meta


def _to_passage(chunk_id: str, text: str, meta: dict[str, Any]) -> Passage:
    return Passage(
        chunk_id=chunk_id,
        campaign_id=meta.get("campaign_id", ""),
        resource_id=meta.get("resource_id", ""),
        text=text,
        file_name=meta.get("file_name", ""),
        page_number=meta.get("page_number") or None,
        section_heading=meta.get("section_heading") or None,
        tags=sorted(k[len(_TAG_PREFIX):] for k in meta if k.startswith(_TAG_PREFIX)),
        ingestion_status=meta.get("ingestion_status", "completed"),
    )


class VectorStore:
    """Campaign-scoped passage store and dense retrieval on ChromaDB."""

    def __init__(
        self,
        persist_dir: str | None = None,
        client: Any | None = None,
        collection_name: str | None = None,
        dimension: int | None = None,
    ) -> None:
        if client is None:
            client = chromadb.PersistentClient(path=persist_dir or str(settings.chroma_dir))
        self._client = client
        self._collection_name = collection_name or settings.collection_name
        self._collection = self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._dimension = dimension

    def add_passages(
        self,
        passages: list[Passage],
        embeddings: Sequence[Sequence[float] | None],
        batch_size: int = 128,
    ) -> None:
        """Upsert passages; a ``None`` embedding stores the passage for keyword search only."""
        if len(passages) != len(embeddings):
            raise ValueError("passages and embeddings must have the same length")
        if not passages:
            return

        for emb in embeddings:
            if emb is not None:
                self._dimension = len(emb)
                break

        for i in range(0, len(passages), batch_size):
            batch = passages[i : i + batch_size]
            batch_embs = embeddings[i : i + batch_size]
            self._collection.upsert(
                ids=[p.chunk_id for p in batch],
                documents=[p.text for p in batch],
                metadatas=[_to_metadata(p, emb is not None) for p, emb in zip(batch, batch_embs)],
                embeddings=[
                    list(emb) if emb is not None else self._placeholder() for emb in batch_embs
                ],
            )

        log.info("passages_upserted", count=len(passages))

    def _placeholder(self) -> list[float]:
        # Never matched: vector search requires has_embedding=True
        if self._dimension is None:
            raise ValueError("embedding dimension unknown; pass dimension= to VectorStore")
        return [1.0] + [0.0] * (self._dimension - 1)

    def _query(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        where: dict[str, Any],
    ) -> dict[str, Any] | None:
        # Runs in a worker thread; an empty collection has no HNSW index to query
        if self._collection.count() == 0:
            return None
        return self._collection.query(
            query_embeddings=[list(query_embedding)],
            n_results=top_k,
            where=where,
            include=["documents", "metadatas", "distances"],
        )

    async def search(
        self,
        campaign_id: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        """Rank eligible passages of one campaign by cosine similarity."""
        start = time.perf_counter()
        where = build_where(campaign_id, filters, require_embedding=True)

        try:
            results = await asyncio.to_thread(self._query, query_embedding, top_k, where)
        except Exception as exc:
            log.error("vector_search_failed", campaign_id=campaign_id, error=str(exc))
            raise

        scored: list[ScoredChunk] = []
        if results and results["ids"] and results["ids"][0]:
            for cid, doc, meta, dist in zip(
                results["ids"][0],
                results["documents"][0],  # type: ignore[index]
                results["metadatas"][0],  # type: ignore[index]
                results["distances"][0],  # type: ignore[index]
            ):
                # Chroma cosine distance -> similarity
                scored.append(
                    ScoredChunk(
                        chunk=_to_passage(cid, doc, meta),
                        score=1.0 - float(dist),
                        origin="vector",
                    )
                )

        log.info(
            "vector_search_completed",
            campaign_id=campaign_id,
            result_count=len(scored),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return scored

    async def get_passages(
        self,
        campaign_id: str,
        filters: SearchFilters | None = None,
    ) -> list[Passage]:
        """All eligible passages of a campaign, in store order."""
        where = build_where(campaign_id, filters)
        results = await asyncio.to_thread(
            self._collection.get,
            where=where,
            include=["documents", "metadatas"],
        )
        return [
            _to_passage(cid, doc, meta)
            for cid, doc, meta in zip(
                results["ids"],
                results["documents"],  # type: ignore[arg-type]
                results["metadatas"],  # type: ignore[arg-type]
            )
        ]

    @property
    def count(self) -> int:
        return self._collection.count()
