from __future__ import annotations

import asyncio
import time
from typing import Protocol, Sequence

import structlog

from .campaigns import CampaignDirectory, verify_campaign_ownership
from .config import settings
from .keyword_index import KeywordIndex
from .models import Passage, ScoredChunk, SearchFilters, SearchMode
from .vector_store import VectorStore

log = structlog.get_logger()


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def reciprocal_rank_fusion(
    result_lists: list[list[ScoredChunk]],
    k: int | None = None,
    top_k: int | None = None,
) -> list[ScoredChunk]:
    """Merge ranked lists using Reciprocal Rank Fusion (RRF).

    RRF score for chunk d = sum over the lists containing d of 1 / (k + rank),
    with 1-based ranks. Lists are processed in the given order and equal
    fused scores keep first-seen order, so the output is reproducible.
    """
    rrf_k = settings.rrf_k if k is None else k
    chunk_scores: dict[str, float] = {}
    chunk_map: dict[str, Passage] = {}

    for results in result_lists:
        for rank, sc in enumerate(results, start=1):
            cid = sc.chunk.chunk_id
            chunk_scores[cid] = chunk_scores.get(cid, 0.0) + 1.0 / (rrf_k + rank)
            chunk_map.setdefault(cid, sc.chunk)

    # dicts preserve insertion order and sorted() is stable
    ranked = sorted(chunk_scores.items(), key=lambda x: x[1], reverse=True)
    if top_k is not None:
        ranked = ranked[:top_k]
    return [
        ScoredChunk(chunk=chunk_map[cid], score=score, origin="hybrid")
        for cid, score in ranked
    ]


def fusion_candidates(top_k: int) -> int:
    """Per-list cap requested from each backend before fusion."""
    return max(top_k, min(top_k * settings.fusion_candidate_multiplier, settings.max_fusion_candidates))


class HybridRetriever:
    """Single search entry point over vector, keyword and fused retrieval."""

    def __init__(
        self,
        vector: VectorStore,
        keyword: KeywordIndex,
        embedder: Embedder,
        campaigns: CampaignDirectory,
        search_timeout_s: float | None = None,
    ) -> None:
        self._vector = vector
        self._keyword = keyword
        self._embedder = embedder
        self._campaigns = campaigns
        self._timeout = settings.search_timeout_s if search_timeout_s is None else search_timeout_s

    async def vector_search(
        self,
        campaign_id: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        return await self._vector.search(campaign_id, query_embedding, top_k, filters)

    async def keyword_search(
        self,
        campaign_id: str,
        query: str,
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        return await self._keyword.search(campaign_id, query, top_k, filters)

    async def hybrid_search(
        self,
        campaign_id: str,
        query: str,
        top_k: int = 10,
        filters: SearchFilters | None = None,
        k: int | None = None,
    ) -> list[ScoredChunk]:
        """Run vector and keyword search concurrently and fuse them with RRF."""
        start = time.perf_counter()
        candidate_k = fusion_candidates(top_k)

        async def _embed_and_search() -> list[ScoredChunk]:
            embedding = await self._embedder.embed(query)
            return await self._vector.search(campaign_id, embedding, candidate_k, filters)

        vector_task = asyncio.ensure_future(_embed_and_search())
        keyword_task = asyncio.ensure_future(
            self._keyword.search(campaign_id, query, candidate_k, filters)
        )
        try:
            async with asyncio.timeout(self._timeout):
                vector_results, keyword_results = await asyncio.gather(vector_task, keyword_task)
        except BaseException as exc:
            vector_task.cancel()
            keyword_task.cancel()
            if isinstance(exc, TimeoutError):
                log.error(
                    "hybrid_search_timeout",
                    campaign_id=campaign_id,
                    query=query[: settings.log_query_chars],
                    timeout_s=self._timeout,
                )
            raise

        fused = reciprocal_rank_fusion([vector_results, keyword_results], k=k, top_k=top_k)

        log.info(
            "hybrid_search_completed",
            campaign_id=campaign_id,
            query=query[: settings.log_query_chars],
            vector_hits=len(vector_results),
            keyword_hits=len(keyword_results),
            fused_hits=len(fused),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return fused

    async def search(
        self,
        user_id: str,
        campaign_id: str,
        query: str,
        mode: SearchMode = "hybrid",
        top_k: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        """Ownership-checked search in the requested mode."""
        await verify_campaign_ownership(self._campaigns, user_id, campaign_id)

        k = min(top_k or settings.default_top_k, settings.max_top_k)
        log.info(
            "searching_chunks",
            user_id=user_id,
            campaign_id=campaign_id,
            query=query[: settings.log_query_chars],
            mode=mode,
            top_k=k,
        )

        if mode == "vector":
            embedding = await self._embedder.embed(query)
            results = await self.vector_search(campaign_id, embedding, k, filters)
        elif mode == "keyword":
            results = await self.keyword_search(campaign_id, query, k, filters)
        else:
            results = await self.hybrid_search(campaign_id, query, k, filters)

        log.info(
            "chunk_search_completed",
            campaign_id=campaign_id,
            mode=mode,
            result_count=len(results),
            top_score=round(results[0].score, 4) if results else None,
        )
        return results
