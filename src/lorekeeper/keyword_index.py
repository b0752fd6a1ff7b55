from __future__ import annotations

import asyncio
import re
import time

import structlog
from rank_bm25 import BM25L

from .config import settings
from .models import Passage, ScoredChunk, SearchFilters
from .vector_store import VectorStore

log = structlog.get_logger()

_TOKENIZE_RE = re.compile(r"\w+")

_STOPWORDS = frozenset(
    """
    a an and are as at be but by can do does for from how i if in into is it its
    me my of on or so than that the their then there these they this to was we
    what when where which who why will with you your
    """.split()
)


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKENIZE_RE.findall(text.lower()) if t not in _STOPWORDS]


def _rank(passages: list[Passage], tokens: list[str], top_k: int) -> list[ScoredChunk]:
    corpus = [tokenize(p.text) for p in passages]
    bm25 = BM25L(corpus)
    scores = bm25.get_scores(tokens)

    # A passage matches only when it contains every query term
    terms = set(tokens)
    matched = [i for i, doc in enumerate(corpus) if terms.issubset(doc)]

    # sorted() is stable, so ties keep store order
    ranked = sorted(matched, key=lambda i: scores[i], reverse=True)
    return [
        ScoredChunk(chunk=passages[i], score=float(scores[i]), origin="keyword")
        for i in ranked[:top_k]
    ]


class KeywordIndex:
    """Lexical BM25 retrieval over a campaign's eligible passages."""

    def __init__(self, store: VectorStore) -> None:
        self._store = store

    async def search(
        self,
        campaign_id: str,
        query: str,
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        start = time.perf_counter()
        tokens = tokenize(query)
        if not tokens:
            log.debug("keyword_search_no_terms", campaign_id=campaign_id)
            return []

        try:
            passages = await self._store.get_passages(campaign_id, filters)
        except Exception as exc:
            log.error(
                "keyword_search_failed",
                campaign_id=campaign_id,
                query=query[: settings.log_query_chars],
                error=str(exc),
            )
            raise

        results: list[ScoredChunk] = []
        if passages:
            results = await asyncio.to_thread(_rank, passages, tokens, top_k)

        log.info(
            "keyword_search_completed",
            campaign_id=campaign_id,
            query=query[: settings.log_query_chars],
            candidates=len(passages),
            result_count=len(results),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return results
