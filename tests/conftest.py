"""Shared fixtures: in-process Chroma store, fake embedder and generation client."""

import uuid
from typing import AsyncIterator

import chromadb
import pytest

from src.lorekeeper.campaigns import InMemoryCampaignDirectory
from src.lorekeeper.generator import AnswerGenerator
from src.lorekeeper.hybrid_retriever import HybridRetriever
from src.lorekeeper.keyword_index import KeywordIndex
from src.lorekeeper.llm import ChatMessage, Completion, StreamDelta
from src.lorekeeper.models import Passage, ScoredChunk
from src.lorekeeper.pipeline import RAGPipeline
from src.lorekeeper.query_log import QueryLogStore
from src.lorekeeper.vector_store import VectorStore

OWNER = "user-owner"
STRANGER = "user-stranger"
CAMPAIGN = "campaign-a"
OTHER_CAMPAIGN = "campaign-b"


def vec(x: float) -> list[float]:
    """Small test embedding; cosine similarity falls as x moves apart."""
    return [x, 1.0 - x, 0.1]


def make_passage(
    chunk_id: str,
    text: str,
    campaign_id: str = CAMPAIGN,
    resource_id: str = "res-1",
    **kwargs,
) -> Passage:
    return Passage(
        chunk_id=chunk_id,
        campaign_id=campaign_id,
        resource_id=resource_id,
        text=text,
        file_name=kwargs.pop("file_name", "core_rules.pdf"),
        **kwargs,
    )


def make_scored(texts: list[str], origin: str = "hybrid") -> list[ScoredChunk]:
    return [
        ScoredChunk(
            chunk=make_passage(f"c{i}", t, page_number=i + 1, section_heading=f"Section {i + 1}"),
            score=float(len(texts) - i),
            origin=origin,
        )
        for i, t in enumerate(texts)
    ]


class FakeEmbedder:
    """Returns canned vectors per query text and counts calls."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default: float = 0.5) -> None:
        self.vectors = vectors or {}
        self.default = default
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vectors.get(text, vec(self.default))


class FakeGenerationClient:
    """Generation service double with call counting."""

    def __init__(
        self,
        answer: str = "Fireball deals 8d6 damage [Page 1, Section 1].",
        model: str = "gemini-test-001",
        deltas: list[str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.answer = answer
        self.model = model
        self.deltas = deltas if deltas is not None else [answer[:10], answer[10:]]
        self.error = error
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.error is not None:
            raise self.error
        return Completion(content=self.answer, model=self.model, prompt_tokens=120, completion_tokens=30)

    async def stream_complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamDelta | Completion]:
        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        for delta in self.deltas:
            yield StreamDelta(content=delta)
        if self.error is not None:
            raise self.error
        yield Completion(
            content="".join(self.deltas),
            model=self.model,
            prompt_tokens=120,
            completion_tokens=30,
        )


@pytest.fixture(scope="session")
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture
def store(chroma_client):
    """A fresh collection per test; the ephemeral client is shared in-process."""
    return VectorStore(client=chroma_client, collection_name=f"test-{uuid.uuid4().hex}", dimension=3)


@pytest.fixture
def campaigns():
    return InMemoryCampaignDirectory({CAMPAIGN: OWNER, OTHER_CAMPAIGN: OWNER})


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def retriever(store, embedder, campaigns):
    return HybridRetriever(store, KeywordIndex(store), embedder, campaigns, search_timeout_s=5.0)


@pytest.fixture
def llm():
    return FakeGenerationClient()


@pytest.fixture
def query_log():
    return QueryLogStore()


@pytest.fixture
def pipeline(campaigns, retriever, llm, query_log):
    return RAGPipeline(
        campaigns=campaigns,
        retriever=retriever,
        generator=AnswerGenerator(llm, model="gemini-configured"),
        query_log=query_log,
        generation_timeout_s=5.0,
    )
