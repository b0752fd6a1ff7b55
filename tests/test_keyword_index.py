from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CAMPAIGN, OTHER_CAMPAIGN, make_passage, vec
from src.lorekeeper.keyword_index import KeywordIndex, tokenize
from src.lorekeeper.models import SearchFilters


@pytest.fixture
def index(store):
    store.add_passages(
        [
            make_passage("c0", "Python is a programming language"),
            make_passage("c1", "Java is also a programming language", resource_id="res-2"),
            make_passage("c2", "Cooking recipes for pasta"),
            make_passage("c3", "Python snakes live in the jungle; python bites hurt", page_number=7),
        ],
        [vec(0.1), vec(0.2), vec(0.3), None],
    )
    return KeywordIndex(store)


def test_tokenize_drops_stopwords_and_case():
    assert tokenize("What is the Range of a Fireball?") == ["range", "fireball"]


@pytest.mark.asyncio
async def test_requires_every_term(index):
    results = await index.search(CAMPAIGN, "python programming", top_k=5)

    assert [r.chunk.chunk_id for r in results] == ["c0"]
    assert results[0].origin == "keyword"


@pytest.mark.asyncio
async def test_repeating_one_term_does_not_match(index):
    # c3 says "python" twice but never "programming"
    results = await index.search(CAMPAIGN, "python programming", top_k=5)
    assert "c3" not in {r.chunk.chunk_id for r in results}

    python_only = await index.search(CAMPAIGN, "python", top_k=5)
    assert {r.chunk.chunk_id for r in python_only} == {"c0", "c3"}


@pytest.mark.asyncio
async def test_ranked_by_score(index):
    results = await index.search(CAMPAIGN, "programming language", top_k=5)

    assert {r.chunk.chunk_id for r in results} == {"c0", "c1"}
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_includes_passages_without_embedding(index):
    results = await index.search(CAMPAIGN, "jungle snakes", top_k=5)
    assert [r.chunk.chunk_id for r in results] == ["c3"]


@pytest.mark.asyncio
async def test_no_match(index):
    assert await index.search(CAMPAIGN, "xylophone", top_k=5) == []


@pytest.mark.asyncio
async def test_only_stopwords(index):
    assert await index.search(CAMPAIGN, "what is the", top_k=5) == []


@pytest.mark.asyncio
async def test_respects_top_k(index):
    results = await index.search(CAMPAIGN, "programming language", top_k=1)
    assert len(results) == 1


@pytest.mark.asyncio
async def test_filters(index):
    by_resource = await index.search(
        CAMPAIGN, "programming", filters=SearchFilters(resource_ids=["res-2"])
    )
    assert [r.chunk.chunk_id for r in by_resource] == ["c1"]

    by_page = await index.search(CAMPAIGN, "python", filters=SearchFilters(page_numbers=[7]))
    assert [r.chunk.chunk_id for r in by_page] == ["c3"]


@pytest.mark.asyncio
async def test_campaign_isolation(index, store):
    store.add_passages(
        [make_passage("foreign", "Python programming handbook", campaign_id=OTHER_CAMPAIGN)],
        [vec(0.1)],
    )
    results = await index.search(CAMPAIGN, "python programming handbook", top_k=10)
    assert "foreign" not in {r.chunk.chunk_id for r in results}


@pytest.mark.asyncio
async def test_backend_error_propagates():
    store = MagicMock()
    store.get_passages = AsyncMock(side_effect=ConnectionError("store offline"))

    with pytest.raises(ConnectionError):
        await KeywordIndex(store).search(CAMPAIGN, "python")
