"""
Matching agent test fixtures.
Provides fake collaborators and sample statements for matching components.
"""

from typing import Sequence
from unittest.mock import MagicMock

import pytest

from agents.matching.models import KnowledgeItem, KnowledgeMatch, TopicMatch
from agents.matching.vector_index import VectorIndex


class FakeVectorIndex(VectorIndex):
    """
    In-memory vector index keyed by the first embedding component.

    `knowledge[(key, is_ask)]` and `topics[key]` hold the hits returned for
    a query whose embedding starts with `key`.
    """

    def __init__(self):
        self.knowledge: dict[tuple[float, bool], list[KnowledgeMatch]] = {}
        self.topics: dict[float, list[TopicMatch]] = {}
        self.failing_keys: set[float] = set()
        self.knowledge_calls: list[dict] = []
        self.topic_calls: list[dict] = []

    def match_topics(
        self,
        query_embedding: Sequence[float],
        similarity_threshold: float,
        max_results: int,
    ) -> list[TopicMatch]:
        key = query_embedding[0]
        self.topic_calls.append({
            "key": key,
            "similarity_threshold": similarity_threshold,
            "max_results": max_results,
        })
        if key in self.failing_keys:
            raise RuntimeError("index unavailable")
        hits = self.topics.get(key, [])
        return [h for h in hits if h.similarity >= 1 - similarity_threshold][:max_results]

    def match_knowledge(
        self,
        query_embedding: Sequence[float],
        exclude_owner_ids: Sequence[str],
        is_ask: bool,
        max_results: int,
    ) -> list[KnowledgeMatch]:
        key = query_embedding[0]
        self.knowledge_calls.append({
            "key": key,
            "exclude_owner_ids": list(exclude_owner_ids),
            "is_ask": is_ask,
            "max_results": max_results,
        })
        if key in self.failing_keys:
            raise RuntimeError("index unavailable")
        hits = self.knowledge.get((key, is_ask), [])
        return [h for h in hits if not set(h.owner_ids) & set(exclude_owner_ids)][:max_results]


@pytest.fixture
def fake_index():
    """Empty in-memory vector index."""
    return FakeVectorIndex()


@pytest.fixture
def identity_owners():
    """Knowledge repository whose portfolio ids are `p-<user>` for user `<user>`."""
    repository = MagicMock()
    repository.resolve_portfolio_owners.side_effect = lambda ids: {
        pid: pid[2:] for pid in ids if pid.startswith("p-")
    }
    return repository


@pytest.fixture
def mock_embedding_provider():
    """Embedding provider returning a fixed vector per known text."""
    provider = MagicMock()
    provider.vectors = {}
    provider.embed.side_effect = lambda text: provider.vectors.get(text, [0.0, 0.0])
    return provider


@pytest.fixture
def mock_openai_embedding():
    """Mock OpenAI embedding response."""
    mock_response = MagicMock()
    mock_response.data = [MagicMock(embedding=[0.1] * 1536, index=0)]
    return mock_response


def ask(text: str, key: float, item_id: str = "", topics: Sequence[str] = ()) -> KnowledgeItem:
    """Ask whose embedding is keyed by `key` in the fake index."""
    return KnowledgeItem(id=item_id, text=text, embedding=[key, 0.0], is_ask=True, topic_ids=list(topics))


def offer(text: str, key: float, item_id: str = "", topics: Sequence[str] = ()) -> KnowledgeItem:
    """Offer whose embedding is keyed by `key` in the fake index."""
    return KnowledgeItem(id=item_id, text=text, embedding=[key, 0.0], is_ask=False, topic_ids=list(topics))


def hit(item_id: str, text: str, owner: str, similarity: float) -> KnowledgeMatch:
    """Index hit owned by the human portfolio of user `owner`."""
    return KnowledgeMatch(id=item_id, text=text, owner_ids=[f"p-{owner}"], similarity=similarity)
