"""
Matching Agent Module
Ask/offer matching between users using vector similarity, topic expansion
and a decaying interest ledger.
"""
from .embeddings import EmbeddingProvider
from .interests import InterestLedger, PortfolioInterestProcessor
from .knowledge import KnowledgeRepository
from .matcher import KnowledgeMatcher
from .models import (
    InterestScore,
    KnowledgeItem,
    MatchEvidence,
    MatchResult,
    SearchResult,
    Topic,
    TopicEvidence,
)
from .query_expander import KeywordQueryExpander, MissingItemSuggester
from .search import MatchSearchService
from .topics import TopicExpander, TopicRegistry
from .vector_index import PgVectorIndex, VectorIndex

__all__ = [
    # Pipeline
    "MatchSearchService",
    "KnowledgeMatcher",
    "TopicExpander",
    "TopicRegistry",
    "InterestLedger",
    "PortfolioInterestProcessor",
    # Collaborators
    "EmbeddingProvider",
    "KnowledgeRepository",
    "KeywordQueryExpander",
    "MissingItemSuggester",
    "PgVectorIndex",
    "VectorIndex",
    # Models
    "InterestScore",
    "KnowledgeItem",
    "MatchEvidence",
    "MatchResult",
    "SearchResult",
    "Topic",
    "TopicEvidence",
]
