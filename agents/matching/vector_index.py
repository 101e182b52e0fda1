"""
Vector Index
Nearest-neighbour lookups over stored topic and knowledge embeddings.
"""
import json
import math
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import KnowledgeMatch, TopicMatch

logger = structlog.get_logger().bind(agent="vector_index")


def to_pgvector(embedding: Sequence[float]) -> str:
    """Format an embedding as a pgvector literal."""
    return "[" + ",".join(map(str, embedding)) + "]"


def parse_vector(value: Any) -> Optional[list[float]]:
    """
    Parse a stored vector into a list of floats.

    pgvector columns come back either as sequences or as text like
    "[0.1,0.2,...]". Non-finite entries are dropped.

    Args:
        value: Raw column value.

    Returns:
        List of floats, or None if the value cannot be parsed.
    """
    if value is None:
        return None

    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        if not trimmed.startswith("["):
            trimmed = f"[{trimmed}]"
        try:
            value = json.loads(trimmed)
        except ValueError:
            return None

    try:
        items = list(value)
    except TypeError:
        return None

    numbers = []
    for item in items:
        try:
            number = float(item)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            numbers.append(number)

    return numbers or None


def _clamp_similarity(value: Any) -> float:
    similarity = float(value) if value is not None else 0.0
    return min(max(similarity, 0.0), 1.0)


class VectorIndex(ABC):
    """
    Narrow nearest-neighbour interface used by the matchers.

    Thresholds are cosine distances: an implementation returns hits with
    similarity = 1 - distance >= 1 - threshold.
    """

    @abstractmethod
    def match_topics(
        self,
        query_embedding: Sequence[float],
        similarity_threshold: float,
        max_results: int,
    ) -> list[TopicMatch]:
        """Find topics whose description embedding is close to the query."""

    @abstractmethod
    def match_knowledge(
        self,
        query_embedding: Sequence[float],
        exclude_owner_ids: Sequence[str],
        is_ask: bool,
        max_results: int,
    ) -> list[KnowledgeMatch]:
        """Find asks (is_ask=True) or offers owned by anyone but the excluded owners."""


class PgVectorIndex(VectorIndex):
    """
    Vector index backed by the pgvector SQL functions.

    Uses `match_topics` and `match_atomic_knowledge`. Each call opens its own
    session, so calls are safe to issue from worker threads.
    """

    def __init__(self, db_engine: Engine):
        """
        Initialize vector index.

        Args:
            db_engine: SQLAlchemy engine for database operations.
        """
        self.db_engine = db_engine

    def match_topics(
        self,
        query_embedding: Sequence[float],
        similarity_threshold: float,
        max_results: int,
    ) -> list[TopicMatch]:
        query = text("""
            SELECT id, similarity
            FROM match_topics(
                CAST(:query_embedding AS vector),
                :match_threshold,
                :match_count
            )
        """)

        with Session(self.db_engine) as session:
            rows = session.execute(
                query,
                {
                    "query_embedding": to_pgvector(query_embedding),
                    "match_threshold": similarity_threshold,
                    "match_count": max_results,
                },
            ).fetchall()

        matches = [
            TopicMatch(id=str(row.id), similarity=_clamp_similarity(row.similarity))
            for row in rows
        ]

        logger.debug(
            "topic_search_complete",
            matches_found=len(matches),
            threshold=similarity_threshold,
        )

        return matches

    def match_knowledge(
        self,
        query_embedding: Sequence[float],
        exclude_owner_ids: Sequence[str],
        is_ask: bool,
        max_results: int,
    ) -> list[KnowledgeMatch]:
        query = text("""
            SELECT id, knowledge_text, assigned_human, similarity
            FROM match_atomic_knowledge(
                CAST(:query_embedding AS vector),
                CAST(:exclude_ids AS uuid[]),
                :is_asks_filter,
                :match_count,
                NULL
            )
        """)

        exclude_ids = [str(owner_id) for owner_id in exclude_owner_ids]

        with Session(self.db_engine) as session:
            rows = session.execute(
                query,
                {
                    "query_embedding": to_pgvector(query_embedding),
                    "exclude_ids": exclude_ids or None,
                    "is_asks_filter": is_ask,
                    "match_count": max_results,
                },
            ).fetchall()

        matches = [
            KnowledgeMatch(
                id=str(row.id),
                text=row.knowledge_text or "",
                owner_ids=[str(owner) for owner in (row.assigned_human or [])],
                similarity=_clamp_similarity(row.similarity),
            )
            for row in rows
        ]

        logger.debug(
            "knowledge_search_complete",
            matches_found=len(matches),
            is_ask=is_ask,
        )

        return matches
