"""
Topic Expansion and Registry
Broadens a searcher's topic set to similar topics, and merges new topics
into the shared topic table by name or description similarity.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import settings

from .embeddings import EmbeddingProvider
from .models import ExpandedTopics, TopicMatch
from .vector_index import VectorIndex, parse_vector, to_pgvector

logger = structlog.get_logger().bind(agent="topics")

# Lock key serializing topic creation so concurrent merges cannot duplicate
TOPIC_CREATE_LOCK_KEY = 0x746F70696373


def merge_topic_matches(
    topic_ids: Sequence[str],
    matches_by_source: dict[str, Sequence[TopicMatch]],
) -> ExpandedTopics:
    """
    Build the expanded topic map from per-source similarity hits.

    Every input topic maps to itself at 1.0. A topic reached from several
    sources keeps its highest similarity; the source that produced it is
    recorded for explanation only.

    Args:
        topic_ids: Searcher topic ids.
        matches_by_source: Searcher topic id -> similar topics found for it.

    Returns:
        ExpandedTopics with similarities, winning sources and per-source reach.
    """
    similarities: dict[str, float] = {}
    sources: dict[str, str] = {}
    reached: dict[str, dict[str, float]] = {}

    for topic_id in topic_ids:
        similarities[topic_id] = 1.0
        sources[topic_id] = topic_id
        reached[topic_id] = {topic_id: 1.0}

    for source_id, matches in matches_by_source.items():
        source_reach = reached.setdefault(source_id, {source_id: 1.0})
        for match in matches:
            if match.similarity > source_reach.get(match.id, 0.0):
                source_reach[match.id] = match.similarity

            if match.similarity > similarities.get(match.id, 0.0):
                similarities[match.id] = match.similarity
                sources[match.id] = source_id

    return ExpandedTopics(similarities=similarities, sources=sources, reached=reached)


class TopicExpander:
    """
    Expands a topic set through the topic similarity graph.

    For each searcher topic with a stored description embedding, queries the
    vector index for the top 3 topics at >= 0.8 similarity (distance 0.2).
    """

    def __init__(
        self,
        db_engine: Engine,
        vector_index: VectorIndex,
        distance_threshold: Optional[float] = None,
        expansion_count: Optional[int] = None,
        max_workers: Optional[int] = None,
    ):
        self.db_engine = db_engine
        self.vector_index = vector_index
        self.distance_threshold = (
            settings.topic_match_distance_threshold if distance_threshold is None else distance_threshold
        )
        self.expansion_count = expansion_count or settings.topic_expansion_count
        self.max_workers = max_workers or settings.match_max_workers

    def load_topic_embeddings(self, topic_ids: Sequence[str]) -> dict[str, list[float]]:
        """
        Load stored description embeddings for topics.

        Topics without a parseable vector are omitted.

        Raises:
            SQLAlchemyError: If the query fails.
        """
        query = text("""
            SELECT id, description_vector
            FROM topics
            WHERE id = ANY(CAST(:topic_ids AS uuid[]))
              AND description_vector IS NOT NULL
        """)

        with Session(self.db_engine) as session:
            rows = session.execute(query, {"topic_ids": list(topic_ids)}).fetchall()

        embeddings = {}
        for row in rows:
            embedding = parse_vector(row.description_vector)
            if embedding is None:
                logger.warning("topic_vector_unparseable", topic_id=str(row.id))
                continue
            embeddings[str(row.id)] = embedding
        return embeddings

    def _similar_topics_safe(self, topic_id: str, embedding: list[float]) -> list[TopicMatch]:
        try:
            return self.vector_index.match_topics(
                embedding,
                similarity_threshold=self.distance_threshold,
                max_results=self.expansion_count,
            )
        except Exception as e:
            logger.error(
                "topic_expansion_lookup_failed",
                topic_id=topic_id,
                error=str(e),
            )
            return []

    def expand(self, topic_ids: Sequence[str]) -> ExpandedTopics:
        """
        Expand searcher topics to semantically adjacent topics.

        Args:
            topic_ids: Topic ids from the searcher's asks and offers.

        Returns:
            ExpandedTopics; only the inputs (at 1.0) if embeddings cannot be loaded.
        """
        topic_ids = list(dict.fromkeys(t for t in topic_ids if t))
        if not topic_ids:
            return ExpandedTopics()

        try:
            embeddings = self.load_topic_embeddings(topic_ids)
        except SQLAlchemyError as e:
            logger.error("topic_embeddings_fetch_failed", count=len(topic_ids), error=str(e))
            return merge_topic_matches(topic_ids, {})

        matches_by_source: dict[str, list[TopicMatch]] = {}
        if embeddings:
            workers = max(1, min(self.max_workers, len(embeddings)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    topic_id: pool.submit(self._similar_topics_safe, topic_id, embedding)
                    for topic_id, embedding in embeddings.items()
                }
                matches_by_source = {topic_id: f.result() for topic_id, f in futures.items()}

        expanded = merge_topic_matches(topic_ids, matches_by_source)

        logger.info(
            "topic_expansion_complete",
            searcher_topics=len(topic_ids),
            expanded_topics=len(expanded.similarities),
        )

        return expanded

    def get_topic_names(self, topic_ids: Sequence[str]) -> dict[str, str]:
        """
        Look up topic names for evidence; failures yield an empty map.
        """
        ids = list(dict.fromkeys(topic_ids))
        if not ids:
            return {}

        query = text("""
            SELECT id, name
            FROM topics
            WHERE id = ANY(CAST(:topic_ids AS uuid[]))
        """)

        try:
            with Session(self.db_engine) as session:
                rows = session.execute(query, {"topic_ids": ids}).fetchall()
        except SQLAlchemyError as e:
            logger.error("topic_names_fetch_failed", count=len(ids), error=str(e))
            return {}

        return {str(row.id): row.name or "Unknown Topic" for row in rows}


class TopicRegistry:
    """
    Creates topics or merges them into existing ones.

    A candidate topic is merged into an existing topic when the normalized
    names match (exact, then containment) or when the description embedding
    is at least 0.8 similar. Merging increments the mention count.
    """

    def __init__(
        self,
        db_engine: Engine,
        embedding_provider: EmbeddingProvider,
        vector_index: VectorIndex,
    ):
        self.db_engine = db_engine
        self.embedding_provider = embedding_provider
        self.vector_index = vector_index

    def _find_by_name(self, name: str, session: Session) -> Optional[str]:
        query = text("""
            SELECT id
            FROM topics
            WHERE LOWER(TRIM(name)) = LOWER(TRIM(:name))
               OR LOWER(name) LIKE '%' || LOWER(TRIM(:name)) || '%'
               OR LOWER(TRIM(:name)) LIKE '%' || LOWER(name) || '%'
            ORDER BY
                CASE WHEN LOWER(TRIM(name)) = LOWER(TRIM(:name)) THEN 1 ELSE 2 END,
                LENGTH(name)
            LIMIT 1
        """)
        result = session.execute(query, {"name": name}).fetchone()
        return str(result.id) if result else None

    def _find_by_description(self, embedding: list[float]) -> Optional[TopicMatch]:
        matches = self.vector_index.match_topics(
            embedding,
            similarity_threshold=settings.topic_match_distance_threshold,
            max_results=settings.topic_merge_count,
        )
        threshold = 1 - settings.topic_match_distance_threshold
        candidates = [m for m in matches if m.similarity >= threshold]
        if not candidates:
            return None
        return max(candidates, key=lambda m: m.similarity)

    def create_or_update_topic(self, name: str, description: str) -> str:
        """
        Resolve a candidate topic to a topic id, creating it if new.

        Args:
            name: Topic name.
            description: Topic description, embedded for similarity merging.

        Returns:
            Id of the existing or newly created topic.

        Raises:
            ValueError: If the name is empty.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Topic name must not be empty")

        description = (description or "").strip() or name
        embedding = self.embedding_provider.embed(description)

        with Session(self.db_engine) as session:
            session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": TOPIC_CREATE_LOCK_KEY},
            )

            topic_id = self._find_by_name(name, session)
            merged_by = "name"
            if topic_id is None:
                similar = self._find_by_description(embedding)
                topic_id = similar.id if similar else None
                merged_by = "description"

            if topic_id is not None:
                session.execute(
                    text("""
                        UPDATE topics
                        SET mention_count = mention_count + 1
                        WHERE id = :topic_id
                    """),
                    {"topic_id": topic_id},
                )
                session.commit()
                logger.info("topic_merged", topic_id=topic_id, name=name, merged_by=merged_by)
                return topic_id

            result = session.execute(
                text("""
                    INSERT INTO topics (name, description, description_vector, mention_count)
                    VALUES (:name, :description, CAST(:embedding AS vector), 1)
                    RETURNING id
                """),
                {
                    "name": name,
                    "description": description,
                    "embedding": to_pgvector(embedding),
                },
            ).fetchone()
            session.commit()

        topic_id = str(result.id)
        logger.info("topic_created", topic_id=topic_id, name=name)
        return topic_id

    def decrement_mention_counts(self, topic_ids: Sequence[str]) -> None:
        """Decrement mention counts, never below zero."""
        ids = list(dict.fromkeys(topic_ids))
        if not ids:
            return

        with Session(self.db_engine) as session:
            session.execute(
                text("""
                    UPDATE topics
                    SET mention_count = GREATEST(0, mention_count - 1)
                    WHERE id = ANY(CAST(:topic_ids AS uuid[]))
                """),
                {"topic_ids": ids},
            )
            session.commit()
