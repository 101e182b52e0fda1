"""
Knowledge Repository
Read access to users' atomic asks/offers, identities and profile context.
"""
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import KnowledgeItem, ProfileContext
from .vector_index import parse_vector

logger = structlog.get_logger().bind(agent="knowledge_repository")


def _metadata_text(metadata: Optional[dict[str, Any]], *keys: str) -> str:
    """Return the first non-empty `basic.<key>` (or top-level key) value."""
    metadata = metadata or {}
    basic = metadata.get("basic") or {}
    for key in keys:
        value = basic.get(key) or metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class KnowledgeRepository:
    """
    Loads atomic knowledge and ownership data.

    A user's identity for matching is their human portfolio id; knowledge
    items are assigned to human portfolios through `assigned_human`.
    """

    def __init__(self, db_engine: Engine):
        """
        Initialize knowledge repository.

        Args:
            db_engine: SQLAlchemy engine for database operations.
        """
        self.db_engine = db_engine

    def get_human_portfolio_id(self, user_id: str) -> Optional[str]:
        """
        Get the user's human portfolio id.

        Args:
            user_id: User identifier.

        Returns:
            Portfolio id if the user has one, None otherwise.
        """
        query = text("""
            SELECT id
            FROM portfolios
            WHERE user_id = :user_id
              AND type = 'human'
            LIMIT 1
        """)

        try:
            with Session(self.db_engine) as session:
                result = session.execute(query, {"user_id": str(user_id)}).fetchone()
        except SQLAlchemyError as e:
            logger.error("human_portfolio_lookup_failed", user_id=str(user_id), error=str(e))
            return None

        if not result:
            logger.warning("human_portfolio_not_found", user_id=str(user_id))
            return None

        return str(result.id)

    def get_user_knowledge(self, user_id: str, is_ask: bool) -> list[KnowledgeItem]:
        """
        Get a user's asks or offers with their stored embeddings.

        Rows without a parseable embedding are skipped.

        Args:
            user_id: User identifier.
            is_ask: True for asks, False for offers.

        Returns:
            Knowledge items owned by the user.
        """
        portfolio_id = self.get_human_portfolio_id(user_id)
        if not portfolio_id:
            return []

        query = text("""
            SELECT id, knowledge_text, knowledge_vector, topics
            FROM atomic_knowledge
            WHERE is_asks = :is_ask
              AND assigned_human @> ARRAY[CAST(:portfolio_id AS uuid)]
              AND knowledge_vector IS NOT NULL
        """)

        try:
            with Session(self.db_engine) as session:
                rows = session.execute(
                    query,
                    {"is_ask": is_ask, "portfolio_id": portfolio_id},
                ).fetchall()
        except SQLAlchemyError as e:
            logger.error(
                "knowledge_fetch_failed",
                user_id=str(user_id),
                is_ask=is_ask,
                error=str(e),
            )
            return []

        items = []
        skipped = 0
        for row in rows:
            embedding = parse_vector(row.knowledge_vector)
            if not row.id or not row.knowledge_text or embedding is None:
                skipped += 1
                continue

            items.append(
                KnowledgeItem(
                    id=str(row.id),
                    text=row.knowledge_text,
                    embedding=embedding,
                    is_ask=is_ask,
                    topic_ids=[str(t) for t in (row.topics or []) if t],
                    owner_id=portfolio_id,
                )
            )

        if skipped:
            logger.warning(
                "knowledge_rows_skipped",
                user_id=str(user_id),
                is_ask=is_ask,
                skipped=skipped,
            )

        return items

    def get_user_asks(self, user_id: str) -> list[KnowledgeItem]:
        """Get a user's asks."""
        return self.get_user_knowledge(user_id, is_ask=True)

    def get_user_offers(self, user_id: str) -> list[KnowledgeItem]:
        """Get a user's offers (non-asks)."""
        return self.get_user_knowledge(user_id, is_ask=False)

    def resolve_portfolio_owners(self, portfolio_ids: Sequence[str]) -> dict[str, str]:
        """
        Map human portfolio ids to their owning user ids.

        Args:
            portfolio_ids: Human portfolio identifiers.

        Returns:
            Mapping of portfolio id to user id. Unknown ids are absent.
        """
        ids = list(dict.fromkeys(str(p) for p in portfolio_ids if p))
        if not ids:
            return {}

        query = text("""
            SELECT id, user_id
            FROM portfolios
            WHERE id = ANY(CAST(:portfolio_ids AS uuid[]))
              AND type = 'human'
        """)

        with Session(self.db_engine) as session:
            rows = session.execute(query, {"portfolio_ids": ids}).fetchall()

        return {str(row.id): str(row.user_id) for row in rows if row.user_id}

    def get_profile_context(self, user_id: str) -> ProfileContext:
        """
        Collect the profile description and related project summaries.

        Projects count as related when the user owns, manages or is a
        member of them.

        Args:
            user_id: User identifier.

        Returns:
            ProfileContext, empty if nothing could be loaded.
        """
        profile_query = text("""
            SELECT metadata
            FROM portfolios
            WHERE user_id = :user_id
              AND type = 'human'
            LIMIT 1
        """)
        projects_query = text("""
            SELECT id, user_id, metadata
            FROM portfolios
            WHERE type = 'projects'
              AND (
                user_id = :user_id
                OR metadata -> 'managers' ? :user_id
                OR metadata -> 'members' ? :user_id
              )
        """)

        try:
            with Session(self.db_engine) as session:
                profile = session.execute(profile_query, {"user_id": str(user_id)}).fetchone()
                projects = session.execute(projects_query, {"user_id": str(user_id)}).fetchall()
        except SQLAlchemyError as e:
            logger.error("profile_context_failed", user_id=str(user_id), error=str(e))
            return ProfileContext()

        description = ""
        if profile:
            description = _metadata_text(profile.metadata, "description", "summary", "bio")

        summaries = []
        for project in projects:
            name = _metadata_text(project.metadata, "name") or "Unnamed Project"
            project_description = _metadata_text(project.metadata, "description")
            summaries.append(f"Project: {name}\nDescription: {project_description}")

        return ProfileContext(description=description, project_summaries=summaries)
