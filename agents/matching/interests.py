"""
Interest Ledger
Per-(user, topic) long-term and decaying interest scores.
"""
from typing import Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import settings

from .models import InterestScore, Topic
from .topics import TopicRegistry

logger = structlog.get_logger().bind(agent="interest_ledger")


class InterestLedger:
    """
    Tracks what each user has been interested in.

    Each update first decays every positive memory score of the user by a
    fixed amount, then adds the contribution weight to both the lifetime
    aggregate score and the memory score of each contributed topic. The
    whole update runs in one transaction holding a per-user advisory lock.
    """

    def __init__(
        self,
        db_engine: Engine,
        decay_amount: Optional[float] = None,
        memory_floor: Optional[float] = ...,
    ):
        """
        Initialize interest ledger.

        Args:
            db_engine: SQLAlchemy engine for database operations.
            decay_amount: Amount subtracted from positive memory scores.
            memory_floor: Lowest value decay may leave; None disables clamping.
        """
        self.db_engine = db_engine
        self.decay_amount = settings.interest_decay_amount if decay_amount is None else decay_amount
        self.memory_floor = settings.interest_memory_floor if memory_floor is ... else memory_floor

    def _lock_user(self, user_id: str, session: Session) -> None:
        session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": f"user_interests:{user_id}"},
        )

    def _decay_bulk(self, user_id: str, session: Session) -> None:
        # Only positive rows pushed below the floor by this decay get clamped
        overshooting = []
        if self.memory_floor is not None:
            overshooting = session.execute(
                text("""
                    SELECT id
                    FROM user_interests
                    WHERE user_id = :user_id
                      AND memory_score > 0
                      AND memory_score - :decay_amount < :memory_floor
                """),
                {
                    "user_id": user_id,
                    "decay_amount": self.decay_amount,
                    "memory_floor": self.memory_floor,
                },
            ).fetchall()

        session.execute(
            text("SELECT decay_user_memory_scores(:user_id, :decay_amount)"),
            {"user_id": user_id, "decay_amount": self.decay_amount},
        )

        if overshooting:
            session.execute(
                text("UPDATE user_interests SET memory_score = :memory_floor WHERE id = :id"),
                [{"memory_floor": self.memory_floor, "id": row.id} for row in overshooting],
            )

    def _decay_manual(self, user_id: str, session: Session) -> int:
        rows = session.execute(
            text("""
                SELECT id, memory_score
                FROM user_interests
                WHERE user_id = :user_id
            """),
            {"user_id": user_id},
        ).fetchall()

        decayed = 0
        for row in rows:
            current = float(row.memory_score or 0)
            if current <= 0:
                continue
            new_score = current - self.decay_amount
            if self.memory_floor is not None:
                new_score = max(new_score, self.memory_floor)
            session.execute(
                text("UPDATE user_interests SET memory_score = :memory_score WHERE id = :id"),
                {"memory_score": new_score, "id": row.id},
            )
            decayed += 1
        return decayed

    def decay_memory_scores(self, user_id: str, session: Session) -> bool:
        """
        Decay all positive memory scores of a user.

        Tries the bulk SQL function first, then a row-by-row fallback. Each
        attempt runs in a savepoint so a failure leaves the outer transaction
        usable.

        Args:
            user_id: User identifier.
            session: Session holding the user's lock.

        Returns:
            True if either attempt succeeded.
        """
        try:
            with session.begin_nested():
                self._decay_bulk(user_id, session)
            return True
        except SQLAlchemyError as e:
            logger.warning("bulk_decay_failed", user_id=user_id, error=str(e))

        try:
            with session.begin_nested():
                decayed = self._decay_manual(user_id, session)
            logger.info("manual_decay_complete", user_id=user_id, rows_decayed=decayed)
            return True
        except SQLAlchemyError as e:
            logger.error("manual_decay_failed", user_id=user_id, error=str(e))
            return False

    def _contribute(self, user_id: str, topic_id: str, weight: float, session: Session) -> None:
        session.execute(
            text("""
                INSERT INTO user_interests (user_id, topic_id, aggregate_score, memory_score)
                VALUES (:user_id, :topic_id, :weight, :weight)
                ON CONFLICT (user_id, topic_id) DO UPDATE SET
                    aggregate_score = user_interests.aggregate_score + EXCLUDED.aggregate_score,
                    memory_score = user_interests.memory_score + EXCLUDED.memory_score,
                    updated_at = NOW()
            """),
            {"user_id": user_id, "topic_id": topic_id, "weight": weight},
        )

    def update_user_interests(
        self,
        user_id: str,
        topic_ids: Sequence[str],
        weight: float,
    ) -> bool:
        """
        Decay the user's memory scores, then add a contribution per topic.

        Decay always runs, even with no topics. If decay cannot be applied,
        the whole update is abandoned for this cycle.

        Args:
            user_id: User identifier.
            topic_ids: Topics to credit.
            weight: Amount added to both scores of each topic.

        Returns:
            True if the update was committed.

        Raises:
            ValueError: If weight is negative.
        """
        if weight < 0:
            raise ValueError("Interest weight must not be negative")

        user_id = str(user_id)
        topic_ids = list(dict.fromkeys(str(t) for t in topic_ids if t))

        try:
            with Session(self.db_engine) as session:
                self._lock_user(user_id, session)

                if not self.decay_memory_scores(user_id, session):
                    session.rollback()
                    logger.error("interest_update_abandoned", user_id=user_id)
                    return False

                for topic_id in topic_ids:
                    self._contribute(user_id, topic_id, weight, session)

                session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "interest_update_failed",
                user_id=user_id,
                topic_count=len(topic_ids),
                error=str(e),
            )
            return False

        logger.info(
            "interests_updated",
            user_id=user_id,
            topic_count=len(topic_ids),
            weight=weight,
        )
        return True

    def get_top_interested_topics(
        self,
        user_id: str,
        limit: Optional[int] = None,
    ) -> list[InterestScore]:
        """
        Get a user's topics ordered by memory score, highest first.

        Args:
            user_id: User identifier.
            limit: Maximum number of topics (default 5).

        Returns:
            Topics with memory and aggregate scores; empty on failure.

        Raises:
            ValueError: If limit is negative.
        """
        limit = settings.top_interests_limit if limit is None else limit
        if limit < 0:
            raise ValueError("limit must not be negative")
        if limit == 0:
            return []

        query = text("""
            SELECT
                t.id AS topic_id,
                t.name,
                t.description,
                t.mention_count,
                ui.memory_score,
                ui.aggregate_score
            FROM user_interests ui
            JOIN topics t ON t.id = ui.topic_id
            WHERE ui.user_id = :user_id
            ORDER BY ui.memory_score DESC
            LIMIT :limit
        """)

        try:
            with Session(self.db_engine) as session:
                rows = session.execute(query, {"user_id": str(user_id), "limit": limit}).fetchall()
        except SQLAlchemyError as e:
            logger.error("top_interests_fetch_failed", user_id=str(user_id), error=str(e))
            return []

        return [
            InterestScore(
                topic=Topic(
                    id=str(row.topic_id),
                    name=row.name,
                    description=row.description,
                    mention_count=row.mention_count or 0,
                ),
                memory_score=float(row.memory_score or 0),
                aggregate_score=float(row.aggregate_score or 0),
            )
            for row in rows
        ]

    def get_interest_topics(
        self,
        user_ids: Sequence[str],
        topic_ids: Sequence[str],
    ) -> dict[str, set[str]]:
        """
        Find which of the given topics each candidate holds an interest row on.

        Raises:
            SQLAlchemyError: If the query fails.
        """
        users = list(dict.fromkeys(user_ids))
        topics = list(dict.fromkeys(topic_ids))
        if not users or not topics:
            return {}

        query = text("""
            SELECT user_id, topic_id
            FROM user_interests
            WHERE user_id = ANY(CAST(:user_ids AS uuid[]))
              AND topic_id = ANY(CAST(:topic_ids AS uuid[]))
        """)

        with Session(self.db_engine) as session:
            rows = session.execute(query, {"user_ids": users, "topic_ids": topics}).fetchall()

        interests: dict[str, set[str]] = {}
        for row in rows:
            interests.setdefault(str(row.user_id), set()).add(str(row.topic_id))
        return interests

    def record_note_interests(self, user_id: str, topic_ids: Sequence[str]) -> bool:
        """Credit the topics of a newly indexed note."""
        return self.update_user_interests(user_id, topic_ids, settings.note_weight)


class PortfolioInterestProcessor:
    """
    Turns a portfolio description change into topic and interest updates.

    Resolves the description's topics through the registry, releases topics
    the description no longer mentions, records the new topic ids on the
    portfolio, and credits the owner's interests with the personal (3) or
    project (0.1) weight.
    """

    def __init__(
        self,
        db_engine: Engine,
        topic_registry: TopicRegistry,
        ledger: InterestLedger,
    ):
        self.db_engine = db_engine
        self.topic_registry = topic_registry
        self.ledger = ledger

    @staticmethod
    def weight_for(is_personal_portfolio: bool) -> float:
        """Contribution weight for a description change."""
        if is_personal_portfolio:
            return settings.personal_description_weight
        return settings.project_description_weight

    def _load_metadata(self, portfolio_id: str) -> dict:
        with Session(self.db_engine) as session:
            portfolio = session.execute(
                text("SELECT metadata FROM portfolios WHERE id = :portfolio_id"),
                {"portfolio_id": portfolio_id},
            ).fetchone()
        if portfolio is None:
            raise LookupError(f"Portfolio not found: {portfolio_id}")
        return portfolio.metadata or {}

    def _store_description_topics(self, portfolio_id: str, topic_ids: list[str], session: Session) -> None:
        session.execute(
            text("""
                UPDATE portfolios
                SET metadata = jsonb_set(
                    COALESCE(metadata, '{}'::jsonb),
                    '{description_topics}',
                    to_jsonb(CAST(:topic_ids AS text[]))
                )
                WHERE id = :portfolio_id
            """),
            {"portfolio_id": portfolio_id, "topic_ids": topic_ids},
        )

    def _mark_applied(self, portfolio_id: str, change_id: str) -> None:
        with Session(self.db_engine) as session:
            session.execute(
                text("""
                    UPDATE portfolios
                    SET metadata = jsonb_set(
                        COALESCE(metadata, '{}'::jsonb),
                        '{interests_change_id}',
                        to_jsonb(CAST(:change_id AS text))
                    )
                    WHERE id = :portfolio_id
                """),
                {"portfolio_id": portfolio_id, "change_id": change_id},
            )
            session.commit()

    def process_description_topics(
        self,
        portfolio_id: str,
        topics: Sequence[tuple[str, str]],
        metadata: Optional[dict] = None,
    ) -> list[str]:
        """
        Resolve a description's topics and update the portfolio.

        Args:
            portfolio_id: Portfolio whose description changed.
            topics: (name, description) pairs extracted from the new text.
                An empty list clears the portfolio's description topics.
            metadata: Portfolio metadata if already loaded.

        Returns:
            Topic ids now attached to the description.

        Raises:
            LookupError: If the portfolio does not exist.
        """
        if metadata is None:
            metadata = self._load_metadata(portfolio_id)
        old_topic_ids = [str(t) for t in metadata.get("description_topics") or []]

        new_topic_ids: list[str] = []
        for name, description in topics:
            try:
                topic_id = self.topic_registry.create_or_update_topic(name, description)
            except Exception as e:
                logger.error(
                    "topic_processing_failed",
                    portfolio_id=portfolio_id,
                    topic=name,
                    error=str(e),
                )
                continue
            if topic_id not in new_topic_ids:
                new_topic_ids.append(topic_id)

        removed = [t for t in old_topic_ids if t not in new_topic_ids]
        if removed:
            self.topic_registry.decrement_mention_counts(removed)

        with Session(self.db_engine) as session:
            self._store_description_topics(portfolio_id, new_topic_ids, session)
            session.commit()

        return new_topic_ids

    def process(
        self,
        portfolio_id: str,
        user_id: str,
        is_personal_portfolio: bool,
        topics: Sequence[tuple[str, str]],
        change_id: Optional[str] = None,
    ) -> list[str]:
        """
        Process a description change end to end.

        When `change_id` is given it is recorded on the portfolio once the
        interests are credited, and a later call with the same id is a no-op.

        Returns:
            Topic ids credited to the user.
        """
        metadata = self._load_metadata(portfolio_id)
        if change_id and metadata.get("interests_change_id") == change_id:
            logger.info(
                "portfolio_interests_already_applied",
                portfolio_id=portfolio_id,
                change_id=change_id,
            )
            return [str(t) for t in metadata.get("description_topics") or []]

        topic_ids = self.process_description_topics(portfolio_id, topics, metadata)
        weight = self.weight_for(is_personal_portfolio)

        logger.info(
            "processing_portfolio_interests",
            portfolio_id=portfolio_id,
            user_id=user_id,
            topic_count=len(topic_ids),
            weight=weight,
        )

        updated = self.ledger.update_user_interests(user_id, topic_ids, weight)
        if change_id and updated:
            self._mark_applied(portfolio_id, change_id)
        return topic_ids
