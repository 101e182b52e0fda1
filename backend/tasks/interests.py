"""
AskMatch Interest Tasks
Celery tasks that update the interest ledger after content changes.
"""
import time
from typing import Any, Optional, Sequence

import structlog

from agents.matching.embeddings import EmbeddingProvider
from agents.matching.interests import InterestLedger, PortfolioInterestProcessor
from agents.matching.topics import TopicRegistry
from agents.matching.vector_index import PgVectorIndex
from backend.celery_app import celery_app
from backend.core.sentry import capture_exception
from backend.database import sync_engine

logger = structlog.get_logger().bind(module="interest_tasks")


def _topic_pairs(topics: Sequence[Any]) -> list[tuple[str, str]]:
    """Accept [name, description] pairs or {"name", "description"} dicts."""
    pairs = []
    for topic in topics:
        if isinstance(topic, dict):
            name, description = topic.get("name", ""), topic.get("description", "")
        else:
            name, description = topic[0], topic[1] if len(topic) > 1 else ""
        if name and name.strip():
            pairs.append((name, description or ""))
    return pairs


# =============================================================================
# Task 1: Portfolio Description Changed
# =============================================================================

@celery_app.task(
    bind=True,
    queue="high",
    priority=7,
    soft_time_limit=120,
    time_limit=180,
    max_retries=3,
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
)
def process_portfolio_interests(
    self,
    portfolio_id: str,
    user_id: str,
    is_personal_portfolio: bool,
    topics: list[Any],
) -> dict[str, Any]:
    """
    Update topics and interests after a portfolio description changes.

    Args:
        portfolio_id: Portfolio whose description changed.
        user_id: Owner of the portfolio.
        is_personal_portfolio: True for the user's human portfolio (weight 3),
            False for a project portfolio (weight 0.1).
        topics: Topics extracted from the new description, as
            [name, description] pairs or {"name", "description"} objects.

    Returns:
        Dictionary with the credited topic ids and timing.
    """
    start_time = time.time()
    task_id = self.request.id

    logger.info(
        "process_portfolio_interests_started",
        task_id=task_id,
        portfolio_id=portfolio_id,
        user_id=user_id,
        is_personal_portfolio=is_personal_portfolio,
    )

    vector_index = PgVectorIndex(sync_engine)
    registry = TopicRegistry(sync_engine, EmbeddingProvider(), vector_index)
    processor = PortfolioInterestProcessor(sync_engine, registry, InterestLedger(sync_engine))

    try:
        topic_ids = processor.process(
            portfolio_id,
            user_id,
            is_personal_portfolio,
            _topic_pairs(topics),
            change_id=task_id,
        )
    except Exception as e:
        logger.error(
            "process_portfolio_interests_failed",
            task_id=task_id,
            portfolio_id=portfolio_id,
            user_id=user_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        capture_exception(e, user_id=user_id, extra={"portfolio_id": portfolio_id})
        raise

    duration = time.time() - start_time
    logger.info(
        "process_portfolio_interests_completed",
        task_id=task_id,
        portfolio_id=portfolio_id,
        topic_count=len(topic_ids),
        duration_seconds=duration,
    )

    return {
        "portfolio_id": portfolio_id,
        "user_id": user_id,
        "topic_ids": topic_ids,
        "task_id": task_id,
        "processing_time_seconds": duration,
    }


# =============================================================================
# Task 2: Note Indexed
# =============================================================================

@celery_app.task(
    bind=True,
    queue="normal",
    priority=3,
    soft_time_limit=60,
    time_limit=90,
    max_retries=3,
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
)
def process_note_interests(self, user_id: str, topic_ids: list[str]) -> dict[str, Any]:
    """
    Credit the topics of a newly indexed note to its author.

    Args:
        user_id: Note author.
        topic_ids: Topic ids assigned to the note.

    Returns:
        Dictionary with the update outcome.
    """
    task_id = self.request.id

    logger.info(
        "process_note_interests_started",
        task_id=task_id,
        user_id=user_id,
        topic_count=len(topic_ids),
    )

    updated = InterestLedger(sync_engine).record_note_interests(user_id, topic_ids)

    return {
        "user_id": user_id,
        "topic_count": len(topic_ids),
        "updated": updated,
        "task_id": task_id,
    }


# =============================================================================
# Dispatch Helpers
# =============================================================================

def trigger_portfolio_interests(
    portfolio_id: str,
    user_id: str,
    is_personal_portfolio: bool,
    topics: list[Any],
) -> Optional[str]:
    """
    Queue interest processing without blocking the caller.

    Dispatch failures are logged and never raised.

    Returns:
        Celery task id, or None if dispatch failed.
    """
    try:
        result = process_portfolio_interests.delay(
            portfolio_id,
            user_id,
            is_personal_portfolio,
            topics,
        )
    except Exception as e:
        logger.error(
            "portfolio_interests_dispatch_failed",
            portfolio_id=portfolio_id,
            user_id=user_id,
            error=str(e),
        )
        return None

    logger.info(
        "portfolio_interests_dispatched",
        portfolio_id=portfolio_id,
        user_id=user_id,
        task_id=result.id,
    )
    return result.id
