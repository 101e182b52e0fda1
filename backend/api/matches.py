"""
Match API Endpoints
Rank users for a searcher, list their interests, and queue interest updates.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.engine import Engine

from agents.matching.interests import InterestLedger
from agents.matching.models import SearchResult
from agents.matching.search import MatchSearchService
from backend.core.config import settings
from backend.core.exceptions import SearchTimeoutError, ValidationError
from backend.database import get_engine
from backend.schemas.matches import (
    InterestListResponse,
    ProcessInterestsRequest,
    ProcessInterestsResponse,
)
from backend.tasks.interests import trigger_portfolio_interests

logger = structlog.get_logger().bind(module="matches_api")

router = APIRouter(prefix="/api/matches", tags=["Matches"])


def get_search_service(engine: Engine = Depends(get_engine)) -> MatchSearchService:
    """Build a request-scoped search service."""
    return MatchSearchService(engine)


def get_interest_ledger(engine: Engine = Depends(get_engine)) -> InterestLedger:
    """Build an interest ledger on the shared engine."""
    return InterestLedger(engine)


@router.get(
    "/{user_id}",
    response_model=SearchResult,
    summary="Search matches",
    description="Rank all other users for the searcher, optionally focused on a keyword.",
)
async def search_matches(
    user_id: str,
    keyword: Optional[str] = Query(default=None, max_length=200, description="Search keyword"),
    limit: Optional[int] = Query(default=None, ge=1, le=500, description="Maximum results"),
    service: MatchSearchService = Depends(get_search_service),
) -> SearchResult:
    """
    Run the full match pipeline for a user.

    The pipeline is blocking, so it runs in a worker thread under the
    configured search timeout. A timeout only abandons the wait: the thread
    cannot be cancelled and keeps its pooled connections until the pipeline
    finishes on its own.
    """
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(service.search, user_id, keyword, limit),
            timeout=settings.search_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "match_search_timeout",
            user_id=user_id,
            keyword=keyword,
            timeout_seconds=settings.search_timeout_seconds,
        )
        raise SearchTimeoutError(settings.search_timeout_seconds)
    except ValueError as e:
        raise ValidationError(str(e))

    logger.info(
        "match_search_served",
        user_id=user_id,
        keyword=keyword,
        results=len(result.results),
    )
    return result


@router.get(
    "/{user_id}/interests",
    response_model=InterestListResponse,
    summary="Top interests",
    description="Get the user's topics ordered by recent interest.",
)
async def list_interests(
    user_id: str,
    limit: int = Query(default=settings.top_interests_limit, ge=0, le=100, description="Maximum topics"),
    ledger: InterestLedger = Depends(get_interest_ledger),
) -> InterestListResponse:
    """Return the user's top interested topics."""
    interests = await asyncio.to_thread(ledger.get_top_interested_topics, user_id, limit)
    return InterestListResponse(user_id=user_id, interests=interests)


@router.post(
    "/{user_id}/interests/process",
    response_model=ProcessInterestsResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue interest processing",
    description="Queue topic and interest updates after a portfolio description change.",
)
async def process_interests(
    user_id: str,
    request: ProcessInterestsRequest,
) -> ProcessInterestsResponse:
    """
    Dispatch interest processing in the background.

    Dispatch failures are reported in the response, never raised.
    """
    task_id = trigger_portfolio_interests(
        request.portfolio_id,
        user_id,
        request.is_personal_portfolio,
        [topic.model_dump() for topic in request.topics],
    )
    return ProcessInterestsResponse(queued=task_id is not None, task_id=task_id)
