"""
Match schemas for search and interest endpoints.
"""
from typing import Optional

from pydantic import BaseModel, Field

from agents.matching.models import InterestScore


class TopicInput(BaseModel):
    """A topic extracted from a portfolio description."""

    name: str = Field(..., min_length=1, description="Topic name")
    description: str = Field(default="", description="Topic description")


class ProcessInterestsRequest(BaseModel):
    """Schema for queueing interest processing after a description change."""

    portfolio_id: str = Field(..., description="Portfolio whose description changed")
    is_personal_portfolio: bool = Field(
        default=True,
        description="True for the user's own profile, False for a project",
    )
    topics: list[TopicInput] = Field(
        default_factory=list,
        description="Topics extracted from the new description",
    )


class ProcessInterestsResponse(BaseModel):
    """Schema for the queueing outcome."""

    queued: bool = Field(..., description="Whether the task was dispatched")
    task_id: Optional[str] = Field(None, description="Celery task id")


class InterestListResponse(BaseModel):
    """Schema for a user's top interests."""

    user_id: str = Field(..., description="User ID")
    interests: list[InterestScore] = Field(
        default_factory=list,
        description="Topics ordered by memory score, highest first",
    )
