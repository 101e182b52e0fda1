"""
AskMatch Pydantic Schemas
Request/Response models for API endpoints.
"""
from backend.schemas.matches import (
    InterestListResponse,
    ProcessInterestsRequest,
    ProcessInterestsResponse,
    TopicInput,
)

__all__ = [
    "InterestListResponse",
    "ProcessInterestsRequest",
    "ProcessInterestsResponse",
    "TopicInput",
]
