"""
Custom Exception Classes for AskMatch.

Domain errors raised by the matching engine and the HTTP exceptions the API
maps them to.
"""
from fastapi import HTTPException, status


class MatchingError(Exception):
    """Base class for matching engine errors."""


class UpstreamServiceError(MatchingError):
    """An external collaborator (embeddings, vector index, LLM) failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class ValidationError(HTTPException):
    """Exception raised when request validation fails."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


class SearchTimeoutError(HTTPException):
    """Exception raised when a search exceeds its time limit."""

    def __init__(self, seconds: float):
        super().__init__(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"Match search did not finish within {seconds:g} seconds",
        )
