"""
AskMatch API Routers
FastAPI router modules for the matching service.
"""
from backend.api import health, matches

__all__ = [
    "health",
    "matches",
]
