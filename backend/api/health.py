"""
AskMatch Health Probes
Liveness for the process, readiness for the database the pipeline needs.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from backend.core.config import settings
from backend.database import check_db_connection

logger = structlog.get_logger().bind(module="health_api")

router = APIRouter(prefix="/health", tags=["Health"])


class LivenessResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    """Readiness with the state of each dependency."""

    status: str
    checked_at: str
    version: str
    components: dict[str, Any]


@router.get("", response_model=LivenessResponse, summary="Liveness probe")
async def liveness() -> LivenessResponse:
    return LivenessResponse(status="ok")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    responses={503: {"description": "Database unreachable"}},
)
async def readiness(response: Response) -> ReadinessResponse:
    """Report 503 until the database answers."""
    database = await asyncio.to_thread(check_db_connection)

    if database["status"] != "healthy":
        logger.error("database_unreachable", error=database.get("error"))
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=database["status"],
        checked_at=datetime.now(timezone.utc).isoformat(),
        version=settings.app_version,
        components={"database": database},
    )
