"""
Health check endpoint.

Used by the load balancer and deploy tooling. Does not require
authentication and never touches billing state.
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from habit_billing import __version__

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = __version__


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse()
