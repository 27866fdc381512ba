"""Health check endpoint with real service connectivity probes.

Each service check has a short timeout to avoid blocking the response.
A service reporting "disconnected" does not affect the overall status ("ok");
the health endpoint always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Depends

from atelier.api.deps import get_services
from atelier.bootstrap import Services

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds per service check


async def _check_postgres(services: Services) -> str:
    """Ping the repository; the in-memory store has no database to probe."""
    if not services.settings.use_database:
        return "not_configured"
    try:
        await asyncio.wait_for(services.repo.ping(), timeout=_CHECK_TIMEOUT)
        return "connected"
    except Exception as exc:
        logger.debug("health_postgres_failed", error=str(exc))
        return "disconnected"


async def _check_r2(services: Services) -> str:
    """Check R2 bucket accessibility via head_bucket."""
    if not services.storage.available:
        return "not_configured"
    try:
        ok = await asyncio.wait_for(services.storage.ping(), timeout=_CHECK_TIMEOUT)
    except TimeoutError:
        logger.debug("health_r2_failed", error="timeout")
        return "disconnected"
    return "connected" if ok else "disconnected"


@router.get("/health")
async def health_check(services: Services = Depends(get_services)) -> dict:
    """Confirms the API process is alive and reports dependency connectivity."""
    postgres, r2 = await asyncio.gather(_check_postgres(services), _check_r2(services))

    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": services.settings.environment,
        "postgres": postgres,
        "r2": r2,
    }
