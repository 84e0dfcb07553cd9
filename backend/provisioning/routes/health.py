"""
Customer Provisioning — Health Check Route
===========================================

What:  GET /health for load balancers and container probes.

Status levels:
    healthy    database and Stripe reachable
    degraded   database fine, Stripe unreachable or circuit open
               (confirmed accounts are still served from the table)
    unhealthy  database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from provisioning import __version__
from provisioning.schemas.customer import HealthResponse
from provisioning.services.stripe_provider import CircuitBreaker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(request: Request):
    db_status = "connected"
    provider_status = "available"
    overall = "healthy"

    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    provider = request.app.state.provider
    breaker = getattr(provider, "circuit_breaker", None)
    if breaker is not None and breaker.state == CircuitBreaker.OPEN:
        provider_status = "circuit_open"
    elif not await provider.health_check():
        provider_status = "unavailable"
    if provider_status != "available" and overall == "healthy":
        overall = "degraded"

    body = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        provider=provider_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    return JSONResponse(
        status_code=503 if overall == "unhealthy" else 200,
        content=body.model_dump(),
    )
