"""
Watermark Pipeline Backend — Health Check Route
=================================================

What:  GET /health for load balancers and monitoring.

Status levels:
    healthy:   database reachable, remote service reachable (HTTP 200)
    degraded:  remote service unreachable or its circuit is open (HTTP 200)
    unhealthy: database unreachable (HTTP 503)

When the app runs without a SQL engine (in-memory repositories) the
database is reported as 'not_configured' and does not affect the status.
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from watermark_pipeline import __version__
from watermark_pipeline.schemas.watermark import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
)
async def health_check(request: Request):
    pipeline = request.app.state.pipeline
    engine = getattr(request.app.state, "engine", None)

    db_status = "not_configured"
    remote_status = "available"
    overall = "healthy"

    if engine is not None:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "connected"
        except (SQLAlchemyError, OSError) as e:
            db_status = "disconnected"
            overall = "unhealthy"
            logger.warning("Health check: database unreachable: %s", str(e))

    breaker = getattr(pipeline.remote, "circuit_breaker", None)
    if breaker is not None and breaker.state == breaker.OPEN:
        remote_status = "circuit_open"
    elif not await pipeline.remote.health_check():
        remote_status = "unavailable"
    if remote_status != "available" and overall == "healthy":
        overall = "degraded"

    body = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        watermark_service=remote_status,
        active_jobs=pipeline.worker.active_jobs,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    return JSONResponse(
        status_code=503 if overall == "unhealthy" else 200,
        content=body.model_dump(),
    )
