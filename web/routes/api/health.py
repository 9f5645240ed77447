"""Health check and metrics endpoints."""
import time

from fastapi import APIRouter, Request

from core.config import config
from core.observability import get_correlation_id, metrics
from web.config import VERSION
from web.schemas import HealthResponse
from ._deps import limiter, get_logger, DEFAULT_RATE_LIMIT, START_TIME

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def health_check(request: Request):
    """
    Liveness check for Docker/load balancer monitoring.

    Never calls Klaviyo: the reporting quota is too small to spend on probes.
    """
    configured = bool(config.api.key)
    return {
        "status": "healthy" if configured else "degraded",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        "klaviyo_configured": configured,
        "metrics": metrics.get_stats(),
    }


@router.get("/metrics")
@limiter.limit(DEFAULT_RATE_LIMIT)
async def get_metrics(request: Request):
    """In-process request, upstream call and timing statistics."""
    return metrics.get_stats()
