"""
FastAPI web application for the Klaviyo performance dashboard.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, JSONResponse
from starlette.middleware.gzip import GZipMiddleware

from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from web.config import LOG_FORMAT, LOG_LEVEL, VERSION, WEB_HOST, WEB_PORT
from web.routes import api
from web.routes.api._deps import limiter
from web.middleware import RequestLoggingMiddleware, RequestTimeoutMiddleware
from core.config import config, validate_config, ConfigurationError
from core.observability import setup_logging, get_logger

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
setup_logging(level=LOG_LEVEL, json_format=(LOG_FORMAT == "json"))
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Klaviyo Performance Dashboard",
    description="Campaign and flow attribution report over the last 30 days",
    version=VERSION,
    default_response_class=ORJSONResponse
)

# Add rate limiter to app state
app.state.limiter = limiter


# Custom rate limit exceeded handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Reports are expensive; please wait.",
            "retry_after": exc.detail
        }
    )

# Add request logging middleware (adds correlation IDs and timing)
app.add_middleware(RequestLoggingMiddleware)

# Must be AFTER logging so correlation_id is set when timeout fires
app.add_middleware(RequestTimeoutMiddleware)

app.add_middleware(GZipMiddleware, minimum_size=500)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.web.cors_origin],
    allow_methods=["GET"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

app.include_router(api.router, prefix="/api")


@app.on_event("startup")
async def startup_event():
    logger.info("Klaviyo dashboard starting...")

    # Validate configuration early - fail fast with clear errors
    try:
        validate_config(require_api=True)
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    logger.info(
        "Dashboard ready",
        extra={
            "report_call_delay": config.api.report_call_delay,
            "engagement_revenue_mode": config.report.engagement_revenue_mode,
            "ambiguous_attribution": config.report.ambiguous_attribution,
        },
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Klaviyo dashboard stopped")


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run("web.main:app", host=WEB_HOST, port=WEB_PORT, log_config=None)


if __name__ == "__main__":
    run()
