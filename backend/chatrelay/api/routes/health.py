"""Health check endpoint with dependency verification."""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint with dependency verification.

    Checks:
    - Upstream provider credentials are configured (no network call)
    - Rate limiter backend is reachable (PING for Redis)

    Returns:
        JSON response with overall status and individual check results
    """
    checks = {}
    overall_healthy = True

    upstream = request.app.state.upstream
    if upstream.is_configured():
        checks["upstream"] = "ok"
    else:
        checks["upstream"] = "error: api key not configured"
        overall_healthy = False

    try:
        await request.app.state.rate_limiter.ping()
        checks["rate_limiter"] = "ok"
    except Exception as e:
        logger.warning(f"Rate limiter health check failed: {e}")
        checks["rate_limiter"] = f"error: {type(e).__name__}"
        overall_healthy = False

    status_code = 200 if overall_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "healthy" if overall_healthy else "unhealthy",
            "service": "chatrelay",
            "checks": checks,
        },
    )
