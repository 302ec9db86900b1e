"""Request-scoped access to the components the app was built with."""
from fastapi import Request

from chatrelay.config import Settings
from chatrelay.services.llm_provider import UpstreamClient
from chatrelay.services.rate_limiter import RateLimiter


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def client_identity(request: Request) -> str:
    """Rate-limit key for the caller: peer address, or the first X-Forwarded-For hop if trusted."""
    settings: Settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"
