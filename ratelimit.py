"""
Per-client rate limiting for the /api routes, on top of slowapi.

Every matched /api request is counted against the client's budget before its
handler runs. Routes outside /api are exempt; OPTIONS requests never match a
route and are not counted.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import Settings
from errors import RateLimitError

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def create_limiter(settings: Settings) -> Limiter:
    # application limits share one budget per client across all routes
    return Limiter(
        key_func=get_client_ip,
        application_limits=[f"{settings.rate_limit_max}/{settings.rate_limit_window_seconds} seconds"],
        strategy="moving-window",
        storage_uri="memory://",
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {get_client_ip(request)} on {request.url.path}")
    error = RateLimitError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def install_rate_limiting(app: FastAPI, limiter: Limiter, prefix: str = API_PREFIX) -> None:
    """Attach the limiter; call after every router has been included."""
    for route in app.routes:
        endpoint = getattr(route, "endpoint", None)
        if endpoint is not None and not route.path.startswith(prefix):
            limiter.exempt(endpoint)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
