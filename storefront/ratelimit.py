from __future__ import annotations

import logging
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address


logger = logging.getLogger(__name__)

LIMITS: Dict[str, str] = {
    "capi": "100/15 minutes",
    "payment": "50/15 minutes",
    "feed": "200/15 minutes",
    "default": "100/15 minutes",
}

_HEADERS = ("X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=client_ip,
    headers_enabled=True,
    strategy="fixed-window",
    storage_uri="memory://",
)


def limit(bucket: str = "default"):
    """Route decorator sharing one window per ``(bucket, client_ip)``.

    Decorated endpoints take ``request: Request`` and, unless they return a
    ``Response`` themselves, ``response: Response`` for the headers.
    """
    return limiter.shared_limit(LIMITS.get(bucket, LIMITS["default"]), scope=bucket)


def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    stamped = request.app.state.limiter._inject_headers(Response(), request.state.view_rate_limit)
    retry_after = max(1, int(stamped.headers.get("Retry-After") or 1))
    headers = {name: stamped.headers[name] for name in _HEADERS if name in stamped.headers}
    headers["Retry-After"] = str(retry_after)
    logger.warning("rate limit exceeded path=%s ip=%s limit=%s", request.url.path, client_ip(request), exc.detail)
    return JSONResponse(
        status_code=429,
        content={"error": "Too many requests, please try again later.", "retry_after": retry_after},
        headers=headers,
    )


def install_rate_limiting(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)
