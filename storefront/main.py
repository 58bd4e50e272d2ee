from __future__ import annotations

import logging
import uuid
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request

from . import config
from .ratelimit import install_rate_limiting
from .routes.admin import router as admin_router
from .routes.auth import router as auth_router
from .routes.capi import router as capi_router
from .routes.catalog import router as catalog_router
from .routes.feeds import router as feeds_router
from .routes.notifications import router as notifications_router
from .routes.orders import router as orders_router
from .routes.payments import router as payments_router
from .routes.reviews import router as reviews_router
from .routes.shipping import router as shipping_router


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_PROJECT_ROOT / ".env")

app = FastAPI(title="Svitanok Storefront API")

_log = logging.getLogger("svitanok")
if not _log.handlers:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    _log.info("rid=%s method=%s path=%s status=%s", rid, request.method, request.url.path, response.status_code)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

install_rate_limiting(app)

app.include_router(catalog_router)
app.include_router(reviews_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(shipping_router)
app.include_router(notifications_router)
app.include_router(capi_router)
app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(feeds_router)


@app.get("/")
def home():
    return {"status": "ok", "service": "svitanok", "docs": "/docs"}
