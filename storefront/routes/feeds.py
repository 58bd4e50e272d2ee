import logging
from typing import Tuple

import psycopg
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response

from .. import config, feeds
from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..ratelimit import limit
from ..store import catalog as catalog_store


logger = logging.getLogger(__name__)

router = APIRouter(tags=["feeds"])

sitemap_cache = feeds.TTLCache(feeds.SITEMAP_TTL_SECONDS)
feed_cache = feeds.TTLCache(feeds.FEED_TTL_SECONDS)

_EXPORT_FORMATS = {
    "xml": ("application/xml; charset=utf-8", "svitanok_feed.xml"),
    "csv": ("text/csv; charset=utf-8", "svitanok_products.csv"),
    "txt": ("text/plain; charset=utf-8", "svitanok_products.txt"),
    "xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "svitanok_products.xlsx"),
}


def _build_sitemap() -> Tuple[str, bool]:
    """Render the sitemap; the flag is False for the static-pages fallback."""
    site = config.site_url()
    try:
        with get_conn() as conn:
            products = catalog_store.fetch_feed_products(conn)
    except psycopg.Error:
        logger.exception("sitemap falls back to static pages")
        return feeds.build_sitemap(site), False
    return feeds.build_sitemap(site, products), True


@router.get("/sitemap.xml")
def sitemap():
    xml = sitemap_cache.get("sitemap")
    if xml is None:
        xml, complete = _build_sitemap()
        if complete:
            sitemap_cache.set("sitemap", xml)
    return Response(
        content=xml,
        media_type="application/xml; charset=utf-8",
        headers={"Cache-Control": f"public, max-age={feeds.SITEMAP_TTL_SECONDS}"},
    )


def _load_catalog():
    try:
        with get_conn() as conn:
            return catalog_store.fetch_categories(conn), catalog_store.fetch_feed_products(conn)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")


def _build_facebook_feed() -> str:
    _, products = _load_catalog()
    return feeds.build_facebook_feed(config.site_url(), products)


@router.get("/api/feed/products.xml")
@limit("feed")
def facebook_feed(request: Request):
    xml = feed_cache.get_or_build("facebook", _build_facebook_feed)
    return Response(
        content=xml,
        media_type="application/xml; charset=utf-8",
        headers={"Cache-Control": f"public, max-age={feeds.FEED_TTL_SECONDS}"},
    )


@router.get("/api/feed/export")
@limit("feed")
def export_feed(request: Request, format: str = Query("xml")):
    fmt = (format or "").strip().lower()
    if fmt not in _EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format: {format}")

    site = config.site_url()
    categories, products = _load_catalog()
    if fmt == "xml":
        content = feeds.build_yml(site, categories, products)
    elif fmt == "csv":
        content = feeds.build_csv(site, categories, products)
    elif fmt == "txt":
        content = feeds.build_txt(site, products)
    else:
        content = feeds.build_xlsx(site, categories, products)

    media_type, filename = _EXPORT_FORMATS[fmt]
    logger.info("feed export format=%s products=%s", fmt, len(products))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
