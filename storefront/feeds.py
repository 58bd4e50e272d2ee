from __future__ import annotations

import re
import threading
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .exports import to_csv, to_xlsx


SITEMAP_TTL_SECONDS = 3600
FEED_TTL_SECONDS = 24 * 3600
DESCRIPTION_LIMIT = 5000

STATIC_PAGES: List[Tuple[str, str, str]] = [
    ("/", "daily", "1.0"),
    ("/catalog", "daily", "0.9"),
    ("/about", "monthly", "0.7"),
    ("/contacts", "monthly", "0.7"),
    ("/delivery", "monthly", "0.6"),
    ("/faq", "monthly", "0.6"),
    ("/auth", "monthly", "0.5"),
]

_TAG_RE = re.compile(r"<[^>]*>")


class TTLCache:
    """Single-process cache of rendered documents."""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            hit = self._items.get(key)
            if hit is not None and now - hit[0] < self.ttl_seconds:
                return hit[1]
        return None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = (self._clock(), value)

    def get_or_build(self, key: str, build: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = build()
            self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


def xml_escape(value: Any) -> str:
    if value is None:
        return ""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def strip_html(value: Optional[str]) -> str:
    return _TAG_RE.sub("", value or "")


def _price(value: Any) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _date(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if value:
        return str(value)[:10]
    return None


def _url(loc: str, changefreq: str, priority: str, lastmod: Optional[str] = None) -> str:
    parts = [f"    <loc>{xml_escape(loc)}</loc>"]
    if lastmod:
        parts.append(f"    <lastmod>{lastmod}</lastmod>")
    parts.append(f"    <changefreq>{changefreq}</changefreq>")
    parts.append(f"    <priority>{priority}</priority>")
    return "  <url>\n" + "\n".join(parts) + "\n  </url>"


def build_sitemap(site: str, products: Sequence[Mapping[str, Any]] = ()) -> str:
    urls = [_url(f"{site}{path}", freq, prio) for path, freq, prio in STATIC_PAGES]
    for p in products:
        if not p.get("slug"):
            continue
        urls.append(_url(f"{site}/product/{p['slug']}", "weekly", "0.8", _date(p.get("updated_at") or p.get("created_at"))))
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        + "\n".join(urls)
        + "\n</urlset>\n"
    )


def _first_image(product: Mapping[str, Any], site: str) -> str:
    images = product.get("images") or []
    if images:
        return str(images[0])
    return f"{site}/placeholder-product.jpg"


def _brand(product: Mapping[str, Any]) -> str:
    attrs = product.get("attributes") or {}
    return str(product.get("brand") or attrs.get("Бренд") or attrs.get("Виробник") or "Svitanok")


def build_facebook_feed(site: str, products: Sequence[Mapping[str, Any]]) -> str:
    items = []
    for p in products:
        currency = p.get("currency") or "UAH"
        price = Decimal(str(p.get("price") or 0))
        old_price = Decimal(str(p["old_price"])) if p.get("old_price") is not None else None
        description = strip_html(p.get("description") or p.get("name") or "")[:DESCRIPTION_LIMIT]

        fields = [
            ("g:id", p.get("id")),
            ("g:title", p.get("name")),
            ("g:description", description),
            ("g:link", f"{site}/product/{p.get('slug')}"),
            ("g:image_link", _first_image(p, site)),
        ]
        if old_price is not None and old_price > price:
            fields.append(("g:price", f"{currency} {_price(old_price)}"))
            fields.append(("g:sale_price", f"{currency} {_price(price)}"))
        else:
            fields.append(("g:price", f"{currency} {_price(price)}"))
        fields.extend(
            [
                ("g:availability", "in stock" if p.get("in_stock", True) else "out of stock"),
                ("g:brand", _brand(p)),
                ("g:condition", "new"),
                ("g:product_type", p.get("category") or "Косметика"),
            ]
        )
        mpn = p.get("vendor_code") or p.get("external_id")
        if mpn:
            fields.append(("g:mpn", mpn))
        body = "\n".join(f"      <{tag}>{xml_escape(value)}</{tag}>" for tag, value in fields)
        items.append(f"    <item>\n{body}\n    </item>")

    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<rss version="2.0" xmlns:g="http://base.google.com/ns/1.0">\n'
        "  <channel>\n"
        "    <title>Svitanok Product Feed</title>\n"
        f"    <link>{xml_escape(site)}</link>\n"
        "    <description>Product feed for Svitanok cosmetics store</description>\n"
        + "\n".join(items)
        + ("\n" if items else "")
        + "  </channel>\n</rss>\n"
    )


def _attr_string(attributes: Mapping[str, Any]) -> str:
    parts = []
    for k, v in (attributes or {}).items():
        if isinstance(v, (list, tuple)):
            v = ", ".join(str(x) for x in v)
        parts.append(f"{k}: {v}")
    return "; ".join(parts)


def build_yml(site: str, categories: Sequence[Mapping[str, Any]], products: Sequence[Mapping[str, Any]], today: Optional[date] = None) -> str:
    today = today or date.today()
    cat_lines = []
    for c in categories:
        parent = f' parentId="{c["parent_id"]}"' if c.get("parent_id") else ""
        cat_lines.append(f'      <category id="{c["id"]}"{parent}>{xml_escape(c.get("name"))}</category>')

    offer_lines = []
    for p in products:
        available = "true" if p.get("in_stock", True) else "false"
        parts = [f'      <offer id="{p["id"]}" available="{available}">']
        parts.append(f"        <url>{xml_escape(site)}/product/{xml_escape(p.get('slug'))}</url>")
        parts.append(f"        <price>{_price(p.get('price'))}</price>")
        if p.get("old_price"):
            parts.append(f"        <oldprice>{_price(p.get('old_price'))}</oldprice>")
        parts.append(f"        <currencyId>{xml_escape(p.get('currency') or 'UAH')}</currencyId>")
        if p.get("category_id"):
            parts.append(f"        <categoryId>{p['category_id']}</categoryId>")
        for image in (p.get("images") or [])[:10]:
            parts.append(f"        <picture>{xml_escape(image)}</picture>")
        parts.append(f"        <name>{xml_escape(p.get('name'))}</name>")
        parts.append(f"        <vendor>{xml_escape(_brand(p))}</vendor>")
        if p.get("vendor_code"):
            parts.append(f"        <vendorCode>{xml_escape(p['vendor_code'])}</vendorCode>")
        parts.append(f"        <description><![CDATA[{(p.get('description') or '').replace(']]>', ']]&gt;')}]]></description>")
        for k, v in (p.get("attributes") or {}).items():
            if isinstance(v, (list, tuple)):
                v = ", ".join(str(x) for x in v)
            parts.append(f'        <param name="{xml_escape(k)}">{xml_escape(v)}</param>')
        parts.append("      </offer>")
        offer_lines.append("\n".join(parts))

    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<yml_catalog date="{today.isoformat()}">\n'
        "  <shop>\n"
        "    <name>Svitanok</name>\n"
        "    <company>Svitanok</company>\n"
        f"    <url>{xml_escape(site)}</url>\n"
        '    <currencies><currency id="UAH" rate="1"/></currencies>\n'
        "    <categories>\n" + "\n".join(cat_lines) + ("\n" if cat_lines else "") + "    </categories>\n"
        "    <offers>\n" + "\n".join(offer_lines) + ("\n" if offer_lines else "") + "    </offers>\n"
        "  </shop>\n"
        "</yml_catalog>\n"
    )


PRODUCT_EXPORT_COLUMNS = ["ID", "Name", "Price", "OldPrice", "URL", "Image", "Category", "Vendor", "VendorCode", "Description", "Attributes"]


def product_export_rows(site: str, categories: Sequence[Mapping[str, Any]], products: Sequence[Mapping[str, Any]]) -> List[List[Any]]:
    names = {c["id"]: c.get("name") for c in categories}
    rows = []
    for p in products:
        images = p.get("images") or []
        rows.append(
            [
                p["id"],
                p.get("name"),
                _price(p.get("price")),
                _price(p["old_price"]) if p.get("old_price") else "",
                f"{site}/product/{p.get('slug')}",
                images[0] if images else "",
                names.get(p.get("category_id"), "") or "",
                _brand(p),
                p.get("vendor_code") or "",
                p.get("description") or "",
                _attr_string(p.get("attributes") or {}),
            ]
        )
    return rows


def build_csv(site: str, categories, products) -> str:
    return to_csv(PRODUCT_EXPORT_COLUMNS, product_export_rows(site, categories, products), sep=";", bom=True)


def build_txt(site: str, products: Sequence[Mapping[str, Any]]) -> str:
    lines = ["ID\tName\tPrice\tURL\tVendor"]
    for p in products:
        name = str(p.get("name") or "").replace("\t", " ")
        lines.append(f"{p['id']}\t{name}\t{_price(p.get('price'))}\t{site}/product/{p.get('slug')}\t{_brand(p)}")
    return "\n".join(lines) + "\n"


def build_xlsx(site: str, categories, products) -> bytes:
    cat_df = pd.DataFrame(
        [{"ID": c["id"], "ParentID": c.get("parent_id") or "", "Name": c.get("name")} for c in categories],
        columns=["ID", "ParentID", "Name"],
    )
    prod_df = pd.DataFrame(product_export_rows(site, categories, products), columns=PRODUCT_EXPORT_COLUMNS)
    return to_xlsx({"Categories": cat_df, "Products": prod_df})
