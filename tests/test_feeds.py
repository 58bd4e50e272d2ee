import io
from contextlib import contextmanager
from datetime import date, datetime

import pandas as pd
import psycopg
import pytest
from fastapi.testclient import TestClient

from storefront import feeds
from storefront.main import app
from storefront.routes import feeds as feed_routes


SITE = "https://svitanok.com"

CATEGORIES = [
    {"id": 1, "name": "Догляд за обличчям", "parent_id": None},
    {"id": 2, "name": "Сироватки", "parent_id": 1},
]

PRODUCTS = [
    {
        "id": 10,
        "name": "Сироватка <C> & E",
        "slug": "syrovatka-c-e-10",
        "description": "<p>Освітлює шкіру</p>",
        "price": "450.00",
        "old_price": "520.00",
        "in_stock": True,
        "images": ["https://cdn.example/10.jpg"],
        "category_id": 2,
        "category": "Сироватки",
        "brand": "Mizon",
        "vendor_code": "MZ-10",
        "attributes": {"Об'єм": "30 мл", "Тип шкіри": ["суха", "нормальна"]},
        "updated_at": datetime(2025, 4, 1, 9, 30),
    },
    {
        "id": 11,
        "name": "Тонер",
        "slug": "toner-11",
        "price": "300",
        "old_price": None,
        "in_stock": False,
        "images": [],
        "category_id": 1,
        "attributes": {"Бренд": "Cosrx"},
    },
]


def test_xml_escape_and_strip_html():
    assert feeds.xml_escape("a & <b> \"c\" 'd'") == "a &amp; &lt;b&gt; &quot;c&quot; &apos;d&apos;"
    assert feeds.xml_escape(None) == ""
    assert feeds.strip_html("<p>Hi <b>there</b></p>") == "Hi there"


def test_sitemap_lists_static_pages_and_products():
    xml = feeds.build_sitemap(SITE, PRODUCTS + [{"id": 12, "slug": None}])
    assert xml.count("<url>") == len(feeds.STATIC_PAGES) + 2
    assert "<loc>https://svitanok.com/catalog</loc>" in xml
    assert "<loc>https://svitanok.com/product/syrovatka-c-e-10</loc>" in xml
    assert "<lastmod>2025-04-01</lastmod>" in xml


def test_facebook_feed_uses_old_price_as_regular_price():
    xml = feeds.build_facebook_feed(SITE, PRODUCTS)
    assert "<g:price>UAH 520.00</g:price>" in xml
    assert "<g:sale_price>UAH 450.00</g:sale_price>" in xml
    assert "<g:price>UAH 300.00</g:price>" in xml
    assert xml.count("<g:sale_price>") == 1
    assert "<g:title>Сироватка &lt;C&gt; &amp; E</g:title>" in xml
    assert "<g:description>Освітлює шкіру</g:description>" in xml
    assert "<g:availability>out of stock</g:availability>" in xml
    assert "<g:image_link>https://svitanok.com/placeholder-product.jpg</g:image_link>" in xml
    assert "<g:brand>Cosrx</g:brand>" in xml
    assert "<g:mpn>MZ-10</g:mpn>" in xml


def test_yml_catalog():
    xml = feeds.build_yml(SITE, CATEGORIES, PRODUCTS, today=date(2025, 5, 1))
    assert '<yml_catalog date="2025-05-01">' in xml
    assert '<category id="2" parentId="1">Сироватки</category>' in xml
    assert '<offer id="11" available="false">' in xml
    assert "<oldprice>520.00</oldprice>" in xml
    assert '<param name="Тип шкіри">суха, нормальна</param>' in xml
    assert "<description><![CDATA[<p>Освітлює шкіру</p>]]></description>" in xml


def test_csv_export_has_bom_and_semicolons():
    text = feeds.build_csv(SITE, CATEGORIES, PRODUCTS)
    assert text.startswith("﻿ID;Name;Price;OldPrice")
    row = text.splitlines()[1].split(";")
    assert row[0] == "10"
    assert row[2] == "450.00"
    assert row[6] == "Сироватки"
    assert row[7] == "Mizon"


def test_xlsx_export_has_both_sheets():
    content = feeds.build_xlsx(SITE, CATEGORIES, PRODUCTS)
    sheets = pd.read_excel(io.BytesIO(content), sheet_name=None, engine="openpyxl")
    assert set(sheets) == {"Categories", "Products"}
    assert list(sheets["Products"]["ID"]) == [10, 11]


def test_ttl_cache_expires():
    now = [0.0]
    cache = feeds.TTLCache(60, clock=lambda: now[0])
    builds = []

    def build():
        builds.append(1)
        return len(builds)

    assert cache.get_or_build("k", build) == 1
    now[0] = 59
    assert cache.get_or_build("k", build) == 1
    now[0] = 61
    assert cache.get_or_build("k", build) == 2


@pytest.fixture
def client(monkeypatch):
    feed_routes.sitemap_cache.clear()
    feed_routes.feed_cache.clear()
    monkeypatch.setenv("SITE_URL", SITE)

    @contextmanager
    def _get_conn():
        yield object()

    monkeypatch.setattr(feed_routes, "get_conn", _get_conn)
    monkeypatch.setattr(feed_routes.catalog_store, "fetch_feed_products", lambda conn: PRODUCTS)
    monkeypatch.setattr(feed_routes.catalog_store, "fetch_categories", lambda conn: CATEGORIES)
    yield TestClient(app)
    feed_routes.sitemap_cache.clear()
    feed_routes.feed_cache.clear()


def test_sitemap_route_falls_back_without_database(client, monkeypatch):
    @contextmanager
    def _down():
        raise psycopg.OperationalError("connection refused")
        yield

    monkeypatch.setattr(feed_routes, "get_conn", _down)
    r = client.get("/sitemap.xml")
    assert r.status_code == 200
    assert "max-age=3600" in r.headers["Cache-Control"]
    assert "/product/" not in r.text
    assert "<loc>https://svitanok.com/</loc>" in r.text


def test_fallback_sitemap_is_not_cached(client, monkeypatch):
    @contextmanager
    def _up():
        yield object()

    @contextmanager
    def _down():
        raise psycopg.OperationalError("connection refused")
        yield

    monkeypatch.setattr(feed_routes, "get_conn", _down)
    assert "/product/" not in client.get("/sitemap.xml").text

    monkeypatch.setattr(feed_routes, "get_conn", _up)
    recovered = client.get("/sitemap.xml")
    assert "/product/" in recovered.text

    monkeypatch.setattr(feed_routes, "get_conn", _down)
    assert client.get("/sitemap.xml").text == recovered.text


def test_facebook_feed_route_is_cached(client, monkeypatch):
    first = client.get("/api/feed/products.xml")
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "200"

    monkeypatch.setattr(feed_routes.catalog_store, "fetch_feed_products", lambda conn: [])
    assert client.get("/api/feed/products.xml").text == first.text


def test_export_route_formats(client):
    csv = client.get("/api/feed/export", params={"format": "csv"})
    assert csv.status_code == 200
    assert 'filename="svitanok_products.csv"' in csv.headers["Content-Disposition"]

    xlsx = client.get("/api/feed/export", params={"format": "XLSX"})
    assert xlsx.content[:2] == b"PK"

    assert client.get("/api/feed/export", params={"format": "pdf"}).status_code == 400
