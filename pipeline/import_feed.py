"""Import a supplier YML feed into the catalog.

Attribute names and values arrive in a mix of Russian and Ukrainian; they are
normalized to the Ukrainian names the storefront filters on before upserting
categories, brands and products by their supplier ``external_id``.
"""

from __future__ import annotations

import argparse
import logging
import re
import xml.etree.ElementTree as ET
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg.types.json import Jsonb

from .config import PostgresConfig
from .db import get_conn


logger = logging.getLogger(__name__)


ATTR_KEYS_MAP: Dict[str, str] = {
    "Пол": "Стать",
    "Объем": "Об'єм",
    "Об`єм": "Об'єм",
    "Возраст": "Вік",
    "Возрастная группа": "Вік",
    "Вікова група": "Вік",
    "Тип кожи": "Тип шкіри",
    "Проблема кожи": "Проблема шкіри",
    "Проблема і стан шкіри": "Проблема шкіри",
    "Состояние кожи": "Стан шкіри",
    "Назначение и результат": "Призначення",
    "Призначення і результат": "Призначення",
    "Действие": "Дія",
    "Классификация косметического средства": "Клас косметики",
    "Класифікація косметичного засобу": "Клас косметики",
    "Вид маски по консистенції": "Консистенція",
    "Вид маски за призначенням": "Вид маски",
    "Время применения": "Час застосування",
    "Тип крема": "Тип крему",
    "Некомедогенно": "Некомедогенний",
    "Гипоаллергенно": "Гіпоалергенний",
    "Страна производитель": "Країна виробник",
    "Країна Виробника": "Країна виробник",
    "Количество в упаковке": "Кількість в упаковці",
    "Цвет": "Колір",
    "Дополнительный эффект": "Додатковий ефект",
    "Область применения": "Область застосування",
}

ATTR_VALUES_MAP: Dict[str, str] = {
    "Да": "Так",
    "Нет": "Ні",
    "true": "Так",
    "false": "Ні",
    "Унисекс": "Унісекс",
    "Женский": "Жіночий",
    "Мужской": "Чоловічий",
    "Все типы кожи": "Всі типи шкіри",
    "Жирная": "Жирна",
    "Сухая": "Суха",
    "Комбинированная (Смешанная)": "Комбінована",
    "Чувствительная": "Чутлива",
    "Нормальная": "Нормальна",
    "Проблемная": "Проблемна",
    "Увядающая (зрелая)": "Зріла",
    "Универсальный": "Універсальний",
    "Дневной": "Денний",
    "Ночной": "Нічний",
    "Профессиональная": "Професійна",
    "Масс маркет": "Мас-маркет",
    "Аптечная": "Аптечна",
    "Натуральная": "Натуральна",
    "Органическая": "Органічна",
    "Италия": "Італія",
    "Франция": "Франція",
    "Испания": "Іспанія",
    "Израиль": "Ізраїль",
    "Украина": "Україна",
}

BRAND_ATTRIBUTE = "Бренд"

_TRANSLIT = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "yo", "ж": "zh",
    "з": "z", "и": "i", "й": "y", "к": "k", "л": "l", "м": "m", "н": "n", "о": "o",
    "п": "p", "р": "r", "с": "s", "т": "t", "у": "u", "ф": "f", "х": "h", "ц": "ts",
    "ч": "ch", "ш": "sh", "щ": "sch", "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "yu",
    "я": "ya", "і": "i", "ї": "yi", "є": "ye", "ґ": "g",
}

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")
SLUG_MAX_LENGTH = 100


def transliterate(text: str) -> str:
    return "".join(_TRANSLIT.get(ch, ch) for ch in (text or "").lower())


def slugify(text: str) -> str:
    slug = _NON_SLUG_RE.sub("-", transliterate(text)).strip("-")
    return slug[:SLUG_MAX_LENGTH] or "item"


def translate_value(value: str) -> str:
    v = (value or "").strip()
    return ATTR_VALUES_MAP.get(v, v)


def normalize_attributes(params: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """Map supplier ``param`` pairs to normalized attribute names and values.

    ``a|b`` values become lists; repeated names are merged into one flat list.
    """
    out: Dict[str, Any] = {}
    for raw_name, raw_value in params:
        if not raw_name or raw_value is None or raw_value == "":
            continue
        name = ATTR_KEYS_MAP.get(raw_name.strip(), raw_name.strip())
        value: Any = raw_value
        if isinstance(value, str):
            if "|" in value:
                value = [v for v in (translate_value(s) for s in value.split("|")) if v]
            else:
                value = translate_value(value)

        if name in out:
            merged = out[name] if isinstance(out[name], list) else [out[name]]
            merged = merged + (value if isinstance(value, list) else [value])
            out[name] = merged
        else:
            out[name] = value
    return out


def _text(el: Optional[ET.Element]) -> Optional[str]:
    if el is None or el.text is None:
        return None
    t = el.text.strip()
    return t or None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if not value:
        return None
    try:
        return Decimal(value.replace(",", "."))
    except InvalidOperation:
        return None


def parse_category(el: ET.Element) -> Optional[Dict[str, Any]]:
    ext_id = (el.get("id") or "").strip()
    name = _text(el)
    if not ext_id or not name:
        return None
    return {"external_id": ext_id, "name": name, "parent_external_id": (el.get("parentId") or "").strip() or None}


def parse_offer(el: ET.Element) -> Optional[Dict[str, Any]]:
    ext_id = (el.get("id") or "").strip()
    name = _text(el.find("name")) or _text(el.find("model"))
    price = _decimal(_text(el.find("price")))
    if not ext_id or not name or price is None:
        return None

    vendor = _text(el.find("vendor"))
    attributes = normalize_attributes((p.get("name") or "", _text(p)) for p in el.findall("param"))
    if vendor:
        attributes[BRAND_ATTRIBUTE] = vendor

    return {
        "external_id": ext_id,
        "name": name,
        "slug": f"{slugify(name)}-{ext_id}",
        "description": _text(el.find("description")),
        "price": price,
        "old_price": _decimal(_text(el.find("oldprice"))),
        "in_stock": (el.get("available") or "").strip().lower() == "true",
        "vendor": vendor,
        "vendor_code": _text(el.find("vendorCode")),
        "category_external_id": _text(el.find("categoryId")),
        "images": [t for t in (_text(p) for p in el.findall("picture")) if t],
        "attributes": attributes,
    }


def parse_feed(source) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Parse a YML document (path or file object) into categories and offers."""
    root = ET.parse(source).getroot()
    shop = root.find("shop")
    if shop is None:
        raise ValueError("Feed has no <shop> element")

    categories = [c for c in (parse_category(el) for el in shop.iter("category")) if c]
    offers: List[Dict[str, Any]] = []
    skipped = 0
    for el in shop.iter("offer"):
        offer = parse_offer(el)
        if offer is None:
            skipped += 1
            continue
        offers.append(offer)
    if skipped:
        logger.warning("skipped %s offers without id, name or price", skipped)
    return categories, offers


def import_categories(conn, categories: List[Dict[str, Any]]) -> Dict[str, int]:
    ids: Dict[str, int] = {}
    with conn.cursor() as cur:
        for c in categories:
            cur.execute(
                """
                INSERT INTO svitanok.categories (external_id, name, slug, level)
                VALUES (%s, %s, %s, 0)
                ON CONFLICT (external_id) DO UPDATE
                SET name = EXCLUDED.name, slug = EXCLUDED.slug
                RETURNING id;
                """,
                (c["external_id"], c["name"], f"{slugify(c['name'])}-{c['external_id']}"),
            )
            ids[c["external_id"]] = int(cur.fetchone()[0])

        for c in categories:
            parent = ids.get(c.get("parent_external_id") or "")
            if parent is None:
                continue
            cur.execute(
                "UPDATE svitanok.categories SET parent_id = %s, level = 1 WHERE external_id = %s;",
                (parent, c["external_id"]),
            )
    return ids


def ensure_brand(conn, name: Optional[str], cache: Dict[str, int]) -> Optional[int]:
    if not name:
        return None
    name = name.strip()
    if name in cache:
        return cache[name]
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO svitanok.brands (name, slug)
            VALUES (%s, %s)
            ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
            RETURNING id;
            """,
            (name, slugify(name)),
        )
        cache[name] = int(cur.fetchone()[0])
    return cache[name]


def import_products(conn, offers: List[Dict[str, Any]], category_ids: Dict[str, int]) -> int:
    brands: Dict[str, int] = {}
    count = 0
    with conn.cursor() as cur:
        for o in offers:
            cur.execute(
                """
                INSERT INTO svitanok.products (
                    external_id, name, slug, description, price, old_price, currency, in_stock,
                    brand_id, category_id, images, attributes, vendor_code, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, 'UAH', %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (external_id) DO UPDATE
                SET name = EXCLUDED.name,
                    slug = EXCLUDED.slug,
                    description = EXCLUDED.description,
                    price = EXCLUDED.price,
                    old_price = EXCLUDED.old_price,
                    in_stock = EXCLUDED.in_stock,
                    brand_id = EXCLUDED.brand_id,
                    category_id = EXCLUDED.category_id,
                    images = EXCLUDED.images,
                    attributes = EXCLUDED.attributes,
                    vendor_code = EXCLUDED.vendor_code,
                    updated_at = now();
                """,
                (
                    o["external_id"],
                    o["name"],
                    o["slug"],
                    o.get("description"),
                    o["price"],
                    o.get("old_price"),
                    o["in_stock"],
                    ensure_brand(conn, o.get("vendor"), brands),
                    category_ids.get(o.get("category_external_id") or ""),
                    Jsonb(o.get("images") or []),
                    Jsonb(o.get("attributes") or {}),
                    o.get("vendor_code"),
                ),
            )
            count += 1
            if count % 100 == 0:
                logger.info("imported %s products", count)
    return count


def run_import(feed_path: Path) -> Tuple[int, int]:
    categories, offers = parse_feed(str(feed_path))
    logger.info("feed %s: %s categories, %s offers", feed_path, len(categories), len(offers))

    cfg = PostgresConfig()
    with get_conn(cfg) as conn:
        with conn.transaction():
            category_ids = import_categories(conn, categories)
            count = import_products(conn, offers, category_ids)
    logger.info("import complete: %s categories, %s products", len(category_ids), count)
    return len(category_ids), count


def main(argv: List[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", required=True, help="Path to the supplier YML feed")
    args = parser.parse_args(argv)

    run_import(Path(args.file))


if __name__ == "__main__":
    main()
