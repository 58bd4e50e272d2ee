from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import List

from dotenv import load_dotenv


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_PROJECT_ROOT / ".env")


CURRENCY = "UAH"
MONOBANK_CCY = 980
FREE_SHIPPING_THRESHOLD = Decimal("4000")
# Delivery is paid to the carrier on receipt.
SHIPPING_COST = Decimal("0")
PARTS_COUNT_MIN = 2
PARTS_COUNT_MAX = 12

PRODUCTION_ORIGINS = ["https://svitanok.com", "https://www.svitanok.com"]
DEVELOPMENT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _env(name: str) -> str:
    return (os.getenv(name, "") or "").strip()


@dataclass(frozen=True)
class PostgresConfig:
    host: str = field(default_factory=lambda: os.getenv("PGHOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("PGPORT", "5432")))
    database: str = field(default_factory=lambda: os.getenv("PGDATABASE", "svitanok"))
    user: str = field(default_factory=lambda: os.getenv("PGUSER", "svitanok"))
    password: str = field(default_factory=lambda: os.getenv("PGPASSWORD", "svitanok"))

    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )


def app_env() -> str:
    return _env("APP_ENV") or "production"


def is_development() -> bool:
    return app_env() in ("development", "dev", "local")


def site_url() -> str:
    return (_env("SITE_URL") or "https://svitanok.com").rstrip("/")


def cors_origins() -> List[str]:
    origins = list(PRODUCTION_ORIGINS)
    if is_development():
        origins.extend(DEVELOPMENT_ORIGINS)
    for extra in _env("CORS_ORIGINS").split(","):
        extra = extra.strip().rstrip("/")
        if extra and extra not in origins:
            origins.append(extra)
    return origins


def admin_key() -> str:
    return _env("ADMIN_KEY")


def admin_credentials() -> tuple[str, str]:
    return _env("ADMIN_USER"), _env("ADMIN_PASSWORD")


def liqpay_keys() -> tuple[str, str]:
    return _env("LIQPAY_PUBLIC_KEY"), _env("LIQPAY_PRIVATE_KEY")


def liqpay_sandbox() -> bool:
    flag = _env("LIQPAY_SANDBOX")
    if flag:
        return flag.lower() in ("1", "true", "yes")
    return is_development()


def monobank_token() -> str:
    return _env("MONOPAY_TOKEN") or _env("MONOBANK_TOKEN")


def monobank_api_base() -> str:
    return (_env("MONOBANK_API_BASE") or "https://api.monobank.ua").rstrip("/")


def monobank_pubkey() -> str:
    return _env("MONOBANK_PUBKEY")


def nova_poshta_api_key() -> str:
    return _env("NOVA_POSHTA_API_KEY")


@dataclass(frozen=True)
class NovaPoshtaSender:
    sender_ref: str
    city_ref: str
    address_ref: str
    contact_ref: str
    phone: str

    def missing(self) -> List[str]:
        names = {
            "NP_SENDER_REF": self.sender_ref,
            "NP_CITY_SENDER_REF": self.city_ref,
            "NP_ADDRESS_SENDER_REF": self.address_ref,
            "NP_CONTACT_PERSON_REF": self.contact_ref,
            "NP_SENDERS_PHONE": self.phone,
        }
        return [k for k, v in names.items() if not v]


def nova_poshta_sender() -> NovaPoshtaSender:
    return NovaPoshtaSender(
        sender_ref=_env("NP_SENDER_REF"),
        city_ref=_env("NP_CITY_SENDER_REF"),
        address_ref=_env("NP_ADDRESS_SENDER_REF"),
        contact_ref=_env("NP_CONTACT_PERSON_REF"),
        phone=_env("NP_SENDERS_PHONE"),
    )


def ukrposhta_base_url() -> str:
    if _env("UKRPOSHTA_DEBUG").lower() == "true":
        return "https://dev.ukrposhta.ua/ecom/0.0.1"
    return "https://www.ukrposhta.ua/ecom/0.0.1"


def ukrposhta_tokens() -> tuple[str, str]:
    return _env("UKRPOSHTA_BEARER_TOKEN"), _env("UKRPOSHTA_COUNTERPARTY_TOKEN")


def ukrposhta_sender() -> tuple[str, str]:
    return _env("UKRPOSHTA_SENDER_REF"), _env("UKRPOSHTA_SENDER_CONTACT_REF")


def resend_settings() -> tuple[str, str]:
    return _env("RESEND_API_KEY"), _env("FROM_EMAIL")


def telegram_settings() -> tuple[str, str]:
    return _env("TELEGRAM_BOT_TOKEN"), _env("TELEGRAM_CHAT_ID")


def meta_capi_settings() -> tuple[str, str]:
    pixel = _env("FB_PIXEL_ID") or _env("VITE_FB_PIXEL_ID")
    token = _env("META_CAPI_ACCESS_TOKEN") or _env("FB_CAPI_ACCESS_TOKEN")
    return pixel, token
