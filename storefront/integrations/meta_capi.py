"""Server-side events for the Meta Conversions API."""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from .. import config


logger = logging.getLogger(__name__)

GRAPH_VERSION = "v18.0"
MAX_ATTEMPTS = 3
# Graph errors that will not succeed on retry (bad parameter, invalid token).
NON_RETRYABLE_CODES = (100, 190)

_sleep = time.sleep


class ConversionsAPIError(Exception):
    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=10.0)


def hash_pii(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def is_test_mode() -> bool:
    pixel, token = config.meta_capi_settings()
    return not pixel or not token or token == "TEST_TOKEN" or "test" in pixel.lower()


def build_user_data(
    user_data: Dict[str, Any],
    client_user_agent: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for source, key in (("email", "em"), ("phone", "ph"), ("first_name", "fn"), ("last_name", "ln"), ("external_id", "external_id")):
        hashed = hash_pii(user_data.get(source))
        if hashed:
            out[key] = [hashed]
    ip = user_data.get("client_ip_address") or client_ip
    if ip:
        out["client_ip_address"] = ip
    if client_user_agent:
        out["client_user_agent"] = client_user_agent
    for key in ("fbp", "fbc"):
        if user_data.get(key):
            out[key] = user_data[key]
    return out


def build_event(
    event_name: str,
    user_data: Dict[str, Any],
    custom_data: Dict[str, Any],
    event_id: Optional[str] = None,
    event_time: Optional[int] = None,
    event_source_url: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "event_name": event_name,
        "event_time": int(event_time or time.time()),
        "event_id": event_id or f"{event_name.lower()}_{uuid.uuid4().hex[:16]}",
        "event_source_url": event_source_url or "",
        "action_source": "website",
        "user_data": user_data,
        "custom_data": custom_data,
    }


def send_events(events: List[Dict[str, Any]], retries: bool = True) -> Dict[str, Any]:
    """POST events to the pixel. Retries with 1s, 2s backoff unless the error is final."""
    pixel, token = config.meta_capi_settings()
    if is_test_mode():
        logger.info("capi test mode: %s not sent", ",".join(e["event_name"] for e in events))
        return {"test_mode": True, "events_received": len(events)}

    url = f"https://graph.facebook.com/{GRAPH_VERSION}/{pixel}/events"
    body = {"data": events, "access_token": token}
    attempts = MAX_ATTEMPTS if retries else 1
    last_error: Any = None

    for attempt in range(attempts):
        try:
            with _http_client() as client:
                resp = client.post(url, json=body)
            try:
                result = resp.json()
            except ValueError:
                result = {"error": {"message": resp.text[:200]}}
            if resp.status_code < 400:
                return result
            last_error = result
            code = (result.get("error") or {}).get("code")
            if code in NON_RETRYABLE_CODES:
                break
        except httpx.HTTPError as e:
            last_error = str(e)

        if attempt < attempts - 1:
            _sleep(2 ** attempt)

    logger.error("capi send failed events=%s error=%s", [e["event_name"] for e in events], last_error)
    raise ConversionsAPIError("Failed to send event to Meta", last_error)
