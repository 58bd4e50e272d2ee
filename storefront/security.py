from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException

from .config import admin_key as configured_admin_key


PBKDF2_ITERATIONS = 180_000


def _jwt_secret() -> str:
    secret = (os.getenv("JWT_SECRET", "") or "").strip()
    if not secret:
        raise HTTPException(status_code=500, detail="JWT not configured")
    return secret


def _jwt_issuer() -> str:
    return (os.getenv("JWT_ISSUER", "svitanok") or "svitanok").strip()


def _jwt_audience() -> str:
    return (os.getenv("JWT_AUDIENCE", "svitanok") or "svitanok").strip()


def _jwt_ttl_minutes() -> int:
    try:
        return int(os.getenv("JWT_TTL_MINUTES", "720"))
    except ValueError:
        return 720


def create_access_token(*, subject: str, role: str, extra: Optional[Dict[str, Any]] = None) -> str:
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "iss": _jwt_issuer(),
        "aud": _jwt_audience(),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=_jwt_ttl_minutes())).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            audience=_jwt_audience(),
            issuer=_jwt_issuer(),
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        return None
    return token


def optional_user(authorization: Optional[str]) -> Optional[Dict[str, Any]]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return decode_access_token(token)


def require_user(authorization: Optional[str]) -> Dict[str, Any]:
    payload = optional_user(authorization)
    if payload is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return payload


def user_id_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[int]:
    if not payload:
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


def require_admin_from_token_payload(payload: Dict[str, Any]) -> None:
    role = str(payload.get("role") or "")
    if role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")


def secrets_match(given: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset expected value never matches."""
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def require_admin(authorization: Optional[str], admin_key: Optional[str]) -> None:
    """Accept either the shared X-Admin-Key or a bearer token with the admin role."""
    if secrets_match(admin_key, configured_admin_key()):
        return
    token = parse_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=403, detail="Admin access required")
    require_admin_from_token_payload(decode_access_token(token))


def hash_password(password: str) -> str:
    pwd = (password or "").strip()
    if len(pwd) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")
    if not re.search(r"[0-9]", pwd):
        raise HTTPException(status_code=400, detail="Password must include at least 1 number")

    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", pwd.encode("utf-8"), salt, PBKDF2_ITERATIONS)

    return "pbkdf2_sha256$%d$%s$%s" % (
        PBKDF2_ITERATIONS,
        base64.urlsafe_b64encode(salt).decode("utf-8"),
        base64.urlsafe_b64encode(dk).decode("utf-8"),
    )


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, it_s, salt_b64, dk_b64 = (stored or "").split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = base64.urlsafe_b64decode(salt_b64.encode("utf-8"))
        expected = base64.urlsafe_b64decode(dk_b64.encode("utf-8"))
    except ValueError:
        return False
    actual = hashlib.pbkdf2_hmac("sha256", (password or "").strip().encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)
