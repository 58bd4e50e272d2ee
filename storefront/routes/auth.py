from __future__ import annotations

import logging
import re
from typing import List

import psycopg
from fastapi import APIRouter, Header, HTTPException
from psycopg.rows import dict_row

from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..models import AuthLoginIn, AuthSignupIn, AuthTokenOut, ProductOut, ProfileIn, ProfileOut
from ..security import (
    create_access_token,
    hash_password,
    require_user,
    user_id_from_payload,
    verify_password,
)
from .catalog import _PRODUCT_SELECT, _product_out


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _validate_email(email: str) -> str:
    e = (email or "").strip().lower()
    if not e or len(e) > 320 or not _EMAIL_RE.match(e):
        raise HTTPException(status_code=400, detail="Invalid email")
    return e


def _current_user_id(authorization: str | None) -> int:
    user_id = user_id_from_payload(require_user(authorization))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def _profile_out(r) -> ProfileOut:
    return ProfileOut(id=int(r[0]), email=str(r[1]), full_name=r[2], phone=r[3], address=r[4], role=str(r[5]))


@router.post("/auth/signup", response_model=AuthTokenOut, status_code=201)
def signup(req: AuthSignupIn):
    email = _validate_email(req.email)
    password_hash = hash_password(req.password)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO svitanok.profiles (email, password_hash, full_name, phone)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, role;
                    """,
                    (email, password_hash, req.full_name, req.phone),
                )
                user_id, role = cur.fetchone()
    except psycopg.errors.UniqueViolation:
        raise HTTPException(status_code=409, detail="Email already registered")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Auth")

    logger.info("signup user_id=%s", user_id)
    return AuthTokenOut(access_token=create_access_token(subject=str(user_id), role=str(role), extra={"email": email}))


@router.post("/auth/login", response_model=AuthTokenOut)
def login(req: AuthLoginIn):
    email = _validate_email(req.email)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, password_hash, role FROM svitanok.profiles WHERE email = %s;",
                    (email,),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Auth")

    if row is None or not verify_password(req.password, row[1]):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return AuthTokenOut(access_token=create_access_token(subject=str(row[0]), role=str(row[2]), extra={"email": email}))


@router.get("/auth/me", response_model=ProfileOut)
def me(authorization: str | None = Header(None, alias="Authorization")):
    user_id = _current_user_id(authorization)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, email, full_name, phone, address, role FROM svitanok.profiles WHERE id = %s;",
                    (user_id,),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Auth")
    if row is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _profile_out(row)


@router.put("/profile", response_model=ProfileOut)
def update_profile(req: ProfileIn, authorization: str | None = Header(None, alias="Authorization")):
    user_id = _current_user_id(authorization)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE svitanok.profiles
                    SET full_name = %s, phone = %s, address = %s
                    WHERE id = %s
                    RETURNING id, email, full_name, phone, address, role;
                    """,
                    (req.full_name, req.phone, req.address, user_id),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Auth")
    if row is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _profile_out(row)


@router.get("/favorites", response_model=List[ProductOut])
def list_favorites(authorization: str | None = Header(None, alias="Authorization")):
    user_id = _current_user_id(authorization)
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    _PRODUCT_SELECT
                    + """
                    JOIN svitanok.favorites f ON f.product_id = p.id
                    WHERE f.user_id = %s
                    ORDER BY f.created_at DESC;
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Favorites")
    return [_product_out(r) for r in rows]


@router.post("/favorites/{product_id}", status_code=204)
def add_favorite(product_id: int, authorization: str | None = Header(None, alias="Authorization")):
    user_id = _current_user_id(authorization)
    try:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO svitanok.favorites (user_id, product_id)
                VALUES (%s, %s)
                ON CONFLICT (user_id, product_id) DO NOTHING;
                """,
                (user_id, product_id),
            )
    except psycopg.errors.ForeignKeyViolation:
        raise HTTPException(status_code=404, detail="Product not found")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Favorites")


@router.delete("/favorites/{product_id}", status_code=204)
def remove_favorite(product_id: int, authorization: str | None = Header(None, alias="Authorization")):
    user_id = _current_user_id(authorization)
    try:
        with get_conn() as conn:
            conn.execute(
                "DELETE FROM svitanok.favorites WHERE user_id = %s AND product_id = %s;",
                (user_id, product_id),
            )
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Favorites")
