from __future__ import annotations

from typing import List, Optional

import psycopg
from fastapi import APIRouter, Header, HTTPException

from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..models import QuestionIn, QuestionOut, RatingSummaryOut, ReviewIn, ReviewOut
from ..security import optional_user, user_id_from_payload


router = APIRouter(prefix="/api/products", tags=["reviews"])


def _ts(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _review_out(r) -> ReviewOut:
    return ReviewOut(
        id=int(r[0]),
        product_id=int(r[1]),
        user_name=str(r[2]),
        rating=int(r[3]),
        comment=str(r[4]),
        admin_reply=r[5],
        is_approved=bool(r[6]),
        created_at=_ts(r[7]),
    )


def _question_out(r) -> QuestionOut:
    return QuestionOut(
        id=int(r[0]),
        product_id=int(r[1]),
        user_name=str(r[2]),
        question=str(r[3]),
        answer=r[4],
        is_approved=bool(r[5]),
        created_at=_ts(r[6]),
    )


def _ensure_product(cur, product_id: int) -> None:
    cur.execute("SELECT 1 FROM svitanok.products WHERE id = %s;", (product_id,))
    if cur.fetchone() is None:
        raise HTTPException(status_code=404, detail="Product not found")


@router.get("/{product_id}/reviews", response_model=List[ReviewOut])
def list_reviews(product_id: int):
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, product_id, user_name, rating, comment, admin_reply, is_approved, created_at
                    FROM svitanok.reviews
                    WHERE product_id = %s AND is_approved
                    ORDER BY created_at DESC, id DESC;
                    """,
                    (product_id,),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Reviews")
    return [_review_out(r) for r in rows]


@router.get("/{product_id}/rating", response_model=RatingSummaryOut)
def rating_summary(product_id: int):
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COALESCE(AVG(rating), 0), COUNT(*)
                    FROM svitanok.reviews
                    WHERE product_id = %s AND is_approved;
                    """,
                    (product_id,),
                )
                avg, count = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Reviews")
    return RatingSummaryOut(product_id=product_id, average=round(float(avg), 2), count=int(count))


@router.post("/{product_id}/reviews", response_model=ReviewOut, status_code=201)
def create_review(
    product_id: int,
    req: ReviewIn,
    authorization: str | None = Header(None, alias="Authorization"),
):
    user_id = user_id_from_payload(optional_user(authorization))
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                _ensure_product(cur, product_id)
                cur.execute(
                    """
                    INSERT INTO svitanok.reviews (product_id, user_id, user_name, rating, comment)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, product_id, user_name, rating, comment, admin_reply, is_approved, created_at;
                    """,
                    (product_id, user_id, req.user_name.strip(), req.rating, req.comment.strip()),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Reviews")
    return _review_out(row)


@router.get("/{product_id}/questions", response_model=List[QuestionOut])
def list_questions(product_id: int):
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, product_id, user_name, question, answer, is_approved, created_at
                    FROM svitanok.product_questions
                    WHERE product_id = %s AND is_approved
                    ORDER BY created_at DESC, id DESC;
                    """,
                    (product_id,),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Questions")
    return [_question_out(r) for r in rows]


@router.post("/{product_id}/questions", response_model=QuestionOut, status_code=201)
def ask_question(
    product_id: int,
    req: QuestionIn,
    authorization: str | None = Header(None, alias="Authorization"),
):
    user_id = user_id_from_payload(optional_user(authorization))
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                _ensure_product(cur, product_id)
                cur.execute(
                    """
                    INSERT INTO svitanok.product_questions (product_id, user_id, user_name, question)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, product_id, user_name, question, answer, is_approved, created_at;
                    """,
                    (product_id, user_id, req.user_name.strip(), req.question.strip()),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Questions")
    return _question_out(row)
