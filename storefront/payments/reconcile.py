"""Apply a verified provider payment event to an order exactly once.

Providers deliver webhooks at least once. The transaction id is the
idempotency key: a repeat delivery is acknowledged without side effects,
while a database failure is reported as 500 so the provider retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import psycopg
from fastapi import HTTPException

from ..store import payments as store


logger = logging.getLogger(__name__)

PAYMENT_STATUSES = ("pending", "paid", "failed", "processing", "refunded")

APPLIED = "applied"
ALREADY_PROCESSED = "already_processed"
STALE = "stale"


@dataclass
class PaymentEvent:
    provider: str
    transaction_id: str
    status: str
    provider_status: str
    order_id: Optional[int] = None
    invoice_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "UAH"
    event_time: Optional[datetime] = None
    source: str = "webhook"
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    order_id: Optional[int] = None
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
    previous_payment_status: Optional[str] = None

    @property
    def became_paid(self) -> bool:
        return (
            self.outcome == APPLIED
            and self.payment_status == "paid"
            and self.previous_payment_status != "paid"
        )


def next_order_status(current_status: str, payment_status: str) -> str:
    if payment_status == "paid" and current_status == "pending":
        return "processing"
    return current_status


def _history_entry(event: PaymentEvent) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "provider": event.provider,
        "status": event.status,
        "provider_status": event.provider_status,
        "transaction_id": event.transaction_id,
        "source": event.source,
    }


def _is_stale(conn, event: PaymentEvent) -> bool:
    if event.event_time is None or not event.invoice_id:
        return False
    latest = store.latest_event_time(conn, event.invoice_id)
    return latest is not None and event.event_time < latest


def apply_payment_event(conn, event: PaymentEvent) -> ReconcileResult:
    if event.status not in PAYMENT_STATUSES:
        raise ValueError(f"unknown payment status {event.status!r}")

    try:
        with conn.transaction():
            if store.transaction_exists(conn, event.transaction_id):
                logger.info("payment %s already processed", event.transaction_id)
                return ReconcileResult(ALREADY_PROCESSED)

            order = store.lock_order(conn, order_id=event.order_id, invoice_id=event.invoice_id)
            if order is None:
                logger.warning(
                    "payment event for unknown order provider=%s order_id=%s invoice_id=%s",
                    event.provider,
                    event.order_id,
                    event.invoice_id,
                )
                raise HTTPException(status_code=404, detail="Order not found")

            order_id = int(order["id"])
            current_status = str(order["status"])
            previous_payment = str(order["payment_status"])

            if _is_stale(conn, event):
                store.insert_transaction(conn, event, order_id)
                logger.info(
                    "stale payment event ignored order=%s tx=%s status=%s",
                    order_id,
                    event.transaction_id,
                    event.provider_status,
                )
                return ReconcileResult(STALE, order_id, previous_payment, current_status, previous_payment)

            new_status = next_order_status(current_status, event.status)
            store.insert_transaction(conn, event, order_id)
            store.update_order_payment(
                conn,
                order_id,
                event.status,
                new_status,
                event.transaction_id,
                _history_entry(event),
            )
    except psycopg.errors.UniqueViolation:
        logger.info("payment %s recorded by a concurrent delivery", event.transaction_id)
        return ReconcileResult(ALREADY_PROCESSED)
    except psycopg.Error:
        logger.exception("failed to persist payment event tx=%s", event.transaction_id)
        raise HTTPException(status_code=500, detail="Failed to update order")

    logger.info(
        "payment applied provider=%s order=%s payment_status=%s->%s order_status=%s->%s",
        event.provider,
        order_id,
        previous_payment,
        event.status,
        current_status,
        new_status,
    )
    return ReconcileResult(APPLIED, order_id, event.status, new_status, previous_payment)
