from datetime import datetime, timedelta, timezone
from decimal import Decimal

import psycopg
import pytest
from fastapi import HTTPException

from conftest import FakeConn
from storefront.payments.reconcile import (
    ALREADY_PROCESSED,
    APPLIED,
    STALE,
    PaymentEvent,
    apply_payment_event,
    next_order_status,
)


T0 = datetime(2025, 5, 1, 10, 0, tzinfo=timezone.utc)


def _liqpay_event(order_id=1, status="paid", tx="liqpay:1001", provider_status="success"):
    return PaymentEvent(
        provider="liqpay",
        transaction_id=tx,
        status=status,
        provider_status=provider_status,
        order_id=order_id,
        amount=Decimal("100.00"),
    )


def _mono_event(invoice_id="inv-1", status="paid", provider_status="success", when=T0):
    return PaymentEvent(
        provider="monobank",
        transaction_id=f"mono:{invoice_id}:{provider_status}",
        status=status,
        provider_status=provider_status,
        invoice_id=invoice_id,
        event_time=when,
    )


@pytest.mark.parametrize(
    "current,payment,expected",
    [
        ("pending", "paid", "processing"),
        ("pending", "failed", "pending"),
        ("pending", "processing", "pending"),
        ("shipped", "paid", "shipped"),
        ("cancelled", "refunded", "cancelled"),
    ],
)
def test_only_paid_moves_pending_to_processing(current, payment, expected):
    assert next_order_status(current, payment) == expected


def test_paid_event_advances_order(payment_store):
    payment_store.add_order(1)
    conn = FakeConn(payment_store)

    result = apply_payment_event(conn, _liqpay_event())

    assert result.outcome == APPLIED
    assert result.became_paid is True
    assert result.order_status == "processing"
    order = payment_store.orders[1]
    assert order["payment_status"] == "paid"
    assert order["status"] == "processing"
    assert order["payment_transaction_id"] == "liqpay:1001"
    assert "liqpay:1001" in payment_store.transactions
    assert payment_store.history[1][0]["provider_status"] == "success"
    assert conn.committed == 1


def test_repeat_delivery_is_acknowledged_without_side_effects(payment_store):
    payment_store.add_order(1)
    conn = FakeConn(payment_store)
    apply_payment_event(conn, _liqpay_event())
    payment_store.orders[1]["status"] = "shipped"

    again = apply_payment_event(conn, _liqpay_event())

    assert again.outcome == ALREADY_PROCESSED
    assert again.became_paid is False
    assert payment_store.orders[1]["status"] == "shipped"
    assert len(payment_store.history[1]) == 1


def test_failed_payment_keeps_order_pending(payment_store):
    payment_store.add_order(2)
    result = apply_payment_event(FakeConn(payment_store), _liqpay_event(order_id=2, status="failed", tx="liqpay:2", provider_status="failure"))
    assert result.outcome == APPLIED
    assert result.became_paid is False
    assert payment_store.orders[2] == {**payment_store.orders[2], "status": "pending", "payment_status": "failed"}


def test_refund_after_payment(payment_store):
    payment_store.add_order(3, status="processing", payment_status="paid")
    result = apply_payment_event(FakeConn(payment_store), _liqpay_event(order_id=3, status="refunded", tx="liqpay:3r", provider_status="reversed"))
    assert result.payment_status == "refunded"
    assert result.order_status == "processing"


def test_unknown_order_is_404_and_nothing_is_recorded(payment_store):
    conn = FakeConn(payment_store)
    with pytest.raises(HTTPException) as ei:
        apply_payment_event(conn, _liqpay_event(order_id=404))
    assert ei.value.status_code == 404
    assert payment_store.transactions == {}
    assert conn.rolled_back == 1


def test_order_is_found_by_invoice(payment_store):
    payment_store.add_order(5, invoice_id="inv-5")
    result = apply_payment_event(FakeConn(payment_store), _mono_event(invoice_id="inv-5"))
    assert result.order_id == 5
    assert payment_store.orders[5]["payment_status"] == "paid"


def test_out_of_order_monobank_event_is_recorded_but_not_applied(payment_store):
    payment_store.add_order(6, invoice_id="inv-6")
    conn = FakeConn(payment_store)
    apply_payment_event(conn, _mono_event("inv-6", "paid", "success", T0 + timedelta(minutes=2)))

    late = apply_payment_event(conn, _mono_event("inv-6", "processing", "processing", T0))

    assert late.outcome == STALE
    assert late.became_paid is False
    assert payment_store.orders[6]["payment_status"] == "paid"
    assert "mono:inv-6:processing" in payment_store.transactions


def test_concurrent_insert_counts_as_processed(payment_store):
    payment_store.add_order(7)
    payment_store.racing_insert = True
    result = apply_payment_event(FakeConn(payment_store), _liqpay_event(order_id=7, tx="liqpay:7"))
    assert result.outcome == ALREADY_PROCESSED
    assert payment_store.orders[7]["payment_status"] == "pending"


def test_database_failure_is_500_and_rolled_back(payment_store):
    payment_store.add_order(8)
    payment_store.fail_on_insert = psycopg.OperationalError("connection lost")
    conn = FakeConn(payment_store)

    with pytest.raises(HTTPException) as ei:
        apply_payment_event(conn, _liqpay_event(order_id=8, tx="liqpay:8"))

    assert ei.value.status_code == 500
    assert payment_store.orders[8]["payment_status"] == "pending"
    assert payment_store.transactions == {}

    # The provider retries once the database is back.
    payment_store.fail_on_insert = None
    assert apply_payment_event(conn, _liqpay_event(order_id=8, tx="liqpay:8")).outcome == APPLIED


def test_unknown_internal_status_is_rejected(payment_store):
    with pytest.raises(ValueError):
        apply_payment_event(FakeConn(payment_store), _liqpay_event(status="weird"))
