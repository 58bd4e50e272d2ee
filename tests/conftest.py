import copy
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg
import pytest

from storefront import ratelimit
from storefront.store import payments as payments_store


class FakeConn:
    """Stands in for a psycopg connection; ``transaction()`` rolls the fake store back on error."""

    def __init__(self, store: Optional["FakePaymentStore"] = None):
        self.store = store
        self.committed = 0
        self.rolled_back = 0

    @contextmanager
    def transaction(self):
        snapshot = self.store.snapshot() if self.store is not None else None
        try:
            yield self
        except BaseException:
            if self.store is not None:
                self.store.restore(snapshot)
            self.rolled_back += 1
            raise
        self.committed += 1


class FakePaymentStore:
    def __init__(self):
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.history: Dict[int, List[Dict[str, Any]]] = {}
        self.fail_on_insert: Optional[Exception] = None
        self.racing_insert = False

    def add_order(self, order_id: int, status: str = "pending", payment_status: str = "pending", invoice_id: Optional[str] = None, total: str = "100.00"):
        self.orders[order_id] = {
            "id": order_id,
            "status": status,
            "payment_status": payment_status,
            "invoice_id": invoice_id,
            "total_price": total,
            "customer_name": "Олена",
            "customer_phone": "380501112233",
            "payment_transaction_id": None,
        }
        return self.orders[order_id]

    def snapshot(self):
        return copy.deepcopy((self.orders, self.transactions, self.history))

    def restore(self, snap) -> None:
        self.orders, self.transactions, self.history = snap

    def transaction_exists(self, conn, transaction_id: str) -> bool:
        return transaction_id in self.transactions

    def lock_order(self, conn, order_id=None, invoice_id=None):
        if order_id is not None:
            order = self.orders.get(int(order_id))
        else:
            order = next((o for o in self.orders.values() if o["invoice_id"] == invoice_id), None)
        return dict(order) if order else None

    def latest_event_time(self, conn, invoice_id: str):
        times = [t["event_time"] for t in self.transactions.values() if t["invoice_id"] == invoice_id and t["event_time"]]
        return max(times) if times else None

    def insert_transaction(self, conn, event, order_id: int) -> None:
        if self.fail_on_insert is not None:
            raise self.fail_on_insert
        if self.racing_insert or event.transaction_id in self.transactions:
            raise psycopg.errors.UniqueViolation("duplicate key value violates unique constraint")
        self.transactions[event.transaction_id] = {
            "order_id": order_id,
            "invoice_id": event.invoice_id,
            "status": event.status,
            "event_time": event.event_time,
        }

    def update_order_payment(self, conn, order_id, payment_status, order_status, transaction_id, history_entry) -> None:
        order = self.orders[int(order_id)]
        order["payment_status"] = payment_status
        order["status"] = order_status
        order["payment_transaction_id"] = transaction_id
        self.history.setdefault(int(order_id), []).append(history_entry)


@pytest.fixture
def payment_store(monkeypatch) -> FakePaymentStore:
    store = FakePaymentStore()
    for name in ("transaction_exists", "lock_order", "latest_event_time", "insert_transaction", "update_order_payment"):
        monkeypatch.setattr(payments_store, name, getattr(store, name))
    return store


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    ratelimit.limiter.reset()
    yield
    ratelimit.limiter.reset()


@pytest.fixture
def fake_get_conn(payment_store):
    @contextmanager
    def _get_conn():
        yield FakeConn(payment_store)

    return _get_conn
