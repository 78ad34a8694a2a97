import sqlite3
from datetime import datetime, timedelta, timezone
from http import HTTPStatus

import pytest

from cloudstore import billing
from cloudstore.core import ApiError, AuthUser

SCHEMA = """
CREATE TABLE users (
    id TEXT PRIMARY KEY,
    email TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    balance NUMERIC NOT NULL DEFAULT 0
);
CREATE TABLE nat_plans (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    name TEXT NOT NULL,
    monthly_price NUMERIC NOT NULL,
    memory_mb INTEGER NOT NULL,
    storage_gb INTEGER NOT NULL,
    cpu_cores INTEGER NOT NULL,
    cpu_allowance_pct INTEGER NOT NULL,
    bandwidth_mbps INTEGER NOT NULL,
    traffic_gb INTEGER NOT NULL,
    max_inventory INTEGER,
    sold_inventory INTEGER NOT NULL DEFAULT 0,
    active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT,
    status TEXT NOT NULL,
    total_amount NUMERIC NOT NULL,
    idempotency_key TEXT,
    updated_at TEXT
);
CREATE TABLE invoices (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    order_id TEXT,
    amount NUMERIC NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    status TEXT NOT NULL,
    external_payment_ref TEXT,
    due_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    paid_at TEXT
);
CREATE TABLE balance_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount NUMERIC NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL,
    order_id TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

ALICE = AuthUser(id="alice", email="alice@example.com")
BOB = AuthUser(id="bob", email="bob@example.com")
ADMIN = AuthUser(id="root", role="admin", email="admin@example.com")


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    conn.executescript(SCHEMA)
    conn.executemany(
        "INSERT INTO users (id, email, role, balance) VALUES (?, ?, ?, ?)",
        [
            ("alice", "alice@example.com", "user", "5"),
            ("bob", "bob@example.com", "user", "0"),
            ("root", "admin@example.com", "admin", "0"),
        ],
    )
    conn.commit()
    yield conn
    conn.close()


def _iso(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat()


def _add_plan(db, plan_id, code, price, active=1, max_inventory=None):
    db.execute(
        "INSERT INTO nat_plans (id, code, name, monthly_price, memory_mb, storage_gb, cpu_cores, "
        "cpu_allowance_pct, bandwidth_mbps, traffic_gb, max_inventory, sold_inventory, active) "
        "VALUES (?, ?, ?, ?, 512, 10, 1, 50, 100, 1000, ?, 0, ?)",
        (plan_id, code, f"Plan {code}", price, max_inventory, active),
    )
    db.commit()


def _add_invoice(db, invoice_id, user_id, status, due_at, created_at="2024-01-01 00:00:00"):
    db.execute(
        "INSERT INTO invoices (id, user_id, amount, status, due_at, created_at) "
        "VALUES (?, ?, '9.99', ?, ?, ?)",
        (invoice_id, user_id, status, due_at, created_at),
    )
    db.commit()


def _add_order(db, order_id, user_id, status, amount):
    db.execute(
        "INSERT INTO orders (id, user_id, plan_id, status, total_amount) VALUES (?, ?, NULL, ?, ?)",
        (order_id, user_id, status, amount),
    )
    db.commit()


def _status_of(db, table, row_id):
    return db.execute(f"SELECT status FROM {table} WHERE id = ?", (row_id,)).fetchone()[0]


def test_public_plans_are_active_only_and_sorted_by_price(db):
    _add_plan(db, "p1", "big", "20.5")
    _add_plan(db, "p2", "small", "9.99")
    _add_plan(db, "p3", "gone", "1", active=0)

    plans = billing.list_public_plans(db)

    assert [plan.code for plan in plans] == ["small", "big"]
    assert plans[0].monthly_price == "9.99"
    assert plans[0].max_inventory is None
    assert plans[0].memory_mb == 512


def test_expire_overdue_invoices_only_touches_open_past_due(db):
    _add_invoice(db, "past-open", "alice", "open", _iso(timedelta(hours=-1)))
    _add_invoice(db, "future-open", "alice", "open", _iso(timedelta(hours=1)))
    _add_invoice(db, "past-paid", "alice", "paid", _iso(timedelta(hours=-1)))

    billing.expire_overdue_invoices(db)

    assert _status_of(db, "invoices", "past-open") == "expired"
    assert _status_of(db, "invoices", "future-open") == "open"
    assert _status_of(db, "invoices", "past-paid") == "paid"


def test_get_balance_returns_stored_value(db):
    assert billing.get_balance(db, ALICE) == "5"


def test_get_balance_of_unknown_user_fails(db):
    with pytest.raises(ApiError) as info:
        billing.get_balance(db, AuthUser(id="nobody"))
    assert info.value.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert info.value.message == "failed to load balance"


def test_balance_transactions_newest_first_with_order_status(db):
    _add_order(db, "o1", "alice", "paid", "3")
    db.executemany(
        "INSERT INTO balance_transactions (id, user_id, amount, type, description, order_id, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        [
            ("t1", "alice", "10", "recharge", "top up", None, "2024-01-01 00:00:00"),
            ("t2", "alice", "-3", "purchase", "buy", "o1", "2024-01-02 00:00:00"),
            ("t3", "bob", "7", "recharge", "other", None, "2024-01-03 00:00:00"),
        ],
    )
    db.commit()

    items = billing.list_balance_transactions(db, ALICE)

    assert [item.id for item in items] == ["t2", "t1"]
    assert items[0].order_status == "paid"
    assert items[0].type == "purchase"
    assert items[1].order_id is None
    assert items[1].order_status is None


def test_balance_transactions_are_limited(db):
    db.executemany(
        "INSERT INTO balance_transactions (id, user_id, amount, type, description, created_at) "
        "VALUES (?, 'alice', '1', 'recharge', 'x', ?)",
        [(f"t{n:03d}", f"2024-01-01 00:{n // 60:02d}:{n % 60:02d}") for n in range(120)],
    )
    db.commit()

    items = billing.list_balance_transactions(db, ALICE)

    assert len(items) == billing._TRANSACTION_LIMIT
    assert items[0].id == "t119"


def test_refund_failed_order_credits_balance_and_logs(db):
    _add_order(db, "o-failed", "alice", "failed", "12.5")

    result = billing.refund_failed_order(db, ALICE, "o-failed")

    assert result == HTTPStatus.OK
    assert float(billing.get_balance(db, ALICE)) == pytest.approx(5 + 12.5)
    assert _status_of(db, "orders", "o-failed") == "refunded"
    rows = db.execute(
        "SELECT user_id, CAST(amount AS REAL), type, description, order_id FROM balance_transactions"
    ).fetchall()
    assert rows == [("alice", 12.5, "refund", "Refund for failed order o-failed", "o-failed")]


def test_refund_of_missing_order_is_not_found(db):
    with pytest.raises(ApiError) as info:
        billing.refund_failed_order(db, ALICE, "missing")
    assert info.value.status == HTTPStatus.NOT_FOUND


def test_refund_of_other_users_order_is_not_found(db):
    _add_order(db, "o-bob", "bob", "failed", "4")
    with pytest.raises(ApiError) as info:
        billing.refund_failed_order(db, ALICE, "o-bob")
    assert info.value.status == HTTPStatus.NOT_FOUND
    assert _status_of(db, "orders", "o-bob") == "failed"


def test_refund_of_paid_order_is_rejected_without_changes(db):
    _add_order(db, "o-paid", "alice", "paid", "4")

    with pytest.raises(ApiError) as info:
        billing.refund_failed_order(db, ALICE, "o-paid")

    assert info.value.status == HTTPStatus.BAD_REQUEST
    assert info.value.message == "only failed orders can be refunded"
    assert billing.get_balance(db, ALICE) == "5"
    assert db.execute("SELECT COUNT(*) FROM balance_transactions").fetchone()[0] == 0


def test_list_invoices_scopes_by_user_and_expires(db):
    _add_invoice(db, "a1", "alice", "open", _iso(timedelta(hours=-1)), "2024-01-01 00:00:00")
    _add_invoice(db, "a2", "alice", "open", _iso(timedelta(hours=1)), "2024-01-02 00:00:00")
    _add_invoice(db, "b1", "bob", "open", _iso(timedelta(hours=1)), "2024-01-03 00:00:00")

    mine = billing.list_invoices(db, ALICE)

    assert [item.id for item in mine] == ["a2", "a1"]
    assert {item.id: item.status for item in mine} == {"a2": "open", "a1": "expired"}
    assert all(item.amount == "9.99" for item in mine)


def test_list_invoices_for_admin_sees_everyone_with_limit(db):
    for n in range(60):
        owner = "alice" if n % 2 else "bob"
        _add_invoice(
            db, f"i{n:02d}", owner, "paid", _iso(timedelta(hours=1)), f"2024-01-01 00:00:{n:02d}"
        )

    items = billing.list_invoices(db, ADMIN)

    assert len(items) == billing._INVOICE_LIMIT
    assert items[0].id == "i59"
    assert {item.id for item in items} >= {"i58", "i59"}