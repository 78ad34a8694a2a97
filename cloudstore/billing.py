"""Plans, balances, balance transactions, refunds and invoices."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from http import HTTPStatus
from typing import Iterator

from cloudstore.core import ApiError, AuthUser, transaction

log = logging.getLogger(__name__)

_INVOICE_LIMIT = 50
_TRANSACTION_LIMIT = 100


@dataclass(frozen=True)
class PublicPlanItem:
    """A plan offered for sale."""

    id: str
    code: str
    name: str
    monthly_price: str
    memory_mb: int
    storage_gb: int
    cpu_cores: int
    cpu_allowance_pct: int
    bandwidth_mbps: int
    traffic_gb: int
    max_inventory: int | None
    sold_inventory: int


@dataclass(frozen=True)
class InvoiceItem:
    """An invoice as shown to its owner or to an admin."""

    id: str
    amount: str
    status: str
    order_id: str | None
    external_payment_ref: str | None
    due_at: str
    created_at: str
    paid_at: str | None


@dataclass(frozen=True)
class BalanceTransactionItem:
    """A movement on a user's balance, with the status of its order if any."""

    id: str
    amount: str
    type: str
    description: str
    created_at: str
    order_id: str | None
    order_status: str | None


@contextmanager
def _db_failure(message: str, log_message: str, **context: object) -> Iterator[None]:
    """Turn a database error into a 500 ApiError carrying ``message``."""
    try:
        yield
    except sqlite3.Error as err:
        log.error("%s: %s %s", log_message, err, context or "")
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, message) from err


def list_public_plans(db: sqlite3.Connection) -> list[PublicPlanItem]:
    """Active plans, cheapest first."""
    with _db_failure("failed to load plans", "failed to query public plans"):
        rows = db.execute(
            "SELECT id, code, name, CAST(monthly_price AS TEXT), memory_mb, storage_gb, "
            "cpu_cores, cpu_allowance_pct, bandwidth_mbps, traffic_gb, max_inventory, "
            "sold_inventory FROM nat_plans WHERE active = 1 ORDER BY monthly_price ASC"
        ).fetchall()
    return [PublicPlanItem(*row) for row in rows]


def expire_overdue_invoices(db: sqlite3.Connection) -> None:
    """Mark every open invoice whose due time has passed as expired."""
    with _db_failure("failed to expire invoices", "failed to expire overdue invoices"):
        db.execute(
            "UPDATE invoices SET status = 'expired' "
            "WHERE status = 'open' AND datetime(due_at) <= datetime('now')"
        )
        db.commit()


def get_balance(db: sqlite3.Connection, user: AuthUser) -> str:
    """The user's balance, as stored."""
    with _db_failure("failed to load balance", "failed to query user balance", user_id=user.id):
        row = db.execute(
            "SELECT CAST(balance AS TEXT) FROM users WHERE id = ?", (user.id,)
        ).fetchone()
    if row is None:
        log.error("failed to query user balance: no such user %s", user.id)
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to load balance")
    return row[0]


def list_balance_transactions(
    db: sqlite3.Connection, user: AuthUser
) -> list[BalanceTransactionItem]:
    """The user's latest balance transactions, newest first."""
    with _db_failure(
        "failed to load transactions",
        "failed to query balance transactions",
        user_id=user.id,
    ):
        rows = db.execute(
            "SELECT t.id, CAST(t.amount AS TEXT), t.type, t.description, t.created_at, "
            "t.order_id, o.status "
            "FROM balance_transactions t "
            "LEFT JOIN orders o ON t.order_id = o.id "
            "WHERE t.user_id = ? "
            "ORDER BY t.created_at DESC LIMIT ?",
            (user.id, _TRANSACTION_LIMIT),
        ).fetchall()
    return [BalanceTransactionItem(*row) for row in rows]


def refund_failed_order(db: sqlite3.Connection, user: AuthUser, order_id: str) -> HTTPStatus:
    """Credit the price of a failed order back to its owner and mark it refunded."""
    try:
        with transaction(db):
            try:
                row = db.execute(
                    "SELECT id, status, CAST(total_amount AS REAL) FROM orders "
                    "WHERE id = ? AND user_id = ?",
                    (order_id, user.id),
                ).fetchone()
            except sqlite3.Error as err:
                raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "db error") from err
            if row is None:
                raise ApiError(HTTPStatus.NOT_FOUND, "order not found")

            _, status, amount = row
            if status != "failed":
                raise ApiError(HTTPStatus.BAD_REQUEST, "only failed orders can be refunded")

            with _db_failure("failed to update balance", "refund balance update failed"):
                db.execute(
                    "UPDATE users SET balance = balance + ? WHERE id = ?", (amount, user.id)
                )
            with _db_failure("failed to log transaction", "refund transaction log failed"):
                db.execute(
                    "INSERT INTO balance_transactions "
                    "(id, user_id, amount, type, description, order_id) "
                    "VALUES (?, ?, ?, 'refund', ?, ?)",
                    (
                        str(uuid.uuid4()),
                        user.id,
                        amount,
                        f"Refund for failed order {order_id}",
                        order_id,
                    ),
                )
            with _db_failure("failed to update order", "refund order update failed"):
                db.execute(
                    "UPDATE orders SET status = 'refunded', updated_at = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    (order_id,),
                )
    except sqlite3.Error as err:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to commit transaction") from err
    return HTTPStatus.OK


def list_invoices(db: sqlite3.Connection, user: AuthUser) -> list[InvoiceItem]:
    """Latest invoices: all of them for an admin, the user's own otherwise."""
    expire_overdue_invoices(db)

    columns = (
        "SELECT id, CAST(amount AS TEXT), status, order_id, external_payment_ref, "
        "due_at, created_at, paid_at FROM invoices"
    )
    if user.is_admin:
        with _db_failure("failed to load invoices", "failed to query invoices"):
            rows = db.execute(
                f"{columns} ORDER BY created_at DESC LIMIT ?", (_INVOICE_LIMIT,)
            ).fetchall()
    else:
        with _db_failure(
            "failed to load invoices", "failed to query invoices by user", user_id=user.id
        ):
            rows = db.execute(
                f"{columns} WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user.id, _INVOICE_LIMIT),
            ).fetchall()
    return [InvoiceItem(*row) for row in rows]