"""Checkout flows: plan purchases, balance recharges, PayPal return and webhooks."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any, Iterator, Mapping

from cloudstore.core import ApiError, AppState, AuthUser, transaction
from cloudstore.paypal_client import PayPalClient
from cloudstore.paypal_payload import (
    CURRENCY,
    CheckoutPlan,
    build_create_order_request,
    extract_paypal_order_id,
    invoice_is_overdue,
)

log = logging.getLogger(__name__)

_ORDER_DUE = timedelta(hours=24)
_RECHARGE_DUE = timedelta(hours=2)
_APPROVAL_MAX_AGE = timedelta(minutes=2)
_COMPLETED_EVENTS = ("PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED")
_APPROVED_EVENT = "CHECKOUT.ORDER.APPROVED"


@dataclass(frozen=True)
class CheckoutResponse:
    """What a client needs to complete or confirm a checkout."""

    order_id: str
    invoice_id: str
    paypal_order_id: str
    approval_url: str
    amount: str
    currency: str = CURRENCY


@dataclass(frozen=True)
class WebhookResponse:
    """Acknowledgement of a PayPal webhook."""

    accepted: bool
    note: str


@dataclass(frozen=True)
class InvoiceCheckoutRecord:
    """An invoice found by its PayPal order reference."""

    order_id: str | None
    invoice_id: str
    user_id: str
    status: str
    due_at: str
    amount: str


@dataclass(frozen=True)
class _InvoicePaymentContext:
    order_id: str | None
    invoice_id: str
    status: str
    due_at: str
    amount: str
    plan: CheckoutPlan | None


@contextmanager
def _db_failure(message: str, log_message: str, **context: object) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as err:
        log.error("%s: %s %s", log_message, err, context or "")
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, message) from err


def _client(state: AppState) -> PayPalClient:
    return PayPalClient(
        state.paypal_base_url,
        state.paypal_client_id,
        state.paypal_client_secret,
        state.paypal_webhook_id,
        session=state.http_client,
    )


def _rfc3339(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


def _parse_amount(amount: str) -> float:
    try:
        return float(amount)
    except ValueError:
        return 0.0


def load_plan(db: sqlite3.Connection, plan_code: str) -> CheckoutPlan:
    """An active plan by code."""
    with _db_failure("failed to load plan", "failed to query plan", plan_code=plan_code):
        row = db.execute(
            "SELECT id, code, name, CAST(monthly_price AS TEXT) FROM nat_plans "
            "WHERE code = ? AND active = 1",
            (plan_code,),
        ).fetchone()
    if row is None:
        raise ApiError(HTTPStatus.NOT_FOUND, "plan not found")
    return CheckoutPlan(*row)


def ensure_inventory_available(db: sqlite3.Connection, plan_id: str) -> None:
    """Raise 409 unless a node has room for the plan and the plan is not sold out."""
    with _db_failure("failed to check inventory", "failed to query inventory capacity"):
        (capacity,) = db.execute(
            "SELECT COUNT(*) FROM nodes JOIN nat_plans ON nat_plans.id = ? "
            "WHERE nodes.active = 1 "
            "AND (nodes.memory_mb_total - nodes.memory_mb_used) >= nat_plans.memory_mb "
            "AND (nodes.storage_gb_total - nodes.storage_gb_used) >= nat_plans.storage_gb",
            (plan_id,),
        ).fetchone()
    if capacity <= 0:
        log.warning("inventory unavailable for new payment: plan %s", plan_id)
        raise ApiError(HTTPStatus.CONFLICT, "inventory unavailable")

    with _db_failure(
        "failed to check plan inventory", "failed to query plan inventory", plan_id=plan_id
    ):
        row = db.execute(
            "SELECT max_inventory, COALESCE(sold_inventory, 0) FROM nat_plans WHERE id = ? LIMIT 1",
            (plan_id,),
        ).fetchone()
    if row is None:
        raise ApiError(HTTPStatus.NOT_FOUND, "plan not found")
    limit, sold = row
    if limit is not None and sold >= limit:
        log.warning("plan %s inventory unavailable: %s of %s sold", plan_id, sold, limit)
        raise ApiError(HTTPStatus.CONFLICT, "plan inventory unavailable")


def create_order(
    state: AppState, user: AuthUser, plan_code: str, payment_method: str | None = None
) -> CheckoutResponse:
    """Start buying a plan, paying from the balance or through PayPal."""
    db = state.db
    plan = load_plan(db, plan_code)
    ensure_inventory_available(db, plan.id)

    order_id = str(uuid.uuid4())
    invoice_id = str(uuid.uuid4())
    amount = plan.monthly_price

    if payment_method == "balance":
        return create_balance_checkout(db, user, plan, order_id, invoice_id, amount)

    due_at = _rfc3339(datetime.now(timezone.utc) + _ORDER_DUE)
    with _db_failure("failed to create order", "failed to create order", user_id=user.id):
        db.execute(
            "INSERT INTO orders (id, user_id, plan_id, status, total_amount, idempotency_key) "
            "VALUES (?, ?, ?, 'pending_payment', ?, ?)",
            (order_id, user.id, plan.id, amount, str(uuid.uuid4())),
        )
        db.commit()
    with _db_failure("failed to create invoice", "failed to create invoice", order_id=order_id):
        db.execute(
            "INSERT INTO invoices (id, user_id, order_id, amount, currency, status, due_at) "
            "VALUES (?, ?, ?, ?, 'USD', 'open', ?)",
            (invoice_id, user.id, order_id, amount, due_at),
        )
        db.commit()

    try:
        return issue_paypal_checkout(state, user.id, plan, order_id, invoice_id, amount)
    except ApiError:
        mark_checkout_failed(db, order_id, invoice_id)
        raise


def create_balance_checkout(
    db: sqlite3.Connection,
    user: AuthUser,
    plan: CheckoutPlan,
    order_id: str,
    invoice_id: str,
    amount: str,
) -> CheckoutResponse:
    """Buy a plan from the user's balance in one transaction."""
    try:
        amount_f = float(amount)
    except ValueError as err:
        raise ApiError(HTTPStatus.BAD_REQUEST, "invalid amount format") from err

    try:
        with transaction(db):
            with _db_failure("failed to check balance", "failed to check balance"):
                row = db.execute(
                    "SELECT CAST(balance AS REAL) FROM users WHERE id = ?", (user.id,)
                ).fetchone()
            if row is None:
                raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to check balance")
            if row[0] < amount_f:
                raise ApiError(HTTPStatus.PAYMENT_REQUIRED, "insufficient balance")

            with _db_failure("failed to deduct balance", "failed to deduct balance"):
                db.execute(
                    "UPDATE users SET balance = balance - ? WHERE id = ?", (amount_f, user.id)
                )
            with _db_failure("failed to create order", "failed to create paid order"):
                db.execute(
                    "INSERT INTO orders (id, user_id, plan_id, status, total_amount, "
                    "idempotency_key) VALUES (?, ?, ?, 'paid', ?, ?)",
                    (order_id, user.id, plan.id, amount, str(uuid.uuid4())),
                )
            with _db_failure(
                "failed to log transaction", "failed to log purchase transaction", user_id=user.id
            ):
                db.execute(
                    "INSERT INTO balance_transactions "
                    "(id, user_id, amount, type, description, order_id) "
                    "VALUES (?, ?, ?, 'purchase', ?, ?)",
                    (
                        str(uuid.uuid4()),
                        user.id,
                        -amount_f,
                        f"Purchase {plan.name} ({plan.code})",
                        order_id,
                    ),
                )
            with _db_failure("failed to create invoice", "failed to create paid invoice"):
                db.execute(
                    "INSERT INTO invoices (id, user_id, order_id, amount, currency, status, "
                    "due_at, paid_at) VALUES (?, ?, ?, ?, 'USD', 'paid', ?, CURRENT_TIMESTAMP)",
                    (invoice_id, user.id, order_id, amount, _rfc3339(datetime.now(timezone.utc))),
                )
            with _db_failure(
                "failed to update plan inventory", "failed to update plan inventory"
            ):
                updated = db.execute(
                    "UPDATE nat_plans SET sold_inventory = sold_inventory + 1 WHERE id = ? "
                    "AND (max_inventory IS NULL OR sold_inventory < max_inventory)",
                    (plan.id,),
                ).rowcount
            if updated == 0:
                raise ApiError(HTTPStatus.CONFLICT, "plan inventory unavailable")
    except sqlite3.Error as err:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to commit checkout") from err

    return CheckoutResponse(
        order_id=order_id,
        invoice_id=invoice_id,
        paypal_order_id="BALANCE",
        approval_url="",
        amount=amount,
    )


def create_recharge(state: AppState, user: AuthUser, amount: str) -> CheckoutResponse:
    """Open a recharge invoice and a PayPal checkout for it."""
    invoice_id = str(uuid.uuid4())
    due_at = _rfc3339(datetime.now(timezone.utc) + _RECHARGE_DUE)
    with _db_failure(
        "failed to create recharge invoice", "failed to create recharge invoice", user_id=user.id
    ):
        state.db.execute(
            "INSERT INTO invoices (id, user_id, order_id, amount, currency, status, due_at) "
            "VALUES (?, ?, NULL, ?, 'USD', 'open', ?)",
            (invoice_id, user.id, amount, due_at),
        )
        state.db.commit()
    return issue_paypal_checkout(state, user.id, None, "", invoice_id, amount)


def _load_invoice_payment_context(
    db: sqlite3.Connection, invoice_id: str, user: AuthUser
) -> _InvoicePaymentContext:
    query = (
        "SELECT invoices.order_id, invoices.id, invoices.status, invoices.due_at, "
        "CAST(invoices.amount AS TEXT), nat_plans.id, nat_plans.code, nat_plans.name, "
        "CAST(nat_plans.monthly_price AS TEXT) FROM invoices "
        "LEFT JOIN orders ON orders.id = invoices.order_id "
        "LEFT JOIN nat_plans ON nat_plans.id = orders.plan_id WHERE invoices.id = ?"
    )
    params: tuple[str, ...] = (invoice_id,)
    if not user.is_admin:
        query += " AND invoices.user_id = ?"
        params += (user.id,)
    with _db_failure(
        "failed to load invoice", "failed to load invoice payment context", invoice_id=invoice_id
    ):
        row = db.execute(query + " LIMIT 1", params).fetchone()
    if row is None:
        raise ApiError(HTTPStatus.NOT_FOUND, "invoice not found")
    order_id, inv_id, status, due_at, amount, *plan_fields = row
    plan = CheckoutPlan(*plan_fields) if all(f is not None for f in plan_fields) else None
    return _InvoicePaymentContext(order_id, inv_id, status, due_at, amount, plan)


def retry_invoice_payment(state: AppState, user: AuthUser, invoice_id: str) -> CheckoutResponse:
    """Issue a new PayPal checkout for an open, unexpired invoice."""
    record = _load_invoice_payment_context(state.db, invoice_id, user)
    if record.status.lower() == "paid":
        raise ApiError(HTTPStatus.CONFLICT, "invoice already paid")
    if invoice_is_overdue(record.due_at):
        expire_invoice_if_needed(state.db, record.invoice_id)
        raise ApiError(HTTPStatus.GONE, "invoice expired")
    if record.status.lower() != "open":
        raise ApiError(HTTPStatus.CONFLICT, "invoice is not payable")
    return issue_paypal_checkout(
        state, user.id, record.plan, record.order_id or "", record.invoice_id, record.amount
    )


def issue_paypal_checkout(
    state: AppState,
    user_id: str,
    plan: CheckoutPlan | None,
    order_id: str,
    invoice_id: str,
    amount: str,
) -> CheckoutResponse:
    """Create a PayPal order for an invoice and remember its reference."""
    if plan is not None:
        ensure_inventory_available(state.db, plan.id)

    plan_name = plan.name if plan else "Balance Recharge"
    plan_code = plan.code if plan else "RECHARGE"

    client = _client(state)
    access_token = client.fetch_access_token()
    payload = build_create_order_request(
        state.paypal_return_base_url, plan_name, plan_code, order_id, invoice_id, amount
    )
    created = client.create_order(access_token, payload)
    approval_url = created.approval_url
    if approval_url is None:
        raise ApiError(HTTPStatus.BAD_GATEWAY, "missing sandbox approval url")

    with _db_failure(
        "failed to store payment reference",
        "failed to store paypal reference",
        invoice_id=invoice_id,
    ):
        state.db.execute(
            "UPDATE invoices SET external_payment_ref = ? WHERE id = ?", (created.id, invoice_id)
        )
        state.db.commit()

    log.info(
        "created paypal checkout %s for invoice %s (user %s)", created.id, invoice_id, user_id
    )
    return CheckoutResponse(
        order_id=order_id,
        invoice_id=invoice_id,
        paypal_order_id=created.id,
        approval_url=approval_url,
        amount=amount,
    )


def paypal_return(state: AppState, token: str | None) -> str:
    """Capture the payment a payer approved; return the URL to redirect to."""
    if token is None:
        raise ApiError(HTTPStatus.BAD_REQUEST, "missing PayPal token")
    invoice = load_invoice_by_paypal_ref(state.db, token)
    if invoice is None:
        raise ApiError(HTTPStatus.NOT_FOUND, "checkout not found")

    target = f"{state.frontend_base_url}/app/balance"
    if invoice.status == "paid":
        log.info("paypal checkout %s already finalized", token)
        return target

    if invoice.status == "expired" or invoice_is_overdue(invoice.due_at):
        expire_invoice_if_needed(state.db, invoice.invoice_id)
        log.warning("paypal checkout %s expired before capture", token)
        raise ApiError(HTTPStatus.GONE, "invoice expired")

    capture = _client(state).capture_order(token)
    if capture.status != "COMPLETED":
        log.warning("paypal capture of %s did not complete: %s", token, capture.status)
        raise ApiError(HTTPStatus.BAD_GATEWAY, "payment capture did not complete")

    finalize_paid_checkout(state.db, invoice, token)
    log.info("paypal payment %s completed for invoice %s", token, invoice.invoice_id)
    return target


def paypal_cancel(state: AppState) -> str:
    """URL to send a payer who cancelled back to."""
    return f"{state.frontend_base_url}/order"


def _parse_create_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("create_time is not a string")
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        raise ValueError("create_time has no offset")
    return moment


def _parse_event(raw_body: str) -> tuple[str, str, datetime | None, Any]:
    try:
        event = json.loads(raw_body)
        if not isinstance(event, dict):
            raise ValueError("event is not an object")
        event_id, event_type = event["id"], event["event_type"]
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            raise ValueError("event id and type must be strings")
        resource = event["resource"]
        create_time = _parse_create_time(event.get("create_time"))
    except (ValueError, KeyError) as err:
        log.error("failed to parse paypal webhook payload: %s", err)
        raise ApiError(HTTPStatus.BAD_REQUEST, "invalid webhook payload") from err
    return event_id, event_type, create_time, resource


def handle_webhook(
    state: AppState, headers: Mapping[str, Any], body: bytes | str
) -> WebhookResponse:
    """Verify, record and act on a PayPal webhook event."""
    if isinstance(body, bytes):
        try:
            raw_body = body.decode("utf-8")
        except UnicodeDecodeError as err:
            log.error("paypal webhook payload is not valid utf-8: %s", err)
            raise ApiError(HTTPStatus.BAD_REQUEST, "invalid webhook payload") from err
    else:
        raw_body = body

    event_id, event_type, create_time, resource = _parse_event(raw_body)
    db = state.db
    client = _client(state)
    client.verify_webhook(headers, raw_body)

    if webhook_event_already_processed(db, event_id):
        log.info("paypal webhook replay %s ignored", event_id)
        return WebhookResponse(True, "paypal webhook already processed")

    store_webhook_event(db, event_id, raw_body)
    unknown = WebhookResponse(True, "paypal webhook referenced unknown checkout")

    if event_type in _COMPLETED_EVENTS:
        paypal_order_id = extract_paypal_order_id(resource)
        if paypal_order_id is None:
            log.error("paypal webhook %s missing related order id", event_id)
            raise ApiError(HTTPStatus.BAD_REQUEST, "missing related paypal order id")
        invoice = load_invoice_by_paypal_ref(db, paypal_order_id)
        if invoice is None:
            log.warning("paypal webhook %s referenced unknown checkout", event_id)
            mark_webhook_event_processed(db, event_id)
            return unknown
        if invoice.status == "expired" or invoice_is_overdue(invoice.due_at):
            expire_invoice_if_needed(db, invoice.invoice_id)
            log.warning("paypal webhook %s ignored: invoice expired", event_id)
        elif invoice.status != "paid":
            finalize_paid_checkout(db, invoice, paypal_order_id)
        log.info("paypal webhook %s finalized checkout %s", event_id, paypal_order_id)
    elif event_type == _APPROVED_EVENT:
        paypal_order_id = extract_paypal_order_id(resource)
        if paypal_order_id is None:
            fallback = resource.get("id") if isinstance(resource, dict) else None
            paypal_order_id = fallback if isinstance(fallback, str) else ""
        invoice = load_invoice_by_paypal_ref(db, paypal_order_id)
        if invoice is None:
            log.warning("paypal approved webhook %s referenced unknown checkout", event_id)
            mark_webhook_event_processed(db, event_id)
            return unknown

        should_capture = True
        if invoice.status == "expired" or invoice_is_overdue(invoice.due_at):
            expire_invoice_if_needed(db, invoice.invoice_id)
            should_capture = False
        elif create_time is not None:
            age = datetime.now(timezone.utc) - create_time
            if age > _APPROVAL_MAX_AGE:
                log.warning(
                    "paypal approval for %s is %ds old, skipping auto-capture",
                    paypal_order_id, age.total_seconds(),
                )
                should_capture = False

        if should_capture:
            try:
                capture = client.capture_order(paypal_order_id)
                log.info("paypal order %s captured via webhook: %s", paypal_order_id, capture.status)
            except ApiError as err:
                if err.status == HTTPStatus.CONFLICT:
                    log.info("paypal order %s already captured", paypal_order_id)
                else:
                    log.warning("webhook capture of %s failed: %s", paypal_order_id, err)
    else:
        log.info("ignored paypal webhook event %s (%s)", event_id, event_type)

    mark_webhook_event_processed(db, event_id)
    return WebhookResponse(True, "paypal webhook processed")


def load_invoice_by_paypal_ref(
    db: sqlite3.Connection, paypal_order_id: str
) -> InvoiceCheckoutRecord | None:
    """The invoice paid through a PayPal order, if any."""
    with _db_failure(
        "failed to load checkout record",
        "failed to load invoice by paypal reference",
        paypal_order_id=paypal_order_id,
    ):
        row = db.execute(
            "SELECT order_id, id, user_id, status, due_at, CAST(amount AS TEXT) FROM invoices "
            "WHERE external_payment_ref = ? LIMIT 1",
            (paypal_order_id,),
        ).fetchone()
    return None if row is None else InvoiceCheckoutRecord(*row)


def _finalize_order(db: sqlite3.Connection, record: InvoiceCheckoutRecord, order_id: str) -> None:
    with _db_failure("failed to mark order paid", "failed to mark order paid", order_id=order_id):
        changed = db.execute(
            "UPDATE orders SET status = 'paid', updated_at = CURRENT_TIMESTAMP "
            "WHERE id = ? AND status != 'paid'",
            (order_id,),
        ).rowcount
    if changed == 0:
        return

    with _db_failure("failed to update plan inventory", "failed to update sold inventory"):
        updated = db.execute(
            "UPDATE nat_plans SET sold_inventory = sold_inventory + 1 "
            "WHERE id = (SELECT plan_id FROM orders WHERE id = ?) "
            "AND (max_inventory IS NULL OR sold_inventory < max_inventory)",
            (order_id,),
        ).rowcount
    if updated == 0:
        raise ApiError(HTTPStatus.CONFLICT, "plan inventory unavailable")

    amount_f = _parse_amount(record.amount)
    if amount_f <= 0.0:
        return
    try:
        plan_info = db.execute(
            "SELECT p.name, p.code FROM nat_plans p JOIN orders o ON o.plan_id = p.id "
            "WHERE o.id = ?",
            (order_id,),
        ).fetchone()
    except sqlite3.Error:
        plan_info = None
    name, code = plan_info or ("Unknown", "unknown")

    with _db_failure("failed to log recharge transaction", "failed to log recharge"):
        db.execute(
            "INSERT INTO balance_transactions (id, user_id, amount, type, description) "
            "VALUES (?, ?, ?, 'recharge', ?)",
            (str(uuid.uuid4()), record.user_id, amount_f, f"PayPal Payment (${record.amount})"),
        )
    with _db_failure("failed to log purchase transaction", "failed to log purchase"):
        db.execute(
            "INSERT INTO balance_transactions (id, user_id, amount, type, description, order_id) "
            "VALUES (?, ?, ?, 'purchase', ?, ?)",
            (str(uuid.uuid4()), record.user_id, -amount_f, f"Purchase {name} ({code})", order_id),
        )


def _finalize_recharge(db: sqlite3.Connection, record: InvoiceCheckoutRecord) -> None:
    amount_f = _parse_amount(record.amount)
    with _db_failure("failed to add balance", "failed to add balance", user_id=record.user_id):
        db.execute(
            "UPDATE users SET balance = balance + ? WHERE id = ?", (amount_f, record.user_id)
        )
    with _db_failure("failed to log transaction", "failed to log recharge transaction"):
        db.execute(
            "INSERT INTO balance_transactions (id, user_id, amount, type, description) "
            "VALUES (?, ?, ?, 'recharge', ?)",
            (str(uuid.uuid4()), record.user_id, amount_f, f"PayPal Recharge (${record.amount})"),
        )


def finalize_paid_checkout(
    db: sqlite3.Connection, record: InvoiceCheckoutRecord, paypal_order_id: str
) -> None:
    """Mark the invoice paid and apply its effect on the order or balance."""
    order_id = record.order_id or ""
    try:
        with transaction(db):
            if order_id:
                _finalize_order(db, record, order_id)
            else:
                _finalize_recharge(db, record)
            with _db_failure(
                "failed to mark invoice paid",
                "failed to mark invoice paid",
                invoice_id=record.invoice_id,
            ):
                db.execute(
                    "UPDATE invoices SET status = 'paid', "
                    "paid_at = COALESCE(paid_at, CURRENT_TIMESTAMP), external_payment_ref = ? "
                    "WHERE id = ?",
                    (paypal_order_id, record.invoice_id),
                )
    except sqlite3.Error as err:
        log.error("failed to commit checkout of invoice %s: %s", record.invoice_id, err)
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to finalize checkout") from err


def expire_invoice_if_needed(db: sqlite3.Connection, invoice_id: str) -> None:
    """Mark an open invoice expired when its due time has passed."""
    with _db_failure("failed to expire invoice", "failed to expire invoice", invoice_id=invoice_id):
        db.execute(
            "UPDATE invoices SET status = 'expired' WHERE id = ? AND status = 'open' "
            "AND datetime(due_at) <= datetime('now')",
            (invoice_id,),
        )
        db.commit()


def mark_checkout_failed(db: sqlite3.Connection, order_id: str, invoice_id: str) -> None:
    """Best-effort marking of an order and its invoice as failed."""
    for statement, key in (
        ("UPDATE orders SET status = 'failed', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
         order_id),
        ("UPDATE invoices SET status = 'failed' WHERE id = ?", invoice_id),
    ):
        try:
            db.execute(statement, (key,))
            db.commit()
        except sqlite3.Error as err:
            log.warning("failed to mark checkout failed: %s", err)


def webhook_event_already_processed(db: sqlite3.Connection, event_id: str) -> bool:
    """Whether this PayPal event was stored and fully processed before."""
    with _db_failure("failed to load webhook state", "failed to load webhook event state"):
        row = db.execute(
            "SELECT processed_at FROM payment_webhook_events "
            "WHERE gateway = 'paypal' AND event_id = ? LIMIT 1",
            (event_id,),
        ).fetchone()
    return row is not None and row[0] is not None


def store_webhook_event(db: sqlite3.Connection, event_id: str, payload: str) -> None:
    """Record a PayPal event unless it is already recorded."""
    with _db_failure("failed to store webhook event", "failed to store webhook event"):
        db.execute(
            "INSERT OR IGNORE INTO payment_webhook_events (id, gateway, event_id, payload) "
            "VALUES (?, 'paypal', ?, ?)",
            (str(uuid.uuid4()), event_id, payload),
        )
        db.commit()


def mark_webhook_event_processed(db: sqlite3.Connection, event_id: str) -> None:
    """Stamp a stored PayPal event as processed, once."""
    with _db_failure("failed to update webhook state", "failed to mark webhook processed"):
        db.execute(
            "UPDATE payment_webhook_events SET processed_at = CURRENT_TIMESTAMP "
            "WHERE gateway = 'paypal' AND event_id = ? AND processed_at IS NULL",
            (event_id,),
        )
        db.commit()