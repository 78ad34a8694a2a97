"""Support tickets: creation, replies, status changes and live message streams."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from http import HTTPStatus
from typing import Callable, Iterator

from cloudstore.core import ApiError, AuthUser, transaction

log = logging.getLogger(__name__)

VALID_STATUSES = frozenset({"open", "in_progress", "resolved", "closed"})

_TICKET_LIMIT = 50
_STREAM_START = "1970-01-01 00:00:00"
_STREAM_INTERVAL = 2.0

_TICKET_COLUMNS = "SELECT id, user_id, subject, category, priority, status FROM support_tickets"
_MESSAGE_COLUMNS = "SELECT id, sender_user_id, message, created_at FROM support_messages"


@dataclass(frozen=True)
class TicketItem:
    """A support ticket."""

    id: str
    user_id: str
    subject: str
    category: str
    priority: str
    status: str


@dataclass(frozen=True)
class TicketMessageItem:
    """One message in a ticket's conversation."""

    id: str
    sender_user_id: str | None
    message: str
    created_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), ensure_ascii=False)


@contextmanager
def _db_failure(message: str, log_message: str, **context: object) -> Iterator[None]:
    """Turn a database error into a 500 ApiError carrying ``message``."""
    try:
        yield
    except sqlite3.Error as err:
        log.error("%s: %s %s", log_message, err, context or "")
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, message) from err


def is_valid_ticket_status(status: str) -> bool:
    """True for the statuses an admin may set, in any case and padding."""
    return status.strip().lower() in VALID_STATUSES


def _require_text(value: str, message: str) -> None:
    if not value.strip():
        raise ApiError(HTTPStatus.BAD_REQUEST, message)


def create_ticket(
    db: sqlite3.Connection,
    user: AuthUser,
    subject: str,
    category: str,
    priority: str,
    message: str,
) -> TicketItem:
    """Open a ticket with its first message."""
    if not subject.strip() or not message.strip():
        raise ApiError(HTTPStatus.BAD_REQUEST, "subject and message are required")

    ticket_id = str(uuid.uuid4())
    message_id = str(uuid.uuid4())
    try:
        with transaction(db):
            with _db_failure(
                "failed to create ticket", "failed to create support ticket", user_id=user.id
            ):
                db.execute(
                    "INSERT INTO support_tickets "
                    "(id, user_id, category, priority, subject, status) "
                    "VALUES (?, ?, ?, ?, ?, 'open')",
                    (ticket_id, user.id, category.strip(), priority.strip(), subject.strip()),
                )
            with _db_failure(
                "failed to create ticket",
                "failed to create initial ticket message",
                ticket_id=ticket_id,
                user_id=user.id,
            ):
                db.execute(
                    "INSERT INTO support_messages (id, ticket_id, sender_user_id, message) "
                    "VALUES (?, ?, ?, ?)",
                    (message_id, ticket_id, user.id, message.strip()),
                )
    except sqlite3.Error as err:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to commit transaction") from err

    return TicketItem(
        id=ticket_id,
        user_id=user.id,
        subject=subject,
        category=category,
        priority=priority,
        status="open",
    )


def list_tickets(db: sqlite3.Connection, user: AuthUser) -> list[TicketItem]:
    """Most recently updated tickets: all for an admin, the user's own otherwise."""
    if user.is_admin:
        with _db_failure("failed to load support tickets", "failed to query support tickets"):
            rows = db.execute(
                f"{_TICKET_COLUMNS} ORDER BY updated_at DESC LIMIT ?", (_TICKET_LIMIT,)
            ).fetchall()
    else:
        with _db_failure(
            "failed to load support tickets",
            "failed to query support tickets by user",
            user_id=user.id,
        ):
            rows = db.execute(
                f"{_TICKET_COLUMNS} WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
                (user.id, _TICKET_LIMIT),
            ).fetchall()
    return [TicketItem(*row) for row in rows]


def ticket_owner(db: sqlite3.Connection, ticket_id: str) -> str:
    """The id of the user who opened the ticket."""
    try:
        row = db.execute(
            "SELECT user_id FROM support_tickets WHERE id = ?", (ticket_id,)
        ).fetchone()
    except sqlite3.Error as err:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "db error") from err
    if row is None:
        raise ApiError(HTTPStatus.NOT_FOUND, "ticket not found")
    return row[0]


def ticket_exists(db: sqlite3.Connection, ticket_id: str) -> bool:
    """Whether a ticket with this id exists; database errors propagate."""
    (count,) = db.execute(
        "SELECT COUNT(*) FROM support_tickets WHERE id = ?", (ticket_id,)
    ).fetchone()
    return count > 0


def _require_owner(db: sqlite3.Connection, user: AuthUser, ticket_id: str) -> None:
    if ticket_owner(db, ticket_id) != user.id:
        raise ApiError(HTTPStatus.FORBIDDEN, "access denied")


def poll_ticket_events(
    db: sqlite3.Connection,
    ticket_id: str,
    interval: float = _STREAM_INTERVAL,
    sleep: Callable[[float], object] = time.sleep,
) -> Iterator[tuple[str, str]]:
    """Endless stream of ``(event, data)`` pairs for a ticket.

    Each round yields new messages as ``("message", json)`` in creation order,
    then ``("status", status)`` when the status differs from the last one sent,
    and then waits ``interval`` seconds.
    """
    last_created_at = _STREAM_START
    last_status = ""
    while True:
        try:
            rows = db.execute(
                f"{_MESSAGE_COLUMNS} WHERE ticket_id = ? AND created_at > ? "
                "ORDER BY created_at ASC",
                (ticket_id, last_created_at),
            ).fetchall()
        except sqlite3.Error as err:
            log.warning("failed to poll ticket messages for %s: %s", ticket_id, err)
            rows = []
        for row in rows:
            item = TicketMessageItem(*row)
            last_created_at = item.created_at
            yield "message", item.to_json()

        try:
            row = db.execute(
                "SELECT status FROM support_tickets WHERE id = ?", (ticket_id,)
            ).fetchone()
        except sqlite3.Error as err:
            log.warning("failed to poll ticket status for %s: %s", ticket_id, err)
            row = None
        if row is not None and row[0] != last_status:
            last_status = row[0]
            yield "status", last_status

        sleep(interval)


def open_ticket_stream(
    db: sqlite3.Connection, user: AuthUser, ticket_id: str
) -> Iterator[tuple[str, str]]:
    """Event stream of a ticket, for its owner only."""
    _require_owner(db, user, ticket_id)
    return poll_ticket_events(db, ticket_id)


def open_admin_ticket_stream(db: sqlite3.Connection, ticket_id: str) -> Iterator[tuple[str, str]]:
    """Event stream of any existing ticket."""
    try:
        exists = ticket_exists(db, ticket_id)
    except sqlite3.Error as err:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "db error") from err
    if not exists:
        raise ApiError(HTTPStatus.NOT_FOUND, "ticket not found")
    return poll_ticket_events(db, ticket_id)


def _load_message(db: sqlite3.Connection, message_id: str) -> TicketMessageItem:
    with _db_failure(
        "failed to reply ticket",
        "failed to load created support message",
        message_id=message_id,
    ):
        row = db.execute(
            f"{_MESSAGE_COLUMNS} WHERE id = ? LIMIT 1", (message_id,)
        ).fetchone()
    if row is None:
        log.error("created support message %s vanished", message_id)
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to reply ticket")
    return TicketMessageItem(*row)


def _insert_message(
    db: sqlite3.Connection, ticket_id: str, sender_id: str, message: str
) -> str:
    message_id = str(uuid.uuid4())
    with _db_failure(
        "failed to reply ticket",
        "failed to insert support message",
        ticket_id=ticket_id,
        sender_id=sender_id,
    ):
        db.execute(
            "INSERT INTO support_messages (id, ticket_id, sender_user_id, message) "
            "VALUES (?, ?, ?, ?)",
            (message_id, ticket_id, sender_id, message.strip()),
        )
        db.commit()
    return message_id


def reply_ticket(
    db: sqlite3.Connection, user: AuthUser, ticket_id: str, message: str
) -> TicketMessageItem:
    """Add the owner's message to a ticket and reopen it."""
    _require_text(message, "message is required")
    _require_owner(db, user, ticket_id)

    message_id = _insert_message(db, ticket_id, user.id, message)
    with _db_failure(
        "failed to reply ticket", "failed to touch support ticket", ticket_id=ticket_id
    ):
        db.execute(
            "UPDATE support_tickets SET status = 'open', updated_at = CURRENT_TIMESTAMP "
            "WHERE id = ?",
            (ticket_id,),
        )
        db.commit()
    return _load_message(db, message_id)


def admin_update_ticket_status(
    db: sqlite3.Connection, ticket_id: str, status: str
) -> TicketItem:
    """Set a ticket's status and return the ticket as stored."""
    if not is_valid_ticket_status(status):
        raise ApiError(HTTPStatus.BAD_REQUEST, "invalid ticket status")

    with _db_failure(
        "failed to update support ticket", "failed to check support ticket", ticket_id=ticket_id
    ):
        exists = ticket_exists(db, ticket_id)
    if not exists:
        raise ApiError(HTTPStatus.NOT_FOUND, "ticket not found")

    with _db_failure(
        "failed to update support ticket",
        "failed to update support ticket status",
        ticket_id=ticket_id,
    ):
        db.execute(
            "UPDATE support_tickets SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status.strip().lower(), ticket_id),
        )
        db.commit()

    with _db_failure(
        "failed to load support ticket", "failed to reload support ticket", ticket_id=ticket_id
    ):
        row = db.execute(f"{_TICKET_COLUMNS} WHERE id = ? LIMIT 1", (ticket_id,)).fetchone()
    if row is None:
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, "failed to load support ticket")
    return TicketItem(*row)


def admin_reply_ticket(
    db: sqlite3.Connection, admin: AuthUser, ticket_id: str, message: str
) -> TicketMessageItem:
    """Add an admin's message to a ticket without changing its status."""
    _require_text(message, "message is required")

    with _db_failure(
        "failed to reply ticket", "failed to check ticket existence", ticket_id=ticket_id
    ):
        exists = ticket_exists(db, ticket_id)
    if not exists:
        raise ApiError(HTTPStatus.NOT_FOUND, "ticket not found")

    message_id = _insert_message(db, ticket_id, admin.id, message)
    with _db_failure(
        "failed to reply ticket", "failed to touch support ticket", ticket_id=ticket_id
    ):
        db.execute(
            "UPDATE support_tickets SET updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (ticket_id,),
        )
        db.commit()
    return _load_message(db, message_id)


def _close(db: sqlite3.Connection, ticket_id: str) -> HTTPStatus:
    with _db_failure(
        "failed to close ticket", "failed to close support ticket", ticket_id=ticket_id
    ):
        db.execute(
            "UPDATE support_tickets SET status = 'closed', updated_at = CURRENT_TIMESTAMP "
            "WHERE id = ?",
            (ticket_id,),
        )
        db.commit()
    return HTTPStatus.OK


def close_ticket(db: sqlite3.Connection, user: AuthUser, ticket_id: str) -> HTTPStatus:
    """Close a ticket on behalf of its owner."""
    _require_owner(db, user, ticket_id)
    return _close(db, ticket_id)


def admin_close_ticket(db: sqlite3.Connection, ticket_id: str) -> HTTPStatus:
    """Close any ticket."""
    return _close(db, ticket_id)