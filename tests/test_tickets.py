import json
import sqlite3
from http import HTTPStatus
from itertools import islice

import pytest

from cloudstore import tickets
from cloudstore.core import ApiError, AuthUser

SCHEMA = """
CREATE TABLE support_tickets (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    category TEXT NOT NULL,
    priority TEXT NOT NULL,
    subject TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE support_messages (
    id TEXT PRIMARY KEY,
    ticket_id TEXT NOT NULL,
    sender_user_id TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

ALICE = AuthUser(id="alice", role="user", email="alice@example.com")
BOB = AuthUser(id="bob", role="user", email="bob@example.com")
ADMIN = AuthUser(id="root", role="admin", email="admin@example.com")


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    conn.executescript(SCHEMA)
    yield conn
    conn.close()


def add_ticket(db, ticket_id, user_id, status="open", updated_at="2024-01-01 00:00:00"):
    db.execute(
        "INSERT INTO support_tickets (id, user_id, category, priority, subject, status, updated_at) "
        "VALUES (?, ?, 'billing', 'low', 'subj', ?, ?)",
        (ticket_id, user_id, status, updated_at),
    )
    db.commit()


def add_message(db, message_id, ticket_id, sender, text, created_at):
    db.execute(
        "INSERT INTO support_messages (id, ticket_id, sender_user_id, message, created_at) "
        "VALUES (?, ?, ?, ?, ?)",
        (message_id, ticket_id, sender, text, created_at),
    )
    db.commit()


@pytest.mark.parametrize("status", ["open", "in_progress", "resolved", "closed", " OPEN "])
def test_valid_statuses(status):
    assert tickets.is_valid_ticket_status(status) is True


@pytest.mark.parametrize("status", ["", "pending", "in progress"])
def test_invalid_statuses(status):
    assert tickets.is_valid_ticket_status(status) is False


def test_create_ticket_stores_trimmed_values(db):
    item = tickets.create_ticket(db, ALICE, " Help ", " billing ", " high ", " first ")
    assert item.status == "open"
    assert item.user_id == "alice"
    assert item.subject == " Help "
    row = db.execute(
        "SELECT subject, category, priority, status FROM support_tickets WHERE id = ?",
        (item.id,),
    ).fetchone()
    assert row == ("Help", "billing", "high", "open")
    msgs = db.execute(
        "SELECT sender_user_id, message FROM support_messages WHERE ticket_id = ?", (item.id,)
    ).fetchall()
    assert msgs == [("alice", "first")]


@pytest.mark.parametrize("subject,message", [("  ", "text"), ("subj", " ")])
def test_create_ticket_requires_subject_and_message(db, subject, message):
    with pytest.raises(ApiError) as info:
        tickets.create_ticket(db, ALICE, subject, "c", "p", message)
    assert info.value.status == HTTPStatus.BAD_REQUEST
    assert db.execute("SELECT COUNT(*) FROM support_tickets").fetchone() == (0,)


def test_create_ticket_failure_rolls_back(db):
    db.execute("DROP TABLE support_messages")
    with pytest.raises(ApiError) as info:
        tickets.create_ticket(db, ALICE, "subj", "c", "p", "msg")
    assert info.value.message == "failed to create ticket"
    assert db.execute("SELECT COUNT(*) FROM support_tickets").fetchone() == (0,)


def test_list_tickets_user_sees_own_newest_first(db):
    add_ticket(db, "t1", "alice", updated_at="2024-01-01 00:00:00")
    add_ticket(db, "t2", "bob", updated_at="2024-01-02 00:00:00")
    add_ticket(db, "t3", "alice", updated_at="2024-01-03 00:00:00")
    assert [t.id for t in tickets.list_tickets(db, ALICE)] == ["t3", "t1"]
    assert [t.id for t in tickets.list_tickets(db, ADMIN)] == ["t3", "t2", "t1"]


def test_list_tickets_database_error(db):
    db.close()
    with pytest.raises(ApiError) as info:
        tickets.list_tickets(db, ALICE)
    assert info.value.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert info.value.message == "failed to load support tickets"


def test_ticket_owner_and_exists(db):
    add_ticket(db, "t1", "alice")
    assert tickets.ticket_owner(db, "t1") == "alice"
    assert tickets.ticket_exists(db, "t1") is True
    assert tickets.ticket_exists(db, "nope") is False
    with pytest.raises(ApiError) as info:
        tickets.ticket_owner(db, "nope")
    assert info.value.status == HTTPStatus.NOT_FOUND


def test_poll_yields_messages_then_status(db):
    add_ticket(db, "t1", "alice")
    add_message(db, "m2", "t1", None, "second", "2024-01-01 00:00:02")
    add_message(db, "m1", "t1", "alice", "first", "2024-01-01 00:00:01")
    add_message(db, "x", "other", "bob", "elsewhere", "2024-01-01 00:00:01")
    sleeps = []
    stream = tickets.poll_ticket_events(db, "t1", interval=0.5, sleep=sleeps.append)

    events = list(islice(stream, 3))
    assert [name for name, _ in events] == ["message", "message", "status"]
    first = json.loads(events[0][1])
    assert first == {
        "id": "m1",
        "sender_user_id": "alice",
        "message": "first",
        "created_at": "2024-01-01 00:00:01",
    }
    assert json.loads(events[1][1])["sender_user_id"] is None
    assert events[2] == ("status", "open")
    assert sleeps == []

    add_message(db, "m3", "t1", "root", "third", "2024-01-01 00:00:03")
    db.execute("UPDATE support_tickets SET status = 'closed' WHERE id = 't1'")
    db.commit()
    more = list(islice(stream, 2))
    assert json.loads(more[0][1])["id"] == "m3"
    assert more[1] == ("status", "closed")
    assert sleeps == [0.5]


def test_poll_does_not_repeat_unchanged_status(db):
    add_ticket(db, "t1", "alice")
    sleeps = []
    stream = tickets.poll_ticket_events(db, "t1", interval=1, sleep=sleeps.append)
    assert next(stream) == ("status", "open")
    add_message(db, "m1", "t1", "alice", "hi", "2024-01-01 00:00:01")
    name, data = next(stream)
    assert name == "message"
    assert json.loads(data)["message"] == "hi"
    assert len(sleeps) == 1


def test_open_ticket_stream_checks_owner(db):
    add_ticket(db, "t1", "alice")
    with pytest.raises(ApiError) as info:
        tickets.open_ticket_stream(db, BOB, "t1")
    assert info.value.status == HTTPStatus.FORBIDDEN
    with pytest.raises(ApiError) as missing:
        tickets.open_ticket_stream(db, ALICE, "nope")
    assert missing.value.status == HTTPStatus.NOT_FOUND
    assert next(tickets.open_ticket_stream(db, ALICE, "t1")) == ("status", "open")


def test_open_admin_ticket_stream(db):
    add_ticket(db, "t1", "alice", status="resolved")
    assert next(tickets.open_admin_ticket_stream(db, "t1")) == ("status", "resolved")
    with pytest.raises(ApiError) as info:
        tickets.open_admin_ticket_stream(db, "nope")
    assert info.value.message == "ticket not found"


def test_reply_ticket_reopens(db):
    add_ticket(db, "t1", "alice", status="resolved")
    item = tickets.reply_ticket(db, ALICE, "t1", "  more info  ")
    assert item.message == "more info"
    assert item.sender_user_id == "alice"
    assert item.created_at
    status = db.execute("SELECT status FROM support_tickets WHERE id = 't1'").fetchone()
    assert status == ("open",)


def test_reply_ticket_errors(db):
    add_ticket(db, "t1", "alice")
    with pytest.raises(ApiError) as blank:
        tickets.reply_ticket(db, ALICE, "t1", "   ")
    assert blank.value.message == "message is required"
    with pytest.raises(ApiError) as other:
        tickets.reply_ticket(db, BOB, "t1", "hi")
    assert other.value.message == "access denied"
    assert db.execute("SELECT COUNT(*) FROM support_messages").fetchone() == (0,)


def test_admin_update_ticket_status(db):
    add_ticket(db, "t1", "alice")
    item = tickets.admin_update_ticket_status(db, "t1", " In_Progress ")
    assert item.status == "in_progress"
    assert item.id == "t1"
    with pytest.raises(ApiError) as bad:
        tickets.admin_update_ticket_status(db, "t1", "bogus")
    assert bad.value.status == HTTPStatus.BAD_REQUEST
    with pytest.raises(ApiError) as missing:
        tickets.admin_update_ticket_status(db, "nope", "closed")
    assert missing.value.status == HTTPStatus.NOT_FOUND


def test_admin_reply_keeps_status(db):
    add_ticket(db, "t1", "alice", status="resolved")
    item = tickets.admin_reply_ticket(db, ADMIN, "t1", " answer ")
    assert (item.sender_user_id, item.message) == ("root", "answer")
    status = db.execute("SELECT status FROM support_tickets WHERE id = 't1'").fetchone()
    assert status == ("resolved",)
    with pytest.raises(ApiError) as missing:
        tickets.admin_reply_ticket(db, ADMIN, "nope", "x")
    assert missing.value.status == HTTPStatus.NOT_FOUND


def test_close_ticket(db):
    add_ticket(db, "t1", "alice")
    with pytest.raises(ApiError) as info:
        tickets.close_ticket(db, BOB, "t1")
    assert info.value.status == HTTPStatus.FORBIDDEN
    assert tickets.close_ticket(db, ALICE, "t1") == HTTPStatus.OK
    status = db.execute("SELECT status FROM support_tickets WHERE id = 't1'").fetchone()
    assert status == ("closed",)


def test_admin_close_ticket(db):
    add_ticket(db, "t1", "bob")
    assert tickets.admin_close_ticket(db, "t1") == HTTPStatus.OK
    assert tickets.admin_close_ticket(db, "nope") == HTTPStatus.OK
    status = db.execute("SELECT status FROM support_tickets WHERE id = 't1'").fetchone()
    assert status == ("closed",)