"""Shared application state, error type and database helpers."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Iterator

import requests

log = logging.getLogger(__name__)


class ApiError(Exception):
    """An error reported to an API client with an HTTP status and a short message."""

    def __init__(self, status: int | HTTPStatus, message: str) -> None:
        super().__init__(message)
        self.status = HTTPStatus(status)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"ApiError({int(self.status)}, {self.message!r})"


@dataclass(frozen=True)
class AuthUser:
    """An authenticated account."""

    id: str
    role: str = "user"
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class AppState:
    """Everything a request handler needs: database, secrets and PayPal settings."""

    db: sqlite3.Connection
    session_secret: str
    paypal_client_id: str
    paypal_client_secret: str
    paypal_webhook_id: str
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_return_base_url: str = "http://127.0.0.1:8081"
    frontend_base_url: str = "http://127.0.0.1:8080"
    http_client: requests.Session = field(default_factory=requests.Session)


@contextmanager
def transaction(db: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block atomically: commit when it finishes, roll back when it raises."""
    nested = db.in_transaction
    db.execute("SAVEPOINT cloudstore_tx")
    try:
        yield db
    except BaseException:
        db.execute("ROLLBACK TO SAVEPOINT cloudstore_tx")
        db.execute("RELEASE SAVEPOINT cloudstore_tx")
        raise
    db.execute("RELEASE SAVEPOINT cloudstore_tx")
    if not nested and db.in_transaction:
        db.commit()


def health() -> dict[str, str]:
    """Liveness report of the API server."""
    return {"status": "ok", "service": "api-server"}


def db_health(db: sqlite3.Connection) -> dict[str, str]:
    """Check that the database answers a trivial query."""
    try:
        db.execute("SELECT 1").fetchone()
    except sqlite3.Error as err:
        log.warning("database health check failed: %s", err)
        raise ApiError(HTTPStatus.SERVICE_UNAVAILABLE, "database unavailable") from err
    return {"status": "ok", "database": "connected"}