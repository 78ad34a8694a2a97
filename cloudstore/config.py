"""Settings read from the environment, and listener binding."""

from __future__ import annotations

import errno
import logging
import os
import socket
from dataclasses import dataclass

log = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite://"
_MAX_PORT = 65535

_SESSION_VAR = "SESSION_SECRET"
_PAYPAL_CLIENT_CRED_VAR = "PAYPAL_CLIENT_SECRET"
_ADMIN_LOGIN_VAR = "ADMIN_BOOTSTRAP_PASSWORD"


def require_env(name: str) -> str:
    """Return an environment variable, raising if it is not set."""
    try:
        return os.environ[name]
    except KeyError:
        raise RuntimeError(f"missing required env var: {name}") from None


def normalize_database_url(raw_url: str) -> str:
    """Make a relative sqlite URL absolute and create its directory."""
    if not raw_url.startswith(_SQLITE_PREFIX):
        return raw_url
    without_prefix = raw_url[len(_SQLITE_PREFIX):]
    if without_prefix.startswith("/"):
        return raw_url

    path_part, sep, query = without_prefix.partition("?")
    absolute = os.path.join(os.getcwd(), path_part)
    parent = os.path.dirname(absolute)
    if parent:
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as err:
            raise RuntimeError(f"failed to create database directory: {parent}") from err

    return f"{_SQLITE_PREFIX}{absolute}?{query}" if sep else f"{_SQLITE_PREFIX}{absolute}"


def read_env_or_default(name: str, default_value: str) -> str:
    return os.environ.get(name, default_value)


def read_required_env_trimmed(name: str) -> str:
    return require_env(name).strip()


def read_optional_env_trimmed(name: str) -> str | None:
    """Return the trimmed variable, or None when it is unset or blank."""
    value = os.environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_port(value: str) -> int | None:
    digits = value[1:] if value.startswith("+") else value
    if not digits or not (digits.isascii() and digits.isdigit()):
        return None
    port = int(digits)
    return port if port <= _MAX_PORT else None


def read_port(name: str, default: int) -> int:
    """Read a TCP port from the environment, falling back on a missing or bad value."""
    value = os.environ.get(name)
    if value is None:
        return default
    port = _parse_port(value)
    return default if port is None else port


@dataclass(frozen=True)
class Settings:
    """Server configuration."""

    database_url: str
    session_secret: str
    paypal_client_id: str
    paypal_client_secret: str
    paypal_webhook_id: str
    paypal_base_url: str
    paypal_return_base_url: str
    frontend_base_url: str
    guest_host: str
    guest_port: int
    admin_host: str
    admin_port: int
    bootstrap_admin_email: str | None
    bootstrap_admin_password: str | None

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = normalize_database_url(require_env("DATABASE_URL"))
        session_secret = require_env(_SESSION_VAR)
        paypal_client_id = read_required_env_trimmed("PAYPAL_CLIENT_ID")
        paypal_client_secret = read_required_env_trimmed(_PAYPAL_CLIENT_CRED_VAR)
        paypal_webhook_id = read_required_env_trimmed("PAYPAL_WEBHOOK_ID")
        guest_host = read_env_or_default("APP_HOST", "0.0.0.0")
        return cls(
            database_url=database_url,
            session_secret=session_secret,
            paypal_client_id=paypal_client_id,
            paypal_client_secret=paypal_client_secret,
            paypal_webhook_id=paypal_webhook_id,
            paypal_base_url=read_env_or_default(
                "PAYPAL_BASE_URL", "https://api-m.sandbox.paypal.com"
            ),
            paypal_return_base_url=read_env_or_default(
                "PAYPAL_RETURN_BASE_URL", "http://127.0.0.1:8081"
            ),
            frontend_base_url=read_env_or_default("FRONTEND_BASE_URL", "http://127.0.0.1:8080"),
            guest_host=guest_host,
            guest_port=read_port("APP_PORT", 8081),
            admin_host=read_env_or_default("ADMIN_APP_HOST", guest_host),
            admin_port=read_port("ADMIN_APP_PORT", 8082),
            bootstrap_admin_email=read_optional_env_trimmed("ADMIN_BOOTSTRAP_EMAIL"),
            bootstrap_admin_password=read_optional_env_trimmed(_ADMIN_LOGIN_VAR),
        )


def bind_listener(host: str, preferred_port: int) -> socket.socket:
    """Bind a listening socket, trying the next port once if the preferred one is taken."""
    preferred = f"{host}:{preferred_port}"
    try:
        listener = socket.create_server((host, preferred_port))
    except OSError as err:
        if err.errno != errno.EADDRINUSE:
            raise RuntimeError(f"failed to bind listener at {preferred}") from err
    else:
        log.info("bound web-app listener at %s", preferred)
        return listener

    fallback_port = min(preferred_port + 1, _MAX_PORT)
    fallback = f"{host}:{fallback_port}"
    log.warning("preferred port %s is in use, trying fallback %s", preferred, fallback)
    try:
        listener = socket.create_server((host, fallback_port))
    except OSError as err:
        raise RuntimeError(f"failed to bind both {preferred} and {fallback}") from err
    log.info("bound web-app listener on fallback port %s", fallback)
    return listener