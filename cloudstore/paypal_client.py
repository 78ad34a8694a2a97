"""HTTP client for the PayPal REST endpoints used by checkout."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Mapping

import requests

from cloudstore.core import ApiError
from cloudstore.paypal_payload import build_verify_payload, find_approval_url

log = logging.getLogger(__name__)

_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"
_UNPROCESSABLE = 422


@dataclass(frozen=True)
class CreatedOrder:
    """A PayPal order as returned on creation."""

    id: str
    links: tuple[Mapping[str, str], ...]

    @property
    def approval_url(self) -> str | None:
        return find_approval_url(self.links)


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of capturing a PayPal order."""

    id: str
    status: str


def _is_success(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


def _require_str(body: Any, key: str) -> str:
    value = body.get(key) if isinstance(body, dict) else None
    if not isinstance(value, str):
        raise ValueError(f"missing string field {key!r}")
    return value


def _parse_links(body: Any) -> tuple[Mapping[str, str], ...]:
    links = body.get("links") if isinstance(body, dict) else None
    if not isinstance(links, list):
        raise ValueError("missing links")
    return tuple({"href": _require_str(link, "href"), "rel": _require_str(link, "rel")}
                 for link in links)


class PayPalClient:
    """Talks to PayPal with client credentials."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.session = session if session is not None else requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _post(self, url: str, failure: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.post(url, **kwargs)
        except requests.RequestException as err:
            log.error("%s: %s", failure, err)
            raise ApiError(HTTPStatus.BAD_GATEWAY, failure) from err

    def fetch_access_token(self) -> str:
        """Obtain an OAuth access token."""
        response = self._post(
            self._url("/v1/oauth2/token"),
            "failed to obtain sandbox token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if not _is_success(response):
            log.error("paypal token request failed: %s %s", response.status_code, response.text)
            if response.status_code == HTTPStatus.UNAUTHORIZED:
                raise ApiError(
                    HTTPStatus.BAD_GATEWAY,
                    "sandbox token request failed: invalid client credentials or "
                    "mismatched PayPal base URL",
                )
            raise ApiError(HTTPStatus.BAD_GATEWAY, "sandbox token request failed")
        try:
            return _require_str(response.json(), "access_token")
        except ValueError as err:
            log.error("failed to parse paypal access token response: %s", err)
            raise ApiError(HTTPStatus.BAD_GATEWAY, "failed to parse sandbox token") from err

    def create_order(self, access_token: str, payload: Mapping[str, Any]) -> CreatedOrder:
        """Create a PayPal order from a prepared request body."""
        response = self._post(
            self._url("/v2/checkout/orders"),
            "failed to create sandbox order",
            headers={"Authorization": f"Bearer {access_token}"},
            json=payload,
        )
        if not _is_success(response):
            log.error("paypal order creation failed: %s %s", response.status_code, response.text)
            raise ApiError(HTTPStatus.BAD_GATEWAY, "sandbox order creation failed")
        try:
            body = response.json()
            return CreatedOrder(id=_require_str(body, "id"), links=_parse_links(body))
        except ValueError as err:
            log.error("failed to parse paypal order response: %s", err)
            raise ApiError(
                HTTPStatus.BAD_GATEWAY, "failed to parse sandbox order response"
            ) from err

    def capture_order(self, paypal_order_id: str) -> CaptureResult:
        """Capture an approved order; 409 when PayPal reports it already captured."""
        access_token = self.fetch_access_token()
        response = self._post(
            self._url(f"/v2/checkout/orders/{paypal_order_id}/capture"),
            "failed to capture sandbox payment",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            data="{}",
        )
        if not _is_success(response):
            body = response.text
            if response.status_code == _UNPROCESSABLE and _ALREADY_CAPTURED in body:
                log.info("paypal order %s was already captured", paypal_order_id)
                raise ApiError(HTTPStatus.CONFLICT, "already captured")
            log.error(
                "paypal capture of %s failed: %s %s", paypal_order_id, response.status_code, body
            )
            raise ApiError(HTTPStatus.BAD_GATEWAY, "sandbox payment capture failed")
        try:
            body = response.json()
            return CaptureResult(id=_require_str(body, "id"), status=_require_str(body, "status"))
        except ValueError as err:
            log.error("failed to parse paypal capture response for %s: %s", paypal_order_id, err)
            raise ApiError(
                HTTPStatus.BAD_GATEWAY, "failed to parse sandbox capture response"
            ) from err

    def verify_webhook(self, headers: Mapping[str, Any], raw_body: str) -> None:
        """Ask PayPal to confirm a webhook's signature; raise unless it succeeds."""
        if not self.webhook_id.strip():
            raise ApiError(
                HTTPStatus.INTERNAL_SERVER_ERROR, "paypal webhook id is not configured"
            )
        verify_payload = build_verify_payload(headers, self.webhook_id, raw_body)
        event = json.loads(raw_body)
        event_id = event.get("id") if isinstance(event, dict) else None
        if not isinstance(event_id, str):
            event_id = "unknown"

        response = self._post(
            self._url("/v1/notifications/verify-webhook-signature"),
            "failed to verify paypal webhook signature",
            auth=(self.client_id, self.client_secret),
            headers={"Content-Type": "application/json"},
            data=verify_payload.encode("utf-8"),
        )
        if not _is_success(response):
            log.error(
                "paypal webhook verification request failed for %s: %s %s",
                event_id, response.status_code, response.text,
            )
            raise ApiError(HTTPStatus.BAD_GATEWAY, "paypal webhook verification failed")
        try:
            verification_status = _require_str(response.json(), "verification_status")
        except ValueError as err:
            log.error("failed to parse webhook verification response for %s: %s", event_id, err)
            raise ApiError(
                HTTPStatus.BAD_GATEWAY, "failed to parse webhook verification response"
            ) from err

        if verification_status != "SUCCESS":
            log.warning(
                "paypal webhook %s signature verification failed: %s (webhook id %s)",
                event_id, verification_status, self.webhook_id,
            )
            raise ApiError(
                HTTPStatus.BAD_REQUEST, "paypal webhook signature verification failed"
            )