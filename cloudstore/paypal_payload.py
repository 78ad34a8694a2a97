"""PayPal request bodies and the parts of PayPal responses the checkout relies on."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any, Iterable, Mapping

from cloudstore.core import ApiError

CURRENCY = "USD"
BRAND_NAME = "Cloud Store"

_APPROVAL_RELS = ("approve", "payer-action")

_VERIFY_HEADERS = (
    ("transmission_id", "PayPal-Transmission-Id"),
    ("transmission_time", "PayPal-Transmission-Time"),
    ("cert_url", "PayPal-Cert-Url"),
    ("auth_algo", "PayPal-Auth-Algo"),
    ("transmission_sig", "PayPal-Transmission-Sig"),
)

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


@dataclass(frozen=True)
class CheckoutPlan:
    """The parts of a plan needed to sell it."""

    id: str
    code: str
    name: str
    monthly_price: str


def build_create_order_request(
    return_base_url: str,
    plan_name: str,
    plan_code: str,
    order_id: str,
    invoice_id: str,
    amount: str,
) -> dict[str, Any]:
    """Body of a PayPal order creation request for one invoice."""
    ref_id = order_id or invoice_id
    return {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "reference_id": ref_id,
                "custom_id": ref_id,
                "invoice_id": invoice_id,
                "description": f"{plan_name} ({plan_code})",
                "amount": {"currency_code": CURRENCY, "value": amount},
            }
        ],
        "application_context": {
            "brand_name": BRAND_NAME,
            "landing_page": "BILLING",
            "user_action": "PAY_NOW",
            "return_url": f"{return_base_url}/api/payment/paypal/return",
            "cancel_url": f"{return_base_url}/api/payment/paypal/cancel",
        },
    }


def find_approval_url(links: Iterable[Mapping[str, Any]]) -> str | None:
    """The first link a payer follows to approve the order, if any."""
    return next(
        (link.get("href") for link in links if link.get("rel") in _APPROVAL_RELS), None
    )


def _field(value: Any, key: str) -> Any:
    return value.get(key) if isinstance(value, dict) else None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _first_reference_id(resource: Any) -> str | None:
    units = _field(resource, "purchase_units")
    if not isinstance(units, list) or not units:
        return None
    return _as_str(_field(units[0], "reference_id"))


def extract_paypal_order_id(resource: Any) -> str | None:
    """The PayPal order id a webhook resource refers to."""
    related = _field(_field(resource, "supplementary_data"), "related_ids")
    for candidate in (
        _as_str(_field(related, "order_id")),
        _as_str(_field(resource, "id")),
        _first_reference_id(resource),
    ):
        if candidate is not None:
            return candidate
    return None


def _parse_rfc3339(text: str) -> datetime | None:
    match = _RFC3339.fullmatch(text)
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        try:
            tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
        except ValueError:
            return None
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tz
        )
    except ValueError:
        return None


def invoice_is_overdue(due_at: str) -> bool:
    """True when ``due_at`` is a valid RFC 3339 time that is not in the future."""
    due = _parse_rfc3339(due_at)
    return due is not None and due <= datetime.now(timezone.utc)


def _is_visible_ascii(value: str) -> bool:
    return all(ch == "\t" or 32 <= ord(ch) < 127 for ch in value)


def required_header(headers: Mapping[str, Any], name: str) -> str:
    """A header value, looked up without regard to case."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() != wanted:
            continue
        if isinstance(value, bytes):
            value = value.decode("latin-1")
        if isinstance(value, str) and _is_visible_ascii(value):
            return value
        break
    raise ApiError(HTTPStatus.BAD_REQUEST, "missing paypal webhook header")


def build_verify_payload(headers: Mapping[str, Any], webhook_id: str, raw_body: str) -> str:
    """Body of a webhook signature verification request.

    The event is appended verbatim so that the signed bytes are preserved.
    """
    wrapper = {field: required_header(headers, header) for field, header in _VERIFY_HEADERS}
    wrapper["webhook_id"] = webhook_id

    try:
        json.loads(raw_body)
    except ValueError as err:
        raise ApiError(HTTPStatus.BAD_REQUEST, "invalid webhook json") from err

    encoded = json.dumps(wrapper, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return f'{encoded[:-1]},"webhook_event":{raw_body}}}'