"""Cloud store logic over SQLite: plans, billing, support tickets and PayPal checkout."""

__version__ = "0.1.0"

__all__ = [
    "billing",
    "checkout",
    "config",
    "core",
    "paypal_client",
    "paypal_payload",
    "routes",
    "tickets",
]