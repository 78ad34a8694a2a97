"""Links to the customer portal pages."""

_PORTAL_LINKS = (
    "/portal/orders",
    "/portal/invoices",
    "/portal/instances",
    "/portal/subscriptions",
    "/portal/tickets",
)


def portal_links() -> tuple[str, ...]:
    """Paths of the portal sections, in menu order."""
    return _PORTAL_LINKS