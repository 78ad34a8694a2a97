# cloudstore

Request-handling logic for a small cloud store that sells NAT VPS plans.
Every operation works on an open `sqlite3.Connection`. The PayPal calls go
through `requests`.

- **Plans and billing** (`cloudstore.billing`): the catalogue of active plans
  with the cheapest first, user balances, the latest 100 balance transactions,
  and the latest 50 invoices. A user sees their own invoices and an admin sees
  all of them. Open invoices that are past due are marked expired before
  invoices are listed. A failed order can be refunded to its owner's balance.
- **Checkout** (`cloudstore.checkout`): buying a plan either from the balance
  or through PayPal, balance recharges, and retrying payment of an open,
  unexpired invoice. It also captures a payment on the PayPal return,
  builds the cancel redirect, and handles PayPal webhooks. Each webhook is
  verified, stored, and ignored if it is a replay of an event already
  processed. Node capacity and plan inventory are checked before a sale.
- **Support tickets** (`cloudstore.tickets`): opening a ticket, replies from
  the owner and from admins, status changes by an admin (`open`,
  `in_progress`, `resolved`, `closed`), closing, and an endless polling
  generator of `("message", json)` and `("status", status)` events.

## Modules

| Module | What it holds |
| --- | --- |
| `cloudstore.core` | `ApiError`, `AuthUser`, `AppState`, `transaction`, `health`, `db_health` |
| `cloudstore.config` | `Settings.from_env()`, environment helpers, `normalize_database_url`, `bind_listener` |
| `cloudstore.routes` | `portal_links()` |
| `cloudstore.billing` | `list_public_plans`, `get_balance`, `list_balance_transactions`, `refund_failed_order`, `list_invoices`, `expire_overdue_invoices` |
| `cloudstore.tickets` | `create_ticket`, `list_tickets`, `reply_ticket`, `admin_reply_ticket`, `admin_update_ticket_status`, `close_ticket`, `admin_close_ticket`, `poll_ticket_events`, `open_ticket_stream`, `open_admin_ticket_stream` |
| `cloudstore.paypal_payload` | `CheckoutPlan`, `build_create_order_request`, `find_approval_url`, `extract_paypal_order_id`, `invoice_is_overdue`, `build_verify_payload`, `required_header` |
| `cloudstore.paypal_client` | `PayPalClient` with `fetch_access_token`, `create_order`, `capture_order`, `verify_webhook` |
| `cloudstore.checkout` | `create_order`, `create_balance_checkout`, `create_recharge`, `retry_invoice_payment`, `paypal_return`, `paypal_cancel`, `handle_webhook`, `finalize_paid_checkout` and related helpers |

## Errors

A failing operation raises `cloudstore.core.ApiError`. The error has a
`status` (an `http.HTTPStatus`) and a short `message`. Examples are `404`
with `"order not found"`, `402` with `"insufficient balance"`, and `502` when
PayPal fails. A web layer can turn it into a response directly.

## Transactions

`cloudstore.core.transaction(db)` is a context manager built on a savepoint.
The block commits when it finishes and rolls back when it raises. Refunds,
balance purchases, ticket creation and checkout finalisation run inside it.

## Configuration

`cloudstore.config.Settings.from_env()` reads these environment variables:

| Variable | Required | Default |
| --- | --- | --- |
| `DATABASE_URL` | yes | |
| `SESSION_SECRET` | yes | |
| `PAYPAL_CLIENT_ID` | yes | |
| `PAYPAL_CLIENT_SECRET` | yes | |
| `PAYPAL_WEBHOOK_ID` | yes | |
| `PAYPAL_BASE_URL` | no | `https://api-m.sandbox.paypal.com` |
| `PAYPAL_RETURN_BASE_URL` | no | `http://127.0.0.1:8081` |
| `FRONTEND_BASE_URL` | no | `http://127.0.0.1:8080` |
| `APP_HOST`, `APP_PORT` | no | `0.0.0.0`, `8081` |
| `ADMIN_APP_HOST`, `ADMIN_APP_PORT` | no | the value of `APP_HOST`, `8082` |
| `ADMIN_BOOTSTRAP_EMAIL`, `ADMIN_BOOTSTRAP_PASSWORD` | no | unset |

A missing required variable raises `RuntimeError`. A port that is missing or
not a valid port number falls back to its default. If the database URL is a
relative `sqlite://` URL, it is resolved against the current working
directory, and the directory that will hold the file is created.

`bind_listener(host, port)` returns a listening socket. If the port is
already in use, it tries the next port once.

## Example

```python
import sqlite3

from cloudstore import billing, tickets
from cloudstore.core import AuthUser
from cloudstore.paypal_payload import invoice_is_overdue

db = sqlite3.connect("store.db")   # a database that already holds the store's tables
user = AuthUser(id="user-1")

for plan in billing.list_public_plans(db):
    print(plan.code, plan.monthly_price)

print(billing.get_balance(db, user))

tickets.is_valid_ticket_status("In_Progress")     # True
invoice_is_overdue("2000-01-01T00:00:00+00:00")   # True
```

## What this package does not do

- **No HTTP server or routing.** The functions take plain arguments and
  return dataclasses, strings or status codes. `paypal_return` and
  `paypal_cancel` return the URL to redirect to. Mounting them on a web
  framework is left to the caller. The package installs no command.
- **No authentication.** Nothing registers users, logs them in or checks
  tokens. The caller resolves the user and passes in an `AuthUser`, whose
  `role` of `"admin"` grants admin views.
- **No schema or migrations.** The package expects these tables to exist
  already: `users`, `nat_plans`, `nodes`, `orders`, `invoices`,
  `balance_transactions`, `support_tickets`, `support_messages` and
  `payment_webhook_events`. It never creates them.
- **No management of nodes, plans or instances.** There is no admin tooling
  beyond tickets and invoice listing.