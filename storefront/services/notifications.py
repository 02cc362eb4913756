# storefront/services/notifications.py
"""
Outbound e-mail notifications.

Jobs are submitted to a small thread pool and run inside an application
context; each send is retried with exponential backoff. A job that keeps
failing is logged and dropped, it never reaches the request that queued it.
With NOTIFY_SYNC the job runs inline (tests, CLI).
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

log = logging.getLogger(__name__)


class Notifier:
    def __init__(self, app=None):
        self._executor = None
        self.app = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions["notifier"] = self
        if not app.config.get("NOTIFY_SYNC") and self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=app.config.get("NOTIFY_MAX_WORKERS", 2),
                thread_name_prefix="notify",
            )

    # ---- queue ---------------------------------------------------------------
    def submit(self, job, *args):
        from flask import current_app

        app = current_app._get_current_object()
        if app.config.get("NOTIFY_SYNC") or self._executor is None:
            return self._run(app, job, *args)
        return self._executor.submit(self._run, app, job, *args)

    def _run(self, app, job, *args):
        retries = max(int(app.config.get("NOTIFY_MAX_RETRIES", 3)), 1)
        backoff = float(app.config.get("NOTIFY_BACKOFF_SECONDS", 2.0))
        for attempt in range(1, retries + 1):
            try:
                with app.app_context():
                    job(*args)
                return True
            except Exception:
                if attempt == retries:
                    log.exception("notification %s failed after %d attempts", job.__name__, attempt)
                    return False
                delay = backoff * (2 ** (attempt - 1))
                log.warning("notification %s failed (attempt %d), retrying in %.1fs", job.__name__, attempt, delay)
                time.sleep(delay)

    # ---- jobs ----------------------------------------------------------------
    def order_confirmation(self, order):
        self.submit(send_order_confirmation, order.as_api())

    def admin_new_order_alert(self, order, admin_email):
        if not admin_email:
            log.info("no admin e-mail configured, skipping new-order alert for %s", order.order_number)
            return
        self.submit(send_admin_new_order_alert, order.as_api(), admin_email)

    def order_status_update(self, order):
        self.submit(send_order_status_update, order.as_api())


def _money(v):
    return f"${v:,.2f}"


def _items_text(snapshot):
    return "\n".join(
        f"  {i['quantity']} x {i['name']} @ {_money(i['price'])} = {_money(i['subtotal'])}"
        for i in snapshot["items"]
    )


def _totals_text(snapshot):
    t = snapshot["totals"]
    return (
        f"Subtotal: {_money(t['subtotal'])}\n"
        f"Discount: -{_money(t['discount'])}\n"
        f"Shipping: {_money(t['shipping'])}\n"
        f"Tax: {_money(t['tax'])}\n"
        f"Total: {_money(t['total'])}"
    )


def send_order_confirmation(snapshot):
    from flask_mail import Message
    from ..extensions import mail

    customer = snapshot["customer"]
    body = (
        f"Hi {customer.get('first_name') or ''},\n\n"
        f"Thank you for your order {snapshot['order_number']}.\n\n"
        f"{_items_text(snapshot)}\n\n{_totals_text(snapshot)}\n\n"
        f"Payment method: {snapshot['payment_method']}\n"
    )
    mail.send(Message(
        subject=f"Order Confirmation - {snapshot['order_number']}",
        recipients=[customer["email"]],
        body=body,
    ))


def send_admin_new_order_alert(snapshot, admin_email):
    from flask_mail import Message
    from ..extensions import mail

    customer = snapshot["customer"]
    body = (
        f"New order {snapshot['order_number']} from "
        f"{customer.get('first_name') or ''} {customer.get('last_name') or ''} <{customer['email']}>\n\n"
        f"{_items_text(snapshot)}\n\n{_totals_text(snapshot)}\n"
    )
    mail.send(Message(
        subject=f"New Order Received - {snapshot['order_number']}",
        recipients=[admin_email],
        body=body,
    ))


def send_order_status_update(snapshot):
    from flask_mail import Message
    from ..extensions import mail

    body = f"Your order {snapshot['order_number']} is now {snapshot['status']}."
    if snapshot.get("tracking_number"):
        body += f"\nTracking number: {snapshot['tracking_number']}"
    mail.send(Message(
        subject=f"Order {snapshot['order_number']} - {snapshot['status']}",
        recipients=[snapshot["customer"]["email"]],
        body=body,
    ))
