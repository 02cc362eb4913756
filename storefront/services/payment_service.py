# storefront/services/payment_service.py
"""
Payment lifecycle: process, retry, refund, COD confirm/fail and inbound
gateway webhooks. Every path that moves money appends a Transaction row and
then lets transaction_service.reconcile derive the payment/order status.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..errors import BusinessRuleError, Conflict, NotFound, ValidationFailed
from ..extensions import db, notifier
from ..model import Order, Payment, Transaction
from ..utils.money import D, round_money
from . import transaction_service as ledger
from .gateway import failed_transaction_id, get_gateway
from .order_service import mark_cancelled
from .settings_service import get_payment_settings

log = logging.getLogger(__name__)

REFUNDABLE = ledger.REFUNDABLE

ADMIN_TRANSITIONS = {
    "pending": {"processing", "completed", "failed", "cancelled"},
    "processing": {"completed", "failed"},
    "failed": {"pending"},
}


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _millis():
    return int(time.time() * 1000)


def get_payment(payment_id, user=None) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None or (user is not None and payment.user_id != user.id):
        raise NotFound("Payment")
    return payment


def _method_kind(name):
    method = get_payment_settings().load().get(name)
    return method.kind if method is not None else None


def _is_cod(payment):
    return payment.is_cod or _method_kind(payment.payment_method) == "cod"


def _safe_details(details):
    """Keep only what is safe to store from submitted card/wallet details."""
    if not details:
        return None
    out = {}
    number = str(details.get("card_number") or details.get("number") or "").replace(" ", "")
    if number:
        out["last4"] = number[-4:]
    elif details.get("last4"):
        out["last4"] = str(details["last4"])[-4:]
    if details.get("brand"):
        out["brand"] = details["brand"]
    if details.get("provider"):
        out["provider"] = details["provider"]
    return out or None


def _confirm_order(order):
    if order is not None and order.status == "pending":
        order.status = "confirmed"
        order.confirmed_at = _utcnow()


# ---- customer-facing -------------------------------------------------------

def process_payment(payment, payment_token=None, payment_details=None):
    if payment.status != "pending":
        raise BusinessRuleError(
            f"Payment cannot be processed in status '{payment.status}'",
            data={"status": payment.status},
        )
    if _is_cod(payment):
        raise BusinessRuleError("Cash on delivery payments are confirmed on delivery")

    payment.status = "processing"
    payment.payment_details = _safe_details(payment_details)
    db.session.flush()

    result = get_gateway().charge(payment, payment_token)
    if result.success:
        payment.gateway_transaction_id = result.transaction_id
        payment.gateway_response = result.response
        payment.payment_date = _utcnow()
        payment.failure_reason = None
        ledger.record(payment, "sale", payment.amount, "success", result.transaction_id, result.response)
        ledger.reconcile(payment)
        _confirm_order(payment.order)
        log.info("payment %s charged (%s)", payment.id, result.transaction_id)
    else:
        payment.status = "failed"
        payment.failure_reason = result.error or "Payment failed"
        payment.gateway_response = result.response
        ledger.record(payment, "sale", payment.amount, "failed", failed_transaction_id(), result.response,
                      reason=payment.failure_reason)
        ledger.mirror_order(payment)
        log.info("payment %s declined: %s", payment.id, payment.failure_reason)
    db.session.commit()
    if result.success:
        notifier.order_status_update(payment.order)
    return payment, result


def retry_payment(payment, payment_method=None, payment_token=None, payment_details=None):
    if payment.status != "failed":
        raise BusinessRuleError(
            f"Only failed payments can be retried (current: {payment.status})",
            data={"status": payment.status},
        )
    if payment_method and payment_method != payment.payment_method:
        order = payment.order
        city = (order.shipping_address or {}).get("city") if order else None
        method = get_payment_settings().validate_method(payment_method, payment.amount, city=city)
        payment.payment_method = method.name
        if order is not None:
            order.payment_method = method.name
    payment.status = "pending"
    payment.failure_reason = None
    ledger.mirror_order(payment)
    db.session.flush()
    return process_payment(payment, payment_token, payment_details)


# ---- admin -----------------------------------------------------------------

def create_payment(order_id, data, actor_id=None):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order")
    if order.payment is not None:
        raise Conflict("Payment already exists for this order", data={"payment_id": order.payment.id})

    method_name = data.get("payment_method") or order.payment_method
    kind = _method_kind(method_name)
    if kind is None:
        raise ValidationFailed([{"field": "payment_method", "message": "unknown payment method"}])
    status = (data.get("status") or "pending").strip().lower()
    if status not in ("pending", "completed"):
        raise ValidationFailed([{"field": "status", "message": "status must be pending or completed"}])
    try:
        amount = D(data.get("amount", order.total))
    except ValueError:
        amount = D(0)
    if amount <= 0:
        raise ValidationFailed([{"field": "amount", "message": "amount must be > 0"}])

    payment = Payment(
        order_id=order.id,
        user_id=order.user_id,
        payment_method=method_name,
        amount=round_money(amount),
        currency=current_app.config.get("CURRENCY", "USD"),
        status="pending",
        cod_status="awaiting_delivery" if kind == "cod" else None,
        gateway_transaction_id=data.get("gateway_transaction_id"),
        refund_amount=D(0),
        processed_by=actor_id,
        notes=data.get("notes"),
    )
    db.session.add(payment)
    db.session.flush()
    if status == "completed":
        ledger.record(payment, "sale", payment.amount, "success", f"ADMIN_{_millis()}_{payment.id}",
                      {"source": "admin", "created_by": actor_id})
        if kind == "cod":
            payment.cod_status = "collected"
        ledger.reconcile(payment)
        _confirm_order(order)
    else:
        ledger.mirror_order(payment)
    db.session.commit()
    return payment


def admin_update_status(payment, new_status, note=None, actor_id=None):
    allowed = ADMIN_TRANSITIONS.get(payment.status, set())
    if new_status not in allowed:
        raise BusinessRuleError(
            f"Cannot change payment status from '{payment.status}' to '{new_status}'",
            data={"status": payment.status, "allowed": sorted(allowed)},
        )
    payment.processed_by = actor_id
    if note:
        payment.notes = f"{payment.notes}\n{note}" if payment.notes else note

    if new_status == "completed":
        ledger.record(payment, "sale", payment.amount, "success", f"ADMIN_{_millis()}_{payment.id}",
                      {"source": "admin", "updated_by": actor_id})
        if payment.cod_status is not None:
            payment.cod_status = "collected"
        ledger.reconcile(payment)
        _confirm_order(payment.order)
    else:
        payment.status = new_status
        if new_status == "failed":
            payment.failure_reason = note or "Marked as failed by admin"
        elif new_status == "pending":
            payment.failure_reason = None
        ledger.mirror_order(payment)
    db.session.commit()
    return payment


def apply_refund(payment, amount, refund_id, reason=None, response=None):
    """Book a successful refund and re-derive the payment status. Caller commits."""
    ledger.record(payment, "refund", amount, "success", refund_id, response, reason=reason)
    payment.refund_date = _utcnow()
    if reason:
        payment.refund_reason = reason
    ledger.reconcile(payment)
    return payment


def refund_payment(payment_id, amount=None, reason=None, actor_id=None):
    """
    Refund up to the remaining balance. The payment row is locked and its
    version checked on commit, so two concurrent refunds cannot both pass
    the balance check.
    """
    payment = (
        Payment.query
        .filter_by(id=payment_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if payment is None:
        raise NotFound("Payment")
    if payment.status not in REFUNDABLE:
        raise BusinessRuleError(
            f"Payment cannot be refunded in status '{payment.status}'",
            data={"status": payment.status},
        )

    available = ledger.available_to_refund(payment)
    if amount is None:
        amount = available
    try:
        amount = round_money(D(amount))
    except ValueError:
        amount = D(0)
    if amount <= 0:
        raise ValidationFailed([{"field": "amount", "message": "refund amount must be > 0"}])
    if amount > available:
        raise BusinessRuleError(
            f"Refund amount exceeds available balance. Maximum refundable: ${available:.2f}",
            data={"available_for_refund": float(available), "requested": float(amount)},
        )

    if _is_cod(payment):
        refund_id = f"COD_REF_{_millis()}_{payment.id}"
        response = {"source": "manual", "method": "cod"}
    else:
        result = get_gateway().refund(payment, amount)
        if not result.success:
            ledger.record(payment, "refund", amount, "failed", failed_transaction_id(), result.response,
                          reason=result.error)
            db.session.commit()
            log.info("refund of %s on payment %s declined: %s", amount, payment.id, result.error)
            raise BusinessRuleError(result.error or "Refund failed", data={"available_for_refund": float(available)})
        refund_id = result.transaction_id
        response = result.response

    payment.processed_by = actor_id
    apply_refund(payment, amount, refund_id, reason=reason, response=response)
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise Conflict("Payment was modified concurrently, please retry")

    log.info("refunded %s on payment %s (%s)", amount, payment.id, refund_id)
    return payment, {
        "refunded_amount": float(amount),
        "total_refunded": float(payment.refund_amount),
        "available_for_refund": float(ledger.available_to_refund(payment)),
    }


def _whole_units(amount):
    return D(amount).quantize(D(1), rounding=ROUND_HALF_UP)


def confirm_cod(payment, collected_amount, note=None, actor_id=None):
    """
    Accept cash collected on delivery. Expected and collected amounts are
    compared in whole currency units; they may differ by COD_TOLERANCE.
    """
    if not _is_cod(payment):
        raise BusinessRuleError("Payment is not cash on delivery")
    if payment.status != "pending":
        raise BusinessRuleError(
            f"COD payment cannot be confirmed in status '{payment.status}'",
            data={"status": payment.status},
        )
    try:
        collected = round_money(D(collected_amount))
    except ValueError:
        collected = D(-1)
    if collected <= 0:
        raise ValidationFailed([{"field": "collected_amount", "message": "collected_amount must be > 0"}])

    expected = D(payment.amount)
    tolerance = D(current_app.config.get("COD_TOLERANCE", 1))
    if abs(_whole_units(collected) - _whole_units(expected)) > tolerance:
        raise BusinessRuleError(
            "Collected amount does not match the expected amount",
            data={
                "expected_amount": float(expected),
                "collected_amount": float(collected),
                "difference": float(round_money(abs(collected - expected))),
            },
        )

    ledger.record(payment, "sale", collected, "success", f"COD_{_millis()}_{payment.id}",
                  {"source": "cod", "collected_by": actor_id})
    payment.cod_status = "collected"
    payment.processed_by = actor_id
    if note:
        payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
    ledger.reconcile(payment)
    _confirm_order(payment.order)
    db.session.commit()
    log.info("COD payment %s collected (%s)", payment.id, collected)
    return payment


def fail_cod(payment, reason, actor_id=None):
    if not _is_cod(payment):
        raise BusinessRuleError("Payment is not cash on delivery")
    if payment.status != "pending":
        raise BusinessRuleError(
            f"COD payment cannot be failed in status '{payment.status}'",
            data={"status": payment.status},
        )
    reason = reason or "Customer did not pay"
    payment.status = "failed"
    payment.cod_status = "failed_collection"
    payment.failure_reason = reason
    payment.processed_by = actor_id
    ledger.record(payment, "sale", payment.amount, "failed", failed_transaction_id(), {"source": "cod"},
                  reason=reason)
    order = payment.order
    if order is not None and order.status not in ("cancelled", "returned"):
        mark_cancelled(order, f"COD collection failed: {reason}", payment_status="failed")
    db.session.commit()
    log.info("COD payment %s failed: %s", payment.id, reason)
    if order is not None:
        notifier.order_status_update(order)
    return payment


# ---- webhooks --------------------------------------------------------------

def verify_signature(raw_body: bytes, signature) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded, optionally prefixed with 'sha256='."""
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret or not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), raw_body or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def _by_gateway_id(gateway_id):
    if not gateway_id:
        return None
    return Payment.query.filter_by(gateway_transaction_id=str(gateway_id)).first()


def _webhook_payment_completed(data):
    payment = _by_gateway_id(data.get("payment_id"))
    if payment is None or payment.status != "pending":
        return "ignored"
    amount = data.get("amount") or payment.amount
    ledger.record(payment, "sale", amount, "success", payment.gateway_transaction_id, data)
    payment.payment_date = _utcnow()
    ledger.reconcile(payment)
    _confirm_order(payment.order)
    return "completed"


def _webhook_payment_failed(data):
    payment = _by_gateway_id(data.get("payment_id"))
    if payment is None or payment.status != "pending":
        return "ignored"
    error = data.get("error") or {}
    payment.status = "failed"
    payment.failure_reason = (error.get("message") if isinstance(error, dict) else str(error)) or "Payment failed"
    ledger.record(payment, "sale", payment.amount, "failed", failed_transaction_id(), data,
                  reason=payment.failure_reason)
    ledger.mirror_order(payment)
    return "failed"


def _webhook_refund_completed(data):
    payment = _by_gateway_id(data.get("payment_id"))
    refund_id = data.get("refund_id")
    if payment is None or not refund_id:
        return "ignored"
    if Transaction.query.filter_by(gateway_transaction_id=str(refund_id)).first() is not None:
        return "duplicate"
    amount = round_money(D(data.get("amount") or 0))
    available = ledger.available_to_refund(payment)
    if payment.status not in REFUNDABLE or amount <= 0 or amount > available:
        log.warning("refund webhook %s for %s rejected on payment %s (%s, available %s)",
                    refund_id, amount, payment.id, payment.status, available)
        return "rejected"
    apply_refund(payment, amount, str(refund_id), reason=data.get("reason") or "Gateway refund", response=data)
    return "refunded"


WEBHOOK_HANDLERS = {
    "payment.completed": _webhook_payment_completed,
    "payment.failed": _webhook_payment_failed,
    "refund.completed": _webhook_refund_completed,
}


def handle_webhook(gateway, event):
    """Apply one gateway event. Processing failures are logged, never raised."""
    etype = (event or {}).get("type")
    data = (event or {}).get("data") or {}
    handler = WEBHOOK_HANDLERS.get(etype)
    if handler is None:
        log.info("unhandled %s webhook type: %s", gateway, etype)
        return "unhandled"
    try:
        outcome = handler(data)
        db.session.commit()
    except Exception:
        db.session.rollback()
        log.exception("%s webhook %s failed", gateway, etype)
        return "error"
    log.info("%s webhook %s: %s", gateway, etype, outcome)
    return outcome


# ---- reporting -------------------------------------------------------------

def payment_statistics():
    from sqlalchemy import func

    rows = (
        db.session.query(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        .group_by(Payment.status)
        .all()
    )
    by_method = dict(
        db.session.query(Payment.payment_method, func.count(Payment.id)).group_by(Payment.payment_method).all()
    )
    refunded = db.session.query(func.coalesce(func.sum(Payment.refund_amount), 0)).scalar()
    return {
        "by_status": {s: {"count": c, "amount": float(round_money(D(a)))} for s, c, a in rows},
        "by_method": by_method,
        "total_refunded": float(round_money(D(refunded))),
    }
