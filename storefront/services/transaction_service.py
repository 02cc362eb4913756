# storefront/services/transaction_service.py
"""
The transaction ledger is the source of truth for money movement. A
payment's refund_amount and refunded / partially_refunded status are
derived from its successful refund rows by `reconcile`.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func

from ..errors import BusinessRuleError, Conflict, ValidationFailed
from ..extensions import db
from ..model import Payment, Transaction
from ..model.transaction import TRANSACTION_TYPES
from ..utils.money import D, round_money

log = logging.getLogger(__name__)

# payment status -> order.payment_status
ORDER_PAYMENT_STATUS = {
    "pending": "pending",
    "processing": "pending",
    "completed": "paid",
    "failed": "failed",
    "refunded": "refunded",
    "partially_refunded": "partially_refunded",
    "cancelled": "cancelled",
}

REFUNDABLE = ("completed", "partially_refunded")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def total_refunded(payment_id):
    total = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(
            Transaction.payment_id == payment_id,
            Transaction.type == "refund",
            Transaction.status == "success",
        )
        .scalar()
    )
    return round_money(D(total))


def available_to_refund(payment):
    return max(round_money(D(payment.amount) - total_refunded(payment.id)), D(0))


def check_refundable(payment, amount):
    """Raise unless `amount` may still be refunded from `payment`."""
    if payment.status not in REFUNDABLE:
        raise BusinessRuleError(
            f"Payment cannot be refunded in status '{payment.status}'",
            data={"status": payment.status},
        )
    available = available_to_refund(payment)
    if D(amount) > available:
        raise BusinessRuleError(
            f"Refund amount exceeds available balance. Maximum refundable: ${available:.2f}",
            data={"available_for_refund": float(available)},
        )


def record(payment, type, amount, status, gateway_transaction_id, gateway_response=None, reason=None):
    if db.session.query(Transaction.id).filter_by(gateway_transaction_id=gateway_transaction_id).first():
        raise Conflict("Transaction already recorded", data={"gateway_transaction_id": gateway_transaction_id})
    txn = Transaction(
        payment_id=payment.id,
        user_id=payment.user_id,
        type=type,
        amount=round_money(D(amount)),
        currency=payment.currency,
        status=status,
        gateway_transaction_id=gateway_transaction_id,
        gateway_response=gateway_response or {},
        reason=reason,
        processed_at=_utcnow() if status != "pending" else None,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def mirror_order(payment):
    if payment.order is not None:
        payment.order.payment_status = ORDER_PAYMENT_STATUS.get(payment.status, payment.order.payment_status)


def reconcile(payment):
    """Derive refund figures and refund status from the ledger, then mirror onto the order."""
    db.session.flush()
    refunded = total_refunded(payment.id)
    payment.refund_amount = refunded
    if refunded > 0:
        payment.status = "refunded" if refunded >= D(payment.amount) else "partially_refunded"
    elif payment.status in ("pending", "processing", "failed"):
        sale = (
            Transaction.query
            .filter_by(payment_id=payment.id, type="sale", status="success")
            .first()
        )
        if sale is not None:
            payment.status = "completed"
            payment.payment_date = payment.payment_date or sale.processed_at or _utcnow()
    mirror_order(payment)
    return payment


# ---- admin -----------------------------------------------------------------

def create_manual(payment, data, actor_id=None):
    """Record a hand-entered ledger row (bank reconciliation, offline refunds)."""
    errors = []
    ttype = (data.get("type") or "").strip().lower()
    if ttype not in TRANSACTION_TYPES:
        errors.append({"field": "type", "message": f"must be one of {', '.join(TRANSACTION_TYPES)}"})
    try:
        amount = D(data.get("amount"))
    except ValueError:
        amount = D(0)
    if amount <= 0:
        errors.append({"field": "amount", "message": "amount must be > 0"})
    status = (data.get("status") or "success").strip().lower()
    if status not in ("success", "failed", "pending"):
        errors.append({"field": "status", "message": "must be success, failed or pending"})
    if errors:
        raise ValidationFailed(errors)

    if ttype == "refund" and status == "success":
        check_refundable(payment, amount)

    gid = (data.get("gateway_transaction_id") or "").strip() or f"MANUAL_{int(_utcnow().timestamp() * 1000)}_{payment.id}"
    txn = record(
        payment,
        ttype,
        amount,
        status,
        gid,
        gateway_response={"source": "manual", "created_by": actor_id},
        reason=data.get("reason"),
    )
    reconcile(payment)
    db.session.commit()
    log.info("manual %s transaction %s recorded on payment %s", ttype, gid, payment.id)
    return txn


def update_status(txn, new_status):
    if txn.status != "pending":
        raise BusinessRuleError(f"Only pending transactions can be updated (current: {txn.status})")
    if new_status not in ("success", "failed"):
        raise ValidationFailed([{"field": "status", "message": "status must be success or failed"}])
    payment = db.session.get(Payment, txn.payment_id)
    if new_status == "success" and txn.type == "refund":
        check_refundable(payment, txn.amount)
    txn.status = new_status
    txn.processed_at = _utcnow()
    reconcile(payment)
    db.session.commit()
    return txn


def summary(start=None, end=None):
    q = db.session.query(
        Transaction.type,
        Transaction.status,
        func.count(Transaction.id),
        func.coalesce(func.sum(Transaction.amount), 0),
    )
    if start is not None:
        q = q.filter(Transaction.created_at >= start)
    if end is not None:
        q = q.filter(Transaction.created_at < end)
    rows = q.group_by(Transaction.type, Transaction.status).all()

    breakdown = {}
    sales = refunds = D(0)
    for ttype, status, count, amount in rows:
        amount = round_money(D(amount))
        breakdown.setdefault(ttype, {})[status] = {"count": count, "amount": float(amount)}
        if status == "success" and ttype == "sale":
            sales += amount
        elif status == "success" and ttype == "refund":
            refunds += amount
    return {
        "total_sales": float(sales),
        "total_refunds": float(refunds),
        "net_revenue": float(round_money(sales - refunds)),
        "breakdown": breakdown,
    }
