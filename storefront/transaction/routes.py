# storefront/transaction/routes.py
from datetime import datetime, timedelta
from io import BytesIO

import pandas as pd
from flask import g, request, send_file

from . import admin_bp, bp
from ..errors import BusinessRuleError, NotFound
from ..extensions import db
from ..model import Payment, Transaction
from ..services import payment_service
from ..services import transaction_service as ledger
from ..utils.api import err, ok, paginate
from ..utils.decorators import login_required, role_at_least


def _get(txn_id) -> Transaction:
    txn = db.session.get(Transaction, txn_id)
    if txn is None:
        raise NotFound("Transaction")
    return txn


def _day(v, end=False):
    if not v:
        return None
    d = datetime.fromisoformat(v)
    return d + timedelta(days=1) if end else d


def _filtered():
    """
    Query params: type, status, payment_id, user_id, gateway_transaction_id,
    start=YYYY-MM-DD, end=YYYY-MM-DD (inclusive)
    """
    q = Transaction.query
    for arg, col in (("type", Transaction.type), ("status", Transaction.status),
                     ("gateway_transaction_id", Transaction.gateway_transaction_id)):
        if request.args.get(arg):
            q = q.filter(col == request.args[arg])
    for arg, col in (("payment_id", Transaction.payment_id), ("user_id", Transaction.user_id)):
        if request.args.get(arg, type=int) is not None:
            q = q.filter(col == request.args.get(arg, type=int))
    start = _day(request.args.get("start"))
    end = _day(request.args.get("end"), end=True)
    if start:
        q = q.filter(Transaction.created_at >= start)
    if end:
        q = q.filter(Transaction.created_at < end)
    return q


@bp.get("")
@login_required
def my_transactions():
    q = Transaction.query.filter(Transaction.user_id == g.current_user.id)
    if request.args.get("type"):
        q = q.filter(Transaction.type == request.args["type"])
    q = q.order_by(Transaction.created_at.desc(), Transaction.id.desc())
    return ok("transactions", paginate(q, request.args.get("page"), request.args.get("per_page"),
                                       lambda t: t.as_api()))


# ---- admin ------------------------------------------------------------------

@admin_bp.get("")
@role_at_least("manager")
def admin_list():
    q = _filtered().order_by(Transaction.created_at.desc(), Transaction.id.desc())
    return ok("transactions", paginate(q, request.args.get("page"), request.args.get("per_page"),
                                       lambda t: t.as_api()))


@admin_bp.get("/summary")
@role_at_least("manager")
def admin_summary():
    return ok("transaction summary", ledger.summary(
        _day(request.args.get("start")), _day(request.args.get("end"), end=True)
    ))


@admin_bp.get("/export")
@role_at_least("manager")
def admin_export():
    rows = [{
        "ID": t.id,
        "Date": t.created_at,
        "Payment ID": t.payment_id,
        "Order Number": t.payment.order.order_number if t.payment and t.payment.order else None,
        "Type": t.type,
        "Status": t.status,
        "Amount": float(t.amount),
        "Currency": t.currency,
        "Gateway Transaction ID": t.gateway_transaction_id,
        "Reason": t.reason,
    } for t in _filtered().order_by(Transaction.created_at.asc()).all()]
    df = pd.DataFrame(rows)

    output = BytesIO()
    df.to_excel(output, index=False)
    output.seek(0)
    return send_file(
        output,
        as_attachment=True,
        download_name="transactions_export.xlsx",
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@admin_bp.get("/<int:txn_id>")
@role_at_least("manager")
def admin_get(txn_id: int):
    txn = _get(txn_id)
    payment = db.session.get(Payment, txn.payment_id)
    return ok("transaction", {
        "transaction": txn.as_api(),
        "payment": payment.as_api() if payment else None,
        "available_for_refund": float(ledger.available_to_refund(payment)) if payment else 0.0,
    })


@admin_bp.post("")
@role_at_least("admin")
def admin_create():
    data = request.get_json(silent=True) or {}
    payment = db.session.get(Payment, data.get("payment_id") or 0)
    if payment is None:
        return err("Payment not found", 404)
    txn = ledger.create_manual(payment, data, actor_id=g.current_user.id)
    return ok("Transaction recorded", {"transaction": txn.as_api(), "payment": payment.as_api()}, 201)


@admin_bp.put("/<int:txn_id>/status")
@role_at_least("admin")
def admin_update_status(txn_id: int):
    txn = _get(txn_id)
    status = ((request.get_json(silent=True) or {}).get("status") or "").strip().lower()
    ledger.update_status(txn, status)
    return ok("Transaction updated", {"transaction": txn.as_api()})


@admin_bp.post("/<int:txn_id>/refund")
@role_at_least("admin")
def admin_refund(txn_id: int):
    txn = _get(txn_id)
    if txn.type != "sale" or txn.status != "success":
        raise BusinessRuleError("Only successful sale transactions can be refunded",
                                data={"type": txn.type, "status": txn.status})
    data = request.get_json(silent=True) or {}
    payment, summary = payment_service.refund_payment(
        txn.payment_id, data.get("amount"), reason=data.get("reason"), actor_id=g.current_user.id
    )
    return ok("Refund processed successfully", {"payment": payment.as_api(), "refund_summary": summary})
