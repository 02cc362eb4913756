# storefront/payment/routes.py
import logging

from flask import g, request

from . import admin_bp, bp
from ..errors import NotFound
from ..extensions import db
from ..model import Order, Payment
from ..services import payment_service
from ..services.settings_service import calculate_fee, get_payment_settings
from ..utils.api import err, ok, paginate
from ..utils.decorators import login_required, role_at_least
from ..utils.money import D

log = logging.getLogger(__name__)


def _amount_arg(v):
    if v in (None, ""):
        return None
    try:
        return D(v)
    except ValueError:
        return None


def _method_api(method, amount=None):
    out = method.model_dump(exclude={"credentials"})
    if amount is not None:
        fee = calculate_fee(method, amount)
        out["fee"] = float(fee)
        out["total_with_fee"] = float(amount + fee)
    return out


# ---- customer ---------------------------------------------------------------

@bp.get("/methods")
def available_methods():
    amount = _amount_arg(request.args.get("amount"))
    settings = get_payment_settings()
    doc = settings.load()
    methods = settings.available_methods(amount)
    return ok("payment methods", {
        "methods": [_method_api(m, amount) for m in methods],
        "default_method": doc.default_method,
        "minimum_order_amount": doc.minimum_order_amount,
    })


@bp.post("/validate-method")
def validate_method():
    data = request.get_json(silent=True) or {}
    name = (data.get("payment_method") or "").strip()
    amount = _amount_arg(data.get("amount"))
    if not name or amount is None:
        return err("Validation failed", 400, {"errors": [
            {"field": "payment_method", "message": "payment_method and amount are required"},
        ]})
    method = get_payment_settings().validate_method(name, amount, city=data.get("city"))
    return ok("Payment method is valid", {"method": _method_api(method, amount)})


@bp.post("")
@login_required
def create_payment():
    """Open a payment for one of the caller's orders that does not have one yet."""
    data = request.get_json(silent=True) or {}
    order = db.session.get(Order, data.get("order_id") or 0)
    if order is None or order.user_id != g.current_user.id:
        raise NotFound("Order")
    if order.status == "cancelled":
        return err("Order is cancelled", 400)
    method = get_payment_settings().validate_method(
        data.get("payment_method") or order.payment_method,
        order.total,
        city=(order.shipping_address or {}).get("city"),
    )
    payment = payment_service.create_payment(order.id, {"payment_method": method.name, "amount": order.total})
    return ok("Payment created", {"payment": payment.as_api()}, 201)


@bp.get("")
@login_required
def my_payments():
    q = Payment.query.filter(Payment.user_id == g.current_user.id)
    if request.args.get("status"):
        q = q.filter(Payment.status == request.args["status"])
    q = q.order_by(Payment.created_at.desc(), Payment.id.desc())
    return ok("payments", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda p: p.as_api()))


@bp.get("/<int:payment_id>")
@login_required
def get_payment(payment_id: int):
    payment = payment_service.get_payment(payment_id, g.current_user)
    return ok("payment", {"payment": payment.as_api()})


@bp.get("/order/<int:order_id>")
@login_required
def payment_for_order(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None or order.user_id != g.current_user.id or order.payment is None:
        raise NotFound("Payment")
    return ok("payment", {"payment": order.payment.as_api()})


@bp.post("/<int:payment_id>/process")
@login_required
def process_payment(payment_id: int):
    payment = payment_service.get_payment(payment_id, g.current_user)
    data = request.get_json(silent=True) or {}
    payment, result = payment_service.process_payment(
        payment, data.get("payment_token"), data.get("payment_details")
    )
    if not result.success:
        return ok(f"Payment failed: {payment.failure_reason}", {"success": False, "payment": payment.as_api()})
    return ok("Payment processed successfully", {
        "success": True,
        "payment": payment.as_api(),
        "transaction_id": result.transaction_id,
    })


@bp.post("/<int:payment_id>/retry")
@login_required
def retry_payment(payment_id: int):
    payment = payment_service.get_payment(payment_id, g.current_user)
    data = request.get_json(silent=True) or {}
    payment, result = payment_service.retry_payment(
        payment, data.get("payment_method"), data.get("payment_token"), data.get("payment_details")
    )
    if not result.success:
        return ok(f"Payment failed: {payment.failure_reason}", {"success": False, "payment": payment.as_api()})
    return ok("Payment processed successfully", {
        "success": True,
        "payment": payment.as_api(),
        "transaction_id": result.transaction_id,
    })


@bp.post("/webhook/<gateway>")
def webhook(gateway):
    raw = request.get_data(cache=True)
    if not payment_service.verify_signature(raw, request.headers.get("X-Webhook-Signature")):
        log.warning("rejected %s webhook with invalid signature", gateway)
        return err("Invalid signature", 401)
    event = request.get_json(silent=True)
    if not isinstance(event, dict) or not event.get("type"):
        return err("Invalid webhook data", 400)
    outcome = payment_service.handle_webhook(gateway, event)
    return ok("Webhook received", {"received": True, "outcome": outcome})


# ---- admin ------------------------------------------------------------------

@admin_bp.get("")
@role_at_least("manager")
def admin_list():
    q = Payment.query
    for arg, col in (("status", Payment.status), ("payment_method", Payment.payment_method),
                     ("cod_status", Payment.cod_status)):
        if request.args.get(arg):
            q = q.filter(col == request.args[arg])
    q = q.order_by(Payment.created_at.desc(), Payment.id.desc())
    return ok("payments", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda p: p.as_api()))


@admin_bp.get("/statistics")
@role_at_least("manager")
def admin_statistics():
    return ok("payment statistics", payment_service.payment_statistics())


@admin_bp.get("/<int:payment_id>")
@role_at_least("manager")
def admin_get(payment_id: int):
    payment = payment_service.get_payment(payment_id)
    return ok("payment", {
        "payment": payment.as_api(),
        "transactions": [t.as_api() for t in payment.transactions],
    })


@admin_bp.post("")
@role_at_least("admin")
def admin_create():
    data = request.get_json(silent=True) or {}
    try:
        order_id = int(data.get("order_id"))
    except (TypeError, ValueError):
        return err("Validation failed", 400, {"errors": [{"field": "order_id", "message": "order_id is required"}]})
    payment = payment_service.create_payment(order_id, data, actor_id=g.current_user.id)
    return ok("Payment created", {"payment": payment.as_api()}, 201)


@admin_bp.put("/<int:payment_id>/status")
@role_at_least("admin")
def admin_update_status(payment_id: int):
    payment = payment_service.get_payment(payment_id)
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().lower()
    if not status:
        return err("Validation failed", 400, {"errors": [{"field": "status", "message": "status is required"}]})
    payment_service.admin_update_status(payment, status, data.get("note"), actor_id=g.current_user.id)
    return ok("Payment status updated", {"payment": payment.as_api()})


@admin_bp.post("/<int:payment_id>/refund")
@role_at_least("admin")
def admin_refund(payment_id: int):
    data = request.get_json(silent=True) or {}
    payment, summary = payment_service.refund_payment(
        payment_id, data.get("amount"), reason=data.get("reason"), actor_id=g.current_user.id
    )
    return ok("Refund processed successfully", {"payment": payment.as_api(), "refund_summary": summary})


@admin_bp.post("/<int:payment_id>/cod/confirm")
@role_at_least("manager")
def admin_confirm_cod(payment_id: int):
    payment = payment_service.get_payment(payment_id)
    data = request.get_json(silent=True) or {}
    if data.get("collected_amount") is None:
        return err("Validation failed", 400, {"errors": [
            {"field": "collected_amount", "message": "collected_amount is required"},
        ]})
    payment_service.confirm_cod(payment, data.get("collected_amount"), data.get("note"), actor_id=g.current_user.id)
    return ok("COD payment confirmed", {"payment": payment.as_api()})


@admin_bp.post("/<int:payment_id>/cod/fail")
@role_at_least("manager")
def admin_fail_cod(payment_id: int):
    payment = payment_service.get_payment(payment_id)
    data = request.get_json(silent=True) or {}
    payment_service.fail_cod(payment, data.get("reason"), actor_id=g.current_user.id)
    return ok("COD payment marked as failed", {
        "payment": payment.as_api(),
        "order": payment.order.as_api() if payment.order else None,
    })
