# storefront/order/routes.py
from datetime import datetime, timedelta
from io import BytesIO

import pandas as pd
from flask import g, request, send_file

from . import admin_bp, bp
from ..errors import NotFound
from ..extensions import db
from ..model import Order
from ..schemas import CheckoutRequest
from ..services import order_service
from ..utils.api import err, ok, paginate
from ..utils.decorators import current_user_or_none, login_required, role_at_least


def _own_order(order_id) -> Order:
    order = db.session.get(Order, order_id)
    if order is None or order.user_id != g.current_user.id:
        raise NotFound("Order")
    return order


def _date_filters(q):
    start = request.args.get("start")
    end = request.args.get("end")
    try:
        if start:
            q = q.filter(Order.created_at >= datetime.fromisoformat(start))
        if end:
            # make end inclusive for the whole day
            q = q.filter(Order.created_at < datetime.fromisoformat(end) + timedelta(days=1))
    except ValueError:
        return None
    return q


# ---- customer ---------------------------------------------------------------

@bp.post("")
def checkout():
    payload = CheckoutRequest.model_validate(request.get_json(silent=True) or {})
    result = order_service.create_order(payload, current_user_or_none())
    order, payment = result["order"], result["payment"]
    return ok("Order created successfully", {
        "order": order.as_api(),
        "payment": payment.as_api(),
        "next_step": result["next_step"],
        "coupon_message": result["coupon_message"],
    }, 201)


@bp.get("")
@login_required
def my_orders():
    q = Order.query.filter(Order.user_id == g.current_user.id)
    status = request.args.get("status")
    if status:
        q = q.filter(Order.status == status)
    q = q.order_by(Order.created_at.desc(), Order.id.desc())
    return ok("orders", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda o: o.as_api()))


@bp.get("/<int:order_id>")
@login_required
def get_order(order_id: int):
    order = _own_order(order_id)
    return ok("order", {
        "order": order.as_api(),
        "payment": order.payment.as_api() if order.payment else None,
    })


@bp.put("/<int:order_id>/cancel")
@login_required
def cancel_order(order_id: int):
    order = _own_order(order_id)
    reason = (request.get_json(silent=True) or {}).get("reason")
    order_service.cancel_order(order, reason)
    return ok("Order cancelled", {"order": order.as_api()})


@bp.get("/<int:order_id>/track")
@login_required
def track_order(order_id: int):
    return ok("tracking", order_service.tracking_info(_own_order(order_id)))


@bp.post("/<int:order_id>/return")
@login_required
def request_return(order_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()
    if not reason:
        return err("Validation failed", 400, {"errors": [{"field": "reason", "message": "reason is required"}]})
    order = order_service.request_return(_own_order(order_id), reason)
    return ok("Return requested", {"order": order.as_api()})


@bp.post("/<int:order_id>/reorder")
@login_required
def reorder(order_id: int):
    cart, added, skipped = order_service.reorder(_own_order(order_id), g.current_user)
    return ok("Items added to cart", {"cart": cart.as_api(), "added": added, "skipped": skipped})


# ---- admin ------------------------------------------------------------------

def _admin_query():
    """
    Query params:
      - status, payment_status
      - number=ORD-...
      - email=...
      - start=YYYY-MM-DD
      - end=YYYY-MM-DD (inclusive)
    """
    q = Order.query
    status = request.args.get("status")
    payment_status = request.args.get("payment_status")
    number = request.args.get("number")
    email = request.args.get("email")

    if status: q = q.filter(Order.status == status)
    if payment_status: q = q.filter(Order.payment_status == payment_status)
    if number: q = q.filter(Order.order_number == number.strip().upper())
    if email: q = q.filter(Order.customer_email.ilike(email.strip()))
    return _date_filters(q)


@admin_bp.get("")
@role_at_least("manager")
def admin_list():
    q = _admin_query()
    if q is None:
        return err("start/end must be YYYY-MM-DD", 400)
    q = q.order_by(Order.created_at.desc(), Order.id.desc())
    return ok("orders", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda o: o.as_api()))


@admin_bp.get("/statistics")
@role_at_least("manager")
def admin_statistics():
    return ok("order statistics", order_service.order_statistics())


@admin_bp.get("/export")
@role_at_least("manager")
def admin_export():
    q = _admin_query()
    if q is None:
        return err("start/end must be YYYY-MM-DD", 400)
    rows = [{
        "Order Number": o.order_number,
        "Date": o.created_at,
        "Customer": o.customer_name,
        "Email": o.customer_email,
        "Status": o.status,
        "Payment Status": o.payment_status,
        "Payment Method": o.payment_method,
        "Items": sum(i.quantity for i in o.items),
        "Subtotal": float(o.subtotal),
        "Discount": float(o.discount or 0),
        "Shipping": float(o.shipping or 0),
        "Tax": float(o.tax or 0),
        "Total": float(o.total),
        "Coupon": o.coupon_code,
    } for o in q.order_by(Order.created_at.asc()).all()]
    df = pd.DataFrame(rows)

    output = BytesIO()
    df.to_excel(output, index=False)
    output.seek(0)
    return send_file(
        output,
        as_attachment=True,
        download_name="orders_export.xlsx",
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@admin_bp.get("/<int:order_id>")
@role_at_least("manager")
def admin_get(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        return err("Order not found", 404)
    return ok("order", {
        "order": order.as_api(),
        "payment": order.payment.as_api() if order.payment else None,
        "transactions": [t.as_api() for t in order.payment.transactions] if order.payment else [],
    })


@admin_bp.put("/<int:order_id>/status")
@role_at_least("manager")
def admin_update_status(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        return err("Order not found", 404)
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().lower()
    if not status:
        return err("Validation failed", 400, {"errors": [{"field": "status", "message": "status is required"}]})
    order_service.update_status(
        order,
        status,
        tracking_number=data.get("tracking_number"),
        note=data.get("note"),
        actor_id=g.current_user.id,
    )
    return ok("Order status updated", {
        "order": order.as_api(),
        "payment": order.payment.as_api() if order.payment else None,
    })


@admin_bp.put("/<int:order_id>/return")
@role_at_least("manager")
def admin_handle_return(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        return err("Order not found", 404)
    data = request.get_json(silent=True) or {}
    order_service.handle_return(order, (data.get("action") or "").strip().lower(), data.get("note"),
                                actor_id=g.current_user.id)
    return ok("Return updated", {"order": order.as_api()})
