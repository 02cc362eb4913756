# storefront/coupon/routes.py
from __future__ import annotations

from flask import g, request
from sqlalchemy import func, or_

from . import bp
from ..extensions import db
from ..model import Coupon, CouponUsage, Order, Product
from ..services import coupon_service
from ..utils.api import err, ok, paginate
from ..utils.decorators import current_user_or_none, role_at_least
from ..utils.money import D


def _get(cid):
    c = db.session.get(Coupon, cid)
    if c is None:
        return None, err("Coupon not found", 404)
    return c, None


@bp.get("")
@role_at_least("manager")
def list_coupons():
    """
    Query params: q (code/name), status, discount_type, page, per_page
    """
    q = Coupon.query
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(or_(Coupon.code.ilike(like), Coupon.name.ilike(like)))
    if request.args.get("status"):
        q = q.filter(Coupon.status == request.args["status"])
    if request.args.get("discount_type"):
        q = q.filter(Coupon.discount_type == request.args["discount_type"])
    q = q.order_by(Coupon.created_at.desc(), Coupon.id.desc())
    return ok("coupons", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda c: c.as_api()))


@bp.get("/generate-code")
@role_at_least("manager")
def generate_code():
    return ok("code", {"code": coupon_service.generate_code()})


@bp.get("/statistics")
@role_at_least("manager")
def coupon_statistics():
    by_status = dict(db.session.query(Coupon.status, func.count(Coupon.id)).group_by(Coupon.status).all())
    total_uses = db.session.query(func.coalesce(func.sum(Coupon.usage_count), 0)).scalar()
    discount_given = (
        db.session.query(func.coalesce(func.sum(Order.coupon_discount), 0))
        .filter(Order.coupon_code.isnot(None), Order.status != "cancelled")
        .scalar()
    )
    top = (
        Coupon.query.filter(Coupon.usage_count > 0)
        .order_by(Coupon.usage_count.desc())
        .limit(5)
        .all()
    )
    return ok("coupon statistics", {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "total_uses": int(total_uses or 0),
        "total_discount_given": float(D(discount_given)),
        "top_coupons": [{"code": c.code, "usage_count": c.usage_count} for c in top],
    })


@bp.get("/<int:cid>")
@role_at_least("manager")
def get_coupon(cid):
    c, failure = _get(cid)
    if failure:
        return failure
    return ok("coupon", {
        "coupon": c.as_api(),
        "customers": CouponUsage.query.filter_by(coupon_id=c.id).count(),
    })


@bp.post("")
@role_at_least("manager")
def create_coupon():
    data = request.get_json(silent=True) or {}
    c = coupon_service.create_coupon_from_payload(data, created_by=g.current_user.id)
    return ok("Coupon created", {"coupon": c.as_api()}, 201)


@bp.put("/<int:cid>")
@role_at_least("manager")
def update_coupon(cid):
    c, failure = _get(cid)
    if failure:
        return failure
    data = request.get_json(silent=True) or {}
    coupon_service.update_coupon_from_payload(c, data)
    return ok("Coupon updated", {"coupon": c.as_api()})


@bp.patch("/<int:cid>/toggle")
@role_at_least("manager")
def toggle_coupon(cid):
    c, failure = _get(cid)
    if failure:
        return failure
    if not c.is_active and c.status in ("expired", "depleted"):
        return err(f"Coupon is {c.status} and cannot be activated", 400, {"status": c.status})
    c.is_active = not c.is_active
    c.refresh_status()
    db.session.commit()
    return ok("Coupon updated", {"coupon": c.as_api()})


@bp.delete("/<int:cid>")
@role_at_least("admin")
def delete_coupon(cid):
    c, failure = _get(cid)
    if failure:
        return failure
    db.session.delete(c)
    db.session.commit()
    return ok("Coupon deleted", {"id": cid})


@bp.post("/validate")
def validate_coupon():
    """
    Body: {"code", "items": [{"product_id", "quantity"}], "email"?}
    Eligibility and discount for a proposed cart, priced from current products.
    """
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    if not code:
        return err("code is required", 400)
    coupon = coupon_service.find_by_code(code)
    if coupon is None:
        return err("Coupon not found", 404)

    lines = []
    for raw in data.get("items") or []:
        try:
            pid, qty = int(raw.get("product_id")), int(raw.get("quantity", 1))
        except (TypeError, ValueError, AttributeError):
            return err("Validation failed", 400, {"errors": [{"field": "items", "message": "invalid item"}]})
        product = db.session.get(Product, pid)
        if product is None:
            continue
        lines.append({"product_id": pid, "category_id": product.category_id, "price": D(product.price),
                      "quantity": qty})
    total = sum((line["price"] * line["quantity"] for line in lines), D(0))
    if not lines and data.get("cart_total") is not None:
        total = D(data.get("cart_total"))

    user = current_user_or_none()
    check = coupon_service.can_be_used_by(
        coupon,
        user.id if user else None,
        total,
        lines,
        guest_email=None if user else data.get("email"),
    )
    payload = {"code": coupon.code, "valid": check["valid"], "cart_total": float(total)}
    if check["valid"]:
        discount = coupon_service.calculate_discount(coupon, total, lines)
        payload.update({
            "discount": float(discount["discount"]),
            "discount_type": discount["discount_type"],
            "free_shipping": discount["free_shipping"],
        })
    return ok(check["message"], payload)
