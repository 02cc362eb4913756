# storefront/cart/routes.py
from __future__ import annotations

from flask import g, request

from . import bp
from ..extensions import db
from ..model import Cart, Product
from ..services import cart_service, coupon_service
from ..services.pricing import calculate_shipping, calculate_tax
from ..utils.api import err, ok
from ..utils.decorators import login_required


# ---- helpers ---------------------------------------------------------------

def _cart() -> Cart:
    return cart_service.get_or_create_cart(g.current_user.id)


def _parse_qty(v, default=1):
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _cart_payload(cart: Cart, **extra):
    return {"cart": cart.as_api(), **extra}


def _failure(result):
    status = 409 if result.get("message") == "Insufficient stock" else 400
    return err(result["message"], status, {k: v for k, v in result.items() if k not in ("success", "message")})


# ---- routes ----------------------------------------------------------------

@bp.get("")
@login_required
def get_cart():
    cart = _cart()
    db.session.commit()
    return ok("cart", _cart_payload(cart))


@bp.post("/items")
@login_required
def add_item():
    data = request.get_json(silent=True) or {}
    pid = _parse_qty(data.get("product_id"), None)
    qty = _parse_qty(data.get("quantity", 1), 0)
    if pid is None:
        return err("product_id is required", 400)
    product = db.session.get(Product, pid)
    if product is None or not product.is_active:
        return err("Product not found", 404)

    cart = _cart()
    result = cart_service.add_item(cart, product, qty, product.available_quantity())
    if not result["success"]:
        db.session.rollback()
        return _failure(result)
    db.session.commit()
    return ok(result["message"], _cart_payload(cart), 201)


@bp.put("/items/<int:product_id>")
@login_required
def update_item(product_id: int):
    data = request.get_json(silent=True) or {}
    if "quantity" not in data:
        return err("quantity is required", 400)
    qty = _parse_qty(data.get("quantity"), None)
    if qty is None:
        return err("quantity must be an integer", 400)

    product = db.session.get(Product, product_id)
    available = product.available_quantity() if product is not None else None
    cart = _cart()
    result = cart_service.update_quantity(cart, product_id, qty, available)
    if not result["success"]:
        db.session.rollback()
        if result["message"] == "Item not found in cart":
            return err(result["message"], 404)
        return _failure(result)
    db.session.commit()
    return ok(result["message"], _cart_payload(cart))


@bp.delete("/items/<int:product_id>")
@login_required
def remove_item(product_id: int):
    cart = _cart()
    if not cart_service.remove_item(cart, product_id):
        return err("Item not found in cart", 404)
    db.session.commit()
    return ok("Item removed from cart", _cart_payload(cart))


@bp.delete("")
@login_required
def clear_cart():
    cart = _cart()
    cart_service.clear_cart(cart)
    db.session.commit()
    return ok("Cart cleared", _cart_payload(cart))


@bp.post("/coupon")
@login_required
def apply_coupon():
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    if not code:
        return err("code is required", 400)
    cart = _cart()
    if not cart.items:
        return err("Cart is empty", 400)

    coupon = coupon_service.find_by_code(code)
    if coupon is None:
        return err("Coupon not found", 404)
    check = coupon_service.can_be_used_by(
        coupon, g.current_user.id, cart.total_price, cart_service.cart_lines(cart)
    )
    if not check["valid"]:
        return err(check["message"], 400)

    cart.coupon = coupon
    cart_service.calculate_totals(cart)
    db.session.commit()
    discount = coupon_service.calculate_discount(coupon, cart.total_price, cart_service.cart_lines(cart))
    return ok("Coupon applied", _cart_payload(cart, coupon={
        "code": coupon.code,
        "discount": float(discount["discount"]),
        "discount_type": discount["discount_type"],
        "free_shipping": discount["free_shipping"],
    }))


@bp.delete("/coupon")
@login_required
def remove_coupon():
    cart = _cart()
    cart.coupon = None
    cart.coupon_id = None
    cart_service.calculate_totals(cart)
    db.session.commit()
    return ok("Coupon removed", _cart_payload(cart))


@bp.put("/shipping")
@login_required
def estimate_shipping():
    """Body: {"region": "CA", "method": "standard"}; stores fee and tax on the cart summary."""
    data = request.get_json(silent=True) or {}
    region = (data.get("region") or data.get("state") or "").strip()
    method = (data.get("method") or "standard").strip().lower()
    if not region:
        return err("region is required", 400)

    cart = _cart()
    fee, source = calculate_shipping(cart.subtotal or 0, region, method)
    coupon = cart.coupon
    if coupon is not None and coupon.is_valid and coupon.discount_type == "free_shipping":
        fee, source = 0, "coupon"
    cart.shipping_region = region
    cart.shipping_fee = fee
    cart.tax_amount = calculate_tax(cart.subtotal or 0, region)
    cart_service.calculate_totals(cart)
    db.session.commit()
    return ok("Shipping estimated", _cart_payload(cart, shipping_source=source))
