# storefront/services/order_service.py
"""
Checkout and order lifecycle.

create_order runs the checkout sequence inside one database transaction:
resolve lines against live products (row-locked), price them, allocate an
order number, persist the order, reserve stock with a guarded decrement,
open a pending payment, redeem the coupon and clear the cart. Any failure
rolls the whole thing back. Notifications are queued only after commit.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select, update

from ..errors import BusinessRuleError, ValidationFailed
from ..extensions import db, notifier
from ..model import Cart, Order, OrderItem, OrderSequence, Payment, Product
from ..utils.money import D, round_money
from . import coupon_service
from .cart_service import add_item, clear_cart, get_or_create_cart
from .inventory import reserve_stock, restore_stock
from .pricing import calculate_shipping, calculate_tax
from .settings_service import admin_notification_email, get_payment_settings

log = logging.getLogger(__name__)

CANCELLABLE = ("pending", "confirmed")
PAID_PAYMENT_STATES = ("completed", "partially_refunded")
UNPAID_PAYMENT_STATES = ("pending", "processing", "failed")

ADMIN_TRANSITIONS = {
    "pending": {"confirmed", "processing", "cancelled"},
    "confirmed": {"processing", "shipped", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "returned"},
    "delivered": {"returned"},
    "cancelled": set(),
    "returned": set(),
}


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---- order numbers ---------------------------------------------------------

def _ensure_sequence_row(day):
    dialect = db.session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        if db.session.get(OrderSequence, day) is None:
            db.session.add(OrderSequence(day=day, last_value=0))
            db.session.flush()
        return
    stmt = insert(OrderSequence).values(day=day, last_value=0).on_conflict_do_nothing(index_elements=["day"])
    db.session.execute(stmt)


def next_order_number(now=None) -> str:
    """ORD-YYYYMMDD-NNNN from a per-day counter incremented in place."""
    day = (now or _utcnow()).strftime("%Y%m%d")
    _ensure_sequence_row(day)
    db.session.execute(
        update(OrderSequence)
        .where(OrderSequence.day == day)
        .values(last_value=OrderSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    value = db.session.execute(
        select(OrderSequence.last_value).where(OrderSequence.day == day)
    ).scalar_one()
    return f"ORD-{day}-{value:04d}"


# ---- checkout --------------------------------------------------------------

def _merge_lines(pairs):
    lines = OrderedDict()
    for pid, qty in pairs:
        lines[pid] = lines.get(pid, 0) + int(qty)
    return lines


def _customer_snapshot(payload, user):
    if payload.customer is not None:
        c = payload.customer
        return {"email": str(c.email), "first_name": c.first_name, "last_name": c.last_name,
                "phone": c.phone or payload.shipping_address.phone}
    if user is None:
        raise ValidationFailed([{"field": "customer", "message": "customer details are required for guest checkout"}])
    return {"email": user.email, "first_name": user.first_name, "last_name": user.last_name,
            "phone": user.phone or payload.shipping_address.phone}


def _resolve_lines(lines):
    products = (
        Product.query
        .filter(Product.id.in_(list(lines.keys())))
        .with_for_update()
        .all()
    )
    pmap = {p.id: p for p in products}

    out_of_stock = []
    for pid, qty in lines.items():
        p = pmap.get(pid)
        if p is None or not p.is_active:
            out_of_stock.append({
                "product_id": pid,
                "name": p.name if p else None,
                "requested": qty,
                "available": 0,
                "reason": "Product is no longer available",
            })
            continue
        if p.track_quantity and (p.quantity or 0) < qty:
            out_of_stock.append({
                "product_id": pid,
                "name": p.name,
                "requested": qty,
                "available": max(p.quantity or 0, 0),
                "reason": f"Only {max(p.quantity or 0, 0)} available in stock",
            })
            continue
        if p.is_package:
            missing = [c.name or c.product_id for c in p.package_items if c.product is None or not c.product.is_active]
            if missing:
                out_of_stock.append({
                    "product_id": pid,
                    "name": p.name,
                    "requested": qty,
                    "available": 0,
                    "reason": "Package contains products that are no longer available",
                    "unavailable_components": missing,
                })
    return pmap, out_of_stock


def _apply_coupon(code, user, customer, subtotal, coupon_lines):
    """Returns (coupon, discount_result, message). Invalid coupons price as no coupon."""
    if not code:
        return None, None, None
    coupon = coupon_service.find_by_code(code)
    if coupon is None:
        return None, None, "Coupon not found"
    check = coupon_service.can_be_used_by(
        coupon,
        user.id if user else None,
        subtotal,
        coupon_lines,
        guest_email=None if user else customer["email"],
    )
    if not check["valid"]:
        return None, None, check["message"]
    return coupon, coupon_service.calculate_discount(coupon, subtotal, coupon_lines), None


def create_order(payload, user=None) -> dict:
    cart = None
    if payload.items:
        lines = _merge_lines((i.product_id, i.quantity) for i in payload.items)
    else:
        if user is None:
            raise ValidationFailed([{"field": "items", "message": "items are required for guest checkout"}])
        cart = Cart.query.filter_by(user_id=user.id).first()
        if cart is None or not cart.items:
            raise BusinessRuleError("Cart is empty")
        lines = _merge_lines((i.product_id, i.quantity) for i in cart.items)

    customer = _customer_snapshot(payload, user)
    address = payload.shipping_address

    try:
        # 1) resolve
        pmap, out_of_stock = _resolve_lines(lines)
        if out_of_stock:
            log.info("checkout refused, %d line(s) unavailable", len(out_of_stock))
            raise BusinessRuleError("Some items are unavailable", data={"out_of_stock_items": out_of_stock})

        # 2) price, always from current product prices
        subtotal = D(0)
        item_discount = D(0)
        order_items = []
        coupon_lines = []
        for pid, qty in lines.items():
            p = pmap[pid]
            price = D(p.price)
            unit_discount = p.unit_discount()
            line_total = round_money(price * qty)
            subtotal += line_total
            item_discount += unit_discount * qty
            order_items.append(OrderItem(
                product_id=p.id,
                name=p.name,
                sku=p.sku,
                image=p.main_image,
                product_type=p.product_type,
                package_info=p.package_info(),
                price=price,
                unit_discount=unit_discount,
                quantity=qty,
                subtotal=line_total,
            ))
            coupon_lines.append({"product_id": p.id, "category_id": p.category_id, "price": price, "quantity": qty})
        subtotal = round_money(subtotal)

        shipping, _ = calculate_shipping(subtotal, address.state, payload.shipping_method)
        tax = calculate_tax(subtotal, address.state)

        code = payload.coupon_code or (cart.coupon.code if cart is not None and cart.coupon else None)
        coupon, coupon_result, coupon_message = _apply_coupon(code, user, customer, subtotal, coupon_lines)
        coupon_discount = D(0)
        if coupon_result is not None:
            coupon_discount = coupon_result["discount"]
            if coupon_result["free_shipping"]:
                shipping = D(0)

        discount = round_money(item_discount + coupon_discount)
        total = max(round_money(subtotal - discount + shipping + tax), D(0))

        method = get_payment_settings().validate_method(payload.payment_method, total, city=address.city)

        # 3) number, 4) persist
        order = Order(
            order_number=next_order_number(),
            user_id=user.id if user else None,
            status="pending",
            payment_status="pending",
            customer_email=customer["email"],
            customer_first_name=customer["first_name"],
            customer_last_name=customer["last_name"],
            customer_phone=customer["phone"],
            shipping_address=address.model_dump(),
            billing_address=(payload.billing_address or address).model_dump(),
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
            total=total,
            shipping_method=payload.shipping_method,
            payment_method=method.name,
            coupon_code=coupon.code if coupon else None,
            coupon_discount=coupon_discount if coupon else None,
            coupon_discount_type=coupon.discount_type if coupon else None,
            notes=payload.notes,
            items=order_items,
        )
        db.session.add(order)
        db.session.flush()

        for pid, qty in lines.items():
            reserve_stock(pmap[pid], qty)

        payment = Payment(
            order_id=order.id,
            user_id=order.user_id,
            payment_method=method.name,
            amount=total,
            currency=current_app.config.get("CURRENCY", "USD"),
            status="pending",
            cod_status="awaiting_delivery" if method.kind == "cod" else None,
            refund_amount=D(0),
        )
        db.session.add(payment)

        if coupon is not None:
            coupon_service.record_usage(coupon, user_id=order.user_id, email=None if user else customer["email"])
        if cart is not None:
            clear_cart(cart)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info("order %s created (total %s, method %s)", order.order_number, order.total, order.payment_method)

    # 5) side effects, after commit
    notifier.order_confirmation(order)
    notifier.admin_new_order_alert(order, admin_notification_email())

    return {
        "order": order,
        "payment": payment,
        "next_step": "order_success" if method.kind == "cod" else "process_payment",
        "coupon_message": coupon_message,
    }


# ---- cancellation ----------------------------------------------------------

def _restore_order_stock(order):
    for item in order.items:
        if item.product_id is not None:
            restore_stock(item.product_id, item.quantity)


def mark_cancelled(order, reason, payment_status="cancelled"):
    """Flag the order cancelled and put its stock back; caller commits."""
    order.status = "cancelled"
    order.cancellation_reason = reason
    order.cancelled_at = _utcnow()
    order.payment_status = payment_status
    _restore_order_stock(order)


def cancel_order(order, reason=None):
    if order.status not in CANCELLABLE:
        raise BusinessRuleError(
            f"Order cannot be cancelled in status '{order.status}'",
            data={"status": order.status},
        )
    payment = order.payment
    if payment is not None and payment.status in PAID_PAYMENT_STATES + ("refunded",):
        raise BusinessRuleError(
            "Order has already been paid, request a refund instead",
            data={"payment_status": payment.status},
        )
    mark_cancelled(order, reason or "Cancelled by customer")
    if payment is not None and payment.status in UNPAID_PAYMENT_STATES:
        payment.status = "cancelled"
    db.session.commit()
    log.info("order %s cancelled", order.order_number)
    notifier.order_status_update(order)
    return order


# ---- tracking, returns, reorder ---------------------------------------------

def tracking_info(order):
    timeline = [{"status": "pending", "label": "Order placed", "date": order.created_at}]
    for status, label, at in (
        ("confirmed", "Order confirmed", order.confirmed_at),
        ("shipped", "Shipped", order.shipped_at),
        ("delivered", "Delivered", order.delivered_at),
        ("cancelled", "Cancelled", order.cancelled_at),
    ):
        if at is not None:
            timeline.append({"status": status, "label": label, "date": at})

    estimated = None
    if order.status not in ("delivered", "cancelled", "returned"):
        days = (current_app.config.get("DELIVERY_DAYS") or {}).get(order.shipping_method, 7)
        estimated = (order.shipped_at or order.created_at) + timedelta(days=days)

    return {
        "order_number": order.order_number,
        "status": order.status,
        "tracking_number": order.tracking_number,
        "shipping_method": order.shipping_method,
        "estimated_delivery": estimated.isoformat() if estimated else None,
        "timeline": [{**t, "date": t["date"].isoformat() if t["date"] else None} for t in timeline],
    }


def request_return(order, reason):
    if order.status != "delivered":
        raise BusinessRuleError("Only delivered orders can be returned", data={"status": order.status})
    if order.return_status:
        raise BusinessRuleError("A return has already been requested", data={"return_status": order.return_status})
    window = int(current_app.config.get("RETURN_WINDOW_DAYS", 30))
    delivered_at = order.delivered_at or order.updated_at or order.created_at
    if _utcnow() - delivered_at > timedelta(days=window):
        raise BusinessRuleError(f"Return window of {window} days has expired")
    order.return_status = "requested"
    order.return_reason = reason
    db.session.commit()
    return order


def reorder(order, user):
    cart = get_or_create_cart(user.id)
    added, skipped = [], []
    for item in order.items:
        product = db.session.get(Product, item.product_id) if item.product_id else None
        if product is None or not product.is_active:
            skipped.append({"product_id": item.product_id, "name": item.name, "reason": "Product is no longer available"})
            continue
        result = add_item(cart, product, item.quantity, product.available_quantity())
        if result["success"]:
            added.append({"product_id": product.id, "name": product.name, "quantity": item.quantity})
        else:
            skipped.append({"product_id": product.id, "name": product.name, "reason": result["message"],
                            "available": result.get("max_can_add")})
    db.session.commit()
    return cart, added, skipped


# ---- admin -----------------------------------------------------------------

def _refund_if_paid(payment, reason, actor_id=None):
    """Refund the remaining balance of a paid payment; commits on its own."""
    if payment is None or payment.status not in PAID_PAYMENT_STATES:
        return
    from .payment_service import refund_payment
    refund_payment(payment.id, None, reason=reason, actor_id=actor_id)


def update_status(order, new_status, tracking_number=None, note=None, actor_id=None):
    allowed = ADMIN_TRANSITIONS.get(order.status, set())
    if new_status not in allowed:
        raise BusinessRuleError(
            f"Cannot change order status from '{order.status}' to '{new_status}'",
            data={"status": order.status, "allowed": sorted(allowed)},
        )

    now = _utcnow()
    payment = order.payment
    if new_status == "cancelled":
        _refund_if_paid(payment, note or "Order cancelled", actor_id)
        refunded = payment is not None and payment.status == "refunded"
        mark_cancelled(order, note or "Cancelled by admin",
                       payment_status="refunded" if refunded else "cancelled")
        if payment is not None and payment.status in UNPAID_PAYMENT_STATES:
            payment.status = "cancelled"
    else:
        if new_status == "returned":
            _refund_if_paid(payment, note or "Order returned", actor_id)
        order.status = new_status
        if new_status == "confirmed":
            order.confirmed_at = now
        elif new_status == "shipped":
            order.shipped_at = now
        elif new_status == "delivered":
            order.delivered_at = now
        elif new_status == "returned":
            order.return_status = "completed"
            _restore_order_stock(order)

    if tracking_number:
        order.tracking_number = tracking_number
    if note and new_status != "cancelled":
        order.notes = f"{order.notes}\n{note}" if order.notes else note
    db.session.commit()
    log.info("order %s moved to %s", order.order_number, new_status)
    notifier.order_status_update(order)
    return order


def handle_return(order, action, note=None, actor_id=None):
    if order.return_status != "requested" and action in ("approve", "reject"):
        raise BusinessRuleError("No pending return request for this order")
    if action == "approve":
        order.return_status = "approved"
    elif action == "reject":
        order.return_status = "rejected"
    elif action == "complete":
        if order.return_status != "approved":
            raise BusinessRuleError("Return must be approved before it is completed")
        _refund_if_paid(order.payment, note or "Order returned", actor_id)
        order.status = "returned"
        order.return_status = "completed"
        _restore_order_stock(order)
    else:
        raise ValidationFailed([{"field": "action", "message": "action must be approve, reject or complete"}])
    if note:
        order.notes = f"{order.notes}\n{note}" if order.notes else note
    db.session.commit()
    return order


def order_statistics():
    by_status = dict(db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all())
    by_payment = dict(db.session.query(Order.payment_status, func.count(Order.id)).group_by(Order.payment_status).all())
    revenue = (
        db.session.query(func.coalesce(func.sum(Order.total), 0))
        .filter(Order.payment_status.in_(("paid", "partially_refunded")))
        .scalar()
    )
    return {
        "total_orders": sum(by_status.values()),
        "by_status": by_status,
        "by_payment_status": by_payment,
        "revenue": float(round_money(D(revenue))),
    }
