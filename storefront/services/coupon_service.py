# storefront/services/coupon_service.py
import random
import string
from datetime import datetime, timezone

from sqlalchemy import func

from ..errors import Conflict, ValidationFailed
from ..extensions import db
from ..model import Coupon, CouponUsage, Order
from ..model.coupon import DISCOUNT_TYPES
from ..utils.money import D, round_money

CODE_PREFIX = "MK"


def _parse_iso8601(s):
    if not s: return None
    s = str(s).strip()
    if s.endswith("Z"): s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
        if dt.tzinfo:
            return dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    except ValueError:
        return None


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def find_by_code(code):
    if not code:
        return None
    return Coupon.query.filter(func.upper(Coupon.code) == code.strip().upper()).first()


def find_valid_by_code(code):
    c = find_by_code(code)
    return c if c is not None and c.is_valid else None


def _item_count(cart_items):
    return sum(int(i["quantity"]) for i in cart_items)


def _prior_orders(user_id=None, email=None):
    q = Order.query
    if user_id is not None:
        return q.filter(Order.user_id == user_id)
    if email:
        return q.filter(func.lower(Order.customer_email) == email.strip().lower())
    return None


def can_be_used_by(coupon, user_id, cart_total, cart_items, guest_email=None):
    """
    Eligibility of `coupon` for a customer and cart, checked in order; the
    first failing rule is reported.

    cart_items: [{"product_id", "category_id", "price", "quantity"}]
    """
    if not coupon.is_valid:
        return {"valid": False, "message": "Coupon is not valid or has expired"}

    if D(cart_total) < D(coupon.minimum_purchase):
        return {"valid": False, "message": f"Minimum purchase of ${D(coupon.minimum_purchase):.2f} required"}

    if coupon.minimum_items and _item_count(cart_items) < coupon.minimum_items:
        return {"valid": False, "message": f"Minimum {coupon.minimum_items} items required"}

    usage = coupon.usage_for(user_id=user_id, email=guest_email)
    if usage is not None and usage.usage_count >= (coupon.usage_limit_per_customer or 1):
        return {"valid": False, "message": "You have already used this coupon the maximum number of times"}

    prior = _prior_orders(user_id, guest_email)
    if coupon.new_customers_only and prior is not None and prior.count() > 0:
        return {"valid": False, "message": "This coupon is only for new customers"}

    if coupon.first_order_only and prior is not None and prior.filter(Order.payment_status == "paid").count() > 0:
        return {"valid": False, "message": "This coupon is only valid for your first order"}

    return {"valid": True, "message": "Coupon is valid"}


def _applicable_total(coupon, cart_total, cart_items):
    # allow-lists only; exclude_* are stored but not consulted
    if coupon.products:
        allowed = {int(p) for p in coupon.products}
        return sum((D(i["price"]) * int(i["quantity"]) for i in cart_items if i["product_id"] in allowed), D(0))
    if coupon.categories:
        allowed = {int(c) for c in coupon.categories}
        return sum((D(i["price"]) * int(i["quantity"]) for i in cart_items if i.get("category_id") in allowed), D(0))
    return D(cart_total)


def calculate_discount(coupon, cart_total, cart_items):
    if coupon.discount_type == "free_shipping":
        return {"discount": D(0), "discount_type": "free_shipping", "free_shipping": True}

    applicable = _applicable_total(coupon, cart_total, cart_items)
    value = D(coupon.discount_value)
    if coupon.discount_type == "percentage":
        discount = applicable * value / D(100)
        if coupon.max_discount_amount is not None:
            discount = min(discount, D(coupon.max_discount_amount))
    else:
        discount = min(value, applicable)
    discount = max(round_money(discount), D(0))
    return {"discount": discount, "discount_type": coupon.discount_type, "free_shipping": False}


def record_usage(coupon, user_id=None, email=None):
    """Count one redemption. Call exactly once per successful order."""
    now = _utcnow()
    coupon.usage_count = (coupon.usage_count or 0) + 1
    usage = coupon.usage_for(user_id=user_id, email=email)
    if usage is None:
        usage = CouponUsage(user_id=user_id, email=(email or None) if user_id is None else None, usage_count=0)
        coupon.usages.append(usage)
    usage.usage_count += 1
    usage.last_used_at = now
    coupon.refresh_status(now)
    return coupon


def generate_code(length=8):
    alphabet = string.ascii_uppercase + string.digits
    while True:
        code = CODE_PREFIX + "".join(random.choices(alphabet, k=length))
        if find_by_code(code) is None:
            return code


# ---- admin payloads --------------------------------------------------------

def _id_list(v, field, errors):
    if v is None:
        return []
    if not isinstance(v, list):
        errors.append({"field": field, "message": "must be a list of ids"})
        return []
    try:
        return [int(x) for x in v]
    except (TypeError, ValueError):
        errors.append({"field": field, "message": "must be a list of ids"})
        return []


def _apply_payload(c: Coupon, data: dict, creating: bool):
    errors = []

    if "code" in data or creating:
        code = (data.get("code") or "").strip().upper() or (generate_code() if creating else None)
        if not code or not (3 <= len(code) <= 20) or not code.isalnum():
            errors.append({"field": "code", "message": "code must be 3-20 letters or digits"})
        else:
            existing = find_by_code(code)
            if existing is not None and existing.id != c.id:
                raise Conflict("Coupon code already exists", data={"code": code})
            c.code = code

    if "name" in data or creating:
        name = (data.get("name") or "").strip()
        if not name:
            errors.append({"field": "name", "message": "name is required"})
        c.name = name
    if "description" in data:
        c.description = data.get("description")

    if "discount_type" in data or creating:
        dtype = (data.get("discount_type") or "percentage").strip().lower()
        if dtype not in DISCOUNT_TYPES:
            errors.append({"field": "discount_type", "message": f"must be one of {', '.join(DISCOUNT_TYPES)}"})
        c.discount_type = dtype

    if "discount_value" in data or creating:
        try:
            value = D(data.get("discount_value"))
        except ValueError:
            value = D(-1)
        if value < 0 or (c.discount_type != "free_shipping" and value <= 0):
            errors.append({"field": "discount_value", "message": "discount_value must be > 0"})
        elif c.discount_type == "percentage" and value > 100:
            errors.append({"field": "discount_value", "message": "percentage discount must be <= 100"})
        c.discount_value = value

    for field in ("max_discount_amount", "minimum_purchase"):
        if field in data:
            raw = data.get(field)
            try:
                amount = D(raw) if raw is not None else None
            except ValueError:
                amount = D(-1)
            if amount is not None and amount < 0:
                errors.append({"field": field, "message": f"{field} must be >= 0"})
            if field == "minimum_purchase" and amount is None:
                amount = D(0)
            setattr(c, field, amount)

    usage = data.get("usage_limit") or {}
    for key, attr in (("total", "usage_limit_total"), ("per_customer", "usage_limit_per_customer")):
        if key in usage:
            raw = usage.get(key)
            if raw is None and key == "total":
                setattr(c, attr, None)
                continue
            try:
                n = int(raw)
            except (TypeError, ValueError):
                n = 0
            if n < 1:
                errors.append({"field": f"usage_limit.{key}", "message": "must be >= 1"})
            setattr(c, attr, n)

    if "minimum_items" in data:
        try:
            c.minimum_items = max(int(data.get("minimum_items") or 0), 0)
        except (TypeError, ValueError):
            errors.append({"field": "minimum_items", "message": "must be an integer"})

    restrictions = data.get("restrictions") or {}
    for field in ("categories", "products", "exclude_categories", "exclude_products"):
        if field in restrictions:
            setattr(c, field, _id_list(restrictions.get(field), f"restrictions.{field}", errors))
    for field in ("new_customers_only", "first_order_only"):
        if field in restrictions:
            setattr(c, field, bool(restrictions.get(field)))

    for field in ("start_date", "end_date"):
        if field in data:
            parsed = _parse_iso8601(data.get(field))
            if data.get(field) and not parsed:
                errors.append({"field": field, "message": f"Invalid datetime format for {field}"})
            elif parsed:
                setattr(c, field, parsed)
    if creating and c.start_date is None:
        c.start_date = _utcnow()
    if c.end_date is None:
        errors.append({"field": "end_date", "message": "end_date is required"})
    elif c.start_date and c.end_date <= c.start_date:
        errors.append({"field": "end_date", "message": "end_date must be after start_date"})

    if "is_active" in data:
        c.is_active = bool(data.get("is_active"))

    if errors:
        raise ValidationFailed(errors)
    c.refresh_status()
    return c


def create_coupon_from_payload(data: dict, created_by=None) -> Coupon:
    c = Coupon(usage_count=0, usage_limit_per_customer=1, minimum_purchase=D(0), minimum_items=0,
               is_active=True, created_by=created_by)
    _apply_payload(c, data, creating=True)
    db.session.add(c)
    db.session.commit()
    return c


def update_coupon_from_payload(c: Coupon, data: dict) -> Coupon:
    _apply_payload(c, data, creating=False)
    db.session.commit()
    return c
