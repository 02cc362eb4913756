# storefront/settings/routes.py
from flask import g, request
from sqlalchemy import func

from . import bp, shipping_bp
from ..extensions import db
from ..model import ShippingFee
from ..services.settings_service import get_payment_settings, get_settings_store
from ..utils.api import err, ok
from ..utils.decorators import role_at_least, role_required
from ..utils.money import D

SETTING_KEYS = ("store", "notification", "shipping", "tax", "checkout")


def _dump(method):
    return method.model_dump(mode="json")


def _body():
    return request.get_json(silent=True) or {}


# ---- payment methods ----------------------------------------------------------

@bp.get("/payment-methods")
@role_at_least("manager")
def list_payment_methods():
    doc = get_payment_settings().load()
    return ok("payment methods", {
        "methods": [_dump(m) for m in doc.ordered()],
        "default_method": doc.default_method,
        "minimum_order_amount": doc.minimum_order_amount,
    })


@bp.get("/payment-methods/<name>")
@role_at_least("manager")
def get_payment_method(name):
    return ok("payment method", {"method": _dump(get_payment_settings().get_method(name))})


@bp.post("/payment-methods")
@role_required("admin")
def create_payment_method():
    method = get_payment_settings().create_method(_body(), updated_by=g.current_user.id)
    return ok("Payment method created", {"method": _dump(method)}, 201)


@bp.put("/payment-methods/<name>")
@role_required("admin")
def update_payment_method(name):
    method = get_payment_settings().update_method(name, _body(), updated_by=g.current_user.id)
    return ok("Payment method updated", {"method": _dump(method)})


@bp.delete("/payment-methods/<name>")
@role_required("admin")
def delete_payment_method(name):
    get_payment_settings().delete_method(name, updated_by=g.current_user.id)
    return ok("Payment method deleted", {"name": name})


@bp.patch("/payment-methods/<name>/toggle")
@role_required("admin")
def toggle_payment_method(name):
    method = get_payment_settings().toggle_method(name, updated_by=g.current_user.id)
    return ok("Payment method updated", {"method": _dump(method)})


@bp.put("/payment-methods/<name>/default")
@role_required("admin")
def set_default_payment_method(name):
    get_payment_settings().set_default(name, updated_by=g.current_user.id)
    return ok("Default payment method updated", {"default_method": name})


@bp.put("/payment-methods/reorder")
@role_required("admin")
def reorder_payment_methods():
    names = _body().get("order")
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return err("Validation failed", 400, {"errors": [{"field": "order", "message": "must be a list of names"}]})
    methods = get_payment_settings().reorder(names, updated_by=g.current_user.id)
    return ok("Payment methods reordered", {"methods": [_dump(m) for m in methods]})


@bp.put("/payment-general")
@role_required("admin")
def update_payment_general():
    raw = _body().get("minimum_order_amount")
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        amount = -1
    if amount < 0:
        return err("Validation failed", 400, {"errors": [
            {"field": "minimum_order_amount", "message": "must be a number >= 0"},
        ]})
    doc = get_payment_settings().update_general(amount, updated_by=g.current_user.id)
    return ok("Payment settings updated", {"minimum_order_amount": doc.minimum_order_amount})


# ---- keyed settings -----------------------------------------------------------

@bp.get("")
@role_at_least("manager")
def all_settings():
    return ok("settings", {"settings": get_settings_store().all()})


@bp.get("/<key>")
@role_at_least("manager")
def get_setting(key):
    if key not in SETTING_KEYS:
        return err("Setting not found", 404)
    return ok("setting", {"key": key, "data": get_settings_store().get(key)})


@bp.put("/<key>")
@role_required("admin")
def update_setting(key):
    if key not in SETTING_KEYS:
        return err("Setting not found", 404)
    changes = _body()
    if not isinstance(changes, dict) or not changes:
        return err("Validation failed", 400, {"errors": [{"field": "body", "message": "an object is required"}]})
    if key == "notification" and "admin_email" in changes:
        email = changes.get("admin_email")
        if email and "@" not in str(email):
            return err("Validation failed", 400, {"errors": [
                {"field": "admin_email", "message": "must be an email address"},
            ]})
    row = get_settings_store().update(key, changes, updated_by=g.current_user.id)
    return ok("Setting updated", {"setting": row.as_api()})


# ---- shipping fees --------------------------------------------------------------

def _fee_errors(data, fee=None):
    errors = []
    if "name" in data or fee is None:
        name = (data.get("name") or "").strip()
        if not name:
            errors.append({"field": "name", "message": "name is required"})
        else:
            q = ShippingFee.query.filter(func.lower(ShippingFee.name) == name.lower())
            if fee is not None:
                q = q.filter(ShippingFee.id != fee.id)
            if q.first() is not None:
                return None, [{"field": "name", "message": "shipping region already exists"}]
    for field in ("shipping_fee", "free_shipping_threshold"):
        if field in data and data[field] is not None:
            try:
                if D(data[field]) < 0:
                    raise ValueError
            except ValueError:
                errors.append({"field": field, "message": f"{field} must be a number >= 0"})
    if fee is None and data.get("shipping_fee") is None:
        errors.append({"field": "shipping_fee", "message": "shipping_fee is required"})
    return errors, None


def _apply_fee(fee, data):
    if "name" in data:
        fee.name = data["name"].strip()
    if "shipping_fee" in data and data["shipping_fee"] is not None:
        fee.shipping_fee = D(data["shipping_fee"])
    if "free_shipping_threshold" in data:
        raw = data["free_shipping_threshold"]
        fee.free_shipping_threshold = D(raw) if raw is not None else None
    if "is_active" in data:
        fee.is_active = bool(data["is_active"])


@shipping_bp.get("")
def list_active_fees():
    fees = ShippingFee.query.filter(ShippingFee.is_active.is_(True)).order_by(ShippingFee.name.asc()).all()
    return ok("shipping fees", {"items": [f.as_api() for f in fees]})


@shipping_bp.get("/all")
@role_at_least("manager")
def list_all_fees():
    fees = ShippingFee.query.order_by(ShippingFee.name.asc()).all()
    return ok("shipping fees", {"items": [f.as_api() for f in fees]})


@shipping_bp.post("")
@role_at_least("manager")
def create_fee():
    data = _body()
    errors, conflict = _fee_errors(data)
    if conflict:
        return err("Shipping region already exists", 409, {"errors": conflict})
    if errors:
        return err("Validation failed", 400, {"errors": errors})
    fee = ShippingFee(is_active=True)
    _apply_fee(fee, data)
    db.session.add(fee)
    db.session.commit()
    return ok("Shipping fee created", {"shipping_fee": fee.as_api()}, 201)


@shipping_bp.put("/<int:fid>")
@role_at_least("manager")
def update_fee(fid):
    fee = db.session.get(ShippingFee, fid)
    if fee is None:
        return err("Shipping fee not found", 404)
    data = _body()
    errors, conflict = _fee_errors(data, fee)
    if conflict:
        return err("Shipping region already exists", 409, {"errors": conflict})
    if errors:
        return err("Validation failed", 400, {"errors": errors})
    _apply_fee(fee, data)
    db.session.commit()
    return ok("Shipping fee updated", {"shipping_fee": fee.as_api()})


@shipping_bp.patch("/<int:fid>/toggle")
@role_at_least("manager")
def toggle_fee(fid):
    fee = db.session.get(ShippingFee, fid)
    if fee is None:
        return err("Shipping fee not found", 404)
    fee.is_active = not fee.is_active
    db.session.commit()
    return ok("Shipping fee updated", {"shipping_fee": fee.as_api()})


@shipping_bp.delete("/<int:fid>")
@role_at_least("admin")
def delete_fee(fid):
    fee = db.session.get(ShippingFee, fid)
    if fee is None:
        return err("Shipping fee not found", 404)
    db.session.delete(fee)
    db.session.commit()
    return ok("Shipping fee deleted", {"id": fid})
