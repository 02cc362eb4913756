# storefront/wishlist/routes.py
from flask import g, request

from . import bp
from ..extensions import db
from ..model import Product, Wishlist, WishlistItem
from ..services import cart_service
from ..utils.api import err, ok
from ..utils.decorators import login_required
from ..utils.money import D


def _wishlist(create=True):
    wl = Wishlist.query.filter_by(user_id=g.current_user.id).first()
    if wl is None and create:
        wl = Wishlist(user_id=g.current_user.id)
        db.session.add(wl)
        db.session.flush()
    return wl


def _items(wl):
    """Items whose product still exists, paired with the live product."""
    ids = [i.product_id for i in wl.items]
    products = {p.id: p for p in Product.query.filter(Product.id.in_(ids)).all()} if ids else {}
    return [(i, products[i.product_id]) for i in wl.items if i.product_id in products]


def _payload(wl):
    items = [i.as_api(p) for i, p in _items(wl)]
    return {"wishlist": {"id": wl.id, "items": items, "items_count": len(items)}}


def _notes(data):
    notes = data.get("notes")
    if notes is None:
        return None, None
    notes = str(notes).strip()
    if len(notes) > 500:
        return None, err("Validation failed", 400, {"errors": [{"field": "notes", "message": "max 500 chars"}]})
    return notes or None, None


@bp.get("")
@login_required
def get_wishlist():
    wl = _wishlist()
    db.session.commit()
    return ok("wishlist", _payload(wl))


@bp.post("/items")
@login_required
def add_item():
    data = request.get_json(silent=True) or {}
    try:
        pid = int(data.get("product_id"))
    except (TypeError, ValueError):
        return err("Validation failed", 400, {"errors": [{"field": "product_id", "message": "product_id is required"}]})
    notes, problem = _notes(data)
    if problem is not None:
        return problem

    product = db.session.get(Product, pid)
    if product is None:
        return err("Product not found", 404)
    wl = _wishlist()
    if wl.find_item(pid) is not None:
        return err("Product already in wishlist", 409)

    wl.items.append(WishlistItem(product_id=pid, price_at_add=D(product.price), notes=notes))
    db.session.commit()
    return ok("Product added to wishlist", _payload(wl), 201)


@bp.get("/items/<int:product_id>/check")
@login_required
def check_item(product_id):
    wl = _wishlist(create=False)
    item = wl.find_item(product_id) if wl is not None else None
    return ok("wishlist check", {
        "product_id": product_id,
        "in_wishlist": item is not None,
        "added_at": item.added_at.isoformat() if item is not None and item.added_at else None,
    })


@bp.put("/items/<int:product_id>")
@login_required
def update_item(product_id):
    notes, problem = _notes(request.get_json(silent=True) or {})
    if problem is not None:
        return problem
    wl = _wishlist(create=False)
    item = wl.find_item(product_id) if wl is not None else None
    if item is None:
        return err("Product not found in wishlist", 404)
    item.notes = notes
    db.session.commit()
    return ok("Wishlist item updated", _payload(wl))


@bp.delete("/items/<int:product_id>")
@login_required
def remove_item(product_id):
    wl = _wishlist(create=False)
    if wl is None:
        return err("Wishlist not found", 404)
    item = wl.find_item(product_id)
    if item is None:
        return err("Product not found in wishlist", 404)
    wl.items.remove(item)
    db.session.commit()
    return ok("Product removed from wishlist", _payload(wl))


@bp.delete("")
@login_required
def clear_wishlist():
    wl = _wishlist(create=False)
    if wl is None:
        return err("Wishlist not found", 404)
    wl.items.clear()
    db.session.commit()
    return ok("Wishlist cleared successfully", _payload(wl))


@bp.post("/items/<int:product_id>/move-to-cart")
@login_required
def move_to_cart(product_id):
    data = request.get_json(silent=True) or {}
    try:
        qty = int(data.get("quantity", 1))
    except (TypeError, ValueError):
        qty = 0
    if qty < 1:
        return err("Validation failed", 400, {"errors": [{"field": "quantity", "message": "quantity must be >= 1"}]})

    wl = _wishlist(create=False)
    item = wl.find_item(product_id) if wl is not None else None
    if item is None:
        return err("Product not found in wishlist", 404)
    product = db.session.get(Product, product_id)
    if product is None:
        return err("Product not found", 404)
    if not product.is_active:
        return err("Product is not available", 400)

    cart = cart_service.get_or_create_cart(g.current_user.id)
    result = cart_service.add_item(cart, product, qty, product.available_quantity())
    if not result["success"]:
        db.session.rollback()
        return err(result["message"], 409, {k: v for k, v in result.items() if k not in ("success", "message")})

    wl.items.remove(item)
    db.session.commit()
    return ok("Product moved to cart", {**_payload(wl), "cart": cart.as_api()})
