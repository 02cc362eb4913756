"""
Cart pricing engine.

The cart trusts the stock figure its caller hands in (`available_stock`,
None meaning untracked); live stock is re-checked at checkout. The summary
columns are only ever written by `calculate_totals`.
"""
from ..extensions import db
from ..model import Cart, CartItem
from ..utils.money import D, round_money, Money
from . import coupon_service


def get_or_create_cart(user_id: int) -> Cart:
    cart = Cart.query.filter_by(user_id=user_id).first()
    if cart is None:
        cart = Cart(user_id=user_id)
        db.session.add(cart)
        db.session.flush()
        calculate_totals(cart)
    return cart


def cart_lines(cart: Cart):
    """Line dicts in the shape the coupon rules consume."""
    return [
        {
            "product_id": i.product_id,
            "category_id": i.category_id,
            "price": D(i.price),
            "quantity": i.quantity,
        }
        for i in cart.items
    ]


def _snapshot(item: CartItem, product, available_stock):
    item.name = product.name
    item.price = D(product.price)
    item.unit_discount = product.unit_discount()
    item.image = product.main_image
    item.category_id = product.category_id
    item.product_type = product.product_type
    item.package_info = product.package_info()
    item.max_quantity = available_stock


def _insufficient(available, requested, in_cart):
    return {
        "success": False,
        "message": "Insufficient stock",
        "available": available,
        "requested": requested,
        "in_cart": in_cart,
        "max_can_add": max(available - in_cart, 0),
    }


def add_item(cart: Cart, product, quantity: int, available_stock=None) -> dict:
    if quantity < 1:
        return {"success": False, "message": "Quantity must be at least 1"}
    item = cart.find_item(product.id)
    in_cart = item.quantity if item else 0
    if available_stock is not None and in_cart + quantity > available_stock:
        return _insufficient(available_stock, quantity, in_cart)

    if item is None:
        item = CartItem(product_id=product.id, quantity=quantity)
        cart.items.append(item)
    else:
        item.quantity = in_cart + quantity
    _snapshot(item, product, available_stock)
    calculate_totals(cart)
    return {"success": True, "message": "Item added to cart", "quantity": item.quantity}


def update_quantity(cart: Cart, product_id: int, quantity: int, available_stock=None) -> dict:
    item = cart.find_item(product_id)
    if item is None:
        return {"success": False, "message": "Item not found in cart"}
    if quantity <= 0:
        remove_item(cart, product_id)
        return {"success": True, "message": "Item removed from cart", "quantity": 0}
    if available_stock is not None and quantity > available_stock:
        return {
            "success": False,
            "message": "Insufficient stock",
            "available": available_stock,
            "requested": quantity,
        }
    item.quantity = quantity
    item.max_quantity = available_stock
    calculate_totals(cart)
    return {"success": True, "message": "Cart updated", "quantity": quantity}


def remove_item(cart: Cart, product_id: int) -> bool:
    item = cart.find_item(product_id)
    if item is None:
        return False
    cart.items.remove(item)
    calculate_totals(cart)
    return True


def clear_cart(cart: Cart):
    cart.items.clear()
    cart.coupon = None
    cart.coupon_id = None
    cart.shipping_fee = D(0)
    cart.tax_amount = D(0)
    cart.shipping_region = None
    calculate_totals(cart)


def coupon_discount(cart: Cart) -> Money:
    coupon = cart.coupon
    if coupon is None or not coupon.is_valid or coupon.discount_type == "free_shipping":
        return D(0)
    total_price = sum((D(i.price) * i.quantity for i in cart.items), D(0))
    return coupon_service.calculate_discount(coupon, total_price, cart_lines(cart))["discount"]


def calculate_totals(cart: Cart) -> Cart:
    """
    Recompute the summary from items + coupon.
      total_price    = sum(price * qty)
      total_discount = per-item discounts + coupon discount
      subtotal       = total_price - total_discount
      grand_total    = max(0, subtotal + shipping_fee + tax_amount)
    Free-shipping coupons add nothing here; checkout zeroes the fee.
    """
    total_price = D(0)
    items_count = 0
    item_discount = D(0)
    for it in cart.items:
        total_price += D(it.price) * it.quantity
        item_discount += D(it.unit_discount) * it.quantity
        items_count += it.quantity

    total_discount = round_money(item_discount + coupon_discount(cart))
    total_price = round_money(total_price)
    subtotal = round_money(total_price - total_discount)
    shipping_fee = round_money(cart.shipping_fee or 0)
    tax_amount = round_money(cart.tax_amount or 0)

    cart.items_count = items_count
    cart.total_price = total_price
    cart.total_discount = total_discount
    cart.subtotal = subtotal
    cart.shipping_fee = shipping_fee
    cart.tax_amount = tax_amount
    cart.grand_total = max(round_money(subtotal + shipping_fee + tax_amount), D(0))
    return cart
