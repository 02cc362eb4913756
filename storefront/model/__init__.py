# ------ storefront/model/__init__.py ------

from .user import User, RefreshToken
from .category import Category
from .product import Product, PackageItem
from .banner import Banner
from .review import Review
from .coupon import Coupon, CouponUsage
from .cart import Cart, CartItem
from .order import Order, OrderItem, OrderSequence
from .payment import Payment
from .transaction import Transaction
from .settings import PaymentSettings, Setting, ShippingFee
from .wishlist import Wishlist, WishlistItem

__all__ = [
    "User",
    "RefreshToken",
    "Category",
    "Product",
    "PackageItem",
    "Banner",
    "Review",
    "Coupon",
    "CouponUsage",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderSequence",
    "Payment",
    "Transaction",
    "PaymentSettings",
    "Setting",
    "ShippingFee",
    "Wishlist",
    "WishlistItem",
]
