# storefront/model/cart.py
from __future__ import annotations

from sqlalchemy.sql import func

from ..extensions import db
from ..utils.money import money_float


class Cart(db.Model):
    __tablename__ = "cart"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True, nullable=False, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id", ondelete="SET NULL"), nullable=True)

    # derived summary, written only by services.cart_service.calculate_totals
    items_count = db.Column(db.Integer, nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    shipping_region = db.Column(db.String(120), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    items = db.relationship(
        "CartItem",
        backref="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.id.asc()"
    )
    coupon = db.relationship("Coupon", lazy="joined")

    def find_item(self, product_id: int) -> CartItem | None:
        return next((i for i in self.items if i.product_id == product_id), None)

    def as_api(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": [i.as_api() for i in self.items],
            "coupon": {
                "code": self.coupon.code,
                "discount_type": self.coupon.discount_type,
                "discount_value": money_float(self.coupon.discount_value),
            } if self.coupon else None,
            "summary": {
                "items_count": self.items_count or 0,
                "total_price": money_float(self.total_price),
                "total_discount": money_float(self.total_discount),
                "subtotal": money_float(self.subtotal),
                "shipping_fee": money_float(self.shipping_fee),
                "tax_amount": money_float(self.tax_amount),
                "grand_total": money_float(self.grand_total),
            },
            "shipping_region": self.shipping_region,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CartItem(db.Model):
    __tablename__ = "cart_item"

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("cart.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)

    # snapshots taken when the line is added or updated
    name = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    unit_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    max_quantity = db.Column(db.Integer, nullable=True)  # last known stock cap, None = untracked
    image = db.Column(db.String(1024))
    category_id = db.Column(db.Integer, nullable=True)
    product_type = db.Column(db.String(16), default="single")
    package_info = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    product = db.relationship("Product", lazy="joined")

    def as_api(self):
        price = money_float(self.price)
        unit_discount = money_float(self.unit_discount)
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "price": price,
            "unit_discount": unit_discount,
            "quantity": self.quantity,
            "max_quantity": self.max_quantity,
            "line_total": round((price - unit_discount) * self.quantity, 2),
            "image": self.image,
            "category_id": self.category_id,
            "product_type": self.product_type,
            "package_info": self.package_info,
            "is_available": bool(self.product and self.product.is_active),
        }
