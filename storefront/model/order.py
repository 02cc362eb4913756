from datetime import datetime, timezone

from ..extensions import db
from ..utils.money import money_float

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "partially_refunded", "cancelled")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), unique=True, nullable=False, index=True)  # e.g., "ORD-20251022-0001"
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)  # None for guests

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    return_status = db.Column(db.String(16), nullable=True)  # requested | approved | rejected | completed
    return_reason = db.Column(db.Text, nullable=True)

    # Customer snapshot
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_first_name = db.Column(db.String(120))
    customer_last_name = db.Column(db.String(120))
    customer_phone = db.Column(db.String(50))
    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON)

    # Money snapshot, computed once at checkout
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    shipping_method = db.Column(db.String(32), nullable=False, default="standard")
    payment_method = db.Column(db.String(64), nullable=False)
    tracking_number = db.Column(db.String(64))

    coupon_code = db.Column(db.String(20))
    coupon_discount = db.Column(db.Numeric(12, 2))
    coupon_discount_type = db.Column(db.String(16))

    notes = db.Column(db.Text)
    cancellation_reason = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    confirmed_at = db.Column(db.DateTime)
    shipped_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id.asc()",
    )

    @property
    def customer_name(self):
        return " ".join(p for p in (self.customer_first_name, self.customer_last_name) if p)

    def as_api(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "return_status": self.return_status,
            "customer": {
                "email": self.customer_email,
                "first_name": self.customer_first_name,
                "last_name": self.customer_last_name,
                "phone": self.customer_phone,
            },
            "items": [i.as_api() for i in self.items],
            "totals": {
                "subtotal": money_float(self.subtotal),
                "tax": money_float(self.tax),
                "shipping": money_float(self.shipping),
                "discount": money_float(self.discount),
                "total": money_float(self.total),
            },
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "shipping_method": self.shipping_method,
            "payment_method": self.payment_method,
            "tracking_number": self.tracking_number,
            "coupon": {
                "code": self.coupon_code,
                "discount": money_float(self.coupon_discount),
                "discount_type": self.coupon_discount_type,
            } if self.coupon_code else None,
            "notes": self.notes,
            "cancellation": {
                "reason": self.cancellation_reason,
                "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            } if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, index=True)  # not a FK: snapshot survives product deletion
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64))
    image = db.Column(db.String(1024))
    product_type = db.Column(db.String(16), default="single")
    package_info = db.Column(db.JSON)

    price = db.Column(db.Numeric(12, 2), nullable=False)
    unit_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)

    def as_api(self):
        return {
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "image": self.image,
            "product_type": self.product_type,
            "package_info": self.package_info,
            "price": money_float(self.price),
            "unit_discount": money_float(self.unit_discount),
            "quantity": self.quantity,
            "subtotal": money_float(self.subtotal),
        }


class OrderSequence(db.Model):
    """Per-day counter backing order numbers."""
    __tablename__ = "order_sequence"

    day = db.Column(db.String(8), primary_key=True)  # YYYYMMDD
    last_value = db.Column(db.Integer, nullable=False, default=0)
