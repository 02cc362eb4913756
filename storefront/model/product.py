# storefront/model/product.py
from decimal import Decimal

from sqlalchemy.sql import func

from ..extensions import db
from ..utils.money import D, round_money, money_float

PRODUCT_TYPES = ("single", "package")
PRODUCT_STATUSES = ("active", "inactive", "draft")


class Product(db.Model):
    __tablename__ = "product"

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), unique=True, nullable=False, index=True)
    slug = db.Column(db.String(255), index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cost = db.Column(db.Numeric(12, 2), nullable=True)

    # optional per-item promotion applied in the cart
    discount_type = db.Column(db.String(16), nullable=True)   # "percent" | "fixed" | None
    discount_value = db.Column(db.Numeric(12, 2), nullable=True)

    product_type = db.Column(db.String(16), nullable=False, default="single", index=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    featured = db.Column(db.Boolean, default=False)
    images = db.Column(db.JSON, default=list)  # list of urls, first is main

    # inventory
    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_alert = db.Column(db.Integer, nullable=False, default=10)
    track_quantity = db.Column(db.Boolean, nullable=False, default=True)

    # package details, derived from package_items
    package_original_price = db.Column(db.Numeric(12, 2), nullable=True)
    package_savings = db.Column(db.Numeric(12, 2), nullable=True)
    package_savings_percentage = db.Column(db.Integer, nullable=True)

    rating_average = db.Column(db.Float, default=0.0)
    rating_count = db.Column(db.Integer, default=0)

    category_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    package_items = db.relationship(
        "PackageItem",
        foreign_keys="PackageItem.package_id",
        backref="package",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PackageItem.position.asc()",
    )

    # --------- helpers ----------
    @property
    def is_package(self) -> bool:
        return self.product_type == "package"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def main_image(self):
        return (self.images or [None])[0]

    def available_quantity(self):
        """Stock figure used as the cart cap; None when stock is not tracked."""
        if not self.track_quantity:
            return None
        return max(int(self.quantity or 0), 0)

    def unit_discount(self) -> Decimal:
        price = D(self.price)
        dtype = (self.discount_type or "").lower().strip()
        dval = D(self.discount_value)
        if not dtype or dval <= 0:
            return D(0)
        if dtype == "percent":
            return round_money(price * min(dval, D(100)) / D(100))
        if dtype == "fixed":
            return round_money(min(dval, price))
        return D(0)

    def calculate_package_details(self):
        if not self.is_package:
            self.package_original_price = None
            self.package_savings = None
            self.package_savings_percentage = None
            return
        original = sum((D(i.price) * i.quantity for i in self.package_items), D(0))
        original = round_money(original)
        savings = round_money(original - D(self.price))
        self.package_original_price = original
        self.package_savings = savings
        self.package_savings_percentage = int(round(savings / original * 100)) if original > 0 else 0

    def package_info(self):
        """Snapshot of the bundle stored on cart lines and order items."""
        if not self.is_package:
            return None
        return {
            "total_items_count": sum(i.quantity for i in self.package_items),
            "original_total_price": money_float(self.package_original_price or 0),
            "savings": money_float(self.package_savings or 0),
            "savings_percentage": self.package_savings_percentage or 0,
            "items": [i.as_api() for i in self.package_items],
        }

    def as_api(self):
        return {
            "id": self.id,
            "sku": self.sku,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "price": money_float(self.price),
            "cost": money_float(self.cost) if self.cost is not None else None,
            "promotion": {
                "type": self.discount_type,
                "value": money_float(self.discount_value),
                "unit_discount": money_float(self.unit_discount()),
            } if self.discount_type else None,
            "product_type": self.product_type,
            "status": self.status,
            "featured": self.featured,
            "images": self.images or [],
            "inventory": {
                "quantity": self.quantity,
                "low_stock_alert": self.low_stock_alert,
                "track_quantity": self.track_quantity,
                "in_stock": (not self.track_quantity) or (self.quantity or 0) > 0,
            },
            "package": self.package_info(),
            "rating": {"average": self.rating_average or 0.0, "count": self.rating_count or 0},
            "category": self.category.as_dict() if self.category else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PackageItem(db.Model):
    __tablename__ = "package_item"

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(255))
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # snapshot at packaging time
    image = db.Column(db.String(1024))
    position = db.Column(db.Integer, default=0)

    product = db.relationship("Product", foreign_keys=[product_id], lazy="joined")

    def as_api(self):
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": money_float(self.price),
            "image": self.image,
        }
