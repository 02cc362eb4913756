from datetime import datetime, timezone

from ..extensions import db
from ..utils.money import money_float


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Wishlist(db.Model):
    __tablename__ = "wishlist"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "WishlistItem",
        backref="wishlist",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WishlistItem.id.asc()",
    )

    def find_item(self, product_id):
        return next((i for i in self.items if i.product_id == product_id), None)


class WishlistItem(db.Model):
    __tablename__ = "wishlist_item"
    __table_args__ = (db.UniqueConstraint("wishlist_id", "product_id", name="uq_wishlist_product"),)

    id = db.Column(db.Integer, primary_key=True)
    wishlist_id = db.Column(db.Integer, db.ForeignKey("wishlist.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)  # not a FK: rows for deleted products are skipped
    price_at_add = db.Column(db.Numeric(12, 2))
    notes = db.Column(db.String(500))
    added_at = db.Column(db.DateTime, default=_utcnow)

    def as_api(self, product):
        current = product.price
        change = None if self.price_at_add is None else money_float(current - self.price_at_add)
        return {
            "id": self.id,
            "product": {
                "id": product.id,
                "name": product.name,
                "slug": product.slug,
                "price": money_float(product.price),
                "image": product.main_image,
                "in_stock": product.available_quantity() != 0,
                "stock_quantity": product.quantity,
                "status": product.status,
                "category_id": product.category_id,
            },
            "added_at": self.added_at.isoformat() if self.added_at else None,
            "price_at_add": money_float(self.price_at_add) if self.price_at_add is not None else None,
            "current_price": money_float(current),
            "price_change": change,
            "price_dropped": change is not None and change < 0,
            "notes": self.notes,
        }
