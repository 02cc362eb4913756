# --- storefront/model/coupon.py ---
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.sql import func

from ..extensions import db
from ..utils.money import money_float

DISCOUNT_TYPES = ("percentage", "fixed", "free_shipping")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Coupon(db.Model):
    __tablename__ = "coupon"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)

    # "percentage" | "fixed" | "free_shipping"
    discount_type = db.Column(db.String(16), nullable=False, default="percentage")
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    max_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)

    usage_limit_total = db.Column(db.Integer, nullable=True)   # global usage cap
    usage_limit_per_customer = db.Column(db.Integer, nullable=False, default=1)
    usage_count = db.Column(db.Integer, nullable=False, default=0)

    minimum_purchase = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    minimum_items = db.Column(db.Integer, nullable=False, default=0)

    # restrictions: lists of ids
    categories = db.Column(db.JSON, default=list)
    products = db.Column(db.JSON, default=list)
    exclude_categories = db.Column(db.JSON, default=list)
    exclude_products = db.Column(db.JSON, default=list)
    new_customers_only = db.Column(db.Boolean, nullable=False, default=False)
    first_order_only = db.Column(db.Boolean, nullable=False, default=False)

    start_date = db.Column(db.DateTime, nullable=False, default=_utcnow)
    end_date = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    created_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    usages = db.relationship(
        "CouponUsage",
        backref="coupon",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def refresh_status(self, now=None):
        """Derive status: expired > depleted > inactive > active."""
        now = now or _utcnow()
        if self.end_date and now > self.end_date:
            self.status = "expired"
            self.is_active = False
        elif self.usage_limit_total is not None and (self.usage_count or 0) >= self.usage_limit_total:
            self.status = "depleted"
            self.is_active = False
        elif not self.is_active:
            self.status = "inactive"
        else:
            self.status = "active"
        return self.status

    @property
    def is_valid(self) -> bool:
        now = _utcnow()
        return bool(
            self.is_active
            and self.status == "active"
            and (self.start_date is None or self.start_date <= now)
            and (self.end_date is None or now <= self.end_date)
            and (self.usage_limit_total is None or (self.usage_count or 0) < self.usage_limit_total)
        )

    @property
    def remaining_uses(self):
        if self.usage_limit_total is None:
            return None
        return max(self.usage_limit_total - (self.usage_count or 0), 0)

    def usage_for(self, user_id=None, email=None):
        for u in self.usages:
            if user_id is not None and u.user_id == user_id:
                return u
            if user_id is None and email and u.email and u.email.lower() == email.lower():
                return u
        return None

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": money_float(self.discount_value),
            "max_discount_amount": money_float(self.max_discount_amount) if self.max_discount_amount is not None else None,
            "usage_limit": {"total": self.usage_limit_total, "per_customer": self.usage_limit_per_customer},
            "usage_count": self.usage_count or 0,
            "remaining_uses": self.remaining_uses,
            "minimum_purchase": money_float(self.minimum_purchase),
            "minimum_items": self.minimum_items or 0,
            "restrictions": {
                "categories": self.categories or [],
                "products": self.products or [],
                "exclude_categories": self.exclude_categories or [],
                "exclude_products": self.exclude_products or [],
                "new_customers_only": self.new_customers_only,
                "first_order_only": self.first_order_only,
            },
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": self.is_active,
            "status": self.status,
            "is_valid": self.is_valid,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CouponUsage(db.Model):
    """Per-customer usage ledger; guests are keyed by email."""
    __tablename__ = "coupon_usage"

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime, nullable=True)


@event.listens_for(Coupon, "before_insert")
@event.listens_for(Coupon, "before_update")
def _coupon_status_on_save(mapper, connection, target):
    target.refresh_status()
