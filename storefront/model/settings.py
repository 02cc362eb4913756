# storefront/model/settings.py
from datetime import datetime, timezone

from sqlalchemy.sql import func

from ..extensions import db
from ..utils.money import money_float


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentSettings(db.Model):
    """Singleton row; `document` holds the validated payment-method configuration."""
    __tablename__ = "payment_settings"

    id = db.Column(db.Integer, primary_key=True)
    document = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}


class Setting(db.Model):
    """Keyed configuration blob (store, notification, shipping, ...)."""
    __tablename__ = "setting"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), unique=True, nullable=False, index=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    def as_api(self):
        return {
            "key": self.key,
            "data": self.data or {},
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ShippingFee(db.Model):
    """Flat fee for one shipping region (state / governorate)."""
    __tablename__ = "shipping_fee"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False, index=True)
    shipping_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    free_shipping_threshold = db.Column(db.Numeric(12, 2), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    def as_api(self):
        return {
            "id": self.id,
            "name": self.name,
            "shipping_fee": money_float(self.shipping_fee),
            "free_shipping_threshold": (
                money_float(self.free_shipping_threshold) if self.free_shipping_threshold is not None else None
            ),
            "is_active": self.is_active,
        }
