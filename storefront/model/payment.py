# storefront/model/payment.py
from datetime import datetime, timezone

from ..extensions import db
from ..utils.money import money_float

PAYMENT_STATES = ("pending", "processing", "completed", "failed", "refunded", "partially_refunded", "cancelled")
COD_STATES = ("awaiting_delivery", "collected", "failed_collection")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Payment(db.Model):
    __tablename__ = "payment"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)

    payment_method = db.Column(db.String(64), nullable=False)  # validated against PaymentSettings
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    cod_status = db.Column(db.String(24), nullable=True)

    payment_details = db.Column(db.JSON)  # card last4, brand, ...
    gateway_transaction_id = db.Column(db.String(64), index=True)
    gateway_response = db.Column(db.JSON)
    payment_date = db.Column(db.DateTime)
    failure_reason = db.Column(db.Text)

    refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refund_date = db.Column(db.DateTime)
    refund_reason = db.Column(db.Text)

    processed_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    notes = db.Column(db.Text)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    order = db.relationship("Order", backref=db.backref("payment", uselist=False), foreign_keys=[order_id])
    transactions = db.relationship(
        "Transaction",
        backref="payment",
        lazy="selectin",
        order_by="Transaction.id.asc()",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_cod(self) -> bool:
        return self.cod_status is not None or (self.payment_method or "").lower() == "cod"

    def as_api(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_number": self.order.order_number if self.order else None,
            "user_id": self.user_id,
            "payment_method": self.payment_method,
            "amount": money_float(self.amount),
            "currency": self.currency,
            "status": self.status,
            "cod_status": self.cod_status,
            "payment_details": self.payment_details,
            "gateway_transaction_id": self.gateway_transaction_id,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "failure_reason": self.failure_reason,
            "refund": {
                "amount": money_float(self.refund_amount),
                "date": self.refund_date.isoformat() if self.refund_date else None,
                "reason": self.refund_reason,
            },
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
