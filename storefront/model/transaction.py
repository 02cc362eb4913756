# storefront/model/transaction.py
from datetime import datetime, timezone

from ..extensions import db
from ..utils.money import money_float

TRANSACTION_TYPES = ("sale", "refund", "authorization", "capture")
TRANSACTION_STATES = ("success", "failed", "pending")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Transaction(db.Model):
    """Append-only gateway event against one payment."""
    __tablename__ = "payment_transaction"

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    gateway_transaction_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    gateway_response = db.Column(db.JSON)
    reason = db.Column(db.Text)

    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=_utcnow, index=True)

    def as_api(self):
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "type": self.type,
            "amount": money_float(self.amount),
            "currency": self.currency,
            "status": self.status,
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_response": self.gateway_response,
            "reason": self.reason,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
