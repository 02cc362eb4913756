from sqlalchemy.sql import func

from ..extensions import db


class Review(db.Model):
    __tablename__ = "review"
    __table_args__ = (db.UniqueConstraint("product_id", "user_id", name="uq_review_product_user"),)

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(255))
    comment = db.Column(db.Text)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | approved | rejected
    created_at = db.Column(db.DateTime, server_default=func.now())

    user = db.relationship("User", lazy="joined")

    def as_api(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user": {"id": self.user_id, "name": self.user.name if self.user else None},
            "rating": self.rating,
            "title": self.title,
            "comment": self.comment,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
