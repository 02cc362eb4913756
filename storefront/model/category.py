# --- storefront/model/category.py ---
from sqlalchemy.sql import func

from ..extensions import db


class Category(db.Model):
    __tablename__ = "category"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    slug = db.Column(db.String(140), index=True)
    description = db.Column(db.Text)
    image_url = db.Column(db.String(1024))
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, server_default=func.now())

    products = db.relationship("Product", backref="category", lazy=True)

    def as_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "image_url": self.image_url,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }
