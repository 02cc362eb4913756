from sqlalchemy.sql import func

from ..extensions import db


class Banner(db.Model):
    __tablename__ = "banner"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    subtitle = db.Column(db.String(255))
    image_url = db.Column(db.String(1024), nullable=False)
    link = db.Column(db.String(1024))
    position = db.Column(db.String(32), nullable=False, default="home")  # home | category | promo
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=func.now())

    def as_api(self):
        return {
            "id": self.id,
            "title": self.title,
            "subtitle": self.subtitle,
            "image_url": self.image_url,
            "link": self.link,
            "position": self.position,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }
