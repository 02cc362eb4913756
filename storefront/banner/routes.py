from datetime import datetime, timezone

from flask import request
from sqlalchemy import or_

from . import bp
from ..extensions import db
from ..model import Banner
from ..utils.api import err, ok
from ..utils.decorators import role_at_least


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _parse_iso8601(s):
    if not s: return None
    s = str(s).strip()
    if s.endswith("Z"): s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
        if dt.tzinfo:
            return dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    except ValueError:
        return None


def _apply(b, data):
    errors = []
    for field in ("title", "subtitle", "image_url", "link", "position"):
        if field in data:
            setattr(b, field, (data.get(field) or "").strip() or None)
    if "sort_order" in data:
        b.sort_order = int(data.get("sort_order") or 0)
    if "is_active" in data:
        b.is_active = bool(data.get("is_active"))
    for field in ("start_date", "end_date"):
        if field in data:
            raw = data.get(field)
            parsed = _parse_iso8601(raw)
            if raw and parsed is None:
                errors.append({"field": field, "message": f"Invalid datetime format for {field}"})
            setattr(b, field, parsed)
    if not b.title:
        errors.append({"field": "title", "message": "title is required"})
    if not b.image_url:
        errors.append({"field": "image_url", "message": "image_url is required"})
    if b.start_date and b.end_date and b.end_date <= b.start_date:
        errors.append({"field": "end_date", "message": "end_date must be after start_date"})
    return errors


@bp.get("")
def list_active_banners():
    now = _utcnow()
    q = Banner.query.filter(
        Banner.is_active.is_(True),
        or_(Banner.start_date.is_(None), Banner.start_date <= now),
        or_(Banner.end_date.is_(None), Banner.end_date >= now),
    )
    position = request.args.get("position")
    if position:
        q = q.filter(Banner.position == position)
    items = q.order_by(Banner.position.asc(), Banner.sort_order.asc()).all()
    return ok("banners", {"items": [b.as_api() for b in items]})


@bp.get("/all")
@role_at_least("manager")
def list_all_banners():
    items = Banner.query.order_by(Banner.position.asc(), Banner.sort_order.asc()).all()
    return ok("banners", {"items": [b.as_api() for b in items]})


@bp.post("")
@role_at_least("manager")
def create_banner():
    b = Banner(position="home", sort_order=0, is_active=True)
    errors = _apply(b, request.get_json(silent=True) or {})
    if errors:
        return err("Validation failed", 400, {"errors": errors})
    db.session.add(b)
    db.session.commit()
    return ok("Banner created", {"banner": b.as_api()}, 201)


@bp.put("/<int:bid>")
@role_at_least("manager")
def update_banner(bid):
    b = db.session.get(Banner, bid)
    if b is None:
        return err("Banner not found", 404)
    errors = _apply(b, request.get_json(silent=True) or {})
    if errors:
        db.session.rollback()
        return err("Validation failed", 400, {"errors": errors})
    db.session.commit()
    return ok("Banner updated", {"banner": b.as_api()})


@bp.patch("/<int:bid>/toggle")
@role_at_least("manager")
def toggle_banner(bid):
    b = db.session.get(Banner, bid)
    if b is None:
        return err("Banner not found", 404)
    b.is_active = not b.is_active
    db.session.commit()
    return ok("Banner updated", {"banner": b.as_api()})


@bp.delete("/<int:bid>")
@role_at_least("manager")
def delete_banner(bid):
    b = db.session.get(Banner, bid)
    if b is None:
        return err("Banner not found", 404)
    db.session.delete(b)
    db.session.commit()
    return ok("deleted", {"id": bid})
