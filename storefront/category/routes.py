# --- category/routes.py ---
import re

from flask import request
from sqlalchemy import desc

from . import bp
from ..extensions import db
from ..model import Category, Product
from ..utils.api import err, ok, paginate
from ..utils.decorators import role_at_least


def _slug(text):
    return re.sub(r"[^a-z0-9]+", "-", (text or "").strip().lower()).strip("-")


def _name_taken(name, exclude_id=None):
    q = Category.query.filter(Category.name.ilike(name))
    if exclude_id is not None:
        q = q.filter(Category.id != exclude_id)
    return q.first() is not None


# ------------------------ CATEGORY ROUTES ------------------------

@bp.post("")
@role_at_least("manager")
def create_category():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return err("name required", 400)
    if _name_taken(name):
        return err("category name already exists", 409)
    c = Category(
        name=name,
        slug=data.get("slug") or _slug(name),
        description=data.get("description"),
        image_url=data.get("image_url"),
        is_active=bool(data.get("is_active", True)),
        sort_order=int(data.get("sort_order") or 0),
    )
    db.session.add(c)
    db.session.commit()
    return ok("Category created", {"category": c.as_dict()}, 201)


@bp.get("")
def list_categories():
    """
    q        -> substring match on name
    active   -> only active ones unless "all"
    sort     -> name, -name, id, -id, sort_order
    """
    q = (request.args.get("q") or "").strip()
    sort = (request.args.get("sort") or "sort_order").strip()

    qry = Category.query
    if q:
        qry = qry.filter(Category.name.ilike(f"%{q}%"))
    if request.args.get("active") != "all":
        qry = qry.filter(Category.is_active.is_(True))

    sort_map = {
        "id": Category.id,
        "-id": desc(Category.id),
        "name": Category.name,
        "-name": desc(Category.name),
        "sort_order": Category.sort_order,
    }
    qry = qry.order_by(sort_map.get(sort, Category.sort_order), Category.name)
    return ok("categories", paginate(qry, request.args.get("page"), request.args.get("per_page", 50),
                                     lambda c: c.as_dict()))


@bp.get("/<int:cid>")
def get_category(cid):
    c = db.session.get(Category, cid)
    if c is None:
        return err("Category not found", 404)
    return ok("category", {
        "category": c.as_dict(),
        "product_count": Product.query.filter_by(category_id=cid, status="active").count(),
    })


@bp.put("/<int:cid>")
@role_at_least("manager")
def update_category(cid):
    c = db.session.get(Category, cid)
    if c is None:
        return err("Category not found", 404)
    data = request.get_json(silent=True) or {}
    if "name" in data:
        new_name = (data.get("name") or "").strip()
        if not new_name:
            return err("name cannot be empty", 400)
        if _name_taken(new_name, exclude_id=c.id):
            return err("category name already exists", 409)
        c.name = new_name
        c.slug = data.get("slug") or _slug(new_name)
    for field in ("description", "image_url"):
        if field in data:
            setattr(c, field, data[field])
    if "is_active" in data:
        c.is_active = bool(data["is_active"])
    if "sort_order" in data:
        c.sort_order = int(data["sort_order"] or 0)
    db.session.commit()
    return ok("Category updated", {"category": c.as_dict()})


@bp.delete("/<int:cid>")
@role_at_least("admin")
def delete_category(cid):
    if Product.query.filter_by(category_id=cid).first():
        return err("cannot delete: category has products", 409)
    c = db.session.get(Category, cid)
    if c is None:
        return err("Category not found", 404)
    db.session.delete(c)
    db.session.commit()
    return ok("deleted", {"id": cid})
