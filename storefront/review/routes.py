from flask import g, request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from . import bp
from ..extensions import db
from ..model import Product, Review
from ..utils.api import err, ok, paginate
from ..utils.decorators import login_required, role_at_least

MODERATION = {"approve": "approved", "reject": "rejected"}


def _refresh_rating(product_id):
    """Recompute the product's rating from approved reviews."""
    avg, count = (
        db.session.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.product_id == product_id, Review.status == "approved")
        .one()
    )
    product = db.session.get(Product, product_id)
    if product is not None:
        product.rating_average = round(float(avg or 0), 1)
        product.rating_count = int(count or 0)


@bp.get("/product/<int:pid>")
def product_reviews(pid):
    q = Review.query.filter_by(product_id=pid, status="approved").order_by(Review.created_at.desc())
    return ok("reviews", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda r: r.as_api()))


@bp.post("/product/<int:pid>")
@login_required
def create_review(pid):
    product = db.session.get(Product, pid)
    if product is None or not product.is_active:
        return err("Product not found", 404)
    data = request.get_json(silent=True) or {}
    try:
        rating = int(data.get("rating"))
    except (TypeError, ValueError):
        rating = 0
    if not 1 <= rating <= 5:
        return err("Validation failed", 400, {"errors": [{"field": "rating", "message": "rating must be 1 to 5"}]})

    review = Review(
        product_id=pid,
        user_id=g.current_user.id,
        rating=rating,
        title=(data.get("title") or "").strip() or None,
        comment=(data.get("comment") or "").strip() or None,
        status="pending",
    )
    db.session.add(review)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return err("You have already reviewed this product", 409)
    return ok("Review submitted", {"review": review.as_api()}, 201)


@bp.get("")
@role_at_least("manager")
def list_reviews():
    q = Review.query
    status = request.args.get("status")
    if status:
        q = q.filter(Review.status == status)
    q = q.order_by(Review.created_at.desc())
    return ok("reviews", paginate(q, request.args.get("page"), request.args.get("per_page"), lambda r: r.as_api()))


@bp.patch("/<int:rid>/<action>")
@role_at_least("manager")
def moderate_review(rid, action):
    if action not in MODERATION:
        return err("action must be approve or reject", 400)
    review = db.session.get(Review, rid)
    if review is None:
        return err("Review not found", 404)
    review.status = MODERATION[action]
    db.session.flush()
    _refresh_rating(review.product_id)
    db.session.commit()
    return ok("Review updated", {"review": review.as_api()})


@bp.delete("/<int:rid>")
@role_at_least("manager")
def delete_review(rid):
    review = db.session.get(Review, rid)
    if review is None:
        return err("Review not found", 404)
    pid = review.product_id
    db.session.delete(review)
    db.session.flush()
    _refresh_rating(pid)
    db.session.commit()
    return ok("deleted", {"id": rid})
