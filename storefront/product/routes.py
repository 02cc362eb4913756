import logging
import re
from io import BytesIO

import pandas as pd
from flask import g, request, send_file, url_for
from sqlalchemy import asc, desc, or_
from sqlalchemy.exc import IntegrityError

from . import bp, packages_bp
from ..extensions import db
from ..model import Category, PackageItem, Product
from ..model.product import PRODUCT_STATUSES, PRODUCT_TYPES
from ..utils.api import err, ok, paginate
from ..utils.decorators import role_at_least
from ..utils.money import D

log = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "SKU", "Slug", "Name", "Description", "Price", "Cost", "Product Type", "Status",
    "Quantity", "Low Stock Alert", "Track Quantity", "Featured", "Category ID",
]


# ---------- helpers ----------
def _ep(name: str) -> str:
    return f"{bp.name}.{name}"


def slugify(text):
    text = (text or "").strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")


def _parse_bool(v, default=False):
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(v, default=0):
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _parse_opt_int(v):
    if v is None: return None
    if isinstance(v, str) and v.strip().lower() in {"", "null"}: return None
    try: return int(v)
    except (TypeError, ValueError): return None


def _parse_opt_float(v):
    if v is None: return None
    if isinstance(v, str) and v.strip() == "": return None
    try: return float(v)
    except (TypeError, ValueError): return None


def _sort_products(query, sort):
    sort = (sort or "").strip()
    mapping = {
        "id": asc(Product.id), "-id": desc(Product.id),
        "name": asc(Product.name), "-name": desc(Product.name),
        "price": asc(Product.price), "-price": desc(Product.price),
        "quantity": asc(Product.quantity), "-quantity": desc(Product.quantity),
        "rating": asc(Product.rating_average), "-rating": desc(Product.rating_average),
    }
    return query.order_by(mapping.get(sort, desc(Product.id)))  # default newest first


def conflict(msg="Unique constraint violation", fields=None):
    return err(msg, 409, {"conflicts": fields} if fields else None)


def parse_unique_violation(err_exc: IntegrityError):
    m = re.search(r"UNIQUE constraint failed:\s*([^.]+)\.([^\s,]+)", str(err_exc.orig))
    if m:
        return {"table": m.group(1), "column": m.group(2)}
    m = re.search(r"Key \(([^)]+)\)=\(([^)]+)\) already exists", str(err_exc.orig))
    if m:
        return {"table": "product", "column": m.group(1), "value": m.group(2)}
    return None


def _find_product(ident):
    if str(ident).isdigit():
        return db.session.get(Product, int(ident))
    return Product.query.filter_by(slug=str(ident)).first()


def _apply_fields(product, data, errors):
    """Assign scalar product fields from a JSON body; problems go into `errors`."""
    for field in ("sku", "name", "description", "slug"):
        if field in data and data[field] is not None:
            setattr(product, field, str(data[field]).strip())
    if "sku" in data and product.sku:
        product.sku = product.sku.upper()

    for field in ("price", "cost", "discount_value"):
        if field in data:
            value = _parse_opt_float(data[field])
            if value is None and field == "price":
                errors.append({"field": "price", "message": "price must be a number"})
            elif value is not None and value < 0:
                errors.append({"field": field, "message": f"{field} must be >= 0"})
            else:
                setattr(product, field, D(value) if value is not None else None)

    if "discount_type" in data:
        dtype = (data.get("discount_type") or "").strip().lower() or None
        if dtype not in (None, "percent", "fixed"):
            errors.append({"field": "discount_type", "message": "must be percent or fixed"})
        product.discount_type = dtype

    if "product_type" in data:
        ptype = (data.get("product_type") or "single").strip().lower()
        if ptype not in PRODUCT_TYPES:
            errors.append({"field": "product_type", "message": f"must be one of {', '.join(PRODUCT_TYPES)}"})
        product.product_type = ptype
    if "status" in data:
        status = (data.get("status") or "active").strip().lower()
        if status not in PRODUCT_STATUSES:
            errors.append({"field": "status", "message": f"must be one of {', '.join(PRODUCT_STATUSES)}"})
        product.status = status

    inventory = data.get("inventory") or {}
    for key in ("quantity", "low_stock_alert"):
        raw = inventory.get(key, data.get(key))
        if raw is not None:
            n = _parse_opt_int(raw)
            if n is None or n < 0:
                errors.append({"field": key, "message": f"{key} must be an integer >= 0"})
            else:
                setattr(product, key, n)
    if "track_quantity" in inventory or "track_quantity" in data:
        product.track_quantity = _parse_bool(inventory.get("track_quantity", data.get("track_quantity")), True)

    if "featured" in data:
        product.featured = _parse_bool(data.get("featured"))
    if "images" in data:
        images = data.get("images") or []
        if not isinstance(images, list):
            errors.append({"field": "images", "message": "must be a list of urls"})
        else:
            product.images = [str(i) for i in images]

    if "category_id" in data:
        cid = _parse_opt_int(data.get("category_id"))
        if cid is not None and db.session.get(Category, cid) is None:
            errors.append({"field": "category_id", "message": f"Category {cid} not found"})
        else:
            product.category_id = cid


def _apply_package_items(product, items, errors):
    """Replace the package component list; components must be existing single products."""
    if not isinstance(items, list) or not items:
        errors.append({"field": "package_items", "message": "a package needs at least one item"})
        return
    product.package_items.clear()
    db.session.flush()
    for pos, raw in enumerate(items):
        pid = _parse_opt_int((raw or {}).get("product_id"))
        qty = _parse_int((raw or {}).get("quantity", 1), 0)
        component = db.session.get(Product, pid) if pid else None
        if component is None:
            errors.append({"field": f"package_items.{pos}.product_id", "message": "product not found"})
            continue
        if component.is_package or component.id == product.id:
            errors.append({"field": f"package_items.{pos}.product_id", "message": "packages cannot contain packages"})
            continue
        if qty < 1:
            errors.append({"field": f"package_items.{pos}.quantity", "message": "quantity must be >= 1"})
            continue
        product.package_items.append(PackageItem(
            product_id=component.id,
            quantity=qty,
            name=component.name,
            price=D(component.price),
            image=component.main_image,
            position=pos,
        ))


def _save(product, data, creating):
    errors = []
    _apply_fields(product, data, errors)
    if not product.sku:
        errors.append({"field": "sku", "message": "sku is required"})
    if not product.name:
        errors.append({"field": "name", "message": "name is required"})
    if not product.slug and product.name:
        product.slug = slugify(product.name)

    if creating:
        db.session.add(product)
    if product.is_package and ("package_items" in data or creating):
        _apply_package_items(product, data.get("package_items"), errors)
    elif not product.is_package and product.package_items:
        product.package_items.clear()
    if errors:
        db.session.rollback()
        return err("Validation failed", 400, {"errors": errors})

    product.calculate_package_details()
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        info = parse_unique_violation(e)
        if info:
            column = info["column"]
            return conflict(f"Duplicate {column}", {column: data.get(column)})
        return conflict("Duplicate or invalid data")
    return None


# ---------- routes ----------
# GET /api/products
@bp.get("")
def list_products():
    """
    Query params:
      q            -> substring match on name/sku; if q is an int, also match id
      category_id  -> int
      product_type -> single | package
      status       -> active | inactive | draft (default active)
      min_price, max_price -> float
      in_stock     -> bool
      featured     -> bool
      sort         -> id, -id, name, -name, price, -price, quantity, -quantity, rating, -rating
      page, per_page
    """
    q = (request.args.get("q") or "").strip()
    query = Product.query

    if q:
        maybe_id = _parse_opt_int(q)
        like = f"%{q}%"
        query = query.filter(or_(
            Product.name.ilike(like),
            Product.sku.ilike(like),
            (Product.id == maybe_id) if maybe_id is not None else False,
        ))

    status = (request.args.get("status") or "active").strip().lower()
    if status != "all":
        query = query.filter(Product.status == status)

    category_id = _parse_opt_int(request.args.get("category_id"))
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)

    ptype = request.args.get("product_type")
    if ptype:
        query = query.filter(Product.product_type == ptype)

    min_price = _parse_opt_float(request.args.get("min_price"))
    max_price = _parse_opt_float(request.args.get("max_price"))
    if min_price is not None:
        query = query.filter(Product.price >= min_price)
    if max_price is not None:
        query = query.filter(Product.price <= max_price)

    if request.args.get("in_stock") is not None:
        if _parse_bool(request.args.get("in_stock")):
            query = query.filter(or_(Product.track_quantity.is_(False), Product.quantity > 0))
        else:
            query = query.filter(Product.track_quantity.is_(True), Product.quantity <= 0)

    if request.args.get("featured") is not None:
        query = query.filter(Product.featured.is_(_parse_bool(request.args.get("featured"))))

    query = _sort_products(query, request.args.get("sort"))
    return ok("Products fetched", paginate(
        query, request.args.get("page"), request.args.get("per_page", 15), lambda p: p.as_api()
    ))


# GET /api/products/low-stock
@bp.get("/low-stock")
@role_at_least("manager")
def low_stock():
    items = (
        Product.query
        .filter(Product.track_quantity.is_(True), Product.quantity <= Product.low_stock_alert)
        .order_by(Product.quantity.asc())
        .all()
    )
    return ok("Low stock products", {"items": [p.as_api() for p in items], "count": len(items)})


# GET /api/products/<id or slug>
@bp.get("/<ident>")
def get_product(ident):
    product = _find_product(ident)
    if product is None:
        return err("Product not found", 404)
    return ok("Product fetched", product.as_api())


# POST /api/products
@bp.post("")
@role_at_least("manager")
def create_product():
    data = request.get_json(silent=True) or {}
    product = Product(
        product_type="single",
        status="active",
        quantity=0,
        low_stock_alert=10,
        track_quantity=True,
        images=[],
    )
    failure = _save(product, data, creating=True)
    if failure is not None:
        return failure
    log.info("product %s created by %s", product.sku, g.current_user.id)
    resp = ok("Product created", product.as_api(), 201)
    resp.headers["Location"] = url_for(_ep("get_product"), ident=product.id, _external=True)
    return resp


# PUT /api/products/<id>
@bp.put("/<int:pid>")
@role_at_least("manager")
def update_product(pid):
    product = db.session.get(Product, pid)
    if product is None:
        return err("Product not found", 404)
    data = request.get_json(silent=True) or {}
    failure = _save(product, data, creating=False)
    if failure is not None:
        return failure
    return ok("Product updated", product.as_api())


# DELETE /api/products/<id>
@bp.delete("/<int:pid>")
@role_at_least("admin")
def delete_product(pid):
    product = db.session.get(Product, pid)
    if product is None:
        return err("Product not found", 404)
    used_in = PackageItem.query.filter_by(product_id=pid).count()
    if used_in:
        return err("Product is part of a package", 409, {"packages": used_in})
    db.session.delete(product)
    db.session.commit()
    return ok(f"Product {pid} deleted", {"id": pid})


# PATCH /api/products/<id>/stock
@bp.patch("/<int:pid>/stock")
@role_at_least("manager")
def adjust_stock(pid):
    """Body: {"quantity": n} sets stock, {"adjustment": +/-n} moves it."""
    product = db.session.get(Product, pid)
    if product is None:
        return err("Product not found", 404)
    data = request.get_json(silent=True) or {}
    if "quantity" in data:
        quantity = _parse_opt_int(data.get("quantity"))
        if quantity is None or quantity < 0:
            return err("quantity must be an integer >= 0", 400)
        product.quantity = quantity
    elif "adjustment" in data:
        delta = _parse_opt_int(data.get("adjustment"))
        if delta is None:
            return err("adjustment must be an integer", 400)
        if (product.quantity or 0) + delta < 0:
            return err("Stock cannot go below zero", 400, {"available": product.quantity, "adjustment": delta})
        product.quantity = (product.quantity or 0) + delta
    else:
        return err("quantity or adjustment is required", 400)
    db.session.commit()
    log.info("stock for %s set to %s", product.sku, product.quantity)
    return ok("Stock updated", product.as_api())


@bp.get("/export")
@role_at_least("manager")
def export_products():
    """
    Export all products as an Excel file.
    """
    rows = [{
        "SKU": p.sku,
        "Slug": p.slug,
        "Name": p.name,
        "Description": p.description,
        "Price": float(p.price or 0),
        "Cost": float(p.cost) if p.cost is not None else None,
        "Product Type": p.product_type,
        "Status": p.status,
        "Quantity": p.quantity,
        "Low Stock Alert": p.low_stock_alert,
        "Track Quantity": p.track_quantity,
        "Featured": p.featured,
        "Category ID": p.category_id,
    } for p in Product.query.order_by(Product.id.asc()).all()]
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)

    output = BytesIO()
    df.to_excel(output, index=False)
    output.seek(0)
    return send_file(
        output,
        as_attachment=True,
        download_name="products_export.xlsx",
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@bp.post("/import")
@role_at_least("admin")
def import_products():
    """
    Import single products from an uploaded .xlsx file. Rows whose SKU
    already exists update that product.
    """
    if "file" not in request.files:
        return err("No file part", 400)
    file = request.files["file"]
    if file.filename == "":
        return err("No selected file", 400)
    if not file.filename.endswith(".xlsx"):
        return err("Only .xlsx files are allowed", 400)

    df = pd.read_excel(file)
    required = ["SKU", "Name", "Price", "Quantity"]
    missing = [c for c in required if c not in df.columns]
    if missing:
        return err("Missing required columns in the uploaded file", 400, {"missing": missing})

    created = updated = 0
    errors = []
    for idx, row in df.iterrows():
        sku = str(row["SKU"]).strip().upper() if pd.notnull(row["SKU"]) else ""
        name = str(row["Name"]).strip() if pd.notnull(row["Name"]) else ""
        if not sku or not name or pd.isnull(row["Price"]):
            errors.append({"row": int(idx) + 2, "message": "SKU, Name and Price are required"})
            continue
        product = Product.query.filter_by(sku=sku).first()
        if product is None:
            product = Product(sku=sku, product_type="single", status="active", images=[], low_stock_alert=10,
                              track_quantity=True)
            db.session.add(product)
            created += 1
        else:
            updated += 1
        product.name = name
        product.slug = product.slug or slugify(name)
        product.price = D(float(row["Price"]))
        product.quantity = int(row["Quantity"]) if pd.notnull(row["Quantity"]) else 0
        if "Description" in df.columns and pd.notnull(row["Description"]):
            product.description = str(row["Description"])
        if "Status" in df.columns and pd.notnull(row["Status"]) and row["Status"] in PRODUCT_STATUSES:
            product.status = row["Status"]
        if "Category ID" in df.columns and pd.notnull(row["Category ID"]):
            product.category_id = int(row["Category ID"])

    if errors:
        db.session.rollback()
        return err("Import failed", 400, {"errors": errors})
    db.session.commit()
    return ok("Products imported successfully", {"created": created, "updated": updated})


# ---------- packages ----------
def _package_availability(product):
    components = []
    for item in product.package_items:
        c = item.product
        components.append({
            **item.as_api(),
            "available": bool(c and c.is_active and (not c.track_quantity or (c.quantity or 0) >= item.quantity)),
            "stock": c.available_quantity() if c else 0,
        })
    return components


@packages_bp.get("")
def list_packages():
    query = Product.query.filter(Product.product_type == "package", Product.status == "active")
    query = _sort_products(query, request.args.get("sort"))
    return ok("Packages fetched", paginate(
        query, request.args.get("page"), request.args.get("per_page", 15), lambda p: p.as_api()
    ))


@packages_bp.get("/<int:pid>")
def get_package(pid):
    product = db.session.get(Product, pid)
    if product is None or not product.is_package:
        return err("Package not found", 404)
    components = _package_availability(product)
    return ok("Package fetched", {
        **product.as_api(),
        "components": components,
        "all_components_available": all(c["available"] for c in components),
    })
