# storefront/cli.py
import click
from flask.cli import with_appcontext
import pandas as pd
from werkzeug.security import generate_password_hash

from .extensions import db
from .model import Category, Order, Product, ShippingFee, User
from .utils.money import D

SAMPLE_PRODUCTS = [
    {"sku": "TEE-001", "name": "Classic Cotton Tee", "price": "19.99", "quantity": 100},
    {"sku": "TEE-002", "name": "V-Neck Tee", "price": "21.50", "quantity": 80},
    {"sku": "HOOD-001", "name": "Zip Hoodie", "price": "49.00", "quantity": 40},
    {"sku": "CAP-001", "name": "Baseball Cap", "price": "15.00", "quantity": 150},
    {"sku": "SOCK-001", "name": "Crew Socks (3 pack)", "price": "9.99", "quantity": 200},
    {"sku": "BAG-001", "name": "Canvas Tote", "price": "12.75", "quantity": 60},
    {"sku": "MUG-001", "name": "Ceramic Mug", "price": "11.00", "quantity": 90},
    {"sku": "BTL-001", "name": "Steel Water Bottle", "price": "24.99", "quantity": 5},
    {"sku": "NOTE-001", "name": "Dotted Notebook", "price": "8.50", "quantity": 120},
    {"sku": "PEN-001", "name": "Gel Pen Set", "price": "6.25", "quantity": 0},
]


@click.command("create-admin")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--first-name", required=True)
@click.option("--last-name", default="")
@with_appcontext
def create_admin(email, password, first_name, last_name):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo("Email already exists"); return
    u = User(
        email=email,
        first_name=first_name,
        last_name=last_name or None,
        password_hash=generate_password_hash(password),
        role="admin",
    )
    db.session.add(u); db.session.commit()
    click.echo(f"Admin created: {u.id} {u.email}")


@click.command("seed-sample-data")
@with_appcontext
def seed_sample_data():
    """Insert a demo category, ten products and a couple of shipping regions."""
    category = Category.query.filter_by(name="Merch").first()
    if category is None:
        category = Category(name="Merch", slug="merch", is_active=True)
        db.session.add(category)
        db.session.flush()

    added = 0
    for row in SAMPLE_PRODUCTS:
        if Product.query.filter_by(sku=row["sku"]).first():
            continue
        db.session.add(Product(
            sku=row["sku"],
            name=row["name"],
            slug=row["name"].lower().replace(" ", "-"),
            price=D(row["price"]),
            quantity=row["quantity"],
            category_id=category.id,
            images=[],
        ))
        added += 1

    for name, fee, threshold in (("CA", "6.00", "75.00"), ("NY", "7.50", None)):
        if ShippingFee.query.filter_by(name=name).first() is None:
            db.session.add(ShippingFee(name=name, shipping_fee=D(fee),
                                       free_shipping_threshold=D(threshold) if threshold else None))
    db.session.commit()
    click.echo(f"{added} sample products added")


@click.command("export-orders")
@click.option("--path", default="orders_export.xlsx", show_default=True)
@click.option("--status", default=None)
@with_appcontext
def export_orders(path, status):
    """Write orders to an Excel workbook."""
    q = Order.query
    if status:
        q = q.filter(Order.status == status)
    rows = [{
        "Order Number": o.order_number,
        "Date": o.created_at,
        "Email": o.customer_email,
        "Status": o.status,
        "Payment Status": o.payment_status,
        "Total": float(o.total),
    } for o in q.order_by(Order.created_at.asc()).all()]
    pd.DataFrame(rows).to_excel(path, index=False)
    click.echo(f"{len(rows)} orders exported to {path}")


def register_cli(app):
    app.cli.add_command(create_admin)
    app.cli.add_command(seed_sample_data)
    app.cli.add_command(export_orders)
