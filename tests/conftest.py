import hashlib
import hmac
import json
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token
from werkzeug.security import generate_password_hash

from storefront import create_app
from storefront.config import TestingConfig
from storefront.extensions import db
from storefront.model import Coupon, Order, Payment, Product, Transaction, User
from storefront.utils.money import D


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    """App context for tests that call services directly."""
    with app.app_context():
        yield app


def _create_user(app, email, role="user", first_name="Test", last_name="User"):
    with app.app_context():
        u = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=generate_password_hash("secret123"),
            role=role,
        )
        db.session.add(u)
        db.session.commit()
        token = create_access_token(identity=str(u.id))
        return u.id, {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(app):
    return _create_user(app, "admin@example.com", role="admin", first_name="Ada")


@pytest.fixture
def customer(app):
    return _create_user(app, "jane@example.com", first_name="Jane", last_name="Doe")


@pytest.fixture
def make_user(app):
    def _make(email, role="user"):
        return _create_user(app, email, role=role)
    return _make


@pytest.fixture
def make_product(app):
    counter = {"n": 0}

    def _make(price="30.00", quantity=10, **kw):
        counter["n"] += 1
        with app.app_context():
            p = Product(
                sku=kw.pop("sku", f"SKU-{counter['n']:03d}"),
                name=kw.pop("name", f"Product {counter['n']}"),
                price=D(price),
                quantity=quantity,
                images=[],
                **kw,
            )
            db.session.add(p)
            db.session.commit()
            return p.id
    return _make


@pytest.fixture
def make_coupon(app):
    def _make(code, discount_type="percentage", discount_value="10", **kw):
        with app.app_context():
            c = Coupon(
                code=code,
                name=kw.pop("name", code),
                discount_type=discount_type,
                discount_value=D(discount_value),
                start_date=kw.pop("start_date", datetime.utcnow() - timedelta(days=1)),
                end_date=kw.pop("end_date", datetime.utcnow() + timedelta(days=30)),
                usage_count=kw.pop("usage_count", 0),
                usage_limit_per_customer=kw.pop("usage_limit_per_customer", 1),
                minimum_purchase=D(kw.pop("minimum_purchase", "0")),
                minimum_items=kw.pop("minimum_items", 0),
                is_active=kw.pop("is_active", True),
                **kw,
            )
            db.session.add(c)
            db.session.commit()
            return c.id
    return _make


ADDRESS = {
    "street": "1 Main St",
    "city": "Portland",
    "state": "OR",
    "zip_code": "97201",
    "country": "US",
}


def checkout_body(items, payment_method="card", **kw):
    body = {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "customer": {"email": "guest@example.com", "first_name": "Gus", "last_name": "Guest"},
        "shipping_address": dict(ADDRESS),
        "shipping_method": "standard",
        "payment_method": payment_method,
    }
    body.update(kw)
    return body


def sign(app, body: dict):
    raw = json.dumps(body).encode()
    sig = hmac.new(app.config["PAYMENT_WEBHOOK_SECRET"].encode(), raw, hashlib.sha256).hexdigest()
    return raw, {"X-Webhook-Signature": sig, "Content-Type": "application/json"}


@pytest.fixture
def make_payment(app):
    """Order + payment rows written directly, for ledger and refund tests."""
    counter = {"n": 0}

    def _make(amount, method="card", status="pending", user_id=None, sale=False):
        counter["n"] += 1
        with app.app_context():
            order = Order(
                order_number=f"ORD-20250101-{counter['n']:04d}",
                user_id=user_id,
                customer_email="buyer@example.com",
                customer_first_name="Bea",
                customer_last_name="Buyer",
                shipping_address=dict(ADDRESS),
                subtotal=D(amount),
                total=D(amount),
                payment_method=method,
                payment_status="paid" if status == "completed" else "pending",
            )
            db.session.add(order)
            db.session.flush()
            payment = Payment(
                order_id=order.id,
                user_id=user_id,
                payment_method=method,
                amount=D(amount),
                status=status,
                cod_status="awaiting_delivery" if method == "cod" else None,
                refund_amount=D(0),
            )
            db.session.add(payment)
            db.session.flush()
            if sale:
                db.session.add(Transaction(
                    payment_id=payment.id,
                    user_id=user_id,
                    type="sale",
                    amount=D(amount),
                    status="success",
                    gateway_transaction_id=f"TXN_TEST_{counter['n']}",
                ))
            db.session.commit()
            return payment.id
    return _make
