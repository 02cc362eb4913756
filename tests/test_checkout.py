import re

import pytest

from storefront.errors import InsufficientStock
from storefront.extensions import db, mail
from storefront.model import Cart, Coupon, Order, Product
from storefront.services.inventory import reserve_stock

from .conftest import checkout_body


def _checkout(client, body, headers=None):
    return client.post("/api/orders", json=body, headers=headers or {})


def _stock(app, pid):
    with app.app_context():
        return db.session.get(Product, pid).quantity


def test_guest_checkout_default_tax_free_shipping(client, make_product):
    pid = make_product(price="30.00", quantity=5)

    resp = _checkout(client, checkout_body([(pid, 2)]))

    assert resp.status_code == 201
    data = resp.get_json()["data"]
    totals = data["order"]["totals"]
    assert totals == {"subtotal": 60.0, "tax": 3.6, "shipping": 0.0, "discount": 0.0, "total": 63.6}
    assert data["order"]["status"] == "pending"
    assert data["payment"]["status"] == "pending"
    assert data["payment"]["amount"] == 63.6
    assert data["next_step"] == "process_payment"


def test_order_numbers_follow_daily_sequence(client, make_product):
    pid = make_product(quantity=10)
    first = _checkout(client, checkout_body([(pid, 1)])).get_json()["data"]["order"]["order_number"]
    second = _checkout(client, checkout_body([(pid, 1)])).get_json()["data"]["order"]["order_number"]

    assert re.fullmatch(r"ORD-\d{8}-\d{4}", first)
    assert first.endswith("-0001")
    assert second.endswith("-0002")
    assert first[:12] == second[:12]


def test_checkout_reserves_stock(app, client, make_product):
    pid = make_product(quantity=5)
    _checkout(client, checkout_body([(pid, 2)]))
    assert _stock(app, pid) == 3


def test_duplicate_lines_are_merged(client, make_product):
    pid = make_product(price="10.00", quantity=5)
    resp = _checkout(client, checkout_body([(pid, 1), (pid, 2)]))
    items = resp.get_json()["data"]["order"]["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 3


def test_invalid_coupon_is_reported_but_checkout_proceeds(client, make_product, make_coupon):
    pid = make_product(price="15.00")
    make_coupon("MIN20", discount_type="fixed", discount_value="10", minimum_purchase="20")

    resp = _checkout(client, checkout_body([(pid, 1)], coupon_code="MIN20"))

    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["coupon_message"] == "Minimum purchase of $20.00 required"
    assert data["order"]["coupon"] is None
    assert data["order"]["totals"]["discount"] == 0.0
    assert data["order"]["totals"]["total"] == 20.89


def test_valid_coupon_is_applied_and_counted(app, client, make_product, make_coupon):
    pid = make_product(price="40.00")
    cid = make_coupon("TEN", discount_type="fixed", discount_value="10")

    resp = _checkout(client, checkout_body([(pid, 2)], coupon_code="ten"))

    order = resp.get_json()["data"]["order"]
    assert order["coupon"]["code"] == "TEN"
    assert order["totals"]["discount"] == 10.0
    # 80 - 10 + 0 shipping + 4.80 tax
    assert order["totals"]["total"] == 74.8
    with app.app_context():
        coupon = db.session.get(Coupon, cid)
        assert coupon.usage_count == 1
        assert coupon.usage_for(email="guest@example.com").usage_count == 1


def test_free_shipping_coupon_zeroes_shipping(client, make_product, make_coupon):
    pid = make_product(price="10.00")
    make_coupon("SHIPFREE", discount_type="free_shipping", discount_value="0")

    resp = _checkout(client, checkout_body([(pid, 1)], coupon_code="SHIPFREE"))

    totals = resp.get_json()["data"]["order"]["totals"]
    assert totals["shipping"] == 0.0
    assert totals["total"] == 10.6


def test_totals_are_snapshotted(app, client, make_product):
    pid = make_product(price="30.00")
    order_id = _checkout(client, checkout_body([(pid, 2)])).get_json()["data"]["order"]["id"]

    with app.app_context():
        db.session.get(Product, pid).price = 99
        db.session.commit()
        order = db.session.get(Order, order_id)
        assert float(order.total) == 63.6
        assert float(order.items[0].price) == 30.0


def test_out_of_stock_lines_are_listed(app, client, make_product):
    ok_pid = make_product(quantity=5)
    low_pid = make_product(quantity=1, name="Scarce")

    resp = _checkout(client, checkout_body([(ok_pid, 1), (low_pid, 3)]))

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["message"] == "Some items are unavailable"
    missing = body["data"]["out_of_stock_items"]
    assert [m["product_id"] for m in missing] == [low_pid]
    assert missing[0]["available"] == 1
    assert missing[0]["requested"] == 3
    # nothing was reserved
    assert _stock(app, ok_pid) == 5


def test_inactive_product_cannot_be_bought(client, make_product):
    pid = make_product(status="inactive")
    resp = _checkout(client, checkout_body([(pid, 1)]))
    assert resp.status_code == 400
    assert resp.get_json()["data"]["out_of_stock_items"][0]["reason"] == "Product is no longer available"


def test_last_unit_sells_once(app, client, make_product):
    pid = make_product(quantity=1)

    first = _checkout(client, checkout_body([(pid, 1)]))
    second = _checkout(client, checkout_body([(pid, 1)]))

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.get_json()["data"]["out_of_stock_items"][0]["available"] == 0
    assert _stock(app, pid) == 0
    with app.app_context():
        assert Order.query.count() == 1


def test_guarded_decrement_refuses_stale_reader(ctx, make_product):
    pid = make_product(quantity=1)
    product = db.session.get(Product, pid)

    reserve_stock(product, 1)
    with pytest.raises(InsufficientStock):
        reserve_stock(product, 1)

    db.session.rollback()
    assert db.session.get(Product, pid).quantity == 1


def test_guest_needs_customer_details(client, make_product):
    body = checkout_body([(make_product(), 1)])
    del body["customer"]
    resp = _checkout(client, body)
    assert resp.status_code == 400
    assert resp.get_json()["data"]["errors"][0]["field"] == "customer"


def test_guest_needs_items(client):
    body = checkout_body([])
    body["items"] = None
    resp = _checkout(client, body)
    assert resp.status_code == 400


def test_missing_address_fails_validation(client, make_product):
    body = checkout_body([(make_product(), 1)])
    del body["shipping_address"]
    resp = _checkout(client, body)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Validation failed"


def test_unknown_payment_method_is_rejected(app, client, make_product):
    pid = make_product(quantity=2)
    resp = _checkout(client, checkout_body([(pid, 1)], payment_method="crypto"))
    assert resp.status_code == 400
    assert "crypto" in resp.get_json()["message"]
    assert _stock(app, pid) == 2


def test_cod_checkout_waits_for_delivery(client, make_product):
    pid = make_product()
    resp = _checkout(client, checkout_body([(pid, 1)], payment_method="cod"))
    data = resp.get_json()["data"]
    assert data["next_step"] == "order_success"
    assert data["payment"]["cod_status"] == "awaiting_delivery"


def test_logged_in_checkout_uses_cart(app, client, customer, make_product):
    uid, headers = customer
    pid = make_product(price="12.50", quantity=4)
    client.post("/api/cart/items", json={"product_id": pid, "quantity": 2}, headers=headers)

    body = checkout_body([])
    body.pop("items")
    body.pop("customer")
    resp = _checkout(client, body, headers)

    assert resp.status_code == 201
    order = resp.get_json()["data"]["order"]
    assert order["user_id"] == uid
    assert order["customer"]["email"] == "jane@example.com"
    assert order["totals"]["subtotal"] == 25.0
    with app.app_context():
        cart = Cart.query.filter_by(user_id=uid).first()
        assert cart.items == []
        assert float(cart.grand_total) == 0


def test_empty_cart_checkout(client, customer):
    _, headers = customer
    body = checkout_body([])
    body.pop("items")
    resp = _checkout(client, body, headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Cart is empty"


def test_confirmation_and_admin_alert_are_mailed(app, client, make_product):
    pid = make_product()
    with mail.record_messages() as outbox:
        _checkout(client, checkout_body([(pid, 1)]))

    subjects = sorted(m.subject for m in outbox)
    assert len(subjects) == 2
    assert subjects[0].startswith("New Order Received - ORD-")
    assert subjects[1].startswith("Order Confirmation - ORD-")
    assert ["admin@storefront.test"] in [m.recipients for m in outbox]
