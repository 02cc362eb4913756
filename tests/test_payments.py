from decimal import Decimal

import pytest

from storefront.errors import BusinessRuleError, ValidationFailed
from storefront.extensions import db
from storefront.model import Order, Payment, Product, Transaction
from storefront.services import payment_service
from storefront.services.gateway import SimulatedGateway

from .conftest import checkout_body


def _place_order(client, headers, pid, qty=1, method="card"):
    body = checkout_body([(pid, qty)], payment_method=method)
    body.pop("customer")
    data = client.post("/api/orders", json=body, headers=headers).get_json()["data"]
    return data["order"]["id"], data["payment"]["id"]


def _decline_all(app):
    app.extensions["payment_gateway"] = SimulatedGateway(success_rate=0.0)


# ---- processing -------------------------------------------------------------

def test_process_payment_completes_and_confirms_order(app, client, customer, make_product):
    _, headers = customer
    order_id, payment_id = _place_order(client, headers, make_product(price="20.00"))

    resp = client.post(f"/api/payments/{payment_id}/process",
                       json={"payment_token": "tok_visa", "payment_details": {"card_number": "4242 4242 4242 4242"}},
                       headers=headers)

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["success"] is True
    assert data["transaction_id"].startswith("TXN_")
    assert data["payment"]["status"] == "completed"
    assert data["payment"]["payment_details"] == {"last4": "4242"}
    with app.app_context():
        order = db.session.get(Order, order_id)
        assert order.status == "confirmed"
        assert order.payment_status == "paid"
        sale = Transaction.query.filter_by(payment_id=payment_id, type="sale").one()
        assert sale.status == "success"
        assert sale.gateway_transaction_id == data["transaction_id"]


def test_declined_payment_is_a_normal_result(app, client, customer, make_product):
    _, headers = customer
    order_id, payment_id = _place_order(client, headers, make_product())
    _decline_all(app)

    resp = client.post(f"/api/payments/{payment_id}/process", json={}, headers=headers)

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["message"] == "Payment failed: Insufficient funds"
    assert body["data"]["success"] is False
    assert body["data"]["payment"]["status"] == "failed"
    with app.app_context():
        assert db.session.get(Order, order_id).payment_status == "failed"
        failed = Transaction.query.filter_by(payment_id=payment_id).one()
        assert failed.status == "failed"
        assert failed.gateway_transaction_id.startswith("FAILED_")


def test_retry_after_decline(app, client, customer, make_product):
    _, headers = customer
    _, payment_id = _place_order(client, headers, make_product())
    _decline_all(app)
    client.post(f"/api/payments/{payment_id}/process", json={}, headers=headers)

    app.extensions["payment_gateway"] = SimulatedGateway(success_rate=1.0)
    resp = client.post(f"/api/payments/{payment_id}/retry", json={}, headers=headers)

    assert resp.get_json()["data"]["payment"]["status"] == "completed"
    with app.app_context():
        assert Transaction.query.filter_by(payment_id=payment_id).count() == 2


def test_only_failed_payments_can_be_retried(client, customer, make_product):
    _, headers = customer
    _, payment_id = _place_order(client, headers, make_product())
    resp = client.post(f"/api/payments/{payment_id}/retry", json={}, headers=headers)
    assert resp.status_code == 400


def test_completed_payment_cannot_be_processed_twice(client, customer, make_product):
    _, headers = customer
    _, payment_id = _place_order(client, headers, make_product())
    client.post(f"/api/payments/{payment_id}/process", json={}, headers=headers)
    resp = client.post(f"/api/payments/{payment_id}/process", json={}, headers=headers)
    assert resp.status_code == 400


def test_cod_cannot_be_processed_online(client, customer, make_product):
    _, headers = customer
    _, payment_id = _place_order(client, headers, make_product(), method="cod")
    resp = client.post(f"/api/payments/{payment_id}/process", json={}, headers=headers)
    assert resp.status_code == 400


def test_other_users_payment_is_hidden(client, customer, make_user, make_product):
    _, headers = customer
    _, payment_id = _place_order(client, headers, make_product())
    _, other = make_user("other@example.com")
    assert client.get(f"/api/payments/{payment_id}", headers=other).status_code == 404


# ---- refunds ------------------------------------------------------------------

def test_refund_ceiling_then_full_refund(ctx, make_payment):
    pid = make_payment("100.00", status="completed", sale=True)
    payment = db.session.get(Payment, pid)
    payment_service.apply_refund(payment, Decimal("40.00"), "REF_FIRST")
    db.session.commit()
    assert payment.status == "partially_refunded"

    with pytest.raises(BusinessRuleError) as exc:
        payment_service.refund_payment(pid, "70")
    assert exc.value.message == "Refund amount exceeds available balance. Maximum refundable: $60.00"
    assert exc.value.data["available_for_refund"] == 60.0

    payment, summary = payment_service.refund_payment(pid, "60", reason="Customer request")

    assert payment.status == "refunded"
    assert payment.refund_amount == Decimal("100.00")
    assert summary == {"refunded_amount": 60.0, "total_refunded": 100.0, "available_for_refund": 0.0}
    assert db.session.get(Order, payment.order_id).payment_status == "refunded"


def test_refund_requires_positive_amount(ctx, make_payment):
    pid = make_payment("50.00", status="completed", sale=True)
    with pytest.raises(ValidationFailed):
        payment_service.refund_payment(pid, "0")


def test_pending_payment_is_not_refundable(ctx, make_payment):
    pid = make_payment("50.00")
    with pytest.raises(BusinessRuleError):
        payment_service.refund_payment(pid, "10")


def test_gateway_refund_decline_is_recorded(app, ctx, make_payment):
    pid = make_payment("50.00", status="completed", sale=True)
    _decline_all(app)

    with pytest.raises(BusinessRuleError):
        payment_service.refund_payment(pid, "10")

    failed = Transaction.query.filter_by(payment_id=pid, type="refund").one()
    assert failed.status == "failed"
    assert db.session.get(Payment, pid).status == "completed"


def test_admin_refund_endpoint(client, admin, make_payment):
    _, headers = admin
    pid = make_payment("80.00", status="completed", sale=True)

    resp = client.post(f"/api/admin/payments/{pid}/refund", json={"amount": 30, "reason": "damaged"},
                       headers=headers)

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["payment"]["status"] == "partially_refunded"
    assert data["refund_summary"]["available_for_refund"] == 50.0

    over = client.post(f"/api/admin/payments/{pid}/refund", json={"amount": 60}, headers=headers)
    assert over.status_code == 400
    assert over.get_json()["data"]["available_for_refund"] == 50.0


def test_refund_needs_admin(client, customer, make_payment):
    _, headers = customer
    pid = make_payment("80.00", status="completed", sale=True)
    resp = client.post(f"/api/admin/payments/{pid}/refund", json={"amount": 10}, headers=headers)
    assert resp.status_code == 403


# ---- cash on delivery -----------------------------------------------------------

def test_cod_collected_within_tolerance(client, admin, make_payment):
    _, headers = admin
    pid = make_payment("250.00", method="cod")

    resp = client.post(f"/api/admin/payments/{pid}/cod/confirm", json={"collected_amount": 248.50},
                       headers=headers)

    assert resp.status_code == 200
    payment = resp.get_json()["data"]["payment"]
    assert payment["status"] == "completed"
    assert payment["cod_status"] == "collected"


def test_cod_collected_outside_tolerance(client, admin, make_payment):
    _, headers = admin
    pid = make_payment("250.00", method="cod")

    resp = client.post(f"/api/admin/payments/{pid}/cod/confirm", json={"collected_amount": 245.00},
                       headers=headers)

    assert resp.status_code == 400
    data = resp.get_json()["data"]
    assert data["expected_amount"] == 250.0
    assert data["collected_amount"] == 245.0
    assert data["difference"] == 5.0


def test_cod_refund_is_manual(ctx, make_payment):
    pid = make_payment("120.00", method="cod")
    payment = db.session.get(Payment, pid)
    payment_service.confirm_cod(payment, "120.00")

    payment, _ = payment_service.refund_payment(pid, "20")

    refund = Transaction.query.filter_by(payment_id=pid, type="refund").one()
    assert refund.gateway_transaction_id.startswith("COD_REF_")
    assert payment.status == "partially_refunded"


def test_failed_cod_collection_cancels_order_and_restocks(app, client, admin, customer, make_product):
    _, user_headers = customer
    _, admin_headers = admin
    pid = make_product(quantity=4)
    order_id, payment_id = _place_order(client, user_headers, pid, qty=3, method="cod")

    resp = client.post(f"/api/admin/payments/{payment_id}/cod/fail", json={"reason": "Nobody home"},
                       headers=admin_headers)

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["payment"]["status"] == "failed"
    assert data["payment"]["cod_status"] == "failed_collection"
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["payment_status"] == "failed"
    with app.app_context():
        assert db.session.get(Product, pid).quantity == 4


# ---- methods ----------------------------------------------------------------------

def test_methods_listing_with_fees(client):
    resp = client.get("/api/payments/methods?amount=100")
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert [m["name"] for m in data["methods"]] == ["cod", "card"]
    assert data["default_method"] == "cod"
    assert data["methods"][0]["fee"] == 0.0
    assert all("credentials" not in m for m in data["methods"])


def test_validate_method_respects_minimum_order(client, admin):
    _, headers = admin
    client.put("/api/admin/settings/payment-general", json={"minimum_order_amount": 25}, headers=headers)

    low = client.post("/api/payments/validate-method", json={"payment_method": "card", "amount": 10})
    high = client.post("/api/payments/validate-method", json={"payment_method": "card", "amount": 30})

    assert low.status_code == 400
    assert low.get_json()["message"] == "Minimum order amount is $25.00"
    assert high.status_code == 200


def test_cod_detection(ctx, make_payment):
    cod = db.session.get(Payment, make_payment("10.00", method="cod"))
    card = db.session.get(Payment, make_payment("10.00"))

    assert cod.is_cod is True
    assert card.is_cod is False
    assert payment_service._is_cod(cod) is True
    assert payment_service._is_cod(card) is False
