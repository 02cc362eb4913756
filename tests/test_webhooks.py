import json

from storefront.extensions import db
from storefront.model import Payment, Transaction

from .conftest import sign

URL = "/api/payments/webhook/simulated"


def _with_gateway_id(app, payment_id, gateway_id):
    with app.app_context():
        db.session.get(Payment, payment_id).gateway_transaction_id = gateway_id
        db.session.commit()


def test_bad_signature_is_rejected(client):
    body = {"type": "payment.completed", "data": {"payment_id": "TXN_1"}}
    resp = client.post(URL, data=json.dumps(body), headers={"X-Webhook-Signature": "deadbeef",
                                                            "Content-Type": "application/json"})
    assert resp.status_code == 401


def test_missing_signature_is_rejected(client):
    resp = client.post(URL, json={"type": "payment.completed", "data": {}})
    assert resp.status_code == 401


def test_prefixed_signature_is_accepted(app, client):
    raw, headers = sign(app, {"type": "something.else", "data": {}})
    headers["X-Webhook-Signature"] = "sha256=" + headers["X-Webhook-Signature"]
    resp = client.post(URL, data=raw, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["outcome"] == "unhandled"


def test_payment_completed_event(app, client, make_payment):
    pid = make_payment("42.00")
    _with_gateway_id(app, pid, "TXN_GW_1")

    raw, headers = sign(app, {"type": "payment.completed", "data": {"payment_id": "TXN_GW_1", "amount": 42.0}})
    resp = client.post(URL, data=raw, headers=headers)

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["received"] is True
    assert data["outcome"] == "completed"
    with app.app_context():
        payment = db.session.get(Payment, pid)
        assert payment.status == "completed"
        assert payment.order.payment_status == "paid"
        assert payment.order.status == "confirmed"


def test_payment_failed_event(app, client, make_payment):
    pid = make_payment("42.00")
    _with_gateway_id(app, pid, "TXN_GW_2")

    raw, headers = sign(app, {"type": "payment.failed",
                              "data": {"payment_id": "TXN_GW_2", "error": {"message": "Card expired"}}})
    client.post(URL, data=raw, headers=headers)

    with app.app_context():
        payment = db.session.get(Payment, pid)
        assert payment.status == "failed"
        assert payment.failure_reason == "Card expired"


def test_refund_event_is_idempotent(app, client, make_payment):
    pid = make_payment("90.00", status="completed", sale=True)
    _with_gateway_id(app, pid, "TXN_GW_3")
    event = {"type": "refund.completed", "data": {"payment_id": "TXN_GW_3", "refund_id": "REF_GW_1", "amount": 30}}

    raw, headers = sign(app, event)
    first = client.post(URL, data=raw, headers=headers)
    second = client.post(URL, data=raw, headers=headers)

    assert first.get_json()["data"]["outcome"] == "refunded"
    assert second.get_json()["data"]["outcome"] == "duplicate"
    with app.app_context():
        payment = db.session.get(Payment, pid)
        assert float(payment.refund_amount) == 30.0
        assert payment.status == "partially_refunded"
        assert Transaction.query.filter_by(payment_id=pid, type="refund").count() == 1


def test_refund_event_over_balance_is_rejected(app, client, make_payment):
    pid = make_payment("20.00", status="completed", sale=True)
    _with_gateway_id(app, pid, "TXN_GW_4")

    raw, headers = sign(app, {"type": "refund.completed",
                              "data": {"payment_id": "TXN_GW_4", "refund_id": "REF_GW_2", "amount": 25}})
    resp = client.post(URL, data=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.get_json()["data"]["outcome"] == "rejected"
    with app.app_context():
        assert db.session.get(Payment, pid).status == "completed"


def test_unknown_payment_is_ignored(app, client):
    raw, headers = sign(app, {"type": "payment.completed", "data": {"payment_id": "TXN_NOPE"}})
    resp = client.post(URL, data=raw, headers=headers)
    assert resp.get_json()["data"]["outcome"] == "ignored"


def test_refund_event_on_unpaid_payment_is_rejected(app, client, make_payment):
    pid = make_payment("20.00")
    _with_gateway_id(app, pid, "TXN_GW_5")

    raw, headers = sign(app, {"type": "refund.completed",
                              "data": {"payment_id": "TXN_GW_5", "refund_id": "REF_GW_3", "amount": 5}})
    resp = client.post(URL, data=raw, headers=headers)

    assert resp.get_json()["data"]["outcome"] == "rejected"
    with app.app_context():
        payment = db.session.get(Payment, pid)
        assert payment.status == "pending"
        assert Transaction.query.filter_by(payment_id=pid, type="refund").count() == 0
