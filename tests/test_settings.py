from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy.orm.exc import StaleDataError

from storefront.errors import BusinessRuleError, Conflict
from storefront.extensions import db
from storefront.model import PaymentSettings
from storefront.services import pricing
from storefront.services.settings_service import _atomic_update, get_payment_settings

BASE = "/api/admin/settings"


def _wallet(name="paywave", **kw):
    return {"kind": "wallet", "name": name, "display_name": "PayWave", "provider": "paywave", **kw}


# ---- payment methods -----------------------------------------------------------

def test_defaults_are_bootstrapped(client, admin):
    _, headers = admin
    data = client.get(f"{BASE}/payment-methods", headers=headers).get_json()["data"]
    assert [m["name"] for m in data["methods"]] == ["cod", "card"]
    assert data["default_method"] == "cod"


def test_create_method_of_each_kind(client, admin):
    _, headers = admin
    resp = client.post(f"{BASE}/payment-methods", json=_wallet(fees={"type": "percentage", "value": 2.5}),
                       headers=headers)
    assert resp.status_code == 201
    method = resp.get_json()["data"]["method"]
    assert method["kind"] == "wallet"
    assert method["order"] == 2

    bank = client.post(f"{BASE}/payment-methods", json={
        "kind": "bank_transfer", "name": "bank", "display_name": "Bank transfer", "iban": "DE89370400440532013000",
    }, headers=headers)
    assert bank.status_code == 201


def test_unknown_kind_and_stray_fields_fail(client, admin):
    _, headers = admin
    unknown = client.post(f"{BASE}/payment-methods", json={"kind": "barter", "name": "barter",
                                                          "display_name": "Barter"}, headers=headers)
    stray = client.post(f"{BASE}/payment-methods", json=_wallet(bank_name="nope"), headers=headers)
    assert unknown.status_code == 400
    assert stray.status_code == 400


def test_duplicate_name_conflicts(client, admin):
    _, headers = admin
    resp = client.post(f"{BASE}/payment-methods", json={"kind": "card", "name": "card", "display_name": "Again"},
                       headers=headers)
    assert resp.status_code == 409


def test_default_cannot_be_disabled_or_deleted(client, admin):
    _, headers = admin
    assert client.patch(f"{BASE}/payment-methods/cod/toggle", headers=headers).status_code == 400
    assert client.put(f"{BASE}/payment-methods/cod", json={"enabled": False}, headers=headers).status_code == 400
    assert client.delete(f"{BASE}/payment-methods/cod", headers=headers).status_code == 400


def test_name_is_immutable(client, admin):
    _, headers = admin
    resp = client.put(f"{BASE}/payment-methods/card", json={"name": "cards"}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Payment method name cannot be changed"


def test_switch_default_then_delete(client, admin):
    _, headers = admin
    assert client.put(f"{BASE}/payment-methods/card/default", headers=headers).status_code == 200
    assert client.delete(f"{BASE}/payment-methods/cod", headers=headers).status_code == 200
    data = client.get(f"{BASE}/payment-methods", headers=headers).get_json()["data"]
    assert [m["name"] for m in data["methods"]] == ["card"]
    assert data["default_method"] == "card"


def test_reorder(client, admin):
    _, headers = admin
    client.post(f"{BASE}/payment-methods", json=_wallet(), headers=headers)

    resp = client.put(f"{BASE}/payment-methods/reorder", json={"order": ["paywave", "card"]}, headers=headers)

    assert resp.status_code == 200
    methods = resp.get_json()["data"]["methods"]
    assert [(m["name"], m["order"]) for m in methods] == [("paywave", 0), ("card", 1), ("cod", 2)]


def test_reorder_rejects_unknown_names(client, admin):
    _, headers = admin
    resp = client.put(f"{BASE}/payment-methods/reorder", json={"order": ["ghost"]}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["data"]["unknown"] == ["ghost"]


def test_settings_need_admin(client, customer):
    _, headers = customer
    assert client.post(f"{BASE}/payment-methods", json=_wallet(), headers=headers).status_code == 403


def test_disabled_method_is_not_offered(ctx):
    service = get_payment_settings()
    service.create_method(_wallet(enabled=False))
    names = [m.name for m in service.available_methods(Decimal("10"))]
    assert "paywave" not in names
    with pytest.raises(BusinessRuleError):
        service.validate_method("paywave", Decimal("10"))


def test_cod_limits(ctx):
    service = get_payment_settings()
    service.update_method("cod", {"max_order_amount": 100, "allowed_cities": ["Portland"]})

    assert service.validate_method("cod", Decimal("80"), city="portland").name == "cod"
    with pytest.raises(BusinessRuleError):
        service.validate_method("cod", Decimal("150"), city="Portland")
    with pytest.raises(BusinessRuleError):
        service.validate_method("cod", Decimal("50"), city="Salem")


def test_invalid_amount_range_is_rejected(ctx):
    with pytest.raises(ValidationError):
        get_payment_settings().create_method(_wallet(min_amount=50, max_amount=10))


def test_atomic_update_retries_then_conflicts(ctx):
    calls = {"n": 0}
    service = get_payment_settings()

    def always_stale(row):
        calls["n"] += 1
        raise StaleDataError("row changed")

    with pytest.raises(Conflict):
        _atomic_update(service._row, always_stale, 3)
    assert calls["n"] == 3


def test_atomic_update_recovers_after_one_stale_write(ctx):
    calls = {"n": 0}
    service = get_payment_settings()

    def flaky(row):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("row changed")
        return "done"

    assert _atomic_update(service._row, flaky, 3) == "done"
    assert calls["n"] == 2


# ---- keyed settings --------------------------------------------------------------

def test_keyed_settings_merge(client, admin):
    _, headers = admin
    client.put(f"{BASE}/store", json={"name": "Corner Shop"}, headers=headers)
    client.put(f"{BASE}/store", json={"currency": "USD"}, headers=headers)

    data = client.get(f"{BASE}/store", headers=headers).get_json()["data"]
    assert data["data"] == {"name": "Corner Shop", "currency": "USD"}
    assert client.get(f"{BASE}/nope", headers=headers).status_code == 404


def test_admin_email_from_settings_gets_alert(client, admin, make_product):
    from storefront.extensions import mail

    from .conftest import checkout_body

    _, headers = admin
    bad = client.put(f"{BASE}/notification", json={"admin_email": "not-an-email"}, headers=headers)
    assert bad.status_code == 400
    client.put(f"{BASE}/notification", json={"admin_email": "ops@example.com"}, headers=headers)

    with mail.record_messages() as outbox:
        client.post("/api/orders", json=checkout_body([(make_product(), 1)]))

    assert ["ops@example.com"] in [m.recipients for m in outbox]


# ---- shipping and tax -----------------------------------------------------------

def test_tax_rates(ctx):
    assert pricing.calculate_tax(Decimal("100"), "ca") == Decimal("8.25")
    assert pricing.calculate_tax(Decimal("100"), "OR") == Decimal("6.00")


def test_region_fee_beats_method_table(client, admin):
    _, headers = admin
    created = client.post("/api/shipping-fees", json={"name": "Alaska", "shipping_fee": 15,
                                                      "free_shipping_threshold": 200}, headers=headers)
    assert created.status_code == 201

    with client.application.app_context():
        assert pricing.calculate_shipping(Decimal("120"), "alaska") == (Decimal("15.00"), "region")
        assert pricing.calculate_shipping(Decimal("250"), "Alaska") == (Decimal("0"), "region_free")
        assert pricing.calculate_shipping(Decimal("20"), "Oregon", "express") == (Decimal("9.99"), "method")
        assert pricing.calculate_shipping(Decimal("60"), "Oregon", "express") == (Decimal("0"), "free_threshold")


def test_inactive_region_falls_back(client, admin):
    _, headers = admin
    fee_id = client.post("/api/shipping-fees", json={"name": "Hawaii", "shipping_fee": 25},
                         headers=headers).get_json()["data"]["shipping_fee"]["id"]
    client.patch(f"/api/shipping-fees/{fee_id}/toggle", headers=headers)

    assert client.get("/api/shipping-fees").get_json()["data"]["items"] == []
    with client.application.app_context():
        assert pricing.calculate_shipping(Decimal("20"), "Hawaii")[1] == "method"


def test_duplicate_region_name(client, admin):
    _, headers = admin
    client.post("/api/shipping-fees", json={"name": "Texas", "shipping_fee": 5}, headers=headers)
    resp = client.post("/api/shipping-fees", json={"name": "texas", "shipping_fee": 6}, headers=headers)
    assert resp.status_code == 409


def test_unknown_shipping_method(ctx):
    with pytest.raises(ValueError):
        pricing.calculate_shipping(Decimal("10"), "Oregon", "teleport")


def test_settings_row_exists_after_startup(ctx):
    assert PaymentSettings.query.count() == 1


def test_reading_missing_settings_leaves_commit_to_caller(ctx):
    PaymentSettings.query.delete()
    db.session.commit()

    assert get_payment_settings().load().default_method == "cod"
    db.session.rollback()
    assert PaymentSettings.query.count() == 0
