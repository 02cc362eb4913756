from datetime import datetime, timedelta
from decimal import Decimal

from storefront.extensions import db
from storefront.model import Coupon
from storefront.services import coupon_service


def _lines(*rows):
    return [{"product_id": pid, "category_id": cat, "price": Decimal(price), "quantity": qty}
            for pid, cat, price, qty in rows]


def test_minimum_purchase_message(ctx, make_coupon):
    cid = make_coupon("MIN20", discount_type="fixed", discount_value="10", minimum_purchase="20")
    coupon = db.session.get(Coupon, cid)

    check = coupon_service.can_be_used_by(coupon, None, Decimal("15"), _lines((1, None, "15", 1)))

    assert check["valid"] is False
    assert check["message"] == "Minimum purchase of $20.00 required"


def test_minimum_items_message(ctx, make_coupon):
    cid = make_coupon("THREE", minimum_items=3)
    coupon = db.session.get(Coupon, cid)
    check = coupon_service.can_be_used_by(coupon, None, Decimal("40"), _lines((1, None, "20", 2)))
    assert check == {"valid": False, "message": "Minimum 3 items required"}


def test_expired_coupon_is_invalid(ctx, make_coupon):
    cid = make_coupon(
        "OLD",
        start_date=datetime.utcnow() - timedelta(days=10),
        end_date=datetime.utcnow() - timedelta(days=1),
    )
    coupon = db.session.get(Coupon, cid)
    assert coupon.status == "expired"
    assert not coupon.is_valid
    check = coupon_service.can_be_used_by(coupon, None, Decimal("100"), _lines((1, None, "100", 1)))
    assert check["message"] == "Coupon is not valid or has expired"


def test_per_customer_limit(ctx, make_coupon, customer):
    uid, _ = customer
    cid = make_coupon("ONCE")
    coupon = db.session.get(Coupon, cid)
    coupon_service.record_usage(coupon, user_id=uid)
    db.session.commit()

    check = coupon_service.can_be_used_by(coupon, uid, Decimal("50"), _lines((1, None, "50", 1)))
    assert check["valid"] is False
    assert "maximum number of times" in check["message"]


def test_record_usage_increments_once(ctx, make_coupon):
    cid = make_coupon("COUNTME", usage_limit_total=5)
    coupon = db.session.get(Coupon, cid)
    coupon_service.record_usage(coupon, email="guest@example.com")
    db.session.commit()

    assert coupon.usage_count == 1
    assert coupon.remaining_uses == 4
    assert coupon.usage_for(email="GUEST@example.com").usage_count == 1


def test_last_use_depletes_coupon(ctx, make_coupon):
    cid = make_coupon("LAST", usage_limit_total=1)
    coupon = db.session.get(Coupon, cid)
    coupon_service.record_usage(coupon, email="a@example.com")
    db.session.commit()
    assert coupon.status == "depleted"
    assert coupon.is_active is False


def test_fixed_discount_capped_at_applicable_total(ctx, make_coupon):
    cid = make_coupon("FIX50", discount_type="fixed", discount_value="50", products=[7])
    coupon = db.session.get(Coupon, cid)
    lines = _lines((7, None, "12.00", 1), (8, None, "100.00", 1))

    result = coupon_service.calculate_discount(coupon, Decimal("112.00"), lines)

    assert result["discount"] == Decimal("12.00")


def test_percentage_discount_respects_cap(ctx, make_coupon):
    cid = make_coupon("PCT", discount_value="20", max_discount_amount=Decimal("15"))
    coupon = db.session.get(Coupon, cid)
    result = coupon_service.calculate_discount(coupon, Decimal("200"), _lines((1, None, "200", 1)))
    assert result["discount"] == Decimal("15.00")


def test_category_allow_list(ctx, make_coupon):
    cid = make_coupon("CAT", discount_value="10", categories=[3])
    coupon = db.session.get(Coupon, cid)
    lines = _lines((1, 3, "50.00", 1), (2, 4, "50.00", 1))
    assert coupon_service.calculate_discount(coupon, Decimal("100"), lines)["discount"] == Decimal("5.00")


def test_free_shipping_has_no_money_discount(ctx, make_coupon):
    cid = make_coupon("SHIPFREE", discount_type="free_shipping", discount_value="0")
    coupon = db.session.get(Coupon, cid)
    result = coupon_service.calculate_discount(coupon, Decimal("30"), _lines((1, None, "30", 1)))
    assert result == {"discount": Decimal("0"), "discount_type": "free_shipping", "free_shipping": True}


def test_admin_creates_coupon_with_generated_code(client, admin):
    _, headers = admin
    end = (datetime.utcnow() + timedelta(days=7)).isoformat()
    resp = client.post("/api/coupons", json={
        "name": "Spring sale",
        "discount_type": "percentage",
        "discount_value": 15,
        "end_date": end,
    }, headers=headers)

    assert resp.status_code == 201
    coupon = resp.get_json()["data"]["coupon"]
    assert coupon["code"].startswith("MK")
    assert coupon["status"] == "active"


def test_admin_rejects_percentage_over_100(client, admin):
    _, headers = admin
    resp = client.post("/api/coupons", json={
        "code": "TOOMUCH",
        "name": "Too much",
        "discount_type": "percentage",
        "discount_value": 120,
        "end_date": (datetime.utcnow() + timedelta(days=7)).isoformat(),
    }, headers=headers)
    assert resp.status_code == 400
    fields = [e["field"] for e in resp.get_json()["data"]["errors"]]
    assert "discount_value" in fields


def test_duplicate_code_conflicts(client, admin, make_coupon):
    _, headers = admin
    make_coupon("TAKEN")
    resp = client.post("/api/coupons", json={
        "code": "taken",
        "name": "Dup",
        "discount_value": 5,
        "end_date": (datetime.utcnow() + timedelta(days=7)).isoformat(),
    }, headers=headers)
    assert resp.status_code == 409


def test_validate_endpoint(client, make_coupon, make_product):
    pid = make_product(price="25.00")
    make_coupon("TENOFF", discount_type="fixed", discount_value="10")
    resp = client.post("/api/coupons/validate", json={
        "code": "TENOFF",
        "items": [{"product_id": pid, "quantity": 2}],
        "email": "someone@example.com",
    })
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["valid"] is True
    assert data["discount"] == 10.0
