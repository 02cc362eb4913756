from storefront.extensions import db
from storefront.model import Product


# ---- auth --------------------------------------------------------------------------

def test_first_account_is_admin(client):
    first = client.post("/api/auth/register", json={"email": "Owner@Example.com", "password": "secret123",
                                                    "first_name": "Olive"})
    second = client.post("/api/auth/register", json={"email": "pat@example.com", "password": "secret123",
                                                     "first_name": "Pat", "role": "admin"})

    assert first.status_code == 201
    assert first.get_json()["data"]["user"]["role"] == "admin"
    assert first.get_json()["data"]["user"]["email"] == "owner@example.com"
    assert second.get_json()["data"]["user"]["role"] == "user"


def test_register_validation_and_duplicates(client, customer):
    short = client.post("/api/auth/register", json={"email": "x@example.com", "password": "123",
                                                    "first_name": "X"})
    dup = client.post("/api/auth/register", json={"email": "jane@example.com", "password": "secret123",
                                                  "first_name": "Jane"})
    assert short.status_code == 400
    assert dup.status_code == 409


def test_login_and_refresh_rotation(client, customer):
    login = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "secret123"})
    assert login.status_code == 200
    refresh_token = login.get_json()["data"]["refresh_token"]

    rotated = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
    reused = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})

    assert rotated.status_code == 200
    assert rotated.get_json()["data"]["refresh_token"] != refresh_token
    assert reused.status_code == 401


def test_wrong_password(client, customer):
    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "nope"})
    assert resp.status_code == 401


def test_profile(client, customer):
    _, headers = customer
    resp = client.put("/api/auth/me", json={"phone": "555-0100"}, headers=headers)
    assert resp.status_code == 200
    assert client.get("/api/auth/me", headers=headers).get_json()["data"]["user"]["phone"] == "555-0100"


# ---- categories and products ------------------------------------------------------

def test_category_names_are_unique(client, admin):
    _, headers = admin
    assert client.post("/api/categories", json={"name": "Shirts"}, headers=headers).status_code == 201
    assert client.post("/api/categories", json={"name": "shirts"}, headers=headers).status_code == 409


def test_category_with_products_cannot_be_deleted(client, admin):
    _, headers = admin
    cid = client.post("/api/categories", json={"name": "Hats"}, headers=headers).get_json()["data"]["category"]["id"]
    client.post("/api/products", json={"sku": "hat-1", "name": "Hat", "price": 10, "category_id": cid},
                headers=headers)
    assert client.delete(f"/api/categories/{cid}", headers=headers).status_code == 409


def test_create_and_fetch_product(client, admin):
    _, headers = admin
    resp = client.post("/api/products", json={
        "sku": "mug-01", "name": "Blue Mug", "price": 12.5, "inventory": {"quantity": 7},
    }, headers=headers)

    assert resp.status_code == 201
    product = resp.get_json()["data"]
    assert product["sku"] == "MUG-01"
    assert product["slug"] == "blue-mug"
    assert product["inventory"]["quantity"] == 7

    by_slug = client.get("/api/products/blue-mug")
    assert by_slug.get_json()["data"]["id"] == product["id"]


def test_duplicate_sku(client, admin):
    _, headers = admin
    client.post("/api/products", json={"sku": "DUP", "name": "One", "price": 1}, headers=headers)
    resp = client.post("/api/products", json={"sku": "dup", "name": "Two", "price": 1}, headers=headers)
    assert resp.status_code == 409


def test_product_listing_filters(client, make_product):
    make_product(price="5.00", name="Cheap")
    make_product(price="50.00", name="Pricey")
    make_product(price="7.00", name="Hidden", status="draft")
    make_product(price="8.00", name="Gone", quantity=0)

    data = client.get("/api/products?max_price=10&in_stock=true").get_json()["data"]

    assert [p["name"] for p in data["items"]] == ["Cheap"]


def test_stock_adjustment_never_goes_negative(app, client, admin, make_product):
    _, headers = admin
    pid = make_product(quantity=3)

    assert client.patch(f"/api/products/{pid}/stock", json={"adjustment": -5}, headers=headers).status_code == 400
    assert client.patch(f"/api/products/{pid}/stock", json={"adjustment": 4}, headers=headers).status_code == 200
    with app.app_context():
        assert db.session.get(Product, pid).quantity == 7


def test_package_savings_and_availability(client, admin, make_product):
    _, headers = admin
    tee = make_product(price="20.00", quantity=10)
    cap = make_product(price="15.00", quantity=0)

    resp = client.post("/api/products", json={
        "sku": "BUNDLE", "name": "Starter Bundle", "price": 45, "product_type": "package",
        "inventory": {"quantity": 5},
        "package_items": [{"product_id": tee, "quantity": 2}, {"product_id": cap, "quantity": 1}],
    }, headers=headers)

    assert resp.status_code == 201
    package = resp.get_json()["data"]["package"]
    assert package["original_total_price"] == 55.0
    assert package["savings"] == 10.0
    assert package["savings_percentage"] == 18

    pid = resp.get_json()["data"]["id"]
    detail = client.get(f"/api/packages/{pid}").get_json()["data"]
    assert detail["all_components_available"] is False
    assert client.delete(f"/api/products/{tee}", headers=headers).status_code == 409


def test_product_export(client, admin, make_product):
    _, headers = admin
    make_product()
    resp = client.get("/api/products/export", headers=headers)
    assert resp.status_code == 200
    assert resp.data[:2] == b"PK"


def test_manager_cannot_delete_products(client, make_user, make_product):
    _, headers = make_user("mgr@example.com", role="manager")
    pid = make_product()
    assert client.delete(f"/api/products/{pid}", headers=headers).status_code == 403


# ---- reviews --------------------------------------------------------------------

def test_approved_review_updates_rating(client, customer, admin, make_product):
    _, headers = customer
    _, admin_headers = admin
    pid = make_product()

    created = client.post(f"/api/reviews/product/{pid}", json={"rating": 4, "comment": "Nice"}, headers=headers)
    assert created.status_code == 201
    rid = created.get_json()["data"]["review"]["id"]
    assert client.get(f"/api/reviews/product/{pid}").get_json()["data"]["items"] == []

    client.patch(f"/api/reviews/{rid}/approve", headers=admin_headers)

    product = client.get(f"/api/products/{pid}").get_json()["data"]
    assert product["rating"] == {"average": 4.0, "count": 1}
    again = client.post(f"/api/reviews/product/{pid}", json={"rating": 5}, headers=headers)
    assert again.status_code == 409


# ---- banners --------------------------------------------------------------------

def test_banners_respect_window_and_toggle(client, admin):
    _, headers = admin
    live = client.post("/api/banners", json={"title": "Sale", "image_url": "/img/sale.png", "sort_order": 2},
                       headers=headers)
    client.post("/api/banners", json={"title": "Later", "image_url": "/img/later.png",
                                      "start_date": "2999-01-01T00:00:00Z"}, headers=headers)
    bad = client.post("/api/banners", json={"title": "No image"}, headers=headers)

    assert live.status_code == 201
    assert bad.status_code == 400
    assert [b["title"] for b in client.get("/api/banners").get_json()["data"]["items"]] == ["Sale"]

    bid = live.get_json()["data"]["banner"]["id"]
    client.patch(f"/api/banners/{bid}/toggle", headers=headers)
    assert client.get("/api/banners").get_json()["data"]["items"] == []
    assert len(client.get("/api/banners/all", headers=headers).get_json()["data"]["items"]) == 2


def test_change_password(client, customer):
    _, headers = customer
    login = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "secret123"})
    old_refresh = login.get_json()["data"]["refresh_token"]

    wrong = client.put("/api/auth/me/password", json={"current_password": "nope", "new_password": "newpass1"},
                       headers=headers)
    short = client.put("/api/auth/me/password", json={"current_password": "secret123", "new_password": "1"},
                       headers=headers)
    changed = client.put("/api/auth/me/password", json={"current_password": "secret123",
                                                        "new_password": "newpass1"}, headers=headers)

    assert wrong.status_code == 400
    assert wrong.get_json()["message"] == "Current password is incorrect"
    assert short.status_code == 400
    assert changed.status_code == 200
    assert client.post("/api/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "jane@example.com",
                                                "password": "newpass1"}).status_code == 200


def test_profile_update_ignores_password(client, customer):
    _, headers = customer
    client.put("/api/auth/me", json={"password": "hijacked"}, headers=headers)
    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "secret123"})
    assert resp.status_code == 200
