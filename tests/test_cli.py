from storefront.model import Product, ShippingFee, User


def test_create_admin(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["create-admin", "--email", "Boss@Example.com", "--password", "pw123456",
                                 "--first-name", "Bo"])
    assert "Admin created" in result.output

    again = runner.invoke(args=["create-admin", "--email", "boss@example.com", "--password", "x",
                                "--first-name", "Bo"])
    assert "Email already exists" in again.output
    with app.app_context():
        assert User.query.filter_by(email="boss@example.com").one().role == "admin"


def test_seed_is_repeatable(app):
    runner = app.test_cli_runner()
    first = runner.invoke(args=["seed-sample-data"])
    second = runner.invoke(args=["seed-sample-data"])

    assert "10 sample products added" in first.output
    assert "0 sample products added" in second.output
    with app.app_context():
        assert Product.query.count() == 10
        assert ShippingFee.query.count() == 2


def test_export_orders(app, tmp_path):
    path = tmp_path / "orders.xlsx"
    result = app.test_cli_runner().invoke(args=["export-orders", "--path", str(path)])
    assert "0 orders exported" in result.output
    assert path.exists()
