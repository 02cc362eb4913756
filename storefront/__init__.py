import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, jwt, cors, migrate, mail, notifier


def create_app(config_object=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    config_object.init_app(app)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": "*"}})
    migrate.init_app(app, db)
    mail.init_app(app)
    notifier.init_app(app)

    # Injected services
    from .services.gateway import SimulatedGateway
    from .services.settings_service import PaymentSettingsService, SettingsStore
    app.extensions["payment_gateway"] = SimulatedGateway(success_rate=app.config["GATEWAY_SUCCESS_RATE"])
    app.extensions["payment_settings"] = PaymentSettingsService(max_retries=app.config["SETTINGS_MAX_RETRIES"])
    app.extensions["settings_store"] = SettingsStore(max_retries=app.config["SETTINGS_MAX_RETRIES"])

    from .errors import register_error_handlers
    register_error_handlers(app)

    # Register blueprints
    from .auth import bp as auth_bp; app.register_blueprint(auth_bp)
    from .product import bp as product_bp; app.register_blueprint(product_bp)
    from .product import packages_bp; app.register_blueprint(packages_bp)
    from .category import bp as category_bp; app.register_blueprint(category_bp)
    from .banner import bp as banner_bp; app.register_blueprint(banner_bp)
    from .review import bp as review_bp; app.register_blueprint(review_bp)
    from .cart import bp as cart_bp; app.register_blueprint(cart_bp)
    from .coupon import bp as coupon_bp; app.register_blueprint(coupon_bp)
    from .order import bp as order_bp; app.register_blueprint(order_bp)
    from .order import admin_bp as admin_order_bp; app.register_blueprint(admin_order_bp)
    from .payment import bp as payment_bp; app.register_blueprint(payment_bp)
    from .payment import admin_bp as admin_payment_bp; app.register_blueprint(admin_payment_bp)
    from .transaction import bp as transaction_bp; app.register_blueprint(transaction_bp)
    from .transaction import admin_bp as admin_transaction_bp; app.register_blueprint(admin_transaction_bp)
    from .settings import bp as settings_bp; app.register_blueprint(settings_bp)
    from .settings import shipping_bp; app.register_blueprint(shipping_bp)
    from .wishlist import bp as wishlist_bp; app.register_blueprint(wishlist_bp)
    from .dashboard import bp as dashboard_bp; app.register_blueprint(dashboard_bp)

    from .cli import register_cli
    register_cli(app)

    @app.get("/")
    def health():
        return jsonify(ok=True, msg="API running")

    app.logger.debug("blueprints: %s", sorted(app.blueprints.keys()))

    with app.app_context():
        from . import model  # noqa: F401
        db.create_all()
        app.extensions["payment_settings"].bootstrap()

    return app
