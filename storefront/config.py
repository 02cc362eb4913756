import os
from datetime import timedelta


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    MAX_CONTENT_LENGTH = 5 * 1024 * 1024
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # JWT
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1)
    JWT_REFRESH_TOKEN_EXPIRES = timedelta(days=30)

    # money / pricing
    CURRENCY = os.environ.get("CURRENCY", "USD")
    CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "$")
    TAX_RATES = {"CA": 0.0825, "NY": 0.08875, "TX": 0.0825, "FL": 0.07}
    DEFAULT_TAX_RATE = 0.06
    SHIPPING_RATES = {"standard": 4.99, "express": 9.99, "overnight": 19.99}
    FREE_SHIPPING_THRESHOLD = 50
    DELIVERY_DAYS = {"standard": 7, "express": 3, "overnight": 1}
    RETURN_WINDOW_DAYS = 30
    COD_TOLERANCE = 1

    # payments
    GATEWAY_SUCCESS_RATE = _env_float("GATEWAY_SUCCESS_RATE", 0.95)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")
    DEFAULT_PAYMENT_METHODS = [
        {
            "kind": "cod",
            "name": "cod",
            "display_name": "Cash on Delivery",
            "description": "Pay with cash when your order arrives",
            "enabled": True,
            "order": 0,
        },
        {
            "kind": "card",
            "name": "card",
            "display_name": "Credit / Debit Card",
            "description": "Visa, Mastercard, American Express",
            "enabled": True,
            "order": 1,
        },
    ]
    SETTINGS_MAX_RETRIES = 3

    # mail / notifications
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 25))
    MAIL_USE_TLS = os.environ.get("MAIL_USE_TLS", "false").lower() == "true"
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "no-reply@storefront.local")
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
    NOTIFY_SYNC = False
    NOTIFY_MAX_WORKERS = 2
    NOTIFY_MAX_RETRIES = 3
    NOTIFY_BACKOFF_SECONDS = 2.0

    @staticmethod
    def init_app(app):
        if app.config.get("SQLALCHEMY_DATABASE_URI"):
            return
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        else:
            app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    JWT_SECRET_KEY = "test-secret-key-with-enough-length-for-hs256"
    GATEWAY_SUCCESS_RATE = 1.0
    PAYMENT_WEBHOOK_SECRET = "whsec_test"
    ADMIN_EMAIL = "admin@storefront.test"
    MAIL_SUPPRESS_SEND = True
    NOTIFY_SYNC = True
    NOTIFY_MAX_RETRIES = 1
    NOTIFY_BACKOFF_SECONDS = 0
    LOG_LEVEL = "WARNING"
