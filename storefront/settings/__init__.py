from flask import Blueprint

bp = Blueprint("settings", __name__, url_prefix="/api/admin/settings")
shipping_bp = Blueprint("shipping", __name__, url_prefix="/api/shipping-fees")

from . import routes  # noqa: E402,F401
