from flask import Blueprint

bp = Blueprint("payment", __name__, url_prefix="/api/payments")
admin_bp = Blueprint("admin_payment", __name__, url_prefix="/api/admin/payments")

from . import routes  # noqa: E402,F401
