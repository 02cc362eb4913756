from flask import Blueprint

bp = Blueprint("transaction", __name__, url_prefix="/api/transactions")
admin_bp = Blueprint("admin_transaction", __name__, url_prefix="/api/admin/transactions")

from . import routes  # noqa: E402,F401
