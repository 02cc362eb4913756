from flask import Blueprint

bp = Blueprint("product", __name__, url_prefix="/api/products")
packages_bp = Blueprint("packages", __name__, url_prefix="/api/packages")

from . import routes  # noqa: E402,F401
