from flask import Blueprint

bp = Blueprint("banner", __name__, url_prefix="/api/banners")

from . import routes  # noqa: E402,F401
