# --- storefront/utils/api.py ---
from datetime import datetime, timezone

from flask import jsonify


def _api_time_human():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def api_ok(message, data=None):
    return {
        "status": True,
        "message": message,
        "data": {
            **(data or {}),
            "API_TIME_HUMAN": _api_time_human()
        }
    }


def api_error(message, data=None):
    return {
        "status": False,
        "message": message,
        "data": {
            **(data or {}),
            "API_TIME_HUMAN": _api_time_human()
        }
    }


# ---- standard API response format ------------------------------------------
def ok(msg, data=None, status=200):
    r = jsonify(api_ok(msg, data)); r.status_code = status; return r


def err(msg, status=400, data=None):
    r = jsonify(api_error(msg, data)); r.status_code = status; return r


def paginate(query, page, per_page, serializer=None):
    """Paginate a Flask-SQLAlchemy query into the `{meta, items}` shape used by list endpoints."""
    try:
        page = max(int(page or 1), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        per_page = min(max(int(per_page or 20), 1), 100)
    except (TypeError, ValueError):
        per_page = 20
    paged = query.paginate(page=page, per_page=per_page, error_out=False)
    items = paged.items
    if serializer is not None:
        items = [serializer(i) for i in items]
    return {
        "meta": {
            "page": paged.page,
            "pages": paged.pages or 1,
            "per_page": per_page,
            "total": paged.total,
        },
        "items": items,
    }
