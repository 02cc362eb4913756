# storefront/errors.py
import logging

from flask import jsonify
from pydantic import ValidationError as SchemaValidationError
from werkzeug.exceptions import HTTPException

from .utils.api import api_error

log = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 400

    def __init__(self, message, data=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.data = data or {}
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ApiError):
    status_code = 400

    def __init__(self, errors, message="Validation failed"):
        super().__init__(message, data={"errors": errors})
        self.errors = errors


class NotFound(ApiError):
    status_code = 404

    def __init__(self, what="Resource"):
        super().__init__(f"{what} not found")


class BusinessRuleError(ApiError):
    status_code = 400


class Conflict(ApiError):
    status_code = 409


class InsufficientStock(Conflict):
    def __init__(self, product_name, available, requested):
        super().__init__(
            f"Insufficient stock for {product_name}",
            data={"available": available, "requested": requested},
        )


def schema_errors(exc: SchemaValidationError):
    """Flatten a pydantic error into `[{field, message}]`."""
    out = []
    for e in exc.errors():
        field = ".".join(str(p) for p in e.get("loc", ()))
        out.append({"field": field, "message": e.get("msg")})
    return out


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(e):
        r = jsonify(api_error(e.message, e.data))
        r.status_code = e.status_code
        return r

    @app.errorhandler(SchemaValidationError)
    def handle_schema_error(e):
        r = jsonify(api_error("Validation failed", {"errors": schema_errors(e)}))
        r.status_code = 400
        return r

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        r = jsonify(api_error(str(e)))
        r.status_code = 422
        return r

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        r = jsonify(api_error(e.description or e.name))
        r.status_code = e.code or 500
        return r

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        log.exception("unhandled error")
        r = jsonify(api_error("Internal server error"))
        r.status_code = 500
        return r
