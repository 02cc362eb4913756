# storefront/services/settings_service.py
"""
Configuration documents with an atomic read-modify-write contract.

Both PaymentSettings and Setting rows carry a SQLAlchemy version counter.
`update()` reloads the row, applies the caller's mutation to a fresh copy,
re-validates and commits; a concurrent writer makes the UPDATE match zero
rows (StaleDataError), in which case the whole cycle is retried a bounded
number of times before a Conflict is raised.
"""
from __future__ import annotations

import copy
import logging

from flask import current_app
from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import BusinessRuleError, Conflict, NotFound
from ..extensions import db
from ..model import PaymentSettings, Setting
from ..schemas import PaymentMethod, PaymentSettingsDocument
from ..utils.money import D, round_money

log = logging.getLogger(__name__)

_method_adapter = TypeAdapter(PaymentMethod)
IMMUTABLE_METHOD_FIELDS = ("name", "kind")


def calculate_fee(method, amount):
    amount = D(amount)
    if method.fees.type == "percentage":
        return round_money(amount * D(method.fees.value) / D(100))
    return round_money(D(method.fees.value))


def _atomic_update(load_row, mutate, max_retries):
    for attempt in range(1, max_retries + 1):
        row = load_row()
        try:
            result = mutate(row)
            db.session.commit()
            return result
        except StaleDataError:
            db.session.rollback()
            log.warning("concurrent write on %s, retry %d/%d", row.__tablename__, attempt, max_retries)
        except Exception:
            db.session.rollback()
            raise
    raise Conflict("Settings were modified concurrently, please retry")


class PaymentSettingsService:
    def __init__(self, max_retries=3):
        self.max_retries = max_retries

    # ---- storage -------------------------------------------------------------
    def _default_row(self) -> PaymentSettings:
        methods = copy.deepcopy(current_app.config.get("DEFAULT_PAYMENT_METHODS") or [])
        doc = PaymentSettingsDocument.model_validate({"methods": methods})
        enabled = [m.name for m in doc.ordered() if m.enabled]
        doc.default_method = enabled[0] if enabled else None
        return PaymentSettings(document=doc.model_dump(mode="json"))

    def bootstrap(self):
        """Write the default document once, at app start."""
        if PaymentSettings.query.first() is not None:
            return
        db.session.add(self._default_row())
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

    def _row(self) -> PaymentSettings:
        row = PaymentSettings.query.order_by(PaymentSettings.id.asc()).first()
        if row is not None:
            db.session.refresh(row)
            return row
        # table emptied after start; the caller's transaction owns the commit
        row = self._default_row()
        db.session.add(row)
        db.session.flush()
        return row

    def load(self) -> PaymentSettingsDocument:
        return PaymentSettingsDocument.model_validate(self._row().document)

    def update(self, mutate, updated_by=None):
        """Apply `mutate(doc)` atomically; returns whatever `mutate` returns."""
        def apply(row):
            doc = PaymentSettingsDocument.model_validate(copy.deepcopy(row.document))
            result = mutate(doc)
            checked = PaymentSettingsDocument.model_validate(doc.model_dump())
            row.document = checked.model_dump(mode="json")
            row.updated_by = updated_by
            db.session.flush()
            return result
        return _atomic_update(self._row, apply, self.max_retries)

    # ---- queries -------------------------------------------------------------
    def list_methods(self):
        return self.load().ordered()

    def get_method(self, name):
        method = self.load().get(name)
        if method is None:
            raise NotFound("Payment method")
        return method

    def available_methods(self, amount=None):
        out = []
        for m in self.load().ordered():
            if not m.enabled:
                continue
            if amount is not None:
                if D(amount) < D(m.min_amount):
                    continue
                if m.max_amount is not None and D(amount) > D(m.max_amount):
                    continue
                if m.kind == "cod" and m.max_order_amount is not None and D(amount) > D(m.max_order_amount):
                    continue
            out.append(m)
        return out

    def validate_method(self, name, amount, city=None):
        doc = self.load()
        method = doc.get(name)
        if method is None or not method.enabled:
            raise BusinessRuleError(f"Payment method '{name}' is not available")
        amount = D(amount)
        if amount < D(doc.minimum_order_amount):
            raise BusinessRuleError(
                f"Minimum order amount is ${D(doc.minimum_order_amount):.2f}",
                data={"minimum_order_amount": doc.minimum_order_amount},
            )
        if amount < D(method.min_amount):
            raise BusinessRuleError(f"Minimum amount for {method.display_name} is ${D(method.min_amount):.2f}")
        if method.max_amount is not None and amount > D(method.max_amount):
            raise BusinessRuleError(f"Maximum amount for {method.display_name} is ${D(method.max_amount):.2f}")
        if method.kind == "cod":
            if method.max_order_amount is not None and amount > D(method.max_order_amount):
                raise BusinessRuleError(
                    f"Cash on delivery is not available for orders above ${D(method.max_order_amount):.2f}"
                )
            if method.allowed_cities and city:
                allowed = {c.strip().lower() for c in method.allowed_cities}
                if city.strip().lower() not in allowed:
                    raise BusinessRuleError(f"Cash on delivery is not available in {city}")
        return method

    # ---- mutations -----------------------------------------------------------
    def create_method(self, payload, updated_by=None):
        method = _method_adapter.validate_python(payload)

        def mutate(doc):
            if doc.get(method.name) is not None:
                raise Conflict(f"Payment method '{method.name}' already exists")
            if "order" not in payload:
                method.order = len(doc.methods)
            doc.methods.append(method)
            if doc.default_method is None and method.enabled:
                doc.default_method = method.name
            return method
        return self.update(mutate, updated_by)

    def update_method(self, name, payload, updated_by=None):
        def mutate(doc):
            current = doc.get(name)
            if current is None:
                raise NotFound("Payment method")
            for field in IMMUTABLE_METHOD_FIELDS:
                if field in payload and payload[field] != getattr(current, field):
                    raise BusinessRuleError(f"Payment method {field} cannot be changed")
            merged = {**current.model_dump(), **payload}
            updated = _method_adapter.validate_python(merged)
            if doc.default_method == name and not updated.enabled:
                raise BusinessRuleError("Cannot disable the default payment method")
            doc.methods[doc.methods.index(current)] = updated
            return updated
        return self.update(mutate, updated_by)

    def delete_method(self, name, updated_by=None):
        def mutate(doc):
            current = doc.get(name)
            if current is None:
                raise NotFound("Payment method")
            if doc.default_method == name:
                raise BusinessRuleError("Cannot delete the default payment method")
            doc.methods.remove(current)
            return current
        return self.update(mutate, updated_by)

    def toggle_method(self, name, updated_by=None):
        def mutate(doc):
            current = doc.get(name)
            if current is None:
                raise NotFound("Payment method")
            if doc.default_method == name and current.enabled:
                raise BusinessRuleError("Cannot disable the default payment method")
            current.enabled = not current.enabled
            return current
        return self.update(mutate, updated_by)

    def set_default(self, name, updated_by=None):
        def mutate(doc):
            current = doc.get(name)
            if current is None:
                raise NotFound("Payment method")
            if not current.enabled:
                raise BusinessRuleError("Default payment method must be enabled")
            doc.default_method = name
            return current
        return self.update(mutate, updated_by)

    def reorder(self, names, updated_by=None):
        def mutate(doc):
            known = {m.name for m in doc.methods}
            unknown = [n for n in names if n not in known]
            if unknown:
                raise BusinessRuleError("Unknown payment methods", data={"unknown": unknown})
            rank = {n: i for i, n in enumerate(names)}
            tail = len(names)
            for m in doc.ordered():
                if m.name in rank:
                    m.order = rank[m.name]
                else:
                    m.order = tail
                    tail += 1
            return doc.ordered()
        return self.update(mutate, updated_by)

    def update_general(self, minimum_order_amount, updated_by=None):
        def mutate(doc):
            doc.minimum_order_amount = minimum_order_amount
            return doc
        return self.update(mutate, updated_by)


class SettingsStore:
    """Keyed configuration blobs sharing the same optimistic update contract."""

    def __init__(self, max_retries=3):
        self.max_retries = max_retries

    def all(self):
        return {s.key: s.data or {} for s in Setting.query.order_by(Setting.key.asc()).all()}

    def get(self, key, default=None):
        row = Setting.query.filter_by(key=key).first()
        if row is None:
            return {} if default is None else default
        return row.data or {}

    def _row(self, key):
        row = Setting.query.filter_by(key=key).first()
        if row is not None:
            db.session.refresh(row)
            return row
        row = Setting(key=key, data={})
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            row = Setting.query.filter_by(key=key).first()
        return row

    def update(self, key, changes: dict, updated_by=None):
        def apply(row):
            data = copy.deepcopy(row.data or {})
            data.update(changes)
            row.data = data
            row.updated_by = updated_by
            db.session.flush()
            return row
        return _atomic_update(lambda: self._row(key), apply, self.max_retries)


def get_payment_settings() -> PaymentSettingsService:
    return current_app.extensions["payment_settings"]


def get_settings_store() -> SettingsStore:
    return current_app.extensions["settings_store"]


def admin_notification_email():
    configured = get_settings_store().get("notification").get("admin_email")
    return configured or current_app.config.get("ADMIN_EMAIL")
