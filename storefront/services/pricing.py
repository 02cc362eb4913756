# storefront/services/pricing.py
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..model import ShippingFee
from ..utils.money import D, round_money


def tax_rate(state) -> Decimal:
    rates = current_app.config.get("TAX_RATES") or {}
    key = (state or "").strip().upper()
    return D(rates.get(key, current_app.config.get("DEFAULT_TAX_RATE", 0)))


def calculate_tax(subtotal, state) -> Decimal:
    return round_money(D(subtotal) * tax_rate(state))


def region_fee(region):
    """Active ShippingFee whose name equals the region, case-insensitively."""
    if not region or not region.strip():
        return None
    return (ShippingFee.query
            .filter(func.lower(ShippingFee.name) == region.strip().lower())
            .filter(ShippingFee.is_active.is_(True))
            .first())


def calculate_shipping(subtotal, region, method="standard"):
    """
    Returns (fee, source).
    A configured region fee wins over the method table; each side has its
    own free-shipping threshold.
    """
    subtotal = D(subtotal)
    fee = region_fee(region)
    if fee is not None:
        threshold = fee.free_shipping_threshold
        if threshold is not None and subtotal >= D(threshold):
            return D(0), "region_free"
        return round_money(fee.shipping_fee), "region"

    if subtotal >= D(current_app.config.get("FREE_SHIPPING_THRESHOLD", 50)):
        return D(0), "free_threshold"
    rates = current_app.config.get("SHIPPING_RATES") or {}
    if method not in rates:
        raise ValueError(f"unknown shipping method: {method}")
    return round_money(D(rates[method])), "method"
