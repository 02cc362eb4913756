# storefront/utils/money.py

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

Money = Decimal
ZERO = Decimal("0")


def D(x) -> Money:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x if x is not None and x != "" else "0"))
    except InvalidOperation:
        raise ValueError(f"invalid amount: {x!r}")


def round_money(x: Money) -> Money:
    return D(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def money_float(x) -> float:
    return float(round_money(x))


def format_money(x, symbol="$") -> str:
    return f"{symbol}{round_money(x):,.2f}"
