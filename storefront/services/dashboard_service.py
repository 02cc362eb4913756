# storefront/services/dashboard_service.py
"""
Admin dashboard figures. Revenue only counts orders whose payment went
through (paid or partially refunded); every window is half-open [start, end).
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func

from ..errors import ValidationFailed
from ..extensions import db
from ..model import Order, OrderItem, Payment, Product, User
from ..utils.money import D, money_float, round_money

PERIODS = ("today", "yesterday", "week", "month", "quarter", "year")
REVENUE_STATES = ("paid", "partially_refunded")
LIVE_STATES = ("pending", "confirmed", "processing")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _add_months(d, n):
    years, month = divmod(d.month - 1 + n, 12)
    return d.replace(year=d.year + years, month=month + 1, day=1)


@dataclass
class Period:
    label: str
    start: datetime
    end: datetime
    previous_start: datetime
    previous_end: datetime

    def as_api(self):
        return {
            "label": self.label,
            "current": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "previous": {"start": self.previous_start.isoformat(), "end": self.previous_end.isoformat()},
        }


def period_range(label="month", now=None) -> Period:
    label = (label or "month").strip().lower()
    if label not in PERIODS:
        raise ValidationFailed([{"field": "period", "message": f"must be one of {', '.join(PERIODS)}"}])
    now = now or _utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day = timedelta(days=1)

    if label == "today":
        start, end = today, today + day
        prev = (start - day, start)
    elif label == "yesterday":
        start, end = today - day, today
        prev = (start - day, start)
    elif label == "week":
        start, end = now - timedelta(days=7), now
        prev = (start - timedelta(days=7), start)
    elif label == "month":
        start = today.replace(day=1)
        end = _add_months(start, 1)
        prev = (_add_months(start, -1), start)
    elif label == "quarter":
        start = today.replace(month=3 * ((today.month - 1) // 3) + 1, day=1)
        end = _add_months(start, 3)
        prev = (_add_months(start, -3), start)
    else:
        start = today.replace(month=1, day=1)
        end = start.replace(year=start.year + 1)
        prev = (start.replace(year=start.year - 1), start)
    return Period(label, start, end, prev[0], prev[1])


def growth(current, previous):
    """Percent change; 0 when there is nothing to compare against."""
    current, previous = D(current), D(previous)
    if previous <= 0:
        return 0.0
    return money_float((current - previous) / previous * 100)


# ---- building blocks -------------------------------------------------------

def _in_window(column, start, end):
    return (column >= start) & (column < end)


def revenue_between(start, end):
    total, count, tax, shipping = (
        db.session.query(
            func.coalesce(func.sum(Order.total), 0),
            func.count(Order.id),
            func.coalesce(func.sum(Order.tax), 0),
            func.coalesce(func.sum(Order.shipping), 0),
        )
        .filter(_in_window(Order.created_at, start, end), Order.payment_status.in_(REVENUE_STATES))
        .one()
    )
    total = round_money(D(total))
    return {
        "total_revenue": float(total),
        "paid_orders": count,
        "average_order_value": money_float(total / count) if count else 0.0,
        "tax_collected": money_float(tax),
        "shipping_collected": money_float(shipping),
    }


def orders_between(start, end):
    rows = (
        db.session.query(Order.status, func.count(Order.id))
        .filter(_in_window(Order.created_at, start, end))
        .group_by(Order.status)
        .all()
    )
    by_status = dict(rows)
    return {"total_orders": sum(by_status.values()), "by_status": by_status}


def new_customers_between(start, end):
    return (
        db.session.query(func.count(User.id))
        .filter(User.role == "user", _in_window(User.created_at, start, end))
        .scalar()
    )


def product_counts():
    total = db.session.query(func.count(Product.id)).scalar()
    active = db.session.query(func.count(Product.id)).filter(Product.status == "active").scalar()
    tracked = Product.query.filter(Product.track_quantity.is_(True))
    return {
        "total_products": total,
        "active_products": active,
        "out_of_stock": tracked.filter(Product.quantity <= 0).count(),
        "low_stock": tracked.filter(Product.quantity > 0, Product.quantity <= Product.low_stock_alert).count(),
    }


def low_stock_products(limit=10):
    rows = (
        Product.query
        .filter(Product.track_quantity.is_(True), Product.quantity <= Product.low_stock_alert)
        .order_by(Product.quantity.asc(), Product.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {"id": p.id, "sku": p.sku, "name": p.name, "quantity": p.quantity, "low_stock_alert": p.low_stock_alert}
        for p in rows
    ]


def recent_orders(limit=10, statuses=None):
    q = Order.query
    if statuses:
        q = q.filter(Order.status.in_(statuses))
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()
    return [
        {
            "id": o.id,
            "order_number": o.order_number,
            "customer": o.customer_name,
            "email": o.customer_email,
            "total": money_float(o.total),
            "status": o.status,
            "payment_status": o.payment_status,
            "created_at": o.created_at.isoformat() if o.created_at else None,
        }
        for o in rows
    ]


def top_products(start, end, limit=5):
    units = func.sum(OrderItem.quantity)
    rows = (
        db.session.query(OrderItem.product_id, OrderItem.name, units, func.sum(OrderItem.subtotal))
        .join(Order, Order.id == OrderItem.order_id)
        .filter(_in_window(Order.created_at, start, end), Order.status != "cancelled")
        .group_by(OrderItem.product_id, OrderItem.name)
        .order_by(units.desc())
        .limit(limit)
        .all()
    )
    return [
        {"product_id": pid, "name": name, "units_sold": int(qty), "revenue": money_float(revenue)}
        for pid, name, qty, revenue in rows
    ]


def _paid_orders(start, end):
    return (
        db.session.query(Order.created_at, Order.total)
        .filter(_in_window(Order.created_at, start, end), Order.payment_status.in_(REVENUE_STATES))
        .all()
    )


def sales_by_day(start, end):
    buckets = defaultdict(lambda: {"orders": 0, "revenue": D(0)})
    for created_at, total in _paid_orders(start, end):
        bucket = buckets[created_at.date().isoformat()]
        bucket["orders"] += 1
        bucket["revenue"] += D(total)
    return [
        {"date": day, "orders": b["orders"], "revenue": money_float(b["revenue"])}
        for day, b in sorted(buckets.items())
    ]


def sales_by_hour(start, end):
    hours = [{"hour": h, "orders": 0, "revenue": D(0)} for h in range(24)]
    for created_at, total in _paid_orders(start, end):
        hours[created_at.hour]["orders"] += 1
        hours[created_at.hour]["revenue"] += D(total)
    return [{**h, "revenue": money_float(h["revenue"])} for h in hours]


def payments_by_method(start, end):
    rows = (
        db.session.query(Payment.payment_method, Payment.status, func.count(Payment.id),
                         func.coalesce(func.sum(Payment.amount), 0))
        .filter(_in_window(Payment.created_at, start, end))
        .group_by(Payment.payment_method, Payment.status)
        .all()
    )
    out = {}
    for method, status, count, amount in rows:
        out.setdefault(method, {})[status] = {"count": count, "amount": money_float(amount)}
    return out


# ---- views -----------------------------------------------------------------

def overview(label="month", now=None):
    period = period_range(label, now)
    revenue = revenue_between(period.start, period.end)
    previous_revenue = revenue_between(period.previous_start, period.previous_end)
    orders = orders_between(period.start, period.end)
    previous_orders = orders_between(period.previous_start, period.previous_end)
    customers = new_customers_between(period.start, period.end)
    previous_customers = new_customers_between(period.previous_start, period.previous_end)

    return {
        "period": period.as_api(),
        "kpis": {
            "revenue": {**revenue, "growth": growth(revenue["total_revenue"], previous_revenue["total_revenue"])},
            "orders": {**orders, "growth": growth(orders["total_orders"], previous_orders["total_orders"])},
            "customers": {"new_customers": customers, "growth": growth(customers, previous_customers)},
            "products": product_counts(),
            "payments": payments_by_method(period.start, period.end),
        },
        "charts": {"sales": sales_by_day(period.start, period.end)},
        "recent_activity": {
            "orders": recent_orders(10),
            "top_products": top_products(period.start, period.end, 5),
            "low_stock_products": low_stock_products(10),
        },
    }


def realtime(now=None):
    now = now or _utcnow()
    today = period_range("today", now)
    revenue = revenue_between(today.start, today.end)
    yesterday = revenue_between(today.previous_start, today.previous_end)
    orders = orders_between(today.start, today.end)["total_orders"]
    yesterday_orders = orders_between(today.previous_start, today.previous_end)["total_orders"]
    hourly = sales_by_hour(today.start, today.end)
    peak = max(hourly, key=lambda h: (h["revenue"], -h["hour"]))

    return {
        "timestamp": now.isoformat(),
        "today": {
            "revenue": revenue["total_revenue"],
            "orders": orders,
            "customers": new_customers_between(today.start, today.end),
        },
        "growth": {
            "revenue": growth(revenue["total_revenue"], yesterday["total_revenue"]),
            "orders": growth(orders, yesterday_orders),
        },
        "hourly": hourly,
        "current_hour": now.hour,
        "peak_hour": peak["hour"] if peak["revenue"] > 0 else None,
        "live_orders": recent_orders(5, statuses=LIVE_STATES),
    }


def customer_insights(label="month", now=None):
    period = period_range(label, now)
    spend = func.sum(Order.total)
    per_customer = (
        db.session.query(Order.customer_email, func.count(Order.id), spend)
        .filter(_in_window(Order.created_at, period.start, period.end),
                Order.payment_status.in_(REVENUE_STATES))
        .group_by(Order.customer_email)
        .order_by(spend.desc())
        .all()
    )
    buyers = len(per_customer)
    repeat = sum(1 for _, count, _ in per_customer if count > 1)
    total = sum((D(s) for _, _, s in per_customer), D(0))

    regions = defaultdict(int)
    for (address,) in (
        db.session.query(Order.shipping_address)
        .filter(_in_window(Order.created_at, period.start, period.end), Order.status != "cancelled")
        .all()
    ):
        regions[((address or {}).get("state") or "unknown").upper()] += 1

    return {
        "period": period.as_api(),
        "new_customers": new_customers_between(period.start, period.end),
        "buying_customers": buyers,
        "repeat_customers": repeat,
        "repeat_rate": money_float(D(repeat) / buyers * 100) if buyers else 0.0,
        "average_lifetime_value": money_float(total / buyers) if buyers else 0.0,
        "top_customers": [
            {"email": email, "orders": count, "spent": money_float(s)}
            for email, count, s in per_customer[:5]
        ],
        "geographic": dict(sorted(regions.items(), key=lambda kv: (-kv[1], kv[0]))),
    }


def statistics():
    from .order_service import order_statistics
    from .payment_service import payment_statistics
    from .transaction_service import summary

    return {
        "orders": order_statistics(),
        "payments": payment_statistics(),
        "transactions": summary(),
        "products": product_counts(),
        "customers": db.session.query(func.count(User.id)).filter(User.role == "user").scalar(),
    }
