# storefront/dashboard/routes.py
from flask import request

from . import bp
from ..services import dashboard_service
from ..utils.api import ok
from ..utils.decorators import role_at_least


@bp.get("")
@role_at_least("manager")
def overview():
    return ok("Dashboard overview", dashboard_service.overview(request.args.get("period", "month")))


@bp.get("/statistics")
@role_at_least("manager")
def statistics():
    return ok("Dashboard statistics", dashboard_service.statistics())


@bp.get("/realtime")
@role_at_least("manager")
def realtime():
    return ok("Real-time data", dashboard_service.realtime())


@bp.get("/customer-insights")
@role_at_least("manager")
def customer_insights():
    return ok("Customer insights", dashboard_service.customer_insights(request.args.get("period", "month")))
