"""Blueprint registration."""

from routes.auth import auth_bp
from routes.catalog import catalog_bp
from routes.cron import cron_bp
from routes.customers import customers_bp
from routes.expenses import expenses_bp
from routes.invoices import invoices_bp
from routes.mikrotik import mikrotik_bp
from routes.payments import payments_bp
from routes.portal import portal_bp
from routes.reports import reports_bp

ALL_BLUEPRINTS = [
    auth_bp,
    catalog_bp,
    customers_bp,
    invoices_bp,
    payments_bp,
    expenses_bp,
    reports_bp,
    portal_bp,
    mikrotik_bp,
    cron_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
