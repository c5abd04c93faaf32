"""
WorkFlu - Routers Package

FastAPI route handlers, mounted under /api/v1.

Routers:
- periods: Accounting period lifecycle
- purchases: Purchases and purchase returns (period guard + approval gate)
- capital: Capital entries and supplier advances (period guard + approval gate)
- warehouse: Warehouse operations (period guard through the purchase)
- approvals: Approval requests and decisions
- settings: Central configuration (admin approval gate)
- notifications: Inbox, preferences, templates and scheduler control
- health: Service health
"""

from workflu.routers import (
    approvals,
    capital,
    health,
    notifications,
    periods,
    purchases,
    settings,
    warehouse,
)

__all__ = [
    "approvals",
    "capital",
    "health",
    "notifications",
    "periods",
    "purchases",
    "settings",
    "warehouse",
]
