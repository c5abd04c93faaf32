"""
WorkFlu - Request Guards

Route dependencies that run before financial operations: the accounting
period guard and the approval gate.
"""

from workflu.middleware.approval_gate import (
    ApprovalClearance,
    require_admin_approval,
    require_approval,
)
from workflu.middleware.period_guard import (
    capital_entry_period_guard,
    generic_period_guard,
    period_guard,
    purchase_period_guard,
    strict_period_guard,
    warehouse_period_guard,
)

__all__ = [
    "ApprovalClearance",
    "require_approval",
    "require_admin_approval",
    "period_guard",
    "purchase_period_guard",
    "capital_entry_period_guard",
    "warehouse_period_guard",
    "generic_period_guard",
    "strict_period_guard",
]
