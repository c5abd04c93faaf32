"""
WorkFlu - Period-guarded, approval-gated operations and notification delivery.
"""

__version__ = "0.1.0"
