"""Missed-day reconciliation package."""

from goalstake.reconciliation.engine import ReconciliationEngine

__all__ = ["ReconciliationEngine"]
