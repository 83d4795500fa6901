"""
Goalstake - Source Package

Completion ledger and reconciliation engine for money-backed personal goals.
A user commits money against a recurring goal and earns it back one verified
completion at a time.

DESIGN PRINCIPLES:
1. One completion record per goal per calendar day
2. Missed days are derived, never guessed
3. No money moves without a verified completion
4. Every ledger mutation is auditable
5. Storage and payment backends are swappable
"""

__version__ = "1.0.0"
__author__ = "Goalstake Team"
