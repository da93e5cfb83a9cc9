"""
Expense Sync - Source Package

Multi-device synchronization service for a personal finance tracker.
Expenses, categories and budgets edited offline on several devices are
reconciled here.

DESIGN PRINCIPLES:
1. The server copy is the single source of truth
2. Conflicts are results, never exceptions
3. Deletes stay soft until every active device has seen them
4. A push is all-or-nothing
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Expense Sync Team"
