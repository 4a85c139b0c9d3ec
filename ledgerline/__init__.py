"""
Ledgerline - Financial Integrity Engine

Double-entry posting, fiscal period control, three-way matching
and bank reconciliation.
"""

__version__ = "1.0.0"
