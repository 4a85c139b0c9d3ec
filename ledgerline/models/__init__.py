"""
Ledgerline - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from ledgerline.models.base import BaseModel, TimestampMixin
from ledgerline.models.accounting import (
    Account,
    AccountType,
    EntrySide,
    FiscalPeriod,
    FiscalPeriodStatus,
    LedgerLine,
    NORMAL_BALANCE_BY_TYPE,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ledgerline.models.procurement import (
    DiscrepancyKind,
    DiscrepancySeverity,
    MatchDiscrepancy,
    MatchStatus,
    ThreeWayMatch,
)
from ledgerline.models.bank_reconciliation import (
    BankMatchStatus,
    BankTransaction,
    ReconciliationMatch,
    ReconciliationMatchTransaction,
    ReconciliationMatchType,
)
from ledgerline.models.audit import AuditAction, AuditLog

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "Account",
    "AccountType",
    "EntrySide",
    "FiscalPeriod",
    "FiscalPeriodStatus",
    "LedgerLine",
    "NORMAL_BALANCE_BY_TYPE",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "DiscrepancyKind",
    "DiscrepancySeverity",
    "MatchDiscrepancy",
    "MatchStatus",
    "ThreeWayMatch",
    "BankMatchStatus",
    "BankTransaction",
    "ReconciliationMatch",
    "ReconciliationMatchTransaction",
    "ReconciliationMatchType",
    "AuditAction",
    "AuditLog",
]
