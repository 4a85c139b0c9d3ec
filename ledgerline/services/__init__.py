"""
Ledgerline - Services Package

Business logic services.
"""

from ledgerline.services.audit_service import AuditService
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.ledger_validator import LedgerValidator, ledger_validator
from ledgerline.services.ledger_balances import LedgerBalanceService
from ledgerline.services.fiscal_period_service import FiscalPeriodManager
from ledgerline.services.gl_posting_service import GLPostingEngine, get_gl_posting_engine
from ledgerline.services.forex_service import ForexAdjustmentCalculator, ForexExposure
from ledgerline.services.match_tolerance import MatchToleranceConfig
from ledgerline.services.match_events import MatchEventPublisher, MatchStateChanged, match_event_publisher
from ledgerline.services.three_way_matching import ThreeWayMatchEngine, get_three_way_match_engine
from ledgerline.services.bank_reconciliation_service import (
    BankReconciliationMatcher,
    MatchScore,
    MatchSuggestion,
    ReconciliationConfig,
    get_bank_reconciliation_matcher,
)
