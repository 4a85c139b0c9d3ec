"""
Ledgerline - Ledger Validator

Pure double-entry checks run before any commit:
- At least two lines
- Positive amounts at minor-unit precision
- Exactly one side per line
- Every account exists and is active
- Debits equal credits within one minor unit

The first violated rule is reported; nothing is written.
"""

import uuid
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from ledgerline.models.accounting import Account
from ledgerline.schemas.accounting import LedgerLineDraft
from ledgerline.utils.error_handling import LedgerValidationError

MINOR_UNIT = Decimal("0.01")
BALANCE_EPSILON = MINOR_UNIT


class LedgerValidator:
    """Stateless validator for proposed ledger lines."""

    def __init__(self, epsilon: Decimal = BALANCE_EPSILON, minor_unit: Decimal = MINOR_UNIT):
        self.epsilon = epsilon
        self.minor_unit = minor_unit

    def find_violation(
        self,
        lines: Sequence[LedgerLineDraft],
        accounts: Mapping[uuid.UUID, Account],
    ) -> Optional[LedgerValidationError]:
        if len(lines) < 2:
            return LedgerValidationError(
                "At least two ledger lines are required",
                rule="MIN_TWO_LINES",
            )

        for index, line in enumerate(lines):
            error = self._check_line(index, line)
            if error:
                return error

        for index, line in enumerate(lines):
            account = accounts.get(line.account_id)
            if account is None:
                return LedgerValidationError(
                    f"Line {index + 1}: account {line.account_id} does not exist",
                    rule="ACCOUNT_EXISTS",
                    line_index=index,
                )
            if not account.is_active:
                return LedgerValidationError(
                    f"Line {index + 1}: account {account.code} is inactive",
                    rule="ACCOUNT_ACTIVE",
                    line_index=index,
                )

        total_debit = sum((line.debit_amount for line in lines), Decimal("0"))
        total_credit = sum((line.credit_amount for line in lines), Decimal("0"))
        imbalance = abs(total_debit - total_credit)
        if imbalance > self.epsilon:
            return LedgerValidationError(
                f"Transaction is unbalanced by {imbalance:.2f} "
                f"(debits {total_debit:.2f}, credits {total_credit:.2f})",
                rule="BALANCED",
                imbalance=imbalance.quantize(self.minor_unit),
                details={
                    "total_debit": str(total_debit),
                    "total_credit": str(total_credit),
                },
            )
        return None

    def validate(
        self,
        lines: Sequence[LedgerLineDraft],
        accounts: Mapping[uuid.UUID, Account],
    ) -> None:
        """Raise the first violated invariant as a LedgerValidationError."""
        error = self.find_violation(lines, accounts)
        if error:
            raise error

    def _check_line(self, index: int, line: LedgerLineDraft) -> Optional[LedgerValidationError]:
        prefix = f"Line {index + 1}"
        if line.debit_amount < 0 or line.credit_amount < 0:
            return LedgerValidationError(
                f"{prefix}: amount must be greater than zero",
                rule="POSITIVE_AMOUNT",
                line_index=index,
            )
        if line.debit_amount > 0 and line.credit_amount > 0:
            return LedgerValidationError(
                f"{prefix}: cannot have both debit and credit amounts",
                rule="SINGLE_SIDE",
                line_index=index,
            )
        if line.debit_amount == 0 and line.credit_amount == 0:
            return LedgerValidationError(
                f"{prefix}: amount must be greater than zero",
                rule="POSITIVE_AMOUNT",
                line_index=index,
            )
        if line.amount != line.amount.quantize(self.minor_unit):
            return LedgerValidationError(
                f"{prefix}: amount {line.amount} has more precision than {self.minor_unit}",
                rule="MINOR_UNIT_PRECISION",
                line_index=index,
            )
        return None


ledger_validator = LedgerValidator()
