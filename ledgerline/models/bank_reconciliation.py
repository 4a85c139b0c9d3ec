"""
Ledgerline - Bank Reconciliation Models

Imported bank statement lines and the matches that tie them to posted
ledger transactions. A ledger transaction counts as matched when a
link row references it; the transaction row itself is never touched.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON, Date, ForeignKey, Numeric, String, Text, Uuid, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgerline.models.base import BaseModel


class BankMatchStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIALLY_MATCHED = "partially_matched"


class ReconciliationMatchType(str, Enum):
    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"


class BankTransaction(BaseModel):
    """A parsed bank statement line. Deposits are positive, withdrawals negative."""

    __tablename__ = "bank_transactions"

    external_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True,
        comment="Identifier supplied by the statement import",
    )
    bank_account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    raw_line: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    match_status: Mapped[BankMatchStatus] = mapped_column(
        SQLEnum(BankMatchStatus),
        default=BankMatchStatus.UNMATCHED,
        nullable=False,
        index=True,
    )
    reconciliation_match_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("reconciliation_matches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )


class ReconciliationMatch(BaseModel):
    """Association of bank lines with posted ledger transactions."""

    __tablename__ = "reconciliation_matches"

    match_type: Mapped[ReconciliationMatchType] = mapped_column(
        SQLEnum(ReconciliationMatchType), nullable=False,
    )
    confidence_score: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), nullable=False)
    score_breakdown: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    bank_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    ledger_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    unreconciled_difference: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), default=Decimal("0.00"), nullable=False,
    )

    bank_transactions: Mapped[List["BankTransaction"]] = relationship(
        "BankTransaction",
        order_by="BankTransaction.transaction_date",
        lazy="selectin",
    )
    ledger_links: Mapped[List["ReconciliationMatchTransaction"]] = relationship(
        "ReconciliationMatchTransaction",
        back_populates="match",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def bank_transaction_ids(self) -> List[uuid.UUID]:
        return [line.id for line in self.bank_transactions]

    @property
    def transaction_ids(self) -> List[uuid.UUID]:
        return [link.transaction_id for link in self.ledger_links]


class ReconciliationMatchTransaction(BaseModel):
    """Ledger side of a reconciliation match. A transaction reconciles at most once."""

    __tablename__ = "reconciliation_match_transactions"

    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("reconciliation_matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id"),
        nullable=False,
        unique=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)

    match: Mapped["ReconciliationMatch"] = relationship("ReconciliationMatch", back_populates="ledger_links")
