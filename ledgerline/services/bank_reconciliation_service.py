"""
Ledgerline - Bank Reconciliation Service

Matches imported bank statement lines to posted ledger transactions:
- Weighted scoring on amount, date proximity and reference similarity
- One-to-one, one-to-many and many-to-one passes
- Decisions committed in chunks, each chunk all-or-nothing
- Unmatching returns both sides to the unreconciled pool
- Suggestions and statistics for lines the passes leave open

A ledger transaction is compared by its movement on the bank account:
debits to the account are inflows (positive), credits are outflows
(negative). Statement deposits are positive and withdrawals negative,
so a match always pairs amounts of the same sign.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from difflib import SequenceMatcher
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.config import settings
from ledgerline.models.accounting import Account, EntrySide, LedgerLine, Transaction, TransactionStatus
from ledgerline.models.bank_reconciliation import (
    BankMatchStatus,
    BankTransaction,
    ReconciliationMatch,
    ReconciliationMatchTransaction,
    ReconciliationMatchType,
)
from ledgerline.schemas.bank_reconciliation import BankTransactionCreate
from ledgerline.utils.error_handling import (
    InvalidDateRangeException,
    MatchNotFoundException,
    NotFoundException,
    StoreCommitError,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class ReconciliationConfig:
    """Configuration for the matching passes."""

    date_window_days: int = 3
    min_score: Decimal = Decimal("60")
    amount_tolerance_percent: Decimal = Decimal("1")
    amount_tolerance_absolute: Decimal = Decimal("0.01")
    exact_epsilon: Decimal = Decimal("0.01")
    max_group_size: int = 5
    candidate_pool: int = 10
    chunk_size: int = 100
    bank_account_codes: List[str] = field(default_factory=lambda: ["1000", "1200"])

    amount_weight: Decimal = Decimal("50")
    date_weight: Decimal = Decimal("30")
    reference_weight: Decimal = Decimal("20")

    # Suggestions
    suggestion_min_score: Decimal = Decimal("40")
    high_confidence_score: Decimal = Decimal("80")
    medium_confidence_score: Decimal = Decimal("65")

    @classmethod
    def from_settings(cls) -> "ReconciliationConfig":
        return cls(
            date_window_days=settings.reconciliation_date_window_days,
            min_score=settings.reconciliation_min_score,
            amount_tolerance_percent=settings.reconciliation_amount_tolerance_percent,
            amount_tolerance_absolute=settings.reconciliation_amount_tolerance_absolute,
            exact_epsilon=settings.ledger_minor_unit,
            max_group_size=settings.reconciliation_max_group_size,
            candidate_pool=settings.reconciliation_candidate_pool,
            chunk_size=settings.reconciliation_chunk_size,
            bank_account_codes=settings.bank_account_codes_list,
        )

    def tolerance(self, amount: Decimal) -> Decimal:
        return max(abs(amount) * self.amount_tolerance_percent / Decimal("100"), self.amount_tolerance_absolute)


@dataclass
class MatchScore:
    amount: Decimal = Decimal("0")
    date: Decimal = Decimal("0")
    reference: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return (self.amount + self.date + self.reference).quantize(CENTS, rounding=ROUND_HALF_UP)

    def breakdown(self) -> Dict[str, str]:
        return {
            "amount": str(self.amount.quantize(CENTS, rounding=ROUND_HALF_UP)),
            "date": str(self.date.quantize(CENTS, rounding=ROUND_HALF_UP)),
            "reference": str(self.reference.quantize(CENTS, rounding=ROUND_HALF_UP)),
            "total": str(self.total),
        }


@dataclass(frozen=True)
class BankLineView:
    """Detached copy of a bank line; survives a rolled back chunk."""

    id: uuid.UUID
    external_id: str
    transaction_date: date
    amount: Decimal
    reference: Optional[str]


@dataclass(frozen=True)
class CandidateView:
    id: uuid.UUID
    entry_number: str
    transaction_date: date
    amount: Decimal
    reference: Optional[str]


@dataclass
class MatchDecision:
    match_type: ReconciliationMatchType
    bank_lines: List[BankLineView]
    candidates: List[CandidateView]
    score: MatchScore

    @property
    def bank_amount(self) -> Decimal:
        return sum((line.amount for line in self.bank_lines), Decimal("0.00"))

    @property
    def ledger_amount(self) -> Decimal:
        return sum((c.amount for c in self.candidates), Decimal("0.00"))

    @property
    def difference(self) -> Decimal:
        return self.bank_amount - self.ledger_amount


@dataclass
class MatchSuggestion:
    """A scored candidate offered for manual review; nothing is persisted."""

    transaction_id: uuid.UUID
    entry_number: str
    transaction_date: date
    amount: Decimal
    score: MatchScore
    confidence: str

    @property
    def confidence_score(self) -> Decimal:
        return self.score.total

    @property
    def score_breakdown(self) -> Dict[str, str]:
        return self.score.breakdown()


def normalize_reference(reference: Optional[str]) -> str:
    return re.sub(r"[^A-Z0-9]", "", (reference or "").upper())


def same_direction(left: Decimal, right: Decimal) -> bool:
    return (left > 0) == (right > 0)


def bank_movement(transaction: Transaction, account_ids: Set[uuid.UUID]) -> Decimal:
    """Signed movement of a transaction on the given accounts: debits in, credits out."""
    return sum(
        (
            line.amount if line.side == EntrySide.DEBIT else -line.amount
            for line in transaction.lines
            if line.account_id in account_ids
        ),
        Decimal("0.00"),
    )


def _view_bank(line: BankTransaction) -> BankLineView:
    return BankLineView(
        id=line.id,
        external_id=line.external_id,
        transaction_date=line.transaction_date,
        amount=line.amount,
        reference=line.reference,
    )


def _view_candidate(transaction: Transaction, amount: Decimal) -> CandidateView:
    return CandidateView(
        id=transaction.id,
        entry_number=transaction.entry_number,
        transaction_date=transaction.transaction_date,
        amount=amount,
        reference=transaction.reference or transaction.entry_number,
    )


class BankReconciliationMatcher:
    """Service for matching bank statement lines to the ledger."""

    def __init__(self, db: AsyncSession, config: Optional[ReconciliationConfig] = None):
        self.db = db
        self.config = config or ReconciliationConfig.from_settings()

    # ===========================================
    # STATEMENT IMPORT
    # ===========================================

    async def import_transactions(self, rows: Sequence[BankTransactionCreate]) -> List[BankTransaction]:
        """
        Persist parsed statement rows as UNMATCHED.

        Rows whose external id is already known are returned as stored.
        """
        external_ids = [row.external_id for row in rows]
        result = await self.db.execute(
            select(BankTransaction).where(BankTransaction.external_id.in_(external_ids))
        )
        known = {line.external_id: line for line in result.scalars().all()}

        imported: List[BankTransaction] = []
        new_count = 0
        for row in rows:
            line = known.get(row.external_id)
            if line is None:
                line = BankTransaction(
                    external_id=row.external_id,
                    bank_account_code=row.bank_account_code,
                    transaction_date=row.transaction_date,
                    amount=row.amount.quantize(CENTS, rounding=ROUND_HALF_UP),
                    reference=row.reference,
                    description=row.description,
                    raw_line=row.raw_line,
                    match_status=BankMatchStatus.UNMATCHED,
                )
                self.db.add(line)
                known[row.external_id] = line
                new_count += 1
            imported.append(line)

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Bank statement import failed: {e}")
            raise StoreCommitError("bank statement import", original_error=e)

        logger.info(f"Imported {new_count} bank lines ({len(rows) - new_count} already known)")
        return imported

    # ===========================================
    # SCORING
    # ===========================================

    def score(
        self,
        bank_line: BankTransaction,
        candidate: Transaction,
        ledger_amount: Optional[Decimal] = None,
    ) -> MatchScore:
        """
        Score one bank line against one ledger transaction (0-100).

        ``ledger_amount`` is the candidate's signed movement on the bank
        account. When omitted the transaction total is taken as an inflow.
        """
        bank = _view_bank(bank_line)
        ledger = _view_candidate(candidate, candidate.amount if ledger_amount is None else ledger_amount)
        return self._score(
            bank.amount,
            ledger.amount,
            abs((bank.transaction_date - ledger.transaction_date).days),
            [bank.reference],
            [ledger.reference],
        )

    def _score(
        self,
        bank_amount: Decimal,
        ledger_amount: Decimal,
        day_gap: int,
        bank_references: Iterable[Optional[str]],
        ledger_references: Iterable[Optional[str]],
    ) -> MatchScore:
        cfg = self.config
        result = MatchScore()

        if same_direction(bank_amount, ledger_amount):
            difference = abs(bank_amount - ledger_amount)
            if difference <= cfg.exact_epsilon:
                result.amount = cfg.amount_weight
            elif difference <= cfg.tolerance(bank_amount):
                result.amount = cfg.amount_weight * Decimal("0.8")

        # Anywhere inside the window keeps at least half the date weight
        if day_gap == 0:
            result.date = cfg.date_weight
        elif day_gap <= cfg.date_window_days:
            decay = Decimal("1") - Decimal(day_gap) / Decimal(cfg.date_window_days)
            result.date = cfg.date_weight * (Decimal("0.5") + Decimal("0.5") * decay)

        best = Decimal("0")
        for bank_ref in bank_references:
            for ledger_ref in ledger_references:
                best = max(best, self._reference_score(bank_ref, ledger_ref))
        result.reference = best
        return result

    def _reference_score(self, bank_ref: Optional[str], ledger_ref: Optional[str]) -> Decimal:
        left = normalize_reference(bank_ref)
        right = normalize_reference(ledger_ref)
        if not left or not right:
            return Decimal("0")
        if left == right:
            return self.config.reference_weight
        if left in right or right in left or SequenceMatcher(None, left, right).ratio() >= 0.8:
            return self.config.reference_weight * Decimal("0.6")
        return Decimal("0")

    def _within_tolerance(self, bank_amount: Decimal, ledger_amount: Decimal) -> bool:
        return (
            same_direction(bank_amount, ledger_amount)
            and abs(bank_amount - ledger_amount) <= self.config.tolerance(bank_amount)
        )

    def _confidence(self, total: Decimal) -> str:
        if total >= self.config.high_confidence_score:
            return "high"
        if total >= self.config.medium_confidence_score:
            return "medium"
        return "low"

    # ===========================================
    # MATCHING PASSES
    # ===========================================

    async def match_batch(
        self,
        bank_lines: Sequence[BankTransaction],
        candidate_txns: Sequence[Transaction],
    ) -> List[ReconciliationMatch]:
        """
        Decide matches in memory, then commit them chunk by chunk.

        Bank lines are matched against each candidate's movement on the
        line's bank account, or on the configured cash and bank accounts
        when the line names none. Candidates that never touch those
        accounts are not offered. Bank lines that are no longer UNMATCHED
        and transactions that are already linked are skipped, so a rerun
        after a failed chunk only works on what is still open.
        """
        linked = await self._linked_transaction_ids(c.id for c in candidate_txns)
        open_lines = sorted(
            (line for line in bank_lines if line.match_status == BankMatchStatus.UNMATCHED),
            key=lambda line: (line.transaction_date, line.external_id),
        )
        posted = [
            t for t in candidate_txns
            if t.status == TransactionStatus.POSTED and t.id not in linked
        ]

        groups: Dict[Tuple[str, ...], List[BankLineView]] = {}
        for line in open_lines:
            groups.setdefault(self._account_codes_for(line), []).append(_view_bank(line))
        account_ids = await self._account_ids({code for codes in groups for code in codes})

        used_bank: Set[uuid.UUID] = set()
        used_ledger: Set[uuid.UUID] = set()
        decisions: List[MatchDecision] = []
        candidate_count = 0
        for codes, banks in groups.items():
            ids = {account_ids[code] for code in codes if code in account_ids}
            candidates = self._candidate_views(posted, ids)
            candidate_count += len(candidates)
            decisions += self._match_one_to_one(banks, candidates, used_bank, used_ledger)
            decisions += self._match_one_to_many(banks, candidates, used_bank, used_ledger)
            decisions += self._match_many_to_one(banks, candidates, used_bank, used_ledger)

        logger.info(
            f"Reconciliation decided {len(decisions)} matches for "
            f"{len(open_lines)} bank lines and {candidate_count} candidates"
        )
        match_ids = await self._commit_decisions(decisions)
        return await self._load_matches(match_ids)

    async def match_by_ids(
        self,
        bank_transaction_ids: Sequence[uuid.UUID],
        transaction_ids: Sequence[uuid.UUID],
    ) -> List[ReconciliationMatch]:
        bank_result = await self.db.execute(
            select(BankTransaction)
            .where(BankTransaction.id.in_(list(bank_transaction_ids)))
            .execution_options(populate_existing=True)
        )
        txn_result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id.in_(list(transaction_ids)))
            .execution_options(populate_existing=True)
        )
        return await self.match_batch(list(bank_result.scalars().all()), list(txn_result.scalars().all()))

    def _account_codes_for(self, line: BankTransaction) -> Tuple[str, ...]:
        if line.bank_account_code:
            return (line.bank_account_code,)
        return tuple(self.config.bank_account_codes)

    async def _account_ids(self, codes: Set[str]) -> Dict[str, uuid.UUID]:
        if not codes:
            return {}
        result = await self.db.execute(select(Account.code, Account.id).where(Account.code.in_(codes)))
        return {code: account_id for code, account_id in result.all()}

    def _candidate_views(self, transactions: Iterable[Transaction], account_ids: Set[uuid.UUID]) -> List[CandidateView]:
        views = []
        for transaction in transactions:
            movement = bank_movement(transaction, account_ids)
            if movement != 0:
                views.append(_view_candidate(transaction, movement))
        views.sort(key=lambda c: (c.transaction_date, c.entry_number))
        return views

    def _match_one_to_one(
        self,
        banks: List[BankLineView],
        candidates: List[CandidateView],
        used_bank: Set[uuid.UUID],
        used_ledger: Set[uuid.UUID],
    ) -> List[MatchDecision]:
        decisions = []
        for bank in banks:
            best: Optional[Tuple[Tuple, CandidateView, MatchScore]] = None
            for candidate in candidates:
                if candidate.id in used_ledger:
                    continue
                if not self._within_tolerance(bank.amount, candidate.amount):
                    continue
                gap = abs((bank.transaction_date - candidate.transaction_date).days)
                score = self._score(bank.amount, candidate.amount, gap, [bank.reference], [candidate.reference])
                if score.total < self.config.min_score:
                    continue
                rank = (-score.total, gap, candidate.entry_number)
                if best is None or rank < best[0]:
                    best = (rank, candidate, score)

            if best is not None:
                _, candidate, score = best
                used_bank.add(bank.id)
                used_ledger.add(candidate.id)
                decisions.append(MatchDecision(ReconciliationMatchType.ONE_TO_ONE, [bank], [candidate], score))
        return decisions

    def _match_one_to_many(
        self,
        banks: List[BankLineView],
        candidates: List[CandidateView],
        used_bank: Set[uuid.UUID],
        used_ledger: Set[uuid.UUID],
    ) -> List[MatchDecision]:
        """One bank line settles several ledger transactions."""
        decisions = []
        for bank in banks:
            if bank.id in used_bank:
                continue
            pool = self._nearest(
                bank.transaction_date,
                [
                    c for c in candidates
                    if c.id not in used_ledger and same_direction(bank.amount, c.amount)
                ],
                key=lambda c: c.entry_number,
            )
            found = self._best_group(
                pool,
                target=bank.amount,
                member_amount=lambda c: c.amount,
                score=lambda group: self._score(
                    bank.amount,
                    sum((c.amount for c in group), Decimal("0.00")),
                    max(abs((bank.transaction_date - c.transaction_date).days) for c in group),
                    [bank.reference],
                    [c.reference for c in group],
                ),
            )
            if found is not None:
                group, score = found
                used_bank.add(bank.id)
                used_ledger.update(c.id for c in group)
                decisions.append(MatchDecision(ReconciliationMatchType.ONE_TO_MANY, [bank], list(group), score))
        return decisions

    def _match_many_to_one(
        self,
        banks: List[BankLineView],
        candidates: List[CandidateView],
        used_bank: Set[uuid.UUID],
        used_ledger: Set[uuid.UUID],
    ) -> List[MatchDecision]:
        """Several bank lines settle one ledger transaction."""
        decisions = []
        for candidate in candidates:
            if candidate.id in used_ledger:
                continue
            pool = self._nearest(
                candidate.transaction_date,
                [
                    b for b in banks
                    if b.id not in used_bank and same_direction(b.amount, candidate.amount)
                ],
                key=lambda b: b.external_id,
            )
            found = self._best_group(
                pool,
                target=candidate.amount,
                member_amount=lambda b: b.amount,
                score=lambda group: self._score(
                    sum((b.amount for b in group), Decimal("0.00")),
                    candidate.amount,
                    max(abs((b.transaction_date - candidate.transaction_date).days) for b in group),
                    [b.reference for b in group],
                    [candidate.reference],
                ),
            )
            if found is not None:
                group, score = found
                used_ledger.add(candidate.id)
                used_bank.update(b.id for b in group)
                decisions.append(MatchDecision(ReconciliationMatchType.MANY_TO_ONE, list(group), [candidate], score))
        return decisions

    def _nearest(self, anchor: date, items: list, key) -> list:
        """Items inside the date window, nearest first, capped at the candidate pool size."""
        window = self.config.date_window_days
        inside = [
            item for item in items
            if abs((item.transaction_date - anchor).days) <= window
        ]
        inside.sort(key=lambda item: (abs((item.transaction_date - anchor).days), key(item)))
        return inside[: self.config.candidate_pool]

    def _best_group(self, pool: list, target: Decimal, member_amount, score):
        """
        Smallest subset (2..max group size) whose amounts sum to the target
        within tolerance; among subsets of that size the highest score wins.
        """
        upper = min(len(pool), self.config.max_group_size)
        for size in range(2, upper + 1):
            best = None
            for group in combinations(pool, size):
                total = sum((member_amount(item) for item in group), Decimal("0.00"))
                if abs(total - target) > self.config.tolerance(target):
                    continue
                group_score = score(group)
                if group_score.total < self.config.min_score:
                    continue
                if best is None or group_score.total > best[1].total:
                    best = (group, group_score)
            if best is not None:
                return best
        return None

    # ===========================================
    # PERSISTENCE
    # ===========================================

    def _chunks(self, decisions: List[MatchDecision]) -> List[List[MatchDecision]]:
        chunks: List[List[MatchDecision]] = []
        current: List[MatchDecision] = []
        lines = 0
        for decision in decisions:
            if current and lines + len(decision.bank_lines) > self.config.chunk_size:
                chunks.append(current)
                current, lines = [], 0
            current.append(decision)
            lines += len(decision.bank_lines)
        if current:
            chunks.append(current)
        return chunks

    async def _commit_decisions(self, decisions: List[MatchDecision]) -> List[uuid.UUID]:
        committed: List[uuid.UUID] = []
        for index, chunk in enumerate(self._chunks(decisions)):
            try:
                match_ids = await self._persist_chunk(chunk)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(
                    f"Reconciliation chunk {index + 1} rolled back after {len(committed)} committed matches: {e}"
                )
                raise StoreCommitError(
                    "reconciliation match batch",
                    original_error=e,
                    details={"committed_matches": len(committed), "failed_chunk": index + 1},
                )
            except StoreCommitError as e:
                await self.db.rollback()
                logger.error(f"Reconciliation chunk {index + 1} rolled back: {e.details.get('reason')}")
                e.details.update({"committed_matches": len(committed), "failed_chunk": index + 1})
                raise
            committed.extend(match_ids)
        return committed

    async def _persist_chunk(self, chunk: List[MatchDecision]) -> List[uuid.UUID]:
        """Insert matches and links, then claim the bank lines; caller commits."""
        match_ids = []
        for decision in chunk:
            match_id = uuid.uuid4()
            difference = decision.difference
            status = (
                BankMatchStatus.MATCHED
                if abs(difference) <= self.config.exact_epsilon
                else BankMatchStatus.PARTIALLY_MATCHED
            )
            self.db.add(ReconciliationMatch(
                id=match_id,
                match_type=decision.match_type,
                confidence_score=decision.score.total,
                score_breakdown=decision.score.breakdown(),
                bank_amount=decision.bank_amount,
                ledger_amount=decision.ledger_amount,
                unreconciled_difference=difference if status == BankMatchStatus.PARTIALLY_MATCHED else Decimal("0.00"),
                ledger_links=[
                    ReconciliationMatchTransaction(transaction_id=c.id, amount=c.amount)
                    for c in decision.candidates
                ],
            ))
            await self.db.flush()

            bank_ids = [line.id for line in decision.bank_lines]
            result = await self.db.execute(
                update(BankTransaction)
                .where(
                    BankTransaction.id.in_(bank_ids),
                    BankTransaction.match_status == BankMatchStatus.UNMATCHED,
                )
                .values(match_status=status, reconciliation_match_id=match_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(bank_ids):
                raise StoreCommitError(
                    "reconciliation match batch",
                    details={"reason": "bank line matched concurrently", "bank_transaction_ids": [str(i) for i in bank_ids]},
                )
            match_ids.append(match_id)
        return match_ids

    # ===========================================
    # PERIOD RECONCILIATION
    # ===========================================

    async def reconcile_period(
        self,
        start_date: date,
        end_date: date,
        bank_account_code: Optional[str] = None,
    ) -> List[ReconciliationMatch]:
        """
        Match UNMATCHED bank lines dated in the range against unlinked
        POSTED transactions that touch a bank account and are dated
        within the range widened by the window.
        """
        if start_date > end_date:
            raise InvalidDateRangeException(str(start_date), str(end_date))

        bank_query = select(BankTransaction).where(
            BankTransaction.match_status == BankMatchStatus.UNMATCHED,
            BankTransaction.transaction_date >= start_date,
            BankTransaction.transaction_date <= end_date,
        )
        if bank_account_code:
            bank_query = bank_query.where(BankTransaction.bank_account_code == bank_account_code)
        bank_result = await self.db.execute(bank_query.execution_options(populate_existing=True))
        bank_lines = list(bank_result.scalars().all())

        if bank_account_code:
            codes = {bank_account_code}
        else:
            codes = {code for line in bank_lines for code in self._account_codes_for(line)}
        window = timedelta(days=self.config.date_window_days)
        candidates = await self._open_candidates(start_date - window, end_date + window, codes)

        return await self.match_batch(bank_lines, candidates)

    async def _open_candidates(self, start_date: date, end_date: date, codes: Set[str]) -> List[Transaction]:
        """Unlinked POSTED transactions in the range with a line on one of the accounts."""
        if not codes:
            return []
        linked = exists().where(ReconciliationMatchTransaction.transaction_id == Transaction.id)
        touches_account = (
            exists()
            .where(LedgerLine.transaction_id == Transaction.id)
            .where(LedgerLine.account_id == Account.id)
            .where(Account.code.in_(codes))
        )
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.status == TransactionStatus.POSTED,
                Transaction.transaction_date >= start_date,
                Transaction.transaction_date <= end_date,
                ~linked,
                touches_account,
            ).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ===========================================
    # SUGGESTIONS AND STATISTICS
    # ===========================================

    async def suggest_matches(self, bank_transaction_id: uuid.UUID, limit: int = 5) -> List[MatchSuggestion]:
        """
        Rank open ledger candidates for one bank line, including those the
        automatic passes would not accept. Suggestions are not persisted.
        """
        line = await self.db.get(BankTransaction, bank_transaction_id)
        if line is None:
            raise NotFoundException("BankTransaction", bank_transaction_id)
        if line.match_status != BankMatchStatus.UNMATCHED:
            return []

        codes = self._account_codes_for(line)
        account_ids = await self._account_ids(set(codes))
        window = timedelta(days=self.config.date_window_days)
        transactions = await self._open_candidates(
            line.transaction_date - window,
            line.transaction_date + window,
            set(codes),
        )

        bank = _view_bank(line)
        suggestions = []
        for candidate in self._candidate_views(transactions, set(account_ids.values())):
            if not same_direction(bank.amount, candidate.amount):
                continue
            gap = abs((bank.transaction_date - candidate.transaction_date).days)
            score = self._score(bank.amount, candidate.amount, gap, [bank.reference], [candidate.reference])
            if score.total < self.config.suggestion_min_score:
                continue
            suggestions.append(MatchSuggestion(
                transaction_id=candidate.id,
                entry_number=candidate.entry_number,
                transaction_date=candidate.transaction_date,
                amount=candidate.amount,
                score=score,
                confidence=self._confidence(score.total),
            ))

        suggestions.sort(key=lambda s: (-s.score.total, s.entry_number))
        return suggestions[:limit]

    async def match_statistics(self) -> Dict[str, Any]:
        """Counts of bank lines by status, matches by type and the open difference."""
        status_result = await self.db.execute(
            select(BankTransaction.match_status, func.count()).group_by(BankTransaction.match_status)
        )
        by_status = {status: count for status, count in status_result.all()}
        type_result = await self.db.execute(
            select(ReconciliationMatch.match_type, func.count()).group_by(ReconciliationMatch.match_type)
        )
        by_type = {match_type.value: count for match_type, count in type_result.all()}
        difference_result = await self.db.execute(
            select(func.sum(ReconciliationMatch.unreconciled_difference))
        )
        difference = difference_result.scalar()

        total = sum(by_status.values())
        reconciled = by_status.get(BankMatchStatus.MATCHED, 0) + by_status.get(BankMatchStatus.PARTIALLY_MATCHED, 0)
        match_rate = (
            (Decimal(reconciled) * Decimal("100") / Decimal(total)).quantize(CENTS, rounding=ROUND_HALF_UP)
            if total else Decimal("0.00")
        )
        return {
            "total_bank_transactions": total,
            "matched": by_status.get(BankMatchStatus.MATCHED, 0),
            "partially_matched": by_status.get(BankMatchStatus.PARTIALLY_MATCHED, 0),
            "unmatched": by_status.get(BankMatchStatus.UNMATCHED, 0),
            "match_rate_percent": match_rate,
            "matches_by_type": by_type,
            "unreconciled_difference": Decimal(str(difference or 0)).quantize(CENTS, rounding=ROUND_HALF_UP),
        }

    # ===========================================
    # MANUAL CORRECTION
    # ===========================================

    async def unmatch(self, match_id: uuid.UUID) -> List[uuid.UUID]:
        """Delete a match and its links; returns the bank lines set back to UNMATCHED."""
        match = await self.get_match(match_id)
        bank_ids = match.bank_transaction_ids

        try:
            await self.db.execute(
                update(BankTransaction)
                .where(BankTransaction.reconciliation_match_id == match_id)
                .values(match_status=BankMatchStatus.UNMATCHED, reconciliation_match_id=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(ReconciliationMatchTransaction)
                .where(ReconciliationMatchTransaction.match_id == match_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(ReconciliationMatch)
                .where(ReconciliationMatch.id == match_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Unmatching {match_id} failed: {e}")
            raise StoreCommitError("reconciliation unmatch", original_error=e)

        logger.info(f"Unmatched reconciliation {match_id}; {len(bank_ids)} bank lines reopened")
        return bank_ids

    # ===========================================
    # QUERIES
    # ===========================================

    async def _linked_transaction_ids(self, transaction_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        ids = list(transaction_ids)
        if not ids:
            return set()
        result = await self.db.execute(
            select(ReconciliationMatchTransaction.transaction_id).where(
                ReconciliationMatchTransaction.transaction_id.in_(ids)
            )
        )
        return set(result.scalars().all())

    async def _load_matches(self, match_ids: List[uuid.UUID]) -> List[ReconciliationMatch]:
        if not match_ids:
            return []
        result = await self.db.execute(
            select(ReconciliationMatch)
            .where(ReconciliationMatch.id.in_(match_ids))
            .execution_options(populate_existing=True)
        )
        by_id = {m.id: m for m in result.scalars().all()}
        return [by_id[i] for i in match_ids if i in by_id]

    async def get_match(self, match_id: uuid.UUID) -> ReconciliationMatch:
        result = await self.db.execute(
            select(ReconciliationMatch)
            .where(ReconciliationMatch.id == match_id)
            .execution_options(populate_existing=True)
        )
        match = result.scalar_one_or_none()
        if not match:
            raise MatchNotFoundException(match_id, resource_type="ReconciliationMatch")
        return match

    async def list_matches(self) -> List[ReconciliationMatch]:
        result = await self.db.execute(
            select(ReconciliationMatch)
            .order_by(ReconciliationMatch.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_bank_transactions(
        self,
        status: Optional[BankMatchStatus] = None,
    ) -> List[BankTransaction]:
        query = select(BankTransaction).order_by(BankTransaction.transaction_date, BankTransaction.external_id)
        if status:
            query = query.where(BankTransaction.match_status == status)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())


def get_bank_reconciliation_matcher(db: AsyncSession) -> BankReconciliationMatcher:
    """Get bank reconciliation matcher instance."""
    return BankReconciliationMatcher(db)
