"""
Ledgerline - Account Registry

Read side of the chart of accounts for the posting engine:
- Lookup by id, by code and in bulk
- Seeding of accounts synced from the chart-of-accounts service
- Immutability once posted lines reference an account
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.accounting import (
    Account,
    AccountType,
    EntrySide,
    LedgerLine,
    NORMAL_BALANCE_BY_TYPE,
)
from ledgerline.utils.error_handling import (
    AccountInUseError,
    AccountNotFoundException,
    DuplicateEntryException,
)

logger = logging.getLogger(__name__)

# Fields that may change after an account has posted lines
MUTABLE_WHEN_REFERENCED = {"name", "is_active", "description"}


class AccountRegistry:
    """Chart-of-accounts metadata used by every posting."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, account_id: uuid.UUID) -> Account:
        account = await self.db.get(Account, account_id)
        if not account:
            raise AccountNotFoundException(account_id=account_id)
        return account

    async def get_by_code(self, code: str) -> Account:
        result = await self.db.execute(select(Account).where(Account.code == code))
        account = result.scalar_one_or_none()
        if not account:
            raise AccountNotFoundException(code=code)
        return account

    async def get_many(self, account_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Account]:
        """Fetch accounts by id. Unknown ids are simply absent from the result."""
        ids = set(account_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Account).where(Account.id.in_(ids)))
        return {account.id: account for account in result.scalars().all()}

    async def list_accounts(
        self,
        active_only: bool = False,
        account_type: Optional[AccountType] = None,
    ) -> List[Account]:
        query = select(Account)
        if active_only:
            query = query.where(Account.is_active.is_(True))
        if account_type:
            query = query.where(Account.account_type == account_type)
        result = await self.db.execute(query.order_by(Account.code))
        return list(result.scalars().all())

    async def register(
        self,
        code: str,
        name: str,
        account_type: AccountType,
        normal_balance: Optional[EntrySide] = None,
        description: Optional[str] = None,
    ) -> Account:
        """Register an account. Normal balance defaults from the account type."""
        existing = await self.db.execute(select(Account.id).where(Account.code == code))
        if existing.scalar_one_or_none():
            raise DuplicateEntryException("Account", "code", code)

        account = Account(
            code=code,
            name=name,
            account_type=account_type,
            normal_balance=normal_balance or NORMAL_BALANCE_BY_TYPE[account_type],
            description=description,
            is_active=True,
        )
        self.db.add(account)
        await self.db.commit()
        logger.info(f"Registered account {code} ({account_type.value})")
        return account

    async def is_referenced(self, account_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(exists().where(LedgerLine.account_id == account_id))
        )
        return bool(result.scalar())

    async def update_account(self, account_id: uuid.UUID, **changes) -> Account:
        """
        Update account metadata.

        Once any ledger line references the account only name, description
        and the active flag may change.
        """
        account = await self.get(account_id)
        changed = {
            field: value for field, value in changes.items()
            if getattr(account, field) != value
        }
        frozen = sorted(set(changed) - MUTABLE_WHEN_REFERENCED)
        if frozen and await self.is_referenced(account_id):
            raise AccountInUseError(account.code, frozen)

        for field, value in changed.items():
            setattr(account, field, value)
        await self.db.commit()
        return account
