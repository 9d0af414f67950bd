"""
Ledger Service - balance mutations with paired, append-only ledger entries

Every balance change in the settlement core goes through this module. Each call:
1. locks the account row (SELECT ... FOR UPDATE)
2. checks the row is the kind of account the caller expects
3. reads balance_before from the locked row
4. applies the signed amount
5. writes exactly one LedgerEntry with balance_before / balance_after

Platform fees are written as a pair: a FEE debit on the paying account and a FEE
credit on the platform account for the asset, so fees never leave the ledger.

Callers own the transaction; nothing here commits. Entries are never updated or deleted.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Account, AccountType, LedgerEntry, LedgerEntryType
from utils.atomic_transactions import lock_account

logger = logging.getLogger(__name__)

PLATFORM_ACCOUNT_NAME = "platform_fees"


class LedgerError(Exception):
    """Base class for ledger failures"""
    pass


class AccountNotFoundError(LedgerError):
    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AccountTypeMismatchError(LedgerError):
    def __init__(self, account_id: int, expected: str, actual: str):
        self.account_id = account_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Account {account_id} is a {actual} account, expected {expected}")


class InsufficientBalanceError(LedgerError):
    def __init__(self, account_id: int, required: Decimal, available: Decimal):
        self.account_id = account_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance on account {account_id}: required {required}, available {available}"
        )


def _to_decimal(amount: Union[Decimal, int, str, float]) -> Decimal:
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))


def _type_value(account_type: Optional[Union[AccountType, str]]) -> Optional[str]:
    if account_type is None:
        return None
    return account_type.value if isinstance(account_type, AccountType) else account_type


class LedgerService:
    """Balance mutation helpers; every method runs inside the caller's transaction"""

    @staticmethod
    async def _apply(
        session: AsyncSession,
        account_id: int,
        signed_amount: Decimal,
        entry_type: LedgerEntryType,
        trade_id: Optional[int],
        related_reference: Optional[str],
        description: Optional[str],
        account_type: Optional[Union[AccountType, str]] = None,
    ) -> LedgerEntry:
        account = await lock_account(session, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        expected_type = _type_value(account_type)
        if expected_type is not None and account.account_type != expected_type:
            logger.error(
                f"❌ ACCOUNT_TYPE_MISMATCH: account {account_id} is {account.account_type}, "
                f"{entry_type.value} expected {expected_type} (trade {trade_id})"
            )
            raise AccountTypeMismatchError(account_id, expected_type, account.account_type)

        balance_before = _to_decimal(account.balance)
        balance_after = balance_before + signed_amount

        if balance_after < 0:
            logger.warning(
                f"💸 INSUFFICIENT_BALANCE: account {account_id} has {balance_before}, "
                f"needs {-signed_amount} for {entry_type.value} (trade {trade_id})"
            )
            raise InsufficientBalanceError(account_id, -signed_amount, balance_before)

        account.balance = balance_after

        entry = LedgerEntry(
            account_type=account.account_type,
            account_id=account.id,
            entry_type=entry_type.value,
            amount=signed_amount,
            asset=account.asset,
            trade_id=trade_id,
            related_reference=related_reference,
            description=description,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        session.add(entry)
        await session.flush()

        logger.info(
            f"📒 LEDGER_{entry_type.value}: account {account.account_type}:{account.id} "
            f"{signed_amount:+} {account.asset} ({balance_before} -> {balance_after}) trade {trade_id}"
        )
        return entry

    @classmethod
    async def debit(
        cls,
        session: AsyncSession,
        account_id: int,
        amount: Union[Decimal, int, str],
        entry_type: LedgerEntryType,
        trade_id: Optional[int] = None,
        related_reference: Optional[str] = None,
        description: Optional[str] = None,
        account_type: Optional[Union[AccountType, str]] = None,
    ) -> LedgerEntry:
        """
        Debit an account.

        Raises:
            InsufficientBalanceError: If the locked balance cannot cover the amount
            AccountNotFoundError: If the account does not exist
            AccountTypeMismatchError: If account_type is given and the row is another kind of account
        """
        amount = _to_decimal(amount)
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")
        return await cls._apply(
            session, account_id, -amount, entry_type, trade_id, related_reference, description, account_type
        )

    @classmethod
    async def credit(
        cls,
        session: AsyncSession,
        account_id: int,
        amount: Union[Decimal, int, str],
        entry_type: LedgerEntryType,
        trade_id: Optional[int] = None,
        related_reference: Optional[str] = None,
        description: Optional[str] = None,
        account_type: Optional[Union[AccountType, str]] = None,
    ) -> LedgerEntry:
        """Credit an account"""
        amount = _to_decimal(amount)
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        return await cls._apply(
            session, account_id, amount, entry_type, trade_id, related_reference, description, account_type
        )

    @staticmethod
    async def get_platform_account(session: AsyncSession, asset: str) -> Account:
        """Locked platform fee account for the asset, created on first use"""
        account = (await session.execute(
            select(Account)
            .where(Account.account_type == AccountType.PLATFORM.value, Account.asset == asset)
            .with_for_update()
        )).scalar_one_or_none()
        if account is None:
            account = Account(
                account_type=AccountType.PLATFORM.value,
                display_name=PLATFORM_ACCOUNT_NAME,
                asset=asset,
                balance=Decimal("0"),
            )
            session.add(account)
            await session.flush()
            logger.info(f"🏦 PLATFORM_ACCOUNT_CREATED: account {account.id} for {asset}")
        return account

    @classmethod
    async def charge_fee(
        cls,
        session: AsyncSession,
        account_id: int,
        fee: Union[Decimal, int, str],
        trade_id: Optional[int] = None,
        related_reference: Optional[str] = None,
        asset: Optional[str] = None,
        account_type: Optional[Union[AccountType, str]] = None,
    ) -> List[LedgerEntry]:
        """
        Move a platform fee from the paying account to the platform account.

        Returns:
            [debit entry, credit entry], or an empty list for a zero fee
        """
        fee = _to_decimal(fee)
        if fee <= 0:
            return []

        debit_entry = await cls.debit(
            session, account_id, fee, LedgerEntryType.FEE,
            trade_id=trade_id,
            related_reference=related_reference,
            description=f"Platform fee for trade {trade_id}",
            account_type=account_type,
        )
        platform = await cls.get_platform_account(session, asset or debit_entry.asset)
        credit_entry = await cls.credit(
            session, platform.id, fee, LedgerEntryType.FEE,
            trade_id=trade_id,
            related_reference=related_reference,
            description=f"Platform fee collected for trade {trade_id}",
            account_type=AccountType.PLATFORM,
        )
        return [debit_entry, credit_entry]

    @staticmethod
    async def get_trade_entries(session: AsyncSession, trade_id: int) -> List[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry).where(LedgerEntry.trade_id == trade_id).order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_account_entries(session: AsyncSession, account_id: int, limit: int = 100) -> List[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
