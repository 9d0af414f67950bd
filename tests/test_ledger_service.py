"""
Tests for balance mutations and their paired ledger entries
"""

from decimal import Decimal

import pytest

from models import AccountType, LedgerEntryType
from services.ledger_service import (
    AccountNotFoundError, AccountTypeMismatchError, InsufficientBalanceError, LedgerService
)
from utils.atomic_transactions import async_atomic_transaction
from tests.factories import advance_to_escrowed, load_account, load_accounts


class TestDebitCredit:

    @pytest.mark.asyncio
    async def test_debit_writes_entry_with_locked_balances(self, session_factory, make_account):
        account = await make_account(AccountType.MERCHANT, "100")

        async with session_factory() as session:
            async with async_atomic_transaction(session):
                entry = await LedgerService.debit(session, account.id, Decimal("40"), LedgerEntryType.ESCROW_LOCK)

        assert Decimal(entry.amount) == Decimal("-40")
        assert Decimal(entry.balance_before) == Decimal("100")
        assert Decimal(entry.balance_after) == Decimal("60")
        assert entry.account_type == "merchant"
        assert Decimal((await load_account(session_factory, account.id)).balance) == Decimal("60")

    @pytest.mark.asyncio
    async def test_credit_increases_balance(self, session_factory, make_account):
        account = await make_account(AccountType.USER, "0")

        async with session_factory() as session:
            async with async_atomic_transaction(session):
                entry = await LedgerService.credit(session, account.id, "25.5", LedgerEntryType.ESCROW_RELEASE)

        assert Decimal(entry.balance_after) == Decimal("25.5")
        assert Decimal((await load_account(session_factory, account.id)).balance) == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_overdraft_rejected_without_side_effects(self, session_factory, make_account):
        account = await make_account(AccountType.USER, "10")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            async with session_factory() as session:
                async with async_atomic_transaction(session):
                    await LedgerService.debit(session, account.id, Decimal("10.01"), LedgerEntryType.ESCROW_LOCK)

        assert exc_info.value.required == Decimal("10.01")
        assert exc_info.value.available == Decimal("10")
        async with session_factory() as session:
            assert await LedgerService.get_account_entries(session, account.id) == []
        assert Decimal((await load_account(session_factory, account.id)).balance) == Decimal("10")

    @pytest.mark.asyncio
    async def test_missing_account(self, session_factory):
        with pytest.raises(AccountNotFoundError):
            async with session_factory() as session:
                await LedgerService.credit(session, 999, Decimal("1"), LedgerEntryType.ESCROW_REFUND)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    async def test_non_positive_amounts_rejected(self, session_factory, make_account, amount):
        account = await make_account(AccountType.USER, "10")
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await LedgerService.debit(session, account.id, amount, LedgerEntryType.ESCROW_LOCK)
            with pytest.raises(ValueError):
                await LedgerService.credit(session, account.id, amount, LedgerEntryType.ESCROW_RELEASE)


class TestAccountTypes:

    @pytest.mark.asyncio
    async def test_wrong_kind_of_account_is_refused(self, session_factory, make_account):
        user = await make_account(AccountType.USER, "100")

        with pytest.raises(AccountTypeMismatchError) as exc_info:
            async with session_factory() as session:
                async with async_atomic_transaction(session):
                    await LedgerService.debit(
                        session, user.id, Decimal("40"), LedgerEntryType.ESCROW_LOCK,
                        account_type=AccountType.MERCHANT,
                    )

        assert exc_info.value.expected == "merchant"
        assert exc_info.value.actual == "user"
        assert Decimal((await load_account(session_factory, user.id)).balance) == Decimal("100")
        async with session_factory() as session:
            assert await LedgerService.get_account_entries(session, user.id) == []

    @pytest.mark.asyncio
    async def test_matching_kind_is_accepted(self, session_factory, make_account):
        merchant = await make_account(AccountType.MERCHANT, "100")
        async with session_factory() as session:
            async with async_atomic_transaction(session):
                entry = await LedgerService.credit(
                    session, merchant.id, Decimal("1"), LedgerEntryType.ESCROW_REFUND, account_type="merchant"
                )
        assert Decimal(entry.balance_after) == Decimal("101")


class TestFees:

    @pytest.mark.asyncio
    async def test_fee_moves_to_platform_account(self, session_factory, make_account):
        account = await make_account(AccountType.USER, "100")

        async with session_factory() as session:
            async with async_atomic_transaction(session):
                debit, credit = await LedgerService.charge_fee(session, account.id, Decimal("2"), trade_id=None)

        assert debit.entry_type == credit.entry_type == LedgerEntryType.FEE.value
        assert Decimal(debit.amount) == Decimal("-2")
        assert Decimal(credit.amount) == Decimal("2")
        assert credit.account_type == AccountType.PLATFORM.value
        assert Decimal((await load_account(session_factory, account.id)).balance) == Decimal("98")
        assert Decimal((await load_account(session_factory, credit.account_id)).balance) == Decimal("2")

    @pytest.mark.asyncio
    async def test_platform_account_is_reused(self, session_factory, make_account):
        account = await make_account(AccountType.USER, "100")

        for _ in range(2):
            async with session_factory() as session:
                async with async_atomic_transaction(session):
                    await LedgerService.charge_fee(session, account.id, Decimal("1.5"))

        platforms = await load_accounts(session_factory, AccountType.PLATFORM)
        assert len(platforms) == 1
        assert platforms[0].asset == "USDT"
        assert Decimal(platforms[0].balance) == Decimal("3")

    @pytest.mark.asyncio
    async def test_zero_fee_writes_nothing(self, session_factory, make_account):
        account = await make_account(AccountType.USER, "100")
        async with session_factory() as session:
            assert await LedgerService.charge_fee(session, account.id, Decimal("0")) == []
            assert await LedgerService.get_account_entries(session, account.id) == []
        assert await load_accounts(session_factory, AccountType.PLATFORM) == []


class TestReaders:

    @pytest.mark.asyncio
    async def test_trade_entries_in_write_order(self, session_factory, transition_service, buy_trade):
        await advance_to_escrowed(transition_service, buy_trade)
        await transition_service.request_transition(buy_trade.id, "cancelled", "user")

        async with session_factory() as session:
            entries = await LedgerService.get_trade_entries(session, buy_trade.id)
        assert [e.entry_type for e in entries] == ["ESCROW_LOCK", "ESCROW_REFUND"]
        assert sum(Decimal(e.amount) for e in entries) == 0
