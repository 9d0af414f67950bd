"""
Tests for the atomic finalization engine

Test Coverage:
1. Full 500-unit lifecycle to completed at version 5, idempotent re-run
2. Atomicity under fault injection (failure after debit, before audit insert)
3. Money conservation with a platform fee
4. Refund correctness (recorded payer, recorded amount)
5. Version monotonicity and idempotent re-entry
6. Lock contention, insufficient balance, missing proofs
7. Payer rules for sell and merchant-to-merchant trades, delegated settlement
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from models import AccountType, ActorType, MerchantOffer, TradeStatus, TradeType
from services.trade_finalization_service import (
    ErrorKind, EscrowProof, LockMode, TradeFinalizationService, calculate_fee
)
from tests.factories import (
    advance_to_escrowed, load_account, load_accounts, load_events, load_ledger, load_outbox, load_trade,
    set_trade_fields, total_balance
)


class TestFullLifecycle:
    """Concrete scenario: 500 USDT buy trade from open to completed"""

    @pytest.mark.asyncio
    async def test_500_unit_trade_completes_at_version_5(
        self, transition_service, finalization_service, session_factory, buy_trade, user_account, merchant_account
    ):
        await advance_to_escrowed(transition_service, buy_trade, "escrow-500")

        paid = await transition_service.request_transition(
            buy_trade.id, TradeStatus.PAYMENT_SENT, ActorType.USER, user_account.id
        )
        assert paid.success and paid.version == 4

        completed = await transition_service.request_transition(
            buy_trade.id, TradeStatus.COMPLETED, ActorType.SYSTEM,
            proof=EscrowProof(release_reference="release-500"),
        )
        assert completed.success, completed.reason
        assert completed.status == "completed"
        assert completed.version == 5

        trade = await load_trade(session_factory, buy_trade.id)
        assert trade.status == "completed"
        assert trade.version == 5
        assert trade.release_reference == "release-500"
        assert trade.debited_party_type == "merchant"
        assert trade.debited_party_id == merchant_account.id
        assert Decimal(trade.debited_amount) == Decimal("500")
        assert trade.completed_at is not None
        assert trade.expires_at is None

        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("500")
        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("1500")

        entries = await load_ledger(session_factory, buy_trade.id)
        assert [e.entry_type for e in entries] == ["ESCROW_LOCK", "ESCROW_RELEASE"]

        # Re-running the completion changes nothing
        again = await finalization_service.finalize_transition(
            buy_trade.id, TradeStatus.COMPLETED, ActorType.SYSTEM,
            proof=EscrowProof(release_reference="release-500"),
        )
        assert again.success and again.idempotent
        assert again.version == 5
        assert len(await load_ledger(session_factory, buy_trade.id)) == 2
        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("1500")

        succeeded = await load_events(session_factory, buy_trade.id, succeeded=True)
        assert [e.new_status for e in succeeded] == ["open", "accepted", "escrowed", "payment_sent", "completed"]
        outbox_types = [row.event_type for row in await load_outbox(session_factory, buy_trade.id)]
        assert outbox_types == ["ORDER_ACCEPTED", "ORDER_ESCROWED", "ORDER_PAYMENT_SENT", "ORDER_COMPLETED"]

    @pytest.mark.asyncio
    async def test_outcome_reputation_events_for_both_parties(
        self, transition_service, reputation_emitter, buy_trade, user_account, merchant_account
    ):
        await advance_to_escrowed(transition_service, buy_trade)
        await transition_service.request_transition(
            buy_trade.id, "completed", "system", proof=EscrowProof(release_reference="rel")
        )
        assert {(e[0], e[2]) for e in reputation_emitter.events} == {
            (user_account.id, "order_completed"),
            (merchant_account.id, "order_completed"),
        }
        assert all(e[3]["score_delta"] == 5 for e in reputation_emitter.events)


class TestIdempotencyAndVersions:

    @pytest.mark.asyncio
    async def test_reentry_into_current_status_is_a_successful_noop(
        self, finalization_service, session_factory, buy_trade
    ):
        first = await finalization_service.finalize_transition(buy_trade.id, "accepted", ActorType.MERCHANT)
        second = await finalization_service.finalize_transition(buy_trade.id, "accepted", ActorType.MERCHANT)

        assert first.success and not first.idempotent
        assert second.success and second.idempotent
        assert second.version == first.version == 2
        assert len(await load_events(session_factory, buy_trade.id, succeeded=True)) == 2
        assert len(await load_outbox(session_factory, buy_trade.id)) == 1

    @pytest.mark.asyncio
    async def test_version_strictly_increases(self, finalization_service, buy_trade):
        versions = [buy_trade.version]
        for status, actor in [("accepted", "merchant"), ("cancelled", "user")]:
            result = await finalization_service.finalize_transition(buy_trade.id, status, actor)
            assert result.success
            versions.append(result.version)
        assert versions == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_rejection_leaves_version_and_records_attempt(
        self, finalization_service, session_factory, buy_trade
    ):
        result = await finalization_service.finalize_transition(buy_trade.id, "completed", ActorType.USER)

        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_TRANSITION
        assert "accepted" in result.legal_targets
        assert (await load_trade(session_factory, buy_trade.id)).version == 1

        rejected = await load_events(session_factory, buy_trade.id, succeeded=False)
        assert len(rejected) == 1
        assert rejected[0].event_type == "transition_rejected"
        assert rejected[0].event_data["error_kind"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_terminal_trade_rejects_everything(self, finalization_service, buy_trade):
        assert (await finalization_service.finalize_transition(buy_trade.id, "cancelled", "user")).success
        result = await finalization_service.finalize_transition(buy_trade.id, "accepted", "merchant")
        assert result.error_kind == ErrorKind.ALREADY_TERMINAL

    @pytest.mark.asyncio
    async def test_unknown_trade(self, finalization_service):
        result = await finalization_service.finalize_transition(4242, "accepted", "merchant")
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_transient_status_rejected_before_any_lock(self, finalization_service, buy_trade):
        with patch("services.trade_finalization_service.lock_trade", new=AsyncMock()) as lock:
            result = await finalization_service.finalize_transition(buy_trade.id, "releasing", "system")
        assert result.error_kind == ErrorKind.NON_CANONICAL_STATUS
        lock.assert_not_called()


class TestAtomicity:
    """A failure anywhere before commit leaves no trace"""

    @pytest.mark.asyncio
    async def test_failure_after_debit_rolls_back_everything(
        self, transition_service, finalization_service, session_factory, buy_trade, merchant_account
    ):
        await transition_service.request_transition(buy_trade.id, "accepted", "merchant", merchant_account.id)

        with patch.object(
            TradeFinalizationService, "_insert_audit_event",
            new=AsyncMock(side_effect=RuntimeError("audit store down")),
        ):
            result = await finalization_service.finalize_transition(
                buy_trade.id, "escrowed", "merchant", merchant_account.id,
                proof=EscrowProof(escrow_reference="escrow-x"),
            )

        assert not result.success
        assert result.error_kind == ErrorKind.FINALIZATION_FAILED

        trade = await load_trade(session_factory, buy_trade.id)
        assert trade.status == "accepted"
        assert trade.version == 2
        assert trade.escrow_reference is None
        assert trade.debited_amount is None
        assert await load_ledger(session_factory, buy_trade.id) == []
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("1000")
        assert [row.event_type for row in await load_outbox(session_factory, buy_trade.id)] == ["ORDER_ACCEPTED"]


class TestMoneyMovement:

    @pytest.mark.asyncio
    async def test_fee_conserves_money(
        self, transition_service, session_factory, user_account, merchant_account
    ):
        trade = await transition_service.create_trade(
            initiator_id=user_account.id, counterparty_id=merchant_account.id,
            amount=Decimal("500"), trade_type=TradeType.BUY, fee_percentage=Decimal("1"),
        )
        before = await total_balance(session_factory)

        await advance_to_escrowed(transition_service, trade)
        result = await transition_service.request_transition(
            trade.id, "completed", "system", proof=EscrowProof(release_reference="rel-fee")
        )
        assert result.success

        entries = await load_ledger(session_factory, trade.id)
        assert [e.entry_type for e in entries] == ["ESCROW_LOCK", "ESCROW_RELEASE", "FEE", "FEE"]
        lock, release, fee_debit, fee_credit = (Decimal(e.amount) for e in entries)
        assert lock == Decimal("-500")
        assert release == Decimal("500")
        assert fee_debit == Decimal("-5")
        assert fee_credit == Decimal("5")
        assert entries[2].account_id == user_account.id
        assert entries[3].account_type == AccountType.PLATFORM.value
        assert sum(Decimal(e.amount) for e in entries) == 0

        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("1495")
        platform = (await load_accounts(session_factory, AccountType.PLATFORM))[0]
        assert Decimal(platform.balance) == Decimal("5")
        assert await total_balance(session_factory) == before

    def test_fee_calculation_rounds_to_eight_places(self):
        assert calculate_fee(Decimal("1"), Decimal("0.333")) == Decimal("0.00333000")
        assert calculate_fee(Decimal("0.00000001"), Decimal("50")) == Decimal("0.00000001")
        assert calculate_fee(Decimal("100"), None) == Decimal("0")

    @pytest.mark.asyncio
    async def test_cancel_after_escrow_refunds_recorded_payer(
        self, transition_service, session_factory, buy_trade, merchant_account, user_account
    ):
        await advance_to_escrowed(transition_service, buy_trade)
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("500")

        result = await transition_service.request_transition(
            buy_trade.id, "cancelled", "user", user_account.id,
            proof=EscrowProof(refund_reference="refund-1"),
        )
        assert result.success, result.reason

        entries = await load_ledger(session_factory, buy_trade.id)
        refund = [e for e in entries if e.entry_type == "ESCROW_REFUND"]
        assert len(refund) == 1
        assert refund[0].account_id == merchant_account.id
        assert Decimal(refund[0].amount) == Decimal("500")
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("1000")
        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("1000")
        assert (await load_trade(session_factory, buy_trade.id)).refund_reference == "refund-1"

    @pytest.mark.asyncio
    async def test_refund_uses_recorded_amount_not_current_amount(
        self, transition_service, session_factory, buy_trade, merchant_account
    ):
        await advance_to_escrowed(transition_service, buy_trade)
        await set_trade_fields(session_factory, buy_trade.id, amount=Decimal("750"))

        result = await transition_service.request_transition(buy_trade.id, "cancelled", "system")
        assert result.success
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_cancel_before_escrow_restores_offer_liquidity(
        self, transition_service, session_factory, buy_trade, merchant_offer
    ):
        async with session_factory() as session:
            assert Decimal((await session.get(MerchantOffer, merchant_offer.id)).available_amount) == Decimal("4500")

        result = await transition_service.request_transition(buy_trade.id, "cancelled", "user")
        assert result.success
        assert await load_ledger(session_factory, buy_trade.id) == []

        async with session_factory() as session:
            assert Decimal((await session.get(MerchantOffer, merchant_offer.id)).available_amount) == Decimal("5000")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, transition_service, make_account, user_account):
        poor_merchant = await make_account(AccountType.MERCHANT, "100")
        trade = await transition_service.create_trade(
            initiator_id=user_account.id, counterparty_id=poor_merchant.id,
            amount=Decimal("500"), trade_type="buy",
        )
        await transition_service.request_transition(trade.id, "accepted", "merchant", poor_merchant.id)

        result = await transition_service.request_transition(
            trade.id, "escrowed", "merchant", poor_merchant.id, proof=EscrowProof(escrow_reference="esc")
        )
        assert result.error_kind == ErrorKind.INSUFFICIENT_BALANCE
        assert not result.is_retryable

    @pytest.mark.asyncio
    async def test_escrow_requires_reference(self, transition_service, buy_trade, merchant_account):
        await transition_service.request_transition(buy_trade.id, "accepted", "merchant", merchant_account.id)
        result = await transition_service.request_transition(buy_trade.id, "escrowed", "merchant")
        assert result.error_kind == ErrorKind.MISSING_ESCROW_PROOF

    @pytest.mark.asyncio
    async def test_completion_requires_release_reference(
        self, transition_service, session_factory, buy_trade
    ):
        await advance_to_escrowed(transition_service, buy_trade)
        result = await transition_service.request_transition(buy_trade.id, "completed", "system")

        assert result.error_kind == ErrorKind.MISSING_RELEASE_PROOF
        assert (await load_trade(session_factory, buy_trade.id)).status == "escrowed"

    @pytest.mark.asyncio
    async def test_re_acceptance_does_not_debit_twice(
        self, transition_service, session_factory, buy_trade, merchant_account
    ):
        await advance_to_escrowed(transition_service, buy_trade)
        back = await transition_service.request_transition(buy_trade.id, "accepted", "merchant")
        assert back.success
        again = await transition_service.request_transition(buy_trade.id, "escrowed", "merchant")
        assert again.success

        locks = [e for e in await load_ledger(session_factory, buy_trade.id) if e.entry_type == "ESCROW_LOCK"]
        assert len(locks) == 1
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("500")


class TestPayerRules:

    @pytest.mark.asyncio
    async def test_sell_trade_debits_initiator_and_pays_counterparty(
        self, transition_service, session_factory, user_account, merchant_account
    ):
        trade = await transition_service.create_trade(
            initiator_id=user_account.id, counterparty_id=merchant_account.id,
            amount=Decimal("200"), trade_type=TradeType.SELL,
        )
        await advance_to_escrowed(transition_service, trade)
        done = await transition_service.request_transition(
            trade.id, "completed", "system", proof=EscrowProof(release_reference="r")
        )
        assert done.success

        stored = await load_trade(session_factory, trade.id)
        assert stored.debited_party_type == AccountType.USER.value
        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("800")
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("1200")

    @pytest.mark.asyncio
    async def test_merchant_to_merchant_pays_buyer_merchant(
        self, transition_service, session_factory, make_account, user_account, merchant_account
    ):
        buyer_merchant = await make_account(AccountType.MERCHANT, "0")
        trade = await transition_service.create_trade(
            initiator_id=user_account.id, counterparty_id=merchant_account.id,
            buyer_merchant_id=buyer_merchant.id, amount=Decimal("300"), trade_type=TradeType.SELL,
        )
        await advance_to_escrowed(transition_service, trade)
        await transition_service.request_transition(
            trade.id, "completed", "system", proof=EscrowProof(release_reference="m2m")
        )

        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("700")
        assert Decimal((await load_account(session_factory, buyer_merchant.id)).balance) == Decimal("300")
        assert Decimal((await load_account(session_factory, user_account.id)).balance) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_escrow_refused_when_payer_is_not_a_merchant(
        self, transition_service, session_factory, make_account, user_account
    ):
        not_a_merchant = await make_account(AccountType.USER, "1000")
        trade = await transition_service.create_trade(
            initiator_id=user_account.id, counterparty_id=not_a_merchant.id,
            amount=Decimal("100"), trade_type=TradeType.BUY,
        )
        await transition_service.request_transition(trade.id, "accepted", "merchant")

        result = await transition_service.request_transition(
            trade.id, "escrowed", "merchant", proof=EscrowProof(escrow_reference="esc")
        )

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert "expected merchant" in result.reason
        assert (await load_trade(session_factory, trade.id)).status == "accepted"
        assert await load_ledger(session_factory, trade.id) == []
        assert Decimal((await load_account(session_factory, not_a_merchant.id)).balance) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_release_refused_when_recipient_is_the_wrong_kind(
        self, transition_service, session_factory, make_account, merchant_account
    ):
        merchant_initiator = await make_account(AccountType.MERCHANT, "0")
        trade = await transition_service.create_trade(
            initiator_id=merchant_initiator.id, counterparty_id=merchant_account.id,
            amount=Decimal("100"), trade_type=TradeType.BUY,
        )
        await advance_to_escrowed(transition_service, trade)

        result = await transition_service.request_transition(
            trade.id, "completed", "system", proof=EscrowProof(release_reference="rel")
        )

        assert result.error_kind == ErrorKind.NOT_FOUND
        stored = await load_trade(session_factory, trade.id)
        assert stored.status == "escrowed"
        assert stored.release_reference is None
        assert [e.entry_type for e in await load_ledger(session_factory, trade.id)] == ["ESCROW_LOCK"]
        assert Decimal((await load_account(session_factory, merchant_initiator.id)).balance) == Decimal("0")

    @pytest.mark.asyncio
    async def test_delegated_mode_records_debit_without_moving_balances(
        self, session_factory, buy_trade, merchant_account
    ):
        service = TradeFinalizationService(session_factory, settlement_mode="delegated")
        await service.finalize_transition(buy_trade.id, "accepted", "merchant")
        result = await service.finalize_transition(
            buy_trade.id, "escrowed", "merchant", proof=EscrowProof(escrow_reference="ext-1")
        )

        assert result.success
        assert result.ledger_entry_ids == []
        trade = await load_trade(session_factory, buy_trade.id)
        assert Decimal(trade.debited_amount) == Decimal("500")
        assert trade.debited_party_id == merchant_account.id
        assert Decimal((await load_account(session_factory, merchant_account.id)).balance) == Decimal("1000")


class TestContention:

    @pytest.mark.asyncio
    async def test_locked_row_returns_retryable_contended(self, finalization_service, session_factory, buy_trade):
        lock_error = OperationalError(
            "SELECT ... FOR UPDATE NOWAIT", {}, Exception("could not obtain lock on row in relation \"trades\"")
        )
        with patch(
            "services.trade_finalization_service.lock_trade", new=AsyncMock(side_effect=lock_error)
        ):
            result = await finalization_service.finalize_transition(buy_trade.id, "accepted", "merchant")

        assert result.error_kind == ErrorKind.CONTENDED
        assert result.is_retryable
        assert (await load_trade(session_factory, buy_trade.id)).version == 1

    @pytest.mark.asyncio
    async def test_worker_lock_mode_waits(self, finalization_service, buy_trade):
        with patch(
            "services.trade_finalization_service.lock_trade", new=AsyncMock(return_value=None)
        ) as lock:
            await finalization_service.finalize_transition(
                buy_trade.id, "expired", "system", lock_mode=LockMode.WAIT
            )
        assert lock.call_args.kwargs["nowait"] is False
