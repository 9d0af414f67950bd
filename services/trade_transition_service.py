"""
Trade Transition Service
========================

The single entry point for every trade status change. API handlers, arbitration
tooling and the expiry worker all go through here (the worker through the
finalization service it shares); nothing else writes ``trades.status`` or ``trades.version``.

## Flow

1. **Status Normalizer** rejects transient / legacy vocabulary on writes
2. **Pre-flight validation** against an unlocked read (cheap rejection, no lock taken)
3. **Finalization** re-validates under ``FOR UPDATE NOWAIT`` and applies all side effects
   in one transaction
4. **Post-commit verification** re-reads releases and refunds; a broken invariant raises
   ``FinalizationInvariantError``
5. **Reputation events** for outcomes, best effort

## Usage Examples

### Create and move a trade
```python
service = TradeTransitionService()
trade = await service.create_trade(
    initiator_id=user.id, counterparty_id=merchant.id,
    amount=Decimal("500"), trade_type=TradeType.BUY,
)
result = await service.request_transition(trade.id, TradeStatus.ACCEPTED, ActorType.MERCHANT, merchant.id)
if not result.success:
    if result.is_retryable:
        ...  # CONTENDED: retry with backoff
    else:
        show_error(result.reason, result.legal_targets)
```

### Escrow and release
```python
await service.request_transition(
    trade.id, "escrowed", "merchant", merchant.id,
    proof=EscrowProof(escrow_reference=tx_hash),
)
await service.request_transition(
    trade.id, "completed", "system",
    proof=EscrowProof(release_reference=release_hash),
)
```

### Client actions
```python
await service.apply_action(trade.id, "mark_paid", ActorType.USER, user.id)
```
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import ActorType, MerchantOffer, Trade, TradeEvent, TradeStatus, TradeType
from services.finalization_verifier import FinalizationVerifier
from services.reputation_emitter import LoggingReputationEmitter, ReputationEmitter, emit_trade_outcome
from services.status_normalizer import StatusNormalizer, TransientStatusWriteError
from services.trade_finalization_service import (
    ErrorKind, EscrowProof, FinalizationResult, TradeFinalizationService
)
from utils.atomic_transactions import async_atomic_transaction
from utils.datetime_helpers import deadline_from_now
from utils.trade_state_validator import TradeStateValidator

logger = logging.getLogger(__name__)


class TradeTransitionService:
    """Inbound mutation API for trades"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        finalization_service: Optional[TradeFinalizationService] = None,
        verifier: Optional[FinalizationVerifier] = None,
        reputation_emitter: Optional[ReputationEmitter] = None,
        verify_after_commit: bool = True,
    ):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.finalization_service = finalization_service or TradeFinalizationService(session_factory)
        self.verifier = verifier or FinalizationVerifier(session_factory)
        self.reputation_emitter = reputation_emitter if reputation_emitter is not None else LoggingReputationEmitter()
        self.verify_after_commit = verify_after_commit

    async def create_trade(
        self,
        initiator_id: int,
        counterparty_id: int,
        amount: Union[Decimal, int, str],
        trade_type: Union[TradeType, str],
        buyer_merchant_id: Optional[int] = None,
        offer_id: Optional[int] = None,
        fiat_amount: Optional[Union[Decimal, int, str]] = None,
        fiat_currency: Optional[str] = None,
        fee_percentage: Optional[Union[Decimal, int, str]] = None,
        asset: Optional[str] = None,
    ) -> Trade:
        """
        Insert a new trade in 'open' at version 1 and reserve offer liquidity.

        Raises:
            ValueError: For a non-positive amount, a fee outside [0, 100) or an offer
                without enough liquidity
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"Trade amount must be positive, got {amount}")
        if fee_percentage is not None:
            fee_percentage = Decimal(str(fee_percentage))
            if fee_percentage < 0 or fee_percentage >= 100:
                raise ValueError(f"Fee percentage must be in [0, 100), got {fee_percentage}")
        trade_type = trade_type if isinstance(trade_type, TradeType) else TradeType(trade_type)

        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                if offer_id is not None:
                    offer = (await session.execute(
                        select(MerchantOffer).where(MerchantOffer.id == offer_id).with_for_update()
                    )).scalar_one_or_none()
                    if offer is None or not offer.is_active:
                        raise ValueError(f"Offer {offer_id} not found or inactive")
                    if Decimal(offer.available_amount) < amount:
                        raise ValueError(
                            f"Offer {offer_id} has {offer.available_amount} available, {amount} requested"
                        )
                    offer.available_amount = Decimal(offer.available_amount) - amount

                trade = Trade(
                    trade_type=trade_type.value,
                    initiator_id=initiator_id,
                    counterparty_id=counterparty_id,
                    buyer_merchant_id=buyer_merchant_id,
                    offer_id=offer_id,
                    status=TradeStatus.OPEN.value,
                    version=1,
                    amount=amount,
                    asset=(asset or Config.DEFAULT_ASSET).upper(),
                    fiat_amount=Decimal(str(fiat_amount)) if fiat_amount is not None else None,
                    fiat_currency=fiat_currency,
                    fee_percentage=fee_percentage,
                    expires_at=deadline_from_now(Config.get_status_timeout(TradeStatus.OPEN.value)),
                )
                session.add(trade)
                await session.flush()

                session.add(TradeEvent(
                    trade_id=trade.id,
                    event_type="trade_created",
                    actor_type=ActorType.USER.value,
                    actor_id=str(initiator_id),
                    old_status=None,
                    new_status=TradeStatus.OPEN.value,
                    succeeded=True,
                    event_data={"amount": str(amount), "trade_type": trade_type.value, "version": 1},
                ))

        logger.info(
            f"🆕 TRADE_CREATED: Trade {trade.id} ({trade.trade_ref}) {trade_type.value} {amount} {trade.asset} "
            f"initiator={initiator_id} counterparty={counterparty_id}"
        )
        return trade

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        """Read a trade with its status normalized onto the canonical set"""
        async with self.session_factory() as session:
            trade = (await session.execute(select(Trade).where(Trade.id == trade_id))).scalar_one_or_none()
            if trade is not None:
                trade.status = StatusNormalizer.normalize(trade.status).value
                session.expunge(trade)
            return trade

    async def request_transition(
        self,
        trade_id: int,
        target_status: Union[TradeStatus, str],
        actor_type: Union[ActorType, str],
        actor_id: Optional[Union[int, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        proof: Optional[EscrowProof] = None,
    ) -> FinalizationResult:
        """
        Request a status change.

        Returns:
            FinalizationResult with the new status and version, or a typed failure

        Raises:
            FinalizationInvariantError: When the committed result breaks the finalization contract
        """
        try:
            target = StatusNormalizer.validate_status_write(target_status)
            actor = actor_type if isinstance(actor_type, ActorType) else ActorType(actor_type)
        except TransientStatusWriteError as e:
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=ErrorKind.NON_CANONICAL_STATUS, reason=str(e),
            )
        except ValueError as e:
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=ErrorKind.INVALID_TRANSITION, reason=str(e),
            )

        # Optimistic pre-flight check against an unlocked read
        trade = await self.get_trade(trade_id)
        if trade is None:
            logger.warning(f"🔍 TRADE_NOT_FOUND: Trade {trade_id} ({target.value} requested by {actor.value})")
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=ErrorKind.NOT_FOUND, reason=f"Trade {trade_id} not found",
            )
        if trade.status != target.value:
            decision = TradeStateValidator.validate(trade.status, target, actor, trade_id)
            if not decision.allowed:
                failure = FinalizationResult(
                    success=False, trade_id=trade_id, status=trade.status, version=trade.version,
                    error_kind=ErrorKind(decision.error_kind),
                    reason=decision.reason, legal_targets=decision.legal_targets,
                )
                await self.finalization_service.record_rejected_attempt(
                    target, actor, actor_id, dict(metadata or {}), failure
                )
                return failure

        result = await self.finalization_service.finalize_transition(
            trade_id, target, actor, actor_id=actor_id, metadata=metadata, proof=proof,
        )

        if result.success and not result.idempotent:
            await self._verify_committed(result, proof)
            await emit_trade_outcome(self.reputation_emitter, result.trade, target)

        return result

    async def apply_action(
        self,
        trade_id: int,
        action: str,
        actor_type: Union[ActorType, str],
        actor_id: Optional[Union[int, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        proof: Optional[EscrowProof] = None,
    ) -> FinalizationResult:
        """Translate a client action (accept, lock_escrow, mark_paid, ...) into a transition"""
        target = StatusNormalizer.normalize_action(action)
        if target is None:
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=ErrorKind.INVALID_TRANSITION,
                reason=f"Unknown action '{action}'",
                legal_targets=sorted(StatusNormalizer.ACTION_TO_STATUS.keys()),
            )
        metadata = {**(metadata or {}), "action": action}
        return await self.request_transition(trade_id, target, actor_type, actor_id, metadata, proof)

    async def _verify_committed(self, result: FinalizationResult, proof: Optional[EscrowProof]):
        if not self.verify_after_commit:
            return
        if result.status == TradeStatus.COMPLETED.value:
            await self.verifier.verify_release(
                result.trade_id,
                expected_status=TradeStatus.COMPLETED.value,
                expected_release_ref=(proof.release_reference if proof else None) or result.trade.release_reference,
                expected_min_version=result.version,
            )
        elif result.status in (TradeStatus.CANCELLED.value, TradeStatus.EXPIRED.value):
            await self.verifier.verify_refund(
                result.trade_id,
                expected_status=result.status,
                expected_min_version=result.version,
                expected_refund_ref=proof.refund_reference if proof else None,
            )
