"""
Trade Finalization Service - the atomic core of the settlement system

One call to ``finalize_transition`` performs a complete business action inside a single
database transaction:

    lock trade row -> re-validate -> idempotency -> domain guards
    -> money movement (escrow lock / release / refund, liquidity restore)
    -> status + timestamp + version bump -> audit event -> outbox row -> commit

Any exception before commit rolls everything back. Outcomes are returned as
``FinalizationResult`` values; nothing escapes as an exception.

Payer / recipient rules (decided from role fields, recorded at debit time):

    | trade          | escrow payer (debited) | release recipient (credited) |
    |----------------|------------------------|------------------------------|
    | M2M            | counterparty merchant  | buyer merchant               |
    | buy (user buys)| counterparty merchant  | initiator user               |
    | sell           | initiator user         | counterparty merchant        |

The platform fee is taken from the release recipient after the full release credit
and lands on the platform account, so every trade's ledger entries sum to zero.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    AccountType, ActorType, LedgerEntryType, MerchantOffer, NotificationOutbox,
    OutboxEventType, Trade, TradeEvent, TradeStatus, TradeType
)
from services.ledger_service import InsufficientBalanceError, LedgerError, LedgerService
from services.status_normalizer import StatusNormalizer, TransientStatusWriteError
from utils.atomic_transactions import async_atomic_transaction, is_lock_contention_error, lock_trade
from utils.datetime_helpers import deadline_from_now, get_naive_utc_now
from utils.trade_state_validator import TradeStateValidator

logger = logging.getLogger(__name__)

FEE_QUANTUM = Decimal("0.00000001")


class ErrorKind(Enum):
    """Typed failure reasons returned by finalization"""
    NOT_FOUND = "NOT_FOUND"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ROLE_NOT_PERMITTED = "ROLE_NOT_PERMITTED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    MISSING_RELEASE_PROOF = "MISSING_RELEASE_PROOF"
    MISSING_ESCROW_PROOF = "MISSING_ESCROW_PROOF"
    NON_CANONICAL_STATUS = "NON_CANONICAL_STATUS"
    CONTENDED = "CONTENDED"
    FINALIZATION_FAILED = "FINALIZATION_FAILED"


class LockMode(Enum):
    NOWAIT = "nowait"  # interactive requests: fail fast
    WAIT = "wait"      # worker: row already claimed with SKIP LOCKED


@dataclass(frozen=True)
class EscrowProof:
    """Externally verified escrow facts (transaction hashes / attestations)"""
    escrow_reference: Optional[str] = None
    release_reference: Optional[str] = None
    refund_reference: Optional[str] = None


@dataclass
class FinalizationResult:
    success: bool
    trade_id: int
    status: Optional[str] = None
    previous_status: Optional[str] = None
    version: Optional[int] = None
    idempotent: bool = False
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    legal_targets: List[str] = field(default_factory=list)
    ledger_entry_ids: List[int] = field(default_factory=list)
    trade: Optional[Trade] = None

    @property
    def is_retryable(self) -> bool:
        return self.error_kind == ErrorKind.CONTENDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "trade_id": self.trade_id,
            "status": self.status,
            "previous_status": self.previous_status,
            "version": self.version,
            "idempotent": self.idempotent,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "reason": self.reason,
            "legal_targets": list(self.legal_targets),
        }


class _FinalizationRejected(Exception):
    """Internal: aborts the open transaction with a typed rejection"""

    def __init__(self, kind: ErrorKind, reason: str, legal_targets: Optional[List[str]] = None,
                 current_status: Optional[str] = None):
        self.kind = kind
        self.reason = reason
        self.legal_targets = legal_targets or []
        self.current_status = current_status
        super().__init__(reason)


def determine_escrow_payer(trade: Trade) -> Tuple[AccountType, int]:
    """Which account funds the escrow, from role fields only"""
    if trade.is_merchant_to_merchant:
        return AccountType.MERCHANT, trade.counterparty_id
    if trade.trade_type == TradeType.BUY.value:
        return AccountType.MERCHANT, trade.counterparty_id
    return AccountType.USER, trade.initiator_id


def determine_release_recipient(trade: Trade) -> Tuple[AccountType, int]:
    """Which account receives the escrow on completion"""
    if trade.is_merchant_to_merchant:
        return AccountType.MERCHANT, trade.buyer_merchant_id
    if trade.trade_type == TradeType.BUY.value:
        return AccountType.USER, trade.initiator_id
    return AccountType.MERCHANT, trade.counterparty_id


def calculate_fee(amount: Decimal, fee_percentage: Optional[Decimal]) -> Decimal:
    if not fee_percentage:
        return Decimal("0")
    fee = (Decimal(amount) * Decimal(fee_percentage) / Decimal("100")).quantize(FEE_QUANTUM, rounding=ROUND_HALF_UP)
    return max(fee, Decimal("0"))


class TradeFinalizationService:
    """Executes validated transitions together with their money movement"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, settlement_mode: Optional[str] = None):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self._settlement_mode = settlement_mode

    @property
    def settlement_mode(self) -> str:
        return self._settlement_mode or Config.SETTLEMENT_MODE

    @property
    def moves_balances(self) -> bool:
        if self._settlement_mode:
            return self._settlement_mode == "simulated"
        return Config.is_simulated_settlement()

    async def finalize_transition(
        self,
        trade_id: int,
        requested_status: Union[TradeStatus, str],
        actor_type: Union[ActorType, str],
        actor_id: Optional[Union[int, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        proof: Optional[EscrowProof] = None,
        lock_mode: LockMode = LockMode.NOWAIT,
        timeout_escalation: bool = False,
        session: Optional[AsyncSession] = None,
    ) -> FinalizationResult:
        """
        Apply one transition atomically.

        Args:
            trade_id: Trade to move
            requested_status: Canonical target status
            actor_type: user / merchant / system
            actor_id: Identifier of the requester, stored on the audit event
            metadata: Free-form context stored on the audit event
            proof: Escrow / release / refund references from the attestation layer
            lock_mode: NOWAIT for interactive callers, WAIT for the expiry worker
            timeout_escalation: Use the worker-only escalation rule instead of the table
            session: Run inside a caller-owned transaction (the worker's claim transaction);
                a rejection or failure rolls that transaction back

        Returns:
            FinalizationResult (never raises)
        """
        metadata = dict(metadata or {})
        proof = proof or EscrowProof()

        try:
            requested = StatusNormalizer.validate_status_write(requested_status)
            actor = actor_type if isinstance(actor_type, ActorType) else ActorType(actor_type)
        except ValueError as e:
            logger.error(f"❌ FINALIZATION_REJECTED: Trade {trade_id} bad input: {e}")
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=(
                    ErrorKind.NON_CANONICAL_STATUS if isinstance(e, TransientStatusWriteError)
                    else ErrorKind.INVALID_TRANSITION
                ),
                reason=str(e),
            )

        try:
            if session is None:
                async with self.session_factory() as own_session:
                    async with async_atomic_transaction(own_session):
                        result = await self._finalize_locked(
                            own_session, trade_id, requested, actor, actor_id, metadata, proof,
                            lock_mode, timeout_escalation,
                        )
            else:
                async with async_atomic_transaction(session):
                    result = await self._finalize_locked(
                        session, trade_id, requested, actor, actor_id, metadata, proof,
                        lock_mode, timeout_escalation,
                    )
            return result

        except _FinalizationRejected as rejection:
            logger.error(
                f"❌ FINALIZATION_REJECTED: Trade {trade_id} -> {requested.value} by {actor.value}: "
                f"{rejection.kind.value} {rejection.reason}"
            )
            failure = FinalizationResult(
                success=False,
                trade_id=trade_id,
                status=rejection.current_status,
                error_kind=rejection.kind,
                reason=rejection.reason,
                legal_targets=rejection.legal_targets,
            )
            if rejection.kind != ErrorKind.NOT_FOUND:
                await self.record_rejected_attempt(requested, actor, actor_id, metadata, failure)
            return failure

        except Exception as e:
            if is_lock_contention_error(e):
                logger.warning(f"🔒 CONTENDED: Trade {trade_id} is locked by another transaction, retry later")
                return FinalizationResult(
                    success=False, trade_id=trade_id,
                    error_kind=ErrorKind.CONTENDED,
                    reason="Trade is being modified by another request, retry shortly",
                )
            logger.exception(f"❌ FINALIZATION_FAILED: Trade {trade_id} -> {requested.value}: {e}")
            return FinalizationResult(
                success=False, trade_id=trade_id,
                error_kind=ErrorKind.FINALIZATION_FAILED,
                reason=f"Finalization failed: {e}",
            )

    async def _finalize_locked(
        self,
        session: AsyncSession,
        trade_id: int,
        requested: TradeStatus,
        actor: ActorType,
        actor_id: Optional[Union[int, str]],
        metadata: Dict[str, Any],
        proof: EscrowProof,
        lock_mode: LockMode,
        timeout_escalation: bool,
    ) -> FinalizationResult:
        # 1. lock
        trade = await lock_trade(session, trade_id, nowait=(lock_mode == LockMode.NOWAIT))
        if trade is None:
            raise _FinalizationRejected(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

        current = StatusNormalizer.normalize(trade.status)

        # 2. idempotent re-entry: already where the caller wants it
        if current == requested:
            logger.info(f"♻️ IDEMPOTENT_FINALIZATION: Trade {trade_id} already {current.value} (v{trade.version})")
            return FinalizationResult(
                success=True, trade_id=trade_id, status=current.value,
                previous_status=current.value, version=trade.version,
                idempotent=True, trade=trade,
            )

        # 3. authoritative validation against the locked row
        if timeout_escalation and requested == TradeStatus.DISPUTED:
            decision = TradeStateValidator.validate_timeout_escalation(
                current, actor, trade.has_escrow, trade_id
            )
        else:
            decision = TradeStateValidator.validate(current, requested, actor, trade_id)
        if not decision.allowed:
            raise _FinalizationRejected(
                ErrorKind(decision.error_kind), decision.reason, decision.legal_targets, current.value
            )

        # 4. domain guards
        if requested == TradeStatus.ESCROWED and not (proof.escrow_reference or trade.escrow_reference):
            raise _FinalizationRejected(
                ErrorKind.MISSING_ESCROW_PROOF,
                "Cannot lock escrow: escrow_reference is required",
                current_status=current.value,
            )
        if requested == TradeStatus.COMPLETED and trade.escrow_reference and not (
            proof.release_reference or trade.release_reference
        ):
            raise _FinalizationRejected(
                ErrorKind.MISSING_RELEASE_PROOF,
                "Cannot complete: escrow not released (release_reference missing)",
                current_status=current.value,
            )

        # 5. money movement
        # attested references are kept even when no escrow was ever locked
        if requested == TradeStatus.COMPLETED and proof.release_reference:
            trade.release_reference = proof.release_reference
        elif requested in (TradeStatus.CANCELLED, TradeStatus.EXPIRED) and proof.refund_reference:
            trade.refund_reference = proof.refund_reference

        ledger_entries = []
        if requested == TradeStatus.ESCROWED and not trade.escrow_reference:
            ledger_entries.extend(await self._lock_escrow(session, trade, proof))
        elif requested == TradeStatus.ESCROWED:
            logger.info(f"🔁 ESCROW_ALREADY_LOCKED: Trade {trade_id} re-enters escrowed, no second debit")
        elif requested == TradeStatus.COMPLETED and trade.escrow_reference:
            ledger_entries.extend(await self._release_escrow(session, trade))
        elif requested in (TradeStatus.CANCELLED, TradeStatus.EXPIRED) and trade.escrow_reference:
            ledger_entries.extend(await self._refund_escrow(session, trade))

        if TradeStateValidator.should_restore_liquidity(current, requested, trade.has_escrow):
            await self._restore_liquidity(session, trade)

        # 6. status, timestamp, version, next deadline
        now = get_naive_utc_now()
        previous_status = current.value
        trade.status = requested.value
        timestamp_field = TradeStateValidator.get_timestamp_field(requested)
        if timestamp_field:
            setattr(trade, timestamp_field, now)
        trade.version = trade.version + 1
        trade.updated_at = now
        trade.expires_at = deadline_from_now(Config.get_status_timeout(requested.value), now)
        await session.flush()

        # 7. audit, 8. outbox
        ledger_ids = [entry.id for entry in ledger_entries]
        await self._insert_audit_event(
            session, trade, previous_status, actor, actor_id,
            {**metadata, "version": trade.version, "ledger_entry_ids": ledger_ids,
             "timeout_escalation": timeout_escalation},
        )
        await self._insert_outbox_notification(session, trade, previous_status)

        logger.info(
            f"✅ TRADE_FINALIZED: Trade {trade_id} {previous_status} -> {requested.value} "
            f"v{trade.version} by {actor.value} ({len(ledger_ids)} ledger entries)"
        )
        return FinalizationResult(
            success=True, trade_id=trade_id, status=trade.status,
            previous_status=previous_status, version=trade.version,
            ledger_entry_ids=ledger_ids, trade=trade,
        )

    def _ledger_rejection(self, trade: Trade, error: LedgerError) -> _FinalizationRejected:
        if isinstance(error, InsufficientBalanceError):
            return _FinalizationRejected(
                ErrorKind.INSUFFICIENT_BALANCE,
                f"Insufficient balance: required {error.required}, available {error.available}",
                current_status=trade.status,
            )
        # missing or wrong-kind account: the party the trade names does not exist as such
        return _FinalizationRejected(ErrorKind.NOT_FOUND, str(error), current_status=trade.status)

    async def _lock_escrow(self, session: AsyncSession, trade: Trade, proof: EscrowProof) -> list:
        payer_type, payer_id = determine_escrow_payer(trade)
        amount = Decimal(trade.amount)
        entries = []

        if self.moves_balances:
            try:
                entries.append(await LedgerService.debit(
                    session, payer_id, amount, LedgerEntryType.ESCROW_LOCK,
                    trade_id=trade.id,
                    related_reference=proof.escrow_reference,
                    description=f"Escrow lock for trade {trade.trade_ref}",
                    account_type=payer_type,
                ))
            except LedgerError as e:
                raise self._ledger_rejection(trade, e)

        trade.escrow_reference = proof.escrow_reference
        trade.debited_party_type = payer_type.value
        trade.debited_party_id = payer_id
        trade.debited_amount = amount
        trade.debited_at = get_naive_utc_now()

        logger.info(
            f"🔒 ESCROW_LOCKED: Trade {trade.id} debited {payer_type.value}:{payer_id} {amount} {trade.asset} "
            f"(mode={self.settlement_mode}, ref={proof.escrow_reference})"
        )
        return entries

    async def _release_escrow(self, session: AsyncSession, trade: Trade) -> list:
        recipient_type, recipient_id = determine_release_recipient(trade)
        amount = trade.debited_amount
        if amount is None:
            # LEGACY-ONLY: rows escrowed before debit facts were recorded
            amount = trade.amount
            logger.warning(
                f"⚠️ LEGACY_RELEASE_AMOUNT: Trade {trade.id} has no recorded debit, releasing trade amount {amount}"
            )
        amount = Decimal(amount)
        entries = []

        if self.moves_balances:
            fee_percentage = trade.fee_percentage if trade.fee_percentage is not None else Config.PLATFORM_FEE_PERCENTAGE
            try:
                entries.append(await LedgerService.credit(
                    session, recipient_id, amount, LedgerEntryType.ESCROW_RELEASE,
                    trade_id=trade.id,
                    related_reference=trade.release_reference,
                    description=f"Escrow release for trade {trade.trade_ref}",
                    account_type=recipient_type,
                ))
                entries.extend(await LedgerService.charge_fee(
                    session, recipient_id, calculate_fee(amount, fee_percentage),
                    trade_id=trade.id,
                    related_reference=trade.release_reference,
                    asset=trade.asset,
                    account_type=recipient_type,
                ))
            except LedgerError as e:
                raise self._ledger_rejection(trade, e)

        logger.info(
            f"🔓 ESCROW_RELEASED: Trade {trade.id} credited {recipient_type.value}:{recipient_id} {amount} "
            f"{trade.asset} (mode={self.settlement_mode}, ref={trade.release_reference})"
        )
        return entries

    async def _refund_escrow(self, session: AsyncSession, trade: Trade) -> list:
        if trade.debited_party_id is not None and trade.debited_amount is not None:
            party_type, party_id = trade.debited_party_type, trade.debited_party_id
            amount = Decimal(trade.debited_amount)
        else:
            # LEGACY-ONLY: debit facts were not recorded at lock time, infer the payer
            inferred_type, party_id = determine_escrow_payer(trade)
            party_type = inferred_type.value
            amount = Decimal(trade.amount)
            logger.warning(
                f"⚠️ LEGACY_REFUND_INFERENCE: Trade {trade.id} has no recorded debit, "
                f"refunding inferred payer {party_type}:{party_id} {amount}"
            )

        entries = []
        if self.moves_balances:
            try:
                entries.append(await LedgerService.credit(
                    session, party_id, amount, LedgerEntryType.ESCROW_REFUND,
                    trade_id=trade.id,
                    related_reference=trade.refund_reference or trade.escrow_reference,
                    description=f"Escrow refund for trade {trade.trade_ref}",
                    account_type=party_type,
                ))
            except LedgerError as e:
                raise self._ledger_rejection(trade, e)

        logger.info(
            f"↩️ ESCROW_REFUNDED: Trade {trade.id} credited {party_type}:{party_id} {amount} {trade.asset} "
            f"(mode={self.settlement_mode})"
        )
        return entries

    async def _restore_liquidity(self, session: AsyncSession, trade: Trade):
        if trade.offer_id is None:
            return
        await session.execute(
            update(MerchantOffer)
            .where(MerchantOffer.id == trade.offer_id)
            .values(available_amount=MerchantOffer.available_amount + trade.amount)
        )
        logger.info(f"💧 LIQUIDITY_RESTORED: offer {trade.offer_id} +{trade.amount} from trade {trade.id}")

    async def _insert_audit_event(
        self,
        session: AsyncSession,
        trade: Trade,
        previous_status: str,
        actor: ActorType,
        actor_id: Optional[Union[int, str]],
        event_data: Dict[str, Any],
    ) -> TradeEvent:
        event = TradeEvent(
            trade_id=trade.id,
            event_type=TradeStateValidator.get_transition_event_type(trade.status),
            actor_type=actor.value,
            actor_id=str(actor_id) if actor_id is not None else None,
            old_status=previous_status,
            new_status=trade.status,
            succeeded=True,
            event_data=_json_safe(event_data),
        )
        session.add(event)
        await session.flush()
        return event

    async def _insert_outbox_notification(
        self, session: AsyncSession, trade: Trade, previous_status: str
    ) -> NotificationOutbox:
        status = TradeStatus(trade.status)
        row = NotificationOutbox(
            event_type=OutboxEventType.for_status(status).value,
            trade_id=trade.id,
            payload={
                "trade_id": trade.id,
                "trade_ref": trade.trade_ref,
                "initiator_id": trade.initiator_id,
                "counterparty_id": trade.counterparty_id,
                "buyer_merchant_id": trade.buyer_merchant_id,
                "status": trade.status,
                "minimal_status": trade.status,
                "previous_status": previous_status,
                "version": trade.version,
                "updated_at": trade.updated_at.isoformat() if trade.updated_at else None,
            },
            max_attempts=Config.OUTBOX_MAX_ATTEMPTS,
        )
        session.add(row)
        await session.flush()
        return row

    async def record_rejected_attempt(
        self,
        requested: TradeStatus,
        actor: ActorType,
        actor_id: Optional[Union[int, str]],
        metadata: Dict[str, Any],
        failure: FinalizationResult,
    ):
        """Audit a refused attempt in its own short transaction; failures are logged only"""
        try:
            async with self.session_factory() as session:
                async with async_atomic_transaction(session):
                    session.add(TradeEvent(
                        trade_id=failure.trade_id,
                        event_type="transition_rejected",
                        actor_type=actor.value,
                        actor_id=str(actor_id) if actor_id is not None else None,
                        old_status=failure.status,
                        new_status=requested.value,
                        succeeded=False,
                        event_data=_json_safe({
                            **metadata,
                            "error_kind": failure.error_kind.value,
                            "reason": failure.reason,
                            "legal_targets": failure.legal_targets,
                        }),
                    ))
        except Exception as e:
            logger.error(f"❌ AUDIT_WRITE_FAILED: rejected attempt on trade {failure.trade_id} not recorded: {e}")


def _json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decimals and datetimes become strings so the dict fits a JSON column"""
    safe = {}
    for key, value in data.items():
        if isinstance(value, Decimal):
            safe[key] = str(value)
        elif hasattr(value, "isoformat"):
            safe[key] = value.isoformat()
        elif isinstance(value, dict):
            safe[key] = _json_safe(value)
        else:
            safe[key] = value
    return safe
