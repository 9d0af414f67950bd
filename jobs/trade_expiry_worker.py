"""
Trade Expiry Worker - reconciliation of trades stuck past their deadline

Timeout policy by status at the moment of timeout:
- open (no counterparty yet)         -> expired, offer liquidity restored
- accepted, no escrow                -> cancelled, offer liquidity restored
- escrow locked / payment claimed    -> disputed (never auto-cancelled)
- disputed                           -> left alone, only arbitration resolves it

Each trade is claimed with FOR UPDATE SKIP LOCKED and finalized inside that same
transaction, so interactive requests and other worker instances are never waited on.
Committed expiries and cancellations are re-read by the finalization verifier; a broken
invariant is logged CRITICAL and reported in the pass results.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import ActorType, Trade, TradeStatus
from services.finalization_verifier import FinalizationInvariantError, FinalizationVerifier
from services.reputation_emitter import LoggingReputationEmitter, ReputationEmitter, emit_trade_outcome
from services.status_normalizer import StatusNormalizer
from services.trade_finalization_service import FinalizationResult, LockMode, TradeFinalizationService
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

# Never picked up by the worker
EXCLUDED_STATUSES = [
    TradeStatus.COMPLETED.value,
    TradeStatus.CANCELLED.value,
    TradeStatus.EXPIRED.value,
    TradeStatus.DISPUTED.value,
]


def decide_timeout_outcome(trade: Trade) -> Optional[TradeStatus]:
    """Target status for a timed out trade, or None when the worker must leave it alone"""
    status = StatusNormalizer.normalize(trade.status)
    if status.value in EXCLUDED_STATUSES:
        return None
    if trade.has_escrow or status == TradeStatus.PAYMENT_SENT:
        return TradeStatus.DISPUTED
    if status == TradeStatus.OPEN:
        return TradeStatus.EXPIRED
    if status == TradeStatus.ACCEPTED:
        return TradeStatus.CANCELLED
    # escrowed without a reference only exists in corrupt legacy rows
    logger.error(f"❌ EXPIRY_UNDECIDABLE: Trade {trade.id} status {status.value} without escrow reference")
    return TradeStatus.DISPUTED


class TradeExpiryWorker:
    """Polling reconciliation of expired trades"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        finalization_service: Optional[TradeFinalizationService] = None,
        reputation_emitter: Optional[ReputationEmitter] = None,
        batch_size: Optional[int] = None,
        poll_seconds: Optional[float] = None,
        max_backoff_seconds: Optional[float] = None,
        verifier: Optional[FinalizationVerifier] = None,
    ):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.finalization_service = finalization_service or TradeFinalizationService(session_factory)
        self.verifier = verifier or FinalizationVerifier(
            session_factory, settlement_mode=self.finalization_service.settlement_mode
        )
        self.reputation_emitter = reputation_emitter if reputation_emitter is not None else LoggingReputationEmitter()
        self.batch_size = batch_size or Config.EXPIRY_BATCH_SIZE
        self.poll_seconds = poll_seconds or Config.EXPIRY_POLL_SECONDS
        self.max_backoff_seconds = max_backoff_seconds or Config.EXPIRY_MAX_BACKOFF_SECONDS
        self._running = False
        self._consecutive_failures = 0

    async def _find_candidates(self) -> List[int]:
        now = get_naive_utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trade.id)
                .where(
                    Trade.status.notin_(EXCLUDED_STATUSES),
                    Trade.expires_at.isnot(None),
                    Trade.expires_at < now,
                )
                .order_by(Trade.expires_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _resolve_trade(self, trade_id: int) -> Optional[FinalizationResult]:
        """Claim one trade with SKIP LOCKED and finalize it in the same transaction"""
        now = get_naive_utc_now()
        async with self.session_factory() as session:
            trade = (await session.execute(
                select(Trade)
                .where(
                    Trade.id == trade_id,
                    Trade.status.notin_(EXCLUDED_STATUSES),
                    Trade.expires_at < now,
                )
                .with_for_update(skip_locked=True)
            )).scalar_one_or_none()

            if trade is None:
                # Locked by someone else or resolved since the scan
                await session.rollback()
                return None

            target = decide_timeout_outcome(trade)
            if target is None:
                await session.rollback()
                return None

            had_counterparty = trade.accepted_at is not None
            previous_status = trade.status
            result = await self.finalization_service.finalize_transition(
                trade.id,
                target,
                ActorType.SYSTEM,
                actor_id="expiry_worker",
                metadata={
                    "reason": "deadline_passed",
                    "expired_status": previous_status,
                    "expires_at": trade.expires_at,
                },
                lock_mode=LockMode.WAIT,
                timeout_escalation=(target == TradeStatus.DISPUTED),
                session=session,
            )

        if not result.success or result.idempotent:
            return result

        if target in (TradeStatus.CANCELLED, TradeStatus.EXPIRED):
            await self.verifier.verify_refund(
                trade_id, expected_status=target.value, expected_min_version=result.version
            )
        if had_counterparty:
            await emit_trade_outcome(self.reputation_emitter, result.trade, target)
        return result

    async def process_expired_trades(self) -> Dict[str, Any]:
        """
        Run one reconciliation pass.

        Returns:
            Summary dict with processed count, per-outcome trade ids, skipped ids and errors
        """
        results = {
            "processed": 0,
            "expired": [],
            "cancelled": [],
            "disputed": [],
            "skipped": [],
            "errors": [],
        }

        candidates = await self._find_candidates()
        if not candidates:
            logger.debug("🔍 EXPIRY_SCAN: no trades past deadline")
            return results

        logger.info(f"🔍 EXPIRY_SCAN: {len(candidates)} trade(s) past deadline")

        for trade_id in candidates:
            try:
                result = await self._resolve_trade(trade_id)
            except SQLAlchemyError:
                raise
            except FinalizationInvariantError as e:
                # committed but broken: reported, never retried blindly
                logger.critical(f"🚨 EXPIRY_INVARIANT_BROKEN: Trade {trade_id}: {e}")
                results["errors"].append({"trade_id": trade_id, "error_kind": e.code, "error": str(e)})
                continue
            except Exception as e:
                logger.error(f"❌ EXPIRY_TRADE_ERROR: Trade {trade_id}: {e}")
                results["errors"].append({"trade_id": trade_id, "error": str(e)})
                continue

            if result is None:
                results["skipped"].append(trade_id)
                continue
            if not result.success:
                logger.error(
                    f"❌ EXPIRY_FINALIZATION_FAILED: Trade {trade_id} {result.error_kind.value}: {result.reason}"
                )
                results["errors"].append({
                    "trade_id": trade_id,
                    "error_kind": result.error_kind.value,
                    "error": result.reason,
                })
                continue

            results["processed"] += 1
            if result.status in ("expired", "cancelled", "disputed"):
                results[result.status].append(trade_id)

        logger.info(
            f"⏰ EXPIRY_SUMMARY: processed={results['processed']} expired={len(results['expired'])} "
            f"cancelled={len(results['cancelled'])} disputed={len(results['disputed'])} "
            f"skipped={len(results['skipped'])} errors={len(results['errors'])}"
        )
        return results

    def next_delay(self) -> float:
        """Poll interval, doubled per consecutive database failure and capped"""
        if self._consecutive_failures == 0:
            return self.poll_seconds
        return min(self.poll_seconds * (2 ** self._consecutive_failures), self.max_backoff_seconds)

    async def run_once(self) -> Optional[Dict[str, Any]]:
        """One pass with database failures absorbed into the backoff counter"""
        try:
            results = await self.process_expired_trades()
            self._consecutive_failures = 0
            return results
        except SQLAlchemyError as e:
            self._consecutive_failures += 1
            logger.error(
                f"❌ EXPIRY_WORKER_DB_ERROR: {e} (failure #{self._consecutive_failures}, "
                f"next attempt in {self.next_delay()}s)"
            )
            return None

    async def run_forever(self):
        """Standalone polling loop; the scheduler uses run_trade_expiry instead"""
        self._running = True
        logger.info(f"🚀 EXPIRY_WORKER_STARTED: every {self.poll_seconds}s, batch {self.batch_size}")
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.next_delay())
        logger.info("🛑 EXPIRY_WORKER_STOPPED")

    def stop(self):
        self._running = False


_worker: Optional[TradeExpiryWorker] = None


async def run_trade_expiry() -> Optional[Dict[str, Any]]:
    """Scheduler entry point"""
    global _worker
    if _worker is None:
        _worker = TradeExpiryWorker()
    return await _worker.run_once()
