"""
Finalization Verifier Service
Post-commit invariant checks for trade finalization.

Runs after a finalization transaction has committed, re-reads the trade in a fresh
session and asserts the terminal fields are consistent. Detection only: the verifier
never writes. A broken invariant means a bug in the finalization path and is raised
loudly as FinalizationInvariantError so monitoring picks it up.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    LedgerEntry, LedgerEntryType, NotificationOutbox, OutboxEventType, OutboxStatus,
    Trade, TradeEvent, TradeStatus
)
from services.ledger_service import LedgerService
from utils.datetime_helpers import get_naive_utc_now
from utils.trade_state_validator import TradeStateValidator

logger = logging.getLogger(__name__)


class FinalizationInvariantError(Exception):
    """A committed finalization does not satisfy its contract"""

    code = "FINALIZATION_INVARIANT_BROKEN"

    def __init__(self, trade_id: int, failures: List[str], details: Optional[Dict[str, Any]] = None):
        self.trade_id = trade_id
        self.failures = list(failures)
        self.details = details or {}
        super().__init__(
            f"{self.code}: trade {trade_id} failed {len(self.failures)} check(s): {'; '.join(self.failures)}"
        )


class InvariantCheckResult:
    """Collected outcome of one verification run"""

    def __init__(self, trade_id: int, kind: str):
        self.trade_id = trade_id
        self.kind = kind
        self.checks_run = 0
        self.failures = []
        self.observed = {}

    def check(self, condition: bool, failure: str):
        self.checks_run += 1
        if not condition:
            self.failures.append(failure)

    @property
    def passed(self) -> bool:
        return not self.failures

    def get_summary(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "kind": self.kind,
            "passed": self.passed,
            "checks_run": self.checks_run,
            "failures": list(self.failures),
            "observed": dict(self.observed),
        }


class FinalizationVerifier:
    """Read-only post-commit verification of release and refund finalizations"""

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

    async def _load_trade(self, session: AsyncSession, trade_id: int) -> Optional[Trade]:
        result = await session.execute(
            select(Trade).where(Trade.id == trade_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _check_common(self, result: InvariantCheckResult, trade: Trade, expected_status: str, expected_min_version: int):
        result.observed.update({
            "status": trade.status,
            "version": trade.version,
            "escrow_reference": trade.escrow_reference,
            "release_reference": trade.release_reference,
            "refund_reference": trade.refund_reference,
        })
        result.check(
            trade.status == expected_status,
            f"status is '{trade.status}', expected '{expected_status}'",
        )
        result.check(
            trade.version is not None and trade.version >= expected_min_version,
            f"version {trade.version} is below expected minimum {expected_min_version}",
        )
        timestamp_field = TradeStateValidator.get_timestamp_field(expected_status)
        if timestamp_field:
            result.check(
                getattr(trade, timestamp_field) is not None,
                f"{timestamp_field} is not set",
            )

    def _raise_if_failed(self, result: InvariantCheckResult):
        if result.passed:
            logger.info(
                f"✅ FINALIZATION_VERIFIED: {result.kind} for trade {result.trade_id} "
                f"({result.checks_run} checks passed)"
            )
            return
        logger.critical(
            f"🚨 FINALIZATION_INVARIANT_BROKEN: {result.kind} for trade {result.trade_id}: {result.failures}"
        )
        raise FinalizationInvariantError(result.trade_id, result.failures, result.get_summary())

    async def verify_release(
        self,
        trade_id: int,
        expected_status: str = TradeStatus.COMPLETED.value,
        expected_release_ref: Optional[str] = None,
        expected_min_version: int = 1,
    ) -> Dict[str, Any]:
        """
        Verify a committed release.

        Raises:
            FinalizationInvariantError: If any check fails
        """
        result = InvariantCheckResult(trade_id, "release")

        async with self.session_factory() as session:
            trade = await self._load_trade(session, trade_id)
            if trade is None:
                result.check(False, "trade row not found")
                self._raise_if_failed(result)

            self._check_common(result, trade, expected_status, expected_min_version)

            if trade.escrow_reference or expected_release_ref:
                result.check(bool(trade.release_reference), "release_reference is missing")
            if expected_release_ref:
                result.check(
                    trade.release_reference == expected_release_ref,
                    f"release_reference '{trade.release_reference}' does not match '{expected_release_ref}'",
                )
            result.check(trade.completed_at is not None, "completed_at is not set")
            if trade.escrow_reference:
                result.check(trade.escrowed_at is not None, "escrowed_at is not set on an escrowed trade")

            # Money conservation: the release credit equals the recorded debit and
            # the trade's entries (lock, release, fee pair) net to zero
            if self.moves_balances and trade.debited_amount is not None:
                entries = await LedgerService.get_trade_entries(session, trade_id)
                released = _sum_entries(entries, LedgerEntryType.ESCROW_RELEASE)
                net = _sum_entries(entries)
                result.observed["released_amount"] = str(released)
                result.observed["ledger_net"] = str(net)
                result.check(
                    released == Decimal(trade.debited_amount),
                    f"released {released} does not equal debited {trade.debited_amount}",
                )
                result.check(net == 0, f"ledger entries for the trade net to {net}, expected 0")

        self._raise_if_failed(result)
        return result.get_summary()

    async def verify_refund(
        self,
        trade_id: int,
        expected_status: str = TradeStatus.CANCELLED.value,
        expected_min_version: int = 1,
        expected_refund_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify a committed cancellation / refund, including its audit and outbox rows.

        Raises:
            FinalizationInvariantError: If any check fails
        """
        result = InvariantCheckResult(trade_id, "refund")

        async with self.session_factory() as session:
            trade = await self._load_trade(session, trade_id)
            if trade is None:
                result.check(False, "trade row not found")
                self._raise_if_failed(result)

            self._check_common(result, trade, expected_status, expected_min_version)

            if expected_refund_ref:
                result.check(bool(trade.refund_reference), "refund_reference is missing")
                result.check(
                    trade.refund_reference == expected_refund_ref,
                    f"refund_reference '{trade.refund_reference}' does not match '{expected_refund_ref}'",
                )

            audit_count = await session.scalar(
                select(func.count(TradeEvent.id)).where(
                    TradeEvent.trade_id == trade_id,
                    TradeEvent.new_status == expected_status,
                    TradeEvent.succeeded.is_(True),
                )
            )
            result.check(bool(audit_count), f"no audit event recorded for transition to '{expected_status}'")

            outbox_type = OutboxEventType.for_status(TradeStatus(expected_status)).value
            outbox_count = await session.scalar(
                select(func.count(NotificationOutbox.id)).where(
                    NotificationOutbox.trade_id == trade_id,
                    NotificationOutbox.event_type == outbox_type,
                )
            )
            result.check(bool(outbox_count), f"no {outbox_type} outbox notification recorded")

            # Refund conservation: the recorded debit went back to the recorded payer
            if self.moves_balances and trade.escrow_reference and trade.debited_amount is not None:
                entries = await LedgerService.get_trade_entries(session, trade_id)
                refunded = _sum_entries(
                    [e for e in entries if e.account_id == trade.debited_party_id], LedgerEntryType.ESCROW_REFUND
                )
                result.observed["refunded_amount"] = str(refunded)
                result.check(
                    refunded == Decimal(trade.debited_amount),
                    f"refunded {refunded} to debited party does not equal debited {trade.debited_amount}",
                )

        self._raise_if_failed(result)
        return result.get_summary()

    async def find_stuck_outbox_notifications(
        self, max_age_minutes: Optional[int] = None, limit: int = 100
    ) -> List[NotificationOutbox]:
        """
        Notifications still below max_attempts that are not moving:
        pending / failed rows older than the age, and processing rows whose
        claim is older than the age (a relay died between claim and record).
        """
        max_age_minutes = max_age_minutes if max_age_minutes is not None else Config.STUCK_OUTBOX_MINUTES
        cutoff = get_naive_utc_now() - timedelta(minutes=max_age_minutes)

        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationOutbox)
                .where(
                    NotificationOutbox.attempts < NotificationOutbox.max_attempts,
                    or_(
                        and_(
                            NotificationOutbox.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]),
                            NotificationOutbox.created_at < cutoff,
                        ),
                        and_(
                            NotificationOutbox.status == OutboxStatus.PROCESSING.value,
                            NotificationOutbox.last_attempt_at < cutoff,
                        ),
                    ),
                )
                .order_by(NotificationOutbox.created_at)
                .limit(limit)
            )
            stuck = list(result.scalars().all())

        if stuck:
            logger.warning(f"📭 STUCK_OUTBOX: {len(stuck)} notification(s) older than {max_age_minutes} minutes")
        return stuck


def _sum_entries(entries: List[LedgerEntry], entry_type: Optional[LedgerEntryType] = None) -> Decimal:
    return sum(
        (Decimal(str(e.amount)) for e in entries if entry_type is None or e.entry_type == entry_type.value),
        Decimal("0"),
    )
