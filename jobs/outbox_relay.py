"""
Notification Outbox Relay Job
Background delivery of notification rows written by trade finalization
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import NotificationOutbox, OutboxStatus
from services.notification_sink import LoggingNotificationSink, NotificationSink
from utils.atomic_transactions import async_atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Drains pending notification outbox rows into a delivery sink"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        sink: Optional[NotificationSink] = None,
        batch_size: Optional[int] = None,
        retry_delay_seconds: Optional[int] = None,
        processing_lease_seconds: Optional[int] = None,
    ):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.sink = sink or LoggingNotificationSink()
        self.batch_size = batch_size or Config.OUTBOX_BATCH_SIZE
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else Config.OUTBOX_RETRY_DELAY_SECONDS
        )
        self.processing_lease_seconds = (
            processing_lease_seconds if processing_lease_seconds is not None
            else Config.OUTBOX_PROCESSING_LEASE_SECONDS
        )

    async def drain(self) -> Dict[str, int]:
        """
        Deliver one batch of due notifications.

        Rows are claimed with FOR UPDATE SKIP LOCKED so several relays can run side by side.
        A failed delivery goes back to pending until max_attempts, then stays failed.
        A row left in processing longer than the lease (relay died after claiming it)
        is claimed again, so every notification is delivered at least once.
        """
        stats = {"delivered": 0, "retried": 0, "failed": 0, "claimed": 0, "reclaimed": 0}
        now = get_naive_utc_now()
        retry_cutoff = now - timedelta(seconds=self.retry_delay_seconds)
        lease_cutoff = now - timedelta(seconds=self.processing_lease_seconds)

        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                rows = (await session.execute(
                    select(NotificationOutbox)
                    .where(
                        NotificationOutbox.attempts < NotificationOutbox.max_attempts,
                        or_(
                            and_(
                                NotificationOutbox.status.in_(
                                    [OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]
                                ),
                                or_(
                                    NotificationOutbox.last_attempt_at.is_(None),
                                    NotificationOutbox.last_attempt_at < retry_cutoff,
                                ),
                            ),
                            and_(
                                NotificationOutbox.status == OutboxStatus.PROCESSING.value,
                                NotificationOutbox.last_attempt_at < lease_cutoff,
                            ),
                        ),
                    )
                    .order_by(NotificationOutbox.created_at, NotificationOutbox.id)
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )).scalars().all()

                for row in rows:
                    if row.status == OutboxStatus.PROCESSING.value:
                        stats["reclaimed"] += 1
                        logger.warning(
                            f"⏳ OUTBOX_LEASE_EXPIRED: #{row.id} {row.event_type} trade {row.trade_id} "
                            f"claimed at {row.last_attempt_at}, claiming again"
                        )
                    row.status = OutboxStatus.PROCESSING.value
                    row.last_attempt_at = now
                stats["claimed"] = len(rows)
                claimed = [(row.id, row.event_type, row.trade_id, dict(row.payload or {})) for row in rows]

        if not claimed:
            return stats

        for outbox_id, event_type, trade_id, payload in claimed:
            error = None
            try:
                await self.sink.deliver(event_type, trade_id, payload)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.warning(f"⚠️ OUTBOX_DELIVERY_FAILED: #{outbox_id} {event_type} trade {trade_id}: {error}")

            outcome = await self._record_attempt(outbox_id, error)
            stats[outcome] += 1

        logger.info(
            f"📬 OUTBOX_RELAY: claimed={stats['claimed']} delivered={stats['delivered']} "
            f"retried={stats['retried']} failed={stats['failed']} reclaimed={stats['reclaimed']}"
        )
        return stats

    async def _record_attempt(self, outbox_id: int, error: Optional[str]) -> str:
        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                row = await session.get(NotificationOutbox, outbox_id)
                row.attempts = row.attempts + 1
                row.last_attempt_at = get_naive_utc_now()

                if error is None:
                    row.status = OutboxStatus.SENT.value
                    row.sent_at = row.last_attempt_at
                    row.last_error = None
                    return "delivered"

                row.last_error = error[:1000]
                if row.attempts >= row.max_attempts:
                    row.status = OutboxStatus.FAILED.value
                    logger.error(
                        f"❌ OUTBOX_GAVE_UP: #{outbox_id} {row.event_type} trade {row.trade_id} "
                        f"after {row.attempts} attempts: {error}"
                    )
                    return "failed"
                row.status = OutboxStatus.PENDING.value
                return "retried"

    async def get_outbox_statistics(self) -> Dict[str, Any]:
        """Row counts by status, for monitoring"""
        async with self.session_factory() as session:
            counts = (await session.execute(
                select(NotificationOutbox.status, func.count(NotificationOutbox.id))
                .group_by(NotificationOutbox.status)
            )).all()
            exhausted = (await session.execute(
                select(func.count(NotificationOutbox.id)).where(
                    and_(
                        NotificationOutbox.status == OutboxStatus.FAILED.value,
                        NotificationOutbox.attempts >= NotificationOutbox.max_attempts,
                    )
                )
            )).scalar_one()

        by_status = {status.value: 0 for status in OutboxStatus}
        by_status.update({status: count for status, count in counts})
        return {"by_status": by_status, "exhausted": exhausted}


_relay: Optional[OutboxRelay] = None


async def run_outbox_relay() -> Dict[str, int]:
    """Scheduler entry point"""
    global _relay
    if _relay is None:
        _relay = OutboxRelay()
    return await _relay.drain()
