"""
Reputation event emission

The scoring module lives outside the settlement core. The core only tells it what
happened, identified by (entity_id, entity_type, event_type, metadata). Emission is
best effort: failures are logged and never touch the finalization transaction.
"""

import logging
from typing import Any, Dict, List, Optional

from models import AccountType, Trade, TradeStatus

logger = logging.getLogger(__name__)


# Terminal outcome -> (event type, score delta hint for the scoring module)
REPUTATION_EVENTS: Dict[TradeStatus, tuple] = {
    TradeStatus.COMPLETED: ("order_completed", 5),
    TradeStatus.DISPUTED: ("order_disputed", -5),
    TradeStatus.EXPIRED: ("order_timeout", -5),
    TradeStatus.CANCELLED: ("order_cancelled", -2),
}


class ReputationEmitter:
    """Interface for the external scoring module"""

    async def emit(self, entity_id: int, entity_type: str, event_type: str, metadata: Optional[Dict[str, Any]] = None):
        raise NotImplementedError


class LoggingReputationEmitter(ReputationEmitter):
    """Default emitter: records the event in the application log only"""

    async def emit(self, entity_id: int, entity_type: str, event_type: str, metadata: Optional[Dict[str, Any]] = None):
        logger.info(f"⭐ REPUTATION_EVENT: {entity_type}:{entity_id} {event_type} {metadata or {}}")


async def emit_trade_outcome(emitter: Optional[ReputationEmitter], trade: Trade, status: TradeStatus) -> List[str]:
    """
    Emit the outcome event for both parties of a trade.

    Returns the list of event types that were emitted successfully. Never raises.
    """
    if emitter is None or status not in REPUTATION_EVENTS:
        return []

    event_type, score_delta = REPUTATION_EVENTS[status]
    parties = [
        (trade.initiator_id, AccountType.USER.value),
        (trade.counterparty_id, AccountType.MERCHANT.value),
    ]
    if trade.buyer_merchant_id is not None:
        parties.append((trade.buyer_merchant_id, AccountType.MERCHANT.value))

    emitted = []
    for entity_id, entity_type in parties:
        try:
            await emitter.emit(entity_id, entity_type, event_type, {
                "trade_id": trade.id,
                "trade_ref": trade.trade_ref,
                "score_delta": score_delta,
                "version": trade.version,
            })
            emitted.append(event_type)
        except Exception as e:
            logger.error(f"❌ REPUTATION_EMIT_FAILED: {entity_type}:{entity_id} {event_type} trade {trade.id}: {e}")
    return emitted
