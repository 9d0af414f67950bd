"""
Trade Status Normalizer
Translation boundary between the historical 12-status vocabulary and the canonical
8-status lifecycle. Reads always normalize; writes of anything non-canonical are rejected.
"""

from typing import Dict, List, Optional, Any, Union
import logging

from models import LegacyTradeStatus, TradeStatus
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class TransientStatusWriteError(ValueError):
    """Raised when a caller tries to persist a status outside the canonical set"""

    def __init__(self, status: str, canonical: TradeStatus, transient: bool = True):
        self.status = status
        self.canonical = canonical
        self.transient = transient
        kind = "transient" if transient else "legacy"
        super().__init__(
            f"Cannot write {kind} status '{status}'. Use minimal status instead: {canonical.value}"
        )


class StatusNormalizer:
    """
    Legacy → canonical status mapping.

    Collapsed intermediate statuses:
        escrow_pending    -> accepted
        payment_pending   -> escrowed
        payment_confirmed -> payment_sent
        releasing         -> completed
    Renamed:
        pending           -> open
    """

    LEGACY_TO_CANONICAL: Dict[LegacyTradeStatus, TradeStatus] = {
        LegacyTradeStatus.PENDING: TradeStatus.OPEN,
        LegacyTradeStatus.ACCEPTED: TradeStatus.ACCEPTED,
        LegacyTradeStatus.ESCROW_PENDING: TradeStatus.ACCEPTED,
        LegacyTradeStatus.ESCROWED: TradeStatus.ESCROWED,
        LegacyTradeStatus.PAYMENT_PENDING: TradeStatus.ESCROWED,
        LegacyTradeStatus.PAYMENT_SENT: TradeStatus.PAYMENT_SENT,
        LegacyTradeStatus.PAYMENT_CONFIRMED: TradeStatus.PAYMENT_SENT,
        LegacyTradeStatus.RELEASING: TradeStatus.COMPLETED,
        LegacyTradeStatus.COMPLETED: TradeStatus.COMPLETED,
        LegacyTradeStatus.CANCELLED: TradeStatus.CANCELLED,
        LegacyTradeStatus.DISPUTED: TradeStatus.DISPUTED,
        LegacyTradeStatus.EXPIRED: TradeStatus.EXPIRED,
    }

    TRANSIENT_STATUSES = {
        LegacyTradeStatus.ESCROW_PENDING,
        LegacyTradeStatus.PAYMENT_PENDING,
        LegacyTradeStatus.PAYMENT_CONFIRMED,
        LegacyTradeStatus.RELEASING,
    }

    ACTION_TO_STATUS: Dict[str, TradeStatus] = {
        "accept": TradeStatus.ACCEPTED,
        "lock_escrow": TradeStatus.ESCROWED,
        "mark_paid": TradeStatus.PAYMENT_SENT,
        "confirm_and_release": TradeStatus.COMPLETED,
        "cancel": TradeStatus.CANCELLED,
        "dispute": TradeStatus.DISPUTED,
    }

    DISPLAY_NAMES: Dict[TradeStatus, str] = {
        TradeStatus.OPEN: "Open",
        TradeStatus.ACCEPTED: "Accepted",
        TradeStatus.ESCROWED: "Escrowed",
        TradeStatus.PAYMENT_SENT: "Payment Sent",
        TradeStatus.COMPLETED: "Completed",
        TradeStatus.CANCELLED: "Cancelled",
        TradeStatus.DISPUTED: "Disputed",
        TradeStatus.EXPIRED: "Expired",
    }

    CANONICAL_VALUES = {s.value for s in TradeStatus}

    @classmethod
    def _as_legacy(cls, status: Union[str, LegacyTradeStatus, TradeStatus]) -> Optional[LegacyTradeStatus]:
        if isinstance(status, LegacyTradeStatus):
            return status
        value = status.value if isinstance(status, TradeStatus) else status
        try:
            return LegacyTradeStatus(value)
        except ValueError:
            return None

    @classmethod
    def normalize(cls, status: Union[str, LegacyTradeStatus, TradeStatus]) -> TradeStatus:
        """
        Map any stored or incoming status value onto the canonical set.

        Raises:
            ValueError: If the value belongs to neither vocabulary
        """
        if isinstance(status, TradeStatus):
            return status
        if isinstance(status, str) and status in cls.CANONICAL_VALUES:
            return TradeStatus(status)

        legacy = cls._as_legacy(status)
        if legacy is None:
            logger.error(f"❌ UNKNOWN_STATUS: '{status}' is not a known trade status")
            raise ValueError(f"Unknown trade status: {status}")
        return cls.LEGACY_TO_CANONICAL[legacy]

    @classmethod
    def is_transient(cls, status: Union[str, LegacyTradeStatus]) -> bool:
        """True for collapsed intermediate statuses that exist only in historical data"""
        legacy = cls._as_legacy(status)
        return legacy in cls.TRANSIENT_STATUSES

    @classmethod
    def validate_status_write(cls, status: Union[str, LegacyTradeStatus, TradeStatus]) -> TradeStatus:
        """
        Gate for every status write. Returns the canonical status when the value may be
        persisted as-is.

        Raises:
            TransientStatusWriteError: For transient or legacy-only values
            ValueError: For values outside both vocabularies
        """
        if isinstance(status, TradeStatus):
            return status

        value = status.value if isinstance(status, LegacyTradeStatus) else status
        if value in cls.CANONICAL_VALUES:
            return TradeStatus(value)

        canonical = cls.normalize(value)
        transient = cls.is_transient(value)
        logger.warning(
            f"🚫 NON_CANONICAL_WRITE: refused '{value}' ({'transient' if transient else 'legacy'}), "
            f"canonical is '{canonical.value}'"
        )
        raise TransientStatusWriteError(value, canonical, transient=transient)

    @classmethod
    def expand_status(cls, status: Union[str, TradeStatus]) -> List[str]:
        """Every stored value that reads as the given canonical status (for query filters)"""
        canonical = cls.normalize(status)
        expanded = [legacy.value for legacy, target in cls.LEGACY_TO_CANONICAL.items() if target == canonical]
        if canonical.value not in expanded:
            expanded.insert(0, canonical.value)
        return expanded

    @classmethod
    def normalize_action(cls, action: str) -> Optional[TradeStatus]:
        """Map a client action name (accept, lock_escrow, ...) to its target status"""
        return cls.ACTION_TO_STATUS.get((action or "").strip().lower())

    @classmethod
    def denormalize(cls, status: Union[str, TradeStatus]) -> LegacyTradeStatus:
        """Canonical status as written by historical consumers that still speak the old vocabulary"""
        canonical = cls.normalize(status)
        if canonical == TradeStatus.OPEN:
            return LegacyTradeStatus.PENDING
        return LegacyTradeStatus(canonical.value)

    @classmethod
    def are_equivalent(cls, first: Union[str, TradeStatus], second: Union[str, TradeStatus]) -> bool:
        return cls.normalize(first) == cls.normalize(second)

    @classmethod
    def get_display_name(cls, status: Union[str, TradeStatus]) -> str:
        return cls.DISPLAY_NAMES[cls.normalize(status)]

    @classmethod
    def validate_mapping_completeness(cls) -> Dict[str, Any]:
        """
        Validate that every legacy status has a canonical mapping and every canonical
        status is reachable from at least one legacy status.
        """
        mapped = set(cls.LEGACY_TO_CANONICAL.keys())
        unmapped = [s.value for s in LegacyTradeStatus if s not in mapped]
        reached = set(cls.LEGACY_TO_CANONICAL.values())
        unreachable = [s.value for s in TradeStatus if s not in reached]

        report = {
            "validation_timestamp": get_naive_utc_now(),
            "total_legacy_statuses": len(LegacyTradeStatus),
            "mapped_statuses": len(mapped),
            "unmapped_statuses": unmapped,
            "unreachable_canonical_statuses": unreachable,
            "validation_passed": not unmapped and not unreachable,
        }

        if report["validation_passed"]:
            logger.info("✅ STATUS_MAPPING_COMPLETE: all legacy statuses map onto the canonical set")
        else:
            logger.error(f"❌ STATUS_MAPPING_GAPS: unmapped={unmapped} unreachable={unreachable}")

        return report
