"""
Trade State Transition Validator
================================

Pure, I/O-free rules for the canonical trade lifecycle. Every status change in the
system is checked here twice: once optimistically by the entry point and once
authoritatively against the row-locked trade inside the finalization transaction.

Lifecycle:
    open -> accepted -> escrowed -> payment_sent -> completed
    with cancelled / expired / disputed exits along the way.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Union

from models import ActorType, TradeStatus

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is applied directly to a trade object"""
    pass


# Validation failure kinds; values line up with the finalization error taxonomy
ALREADY_TERMINAL = "ALREADY_TERMINAL"
INVALID_TRANSITION = "INVALID_TRANSITION"
ROLE_NOT_PERMITTED = "ROLE_NOT_PERMITTED"

PARTIES: FrozenSet[ActorType] = frozenset({ActorType.USER, ActorType.MERCHANT})
PARTIES_OR_SYSTEM: FrozenSet[ActorType] = frozenset({ActorType.USER, ActorType.MERCHANT, ActorType.SYSTEM})
COUNTERPARTY_ONLY: FrozenSet[ActorType] = frozenset({ActorType.MERCHANT})
SYSTEM_ONLY: FrozenSet[ActorType] = frozenset({ActorType.SYSTEM})


@dataclass(frozen=True)
class TransitionDecision:
    """Outcome of a transition check"""
    allowed: bool
    reason: str
    legal_targets: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    def __bool__(self):
        return self.allowed


class TradeStateValidator:
    """
    Validates trade state transitions against the static adjacency map.

    Check order (first failure wins):
    1. requested == current            -> rejected, a no-op is not a transition
    2. current is terminal             -> rejected
    3. requested not adjacent          -> rejected, legal targets listed
    4. actor not in the entry's roles  -> rejected
    """

    VALID_TRANSITIONS: Dict[TradeStatus, Dict[TradeStatus, FrozenSet[ActorType]]] = {
        TradeStatus.OPEN: {
            TradeStatus.ACCEPTED: COUNTERPARTY_ONLY,
            TradeStatus.ESCROWED: PARTIES_OR_SYSTEM,
            TradeStatus.CANCELLED: PARTIES_OR_SYSTEM,
            TradeStatus.EXPIRED: SYSTEM_ONLY,
        },
        TradeStatus.ACCEPTED: {
            TradeStatus.ESCROWED: PARTIES_OR_SYSTEM,
            TradeStatus.PAYMENT_SENT: PARTIES,
            TradeStatus.CANCELLED: PARTIES_OR_SYSTEM,
            TradeStatus.EXPIRED: SYSTEM_ONLY,
        },
        TradeStatus.ESCROWED: {
            # Re-acceptance path for multi-party trades
            TradeStatus.ACCEPTED: COUNTERPARTY_ONLY,
            TradeStatus.PAYMENT_SENT: PARTIES,
            TradeStatus.COMPLETED: PARTIES_OR_SYSTEM,
            TradeStatus.CANCELLED: PARTIES_OR_SYSTEM,
            TradeStatus.DISPUTED: PARTIES,
            TradeStatus.EXPIRED: SYSTEM_ONLY,
        },
        TradeStatus.PAYMENT_SENT: {
            TradeStatus.COMPLETED: PARTIES_OR_SYSTEM,
            TradeStatus.DISPUTED: PARTIES,
            TradeStatus.EXPIRED: SYSTEM_ONLY,
        },
        # Only arbitration (system) resolves a dispute
        TradeStatus.DISPUTED: {
            TradeStatus.COMPLETED: SYSTEM_ONLY,
            TradeStatus.CANCELLED: SYSTEM_ONLY,
        },
        TradeStatus.COMPLETED: {},
        TradeStatus.CANCELLED: {},
        TradeStatus.EXPIRED: {},
    }

    TERMINAL_STATES: Set[TradeStatus] = {
        TradeStatus.COMPLETED,
        TradeStatus.CANCELLED,
        TradeStatus.EXPIRED,
    }

    # Leaving these for cancelled/expired gives the amount back to the offer
    RESTORE_LIQUIDITY_ON_EXIT: Set[TradeStatus] = {
        TradeStatus.OPEN,
        TradeStatus.ACCEPTED,
    }

    TIMESTAMP_FIELDS: Dict[TradeStatus, str] = {
        TradeStatus.ACCEPTED: "accepted_at",
        TradeStatus.ESCROWED: "escrowed_at",
        TradeStatus.PAYMENT_SENT: "payment_sent_at",
        TradeStatus.COMPLETED: "completed_at",
        TradeStatus.CANCELLED: "cancelled_at",
        TradeStatus.DISPUTED: "disputed_at",
        TradeStatus.EXPIRED: "expired_at",
    }

    @staticmethod
    def _as_status(value: Union[TradeStatus, str]) -> TradeStatus:
        return value if isinstance(value, TradeStatus) else TradeStatus(value)

    @staticmethod
    def _as_actor(value: Union[ActorType, str]) -> ActorType:
        return value if isinstance(value, ActorType) else ActorType(value)

    @classmethod
    def validate(
        cls,
        current: Union[TradeStatus, str],
        requested: Union[TradeStatus, str],
        actor_type: Union[ActorType, str],
        trade_id: Optional[int] = None,
    ) -> TransitionDecision:
        """
        Validate a requested transition.

        Args:
            current: Status read from the trade
            requested: Status the actor wants
            actor_type: Role of the requester
            trade_id: Trade id for logging (optional)

        Returns:
            TransitionDecision with a readable reason and, on rejection, the legal targets
        """
        current = cls._as_status(current)
        requested = cls._as_status(requested)
        actor = cls._as_actor(actor_type)
        trade_ref = f"Trade {trade_id}" if trade_id is not None else "Trade"
        legal_targets = [s.value for s in cls.VALID_TRANSITIONS[current]]

        if current == requested:
            return TransitionDecision(
                allowed=False,
                reason=f"Order is already in '{current.value}' status",
                legal_targets=legal_targets,
                error_kind=INVALID_TRANSITION,
            )

        if current in cls.TERMINAL_STATES:
            logger.warning(
                f"🚫 TERMINAL_STATE: {trade_ref} {current.value} -> {requested.value} refused"
            )
            return TransitionDecision(
                allowed=False,
                reason=f"Cannot transition from terminal status '{current.value}'",
                legal_targets=[],
                error_kind=ALREADY_TERMINAL,
            )

        allowed_roles = cls.VALID_TRANSITIONS[current].get(requested)
        if allowed_roles is None:
            logger.error(
                f"❌ INVALID_TRANSITION: {trade_ref} {current.value} -> {requested.value} "
                f"Valid options: {legal_targets}"
            )
            return TransitionDecision(
                allowed=False,
                reason=(
                    f"Transition from '{current.value}' to '{requested.value}' is not allowed. "
                    f"Allowed targets: {', '.join(legal_targets) or 'none'}"
                ),
                legal_targets=legal_targets,
                error_kind=INVALID_TRANSITION,
            )

        if actor not in allowed_roles:
            logger.error(
                f"❌ ROLE_NOT_PERMITTED: {trade_ref} {current.value} -> {requested.value} "
                f"by {actor.value}, allowed: {sorted(r.value for r in allowed_roles)}"
            )
            return TransitionDecision(
                allowed=False,
                reason=(
                    f"Actor type '{actor.value}' is not allowed to transition from "
                    f"'{current.value}' to '{requested.value}'"
                ),
                legal_targets=legal_targets,
                error_kind=ROLE_NOT_PERMITTED,
            )

        logger.info(f"✅ VALID_TRANSITION: {trade_ref} {current.value} -> {requested.value} by {actor.value}")
        return TransitionDecision(allowed=True, reason="Valid state transition", legal_targets=legal_targets)

    @classmethod
    def validate_timeout_escalation(
        cls,
        current: Union[TradeStatus, str],
        actor_type: Union[ActorType, str],
        has_escrow: bool,
        trade_id: Optional[int] = None,
    ) -> TransitionDecision:
        """
        Rule used only by the expiry worker: a trade holding escrowed funds (or a
        claimed fiat payment) that runs out of time goes to disputed, never to cancelled.

        Kept apart from VALID_TRANSITIONS so the parties' table stays exactly as
        documented (parties cannot dispute from accepted).
        """
        current = cls._as_status(current)
        actor = cls._as_actor(actor_type)
        trade_ref = f"Trade {trade_id}" if trade_id is not None else "Trade"

        if actor != ActorType.SYSTEM:
            return TransitionDecision(
                allowed=False,
                reason=f"Actor type '{actor.value}' cannot escalate a timed out trade",
                error_kind=ROLE_NOT_PERMITTED,
            )
        if current in cls.TERMINAL_STATES:
            return TransitionDecision(
                allowed=False,
                reason=f"Cannot transition from terminal status '{current.value}'",
                error_kind=ALREADY_TERMINAL,
            )
        if current == TradeStatus.DISPUTED:
            return TransitionDecision(
                allowed=False,
                reason="Order is already in 'disputed' status",
                error_kind=INVALID_TRANSITION,
            )
        # payment_sent without escrow still carries a fiat payment claim
        if not has_escrow and current != TradeStatus.PAYMENT_SENT:
            return TransitionDecision(
                allowed=False,
                reason=f"{trade_ref} holds no escrow, timeout must cancel or expire instead",
                error_kind=INVALID_TRANSITION,
            )

        logger.info(f"⚠️ TIMEOUT_ESCALATION: {trade_ref} {current.value} -> disputed")
        return TransitionDecision(allowed=True, reason="Timed out with funds locked, escalating to dispute")

    @classmethod
    def validate_and_transition(cls, trade, new_status: TradeStatus, actor_type: ActorType) -> TransitionDecision:
        """
        Validate and apply a status change to an in-memory trade object.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        decision = cls.validate(trade.status, new_status, actor_type, getattr(trade, "id", None))
        if not decision.allowed:
            raise StateTransitionError(f"State transition validation failed: {decision.reason}")
        trade.status = new_status.value
        return decision

    @classmethod
    def get_valid_next_states(cls, current_status: Union[TradeStatus, str]) -> Set[TradeStatus]:
        """Get all valid next states from the current status"""
        return set(cls.VALID_TRANSITIONS[cls._as_status(current_status)])

    @classmethod
    def is_terminal_state(cls, status: Union[TradeStatus, str]) -> bool:
        """Check if the status is a terminal state"""
        return cls._as_status(status) in cls.TERMINAL_STATES

    @classmethod
    def should_restore_liquidity(
        cls, from_status: Union[TradeStatus, str], to_status: Union[TradeStatus, str], has_escrow: bool = False
    ) -> bool:
        """True when an un-escrowed trade dies and its amount goes back to the offer"""
        from_status = cls._as_status(from_status)
        to_status = cls._as_status(to_status)
        return (
            from_status in cls.RESTORE_LIQUIDITY_ON_EXIT
            and to_status in (TradeStatus.CANCELLED, TradeStatus.EXPIRED)
            and not has_escrow
        )

    @classmethod
    def get_timestamp_field(cls, status: Union[TradeStatus, str]) -> Optional[str]:
        return cls.TIMESTAMP_FIELDS.get(cls._as_status(status))

    @staticmethod
    def get_transition_event_type(to_status: Union[TradeStatus, str]) -> str:
        value = to_status.value if isinstance(to_status, TradeStatus) else to_status
        return f"status_changed_to_{value}"
