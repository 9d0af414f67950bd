"""
P2P Trade Settlement - Database Schema
======================================

Schema for the settlement core of a peer-to-peer crypto/fiat marketplace:
- Trades (the aggregate root) moving through the canonical 8-state lifecycle
- Account balances for users and merchants, plus a platform account collecting fees
- Append-only ledger of every balance mutation
- Append-only audit trail of every attempted transition
- Notification outbox written in the same transaction as each status change
- Merchant offers whose liquidity is restored when an un-escrowed trade dies

All timestamps are naive UTC (see utils.datetime_helpers).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Money columns: up to 18 decimals for every supported asset
Money = Numeric(38, 18)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TradeStatus(Enum):
    """Canonical trade lifecycle (the only values ever written to trades.status)"""
    OPEN = "open"
    ACCEPTED = "accepted"
    ESCROWED = "escrowed"
    PAYMENT_SENT = "payment_sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class LegacyTradeStatus(Enum):
    """Historical 12-value vocabulary still present in old rows and old clients"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    ESCROW_PENDING = "escrow_pending"
    ESCROWED = "escrowed"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RELEASING = "releasing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class ActorType(Enum):
    """Who is asking for a transition"""
    USER = "user"          # trade initiator
    MERCHANT = "merchant"  # counterparty (offer owner)
    SYSTEM = "system"      # reconciliation worker, arbitration tooling


class TradeType(Enum):
    """Trade direction from the initiator's point of view"""
    BUY = "buy"
    SELL = "sell"


class AccountType(Enum):
    USER = "user"
    MERCHANT = "merchant"
    PLATFORM = "platform"  # collected fees, one account per asset


class LedgerEntryType(Enum):
    """Kinds of balance mutation recorded in the ledger"""
    ESCROW_LOCK = "ESCROW_LOCK"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    ESCROW_REFUND = "ESCROW_REFUND"
    FEE = "FEE"


class OutboxStatus(Enum):
    """Delivery state of a notification outbox row"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxEventType(Enum):
    """Notification event types, one per status a trade can enter"""
    ORDER_ACCEPTED = "ORDER_ACCEPTED"
    ORDER_ESCROWED = "ORDER_ESCROWED"
    ORDER_PAYMENT_SENT = "ORDER_PAYMENT_SENT"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_DISPUTED = "ORDER_DISPUTED"
    ORDER_EXPIRED = "ORDER_EXPIRED"

    @classmethod
    def for_status(cls, status: TradeStatus) -> "OutboxEventType":
        return cls[f"ORDER_{status.name}"]


# ============================================================================
# MODELS
# ============================================================================

class Account(Base):
    """Single-asset balance for a user, a merchant or the platform"""
    __tablename__ = 'accounts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    asset: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    balance: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_account_balance_positive'),
        CheckConstraint("account_type IN ('user', 'merchant', 'platform')", name='ck_account_type'),
        Index('ix_accounts_type', 'account_type'),
        Index(
            'uq_accounts_platform_asset', 'asset', unique=True,
            postgresql_where=text("account_type = 'platform'"),
            sqlite_where=text("account_type = 'platform'"),
        ),
    )

    def __repr__(self):
        return f"<Account(id={self.id}, type={self.account_type}, balance={self.balance} {self.asset})>"


class MerchantOffer(Base):
    """Merchant liquidity advertised to takers"""
    __tablename__ = 'merchant_offers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)
    available_amount: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('available_amount >= 0', name='ck_offer_available_positive'),
    )

    def __repr__(self):
        return f"<MerchantOffer(id={self.id}, merchant={self.merchant_id}, available={self.available_amount})>"


class Trade(Base):
    """One P2P exchange between an initiator and a counterparty"""
    __tablename__ = 'trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_ref = Column(String(36), unique=True, nullable=False, index=True,
                       default=lambda: uuid.uuid4().hex[:16].upper())  # Public facing ID

    # Parties
    trade_type = Column(String(10), nullable=False)  # buy / sell, initiator's view
    initiator_id = Column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)  # user
    counterparty_id = Column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)  # merchant
    buyer_merchant_id = Column(Integer, ForeignKey('accounts.id'), nullable=True)  # M2M buyer
    offer_id = Column(Integer, ForeignKey('merchant_offers.id'), nullable=True)

    # Lifecycle
    status = Column(String(20), default=TradeStatus.OPEN.value, nullable=False)
    version = Column(Integer, default=1, nullable=False)

    # Money
    amount = Column(Numeric(38, 18), nullable=False)
    asset = Column(String(10), nullable=False, default="USDT")
    fiat_amount = Column(Numeric(20, 2), nullable=True)
    fiat_currency = Column(String(10), nullable=True)
    fee_percentage = Column(Numeric(5, 2), nullable=True)  # None = platform default

    # Escrow proofs (already verified by the external attestation layer)
    escrow_reference = Column(String(255), nullable=True)
    release_reference = Column(String(255), nullable=True)
    refund_reference = Column(String(255), nullable=True)

    # Recorded at the moment of debit, never re-derived
    debited_party_type = Column(String(20), nullable=True)
    debited_party_id = Column(Integer, nullable=True)
    debited_amount = Column(Numeric(38, 18), nullable=True)
    debited_at = Column(DateTime, nullable=True)

    # Deadline for the current status (None = no deadline)
    expires_at = Column(DateTime, nullable=True)

    # Phase timestamps
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    escrowed_at = Column(DateTime, nullable=True)
    payment_sent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'accepted', 'escrowed', 'payment_sent', "
            "'completed', 'cancelled', 'disputed', 'expired')",
            name='ck_trade_status_canonical'
        ),
        CheckConstraint("trade_type IN ('buy', 'sell')", name='ck_trade_type'),
        CheckConstraint('version >= 1', name='ck_trade_version_positive'),
        CheckConstraint('amount > 0', name='ck_trade_amount_positive'),
        Index('ix_trades_status_expires', 'status', 'expires_at'),
    )

    @property
    def has_escrow(self) -> bool:
        return bool(self.escrow_reference)

    @property
    def is_merchant_to_merchant(self) -> bool:
        return self.buyer_merchant_id is not None

    def __repr__(self):
        return f"<Trade(id={self.id}, ref={self.trade_ref}, status={self.status}, version={self.version})>"


class LedgerEntry(Base):
    """Immutable record of one balance mutation"""
    __tablename__ = 'ledger_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_type = Column(String(20), nullable=False)
    account_id = Column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)
    entry_type = Column(String(30), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)  # signed: negative = debit
    asset = Column(String(10), nullable=False, default="USDT")
    trade_id = Column(Integer, ForeignKey('trades.id'), nullable=True, index=True)
    related_reference = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    balance_before = Column(Numeric(38, 18), nullable=False)
    balance_after = Column(Numeric(38, 18), nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('ESCROW_LOCK', 'ESCROW_RELEASE', 'ESCROW_REFUND', 'FEE')",
            name='ck_ledger_entry_type'
        ),
        Index('ix_ledger_account_created', 'account_id', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<LedgerEntry(id={self.id}, {self.entry_type} {self.amount} {self.asset} "
            f"account={self.account_type}:{self.account_id}, trade={self.trade_id})>"
        )


class TradeEvent(Base):
    """Append-only audit trail of attempted and successful transitions"""
    __tablename__ = 'trade_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    trade_id = Column(Integer, ForeignKey('trades.id'), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    actor_type = Column(String(20), nullable=False)
    actor_id = Column(String(64), nullable=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    succeeded = Column(Boolean, nullable=False, default=True)
    event_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    def __repr__(self):
        return (
            f"<TradeEvent(trade={self.trade_id}, {self.old_status} -> {self.new_status}, "
            f"actor={self.actor_type}, ok={self.succeeded})>"
        )


class NotificationOutbox(Base):
    """Notification written with each status change, drained by the outbox relay"""
    __tablename__ = 'notification_outbox'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    trade_id = Column(Integer, ForeignKey('trades.id'), nullable=False, index=True)
    payload = Column(JSONType, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'sent', 'failed')",
            name='ck_outbox_status'
        ),
        Index('ix_outbox_status_created', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<NotificationOutbox(id={self.id}, {self.event_type} trade={self.trade_id}, status={self.status})>"
