"""
Shared fixtures for the settlement core test suite

Key Components:
1. File-backed SQLite database per test (aiosqlite), schema from models.Base
2. Account / offer / trade factories
3. Services wired to the test session factory
4. Recording double for the reputation boundary

SQLite ignores FOR UPDATE, so lock contention is simulated by patching the lock helpers.
"""

import logging
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import Account, AccountType, Base, MerchantOffer, Trade, TradeType
from services.finalization_verifier import FinalizationVerifier
from services.trade_finalization_service import TradeFinalizationService
from services.trade_transition_service import TradeTransitionService
from tests.factories import RecordingReputationEmitter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> async_sessionmaker:
    """Fresh file-backed SQLite database with all tables"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/settlement_test.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def make_account(session_factory):
    async def _make(account_type: AccountType = AccountType.USER, balance="0", name: Optional[str] = None) -> Account:
        async with session_factory() as session:
            account = Account(
                account_type=account_type.value,
                display_name=name,
                asset="USDT",
                balance=Decimal(str(balance)),
            )
            session.add(account)
            await session.commit()
            return account
    return _make


@pytest_asyncio.fixture
async def user_account(make_account) -> Account:
    return await make_account(AccountType.USER, "1000", "taker")


@pytest_asyncio.fixture
async def merchant_account(make_account) -> Account:
    return await make_account(AccountType.MERCHANT, "1000", "maker")


@pytest_asyncio.fixture
async def merchant_offer(session_factory, merchant_account) -> MerchantOffer:
    async with session_factory() as session:
        offer = MerchantOffer(merchant_id=merchant_account.id, available_amount=Decimal("5000"), is_active=True)
        session.add(offer)
        await session.commit()
        return offer


@pytest.fixture
def reputation_emitter() -> RecordingReputationEmitter:
    return RecordingReputationEmitter()


@pytest.fixture
def finalization_service(session_factory) -> TradeFinalizationService:
    return TradeFinalizationService(session_factory, settlement_mode="simulated")


@pytest.fixture
def verifier(session_factory) -> FinalizationVerifier:
    return FinalizationVerifier(session_factory, settlement_mode="simulated")


@pytest.fixture
def transition_service(session_factory, finalization_service, verifier, reputation_emitter) -> TradeTransitionService:
    return TradeTransitionService(
        session_factory,
        finalization_service=finalization_service,
        verifier=verifier,
        reputation_emitter=reputation_emitter,
    )


@pytest_asyncio.fixture
async def buy_trade(transition_service, user_account, merchant_account, merchant_offer) -> Trade:
    """User buys 500 from the merchant's offer; the merchant funds escrow"""
    return await transition_service.create_trade(
        initiator_id=user_account.id,
        counterparty_id=merchant_account.id,
        amount=Decimal("500"),
        trade_type=TradeType.BUY,
        offer_id=merchant_offer.id,
        fiat_amount=Decimal("500"),
        fiat_currency="USD",
    )
