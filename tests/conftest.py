"""
Shared fixtures for the escrow ledger test suite.

Each test gets its own SQLite database (aiosqlite) in a temporary directory,
a fresh in-memory settlement layer and a fully wired service graph.
"""

import logging
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from config import DisputeSettings, EscrowSettings, FraudThresholds, ReconciliationSettings
from database import build_async_engine, build_session_factory
from main import build_ledger
from models import Account, Base, Moderator, Trade, TradeStatus, User
from services.settlement_client import InMemorySettlementLayer
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TOKEN = "CES"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def settlement():
    return InMemorySettlementLayer()


def fast_escrow_settings(settlement_backed: bool = True) -> EscrowSettings:
    return EscrowSettings(
        settlement_backed=settlement_backed,
        supported_tokens=["CES", "USDT"],
        settlement_timeout=0.5,
        max_attempts=3,
        initial_delay=0,
        max_delay=0,
        lock_timeout=2.0,
    )


@pytest.fixture
def reconciliation_settings():
    return ReconciliationSettings(
        epsilon=Decimal("0.0001"),
        high_severity_delta=Decimal("0.1"),
        orphan_grace_minutes=30,
        sweep_limit=100,
        auto_fix=True,
    )


@pytest.fixture
def ledger(session_factory, settlement, reconciliation_settings):
    """Settlement-backed service graph"""
    return build_ledger(
        session_factory=session_factory,
        settlement=settlement,
        escrow_settings=fast_escrow_settings(True),
        reconciliation_settings=reconciliation_settings,
        fraud_thresholds=FraudThresholds(),
        dispute_settings=DisputeSettings(),
        keep_event_history=True,
    )


@pytest.fixture
def local_ledger(session_factory, reconciliation_settings):
    """Local-only service graph: the ledger is the only custody record"""
    return build_ledger(
        session_factory=session_factory,
        settlement=None,
        escrow_settings=fast_escrow_settings(False),
        reconciliation_settings=reconciliation_settings,
        fraud_thresholds=FraudThresholds(),
        dispute_settings=DisputeSettings(),
        keep_event_history=True,
    )


class LedgerFactory:
    """Creates users, funded accounts, trades and moderators for a test"""

    def __init__(self, session_factory, settlement=None):
        self.session_factory = session_factory
        self.settlement = settlement

    async def user(self, age_days: float = 30, profile_complete: bool = True, wallet: bool = True,
                   name: str = "trader") -> User:
        async with self.session_factory() as session:
            user = User(
                display_name=name,
                p2p_profile_complete=profile_complete,
                created_at=get_naive_utc_now() - timedelta(days=age_days),
            )
            session.add(user)
            await session.flush()
            if wallet:
                user.wallet_address = f"wallet-{user.id}"
            await session.commit()
            return user

    async def account(self, user: User, available="0", escrowed="0", token: str = TOKEN,
                      fund_settlement: bool = True) -> Account:
        available, escrowed = Decimal(str(available)), Decimal(str(escrowed))
        async with self.session_factory() as session:
            account = Account(user_id=user.id, token=token, available=available, escrowed=escrowed)
            session.add(account)
            await session.commit()
        if self.settlement is not None and fund_settlement and user.wallet_address:
            self.settlement.set_balance(user.wallet_address, token, available)
        return account

    async def trade(self, seller: User, buyer: User, amount="100", price="1", token: str = TOKEN,
                    status: str = TradeStatus.ESCROW_LOCKED.value, expires_at=None) -> Trade:
        now = get_naive_utc_now()
        async with self.session_factory() as session:
            trade = Trade(
                token=token, amount=Decimal(str(amount)), price=Decimal(str(price)),
                maker_id=seller.id, taker_id=buyer.id,
                maker_created_at=now, taker_created_at=now,
                buyer_id=buyer.id, seller_id=seller.id, status=status, expires_at=expires_at,
            )
            session.add(trade)
            await session.commit()
            return trade

    async def moderator(self, tier: int = 1, specializations=None, online: bool = True,
                        workload: int = 0, name: str = "mod") -> Moderator:
        async with self.session_factory() as session:
            moderator = Moderator(
                name=name, tier=tier, specializations=list(specializations or []),
                is_active=True, is_online=online, current_workload=workload,
            )
            session.add(moderator)
            await session.commit()
            return moderator

    async def reload(self, model, pk):
        async with self.session_factory() as session:
            return await session.get(model, pk)


@pytest.fixture
def factory(session_factory, settlement):
    return LedgerFactory(session_factory, settlement)


@pytest.fixture
def local_factory(session_factory):
    return LedgerFactory(session_factory, None)
