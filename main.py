"""
Escrow ledger service entry point.
Builds the services around one session factory and one lock manager, creates
the schema, starts the event dispatcher and the background scheduler.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config, DisputeSettings, EscrowSettings, FraudThresholds, ReconciliationSettings
from database import AsyncSessionLocal, async_engine, create_tables, test_connection
from jobs.scheduler import LedgerScheduler
from services.atomic_lock_manager import AtomicLockManager
from services.audit_logger import AuditLogger
from services.dispute_resolution import DisputeEngine
from services.escrow_engine import EscrowEngine
from services.event_publisher import EventPublisher
from services.financial_reconciliation import ReconciliationService
from services.fraud_detection import AntiFraudGate
from services.settlement_client import InMemorySettlementLayer, SettlementClient
from services.trade_coordinator import TradeCoordinator

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """Wired service graph"""
    session_factory: async_sessionmaker
    settlement: Optional[SettlementClient]
    locks: AtomicLockManager
    publisher: EventPublisher
    audit: AuditLogger
    escrow: EscrowEngine
    reconciler: ReconciliationService
    fraud_gate: AntiFraudGate
    disputes: DisputeEngine
    trades: TradeCoordinator


def build_ledger(
    session_factory: Optional[async_sessionmaker] = None,
    settlement: Optional[SettlementClient] = None,
    escrow_settings: Optional[EscrowSettings] = None,
    reconciliation_settings: Optional[ReconciliationSettings] = None,
    fraud_thresholds: Optional[FraudThresholds] = None,
    dispute_settings: Optional[DisputeSettings] = None,
    audit_log_file: Optional[str] = None,
    keep_event_history: bool = False,
) -> Ledger:
    session_factory = session_factory or AsyncSessionLocal
    escrow_settings = escrow_settings or EscrowSettings.from_config()
    if escrow_settings.settlement_backed and settlement is None:
        logger.warning("⚠️ No settlement client configured, using the in-memory settlement layer")
        settlement = InMemorySettlementLayer()

    locks = AtomicLockManager(default_timeout=escrow_settings.lock_timeout)
    publisher = EventPublisher(keep_history=keep_event_history)
    audit = AuditLogger(log_file=audit_log_file)

    escrow = EscrowEngine(session_factory, settlement, locks, publisher, audit, escrow_settings)
    reconciler = ReconciliationService(
        session_factory, settlement, locks, publisher, audit,
        settings=reconciliation_settings,
        settlement_backed=escrow_settings.settlement_backed,
        lock_timeout=escrow_settings.lock_timeout,
    )
    escrow.attach_reconciler(reconciler)
    fraud_gate = AntiFraudGate(session_factory, thresholds=fraud_thresholds)
    disputes = DisputeEngine(session_factory, escrow, publisher, audit, settings=dispute_settings)
    trades = TradeCoordinator(session_factory, escrow, fraud_gate)

    return Ledger(session_factory, settlement, locks, publisher, audit,
                  escrow, reconciler, fraud_gate, disputes, trades)


async def run():
    Config.log_environment_config()

    if not await test_connection(async_engine):
        logger.error("❌ Database unreachable - exiting")
        return 1
    await create_tables(async_engine)

    ledger = build_ledger(audit_log_file=Config.AUDIT_LOG_FILE)
    ledger.publisher.start()

    scheduler = LedgerScheduler(ledger.reconciler, ledger.disputes, ledger.fraud_gate, ledger.trades)
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    logger.info("🚀 Escrow ledger running")
    await stop_event.wait()

    scheduler.stop()
    logger.info(f"📊 ESCROW_STATISTICS: {await ledger.escrow.get_statistics()} LOCKS: {ledger.locks.get_metrics()}")
    await ledger.publisher.stop()
    await async_engine.dispose()
    logger.info("👋 Escrow ledger stopped")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("👋 Escrow ledger stopped by user")
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)
