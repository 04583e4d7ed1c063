"""Background job scheduler for the escrow ledger: reconciliation sweeps, dispute escalation and trade timeouts"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.dispute_resolution import DisputeEngine
from services.financial_reconciliation import ReconciliationService
from services.fraud_detection import AntiFraudGate
from services.trade_coordinator import TradeCoordinator

logger = logging.getLogger(__name__)


class LedgerScheduler:
    """Periodic ledger maintenance; every job runs as a single instance with coalescing"""

    def __init__(
        self,
        reconciler: ReconciliationService,
        disputes: DisputeEngine,
        fraud_gate: Optional[AntiFraudGate] = None,
        trades: Optional[TradeCoordinator] = None,
        reconciliation_minutes: Optional[int] = None,
        escalation_minutes: Optional[int] = None,
        timeout_check_minutes: Optional[int] = None,
    ):
        self.reconciler = reconciler
        self.disputes = disputes
        self.fraud_gate = fraud_gate
        self.trades = trades
        self.reconciliation_minutes = reconciliation_minutes or Config.RECONCILIATION_INTERVAL_MINUTES
        self.escalation_minutes = escalation_minutes or Config.DISPUTE_ESCALATION_CHECK_MINUTES
        self.timeout_check_minutes = timeout_check_minutes or Config.TRADE_TIMEOUT_CHECK_MINUTES

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    def setup_jobs(self):
        """Register all jobs; safe to call again after a reload"""
        for job_id in ("reconciliation_sweep", "dispute_escalation", "fraud_counter_cleanup", "trade_timeouts"):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job before re-registering")

        self.reconciler.run_periodically(self.reconciliation_minutes, scheduler=self.scheduler)

        self.scheduler.add_job(
            self.escalate_overdue_disputes,
            trigger=IntervalTrigger(minutes=self.escalation_minutes),
            id="dispute_escalation",
            name="Escalate Overdue Disputes",
            max_instances=1,
            coalesce=True,
        )

        if self.fraud_gate is not None:
            self.scheduler.add_job(
                self.evict_fraud_counters,
                trigger=IntervalTrigger(minutes=10),
                id="fraud_counter_cleanup",
                name="Evict Expired Fraud Counters",
                max_instances=1,
                coalesce=True,
            )

        if self.trades is not None:
            self.scheduler.add_job(
                self.expire_trades,
                trigger=IntervalTrigger(minutes=self.timeout_check_minutes),
                id="trade_timeouts",
                name="Close Expired Trades",
                max_instances=1,
                coalesce=True,
            )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.warning(f"✅ Ledger scheduler started with jobs: {[job.id for job in jobs]}")
        for job in jobs:
            logger.info(f"🔮 {job.name} ({job.id}) next run at {job.next_run_time}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Ledger scheduler stopped")

    async def escalate_overdue_disputes(self):
        try:
            escalated = await self.disputes.process_due_escalations()
            if escalated:
                logger.warning(f"⏫ SCHEDULER: escalated disputes {escalated}")
        except Exception as e:
            logger.error(f"❌ SCHEDULER: dispute escalation job failed: {e}")

    async def expire_trades(self):
        try:
            await self.trades.expire_trades()
        except Exception as e:
            logger.error(f"❌ SCHEDULER: trade timeout job failed: {e}")

    async def evict_fraud_counters(self):
        removed = self.fraud_gate.counters.evict_expired()
        if removed:
            logger.debug(f"🧹 SCHEDULER: evicted {removed} expired fraud counters")
