#!/usr/bin/env python3
"""
Financial Reconciliation Service
Dual-ledger balance validation: local Account rows against the settlement layer.

Discrepancy classes:
    drift            |actual - expected| > epsilon      auto-fix: available := actual
    negative-escrow  escrowed < 0                       auto-fix: escrowed := 0, available += |escrowed|
    orphaned-lock    custody stuck past the grace period  never auto-fixed, operator case opened

A lock is orphaned when it stayed lock_pending, when its trade is gone or
closed, or when its trade outlived the payment window by the grace period
(the trade-timeout job should have refunded or released it by then).

Accounts under a ManualOverride policy are only reported. In local-only mode
the local ledger is authoritative, so drift is not evaluated.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config, ReconciliationSettings
from database import async_managed_session
from models import (
    Account, EscrowRecord, EscrowState, ManualOverridePolicy, NormalPolicy,
    ReconciliationLog, ReconciliationPolicy, Trade, TradeStatus, User,
)
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, account_lock_key
from services.audit_logger import AuditLogger
from services.event_publisher import EventPublisher, ManualInterventionNeeded, ReconciliationFixed
from services.exceptions import ConcurrencyConflict, SettlementFailure
from services.ledger_store import LedgerStore, ZERO
from services.retry_service import RETRY_STRATEGIES, RetryService
from services.settlement_client import SettlementClient, TransientSettlementError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class Classification(Enum):
    NONE = "none"
    DRIFT = "drift"
    NEGATIVE_ESCROW = "negative-escrow"
    ORPHANED_LOCK = "orphaned-lock"


class CorrectiveAction(Enum):
    AUTO_FIXED = "auto_fixed"
    REPORTED = "reported"
    SKIPPED_PROTECTED = "skipped_protected"
    MANUAL_INTERVENTION = "manual_intervention"


@dataclass
class ReconciliationDiscrepancy:
    """One problem found on an account"""

    classification: str
    severity: str  # 'medium', 'high'
    description: str
    corrective_action: str
    before: Dict[str, str]
    after: Optional[Dict[str, str]] = None
    record_id: Optional[int] = None


@dataclass
class ReconciliationReport:
    """Result of validating one account"""

    account_id: int
    user_id: int
    token: str
    expected: Decimal
    actual: Decimal
    delta: Decimal
    classification: str = Classification.NONE.value
    issues: List[ReconciliationDiscrepancy] = field(default_factory=list)
    fixes_applied: int = 0
    protected: bool = False
    checked_at: datetime = field(default_factory=get_naive_utc_now)

    @property
    def has_issues(self) -> bool:
        return bool(self.issues)

    def classifications(self) -> List[str]:
        return [issue.classification for issue in self.issues]


@dataclass
class SweepSummary:
    """Counts for a validate_all pass"""

    accounts_checked: int = 0
    accounts_with_issues: int = 0
    issues_found: int = 0
    fixes_applied: int = 0
    failures: int = 0
    busy: int = 0
    skipped: bool = False
    duration_ms: int = 0
    reports: List[ReconciliationReport] = field(default_factory=list)


class ReconciliationService:
    """Keeps the local ledger and the settlement layer in agreement"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settlement: Optional[SettlementClient],
        lock_manager: AtomicLockManager,
        publisher: EventPublisher,
        audit: AuditLogger,
        settings: Optional[ReconciliationSettings] = None,
        settlement_backed: Optional[bool] = None,
        lock_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.settlement = settlement
        self.locks = lock_manager
        self.publisher = publisher
        self.audit = audit
        self.settings = settings or ReconciliationSettings.from_config()
        self.settlement_backed = Config.SETTLEMENT_BACKED_MODE if settlement_backed is None else settlement_backed
        self.lock_timeout = lock_timeout
        self._sweep_lock = asyncio.Lock()
        self.last_summary: Optional[SweepSummary] = None

        if self.settlement_backed and settlement is None:
            raise ValueError("settlement-backed reconciliation requires a SettlementClient")

    # ------------------------------------------------------------ severity

    def _drift_severity(self, delta: Decimal) -> str:
        return "high" if abs(delta) > self.settings.high_severity_delta else "medium"

    async def _external_balance(self, wallet_ref: str, token: str) -> Decimal:
        strategy = RETRY_STRATEGIES['balance_query']
        try:
            return await RetryService.retry_async(
                lambda: self.settlement.get_balance(wallet_ref, token),
                max_attempts=strategy['max_attempts'],
                initial_delay=strategy['initial_delay'],
                max_delay=strategy['max_delay'],
                jitter=False,
                exceptions=(TransientSettlementError, asyncio.TimeoutError),
                attempt_timeout=Config.SETTLEMENT_TIMEOUT_SECONDS,
                operation_name="settlement.get_balance",
            )
        except (TransientSettlementError, asyncio.TimeoutError) as e:
            raise SettlementFailure(f"Balance query for {wallet_ref} failed: {e!r}", transient=True) from e

    # -------------------------------------------------------------- checks

    async def validate_account(
        self,
        account_id: int,
        auto_fix: Optional[bool] = None,
        check_orphans: bool = True,
        trigger: str = "manual",
    ) -> ReconciliationReport:
        """
        Compare one account with the settlement layer and apply the corrective policy.

        Holds the same per-account exclusion as the escrow engine, which keeps
        it across the settlement round-trip: an account with an escrow operation
        in flight is checked only once that operation has committed or rolled back.
        """
        auto_fix = self.settings.auto_fix if auto_fix is None else auto_fix
        events = []

        async with self.locks.acquire(
            account_lock_key(account_id),
            operation_type=LockOperationType.RECONCILIATION,
            timeout_seconds=self.lock_timeout,
        ):
            async with async_managed_session(self.session_factory) as session:
                account = await LedgerStore.get_account(session, account_id, for_update=True)
                policy = account.reconciliation_policy
                expected = Decimal(account.available)
                actual = expected

                if self.settlement_backed:
                    user = await session.get(User, account.user_id)
                    if user is not None and user.wallet_address:
                        actual = Decimal(await self._external_balance(user.wallet_address, account.token))
                    else:
                        logger.warning(f"⚠️ RECONCILIATION_NO_WALLET: account {account_id} has no settlement wallet")

                report = ReconciliationReport(
                    account_id=account.id, user_id=account.user_id, token=account.token,
                    expected=expected, actual=actual, delta=actual - expected,
                    protected=policy.protected,
                )

                await self._check_drift(session, account, report, policy, auto_fix, events)
                await self._check_negative_escrow(account, report, policy, auto_fix, events)
                if check_orphans:
                    await self._check_orphaned_locks(session, account, report, events)

                if report.issues:
                    report.classification = report.issues[0].classification
                    await self._persist(session, account, report, trigger)

        for event in events:
            self.publisher.publish(event)

        if report.has_issues:
            logger.warning(
                f"⚖️ RECONCILIATION_ISSUES: account={account_id} token={report.token} "
                f"{report.classifications()} fixes={report.fixes_applied} trigger={trigger}"
            )
        else:
            logger.debug(f"✅ RECONCILIATION_OK: account={account_id} trigger={trigger}")
        return report

    async def _check_drift(self, session, account, report, policy, auto_fix, events):
        if not self.settlement_backed or abs(report.delta) <= self.settings.epsilon:
            return

        before = account.snapshot()
        issue = ReconciliationDiscrepancy(
            classification=Classification.DRIFT.value,
            severity=self._drift_severity(report.delta),
            description=f"Local available {report.expected} vs settlement {report.actual} (delta {report.delta})",
            corrective_action=CorrectiveAction.REPORTED.value,
            before=before,
        )
        if policy.protected:
            issue.corrective_action = CorrectiveAction.SKIPPED_PROTECTED.value
        elif auto_fix:
            account.available = report.actual
            account.updated_at = get_naive_utc_now()
            issue.corrective_action = CorrectiveAction.AUTO_FIXED.value
            issue.after = account.snapshot()
            report.fixes_applied += 1
            events.append(ReconciliationFixed(
                account_id=account.id, classification=issue.classification,
                before=before, after=issue.after,
            ))
            logger.warning(
                f"🔧 RECONCILIATION_FIX: account={account.id} drift {report.delta}, "
                f"available {before['available']} -> {issue.after['available']}"
            )
        report.issues.append(issue)

    async def _check_negative_escrow(self, account, report, policy, auto_fix, events):
        if account.escrowed >= ZERO:
            return

        before = account.snapshot()
        shortfall = -Decimal(account.escrowed)
        issue = ReconciliationDiscrepancy(
            classification=Classification.NEGATIVE_ESCROW.value,
            severity="high",
            description=f"Escrowed balance is negative ({account.escrowed})",
            corrective_action=CorrectiveAction.REPORTED.value,
            before=before,
        )
        if policy.protected:
            issue.corrective_action = CorrectiveAction.SKIPPED_PROTECTED.value
        elif auto_fix:
            account.escrowed = ZERO
            account.available = Decimal(account.available) + shortfall
            account.updated_at = get_naive_utc_now()
            issue.corrective_action = CorrectiveAction.AUTO_FIXED.value
            issue.after = account.snapshot()
            report.fixes_applied += 1
            events.append(ReconciliationFixed(
                account_id=account.id, classification=issue.classification,
                before=before, after=issue.after,
            ))
            logger.warning(f"🔧 RECONCILIATION_FIX: account={account.id} negative escrow {before['escrowed']} reset")
        report.issues.append(issue)

    async def _check_orphaned_locks(self, session: AsyncSession, account, report, events):
        cutoff = get_naive_utc_now() - timedelta(minutes=self.settings.orphan_grace_minutes)
        closed = (TradeStatus.COMPLETED.value, TradeStatus.CANCELLED.value, TradeStatus.FAILED.value)
        awaiting_payment = (TradeStatus.ESCROW_LOCKED.value, TradeStatus.PAYMENT_CONFIRMED.value)
        result = await session.execute(
            select(EscrowRecord, Trade)
            .outerjoin(Trade, Trade.id == EscrowRecord.trade_id)
            .where(
                EscrowRecord.owner_account_id == account.id,
                EscrowRecord.updated_at < cutoff,
                or_(
                    EscrowRecord.state == EscrowState.LOCK_PENDING.value,
                    and_(
                        EscrowRecord.state == EscrowState.LOCKED.value,
                        or_(
                            Trade.id.is_(None),
                            Trade.status.in_(closed),
                            and_(Trade.status.in_(awaiting_payment), Trade.expires_at < cutoff),
                        ),
                    ),
                ),
            )
        )
        for record, trade in result.all():
            reason = (
                f"Escrow record {record.id} (trade {record.trade_id}) has been {record.state} "
                f"since {record.updated_at.isoformat()}"
                + (f" while the trade is {trade.status}" if trade is not None else " with no trade")
                + (" past its payment window"
                   if trade is not None and trade.status in awaiting_payment and trade.is_expired(cutoff) else "")
            )
            intervention = await self.audit.open_manual_intervention(
                session, "escrow_record", record.id, reason, actor="reconciliation",
            )
            report.issues.append(ReconciliationDiscrepancy(
                classification=Classification.ORPHANED_LOCK.value,
                severity="high",
                description=reason,
                corrective_action=CorrectiveAction.MANUAL_INTERVENTION.value,
                before={"state": record.state, "amount": str(record.amount)},
                record_id=record.id,
            ))
            events.append(ManualInterventionNeeded(
                entity_type="escrow_record", entity_id=str(record.id),
                reason=reason, intervention_id=intervention.id,
            ))

    async def _persist(self, session: AsyncSession, account: Account, report: ReconciliationReport, trigger: str):
        for issue in report.issues:
            session.add(ReconciliationLog(
                account_id=account.id,
                classification=issue.classification,
                severity=issue.severity,
                expected=report.expected,
                actual=report.actual,
                delta=report.delta,
                corrective_action=issue.corrective_action,
                before=issue.before,
                after=issue.after,
                description=issue.description,
                trigger=trigger,
            ))
            if issue.corrective_action == CorrectiveAction.AUTO_FIXED.value:
                await self.audit.record(
                    session, f"reconciliation.{issue.classification}", "reconciliation",
                    "account", account.id, before=issue.before, after=issue.after,
                    details={"trigger": trigger, "delta": report.delta},
                )

    # ------------------------------------------------------------- sweeps

    async def validate_all(
        self,
        limit: Optional[int] = None,
        only_with_issues: bool = True,
        auto_fix: Optional[bool] = None,
        check_orphans: bool = True,
    ) -> SweepSummary:
        """Validate every account (up to limit); one account's failure never aborts the sweep"""
        started = time.monotonic()
        summary = SweepSummary()

        async with self.session_factory() as session:
            account_ids = await LedgerStore.list_account_ids(session, limit)

        logger.info(f"🔍 RECONCILIATION_SWEEP_START: {len(account_ids)} accounts")
        for account_id in account_ids:
            try:
                report = await self.validate_account(
                    account_id, auto_fix=auto_fix, check_orphans=check_orphans, trigger="sweep",
                )
            except ConcurrencyConflict:
                summary.busy += 1
                logger.info(f"⏭️ RECONCILIATION_ACCOUNT_BUSY: account={account_id} has an escrow operation in flight")
                continue
            except Exception as e:
                summary.failures += 1
                logger.error(f"❌ RECONCILIATION_ACCOUNT_ERROR: account={account_id}: {e}")
                continue

            summary.accounts_checked += 1
            summary.issues_found += len(report.issues)
            summary.fixes_applied += report.fixes_applied
            if report.has_issues:
                summary.accounts_with_issues += 1
            if report.has_issues or not only_with_issues:
                summary.reports.append(report)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self.last_summary = summary
        logger.info(
            f"✅ RECONCILIATION_SWEEP_DONE: checked={summary.accounts_checked} "
            f"with_issues={summary.accounts_with_issues} issues={summary.issues_found} "
            f"fixes={summary.fixes_applied} failures={summary.failures} busy={summary.busy} in {summary.duration_ms}ms"
        )
        return summary

    async def run_sweep(self) -> SweepSummary:
        """Scheduled entry point; skips if the previous sweep is still running"""
        if self._sweep_lock.locked():
            logger.warning("⏭️ RECONCILIATION_SWEEP_SKIPPED: previous run still in progress")
            return SweepSummary(skipped=True)
        async with self._sweep_lock:
            return await self.validate_all(
                limit=self.settings.sweep_limit, only_with_issues=True, auto_fix=self.settings.auto_fix,
            )

    def run_periodically(
        self,
        interval_minutes: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> AsyncIOScheduler:
        """Schedule run_sweep every interval_minutes on scheduler (a new one is started if omitted)"""
        minutes = interval_minutes or Config.RECONCILIATION_INTERVAL_MINUTES
        if scheduler is None:
            scheduler = AsyncIOScheduler(timezone="UTC")
            scheduler.start()

        scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(minutes=minutes),
            id="reconciliation_sweep",
            name="Dual-ledger Reconciliation Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"⏰ RECONCILIATION_SCHEDULED: every {minutes} minutes")
        return scheduler

    async def check_after_operation(self, account_ids: Sequence[int], operation: str, trade_id: int):
        """Synchronous validation after every escrow operation"""
        reports = []
        for account_id in dict.fromkeys(a for a in account_ids if a is not None):
            report = await self.validate_account(
                account_id, auto_fix=True, check_orphans=False, trigger=f"post_{operation}",
            )
            if report.has_issues:
                logger.error(
                    f"🚨 POST_OPERATION_DRIFT: trade={trade_id} op={operation} account={account_id} "
                    f"{report.classifications()}"
                )
            reports.append(report)
        return reports

    # ------------------------------------------------------------- policy

    async def set_account_policy(self, account_id: int, policy: ReconciliationPolicy, actor: str):
        """Switch an account between Normal and ManualOverride(reason)"""
        if not isinstance(policy, (NormalPolicy, ManualOverridePolicy)):
            raise TypeError(f"Unknown reconciliation policy {policy!r}")
        async with async_managed_session(self.session_factory) as session:
            account = await LedgerStore.get_account(session, account_id)
            before = {"policy": account.policy, "reason": account.policy_reason}
            account.reconciliation_policy = policy
            await self.audit.record(
                session, "reconciliation.policy_changed", actor, "account", account_id,
                before=before, after={"policy": account.policy, "reason": account.policy_reason},
            )
        logger.info(f"🛡️ RECONCILIATION_POLICY: account={account_id} -> {policy.kind} by {actor}")
