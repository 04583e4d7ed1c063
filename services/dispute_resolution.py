"""
Dispute Resolution Service
Dispute sub-workflow for locked trades: open -> investigating -> under_review -> resolved.

Resolution always ends in an escrow engine operation (release, refund or
split). A dispute is marked resolved only after that fund movement
succeeded; otherwise it stays under_review and the error propagates.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import DisputeSettings
from database import async_managed_session
from models import (
    DisputeCase, DisputeCategory, DisputeEvidence, DisputeOutcome, DisputePriority,
    DisputeStatus, EscrowState, Moderator, PRIORITY_ORDER, Trade, TradeStatus,
)
from services.atomic_lock_manager import LockOperationType
from services.audit_logger import AuditLogger
from services.escrow_engine import EscrowEngine
from services.event_publisher import (
    DisputeEscalated, DisputeInitiated, DisputeResolved, EventPublisher,
)
from services.exceptions import (
    DisputeError, DuplicateOperation, EscrowLedgerError, InvalidState, NotFound, ValidationError,
)
from services.ledger_store import LedgerStore, ZERO, to_decimal
from services.moderator_assignment import ModeratorAssignment
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now, minutes_between

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller")
ACTIVE_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.INVESTIGATING.value, DisputeStatus.UNDER_REVIEW.value)

CATEGORY_PRIORITY = {
    DisputeCategory.FRAUD_ATTEMPT.value: DisputePriority.URGENT.value,
    DisputeCategory.TECHNICAL_ISSUE.value: DisputePriority.HIGH.value,
}


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    success: bool
    dispute_id: int
    trade_id: int
    outcome: str
    amount: Decimal
    buyer_amount: Decimal
    seller_amount: Decimal
    buyer_id: Optional[int] = None
    seller_id: Optional[int] = None
    resolution_minutes: int = 0


def _dispute_lock_key(dispute_id: int) -> str:
    return f"dispute:{dispute_id}"


class DisputeEngine:
    """Evidence, moderator assignment, escalation and resolution of disputes"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        escrow_engine: EscrowEngine,
        publisher: EventPublisher,
        audit: AuditLogger,
        settings: Optional[DisputeSettings] = None,
        assignment: Optional[ModeratorAssignment] = None,
    ):
        self.session_factory = session_factory
        self.escrow = escrow_engine
        self.publisher = publisher
        self.audit = audit
        self.settings = settings or DisputeSettings.from_config()
        self.assignment = assignment or ModeratorAssignment(self.settings.max_concurrent_per_moderator)

    def _dispute_guard(self, dispute_id: int):
        return self.escrow.locks.acquire(
            _dispute_lock_key(dispute_id),
            operation_type=LockOperationType.DISPUTE_WORKFLOW,
            timeout_seconds=self.escrow.settings.lock_timeout,
        )

    # ------------------------------------------------------------ priority

    def _value_priority(self, value: Decimal) -> str:
        for level in ("urgent", "high", "medium"):
            if value >= self.settings.priority_thresholds[level]:
                return level
        return DisputePriority.LOW.value

    def compute_priority(self, value: Decimal, category: str, urgency: str = "low") -> str:
        """Highest of value band, stated urgency and category band"""
        candidates = [
            self._value_priority(value),
            urgency,
            CATEGORY_PRIORITY.get(category, DisputePriority.LOW.value),
        ]
        return max(candidates, key=PRIORITY_ORDER.index)

    def _deadline(self, opened_at: datetime, priority: str) -> datetime:
        hours = (self.settings.urgent_escalation_hours if priority == DisputePriority.URGENT.value
                 else self.settings.auto_escalation_hours)
        return opened_at + timedelta(hours=hours)

    @staticmethod
    async def _get_dispute(session: AsyncSession, dispute_id: int) -> DisputeCase:
        dispute = await session.get(DisputeCase, dispute_id)
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return dispute

    async def get_dispute(self, dispute_id: int) -> DisputeCase:
        async with self.session_factory() as session:
            return await self._get_dispute(session, dispute_id)

    async def get_evidence(self, dispute_id: int, role: Optional[str] = None) -> List[DisputeEvidence]:
        async with self.session_factory() as session:
            stmt = select(DisputeEvidence).where(DisputeEvidence.dispute_id == dispute_id)
            if role:
                stmt = stmt.where(DisputeEvidence.role == role)
            return list((await session.execute(stmt.order_by(DisputeEvidence.id))).scalars().all())

    # ------------------------------------------------------------ initiate

    async def initiate(
        self,
        trade_id: int,
        initiator_role: str,
        category: str,
        reason: str,
        urgency: str = DisputePriority.LOW.value,
        actor: Optional[str] = None,
    ) -> DisputeCase:
        """Open a dispute on a trade whose escrow is locked and put the escrow on hold"""
        if initiator_role not in ROLES:
            raise ValidationError(f"Unknown initiator role {initiator_role!r}", role=initiator_role)
        if category not in {c.value for c in DisputeCategory}:
            raise ValidationError(f"Unknown dispute category {category!r}", category=category)
        if urgency not in PRIORITY_ORDER:
            raise ValidationError(f"Unknown urgency {urgency!r}", urgency=urgency)
        actor = actor or f"{initiator_role}:trade:{trade_id}"

        async with self.session_factory() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade {trade_id} not found", trade_id=trade_id)
            token = trade.token

        async with self.escrow.trade_guard(trade_id, token):
            async with async_managed_session(self.session_factory) as session:
                trade = await session.get(Trade, trade_id)
                open_case = (await session.execute(
                    select(DisputeCase.id).where(
                        DisputeCase.trade_id == trade_id, DisputeCase.status.in_(ACTIVE_STATUSES)
                    )
                )).scalars().first()
                if open_case is not None:
                    raise DuplicateOperation(f"Trade {trade_id} already has open dispute {open_case}",
                                             dispute_id=open_case)

                record = await self.escrow._current_record(session, trade_id, token)
                if record is None or record.state != EscrowState.LOCKED.value:
                    raise InvalidState(
                        f"Trade {trade_id} escrow is {record.state if record else 'missing'}, disputes need locked funds",
                        current_state=record.state if record else None,
                    )

                now = get_naive_utc_now()
                priority = self.compute_priority(trade.total_value, category, urgency)
                dispute = DisputeCase(
                    trade_id=trade_id,
                    initiator_role=initiator_role,
                    category=category,
                    reason=reason,
                    priority=priority,
                    status=DisputeStatus.OPEN.value,
                    escalation_deadline=self._deadline(now, priority),
                    opened_at=now,
                )
                session.add(dispute)
                await session.flush()

                moderator = await self.assignment.assign(session, category)
                if moderator is not None:
                    dispute.assigned_moderator_id = moderator.id
                    dispute.status = DisputeStatus.INVESTIGATING.value

                await self.escrow.apply_dispute_hold(session, record, actor)
                trade.status = TradeStatus.DISPUTED.value
                trade.dispute_ref = dispute.id

                await self.audit.record(
                    session, "dispute.initiated", actor, "dispute", dispute.id,
                    after={"status": dispute.status, "priority": priority,
                           "moderator_id": dispute.assigned_moderator_id},
                    details={"trade_id": trade_id, "category": category, "reason": reason},
                )

        logger.info(
            f"⚖️ DISPUTE_INITIATED: dispute={dispute.id} trade={trade_id} category={category} "
            f"priority={priority} moderator={dispute.assigned_moderator_id}"
        )
        self.publisher.publish(DisputeInitiated(
            dispute_id=dispute.id, trade_id=trade_id, category=category,
            priority=priority, moderator_id=dispute.assigned_moderator_id,
        ))
        return dispute

    # ------------------------------------------------------------ evidence

    async def submit_evidence(
        self,
        dispute_id: int,
        role: str,
        content: str,
        evidence_type: str = "text",
        description: Optional[str] = None,
    ) -> DisputeEvidence:
        if role not in ROLES:
            raise ValidationError(f"Unknown evidence role {role!r}", role=role)
        if not content:
            raise ValidationError("Evidence content is empty")

        async with self._dispute_guard(dispute_id):
            async with async_managed_session(self.session_factory) as session:
                dispute = await self._get_dispute(session, dispute_id)
                if dispute.status == DisputeStatus.RESOLVED.value:
                    raise InvalidState(f"Dispute {dispute_id} is resolved", current_state=dispute.status)

                item = DisputeEvidence(
                    dispute_id=dispute_id, role=role, evidence_type=evidence_type,
                    content=content, description=description, submitted_at=get_naive_utc_now(),
                )
                session.add(item)
                previous = dispute.status
                if dispute.status == DisputeStatus.OPEN.value:
                    dispute.status = DisputeStatus.UNDER_REVIEW.value
                await session.flush()
                await self.audit.record(
                    session, "dispute.evidence", role, "dispute", dispute_id,
                    before={"status": previous}, after={"status": dispute.status},
                    details={"evidence_id": item.id, "type": evidence_type},
                )
        logger.info(f"📎 DISPUTE_EVIDENCE: dispute={dispute_id} role={role} type={evidence_type}")
        return item

    # ----------------------------------------------------------- escalation

    async def escalate(self, dispute_id: int, now: Optional[datetime] = None, actor: str = "system") -> DisputeCase:
        """Raise priority one level and hand the case to a higher-tier moderator"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        async with self._dispute_guard(dispute_id):
            async with async_managed_session(self.session_factory) as session:
                dispute = await self._get_dispute(session, dispute_id)
                if dispute.status not in (DisputeStatus.OPEN.value, DisputeStatus.INVESTIGATING.value):
                    raise InvalidState(f"Dispute {dispute_id} is {dispute.status}, cannot escalate",
                                       current_state=dispute.status)
                if dispute.escalated_at is not None:
                    raise DuplicateOperation(f"Dispute {dispute_id} was already escalated",
                                             escalated_at=dispute.escalated_at.isoformat())
                if dispute.escalation_deadline is None or now < dispute.escalation_deadline:
                    raise InvalidState(f"Dispute {dispute_id} is not due for escalation yet",
                                       current_state=dispute.status)

                previous_priority = dispute.priority
                index = PRIORITY_ORDER.index(dispute.priority)
                dispute.priority = PRIORITY_ORDER[min(index + 1, len(PRIORITY_ORDER) - 1)]
                dispute.escalated_at = now

                current = None
                if dispute.assigned_moderator_id is not None:
                    current = await session.get(Moderator, dispute.assigned_moderator_id)
                senior = await self.assignment.assign_senior(session, dispute.category, current)
                if senior is not None:
                    dispute.assigned_moderator_id = senior.id
                    dispute.status = DisputeStatus.INVESTIGATING.value

                await self.audit.record(
                    session, "dispute.escalated", actor, "dispute", dispute_id,
                    before={"priority": previous_priority,
                            "moderator_id": current.id if current is not None else None},
                    after={"priority": dispute.priority, "moderator_id": dispute.assigned_moderator_id},
                )

        logger.warning(
            f"⏫ DISPUTE_ESCALATED: dispute={dispute_id} {previous_priority} -> {dispute.priority} "
            f"moderator={dispute.assigned_moderator_id}"
        )
        self.publisher.publish(DisputeEscalated(
            dispute_id=dispute_id, previous_priority=previous_priority,
            priority=dispute.priority, moderator_id=dispute.assigned_moderator_id,
        ))
        return dispute

    async def process_due_escalations(self, now: Optional[datetime] = None) -> List[int]:
        """Escalate every overdue dispute; used by the scheduler"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        async with self.session_factory() as session:
            due = (await session.execute(
                select(DisputeCase.id).where(
                    DisputeCase.status.in_([DisputeStatus.OPEN.value, DisputeStatus.INVESTIGATING.value]),
                    DisputeCase.escalated_at.is_(None),
                    DisputeCase.escalation_deadline <= now,
                ).order_by(DisputeCase.escalation_deadline)
            )).scalars().all()

        escalated = []
        for dispute_id in due:
            try:
                await self.escalate(dispute_id, now=now)
                escalated.append(dispute_id)
            except EscrowLedgerError as e:
                logger.error(f"❌ DISPUTE_ESCALATION_ERROR: dispute={dispute_id}: {e}")
        if escalated:
            logger.info(f"⏫ DISPUTE_ESCALATION_SWEEP: escalated {len(escalated)} of {len(due)} due disputes")
        return escalated

    # ----------------------------------------------------------- resolution

    async def resolve(
        self,
        dispute_id: int,
        moderator_id: int,
        outcome: str,
        compensation_amount=None,
        notes: str = "",
    ) -> ResolutionResult:
        """
        Finish a dispute with a fund movement:
            buyer_wins            -> release to buyer
            seller_wins, no_fault -> refund to seller
            compromise            -> split; compensation goes to the buyer, the rest back to the seller
        """
        if outcome not in {o.value for o in DisputeOutcome}:
            raise ValidationError(f"Unknown outcome {outcome!r}", outcome=outcome)
        actor = f"moderator:{moderator_id}"

        async with self._dispute_guard(dispute_id):
            async with async_managed_session(self.session_factory) as session:
                dispute = await self._get_dispute(session, dispute_id)
                if dispute.status == DisputeStatus.RESOLVED.value:
                    raise InvalidState(f"Dispute {dispute_id} is already resolved", current_state=dispute.status)

                moderator = await session.get(Moderator, moderator_id)
                if moderator is None:
                    raise NotFound(f"Moderator {moderator_id} not found", moderator_id=moderator_id)
                if not moderator.is_active:
                    raise DisputeError(f"Moderator {moderator_id} is not active", moderator_id=moderator_id)
                if dispute.assigned_moderator_id is not None and dispute.assigned_moderator_id != moderator_id:
                    raise DisputeError(
                        f"Dispute {dispute_id} is assigned to moderator {dispute.assigned_moderator_id}",
                        moderator_id=moderator_id,
                    )

                trade = await session.get(Trade, dispute.trade_id)
                record = await self.escrow._current_record(session, trade.id, trade.token)
                if record is None:
                    raise NotFound(f"No escrow for trade {trade.id}", trade_id=trade.id)
                amount = Decimal(record.amount)

                compensation = None
                if outcome == DisputeOutcome.COMPROMISE.value:
                    if compensation_amount is None:
                        raise ValidationError("Compromise needs a compensation amount")
                    compensation = to_decimal(compensation_amount)
                    if not (ZERO < compensation < amount):
                        raise ValidationError(
                            f"Compensation {compensation} must be strictly between 0 and {amount}",
                            compensation_amount=compensation, amount=amount,
                        )

                if dispute.status != DisputeStatus.UNDER_REVIEW.value:
                    previous = dispute.status
                    dispute.status = DisputeStatus.UNDER_REVIEW.value
                    await self.audit.record(
                        session, "dispute.review", actor, "dispute", dispute_id,
                        before={"status": previous}, after={"status": dispute.status},
                    )
                buyer_account = await LedgerStore.get_or_create_account(session, trade.buyer_id, trade.token)
                trade_id, token = trade.id, trade.token
                buyer_id, seller_id = trade.buyer_id, trade.seller_id
                buyer_account_id = buyer_account.id

            reason = f"dispute {dispute_id}: {outcome}"
            try:
                if outcome == DisputeOutcome.BUYER_WINS.value:
                    await self.escrow.release(trade_id, token, buyer_account_id, reason, actor, via_dispute=True)
                    buyer_amount, seller_amount = amount, ZERO
                elif outcome == DisputeOutcome.COMPROMISE.value:
                    await self.escrow.split(trade_id, token, amount - compensation, compensation,
                                            buyer_account_id, actor, reason)
                    buyer_amount, seller_amount = compensation, amount - compensation
                else:
                    await self.escrow.refund(trade_id, token, reason, actor)
                    buyer_amount, seller_amount = ZERO, amount
            except Exception as e:
                async with async_managed_session(self.session_factory) as session:
                    failed = await self._get_dispute(session, dispute_id)
                    failed.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"❌ DISPUTE_RESOLUTION_FAILED: dispute={dispute_id} outcome={outcome}: {e}")
                raise

            async with async_managed_session(self.session_factory) as session:
                dispute = await self._get_dispute(session, dispute_id)
                now = get_naive_utc_now()
                minutes = minutes_between(dispute.opened_at, now)
                dispute.status = DisputeStatus.RESOLVED.value
                dispute.resolution_outcome = outcome
                dispute.compensation_amount = compensation
                dispute.resolution_notes = notes
                dispute.resolved_by_moderator_id = moderator_id
                dispute.resolved_at = now
                dispute.last_error = None

                resolver = await session.get(Moderator, moderator_id)
                self.assignment.record_resolution(resolver, minutes)
                if dispute.assigned_moderator_id is not None:
                    assigned = resolver if dispute.assigned_moderator_id == moderator_id else \
                        await session.get(Moderator, dispute.assigned_moderator_id)
                    self.assignment.release(assigned)

                trade = await session.get(Trade, trade_id)
                trade.status = (TradeStatus.CANCELLED.value
                                if outcome in (DisputeOutcome.SELLER_WINS.value, DisputeOutcome.NO_FAULT.value)
                                else TradeStatus.COMPLETED.value)
                trade.completed_at = now

                await self.audit.record(
                    session, "dispute.resolved", actor, "dispute", dispute_id,
                    before={"status": DisputeStatus.UNDER_REVIEW.value},
                    after={"status": dispute.status, "outcome": outcome},
                    details={"buyer_amount": buyer_amount, "seller_amount": seller_amount,
                             "resolution_minutes": minutes, "notes": notes},
                )

        logger.info(
            f"✅ DISPUTE_RESOLVED: dispute={dispute_id} outcome={outcome} buyer={buyer_amount} "
            f"seller={seller_amount} in {minutes}min by moderator {moderator_id}"
        )
        self.publisher.publish(DisputeResolved(
            dispute_id=dispute_id, trade_id=trade_id, outcome=outcome,
            moderator_id=moderator_id, compensation_amount=compensation,
        ))
        return ResolutionResult(
            success=True, dispute_id=dispute_id, trade_id=trade_id, outcome=outcome, amount=amount,
            buyer_amount=buyer_amount, seller_amount=seller_amount,
            buyer_id=buyer_id, seller_id=seller_id, resolution_minutes=minutes,
        )

    # ----------------------------------------------------------- statistics

    async def get_statistics(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Dispute totals, breakdowns and moderator performance"""
        async with self.session_factory() as session:
            stmt = select(DisputeCase)
            if since is not None:
                stmt = stmt.where(DisputeCase.opened_at >= ensure_naive_datetime(since))
            disputes = list((await session.execute(stmt)).scalars().all())
            moderators = list((await session.execute(select(Moderator).order_by(Moderator.id))).scalars().all())

        resolved = [d for d in disputes if d.status == DisputeStatus.RESOLVED.value]
        by_category: Dict[str, int] = {}
        by_outcome: Dict[str, int] = {}
        by_priority: Dict[str, int] = {}
        for d in disputes:
            by_category[d.category] = by_category.get(d.category, 0) + 1
            by_priority[d.priority] = by_priority.get(d.priority, 0) + 1
        for d in resolved:
            by_outcome[d.resolution_outcome] = by_outcome.get(d.resolution_outcome, 0) + 1

        resolution_minutes = [minutes_between(d.opened_at, d.resolved_at) for d in resolved]
        return {
            "total": len(disputes),
            "resolved": len(resolved),
            "active": len(disputes) - len(resolved),
            "escalated": sum(1 for d in disputes if d.escalated_at is not None),
            "resolution_rate": round(len(resolved) / len(disputes) * 100, 2) if disputes else 0.0,
            "average_resolution_minutes": (
                round(sum(resolution_minutes) / len(resolution_minutes), 1) if resolution_minutes else 0.0
            ),
            "by_category": by_category,
            "by_outcome": by_outcome,
            "by_priority": by_priority,
            "moderators": [
                {
                    "id": m.id,
                    "tier": m.tier,
                    "active": m.is_active,
                    "workload": m.current_workload,
                    "resolved": m.resolved_count,
                    "average_resolution_minutes": (
                        round(m.total_resolution_minutes / m.resolved_count, 1) if m.resolved_count else 0.0
                    ),
                }
                for m in moderators
            ],
        }
