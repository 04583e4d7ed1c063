"""
Moderator Assignment
Picks a moderator for a dispute: specialization match first, otherwise the
least-loaded moderator with spare capacity. Escalations go to a higher tier.
Workload counters are adjusted inside the caller's session.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import DisputeCategory, Moderator

logger = logging.getLogger(__name__)

CATEGORY_SPECIALIZATIONS: Dict[str, str] = {
    DisputeCategory.PAYMENT_NOT_RECEIVED.value: "payment_disputes",
    DisputeCategory.PAYMENT_NOT_MADE.value: "payment_disputes",
    DisputeCategory.WRONG_AMOUNT.value: "payment_disputes",
    DisputeCategory.FRAUD_ATTEMPT.value: "fraud_prevention",
    DisputeCategory.TECHNICAL_ISSUE.value: "technical_issues",
    DisputeCategory.OTHER.value: "general",
}


class ModeratorAssignment:
    """Workload-aware moderator selection"""

    def __init__(self, max_concurrent: int = 5):
        self.max_concurrent = max_concurrent

    async def available_moderators(
        self, session: AsyncSession, min_tier: int = 1, exclude_id: Optional[int] = None
    ) -> List[Moderator]:
        stmt = (
            select(Moderator)
            .where(
                Moderator.is_active.is_(True),
                Moderator.is_online.is_(True),
                Moderator.current_workload < self.max_concurrent,
                Moderator.tier >= min_tier,
            )
            .order_by(Moderator.current_workload, Moderator.id)
        )
        if exclude_id is not None:
            stmt = stmt.where(Moderator.id != exclude_id)
        return list((await session.execute(stmt)).scalars().all())

    async def assign(
        self,
        session: AsyncSession,
        category: str,
        min_tier: int = 1,
        exclude_id: Optional[int] = None,
    ) -> Optional[Moderator]:
        candidates = await self.available_moderators(session, min_tier, exclude_id)
        if not candidates:
            logger.warning(f"⚠️ NO_MODERATOR_AVAILABLE: category={category} min_tier={min_tier}")
            return None

        specialization = CATEGORY_SPECIALIZATIONS.get(category, "general")
        specialists = [m for m in candidates if specialization in (m.specializations or [])]
        chosen = (specialists or candidates)[0]
        chosen.current_workload += 1
        logger.info(
            f"👮 MODERATOR_ASSIGNED: moderator={chosen.id} tier={chosen.tier} category={category} "
            f"specialist={bool(specialists)} workload={chosen.current_workload}"
        )
        return chosen

    async def assign_senior(
        self, session: AsyncSession, category: str, current: Optional[Moderator]
    ) -> Optional[Moderator]:
        """Move a case to a higher-tier moderator; the previous one loses the workload slot"""
        min_tier = (current.tier + 1) if current is not None else 2
        senior = await self.assign(session, category, min_tier=min_tier,
                                   exclude_id=current.id if current is not None else None)
        if senior is not None and current is not None:
            self.release(current)
        return senior

    @staticmethod
    def release(moderator: Moderator):
        moderator.current_workload = max(0, (moderator.current_workload or 0) - 1)

    @staticmethod
    def record_resolution(moderator: Moderator, minutes: int):
        moderator.resolved_count = (moderator.resolved_count or 0) + 1
        moderator.total_resolution_minutes = (moderator.total_resolution_minutes or 0) + minutes
