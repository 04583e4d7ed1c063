"""
Audit Logging System
Append-only record of custody transitions and reconciliation actions:
each entry is written to the audit_logs table (inside the caller's
transaction) and mirrored as JSON to the 'audit' logger.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, ManualIntervention, ManualInterventionStatus
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class AuditLogger:
    """Service for audit logging of financial state changes"""

    def __init__(self, log_file: Optional[str] = None):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)
        if log_file:
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    async def record(
        self,
        session: AsyncSession,
        action: str,
        actor: str,
        entity_type: str,
        entity_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """Add an audit row to session; it commits or rolls back with the caller's work"""
        entry = AuditLog(
            action=action,
            actor=actor,
            entity_type=entity_type,
            entity_id=str(entity_id),
            before=_jsonable(before),
            after=_jsonable(after),
            details=_jsonable(details or {}),
            created_at=get_naive_utc_now(),
        )
        session.add(entry)

        self.audit_logger.info(json.dumps({
            'timestamp': entry.created_at.isoformat(),
            'action': action,
            'actor': actor,
            'entity_type': entity_type,
            'entity_id': str(entity_id),
            'before': entry.before,
            'after': entry.after,
            'details': entry.details,
        }))
        return entry

    async def open_manual_intervention(
        self,
        session: AsyncSession,
        entity_type: str,
        entity_id: Any,
        reason: str,
        actor: str = "system",
    ) -> ManualIntervention:
        """Open an operator case (deduplicated per entity while pending)"""
        existing = (await session.execute(
            select(ManualIntervention).where(
                ManualIntervention.entity_type == entity_type,
                ManualIntervention.entity_id == str(entity_id),
                ManualIntervention.status == ManualInterventionStatus.PENDING.value,
            )
        )).scalars().first()
        if existing is not None:
            return existing

        intervention = ManualIntervention(
            entity_type=entity_type,
            entity_id=str(entity_id),
            reason=reason,
            status=ManualInterventionStatus.PENDING.value,
            created_at=get_naive_utc_now(),
        )
        session.add(intervention)
        await session.flush()
        logger.critical(f"🚨 MANUAL_INTERVENTION_REQUIRED: {entity_type} {entity_id}: {reason}")
        await self.record(
            session, "manual_intervention.opened", actor, entity_type, entity_id,
            details={"intervention_id": intervention.id, "reason": reason},
        )
        return intervention

    @staticmethod
    async def history(session: AsyncSession, entity_type: str, entity_id: Any):
        result = await session.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.id)
        )
        return list(result.scalars().all())
