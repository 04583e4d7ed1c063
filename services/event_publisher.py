"""
Ledger Event Publisher
Typed notification events placed on an asyncio queue.

Producers (escrow engine, reconciliation, disputes) call publish(); a
dispatcher task drains the queue and hands each event to subscribed
handlers. A failing handler is logged and never affects ledger state.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Deque, Dict, List, Optional

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class EventType(Enum):
    ESCROW_LOCKED = "escrow.locked"
    ESCROW_RELEASED = "escrow.released"
    ESCROW_REFUNDED = "escrow.refunded"
    ESCROW_SPLIT = "escrow.split"
    DISPUTE_INITIATED = "dispute.initiated"
    DISPUTE_ESCALATED = "dispute.escalated"
    DISPUTE_RESOLVED = "dispute.resolved"
    RECONCILIATION_FIXED = "reconciliation.fixed"
    RECONCILIATION_MANUAL_INTERVENTION = "reconciliation.manual-intervention"


@dataclass
class LedgerEvent:
    event_type: ClassVar[EventType]
    occurred_at: datetime = field(default_factory=get_naive_utc_now, kw_only=True)

    @property
    def name(self) -> str:
        return self.event_type.value

    def to_dict(self) -> Dict[str, Any]:
        data = {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self).items()}
        data["occurred_at"] = self.occurred_at.isoformat()
        data["event"] = self.name
        return data


@dataclass
class EscrowLocked(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ESCROW_LOCKED
    trade_id: int
    record_id: int
    token: str
    amount: Decimal
    settlement_ref: Optional[str] = None


@dataclass
class EscrowReleased(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ESCROW_RELEASED
    trade_id: int
    record_id: int
    token: str
    amount: Decimal
    beneficiary_account_id: int
    tx_ref: Optional[str] = None


@dataclass
class EscrowRefunded(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ESCROW_REFUNDED
    trade_id: int
    record_id: int
    token: str
    amount: Decimal
    owner_account_id: int
    tx_ref: Optional[str] = None


@dataclass
class EscrowSplit(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ESCROW_SPLIT
    trade_id: int
    record_id: int
    token: str
    owner_share: Decimal
    beneficiary_share: Decimal


@dataclass
class DisputeInitiated(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.DISPUTE_INITIATED
    dispute_id: int
    trade_id: int
    category: str
    priority: str
    moderator_id: Optional[int] = None


@dataclass
class DisputeEscalated(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.DISPUTE_ESCALATED
    dispute_id: int
    previous_priority: str
    priority: str
    moderator_id: Optional[int] = None


@dataclass
class DisputeResolved(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.DISPUTE_RESOLVED
    dispute_id: int
    trade_id: int
    outcome: str
    moderator_id: int
    compensation_amount: Optional[Decimal] = None


@dataclass
class ReconciliationFixed(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.RECONCILIATION_FIXED
    account_id: int
    classification: str
    before: Dict[str, str]
    after: Dict[str, str]


@dataclass
class ManualInterventionNeeded(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.RECONCILIATION_MANUAL_INTERVENTION
    entity_type: str
    entity_id: str
    reason: str
    intervention_id: Optional[int] = None


EventHandler = Callable[[LedgerEvent], Awaitable[None]]


class EventPublisher:
    """
    Queue-backed publisher with optional async subscribers.

    keep_history retains the most recent history_limit events for inspection
    (events_of); it is off in the running service.
    """

    def __init__(self, maxsize: int = 0, keep_history: bool = False, history_limit: int = 1000):
        self.queue: "asyncio.Queue[LedgerEvent]" = asyncio.Queue(maxsize=maxsize)
        self._handlers: Dict[Optional[EventType], List[EventHandler]] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        self.keep_history = keep_history
        self.history: Deque[LedgerEvent] = deque(maxlen=history_limit)

    def subscribe(self, handler: EventHandler, event_type: Optional[EventType] = None):
        """Register handler for one event type, or for every event when event_type is None"""
        self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: LedgerEvent):
        if self.keep_history:
            self.history.append(event)
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(f"❌ EVENT_QUEUE_FULL: dropping {event.name} {event.to_dict()}")
            return
        logger.info(f"📣 EVENT: {event.name} {event.to_dict()}")

    def events_of(self, event_type: EventType) -> List[LedgerEvent]:
        return [e for e in self.history if e.event_type is event_type]

    async def _dispatch(self, event: LedgerEvent):
        handlers = self._handlers.get(event.event_type, []) + self._handlers.get(None, [])
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"❌ EVENT_HANDLER_ERROR: {getattr(handler, '__name__', handler)} on {event.name}: {e}")

    async def run_dispatcher(self):
        while True:
            event = await self.queue.get()
            try:
                await self._dispatch(event)
            finally:
                self.queue.task_done()

    def start(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self.run_dispatcher())
            logger.info("✅ EVENT_DISPATCHER_STARTED")

    async def stop(self):
        if self._dispatcher is not None:
            await self.queue.join()
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
            logger.info("🛑 EVENT_DISPATCHER_STOPPED")
