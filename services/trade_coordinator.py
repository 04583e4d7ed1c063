"""
Trade Coordinator
Single entry point for opening, completing, cancelling and expiring P2P trades.
The anti-fraud gate runs before any funds are locked; escrow errors come
back as structured reasons instead of escaping to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import EscrowRecord, Order, OrderStatus, Trade, TradeStatus
from services.escrow_engine import EscrowEngine
from services.exceptions import (
    EscrowLedgerError, InvalidState, NotFound, SettlementFailure, ValidationError,
)
from services.fraud_detection import AntiFraudGate, FraudAssessment, ProposedOrder
from services.ledger_store import LedgerStore, ZERO, to_decimal
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)

ROLES = ("seller", "buyer")


@dataclass
class TradeRequest:
    """Matched order awaiting escrow"""
    seller_id: int
    buyer_id: int
    token: str
    amount: Decimal
    price: Decimal
    maker_role: str = "seller"
    maker_created_at: Optional[datetime] = None
    taker_created_at: Optional[datetime] = None


@dataclass
class TradeOpenResult:
    allowed: bool
    reasons: List[Dict[str, Any]] = field(default_factory=list)
    trade_id: Optional[int] = None
    order_id: Optional[int] = None
    record: Optional[EscrowRecord] = None
    assessment: Optional[FraudAssessment] = None


class TradeCoordinator:
    """Fraud gate -> order -> trade -> escrow lock"""

    def __init__(self, session_factory: async_sessionmaker, escrow_engine: EscrowEngine, fraud_gate: AntiFraudGate):
        self.session_factory = session_factory
        self.escrow = escrow_engine
        self.fraud_gate = fraud_gate

    @staticmethod
    def _validate(request: TradeRequest):
        if request.seller_id == request.buyer_id:
            raise ValidationError("Seller and buyer must be different users", user_id=request.seller_id)
        if request.maker_role not in ROLES:
            raise ValidationError(f"Unknown maker role {request.maker_role!r}", maker_role=request.maker_role)
        if request.amount <= ZERO or request.price <= ZERO:
            raise ValidationError("Amount and price must be positive",
                                  amount=request.amount, price=request.price)
        if (request.maker_created_at and request.taker_created_at
                and request.taker_created_at < request.maker_created_at):
            raise ValidationError("Taker order cannot predate the maker order")

    async def open_trade(self, request: TradeRequest, actor: Optional[str] = None) -> TradeOpenResult:
        """Evaluate the seller's order, then record the trade and lock the seller's funds"""
        try:
            request.amount = to_decimal(request.amount)
            request.price = to_decimal(request.price)
            self._validate(request)
        except ValidationError as e:
            return TradeOpenResult(allowed=False, reasons=[e.to_reason()])

        actor = actor or f"user:{request.seller_id}"
        proposed = ProposedOrder(token=request.token, side="sell", amount=request.amount, price=request.price)
        assessment = await self.fraud_gate.evaluate(request.seller_id, proposed)

        now = get_naive_utc_now()
        async with async_managed_session(self.session_factory) as session:
            order = Order(
                user_id=request.seller_id, token=request.token, side="sell",
                amount=request.amount, price=request.price,
                status=OrderStatus.ACTIVE.value if assessment.allowed else OrderStatus.REJECTED.value,
                created_at=now,
            )
            session.add(order)
            await session.flush()
            order_id = order.id

            if not assessment.allowed:
                logger.warning(f"⛔ TRADE_REJECTED: seller={request.seller_id} order={order_id} "
                               f"risk={assessment.risk_level}")
                return TradeOpenResult(allowed=False, reasons=[assessment.to_reason()],
                                       order_id=order_id, assessment=assessment)

            maker_id, taker_id = ((request.seller_id, request.buyer_id) if request.maker_role == "seller"
                                  else (request.buyer_id, request.seller_id))
            trade = Trade(
                token=request.token, amount=request.amount, price=request.price,
                maker_id=maker_id, taker_id=taker_id,
                maker_created_at=ensure_naive_datetime(request.maker_created_at) or now,
                taker_created_at=ensure_naive_datetime(request.taker_created_at) or now,
                buyer_id=request.buyer_id, seller_id=request.seller_id,
                status=TradeStatus.ESCROW_LOCKED.value, created_at=now,
                expires_at=now + timedelta(minutes=self.escrow.settings.trade_timeout_minutes),
            )
            session.add(trade)
            seller_account = await LedgerStore.get_or_create_account(session, request.seller_id, request.token)
            await session.flush()
            trade_id, seller_account_id = trade.id, seller_account.id

        reasons = [assessment.to_reason()] if assessment.warning else []
        try:
            record = await self.escrow.lock(trade_id, seller_account_id, request.token, request.amount, actor)
        except SettlementFailure as e:
            if e.transient:
                # record stays lock_pending; resume_lock retries it
                logger.warning(f"⏳ TRADE_LOCK_PENDING: trade={trade_id}: {e.message}")
                return TradeOpenResult(allowed=False, reasons=reasons + [e.to_reason()], trade_id=trade_id,
                                       order_id=order_id, assessment=assessment)
            await self._mark_failed(trade_id, order_id)
            return TradeOpenResult(allowed=False, reasons=reasons + [e.to_reason()], trade_id=trade_id,
                                   order_id=order_id, assessment=assessment)
        except EscrowLedgerError as e:
            await self._mark_failed(trade_id, order_id)
            logger.warning(f"❌ TRADE_LOCK_FAILED: trade={trade_id}: {e.message}")
            return TradeOpenResult(allowed=False, reasons=reasons + [e.to_reason()], trade_id=trade_id,
                                   order_id=order_id, assessment=assessment)

        logger.info(f"🤝 TRADE_OPENED: trade={trade_id} seller={request.seller_id} buyer={request.buyer_id} "
                    f"{request.amount} {request.token} @ {request.price}")
        return TradeOpenResult(allowed=True, reasons=reasons, trade_id=trade_id, order_id=order_id,
                               record=record, assessment=assessment)

    async def resume_lock(self, trade_id: int, actor: str = "system") -> EscrowRecord:
        """Retry a lock that was left lock_pending by a transient settlement failure"""
        trade = await self._get_trade(trade_id)
        async with self.session_factory() as session:
            account = await LedgerStore.find_account(session, trade.seller_id, trade.token)
        return await self.escrow.lock(trade_id, account.id, trade.token, trade.amount, actor)

    async def _mark_failed(self, trade_id: int, order_id: int):
        async with async_managed_session(self.session_factory) as session:
            trade = await session.get(Trade, trade_id)
            trade.status = TradeStatus.FAILED.value
            order = await session.get(Order, order_id)
            order.status = OrderStatus.CANCELLED.value

    async def _get_trade(self, trade_id: int) -> Trade:
        async with self.session_factory() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade {trade_id} not found", trade_id=trade_id)
            return trade

    async def _close(self, trade_id: int, status: TradeStatus):
        async with async_managed_session(self.session_factory) as session:
            trade = await session.get(Trade, trade_id)
            trade.status = status.value
            trade.completed_at = get_naive_utc_now()

    async def complete_trade(self, trade_id: int, actor: str = "system") -> EscrowRecord:
        """Buyer paid: release escrow to the buyer"""
        trade = await self._get_trade(trade_id)
        if trade.status == TradeStatus.DISPUTED.value:
            raise InvalidState(f"Trade {trade_id} is disputed", current_state=trade.status)
        async with async_managed_session(self.session_factory) as session:
            buyer_account = await LedgerStore.get_or_create_account(session, trade.buyer_id, trade.token)
            buyer_account_id = buyer_account.id

        record = await self.escrow.release(trade_id, trade.token, buyer_account_id, "trade completed", actor)
        await self._close(trade_id, TradeStatus.COMPLETED)
        logger.info(f"✅ TRADE_COMPLETED: trade={trade_id}")
        return record

    async def cancel_trade(self, trade_id: int, reason: str = "", actor: str = "system") -> EscrowRecord:
        """Refund escrow to the seller; disputed trades are settled by the dispute workflow"""
        trade = await self._get_trade(trade_id)
        if trade.status == TradeStatus.DISPUTED.value:
            raise InvalidState(f"Trade {trade_id} is disputed, cancel through dispute resolution",
                               current_state=trade.status)

        record = await self.escrow.refund(trade_id, trade.token, reason or "trade cancelled", actor)
        await self._close(trade_id, TradeStatus.CANCELLED)
        logger.info(f"🚫 TRADE_CANCELLED: trade={trade_id} reason={reason}")
        return record

    async def confirm_payment(self, trade_id: int, actor: str = "system") -> Trade:
        """Buyer reports payment sent; an expiring confirmed trade is released rather than refunded"""
        async with async_managed_session(self.session_factory) as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade {trade_id} not found", trade_id=trade_id)
            if trade.status != TradeStatus.ESCROW_LOCKED.value:
                raise InvalidState(f"Trade {trade_id} is {trade.status}, payment cannot be confirmed",
                                   current_state=trade.status)
            trade.status = TradeStatus.PAYMENT_CONFIRMED.value
        logger.info(f"💸 TRADE_PAYMENT_CONFIRMED: trade={trade_id} by {actor}")
        return trade

    async def expire_trades(self, now: Optional[datetime] = None) -> List[int]:
        """
        Close every open trade whose payment window has passed.

        Confirmed payments are released to the buyer, everything else is
        refunded to the seller. One trade's failure is logged and skipped.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trade.id, Trade.status)
                .where(
                    Trade.status.in_([TradeStatus.ESCROW_LOCKED.value, TradeStatus.PAYMENT_CONFIRMED.value]),
                    Trade.expires_at.is_not(None),
                    Trade.expires_at <= now,
                )
                .order_by(Trade.expires_at)
            )
            due = result.all()

        expired = []
        for trade_id, status in due:
            try:
                if status == TradeStatus.PAYMENT_CONFIRMED.value:
                    await self.complete_trade(trade_id, actor="timeout")
                else:
                    await self.cancel_trade(trade_id, reason="payment window expired", actor="timeout")
            except EscrowLedgerError as e:
                logger.error(f"❌ TRADE_TIMEOUT_FAILED: trade={trade_id}: {e.message}")
                continue
            expired.append(trade_id)

        if expired:
            logger.warning(f"⏰ TRADE_TIMEOUTS: closed {len(expired)} expired trades {expired}")
        return expired
