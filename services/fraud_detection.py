"""Anti-fraud gate evaluated before any escrow lock"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caching.simple_cache import SimpleCache
from config import FraudThresholds
from models import Order, OrderStatus, Trade, TradeStatus, User
from utils.datetime_helpers import age_in_days, ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ProposedOrder:
    token: str
    side: str
    amount: Decimal
    price: Decimal

    @property
    def value(self) -> Decimal:
        return Decimal(self.amount) * Decimal(self.price)


@dataclass
class FraudCheck:
    name: str
    passed: bool
    severity: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class FraudAssessment:
    allowed: bool
    risk_level: str
    reasons: List[str] = field(default_factory=list)
    checks: List[FraudCheck] = field(default_factory=list)
    warning: Optional[str] = None

    @property
    def failed_checks(self) -> List[FraudCheck]:
        return [c for c in self.checks if not c.passed]

    def to_reason(self) -> Dict[str, Any]:
        return {
            "code": "fraud_denied" if not self.allowed else "fraud_warning",
            "risk_level": self.risk_level,
            "message": "; ".join(self.reasons),
            "checks": [c.name for c in self.failed_checks],
        }


class AntiFraudGate:
    """Approve or deny a proposed order before funds are locked"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        counter_store: Optional[SimpleCache] = None,
        thresholds: Optional[FraudThresholds] = None,
    ):
        self.session_factory = session_factory
        self.thresholds = thresholds or FraudThresholds.from_config()
        self.counters = counter_store or SimpleCache(default_ttl=self.thresholds.suspicious_ttl_seconds)

    @staticmethod
    def _counter_key(user_id: int) -> str:
        return f"fraud:suspicious:{user_id}"

    def suspicious_count(self, user_id: int) -> int:
        return self.counters.get(self._counter_key(user_id), 0)

    def record_suspicious_activity(self, user_id: int) -> int:
        """Bump the per-user tally; it expires one hour after the first bump"""
        count = self.counters.increment(self._counter_key(user_id), ttl=self.thresholds.suspicious_ttl_seconds)
        logger.warning(f"🚩 FRAUD_SUSPICIOUS_ACTIVITY: user={user_id} count={count}")
        return count

    def clear_suspicious_activity(self, user_id: int):
        self.counters.delete(self._counter_key(user_id))

    async def evaluate(
        self,
        user_id: int,
        order: ProposedOrder,
        now: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> FraudAssessment:
        """
        Run every check and aggregate:
          any high          -> deny (high)
          two or more medium -> deny (reported high, compound risk)
          one medium         -> allow with warning (medium)
          none               -> allow (low)
        Errors fail closed (deny, high).
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        try:
            if session is None:
                async with self.session_factory() as new_session:
                    checks = await self._run_checks(new_session, user_id, order, now)
            else:
                checks = await self._run_checks(session, user_id, order, now)
        except Exception as e:
            logger.error(f"❌ FRAUD_GATE_ERROR: user={user_id}: {e}")
            checks = [FraudCheck("gate_error", False, RiskLevel.HIGH.value, "Fraud evaluation failed")]

        assessment = self._aggregate(checks)
        if not assessment.allowed:
            self.record_suspicious_activity(user_id)
            logger.warning(
                f"⛔ FRAUD_GATE_DENIED: user={user_id} value={order.value} {order.token} "
                f"risk={assessment.risk_level} reasons={assessment.reasons}"
            )
        elif assessment.warning:
            logger.info(f"⚠️ FRAUD_GATE_WARNING: user={user_id} {assessment.warning}")
        return assessment

    async def _run_checks(self, session: AsyncSession, user_id: int, order: ProposedOrder, now: datetime) -> List[FraudCheck]:
        user = await session.get(User, user_id)
        if user is None:
            return [FraudCheck("user_exists", False, RiskLevel.HIGH.value, "User not found")]

        t = self.thresholds
        checks = []
        age_days = age_in_days(user.created_at, now)

        # Suspicious activity tally
        count = self.suspicious_count(user_id)
        if count >= t.max_suspicious_attempts:
            checks.append(FraudCheck("suspicious_activity", False, RiskLevel.HIGH.value,
                                     f"Too many suspicious attempts ({count}) in the last hour"))
        else:
            checks.append(FraudCheck("suspicious_activity", True))

        # Account age
        if age_days < t.min_account_age_days:
            checks.append(FraudCheck("account_age", False, RiskLevel.MEDIUM.value,
                                     f"Account is younger than {t.min_account_age_days} day(s)"))
        else:
            checks.append(FraudCheck("account_age", True))

        checks.append(await self._check_velocity(session, user_id, now))
        checks.extend(await self._check_price(session, order, now))
        checks.append(await self._check_reputation(session, user_id))

        if not user.p2p_profile_complete:
            checks.append(FraudCheck("profile", False, RiskLevel.MEDIUM.value, "P2P profile is incomplete"))
        else:
            checks.append(FraudCheck("profile", True))

        if age_days < t.new_account_age_days and order.value > t.max_trade_value_new_user:
            checks.append(FraudCheck("new_account_limit", False, RiskLevel.MEDIUM.value,
                                     f"Order value {order.value} exceeds {t.max_trade_value_new_user} "
                                     f"for accounts younger than {t.new_account_age_days} days"))
        else:
            checks.append(FraudCheck("new_account_limit", True))

        return checks

    async def _check_velocity(self, session: AsyncSession, user_id: int, now: datetime) -> FraudCheck:
        t = self.thresholds

        async def orders_since(since: datetime) -> int:
            result = await session.execute(
                select(func.count(Order.id)).where(Order.user_id == user_id, Order.created_at >= since)
            )
            return result.scalar_one()

        hourly = await orders_since(now - timedelta(hours=1))
        if hourly >= t.max_orders_per_hour:
            return FraudCheck("velocity", False, RiskLevel.HIGH.value,
                              f"{hourly} orders in the last hour (limit {t.max_orders_per_hour})")
        daily = await orders_since(now - timedelta(hours=24))
        if daily >= t.max_orders_per_day:
            return FraudCheck("velocity", False, RiskLevel.MEDIUM.value,
                              f"{daily} orders in the last 24 hours (limit {t.max_orders_per_day})")
        return FraudCheck("velocity", True)

    async def _check_price(self, session: AsyncSession, order: ProposedOrder, now: datetime) -> List[FraudCheck]:
        result = await session.execute(
            select(func.avg(Order.price), func.min(Order.price), func.max(Order.price), func.count(Order.id))
            .where(
                Order.token == order.token,
                Order.created_at >= now - timedelta(hours=24),
                Order.status.in_([OrderStatus.ACTIVE.value, OrderStatus.COMPLETED.value]),
            )
        )
        avg_price, min_price, max_price, samples = result.one()
        if not samples or not avg_price:
            return [FraudCheck("price_deviation", True, reason="No market data")]

        price = Decimal(order.price)
        avg_price, min_price, max_price = (Decimal(str(v)) for v in (avg_price, min_price, max_price))
        checks = []

        deviation = abs(price - avg_price) / avg_price
        if deviation > self.thresholds.price_deviation:
            checks.append(FraudCheck("price_deviation", False, RiskLevel.MEDIUM.value,
                                     f"Price deviates {deviation:.1%} from 24h average {avg_price:.4f}"))
        else:
            checks.append(FraudCheck("price_deviation", True))

        if price < min_price * Decimal("0.5") or price > max_price * 2:
            checks.append(FraudCheck("extreme_price", False, RiskLevel.HIGH.value,
                                     f"Price {price} is outside the 24h range [{min_price}, {max_price}]"))
        else:
            checks.append(FraudCheck("extreme_price", True))
        return checks

    async def _check_reputation(self, session: AsyncSession, user_id: int) -> FraudCheck:
        participant = or_(Trade.buyer_id == user_id, Trade.seller_id == user_id)
        total = (await session.execute(select(func.count(Trade.id)).where(participant))).scalar_one()
        if total <= 5:
            return FraudCheck("reputation", True)

        failed = (await session.execute(
            select(func.count(Trade.id)).where(
                participant,
                or_(
                    Trade.status.in_([TradeStatus.CANCELLED.value, TradeStatus.FAILED.value, TradeStatus.DISPUTED.value]),
                    Trade.dispute_ref.isnot(None),
                ),
            )
        )).scalar_one()
        ratio = Decimal(failed) / Decimal(total)
        if ratio > Decimal("0.3"):
            return FraudCheck("reputation", False, RiskLevel.MEDIUM.value,
                              f"{failed} of {total} trades failed, cancelled or disputed")
        return FraudCheck("reputation", True)

    @staticmethod
    def _aggregate(checks: List[FraudCheck]) -> FraudAssessment:
        failed = [c for c in checks if not c.passed]
        high = [c for c in failed if c.severity == RiskLevel.HIGH.value]
        medium = [c for c in failed if c.severity == RiskLevel.MEDIUM.value]

        if high:
            return FraudAssessment(False, RiskLevel.HIGH.value, [c.reason for c in high + medium], checks)
        if len(medium) >= 2:
            return FraudAssessment(False, RiskLevel.HIGH.value, [c.reason for c in medium], checks)
        if medium:
            return FraudAssessment(True, RiskLevel.MEDIUM.value, [medium[0].reason], checks,
                                   warning=medium[0].reason)
        return FraudAssessment(True, RiskLevel.LOW.value, [], checks)
