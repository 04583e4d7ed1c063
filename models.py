"""
P2P Escrow Ledger - Database Schema
===================================

Schema for the peer-to-peer escrow core:
- Per-user, per-token balance accounts (available + escrowed)
- Escrow records with a sequenced transition log
- Orders and trades feeding the anti-fraud gate
- Dispute cases, evidence and moderators
- Audit, reconciliation and manual-intervention trails

All timestamps are naive UTC. Money columns are Numeric(28, 8).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


MONEY = Numeric(28, 8)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class EscrowState(Enum):
    """Escrow record custody lifecycle"""
    LOCK_PENDING = "lock_pending"
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    FAILED = "failed"


TERMINAL_ESCROW_STATES = frozenset({
    EscrowState.RELEASED.value,
    EscrowState.REFUNDED.value,
    EscrowState.RESOLVED.value,
    EscrowState.FAILED.value,
})


class EscrowResolution(Enum):
    """How a disputed escrow was finally settled"""
    RELEASED = "released"
    REFUNDED = "refunded"
    SPLIT = "split"


class OrderStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TradeStatus(Enum):
    ESCROW_LOCKED = "escrow_locked"
    PAYMENT_CONFIRMED = "payment_confirmed"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DisputeStatus(Enum):
    """Dispute workflow states"""
    OPEN = "open"
    INVESTIGATING = "investigating"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class DisputePriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_ORDER = ["low", "medium", "high", "urgent"]


class DisputeCategory(Enum):
    PAYMENT_NOT_RECEIVED = "payment_not_received"
    PAYMENT_NOT_MADE = "payment_not_made"
    WRONG_AMOUNT = "wrong_amount"
    FRAUD_ATTEMPT = "fraud_attempt"
    TECHNICAL_ISSUE = "technical_issue"
    OTHER = "other"


class DisputeOutcome(Enum):
    BUYER_WINS = "buyer_wins"
    SELLER_WINS = "seller_wins"
    COMPROMISE = "compromise"
    NO_FAULT = "no_fault"


class PolicyKind(Enum):
    NORMAL = "normal"
    MANUAL_OVERRIDE = "manual_override"


class ManualInterventionStatus(Enum):
    PENDING = "pending"
    CLOSED = "closed"


# ============================================================================
# RECONCILIATION POLICY - one variant per account
# ============================================================================

@dataclass(frozen=True)
class NormalPolicy:
    """Reconciliation may auto-fix this account."""
    kind: str = PolicyKind.NORMAL.value

    @property
    def protected(self) -> bool:
        return False


@dataclass(frozen=True)
class ManualOverridePolicy:
    """An operator owns this account's balance; reconciliation only reports."""
    reason: str
    kind: str = PolicyKind.MANUAL_OVERRIDE.value

    @property
    def protected(self) -> bool:
        return True


ReconciliationPolicy = Union[NormalPolicy, ManualOverridePolicy]


# ============================================================================
# USERS AND BALANCES
# ============================================================================

class User(Base):
    """Trading participant"""
    __tablename__ = "users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    display_name = Column(String(255), nullable=True)
    wallet_address = Column(String(255), nullable=True)
    p2p_profile_complete = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    accounts = relationship("Account", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, wallet={self.wallet_address})>"


class Account(Base):
    """Per-user, per-token balance record"""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    token = Column(String(20), nullable=False)
    # No CHECK constraints: reconciliation must be able to see and repair negatives
    available = Column(MONEY, default=Decimal("0"), nullable=False)
    escrowed = Column(MONEY, default=Decimal("0"), nullable=False)

    policy = Column(String(30), default=PolicyKind.NORMAL.value, nullable=False)
    policy_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user = relationship("User", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_accounts_user_token"),
        Index("ix_accounts_user", "user_id"),
    )

    @property
    def reconciliation_policy(self) -> ReconciliationPolicy:
        if self.policy == PolicyKind.MANUAL_OVERRIDE.value:
            return ManualOverridePolicy(reason=self.policy_reason or "")
        return NormalPolicy()

    @reconciliation_policy.setter
    def reconciliation_policy(self, value: ReconciliationPolicy):
        self.policy = value.kind
        self.policy_reason = getattr(value, "reason", None)

    def snapshot(self) -> dict:
        return {"available": str(self.available), "escrowed": str(self.escrowed)}

    def __repr__(self):
        return (f"<Account(id={self.id}, user_id={self.user_id}, token={self.token}, "
                f"available={self.available}, escrowed={self.escrowed})>")


# ============================================================================
# ESCROW
# ============================================================================

class EscrowRecord(Base):
    """Custody of one trade's funds for one token"""
    __tablename__ = "escrow_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False)
    token = Column(String(20), nullable=False)
    owner_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    beneficiary_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    amount = Column(MONEY, nullable=False)
    state = Column(String(30), default=EscrowState.LOCK_PENDING.value, nullable=False)
    resolution = Column(String(20), nullable=True)

    # Settlement-layer references
    settlement_ref = Column(String(255), nullable=True)
    release_tx_ref = Column(String(255), nullable=True)
    refund_tx_ref = Column(String(255), nullable=True)
    split_owner_share = Column(MONEY, nullable=True)
    split_beneficiary_share = Column(MONEY, nullable=True)

    # True while available has been moved to escrowed for this record
    funds_reserved = Column(Boolean, default=False, nullable=False)
    sequence = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    owner_account = relationship("Account", foreign_keys=[owner_account_id])
    beneficiary_account = relationship("Account", foreign_keys=[beneficiary_account_id])

    __table_args__ = (
        Index("ix_escrow_records_trade_token", "trade_id", "token"),
        Index("ix_escrow_records_state", "state"),
        Index("ix_escrow_records_owner", "owner_account_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ESCROW_STATES

    def __repr__(self):
        return (f"<EscrowRecord(id={self.id}, trade_id={self.trade_id}, token={self.token}, "
                f"state={self.state}, seq={self.sequence})>")


class EscrowTransition(Base):
    """Append-only log of escrow state changes"""
    __tablename__ = "escrow_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_record_id = Column(Integer, ForeignKey("escrow_records.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    operation = Column(String(30), nullable=False)
    previous_state = Column(String(30), nullable=True)
    new_state = Column(String(30), nullable=False)
    actor = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("escrow_record_id", "sequence", name="uq_escrow_transition_sequence"),
    )

    def __repr__(self):
        return (f"<EscrowTransition(record={self.escrow_record_id}, seq={self.sequence}, "
                f"{self.previous_state}->{self.new_state})>")


# ============================================================================
# ORDERS AND TRADES
# ============================================================================

class Order(Base):
    """Order placed by a user; history feeds velocity and price checks"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    token = Column(String(20), nullable=False)
    side = Column(String(10), nullable=False)
    amount = Column(MONEY, nullable=False)
    price = Column(MONEY, nullable=False)
    status = Column(String(20), default=OrderStatus.ACTIVE.value, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_token_created", "token", "created_at"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, user_id={self.user_id}, {self.side} {self.amount} {self.token} @ {self.price})>"


class Trade(Base):
    """Matched trade between a maker and a taker"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    price = Column(MONEY, nullable=False)

    maker_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    taker_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    maker_created_at = Column(DateTime, nullable=True)
    taker_created_at = Column(DateTime, nullable=True)
    buyer_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    seller_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)

    status = Column(String(20), default=TradeStatus.ESCROW_LOCKED.value, nullable=False)
    escrow_status = Column(String(30), nullable=True)
    dispute_ref = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=True)  # payment window end
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_trades_status", "status"),
        Index("ix_trades_seller", "seller_id"),
        Index("ix_trades_buyer", "buyer_id"),
    )

    @property
    def total_value(self) -> Decimal:
        return Decimal(self.amount) * Decimal(self.price)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def __repr__(self):
        return f"<Trade(id={self.id}, {self.amount} {self.token}, status={self.status})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Moderator(Base):
    """Dispute moderator with workload and resolution statistics"""
    __tablename__ = "moderators"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)
    name = Column(String(255), nullable=True)
    tier = Column(Integer, default=1, nullable=False)
    specializations = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_online = Column(Boolean, default=True, nullable=False)
    current_workload = Column(Integer, default=0, nullable=False)
    resolved_count = Column(Integer, default=0, nullable=False)
    total_resolution_minutes = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_moderators_active_tier", "is_active", "tier"),
    )

    def __repr__(self):
        return f"<Moderator(id={self.id}, tier={self.tier}, workload={self.current_workload})>"


class DisputeCase(Base):
    """Dispute raised against a locked trade"""
    __tablename__ = "dispute_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False)
    initiator_role = Column(String(10), nullable=False)
    category = Column(String(50), nullable=False)
    reason = Column(Text, nullable=True)
    priority = Column(String(10), default=DisputePriority.LOW.value, nullable=False)
    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    assigned_moderator_id = Column(Integer, ForeignKey("moderators.id"), nullable=True)

    escalation_deadline = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    resolution_outcome = Column(String(20), nullable=True)
    compensation_amount = Column(MONEY, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by_moderator_id = Column(Integer, ForeignKey("moderators.id"), nullable=True)
    last_error = Column(Text, nullable=True)

    opened_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    trade = relationship("Trade", foreign_keys=[trade_id])
    evidence = relationship("DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.id")

    __table_args__ = (
        Index("ix_dispute_cases_trade", "trade_id"),
        Index("ix_dispute_cases_status", "status"),
        Index("ix_dispute_cases_deadline", "escalation_deadline"),
    )

    def __repr__(self):
        return f"<DisputeCase(id={self.id}, trade_id={self.trade_id}, status={self.status}, priority={self.priority})>"


class DisputeEvidence(Base):
    """Evidence item submitted by one side of a dispute"""
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey("dispute_cases.id"), nullable=False)
    role = Column(String(10), nullable=False)
    evidence_type = Column(String(30), default="text", nullable=False)
    content = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    submitted_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("DisputeCase", back_populates="evidence")

    __table_args__ = (
        Index("ix_dispute_evidence_dispute", "dispute_id"),
    )


# ============================================================================
# AUDIT AND RECONCILIATION TRAILS
# ============================================================================

class AuditLog(Base):
    """Audit trail for every custody transition and correction"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False)
    actor = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_created", "created_at"),
    )


class ReconciliationLog(Base):
    """One row per discrepancy found by a reconciliation pass"""
    __tablename__ = "reconciliation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    classification = Column(String(30), nullable=False)
    severity = Column(String(10), nullable=False)
    expected = Column(MONEY, nullable=True)
    actual = Column(MONEY, nullable=True)
    delta = Column(MONEY, nullable=True)
    corrective_action = Column(String(50), nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    trigger = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_account_created", "account_id", "created_at"),
    )


class ManualIntervention(Base):
    """Case an operator must look at"""
    __tablename__ = "manual_interventions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), default=ManualInterventionStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_manual_interventions_entity", "entity_type", "entity_id"),
    )
