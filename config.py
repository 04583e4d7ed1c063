"""Configuration management for the P2P escrow ledger"""

import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("true", "1", "yes")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./escrow_ledger.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Escrow engine
    # When false the local ledger is the only custody record (local-only mode)
    SETTLEMENT_BACKED_MODE = _env_bool("SETTLEMENT_BACKED_MODE", "true")
    SUPPORTED_TOKENS = [
        t.strip().upper() for t in os.getenv("SUPPORTED_TOKENS", "CES,USDT").split(",") if t.strip()
    ]
    SETTLEMENT_TIMEOUT_SECONDS = float(os.getenv("SETTLEMENT_TIMEOUT_SECONDS", "30"))
    SETTLEMENT_MAX_ATTEMPTS = int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", "5"))
    SETTLEMENT_INITIAL_DELAY = float(os.getenv("SETTLEMENT_INITIAL_DELAY", "1.0"))
    SETTLEMENT_MAX_DELAY = float(os.getenv("SETTLEMENT_MAX_DELAY", "30.0"))
    LOCK_ACQUIRE_TIMEOUT_SECONDS = float(os.getenv("LOCK_ACQUIRE_TIMEOUT_SECONDS", "10"))
    # Payment window; expired trades are refunded, or released if payment was confirmed
    ESCROW_TIMEOUT_MINUTES = int(os.getenv("ESCROW_TIMEOUT_MINUTES", "30"))
    TRADE_TIMEOUT_CHECK_MINUTES = int(os.getenv("TRADE_TIMEOUT_CHECK_MINUTES", "5"))

    # Reconciliation
    RECONCILIATION_EPSILON = Decimal(os.getenv("RECONCILIATION_EPSILON", "0.0001"))
    RECONCILIATION_HIGH_SEVERITY_DELTA = Decimal(os.getenv("RECONCILIATION_HIGH_SEVERITY_DELTA", "0.1"))
    RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "60"))
    RECONCILIATION_SWEEP_LIMIT = int(os.getenv("RECONCILIATION_SWEEP_LIMIT", "50"))
    RECONCILIATION_AUTO_FIX = _env_bool("RECONCILIATION_AUTO_FIX", "true")
    ORPHANED_LOCK_GRACE_MINUTES = int(os.getenv("ORPHANED_LOCK_GRACE_MINUTES", "60"))

    # Anti-fraud
    FRAUD_MAX_ORDERS_PER_HOUR = int(os.getenv("FRAUD_MAX_ORDERS_PER_HOUR", "10"))
    FRAUD_MAX_ORDERS_PER_DAY = int(os.getenv("FRAUD_MAX_ORDERS_PER_DAY", "50"))
    FRAUD_MAX_SUSPICIOUS_ATTEMPTS = int(os.getenv("FRAUD_MAX_SUSPICIOUS_ATTEMPTS", "3"))
    FRAUD_MIN_ACCOUNT_AGE_DAYS = int(os.getenv("FRAUD_MIN_ACCOUNT_AGE_DAYS", "1"))
    FRAUD_NEW_ACCOUNT_AGE_DAYS = int(os.getenv("FRAUD_NEW_ACCOUNT_AGE_DAYS", "7"))
    FRAUD_PRICE_DEVIATION = Decimal(os.getenv("FRAUD_PRICE_DEVIATION", "0.15"))
    FRAUD_MAX_TRADE_VALUE_NEW_USER = Decimal(os.getenv("FRAUD_MAX_TRADE_VALUE_NEW_USER", "1000"))
    FRAUD_SUSPICIOUS_TTL_SECONDS = int(os.getenv("FRAUD_SUSPICIOUS_TTL_SECONDS", "3600"))

    # Disputes
    DISPUTE_AUTO_ESCALATION_HOURS = int(os.getenv("DISPUTE_AUTO_ESCALATION_HOURS", "24"))
    DISPUTE_URGENT_ESCALATION_HOURS = int(os.getenv("DISPUTE_URGENT_ESCALATION_HOURS", "4"))
    DISPUTE_MAX_CONCURRENT_PER_MODERATOR = int(os.getenv("DISPUTE_MAX_CONCURRENT_PER_MODERATOR", "5"))
    DISPUTE_ESCALATION_CHECK_MINUTES = int(os.getenv("DISPUTE_ESCALATION_CHECK_MINUTES", "15"))

    # Audit
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "audit.log")

    @staticmethod
    def log_environment_config():
        """Log the effective configuration at startup"""
        mode = "settlement-backed" if Config.SETTLEMENT_BACKED_MODE else "local-only"
        logger.info(f"🔧 ENVIRONMENT: {Config.ENVIRONMENT} (production={Config.IS_PRODUCTION})")
        logger.info(f"🔧 CUSTODY_MODE: {mode}, tokens={','.join(Config.SUPPORTED_TOKENS)}")
        logger.info(
            f"🔧 SETTLEMENT: timeout={Config.SETTLEMENT_TIMEOUT_SECONDS}s, "
            f"max_attempts={Config.SETTLEMENT_MAX_ATTEMPTS}, trade_timeout={Config.ESCROW_TIMEOUT_MINUTES}min"
        )
        logger.info(
            f"🔧 RECONCILIATION: every {Config.RECONCILIATION_INTERVAL_MINUTES}min, "
            f"epsilon={Config.RECONCILIATION_EPSILON}, auto_fix={Config.RECONCILIATION_AUTO_FIX}"
        )


@dataclass
class EscrowSettings:
    """Runtime knobs for the escrow engine"""
    settlement_backed: bool = True
    supported_tokens: List[str] = field(default_factory=lambda: ["CES", "USDT"])
    settlement_timeout: float = 30.0
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    lock_timeout: float = 10.0
    trade_timeout_minutes: int = 30

    @classmethod
    def from_config(cls) -> "EscrowSettings":
        return cls(
            settlement_backed=Config.SETTLEMENT_BACKED_MODE,
            supported_tokens=list(Config.SUPPORTED_TOKENS),
            settlement_timeout=Config.SETTLEMENT_TIMEOUT_SECONDS,
            max_attempts=min(Config.SETTLEMENT_MAX_ATTEMPTS, 5),
            initial_delay=Config.SETTLEMENT_INITIAL_DELAY,
            max_delay=Config.SETTLEMENT_MAX_DELAY,
            lock_timeout=Config.LOCK_ACQUIRE_TIMEOUT_SECONDS,
            trade_timeout_minutes=Config.ESCROW_TIMEOUT_MINUTES,
        )


@dataclass
class ReconciliationSettings:
    epsilon: Decimal = Decimal("0.0001")
    high_severity_delta: Decimal = Decimal("0.1")
    orphan_grace_minutes: int = 60
    sweep_limit: int = 50
    auto_fix: bool = True

    @classmethod
    def from_config(cls) -> "ReconciliationSettings":
        return cls(
            epsilon=Config.RECONCILIATION_EPSILON,
            high_severity_delta=Config.RECONCILIATION_HIGH_SEVERITY_DELTA,
            orphan_grace_minutes=Config.ORPHANED_LOCK_GRACE_MINUTES,
            sweep_limit=Config.RECONCILIATION_SWEEP_LIMIT,
            auto_fix=Config.RECONCILIATION_AUTO_FIX,
        )


@dataclass
class FraudThresholds:
    max_orders_per_hour: int = 10
    max_orders_per_day: int = 50
    max_suspicious_attempts: int = 3
    min_account_age_days: int = 1
    new_account_age_days: int = 7
    price_deviation: Decimal = Decimal("0.15")
    max_trade_value_new_user: Decimal = Decimal("1000")
    suspicious_ttl_seconds: int = 3600

    @classmethod
    def from_config(cls) -> "FraudThresholds":
        return cls(
            max_orders_per_hour=Config.FRAUD_MAX_ORDERS_PER_HOUR,
            max_orders_per_day=Config.FRAUD_MAX_ORDERS_PER_DAY,
            max_suspicious_attempts=Config.FRAUD_MAX_SUSPICIOUS_ATTEMPTS,
            min_account_age_days=Config.FRAUD_MIN_ACCOUNT_AGE_DAYS,
            new_account_age_days=Config.FRAUD_NEW_ACCOUNT_AGE_DAYS,
            price_deviation=Config.FRAUD_PRICE_DEVIATION,
            max_trade_value_new_user=Config.FRAUD_MAX_TRADE_VALUE_NEW_USER,
            suspicious_ttl_seconds=Config.FRAUD_SUSPICIOUS_TTL_SECONDS,
        )


@dataclass
class DisputeSettings:
    auto_escalation_hours: int = 24
    urgent_escalation_hours: int = 4
    max_concurrent_per_moderator: int = 5
    # Value bands for priority, checked highest first
    priority_thresholds: Dict[str, Decimal] = field(default_factory=lambda: {
        "urgent": Decimal("10000"),
        "high": Decimal("5000"),
        "medium": Decimal("1000"),
    })

    @classmethod
    def from_config(cls) -> "DisputeSettings":
        return cls(
            auto_escalation_hours=Config.DISPUTE_AUTO_ESCALATION_HOURS,
            urgent_escalation_hours=Config.DISPUTE_URGENT_ESCALATION_HOURS,
            max_concurrent_per_moderator=Config.DISPUTE_MAX_CONCURRENT_PER_MODERATOR,
        )
