"""Configuration management for the marketplace trust core"""

import os
import logging
from decimal import Decimal
from typing import Dict

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    """Read a Decimal setting, falling back to the default on malformed input"""
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except Exception:
        logger.warning(f"⚠️ CONFIG: Invalid decimal for {name}={raw!r}, using {default}")
        return Decimal(default)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: Invalid integer for {name}={raw!r}, using {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: Invalid number for {name}={raw!r}, using {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "HustleKE")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trust_core.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Escrow policy
    ESCROW_CURRENCY = os.getenv("ESCROW_CURRENCY", "KES")
    ESCROW_MIN_AMOUNT = _decimal_env("ESCROW_MIN_AMOUNT", "100")

    # Service fee rate per freelancer plan tier (fractions, not percentages)
    PLATFORM_FEE_RATES: Dict[str, Decimal] = {
        "free": _decimal_env("PLATFORM_FEE_RATE_FREE", "0.06"),
        "pro": _decimal_env("PLATFORM_FEE_RATE_PRO", "0.04"),
        "enterprise": _decimal_env("PLATFORM_FEE_RATE_ENTERPRISE", "0.02"),
    }
    DEFAULT_PLAN_TIER = os.getenv("DEFAULT_PLAN_TIER", "free")
    # VAT charged on the service fee
    SERVICE_FEE_TAX_RATE = _decimal_env("SERVICE_FEE_TAX_RATE", "0.16")

    # Auto-release after delivery
    AUTO_RELEASE_GRACE_HOURS = _int_env("AUTO_RELEASE_GRACE_HOURS", 72)
    AUTO_RELEASE_SWEEP_INTERVAL_SECONDS = _int_env("AUTO_RELEASE_SWEEP_INTERVAL_SECONDS", 600)
    AUTO_RELEASE_BATCH_SIZE = _int_env("AUTO_RELEASE_BATCH_SIZE", 100)

    # External collaborators (payment rail, object store)
    EXTERNAL_CALL_TIMEOUT_SECONDS = _float_env("EXTERNAL_CALL_TIMEOUT_SECONDS", 15.0)
    EXTERNAL_RETRY_MAX_ATTEMPTS = _int_env("EXTERNAL_RETRY_MAX_ATTEMPTS", 3)
    EXTERNAL_RETRY_INITIAL_DELAY = _float_env("EXTERNAL_RETRY_INITIAL_DELAY", 0.5)
    ENTITY_LOCK_TIMEOUT_SECONDS = _float_env("ENTITY_LOCK_TIMEOUT_SECONDS", 10.0)

    # Risk scoring
    RISK_DEFAULT_TRUST = _float_env("RISK_DEFAULT_TRUST", 50.0)
    RISK_TRUST_BASELINE = _float_env("RISK_TRUST_BASELINE", 30.0)
    RISK_TRUST_DECAY = _float_env("RISK_TRUST_DECAY", 0.1)
    RISK_WINDOW_SIZE = _int_env("RISK_WINDOW_SIZE", 20)
    RISK_HIGH_THRESHOLD = _int_env("RISK_HIGH_THRESHOLD", 70)
    RISK_LARGE_TRANSACTION_MULTIPLIER = _decimal_env("RISK_LARGE_TRANSACTION_MULTIPLIER", "5")
    RISK_VELOCITY_LIMIT = _int_env("RISK_VELOCITY_LIMIT", 10)
    RISK_MAX_DAILY_AMOUNT = _decimal_env("RISK_MAX_DAILY_AMOUNT", "100000")
    RISK_NEW_ACCOUNT_DAYS = _int_env("RISK_NEW_ACCOUNT_DAYS", 7)
    RISK_UNUSUAL_HOUR_START = _int_env("RISK_UNUSUAL_HOUR_START", 0)
    RISK_UNUSUAL_HOUR_END = _int_env("RISK_UNUSUAL_HOUR_END", 5)
    RISK_LARGE_WITHDRAWAL_AMOUNT = _decimal_env("RISK_LARGE_WITHDRAWAL_AMOUNT", "10000")
    RISK_LOW_TRUST_THRESHOLD = _float_env("RISK_LOW_TRUST_THRESHOLD", 30.0)

    # Fraud alerting
    FRAUD_ALERT_COOLDOWN_MINUTES = _int_env("FRAUD_ALERT_COOLDOWN_MINUTES", 60)
    FRAUD_HIGH_VALUE_THRESHOLD = _decimal_env("FRAUD_HIGH_VALUE_THRESHOLD", "50000")
    FRAUD_VELOCITY_MAX_HIGH_VALUE = _int_env("FRAUD_VELOCITY_MAX_HIGH_VALUE", 3)
    FRAUD_VELOCITY_WINDOW_MINUTES = _int_env("FRAUD_VELOCITY_WINDOW_MINUTES", 60)
    FRAUD_STATS_DEFAULT_DAYS = _int_env("FRAUD_STATS_DEFAULT_DAYS", 30)

    # Multi-factor authentication
    MFA_ENCRYPTION_KEY = os.getenv("MFA_ENCRYPTION_KEY")
    MFA_ISSUER_NAME = os.getenv("MFA_ISSUER_NAME", PLATFORM_NAME)
    MFA_BACKUP_CODE_COUNT = _int_env("MFA_BACKUP_CODE_COUNT", 10)
    MFA_TOTP_VALID_WINDOW = _int_env("MFA_TOTP_VALID_WINDOW", 1)
    MFA_MAX_FAILED_ATTEMPTS = _int_env("MFA_MAX_FAILED_ATTEMPTS", 5)
    MFA_FAILURE_WINDOW_MINUTES = _int_env("MFA_FAILURE_WINDOW_MINUTES", 15)
    MFA_IP_MAX_ATTEMPTS = _int_env("MFA_IP_MAX_ATTEMPTS", 20)

    # Disputes
    DISPUTE_REASON_MIN_LENGTH = _int_env("DISPUTE_REASON_MIN_LENGTH", 10)
    DISPUTE_REASON_MAX_LENGTH = _int_env("DISPUTE_REASON_MAX_LENGTH", 2000)
    DISPUTE_MAX_TRUST_PENALTY = _float_env("DISPUTE_MAX_TRUST_PENALTY", 15.0)
    DISPUTE_MIN_TRUST_PENALTY = _float_env("DISPUTE_MIN_TRUST_PENALTY", 2.0)
    DISPUTE_SEVERITY_AMOUNT_CEILING = _decimal_env("DISPUTE_SEVERITY_AMOUNT_CEILING", "100000")
    DISPUTE_SEVERITY_DAYS_CEILING = _int_env("DISPUTE_SEVERITY_DAYS_CEILING", 30)

    # Evidence uploads
    EVIDENCE_MAX_FILE_SIZE = _int_env("EVIDENCE_MAX_FILE_SIZE", 20 * 1024 * 1024)
    EVIDENCE_STORAGE_DIR = os.getenv("EVIDENCE_STORAGE_DIR", "./evidence")

    # Audit
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE")
    SECURITY_EVENT_DENIAL_THRESHOLD = _int_env("SECURITY_EVENT_DENIAL_THRESHOLD", 3)
    SECURITY_EVENT_WINDOW_SECONDS = _int_env("SECURITY_EVENT_WINDOW_SECONDS", 900)


if not Config.MFA_ENCRYPTION_KEY and Config.IS_PRODUCTION:
    logger.error("❌ MFA_ENCRYPTION_KEY is not set in production - MFA secrets cannot be stored")
