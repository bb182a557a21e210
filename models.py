"""
Marketplace Trust Core - Database Schema
========================================

Schema for the trust-and-money-safety subsystem:
- Escrow custody of job payments with a closed state machine
- Dispute arbitration between client and freelancer
- Per-user risk profiles, scored-event history and fraud alerts
- Multi-factor authentication settings and verification history
- Append-only wallet ledger, platform revenue and audit trail

Money is stored as fixed-point Numeric and handled as Decimal everywhere.
All timestamps are naive UTC.
"""

from enum import Enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text, Float,
    ForeignKey, Index, CheckConstraint, JSON, event, text
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, relationship, validates

from utils.helpers import utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Closed status types
# ============================================================================

class EscrowStatus(Enum):
    """Escrow custody states"""
    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class DisputeStatus(Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeOutcome(Enum):
    FULL_REFUND_TO_CLIENT = "full_refund_to_client"
    FULL_RELEASE_TO_FREELANCER = "full_release_to_freelancer"
    SPLIT = "split"
    NO_ACTION = "no_action"


class ProposalStatus(Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class LedgerEntryType(Enum):
    """Reason codes for wallet ledger postings"""
    ESCROW_RELEASE = "escrow_release"
    ESCROW_REFUND = "escrow_refund"
    REFUND_PAYOUT = "refund_payout"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FraudSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FraudAlertStatus(Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    CONFIRMED = "confirmed"


class MFAMethod(Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


def _enum_column(enum_class, **kwargs):
    """Enum column stored as its lowercase value string, not as a native DB type"""
    return Column(
        SAEnum(
            enum_class,
            native_enum=False,
            length=32,
            validate_strings=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


ACTIVE_ESCROW_STATUSES = (EscrowStatus.PENDING, EscrowStatus.FUNDED, EscrowStatus.DISPUTED)
OPEN_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)

_ACTIVE_ESCROW_WHERE = text("status IN ('pending', 'funded', 'disputed')")
_OPEN_DISPUTE_WHERE = text("status IN ('open', 'under_review')")


# ============================================================================
# PARTIES AND JOBS
# ============================================================================

class User(Base):
    """Marketplace account; operators carry is_admin"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    wallet = relationship("Wallet", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, name='{self.display_name}', admin={self.is_admin})>"


class JobProposal(Base):
    """Freelancer proposal on a job; escrow funding needs exactly one accepted"""
    __tablename__ = 'job_proposals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_ref = Column(String(64), nullable=False, index=True)
    freelancer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    status = _enum_column(ProposalStatus, default=ProposalStatus.SUBMITTED, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)


# ============================================================================
# WALLET LEDGER
# ============================================================================

class Wallet(Base):
    """User wallet; the balance is always derived from ledger entries"""
    __tablename__ = 'wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    currency = Column(String(10), nullable=False, default="KES")
    created_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="wallet")
    entries = relationship("WalletLedgerEntry", back_populates="wallet", order_by="WalletLedgerEntry.id")


class WalletLedgerEntry(Base):
    """Append-only signed posting against a wallet"""
    __tablename__ = 'wallet_ledger_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey('wallets.id'), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    entry_type = _enum_column(LedgerEntryType, nullable=False)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=True, index=True)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    wallet = relationship("Wallet", back_populates="entries")

    __table_args__ = (
        CheckConstraint('amount != 0', name='ck_ledger_amount_nonzero'),
    )


class PlatformRevenue(Base):
    """Service fee and tax retained by the platform on a release"""
    __tablename__ = 'platform_revenue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    fee_amount = Column(Numeric(18, 2), nullable=False)
    tax_amount = Column(Numeric(18, 2), nullable=False, default=0)
    fee_type = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)


# ============================================================================
# ESCROW AND DISPUTES
# ============================================================================

class EscrowTransaction(Base):
    """Platform-held funds for one job"""
    __tablename__ = 'escrow_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(32), unique=True, nullable=False)
    job_ref = Column(String(64), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    freelancer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="KES")
    # Fee terms are snapshotted when the escrow is opened
    plan_tier = Column(String(20), nullable=False, default="free")
    fee_rate = Column(Numeric(6, 4), nullable=False)
    tax_rate = Column(Numeric(6, 4), nullable=False)

    status = _enum_column(EscrowStatus, default=EscrowStatus.PENDING, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    capture_reference = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, nullable=False)
    funded_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    auto_release_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Mutual cancellation consent
    client_cancel_requested_at = Column(DateTime, nullable=True)
    freelancer_cancel_requested_at = Column(DateTime, nullable=True)

    requires_manual_review = Column(Boolean, default=False, nullable=False)

    client = relationship("User", foreign_keys=[client_id])
    freelancer = relationship("User", foreign_keys=[freelancer_id])
    disputes = relationship("Dispute", back_populates="escrow", order_by="Dispute.id")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_amount_positive'),
        CheckConstraint('client_id != freelancer_id', name='ck_escrow_distinct_parties'),
        Index(
            'uq_escrow_active_job', 'job_ref', unique=True,
            sqlite_where=_ACTIVE_ESCROW_WHERE, postgresql_where=_ACTIVE_ESCROW_WHERE,
        ),
        Index('ix_escrow_auto_release', 'status', 'auto_release_at'),
    )

    @validates('amount')
    def _validate_amount(self, key, value):
        if self.amount is not None and self.status not in (None, EscrowStatus.PENDING):
            raise ValueError(f"Escrow {self.id} amount is immutable once funded")
        return value

    def party_ids(self):
        return {self.client_id, self.freelancer_id}

    def __repr__(self):
        return f"<EscrowTransaction(id={self.id}, job='{self.job_ref}', status={self.status})>"


class Dispute(Base):
    """Disagreement over an escrow outcome, adjudicated by an operator"""
    __tablename__ = 'disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    initiator_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    respondent_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    reason = Column(Text, nullable=False)

    status = _enum_column(DisputeStatus, default=DisputeStatus.OPEN, nullable=False)
    outcome = _enum_column(DisputeOutcome, nullable=True)
    split_ratio = Column(Numeric(5, 4), nullable=True)
    resolution_note = Column(Text, nullable=True)
    resolved_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    review_started_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="disputes")
    evidence = relationship("DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.id")

    __table_args__ = (
        Index(
            'uq_dispute_open_escrow', 'escrow_id', unique=True,
            sqlite_where=_OPEN_DISPUTE_WHERE, postgresql_where=_OPEN_DISPUTE_WHERE,
        ),
        CheckConstraint(
            'split_ratio IS NULL OR (split_ratio >= 0 AND split_ratio <= 1)',
            name='ck_dispute_split_ratio',
        ),
    )


class DisputeEvidence(Base):
    """Append-only evidence metadata; the file itself lives in the object store"""
    __tablename__ = 'dispute_evidence'

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey('disputes.id'), nullable=False, index=True)
    submitted_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    file_name = Column(String(255), nullable=False)
    content_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False)
    storage_path = Column(String(500), nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence")


# ============================================================================
# RISK AND FRAUD
# ============================================================================

class RiskProfile(Base):
    """Per-user rolling trust profile, created lazily and never deleted"""
    __tablename__ = 'risk_profiles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    trust_score = Column(Float, nullable=False, default=50.0)
    transaction_count = Column(Integer, nullable=False, default=0)
    average_amount = Column(Numeric(18, 2), nullable=False, default=0)
    # Most recent scores, oldest first
    recent_scores = Column(JSON, nullable=False, default=list)
    # [iso_timestamp, amount] pairs inside the trailing day
    recent_activity = Column(JSON, nullable=False, default=list)
    known_origins = Column(JSON, nullable=False, default=list)
    account_created_at = Column(DateTime, nullable=True)
    last_scored_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('trust_score >= 0 AND trust_score <= 100', name='ck_risk_trust_range'),
    )


class TransactionRiskScore(Base):
    """History of every scored event"""
    __tablename__ = 'transaction_risk_scores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    event_type = Column(String(50), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False, default=0)
    risk_score = Column(Integer, nullable=False)
    risk_level = _enum_column(RiskLevel, nullable=False)
    is_high_risk = Column(Boolean, nullable=False, default=False)
    factors = Column(JSON, nullable=False, default=list)
    origin_ip = Column(String(64), nullable=True)
    device_fingerprint = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_risk_scores_user_created', 'user_id', 'created_at'),
    )


class FraudAlert(Base):
    """Operator-facing alert raised by a fraud rule or risk threshold"""
    __tablename__ = 'fraud_alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    alert_type = Column(String(50), nullable=False)
    severity = _enum_column(FraudSeverity, nullable=False)
    status = _enum_column(FraudAlertStatus, default=FraudAlertStatus.PENDING, nullable=False)
    description = Column(Text, nullable=False)
    related_data = Column(JSON, nullable=True)
    occurrence_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_triggered_at = Column(DateTime, default=utc_now, nullable=False)
    reviewed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_note = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_fraud_alerts_subject', 'user_id', 'alert_type', 'status'),
    )


# ============================================================================
# MULTI-FACTOR AUTHENTICATION
# ============================================================================

class MFASettings(Base):
    """Per-user TOTP settings; the secret is encrypted, backup codes are hashed"""
    __tablename__ = 'mfa_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    is_enabled = Column(Boolean, default=False, nullable=False)
    encrypted_secret = Column(Text, nullable=True)
    # SHA-256 of the secret issued by setup, cleared once enabled
    pending_secret_digest = Column(String(64), nullable=True)
    setup_started_at = Column(DateTime, nullable=True)
    backup_code_hashes = Column(JSON, nullable=False, default=list)
    backup_codes_used = Column(Integer, nullable=False, default=0)
    last_used_timestep = Column(BigInteger, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    enabled_at = Column(DateTime, nullable=True)
    disabled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utc_now, nullable=False)


class MFAVerificationLog(Base):
    """Every MFA verification attempt, successful or not"""
    __tablename__ = 'mfa_verification_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    method = _enum_column(MFAMethod, nullable=True)
    success = Column(Boolean, nullable=False)
    purpose = Column(String(50), nullable=False, default="verify")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    anomaly_flag = Column(Boolean, nullable=False, default=False)
    throttled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_mfa_log_user_created', 'user_id', 'created_at'),
    )


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(Base):
    """Durable audit trail of trust-core actions"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(Integer, nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


# Append-only guards: ledger postings and evidence rows are never rewritten
def _reject_mutation(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} rows are append-only")


for _append_only in (WalletLedgerEntry, DisputeEvidence):
    event.listen(_append_only, "before_update", _reject_mutation)
    event.listen(_append_only, "before_delete", _reject_mutation)
