"""
Multi-Factor Authentication Service
TOTP (pyotp) second factor with single-use backup codes.

- setup() issues a secret and backup codes exactly once; only a digest of the
  secret is remembered until enable() proves the authenticator works.
- Secrets are Fernet-encrypted at rest, backup codes are stored as SHA-256 digests.
- Every attempt is written to the verification log, which also drives the
  durable per-user throttle; a per-address limiter sits in front of it.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple

import pyotp
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import MFAMethod, MFASettings, MFAVerificationLog
from services.audit_logger import AuditLogger
from services.qr_generator import QRCodeService
from services.rate_limiter import AttemptLimiter
from services.risk_scorer import RiskScorer
from utils.admin_security import require_user
from utils.atomic_transactions import atomic_transaction
from utils.entity_lock import EntityLockRegistry, entity_locks
from utils.exception_handler import (
    InvalidStateTransition, ValidationError, VerificationThrottled,
    record_permission_denial, report_audit_degraded
)
from utils.helpers import as_aware_utc, utc_now
from utils.secret_encryption import SecretCipher

logger = logging.getLogger(__name__)

TOTP_CODE_PATTERN = re.compile(r"^\d{6}$")
BACKUP_CODE_PATTERN = re.compile(r"^[0-9A-F]{8}$")
BASE32_PATTERN = re.compile(r"^[A-Z2-7]+=*$")


def normalize_code(code: Optional[str]) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def secret_digest(secret: str) -> str:
    return hashlib.sha256(secret.strip().upper().encode("utf-8")).hexdigest()


def generate_backup_codes(count: int) -> List[str]:
    """Backup codes: 8 uppercase hex characters each"""
    return [secrets.token_hex(4).upper() for _ in range(count)]


@dataclass(frozen=True)
class MFAPolicy:
    issuer_name: str = "HustleKE"
    backup_code_count: int = 10
    valid_window: int = 1
    max_failed_attempts: int = 5
    failure_window: timedelta = timedelta(minutes=15)

    @classmethod
    def from_config(cls) -> "MFAPolicy":
        return cls(
            issuer_name=Config.MFA_ISSUER_NAME,
            backup_code_count=Config.MFA_BACKUP_CODE_COUNT,
            valid_window=Config.MFA_TOTP_VALID_WINDOW,
            max_failed_attempts=Config.MFA_MAX_FAILED_ATTEMPTS,
            failure_window=timedelta(minutes=Config.MFA_FAILURE_WINDOW_MINUTES),
        )


@dataclass(frozen=True)
class VerificationContext:
    """Where a verification attempt came from"""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


class MFASetup(NamedTuple):
    """Returned once by setup(); nothing here is stored in plaintext"""

    secret: str
    provisioning_uri: str
    qr_code_data_url: str
    backup_codes: Tuple[str, ...]


class MFAStatus(NamedTuple):
    is_enabled: bool
    setup_pending: bool = False
    backup_codes_remaining: int = 0
    backup_codes_used: int = 0
    enabled_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None


class MFAVerificationResult(NamedTuple):
    success: bool
    method: Optional[MFAMethod] = None
    error: Optional[str] = None
    anomaly: bool = False
    backup_codes_remaining: int = 0
    audit_degraded: bool = False


class MFAOperationResult(NamedTuple):
    success: bool
    status: MFAStatus
    backup_codes: Tuple[str, ...] = ()
    error: Optional[str] = None
    audit_degraded: bool = False


class MFAService:
    """TOTP and backup-code verification for account and transaction step-up"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        cipher: Optional[SecretCipher] = None,
        risk_scorer: Optional[RiskScorer] = None,
        policy: Optional[MFAPolicy] = None,
        ip_limiter: Optional[AttemptLimiter] = None,
        audit: Optional[AuditLogger] = None,
        locks: Optional[EntityLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.cipher = cipher or SecretCipher()
        self.risk_scorer = risk_scorer
        self.policy = policy or MFAPolicy.from_config()
        self.ip_limiter = AttemptLimiter(namespace="mfa_ip") if ip_limiter is None else ip_limiter
        self.audit = audit
        self.locks = locks or entity_locks
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def _match_totp(self, secret: str, code: str, now: datetime, last_timestep: Optional[int]) -> Optional[int]:
        """
        Time step the code belongs to, within ±valid_window steps of now.
        Steps at or before last_timestep are replays and never match.
        """
        totp = pyotp.TOTP(secret)
        moment = as_aware_utc(now)
        for offset in range(-self.policy.valid_window, self.policy.valid_window + 1):
            at = moment + timedelta(seconds=offset * totp.interval)
            if not hmac.compare_digest(totp.at(at), code):
                continue
            timestep = totp.timecode(at)
            if last_timestep is not None and timestep <= last_timestep:
                logger.warning(f"🔁 MFA_TOTP_REPLAY: time step {timestep} already used")
                continue
            return timestep
        return None

    def current_code(self, secret: str, at: Optional[datetime] = None) -> str:
        """Code an authenticator would show at the given time"""
        return pyotp.TOTP(secret).at(as_aware_utc(at or self.clock()))

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _settings(session: Session, user_id: int) -> Optional[MFASettings]:
        return session.execute(
            select(MFASettings).where(MFASettings.user_id == user_id)
        ).scalar_one_or_none()

    @staticmethod
    def _status_from(settings: Optional[MFASettings]) -> MFAStatus:
        if settings is None:
            return MFAStatus(is_enabled=False)
        return MFAStatus(
            is_enabled=bool(settings.is_enabled),
            setup_pending=settings.pending_secret_digest is not None,
            backup_codes_remaining=len(settings.backup_code_hashes or []) if settings.is_enabled else 0,
            backup_codes_used=settings.backup_codes_used or 0,
            enabled_at=settings.enabled_at,
            verified_at=settings.verified_at,
        )

    def _check_throttle(
        self, user_id: int, context: VerificationContext, now: datetime, purpose: str
    ) -> None:
        """
        Refused attempts are logged with throttled=True and do not extend the window.

        Raises:
            VerificationThrottled: when the address or the user is over its failure cap
        """
        if not self.ip_limiter.is_allowed(context.ip_address):
            retry_after = self.ip_limiter.retry_after(context.ip_address)
            logger.warning(f"🚫 MFA_IP_THROTTLED: {context.ip_address} for user {user_id}")
            self._record_attempt(user_id, None, False, purpose, context, False, now, throttled=True)
            raise VerificationThrottled("Too many failed attempts from this address", retry_after)

        window_start = now - self.policy.failure_window
        session = self.session_factory()
        try:
            failures, oldest = session.execute(
                select(func.count(MFAVerificationLog.id), func.min(MFAVerificationLog.created_at)).where(
                    MFAVerificationLog.user_id == user_id,
                    MFAVerificationLog.success.is_(False),
                    MFAVerificationLog.throttled.is_(False),
                    MFAVerificationLog.created_at >= window_start,
                )
            ).one()
        finally:
            session.close()

        if failures >= self.policy.max_failed_attempts:
            retry_after = max(1, int(((oldest + self.policy.failure_window) - now).total_seconds()))
            logger.warning(f"🚫 MFA_USER_THROTTLED: user {user_id} has {failures} failures, retry in {retry_after}s")
            self._record_attempt(user_id, None, False, purpose, context, False, now, throttled=True)
            raise VerificationThrottled(
                f"Too many failed verification attempts; try again in {retry_after} seconds", retry_after
            )

    def _origin_anomaly(self, user_id: int, context: VerificationContext) -> bool:
        if self.risk_scorer is None or not (context.ip_address or context.device_fingerprint):
            return False
        try:
            known = self.risk_scorer.is_known_origin(user_id, context.ip_address, context.device_fingerprint)
        except SQLAlchemyError as e:
            logger.error(f"❌ MFA_ANOMALY_CHECK_FAILED: user {user_id}: {e}")
            return False
        return known is False

    def _record_attempt(
        self,
        user_id: int,
        method: Optional[MFAMethod],
        success: bool,
        purpose: str,
        context: VerificationContext,
        anomaly: bool,
        now: datetime,
        throttled: bool = False,
    ) -> bool:
        """Best-effort write to the verification log"""
        session = self.session_factory()
        try:
            session.add(MFAVerificationLog(
                user_id=user_id,
                method=method,
                success=success,
                purpose=purpose,
                ip_address=context.ip_address,
                user_agent=(context.user_agent or "")[:255] or None,
                anomaly_flag=anomaly,
                throttled=throttled,
                created_at=now,
            ))
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ MFA_LOG_WRITE_FAILED: user {user_id} {purpose}: {e}")
            report_audit_degraded(f"MFA {purpose} attempt for user {user_id} was not recorded")
            return False
        finally:
            session.close()

    def _audit(self, user_id: int, action: str, details: Optional[dict] = None) -> bool:
        if self.audit is None:
            return True
        ok = self.audit.record(user_id, action, "mfa", user_id, details)
        if not ok:
            report_audit_degraded(f"{action} for user {user_id} succeeded but was not audited")
        return ok

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def setup(self, user_id: int) -> MFASetup:
        """Issue a new secret and backup codes. Rejected while MFA is enabled."""
        with self.locks.hold("mfa", user_id):
            with atomic_transaction(session_factory=self.session_factory) as session:
                user = require_user(session, user_id)
                settings = self._settings(session, user_id)
                if settings is not None and settings.is_enabled:
                    raise InvalidStateTransition("MFA is already enabled; disable it before setting up again")

                secret = pyotp.random_base32()
                now = self.clock()
                if settings is None:
                    settings = MFASettings(user_id=user_id, is_enabled=False, backup_code_hashes=[])
                    session.add(settings)
                settings.pending_secret_digest = secret_digest(secret)
                settings.setup_started_at = now
                settings.updated_at = now
                account_name = user.email or f"user-{user_id}"

        backup_codes = tuple(generate_backup_codes(self.policy.backup_code_count))
        uri = pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.policy.issuer_name)
        logger.info(f"🔐 MFA_SETUP_STARTED: user {user_id}")
        return MFASetup(
            secret=secret,
            provisioning_uri=uri,
            qr_code_data_url=QRCodeService.generate_data_url(uri),
            backup_codes=backup_codes,
        )

    def enable(
        self,
        user_id: int,
        secret: str,
        candidate_code: str,
        backup_codes: Sequence[str],
        context: Optional[VerificationContext] = None,
    ) -> MFAOperationResult:
        """
        Persist the secret and backup codes and switch MFA on, but only if the
        candidate code verifies against the secret issued by setup().
        """
        context = context or VerificationContext()
        secret = (secret or "").strip().upper()
        if not secret or not BASE32_PATTERN.match(secret):
            raise ValidationError("Invalid MFA secret")
        codes = [normalize_code(code) for code in backup_codes or []]
        if not codes or any(not BACKUP_CODE_PATTERN.match(code) for code in codes):
            raise ValidationError("Backup codes must be 8 hexadecimal characters each")
        if len(set(codes)) != len(codes):
            raise ValidationError("Backup codes must be unique")
        code = normalize_code(candidate_code)

        with self.locks.hold("mfa", user_id):
            now = self.clock()
            self._check_throttle(user_id, context, now, "enable")
            with atomic_transaction(session_factory=self.session_factory) as session:
                settings = self._settings(session, user_id)
                if settings is None or settings.pending_secret_digest is None:
                    raise InvalidStateTransition("Start MFA setup before enabling it")
                if settings.is_enabled:
                    raise InvalidStateTransition("MFA is already enabled")
                if not hmac.compare_digest(secret_digest(secret), settings.pending_secret_digest):
                    raise ValidationError("This secret was not issued by the current MFA setup")

                timestep = self._match_totp(secret, code, now, None) if TOTP_CODE_PATTERN.match(code) else None
                if timestep is not None:
                    settings.encrypted_secret = self.cipher.encrypt(secret)
                    settings.backup_code_hashes = [hash_backup_code(c) for c in codes]
                    settings.backup_codes_used = 0
                    settings.last_used_timestep = timestep
                    settings.pending_secret_digest = None
                    settings.is_enabled = True
                    settings.verified_at = now
                    settings.enabled_at = now
                    settings.disabled_at = None
                    settings.updated_at = now
                status = self._status_from(settings)

            success = timestep is not None
            logged = self._record_attempt(
                user_id, MFAMethod.TOTP, success, "enable", context, self._origin_anomaly(user_id, context), now
            )
            if not success:
                self.ip_limiter.record_failure(context.ip_address)

        if not success:
            logger.warning(f"❌ MFA_ENABLE_FAILED: user {user_id} candidate code did not verify")
            return MFAOperationResult(
                success=False, status=status, error="Invalid verification code", audit_degraded=not logged
            )

        logger.info(f"✅ MFA_ENABLED: user {user_id}")
        audited = self._audit(user_id, "mfa.enable")
        return MFAOperationResult(success=True, status=status, audit_degraded=not (logged and audited))

    def verify(
        self,
        user_id: int,
        code: str,
        context: Optional[VerificationContext] = None,
        purpose: str = "verify",
    ) -> MFAVerificationResult:
        """
        Accept a current TOTP code or an unused backup code. A matched backup
        code is consumed in the same transaction that accepts it.

        Raises:
            VerificationThrottled: when too many attempts have failed recently
        """
        context = context or VerificationContext()
        normalized = normalize_code(code)

        with self.locks.hold("mfa", user_id):
            now = self.clock()
            self._check_throttle(user_id, context, now, purpose)

            method = None
            error = None
            with atomic_transaction(session_factory=self.session_factory) as session:
                settings = self._settings(session, user_id)
                if settings is None or not settings.is_enabled:
                    error = "MFA is not enabled"
                elif TOTP_CODE_PATTERN.match(normalized):
                    secret = self.cipher.decrypt(settings.encrypted_secret)
                    timestep = self._match_totp(secret, normalized, now, settings.last_used_timestep)
                    if timestep is not None:
                        method = MFAMethod.TOTP
                        settings.last_used_timestep = timestep
                elif BACKUP_CODE_PATTERN.match(normalized):
                    digest = hash_backup_code(normalized)
                    hashes = list(settings.backup_code_hashes or [])
                    matched = [stored for stored in hashes if hmac.compare_digest(stored, digest)]
                    if matched:
                        method = MFAMethod.BACKUP_CODE
                        settings.backup_code_hashes = [stored for stored in hashes if stored != matched[0]]
                        settings.backup_codes_used = (settings.backup_codes_used or 0) + 1

                if method is not None:
                    settings.verified_at = now
                    settings.updated_at = now
                elif error is None:
                    error = "Invalid verification code"
                remaining = len(settings.backup_code_hashes or []) if settings is not None else 0

            success = method is not None
            anomaly = self._origin_anomaly(user_id, context)
            logged = self._record_attempt(user_id, method, success, purpose, context, anomaly, now)
            if success:
                self.ip_limiter.reset(context.ip_address)
            else:
                self.ip_limiter.record_failure(context.ip_address)

        if success:
            logger.info(
                f"✅ MFA_VERIFIED: user {user_id} via {method.value} ({purpose})"
                + (" from unfamiliar origin" if anomaly else "")
            )
        else:
            logger.warning(f"❌ MFA_VERIFY_FAILED: user {user_id} ({purpose}): {error}")
        return MFAVerificationResult(
            success=success,
            method=method,
            error=error,
            anomaly=anomaly,
            backup_codes_remaining=remaining,
            audit_degraded=not logged,
        )

    def _require_fresh_verification(
        self, user_id: int, code: str, context: Optional[VerificationContext], action: str
    ) -> MFAVerificationResult:
        result = self.verify(user_id, code, context, purpose=action)
        if not result.success:
            raise record_permission_denial(user_id, action, f"MFA verification required to {action.replace('_', ' ')}")
        return result

    def disable(self, user_id: int, code: str, context: Optional[VerificationContext] = None) -> MFAOperationResult:
        """Switch MFA off; requires a successful verification in the same call"""
        with self.locks.hold("mfa", user_id):
            verification = self._require_fresh_verification(user_id, code, context, "disable_mfa")
            with atomic_transaction(session_factory=self.session_factory) as session:
                settings = self._settings(session, user_id)
                now = self.clock()
                settings.is_enabled = False
                settings.encrypted_secret = None
                settings.backup_code_hashes = []
                settings.last_used_timestep = None
                settings.pending_secret_digest = None
                settings.disabled_at = now
                settings.updated_at = now
                status = self._status_from(settings)

        logger.info(f"🔓 MFA_DISABLED: user {user_id}")
        audited = self._audit(user_id, "mfa.disable")
        return MFAOperationResult(
            success=True, status=status, audit_degraded=verification.audit_degraded or not audited
        )

    def regenerate_backup_codes(
        self, user_id: int, code: str, context: Optional[VerificationContext] = None
    ) -> MFAOperationResult:
        """Replace every backup code; the new codes are returned once"""
        with self.locks.hold("mfa", user_id):
            verification = self._require_fresh_verification(user_id, code, context, "regenerate_backup_codes")
            codes = tuple(generate_backup_codes(self.policy.backup_code_count))
            with atomic_transaction(session_factory=self.session_factory) as session:
                settings = self._settings(session, user_id)
                settings.backup_code_hashes = [hash_backup_code(c) for c in codes]
                settings.backup_codes_used = 0
                settings.updated_at = self.clock()
                status = self._status_from(settings)

        logger.info(f"🔑 MFA_BACKUP_CODES_REGENERATED: user {user_id}")
        audited = self._audit(user_id, "mfa.regenerate_backup_codes")
        return MFAOperationResult(
            success=True, status=status, backup_codes=codes,
            audit_degraded=verification.audit_degraded or not audited,
        )

    def require_step_up(
        self,
        user_id: int,
        code: Optional[str],
        context: Optional[VerificationContext] = None,
        action: str = "sensitive_action",
    ) -> Optional[MFAVerificationResult]:
        """
        Gate a sensitive mutation such as a password change.
        Users without MFA pass through (None); everyone else must verify.

        Raises:
            PermissionDenied: if MFA is enabled and the code does not verify
        """
        if not self.status(user_id).is_enabled:
            return None
        if not code:
            raise record_permission_denial(user_id, action, "MFA code required")
        return self._require_fresh_verification(user_id, code, context, action)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status(self, user_id: int) -> MFAStatus:
        session = self.session_factory()
        try:
            return self._status_from(self._settings(session, user_id))
        finally:
            session.close()

    def verification_history(self, user_id: int, limit: int = 50) -> List[MFAVerificationLog]:
        """Most recent attempts first, for login-history and security-event views"""
        session = self.session_factory()
        try:
            return list(session.execute(
                select(MFAVerificationLog)
                .where(MFAVerificationLog.user_id == user_id)
                .order_by(MFAVerificationLog.created_at.desc(), MFAVerificationLog.id.desc())
                .limit(limit)
            ).scalars())
        finally:
            session.close()
