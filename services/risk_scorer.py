"""
Risk Scorer
===========

Scores a behavioral event (amount, type, time, origin) for one user and keeps
that user's RiskProfile current.

Evaluation is two explicit steps:
1. Load the profile snapshot. If loading fails, fall back to a neutral default
   snapshot and log the failure; a degraded score is capped at Medium.
2. Compute the score with `score_event`, always. It is a pure function of the
   event and the snapshot, so re-scoring the same inputs reproduces the result.

The event's own timestamp drives every time-based rule, never the wall clock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, FrozenSet, List, NamedTuple, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import RiskLevel, RiskProfile, TransactionRiskScore, User
from utils.atomic_transactions import atomic_transaction
from utils.entity_lock import EntityLockRegistry, entity_locks
from utils.exception_handler import OperationTimeout
from utils.fee_calculator import FeeCalculator
from utils.helpers import as_naive_utc, utc_now

logger = logging.getLogger(__name__)

MAX_KNOWN_ORIGINS = 50


@dataclass(frozen=True)
class RiskEvent:
    """A scored behavioral event"""

    user_id: int
    amount: Decimal
    event_type: str
    occurred_at: datetime
    origin_ip: Optional[str] = None
    device_fingerprint: Optional[str] = None

    def origin_keys(self) -> Tuple[str, ...]:
        keys = []
        if self.origin_ip:
            keys.append(f"ip:{self.origin_ip}")
        if self.device_fingerprint:
            keys.append(f"device:{self.device_fingerprint}")
        return tuple(keys)


@dataclass(frozen=True)
class ProfileSnapshot:
    """Immutable view of a RiskProfile at scoring time"""

    user_id: int
    trust_score: float
    transaction_count: int = 0
    average_amount: Decimal = Decimal("0")
    recent_scores: Tuple[int, ...] = ()
    recent_activity: Tuple[Tuple[datetime, Decimal], ...] = ()
    known_origins: FrozenSet[str] = frozenset()
    account_created_at: Optional[datetime] = None
    is_default: bool = False


class RiskAssessment(NamedTuple):
    """Result of scoring one event"""

    user_id: int
    score: int
    level: RiskLevel
    is_high_risk: bool
    flagged: bool
    should_block: bool
    factors: Tuple[str, ...]
    new_origins: Tuple[str, ...] = ()
    degraded: bool = False
    audit_degraded: bool = False


@dataclass(frozen=True)
class RiskPolicy:
    """Thresholds and rule constants for scoring"""

    low_threshold: int = 30
    medium_threshold: int = 50
    high_threshold: int = 70
    critical_threshold: int = 90
    default_trust: float = 50.0
    trust_baseline: float = 30.0
    trust_decay: float = 0.1
    window_size: int = 20
    large_transaction_multiplier: Decimal = Decimal("5")
    velocity_limit: int = 10
    max_daily_amount: Decimal = Decimal("100000")
    new_account_days: int = 7
    unusual_hour_start: int = 0
    unusual_hour_end: int = 5
    large_withdrawal_amount: Decimal = Decimal("10000")
    low_trust_threshold: float = 30.0

    @classmethod
    def from_config(cls) -> "RiskPolicy":
        return cls(
            high_threshold=Config.RISK_HIGH_THRESHOLD,
            default_trust=Config.RISK_DEFAULT_TRUST,
            trust_baseline=Config.RISK_TRUST_BASELINE,
            trust_decay=Config.RISK_TRUST_DECAY,
            window_size=Config.RISK_WINDOW_SIZE,
            large_transaction_multiplier=Config.RISK_LARGE_TRANSACTION_MULTIPLIER,
            velocity_limit=Config.RISK_VELOCITY_LIMIT,
            max_daily_amount=Config.RISK_MAX_DAILY_AMOUNT,
            new_account_days=Config.RISK_NEW_ACCOUNT_DAYS,
            unusual_hour_start=Config.RISK_UNUSUAL_HOUR_START,
            unusual_hour_end=Config.RISK_UNUSUAL_HOUR_END,
            large_withdrawal_amount=Config.RISK_LARGE_WITHDRAWAL_AMOUNT,
            low_trust_threshold=Config.RISK_LOW_TRUST_THRESHOLD,
        )

    @property
    def medium_cap(self) -> int:
        """Highest score that is still Medium"""
        return self.high_threshold - 1


class RiskScorer:
    """Computes risk scores and maintains per-user risk profiles"""

    # Points added by each rule
    WEIGHTS = {
        "large_transaction": 25,
        "new_account": 20,
        "velocity": 30,
        "daily_amount": 25,
        "unusual_hour": 15,
        "first_large_withdrawal": 20,
        "unknown_origin": 10,
        "low_trust": 20,
    }

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        policy: Optional[RiskPolicy] = None,
        locks: Optional[EntityLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.policy = policy or RiskPolicy.from_config()
        self.locks = locks or entity_locks
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # Pure scoring
    # ------------------------------------------------------------------

    def default_snapshot(self, user_id: int) -> ProfileSnapshot:
        return ProfileSnapshot(user_id=user_id, trust_score=self.policy.default_trust, is_default=True)

    def level_for(self, score: int) -> RiskLevel:
        if score >= self.policy.critical_threshold:
            return RiskLevel.CRITICAL
        if score >= self.policy.high_threshold:
            return RiskLevel.HIGH
        if score >= self.policy.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score_event(self, event: RiskEvent, snapshot: ProfileSnapshot) -> RiskAssessment:
        """Score an event against a profile snapshot. No I/O, no clock."""
        policy = self.policy
        amount = Decimal(str(event.amount))
        occurred_at = as_naive_utc(event.occurred_at)
        score = 0
        factors: List[str] = []

        if snapshot.average_amount > 0 and amount > 0:
            multiplier = amount / snapshot.average_amount
            if multiplier > policy.large_transaction_multiplier:
                score += self.WEIGHTS["large_transaction"]
                factors.append(f"Transaction {multiplier:.1f}x larger than average")

        if snapshot.account_created_at is not None:
            account_age_days = (occurred_at - snapshot.account_created_at).days
            if account_age_days < policy.new_account_days:
                score += self.WEIGHTS["new_account"]
                factors.append(f"New account ({max(account_age_days, 0)} days old)")

        hour_ago = occurred_at - timedelta(hours=1)
        recent_count = sum(1 for at, _ in snapshot.recent_activity if hour_ago <= at <= occurred_at)
        if recent_count >= policy.velocity_limit:
            score += self.WEIGHTS["velocity"]
            factors.append(f"High velocity: {recent_count} transactions in last hour")

        today = occurred_at.date()
        today_total = sum(
            (value for at, value in snapshot.recent_activity if at.date() == today and at <= occurred_at),
            Decimal("0"),
        )
        if today_total + amount > policy.max_daily_amount:
            score += self.WEIGHTS["daily_amount"]
            factors.append(f"Daily limit exceeded: {FeeCalculator.quantize(today_total + amount)}")

        if policy.unusual_hour_start <= occurred_at.hour <= policy.unusual_hour_end:
            score += self.WEIGHTS["unusual_hour"]
            factors.append(f"Unusual time: {occurred_at.hour:02d}:00")

        if (
            event.event_type == "withdrawal"
            and amount > policy.large_withdrawal_amount
            and snapshot.transaction_count < 5
        ):
            score += self.WEIGHTS["first_large_withdrawal"]
            factors.append("First large withdrawal from new account")

        new_origins: Tuple[str, ...] = ()
        if snapshot.transaction_count > 0:
            new_origins = tuple(key for key in event.origin_keys() if key not in snapshot.known_origins)
            if new_origins:
                score += self.WEIGHTS["unknown_origin"]
                factors.append(f"Activity from unseen origin: {', '.join(new_origins)}")

        if snapshot.trust_score < policy.low_trust_threshold:
            shortfall = (policy.low_trust_threshold - snapshot.trust_score) / policy.low_trust_threshold
            points = int(round(self.WEIGHTS["low_trust"] * shortfall))
            if points:
                score += points
                factors.append(f"Low trust score ({snapshot.trust_score:.1f})")

        score = max(0, min(100, score))
        if snapshot.is_default and score > policy.medium_cap:
            score = policy.medium_cap
            factors.append("Scored against default profile (capped at medium)")

        level = self.level_for(score)
        return RiskAssessment(
            user_id=event.user_id,
            score=score,
            level=level,
            is_high_risk=score >= policy.high_threshold,
            flagged=score >= policy.medium_threshold,
            should_block=score >= policy.critical_threshold,
            factors=tuple(factors),
            new_origins=new_origins,
            degraded=snapshot.is_default,
        )

    def next_trust(self, old_trust: float, score: int) -> float:
        """Exponentially weighted trust update, clamped to [0, 100]"""
        updated = old_trust + self.policy.trust_decay * (self.policy.trust_baseline - score)
        return round(max(0.0, min(100.0, updated)), 4)

    # ------------------------------------------------------------------
    # Profile persistence
    # ------------------------------------------------------------------

    def _snapshot_from_profile(self, profile: RiskProfile) -> ProfileSnapshot:
        activity = tuple(
            (datetime.fromisoformat(at), Decimal(str(value)))
            for at, value in (profile.recent_activity or [])
        )
        return ProfileSnapshot(
            user_id=profile.user_id,
            trust_score=float(profile.trust_score),
            transaction_count=profile.transaction_count or 0,
            average_amount=Decimal(str(profile.average_amount or 0)),
            recent_scores=tuple(profile.recent_scores or ()),
            recent_activity=activity,
            known_origins=frozenset(profile.known_origins or ()),
            account_created_at=profile.account_created_at,
        )

    def _load_profile(self, session: Session, user_id: int) -> Optional[RiskProfile]:
        return session.execute(
            select(RiskProfile).where(RiskProfile.user_id == user_id)
        ).scalar_one_or_none()

    def _new_profile(self, session: Session, user_id: int) -> RiskProfile:
        user = session.get(User, user_id)
        now = self.clock()
        profile = RiskProfile(
            user_id=user_id,
            trust_score=self.policy.default_trust,
            transaction_count=0,
            average_amount=Decimal("0"),
            recent_scores=[],
            recent_activity=[],
            known_origins=[],
            account_created_at=user.created_at if user is not None else None,
            created_at=now,
            updated_at=now,
        )
        session.add(profile)
        session.flush()
        logger.info(f"📊 RISK_PROFILE_CREATED: user {user_id}")
        return profile

    def load_snapshot(self, user_id: int) -> ProfileSnapshot:
        """Current snapshot; a user without a profile gets a fresh (not degraded) one"""
        session = self.session_factory()
        try:
            profile = self._load_profile(session, user_id)
            if profile is not None:
                return self._snapshot_from_profile(profile)
            user = session.get(User, user_id)
            return ProfileSnapshot(
                user_id=user_id,
                trust_score=self.policy.default_trust,
                account_created_at=user.created_at if user is not None else None,
            )
        finally:
            session.close()

    def _safe_load_snapshot(self, user_id: int) -> ProfileSnapshot:
        # Step 1 of evaluation: never raises
        try:
            return self.load_snapshot(user_id)
        except Exception as e:
            logger.error(f"❌ RISK_PROFILE_LOAD_FAILED: user {user_id}, scoring against default profile: {e}")
            return self.default_snapshot(user_id)

    def assess(self, event: RiskEvent) -> RiskAssessment:
        """
        Score an event and fold it into the user's profile.
        Never raises for profile or history failures; check `degraded` and
        `audit_degraded` on the result instead.
        """
        try:
            with self.locks.hold("risk_profile", event.user_id):
                snapshot = self._safe_load_snapshot(event.user_id)
                assessment = self.score_event(event, snapshot)
                if snapshot.is_default:
                    return assessment
                if not self._record(event, assessment):
                    assessment = assessment._replace(audit_degraded=True)
                return assessment
        except OperationTimeout:
            logger.error(f"❌ RISK_PROFILE_BUSY: user {event.user_id}, scoring against default profile")
            return self.score_event(event, self.default_snapshot(event.user_id))

    def _record(self, event: RiskEvent, assessment: RiskAssessment) -> bool:
        """Persist the score history row and the profile update in one transaction"""
        occurred_at = as_naive_utc(event.occurred_at)
        amount = FeeCalculator.quantize(event.amount)
        try:
            with atomic_transaction(session_factory=self.session_factory) as session:
                profile = self._load_profile(session, event.user_id) or self._new_profile(session, event.user_id)

                session.add(TransactionRiskScore(
                    user_id=event.user_id,
                    event_type=event.event_type,
                    amount=amount,
                    risk_score=assessment.score,
                    risk_level=assessment.level,
                    is_high_risk=assessment.is_high_risk,
                    factors=list(assessment.factors),
                    origin_ip=event.origin_ip,
                    device_fingerprint=event.device_fingerprint,
                    created_at=occurred_at,
                ))

                count = profile.transaction_count or 0
                average = Decimal(str(profile.average_amount or 0))
                profile.average_amount = FeeCalculator.quantize((average * count + amount) / (count + 1))
                profile.transaction_count = count + 1
                profile.recent_scores = (list(profile.recent_scores or []) + [assessment.score])[-self.policy.window_size:]

                day_ago = occurred_at - timedelta(hours=24)
                activity = [
                    [at, value] for at, value in (profile.recent_activity or [])
                    if datetime.fromisoformat(at) >= day_ago
                ]
                activity.append([occurred_at.isoformat(), str(amount)])
                profile.recent_activity = activity

                origins = [key for key in (profile.known_origins or []) if key not in event.origin_keys()]
                profile.known_origins = (origins + list(event.origin_keys()))[-MAX_KNOWN_ORIGINS:]

                old_trust = float(profile.trust_score)
                profile.trust_score = self.next_trust(old_trust, assessment.score)
                profile.last_scored_at = occurred_at
                profile.updated_at = self.clock()

            logger.info(
                f"📊 RISK_SCORED: user {event.user_id} {event.event_type} score={assessment.score} "
                f"level={assessment.level.value} trust {old_trust:.2f} → {profile.trust_score:.2f}"
            )
            return True
        except Exception as e:
            logger.error(f"❌ RISK_RECORD_FAILED: user {event.user_id}: {e}")
            return False

    def adjust_trust(self, user_id: int, delta: float, reason: str, session: Optional[Session] = None) -> float:
        """
        Shift a user's trust score by delta (clamped to [0, 100]).
        With a session the change joins the caller's transaction.
        """
        with self.locks.hold("risk_profile", user_id):
            with atomic_transaction(session=session, session_factory=self.session_factory) as tx:
                profile = self._load_profile(tx, user_id) or self._new_profile(tx, user_id)
                old_trust = float(profile.trust_score)
                profile.trust_score = round(max(0.0, min(100.0, old_trust + delta)), 4)
                profile.updated_at = self.clock()
                tx.flush()
                new_trust = profile.trust_score

        logger.info(f"⚖️ TRUST_ADJUSTED: user {user_id} {old_trust:.2f} → {new_trust:.2f} ({reason})")
        return new_trust

    def get_trust_score(self, user_id: int) -> float:
        session = self.session_factory()
        try:
            profile = self._load_profile(session, user_id)
            return float(profile.trust_score) if profile is not None else self.policy.default_trust
        finally:
            session.close()

    def get_profile(self, user_id: int) -> Optional[RiskProfile]:
        session = self.session_factory()
        try:
            return self._load_profile(session, user_id)
        finally:
            session.close()

    def is_known_origin(
        self, user_id: int, origin_ip: Optional[str] = None, device_fingerprint: Optional[str] = None
    ) -> Optional[bool]:
        """
        Whether the profile has seen this origin before.
        None when there is no history to compare against.
        """
        probe = RiskEvent(
            user_id=user_id, amount=Decimal("0"), event_type="probe", occurred_at=self.clock(),
            origin_ip=origin_ip, device_fingerprint=device_fingerprint,
        )
        keys = probe.origin_keys()
        if not keys:
            return None
        snapshot = self.load_snapshot(user_id)
        if snapshot.transaction_count == 0 and not snapshot.known_origins:
            return None
        return all(key in snapshot.known_origins for key in keys)
