"""
Fraud Alert Pipeline
Turns Risk Scorer outputs and independent rule triggers into operator alerts.

- Severity comes from a fixed (rule, magnitude) mapping.
- A rule firing again for the same subject and alert type inside the cool-down
  window refreshes the existing Pending alert instead of adding a row.
- Statistics are a read-only reduction over alert and risk-score history.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    FraudAlert, FraudAlertStatus, FraudSeverity, RiskProfile, TransactionRiskScore
)
from services.risk_scorer import RiskAssessment, RiskEvent, RiskScorer
from utils.admin_security import require_operator
from utils.atomic_transactions import atomic_transaction
from utils.entity_lock import EntityLockRegistry, entity_locks
from utils.exception_handler import EntityNotFound, InvalidStateTransition, ValidationError
from utils.helpers import as_naive_utc, utc_now

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {
    FraudSeverity.LOW: 0,
    FraudSeverity.MEDIUM: 1,
    FraudSeverity.HIGH: 2,
    FraudSeverity.CRITICAL: 3,
}

REVIEW_TRANSITIONS = {
    FraudAlertStatus.PENDING: {
        FraudAlertStatus.REVIEWED, FraudAlertStatus.DISMISSED, FraudAlertStatus.CONFIRMED,
    },
    FraudAlertStatus.REVIEWED: {FraudAlertStatus.DISMISSED, FraudAlertStatus.CONFIRMED},
    FraudAlertStatus.DISMISSED: set(),
    FraudAlertStatus.CONFIRMED: set(),
}


def severity_for(rule: str, magnitude: float) -> FraudSeverity:
    """
    Fixed mapping from a rule and how hard it fired to a severity.

    risk_threshold: magnitude is the risk score
    velocity:       magnitude is observed count / allowed count
    origin_anomaly: magnitude is the number of unseen origin keys
    manual_review:  always High
    """
    if rule == "risk_threshold":
        if magnitude >= 90:
            return FraudSeverity.CRITICAL
        if magnitude >= 70:
            return FraudSeverity.HIGH
        if magnitude >= 50:
            return FraudSeverity.MEDIUM
        return FraudSeverity.LOW
    if rule == "velocity":
        if magnitude >= 2:
            return FraudSeverity.CRITICAL
        if magnitude >= 1.5:
            return FraudSeverity.HIGH
        return FraudSeverity.MEDIUM
    if rule == "origin_anomaly":
        return FraudSeverity.MEDIUM if magnitude >= 2 else FraudSeverity.LOW
    if rule == "manual_review":
        return FraudSeverity.HIGH
    raise ValueError(f"Unknown fraud rule: {rule}")


@dataclass(frozen=True)
class FraudRules:
    """Rule thresholds for the pipeline"""

    cooldown_minutes: int = 60
    alert_score_threshold: int = 50
    high_value_threshold: Decimal = Decimal("50000")
    velocity_max_high_value: int = 3
    velocity_window_minutes: int = 60

    @classmethod
    def from_config(cls) -> "FraudRules":
        return cls(
            cooldown_minutes=Config.FRAUD_ALERT_COOLDOWN_MINUTES,
            high_value_threshold=Config.FRAUD_HIGH_VALUE_THRESHOLD,
            velocity_max_high_value=Config.FRAUD_VELOCITY_MAX_HIGH_VALUE,
            velocity_window_minutes=Config.FRAUD_VELOCITY_WINDOW_MINUTES,
        )


class AlertOutcome(NamedTuple):
    alert: FraudAlert
    created: bool


class MonitorResult(NamedTuple):
    """Assessment of one event plus any alerts it raised or refreshed"""

    assessment: RiskAssessment
    alerts: Tuple[AlertOutcome, ...]


@dataclass
class FraudStatistics:
    days_back: int
    since: datetime
    total_alerts: int = 0
    alerts_by_severity: Dict[str, int] = field(default_factory=dict)
    alerts_by_status: Dict[str, int] = field(default_factory=dict)
    pending_alerts: int = 0
    scored_transactions: int = 0
    flagged_transactions: int = 0
    high_risk_transactions: int = 0
    average_risk_score: float = 0.0
    low_trust_users: int = 0


def summarize_fraud_activity(
    alerts: Iterable[FraudAlert],
    scores: Iterable[TransactionRiskScore],
    low_trust_users: int,
    days_back: int,
    since: datetime,
    flag_threshold: int = 50,
    high_risk_threshold: int = 70,
) -> FraudStatistics:
    """Pure reduction over alert and risk-score rows"""
    alert_list = list(alerts)
    score_values = [row.risk_score for row in scores]

    by_severity = Counter(alert.severity.value for alert in alert_list)
    by_status = Counter(alert.status.value for alert in alert_list)

    return FraudStatistics(
        days_back=days_back,
        since=since,
        total_alerts=len(alert_list),
        alerts_by_severity={severity.value: by_severity.get(severity.value, 0) for severity in FraudSeverity},
        alerts_by_status={status.value: by_status.get(status.value, 0) for status in FraudAlertStatus},
        pending_alerts=by_status.get(FraudAlertStatus.PENDING.value, 0),
        scored_transactions=len(score_values),
        flagged_transactions=sum(1 for value in score_values if value >= flag_threshold),
        high_risk_transactions=sum(1 for value in score_values if value >= high_risk_threshold),
        average_risk_score=round(sum(score_values) / len(score_values), 2) if score_values else 0.0,
        low_trust_users=low_trust_users,
    )


class FraudAlertPipeline:
    """Aggregates risk scores and rule triggers into operator alerts"""

    def __init__(
        self,
        risk_scorer: RiskScorer,
        session_factory: Optional[Callable[[], Session]] = None,
        rules: Optional[FraudRules] = None,
        locks: Optional[EntityLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.risk_scorer = risk_scorer
        self.session_factory = session_factory
        self.rules = rules or FraudRules.from_config()
        self.locks = locks or entity_locks
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def monitor(self, event: RiskEvent) -> MonitorResult:
        """Score an event, evaluate every rule, and raise alerts for those that fire"""
        assessment = self.risk_scorer.assess(event)
        outcomes: List[AlertOutcome] = []

        if assessment.score >= self.rules.alert_score_threshold:
            severity = severity_for("risk_threshold", assessment.score)
            alert_type = "critical_transaction" if severity == FraudSeverity.CRITICAL else "suspicious_transaction"
            outcomes.append(self.raise_alert(
                event.user_id,
                alert_type,
                severity,
                f"{event.event_type} of {event.amount} scored {assessment.score} ({assessment.level.value})",
                {
                    "event_type": event.event_type,
                    "amount": str(event.amount),
                    "risk_score": assessment.score,
                    "factors": list(assessment.factors),
                },
            ))

        velocity_outcome = self._check_velocity(event, assessment)
        if velocity_outcome is not None:
            outcomes.append(velocity_outcome)

        if assessment.new_origins:
            outcomes.append(self.raise_alert(
                event.user_id,
                "origin_anomaly",
                severity_for("origin_anomaly", len(assessment.new_origins)),
                f"Activity from origin with no prior history: {', '.join(assessment.new_origins)}",
                {"origins": list(assessment.new_origins), "event_type": event.event_type},
            ))

        return MonitorResult(assessment=assessment, alerts=tuple(outcomes))

    def _check_velocity(self, event: RiskEvent, assessment: RiskAssessment) -> Optional[AlertOutcome]:
        rules = self.rules
        if event.amount < rules.high_value_threshold:
            return None

        occurred_at = as_naive_utc(event.occurred_at)
        window_start = occurred_at - timedelta(minutes=rules.velocity_window_minutes)
        session = self.session_factory()
        try:
            count = session.execute(
                select(func.count(TransactionRiskScore.id)).where(
                    TransactionRiskScore.user_id == event.user_id,
                    TransactionRiskScore.amount >= rules.high_value_threshold,
                    TransactionRiskScore.created_at >= window_start,
                    TransactionRiskScore.created_at <= occurred_at,
                )
            ).scalar_one()
        finally:
            session.close()

        # The history row for this event is missing when scoring ran degraded
        if assessment.degraded or assessment.audit_degraded:
            count += 1

        if count <= rules.velocity_max_high_value:
            return None

        ratio = count / rules.velocity_max_high_value
        return self.raise_alert(
            event.user_id,
            "velocity",
            severity_for("velocity", ratio),
            f"{count} high-value transactions within {rules.velocity_window_minutes} minutes",
            {"count": count, "window_minutes": rules.velocity_window_minutes},
        )

    def raise_alert(
        self,
        user_id: int,
        alert_type: str,
        severity: FraudSeverity,
        description: str,
        related_data: Optional[dict] = None,
    ) -> AlertOutcome:
        """Create an alert, or refresh the matching Pending alert inside the cool-down window"""
        if not alert_type:
            raise ValidationError("alert_type is required")

        now = self.clock()
        cooldown_start = now - timedelta(minutes=self.rules.cooldown_minutes)

        with self.locks.hold("fraud_alert", f"{user_id}:{alert_type}"):
            with atomic_transaction(session_factory=self.session_factory) as session:
                existing = session.execute(
                    select(FraudAlert)
                    .where(
                        FraudAlert.user_id == user_id,
                        FraudAlert.alert_type == alert_type,
                        FraudAlert.status == FraudAlertStatus.PENDING,
                        FraudAlert.last_triggered_at >= cooldown_start,
                    )
                    .order_by(FraudAlert.last_triggered_at.desc())
                    .limit(1)
                ).scalar_one_or_none()

                if existing is not None:
                    existing.last_triggered_at = now
                    existing.occurrence_count = (existing.occurrence_count or 1) + 1
                    if SEVERITY_ORDER[severity] > SEVERITY_ORDER[existing.severity]:
                        existing.severity = severity
                    session.flush()
                    logger.info(
                        f"🔁 FRAUD_ALERT_SUPPRESSED: user {user_id} {alert_type} within cool-down, "
                        f"alert {existing.id} refreshed (x{existing.occurrence_count})"
                    )
                    return AlertOutcome(alert=existing, created=False)

                alert = FraudAlert(
                    user_id=user_id,
                    alert_type=alert_type,
                    severity=severity,
                    status=FraudAlertStatus.PENDING,
                    description=description,
                    related_data=related_data,
                    occurrence_count=1,
                    created_at=now,
                    last_triggered_at=now,
                )
                session.add(alert)
                session.flush()

        logger.warning(
            f"🚨 FRAUD_ALERT: user {user_id} {alert_type} severity={severity.value} alert={alert.id}: {description}"
        )
        return AlertOutcome(alert=alert, created=True)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def review(
        self,
        alert_id: int,
        operator_id: int,
        status: FraudAlertStatus,
        note: Optional[str] = None,
    ) -> FraudAlert:
        """Operator review: Pending -> Reviewed|Dismissed|Confirmed, Reviewed -> Dismissed|Confirmed"""
        with self.locks.hold("fraud_alert_review", alert_id):
            with atomic_transaction(session_factory=self.session_factory) as session:
                require_operator(session, operator_id, "review fraud alerts")
                alert = session.get(FraudAlert, alert_id)
                if alert is None:
                    raise EntityNotFound("FraudAlert", alert_id)

                if status not in REVIEW_TRANSITIONS[alert.status]:
                    raise InvalidStateTransition(
                        f"Fraud alert {alert_id} cannot move from {alert.status.value} to {status.value}",
                        current_state=alert.status,
                        target_state=status,
                    )

                previous = alert.status
                alert.status = status
                alert.reviewed_by = operator_id
                alert.reviewed_at = self.clock()
                alert.review_note = note
                session.flush()

        logger.info(f"🛡️ FRAUD_ALERT_REVIEWED: alert {alert_id} {previous.value} → {status.value} by {operator_id}")
        return alert

    def list_alerts(
        self,
        operator_id: int,
        status: Optional[FraudAlertStatus] = None,
        severity: Optional[FraudSeverity] = None,
        user_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[FraudAlert]:
        session = self.session_factory()
        try:
            require_operator(session, operator_id, "list fraud alerts")
            stmt = select(FraudAlert)
            if status is not None:
                stmt = stmt.where(FraudAlert.status == status)
            if severity is not None:
                stmt = stmt.where(FraudAlert.severity == severity)
            if user_id is not None:
                stmt = stmt.where(FraudAlert.user_id == user_id)
            stmt = stmt.order_by(FraudAlert.last_triggered_at.desc(), FraudAlert.id.desc()).limit(limit)
            return list(session.execute(stmt).scalars())
        finally:
            session.close()

    def statistics(
        self, operator_id: int, days_back: Optional[int] = None, now: Optional[datetime] = None
    ) -> FraudStatistics:
        """Counts by severity and status over a trailing window. Read-only."""
        days = days_back if days_back is not None else Config.FRAUD_STATS_DEFAULT_DAYS
        if days <= 0:
            raise ValidationError("days_back must be positive")
        since = (as_naive_utc(now) if now is not None else self.clock()) - timedelta(days=days)

        session = self.session_factory()
        try:
            require_operator(session, operator_id, "view fraud statistics")
            alerts = session.execute(
                select(FraudAlert).where(FraudAlert.created_at >= since)
            ).scalars().all()
            scores = session.execute(
                select(TransactionRiskScore).where(TransactionRiskScore.created_at >= since)
            ).scalars().all()
            low_trust_users = session.execute(
                select(func.count(RiskProfile.id)).where(
                    RiskProfile.trust_score < self.risk_scorer.policy.low_trust_threshold
                )
            ).scalar_one()
        finally:
            session.close()

        return summarize_fraud_activity(
            alerts,
            scores,
            low_trust_users,
            days_back=days,
            since=since,
            flag_threshold=self.risk_scorer.policy.medium_threshold,
            high_risk_threshold=self.risk_scorer.policy.high_threshold,
        )
