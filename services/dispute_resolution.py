"""
Dispute Resolution Service
Opens disputes against funded escrows, collects append-only evidence and lets an
operator resolve them. A resolution marks the dispute, drives the escrow
transition and adjusts the losing party's trust score in one transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    OPEN_DISPUTE_STATUSES, Dispute, DisputeEvidence, DisputeOutcome, DisputeStatus,
    EscrowStatus, EscrowTransaction, RiskProfile, WalletLedgerEntry
)
from services.audit_logger import AuditLogger
from services.escrow_engine import EscrowEngine
from services.evidence_storage import EvidenceFile, EvidencePolicy, ObjectStore
from services.retry_service import RETRY_STRATEGIES, RetryService, call_with_timeout
from services.risk_scorer import RiskScorer
from utils.admin_security import require_operator, require_party
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import (
    ConflictError, EntityNotFound, ExternalDependencyFailure, InvalidStateTransition,
    OperationTimeout, ValidationError, report_audit_degraded
)
from utils.fee_calculator import FeeCalculator
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionOutcome:
    """Operator decision on a dispute"""

    kind: DisputeOutcome
    split_ratio: Optional[Decimal] = None

    def __post_init__(self):
        if self.kind == DisputeOutcome.SPLIT:
            if self.split_ratio is None:
                raise ValidationError("Split outcome requires a ratio")
            try:
                ratio = Decimal(str(self.split_ratio))
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Invalid split ratio: {self.split_ratio!r}")
            if not ratio.is_finite() or ratio < 0 or ratio > 1:
                raise ValidationError(f"Split ratio must be within [0, 1], got {self.split_ratio}")
            object.__setattr__(self, "split_ratio", ratio)
        elif self.split_ratio is not None:
            raise ValidationError(f"Only split outcomes carry a ratio ({self.kind.value})")

    @classmethod
    def full_refund(cls) -> "ResolutionOutcome":
        return cls(DisputeOutcome.FULL_REFUND_TO_CLIENT)

    @classmethod
    def full_release(cls) -> "ResolutionOutcome":
        return cls(DisputeOutcome.FULL_RELEASE_TO_FREELANCER)

    @classmethod
    def split(cls, freelancer_ratio) -> "ResolutionOutcome":
        return cls(DisputeOutcome.SPLIT, freelancer_ratio)

    @classmethod
    def no_action(cls) -> "ResolutionOutcome":
        return cls(DisputeOutcome.NO_ACTION)


@dataclass(frozen=True)
class DisputePolicy:
    reason_min_length: int = 10
    reason_max_length: int = 2000
    max_trust_penalty: float = 15.0
    min_trust_penalty: float = 2.0
    severity_amount_ceiling: Decimal = Decimal("100000")
    severity_days_ceiling: int = 30
    default_trust: float = 50.0

    @classmethod
    def from_config(cls) -> "DisputePolicy":
        return cls(
            reason_min_length=Config.DISPUTE_REASON_MIN_LENGTH,
            reason_max_length=Config.DISPUTE_REASON_MAX_LENGTH,
            max_trust_penalty=Config.DISPUTE_MAX_TRUST_PENALTY,
            min_trust_penalty=Config.DISPUTE_MIN_TRUST_PENALTY,
            severity_amount_ceiling=Config.DISPUTE_SEVERITY_AMOUNT_CEILING,
            severity_days_ceiling=Config.DISPUTE_SEVERITY_DAYS_CEILING,
            default_trust=Config.RISK_DEFAULT_TRUST,
        )


class TrustAdjustment(NamedTuple):
    user_id: int
    delta: float
    new_trust: float


class DisputeResult(NamedTuple):
    """Result of a dispute operation"""

    dispute: Dispute
    escrow_status: Optional[EscrowStatus] = None
    evidence: Tuple[DisputeEvidence, ...] = ()
    ledger_entries: Tuple[WalletLedgerEntry, ...] = ()
    trust_adjustment: Optional[TrustAdjustment] = None
    changed: bool = True
    audit_degraded: bool = False


class QueueEntry(NamedTuple):
    """One open dispute in the operator review queue"""

    dispute_id: int
    escrow_id: int
    amount: Decimal
    combined_risk: float
    days_open: float
    severity: float
    created_at: datetime


# Severity weights: amount, combined party risk, time open
SEVERITY_WEIGHTS = (0.4, 0.35, 0.25)


def dispute_severity(
    amount: Decimal, trust_scores: Sequence[float], days_open: float, policy: DisputePolicy
) -> float:
    """
    Severity in [0, 1]. Larger amounts, riskier parties (lower trust) and longer
    open time all push a dispute up the queue.
    """
    amount_part = min(float(amount) / float(policy.severity_amount_ceiling), 1.0)
    combined_risk = sum(100.0 - trust for trust in trust_scores)
    risk_part = min(combined_risk / (100.0 * max(len(trust_scores), 1)), 1.0)
    age_part = min(max(days_open, 0.0) / policy.severity_days_ceiling, 1.0)
    amount_w, risk_w, age_w = SEVERITY_WEIGHTS
    return round(amount_w * amount_part + risk_w * risk_part + age_w * age_part, 6)


def trust_penalty(severity: float, policy: DisputePolicy) -> float:
    """Trust points taken from the party a resolution goes against"""
    return round(max(policy.min_trust_penalty, policy.max_trust_penalty * severity), 4)


class DisputeEngine:
    """Dispute lifecycle: open, evidence, review, resolve, close"""

    def __init__(
        self,
        escrow_engine: EscrowEngine,
        risk_scorer: Optional[RiskScorer] = None,
        object_store: Optional[ObjectStore] = None,
        evidence_policy: Optional[EvidencePolicy] = None,
        audit: Optional[AuditLogger] = None,
        policy: Optional[DisputePolicy] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        storage_timeout_seconds: Optional[float] = None,
        storage_retry: Optional[dict] = None,
    ):
        self.escrow_engine = escrow_engine
        self.risk_scorer = risk_scorer
        self.object_store = object_store
        self.evidence_policy = evidence_policy or EvidencePolicy.from_config()
        self.audit = audit
        self.policy = policy or DisputePolicy.from_config()
        self.session_factory = session_factory or escrow_engine.session_factory
        # Shares the escrow engine's locks so dispute and escrow paths serialize together
        self.locks = escrow_engine.locks
        self.clock = escrow_engine.clock
        self.storage_timeout_seconds = storage_timeout_seconds or Config.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.storage_retry = dict(storage_retry or RETRY_STRATEGIES['object_store'])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_reason(self, reason: str) -> str:
        text = (reason or "").strip()
        if len(text) < self.policy.reason_min_length:
            raise ValidationError(
                f"Dispute reason must be at least {self.policy.reason_min_length} characters"
            )
        if len(text) > self.policy.reason_max_length:
            raise ValidationError(
                f"Dispute reason must be at most {self.policy.reason_max_length} characters"
            )
        return text

    def _load(self, session: Session, dispute_id: int) -> Dispute:
        dispute = session.get(Dispute, dispute_id, populate_existing=True)
        if dispute is None:
            raise EntityNotFound("Dispute", dispute_id)
        return dispute

    def _escrow_id_for(self, dispute_id: int) -> int:
        session = self.session_factory()
        try:
            escrow_id = session.execute(
                select(Dispute.escrow_id).where(Dispute.id == dispute_id)
            ).scalar_one_or_none()
        finally:
            session.close()
        if escrow_id is None:
            raise EntityNotFound("Dispute", dispute_id)
        return escrow_id

    def _trust_scores(self, session: Session, user_ids: Iterable[int]) -> Dict[int, float]:
        ids = set(user_ids)
        scores = {user_id: self.policy.default_trust for user_id in ids}
        if ids:
            rows = session.execute(
                select(RiskProfile.user_id, RiskProfile.trust_score).where(RiskProfile.user_id.in_(ids))
            ).all()
            scores.update({user_id: float(trust) for user_id, trust in rows})
        return scores

    def _store_evidence(
        self,
        session: Session,
        dispute: Dispute,
        actor_id: int,
        file: EvidenceFile,
        safe_name: str,
        moment: datetime,
    ) -> DisputeEvidence:
        """Write the file to the object store, then append the metadata row"""
        if self.object_store is None:
            raise ExternalDependencyFailure("No object store configured for dispute evidence")
        path = EvidencePolicy.storage_path(actor_id, safe_name, moment)

        def put():
            return call_with_timeout(
                lambda: self.object_store.put(path, file.content, file.content_type),
                self.storage_timeout_seconds,
                operation=f"evidence upload {path}",
            )

        put.__name__ = f"evidence_put[{path}]"
        stored_path = RetryService.retry_sync(
            put, exceptions=(ExternalDependencyFailure, OperationTimeout), **self.storage_retry
        )
        row = DisputeEvidence(
            dispute_id=dispute.id,
            submitted_by=actor_id,
            file_name=safe_name,
            content_type=file.content_type,
            size_bytes=file.size_bytes,
            storage_path=stored_path,
            created_at=moment,
        )
        session.add(row)
        session.flush()
        logger.info(f"📎 DISPUTE_EVIDENCE_ADDED: dispute {dispute.id} by {actor_id} ({safe_name})")
        return row

    def _audit(self, actor_id: Optional[int], action: str, dispute: Dispute, details: dict) -> bool:
        if self.audit is None:
            return True
        ok = self.audit.record(actor_id, action, "dispute", dispute.id, details)
        if not ok:
            report_audit_degraded(f"{action} on dispute {dispute.id} succeeded but was not audited")
        return ok

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        escrow_id: int,
        initiator_id: int,
        reason: str,
        evidence: Optional[Sequence[EvidenceFile]] = None,
    ) -> DisputeResult:
        """
        Open a dispute on a funded escrow. The escrow moves to Disputed (pending
        auto-release is frozen) and the other party becomes the respondent.
        """
        reason = self._validate_reason(reason)
        files = list(evidence or [])
        # Every file is checked before anything is stored or written
        safe_names = [self.evidence_policy.validate(file) for file in files]

        with self.locks.hold("escrow", escrow_id):
            try:
                with atomic_transaction(session_factory=self.session_factory) as session:
                    escrow = self.escrow_engine.load_escrow(session, escrow_id)
                    require_party(initiator_id, escrow.party_ids(), "open a dispute")
                    if escrow.status != EscrowStatus.FUNDED:
                        raise InvalidStateTransition(
                            f"Disputes can only be opened on funded escrows (escrow {escrow.id} is "
                            f"{escrow.status.value})",
                            current_state=escrow.status,
                            target_state=EscrowStatus.DISPUTED,
                        )

                    respondent_id = escrow.freelancer_id if initiator_id == escrow.client_id else escrow.client_id
                    now = self.clock()
                    dispute = Dispute(
                        escrow_id=escrow.id,
                        initiator_id=initiator_id,
                        respondent_id=respondent_id,
                        reason=reason,
                        status=DisputeStatus.OPEN,
                        version=1,
                        created_at=now,
                    )
                    session.add(dispute)
                    session.flush()

                    rows = [
                        self._store_evidence(session, dispute, initiator_id, file, safe_name, now)
                        for file, safe_name in zip(files, safe_names)
                    ]
                    self.escrow_engine.freeze_for_dispute(session, escrow)
                    escrow_status = escrow.status
            except IntegrityError:
                raise ConflictError(f"Escrow {escrow_id} already has an open dispute")

        logger.info(
            f"⚖️ DISPUTE_OPENED: dispute {dispute.id} on escrow {escrow_id} by {initiator_id} "
            f"against {respondent_id} ({len(rows)} evidence files)"
        )
        audit_ok = self._audit(initiator_id, "dispute.open", dispute, {
            "escrow_id": escrow_id, "respondent_id": respondent_id, "evidence_count": len(rows),
        })
        return DisputeResult(
            dispute=dispute, escrow_status=escrow_status, evidence=tuple(rows), audit_degraded=not audit_ok
        )

    def add_evidence(self, dispute_id: int, actor_id: int, file: EvidenceFile) -> DisputeResult:
        """Append evidence while the dispute is Open or UnderReview"""
        safe_name = self.evidence_policy.validate(file)

        with self.locks.hold("dispute", dispute_id):
            with atomic_transaction(session_factory=self.session_factory) as session:
                dispute = self._load(session, dispute_id)
                require_party(
                    actor_id, [dispute.initiator_id, dispute.respondent_id], "add dispute evidence", session=session
                )
                if dispute.status not in OPEN_DISPUTE_STATUSES:
                    raise InvalidStateTransition(
                        f"Evidence can no longer be added to dispute {dispute.id} ({dispute.status.value})",
                        current_state=dispute.status,
                    )
                row = self._store_evidence(session, dispute, actor_id, file, safe_name, self.clock())

        audit_ok = self._audit(actor_id, "dispute.add_evidence", dispute, {"file_name": safe_name})
        return DisputeResult(dispute=dispute, evidence=(row,), audit_degraded=not audit_ok)

    def start_review(self, dispute_id: int, operator_id: int) -> DisputeResult:
        """Open -> UnderReview"""
        with self.locks.hold("dispute", dispute_id):
            with atomic_transaction(session_factory=self.session_factory) as session:
                require_operator(session, operator_id, "review disputes")
                dispute = self._load(session, dispute_id)
                if dispute.status == DisputeStatus.UNDER_REVIEW:
                    return DisputeResult(dispute=dispute, changed=False)
                if dispute.status != DisputeStatus.OPEN:
                    raise InvalidStateTransition(
                        f"Dispute {dispute.id} cannot move to review from {dispute.status.value}",
                        current_state=dispute.status,
                        target_state=DisputeStatus.UNDER_REVIEW,
                    )
                OptimisticLockManager(session).apply(dispute, {
                    "status": DisputeStatus.UNDER_REVIEW,
                    "review_started_at": self.clock(),
                }, expected_status=DisputeStatus.OPEN)

        logger.info(f"🔎 DISPUTE_UNDER_REVIEW: dispute {dispute_id} by operator {operator_id}")
        audit_ok = self._audit(operator_id, "dispute.start_review", dispute, {})
        return DisputeResult(dispute=dispute, audit_degraded=not audit_ok)

    def resolve(
        self,
        dispute_id: int,
        operator_id: int,
        outcome: ResolutionOutcome,
        note: Optional[str] = None,
    ) -> DisputeResult:
        """
        Resolve an Open or UnderReview dispute. Atomically:
        - marks the dispute Resolved with the outcome,
        - drives the escrow transition and its ledger postings,
        - lowers the losing party's trust score in proportion to severity.
        Split and NoAction leave both trust scores unchanged.
        """
        if not isinstance(outcome, ResolutionOutcome):
            raise ValidationError("outcome must be a ResolutionOutcome")

        escrow_id = self._escrow_id_for(dispute_id)
        with self.locks.hold("dispute", dispute_id):
            with self.locks.hold("escrow", escrow_id):
                with atomic_transaction(session_factory=self.session_factory) as session:
                    require_operator(session, operator_id, "resolve disputes")
                    dispute = self._load(session, dispute_id)
                    if dispute.status not in OPEN_DISPUTE_STATUSES:
                        raise InvalidStateTransition(
                            f"Dispute {dispute.id} is already {dispute.status.value}",
                            current_state=dispute.status,
                            target_state=DisputeStatus.RESOLVED,
                        )
                    escrow = self.escrow_engine.load_escrow(session, dispute.escrow_id)
                    if escrow.status != EscrowStatus.DISPUTED:
                        raise InvalidStateTransition(
                            f"Escrow {escrow.id} is {escrow.status.value}, not disputed",
                            current_state=escrow.status,
                        )
                    if outcome.kind == DisputeOutcome.SPLIT:
                        freelancer_share, client_share = FeeCalculator.split_portions(escrow.amount, outcome.split_ratio)
                        if freelancer_share + client_share != escrow.amount:
                            raise ValidationError(f"Split portions do not add up to {escrow.amount}")

                    now = self.clock()
                    trust = self._trust_scores(session, escrow.party_ids())
                    days_open = (now - dispute.created_at).total_seconds() / 86400
                    severity = dispute_severity(escrow.amount, list(trust.values()), days_open, self.policy)

                    escrow_status, entries = self.escrow_engine.apply_dispute_outcome(
                        session, escrow, outcome.kind, outcome.split_ratio
                    )
                    OptimisticLockManager(session).apply(dispute, {
                        "status": DisputeStatus.RESOLVED,
                        "outcome": outcome.kind,
                        "split_ratio": outcome.split_ratio,
                        "resolution_note": note,
                        "resolved_by": operator_id,
                        "resolved_at": now,
                    }, expected_status=dispute.status)

                    adjustment = None
                    loser_id = self._losing_party(outcome, escrow)
                    if loser_id is not None and self.risk_scorer is not None:
                        delta = -trust_penalty(severity, self.policy)
                        new_trust = self.risk_scorer.adjust_trust(
                            loser_id, delta, f"dispute {dispute.id} resolved against user", session=session
                        )
                        adjustment = TrustAdjustment(loser_id, delta, new_trust)

        logger.info(
            f"✅ DISPUTE_RESOLVED: dispute {dispute_id} outcome={outcome.kind.value} "
            f"escrow {escrow_id} → {escrow_status.value} severity={severity:.3f} by operator {operator_id}"
        )
        audit_ok = self._audit(operator_id, "dispute.resolve", dispute, {
            "outcome": outcome.kind.value,
            "split_ratio": str(outcome.split_ratio) if outcome.split_ratio is not None else None,
            "escrow_status": escrow_status.value,
            "severity": severity,
            "trust_adjustment": adjustment._asdict() if adjustment else None,
        })
        return DisputeResult(
            dispute=dispute,
            escrow_status=escrow_status,
            ledger_entries=tuple(entries),
            trust_adjustment=adjustment,
            audit_degraded=not audit_ok,
        )

    @staticmethod
    def _losing_party(outcome: ResolutionOutcome, escrow: EscrowTransaction) -> Optional[int]:
        if outcome.kind == DisputeOutcome.FULL_REFUND_TO_CLIENT:
            return escrow.freelancer_id
        if outcome.kind == DisputeOutcome.FULL_RELEASE_TO_FREELANCER:
            return escrow.client_id
        return None

    def close(self, dispute_id: int, operator_id: int) -> DisputeResult:
        """Resolved -> Closed; archival only"""
        with self.locks.hold("dispute", dispute_id):
            with atomic_transaction(session_factory=self.session_factory) as session:
                require_operator(session, operator_id, "close disputes")
                dispute = self._load(session, dispute_id)
                if dispute.status == DisputeStatus.CLOSED:
                    return DisputeResult(dispute=dispute, changed=False)
                if dispute.status != DisputeStatus.RESOLVED:
                    raise InvalidStateTransition(
                        f"Only resolved disputes can be closed (dispute {dispute.id} is {dispute.status.value})",
                        current_state=dispute.status,
                        target_state=DisputeStatus.CLOSED,
                    )
                OptimisticLockManager(session).apply(dispute, {
                    "status": DisputeStatus.CLOSED,
                    "closed_at": self.clock(),
                }, expected_status=DisputeStatus.RESOLVED)

        audit_ok = self._audit(operator_id, "dispute.close", dispute, {})
        return DisputeResult(dispute=dispute, audit_degraded=not audit_ok)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def review_queue(self, operator_id: int, now: Optional[datetime] = None) -> List[QueueEntry]:
        """Open disputes, most severe first; ties go to the oldest"""
        now = now or self.clock()
        session = self.session_factory()
        try:
            require_operator(session, operator_id, "view the dispute queue")
            rows = session.execute(
                select(Dispute, EscrowTransaction)
                .join(EscrowTransaction, EscrowTransaction.id == Dispute.escrow_id)
                .where(Dispute.status.in_(OPEN_DISPUTE_STATUSES))
            ).all()
            parties = {user_id for _, escrow in rows for user_id in escrow.party_ids()}
            trust = self._trust_scores(session, parties)
        finally:
            session.close()

        queue = []
        for dispute, escrow in rows:
            scores = [trust[escrow.client_id], trust[escrow.freelancer_id]]
            days_open = (now - dispute.created_at).total_seconds() / 86400
            queue.append(QueueEntry(
                dispute_id=dispute.id,
                escrow_id=escrow.id,
                amount=escrow.amount,
                combined_risk=sum(100.0 - score for score in scores),
                days_open=round(days_open, 4),
                severity=dispute_severity(escrow.amount, scores, days_open, self.policy),
                created_at=dispute.created_at,
            ))
        queue.sort(key=lambda entry: (-entry.severity, entry.created_at, entry.dispute_id))
        return queue

    def get_dispute(self, dispute_id: int) -> Dispute:
        session = self.session_factory()
        try:
            return self._load(session, dispute_id)
        finally:
            session.close()

    def list_evidence(self, dispute_id: int) -> List[DisputeEvidence]:
        session = self.session_factory()
        try:
            return list(session.execute(
                select(DisputeEvidence).where(DisputeEvidence.dispute_id == dispute_id).order_by(DisputeEvidence.id)
            ).scalars())
        finally:
            session.close()

    def list_for_user(self, user_id: int) -> List[Dispute]:
        session = self.session_factory()
        try:
            return list(session.execute(
                select(Dispute)
                .where(or_(Dispute.initiator_id == user_id, Dispute.respondent_id == user_id))
                .order_by(Dispute.created_at.desc())
            ).scalars())
        finally:
            session.close()
