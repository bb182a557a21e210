"""
Escrow Engine
=============

Holds funds for a job and moves them through the custody state machine:

    Pending -> Funded | Cancelled
    Funded  -> Released | Refunded | Disputed
    Disputed -> Funded | Released | Refunded   (dispute resolution only)

The engine is the only writer of EscrowTransaction.status. Every transition:
- runs under the per-escrow lock,
- re-reads the stored state and validates it against the state machine,
- writes with a status- and version-guarded UPDATE (a lost race is retried once,
  then surfaced as ConflictError),
- commits its wallet ledger postings in the same transaction as the status change.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    ACTIVE_ESCROW_STATUSES, DisputeOutcome, EscrowStatus, EscrowTransaction, JobProposal,
    LedgerEntryType, PlatformRevenue, ProposalStatus, User, WalletLedgerEntry
)
from services.audit_logger import AuditLogger
from services.payment_rail import PaymentRailGateway
from services.risk_scorer import RiskEvent, RiskScorer
from services.wallet_service import WalletLedger
from utils.admin_security import require_party
from utils.atomic_transactions import atomic_transaction
from utils.entity_lock import EntityLockRegistry, entity_locks
from utils.escrow_state_validator import EscrowStateValidator
from utils.exception_handler import (
    ConflictError, EntityNotFound, ExternalDependencyFailure, InvalidStateTransition,
    TrustCoreError, ValidationError, record_permission_denial, report_audit_degraded
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import generate_reference, utc_now
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


def _default_fee_rates() -> Dict[str, Decimal]:
    return dict(Config.PLATFORM_FEE_RATES)


@dataclass(frozen=True)
class EscrowPolicy:
    """Fee terms, minimum amount and auto-release window"""

    min_amount: Decimal = Decimal("100")
    currency: str = "KES"
    fee_rates: Mapping[str, Decimal] = field(default_factory=_default_fee_rates)
    default_plan_tier: str = "free"
    tax_rate: Decimal = Decimal("0.16")
    auto_release_grace: timedelta = timedelta(hours=72)
    sweep_batch_size: int = 100

    @classmethod
    def from_config(cls) -> "EscrowPolicy":
        return cls(
            min_amount=Config.ESCROW_MIN_AMOUNT,
            currency=Config.ESCROW_CURRENCY,
            fee_rates=_default_fee_rates(),
            default_plan_tier=Config.DEFAULT_PLAN_TIER,
            tax_rate=Config.SERVICE_FEE_TAX_RATE,
            auto_release_grace=timedelta(hours=Config.AUTO_RELEASE_GRACE_HOURS),
            sweep_batch_size=Config.AUTO_RELEASE_BATCH_SIZE,
        )

    def fee_rate_for(self, plan_tier: Optional[str]) -> Tuple[str, Decimal]:
        tier = (plan_tier or self.default_plan_tier).lower().strip()
        if tier not in self.fee_rates:
            raise ValidationError(f"Unknown plan tier '{plan_tier}'")
        return tier, Decimal(str(self.fee_rates[tier]))


class TransitionResult(NamedTuple):
    """Result of an escrow operation"""

    escrow: EscrowTransaction
    previous_status: Optional[EscrowStatus]
    changed: bool
    ledger_entries: Tuple[WalletLedgerEntry, ...] = ()
    detail: Optional[str] = None
    audit_degraded: bool = False


class SweepReport(NamedTuple):
    """Outcome of one auto-release sweep"""

    examined: int
    released: Tuple[int, ...]
    flagged_for_review: Tuple[int, ...]
    errors: Dict[int, str]


def parse_amount(value) -> Decimal:
    """Money comes in as Decimal, int or str; floats are refused"""
    if isinstance(value, float):
        raise ValidationError("Amounts must be given as Decimal, int or str, not float")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount != FeeCalculator.quantize(amount):
        raise ValidationError(f"Amount {value} has more than two decimal places")
    return amount


class EscrowEngine:
    """Custody state machine for job payments"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        ledger: Optional[WalletLedger] = None,
        risk_scorer: Optional[RiskScorer] = None,
        payment_gateway: Optional[PaymentRailGateway] = None,
        audit: Optional[AuditLogger] = None,
        policy: Optional[EscrowPolicy] = None,
        locks: Optional[EntityLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.clock = clock or utc_now
        self.ledger = ledger or WalletLedger(session_factory, clock=self.clock)
        self.risk_scorer = risk_scorer
        self.payment_gateway = payment_gateway
        self.audit = audit
        self.policy = policy or EscrowPolicy.from_config()
        self.locks = locks or entity_locks

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def load_escrow(self, session: Session, escrow_id: int) -> EscrowTransaction:
        escrow = session.get(EscrowTransaction, escrow_id, populate_existing=True)
        if escrow is None:
            raise EntityNotFound("EscrowTransaction", escrow_id)
        return escrow

    def _transition(
        self,
        session: Session,
        escrow: EscrowTransaction,
        target: EscrowStatus,
        values: Optional[dict] = None,
        via_dispute: bool = False,
    ) -> EscrowStatus:
        """Validate against the freshly read state and write with the guarded UPDATE"""
        previous = escrow.status
        EscrowStateValidator.validate_transition(previous, target, escrow.id, via_dispute=via_dispute)
        OptimisticLockManager(session).apply(
            escrow, {"status": target, **(values or {})}, expected_status=previous
        )
        logger.info(f"🔄 ESCROW_TRANSITION: escrow {escrow.id} {previous.value} → {target.value}")
        return previous

    def _update_fields(self, session: Session, escrow: EscrowTransaction, values: dict) -> None:
        """Guarded write that keeps the status unchanged"""
        OptimisticLockManager(session).apply(escrow, values, expected_status=escrow.status)

    def _execute(
        self,
        escrow_id: int,
        action: str,
        actor_id: Optional[int],
        body: Callable[[Session, EscrowTransaction], TransitionResult],
        expected_status: Optional[EscrowStatus] = None,
        retry_on_conflict: bool = True,
    ) -> TransitionResult:
        """
        Run body against the current escrow under its lock and in one transaction.
        A lost optimistic race is retried once; a stale caller expectation is not.
        """
        attempts = 2 if retry_on_conflict and expected_status is None else 1
        with self.locks.hold("escrow", escrow_id):
            for attempt in range(1, attempts + 1):
                try:
                    with atomic_transaction(session_factory=self.session_factory) as session:
                        escrow = self.load_escrow(session, escrow_id)
                        if expected_status is not None and escrow.status != expected_status:
                            logger.warning(
                                f"⚠️ ESCROW_STALE_READ: escrow {escrow_id} expected {expected_status.value}, "
                                f"stored {escrow.status.value}"
                            )
                            raise ConflictError(
                                f"Escrow {escrow_id} is {escrow.status.value}, not {expected_status.value}"
                            )
                        result = body(session, escrow)
                    break
                except ConflictError:
                    if attempt >= attempts:
                        raise
                    logger.warning(f"🔁 ESCROW_CONFLICT_RETRY: escrow {escrow_id} {action} (attempt {attempt})")

        if result.changed or result.detail:
            audit_ok = self._audit(actor_id, action, result.escrow, {
                "previous_status": result.previous_status.value if result.previous_status else None,
                "status": result.escrow.status.value,
                "detail": result.detail,
            })
            result = result._replace(audit_degraded=not audit_ok)
        return result

    def _audit(self, actor_id: Optional[int], action: str, escrow: EscrowTransaction, details: dict) -> bool:
        if self.audit is None:
            return True
        ok = self.audit.record(actor_id, action, "escrow", escrow.id, details)
        if not ok:
            report_audit_degraded(f"{action} on escrow {escrow.id} succeeded but was not audited")
        return ok

    # ------------------------------------------------------------------
    # Ledger effects
    # ------------------------------------------------------------------

    def _post_release(
        self, session: Session, escrow: EscrowTransaction, gross: Decimal, fee_type: str
    ) -> List[WalletLedgerEntry]:
        """Credit the freelancer net of service fee and VAT; book the retained fee"""
        if gross <= 0:
            return []
        breakdown = FeeCalculator.release_breakdown(gross, escrow.fee_rate, escrow.tax_rate)
        entries = [self.ledger.post_entry(
            session,
            escrow.freelancer_id,
            breakdown.net_amount,
            LedgerEntryType.ESCROW_RELEASE,
            escrow_id=escrow.id,
            description=f"Release of {breakdown.gross_amount} from escrow {escrow.reference}",
        )]
        if breakdown.platform_total > 0:
            session.add(PlatformRevenue(
                escrow_id=escrow.id,
                fee_amount=breakdown.service_fee,
                tax_amount=breakdown.tax,
                fee_type=fee_type,
                created_at=self.clock(),
            ))
        logger.info(
            f"💸 ESCROW_RELEASE_POSTED: escrow {escrow.id} gross={breakdown.gross_amount} "
            f"fee={breakdown.service_fee} tax={breakdown.tax} net={breakdown.net_amount}"
        )
        return entries

    def _post_refund(self, session: Session, escrow: EscrowTransaction, amount: Decimal) -> List[WalletLedgerEntry]:
        """
        Send the amount back to the client's original funding source through the
        payment rail and record it as a refund credit plus the matching payout debit,
        so the escrow wallet is not left double-credited.
        """
        if amount <= 0:
            return []
        if self.payment_gateway is None:
            raise ExternalDependencyFailure("No payment rail configured for refunds")

        external_reference = self.payment_gateway.refund(
            escrow.reference, amount, escrow.client_id, idempotency_key=f"{escrow.reference}-refund"
        )
        credit = self.ledger.post_entry(
            session, escrow.client_id, amount, LedgerEntryType.ESCROW_REFUND,
            escrow_id=escrow.id, description=f"Refund from escrow {escrow.reference}",
        )
        payout = self.ledger.post_entry(
            session, escrow.client_id, -amount, LedgerEntryType.REFUND_PAYOUT,
            escrow_id=escrow.id, description=f"Returned to funding source ({external_reference})",
        )
        return [credit, payout]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def open_escrow(
        self,
        job_ref: str,
        client_id: int,
        freelancer_id: int,
        amount,
        plan_tier: Optional[str] = None,
    ) -> TransitionResult:
        """Create a Pending escrow for a job. Only one active escrow may exist per job."""
        job_ref = (job_ref or "").strip()
        if not job_ref:
            raise ValidationError("Job reference is required")
        if client_id == freelancer_id:
            raise ValidationError("Client and freelancer must be different users")
        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError("Escrow amount must be greater than zero")
        if value < self.policy.min_amount:
            raise ValidationError(f"Minimum escrow amount is {self.policy.currency} {self.policy.min_amount}")
        tier, fee_rate = self.policy.fee_rate_for(plan_tier)

        with self.locks.hold("job", job_ref):
            try:
                with atomic_transaction(session_factory=self.session_factory) as session:
                    for user_id in (client_id, freelancer_id):
                        if session.get(User, user_id) is None:
                            raise EntityNotFound("User", user_id)

                    active = session.execute(
                        select(EscrowTransaction.id).where(
                            EscrowTransaction.job_ref == job_ref,
                            EscrowTransaction.status.in_(ACTIVE_ESCROW_STATUSES),
                        )
                    ).first()
                    if active is not None:
                        raise ValidationError(f"Job {job_ref} already has an active escrow ({active[0]})")

                    now = self.clock()
                    escrow = EscrowTransaction(
                        reference=generate_reference("ESC"),
                        job_ref=job_ref,
                        client_id=client_id,
                        freelancer_id=freelancer_id,
                        amount=value,
                        currency=self.policy.currency,
                        plan_tier=tier,
                        fee_rate=fee_rate,
                        tax_rate=self.policy.tax_rate,
                        status=EscrowStatus.PENDING,
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(escrow)
                    session.flush()
            except IntegrityError:
                logger.warning(f"⚠️ ESCROW_DUPLICATE_ACTIVE: job {job_ref} lost creation race")
                raise ValidationError(f"Job {job_ref} already has an active escrow")

        logger.info(
            f"🆕 ESCROW_OPENED: escrow {escrow.id} job={job_ref} amount={value} "
            f"tier={tier} fee_rate={fee_rate}"
        )
        audit_ok = self._audit(client_id, "escrow.open", escrow, {"amount": str(value), "job_ref": job_ref})
        return TransitionResult(escrow=escrow, previous_status=None, changed=True, audit_degraded=not audit_ok)

    def fund(self, escrow_id: int, actor_id: int, expected_status: Optional[EscrowStatus] = None) -> TransitionResult:
        """
        Pending -> Funded on a confirmed payment capture.
        Capture is not idempotent, so this operation is never retried automatically.
        """

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            if actor_id != escrow.client_id:
                raise record_permission_denial(actor_id, "fund escrow", "Only the client can fund an escrow")
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.FUNDED, escrow.id)
            if escrow.amount is None or escrow.amount <= 0:
                raise ValidationError("Escrow amount must be greater than zero")

            accepted = session.execute(
                select(JobProposal).where(
                    JobProposal.job_ref == escrow.job_ref,
                    JobProposal.status == ProposalStatus.ACCEPTED,
                )
            ).scalars().all()
            if len(accepted) != 1:
                raise ValidationError(
                    f"Job {escrow.job_ref} needs exactly one accepted proposal to fund (found {len(accepted)})"
                )
            if accepted[0].freelancer_id != escrow.freelancer_id:
                raise ValidationError("The accepted proposal belongs to a different freelancer")

            if self.payment_gateway is None:
                raise ExternalDependencyFailure("No payment rail configured for capture")
            capture_reference = self.payment_gateway.capture(escrow.reference, escrow.amount, escrow.client_id)

            try:
                previous = self._transition(session, escrow, EscrowStatus.FUNDED, {
                    "funded_at": self.clock(),
                    "capture_reference": capture_reference,
                })
                session.flush()
            except Exception:
                logger.critical(
                    f"🚨 CAPTURE_NOT_RECORDED: escrow {escrow.id} captured as {capture_reference} "
                    f"but funding could not be committed - reversing"
                )
                self._reverse_capture(escrow)
                raise
            return TransitionResult(escrow=escrow, previous_status=previous, changed=True)

        return self._execute(escrow_id, "escrow.fund", actor_id, body, expected_status, retry_on_conflict=False)

    def _reverse_capture(self, escrow: EscrowTransaction) -> None:
        try:
            self.payment_gateway.refund(
                escrow.reference, escrow.amount, escrow.client_id,
                idempotency_key=f"{escrow.reference}-capture-reversal",
            )
        except TrustCoreError as e:
            logger.critical(f"🚨 CAPTURE_REVERSAL_FAILED: escrow {escrow.id} needs manual reconciliation: {e}")

    def mark_delivered(self, escrow_id: int, freelancer_id: int) -> TransitionResult:
        """Freelancer marks the work delivered; arms the auto-release deadline"""

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            if freelancer_id != escrow.freelancer_id:
                raise record_permission_denial(freelancer_id, "mark delivery", "Only the freelancer can mark delivery")
            if escrow.status != EscrowStatus.FUNDED:
                raise InvalidStateTransition(
                    f"Delivery can only be marked on a funded escrow (escrow {escrow.id} is {escrow.status.value})",
                    current_state=escrow.status,
                )
            if escrow.delivered_at is not None:
                return TransitionResult(escrow=escrow, previous_status=escrow.status, changed=False)

            now = self.clock()
            self._update_fields(session, escrow, {
                "delivered_at": now,
                "auto_release_at": now + self.policy.auto_release_grace,
            })
            logger.info(f"📦 ESCROW_DELIVERED: escrow {escrow.id} auto-release at {escrow.auto_release_at}")
            return TransitionResult(
                escrow=escrow, previous_status=escrow.status, changed=False, detail="delivered"
            )

        return self._execute(escrow_id, "escrow.mark_delivered", freelancer_id, body)

    def release(self, escrow_id: int, actor_id: int, expected_status: Optional[EscrowStatus] = None) -> TransitionResult:
        """Funded -> Released on client confirmation (or operator action)"""

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            require_party(actor_id, [escrow.client_id], "release escrow", session=session)
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.RELEASED, escrow.id)
            entries = self._post_release(session, escrow, escrow.amount, fee_type="escrow_release")
            previous = self._transition(session, escrow, EscrowStatus.RELEASED, {
                "released_at": self.clock(),
                "auto_release_at": None,
            })
            return TransitionResult(escrow=escrow, previous_status=previous, changed=True, ledger_entries=tuple(entries))

        return self._execute(escrow_id, "escrow.release", actor_id, body, expected_status)

    def refund(self, escrow_id: int, actor_id: int, expected_status: Optional[EscrowStatus] = None) -> TransitionResult:
        """
        Mutual cancellation before delivery. Each party records consent; once both
        have, Funded -> Refunded and the money goes back to the client's funding source.
        """

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            require_party(actor_id, escrow.party_ids(), "cancel escrow")
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.REFUNDED, escrow.id)
            if escrow.delivered_at is not None:
                raise InvalidStateTransition(
                    f"Escrow {escrow.id} was already delivered; open a dispute instead of cancelling",
                    current_state=escrow.status,
                    target_state=EscrowStatus.REFUNDED,
                )

            now = self.clock()
            consent_field = (
                "client_cancel_requested_at" if actor_id == escrow.client_id else "freelancer_cancel_requested_at"
            )
            client_consented = escrow.client_cancel_requested_at is not None or consent_field == "client_cancel_requested_at"
            freelancer_consented = (
                escrow.freelancer_cancel_requested_at is not None
                or consent_field == "freelancer_cancel_requested_at"
            )

            if not (client_consented and freelancer_consented):
                if getattr(escrow, consent_field) is None:
                    self._update_fields(session, escrow, {consent_field: now})
                logger.info(f"✋ ESCROW_CANCEL_REQUESTED: escrow {escrow.id} by {actor_id}, awaiting counterparty")
                return TransitionResult(
                    escrow=escrow, previous_status=escrow.status, changed=False, detail="awaiting_counterparty_consent"
                )

            entries = self._post_refund(session, escrow, escrow.amount)
            values = {"refunded_at": now, "auto_release_at": None}
            if getattr(escrow, consent_field) is None:
                values[consent_field] = now
            previous = self._transition(session, escrow, EscrowStatus.REFUNDED, values)
            return TransitionResult(escrow=escrow, previous_status=previous, changed=True, ledger_entries=tuple(entries))

        return self._execute(escrow_id, "escrow.refund", actor_id, body, expected_status)

    def cancel(self, escrow_id: int, actor_id: int) -> TransitionResult:
        """Pending -> Cancelled before any money moves. Cancelling twice is a no-op."""

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            require_party(actor_id, escrow.party_ids(), "cancel escrow", session=session)
            if escrow.status == EscrowStatus.CANCELLED:
                return TransitionResult(escrow=escrow, previous_status=escrow.status, changed=False)
            previous = self._transition(session, escrow, EscrowStatus.CANCELLED, {"cancelled_at": self.clock()})
            return TransitionResult(escrow=escrow, previous_status=previous, changed=True)

        return self._execute(escrow_id, "escrow.cancel", actor_id, body)

    # ------------------------------------------------------------------
    # Auto-release
    # ------------------------------------------------------------------

    def run_auto_release_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Release funded escrows whose grace period after delivery has passed.
        Re-running is a no-op for escrows already handled: the Funded check and
        the manual-review flag gate every candidate.
        """
        now = now or self.clock()
        session = self.session_factory()
        try:
            candidate_ids = list(session.execute(
                select(EscrowTransaction.id)
                .where(
                    EscrowTransaction.status == EscrowStatus.FUNDED,
                    EscrowTransaction.auto_release_at.is_not(None),
                    EscrowTransaction.auto_release_at <= now,
                    EscrowTransaction.requires_manual_review.is_(False),
                )
                .order_by(EscrowTransaction.auto_release_at, EscrowTransaction.id)
                .limit(self.policy.sweep_batch_size)
            ).scalars())
        finally:
            session.close()

        released: List[int] = []
        flagged: List[int] = []
        errors: Dict[int, str] = {}
        for escrow_id in candidate_ids:
            try:
                result = self._auto_release_one(escrow_id, now)
            except TrustCoreError as e:
                logger.error(f"❌ AUTO_RELEASE_FAILED: escrow {escrow_id}: {e}")
                errors[escrow_id] = str(e)
                continue
            if result.changed:
                released.append(escrow_id)
            elif result.detail == "manual_review_required":
                flagged.append(escrow_id)

        if candidate_ids:
            logger.info(
                f"⏰ AUTO_RELEASE_SWEEP: examined={len(candidate_ids)} released={len(released)} "
                f"flagged={len(flagged)} errors={len(errors)}"
            )
        return SweepReport(
            examined=len(candidate_ids),
            released=tuple(released),
            flagged_for_review=tuple(flagged),
            errors=errors,
        )

    def _auto_release_one(self, escrow_id: int, now: datetime) -> TransitionResult:

        def body(session: Session, escrow: EscrowTransaction) -> TransitionResult:
            due = escrow.auto_release_at is not None and escrow.auto_release_at <= now
            if escrow.status != EscrowStatus.FUNDED or not due or escrow.requires_manual_review:
                return TransitionResult(escrow=escrow, previous_status=escrow.status, changed=False)

            high_risk, reason = self._freelancer_is_high_risk(escrow, now)
            if high_risk:
                self._update_fields(session, escrow, {"requires_manual_review": True})
                logger.warning(
                    f"🛑 AUTO_RELEASE_SUPPRESSED: escrow {escrow.id} freelancer {escrow.freelancer_id} "
                    f"flagged for manual review ({reason})"
                )
                return TransitionResult(
                    escrow=escrow, previous_status=escrow.status, changed=False, detail="manual_review_required"
                )

            entries = self._post_release(session, escrow, escrow.amount, fee_type="auto_release")
            previous = self._transition(session, escrow, EscrowStatus.RELEASED, {
                "released_at": now,
                "auto_release_at": None,
            })
            return TransitionResult(escrow=escrow, previous_status=previous, changed=True, ledger_entries=tuple(entries))

        return self._execute(escrow_id, "escrow.auto_release", None, body, retry_on_conflict=False)

    def _freelancer_is_high_risk(self, escrow: EscrowTransaction, now: datetime) -> Tuple[bool, str]:
        if self.risk_scorer is None:
            return True, "no risk scorer configured"
        assessment = self.risk_scorer.assess(RiskEvent(
            user_id=escrow.freelancer_id,
            amount=escrow.amount,
            event_type="escrow_release",
            occurred_at=now,
        ))
        return assessment.is_high_risk, f"risk score {assessment.score}"

    # ------------------------------------------------------------------
    # Dispute path (called by the dispute engine inside its transaction)
    # ------------------------------------------------------------------

    def freeze_for_dispute(self, session: Session, escrow: EscrowTransaction) -> EscrowStatus:
        """Funded -> Disputed; pending auto-release is cleared"""
        return self._transition(
            session, escrow, EscrowStatus.DISPUTED, {"auto_release_at": None}, via_dispute=True
        )

    def apply_dispute_outcome(
        self, session: Session, escrow: EscrowTransaction, outcome_kind: DisputeOutcome,
        split_ratio: Optional[Decimal] = None,
    ) -> Tuple[EscrowStatus, List[WalletLedgerEntry]]:
        """
        Move a Disputed escrow per the resolution. Joins the caller's transaction;
        the caller holds the escrow lock.

        Returns:
            (new status, ledger entries posted)
        """
        now = self.clock()
        entries: List[WalletLedgerEntry] = []

        if outcome_kind == DisputeOutcome.FULL_REFUND_TO_CLIENT:
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.REFUNDED, escrow.id, via_dispute=True)
            entries += self._post_refund(session, escrow, escrow.amount)
            self._transition(session, escrow, EscrowStatus.REFUNDED, {"refunded_at": now}, via_dispute=True)

        elif outcome_kind == DisputeOutcome.FULL_RELEASE_TO_FREELANCER:
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.RELEASED, escrow.id, via_dispute=True)
            entries += self._post_release(session, escrow, escrow.amount, fee_type="dispute_release")
            self._transition(session, escrow, EscrowStatus.RELEASED, {"released_at": now}, via_dispute=True)

        elif outcome_kind == DisputeOutcome.SPLIT:
            if split_ratio is None:
                raise ValidationError("Split resolution requires a ratio")
            EscrowStateValidator.validate_transition(escrow.status, EscrowStatus.RELEASED, escrow.id, via_dispute=True)
            freelancer_share, client_share = FeeCalculator.split_portions(escrow.amount, split_ratio)
            entries += self._post_release(session, escrow, freelancer_share, fee_type="dispute_split_release")
            entries += self._post_refund(session, escrow, client_share)
            self._transition(session, escrow, EscrowStatus.RELEASED, {"released_at": now}, via_dispute=True)

        elif outcome_kind == DisputeOutcome.NO_ACTION:
            auto_release_at = now + self.policy.auto_release_grace if escrow.delivered_at else None
            self._transition(
                session, escrow, EscrowStatus.FUNDED, {"auto_release_at": auto_release_at}, via_dispute=True
            )

        else:
            raise ValidationError(f"Unsupported dispute outcome: {outcome_kind}")

        return escrow.status, entries

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_escrow(self, escrow_id: int) -> EscrowTransaction:
        session = self.session_factory()
        try:
            return self.load_escrow(session, escrow_id)
        finally:
            session.close()

    def list_for_user(self, user_id: int, status: Optional[EscrowStatus] = None) -> List[EscrowTransaction]:
        session = self.session_factory()
        try:
            stmt = select(EscrowTransaction).where(
                or_(EscrowTransaction.client_id == user_id, EscrowTransaction.freelancer_id == user_id)
            )
            if status is not None:
                stmt = stmt.where(EscrowTransaction.status == status)
            return list(session.execute(stmt.order_by(EscrowTransaction.created_at.desc())).scalars())
        finally:
            session.close()
