"""
Escrow Engine Tests

Coverage Focus Areas:
- Opening escrows (amount rules, plan tiers, one active escrow per job)
- Funding (client only, accepted proposal, payment capture)
- Release with service fee, VAT and platform revenue
- Mutual-consent refund back to the funding source
- Cancellation, delivery marking and audit coverage
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from models import (
    AuditLog, EscrowStatus, LedgerEntryType, PlatformRevenue, ProposalStatus
)
from services.escrow_engine import EscrowEngine, parse_amount
from utils.exception_handler import (
    AuditDegraded, ConflictError, EntityNotFound, ExternalDependencyFailure,
    InvalidStateTransition, PermissionDenied, ValidationError
)


class FailingAudit:
    """Audit sink whose writes never land"""

    def record(self, *args, **kwargs):
        return False


class TestParseAmount:
    """Money input parsing"""

    def test_accepts_decimal_int_and_str(self):
        """Decimal, int and str inputs parse to Decimal"""
        assert parse_amount(Decimal("150.50")) == Decimal("150.50")
        assert parse_amount(200) == Decimal("200")
        assert parse_amount("99.99") == Decimal("99.99")

    @pytest.mark.parametrize("value", [10.5, "abc", "10.555", "NaN", "Infinity"])
    def test_rejects_bad_amounts(self, value):
        """Floats, garbage and sub-cent precision are refused"""
        with pytest.raises(ValidationError):
            parse_amount(value)


class TestOpenEscrow:
    """Escrow creation rules"""

    def test_open_creates_pending_escrow_with_fee_snapshot(self, escrow_engine, test_data_factory):
        """New escrow is Pending and snapshots the plan's fee terms"""
        client, freelancer = test_data_factory.create_parties()
        result = escrow_engine.open_escrow("JOB-1001", client.id, freelancer.id, Decimal("5000"), "pro")

        escrow = result.escrow
        assert result.changed is True
        assert result.previous_status is None
        assert escrow.status == EscrowStatus.PENDING
        assert escrow.amount == Decimal("5000")
        assert escrow.plan_tier == "pro"
        assert escrow.fee_rate == Decimal("0.04")
        assert escrow.tax_rate == Decimal("0.16")
        assert escrow.reference.startswith("ESC-")

    def test_open_defaults_to_free_tier(self, escrow_engine, test_data_factory):
        """Missing plan tier falls back to the default tier"""
        client, freelancer = test_data_factory.create_parties()
        escrow = escrow_engine.open_escrow("JOB-1002", client.id, freelancer.id, "1000").escrow
        assert escrow.plan_tier == "free"
        assert escrow.fee_rate == Decimal("0.06")

    def test_open_rejects_amount_below_minimum(self, escrow_engine, test_data_factory):
        """Amounts under the configured minimum are refused"""
        client, freelancer = test_data_factory.create_parties()
        with pytest.raises(ValidationError, match="Minimum escrow amount"):
            escrow_engine.open_escrow("JOB-1003", client.id, freelancer.id, Decimal("50"))

    def test_open_rejects_non_positive_amount(self, escrow_engine, test_data_factory):
        """Zero and negative amounts are refused"""
        client, freelancer = test_data_factory.create_parties()
        for amount in (Decimal("0"), Decimal("-100")):
            with pytest.raises(ValidationError):
                escrow_engine.open_escrow("JOB-1004", client.id, freelancer.id, amount)

    def test_open_rejects_same_party(self, escrow_engine, test_data_factory):
        """Client and freelancer must differ"""
        user = test_data_factory.create_user()
        with pytest.raises(ValidationError):
            escrow_engine.open_escrow("JOB-1005", user.id, user.id, Decimal("1000"))

    def test_open_rejects_unknown_plan_tier(self, escrow_engine, test_data_factory):
        """Unknown plan tier is a validation error"""
        client, freelancer = test_data_factory.create_parties()
        with pytest.raises(ValidationError, match="plan tier"):
            escrow_engine.open_escrow("JOB-1006", client.id, freelancer.id, Decimal("1000"), "gold")

    def test_open_rejects_unknown_user(self, escrow_engine, test_data_factory):
        """Both parties must exist"""
        client = test_data_factory.create_user()
        with pytest.raises(EntityNotFound):
            escrow_engine.open_escrow("JOB-1007", client.id, 999999, Decimal("1000"))

    def test_only_one_active_escrow_per_job(self, escrow_engine, test_data_factory):
        """A second escrow for the same job is refused while the first is active"""
        client, freelancer = test_data_factory.create_parties()
        first = escrow_engine.open_escrow("JOB-1008", client.id, freelancer.id, Decimal("1000")).escrow

        with pytest.raises(ValidationError, match="active escrow"):
            escrow_engine.open_escrow("JOB-1008", client.id, freelancer.id, Decimal("2000"))

        escrow_engine.cancel(first.id, client.id)
        replacement = escrow_engine.open_escrow("JOB-1008", client.id, freelancer.id, Decimal("2000")).escrow
        assert replacement.id != first.id
        assert replacement.status == EscrowStatus.PENDING


class TestFundEscrow:
    """Pending -> Funded"""

    def test_fund_captures_payment(self, escrow_engine, test_data_factory, payment_rail):
        """Client funding captures the full amount and moves to Funded"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        result = escrow_engine.fund(escrow.id, escrow.client_id)

        assert result.changed is True
        assert result.previous_status == EscrowStatus.PENDING
        assert result.escrow.status == EscrowStatus.FUNDED
        assert result.escrow.funded_at is not None
        assert result.escrow.capture_reference == "CAP-0001"
        assert result.escrow.version == 2
        assert payment_rail.captures == [(escrow.reference, Decimal("10000.00"), escrow.client_id)]

    def test_only_client_can_fund(self, escrow_engine, test_data_factory, payment_rail):
        """Freelancer funding is a permission error and captures nothing"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        with pytest.raises(PermissionDenied):
            escrow_engine.fund(escrow.id, escrow.freelancer_id)
        assert payment_rail.captures == []

    def test_fund_requires_accepted_proposal(self, escrow_engine, test_data_factory):
        """Funding needs exactly one accepted proposal on the job"""
        client, freelancer = test_data_factory.create_parties()
        job_ref = test_data_factory.new_job_ref()
        test_data_factory.create_proposal(job_ref, freelancer.id, status=ProposalStatus.SUBMITTED)
        escrow = escrow_engine.open_escrow(job_ref, client.id, freelancer.id, Decimal("1000")).escrow

        with pytest.raises(ValidationError, match="accepted proposal"):
            escrow_engine.fund(escrow.id, client.id)
        assert escrow_engine.get_escrow(escrow.id).status == EscrowStatus.PENDING

    def test_fund_rejects_two_accepted_proposals(self, escrow_engine, test_data_factory):
        """Two accepted proposals make the job ambiguous"""
        client, freelancer = test_data_factory.create_parties()
        other = test_data_factory.create_user()
        job_ref = test_data_factory.new_job_ref()
        test_data_factory.create_proposal(job_ref, freelancer.id)
        test_data_factory.create_proposal(job_ref, other.id)
        escrow = escrow_engine.open_escrow(job_ref, client.id, freelancer.id, Decimal("1000")).escrow

        with pytest.raises(ValidationError):
            escrow_engine.fund(escrow.id, client.id)

    def test_fund_rejects_proposal_of_other_freelancer(self, escrow_engine, test_data_factory):
        """The accepted proposal must belong to the escrow's freelancer"""
        client, freelancer = test_data_factory.create_parties()
        other = test_data_factory.create_user()
        job_ref = test_data_factory.new_job_ref()
        test_data_factory.create_proposal(job_ref, other.id)
        escrow = escrow_engine.open_escrow(job_ref, client.id, freelancer.id, Decimal("1000")).escrow

        with pytest.raises(ValidationError, match="different freelancer"):
            escrow_engine.fund(escrow.id, client.id)

    def test_declined_capture_leaves_escrow_pending(self, escrow_engine, test_data_factory, payment_rail):
        """A declined capture surfaces and nothing changes"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        payment_rail.decline_captures = True

        with pytest.raises(ExternalDependencyFailure, match="insufficient funds"):
            escrow_engine.fund(escrow.id, escrow.client_id)

        stored = escrow_engine.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.PENDING
        assert stored.capture_reference is None

    def test_fund_twice_is_rejected(self, escrow_engine, test_data_factory, payment_rail):
        """Funded escrows cannot be funded again and are not captured twice"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        with pytest.raises(InvalidStateTransition):
            escrow_engine.fund(escrow.id, escrow.client_id)
        assert len(payment_rail.captures) == 1

    def test_stale_expected_status_is_a_conflict(self, escrow_engine, test_data_factory):
        """Caller expectation that no longer matches the stored state is a conflict"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        with pytest.raises(ConflictError):
            escrow_engine.fund(escrow.id, escrow.client_id, expected_status=EscrowStatus.FUNDED)

    def test_unknown_escrow(self, escrow_engine, test_data_factory):
        """Operations on a missing escrow raise EntityNotFound"""
        client = test_data_factory.create_user()
        with pytest.raises(EntityNotFound):
            escrow_engine.fund(424242, client.id)


class TestReleaseEscrow:
    """Funded -> Released"""

    def test_release_pays_freelancer_net_of_fees(self, escrow_engine, test_data_factory, wallet_ledger, db_session):
        """10,000 on the free tier releases 9,304 after 6% fee and 16% VAT"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        result = escrow_engine.release(escrow.id, escrow.client_id)

        assert result.changed is True
        assert result.previous_status == EscrowStatus.FUNDED
        assert result.escrow.status == EscrowStatus.RELEASED
        assert result.escrow.released_at is not None
        assert len(result.ledger_entries) == 1
        assert result.ledger_entries[0].entry_type == LedgerEntryType.ESCROW_RELEASE
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("9304.00")

        revenue = db_session.execute(
            select(PlatformRevenue).where(PlatformRevenue.escrow_id == escrow.id)
        ).scalars().all()
        assert len(revenue) == 1
        assert revenue[0].fee_amount == Decimal("600.00")
        assert revenue[0].tax_amount == Decimal("96.00")
        assert revenue[0].fee_type == "escrow_release"

    def test_pro_tier_release(self, escrow_engine, test_data_factory, wallet_ledger):
        """Pro tier pays 4% fee plus VAT on the fee"""
        escrow = test_data_factory.funded_escrow(escrow_engine, plan_tier="pro")
        escrow_engine.release(escrow.id, escrow.client_id)
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("9536.00")

    def test_enterprise_tier_release(self, escrow_engine, test_data_factory, wallet_ledger):
        """Enterprise tier pays 2% fee plus VAT on the fee"""
        escrow = test_data_factory.funded_escrow(escrow_engine, plan_tier="enterprise")
        assert escrow.plan_tier == "enterprise"
        assert escrow.fee_rate == Decimal("0.02")
        escrow_engine.release(escrow.id, escrow.client_id)
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("9768.00")

    def test_freelancer_cannot_release(self, escrow_engine, test_data_factory):
        """Only the client (or an operator) releases"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        with pytest.raises(PermissionDenied):
            escrow_engine.release(escrow.id, escrow.freelancer_id)
        assert escrow_engine.get_escrow(escrow.id).status == EscrowStatus.FUNDED

    def test_operator_can_release(self, escrow_engine, test_data_factory):
        """Operators may release on the client's behalf"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        operator = test_data_factory.create_operator()
        result = escrow_engine.release(escrow.id, operator.id)
        assert result.escrow.status == EscrowStatus.RELEASED

    def test_release_pending_is_rejected(self, escrow_engine, test_data_factory):
        """Pending escrows hold no money to release"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        with pytest.raises(InvalidStateTransition):
            escrow_engine.release(escrow.id, escrow.client_id)

    def test_second_release_posts_nothing(self, escrow_engine, test_data_factory, wallet_ledger):
        """Released is terminal; a second release neither succeeds nor pays twice"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.release(escrow.id, escrow.client_id)

        with pytest.raises(InvalidStateTransition):
            escrow_engine.release(escrow.id, escrow.client_id)
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("9304.00")
        assert len(wallet_ledger.entries_for_escrow(escrow.id)) == 1

    def test_release_is_audited(self, escrow_engine, test_data_factory, db_session):
        """Every transition writes an audit row"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.release(escrow.id, escrow.client_id)

        actions = db_session.execute(
            select(AuditLog.action).where(AuditLog.entity_type == "escrow", AuditLog.entity_id == str(escrow.id))
        ).scalars().all()
        assert {"escrow.open", "escrow.fund", "escrow.release"} <= set(actions)

    def test_failed_audit_degrades_but_does_not_undo(
        self, session_factory, wallet_ledger, risk_scorer, payment_gateway, escrow_policy, locks, clock,
        test_data_factory,
    ):
        """Audit failure is reported on the result; the release stands"""
        engine = EscrowEngine(
            session_factory=session_factory, ledger=wallet_ledger, risk_scorer=risk_scorer,
            payment_gateway=payment_gateway, audit=FailingAudit(), policy=escrow_policy,
            locks=locks, clock=clock,
        )
        with pytest.warns(AuditDegraded):
            escrow = test_data_factory.funded_escrow(engine)
        with pytest.warns(AuditDegraded):
            result = engine.release(escrow.id, escrow.client_id)

        assert result.audit_degraded is True
        assert engine.get_escrow(escrow.id).status == EscrowStatus.RELEASED


class TestDelivery:
    """Freelancer delivery marking"""

    def test_mark_delivered_arms_auto_release(self, escrow_engine, test_data_factory, clock):
        """Delivery sets the auto-release deadline one grace period ahead"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        result = escrow_engine.mark_delivered(escrow.id, escrow.freelancer_id)

        assert result.changed is False
        assert result.detail == "delivered"
        assert result.escrow.status == EscrowStatus.FUNDED
        assert result.escrow.delivered_at == clock()
        assert result.escrow.auto_release_at == clock() + timedelta(hours=72)

    def test_mark_delivered_is_idempotent(self, escrow_engine, test_data_factory, clock):
        """Marking twice keeps the first deadline"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        first = escrow_engine.mark_delivered(escrow.id, escrow.freelancer_id).escrow
        clock.advance(hours=5)
        second = escrow_engine.mark_delivered(escrow.id, escrow.freelancer_id)

        assert second.detail is None
        assert second.escrow.auto_release_at == first.auto_release_at

    def test_client_cannot_mark_delivered(self, escrow_engine, test_data_factory):
        """Only the freelancer marks delivery"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        with pytest.raises(PermissionDenied):
            escrow_engine.mark_delivered(escrow.id, escrow.client_id)

    def test_pending_cannot_be_delivered(self, escrow_engine, test_data_factory):
        """Delivery requires a funded escrow"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        with pytest.raises(InvalidStateTransition):
            escrow_engine.mark_delivered(escrow.id, escrow.freelancer_id)


class TestRefundEscrow:
    """Mutual cancellation of a funded escrow"""

    def test_refund_needs_both_parties(self, escrow_engine, test_data_factory, payment_rail, wallet_ledger):
        """First consent waits; the second refunds the full amount"""
        escrow = test_data_factory.funded_escrow(escrow_engine)

        first = escrow_engine.refund(escrow.id, escrow.client_id)
        assert first.changed is False
        assert first.detail == "awaiting_counterparty_consent"
        assert first.escrow.status == EscrowStatus.FUNDED
        assert first.escrow.client_cancel_requested_at is not None
        assert payment_rail.refund_calls == 0

        second = escrow_engine.refund(escrow.id, escrow.freelancer_id)
        assert second.changed is True
        assert second.escrow.status == EscrowStatus.REFUNDED
        assert second.escrow.refunded_at is not None
        assert payment_rail.refunded_total() == Decimal("10000.00")

        entry_types = [entry.entry_type for entry in second.ledger_entries]
        assert entry_types == [LedgerEntryType.ESCROW_REFUND, LedgerEntryType.REFUND_PAYOUT]
        # Money left through the rail, so the wallet nets to zero
        assert wallet_ledger.get_balance(escrow.client_id) == Decimal("0.00")
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("0.00")

    def test_repeated_consent_from_same_party(self, escrow_engine, test_data_factory):
        """One party asking twice is still one consent"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.refund(escrow.id, escrow.freelancer_id)
        again = escrow_engine.refund(escrow.id, escrow.freelancer_id)
        assert again.detail == "awaiting_counterparty_consent"
        assert again.escrow.status == EscrowStatus.FUNDED

    def test_refund_after_delivery_is_rejected(self, escrow_engine, test_data_factory):
        """Delivered work goes through a dispute, not cancellation"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.mark_delivered(escrow.id, escrow.freelancer_id)
        with pytest.raises(InvalidStateTransition, match="dispute"):
            escrow_engine.refund(escrow.id, escrow.client_id)

    def test_operator_cannot_consent(self, escrow_engine, test_data_factory):
        """Consent comes from the parties only"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        operator = test_data_factory.create_operator()
        with pytest.raises(PermissionDenied):
            escrow_engine.refund(escrow.id, operator.id)

    def test_transient_rail_failure_is_retried(self, escrow_engine, test_data_factory, payment_rail):
        """A refund that fails once succeeds on retry with the same key"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.refund(escrow.id, escrow.client_id)
        payment_rail.refund_failures_remaining = 1

        result = escrow_engine.refund(escrow.id, escrow.freelancer_id)
        assert result.escrow.status == EscrowStatus.REFUNDED
        assert payment_rail.refund_calls == 2
        assert list(payment_rail.refunds) == [f"{escrow.reference}-refund"]

    def test_rail_outage_leaves_escrow_funded(self, escrow_engine, test_data_factory, payment_rail, wallet_ledger):
        """Exhausted retries roll the whole refund back"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        escrow_engine.refund(escrow.id, escrow.client_id)
        payment_rail.refund_failures_remaining = 10

        with pytest.raises(ExternalDependencyFailure):
            escrow_engine.refund(escrow.id, escrow.freelancer_id)

        stored = escrow_engine.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.FUNDED
        assert stored.freelancer_cancel_requested_at is None
        assert wallet_ledger.entries_for_escrow(escrow.id) == []


class TestCancelEscrow:
    """Pending -> Cancelled"""

    def test_cancel_pending(self, escrow_engine, test_data_factory):
        """Either party can cancel before funding; repeating is a no-op"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        result = escrow_engine.cancel(escrow.id, escrow.freelancer_id)
        assert result.changed is True
        assert result.escrow.status == EscrowStatus.CANCELLED
        assert result.escrow.cancelled_at is not None

        again = escrow_engine.cancel(escrow.id, escrow.client_id)
        assert again.changed is False
        assert again.escrow.status == EscrowStatus.CANCELLED

    def test_cancel_funded_is_rejected(self, escrow_engine, test_data_factory):
        """Funded money leaves only by release, refund or dispute"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        with pytest.raises(InvalidStateTransition):
            escrow_engine.cancel(escrow.id, escrow.client_id)

    def test_stranger_cannot_cancel(self, escrow_engine, test_data_factory):
        """Non-parties are refused"""
        escrow = test_data_factory.pending_escrow(escrow_engine)
        stranger = test_data_factory.create_user()
        with pytest.raises(PermissionDenied):
            escrow_engine.cancel(escrow.id, stranger.id)


class TestEscrowReads:
    """Read helpers"""

    def test_list_for_user(self, escrow_engine, test_data_factory):
        """Lists escrows where the user is either party, optionally by status"""
        funded = test_data_factory.funded_escrow(escrow_engine)
        client = funded.client_id
        freelancer = test_data_factory.create_user()
        job_ref = test_data_factory.new_job_ref()
        pending = escrow_engine.open_escrow(job_ref, client, freelancer.id, Decimal("500")).escrow

        assert {e.id for e in escrow_engine.list_for_user(client)} == {funded.id, pending.id}
        assert [e.id for e in escrow_engine.list_for_user(client, EscrowStatus.PENDING)] == [pending.id]
        assert [e.id for e in escrow_engine.list_for_user(funded.freelancer_id)] == [funded.id]

    def test_get_missing_escrow(self, escrow_engine):
        """Missing escrow raises EntityNotFound"""
        with pytest.raises(EntityNotFound):
            escrow_engine.get_escrow(31337)
