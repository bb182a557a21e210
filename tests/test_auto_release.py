"""
Auto-Release Tests

Coverage Focus Areas:
- Sweep releases delivered escrows once the grace period has passed
- High-risk freelancers are held for manual review instead
- Re-running the sweep is a no-op
- Background task runner start/stop and single runs
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from models import EscrowStatus, PlatformRevenue, RiskLevel
from services.auto_release_task_runner import AutoReleaseTaskRunner
from services.dispute_resolution import ResolutionOutcome
from services.escrow_engine import EscrowEngine
from services.risk_scorer import RiskAssessment


class HighRiskScorer:
    """Scores every release event as high risk"""

    def __init__(self):
        self.events = []

    def assess(self, event):
        self.events.append(event)
        return RiskAssessment(
            user_id=event.user_id, score=85, level=RiskLevel.HIGH, is_high_risk=True,
            flagged=True, should_block=False, factors=("test",),
        )


@pytest.fixture
def engine_factory(session_factory, wallet_ledger, payment_gateway, audit_logger, escrow_policy, locks, clock):
    def build(risk_scorer):
        return EscrowEngine(
            session_factory=session_factory, ledger=wallet_ledger, risk_scorer=risk_scorer,
            payment_gateway=payment_gateway, audit=audit_logger, policy=escrow_policy,
            locks=locks, clock=clock,
        )
    return build


def delivered_escrow(engine, factory, amount=Decimal("10000")):
    escrow = factory.funded_escrow(engine, amount=amount)
    return engine.mark_delivered(escrow.id, escrow.freelancer_id).escrow


class TestAutoReleaseSweep:
    """run_auto_release_sweep behaviour"""

    def test_releases_after_grace_period(self, escrow_engine, test_data_factory, clock, wallet_ledger, db_session):
        """Delivered escrow past its deadline is released with normal fees"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        clock.advance(hours=73)

        report = escrow_engine.run_auto_release_sweep()

        assert report.examined == 1
        assert report.released == (escrow.id,)
        assert report.flagged_for_review == ()
        assert report.errors == {}
        stored = escrow_engine.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.RELEASED
        assert stored.auto_release_at is None
        assert wallet_ledger.get_balance(escrow.freelancer_id) == Decimal("9304.00")
        fee_types = db_session.execute(
            select(PlatformRevenue.fee_type).where(PlatformRevenue.escrow_id == escrow.id)
        ).scalars().all()
        assert fee_types == ["auto_release"]

    def test_nothing_due_before_deadline(self, escrow_engine, test_data_factory, clock):
        """Escrows inside the grace period are left alone"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        clock.advance(hours=71)

        report = escrow_engine.run_auto_release_sweep()
        assert report.examined == 0
        assert escrow_engine.get_escrow(escrow.id).status == EscrowStatus.FUNDED

    def test_undelivered_escrow_is_never_released(self, escrow_engine, test_data_factory, clock):
        """Without delivery there is no deadline"""
        escrow = test_data_factory.funded_escrow(escrow_engine)
        clock.advance(days=30)
        assert escrow_engine.run_auto_release_sweep().examined == 0
        assert escrow_engine.get_escrow(escrow.id).status == EscrowStatus.FUNDED

    def test_rerun_is_a_noop(self, escrow_engine, test_data_factory, clock, wallet_ledger):
        """A second sweep does not pay twice"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        clock.advance(hours=80)
        escrow_engine.run_auto_release_sweep()

        report = escrow_engine.run_auto_release_sweep()
        assert report.examined == 0
        assert len(wallet_ledger.entries_for_escrow(escrow.id)) == 1

    def test_explicit_now_overrides_clock(self, escrow_engine, test_data_factory, clock):
        """The sweep can be evaluated at a given instant"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        report = escrow_engine.run_auto_release_sweep(now=clock() + timedelta(hours=72))
        assert report.released == (escrow.id,)

    def test_high_risk_freelancer_held_for_review(self, engine_factory, test_data_factory, clock, wallet_ledger):
        """High-risk release is suppressed and flagged, not released"""
        scorer = HighRiskScorer()
        engine = engine_factory(scorer)
        escrow = delivered_escrow(engine, test_data_factory)
        clock.advance(hours=73)

        report = engine.run_auto_release_sweep()

        assert report.released == ()
        assert report.flagged_for_review == (escrow.id,)
        assert scorer.events[0].user_id == escrow.freelancer_id
        assert scorer.events[0].event_type == "escrow_release"
        stored = engine.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.FUNDED
        assert stored.requires_manual_review is True
        assert wallet_ledger.entries_for_escrow(escrow.id) == []

        # Flagged escrows are not picked up again
        assert engine.run_auto_release_sweep().examined == 0

    def test_flagged_escrow_can_still_be_released_by_client(self, engine_factory, test_data_factory, clock):
        """Manual review does not block an explicit client release"""
        engine = engine_factory(HighRiskScorer())
        escrow = delivered_escrow(engine, test_data_factory)
        clock.advance(hours=73)
        engine.run_auto_release_sweep()

        result = engine.release(escrow.id, escrow.client_id)
        assert result.escrow.status == EscrowStatus.RELEASED

    def test_missing_risk_scorer_holds_release(self, engine_factory, test_data_factory, clock):
        """Without a scorer the sweep cannot clear the freelancer"""
        engine = engine_factory(None)
        escrow = delivered_escrow(engine, test_data_factory)
        clock.advance(hours=73)

        report = engine.run_auto_release_sweep()
        assert report.flagged_for_review == (escrow.id,)

    def test_disputed_escrow_is_frozen(self, escrow_engine, dispute_engine, test_data_factory, clock):
        """Opening a dispute clears the pending auto-release"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        dispute_engine.open_dispute(escrow.id, escrow.client_id, "Delivered files are incomplete")
        assert escrow_engine.get_escrow(escrow.id).auto_release_at is None

        clock.advance(hours=100)
        assert escrow_engine.run_auto_release_sweep().examined == 0

    def test_no_action_resolution_rearms_deadline(self, escrow_engine, dispute_engine, test_data_factory, clock):
        """Dismissed dispute on delivered work restarts the grace period"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        operator = test_data_factory.create_operator()
        dispute = dispute_engine.open_dispute(escrow.id, escrow.client_id, "Delivered files are incomplete").dispute
        clock.advance(hours=10)
        dispute_engine.resolve(dispute.id, operator.id, ResolutionOutcome.no_action())

        stored = escrow_engine.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.FUNDED
        assert stored.auto_release_at == clock() + timedelta(hours=72)

        clock.advance(hours=73)
        assert escrow_engine.run_auto_release_sweep().released == (escrow.id,)

    def test_sweep_respects_batch_size(self, session_factory, wallet_ledger, risk_scorer, payment_gateway,
                                       audit_logger, locks, clock, test_data_factory):
        """At most sweep_batch_size escrows are handled per run"""
        from services.escrow_engine import EscrowPolicy
        engine = EscrowEngine(
            session_factory=session_factory, ledger=wallet_ledger, risk_scorer=risk_scorer,
            payment_gateway=payment_gateway, audit=audit_logger,
            policy=EscrowPolicy(sweep_batch_size=2), locks=locks, clock=clock,
        )
        for _ in range(3):
            delivered_escrow(engine, test_data_factory, amount=Decimal("1000"))
        clock.advance(hours=73)

        assert len(engine.run_auto_release_sweep().released) == 2
        assert len(engine.run_auto_release_sweep().released) == 1


class TestAutoReleaseTaskRunner:
    """Background runner"""

    @pytest.mark.asyncio
    async def test_run_once_records_report(self, escrow_engine, test_data_factory, clock):
        """run_once executes a sweep and keeps the last report"""
        escrow = delivered_escrow(escrow_engine, test_data_factory)
        clock.advance(hours=73)
        runner = AutoReleaseTaskRunner(escrow_engine, interval_seconds=3600)

        report = await runner.run_once()

        assert report.released == (escrow.id,)
        assert runner.sweeps_completed == 1
        assert runner.last_report is report

    @pytest.mark.asyncio
    async def test_start_and_stop(self, escrow_engine):
        """The loop runs a sweep on start and stops cleanly"""
        runner = AutoReleaseTaskRunner(escrow_engine, interval_seconds=3600)
        await runner.start()
        assert runner.running is True

        for _ in range(200):
            if runner.sweeps_completed:
                break
            await asyncio.sleep(0.01)

        await runner.stop()
        assert runner.sweeps_completed >= 1
        assert runner.running is False
        assert runner.task is None

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, escrow_engine):
        """Starting an already running runner does not spawn a second loop"""
        runner = AutoReleaseTaskRunner(escrow_engine, interval_seconds=3600)
        await runner.start()
        task = runner.task
        await runner.start()
        assert runner.task is task
        for _ in range(200):
            if runner.sweeps_completed:
                break
            await asyncio.sleep(0.01)
        await runner.stop()
