"""
Test Fixtures for the Marketplace Trust Core
Provides shared fixtures for every test suite.

Key Components:
1. Per-test SQLite database (file backed, so worker threads share it)
2. Frozen clock the engines read instead of the wall clock
3. Fake payment rail and in-memory object store for the external collaborators
4. Fully wired engines sharing one lock registry
5. test_data_factory for users, proposals and funded escrows
"""

import itertools
import logging
import threading
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
from cryptography.fernet import Fernet

from database import build_engine, build_session_factory
from models import Base, EscrowTransaction, JobProposal, ProposalStatus, User
from services.audit_logger import AuditLogger
from services.dispute_resolution import DisputeEngine, DisputePolicy
from services.escrow_engine import EscrowEngine, EscrowPolicy
from services.evidence_storage import EvidencePolicy, InMemoryObjectStore
from services.fraud_alert_pipeline import FraudAlertPipeline, FraudRules
from services.mfa_service import MFAPolicy, MFAService
from services.payment_rail import PaymentRail, PaymentRailGateway, PaymentResult
from services.rate_limiter import AttemptLimiter
from services.risk_scorer import RiskPolicy, RiskScorer
from services.wallet_service import WalletLedger
from utils.entity_lock import EntityLockRegistry
from utils.secret_encryption import SecretCipher

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Midday on a weekday: outside the unusual-hours window
TEST_START = datetime(2026, 3, 2, 12, 0, 0)


class FrozenClock:
    """Naive UTC clock that only moves when a test advances it"""

    def __init__(self, start: datetime = TEST_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePaymentRail(PaymentRail):
    """Records captures and refunds; refunds are idempotent per key"""

    def __init__(self):
        self.captures: List[Tuple[str, Decimal, int]] = []
        self.refunds: Dict[str, Tuple[str, Decimal, int, str]] = {}
        self.refund_calls = 0
        self.decline_captures = False
        self.refund_failures_remaining = 0
        self._lock = threading.Lock()

    def capture(self, reference, amount, payer_id):
        with self._lock:
            if self.decline_captures:
                return PaymentResult(success=False, error_message="insufficient funds")
            self.captures.append((reference, Decimal(amount), payer_id))
            return PaymentResult(success=True, external_reference=f"CAP-{len(self.captures):04d}")

    def refund(self, reference, amount, payee_id, idempotency_key):
        with self._lock:
            self.refund_calls += 1
            if self.refund_failures_remaining > 0:
                self.refund_failures_remaining -= 1
                return PaymentResult(success=False, error_message="rail unavailable")
            if idempotency_key not in self.refunds:
                external = f"RFD-{len(self.refunds) + 1:04d}"
                self.refunds[idempotency_key] = (reference, Decimal(amount), payee_id, external)
            return PaymentResult(success=True, external_reference=self.refunds[idempotency_key][3])

    def refunded_total(self) -> Decimal:
        return sum((entry[1] for entry in self.refunds.values()), Decimal("0"))


class TestDataFactory:
    """Builds users, proposals and escrows directly in the test database"""

    __test__ = False

    def __init__(self, session_factory, clock: FrozenClock):
        self.session_factory = session_factory
        self.clock = clock
        self._sequence = itertools.count(1)

    def create_user(self, display_name: Optional[str] = None, is_admin: bool = False, age_days: int = 90) -> User:
        number = next(self._sequence)
        session = self.session_factory()
        try:
            user = User(
                display_name=display_name or f"user{number}",
                email=f"user{number}-{uuid.uuid4().hex[:6]}@example.test",
                is_admin=is_admin,
                created_at=self.clock() - timedelta(days=age_days),
            )
            session.add(user)
            session.commit()
            return user
        finally:
            session.close()

    def create_operator(self) -> User:
        return self.create_user(display_name="operator", is_admin=True)

    def create_parties(self) -> Tuple[User, User]:
        return self.create_user(display_name="client"), self.create_user(display_name="freelancer")

    def create_proposal(
        self, job_ref: str, freelancer_id: int, status: ProposalStatus = ProposalStatus.ACCEPTED
    ) -> JobProposal:
        session = self.session_factory()
        try:
            proposal = JobProposal(job_ref=job_ref, freelancer_id=freelancer_id, status=status, created_at=self.clock())
            session.add(proposal)
            session.commit()
            return proposal
        finally:
            session.close()

    def new_job_ref(self) -> str:
        return f"JOB-{uuid.uuid4().hex[:10].upper()}"

    def pending_escrow(
        self, escrow_engine: EscrowEngine, amount=Decimal("10000"), plan_tier: str = "free"
    ) -> EscrowTransaction:
        client, freelancer = self.create_parties()
        job_ref = self.new_job_ref()
        self.create_proposal(job_ref, freelancer.id)
        return escrow_engine.open_escrow(job_ref, client.id, freelancer.id, amount, plan_tier).escrow

    def funded_escrow(
        self, escrow_engine: EscrowEngine, amount=Decimal("10000"), plan_tier: str = "free"
    ) -> EscrowTransaction:
        escrow = self.pending_escrow(escrow_engine, amount, plan_tier)
        return escrow_engine.fund(escrow.id, escrow.client_id).escrow


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'trust_core_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def locks():
    return EntityLockRegistry(default_timeout=5)


@pytest.fixture
def payment_rail():
    return FakePaymentRail()


@pytest.fixture
def payment_gateway(payment_rail):
    return PaymentRailGateway(payment_rail, timeout_seconds=5, sleep=lambda _: None)


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def audit_logger(session_factory, clock):
    return AuditLogger(session_factory, clock=clock)


@pytest.fixture
def risk_scorer(session_factory, locks, clock):
    return RiskScorer(session_factory, policy=RiskPolicy(), locks=locks, clock=clock)


@pytest.fixture
def wallet_ledger(session_factory, clock):
    return WalletLedger(session_factory, clock=clock)


@pytest.fixture
def escrow_policy():
    return EscrowPolicy(
        min_amount=Decimal("100"),
        fee_rates={"free": Decimal("0.06"), "pro": Decimal("0.04"), "enterprise": Decimal("0.02")},
        tax_rate=Decimal("0.16"),
        auto_release_grace=timedelta(hours=72),
    )


@pytest.fixture
def escrow_engine(session_factory, wallet_ledger, risk_scorer, payment_gateway, audit_logger, escrow_policy, locks, clock):
    return EscrowEngine(
        session_factory=session_factory,
        ledger=wallet_ledger,
        risk_scorer=risk_scorer,
        payment_gateway=payment_gateway,
        audit=audit_logger,
        policy=escrow_policy,
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def dispute_engine(escrow_engine, risk_scorer, object_store, audit_logger):
    return DisputeEngine(
        escrow_engine,
        risk_scorer=risk_scorer,
        object_store=object_store,
        evidence_policy=EvidencePolicy(),
        audit=audit_logger,
        policy=DisputePolicy(),
        storage_timeout_seconds=5,
        storage_retry={"max_attempts": 2, "initial_delay": 0.0, "jitter": False, "sleep": lambda _: None},
    )


@pytest.fixture
def fraud_pipeline(risk_scorer, session_factory, locks, clock):
    return FraudAlertPipeline(risk_scorer, session_factory, rules=FraudRules(), locks=locks, clock=clock)


@pytest.fixture
def mfa_service(session_factory, risk_scorer, audit_logger, locks, clock):
    return MFAService(
        session_factory=session_factory,
        cipher=SecretCipher(Fernet.generate_key()),
        risk_scorer=risk_scorer,
        policy=MFAPolicy(),
        ip_limiter=AttemptLimiter(max_attempts=20, time_window=900, namespace="test_mfa_ip"),
        audit=audit_logger,
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def test_data_factory(session_factory, clock):
    return TestDataFactory(session_factory, clock)
