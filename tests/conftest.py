"""Pytest fixtures for testing"""

import os
import uuid
from dataclasses import replace
from types import SimpleNamespace
from typing import Callable, Generator, List, Optional

from cryptography.fernet import Fernet

# Settings are read once at import, so the environment must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JOBS_ENABLED"] = "false"
os.environ["PROVIDER_API_KEY"] = "test-key"
os.environ["PROVIDER_CLIENT_SECRET"] = "test-client-secret"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from trustrail.api.dependencies import get_notifier, get_payment_provider
from trustrail.api.main import create_app
from trustrail.domain.exceptions import StatementAnalyzerError
from trustrail.domain.models import ApprovalWorkflow, InstallmentPlan
from trustrail.domain.scoring import analyze_statement, make_decision
from trustrail.domain.statement_parser import parse_bank_statement_csv
from trustrail.infrastructure.clients.mock_provider import InMemoryPaymentProvider
from trustrail.infrastructure.clients.notifier import BusinessNotifier
from trustrail.infrastructure.database.models import Application, Base, Business, TrustWallet
from trustrail.infrastructure.database.session import get_db
from trustrail.services.analysis import AnalysisOutcome
from trustrail.services.applications import CustomerDetails, submit_application
from trustrail.services.origination import OriginationOrchestrator
from trustrail.services.reconciler import PaymentEventReconciler
from trustrail.services.trust_wallets import create_trust_wallet
from trustrail.utils.signatures import provider_signature

# In-memory SQLite shared across threads so TestClient sees the same data
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WEBHOOK_URL = "https://merchant.example.com/trustrail/hooks"
WEBHOOK_SECRET = "whsec_test"

SAMPLE_STATEMENT_CSV = """Date,Description,Debit,Credit,Balance
2024-01-02,SALARY ACME LTD,,450000.00,520000.00
2024-01-05,SHOPRITE LEKKI,35000.00,,485000.00
2024-01-10,DSTV SUBSCRIPTION,18000.00,,467000.00
2024-01-20,UPWORK REMITTANCE,,60000.00,527000.00
2024-01-25,NIP TRANSFER TO ADA,40000.00,,487000.00
2024-02-01,SALARY ACME LTD,,450000.00,937000.00
2024-02-06,SHOPRITE LEKKI,42000.00,,895000.00
2024-02-12,IKEDC PREPAID,15000.00,,880000.00
2024-02-18,UPWORK REMITTANCE,,55000.00,935000.00
2024-02-26,NIP TRANSFER TO ADA,38000.00,,897000.00
2024-03-01,SALARY ACME LTD,,450000.00,1347000.00
2024-03-07,SHOPRITE LEKKI,39000.00,,1308000.00
2024-03-14,MTN AIRTIME,5000.00,,1303000.00
2024-03-22,UPWORK REMITTANCE,,58000.00,1361000.00
2024-03-30,NIP TRANSFER TO ADA,41000.00,,1320000.00
"""


@pytest.fixture
def sample_statement_csv() -> str:
    """Three months of salary, side income and everyday spending"""
    return SAMPLE_STATEMENT_CSV


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def delivered_webhooks() -> List[httpx.Request]:
    """Requests the notifier sent to business webhook URLs"""
    return []


@pytest.fixture
def webhook_responses() -> dict:
    """Mutable status code the fake business endpoint answers with"""
    return {"status_code": 200}


@pytest.fixture
def notifier(delivered_webhooks: List[httpx.Request], webhook_responses: dict) -> BusinessNotifier:
    def handler(request: httpx.Request) -> httpx.Response:
        delivered_webhooks.append(request)
        return httpx.Response(webhook_responses["status_code"], json={"ok": True})

    return BusinessNotifier(transport=httpx.MockTransport(handler))


@pytest.fixture
def provider() -> InMemoryPaymentProvider:
    return InMemoryPaymentProvider()


@pytest.fixture
def client(db: Session, provider: InMemoryPaymentProvider, notifier: BusinessNotifier) -> TestClient:
    """Create FastAPI test client with test database and fake provider"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    return TestClient(app)


@pytest.fixture
def business(db: Session) -> Business:
    business = Business(
        business_name="Lekki Gadgets",
        email="ops@lekkigadgets.example.com",
        webhook_url=WEBHOOK_URL,
        webhook_secret=WEBHOOK_SECRET,
    )
    db.add(business)
    db.commit()
    return business


@pytest.fixture
def make_trust_wallet(db: Session, business: Business) -> Callable[..., TrustWallet]:
    """Factory for TrustWallets under the test business"""
    counter = {"n": 0}

    def _make(
        total_amount: float = 120_000,
        down_payment_percentage: float = 20,
        installment_count: int = 10,
        frequency: str = "monthly",
        auto_approve_threshold: float = 75,
        auto_decline_threshold: float = 40,
        min_trust_score: float = 30,
    ) -> TrustWallet:
        counter["n"] += 1
        return create_trust_wallet(
            db,
            business,
            name=f"Plan {counter['n']}",
            plan=InstallmentPlan(
                total_amount=total_amount,
                down_payment_percentage=down_payment_percentage,
                installment_count=installment_count,
                frequency=frequency,
            ),
            workflow=ApprovalWorkflow(
                auto_approve_threshold=auto_approve_threshold,
                auto_decline_threshold=auto_decline_threshold,
                min_trust_score=min_trust_score,
            ),
        )

    return _make


@pytest.fixture
def trust_wallet(make_trust_wallet) -> TrustWallet:
    return make_trust_wallet()


@pytest.fixture
def customer() -> CustomerDetails:
    return CustomerDetails(
        first_name="Chioma",
        last_name="Okafor",
        email="chioma@example.com",
        phone_number="08031234567",
        account_number="0123456789",
        bank_code="058",
        bvn="22212345678",
    )


@pytest.fixture
def make_application(db: Session, trust_wallet: TrustWallet, customer: CustomerDetails) -> Callable[..., Application]:
    def _make(wallet: Optional[TrustWallet] = None, statement_csv: Optional[str] = SAMPLE_STATEMENT_CSV):
        return submit_application(
            db,
            (wallet or trust_wallet).trust_wallet_id,
            customer,
            statement_csv=statement_csv,
        )

    return _make


class ScriptedAnalysis:
    """Stands in for StatementAnalysisService with a fixed trust score"""

    def __init__(self, trust_score: int = 82, can_afford: bool = True, error: Optional[Exception] = None):
        self.trust_score = trust_score
        self.can_afford = can_afford
        self.error = error
        self.calls: List[str] = []

    async def analyze(self, application: Application, workflow: ApprovalWorkflow) -> AnalysisOutcome:
        self.calls.append(application.application_id)
        if self.error is not None:
            raise self.error
        base = analyze_statement(
            parse_bank_statement_csv(SAMPLE_STATEMENT_CSV), application.installment_amount, workflow
        )
        result = replace(
            base,
            trust_score=self.trust_score,
            decision=make_decision(self.trust_score, workflow, self.can_afford),
        )
        return AnalysisOutcome(result=result, source="local")


@pytest.fixture
def scripted_analysis() -> Callable[..., ScriptedAnalysis]:
    def _make(trust_score: int = 82, can_afford: bool = True, error: Optional[Exception] = None):
        return ScriptedAnalysis(trust_score=trust_score, can_afford=can_afford, error=error)

    return _make


@pytest.fixture
def failing_analysis() -> ScriptedAnalysis:
    return ScriptedAnalysis(error=StatementAnalyzerError("analyzer unavailable"))


@pytest.fixture
def orchestrator(db, provider, notifier, scripted_analysis) -> Callable[..., OriginationOrchestrator]:
    def _make(analysis=None, batch_size: int = 10) -> OriginationOrchestrator:
        return OriginationOrchestrator(
            db, analysis or scripted_analysis(), provider, notifier, batch_size=batch_size
        )

    return _make


def _signed(request_type: str, details: dict) -> dict:
    request_ref = f"REQ-{uuid.uuid4().hex[:12]}"
    details.setdefault("meta", {})["signature_hash"] = provider_signature(request_ref)
    return {"request_ref": request_ref, "request_type": request_type, "details": details}


def debit_payload(transaction_ref: str, amount: float, status: str = "Successful", biller_code: str = "") -> dict:
    meta = {"event_type": "debit", "biller_code": biller_code, "payment_id": f"PAY-{uuid.uuid4().hex[:8]}"}
    if status != "Successful":
        meta["failure_reason"] = "Insufficient funds"
    return _signed(
        "collect",
        {"status": status, "amount": amount, "transaction_ref": transaction_ref, "meta": meta},
    )


def credit_payload(virtual_account: str, amount: float) -> dict:
    return _signed(
        "collect",
        {"status": "Successful", "amount": amount, "meta": {"cr_account": virtual_account}},
    )


def activation_payload(mandate_ref: str, mandate_id: int = 4401) -> dict:
    return _signed(
        "activate_mandate",
        {
            "status": "Successful",
            "transaction_ref": mandate_ref,
            "data": {"data": {"id": mandate_id, "reference": mandate_ref}},
        },
    )


@pytest.fixture
def approved_application(db, make_application, orchestrator) -> Callable[..., Application]:
    """Runs one application through origination with a score of 82 (MANDATE_ACTIVE)"""

    async def _make(wallet: Optional[TrustWallet] = None) -> Application:
        application = make_application(wallet)
        await orchestrator().process(application.application_id)
        db.refresh(application)
        return application

    return _make


@pytest.fixture
def active_application(db, approved_application, provider, notifier) -> Callable[..., Application]:
    """MANDATE_ACTIVE application whose down payment has arrived (ACTIVE)"""

    async def _make(wallet: Optional[TrustWallet] = None) -> Application:
        application = await approved_application(wallet)
        await PaymentEventReconciler(db, provider, notifier).handle(
            credit_payload(application.virtual_account_number, application.down_payment_required)
        )
        db.refresh(application)
        return application

    return _make


@pytest.fixture
def payloads() -> SimpleNamespace:
    """Signed provider webhook builders"""
    return SimpleNamespace(debit=debit_payload, credit=credit_payload, activation=activation_payload)


@pytest.fixture
def reconciler(db, provider, notifier) -> PaymentEventReconciler:
    return PaymentEventReconciler(db, provider, notifier)
