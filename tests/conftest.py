"""
Pytest configuration and fixtures for JPK reporting tests.

Provides an in-memory database, artifact storage in a temp directory,
a registered taxpayer, in-process fakes for the signature provider,
the gateway and the VAT ledger, and an async API client wired to them.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from jpk_reporting.main import app
from jpk_reporting.api.v1.deps import get_reporting_service
from jpk_reporting.core.database import Base
from jpk_reporting.models.client import Client
from jpk_reporting.models.jpk_report import JpkReport, ReportKind, SignatureType
from jpk_reporting.schemas.jpk import (
    CreateReportRequest,
    PurchaseRecordInput,
    SaleRecordInput,
    UpdateDeclarationRequest,
)
from jpk_reporting.services.collaborators import LedgerTransaction, TransactionLedger
from jpk_reporting.services.gateway import GatewayState, GatewayStatus, SubmissionGateway
from jpk_reporting.services.jpk.reporting import JPKReportingService
from jpk_reporting.services.jpk.storage import ArtifactStorage
from jpk_reporting.services.signing_service import SignatureProvider


# In-memory SQLite; StaticPool keeps the single connection (and the schema) alive
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TAXPAYER_NIP = "5213017228"
COUNTERPART_NIP = "1234563218"


class FakeSignatureProvider(SignatureProvider):
    """Appends a marker comment instead of a real signature."""

    def __init__(self):
        self.calls: List[SignatureType] = []
        self.error: Optional[Exception] = None

    async def sign(self, document: bytes, signature_type: SignatureType) -> bytes:
        self.calls.append(signature_type)
        if self.error is not None:
            raise self.error
        return document + f"<!-- signed:{signature_type.value} -->".encode("utf-8")


class FakeGateway(SubmissionGateway):
    """Records submissions and answers polls from a configurable status."""

    def __init__(self):
        self.submissions: List[dict] = []
        self.polls = 0
        self.receipt_fetches = 0
        self.reference = "REF-0001"
        self.status = GatewayStatus(state=GatewayState.PENDING, code=120)
        self.receipt = b'<?xml version="1.0" encoding="UTF-8"?><Potwierdzenie>UPO-123</Potwierdzenie>'
        self.submit_error: Optional[Exception] = None
        self.poll_error: Optional[Exception] = None

    async def submit(self, signed_document: bytes, sandbox: bool, idempotency_key: str) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append({
            "document": signed_document,
            "sandbox": sandbox,
            "idempotency_key": idempotency_key,
        })
        return self.reference

    async def poll(self, reference_id: str, sandbox: bool) -> GatewayStatus:
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.status

    async def fetch_receipt(self, reference_id: str, sandbox: bool) -> bytes:
        self.receipt_fetches += 1
        return self.receipt


class StaticLedger(TransactionLedger):
    """Ledger over a fixed list of entries."""

    def __init__(self):
        self.transactions: List[LedgerTransaction] = []

    async def list_transactions(self, client_id, period_from, period_to):
        return [
            tx for tx in self.transactions
            if period_from <= tx.transaction_date < period_to
        ]


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def storage(tmp_path) -> ArtifactStorage:
    return ArtifactStorage(root=str(tmp_path / "artifacts"))


@pytest.fixture
def signer() -> FakeSignatureProvider:
    return FakeSignatureProvider()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger() -> StaticLedger:
    return StaticLedger()


@pytest_asyncio.fixture(scope="function")
async def taxpayer(db_session: AsyncSession) -> Client:
    """Create an active taxpayer with a valid NIP."""
    client = Client(
        id=uuid.uuid4(),
        nip=TAXPAYER_NIP,
        name="Test Spolka z o.o.",
        email="biuro@example.pl",
        tax_office_code="1471",
        is_active=True,
    )
    db_session.add(client)
    await db_session.commit()
    await db_session.refresh(client)
    return client


@pytest_asyncio.fixture(scope="function")
async def service(
    db_session: AsyncSession,
    storage: ArtifactStorage,
    signer: FakeSignatureProvider,
    gateway: FakeGateway,
    ledger: StaticLedger,
) -> JPKReportingService:
    return JPKReportingService(
        db_session,
        ledger=ledger,
        signer=signer,
        gateway=gateway,
        storage=storage,
    )


@pytest.fixture
def sale_input():
    """Factory for a valid 23% sale line."""

    def _make(**overrides) -> SaleRecordInput:
        values = {
            "document_type": None,
            "document_number": "FV/2024/01/001",
            "document_date": date(2024, 1, 15),
            "sale_date": date(2024, 1, 15),
            "buyer_nip": COUNTERPART_NIP,
            "buyer_name": "Kontrahent Sp. z o.o.",
            "net_amount_23": Decimal("1000.00"),
            "vat_amount_23": Decimal("230.00"),
        }
        values.update(overrides)
        return SaleRecordInput(**values)

    return _make


@pytest.fixture
def purchase_input():
    """Factory for a valid purchase line."""

    def _make(**overrides) -> PurchaseRecordInput:
        values = {
            "document_number": "ZAK/2024/01/001",
            "document_date": date(2024, 1, 10),
            "receipt_date": date(2024, 1, 12),
            "seller_nip": COUNTERPART_NIP,
            "seller_name": "Dostawca S.A.",
            "net_amount_total": Decimal("500.00"),
            "vat_amount_deductible": Decimal("115.00"),
        }
        values.update(overrides)
        return PurchaseRecordInput(**values)

    return _make


@pytest_asyncio.fixture(scope="function")
async def draft_report(service: JPKReportingService, taxpayer: Client) -> JpkReport:
    """Monthly V7M report for January 2024 without records."""
    return await service.create_report(CreateReportRequest(
        client_id=taxpayer.id,
        report_type=ReportKind.JPK_V7M,
        year=2024,
        month=1,
    ))


@pytest_asyncio.fixture(scope="function")
async def generated_report(
    service: JPKReportingService,
    draft_report: JpkReport,
    sale_input,
    purchase_input,
) -> JpkReport:
    """Draft with one sale, one purchase and a settled declaration, assembled to GENERATED."""
    await service.add_sale_record(draft_report.id, sale_input())
    await service.add_purchase_record(draft_report.id, purchase_input())
    await service.update_declaration(draft_report.id, UpdateDeclarationRequest(
        fields={"p_28": "230", "p_43": "115", "p_48": "115"}
    ))
    await service.generate_xml(draft_report.id)
    return await service.state.load(draft_report.id)


@pytest_asyncio.fixture(scope="function")
async def signed_report(service: JPKReportingService, generated_report: JpkReport) -> JpkReport:
    await service.sign_report(generated_report.id, SignatureType.TRUSTED_PROFILE)
    return await service.state.load(generated_report.id)


@pytest_asyncio.fixture(scope="function")
async def submitted_report(service: JPKReportingService, signed_report: JpkReport) -> JpkReport:
    await service.submit_report(signed_report.id)
    return await service.state.load(signed_report.id)


@pytest_asyncio.fixture(scope="function")
async def async_client(service: JPKReportingService) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with the reporting service overridden."""
    app.dependency_overrides[get_reporting_service] = lambda: service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()
