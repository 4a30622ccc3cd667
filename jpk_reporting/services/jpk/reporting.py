"""
JPK Reporting Service

Single entry point for the API layer. Owns report creation, retrieval,
listing, deletion and artifact download, and delegates the lifecycle
operations to the record store, assembler, validation engine, submission
pipeline and correction manager.
"""
import calendar
import math
from datetime import date
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportStatus,
    SignatureType,
    SubmissionPurpose,
)
from jpk_reporting.schemas.jpk import (
    CreateCorrectionRequest,
    CreateReportRequest,
    FileDownload,
    GenerateXMLResult,
    ImportFromLedgerRequest,
    ImportResult,
    PurchaseRecordInput,
    PurchaseRecordResponse,
    ReportDetailResponse,
    ReportFilters,
    ReportListResponse,
    ReportResponse,
    SaleRecordInput,
    SaleRecordResponse,
    SignResult,
    StatusCheckResult,
    SubmitResult,
    UpdateDeclarationRequest,
    ValidationResult,
)
from jpk_reporting.services.collaborators import (
    ClientRegistry,
    DatabaseClientRegistry,
    DatabaseTransactionLedger,
    TransactionLedger,
)
from jpk_reporting.services.gateway import HttpSubmissionGateway, SubmissionGateway
from jpk_reporting.services.jpk.assembler import SCHEMA_VERSIONS, DocumentAssembler, xml_file_name
from jpk_reporting.services.jpk.corrections import CorrectionManager
from jpk_reporting.services.jpk.errors import ConflictError, FatalError, PreconditionFailedError
from jpk_reporting.services.jpk.records import RecordStore
from jpk_reporting.services.jpk.state_machine import Operation, ReportStateMachine
from jpk_reporting.services.jpk.storage import ArtifactNotFoundError, ArtifactStorage, as_download
from jpk_reporting.services.jpk.submission import SubmissionPipeline
from jpk_reporting.services.jpk.validation import DEFAULT_RULES, ValidationEngine, ValidationRules
from jpk_reporting.services.logging import jpk_logger
from jpk_reporting.services.signing_service import SignatureProvider, XmlDsigSignatureProvider

# Superseded or failed filings do not block a new first filing
INACTIVE_STATUSES = (ReportStatus.REJECTED, ReportStatus.ERROR)


def period_bounds(year: int, month: Optional[int] = None, quarter: Optional[int] = None) -> Tuple[date, date]:
    """Inclusive first and last day of a month, a quarter or a full year."""
    if month:
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    if quarter:
        first_month = (quarter - 1) * 3 + 1
        last_month = first_month + 2
        return date(year, first_month, 1), date(year, last_month, calendar.monthrange(year, last_month)[1])
    return date(year, 1, 1), date(year, 12, 31)


class JPKReportingService:
    """Facade over the JPK report lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[ClientRegistry] = None,
        ledger: Optional[TransactionLedger] = None,
        signer: Optional[SignatureProvider] = None,
        gateway: Optional[SubmissionGateway] = None,
        storage: Optional[ArtifactStorage] = None,
        rules: ValidationRules = DEFAULT_RULES,
    ):
        self.db = db
        self.registry = registry or DatabaseClientRegistry(db)
        self.storage = storage or ArtifactStorage()
        self.state = ReportStateMachine(db)

        self.records = RecordStore(db, ledger or DatabaseTransactionLedger(db), self.storage)
        self.assembler = DocumentAssembler(db, self.registry, self.storage)
        self.validator = ValidationEngine(db, self.storage, rules)
        self.pipeline = SubmissionPipeline(
            db,
            signer or XmlDsigSignatureProvider(),
            gateway or HttpSubmissionGateway(),
            self.storage,
        )
        self.corrections = CorrectionManager(db)

    # ============ Reports ============

    async def _find_active_first_filing(self, client_id: UUID, request: CreateReportRequest) -> Optional[UUID]:
        result = await self.db.execute(
            select(JpkReport.id).where(
                JpkReport.client_id == client_id,
                JpkReport.report_type == request.report_type,
                JpkReport.year == request.year,
                JpkReport.month.is_(None) if request.month is None else JpkReport.month == request.month,
                JpkReport.quarter.is_(None) if request.quarter is None else JpkReport.quarter == request.quarter,
                JpkReport.purpose == SubmissionPurpose.FIRST,
                JpkReport.status.not_in(INACTIVE_STATUSES),
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def create_report(self, request: CreateReportRequest, user_id: Optional[UUID] = None) -> JpkReport:
        """
        Create a DRAFT first filing for a client and period.

        Raises:
            NotFoundError: unknown client
            ConflictError: an active first filing for the same period exists
        """
        client = await self.registry.lookup(request.client_id)

        if await self._find_active_first_filing(client.client_id, request) is not None:
            raise ConflictError(
                f"A {request.report_type.value} report for this client and period already exists"
            )

        period_from, period_to = period_bounds(request.year, request.month, request.quarter)
        report = JpkReport(
            client_id=client.client_id,
            report_type=request.report_type,
            status=ReportStatus.DRAFT,
            schema_version=SCHEMA_VERSIONS[request.report_type],
            year=request.year,
            month=request.month,
            quarter=request.quarter,
            period_from=period_from,
            period_to=period_to,
            purpose=SubmissionPurpose.FIRST,
            declaration={},
            created_by=user_id,
        )
        self.db.add(report)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError(
                f"A {request.report_type.value} report for this client and period was created concurrently"
            ) from e

        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="create",
            user_id=user_id,
            new_value={
                "report_type": report.report_type.value,
                "year": report.year,
                "month": report.month,
                "quarter": report.quarter,
            },
        )
        await self.db.commit()
        await self.db.refresh(report)

        jpk_logger.report_created(
            report_id=report.id,
            client_id=report.client_id,
            report_type=report.report_type.value,
            purpose=report.purpose.value,
            user_id=user_id,
        )
        return report

    async def get_report(
        self,
        report_id: UUID,
        include_records: bool = False,
        include_declaration: bool = False,
    ) -> ReportDetailResponse:
        report = await self.state.load(report_id)
        detail = ReportDetailResponse.model_validate(
            ReportResponse.model_validate(report).model_dump()
        )
        if include_declaration:
            detail.declaration = dict(report.declaration or {})
        if include_records:
            detail.sale_records = [
                SaleRecordResponse.model_validate(r) for r in await self.records.list_sale_records(report.id)
            ]
            detail.purchase_records = [
                PurchaseRecordResponse.model_validate(r)
                for r in await self.records.list_purchase_records(report.id)
            ]
        return detail

    async def list_reports(
        self,
        filters: Optional[ReportFilters] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> ReportListResponse:
        """Filtered reports, newest first."""
        filters = filters or ReportFilters()
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)

        conditions = []
        if filters.client_id:
            conditions.append(JpkReport.client_id == filters.client_id)
        if filters.report_type:
            conditions.append(JpkReport.report_type == filters.report_type)
        if filters.status:
            conditions.append(JpkReport.status == filters.status)
        if filters.year:
            conditions.append(JpkReport.year == filters.year)
        if filters.month:
            conditions.append(JpkReport.month == filters.month)

        total = (
            await self.db.execute(select(func.count()).select_from(JpkReport).where(*conditions))
        ).scalar_one()

        result = await self.db.execute(
            select(JpkReport)
            .where(*conditions)
            .order_by(JpkReport.created_at.desc(), JpkReport.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items: List[ReportResponse] = [ReportResponse.model_validate(r) for r in result.scalars().all()]

        return ReportListResponse(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    async def delete_report(self, report_id: UUID, user_id: Optional[UUID] = None) -> None:
        """
        Delete a DRAFT or ERROR report with its records and artifacts.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is past DRAFT and not in ERROR
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.DELETE)

        status = report.status
        client_id = report.client_id
        artifacts = [report.xml_file_path, report.signed_file_path, report.upo_file_path]

        await self.db.execute(delete(JpkSaleRecord).where(JpkSaleRecord.report_id == report.id))
        await self.db.execute(delete(JpkPurchaseRecord).where(JpkPurchaseRecord.report_id == report.id))
        result = await self.db.execute(
            delete(JpkReport)
            .where(JpkReport.id == report.id, JpkReport.status == status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            await self.db.refresh(report)
            raise PreconditionFailedError(
                f"Report {report_id} changed concurrently (status {report.status.value})",
                current_status=report.status.value,
                required_statuses=[status.value],
            )

        await log_audit_event(
            self.db,
            client_id=client_id,
            entity_type="jpk_report",
            entity_id=report_id,
            action="delete",
            user_id=user_id,
            old_value={"status": status.value},
        )
        await self.db.commit()
        self.db.expunge(report)

        for path in artifacts:
            await self.storage.delete(path)

        jpk_logger.report_deleted(
            report_id=report_id,
            client_id=client_id,
            status=status.value,
            user_id=user_id,
        )

    async def download_xml(self, report_id: UUID, signed: bool = False) -> FileDownload:
        """
        Stored unsigned or signed document.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: the requested artifact was never produced
            FatalError: the artifact is recorded but missing from storage
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.DOWNLOAD_XML)

        path = report.signed_file_path if signed else report.xml_file_path
        if not path:
            raise PreconditionFailedError(
                "Report has not been signed" if signed else "XML has not been generated",
                current_status=report.status.value,
                required_statuses=[ReportStatus.SIGNED.value] if signed else [ReportStatus.GENERATED.value],
            )

        try:
            content = await self.storage.read(path)
        except ArtifactNotFoundError as e:
            await self.state.fail(report, Operation.DOWNLOAD_XML, str(e))
            raise FatalError(str(e)) from e

        return as_download(xml_file_name(report, signed=signed), content)

    # ============ Lifecycle ============

    async def add_sale_record(
        self, report_id: UUID, data: SaleRecordInput, user_id: Optional[UUID] = None
    ) -> JpkSaleRecord:
        return await self.records.add_sale_record(report_id, data, user_id)

    async def add_purchase_record(
        self, report_id: UUID, data: PurchaseRecordInput, user_id: Optional[UUID] = None
    ) -> JpkPurchaseRecord:
        return await self.records.add_purchase_record(report_id, data, user_id)

    async def import_from_ledger(
        self, report_id: UUID, request: ImportFromLedgerRequest, user_id: Optional[UUID] = None
    ) -> ImportResult:
        return await self.records.import_from_ledger(report_id, request, user_id)

    async def update_declaration(
        self, report_id: UUID, request: UpdateDeclarationRequest, user_id: Optional[UUID] = None
    ) -> JpkReport:
        return await self.records.update_declaration(report_id, request, user_id)

    async def generate_xml(
        self, report_id: UUID, regenerate: bool = False, user_id: Optional[UUID] = None
    ) -> GenerateXMLResult:
        return await self.assembler.generate_xml(report_id, regenerate, user_id)

    async def validate_report(
        self,
        report_id: UUID,
        validate_structural: bool = True,
        validate_business: bool = True,
        user_id: Optional[UUID] = None,
    ) -> ValidationResult:
        return await self.validator.validate_report(report_id, validate_structural, validate_business, user_id)

    async def sign_report(
        self,
        report_id: UUID,
        signature_type: SignatureType,
        resign: bool = False,
        user_id: Optional[UUID] = None,
    ) -> SignResult:
        return await self.pipeline.sign_report(report_id, signature_type, resign, user_id)

    async def submit_report(
        self, report_id: UUID, test_mode: bool = False, user_id: Optional[UUID] = None
    ) -> SubmitResult:
        return await self.pipeline.submit_report(report_id, test_mode, user_id)

    async def check_status(self, report_id: UUID, user_id: Optional[UUID] = None) -> StatusCheckResult:
        return await self.pipeline.check_status(report_id, user_id)

    async def download_receipt(self, report_id: UUID, user_id: Optional[UUID] = None) -> FileDownload:
        return await self.pipeline.download_receipt(report_id, user_id)

    async def create_correction(
        self, original_report_id: UUID, request: CreateCorrectionRequest, user_id: Optional[UUID] = None
    ) -> JpkReport:
        return await self.corrections.create_correction(original_report_id, request, user_id)
