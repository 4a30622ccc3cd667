"""
JPK Reporting API Endpoints

Report lifecycle for JPK audit files:
- Create, list, inspect and delete reports
- Add or import records, edit the declaration
- Generate, validate, sign and submit
- Poll the gateway, download the XML and the official receipt (UPO)
- Create corrections of filed reports
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from jpk_reporting.api.v1.deps import ActorId, ReportingService, http_error
from jpk_reporting.models.jpk_report import ReportKind, ReportStatus
from jpk_reporting.schemas.jpk import (
    CreateCorrectionRequest,
    CreateReportRequest,
    FileDownload,
    GenerateXMLRequest,
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
    SignReportRequest,
    SignResult,
    StatusCheckResult,
    SubmitReportRequest,
    SubmitResult,
    UpdateDeclarationRequest,
    ValidateReportRequest,
    ValidationResult,
)
from jpk_reporting.services.jpk.errors import JPKReportingError

router = APIRouter()


@router.post("/reports", response_model=ReportResponse, status_code=status.HTTP_201_CREATED)
async def create_report(request: CreateReportRequest, service: ReportingService, actor_id: ActorId):
    """
    Create a first filing in DRAFT.

    JPK_V7M and JPK_VAT need a month, JPK_V7K needs a quarter. Only one
    active first filing may exist per client, kind and period.
    """
    try:
        return await service.create_report(request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.get("/reports", response_model=ReportListResponse)
async def list_reports(
    service: ReportingService,
    client_id: Optional[UUID] = None,
    report_type: Optional[ReportKind] = None,
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    year: Optional[int] = None,
    month: Optional[int] = Query(None, ge=1, le=12),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    filters = ReportFilters(
        client_id=client_id,
        report_type=report_type,
        status=report_status,
        year=year,
        month=month,
    )
    return await service.list_reports(filters, page, page_size)


@router.get("/reports/{report_id}", response_model=ReportDetailResponse)
async def get_report(
    report_id: UUID,
    service: ReportingService,
    include_records: bool = False,
    include_declaration: bool = False,
):
    try:
        return await service.get_report(report_id, include_records, include_declaration)
    except JPKReportingError as e:
        raise http_error(e)


@router.delete("/reports/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_report(report_id: UUID, service: ReportingService, actor_id: ActorId):
    """Delete a DRAFT or ERROR report together with its records and files."""
    try:
        await service.delete_report(report_id, actor_id)
    except JPKReportingError as e:
        raise http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/reports/{report_id}/sale-records",
    response_model=SaleRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_sale_record(
    report_id: UUID,
    request: SaleRecordInput,
    service: ReportingService,
    actor_id: ActorId,
):
    try:
        return await service.add_sale_record(report_id, request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post(
    "/reports/{report_id}/purchase-records",
    response_model=PurchaseRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_purchase_record(
    report_id: UUID,
    request: PurchaseRecordInput,
    service: ReportingService,
    actor_id: ActorId,
):
    try:
        return await service.add_purchase_record(report_id, request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/import", response_model=ImportResult)
async def import_from_ledger(
    report_id: UUID,
    request: ImportFromLedgerRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    """
    Copy VAT ledger entries of the report period into the report.

    Entries that cannot be mapped are returned in `errors` and counted as
    skipped; the rest are imported.
    """
    try:
        return await service.import_from_ledger(report_id, request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.put("/reports/{report_id}/declaration", response_model=ReportResponse)
async def update_declaration(
    report_id: UUID,
    request: UpdateDeclarationRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    """Merge declaration fields. The report returns to DRAFT."""
    try:
        return await service.update_declaration(report_id, request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/generate", response_model=GenerateXMLResult)
async def generate_xml(
    report_id: UUID,
    request: GenerateXMLRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    try:
        return await service.generate_xml(report_id, request.regenerate, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/validate", response_model=ValidationResult)
async def validate_report(
    report_id: UUID,
    request: ValidateReportRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    """
    Run structural and business validation.

    Validation issues are returned in the response body, never as an HTTP error.
    """
    try:
        return await service.validate_report(
            report_id, request.validate_structural, request.validate_business, actor_id
        )
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/sign", response_model=SignResult)
async def sign_report(
    report_id: UUID,
    request: SignReportRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    try:
        return await service.sign_report(report_id, request.signature_type, request.resign, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/submit", response_model=SubmitResult)
async def submit_report(
    report_id: UUID,
    request: SubmitReportRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    try:
        return await service.submit_report(report_id, request.test_mode, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post("/reports/{report_id}/check-status", response_model=StatusCheckResult)
async def check_status(report_id: UUID, service: ReportingService, actor_id: ActorId):
    """Poll the gateway. Safe to repeat; nothing is written while pending."""
    try:
        return await service.check_status(report_id, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.get("/reports/{report_id}/xml", response_model=FileDownload)
async def download_xml(report_id: UUID, service: ReportingService, signed: bool = False):
    try:
        return await service.download_xml(report_id, signed)
    except JPKReportingError as e:
        raise http_error(e)


@router.get("/reports/{report_id}/receipt", response_model=FileDownload)
async def download_receipt(report_id: UUID, service: ReportingService, actor_id: ActorId):
    try:
        return await service.download_receipt(report_id, actor_id)
    except JPKReportingError as e:
        raise http_error(e)


@router.post(
    "/reports/{report_id}/corrections",
    response_model=ReportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_correction(
    report_id: UUID,
    request: CreateCorrectionRequest,
    service: ReportingService,
    actor_id: ActorId,
):
    """Create the next correction of a submitted or accepted report."""
    try:
        return await service.create_correction(report_id, request, actor_id)
    except JPKReportingError as e:
        raise http_error(e)
