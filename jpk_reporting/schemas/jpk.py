"""
JPK Reporting Schemas

Pydantic schemas for the JPK reporting engine and its API: request
payloads (validated on entry), operation results, and report views.
"""
import re
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from jpk_reporting.models.jpk_report import (
    ReportKind,
    ReportStatus,
    SubmissionPurpose,
    SignatureType,
)

MONTHLY_KINDS = {ReportKind.JPK_V7M, ReportKind.JPK_VAT}
QUARTERLY_KINDS = {ReportKind.JPK_V7K}

_COUNTRY_CODE = re.compile(r'^[A-Z]{2}$')
_CLASSIFICATION_CODE = re.compile(r'^[A-Z][A-Z0-9_]{0,19}$')
_DECLARATION_KEY = re.compile(r'^p_[0-9]+[a-z]?$')
# Characters outside the XML 1.0 Char production
_XML_ILLEGAL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


# ============ Requests ============

class CreateReportRequest(BaseModel):
    """Create a first filing for one client and one period."""
    client_id: UUID
    report_type: ReportKind
    year: int = Field(..., ge=2000, le=2100)
    month: Optional[int] = Field(None, ge=1, le=12)
    quarter: Optional[int] = Field(None, ge=1, le=4)

    @model_validator(mode='after')
    def check_period(self) -> 'CreateReportRequest':
        """Month and quarter are mutually exclusive and depend on the report kind."""
        if self.month is not None and self.quarter is not None:
            raise ValueError("month and quarter are mutually exclusive")
        if self.report_type in MONTHLY_KINDS and self.month is None:
            raise ValueError(f"{self.report_type.value} requires a month")
        if self.report_type in QUARTERLY_KINDS and self.quarter is None:
            raise ValueError(f"{self.report_type.value} requires a quarter")
        return self


def _normalize_codes(values: List[str]) -> List[str]:
    seen = []
    for value in values:
        code = value.strip().upper()
        if code and not _CLASSIFICATION_CODE.match(code):
            raise ValueError(f"Invalid classification code: {value}")
        if code and code not in seen:
            seen.append(code)
    return seen


def _check_xml_text(value: Optional[str]) -> Optional[str]:
    if value is not None and _XML_ILLEGAL.search(value):
        raise ValueError("Text contains characters that are not allowed in XML")
    return value


def _normalize_country(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().upper()
    if not value:
        return None
    if not _COUNTRY_CODE.match(value):
        raise ValueError("Country code must be two letters (ISO 3166-1 alpha-2)")
    return value


class SaleRecordInput(BaseModel):
    """One sale line (SprzedazWiersz)."""
    document_type: Optional[str] = Field(None, max_length=10, description="FP, RO, WEW or MK")
    document_number: str = Field(..., min_length=1, max_length=255)
    document_date: date
    sale_date: Optional[date] = None

    buyer_nip: Optional[str] = Field(None, max_length=30)
    buyer_name: str = Field(..., min_length=1, max_length=255)
    buyer_country_code: Optional[str] = None

    net_amount_23: Decimal = Decimal("0")
    vat_amount_23: Decimal = Decimal("0")
    net_amount_8: Decimal = Decimal("0")
    vat_amount_8: Decimal = Decimal("0")
    net_amount_5: Decimal = Decimal("0")
    vat_amount_5: Decimal = Decimal("0")
    net_amount_0: Decimal = Decimal("0")
    net_amount_exempt: Decimal = Decimal("0")
    net_amount_wdt: Decimal = Decimal("0")
    net_amount_export: Decimal = Decimal("0")

    gtu_codes: List[str] = Field(default_factory=list, max_length=13)
    procedure_codes: List[str] = Field(default_factory=list, max_length=20)

    corrected_invoice_number: Optional[str] = Field(None, max_length=255)
    corrected_invoice_date: Optional[date] = None

    @field_validator('document_type', 'document_number', 'buyer_nip', 'buyer_name', 'corrected_invoice_number')
    @classmethod
    def validate_text(cls, v: Optional[str]) -> Optional[str]:
        return _check_xml_text(v)

    @field_validator('buyer_country_code')
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_country(v)

    @field_validator('gtu_codes', 'procedure_codes')
    @classmethod
    def validate_codes(cls, v: List[str]) -> List[str]:
        return _normalize_codes(v)

    @field_validator('document_type')
    @classmethod
    def validate_document_type(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v and v.strip() else None


class PurchaseRecordInput(BaseModel):
    """One purchase line (ZakupWiersz)."""
    document_number: str = Field(..., min_length=1, max_length=255)
    document_date: date
    receipt_date: Optional[date] = None

    seller_nip: Optional[str] = Field(None, max_length=30)
    seller_name: str = Field(..., min_length=1, max_length=255)
    seller_country_code: Optional[str] = None

    net_amount_total: Decimal = Decimal("0")
    vat_amount_deductible: Decimal = Decimal("0")
    vat_amount_nondeductible: Decimal = Decimal("0")

    is_wnt: bool = False
    is_import_services: bool = False
    is_mpp: bool = False
    procedure_codes: List[str] = Field(default_factory=list, max_length=20)

    @field_validator('document_number', 'seller_nip', 'seller_name')
    @classmethod
    def validate_text(cls, v: Optional[str]) -> Optional[str]:
        return _check_xml_text(v)

    @field_validator('seller_country_code')
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_country(v)

    @field_validator('procedure_codes')
    @classmethod
    def validate_codes(cls, v: List[str]) -> List[str]:
        return _normalize_codes(v)


class ImportFromLedgerRequest(BaseModel):
    """
    Bulk import window. Dates default to the report period; the window is
    half-open: period_from <= transaction_date < period_to.
    """
    period_from: Optional[date] = None
    period_to: Optional[date] = None
    overwrite: bool = False

    @model_validator(mode='after')
    def check_window(self) -> 'ImportFromLedgerRequest':
        if self.period_from and self.period_to and self.period_from >= self.period_to:
            raise ValueError("period_from must be before period_to")
        return self


class UpdateDeclarationRequest(BaseModel):
    """
    Declaration field values keyed by field code (p_10, p_48, ...).
    A null value removes the field.
    """
    fields: Dict[str, Optional[str]] = Field(..., min_length=1)

    @field_validator('fields')
    @classmethod
    def validate_fields(cls, v: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        normalized = {}
        for key, value in v.items():
            code = key.strip().lower()
            if not _DECLARATION_KEY.match(code):
                raise ValueError(f"Invalid declaration field code: {key}")
            if value is not None:
                value = value.strip()
                _check_xml_text(value)
                if len(value) > 255:
                    raise ValueError(f"Value of {key} is too long")
            normalized[code] = value
        return normalized


class GenerateXMLRequest(BaseModel):
    regenerate: bool = False


class ValidateReportRequest(BaseModel):
    validate_structural: bool = True
    validate_business: bool = True


class SignReportRequest(BaseModel):
    signature_type: SignatureType
    resign: bool = Field(False, description="Replace an existing signature")


class SubmitReportRequest(BaseModel):
    test_mode: bool = Field(False, description="Send to the gateway sandbox")


class CreateCorrectionRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError("Correction reason must be at least 10 characters")
        return v


class ReportFilters(BaseModel):
    client_id: Optional[UUID] = None
    report_type: Optional[ReportKind] = None
    status: Optional[ReportStatus] = None
    year: Optional[int] = None
    month: Optional[int] = Field(None, ge=1, le=12)


# ============ Results ============

class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """A single validation finding. Never persisted on its own."""
    code: str
    field: Optional[str] = None
    line: Optional[int] = None
    message: str
    severity: IssueSeverity


class ValidationResult(BaseModel):
    report_id: UUID
    is_valid: bool
    structural_valid: bool
    business_valid: bool
    issues: List[ValidationIssue]
    error_count: int
    warning_count: int
    validated_at: datetime


class ImportRecordError(BaseModel):
    transaction_id: Optional[str] = None
    document_number: Optional[str] = None
    message: str


class ImportResult(BaseModel):
    report_id: UUID
    sale_records_imported: int
    purchase_records_imported: int
    skipped: int
    errors: List[ImportRecordError]


class GenerateXMLResult(BaseModel):
    report_id: UUID
    file_path: str
    file_size: int
    xml_hash: str
    record_count: int
    generated_at: datetime


class SignResult(BaseModel):
    report_id: UUID
    signature_type: SignatureType
    signed_file_path: str
    signed_at: datetime


class SubmitResult(BaseModel):
    report_id: UUID
    reference_id: str
    status: ReportStatus
    test_mode: bool
    submitted_at: datetime


class StatusCheckResult(BaseModel):
    """Outcome of a gateway poll. submitted=False means nothing was polled."""
    report_id: UUID
    submitted: bool
    status: ReportStatus
    gateway_status: Optional[str] = None
    reference_id: Optional[str] = None
    upo_number: Optional[str] = None
    upo_received_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    changed: bool = False
    message: Optional[str] = None


class FileDownload(BaseModel):
    file_name: str
    content_type: str
    file_size: int
    content: str  # base64


# ============ Report views ============

class SaleRecordResponse(BaseModel):
    id: UUID
    record_number: int
    document_type: Optional[str] = None
    document_number: str
    document_date: date
    sale_date: Optional[date] = None
    buyer_nip: Optional[str] = None
    buyer_name: str
    buyer_country_code: Optional[str] = None
    net_amount_23: Decimal
    vat_amount_23: Decimal
    net_amount_8: Decimal
    vat_amount_8: Decimal
    net_amount_5: Decimal
    vat_amount_5: Decimal
    net_amount_0: Decimal
    net_amount_exempt: Decimal
    net_amount_wdt: Decimal
    net_amount_export: Decimal
    gtu_codes: List[str]
    procedure_codes: List[str]
    corrected_invoice_number: Optional[str] = None
    corrected_invoice_date: Optional[date] = None

    class Config:
        from_attributes = True


class PurchaseRecordResponse(BaseModel):
    id: UUID
    record_number: int
    document_number: str
    document_date: date
    receipt_date: Optional[date] = None
    seller_nip: Optional[str] = None
    seller_name: str
    seller_country_code: Optional[str] = None
    net_amount_total: Decimal
    vat_amount_deductible: Decimal
    vat_amount_nondeductible: Decimal
    is_wnt: bool
    is_import_services: bool
    is_mpp: bool
    procedure_codes: List[str]

    class Config:
        from_attributes = True


class ReportResponse(BaseModel):
    id: UUID
    client_id: UUID
    report_type: ReportKind
    status: ReportStatus
    schema_version: str
    year: int
    month: Optional[int] = None
    quarter: Optional[int] = None
    period_from: date
    period_to: date
    purpose: SubmissionPurpose
    correction_number: Optional[int] = None
    original_report_id: Optional[UUID] = None
    correction_reason: Optional[str] = None
    record_count: int
    sale_record_count: int
    purchase_record_count: int
    total_sale_net: Decimal
    total_sale_vat: Decimal
    total_purchase_net: Decimal
    total_purchase_vat: Decimal
    xml_file_size: Optional[int] = None
    xml_hash: Optional[str] = None
    generated_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    signature_type: Optional[SignatureType] = None
    signed_at: Optional[datetime] = None
    submission_reference: Optional[str] = None
    test_mode: bool
    submitted_at: Optional[datetime] = None
    upo_number: Optional[str] = None
    upo_received_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReportDetailResponse(ReportResponse):
    declaration: Optional[Dict[str, str]] = None
    sale_records: Optional[List[SaleRecordResponse]] = None
    purchase_records: Optional[List[PurchaseRecordResponse]] = None


class ReportListResponse(BaseModel):
    items: List[ReportResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
