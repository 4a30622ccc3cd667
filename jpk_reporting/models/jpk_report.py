"""
JPK Report Models

A JPK report is one audit-file filing for one client and one reporting period.
Sale and purchase records are the transaction lines that make up the
"Ewidencja" part of the document; the declaration is a flat map of
regulator field codes (p_10, p_48, ...) kept on the report itself.

Status Flow:
- DRAFT: records and declaration are editable
- GENERATING -> GENERATED: XML artifact assembled and hashed
- VALIDATING -> VALIDATED: structural and business checks passed
- SIGNING -> SIGNED: signed artifact stored
- SUBMITTING -> SUBMITTED: accepted for processing by the gateway
- ACCEPTED / REJECTED: final gateway outcome
- CORRECTED: superseded by a correction filing
- ERROR: internal inconsistency, only deletion is allowed
"""
import enum
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, DateTime, Date, Text, Integer, Boolean, Numeric, ForeignKey,
    Index, UniqueConstraint, func, text, Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from jpk_reporting.core.database import Base, utcnow


class ReportKind(str, enum.Enum):
    """Audit-file variants."""
    JPK_VAT = "JPK_VAT"
    JPK_V7M = "JPK_V7M"
    JPK_V7K = "JPK_V7K"
    JPK_FA = "JPK_FA"
    JPK_KR = "JPK_KR"
    JPK_WB = "JPK_WB"
    JPK_MAG = "JPK_MAG"
    JPK_PKPIR = "JPK_PKPIR"
    JPK_EWP = "JPK_EWP"


class ReportStatus(str, enum.Enum):
    """Report lifecycle status."""
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    VALIDATING = "VALIDATING"
    VALIDATED = "VALIDATED"
    SIGNING = "SIGNING"
    SIGNED = "SIGNED"
    SUBMITTING = "SUBMITTING"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CORRECTED = "CORRECTED"
    ERROR = "ERROR"


class SubmissionPurpose(str, enum.Enum):
    """Filing purpose (CelZlozenia 1 or 2)."""
    FIRST = "FIRST"
    CORRECTION = "CORRECTION"


class SignatureType(str, enum.Enum):
    """Credential used to sign the document."""
    TRUSTED_PROFILE = "TRUSTED_PROFILE"
    QUALIFIED = "QUALIFIED"


# Rejected and failed first filings do not block a new one for the period
FIRST_FILING_ACTIVE = "purpose = 'FIRST' AND status NOT IN ('REJECTED', 'ERROR')"


class JpkReport(Base):
    """
    One JPK filing.

    Counters and totals are owned by the engine: counters are bumped in the
    same transaction as the record insert, totals are recomputed on every
    XML generation.
    """
    __tablename__ = "jpk_reports"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    report_type: Mapped[ReportKind] = mapped_column(
        SQLEnum(ReportKind, name="jpk_report_kind", native_enum=False, length=20),
        nullable=False,
    )
    status: Mapped[ReportStatus] = mapped_column(
        SQLEnum(ReportStatus, name="jpk_report_status", native_enum=False, length=20),
        default=ReportStatus.DRAFT,
        nullable=False,
    )
    schema_version: Mapped[str] = mapped_column(String(10), nullable=False)

    # Period: year plus month or quarter, never both
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quarter: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    period_from: Mapped[date] = mapped_column(Date, nullable=False)
    period_to: Mapped[date] = mapped_column(Date, nullable=False)

    # Filing purpose and correction lineage
    purpose: Mapped[SubmissionPurpose] = mapped_column(
        SQLEnum(SubmissionPurpose, name="jpk_submission_purpose", native_enum=False, length=20),
        default=SubmissionPurpose.FIRST,
        nullable=False,
    )
    correction_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    original_report_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jpk_reports.id"), nullable=True
    )
    correction_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Record counters
    record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sale_record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchase_record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Aggregates, recomputed at generation time
    total_sale_net: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_sale_vat: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_purchase_net: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_purchase_vat: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)

    # Declaration field map (p_xx -> value)
    declaration: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    # Assembled artifact
    xml_file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    xml_file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    xml_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # SHA256 hex
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Signed artifact
    signed_file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    signature_type: Mapped[Optional[SignatureType]] = mapped_column(
        SQLEnum(SignatureType, name="jpk_signature_type", native_enum=False, length=20),
        nullable=True,
    )
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Gateway submission
    submission_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Official receipt (UPO)
    upo_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    upo_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    upo_file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index('ix_jpk_reports_client', 'client_id'),
        Index('ix_jpk_reports_status', 'status'),
        Index('ix_jpk_reports_client_period', 'client_id', 'report_type', 'year', 'month', 'quarter'),
        UniqueConstraint('original_report_id', 'correction_number', name='uq_jpk_reports_correction_number'),
        Index(
            'uq_jpk_reports_first_filing', 'client_id', 'report_type', 'period_from', 'period_to',
            unique=True,
            postgresql_where=text(FIRST_FILING_ACTIVE),
            sqlite_where=text(FIRST_FILING_ACTIVE),
        ),
    )

    @property
    def is_correction(self) -> bool:
        return self.purpose == SubmissionPurpose.CORRECTION

    def __repr__(self) -> str:
        return (
            f"<JpkReport(id={self.id}, "
            f"report_type={self.report_type}, "
            f"status={self.status}, "
            f"year={self.year}, month={self.month}, quarter={self.quarter})>"
        )


class JpkSaleRecord(Base):
    """One SprzedazWiersz line."""
    __tablename__ = "jpk_sale_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jpk_reports.id", ondelete="CASCADE"), nullable=False
    )
    record_number: Mapped[int] = mapped_column(Integer, nullable=False)  # LpSprzedazy

    document_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # FP, RO, WEW, MK
    document_number: Mapped[str] = mapped_column(String(255), nullable=False)
    document_date: Mapped[date] = mapped_column(Date, nullable=False)
    sale_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    buyer_nip: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    buyer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Rate brackets (K_xx fields)
    net_amount_23: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_19
    vat_amount_23: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_20
    net_amount_8: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_17
    vat_amount_8: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_18
    net_amount_5: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_15
    vat_amount_5: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_16
    net_amount_0: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_13
    net_amount_exempt: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_10
    net_amount_wdt: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_21
    net_amount_export: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_22

    gtu_codes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    procedure_codes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    corrected_invoice_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    corrected_invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint('report_id', 'record_number', name='uq_jpk_sale_records_number'),
        Index('ix_jpk_sale_records_report', 'report_id'),
    )


class JpkPurchaseRecord(Base):
    """One ZakupWiersz line."""
    __tablename__ = "jpk_purchase_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jpk_reports.id", ondelete="CASCADE"), nullable=False
    )
    record_number: Mapped[int] = mapped_column(Integer, nullable=False)  # LpZakupu

    document_number: Mapped[str] = mapped_column(String(255), nullable=False)
    document_date: Mapped[date] = mapped_column(Date, nullable=False)
    receipt_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    seller_nip: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    seller_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    net_amount_total: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_42
    vat_amount_deductible: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)  # K_43
    vat_amount_nondeductible: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)

    is_wnt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_import_services: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_mpp: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    procedure_codes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint('report_id', 'record_number', name='uq_jpk_purchase_records_number'),
        Index('ix_jpk_purchase_records_report', 'report_id'),
    )
