"""
Correction manager.

A correction is a new report (purpose CORRECTION) linked to the root
original of its chain. Numbers run 1, 2, ... per original; the next one is
the highest existing number plus one. The
(original_report_id, correction_number) pair is unique, so two concurrent
corrections of the same original cannot get the same number.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportStatus,
    SubmissionPurpose,
)
from jpk_reporting.schemas.jpk import CreateCorrectionRequest
from jpk_reporting.services.jpk.errors import ConflictError
from jpk_reporting.services.jpk.records import RecordStore
from jpk_reporting.services.jpk.state_machine import Operation, ReportStateMachine
from jpk_reporting.services.logging import jpk_logger

SALE_COPY_COLUMNS = (
    "record_number", "document_type", "document_number", "document_date", "sale_date",
    "buyer_nip", "buyer_name", "buyer_country_code",
    "net_amount_23", "vat_amount_23", "net_amount_8", "vat_amount_8",
    "net_amount_5", "vat_amount_5", "net_amount_0", "net_amount_exempt",
    "net_amount_wdt", "net_amount_export",
    "gtu_codes", "procedure_codes",
    "corrected_invoice_number", "corrected_invoice_date",
)

PURCHASE_COPY_COLUMNS = (
    "record_number", "document_number", "document_date", "receipt_date",
    "seller_nip", "seller_name", "seller_country_code",
    "net_amount_total", "vat_amount_deductible", "vat_amount_nondeductible",
    "is_wnt", "is_import_services", "is_mpp", "procedure_codes",
)


def _copy(record, columns) -> dict:
    values = {column: getattr(record, column) for column in columns}
    for column in ("gtu_codes", "procedure_codes"):
        if column in values:
            values[column] = list(values[column] or [])
    return values


class CorrectionManager:
    """Creates correction filings for submitted or accepted reports."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.state = ReportStateMachine(db)
        self.records = RecordStore(db)

    async def _latest_correction(self, root_id: UUID) -> Optional[JpkReport]:
        result = await self.db.execute(
            select(JpkReport)
            .where(JpkReport.original_report_id == root_id)
            .order_by(JpkReport.correction_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _next_correction_number(self, root_id: UUID) -> int:
        # Max, not count: deleted draft corrections leave gaps.
        result = await self.db.execute(
            select(func.coalesce(func.max(JpkReport.correction_number), 0))
            .where(JpkReport.original_report_id == root_id)
        )
        return result.scalar_one() + 1

    async def create_correction(
        self,
        original_report_id: UUID,
        request: CreateCorrectionRequest,
        user_id: Optional[UUID] = None,
    ) -> JpkReport:
        """
        Create the next correction of a filed report.

        Client, kind and period are inherited. Records (with their numbers)
        and the declaration are copied from the most recent correction of the
        chain, or from the root original when there is none. The corrected
        report is marked CORRECTED.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not SUBMITTED, ACCEPTED or CORRECTED
            ConflictError: a concurrent correction took the same number
        """
        original = await self.state.load(original_report_id)
        self.state.require(original, Operation.CREATE_CORRECTION)

        root = original
        if original.original_report_id is not None:
            root = await self.state.load(original.original_report_id)

        root_id = root.id
        correction_number = await self._next_correction_number(root_id)
        source = await self._latest_correction(root_id) or root

        sale_records = await self.records.list_sale_records(source.id)
        purchase_records = await self.records.list_purchase_records(source.id)

        correction = JpkReport(
            client_id=root.client_id,
            report_type=root.report_type,
            status=ReportStatus.DRAFT,
            schema_version=root.schema_version,
            year=root.year,
            month=root.month,
            quarter=root.quarter,
            period_from=root.period_from,
            period_to=root.period_to,
            purpose=SubmissionPurpose.CORRECTION,
            correction_number=correction_number,
            original_report_id=root.id,
            correction_reason=request.reason,
            record_count=source.record_count,
            sale_record_count=source.sale_record_count,
            purchase_record_count=source.purchase_record_count,
            declaration=dict(source.declaration or {}),
            created_by=user_id,
        )
        self.db.add(correction)

        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError(
                f"Correction {correction_number} of report {root_id} was created concurrently; retry"
            ) from e

        for record in sale_records:
            self.db.add(JpkSaleRecord(report_id=correction.id, **_copy(record, SALE_COPY_COLUMNS)))
        for record in purchase_records:
            self.db.add(JpkPurchaseRecord(report_id=correction.id, **_copy(record, PURCHASE_COPY_COLUMNS)))

        previous_status = original.status
        if previous_status != ReportStatus.CORRECTED:
            await self.state.transition(original, previous_status, ReportStatus.CORRECTED)

        await log_audit_event(
            self.db,
            client_id=correction.client_id,
            entity_type="jpk_report",
            entity_id=correction.id,
            action="create_correction",
            user_id=user_id,
            new_value={
                "original_report_id": root.id,
                "corrected_report_id": original.id,
                "correction_number": correction_number,
                "reason": request.reason,
                "copied_from": source.id,
            },
        )
        await log_audit_event(
            self.db,
            client_id=original.client_id,
            entity_type="jpk_report",
            entity_id=original.id,
            action="mark_corrected",
            user_id=user_id,
            old_value={"status": previous_status.value},
            new_value={"status": ReportStatus.CORRECTED.value, "correction_id": correction.id},
        )
        await self.db.commit()
        await self.db.refresh(correction)

        jpk_logger.correction_created(
            report_id=correction.id,
            client_id=correction.client_id,
            original_report_id=root.id,
            correction_number=correction_number,
            user_id=user_id,
        )
        return correction
