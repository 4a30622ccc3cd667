"""
Record store: sale/purchase lines and the declaration field map of a report.

Record numbers are assigned per section (LpSprzedazy, LpZakupu) from the
report counters. The counter increment is a status-guarded UPDATE in the
same transaction as the insert, so concurrent inserts into one draft are
serialized on the report row and numbering stays dense.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.core.database import utcnow
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportStatus,
)
from jpk_reporting.schemas.jpk import (
    SaleRecordInput,
    PurchaseRecordInput,
    ImportFromLedgerRequest,
    ImportRecordError,
    ImportResult,
    UpdateDeclarationRequest,
)
from jpk_reporting.services.collaborators import (
    LedgerTransaction,
    TransactionDirection,
    TransactionLedger,
)
from jpk_reporting.services.jpk.errors import JPKReportingError, PreconditionFailedError
from jpk_reporting.services.jpk.state_machine import Operation, ReportStateMachine
from jpk_reporting.services.jpk.storage import ArtifactStorage
from jpk_reporting.services.logging import jpk_logger

logger = logging.getLogger(__name__)

# Ledger rate bracket -> (net field, vat field) on the sale record
SALE_RATE_FIELDS = {
    "23": ("net_amount_23", "vat_amount_23"),
    "8": ("net_amount_8", "vat_amount_8"),
    "5": ("net_amount_5", "vat_amount_5"),
    "0": ("net_amount_0", None),
    "zw": ("net_amount_exempt", None),
    "wdt": ("net_amount_wdt", None),
    "exp": ("net_amount_export", None),
}

# Columns cleared when an assembled document goes stale
ARTIFACT_RESET = {
    "xml_file_path": None,
    "xml_file_size": None,
    "xml_hash": None,
    "generated_at": None,
    "validated_at": None,
    "signed_file_path": None,
    "signature_type": None,
    "signed_at": None,
    "error_message": None,
}


class LedgerMappingError(JPKReportingError):
    """A ledger entry cannot be turned into a JPK record."""
    pass


def sale_input_from_ledger(tx: LedgerTransaction) -> SaleRecordInput:
    rate = str(tx.vat_rate).strip().lower()
    if rate not in SALE_RATE_FIELDS:
        raise LedgerMappingError(f"Unsupported VAT rate '{tx.vat_rate}'")
    net_field, vat_field = SALE_RATE_FIELDS[rate]
    amounts = {net_field: tx.net_amount}
    if vat_field:
        amounts[vat_field] = tx.vat_amount
    elif tx.vat_amount:
        raise LedgerMappingError(f"VAT amount given for rate '{tx.vat_rate}'")
    return SaleRecordInput(
        document_type=tx.document_type,
        document_number=tx.document_number,
        document_date=tx.document_date,
        sale_date=tx.transaction_date,
        buyer_nip=tx.counterparty_id,
        buyer_name=tx.counterparty_name,
        buyer_country_code=tx.counterparty_country,
        gtu_codes=tx.classification_codes,
        procedure_codes=tx.procedure_codes,
        **amounts,
    )


def purchase_input_from_ledger(tx: LedgerTransaction) -> PurchaseRecordInput:
    procedure_codes = [code.upper() for code in tx.procedure_codes]
    vat = tx.vat_amount or Decimal("0")
    return PurchaseRecordInput(
        document_number=tx.document_number,
        document_date=tx.document_date,
        receipt_date=tx.transaction_date,
        seller_nip=tx.counterparty_id,
        seller_name=tx.counterparty_name,
        seller_country_code=tx.counterparty_country,
        net_amount_total=tx.net_amount,
        vat_amount_deductible=vat if tx.vat_deductible else Decimal("0"),
        vat_amount_nondeductible=Decimal("0") if tx.vat_deductible else vat,
        is_wnt=str(tx.vat_rate).lower() == "wnt",
        is_import_services="IMP" in procedure_codes,
        is_mpp="MPP" in procedure_codes,
        procedure_codes=procedure_codes,
    )


class RecordStore:
    """
    Sale/purchase records and declaration of one report.

    All mutations require DRAFT, except the declaration, which may also be
    edited in GENERATED or VALIDATED and then sends the report back to DRAFT.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[TransactionLedger] = None,
        storage: Optional[ArtifactStorage] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.storage = storage or ArtifactStorage()
        self.state = ReportStateMachine(db)

    async def list_sale_records(self, report_id: UUID) -> List[JpkSaleRecord]:
        result = await self.db.execute(
            select(JpkSaleRecord)
            .where(JpkSaleRecord.report_id == report_id)
            .order_by(JpkSaleRecord.record_number)
        )
        return list(result.scalars().all())

    async def list_purchase_records(self, report_id: UUID) -> List[JpkPurchaseRecord]:
        result = await self.db.execute(
            select(JpkPurchaseRecord)
            .where(JpkPurchaseRecord.report_id == report_id)
            .order_by(JpkPurchaseRecord.record_number)
        )
        return list(result.scalars().all())

    async def _reserve_numbers(
        self,
        report: JpkReport,
        sales: int,
        purchases: int,
        reset: bool = False,
    ) -> Tuple[int, int]:
        """
        Bump the report counters and return the first sale and purchase
        numbers of the reserved block. With reset the counters restart at zero.
        """
        if reset:
            values = {
                "sale_record_count": sales,
                "purchase_record_count": purchases,
                "record_count": sales + purchases,
            }
        else:
            values = {
                "sale_record_count": JpkReport.sale_record_count + sales,
                "purchase_record_count": JpkReport.purchase_record_count + purchases,
                "record_count": JpkReport.record_count + sales + purchases,
            }
        result = await self.db.execute(
            update(JpkReport)
            .where(JpkReport.id == report.id, JpkReport.status == ReportStatus.DRAFT)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            await self.db.refresh(report)
            raise PreconditionFailedError(
                f"Records can only be added to a DRAFT report (status {report.status.value})",
                current_status=report.status.value,
                required_statuses=[ReportStatus.DRAFT.value],
            )
        await self.db.refresh(
            report,
            ["sale_record_count", "purchase_record_count", "record_count", "updated_at"],
        )
        return (
            report.sale_record_count - sales + 1,
            report.purchase_record_count - purchases + 1,
        )

    async def add_sale_record(
        self,
        report_id: UUID,
        data: SaleRecordInput,
        user_id: Optional[UUID] = None,
    ) -> JpkSaleRecord:
        """
        Append a sale record to a DRAFT report.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not DRAFT
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.ADD_RECORD)

        number, _ = await self._reserve_numbers(report, sales=1, purchases=0)
        record = JpkSaleRecord(report_id=report.id, record_number=number, **data.model_dump())
        self.db.add(record)

        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="add_sale_record",
            user_id=user_id,
            new_value={"record_number": number, "document_number": data.document_number},
        )
        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def add_purchase_record(
        self,
        report_id: UUID,
        data: PurchaseRecordInput,
        user_id: Optional[UUID] = None,
    ) -> JpkPurchaseRecord:
        """
        Append a purchase record to a DRAFT report.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not DRAFT
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.ADD_RECORD)

        _, number = await self._reserve_numbers(report, sales=0, purchases=1)
        record = JpkPurchaseRecord(report_id=report.id, record_number=number, **data.model_dump())
        self.db.add(record)

        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="add_purchase_record",
            user_id=user_id,
            new_value={"record_number": number, "document_number": data.document_number},
        )
        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def import_from_ledger(
        self,
        report_id: UUID,
        request: ImportFromLedgerRequest,
        user_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Copy ledger entries into a DRAFT report.

        Entries dated within [period_from, period_to) are classified by
        direction. Entries that cannot be mapped are reported in
        ImportResult.errors and counted as skipped; the rest are imported.
        With overwrite, existing records are removed first and numbering
        restarts at 1.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not DRAFT
        """
        if self.ledger is None:
            raise JPKReportingError("No transaction ledger configured")

        report = await self.state.load(report_id)
        self.state.require(report, Operation.IMPORT_RECORDS)

        period_from = request.period_from or report.period_from
        period_to = request.period_to or (report.period_to + timedelta(days=1))
        transactions = await self.ledger.list_transactions(report.client_id, period_from, period_to)

        sales: List[SaleRecordInput] = []
        purchases: List[PurchaseRecordInput] = []
        errors: List[ImportRecordError] = []

        for tx in transactions:
            try:
                if not (period_from <= tx.transaction_date < period_to):
                    raise LedgerMappingError(
                        f"Transaction date {tx.transaction_date} outside import window"
                    )
                direction = str(tx.direction).upper()
                if direction == TransactionDirection.SALE:
                    sales.append(sale_input_from_ledger(tx))
                elif direction == TransactionDirection.PURCHASE:
                    purchases.append(purchase_input_from_ledger(tx))
                else:
                    raise LedgerMappingError(f"Unknown direction '{tx.direction}'")
            except (LedgerMappingError, ValidationError, ValueError, TypeError) as e:
                errors.append(ImportRecordError(
                    transaction_id=tx.transaction_id,
                    document_number=tx.document_number,
                    message=str(e),
                ))

        if request.overwrite:
            await self.db.execute(delete(JpkSaleRecord).where(JpkSaleRecord.report_id == report.id))
            await self.db.execute(delete(JpkPurchaseRecord).where(JpkPurchaseRecord.report_id == report.id))

        first_sale, first_purchase = await self._reserve_numbers(
            report, sales=len(sales), purchases=len(purchases), reset=request.overwrite
        )

        for offset, data in enumerate(sales):
            self.db.add(JpkSaleRecord(
                report_id=report.id, record_number=first_sale + offset, **data.model_dump()
            ))
        for offset, data in enumerate(purchases):
            self.db.add(JpkPurchaseRecord(
                report_id=report.id, record_number=first_purchase + offset, **data.model_dump()
            ))

        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="import_records",
            user_id=user_id,
            new_value={
                "period_from": period_from.isoformat(),
                "period_to": period_to.isoformat(),
                "overwrite": request.overwrite,
                "sale_records": len(sales),
                "purchase_records": len(purchases),
                "skipped": len(errors),
            },
        )
        await self.db.commit()

        jpk_logger.records_imported(
            report_id=report.id,
            client_id=report.client_id,
            sale_count=len(sales),
            purchase_count=len(purchases),
            skipped_count=len(errors),
            user_id=user_id,
        )

        return ImportResult(
            report_id=report.id,
            sale_records_imported=len(sales),
            purchase_records_imported=len(purchases),
            skipped=len(errors),
            errors=errors,
        )

    async def update_declaration(
        self,
        report_id: UUID,
        request: UpdateDeclarationRequest,
        user_id: Optional[UUID] = None,
    ) -> JpkReport:
        """
        Merge field values into the declaration.

        Allowed in DRAFT, GENERATED and VALIDATED. The assembled document is
        stale afterwards, so the report returns to DRAFT and its artifact is
        discarded.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is signed or later
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.UPDATE_DECLARATION)

        previous_status = report.status
        old_declaration = dict(report.declaration or {})
        declaration = dict(old_declaration)
        for code, value in request.fields.items():
            if value is None:
                declaration.pop(code, None)
            else:
                declaration[code] = value

        stale_path = report.xml_file_path
        await self.state.transition(
            report,
            previous_status,
            ReportStatus.DRAFT,
            declaration=declaration,
            **ARTIFACT_RESET,
        )

        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="update_declaration",
            user_id=user_id,
            old_value={"declaration": old_declaration, "status": previous_status.value},
            new_value={"declaration": declaration, "status": ReportStatus.DRAFT.value},
        )
        await self.db.commit()

        if stale_path:
            await self.storage.delete(stale_path)

        jpk_logger.declaration_updated(
            report_id=report.id,
            client_id=report.client_id,
            field_count=len(declaration),
            previous_status=previous_status.value,
            user_id=user_id,
        )
        return report
