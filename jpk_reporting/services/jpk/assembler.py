"""
JPK document assembler.

Serializes header, taxpayer, declaration and the sale/purchase sections
into the JPK XML layout, stores the artifact and records its SHA-256 hash.
"""
import hashlib
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional
from uuid import UUID
from xml.dom import minidom

from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.core.config import settings
from jpk_reporting.core.database import utcnow
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportKind,
    ReportStatus,
    SubmissionPurpose,
)
from jpk_reporting.schemas.jpk import GenerateXMLResult
from jpk_reporting.services.collaborators import ClientInfo, ClientRegistry
from jpk_reporting.services.jpk.errors import (
    AlreadyExistsError,
    ConflictError,
    FatalError,
    PreconditionFailedError,
)
from jpk_reporting.services.jpk.records import RecordStore
from jpk_reporting.services.jpk.state_machine import (
    FILED_STATUSES,
    Operation,
    ReportStateMachine,
)
from jpk_reporting.services.jpk.storage import ArtifactStorage
from jpk_reporting.services.logging import jpk_logger

JPK_NAMESPACE = "http://jpk.mf.gov.pl/wzor/2022/02/17/02171/"

SCHEMA_VERSIONS = {
    ReportKind.JPK_VAT: "1-2E",
    ReportKind.JPK_V7M: "1-2E",
    ReportKind.JPK_V7K: "1-2E",
    ReportKind.JPK_FA: "4",
    ReportKind.JPK_KR: "2",
    ReportKind.JPK_WB: "2",
    ReportKind.JPK_MAG: "1",
    ReportKind.JPK_PKPIR: "2",
    ReportKind.JPK_EWP: "2",
}

# Kinds that always carry a Deklaracja section
DECLARATION_KINDS = {ReportKind.JPK_V7M, ReportKind.JPK_V7K}

DECLARATION_FORM_CODES = {
    ReportKind.JPK_V7M: "VAT-7",
    ReportKind.JPK_V7K: "VAT-7K",
}

# Sale amount columns and their K_xx element, in document order
SALE_AMOUNT_FIELDS = (
    ("net_amount_exempt", "K_10"),
    ("net_amount_0", "K_13"),
    ("net_amount_5", "K_15"),
    ("vat_amount_5", "K_16"),
    ("net_amount_8", "K_17"),
    ("vat_amount_8", "K_18"),
    ("net_amount_23", "K_19"),
    ("vat_amount_23", "K_20"),
    ("net_amount_wdt", "K_21"),
    ("net_amount_export", "K_22"),
)

SALE_NET_FIELDS = (
    "net_amount_23", "net_amount_8", "net_amount_5", "net_amount_0",
    "net_amount_exempt", "net_amount_wdt", "net_amount_export",
)
SALE_VAT_FIELDS = ("vat_amount_23", "vat_amount_8", "vat_amount_5")

CENT = Decimal("0.01")
ZERO = Decimal("0")

_FIELD_CODE = re.compile(r"^p_(\d+)([a-z]?)$")


def format_amount(value: Optional[Decimal]) -> str:
    return str(Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP))


def declaration_sort_key(code: str):
    """p_9 sorts before p_10; unknown codes go last."""
    match = _FIELD_CODE.match(code)
    if match:
        return (0, int(match.group(1)), match.group(2))
    return (1, 0, code)


@dataclass
class ReportTotals:
    sale_net: Decimal = ZERO
    sale_vat: Decimal = ZERO
    purchase_net: Decimal = ZERO
    purchase_vat: Decimal = ZERO


def calculate_totals(
    sale_records: Iterable[JpkSaleRecord],
    purchase_records: Iterable[JpkPurchaseRecord],
) -> ReportTotals:
    """Sum section totals with Decimal arithmetic."""
    totals = ReportTotals()
    for record in sale_records:
        totals.sale_net += sum((getattr(record, f) or ZERO for f in SALE_NET_FIELDS), ZERO)
        totals.sale_vat += sum((getattr(record, f) or ZERO for f in SALE_VAT_FIELDS), ZERO)
    for record in purchase_records:
        totals.purchase_net += record.net_amount_total or ZERO
        totals.purchase_vat += record.vat_amount_deductible or ZERO
    totals.sale_net = totals.sale_net.quantize(CENT)
    totals.sale_vat = totals.sale_vat.quantize(CENT)
    totals.purchase_net = totals.purchase_net.quantize(CENT)
    totals.purchase_vat = totals.purchase_vat.quantize(CENT)
    return totals


class JPKDocumentBuilder:
    """
    Builds the JPK XML document for one report.

    Sections, in order: Naglowek, Podmiot1, Deklaracja (V7 kinds, or any kind
    with declaration fields), Ewidencja with SprzedazWiersz rows, SprzedazCtrl,
    ZakupWiersz rows, ZakupCtrl.
    """

    def __init__(
        self,
        report: JpkReport,
        client: ClientInfo,
        sale_records: List[JpkSaleRecord],
        purchase_records: List[JpkPurchaseRecord],
        generated_at: datetime,
        tax_office_code: Optional[str] = None,
    ):
        self.report = report
        self.client = client
        self.sale_records = sale_records
        self.purchase_records = purchase_records
        self.generated_at = generated_at
        self.tax_office_code = (
            tax_office_code or client.tax_office_code or settings.JPK_DEFAULT_TAX_OFFICE_CODE
        )
        self.totals = calculate_totals(sale_records, purchase_records)

    def build(self) -> bytes:
        """Return the pretty-printed UTF-8 document."""
        root = ET.Element("JPK")
        root.set("xmlns", JPK_NAMESPACE)

        self._build_header(root)
        self._build_subject(root)
        if self.report.report_type in DECLARATION_KINDS or self.report.declaration:
            self._build_declaration(root)
        self._build_records(root)

        xml_str = ET.tostring(root, encoding='unicode')
        dom = minidom.parseString(xml_str)
        return dom.toprettyxml(indent="  ", encoding="UTF-8")

    def _build_header(self, root: ET.Element) -> None:
        report = self.report
        schema_version = report.schema_version or SCHEMA_VERSIONS[report.report_type]

        header = ET.SubElement(root, "Naglowek")
        form_code = ET.SubElement(header, "KodFormularza")
        form_code.set("kodSystemowy", f"{report.report_type.value} ({schema_version})")
        form_code.set("wersjaSchemy", schema_version)
        form_code.text = report.report_type.value
        ET.SubElement(header, "WariantFormularza").text = (
            "2" if report.report_type in DECLARATION_KINDS else "1"
        )
        ET.SubElement(header, "DataWytworzeniaJPK").text = self.generated_at.isoformat(timespec="seconds")
        ET.SubElement(header, "CelZlozenia").text = (
            "2" if report.purpose == SubmissionPurpose.CORRECTION else "1"
        )
        ET.SubElement(header, "KodUrzedu").text = self.tax_office_code
        ET.SubElement(header, "Rok").text = str(report.year)
        if report.month:
            ET.SubElement(header, "Miesiac").text = str(report.month)
        if report.quarter:
            ET.SubElement(header, "Kwartal").text = str(report.quarter)
        ET.SubElement(header, "DataOd").text = report.period_from.isoformat()
        ET.SubElement(header, "DataDo").text = report.period_to.isoformat()

    def _build_subject(self, root: ET.Element) -> None:
        subject = ET.SubElement(root, "Podmiot1")
        ET.SubElement(subject, "NIP").text = re.sub(r"\D", "", self.client.taxpayer_id or "")
        ET.SubElement(subject, "PelnaNazwa").text = self.client.legal_name
        if self.client.email:
            ET.SubElement(subject, "Email").text = self.client.email

    def _build_declaration(self, root: ET.Element) -> None:
        declaration = self.report.declaration or {}
        section = ET.SubElement(root, "Deklaracja")
        ET.SubElement(section, "KodFormularzaDekl").text = DECLARATION_FORM_CODES.get(
            self.report.report_type, self.report.report_type.value
        )
        positions = ET.SubElement(section, "PozycjeSzczegolowe")
        for code in sorted(declaration, key=declaration_sort_key):
            ET.SubElement(positions, code.upper()).text = str(declaration[code])
        ET.SubElement(section, "Pouczenia").text = "1"

    def _build_records(self, root: ET.Element) -> None:
        records = ET.SubElement(root, "Ewidencja")

        for record in self.sale_records:
            row = ET.SubElement(records, "SprzedazWiersz")
            ET.SubElement(row, "LpSprzedazy").text = str(record.record_number)
            if record.buyer_country_code:
                ET.SubElement(row, "KodKrajuNadaniaTIN").text = record.buyer_country_code
            ET.SubElement(row, "NrKontrahenta").text = record.buyer_nip or "BRAK"
            ET.SubElement(row, "NazwaKontrahenta").text = record.buyer_name
            ET.SubElement(row, "DowodSprzedazy").text = record.document_number
            ET.SubElement(row, "DataWystawienia").text = record.document_date.isoformat()
            if record.sale_date:
                ET.SubElement(row, "DataSprzedazy").text = record.sale_date.isoformat()
            if record.document_type:
                ET.SubElement(row, "TypDokumentu").text = record.document_type
            for code in record.gtu_codes or []:
                ET.SubElement(row, code).text = "1"
            for code in record.procedure_codes or []:
                ET.SubElement(row, code).text = "1"
            for column, element in SALE_AMOUNT_FIELDS:
                value = getattr(record, column)
                if value:
                    ET.SubElement(row, element).text = format_amount(value)

        sale_ctrl = ET.SubElement(records, "SprzedazCtrl")
        ET.SubElement(sale_ctrl, "LiczbaWierszySprzedazy").text = str(len(self.sale_records))
        ET.SubElement(sale_ctrl, "PodatekNalezny").text = format_amount(self.totals.sale_vat)

        for record in self.purchase_records:
            row = ET.SubElement(records, "ZakupWiersz")
            ET.SubElement(row, "LpZakupu").text = str(record.record_number)
            if record.seller_country_code:
                ET.SubElement(row, "KodKrajuNadaniaTIN").text = record.seller_country_code
            ET.SubElement(row, "NrDostawcy").text = record.seller_nip or "BRAK"
            ET.SubElement(row, "NazwaDostawcy").text = record.seller_name
            ET.SubElement(row, "DowodZakupu").text = record.document_number
            ET.SubElement(row, "DataZakupu").text = record.document_date.isoformat()
            if record.receipt_date:
                ET.SubElement(row, "DataWplywu").text = record.receipt_date.isoformat()
            for code in record.procedure_codes or []:
                ET.SubElement(row, code).text = "1"
            ET.SubElement(row, "K_42").text = format_amount(record.net_amount_total)
            ET.SubElement(row, "K_43").text = format_amount(record.vat_amount_deductible)

        purchase_ctrl = ET.SubElement(records, "ZakupCtrl")
        ET.SubElement(purchase_ctrl, "LiczbaWierszyZakupow").text = str(len(self.purchase_records))
        ET.SubElement(purchase_ctrl, "PodatekNaliczony").text = format_amount(self.totals.purchase_vat)


def xml_file_name(report: JpkReport, signed: bool = False) -> str:
    """Download name, e.g. JPK_V7M_2024_01.xml or JPK_V7K_2024_Q2_signed.xml."""
    if report.month:
        period = f"{report.month:02d}"
    elif report.quarter:
        period = f"Q{report.quarter}"
    else:
        period = "ROK"
    suffix = "_signed" if signed else ""
    correction = f"_K{report.correction_number}" if report.correction_number else ""
    return f"{report.report_type.value}_{report.year}_{period}{correction}{suffix}.xml"


class DocumentAssembler:
    """Generates the XML artifact of a report and moves it to GENERATED."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ClientRegistry,
        storage: Optional[ArtifactStorage] = None,
    ):
        self.db = db
        self.registry = registry
        self.storage = storage or ArtifactStorage()
        self.state = ReportStateMachine(db)
        self.records = RecordStore(db, storage=self.storage)

    async def generate_xml(
        self,
        report_id: UUID,
        regenerate: bool = False,
        user_id: Optional[UUID] = None,
    ) -> GenerateXMLResult:
        """
        Assemble, store and hash the JPK document.

        Args:
            report_id: Report to assemble
            regenerate: Replace an existing artifact
            user_id: Actor, for the audit trail

        Returns:
            GenerateXMLResult with path, size, hash, record count and timestamp

        Raises:
            NotFoundError: report or client does not exist
            ConflictError: report was already submitted
            AlreadyExistsError: artifact exists and regenerate is False
            PreconditionFailedError: report is in a transient status or ERROR
            FatalError: assembly failed; the report is moved to ERROR
        """
        report = await self.state.load(report_id)

        if report.status in FILED_STATUSES:
            raise ConflictError(
                f"Cannot generate XML for an already-submitted report (status {report.status.value})"
            )
        self.state.require(report, Operation.GENERATE)
        if report.xml_file_path and not regenerate:
            raise AlreadyExistsError("XML already exists; pass regenerate to rebuild it")

        client = await self.registry.lookup(report.client_id)

        previous_status = report.status
        stale_signed_path = report.signed_file_path
        await self.state.transition(report, previous_status, ReportStatus.GENERATING)
        await self.db.commit()

        try:
            sale_records = await self.records.list_sale_records(report.id)
            purchase_records = await self.records.list_purchase_records(report.id)
            generated_at = utcnow()

            builder = JPKDocumentBuilder(report, client, sale_records, purchase_records, generated_at)
            content = builder.build()
            xml_hash = hashlib.sha256(content).hexdigest()

            path = self.storage.relative_path(report.client_id, report.id, ArtifactStorage.UNSIGNED_SUFFIX)
            file_size = await self.storage.write(path, content)
            record_count = len(sale_records) + len(purchase_records)

            await self.state.transition(
                report,
                ReportStatus.GENERATING,
                ReportStatus.GENERATED,
                xml_file_path=path,
                xml_file_size=file_size,
                xml_hash=xml_hash,
                generated_at=generated_at,
                validated_at=None,
                signed_file_path=None,
                signature_type=None,
                signed_at=None,
                error_message=None,
                total_sale_net=builder.totals.sale_net,
                total_sale_vat=builder.totals.sale_vat,
                total_purchase_net=builder.totals.purchase_net,
                total_purchase_vat=builder.totals.purchase_vat,
            )

            await log_audit_event(
                self.db,
                client_id=report.client_id,
                entity_type="jpk_report",
                entity_id=report.id,
                action="generate_xml",
                user_id=user_id,
                old_value={"status": previous_status.value},
                new_value={
                    "status": ReportStatus.GENERATED.value,
                    "xml_hash": xml_hash,
                    "file_size": file_size,
                    "regenerate": regenerate,
                },
            )
            await self.db.commit()
        except PreconditionFailedError:
            raise
        except Exception as e:
            await self.state.fail(report, Operation.GENERATE, f"XML generation failed: {e}")
            raise FatalError(f"XML generation failed: {e}") from e

        if stale_signed_path:
            await self.storage.delete(stale_signed_path)

        jpk_logger.xml_generated(
            report_id=report.id,
            client_id=report.client_id,
            xml_hash=xml_hash,
            file_size=file_size,
            record_count=record_count,
            user_id=user_id,
        )

        return GenerateXMLResult(
            report_id=report.id,
            file_path=path,
            file_size=file_size,
            xml_hash=xml_hash,
            record_count=record_count,
            generated_at=generated_at,
        )
