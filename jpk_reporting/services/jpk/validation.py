"""
JPK validation engine.

Two independent layers run against an assembled report:

- Structural: the stored artifact is well-formed and follows the JPK layout
  (root, required sections, control blocks, row numbering, content hash).
- Business: cross-field rules on the records and the declaration
  (counterpart NIP checksum, amount signs, VAT rates, code tables,
  settlement fields).

Issues are returned as data. Code and rate tables come in through
ValidationRules so the checks never read global state.
"""
import hashlib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.core.database import utcnow
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportStatus,
)
from jpk_reporting.schemas.jpk import IssueSeverity, ValidationIssue, ValidationResult
from jpk_reporting.services.jpk.assembler import DECLARATION_KINDS, JPK_NAMESPACE
from jpk_reporting.services.jpk.checksum import normalize_nip, validate_nip
from jpk_reporting.services.jpk.errors import FatalError, PreconditionFailedError
from jpk_reporting.services.jpk.records import RecordStore
from jpk_reporting.services.jpk.state_machine import Operation, ReportStateMachine
from jpk_reporting.services.jpk.storage import ArtifactStorage
from jpk_reporting.services.logging import jpk_logger

GTU_CODES = frozenset(f"GTU_{i:02d}" for i in range(1, 14))

PROCEDURE_CODES = frozenset({
    "SW", "EE", "TP", "TT_WNT", "TT_D", "MR_T", "MR_UZ", "I_42", "I_63",
    "B_SPV", "B_SPV_DOSTAWA", "B_MPV_PROWIZJA", "MPP", "IMP", "WSTO_EE",
})

DOCUMENT_TYPES = frozenset({"FP", "RO", "WEW", "MK"})

# (net column, vat column) -> rate
SALE_VAT_BRACKETS = {
    ("net_amount_23", "vat_amount_23"): Decimal("0.23"),
    ("net_amount_8", "vat_amount_8"): Decimal("0.08"),
    ("net_amount_5", "vat_amount_5"): Decimal("0.05"),
}

DECLARATION_FIELDS = frozenset(
    [f"p_{i}" for i in range(10, 71)] + ["p_68a", "p_69a"]
)

PRESENT_NIP_PLACEHOLDERS = {"", "BRAK"}


@dataclass(frozen=True)
class ValidationRules:
    """Lookup tables and tolerances for business validation."""
    gtu_codes: FrozenSet[str] = GTU_CODES
    procedure_codes: FrozenSet[str] = PROCEDURE_CODES
    document_types: FrozenSet[str] = DOCUMENT_TYPES
    vat_brackets: Dict[Tuple[str, str], Decimal] = field(default_factory=lambda: dict(SALE_VAT_BRACKETS))
    declaration_fields: FrozenSet[str] = DECLARATION_FIELDS
    rate_tolerance: Decimal = Decimal("1.00")
    home_country: str = "PL"


DEFAULT_RULES = ValidationRules()


def _error(code: str, message: str, field: Optional[str] = None, line: Optional[int] = None) -> ValidationIssue:
    return ValidationIssue(code=code, field=field, line=line, message=message, severity=IssueSeverity.ERROR)


def _warning(code: str, message: str, field: Optional[str] = None, line: Optional[int] = None) -> ValidationIssue:
    return ValidationIssue(code=code, field=field, line=line, message=message, severity=IssueSeverity.WARNING)


def _q(name: str) -> str:
    return f"{{{JPK_NAMESPACE}}}{name}"


def _decimal(text: Optional[str]) -> Optional[Decimal]:
    try:
        return Decimal((text or "0").strip() or "0")
    except InvalidOperation:
        return None


def _check_rows(
    section: ET.Element,
    row_tag: str,
    number_tag: str,
    ctrl_tag: str,
    count_tag: str,
    tax_tag: str,
    tax_fields: Sequence[str],
) -> List[ValidationIssue]:
    issues = []
    rows = section.findall(_q(row_tag))

    for position, row in enumerate(rows, start=1):
        number = row.findtext(_q(number_tag))
        if number is None or number.strip() != str(position):
            issues.append(_error(
                "XML_ROW_SEQUENCE",
                f"{row_tag} #{position} has {number_tag}={number}; expected {position}",
                field=number_tag,
                line=position,
            ))

    ctrl = section.find(_q(ctrl_tag))
    if ctrl is None:
        issues.append(_error("XML_MISSING_SECTION", f"Missing {ctrl_tag}", field=ctrl_tag))
        return issues

    declared_count = ctrl.findtext(_q(count_tag))
    if declared_count is None or declared_count.strip() != str(len(rows)):
        issues.append(_error(
            "XML_CONTROL_MISMATCH",
            f"{count_tag}={declared_count} but the document has {len(rows)} {row_tag} rows",
            field=count_tag,
        ))

    tax_total = Decimal("0")
    for row in rows:
        for tag in tax_fields:
            value = _decimal(row.findtext(_q(tag)))
            tax_total += value or Decimal("0")
    declared_tax = _decimal(ctrl.findtext(_q(tax_tag)))
    if declared_tax is None or declared_tax != tax_total.quantize(Decimal("0.01")):
        issues.append(_error(
            "XML_CONTROL_MISMATCH",
            f"{tax_tag}={ctrl.findtext(_q(tax_tag))} but rows sum to {tax_total:.2f}",
            field=tax_tag,
        ))
    return issues


def validate_structure(content: bytes, report: JpkReport) -> List[ValidationIssue]:
    """Check the stored artifact against the JPK layout and the stored hash."""
    issues: List[ValidationIssue] = []

    if report.xml_hash and hashlib.sha256(content).hexdigest() != report.xml_hash:
        issues.append(_error(
            "XML_HASH_MISMATCH",
            "Stored XML does not match the hash recorded at generation",
            field="xml_hash",
        ))

    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        issues.append(_error("XML_MALFORMED", f"XML is not well-formed: {e}"))
        return issues

    if root.tag != _q("JPK"):
        issues.append(_error(
            "XML_INVALID_ROOT",
            f"Root element must be JPK in namespace {JPK_NAMESPACE}, found {root.tag}",
        ))
        return issues

    required = ["Naglowek", "Podmiot1", "Ewidencja"]
    if report.report_type in DECLARATION_KINDS:
        required.insert(2, "Deklaracja")
    sections = {}
    for name in required:
        element = root.find(_q(name))
        if element is None:
            issues.append(_error("XML_MISSING_SECTION", f"Missing section {name}", field=name))
        sections[name] = element

    header = sections.get("Naglowek")
    if header is not None:
        form_code = header.findtext(_q("KodFormularza"))
        if form_code != report.report_type.value:
            issues.append(_error(
                "XML_HEADER_MISMATCH",
                f"KodFormularza is {form_code}, expected {report.report_type.value}",
                field="KodFormularza",
            ))
        purpose = header.findtext(_q("CelZlozenia"))
        expected_purpose = "2" if report.is_correction else "1"
        if purpose != expected_purpose:
            issues.append(_error(
                "XML_HEADER_MISMATCH",
                f"CelZlozenia is {purpose}, expected {expected_purpose}",
                field="CelZlozenia",
            ))

    subject = sections.get("Podmiot1")
    if subject is not None:
        nip = subject.findtext(_q("NIP"))
        if not validate_nip(nip):
            issues.append(_error(
                "INVALID_TAXPAYER_NIP",
                f"Taxpayer NIP {nip} fails the checksum",
                field="NIP",
            ))

    records = sections.get("Ewidencja")
    if records is not None:
        issues.extend(_check_rows(
            records, "SprzedazWiersz", "LpSprzedazy", "SprzedazCtrl",
            "LiczbaWierszySprzedazy", "PodatekNalezny", ("K_16", "K_18", "K_20"),
        ))
        issues.extend(_check_rows(
            records, "ZakupWiersz", "LpZakupu", "ZakupCtrl",
            "LiczbaWierszyZakupow", "PodatekNaliczony", ("K_43",),
        ))
        if not records.findall(_q("SprzedazWiersz")) and not records.findall(_q("ZakupWiersz")):
            issues.append(_warning("EMPTY_RECORDS", "The report contains no records"))

    return issues


def _counterpart_needs_nip_check(nip: Optional[str], country: Optional[str], rules: ValidationRules) -> bool:
    if nip is None or nip.strip().upper() in PRESENT_NIP_PLACEHOLDERS:
        return False
    if country and country.upper() != rules.home_country:
        return False
    return True


def _check_codes(
    codes: Sequence[str],
    allowed: FrozenSet[str],
    issue_code: str,
    field_name: str,
    line: int,
) -> List[ValidationIssue]:
    return [
        _error(issue_code, f"Unknown code {code} in record {line}", field=field_name, line=line)
        for code in codes or []
        if code not in allowed
    ]


def validate_sale_record(record: JpkSaleRecord, rules: ValidationRules = DEFAULT_RULES) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    line = record.record_number

    if _counterpart_needs_nip_check(record.buyer_nip, record.buyer_country_code, rules):
        if not validate_nip(record.buyer_nip):
            issues.append(_error(
                "INVALID_NIP",
                f"Invalid buyer NIP {record.buyer_nip} in sale record {line}",
                field="buyer_nip",
                line=line,
            ))

    for (net_field, vat_field), rate in rules.vat_brackets.items():
        net = getattr(record, net_field) or Decimal("0")
        vat = getattr(record, vat_field) or Decimal("0")
        if net * vat < 0:
            issues.append(_error(
                "AMOUNT_SIGN_MISMATCH",
                f"Net {net} and VAT {vat} have opposite signs in sale record {line}",
                field=vat_field,
                line=line,
            ))
        elif abs(net * rate - vat) > rules.rate_tolerance:
            issues.append(_warning(
                "VAT_RATE_MISMATCH",
                f"VAT {vat} differs from {rate:.0%} of net {net} in sale record {line}",
                field=vat_field,
                line=line,
            ))

    if record.document_type and record.document_type not in rules.document_types:
        issues.append(_error(
            "UNKNOWN_DOCUMENT_TYPE",
            f"Unknown document type {record.document_type} in sale record {line}",
            field="document_type",
            line=line,
        ))
    issues.extend(_check_codes(record.gtu_codes, rules.gtu_codes, "UNKNOWN_GTU_CODE", "gtu_codes", line))
    issues.extend(_check_codes(
        record.procedure_codes, rules.procedure_codes, "UNKNOWN_PROCEDURE_CODE", "procedure_codes", line
    ))
    return issues


def validate_purchase_record(record: JpkPurchaseRecord, rules: ValidationRules = DEFAULT_RULES) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    line = record.record_number

    if _counterpart_needs_nip_check(record.seller_nip, record.seller_country_code, rules):
        if not validate_nip(record.seller_nip):
            issues.append(_error(
                "INVALID_NIP",
                f"Invalid seller NIP {record.seller_nip} in purchase record {line}",
                field="seller_nip",
                line=line,
            ))

    net = record.net_amount_total or Decimal("0")
    vat = record.vat_amount_deductible or Decimal("0")
    if net * vat < 0:
        issues.append(_error(
            "AMOUNT_SIGN_MISMATCH",
            f"Net {net} and deductible VAT {vat} have opposite signs in purchase record {line}",
            field="vat_amount_deductible",
            line=line,
        ))

    issues.extend(_check_codes(
        record.procedure_codes, rules.procedure_codes, "UNKNOWN_PROCEDURE_CODE", "procedure_codes", line
    ))
    return issues


def validate_declaration(declaration: Dict[str, str], rules: ValidationRules = DEFAULT_RULES) -> List[ValidationIssue]:
    """Field-table check plus the payable/refund settlement rule."""
    issues: List[ValidationIssue] = []
    if not declaration:
        return issues

    for code in sorted(declaration):
        if code not in rules.declaration_fields:
            issues.append(_warning(
                "UNKNOWN_DECLARATION_FIELD",
                f"Declaration field {code} is not in the current field table",
                field=code,
            ))

    output_tax = _decimal(declaration.get("p_28"))
    input_tax = _decimal(declaration.get("p_43"))
    for code, value in (("p_28", output_tax), ("p_43", input_tax)):
        if value is None:
            issues.append(_error(
                "INVALID_DECLARATION_VALUE",
                f"Declaration field {code} must be a number",
                field=code,
            ))
    if output_tax is None or input_tax is None:
        return issues

    diff = output_tax - input_tax
    if diff > 0 and not declaration.get("p_48") and not declaration.get("p_46"):
        issues.append(_warning(
            "MISSING_TAX_PAYABLE",
            "Output tax exceeds input tax but no tax payable is declared",
            field="p_48",
        ))
    if diff < 0 and not declaration.get("p_50") and not declaration.get("p_53"):
        issues.append(_warning(
            "MISSING_TAX_REFUND",
            "Input tax exceeds output tax but no refund or carry-forward is declared",
            field="p_50",
        ))
    return issues


def validate_business_rules(
    report: JpkReport,
    sale_records: Sequence[JpkSaleRecord],
    purchase_records: Sequence[JpkPurchaseRecord],
    rules: ValidationRules = DEFAULT_RULES,
) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for record in sale_records:
        issues.extend(validate_sale_record(record, rules))
    for record in purchase_records:
        issues.extend(validate_purchase_record(record, rules))
    issues.extend(validate_declaration(report.declaration or {}, rules))
    return issues


def _summary(issues: Sequence[ValidationIssue]) -> str:
    errors = [i for i in issues if i.severity == IssueSeverity.ERROR]
    head = "; ".join(f"{i.code}: {i.message}" for i in errors[:5])
    more = f" (+{len(errors) - 5} more)" if len(errors) > 5 else ""
    return f"Validation failed with {len(errors)} error(s): {head}{more}"


class ValidationEngine:
    """Runs structural and business validation and records the outcome."""

    def __init__(
        self,
        db: AsyncSession,
        storage: Optional[ArtifactStorage] = None,
        rules: ValidationRules = DEFAULT_RULES,
    ):
        self.db = db
        self.storage = storage or ArtifactStorage()
        self.rules = rules
        self.state = ReportStateMachine(db)
        self.records = RecordStore(db, storage=self.storage)

    async def validate_report(
        self,
        report_id: UUID,
        validate_structural: bool = True,
        validate_business: bool = True,
        user_id: Optional[UUID] = None,
    ) -> ValidationResult:
        """
        Validate an assembled report.

        Without an artifact a single XML_NOT_GENERATED issue is returned and
        nothing is written. Otherwise the report passes through VALIDATING and
        lands in VALIDATED when there are no errors, or back in its previous
        status with a summary in error_message.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not GENERATED or VALIDATED
            FatalError: the artifact is missing from storage
        """
        report = await self.state.load(report_id)
        if report.status == ReportStatus.ERROR:
            self.state.require(report, Operation.VALIDATE)

        if not report.xml_file_path:
            issue = _error(
                "XML_NOT_GENERATED",
                "XML has not been generated; generate it before validating",
            )
            return ValidationResult(
                report_id=report.id,
                is_valid=False,
                structural_valid=False,
                business_valid=False,
                issues=[issue],
                error_count=1,
                warning_count=0,
                validated_at=utcnow(),
            )

        self.state.require(report, Operation.VALIDATE)
        previous_status = report.status
        await self.state.transition(report, previous_status, ReportStatus.VALIDATING)
        await self.db.commit()

        try:
            structural: List[ValidationIssue] = []
            business: List[ValidationIssue] = []

            if validate_structural:
                content = await self.storage.read(report.xml_file_path)
                structural = validate_structure(content, report)

            if validate_business:
                sale_records = await self.records.list_sale_records(report.id)
                purchase_records = await self.records.list_purchase_records(report.id)
                business = validate_business_rules(report, sale_records, purchase_records, self.rules)

            issues = structural + business
            error_count = sum(1 for i in issues if i.severity == IssueSeverity.ERROR)
            warning_count = len(issues) - error_count
            is_valid = error_count == 0
            validated_at = utcnow()

            if is_valid:
                await self.state.transition(
                    report,
                    ReportStatus.VALIDATING,
                    ReportStatus.VALIDATED,
                    validated_at=validated_at,
                    error_message=None,
                )
            else:
                await self.state.transition(
                    report,
                    ReportStatus.VALIDATING,
                    previous_status,
                    error_message=_summary(issues),
                )

            await log_audit_event(
                self.db,
                client_id=report.client_id,
                entity_type="jpk_report",
                entity_id=report.id,
                action="validate",
                user_id=user_id,
                new_value={
                    "status": report.status.value,
                    "is_valid": is_valid,
                    "error_count": error_count,
                    "warning_count": warning_count,
                },
            )
            await self.db.commit()
        except PreconditionFailedError:
            raise
        except Exception as e:
            await self.state.fail(report, Operation.VALIDATE, f"Validation failed: {e}")
            raise FatalError(f"Validation failed: {e}") from e

        jpk_logger.report_validated(
            report_id=report.id,
            client_id=report.client_id,
            is_valid=is_valid,
            error_count=error_count,
            warning_count=warning_count,
            user_id=user_id,
        )

        return ValidationResult(
            report_id=report.id,
            is_valid=is_valid,
            structural_valid=not any(i.severity == IssueSeverity.ERROR for i in structural),
            business_valid=not any(i.severity == IssueSeverity.ERROR for i in business),
            issues=issues,
            error_count=error_count,
            warning_count=warning_count,
            validated_at=validated_at,
        )
