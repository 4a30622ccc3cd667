"""
Tests for the JPK validation engine.

Tests cover:
- Missing artifact short-circuit
- Structural checks on the stored document
- Business rules on records and the declaration
- Status outcome of a validation run
"""
from decimal import Decimal
from types import SimpleNamespace

import pytest

from jpk_reporting.models.jpk_report import ReportKind, ReportStatus, SubmissionPurpose
from jpk_reporting.schemas.jpk import IssueSeverity
from jpk_reporting.services.jpk.errors import PreconditionFailedError
from jpk_reporting.services.jpk.validation import (
    ValidationRules,
    validate_declaration,
    validate_purchase_record,
    validate_sale_record,
    validate_structure,
)


def sale_record(**overrides):
    values = {
        "record_number": 1,
        "buyer_nip": "1234563218",
        "buyer_country_code": None,
        "document_type": None,
        "net_amount_23": Decimal("1000.00"),
        "vat_amount_23": Decimal("230.00"),
        "net_amount_8": Decimal("0"),
        "vat_amount_8": Decimal("0"),
        "net_amount_5": Decimal("0"),
        "vat_amount_5": Decimal("0"),
        "gtu_codes": [],
        "procedure_codes": [],
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def purchase_record(**overrides):
    values = {
        "record_number": 1,
        "seller_nip": "1234563218",
        "seller_country_code": None,
        "net_amount_total": Decimal("500.00"),
        "vat_amount_deductible": Decimal("115.00"),
        "procedure_codes": [],
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def codes(issues):
    return [issue.code for issue in issues]


class TestRecordRules:

    def test_valid_sale_record(self):
        assert validate_sale_record(sale_record()) == []

    def test_invalid_buyer_nip(self):
        issues = validate_sale_record(sale_record(record_number=7, buyer_nip="1234567890"))

        assert codes(issues) == ["INVALID_NIP"]
        assert issues[0].line == 7
        assert issues[0].field == "buyer_nip"
        assert issues[0].severity == IssueSeverity.ERROR

    @pytest.mark.parametrize("country", [None, "PL"])
    def test_domestic_nip_is_checked(self, country):
        sale_issues = validate_sale_record(sale_record(buyer_nip="5213017229", buyer_country_code=country))
        purchase_issues = validate_purchase_record(
            purchase_record(seller_nip="5213017229", seller_country_code=country)
        )

        assert codes(sale_issues) == ["INVALID_NIP"]
        assert codes(purchase_issues) == ["INVALID_NIP"]

    def test_missing_or_foreign_nip_is_not_checked(self):
        assert validate_sale_record(sale_record(buyer_nip=None)) == []
        assert validate_sale_record(sale_record(buyer_nip="BRAK")) == []
        assert validate_sale_record(sale_record(buyer_nip="DE123456789", buyer_country_code="DE")) == []

    def test_opposite_signs(self):
        issues = validate_sale_record(sale_record(vat_amount_23=Decimal("-230.00")))
        assert codes(issues) == ["AMOUNT_SIGN_MISMATCH"]

    def test_vat_rate_mismatch_is_a_warning(self):
        issues = validate_sale_record(sale_record(vat_amount_23=Decimal("200.00")))

        assert codes(issues) == ["VAT_RATE_MISMATCH"]
        assert issues[0].severity == IssueSeverity.WARNING

    def test_rounding_within_tolerance(self):
        assert validate_sale_record(sale_record(vat_amount_23=Decimal("230.50"))) == []

    def test_tolerance_comes_from_rules(self):
        rules = ValidationRules(rate_tolerance=Decimal("0.10"))
        issues = validate_sale_record(sale_record(vat_amount_23=Decimal("230.50")), rules)
        assert codes(issues) == ["VAT_RATE_MISMATCH"]

    def test_unknown_codes(self):
        issues = validate_sale_record(sale_record(
            document_type="XX", gtu_codes=["GTU_14"], procedure_codes=["ABC"],
        ))
        assert codes(issues) == ["UNKNOWN_DOCUMENT_TYPE", "UNKNOWN_GTU_CODE", "UNKNOWN_PROCEDURE_CODE"]

    def test_purchase_rules(self):
        assert validate_purchase_record(purchase_record()) == []
        issues = validate_purchase_record(purchase_record(
            seller_nip="1234567890", vat_amount_deductible=Decimal("-1.00"),
        ))
        assert codes(issues) == ["INVALID_NIP", "AMOUNT_SIGN_MISMATCH"]


class TestDeclarationRules:

    def test_empty_declaration(self):
        assert validate_declaration({}) == []

    def test_payable_declared(self):
        assert validate_declaration({"p_28": "230", "p_43": "115", "p_48": "115"}) == []

    def test_missing_tax_payable(self):
        issues = validate_declaration({"p_28": "230", "p_43": "115"})

        assert codes(issues) == ["MISSING_TAX_PAYABLE"]
        assert issues[0].field == "p_48"
        assert issues[0].severity == IssueSeverity.WARNING

    def test_missing_tax_refund(self):
        issues = validate_declaration({"p_28": "100", "p_43": "300"})
        assert codes(issues) == ["MISSING_TAX_REFUND"]

    def test_carry_forward_counts_as_settled(self):
        assert validate_declaration({"p_28": "100", "p_43": "300", "p_53": "200"}) == []

    def test_non_numeric_value(self):
        issues = validate_declaration({"p_28": "abc", "p_43": "0"})
        assert codes(issues) == ["INVALID_DECLARATION_VALUE"]

    def test_unknown_field(self):
        issues = validate_declaration({"p_99": "1"})
        assert codes(issues) == ["UNKNOWN_DECLARATION_FIELD"]


class TestStructure:

    def _report(self, **overrides):
        values = {
            "xml_hash": None,
            "report_type": ReportKind.JPK_V7M,
            "purpose": SubmissionPurpose.FIRST,
            "is_correction": False,
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_malformed_document(self):
        issues = validate_structure(b"<JPK><Naglowek>", self._report())
        assert codes(issues) == ["XML_MALFORMED"]

    def test_wrong_root(self):
        issues = validate_structure(b"<Invoice/>", self._report())
        assert codes(issues) == ["XML_INVALID_ROOT"]

    def test_hash_mismatch(self):
        issues = validate_structure(b"<Invoice/>", self._report(xml_hash="0" * 64))
        assert "XML_HASH_MISMATCH" in codes(issues)

    def test_missing_sections(self):
        content = (
            '<JPK xmlns="http://jpk.mf.gov.pl/wzor/2022/02/17/02171/">'
            '<Naglowek><KodFormularza>JPK_V7M</KodFormularza><CelZlozenia>1</CelZlozenia></Naglowek>'
            '</JPK>'
        ).encode()
        issues = validate_structure(content, self._report())

        missing = [i.field for i in issues if i.code == "XML_MISSING_SECTION"]
        assert missing == ["Podmiot1", "Deklaracja", "Ewidencja"]

    def test_control_block_mismatch(self):
        content = (
            '<JPK xmlns="http://jpk.mf.gov.pl/wzor/2022/02/17/02171/">'
            '<Naglowek><KodFormularza>JPK_VAT</KodFormularza><CelZlozenia>1</CelZlozenia></Naglowek>'
            '<Podmiot1><NIP>5213017228</NIP></Podmiot1>'
            '<Ewidencja>'
            '<SprzedazWiersz><LpSprzedazy>1</LpSprzedazy><K_20>23.00</K_20></SprzedazWiersz>'
            '<SprzedazWiersz><LpSprzedazy>3</LpSprzedazy><K_20>23.00</K_20></SprzedazWiersz>'
            '<SprzedazCtrl><LiczbaWierszySprzedazy>1</LiczbaWierszySprzedazy>'
            '<PodatekNalezny>23.00</PodatekNalezny></SprzedazCtrl>'
            '<ZakupCtrl><LiczbaWierszyZakupow>0</LiczbaWierszyZakupow>'
            '<PodatekNaliczony>0.00</PodatekNaliczony></ZakupCtrl>'
            '</Ewidencja>'
            '</JPK>'
        ).encode()
        issues = validate_structure(content, self._report(report_type=ReportKind.JPK_VAT))

        assert codes(issues) == ["XML_ROW_SEQUENCE", "XML_CONTROL_MISMATCH", "XML_CONTROL_MISMATCH"]
        assert issues[0].line == 2

    def test_empty_records_is_a_warning(self):
        content = (
            '<JPK xmlns="http://jpk.mf.gov.pl/wzor/2022/02/17/02171/">'
            '<Naglowek><KodFormularza>JPK_VAT</KodFormularza><CelZlozenia>1</CelZlozenia></Naglowek>'
            '<Podmiot1><NIP>5213017228</NIP></Podmiot1>'
            '<Ewidencja>'
            '<SprzedazCtrl><LiczbaWierszySprzedazy>0</LiczbaWierszySprzedazy>'
            '<PodatekNalezny>0.00</PodatekNalezny></SprzedazCtrl>'
            '<ZakupCtrl><LiczbaWierszyZakupow>0</LiczbaWierszyZakupow>'
            '<PodatekNaliczony>0.00</PodatekNaliczony></ZakupCtrl>'
            '</Ewidencja>'
            '</JPK>'
        ).encode()
        issues = validate_structure(content, self._report(report_type=ReportKind.JPK_VAT))

        assert codes(issues) == ["EMPTY_RECORDS"]
        assert issues[0].severity == IssueSeverity.WARNING


@pytest.mark.asyncio
class TestValidateReport:

    async def test_not_generated(self, service, draft_report):
        """Without an artifact a single issue comes back and nothing changes."""
        result = await service.validate_report(draft_report.id)

        assert result.is_valid is False
        assert codes(result.issues) == ["XML_NOT_GENERATED"]
        report = await service.state.load(draft_report.id)
        assert report.status == ReportStatus.DRAFT

    async def test_valid_report_moves_to_validated(self, service, generated_report):
        result = await service.validate_report(generated_report.id)

        assert result.is_valid is True
        assert result.structural_valid is True
        assert result.business_valid is True
        assert result.error_count == 0
        report = await service.state.load(generated_report.id)
        assert report.status == ReportStatus.VALIDATED
        assert report.validated_at is not None

    async def test_invalid_report_keeps_previous_status(self, service, draft_report, sale_input):
        await service.add_sale_record(draft_report.id, sale_input(buyer_nip="1234567890"))
        await service.generate_xml(draft_report.id)

        result = await service.validate_report(draft_report.id)

        assert result.is_valid is False
        assert result.structural_valid is True
        assert result.business_valid is False
        assert "INVALID_NIP" in codes(result.issues)
        report = await service.state.load(draft_report.id)
        assert report.status == ReportStatus.GENERATED
        assert "INVALID_NIP" in report.error_message

    async def test_warnings_do_not_block(self, service, draft_report, sale_input):
        await service.add_sale_record(draft_report.id, sale_input())
        await service.generate_xml(draft_report.id)

        result = await service.validate_report(draft_report.id)

        assert result.is_valid is True
        assert result.error_count == 0

    async def test_tampered_artifact(self, service, storage, generated_report):
        await storage.write(generated_report.xml_file_path, b"<JPK/>")

        result = await service.validate_report(generated_report.id)

        assert result.structural_valid is False
        assert "XML_HASH_MISMATCH" in codes(result.issues)

    async def test_skip_structural_layer(self, service, storage, generated_report):
        await storage.write(generated_report.xml_file_path, b"<JPK/>")

        result = await service.validate_report(generated_report.id, validate_structural=False)
        assert result.is_valid is True

    async def test_revalidate_validated_report(self, service, generated_report):
        await service.validate_report(generated_report.id)
        result = await service.validate_report(generated_report.id)
        assert result.is_valid is True

    async def test_validate_signed_report_rejected(self, service, signed_report):
        with pytest.raises(PreconditionFailedError):
            await service.validate_report(signed_report.id)
