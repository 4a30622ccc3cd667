# Models module
from jpk_reporting.models.jpk_report import (
    JpkReport,
    JpkSaleRecord,
    JpkPurchaseRecord,
    ReportKind,
    ReportStatus,
    SubmissionPurpose,
    SignatureType,
)
from jpk_reporting.models.client import Client, VatTransaction
from jpk_reporting.models.audit_log import AuditLog

__all__ = [
    "JpkReport",
    "JpkSaleRecord",
    "JpkPurchaseRecord",
    "ReportKind",
    "ReportStatus",
    "SubmissionPurpose",
    "SignatureType",
    "Client",
    "VatTransaction",
    "AuditLog",
]
