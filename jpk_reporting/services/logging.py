"""
Structured Logging Service

Provides JPK-aware structured logging for key lifecycle events:
- Report created / deleted
- Records imported, declaration updated
- XML generated / validated / signed
- Report submitted / accepted / rejected
- Correction created
- Rejected transitions, upstream failures, reports pushed to ERROR

Each log entry includes:
- client_id
- entity_type (jpk_report, gateway, signature, system)
- entity_id
- severity (INFO/WARN/ERROR)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID
from enum import Enum


class LogSeverity(str, Enum):
    """Log severity levels."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntityType(str, Enum):
    """Entity types for structured logging."""
    JPK_REPORT = "jpk_report"
    GATEWAY = "gateway"
    SIGNATURE = "signature"
    SYSTEM = "system"


class StructuredLogger:
    """
    Structured logging service for JPK reporting events.

    Logs are emitted as one JSON object per line.
    """

    def __init__(self, logger_name: str = "jpk_reporting"):
        self.logger = logging.getLogger(logger_name)
        self._ensure_handler()

    def _ensure_handler(self):
        """Ensure logger has a proper handler configured."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def _serialize(self, value: Any) -> Any:
        """Serialize UUID and enum values to strings."""
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        entity_type: LogEntityType,
        entity_id: Optional[UUID] = None,
        client_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        message: Optional[str] = None,
        **extra
    ) -> dict:
        """Create a structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "entity_type": entity_type.value,
        }

        if entity_id:
            entry["entity_id"] = str(entity_id)
        if client_id:
            entry["client_id"] = str(client_id)
        if user_id:
            entry["user_id"] = str(user_id)
        if message:
            entry["message"] = message

        for key, value in extra.items():
            entry[key] = self._serialize(value)

        return entry

    def _log(self, entry: dict, severity: LogSeverity):
        """Emit the log entry at the appropriate level."""
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    # Report lifecycle events
    def report_created(
        self,
        report_id: UUID,
        client_id: UUID,
        report_type: str,
        purpose: str,
        user_id: Optional[UUID] = None,
        correction_number: Optional[int] = None,
    ):
        """Log report creation (first filing or correction)."""
        entry = self._create_log_entry(
            event="jpk.report_created",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            message=f"{report_type} report created ({purpose})",
            report_type=report_type,
            purpose=purpose,
            correction_number=correction_number,
        )
        self._log(entry, LogSeverity.INFO)

    def records_imported(
        self,
        report_id: UUID,
        client_id: UUID,
        sale_count: int,
        purchase_count: int,
        skipped_count: int,
        user_id: Optional[UUID] = None,
    ):
        """Log a ledger import. Skipped entries raise the severity to WARN."""
        severity = LogSeverity.WARN if skipped_count else LogSeverity.INFO
        entry = self._create_log_entry(
            event="jpk.records_imported",
            severity=severity,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            message=f"Imported {sale_count} sale and {purchase_count} purchase records",
            sale_count=sale_count,
            purchase_count=purchase_count,
            skipped_count=skipped_count,
        )
        self._log(entry, severity)

    def declaration_updated(
        self,
        report_id: UUID,
        client_id: UUID,
        field_count: int,
        previous_status: str,
        user_id: Optional[UUID] = None,
    ):
        entry = self._create_log_entry(
            event="jpk.declaration_updated",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            field_count=field_count,
            previous_status=previous_status,
        )
        self._log(entry, LogSeverity.INFO)

    def xml_generated(
        self,
        report_id: UUID,
        client_id: UUID,
        xml_hash: str,
        file_size: int,
        record_count: int,
        user_id: Optional[UUID] = None,
    ):
        """Log XML assembly."""
        entry = self._create_log_entry(
            event="jpk.xml_generated",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            message=f"XML generated: {record_count} records, {file_size} bytes",
            xml_hash=xml_hash,
            file_size=file_size,
            record_count=record_count,
        )
        self._log(entry, LogSeverity.INFO)

    def report_validated(
        self,
        report_id: UUID,
        client_id: UUID,
        is_valid: bool,
        error_count: int,
        warning_count: int,
        user_id: Optional[UUID] = None,
    ):
        """Log a validation run."""
        severity = LogSeverity.INFO if is_valid else LogSeverity.WARN
        entry = self._create_log_entry(
            event="jpk.report_validated",
            severity=severity,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            is_valid=is_valid,
            error_count=error_count,
            warning_count=warning_count,
        )
        self._log(entry, severity)

    def report_signed(
        self,
        report_id: UUID,
        client_id: UUID,
        signature_type: str,
        user_id: Optional[UUID] = None,
    ):
        entry = self._create_log_entry(
            event="jpk.report_signed",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SIGNATURE,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            signature_type=signature_type,
        )
        self._log(entry, LogSeverity.INFO)

    # Gateway events
    def report_submitted(
        self,
        report_id: UUID,
        client_id: UUID,
        reference_id: str,
        test_mode: bool,
        user_id: Optional[UUID] = None,
    ):
        """Log submission to the gateway."""
        entry = self._create_log_entry(
            event="jpk.report_submitted",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.GATEWAY,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            message=f"Submitted to gateway, reference {reference_id}",
            reference_id=reference_id,
            test_mode=test_mode,
        )
        self._log(entry, LogSeverity.INFO)

    def report_accepted(
        self,
        report_id: UUID,
        client_id: UUID,
        reference_id: str,
        receipt_id: Optional[str],
    ):
        """Log acceptance by the gateway."""
        entry = self._create_log_entry(
            event="jpk.report_accepted",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.GATEWAY,
            entity_id=report_id,
            client_id=client_id,
            message=f"Report accepted, receipt {receipt_id}",
            reference_id=reference_id,
            receipt_id=receipt_id,
        )
        self._log(entry, LogSeverity.INFO)

    def report_rejected(
        self,
        report_id: UUID,
        client_id: UUID,
        reference_id: str,
        reason: Optional[str],
    ):
        """Log rejection by the gateway."""
        entry = self._create_log_entry(
            event="jpk.report_rejected",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.GATEWAY,
            entity_id=report_id,
            client_id=client_id,
            message=f"Report rejected: {reason}",
            reference_id=reference_id,
            reason=reason,
        )
        self._log(entry, LogSeverity.WARN)

    def correction_created(
        self,
        report_id: UUID,
        client_id: UUID,
        original_report_id: UUID,
        correction_number: int,
        user_id: Optional[UUID] = None,
    ):
        entry = self._create_log_entry(
            event="jpk.correction_created",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            message=f"Correction #{correction_number} created",
            original_report_id=original_report_id,
            correction_number=correction_number,
        )
        self._log(entry, LogSeverity.INFO)

    def report_deleted(
        self,
        report_id: UUID,
        client_id: UUID,
        status: str,
        user_id: Optional[UUID] = None,
    ):
        entry = self._create_log_entry(
            event="jpk.report_deleted",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            user_id=user_id,
            status=status,
        )
        self._log(entry, LogSeverity.INFO)

    # Failure events
    def transition_rejected(
        self,
        report_id: UUID,
        client_id: UUID,
        operation: str,
        current_status: str,
        required_statuses: list,
    ):
        """Log an operation refused because of the report's status."""
        entry = self._create_log_entry(
            event="jpk.transition_rejected",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            message=f"{operation} not allowed in status {current_status}",
            operation=operation,
            current_status=current_status,
            required_statuses=required_statuses,
        )
        self._log(entry, LogSeverity.WARN)

    def upstream_failure(
        self,
        report_id: UUID,
        client_id: UUID,
        operation: str,
        error_message: str,
        retryable: bool,
    ):
        """Log a signature provider or gateway failure."""
        entry = self._create_log_entry(
            event="jpk.upstream_failure",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.GATEWAY,
            entity_id=report_id,
            client_id=client_id,
            message=f"{operation} failed upstream: {error_message}",
            operation=operation,
            error_message=error_message,
            retryable=retryable,
        )
        self._log(entry, LogSeverity.ERROR)

    def report_error(
        self,
        report_id: UUID,
        client_id: UUID,
        operation: str,
        error_message: str,
    ):
        """Log a report pushed to ERROR."""
        entry = self._create_log_entry(
            event="jpk.report_error",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.JPK_REPORT,
            entity_id=report_id,
            client_id=client_id,
            message=f"Report moved to ERROR during {operation}: {error_message}",
            operation=operation,
            error_message=error_message,
        )
        self._log(entry, LogSeverity.ERROR)


# Global logger instance
jpk_logger = StructuredLogger()
