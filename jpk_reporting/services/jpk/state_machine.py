"""
Report lifecycle state machine.

Transition rules live in one table: for every mutating operation, the set
of statuses it may start from. Status writes are compare-and-set updates
guarded by the status the caller observed, so a stale writer fails with
PreconditionFailedError instead of overwriting a newer state.
"""
from enum import Enum
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.core.database import utcnow
from jpk_reporting.models.jpk_report import JpkReport, ReportStatus
from jpk_reporting.services.jpk.errors import (
    NotFoundError,
    PreconditionFailedError,
)
from jpk_reporting.services.logging import jpk_logger


class Operation(str, Enum):
    ADD_RECORD = "add_record"
    IMPORT_RECORDS = "import_records"
    UPDATE_DECLARATION = "update_declaration"
    GENERATE = "generate"
    VALIDATE = "validate"
    SIGN = "sign"
    SUBMIT = "submit"
    CHECK_STATUS = "check_status"
    DOWNLOAD_XML = "download_xml"
    DOWNLOAD_RECEIPT = "download_receipt"
    CREATE_CORRECTION = "create_correction"
    DELETE = "delete"


S = ReportStatus

ALLOWED_STATUSES: dict[Operation, frozenset[ReportStatus]] = {
    Operation.ADD_RECORD: frozenset({S.DRAFT}),
    Operation.IMPORT_RECORDS: frozenset({S.DRAFT}),
    Operation.UPDATE_DECLARATION: frozenset({S.DRAFT, S.GENERATED, S.VALIDATED}),
    Operation.GENERATE: frozenset({S.DRAFT, S.GENERATED, S.VALIDATED, S.SIGNED}),
    Operation.VALIDATE: frozenset({S.GENERATED, S.VALIDATED}),
    Operation.SIGN: frozenset({S.GENERATED, S.VALIDATED, S.SIGNED}),
    Operation.SUBMIT: frozenset({S.SIGNED}),
    Operation.CHECK_STATUS: frozenset(set(S) - {S.ERROR}),
    Operation.DOWNLOAD_XML: frozenset(set(S) - {S.ERROR}),
    Operation.DOWNLOAD_RECEIPT: frozenset({S.ACCEPTED, S.CORRECTED}),
    Operation.CREATE_CORRECTION: frozenset({S.SUBMITTED, S.ACCEPTED, S.CORRECTED}),
    Operation.DELETE: frozenset({S.DRAFT, S.ERROR}),
}

# Reports already handed to the gateway; their content is immutable
FILED_STATUSES = frozenset({S.SUBMITTED, S.ACCEPTED, S.REJECTED, S.CORRECTED})

TERMINAL_STATUSES = frozenset({S.ACCEPTED, S.REJECTED, S.CORRECTED, S.ERROR})

TRANSIENT_STATUSES = frozenset({S.GENERATING, S.VALIDATING, S.SIGNING, S.SUBMITTING})


def _values(statuses: Iterable[ReportStatus]) -> list[str]:
    return sorted(s.value for s in statuses)


class ReportStateMachine:
    """Loads reports and applies guarded status transitions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, report_id: UUID, for_update: bool = False) -> JpkReport:
        stmt = select(JpkReport).where(JpkReport.id == report_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        report = result.scalar_one_or_none()
        if report is None:
            raise NotFoundError(f"Report {report_id} not found")
        return report

    def require(
        self,
        report: JpkReport,
        operation: Operation,
        allowed: Optional[Iterable[ReportStatus]] = None,
        message: Optional[str] = None,
    ) -> None:
        """
        Check that the report's current status permits the operation.

        Raises:
            PreconditionFailedError: naming the required statuses
        """
        allowed = frozenset(allowed) if allowed is not None else ALLOWED_STATUSES[operation]
        if report.status in allowed:
            return

        required = _values(allowed)
        jpk_logger.transition_rejected(
            report_id=report.id,
            client_id=report.client_id,
            operation=operation.value,
            current_status=report.status.value,
            required_statuses=required,
        )
        if message is None:
            if report.status == ReportStatus.ERROR:
                message = "Report is in ERROR; only deletion is allowed"
            else:
                message = (
                    f"Cannot {operation.value.replace('_', ' ')} a report in status "
                    f"{report.status.value}; required status: {', '.join(required)}"
                )
        raise PreconditionFailedError(
            message,
            current_status=report.status.value,
            required_statuses=required,
        )

    async def transition(
        self,
        report: JpkReport,
        expected: ReportStatus,
        target: ReportStatus,
        **values,
    ) -> None:
        """
        Compare-and-set the report status from expected to target.

        Extra column values are written in the same statement. The in-memory
        report is synchronized on success.

        Raises:
            PreconditionFailedError: the stored status is no longer expected
        """
        values["updated_at"] = utcnow()
        result = await self.db.execute(
            update(JpkReport)
            .where(JpkReport.id == report.id, JpkReport.status == expected)
            .values(status=target, **values)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount == 0:
            await self.db.rollback()
            await self.db.refresh(report)
            raise PreconditionFailedError(
                f"Report {report.id} changed concurrently: expected status "
                f"{expected.value}, found {report.status.value}",
                current_status=report.status.value,
                required_statuses=[expected.value],
            )

    async def update_fields(self, report: JpkReport, expected: ReportStatus, **values) -> None:
        """Write columns without changing status, guarded by the expected status."""
        await self.transition(report, expected, expected, **values)

    async def revert(
        self,
        report: JpkReport,
        transient: ReportStatus,
        previous: ReportStatus,
        operation: Operation,
        error_message: str,
        retryable: bool = True,
    ) -> None:
        """Move a report out of a transient status after an upstream failure."""
        await self.db.rollback()
        await self.db.refresh(report)
        jpk_logger.upstream_failure(
            report_id=report.id,
            client_id=report.client_id,
            operation=operation.value,
            error_message=error_message,
            retryable=retryable,
        )
        if report.status != transient:
            return
        await self.transition(report, transient, previous, error_message=error_message)
        await self.db.commit()

    async def fail(self, report: JpkReport, operation: Operation, error_message: str) -> None:
        """Push a report to ERROR after an unexpected failure."""
        await self.db.rollback()
        await self.db.refresh(report)
        if report.status in TERMINAL_STATUSES:
            return
        jpk_logger.report_error(
            report_id=report.id,
            client_id=report.client_id,
            operation=operation.value,
            error_message=error_message,
        )
        await self.transition(report, report.status, ReportStatus.ERROR, error_message=error_message)
        await self.db.commit()
