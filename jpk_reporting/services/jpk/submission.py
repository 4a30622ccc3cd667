"""
Signing and submission pipeline.

sign -> submit -> check_status -> download_receipt. Calls to the signature
provider and the gateway happen inside a transient status that is committed
first; an upstream failure moves the report back to where it was, with the
error recorded, and re-raises so the caller can retry.
"""
import hashlib
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.audit.audit_logger import log_audit_event
from jpk_reporting.core.database import utcnow
from jpk_reporting.models.jpk_report import JpkReport, ReportStatus, SignatureType
from jpk_reporting.schemas.jpk import FileDownload, SignResult, StatusCheckResult, SubmitResult
from jpk_reporting.services.certificate_service import CertificateError
from jpk_reporting.services.gateway import GatewayState, SubmissionGateway
from jpk_reporting.services.jpk.errors import (
    AlreadyExistsError,
    FatalError,
    PreconditionFailedError,
    UpstreamFailureError,
)
from jpk_reporting.services.jpk.state_machine import Operation, ReportStateMachine
from jpk_reporting.services.jpk.storage import ArtifactStorage, as_download
from jpk_reporting.services.logging import jpk_logger
from jpk_reporting.services.signing_service import SignatureProvider, SigningError


def idempotency_key(report: JpkReport, signed_document: bytes) -> str:
    """Same report and same signed bytes always give the same key."""
    return f"{report.id}:{hashlib.sha256(signed_document).hexdigest()}"


class SubmissionPipeline:
    """Signs reports, submits them to the gateway and tracks acknowledgement."""

    def __init__(
        self,
        db: AsyncSession,
        signer: SignatureProvider,
        gateway: SubmissionGateway,
        storage: Optional[ArtifactStorage] = None,
    ):
        self.db = db
        self.signer = signer
        self.gateway = gateway
        self.storage = storage or ArtifactStorage()
        self.state = ReportStateMachine(db)

    async def sign_report(
        self,
        report_id: UUID,
        signature_type: SignatureType,
        resign: bool = False,
        user_id: Optional[UUID] = None,
    ) -> SignResult:
        """
        Sign the assembled document and move the report to SIGNED.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not GENERATED, VALIDATED or SIGNED
            AlreadyExistsError: report is already signed and resign is False
            UpstreamFailureError: signature provider failed; status is restored
            FatalError: the assembled artifact is missing
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.SIGN)
        if report.status == ReportStatus.SIGNED and not resign:
            raise AlreadyExistsError("Report is already signed; pass resign to replace the signature")

        previous_status = report.status
        await self.state.transition(report, previous_status, ReportStatus.SIGNING)
        await self.db.commit()

        try:
            if not report.xml_file_path:
                raise FatalError(f"Report {report.id} is {previous_status.value} but has no XML artifact")
            content = await self.storage.read(report.xml_file_path)
            signed = await self.signer.sign(content, signature_type)

            path = self.storage.relative_path(report.client_id, report.id, ArtifactStorage.SIGNED_SUFFIX)
            await self.storage.write(path, signed)
            signed_at = utcnow()

            await self.state.transition(
                report,
                ReportStatus.SIGNING,
                ReportStatus.SIGNED,
                signed_file_path=path,
                signature_type=signature_type,
                signed_at=signed_at,
                error_message=None,
            )
            await log_audit_event(
                self.db,
                client_id=report.client_id,
                entity_type="jpk_report",
                entity_id=report.id,
                action="sign",
                user_id=user_id,
                old_value={"status": previous_status.value},
                new_value={
                    "status": ReportStatus.SIGNED.value,
                    "signature_type": signature_type.value,
                    "resign": resign,
                },
            )
            await self.db.commit()
        except PreconditionFailedError:
            raise
        except (SigningError, CertificateError, UpstreamFailureError) as e:
            retryable = not isinstance(e, CertificateError) and getattr(e, "retryable", True)
            message = f"Signing failed: {e}"
            await self.state.revert(
                report, ReportStatus.SIGNING, previous_status, Operation.SIGN, message, retryable
            )
            if isinstance(e, UpstreamFailureError):
                raise
            raise UpstreamFailureError(message, retryable=retryable) from e
        except Exception as e:
            await self.state.fail(report, Operation.SIGN, f"Signing failed: {e}")
            raise FatalError(f"Signing failed: {e}") from e

        jpk_logger.report_signed(
            report_id=report.id,
            client_id=report.client_id,
            signature_type=signature_type.value,
            user_id=user_id,
        )

        return SignResult(
            report_id=report.id,
            signature_type=signature_type,
            signed_file_path=path,
            signed_at=signed_at,
        )

    async def submit_report(
        self,
        report_id: UUID,
        test_mode: bool = False,
        user_id: Optional[UUID] = None,
    ) -> SubmitResult:
        """
        Send the signed document to the gateway and move the report to SUBMITTED.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is not SIGNED
            UpstreamFailureError: gateway failed or timed out; report stays SIGNED
            FatalError: the signed artifact is missing
        """
        report = await self.state.load(report_id)
        message = None
        if report.status != ReportStatus.ERROR:
            message = (
                f"Report must be signed before submission (status {report.status.value}); "
                f"required status: {ReportStatus.SIGNED.value}"
            )
        self.state.require(report, Operation.SUBMIT, message=message)

        await self.state.transition(report, ReportStatus.SIGNED, ReportStatus.SUBMITTING)
        await self.db.commit()

        try:
            if not report.signed_file_path:
                raise FatalError(f"Report {report.id} is SIGNED but has no signed artifact")
            signed = await self.storage.read(report.signed_file_path)
            reference_id = await self.gateway.submit(
                signed,
                sandbox=test_mode,
                idempotency_key=idempotency_key(report, signed),
            )
            submitted_at = utcnow()

            await self.state.transition(
                report,
                ReportStatus.SUBMITTING,
                ReportStatus.SUBMITTED,
                submission_reference=reference_id,
                test_mode=test_mode,
                submitted_at=submitted_at,
                error_message=None,
            )
            await log_audit_event(
                self.db,
                client_id=report.client_id,
                entity_type="jpk_report",
                entity_id=report.id,
                action="submit",
                user_id=user_id,
                old_value={"status": ReportStatus.SIGNED.value},
                new_value={
                    "status": ReportStatus.SUBMITTED.value,
                    "reference_id": reference_id,
                    "test_mode": test_mode,
                },
            )
            await self.db.commit()
        except PreconditionFailedError:
            raise
        except UpstreamFailureError as e:
            await self.state.revert(
                report,
                ReportStatus.SUBMITTING,
                ReportStatus.SIGNED,
                Operation.SUBMIT,
                f"Submission failed: {e}",
                e.retryable,
            )
            raise
        except Exception as e:
            await self.state.fail(report, Operation.SUBMIT, f"Submission failed: {e}")
            raise FatalError(f"Submission failed: {e}") from e

        jpk_logger.report_submitted(
            report_id=report.id,
            client_id=report.client_id,
            reference_id=reference_id,
            test_mode=test_mode,
            user_id=user_id,
        )

        return SubmitResult(
            report_id=report.id,
            reference_id=reference_id,
            status=report.status,
            test_mode=test_mode,
            submitted_at=submitted_at,
        )

    def _status_result(self, report: JpkReport, gateway_status: Optional[str], changed: bool) -> StatusCheckResult:
        return StatusCheckResult(
            report_id=report.id,
            submitted=True,
            status=report.status,
            gateway_status=gateway_status,
            reference_id=report.submission_reference,
            upo_number=report.upo_number,
            upo_received_at=report.upo_received_at,
            rejection_reason=report.rejection_reason,
            changed=changed,
        )

    async def check_status(self, report_id: UUID, user_id: Optional[UUID] = None) -> StatusCheckResult:
        """
        Poll the gateway and apply the outcome.

        Writes only when the gateway outcome differs from the stored status;
        repeated polls with no upstream change return the same result and
        write nothing. A report that was never submitted returns
        submitted=False instead of raising.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: report is in ERROR
            UpstreamFailureError: gateway failed or timed out; nothing is written
        """
        report = await self.state.load(report_id)
        self.state.require(report, Operation.CHECK_STATUS)

        if not report.submission_reference:
            return StatusCheckResult(
                report_id=report.id,
                submitted=False,
                status=report.status,
                message="Report has not been submitted yet",
            )

        try:
            outcome = await self.gateway.poll(report.submission_reference, sandbox=report.test_mode)
        except UpstreamFailureError as e:
            jpk_logger.upstream_failure(
                report_id=report.id,
                client_id=report.client_id,
                operation=Operation.CHECK_STATUS.value,
                error_message=str(e),
                retryable=e.retryable,
            )
            raise

        changed = False
        try:
            if outcome.state == GatewayState.ACCEPTED and report.status == ReportStatus.SUBMITTED:
                await self.state.transition(
                    report,
                    ReportStatus.SUBMITTED,
                    ReportStatus.ACCEPTED,
                    upo_number=outcome.receipt_id,
                    upo_received_at=utcnow(),
                    rejection_reason=None,
                )
                changed = True
            elif (
                outcome.state == GatewayState.ACCEPTED
                and report.status == ReportStatus.CORRECTED
                and not report.upo_number
            ):
                # Superseded originals keep their status but still get their receipt
                await self.state.update_fields(
                    report,
                    ReportStatus.CORRECTED,
                    upo_number=outcome.receipt_id,
                    upo_received_at=utcnow(),
                )
                changed = True
            elif outcome.state == GatewayState.REJECTED and report.status == ReportStatus.SUBMITTED:
                await self.state.transition(
                    report,
                    ReportStatus.SUBMITTED,
                    ReportStatus.REJECTED,
                    rejection_reason=outcome.reason,
                )
                changed = True

            if changed:
                await log_audit_event(
                    self.db,
                    client_id=report.client_id,
                    entity_type="jpk_report",
                    entity_id=report.id,
                    action="check_status",
                    user_id=user_id,
                    new_value={
                        "status": report.status.value,
                        "gateway_code": outcome.code,
                        "upo_number": report.upo_number,
                        "rejection_reason": report.rejection_reason,
                    },
                )
                await self.db.commit()
        except PreconditionFailedError:
            # A concurrent poll already applied the outcome
            return self._status_result(report, outcome.state.value, changed=False)

        if changed and report.status == ReportStatus.REJECTED:
            jpk_logger.report_rejected(
                report_id=report.id,
                client_id=report.client_id,
                reference_id=report.submission_reference,
                reason=report.rejection_reason,
            )
        elif changed:
            jpk_logger.report_accepted(
                report_id=report.id,
                client_id=report.client_id,
                reference_id=report.submission_reference,
                receipt_id=report.upo_number,
            )

        return self._status_result(report, outcome.state.value, changed)

    async def download_receipt(self, report_id: UUID, user_id: Optional[UUID] = None) -> FileDownload:
        """
        Official receipt of an accepted report.

        Fetched from the gateway on first download and served from storage
        afterwards.

        Raises:
            NotFoundError: report does not exist
            PreconditionFailedError: receipt not yet available
            UpstreamFailureError: gateway failed or timed out
        """
        report = await self.state.load(report_id)
        message = None
        if report.status != ReportStatus.ERROR:
            message = f"Receipt not yet available (status {report.status.value})"
        self.state.require(report, Operation.DOWNLOAD_RECEIPT, message=message)
        if not report.upo_number:
            raise PreconditionFailedError(
                "Receipt not yet available; check the submission status first",
                current_status=report.status.value,
                required_statuses=[ReportStatus.ACCEPTED.value],
            )

        file_name = f"UPO_{report.upo_number}.xml"
        if report.upo_file_path and await self.storage.exists(report.upo_file_path):
            return as_download(file_name, await self.storage.read(report.upo_file_path))

        try:
            content = await self.gateway.fetch_receipt(report.submission_reference, sandbox=report.test_mode)
        except UpstreamFailureError as e:
            jpk_logger.upstream_failure(
                report_id=report.id,
                client_id=report.client_id,
                operation=Operation.DOWNLOAD_RECEIPT.value,
                error_message=str(e),
                retryable=e.retryable,
            )
            raise

        path = self.storage.relative_path(report.client_id, report.id, ArtifactStorage.RECEIPT_SUFFIX)
        await self.storage.write(path, content)
        await self.state.update_fields(report, report.status, upo_file_path=path)
        await log_audit_event(
            self.db,
            client_id=report.client_id,
            entity_type="jpk_report",
            entity_id=report.id,
            action="download_receipt",
            user_id=user_id,
            new_value={"upo_number": report.upo_number, "upo_file_path": path},
        )
        await self.db.commit()

        return as_download(file_name, content)
