"""
Ministry of Finance submission gateway client.

Wraps the gateway's storage API with httpx:

- POST /api/Storage/UploadSigned         signed document in, ReferenceNumber out
- GET  /api/Storage/Status/{reference}   processing status (Code, Description, Upo)
- GET  /api/Storage/Upo/{reference}      official receipt document

Every call applies the configured timeout. Transport errors, timeouts and
5xx responses surface as retryable UpstreamFailureError; 4xx responses are
not retryable.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from jpk_reporting.core.config import Settings, settings as default_settings
from jpk_reporting.services.jpk.errors import UpstreamFailureError

logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class GatewayStatus:
    """One poll result. receipt_id is set when accepted, reason when rejected."""
    state: GatewayState
    code: Optional[int] = None
    receipt_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayStatus":
        try:
            code = int(payload.get("Code"))
        except (TypeError, ValueError) as e:
            raise UpstreamFailureError(
                f"Gateway status response has no usable Code: {payload.get('Code')!r}",
                retryable=True,
            ) from e
        description = payload.get("Description")
        if code == 200:
            receipt_id = payload.get("Upo")
            if not receipt_id:
                raise UpstreamFailureError("Gateway reported acceptance without a receipt id", retryable=True)
            return cls(state=GatewayState.ACCEPTED, code=code, receipt_id=str(receipt_id))
        if code < 400:
            return cls(state=GatewayState.PENDING, code=code)
        return cls(
            state=GatewayState.REJECTED,
            code=code,
            reason=description or f"Rejected by the gateway (code {code})",
        )


class SubmissionGateway(ABC):
    """External ingestion system for signed documents."""

    @abstractmethod
    async def submit(self, signed_document: bytes, sandbox: bool, idempotency_key: str) -> str:
        """Send a signed document and return the gateway reference id."""

    @abstractmethod
    async def poll(self, reference_id: str, sandbox: bool) -> GatewayStatus:
        """Current processing status of a submission."""

    @abstractmethod
    async def fetch_receipt(self, reference_id: str, sandbox: bool) -> bytes:
        """Official receipt document of an accepted submission."""


class HttpSubmissionGateway(SubmissionGateway):
    """
    Gateway client over HTTP.

    A transport can be injected for tests (httpx.MockTransport).
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self.transport = transport

    def _client(self, sandbox: bool) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.gateway_url(sandbox),
            timeout=self.config.JPK_GATEWAY_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    def _raise_for_status(self, response: httpx.Response, context: str) -> None:
        if response.status_code < 400:
            return
        try:
            detail = response.json().get("Message") or response.text
        except ValueError:
            detail = response.text
        retryable = response.status_code >= 500
        logger.error(
            f"Gateway error in {context}: status={response.status_code}, retryable={retryable}"
        )
        raise UpstreamFailureError(
            f"Gateway {context} failed with HTTP {response.status_code}: {detail}",
            retryable=retryable,
            status_code=response.status_code,
        )

    async def _request(self, sandbox: bool, context: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client(sandbox) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Gateway timeout in {context}: {e}")
            raise UpstreamFailureError(
                f"Gateway {context} timed out after {self.config.JPK_GATEWAY_TIMEOUT_SECONDS}s",
                retryable=True,
                status_code=504,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway transport error in {context}: {e}")
            raise UpstreamFailureError(f"Gateway {context} failed: {e}", retryable=True) from e
        self._raise_for_status(response, context)
        return response

    def _json(self, response: httpx.Response, context: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamFailureError(f"Gateway {context} returned invalid JSON", retryable=True) from e
        if not isinstance(payload, dict):
            raise UpstreamFailureError(f"Gateway {context} returned unexpected payload", retryable=True)
        return payload

    async def submit(self, signed_document: bytes, sandbox: bool, idempotency_key: str) -> str:
        response = await self._request(
            sandbox,
            "submit",
            "POST",
            "/api/Storage/UploadSigned",
            content=signed_document,
            headers={
                "Content-Type": "application/xml",
                "Idempotency-Key": idempotency_key,
            },
        )
        reference = self._json(response, "submit").get("ReferenceNumber")
        if not reference:
            raise UpstreamFailureError("Gateway accepted the upload without a ReferenceNumber", retryable=True)
        logger.info(f"Submitted document to gateway: reference={reference}, sandbox={sandbox}")
        return reference

    async def poll(self, reference_id: str, sandbox: bool) -> GatewayStatus:
        response = await self._request(sandbox, "status", "GET", f"/api/Storage/Status/{reference_id}")
        return GatewayStatus.from_payload(self._json(response, "status"))

    async def fetch_receipt(self, reference_id: str, sandbox: bool) -> bytes:
        response = await self._request(sandbox, "receipt", "GET", f"/api/Storage/Upo/{reference_id}")
        if not response.content:
            raise UpstreamFailureError("Gateway returned an empty receipt", retryable=True)
        return response.content
