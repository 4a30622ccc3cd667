"""
Tests for the submission gateway client with mocked HTTP responses.

Uses httpx.MockTransport, so no real gateway is contacted.
"""
import httpx
import pytest

from jpk_reporting.core.config import Settings
from jpk_reporting.services.gateway import GatewayState, GatewayStatus, HttpSubmissionGateway
from jpk_reporting.services.jpk.errors import UpstreamFailureError

CONFIG = Settings(
    JPK_GATEWAY_URL="https://gateway.example.pl",
    JPK_GATEWAY_TEST_URL="https://sandbox.example.pl",
    JPK_GATEWAY_TIMEOUT_SECONDS=5.0,
)


def make_gateway(handler) -> HttpSubmissionGateway:
    return HttpSubmissionGateway(config=CONFIG, transport=httpx.MockTransport(handler))


class TestGatewayStatus:
    """Mapping of the gateway status payload."""

    def test_accepted(self):
        status = GatewayStatus.from_payload({"Code": 200, "Description": "OK", "Upo": "UPO-1"})
        assert status.state == GatewayState.ACCEPTED
        assert status.receipt_id == "UPO-1"

    def test_pending(self):
        status = GatewayStatus.from_payload({"Code": 120, "Description": "Processing"})
        assert status.state == GatewayState.PENDING

    def test_rejected(self):
        status = GatewayStatus.from_payload({"Code": 415, "Description": "Invalid signature"})
        assert status.state == GatewayState.REJECTED
        assert status.reason == "Invalid signature"

    def test_accepted_without_receipt(self):
        with pytest.raises(UpstreamFailureError) as exc_info:
            GatewayStatus.from_payload({"Code": 200})
        assert exc_info.value.retryable is True

    def test_missing_code(self):
        with pytest.raises(UpstreamFailureError):
            GatewayStatus.from_payload({"Description": "?"})


@pytest.mark.asyncio
async def test_submit_success():
    """Test upload of a signed document"""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["content"] = request.content
        seen["headers"] = request.headers
        return httpx.Response(200, json={"ReferenceNumber": "REF-42"})

    gateway = make_gateway(handler)
    reference = await gateway.submit(b"<JPK/>", sandbox=False, idempotency_key="report:abc")

    assert reference == "REF-42"
    assert seen["url"] == "https://gateway.example.pl/api/Storage/UploadSigned"
    assert seen["content"] == b"<JPK/>"
    assert seen["headers"]["Idempotency-Key"] == "report:abc"
    assert seen["headers"]["Content-Type"] == "application/xml"


@pytest.mark.asyncio
async def test_submit_uses_sandbox_url():
    """Test that test mode goes to the sandbox"""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["host"] = request.url.host
        return httpx.Response(200, json={"ReferenceNumber": "REF-1"})

    await make_gateway(handler).submit(b"<JPK/>", sandbox=True, idempotency_key="k")
    assert seen["host"] == "sandbox.example.pl"


@pytest.mark.asyncio
async def test_submit_without_reference():
    """Test that an upload response without a reference is an upstream failure"""
    gateway = make_gateway(lambda request: httpx.Response(200, json={}))

    with pytest.raises(UpstreamFailureError):
        await gateway.submit(b"<JPK/>", sandbox=False, idempotency_key="k")


@pytest.mark.asyncio
async def test_server_error_is_retryable():
    """Test 5xx handling"""
    gateway = make_gateway(lambda request: httpx.Response(503, json={"Message": "Maintenance"}))

    with pytest.raises(UpstreamFailureError) as exc_info:
        await gateway.submit(b"<JPK/>", sandbox=False, idempotency_key="k")

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503
    assert "Maintenance" in str(exc_info.value)


@pytest.mark.asyncio
async def test_client_error_is_not_retryable():
    """Test 4xx handling"""
    gateway = make_gateway(lambda request: httpx.Response(400, text="Bad document"))

    with pytest.raises(UpstreamFailureError) as exc_info:
        await gateway.submit(b"<JPK/>", sandbox=False, idempotency_key="k")

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_timeout_is_reported_as_504():
    """Test timeout handling"""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamFailureError) as exc_info:
        await make_gateway(handler).poll("REF-1", sandbox=False)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_connection_error_is_retryable():
    """Test transport failure handling"""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamFailureError) as exc_info:
        await make_gateway(handler).poll("REF-1", sandbox=False)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_poll_status():
    """Test status polling"""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/Storage/Status/REF-1"
        return httpx.Response(200, json={"Code": 200, "Description": "Accepted", "Upo": "UPO-77"})

    status = await make_gateway(handler).poll("REF-1", sandbox=False)

    assert status.state == GatewayState.ACCEPTED
    assert status.receipt_id == "UPO-77"


@pytest.mark.asyncio
async def test_fetch_receipt():
    """Test receipt download"""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/Storage/Upo/REF-1"
        return httpx.Response(200, content=b"<Potwierdzenie/>")

    assert await make_gateway(handler).fetch_receipt("REF-1", sandbox=False) == b"<Potwierdzenie/>"


@pytest.mark.asyncio
async def test_empty_receipt():
    """Test that an empty receipt is an upstream failure"""
    gateway = make_gateway(lambda request: httpx.Response(200, content=b""))

    with pytest.raises(UpstreamFailureError):
        await gateway.fetch_receipt("REF-1", sandbox=False)
