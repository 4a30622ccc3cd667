"""
API tests for the JPK reporting endpoints.

Run against the FastAPI app with the reporting service overridden by the
test service (in-memory database, fake signer and gateway).
"""
import base64
import uuid

import pytest
from httpx import AsyncClient

from jpk_reporting.services.jpk.errors import UpstreamFailureError

BASE = "/api/v1/jpk/reports"


@pytest.mark.asyncio
async def test_create_report(async_client: AsyncClient, taxpayer):
    """Test report creation"""
    response = await async_client.post(BASE, json={
        "client_id": str(taxpayer.id),
        "report_type": "JPK_V7M",
        "year": 2024,
        "month": 3,
    })

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "DRAFT"
    assert data["purpose"] == "FIRST"
    assert data["period_from"] == "2024-03-01"
    assert data["period_to"] == "2024-03-31"


@pytest.mark.asyncio
async def test_create_report_validation_error(async_client: AsyncClient, taxpayer):
    """Test that a monthly kind without a month is rejected on entry"""
    response = await async_client.post(BASE, json={
        "client_id": str(taxpayer.id),
        "report_type": "JPK_V7M",
        "year": 2024,
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_duplicate_report(async_client: AsyncClient, draft_report):
    response = await async_client.post(BASE, json={
        "client_id": str(draft_report.client_id),
        "report_type": "JPK_V7M",
        "year": 2024,
        "month": 1,
    })

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_get_unknown_report(async_client: AsyncClient):
    response = await async_client.get(f"{BASE}/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_get_report_with_records(async_client: AsyncClient, generated_report):
    response = await async_client.get(
        f"{BASE}/{generated_report.id}",
        params={"include_records": "true", "include_declaration": "true"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "GENERATED"
    assert len(data["sale_records"]) == 1
    assert data["declaration"]["p_48"] == "115"


@pytest.mark.asyncio
async def test_list_reports(async_client: AsyncClient, draft_report):
    response = await async_client.get(BASE, params={"status": "DRAFT"})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(draft_report.id)


@pytest.mark.asyncio
async def test_add_sale_record(async_client: AsyncClient, draft_report):
    response = await async_client.post(f"{BASE}/{draft_report.id}/sale-records", json={
        "document_number": "FV/2024/01/010",
        "document_date": "2024-01-20",
        "buyer_nip": "1234563218",
        "buyer_name": "Kontrahent",
        "net_amount_23": "100.00",
        "vat_amount_23": "23.00",
        "gtu_codes": ["gtu_06"],
    })

    assert response.status_code == 201
    data = response.json()
    assert data["record_number"] == 1
    assert data["buyer_nip"] == "1234563218"
    assert data["gtu_codes"] == ["GTU_06"]


@pytest.mark.asyncio
async def test_add_record_to_generated_report(async_client: AsyncClient, generated_report):
    """Test that a lifecycle violation comes back as 412 with the statuses"""
    response = await async_client.post(f"{BASE}/{generated_report.id}/purchase-records", json={
        "document_number": "ZAK/1",
        "document_date": "2024-01-05",
        "seller_name": "Dostawca",
        "net_amount_total": "10.00",
        "vat_amount_deductible": "2.30",
    })

    assert response.status_code == 412
    detail = response.json()["detail"]
    assert detail["code"] == "PRECONDITION_FAILED"
    assert detail["current_status"] == "GENERATED"
    assert detail["required_statuses"] == ["DRAFT"]


@pytest.mark.asyncio
async def test_lifecycle_to_submission(async_client: AsyncClient, draft_report, sale_input):
    """Test generate, validate, sign and submit through the API"""
    report_url = f"{BASE}/{draft_report.id}"
    response = await async_client.post(f"{report_url}/sale-records", json=sale_input().model_dump(mode="json"))
    assert response.status_code == 201

    response = await async_client.put(f"{report_url}/declaration", json={
        "fields": {"p_28": "230", "p_48": "230"},
    })
    assert response.status_code == 200

    response = await async_client.post(f"{report_url}/generate", json={})
    assert response.status_code == 200
    assert response.json()["record_count"] == 1

    response = await async_client.post(f"{report_url}/generate", json={})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "ALREADY_EXISTS"

    response = await async_client.post(f"{report_url}/validate", json={})
    assert response.status_code == 200
    assert response.json()["is_valid"] is True

    response = await async_client.post(f"{report_url}/sign", json={"signature_type": "TRUSTED_PROFILE"})
    assert response.status_code == 200

    response = await async_client.post(f"{report_url}/submit", json={"test_mode": True})
    assert response.status_code == 200
    assert response.json()["reference_id"] == "REF-0001"

    response = await async_client.post(f"{report_url}/check-status")
    assert response.status_code == 200
    assert response.json()["changed"] is False
    assert response.json()["status"] == "SUBMITTED"


@pytest.mark.asyncio
async def test_validation_issues_are_not_http_errors(async_client: AsyncClient, draft_report):
    response = await async_client.post(f"{BASE}/{draft_report.id}/validate", json={})

    assert response.status_code == 200
    data = response.json()
    assert data["is_valid"] is False
    assert data["issues"][0]["code"] == "XML_NOT_GENERATED"


@pytest.mark.asyncio
async def test_download_xml(async_client: AsyncClient, storage, generated_report):
    response = await async_client.get(f"{BASE}/{generated_report.id}/xml")

    assert response.status_code == 200
    data = response.json()
    assert data["file_name"] == "JPK_V7M_2024_01.xml"
    assert base64.b64decode(data["content"]) == await storage.read(generated_report.xml_file_path)


@pytest.mark.asyncio
async def test_gateway_timeout_maps_to_504(async_client: AsyncClient, gateway, signed_report):
    gateway.submit_error = UpstreamFailureError("Gateway submit timed out", retryable=True, status_code=504)

    response = await async_client.post(f"{BASE}/{signed_report.id}/submit", json={})

    assert response.status_code == 504
    detail = response.json()["detail"]
    assert detail["code"] == "UPSTREAM_FAILURE"
    assert detail["retryable"] is True


@pytest.mark.asyncio
async def test_create_correction(async_client: AsyncClient, submitted_report):
    response = await async_client.post(
        f"{BASE}/{submitted_report.id}/corrections",
        json={"reason": "Missing invoice FV/2024/01/002"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["purpose"] == "CORRECTION"
    assert data["correction_number"] == 1
    assert data["original_report_id"] == str(submitted_report.id)


@pytest.mark.asyncio
async def test_correction_reason_too_short(async_client: AsyncClient, submitted_report):
    response = await async_client.post(f"{BASE}/{submitted_report.id}/corrections", json={"reason": "typo"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_delete_report(async_client: AsyncClient, draft_report):
    response = await async_client.delete(
        f"{BASE}/{draft_report.id}",
        headers={"X-User-Id": str(uuid.uuid4())},
    )
    assert response.status_code == 204

    response = await async_client.get(f"{BASE}/{draft_report.id}")
    assert response.status_code == 404
