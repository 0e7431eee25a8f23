"""
Batch writes and HTTP client adapters against httpx.MockTransport.
"""
import json

import httpx
import pytest

from pantry_jobs.client.batch import HttpInventoryWriter, build_item_payload, run_batch
from pantry_jobs.client.errors import (
    InventoryConflict,
    InventoryNotFound,
    InventoryValidationError,
    JobForbiddenError,
    JobNotFoundError,
    TransportError,
)
from pantry_jobs.client.transport import ApiSession, HttpJobStatusTransport
from pantry_jobs.schemas.jobs import QueueName


def session_for(handler, **kwargs) -> ApiSession:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return ApiSession("http://api.test", client=client, **kwargs)


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self):
        attempted = []

        async def write(item):
            attempted.append(item)
            if item == 3:
                raise InventoryValidationError("quantity must be positive", 422)

        outcome = await run_batch([1, 2, 3, 4, 5], write)

        assert attempted == [1, 2, 3, 4, 5]
        assert (outcome.success_count, outcome.fail_count) == (4, 1)
        assert outcome.as_dict() == {"successCount": 4, "failCount": 1}

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        async def write(item):
            raise AssertionError("not called")

        outcome = await run_batch([], write)
        assert outcome.total == 0


class TestItemPayload:
    def test_weighed_item(self):
        payload = build_item_payload({"name": "Flour", "quantity": "500", "unit": "g", "confidence": 0.874})

        assert payload["foodItemId"] is None
        assert payload["customName"] == "Flour"
        assert payload["quantity"] == 500.0
        assert payload["nutritionBasis"] == 100
        assert payload["nutritionUnit"] == "g"
        assert payload["notes"] == "Added via OCR Scan (87% conf)"
        assert "basePrice" not in payload

    def test_counted_item_defaults(self):
        payload = build_item_payload({"name": "Eggs"})

        assert payload["quantity"] == 1.0
        assert payload["unit"] == "pcs"
        assert payload["nutritionBasis"] == 1
        assert payload["notes"] == "Added via OCR Scan"

    def test_zero_confidence_omits_note_suffix(self):
        payload = build_item_payload({"name": "Salt", "confidence": 0})

        assert payload["notes"] == "Added via OCR Scan"


class TestHttpInventoryWriter:
    @pytest.mark.asyncio
    async def test_posts_item_to_inventory(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "item-1"})

        writer = HttpInventoryWriter(session_for(handler, token_provider=lambda: "tok"))
        created = await writer.add_item("inv-3", {"name": "Milk", "quantity": 2, "unit": "l", "confidence": 0.9})

        assert created == {"id": "item-1"}
        assert seen["path"] == "/inventories/inv-3/items"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"]["customName"] == "Milk"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [
        (404, InventoryNotFound),
        (422, InventoryValidationError),
        (409, InventoryConflict),
    ])
    async def test_error_statuses(self, status, error):
        writer = HttpInventoryWriter(session_for(lambda request: httpx.Response(status, json={"detail": "nope"})))

        with pytest.raises(error) as exc_info:
            await writer.add_item("inv-3", {"name": "Milk"})
        assert exc_info.value.status_code == status


class TestHttpJobStatusTransport:
    @pytest.mark.asyncio
    async def test_parses_status(self):
        def handler(request):
            assert request.url.path == "/jobs/image-processing/job-1"
            assert request.headers["x-user-id"] == "user_alice"
            return httpx.Response(200, json={
                "success": True, "jobId": "job-1", "queue": "image-processing", "status": "completed",
                "inventoryId": "inv-1", "result": {"data": []}, "error": None,
            })

        transport = HttpJobStatusTransport(session_for(handler, user_id="user_alice"))
        snapshot = await transport.fetch_status(QueueName.IMAGE_PROCESSING, "job-1")

        assert snapshot.status == "completed"
        assert snapshot.inventory_id == "inv-1"
        assert snapshot.result == {"data": []}

    @pytest.mark.asyncio
    async def test_async_token_provider(self):
        async def token():
            return "async-token"

        def handler(request):
            assert request.headers["authorization"] == "Bearer async-token"
            return httpx.Response(200, json={"status": "waiting"})

        snapshot = await HttpJobStatusTransport(session_for(handler, token_provider=token)).fetch_status(
            QueueName.AI_ANALYSIS, "job-2",
        )
        assert snapshot.status == "waiting"
        assert snapshot.job_id == "job-2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [
        (401, JobForbiddenError),
        (403, JobForbiddenError),
        (404, JobNotFoundError),
        (500, TransportError),
        (503, TransportError),
    ])
    async def test_error_statuses(self, status, error):
        transport = HttpJobStatusTransport(session_for(lambda request: httpx.Response(status)))
        with pytest.raises(error):
            await transport.fetch_status(QueueName.IMAGE_PROCESSING, "job-1")

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = HttpJobStatusTransport(session_for(handler))
        with pytest.raises(TransportError):
            await transport.fetch_status(QueueName.IMAGE_PROCESSING, "job-1")

    @pytest.mark.asyncio
    async def test_non_json_body_is_transport_error(self):
        transport = HttpJobStatusTransport(session_for(lambda request: httpx.Response(200, text="<html>")))
        with pytest.raises(TransportError):
            await transport.fetch_status(QueueName.IMAGE_PROCESSING, "job-1")
