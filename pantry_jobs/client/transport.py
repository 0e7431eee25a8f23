"""
HTTP access to the job status API.

ApiSession owns the httpx client and auth headers. HttpJobStatusTransport
maps status responses onto StatusSnapshot and the client error taxonomy.
"""
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx

from pantry_jobs.client.errors import JobForbiddenError, JobNotFoundError, TransportError
from pantry_jobs.schemas.jobs import QueueName

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass
class StatusSnapshot:
    job_id: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    inventory_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class JobStatusTransport(Protocol):
    async def fetch_status(self, queue_name: QueueName, job_id: str) -> StatusSnapshot: ...


class ApiSession:
    """Shared httpx client with bearer-token or X-User-ID authentication."""

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        user_id: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.user_id = user_id
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token_provider is not None:
            token = self.token_provider()
            if inspect.isawaitable(token):
                token = await token
            if token:
                headers["Authorization"] = f"Bearer {token}"
        if self.user_id:
            headers["X-User-ID"] = self.user_id
        return headers

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request; network failures surface as TransportError."""
        headers = await self.headers()
        headers.update(kwargs.pop("headers", None) or {})
        try:
            return await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class HttpJobStatusTransport:
    def __init__(self, session: ApiSession):
        self.session = session

    async def fetch_status(self, queue_name: QueueName, job_id: str) -> StatusSnapshot:
        lane = QueueName(queue_name).value
        response = await self.session.request("GET", f"/jobs/{lane}/{job_id}")

        if response.status_code in (401, 403):
            raise JobForbiddenError(job_id, response.status_code)
        if response.status_code == 404:
            raise JobNotFoundError(job_id)
        if response.status_code >= 400:
            raise TransportError(f"Status request failed with HTTP {response.status_code}", response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError("Status response was not valid JSON") from e
        if not isinstance(body, dict) or "status" not in body:
            raise TransportError("Status response missing status field")

        return StatusSnapshot(
            job_id=body.get("jobId") or job_id,
            status=body["status"],
            result=body.get("result"),
            error=body.get("error"),
            inventory_id=body.get("inventoryId"),
            raw=body,
        )
