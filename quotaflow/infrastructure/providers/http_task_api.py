"""HTTP adapter for "create task, then poll its status" media APIs.

Speaks the common JSON shape used by image/video generation providers:

* ``POST {base_url}{endpoint}`` returns ``{"data": {"task_id": ..., "status": ...}}``
* ``GET {base_url}{endpoint}/{task_id}`` returns ``{"data": {"status": ..., "generated": [...]}}``

Non-2xx responses become ``UpstreamHttpError`` carrying the status code and
any retry-after hint; network errors from httpx propagate unchanged.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from quotaflow.core.exceptions import FatalError, UpstreamHttpError
from quotaflow.domain.interfaces.task_api import AsyncTaskApi
from quotaflow.domain.models.calls import TaskSnapshot, TaskStatus
from quotaflow.domain.models.common import CallTarget, Credential, TaskId
from quotaflow.infrastructure.resilience.error_classifier import parse_retry_after

logger = logging.getLogger(__name__)

DEFAULT_AUTH_HEADER = "x-freepik-api-key"
DEFAULT_HTTP_TIMEOUT_S = 60.0


class HttpTaskApi(AsyncTaskApi):
    """AsyncTaskApi over a JSON HTTP API using httpx."""

    def __init__(
        self,
        base_url: str,
        auth_header: str = DEFAULT_AUTH_HEADER,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initializes the adapter.

        Args:
            base_url: Provider root, e.g. ``https://api.example.com/v1``.
            auth_header: Header that carries the credential.
            timeout_s: Per-request HTTP timeout.
            client: Pre-built client (tests pass one with a MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.auth_header = auth_header
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        logger.info(f"HttpTaskApi initialized for {self.base_url}")

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _headers(self, credential: Credential) -> Dict[str, str]:
        return {
            self.auth_header: credential,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _check_response(self, response: httpx.Response) -> Dict[str, Any]:
        """Returns the JSON body of a 2xx response, raises UpstreamHttpError otherwise."""
        if response.is_success:
            try:
                body = response.json()
            except ValueError as e:
                raise FatalError(f"Upstream returned non-JSON body (HTTP {response.status_code})") from e
            if not isinstance(body, dict):
                raise FatalError(f"Upstream returned unexpected JSON: {str(body)[:200]}")
            return body

        message = response.text[:500]
        try:
            body = response.json()
            if isinstance(body, dict):
                message = str(body.get("message") or body.get("error") or body.get("detail") or message)
        except ValueError:
            pass  # Keep the raw text as the message
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        logger.debug(f"Upstream HTTP {response.status_code} for {response.request.url}: {message}")
        raise UpstreamHttpError(response.status_code, message, retry_after)

    async def submit(self, credential: Credential, target: CallTarget, payload: Any) -> TaskId:
        response = await self._client.post(self._url(target), json=payload, headers=self._headers(credential))
        body = self._check_response(response)
        data = body.get("data") or {}
        task_id = data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            raise FatalError(f"Submit to {target} returned no task_id: {str(body)[:200]}")
        logger.debug(f"Task {task_id} created on {target} (status={data.get('status')})")
        return TaskId(str(task_id))

    async def poll(self, credential: Credential, target: CallTarget, task_id: TaskId) -> TaskSnapshot:
        response = await self._client.get(self._url(f"{target}/{task_id}"), headers=self._headers(credential))
        body = self._check_response(response)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise FatalError(f"Status for task {task_id} has unexpected shape: {str(body)[:200]}")
        raw_status = data.get("status")
        generated = data.get("generated") or []
        return TaskSnapshot(
            task_id=task_id,
            status=TaskStatus.parse(raw_status),
            result=list(generated),
            raw_status=None if raw_status is None else str(raw_status),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
