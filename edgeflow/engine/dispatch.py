"""
Worker dispatch - fire-and-forget delivery of work to external services.

A dispatcher only has to get the request accepted. The result comes back
later through the callback endpoint, possibly to a different process.
Every failure to hand the request over raises WorkerExecutionError, which
the Worker handler records as a failed node.
"""

import logging
from abc import ABC, abstractmethod

import httpx

from edgeflow.errors import WorkerExecutionError
from edgeflow.schemas.run import WorkerDispatchRequest

logger = logging.getLogger(__name__)


def build_callback_url(base_url: str | None, run_id: str, node_id: str) -> str:
    """Callback identifier for ``(run_id, node_id)``."""
    if not base_url:
        raise WorkerExecutionError(
            "No base URL configured; cannot build a callback URL for the worker",
            node_id=node_id,
        )
    return f"{base_url.rstrip('/')}/callback/{run_id}/{node_id}"


class WorkerDispatcher(ABC):
    @abstractmethod
    async def dispatch(self, endpoint: str, request: WorkerDispatchRequest) -> None:
        """Deliver ``request`` to ``endpoint``; raise WorkerExecutionError on failure."""

    async def close(self) -> None:
        return None


class HttpWorkerDispatcher(WorkerDispatcher):
    """
    POSTs the dispatch request as JSON.

    Any 2xx response counts as accepted. Timeouts, connection errors and
    non-2xx responses are dispatch failures.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = client is None

    async def dispatch(self, endpoint: str, request: WorkerDispatchRequest) -> None:
        try:
            response = await self._client.post(endpoint, json=request.model_dump(mode="json"))
        except httpx.TimeoutException as e:
            raise WorkerExecutionError(
                f"Worker dispatch to {endpoint} timed out", node_id=request.node_id
            ) from e
        except httpx.RequestError as e:
            raise WorkerExecutionError(
                f"Worker dispatch to {endpoint} failed: {e}", node_id=request.node_id
            ) from e

        if not response.is_success:
            raise WorkerExecutionError(
                f"Worker at {endpoint} rejected dispatch with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                node_id=request.node_id,
            )
        logger.debug(f"Worker at {endpoint} accepted {request.node_id} ({response.status_code})")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
