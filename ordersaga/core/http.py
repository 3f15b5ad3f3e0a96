"""
Shared async HTTP plumbing for payment gateways and the carrier.

Maps transport failures onto the saga's error taxonomy:

    timeout / connection error / 5xx / 429  ->  ProviderUnavailable (retryable)
    other 4xx                               ->  ProviderRejected
    non-JSON body                           ->  ProviderError
"""

from __future__ import annotations

from typing import Any

import httpx

from ordersaga.core.exceptions import ProviderError, ProviderRejected, ProviderUnavailable
from ordersaga.core.logger import get_logger
from ordersaga.monitoring.metrics import track_provider_call

logger = get_logger(__name__)


class ProviderHttpClient:
    """
    Thin wrapper around ``httpx.AsyncClient`` for one SaaS service.

    The client is created lazily so constructing a gateway never touches the
    network; tests pass ``transport=httpx.MockTransport(...)``.
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.auth = auth
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json", **self.headers},
                auth=self.auth,
                timeout=httpx.Timeout(self.timeout),
                transport=self.transport,
            )
        return self._client

    async def request(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            ProviderUnavailable: Timeout, network failure, 5xx or 429
            ProviderRejected: Any other non-2xx response
            ProviderError: Response body is not JSON
        """
        with track_provider_call(self.service, operation):
            try:
                response = await self.client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                msg = f"{self.service} {operation} timed out"
                raise ProviderUnavailable(msg, service=self.service) from e
            except httpx.TransportError as e:
                msg = f"{self.service} {operation} failed: {e}"
                raise ProviderUnavailable(msg, service=self.service) from e

        if response.status_code >= 500 or response.status_code == 429:
            msg = f"{self.service} {operation} returned {response.status_code}"
            raise ProviderUnavailable(
                msg, service=self.service, status_code=response.status_code, body=_snippet(response)
            )
        if response.status_code >= 400:
            msg = _error_message(response) or f"{self.service} {operation} rejected"
            raise ProviderRejected(
                msg, service=self.service, status_code=response.status_code, body=_snippet(response)
            )

        try:
            return response.json()
        except ValueError as e:
            msg = f"{self.service} {operation} returned a non-JSON body"
            raise ProviderError(
                msg, service=self.service, status_code=response.status_code, body=_snippet(response)
            ) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _error_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("description") or error.get("message")
        return data.get("message") or (error if isinstance(error, str) else None)
    return None


def _snippet(response: httpx.Response, limit: int = 500) -> str:
    return response.text[:limit]
