"""
Async HTTP client shared by the REST aggregator connectors.

Wraps ``httpx.AsyncClient`` with the base URL, auth headers and timeout of
one backend, and turns HTTP failures into typed mailbridge errors.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.exceptions import classify_backend_error

logger = logging.getLogger(__name__)


class AsyncRestClient:
    """
    Thin JSON client for one REST backend.

    The underlying ``httpx.AsyncClient`` is created on first use and reused
    until :meth:`aclose`.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> 'AsyncRestClient':
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
            logger.debug("Initialized HTTP client for %s", self.base_url)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request and return the response.

        Raises:
            MailBridgeError: typed error for any transport failure or
                non-2xx status.
        """
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            error = classify_backend_error(exc)
            logger.warning("%s %s failed (%s): %s", method, path, error.status_code, error.message)
            raise error from exc
        return response

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        response = await self.request("GET", path, params=_clean(params), headers=headers)
        return response.json()

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        response = await self.request("POST", path, json=payload)
        return response.json() if response.content else {}

    async def get_bytes(self, path: str, params: Optional[Dict[str, Any]] = None) -> bytes:
        response = await self.request("GET", path, params=_clean(params))
        return response.content


def _clean(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop ``None`` values; the aggregators reject empty query params."""
    if params is None:
        return None
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[key] = value
    return cleaned
