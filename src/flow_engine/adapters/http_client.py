"""
Outbound HTTP for API and webhook nodes.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from ..core.interface import HttpCaller, HttpResponse

logger = logging.getLogger(__name__)


class HttpxCaller(HttpCaller):
    """
    Async HTTP caller backed by httpx.

    The per-call timeout is a deadline for the whole exchange, body
    included. httpx phase timeouts only bound the gap between reads, so the
    request is also wrapped in asyncio.wait_for.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize caller.

        Args:
            transport: Optional httpx transport (e.g. MockTransport in tests)
        """
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self.transport, follow_redirects=True)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def perform_http_call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_ms: int,
    ) -> HttpResponse:
        client = await self._get_client()
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            response = await asyncio.wait_for(
                client.request(
                    method,
                    url,
                    timeout=httpx.Timeout(timeout_ms / 1000),
                    **request_kwargs,
                ),
                timeout=timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TimeoutError(f"Request timed out after {timeout_ms} ms") from e
        except httpx.HTTPError as e:
            raise ConnectionError(f"{type(e).__name__}: {e}") from e

        try:
            parsed = response.json()
        except ValueError:
            parsed = response.text

        logger.debug(f"{method} {url} -> {response.status_code}")
        return HttpResponse(
            status_code=response.status_code,
            body=parsed,
            headers=dict(response.headers),
        )
