"""JSON-over-HTTP client for the external identity services."""

from __future__ import annotations

from types import TracebackType
from typing import Any, Mapping, Optional, Type

import httpx

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "microsettle-facilitator",
}


class AsyncHttpClient:
    """Shared httpx.AsyncClient for the proof verifier and vendor discovery.

    Relative paths are joined onto ``base_url``; absolute URLs pass through so
    the same pool can reach arbitrary vendors. Every call raises
    ``httpx.HTTPStatusError`` for non-2xx answers and returns decoded JSON,
    so callers only map ``httpx.HTTPError`` and ``ValueError``.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={**DEFAULT_HEADERS, **(headers or {})},
            follow_redirects=True,
        )

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._client.request(method, self.url_for(path), **kwargs)
        resp.raise_for_status()
        # Empty bodies decode to None rather than failing
        return resp.json() if resp.content else None

    async def get_json(self, path: str, **kwargs: Any) -> Any:
        return await self._request("GET", path, **kwargs)

    async def post_json(self, path: str, body: Mapping[str, Any], **kwargs: Any) -> Any:
        return await self._request("POST", path, json=dict(body), **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AsyncHttpClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()
