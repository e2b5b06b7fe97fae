import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class PooledHTTPClient:
    """Shared async HTTP client with connection pooling and retry."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(timeout, connect=5.0),
            follow_redirects=True,
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.get(url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.post(url, **kwargs)

    async def get_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs) -> Optional[httpx.Response]:
        """GET with exponential backoff on transport errors. None when every attempt failed."""
        for attempt in range(retries):
            try:
                return await self.get(url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.warning(f"GET {url} failed ({e}); retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"GET {url} failed after {retries} attempts: {e}")
                return None
        return None

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


_global_client: Optional[PooledHTTPClient] = None


async def get_http_client() -> PooledHTTPClient:
    """Return the process-wide client, creating it on first use."""
    global _global_client
    if _global_client is None or _global_client.is_closed:
        _global_client = PooledHTTPClient()
    return _global_client


async def cleanup_http_client():
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
