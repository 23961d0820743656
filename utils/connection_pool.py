import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Union

import httpx

from utils.loguru_setup import logger
from utils.retry_utils import RetryableError


class ConnectionPool:
    """Shared httpx client for the signal source clients, with a cap on in-flight requests."""

    def __init__(self, limits: Optional[httpx.Limits] = None,
                 timeout: Optional[Union[float, httpx.Timeout]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = None
        self._transport = transport
        self._lock = asyncio.Lock()
        self._active_connections = 0
        self.limits = limits or httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20
        )
        self.timeout = timeout or httpx.Timeout(10.0, connect=5.0)

    @asynccontextmanager
    async def acquire_connection(self):
        """Acquire a client from the pool."""
        async with self._lock:
            if self._active_connections >= self.limits.max_connections:
                logger.warning(f"Connection pool full ({self._active_connections}/{self.limits.max_connections})")
                raise RetryableError("Connection pool exhausted")

            if self._client is None or self._client.is_closed:
                self._client = httpx.AsyncClient(
                    limits=self.limits,
                    timeout=self.timeout,
                    transport=self._transport
                )

            self._active_connections += 1

        try:
            yield self._client
        finally:
            async with self._lock:
                self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool."""
        async with self._lock:
            if self._client and not self._client.is_closed:
                await self._client.aclose()
                self._client = None
            self._active_connections = 0

    @property
    def active_connections(self) -> int:
        return self._active_connections
