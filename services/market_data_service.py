import asyncio
from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from engine.errors import UpstreamUnavailable
from models.signals import MarketSignal, SignalSource
from utils.connection_pool import ConnectionPool
from utils.loguru_setup import logger
from utils.retry_utils import RetryableError, RetryConfig, is_retryable_status, with_retry

MARKET_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=4.0,
    retryable_exceptions=[
        RetryableError,
        asyncio.TimeoutError,
        ConnectionError,
        httpx.TransportError,
    ]
)


class MarketDataService:
    """Client for the economic data source, keyed by industry."""

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None,
                 pool: Optional[ConnectionPool] = None):
        self.base_url = base_url.rstrip('/') if base_url else None
        self.api_key = api_key
        self.pool = pool or ConnectionPool()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    @with_retry(retry_config=MARKET_RETRY_CONFIG, operation_name="_get_industry_indicators")
    async def _get_industry_indicators(self, industry: str) -> Optional[dict]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        async with self.pool.acquire_connection() as client:
            response = await client.get(f"{self.base_url}/industries/{quote(industry, safe='')}/indicators",
                                        headers=headers)

        if response.status_code == 404:
            return None
        if is_retryable_status(response.status_code):
            raise RetryableError(f"Market data source returned {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def fetch_indicators(self, industry: str) -> Optional[MarketSignal]:
        """Returns None when unconfigured or the industry is unknown to the source."""
        if not self.configured:
            logger.debug("Market data source not configured, skipping market fetch")
            return None

        try:
            payload = await self._get_industry_indicators(industry)
        except (RetryableError, httpx.HTTPError, asyncio.TimeoutError, ConnectionError, ValueError) as e:
            raise UpstreamUnavailable(SignalSource.MARKET, str(e)) from e

        if payload is None:
            logger.info("No market indicators for industry", industry=industry)
            return None

        try:
            return MarketSignal.model_validate(payload)
        except ValidationError as e:
            raise UpstreamUnavailable(SignalSource.MARKET, f"Malformed indicators payload: {e}") from e
