import asyncio
from typing import Optional

import httpx
from pydantic import ValidationError

from engine.errors import UpstreamUnavailable
from models.signals import FinancialSignal, SignalSource
from utils.connection_pool import ConnectionPool
from utils.loguru_setup import logger
from utils.retry_utils import RetryableError, RetryConfig, is_retryable_status, with_retry

ACCOUNTING_RETRY_CONFIG = RetryConfig(
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


class FinancialDataService:
    """Client for the accounting data source. Returns raw amounts for a prospect, or None when it has none."""

    def __init__(self, base_url: Optional[str], api_token: Optional[str] = None,
                 pool: Optional[ConnectionPool] = None):
        self.base_url = base_url.rstrip('/') if base_url else None
        self.api_token = api_token
        self.pool = pool or ConnectionPool()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    @with_retry(retry_config=ACCOUNTING_RETRY_CONFIG, operation_name="_get_company_financials")
    async def _get_company_financials(self, prospect_id: str) -> Optional[dict]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        async with self.pool.acquire_connection() as client:
            response = await client.get(f"{self.base_url}/companies/{prospect_id}/financials", headers=headers)

        if response.status_code == 404:
            return None
        if is_retryable_status(response.status_code):
            raise RetryableError(f"Accounting source returned {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def fetch_financials(self, prospect_id: str) -> Optional[FinancialSignal]:
        """
        Fetch the prospect's latest financial amounts.

        Returns None when the source is unconfigured or has no record for the
        prospect. Raises UpstreamUnavailable on transport failure, a 5xx after
        retries, or an unparseable body.
        """
        if not self.configured:
            logger.debug("Accounting source not configured, skipping financial fetch")
            return None

        try:
            payload = await self._get_company_financials(prospect_id)
        except (RetryableError, httpx.HTTPError, asyncio.TimeoutError, ConnectionError, ValueError) as e:
            raise UpstreamUnavailable(SignalSource.FINANCIAL, str(e)) from e

        if payload is None:
            logger.info("No financial record for prospect", prospect_id=prospect_id)
            return None

        try:
            return FinancialSignal.model_validate(payload)
        except ValidationError as e:
            raise UpstreamUnavailable(SignalSource.FINANCIAL, f"Malformed financials payload: {e}") from e
