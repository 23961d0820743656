import asyncio
from typing import Awaitable, Dict, Iterable, Optional

from engine.errors import UpstreamUnavailable
from models.signals import CompanyInfo, FinancialSignal, SignalBundle, SignalSource
from services.financial_data_service import FinancialDataService
from services.market_data_service import MarketDataService
from services.transcript_insight_service import TranscriptInsightService
from utils.loguru_setup import logger

ALL_SOURCES = (SignalSource.FINANCIAL, SignalSource.TRANSCRIPT, SignalSource.MARKET)


class SignalCollector:
    """
    Fans out to the three signal sources concurrently and assembles a SignalBundle.

    Each source gets its own timeout. A failure or timeout degrades only that
    source to absent and is recorded in failed_sources; "not found" is absent
    without being a failure.
    """

    def __init__(self, financial_service: FinancialDataService,
                 transcript_service: TranscriptInsightService,
                 market_service: MarketDataService,
                 timeout_seconds: float = 15.0):
        self.financial_service = financial_service
        self.transcript_service = transcript_service
        self.market_service = market_service
        self.timeout_seconds = timeout_seconds

    async def _fetch_with_timeout(self, source: SignalSource, fetch: Awaitable):
        try:
            return await asyncio.wait_for(fetch, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"{source} source timed out after {self.timeout_seconds}s", source=str(source))
            raise UpstreamUnavailable(source, "timed out")

    async def collect(self, prospect_id: str, company_info: CompanyInfo,
                      transcript_text: Optional[str] = None,
                      financial_data: Optional[FinancialSignal] = None,
                      include: Iterable[SignalSource] = ALL_SOURCES) -> SignalBundle:
        include = set(include)
        fetches: Dict[SignalSource, Awaitable] = {}
        bundle = SignalBundle()

        if SignalSource.FINANCIAL in include:
            if financial_data is not None:
                bundle.financial = financial_data
            else:
                fetches[SignalSource.FINANCIAL] = self.financial_service.fetch_financials(prospect_id)

        if SignalSource.TRANSCRIPT in include and transcript_text:
            fetches[SignalSource.TRANSCRIPT] = self.transcript_service.extract(company_info, transcript_text)

        if SignalSource.MARKET in include and company_info.industry:
            fetches[SignalSource.MARKET] = self.market_service.fetch_indicators(company_info.industry)

        if not fetches:
            return bundle

        sources = list(fetches.keys())
        results = await asyncio.gather(
            *(self._fetch_with_timeout(source, fetches[source]) for source in sources),
            return_exceptions=True
        )

        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    f"Signal source {source} unavailable, continuing without it",
                    source=str(source),
                    error=str(result),
                    error_type=type(result).__name__
                )
                bundle.failed_sources.append(source)
                continue
            setattr(bundle, str(source), result)

        logger.info(
            "Signals collected",
            has_financial=bundle.financial is not None,
            has_transcript=bundle.transcript is not None,
            has_market=bundle.market is not None,
            failed_sources=[str(s) for s in bundle.failed_sources]
        )
        return bundle
