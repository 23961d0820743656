from unittest.mock import AsyncMock, patch

import httpx
import pytest

from engine.errors import UpstreamUnavailable
from models.signals import SignalSource
from services.financial_data_service import FinancialDataService
from utils.connection_pool import ConnectionPool


@pytest.fixture(autouse=True)
def no_backoff_sleep():
    with patch("asyncio.sleep", AsyncMock()):
        yield


def _service(handler, base_url="https://accounting.test/api") -> FinancialDataService:
    pool = ConnectionPool(transport=httpx.MockTransport(handler))
    return FinancialDataService(base_url, api_token="secret", pool=pool)


@pytest.mark.asyncio
async def test_fetch_financials_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"revenue": 1_000_000, "net_income": 200_000, "total_assets": 500_000})

    result = await _service(handler).fetch_financials("p-1")

    assert result.revenue == 1_000_000
    assert result.total_liabilities is None
    assert seen["url"] == "https://accounting.test/api/companies/p-1/financials"
    assert seen["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_not_found_returns_none():
    result = await _service(lambda request: httpx.Response(404)).fetch_financials("p-1")

    assert result is None


@pytest.mark.asyncio
async def test_unconfigured_returns_none():
    service = FinancialDataService(None)

    assert await service.fetch_financials("p-1") is None


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_unavailable():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(503)

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await _service(handler).fetch_financials("p-1")

    assert exc_info.value.source == SignalSource.FINANCIAL
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_transient_error_recovers():
    responses = iter([httpx.Response(502), httpx.Response(200, json={"revenue": 10})])

    result = await _service(lambda request: next(responses)).fetch_financials("p-1")

    assert result.revenue == 10


@pytest.mark.asyncio
async def test_client_error_not_retried():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(401)

    with pytest.raises(UpstreamUnavailable):
        await _service(handler).fetch_financials("p-1")

    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_connection_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(UpstreamUnavailable, match="connection refused"):
        await _service(handler).fetch_financials("p-1")


@pytest.mark.asyncio
async def test_malformed_payload_is_unavailable():
    result_service = _service(lambda request: httpx.Response(200, json={"revenue": "lots"}))

    with pytest.raises(UpstreamUnavailable, match="Malformed"):
        await result_service.fetch_financials("p-1")


@pytest.mark.asyncio
async def test_non_finite_amounts_are_unavailable():
    def handler(request):
        return httpx.Response(
            200,
            content=b'{"revenue": Infinity, "net_income": NaN}',
            headers={"Content-Type": "application/json"},
        )

    with pytest.raises(UpstreamUnavailable, match="Malformed financials payload") as exc_info:
        await _service(handler).fetch_financials("p-1")

    assert exc_info.value.source == SignalSource.FINANCIAL
