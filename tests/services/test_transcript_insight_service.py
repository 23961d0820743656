import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from engine.errors import UpstreamUnavailable
from models.signals import CompanyInfo, Influence, SignalSource
from services.transcript_insight_service import TranscriptInsightService


@pytest.fixture(autouse=True)
def no_backoff_sleep():
    with patch("asyncio.sleep", AsyncMock()):
        yield


def _completion(content):
    response = MagicMock()
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response.choices = [choice]
    return response


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def service(openai_client):
    return TranscriptInsightService(api_key=None, model_name="gpt-4o-mini", client=openai_client)


@pytest.fixture
def company():
    return CompanyInfo(name="Acme Builders", industry="construction")


@pytest.mark.asyncio
async def test_extract_parses_json_mode_response(service, openai_client, company):
    # Arrange
    openai_client.chat.completions.create.return_value = _completion(json.dumps({
        "decision_makers": [{"name": "Dana", "role": "CEO", "influence": "High"}],
        "urgency_signals": {"timeline": "ASAP", "pressure_points": ["lender covenant review"], "budget": None},
        "sales_intelligence": {"buying_signals": ["asked for pricing"], "objections": None},
    }))

    # Act
    signal = await service.extract(company, "Dana: we need clean books ASAP for the bank.")

    # Assert
    assert signal.decision_makers[0].influence == Influence.HIGH
    assert signal.urgency_signals.timeline == "ASAP"
    assert signal.sales_intelligence.objections == []
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "Acme Builders" in kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_extract_repairs_broken_json(service, openai_client, company):
    openai_client.chat.completions.create.return_value = _completion(
        '{"sales_intelligence": {"buying_signals": ["asked for proposal"]'
    )

    signal = await service.extract(company, "notes")

    assert signal.sales_intelligence.buying_signals == ["asked for proposal"]


@pytest.mark.asyncio
async def test_blank_transcript_skips_model(service, openai_client, company):
    assert await service.extract(company, "   ") is None

    openai_client.chat.completions.create.assert_not_called()


@pytest.mark.asyncio
async def test_unconfigured_returns_none(company):
    service = TranscriptInsightService(api_key=None)

    assert service.configured is False
    assert await service.extract(company, "notes") is None


@pytest.mark.asyncio
async def test_empty_responses_exhaust_retries(service, openai_client, company):
    openai_client.chat.completions.create.return_value = _completion("")

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await service.extract(company, "notes")

    assert exc_info.value.source == SignalSource.TRANSCRIPT
    assert openai_client.chat.completions.create.await_count == 3


@pytest.mark.asyncio
async def test_non_object_json_is_unavailable(service, openai_client, company):
    openai_client.chat.completions.create.return_value = _completion('["just", "a", "list"]')

    with pytest.raises(UpstreamUnavailable):
        await service.extract(company, "notes")


@pytest.mark.asyncio
async def test_close_releases_client(service, openai_client):
    openai_client.close = AsyncMock()

    await service.close()

    openai_client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_without_client_is_noop():
    await TranscriptInsightService(api_key=None).close()
