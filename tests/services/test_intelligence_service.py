from unittest.mock import AsyncMock, MagicMock

import pytest

from engine.errors import InputValidationError, PersistenceFailure
from models.scores import AnalysisType, IntelligenceRequest, ReadinessLevel, UrgencyLevel
from models.signals import (
    CompanyInfo,
    DataQuality,
    FinancialSignal,
    SignalBundle,
    SignalSource,
    TranscriptSignal,
)
from services.intelligence_service import IntelligenceService, parse_analysis_type
from services.score_cache import InMemoryScoreCache


@pytest.fixture
def scenario_a_financials():
    return FinancialSignal(
        revenue=1_000_000,
        expenses=600_000,
        net_income=200_000,
        total_assets=500_000,
        total_liabilities=150_000,
    )


@pytest.fixture
def collector():
    collector = MagicMock()
    collector.collect = AsyncMock(return_value=SignalBundle())
    return collector


@pytest.fixture
def score_cache():
    return InMemoryScoreCache()


@pytest.fixture
def service(collector, score_cache):
    return IntelligenceService(collector, score_cache, strict_invariants=True)


def _request(**overrides) -> IntelligenceRequest:
    fields = {"company_info": CompanyInfo(name="Acme Builders", industry="construction")}
    fields.update(overrides)
    return IntelligenceRequest(**fields)


@pytest.mark.asyncio
async def test_scenario_a_end_to_end(service, collector, scenario_a_financials):
    # Arrange
    collector.collect = AsyncMock(return_value=SignalBundle(financial=scenario_a_financials))

    # Act
    result = await service.compute_intelligence("p-1", _request(financial_data=scenario_a_financials))

    # Assert
    assert result.scores.health_score == 67
    assert result.scores.closeability_score == 50
    assert result.scores.urgency_level == UrgencyLevel.LOW
    assert result.scores.readiness_level == ReadinessLevel.NOT_READY
    assert result.data_quality == DataQuality.LIVE
    assert result.financial_profile.performance_grade == "C"
    assert result.cached is True
    assert result.recommendations.next_steps[-1] == "Update CRM with analysis findings and recommended approach"


@pytest.mark.asyncio
async def test_scenario_c_estimated_with_standing_offers(service, collector):
    collector.collect = AsyncMock(return_value=SignalBundle(
        transcript=TranscriptSignal(sales_intelligence={"buying_signals": ["asked about price"]})
    ))

    result = await service.compute_intelligence("p-1", _request(transcript_text="call notes"))

    assert result.data_quality == DataQuality.ESTIMATED
    assert result.scores.health_score == 50
    assert len(result.recommendations.opportunities) >= 3
    assert result.financial_profile.performance_grade is None


@pytest.mark.asyncio
async def test_analysis_type_selects_sources(service, collector):
    await service.compute_intelligence("p-1", _request(analysis_type="sales-readiness", transcript_text="x"))

    include = collector.collect.call_args.kwargs["include"]
    assert include == frozenset({SignalSource.TRANSCRIPT})


@pytest.mark.asyncio
async def test_failed_sources_surface_in_result(service, collector):
    collector.collect = AsyncMock(return_value=SignalBundle(failed_sources=[SignalSource.MARKET]))

    result = await service.compute_intelligence("p-1", _request())

    assert result.failed_sources == [SignalSource.MARKET]


@pytest.mark.asyncio
@pytest.mark.parametrize("prospect_id,name", [("", "Acme"), ("  ", "Acme"), ("p-1", ""), ("p-1", "   ")])
async def test_missing_identity_rejected_before_any_work(service, collector, prospect_id, name):
    with pytest.raises(InputValidationError):
        await service.compute_intelligence(prospect_id, _request(company_info=CompanyInfo(name=name)))

    collector.collect.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_analysis_type_rejected(service, collector):
    with pytest.raises(InputValidationError, match="Unknown analysis type"):
        await service.compute_intelligence("p-1", _request(analysis_type="vibes"))

    collector.collect.assert_not_called()


@pytest.mark.asyncio
async def test_cache_failure_is_not_fatal(collector):
    failing_cache = MagicMock()
    failing_cache.upsert_latest_score = AsyncMock(side_effect=PersistenceFailure("bigquery down"))
    service = IntelligenceService(collector, failing_cache)

    result = await service.compute_intelligence("p-1", _request())

    assert result.cached is False
    assert result.scores.health_score == 50


@pytest.mark.asyncio
async def test_latest_score_round_trip(service, collector, scenario_a_financials):
    collector.collect = AsyncMock(return_value=SignalBundle(financial=scenario_a_financials))
    computed = await service.compute_intelligence("p-1", _request())

    latest = await service.get_latest_score("p-1")
    by_type = await service.get_latest_score("p-1", "comprehensive")
    other_type = await service.get_latest_score("p-1", "financial-health")

    assert latest == computed
    assert by_type == computed
    assert other_type is None


def test_parse_analysis_type_defaults_to_comprehensive():
    assert parse_analysis_type(None) == AnalysisType.COMPREHENSIVE
    assert parse_analysis_type("financial-health") == AnalysisType.FINANCIAL_HEALTH
