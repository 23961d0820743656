from typing import Dict, FrozenSet, Optional

from engine.errors import InputValidationError, PersistenceFailure
from engine.normalizer import normalize
from engine.recommendations import recommend
from engine.rules import DEFAULT_RULES, ScoringRules
from engine.scoring import financial_profile, priority_assessment, score
from models.scores import AnalysisType, IntelligenceRequest, IntelligenceResult
from models.signals import SignalSource
from services.score_cache import ScoreCache
from services.signal_collector import SignalCollector
from utils.loguru_setup import logger, operation_var, prospect_id_var

SOURCES_BY_ANALYSIS: Dict[AnalysisType, FrozenSet[SignalSource]] = {
    AnalysisType.COMPREHENSIVE: frozenset(SignalSource),
    AnalysisType.FINANCIAL_HEALTH: frozenset({SignalSource.FINANCIAL, SignalSource.MARKET}),
    AnalysisType.SALES_READINESS: frozenset({SignalSource.TRANSCRIPT}),
}


def parse_analysis_type(analysis_type: Optional[str]) -> AnalysisType:
    if not analysis_type:
        return AnalysisType.COMPREHENSIVE
    try:
        return AnalysisType(analysis_type)
    except ValueError:
        raise InputValidationError(
            f"Unknown analysis type '{analysis_type}'. "
            f"Expected one of: {', '.join(a.value for a in AnalysisType)}"
        )


class IntelligenceService:
    """Collect, normalize, score and recommend for one prospect, then cache the result."""

    def __init__(self, collector: SignalCollector, score_cache: ScoreCache,
                 rules: ScoringRules = DEFAULT_RULES, strict_invariants: bool = False):
        self.collector = collector
        self.score_cache = score_cache
        self.rules = rules
        self.strict_invariants = strict_invariants

    async def compute_intelligence(self, prospect_id: str, request: IntelligenceRequest) -> IntelligenceResult:
        if not prospect_id or not prospect_id.strip():
            raise InputValidationError("prospect_id is required")
        if not request.company_info.name or not request.company_info.name.strip():
            raise InputValidationError("company_info.name is required")
        analysis_type = parse_analysis_type(request.analysis_type)

        prospect_token = prospect_id_var.set(prospect_id)
        operation_token = operation_var.set("compute_intelligence")
        try:
            logger.info("Computing prospect intelligence", analysis_type=analysis_type.value)

            bundle = await self.collector.collect(
                prospect_id,
                request.company_info,
                transcript_text=request.transcript_text,
                financial_data=request.financial_data,
                include=SOURCES_BY_ANALYSIS[analysis_type],
            )
            signals = normalize(bundle, request.company_info, self.rules)
            scores = score(signals, self.rules, strict=self.strict_invariants)

            result = IntelligenceResult(
                prospect_id=prospect_id,
                analysis_type=analysis_type,
                scores=scores,
                recommendations=recommend(signals, scores),
                financial_profile=financial_profile(signals, scores.health_score, self.rules),
                priority=priority_assessment(signals, scores, self.rules),
                data_quality=signals.data_quality,
                failed_sources=list(bundle.failed_sources),
            )

            try:
                cached_result = result.model_copy(update={'cached': True})
                await self.score_cache.upsert_latest_score(prospect_id, analysis_type.value, cached_result)
                result = cached_result
            except PersistenceFailure as e:
                logger.warning(f"Result not cached, returning it anyway: {str(e)}")

            logger.info(
                "Prospect intelligence computed",
                health_score=scores.health_score,
                closeability_score=scores.closeability_score,
                urgency_level=scores.urgency_level.value,
                readiness_level=scores.readiness_level.value,
                data_quality=signals.data_quality.value,
                cached=result.cached
            )
            return result
        finally:
            operation_var.reset(operation_token)
            prospect_id_var.reset(prospect_token)

    async def get_latest_score(self, prospect_id: str,
                               analysis_type: Optional[str] = None) -> Optional[IntelligenceResult]:
        if not prospect_id or not prospect_id.strip():
            raise InputValidationError("prospect_id is required")
        a_type = parse_analysis_type(analysis_type).value if analysis_type else None
        return await self.score_cache.get_latest_score(prospect_id, a_type)
