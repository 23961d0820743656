from datetime import datetime, timezone
from enum import StrEnum
from typing import List, Optional

from pydantic import Field

from models.common import IntelPydanticBaseModel
from models.signals import CompanyInfo, DataQuality, FinancialSignal, SignalSource


class AnalysisType(StrEnum):
    COMPREHENSIVE = "comprehensive"
    FINANCIAL_HEALTH = "financial-health"
    SALES_READINESS = "sales-readiness"


class UrgencyLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReadinessLevel(StrEnum):
    NOT_READY = "not-ready"
    EXPLORING = "exploring"
    EVALUATING = "evaluating"
    READY = "ready"


class Difficulty(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ScoreSet(IntelPydanticBaseModel):
    """Composite scores for one prospect. Numbers are always within [0, 100]."""
    health_score: int = Field(..., description="Financial health, 0-100")
    closeability_score: int = Field(..., description="Likelihood to close, 0-100")
    urgency_level: UrgencyLevel
    readiness_level: ReadinessLevel


# ------------RECOMMENDATIONS------------


class OpportunityRecord(IntelPydanticBaseModel):
    category: str
    title: str
    potential_value: int = Field(..., description="Estimated annual value in currency units")
    difficulty: Difficulty
    description: str


class RecommendationBundle(IntelPydanticBaseModel):
    next_steps: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    opportunities: List[OpportunityRecord] = Field(default_factory=list)


# ------------PROFILE & PRIORITY------------


class IndustryBenchmark(IntelPydanticBaseModel):
    industry: str
    profit_margin_vs_industry: float = Field(..., description="Prospect margin percent minus industry average")
    current_ratio_vs_industry: float = Field(..., description="Prospect current ratio minus industry average")
    performance_percentile: int = Field(..., description="0-100")


class FinancialProfile(IntelPydanticBaseModel):
    performance_grade: Optional[str] = Field(default=None, description="A-F, absent when financials were estimated")
    red_flags: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    benchmark: Optional[IndustryBenchmark] = Field(default=None)


class PriorityAssessment(IntelPydanticBaseModel):
    urgency_score: int
    overall_score: int
    priority: Priority
    recommendation: str


# ------------REQUEST / RESULT------------


class IntelligenceRequest(IntelPydanticBaseModel):
    company_info: CompanyInfo
    transcript_text: Optional[str] = Field(default=None)
    financial_data: Optional[FinancialSignal] = Field(default=None)
    analysis_type: str = Field(default=AnalysisType.COMPREHENSIVE.value)


class IntelligenceResult(IntelPydanticBaseModel):
    prospect_id: str
    analysis_type: AnalysisType
    scores: ScoreSet
    recommendations: RecommendationBundle
    financial_profile: FinancialProfile
    priority: PriorityAssessment
    data_quality: DataQuality
    failed_sources: List[SignalSource] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = Field(default=False, description="Whether the result was durably written to the score cache")
