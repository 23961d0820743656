from enum import StrEnum
from typing import List, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from models.common import IntelPydanticBaseModel


class SignalSource(StrEnum):
    FINANCIAL = "financial"
    TRANSCRIPT = "transcript"
    MARKET = "market"


class DataQuality(StrEnum):
    LIVE = "live"
    ESTIMATED = "estimated"
    PARTIAL = "partial"


class CompanyInfo(IntelPydanticBaseModel):
    name: str = Field(..., description="Prospect company name, must not be blank.")
    industry: Optional[str] = Field(default=None, description="e.g. construction, retail, professional_services")


# ------------FINANCIALS------------


class FinancialSignal(IntelPydanticBaseModel):
    """Raw amounts from the accounting source. Ratios are derived by the normalizer on every run."""
    model_config = ConfigDict(allow_inf_nan=False)

    revenue: Optional[float] = Field(default=None)
    expenses: Optional[float] = Field(default=None)
    net_income: Optional[float] = Field(default=None)
    total_assets: Optional[float] = Field(default=None)
    total_liabilities: Optional[float] = Field(default=None)

    def missing_fields(self) -> List[str]:
        return [name for name, value in self if value is None]


# ------------TRANSCRIPT------------


class Influence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class _InsightSection(IntelPydanticBaseModel):
    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data):
        # Model output often carries null for an empty list
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class TranscriptSignal(IntelPydanticBaseModel):
    """Structured insight extracted from a sales call transcript. Every sub-field may be absent."""
    class PainPoints(_InsightSection):
        operational: List[str] = Field(default_factory=list)
        financial: List[str] = Field(default_factory=list)
        strategic: List[str] = Field(default_factory=list)
        technology: List[str] = Field(default_factory=list)

    class BusinessObjectives(_InsightSection):
        short_term: List[str] = Field(default_factory=list)
        long_term: List[str] = Field(default_factory=list)
        growth_targets: List[str] = Field(default_factory=list)
        efficiency: List[str] = Field(default_factory=list)

    class DecisionMaker(_InsightSection):
        name: Optional[str] = Field(default=None)
        role: Optional[str] = Field(default=None)
        influence: Influence = Field(default=Influence.LOW)

        @field_validator("influence", mode="before")
        @classmethod
        def _coerce_influence(cls, value):
            if isinstance(value, str) and value.strip().lower() in Influence._value2member_map_:
                return value.strip().lower()
            return Influence.LOW

    class UrgencySignals(_InsightSection):
        timeline: Optional[str] = Field(default=None, description="Free text, e.g. 'need this fixed ASAP'")
        pressure_points: List[str] = Field(default_factory=list)
        catalysts: List[str] = Field(default_factory=list)
        budget: Optional[str] = Field(default=None)

    class CompetitiveContext(_InsightSection):
        alternatives: List[str] = Field(default_factory=list)
        differentiators: List[str] = Field(default_factory=list)
        threats: List[str] = Field(default_factory=list)

    class SalesIntelligence(_InsightSection):
        buying_signals: List[str] = Field(default_factory=list)
        objections: List[str] = Field(default_factory=list)
        next_steps: List[str] = Field(default_factory=list)

    pain_points: Optional[PainPoints] = Field(default=None)
    business_objectives: Optional[BusinessObjectives] = Field(default=None)
    decision_makers: Optional[List[DecisionMaker]] = Field(default=None)
    urgency_signals: Optional[UrgencySignals] = Field(default=None)
    competitive_context: Optional[CompetitiveContext] = Field(default=None)
    sales_intelligence: Optional[SalesIntelligence] = Field(default=None)


# ------------MARKET------------


class Sentiment(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class MarketSignal(IntelPydanticBaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    industry_growth_rate: Optional[float] = Field(default=None, description="Percent, e.g. 3.2")
    average_wage: Optional[float] = Field(default=None, description="Hourly")
    productivity_index: Optional[float] = Field(default=None, description="100 is the national baseline")
    total_establishments: Optional[int] = Field(default=None)
    average_establishment_size: Optional[float] = Field(default=None)
    sentiment: Optional[Sentiment] = Field(default=None)


# ------------BUNDLES------------


class SignalBundle(IntelPydanticBaseModel):
    financial: Optional[FinancialSignal] = Field(default=None)
    transcript: Optional[TranscriptSignal] = Field(default=None)
    market: Optional[MarketSignal] = Field(default=None)
    failed_sources: List[SignalSource] = Field(default_factory=list)


class CanonicalSignals(IntelPydanticBaseModel):
    """Fully populated view of a SignalBundle. Scoring reads only this, so nothing here is optional."""
    industry: str = Field(default="")
    has_financials: bool = Field(default=False)
    data_quality: DataQuality = Field(default=DataQuality.ESTIMATED)

    revenue: float = Field(default=0.0)
    expenses: float = Field(default=0.0)
    net_income: float = Field(default=0.0)
    total_assets: float = Field(default=0.0)
    total_liabilities: float = Field(default=0.0)
    profit_margin: float = Field(default=0.0, description="Fraction, net income over revenue")
    current_ratio: float = Field(default=1.0)
    debt_to_asset_ratio: float = Field(default=0.0)

    buying_signals: List[str] = Field(default_factory=list)
    objections: List[str] = Field(default_factory=list)
    pressure_points: List[str] = Field(default_factory=list)
    competitive_alternatives: List[str] = Field(default_factory=list)
    short_term_objectives: List[str] = Field(default_factory=list)
    decision_makers: List[TranscriptSignal.DecisionMaker] = Field(default_factory=list)
    high_influence_decision_makers: int = Field(default=0)
    timeline: str = Field(default="")
    budget: str = Field(default="")

    has_market: bool = Field(default=False)
    growth_rate_known: bool = Field(default=False)
    industry_growth_rate: float = Field(default=0.0)
    productivity_index: float = Field(default=100.0)
    average_wage: float = Field(default=0.0)
    total_establishments: int = Field(default=0)
    average_establishment_size: float = Field(default=0.0)
