"""
Keyword and threshold tables used by the scoring engine.

Tier tables are ordered (threshold, points) pairs; the first threshold the
value reaches wins. Swap in a different ScoringRules instance to retune the
engine without touching scoring code.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple

Tier = Tuple[Tuple[float, int], ...]

ESTIMATED_HEALTH_SCORE = 50
NEUTRAL_CURRENT_RATIO = 1.0


@dataclass(frozen=True)
class IndustryNorm:
    avg_profit_margin: float  # percent
    avg_current_ratio: float


DEFAULT_INDUSTRY_NORMS: Dict[str, IndustryNorm] = {
    'construction': IndustryNorm(avg_profit_margin=3.5, avg_current_ratio=1.8),
    'retail': IndustryNorm(avg_profit_margin=2.5, avg_current_ratio=1.5),
    'professional_services': IndustryNorm(avg_profit_margin=15.0, avg_current_ratio=2.0),
    'manufacturing': IndustryNorm(avg_profit_margin=8.0, avg_current_ratio=1.4),
}


def industry_key(industry: str) -> str:
    """'Professional Services' and 'professional-services' both map to 'professional_services'."""
    return (industry or '').strip().lower().replace('-', '_').replace(' ', '_')


@dataclass(frozen=True)
class ScoringRules:
    # Health, inclusive lower bounds. A company at exactly 1M revenue and a 20%
    # margin earns the 15 and 25 point bands, so a 1M/200K/500K/150K profile scores 67
    revenue_tiers: Tier = ((5_000_000, 20), (1_000_000, 15), (500_000, 10), (100_000, 5))
    profit_margin_tiers: Tier = ((0.20, 25), (0.15, 20), (0.10, 15), (0.05, 10))
    positive_margin_points: int = 5
    current_ratio_tiers: Tier = ((2.5, 15), (2.0, 12), (1.5, 8), (1.0, 5))
    # Exclusive upper bounds, lower leverage is better
    debt_to_asset_tiers: Tier = ((0.2, 15), (0.4, 12), (0.6, 8), (0.8, 4))
    growth_bonus_threshold: float = 5.0
    growth_bonus: int = 5
    contraction_penalty: int = 5
    estimated_health_score: int = ESTIMATED_HEALTH_SCORE

    # Closeability
    closeability_base: int = 50
    buying_signal_points: int = 8
    buying_signal_cap: int = 40
    urgent_timeline_points: int = 15
    high_influence_points: int = 20
    budget_points: int = 10
    tight_budget_marker: str = 'tight'
    objection_penalty: int = 5
    crowded_field_alternatives: int = 2
    crowded_field_penalty: int = 10

    # Urgency
    high_urgency_keywords: FrozenSet[str] = frozenset({'urgent', 'immediate', 'asap', 'crisis', 'critical'})
    medium_urgency_keywords: FrozenSet[str] = frozenset({'soon', 'quickly', 'priority', 'important'})
    high_pressure_points: int = 2
    medium_pressure_points: int = 0

    # Readiness
    ready_buying_signals: int = 3
    ready_max_objections: int = 1
    evaluating_buying_signals: int = 2

    # Financial profile grades
    grade_bands: Tuple[Tuple[int, str], ...] = ((85, 'A'), (70, 'B'), (55, 'C'), (40, 'D'))
    industry_norms: Dict[str, IndustryNorm] = field(default_factory=lambda: dict(DEFAULT_INDUSTRY_NORMS))

    # Priority assessment
    priority_base_urgency: int = 50
    priority_urgent_bonus: int = 30
    priority_pressure_bonus: int = 20
    high_priority_threshold: int = 80
    medium_priority_threshold: int = 60

    def norm_for(self, industry: str):
        return self.industry_norms.get(industry_key(industry))

    def neutral_current_ratio(self, industry: str) -> float:
        norm = self.norm_for(industry)
        return norm.avg_current_ratio if norm else NEUTRAL_CURRENT_RATIO


DEFAULT_RULES = ScoringRules()
