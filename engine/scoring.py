import math
from typing import Optional

from engine.errors import InvariantViolation
from engine.rules import DEFAULT_RULES, ScoringRules, Tier
from models.scores import (
    FinancialProfile,
    IndustryBenchmark,
    Priority,
    PriorityAssessment,
    ReadinessLevel,
    ScoreSet,
    UrgencyLevel,
)
from models.signals import CanonicalSignals
from utils.loguru_setup import logger

SCORE_MIN = 0
SCORE_MAX = 100

_URGENCY_RANK = {UrgencyLevel.LOW: 0, UrgencyLevel.MEDIUM: 1, UrgencyLevel.HIGH: 2}


def clamp(value: float, low: int = SCORE_MIN, high: int = SCORE_MAX) -> int:
    if math.isnan(value):
        return low
    return int(round(max(low, min(high, value))))


def _tier_points(value: float, tiers: Tier) -> int:
    for threshold, points in tiers:
        if value >= threshold:
            return points
    return 0


def _below_tier_points(value: float, tiers: Tier) -> int:
    for threshold, points in tiers:
        if value < threshold:
            return points
    return 0


def _timeline_urgency(timeline: str, rules: ScoringRules) -> UrgencyLevel:
    text = timeline.lower()
    if any(keyword in text for keyword in rules.high_urgency_keywords):
        return UrgencyLevel.HIGH
    if any(keyword in text for keyword in rules.medium_urgency_keywords):
        return UrgencyLevel.MEDIUM
    return UrgencyLevel.LOW


def market_adjustment(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES) -> int:
    if not signals.growth_rate_known:
        return 0
    if signals.industry_growth_rate >= rules.growth_bonus_threshold:
        return rules.growth_bonus
    if signals.industry_growth_rate < 0:
        return -rules.contraction_penalty
    return 0


def health_score(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES) -> int:
    if not signals.has_financials:
        return clamp(rules.estimated_health_score + market_adjustment(signals, rules))

    score = _tier_points(signals.revenue, rules.revenue_tiers)

    margin_points = _tier_points(signals.profit_margin, rules.profit_margin_tiers)
    if margin_points == 0 and signals.profit_margin > 0:
        margin_points = rules.positive_margin_points
    score += margin_points

    score += _tier_points(signals.current_ratio, rules.current_ratio_tiers)
    score += _below_tier_points(signals.debt_to_asset_ratio, rules.debt_to_asset_tiers)
    score += market_adjustment(signals, rules)
    return clamp(score)


def closeability_score(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES) -> int:
    score = rules.closeability_base
    score += min(len(signals.buying_signals) * rules.buying_signal_points, rules.buying_signal_cap)

    if _timeline_urgency(signals.timeline, rules) != UrgencyLevel.LOW:
        score += rules.urgent_timeline_points

    if signals.high_influence_decision_makers > 0:
        score += rules.high_influence_points

    if signals.budget and rules.tight_budget_marker not in signals.budget.lower():
        score += rules.budget_points

    score -= len(signals.objections) * rules.objection_penalty

    if len(signals.competitive_alternatives) > rules.crowded_field_alternatives:
        score -= rules.crowded_field_penalty

    return clamp(score)


def urgency_level(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES) -> UrgencyLevel:
    from_timeline = _timeline_urgency(signals.timeline, rules)

    pressure = len(signals.pressure_points)
    if pressure > rules.high_pressure_points:
        from_pressure = UrgencyLevel.HIGH
    elif pressure > rules.medium_pressure_points:
        from_pressure = UrgencyLevel.MEDIUM
    else:
        from_pressure = UrgencyLevel.LOW

    return max(from_timeline, from_pressure, key=_URGENCY_RANK.__getitem__)


def readiness_level(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES) -> ReadinessLevel:
    buying = len(signals.buying_signals)
    objections = len(signals.objections)
    high_influence = signals.high_influence_decision_makers

    if buying >= rules.ready_buying_signals and objections <= rules.ready_max_objections and high_influence >= 1:
        return ReadinessLevel.READY
    if buying >= rules.evaluating_buying_signals and high_influence >= 1:
        return ReadinessLevel.EVALUATING
    if buying >= 1 or signals.short_term_objectives:
        return ReadinessLevel.EXPLORING
    return ReadinessLevel.NOT_READY


def enforce_invariants(scores: ScoreSet, strict: bool = False) -> ScoreSet:
    """
    Check every number is within [0, 100] and every level is a defined literal.

    In strict mode any violation raises InvariantViolation. Otherwise values are
    clamped, unknown levels coerced to the lowest literal, and the violation is
    logged as an error.
    """
    violations = []
    values = {}

    for field_name in ('health_score', 'closeability_score'):
        value = getattr(scores, field_name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not SCORE_MIN <= value <= SCORE_MAX:
            violations.append(f"{field_name}={value!r}")
            value = clamp(value) if isinstance(value, (int, float)) else SCORE_MIN
        values[field_name] = int(value)

    for field_name, enum_type, lowest in (('urgency_level', UrgencyLevel, UrgencyLevel.LOW),
                                          ('readiness_level', ReadinessLevel, ReadinessLevel.NOT_READY)):
        value = getattr(scores, field_name)
        try:
            values[field_name] = enum_type(value)
        except ValueError:
            violations.append(f"{field_name}={value!r}")
            values[field_name] = lowest

    if violations:
        if strict:
            raise InvariantViolation(f"Score invariants violated: {', '.join(violations)}")
        logger.error("Score invariants violated, coerced into range", violations=violations)

    return ScoreSet(**values)


def score(signals: CanonicalSignals, rules: ScoringRules = DEFAULT_RULES, strict: bool = False) -> ScoreSet:
    """Compute the four composite scores. Each depends only on the canonical signals."""
    raw = ScoreSet.model_construct(
        health_score=health_score(signals, rules),
        closeability_score=closeability_score(signals, rules),
        urgency_level=urgency_level(signals, rules),
        readiness_level=readiness_level(signals, rules),
    )
    return enforce_invariants(raw, strict=strict)


# ------------FINANCIAL PROFILE------------


def performance_grade(health: int, rules: ScoringRules = DEFAULT_RULES) -> str:
    for threshold, grade in rules.grade_bands:
        if health >= threshold:
            return grade
    return 'F'


def _industry_benchmark(signals: CanonicalSignals, rules: ScoringRules) -> Optional[IndustryBenchmark]:
    norm = rules.norm_for(signals.industry)
    if norm is None:
        return None

    margin_percent = signals.profit_margin * 100
    percentile = clamp((margin_percent / norm.avg_profit_margin * 50 +
                        signals.current_ratio / norm.avg_current_ratio * 50) / 2)

    return IndustryBenchmark(
        industry=signals.industry,
        profit_margin_vs_industry=round(margin_percent - norm.avg_profit_margin, 2),
        current_ratio_vs_industry=round(signals.current_ratio - norm.avg_current_ratio, 2),
        performance_percentile=percentile,
    )


def financial_profile(signals: CanonicalSignals, health: int,
                      rules: ScoringRules = DEFAULT_RULES) -> FinancialProfile:
    if not signals.has_financials:
        return FinancialProfile()

    red_flags = []
    if signals.profit_margin < 0:
        red_flags.append("Negative profit margin - company is losing money")
    if signals.current_ratio < 1.0:
        red_flags.append("Current ratio below 1.0 - potential liquidity issues")
    if signals.debt_to_asset_ratio > 0.6:
        red_flags.append("High debt-to-asset ratio - financial leverage risk")
    if signals.revenue > 0 and signals.expenses / signals.revenue > 0.9:
        red_flags.append("Expenses exceed 90% of revenue - thin operating buffer")

    strengths = []
    if signals.profit_margin > 0.15:
        strengths.append("Strong profit margins above 15%")
    if signals.current_ratio > 2.0:
        strengths.append("Excellent liquidity position")
    if signals.debt_to_asset_ratio < 0.4:
        strengths.append("Conservative use of debt financing")
    if signals.revenue >= 1_000_000:
        strengths.append("Revenue above $1M establishes operating scale")

    return FinancialProfile(
        performance_grade=performance_grade(health, rules),
        red_flags=red_flags,
        strengths=strengths,
        benchmark=_industry_benchmark(signals, rules),
    )


# ------------PRIORITY------------


def priority_assessment(signals: CanonicalSignals, scores: ScoreSet,
                        rules: ScoringRules = DEFAULT_RULES) -> PriorityAssessment:
    urgency = rules.priority_base_urgency
    if 'urgent' in signals.timeline.lower():
        urgency += rules.priority_urgent_bonus
    if len(signals.pressure_points) > rules.high_pressure_points:
        urgency += rules.priority_pressure_bonus
    urgency = clamp(urgency)

    overall = clamp((scores.closeability_score + urgency + scores.health_score) / 3)

    if overall >= rules.high_priority_threshold:
        priority, recommendation = Priority.HIGH, "HIGH PRIORITY: Schedule audit call immediately"
    elif overall >= rules.medium_priority_threshold:
        priority, recommendation = Priority.MEDIUM, "MEDIUM PRIORITY: Nurture with value-add content"
    else:
        priority, recommendation = Priority.LOW, "LOW PRIORITY: Continue discovery and education"

    return PriorityAssessment(
        urgency_score=urgency,
        overall_score=overall,
        priority=priority,
        recommendation=recommendation,
    )
