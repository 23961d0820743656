from typing import List

from models.scores import Difficulty, OpportunityRecord, RecommendationBundle, ScoreSet, UrgencyLevel
from models.signals import CanonicalSignals

NO_MAJOR_RISKS = "No major risk factors identified"
ESTIMATED_SUFFIX = " (estimated, no financial data)"
UPDATE_CRM = "Update CRM with analysis findings and recommended approach"


def _next_steps(signals: CanonicalSignals, scores: ScoreSet) -> List[str]:
    steps = []

    if scores.urgency_level == UrgencyLevel.HIGH:
        steps.append("URGENT: Emphasize immediate financial risks in all communications")

    if scores.closeability_score >= 80:
        steps.append("HIGH PRIORITY: Schedule audit presentation within 2-3 business days")
        steps.append("Prepare customized audit deck with specific findings and ROI projections")
    elif scores.closeability_score >= 50:
        steps.append("MEDIUM PRIORITY: Address identified objections in follow-up email")
        steps.append("Schedule audit call within one week with additional discovery")
    else:
        steps.append("DISCOVERY NEEDED: Schedule additional discovery call to understand concerns")
        steps.append("Send educational content to build trust and credibility")

    if signals.competitive_alternatives:
        steps.append("Prepare competitive differentiation materials")
    if len(signals.decision_makers) > 1:
        steps.append("Plan multi-stakeholder presentation strategy")
    if signals.timeline:
        steps.append(f"Follow up according to their timeline: {signals.timeline}")

    steps.append(UPDATE_CRM)
    return steps


def _risk_factors(signals: CanonicalSignals, scores: ScoreSet) -> List[str]:
    risks = []
    # Without financials these fire on the neutral placeholders
    suffix = "" if signals.has_financials else ESTIMATED_SUFFIX

    if scores.health_score < 60:
        risks.append("Low profitability margins may limit investment capacity" + suffix)
    if signals.debt_to_asset_ratio > 0.6:
        risks.append("High debt levels could impact decision-making flexibility" + suffix)
    if signals.current_ratio < 1.2:
        risks.append("Liquidity concerns may affect payment terms" + suffix)

    if signals.growth_rate_known and signals.industry_growth_rate < 0:
        risks.append("Industry is contracting - budgets may be under pressure")
    if signals.total_establishments > 100_000:
        risks.append("Highly saturated market - high competition")
    if signals.average_establishment_size > 100:
        risks.append("Dominated by large competitors - scale disadvantage")
    if signals.has_market and signals.productivity_index < 95:
        risks.append("Below-average industry productivity")
    if signals.average_wage > 45:
        risks.append("High industry wages - labor cost pressure")

    return risks or [NO_MAJOR_RISKS]


def _opportunities(signals: CanonicalSignals) -> List[OpportunityRecord]:
    opportunities = [
        OpportunityRecord(
            category="Cash Management",
            title="Working Capital Optimization",
            potential_value=round(signals.revenue * 0.03),
            difficulty=Difficulty.MEDIUM,
            description="Optimize accounts receivable and payable cycles to improve cash flow by 30-60 days",
        ),
        OpportunityRecord(
            category="Financial Reporting",
            title="Monthly Close Process",
            potential_value=50_000,
            difficulty=Difficulty.MEDIUM,
            description="Streamline month-end close to deliver timely, decision-ready financials",
        ),
        OpportunityRecord(
            category="Cost Management",
            title="Expense Category Review",
            potential_value=round(signals.expenses * 0.08),
            difficulty=Difficulty.LOW,
            description="Analyze expense categories to identify cost reduction opportunities",
        ),
    ]

    if signals.revenue >= 1_000_000:
        opportunities.append(OpportunityRecord(
            category="Strategic Planning",
            title="KPI Dashboard Implementation",
            potential_value=round(signals.revenue * 0.02),
            difficulty=Difficulty.MEDIUM,
            description="Implement real-time financial dashboards for better decision making",
        ))

    if signals.has_financials and signals.profit_margin < 0.10:
        opportunities.append(OpportunityRecord(
            category="Pricing Strategy",
            title="Pricing Model Optimization",
            potential_value=round(signals.revenue * 0.10),
            difficulty=Difficulty.HIGH,
            description="Review pricing strategy to improve profit margins",
        ))

    return opportunities


def recommend(signals: CanonicalSignals, scores: ScoreSet) -> RecommendationBundle:
    """Deterministic next steps, risk factors and opportunities. Same inputs always give the same order."""
    return RecommendationBundle(
        next_steps=_next_steps(signals, scores),
        risk_factors=_risk_factors(signals, scores),
        opportunities=_opportunities(signals),
    )
