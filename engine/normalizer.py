import math
from typing import Optional

from engine.rules import DEFAULT_RULES, ScoringRules, industry_key
from models.signals import (
    CanonicalSignals,
    CompanyInfo,
    DataQuality,
    FinancialSignal,
    Influence,
    MarketSignal,
    SignalBundle,
    TranscriptSignal,
)
from utils.loguru_setup import logger


def _amount(value: Optional[float]) -> float:
    return float(value) if value is not None else 0.0


def _non_negative(name: str, value: Optional[float]) -> float:
    amount = _amount(value)
    if amount < 0:
        logger.warning("Negative amount floored to 0", field=name, value=amount)
        return 0.0
    return amount


def _ratio(numerator: float, denominator: float, fallback: float) -> float:
    if denominator <= 0:
        return fallback
    ratio = numerator / denominator
    return ratio if math.isfinite(ratio) else fallback


def _financial_fields(financial: Optional[FinancialSignal], industry: str, rules: ScoringRules) -> dict:
    neutral_current_ratio = rules.neutral_current_ratio(industry)
    if financial is None:
        return {
            'has_financials': False,
            'current_ratio': neutral_current_ratio,
        }

    # Net income is the only amount that can legitimately be negative
    revenue = _non_negative('revenue', financial.revenue)
    net_income = _amount(financial.net_income)
    assets = _non_negative('total_assets', financial.total_assets)
    liabilities = _non_negative('total_liabilities', financial.total_liabilities)

    return {
        'has_financials': True,
        'revenue': revenue,
        'expenses': _non_negative('expenses', financial.expenses),
        'net_income': net_income,
        'total_assets': assets,
        'total_liabilities': liabilities,
        'profit_margin': _ratio(net_income, revenue, 0.0),
        'current_ratio': _ratio(assets, liabilities, neutral_current_ratio),
        'debt_to_asset_ratio': _ratio(liabilities, assets, 0.0),
    }


def _transcript_fields(transcript: Optional[TranscriptSignal]) -> dict:
    if transcript is None:
        return {}

    sales = transcript.sales_intelligence or TranscriptSignal.SalesIntelligence()
    urgency = transcript.urgency_signals or TranscriptSignal.UrgencySignals()
    competition = transcript.competitive_context or TranscriptSignal.CompetitiveContext()
    objectives = transcript.business_objectives or TranscriptSignal.BusinessObjectives()
    decision_makers = list(transcript.decision_makers or [])

    return {
        'buying_signals': list(sales.buying_signals),
        'objections': list(sales.objections),
        'pressure_points': list(urgency.pressure_points),
        'competitive_alternatives': list(competition.alternatives),
        'short_term_objectives': list(objectives.short_term),
        'decision_makers': decision_makers,
        'high_influence_decision_makers': sum(1 for dm in decision_makers if dm.influence == Influence.HIGH),
        'timeline': (urgency.timeline or '').strip(),
        'budget': (urgency.budget or '').strip(),
    }


def _market_fields(market: Optional[MarketSignal]) -> dict:
    if market is None:
        return {}

    fields = {'has_market': True}
    if market.industry_growth_rate is not None:
        fields['growth_rate_known'] = True
        fields['industry_growth_rate'] = float(market.industry_growth_rate)
    if market.productivity_index is not None:
        fields['productivity_index'] = float(market.productivity_index)
    if market.average_wage is not None:
        fields['average_wage'] = float(market.average_wage)
    if market.total_establishments is not None:
        fields['total_establishments'] = int(market.total_establishments)
    if market.average_establishment_size is not None:
        fields['average_establishment_size'] = float(market.average_establishment_size)
    return fields


def _data_quality(bundle: SignalBundle) -> DataQuality:
    if bundle.financial is None:
        return DataQuality.ESTIMATED
    if bundle.financial.missing_fields() or bundle.failed_sources:
        return DataQuality.PARTIAL
    return DataQuality.LIVE


def normalize(bundle: SignalBundle, company_info: CompanyInfo,
              rules: ScoringRules = DEFAULT_RULES) -> CanonicalSignals:
    """
    Turn a partially populated SignalBundle into CanonicalSignals.

    Every fallback lives here: missing amounts are 0, negative amounts other
    than net income are floored at 0, ratios with a zero denominator (or an
    overflowing result) fall back to a neutral value, a missing transcript
    yields empty lists and blank timeline/budget, and a missing market bundle
    leaves growth unknown so market terms contribute nothing.
    """
    industry = industry_key(company_info.industry or '')

    return CanonicalSignals(
        industry=industry,
        data_quality=_data_quality(bundle),
        **_financial_fields(bundle.financial, industry, rules),
        **_transcript_fields(bundle.transcript),
        **_market_fields(bundle.market),
    )
