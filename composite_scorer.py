#!/usr/bin/env python3
"""
Composite Scorer
================
Scales each fundamental and DRIP factor onto 0-100, combines them with
the relative ScoringWeights, then applies capped additive modifiers
(home bias, currency match, distribution cadence, leverage, small/young
fund and illiquidity). The Ladder-Delta momentum position enters the base
as a trend sub-score under the DRIP window weights.

compose() is a pure function of (instrument, sub-scores, weights, tax
context, modifier settings): no clocks, no I/O, no randomness.
"""

import logging
import re
from datetime import date, timedelta
from typing import Iterable, Optional

import numpy as np
from scipy.stats import variation

from schemas import (DividendEvent, DripResult, Instrument, ModifierSettings,
                     ScoreBreakdown, ScoringWeights, SubScores, TaxContext)
from trend_scorer import MomentumSignal

log = logging.getLogger("etf_ranker.composite")

NEUTRAL = 50.0
ESTIMATE_DISCOUNT = 0.5
WEEKLY_MAX_GAP_DAYS = 10
MONTHLY_MAX_GAP_DAYS = 35

_LEVERAGE_RE = re.compile(r"leverag|inverse|ultrapro|\b-?[23]x\b", re.IGNORECASE)


def clamp(v: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, v))


# =========================================================================
# Sub-scores (0-100, higher is better)
# =========================================================================

def return_subscore(inst: Instrument) -> float:
    if inst.total_return_1y is None or inst.total_return_1y <= 0:
        return 0.0
    return clamp(inst.total_return_1y * 2)          # 50% 1y return -> 100


def yield_subscore(inst: Instrument) -> float:
    if inst.yield_ttm is None or inst.yield_ttm <= 0:
        return 0.0
    return clamp(inst.yield_ttm * 10)               # 10% yield -> 100


def risk_subscore(inst: Instrument) -> float:
    if inst.volatility_1y is None or inst.volatility_1y <= 0:
        return NEUTRAL
    vol_score = clamp(100 - inst.volatility_1y * 5)
    if inst.max_drawdown_1y is None:
        return vol_score
    dd_score = clamp(100 + 2.5 * min(inst.max_drawdown_1y, 0.0))
    return 0.7 * vol_score + 0.3 * dd_score


def _trailing_year(dividends: list[DividendEvent], as_of: Optional[date]) -> list:
    if not dividends:
        return []
    as_of = as_of or max(d.ex_date for d in dividends)
    start = as_of - timedelta(days=364)
    return sorted((d for d in dividends if start < d.ex_date <= as_of),
                  key=lambda d: d.ex_date)


def dividend_stability_subscore(dividends: Iterable[DividendEvent],
                                as_of: Optional[date] = None) -> float:
    events = _trailing_year(list(dividends), as_of)
    if not events:
        return 0.0
    if len(events) == 1:
        return NEUTRAL
    cv = float(variation(np.array([e.amount for e in events])))
    if not np.isfinite(cv):
        return 0.0
    return 100 * (1 - min(1.0, cv))


def infer_distribution_frequency(dividends: Iterable[DividendEvent],
                                 as_of: Optional[date] = None) -> Optional[str]:
    events = _trailing_year(list(dividends), as_of)
    if len(events) < 2:
        return None
    gaps = np.diff([e.ex_date.toordinal() for e in events])
    gap = float(np.median(gaps))
    if gap <= WEEKLY_MAX_GAP_DAYS:
        return "weekly"
    if gap <= MONTHLY_MAX_GAP_DAYS:
        return "monthly"
    if gap <= 100:
        return "quarterly"
    if gap <= 200:
        return "semiannual"
    return "annual"


def period_subscore(res: Optional[DripResult], annualize: float) -> float:
    """Window return annualized around neutral 50; estimates are discounted."""
    if res is None or res.percent is None:
        return NEUTRAL
    score = clamp(NEUTRAL + res.percent * annualize)
    if res.is_estimated:
        score = NEUTRAL + ESTIMATE_DISCOUNT * (score - NEUTRAL)
    return score


def trend_subscore(position: int) -> float:
    """Five-level position (-2..2) mapped onto 0-100; Hold is 50."""
    return (position + 2) / 4 * 100


def build_subscores(inst: Instrument, drip: dict,
                    signal: Optional[MomentumSignal] = None,
                    dividends: Iterable[DividendEvent] = (),
                    as_of: Optional[date] = None) -> SubScores:
    real_drip = any(r.percent is not None and not r.is_estimated
                    for r in drip.values())
    return SubScores(
        return_score=return_subscore(inst),
        yield_score=yield_subscore(inst),
        risk_score=risk_subscore(inst),
        dividend_stability=dividend_stability_subscore(dividends, as_of),
        period_4w_score=period_subscore(drip.get("4w"), 13.0),
        period_52w_score=period_subscore(drip.get("52w"), 1.0),
        trend_score=trend_subscore(signal.position if signal is not None else 0),
        momentum_score=signal.score if signal is not None else 0.0,
        momentum_position=signal.position if signal is not None else 0,
        has_data=inst.has_fundamentals() or real_drip,
    )


# =========================================================================
# Modifiers
# =========================================================================

def is_leveraged(inst: Instrument) -> bool:
    if inst.is_leveraged is not None:
        return inst.is_leveraged
    text = f"{inst.name or ''} {inst.category or ''}"
    return bool(_LEVERAGE_RE.search(text))


def compute_modifiers(inst: Instrument, weights: ScoringWeights,
                      tax: TaxContext, settings: ModifierSettings) -> dict:
    mods = {}
    if inst.country == tax.country:
        mods["home_bias"] = min(weights.home_country_bias, settings.cap_home_bias)
    if inst.currency == tax.home_currency:
        mods["currency"] = settings.cap_currency

    freq = inst.distribution_frequency
    if freq == "weekly":
        mods["cadence"] = settings.weekly_bonus
    elif freq == "monthly":
        mods["cadence"] = settings.monthly_bonus

    if is_leveraged(inst):
        mods["leverage"] = -settings.leverage_penalty

    size_age = 0.0
    if inst.aum is not None and settings.aum_min_usd > 0 and inst.aum < settings.aum_min_usd:
        size_age += settings.cap_aum_age * (1 - inst.aum / settings.aum_min_usd)
    if (inst.fund_age_days is not None and settings.age_min_days > 0
            and inst.fund_age_days < settings.age_min_days):
        size_age += settings.cap_aum_age * (1 - inst.fund_age_days / settings.age_min_days)
    if size_age > 0:
        mods["size_age"] = -min(size_age, settings.cap_aum_age)

    if inst.avg_volume is not None and inst.current_price and settings.addv_min_usd > 0:
        addv = inst.avg_volume * inst.current_price
        if addv < settings.addv_min_usd:
            mods["illiquidity"] = -settings.cap_illiquidity * (1 - addv / settings.addv_min_usd)
    return mods


# =========================================================================
# Composite
# =========================================================================

def weighted_base(sub: SubScores, weights: ScoringWeights) -> float:
    pairs = [
        (weights.return_weight, sub.return_score),
        (weights.yield_weight, sub.yield_score),
        (weights.risk, sub.risk_score),
        (weights.dividend_stability, sub.dividend_stability),
        (weights.period_4w, sub.period_4w_score),
        (weights.period_52w, sub.period_52w_score),
        # DRIP window weights also carry the Ladder-Delta shape of those windows
        (weights.period_4w + weights.period_52w, sub.trend_score),
    ]
    total_w = sum(w for w, _ in pairs)
    if total_w <= 0:
        return 0.0
    return sum(w * s for w, s in pairs) / total_w


def compose(inst: Instrument, sub: SubScores, weights: ScoringWeights,
            tax: Optional[TaxContext] = None,
            settings: Optional[ModifierSettings] = None) -> float:
    """Weighted composite plus capped modifiers; 0.0 for an empty row."""
    if not sub.has_data:
        return 0.0
    tax = tax or TaxContext()
    settings = settings or ModifierSettings()
    mods = compute_modifiers(inst, weights, tax, settings)
    return round(weighted_base(sub, weights) + sum(mods.values()), 6)


def score_breakdown(inst: Instrument, sub: SubScores, weights: ScoringWeights,
                    tax: Optional[TaxContext] = None,
                    settings: Optional[ModifierSettings] = None,
                    drip: Optional[dict] = None) -> ScoreBreakdown:
    tax = tax or TaxContext()
    settings = settings or ModifierSettings()
    mods = compute_modifiers(inst, weights, tax, settings) if sub.has_data else {}
    return ScoreBreakdown(
        ticker=inst.ticker,
        weights_hash=weights.weights_hash(),
        subscores=sub,
        home_bias=mods.get("home_bias", 0.0),
        modifiers=mods,
        composite=compose(inst, sub, weights, tax, settings),
        has_estimates=any(r.is_estimated for r in (drip or {}).values()),
    )
