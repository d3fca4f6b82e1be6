#!/usr/bin/env python3
"""
Trend / Momentum Scorer (Ladder-Delta)
======================================
Folds the four DRIP window returns into one directional signal.

Window returns are first converted to per-week rates so that windows of
different length are comparable. Deltas run recent-minus-longer, so a
positive delta means performance is accelerating.

  base    = 0.60*r4 + 0.25*r13 + 0.10*r26 + 0.05*r52
  bonus   = 1.00*max(0,d1) + 0.70*max(0,d2) + 0.50*max(0,d3)
  penalty = 0.50*(max(0,-d1) + max(0,-d2) + max(0,-d3))
  score   = base + bonus - penalty

Buy  : score > 0.005 and d1, d2, d3 all > 0
Sell : score < 0 or d1 <= 0
Hold : otherwise

The three-way decision is blended 70/30 with an external oscillator
position into a five-level position in {-2..2}.
"""

from typing import Optional

from pydantic import BaseModel

from schemas import PERIOD_WEEKS

BASE_WEIGHTS = (0.60, 0.25, 0.10, 0.05)
BONUS_WEIGHTS = (1.00, 0.70, 0.50)
PENALTY_RATE = 0.50
BUY_THRESHOLD = 0.005

TREND_WEIGHT = 0.7
OSCILLATOR_WEIGHT = 0.3

RSI_OVERSOLD = 30
RSI_OVERBOUGHT = 70

BUY, HOLD, SELL = 1, 0, -1
SIGNAL_LABELS = {BUY: "Buy", HOLD: "Hold", SELL: "Sell"}
POSITION_LABELS = {2: "Strong Buy", 1: "Buy", 0: "Hold",
                   -1: "Sell", -2: "Strong Sell"}


class MomentumSignal(BaseModel):
    rates: tuple[float, float, float, float]
    deltas: tuple[float, float, float]
    base: float
    score: float
    signal: int
    position: int

    @property
    def label(self) -> str:
        return POSITION_LABELS[self.position]


def per_week_rates(drip4w, drip13w, drip26w, drip52w) -> tuple:
    vals = (drip4w, drip13w, drip26w, drip52w)
    weeks = (PERIOD_WEEKS["4w"], PERIOD_WEEKS["13w"],
             PERIOD_WEEKS["26w"], PERIOD_WEEKS["52w"])
    return tuple((v or 0.0) / w for v, w in zip(vals, weeks))


def ladder_deltas(rates: tuple) -> tuple:
    r4, r13, r26, r52 = rates
    return (r4 - r13, r13 - r26, r26 - r52)


def base_score(rates: tuple) -> float:
    return sum(w * r for w, r in zip(BASE_WEIGHTS, rates))


def ladder_delta_score(rates: tuple, deltas: tuple) -> float:
    bonus = sum(w * max(0.0, d) for w, d in zip(BONUS_WEIGHTS, deltas))
    penalty = PENALTY_RATE * sum(max(0.0, -d) for d in deltas)
    return base_score(rates) + bonus - penalty


def classify_trend(score: float, d1: float, d2: float, d3: float) -> int:
    if score > BUY_THRESHOLD and d1 > 0 and d2 > 0 and d3 > 0:
        return BUY
    if score < 0 or d1 <= 0:
        return SELL
    return HOLD


def oscillator_position(rsi: Optional[float]) -> int:
    """RSI below 30 is oversold (buy), above 70 overbought (sell)."""
    if rsi is None:
        return HOLD
    if rsi < RSI_OVERSOLD:
        return BUY
    if rsi > RSI_OVERBOUGHT:
        return SELL
    return HOLD


def blend_position(trend_signal: int, oscillator: int = HOLD) -> int:
    combined = TREND_WEIGHT * trend_signal + OSCILLATOR_WEIGHT * oscillator
    if combined >= 0.6:
        return 2
    if combined >= 0.2:
        return 1
    if combined >= -0.2:
        return 0
    if combined >= -0.6:
        return -1
    return -2


def momentum(drip4w, drip13w, drip26w, drip52w,
             oscillator: int = HOLD) -> MomentumSignal:
    """Ladder-Delta signal from four window percentages (None counts as 0)."""
    rates = per_week_rates(drip4w, drip13w, drip26w, drip52w)
    deltas = ladder_deltas(rates)
    score = ladder_delta_score(rates, deltas)
    signal = classify_trend(score, *deltas)
    return MomentumSignal(
        rates=rates, deltas=deltas, base=base_score(rates), score=score,
        signal=signal, position=blend_position(signal, oscillator),
    )
