#!/usr/bin/env python3
"""
DRIP Calculator
===============
Dividend-reinvested total return over the fixed 4 / 13 / 26 / 52-week
windows.

Assumptions:
  * closes and dividend amounts are split-adjusted, $/share
  * a dividend counts when start < ex_date <= end
  * it is reinvested at the first close on or after its pay date
    (ex_date + 2 business days when no pay date is known); if that
    trading day falls after the window end it has not been reinvested yet

Each window resolves in order: real price/dividend history, then a
previously computed value from the Source Resolver, then the estimation
path. Estimates are always flagged ``is_estimated``.
"""

import logging
from datetime import date, timedelta
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from schemas import (PERIOD_DAYS, PERIOD_WEEKS, PERIODS, DividendEvent,
                     DripResult, Instrument, PricePoint, TaxContext)
from source_resolver import (EstimatedValue, RealValue, SourceResolver,
                             Unavailable)

log = logging.getLogger("etf_ranker.drip")

PAY_OFFSET_BDAYS = 2
ESTIMATE_PRICE_SHARE = 0.5   # conservative: half of the 1y return is price drift


# =========================================================================
# Price series helpers
# =========================================================================

def build_price_series(prices: Iterable[PricePoint]) -> pd.Series:
    """Close series indexed by date, ascending, one row per date."""
    rows = [(pd.Timestamp(p.date), p.close) for p in prices]
    if not rows:
        return pd.Series(dtype=float)
    s = pd.Series([c for _, c in rows], index=pd.DatetimeIndex([d for d, _ in rows]))
    s = s[~s.index.duplicated(keep="last")]
    return s.sort_index()


def price_on_or_before(series: pd.Series, when) -> Optional[float]:
    if series.empty:
        return None
    pos = series.index.searchsorted(pd.Timestamp(when), side="right") - 1
    return float(series.iloc[pos]) if pos >= 0 else None


def close_on_or_after(series: pd.Series, when):
    """Return (date, close) of the first close on or after ``when``."""
    if series.empty:
        return None
    pos = series.index.searchsorted(pd.Timestamp(when), side="left")
    if pos >= len(series):
        return None
    return series.index[pos].date(), float(series.iloc[pos])


def reinvest_reference(ev: DividendEvent) -> date:
    if ev.pay_date is not None:
        return ev.pay_date
    return (pd.Timestamp(ev.ex_date) + pd.offsets.BDay(PAY_OFFSET_BDAYS)).date()


def window_bounds(as_of: date, period: str) -> tuple[date, date]:
    return as_of - timedelta(days=PERIOD_DAYS[period] + 1), as_of


# =========================================================================
# History path
# =========================================================================

def drip_from_history(ticker: str, period: str, series: pd.Series,
                      dividends: list[DividendEvent], as_of: date,
                      tax: TaxContext,
                      current_price: Optional[float] = None) -> Optional[DripResult]:
    """Full-DRIP return from real closes, or None if history is insufficient."""
    start, end = window_bounds(as_of, period)
    start_price = price_on_or_before(series, start)
    if start_price is None:
        return None
    end_price = price_on_or_before(series, end)
    if end_price is None:
        end_price = current_price
    if end_price is None or end_price <= 0:
        return None

    withhold = tax.effective_rate
    shares = 1.0
    cash = 0.0
    for ev in sorted(dividends, key=lambda d: d.ex_date):
        if not (start < ev.ex_date <= end):
            continue
        hit = close_on_or_after(series, reinvest_reference(ev))
        if hit is None:
            continue
        reinvest_date, reinvest_price = hit
        if reinvest_date > end:
            continue
        net = ev.amount * (1 - withhold)
        if net <= 0:
            continue
        cash += net * shares
        shares *= 1 + net / reinvest_price

    end_value = shares * end_price
    return DripResult(
        ticker=ticker, period=period,
        percent=(end_value / start_price - 1) * 100,
        dollar=end_value - start_price,
        is_estimated=False, provenance="history", confidence="high",
        start_date=start, end_date=end,
        start_price=start_price, end_price=end_price,
        dividend_cash=cash, reinvested_shares=shares - 1.0,
    )


# =========================================================================
# Estimation path
# =========================================================================

def estimate_percent(instrument: Instrument, period: str):
    """Period return interpolated from 1y total return and trailing yield."""
    y, tr = instrument.yield_ttm, instrument.total_return_1y
    if y is None and tr is None:
        return Unavailable(reason="no yield or 1y return to estimate from")
    f = PERIOD_WEEKS[period] / 52
    price_leg = 1 + ESTIMATE_PRICE_SHARE * (tr or 0.0) / 100
    div_leg = 1 + (y or 0.0) / 100
    growth = float(np.power(max(price_leg, 0.0) * div_leg, f)) - 1
    return EstimatedValue(value=growth * 100)


def _confidence(instrument: Instrument) -> str:
    y = instrument.yield_ttm
    if instrument.total_return_1y is None or y is None or y < 2:
        return "low"
    return "high" if y > 8 else "medium"


def estimate_drip(instrument: Instrument, period: str) -> DripResult:
    est = estimate_percent(instrument, period)
    if isinstance(est, Unavailable):
        return DripResult(ticker=instrument.ticker, period=period,
                          is_estimated=True, provenance="estimate",
                          confidence="none")
    price = instrument.current_price
    return DripResult(
        ticker=instrument.ticker, period=period,
        percent=est.value,
        dollar=price * est.value / 100 if price else None,
        is_estimated=True, provenance="estimate",
        confidence=_confidence(instrument),
    )


# =========================================================================
# Calculator
# =========================================================================

class DripCalculator:
    """Computes DripResult per window for one instrument at a time.

    Holds no mutable state, so one instance may be shared across worker
    threads.
    """

    def __init__(self, resolver: Optional[SourceResolver] = None,
                 tax: Optional[TaxContext] = None, metric: str = "drip"):
        self.resolver = resolver or SourceResolver()
        self.tax = tax or TaxContext()
        self.metric = metric

    def _from_resolver(self, instrument: Instrument, period: str) -> Optional[DripResult]:
        res = self.resolver.resolve(instrument.ticker, self.metric, period)
        if not isinstance(res, RealValue):
            return None
        price = instrument.current_price
        return DripResult(
            ticker=instrument.ticker, period=period,
            percent=res.value,
            dollar=price * res.value / 100 if price else None,
            is_estimated=False,
            provenance="live" if res.source == "live" else "stored",
            confidence="high",
        )

    def drip_return(self, instrument: Instrument, period: str,
                    prices=(), dividends: Iterable[DividendEvent] = (),
                    as_of: Optional[date] = None) -> DripResult:
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown DRIP period {period!r}")
        series = prices if isinstance(prices, pd.Series) else build_price_series(prices)
        dividends = list(dividends)
        if as_of is None and not series.empty:
            as_of = series.index[-1].date()

        if as_of is not None:
            res = drip_from_history(instrument.ticker, period, series, dividends,
                                    as_of, self.tax, instrument.current_price)
            if res is not None:
                return res

        res = self._from_resolver(instrument, period)
        if res is not None:
            return res

        log.info(f"{instrument.ticker}: {period} DRIP estimated (insufficient history)",
                 extra={"ticker": instrument.ticker, "period": period})
        return estimate_drip(instrument, period)

    def drip_windows(self, instrument: Instrument, prices=(),
                     dividends: Iterable[DividendEvent] = (),
                     as_of: Optional[date] = None) -> dict:
        series = prices if isinstance(prices, pd.Series) else build_price_series(prices)
        dividends = list(dividends)
        return {p: self.drip_return(instrument, p, series, dividends, as_of)
                for p in PERIODS}
