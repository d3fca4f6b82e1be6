#!/usr/bin/env python3
"""
Market data ingestion (upstream collaborator)
=============================================
Fetches instrument fundamentals, daily closes and dividend events from
yfinance and turns them into the raw rows the engine consumes.

Network behaviour
-----------------
* Tickers are fetched in small batches (5-30) with an inter-batch sleep.
* Each ticker retries with exponential backoff (1s / 2s / 4s).
* 404 / delisted / empty-history errors fail immediately.
* Rate-limit errors (429) are tagged ``_rate_limited`` and returned at
  once; the batch loop then pauses, drops a worker and widens the delay.
* A provider failure never aborts the batch: apply_refresh() keeps the
  instrument's last-known rows and reports it as stale.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime

import numpy as np
import pandas as pd

from errors import ProviderFailure

log = logging.getLogger("etf_ranker.market_data")

HISTORY_PERIOD = "400d"
TRADING_DAYS = 252
_NON_RETRYABLE_PATTERNS = ["404", "no data", "not found", "delisted", "no price history"]
_RATE_LIMIT_PATTERNS = ["429", "too many requests", "rate limit"]


def _is_rate_limited(err_str: str) -> bool:
    s = err_str.lower()
    return any(p in s for p in _RATE_LIMIT_PATTERNS)


def _is_non_retryable(err_str: str) -> bool:
    s = err_str.lower()
    return any(p in s for p in _NON_RETRYABLE_PATTERNS)


def _country_for(ticker: str, currency: str | None) -> str:
    if ticker.upper().endswith((".TO", ".V", ".NE")) or (currency or "").upper() == "CAD":
        return "CA"
    return "US"


# =========================================================================
# Derived fundamentals from price history
# =========================================================================

def history_metrics(closes: pd.Series, adj: pd.Series | None = None) -> dict:
    """1y total return, annualized volatility and max drawdown, in percent."""
    tr_series = (adj if adj is not None else closes).dropna()
    out = {"total_return_1y": None, "volatility_1y": None, "max_drawdown_1y": None}
    if len(tr_series) < 2:
        return out
    last_year = tr_series.tail(TRADING_DAYS + 1)
    if len(tr_series) > TRADING_DAYS * 0.8:
        out["total_return_1y"] = float((last_year.iloc[-1] / last_year.iloc[0] - 1) * 100)
    rets = last_year.pct_change().dropna()
    if len(rets) >= 20:
        out["volatility_1y"] = float(rets.std() * np.sqrt(TRADING_DAYS) * 100)
    dd = last_year / last_year.cummax() - 1
    out["max_drawdown_1y"] = float(dd.min() * 100)
    return out


def trailing_yield(dividends: pd.Series, last_close: float, as_of) -> float | None:
    if dividends is None or dividends.empty or not last_close:
        return None
    idx = pd.DatetimeIndex(dividends.index)
    if idx.tz is not None:
        idx = idx.tz_localize(None)
    recent = dividends[idx > pd.Timestamp(as_of) - pd.Timedelta(days=365)]
    return float(recent.sum() / last_close * 100)


# =========================================================================
# Single-ticker fetch
# =========================================================================

def _fetch_single_etf_inner(ticker: str) -> dict:
    import yfinance as yf

    t = yf.Ticker(ticker)
    hist = t.history(period=HISTORY_PERIOD, auto_adjust=False)
    if hist is None or hist.empty or "Close" not in hist:
        raise ProviderFailure(ticker, "no price history")
    closes = hist["Close"].dropna()
    if closes.empty:
        raise ProviderFailure(ticker, "no price history")
    dates = [ts.date() for ts in closes.index]
    as_of = dates[-1]
    last_close = float(closes.iloc[-1])

    info = t.info or {}
    divs = t.dividends
    currency = info.get("currency") or "USD"

    inception = info.get("fundInceptionDate")
    age_days = None
    if inception:
        age_days = (as_of - datetime.fromtimestamp(int(inception)).date()).days

    row = {
        "ticker": ticker.upper(),
        "name": info.get("longName") or info.get("shortName"),
        "country": _country_for(ticker, currency),
        "currency": currency,
        "category": info.get("category"),
        "yield_ttm": trailing_yield(divs, last_close, as_of),
        "avg_volume": float(hist["Volume"].tail(63).mean()) if "Volume" in hist else None,
        "expense_ratio": info.get("netExpenseRatio") or info.get("annualReportExpenseRatio"),
        "aum": info.get("totalAssets"),
        "current_price": last_close,
        "fund_age_days": age_days,
    }
    row.update(history_metrics(closes, hist["Adj Close"] if "Adj Close" in hist else None))

    prices = [{"ticker": row["ticker"], "date": d.isoformat(), "close": float(c)}
              for d, c in zip(dates, closes.values)]
    dividends = []
    if divs is not None and not divs.empty:
        for ts, amt in divs.items():
            dividends.append({"ticker": row["ticker"], "ex_date": ts.date().isoformat(),
                              "amount": float(amt), "currency": currency})
    return {"ticker": row["ticker"], "instrument": row,
            "prices": prices, "dividends": dividends}


def fetch_single_etf(ticker: str, max_retries: int = 3,
                     per_request_delay: float = 0.0) -> dict:
    """Fetch one ETF with exponential backoff. Returns a record dict;
    failures carry '_error' instead of raising."""
    t_start = time.time()
    last_err = None
    for attempt in range(max_retries):
        if per_request_delay > 0:
            time.sleep(per_request_delay)
        try:
            rec = _fetch_single_etf_inner(ticker)
            rec["_fetch_time_ms"] = round((time.time() - t_start) * 1000)
            return rec
        except Exception as exc:
            last_err = exc.reason if isinstance(exc, ProviderFailure) else str(exc)
            if _is_rate_limited(last_err):
                return {"ticker": ticker.upper(), "_error": last_err,
                        "_rate_limited": True,
                        "_fetch_time_ms": round((time.time() - t_start) * 1000)}
            if _is_non_retryable(last_err):
                break
        if attempt < max_retries - 1:
            time.sleep(2 ** attempt)
    return {"ticker": ticker.upper(),
            "_error": f"Failed after {max_retries} retries: {last_err}",
            "_fetch_time_ms": round((time.time() - t_start) * 1000)}


# =========================================================================
# Batched fetch with adaptive throttling
# =========================================================================

def fetch_all_etfs(tickers: list, batch_size: int = 10, max_workers: int = 3,
                   inter_batch_delay: float = 1.0, max_retries: int = 3) -> list:
    """Fetch all tickers in batches, backing off when rate-limited.

    On a rate-limited batch: pause 30s / 60s / 120s (cap), drop one
    worker (min 1) and widen the inter-batch delay by 2s (max 60s).
    """
    results: list[dict] = []
    n_batches = (len(tickers) + batch_size - 1) // batch_size
    current_workers = max_workers
    current_delay = inter_batch_delay
    backoffs = 0

    for bi in range(n_batches):
        batch = tickers[bi * batch_size:(bi + 1) * batch_size]
        print(f"  Batch {bi+1}/{n_batches}  ({batch[0]}..{batch[-1]})  "
              f"[workers={current_workers}, delay={current_delay:.0f}s]")
        batch_rate_limited = False

        with ThreadPoolExecutor(max_workers=current_workers) as pool:
            futs = {pool.submit(fetch_single_etf, t, max_retries): t for t in batch}
            for fut in as_completed(futs):
                try:
                    rec = fut.result()
                except Exception as e:
                    rec = {"ticker": futs[fut].upper(), "_error": str(e)}
                if rec.get("_rate_limited"):
                    batch_rate_limited = True
                results.append(rec)

        if batch_rate_limited:
            backoffs += 1
            pause = min(30 * (2 ** (backoffs - 1)), 120)
            print(f"  ** Rate limit detected - pausing {pause}s (backoff #{backoffs}) **")
            time.sleep(pause)
            current_workers = max(1, current_workers - 1)
            current_delay = min(current_delay + 2, 60)

        if bi < n_batches - 1:
            time.sleep(current_delay)
    return results


# =========================================================================
# Merge with last-known rows
# =========================================================================

def apply_refresh(results: list, last_known: dict | None = None) -> dict:
    """Merge fetch results over last-known per-ticker rows.

    Returns {"rows": {ticker: record}, "stale": [...], "failures": {...}}.
    A failed ticker with last-known rows keeps them and is stale; one
    without any rows is a failure.
    """
    last_known = dict(last_known or {})
    rows, stale, failures = {}, [], {}
    for rec in results:
        ticker = rec["ticker"]
        if "_error" not in rec:
            rows[ticker] = {k: rec[k] for k in ("instrument", "prices", "dividends")}
            continue
        err = ProviderFailure(ticker, rec["_error"], bool(rec.get("_rate_limited")))
        if ticker in last_known:
            rows[ticker] = last_known[ticker]
            stale.append(ticker)
            log.warning(f"{err} - keeping last-known values",
                        extra={"ticker": ticker, "phase": "refresh"})
        else:
            failures[ticker] = err.reason
            log.warning(f"{err} - no last-known values",
                        extra={"ticker": ticker, "phase": "refresh"})
    for ticker, rec in last_known.items():
        rows.setdefault(ticker, rec)
    return {"rows": rows, "stale": sorted(stale), "failures": failures}


def rows_to_inputs(rows: dict) -> dict:
    """Flatten per-ticker records into instruments / prices / dividends lists."""
    out = {"instruments": [], "prices": [], "dividends": []}
    for ticker in sorted(rows):
        rec = rows[ticker]
        out["instruments"].append(rec["instrument"])
        out["prices"].extend(rec.get("prices", []))
        out["dividends"].extend(rec.get("dividends", []))
    return out


def inputs_to_rows(inputs: dict) -> dict:
    """Inverse of rows_to_inputs, used to seed last-known values."""
    rows = {}
    for inst in inputs.get("instruments", []):
        t = str(inst.get("ticker", "")).upper()
        if t:
            rows[t] = {"instrument": inst, "prices": [], "dividends": []}
    for key in ("prices", "dividends"):
        for r in inputs.get(key, []):
            t = str(r.get("ticker", "")).upper()
            if t in rows:
                rows[t][key].append(r)
    return rows
