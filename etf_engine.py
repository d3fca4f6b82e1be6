#!/usr/bin/env python3
"""
ETF DRIP Ranker - Batch Engine
==============================
Scores a universe of ETFs and produces a stable ranking:

  raw rows -> validation -> DRIP windows (4/13/26/52w) -> Ladder-Delta trend
           -> sub-scores -> composite -> ranking snapshot + rank changes

Per-instrument work is independent and runs in a thread pool; a bad row
only removes its own instrument (recorded in ``failures``). Results for
a (tickers, weights, tax context) key are cached with a TTL and computed
at most once at a time.

Usage:
    python etf_engine.py --input universe.json
    python etf_engine.py --input universe.json --preset incomeFirst --country CA
    python etf_engine.py --tickers JEPI,SCHD,QYLD        # fetch via yfinance
"""

import argparse
import json
import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import yaml
from openpyxl import Workbook
from pydantic import BaseModel, ValidationError

from batch_cache import BatchCache, CacheKey
from composite_scorer import (build_subscores, infer_distribution_frequency,
                              score_breakdown)
from drip_calculator import DripCalculator, build_price_series
from errors import MalformedRow
from ranking_stabilizer import JsonRankingStore, RankingStabilizer
from schemas import (PERIODS, DividendEvent, DripResult, Instrument,
                     ModifierSettings, PricePoint, RankingSnapshot, RunConfig,
                     ScoreBreakdown, ScoringWeights, TaxContext)
from source_resolver import SourceResolver
from trend_scorer import MomentumSignal, momentum, oscillator_position

log = logging.getLogger("etf_ranker.engine")

ROOT = Path(__file__).resolve().parent
CONFIG_PATH = ROOT / "config.yaml"


# =========================================================================
# A. Configuration
# =========================================================================
def load_config(path: Path = CONFIG_PATH) -> RunConfig:
    """Load and validate config.yaml. A missing file yields the defaults."""
    path = Path(path)
    if not path.exists():
        return RunConfig()
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    return RunConfig.model_validate(raw)


# =========================================================================
# B. Inputs / outputs
# =========================================================================
class EngineInputs(BaseModel):
    instruments: list[dict] = []
    dividends: list[dict] = []
    prices: list[dict] = []
    cached_drip: dict = {}
    live_drip: dict = {}
    rsi: dict = {}
    as_of: Optional[date] = None

    def tickers(self) -> list:
        return [str(r.get("ticker", "")).strip().upper()
                for r in self.instruments if r.get("ticker")]


class InstrumentScore(BaseModel):
    instrument: Instrument
    drip: dict[str, DripResult]
    signal: MomentumSignal
    breakdown: ScoreBreakdown


class BatchResult(BaseModel):
    scores: dict[str, InstrumentScore] = {}
    snapshot: RankingSnapshot
    changes: dict = {}
    failures: dict[str, str] = {}
    persisted: bool = False

    @property
    def degenerate(self) -> bool:
        return self.snapshot.is_degenerate


def _group_by_ticker(rows: list) -> dict:
    out = defaultdict(list)
    for r in rows:
        out[str(r.get("ticker", "")).strip().upper()].append(r)
    return out


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def validate_rows(instrument_row: dict, dividend_rows: list,
                  price_rows: list) -> tuple:
    """Validate one instrument's raw rows or raise MalformedRow."""
    ticker = str(instrument_row.get("ticker", "")).strip().upper() or "<missing>"
    try:
        inst = Instrument.model_validate(instrument_row)
    except ValidationError as e:
        raise MalformedRow(ticker, f"instrument row invalid ({_first_error(e)})")
    try:
        divs = [DividendEvent.model_validate(r) for r in dividend_rows]
    except ValidationError as e:
        raise MalformedRow(ticker, f"dividend row invalid ({_first_error(e)})")
    zero = sum(1 for d in divs if d.amount == 0)
    if zero:
        log.warning(f"{ticker}: dropped {zero} zero-amount dividend row(s)",
                    extra={"ticker": ticker, "phase": "validate", "count": zero})
        divs = [d for d in divs if d.amount > 0]
    try:
        prices = [PricePoint.model_validate(r) for r in price_rows]
    except ValidationError as e:
        raise MalformedRow(ticker, f"price row invalid ({_first_error(e)})")
    return inst, divs, prices


# =========================================================================
# C. Per-instrument scoring
# =========================================================================
def score_instrument(instrument_row: dict, dividend_rows: list, price_rows: list,
                     calculator: DripCalculator, weights: ScoringWeights,
                     tax: TaxContext, settings: ModifierSettings,
                     rsi: Optional[float] = None,
                     as_of: Optional[date] = None) -> InstrumentScore:
    inst, divs, prices = validate_rows(instrument_row, dividend_rows, price_rows)
    series = build_price_series(prices)
    if as_of is None and not series.empty:
        as_of = series.index[-1].date()

    drip = calculator.drip_windows(inst, series, divs, as_of)
    signal = momentum(*(drip[p].percent for p in PERIODS),
                      oscillator=oscillator_position(rsi))

    if inst.distribution_frequency is None:
        freq = infer_distribution_frequency(divs, as_of)
        if freq is not None:
            inst = inst.model_copy(update={"distribution_frequency": freq})

    sub = build_subscores(inst, drip, signal, divs, as_of)
    breakdown = score_breakdown(inst, sub, weights, tax, settings, drip)
    return InstrumentScore(instrument=inst, drip=drip, signal=signal,
                           breakdown=breakdown)


def _score_slot(ticker, *args, **kwargs):
    """Worker wrapper: never raises, returns (ticker, score, error)."""
    try:
        return ticker, score_instrument(*args, **kwargs), None
    except MalformedRow as e:
        log.warning(f"Skipping {e}", extra={"ticker": ticker, "phase": "score"})
        return ticker, None, e.reason
    except Exception as e:
        log.exception(f"{ticker}: scoring failed", extra={"ticker": ticker, "phase": "score"})
        return ticker, None, f"{type(e).__name__}: {e}"


def score_universe(inputs: EngineInputs, weights: ScoringWeights,
                   tax: TaxContext, stabilizer: RankingStabilizer,
                   settings: Optional[ModifierSettings] = None,
                   max_workers: int = 8,
                   timestamp: Optional[datetime] = None) -> BatchResult:
    """Score every instrument independently, then rank the survivors."""
    settings = settings or ModifierSettings()
    resolver = SourceResolver(stored=inputs.cached_drip, live=inputs.live_drip)
    calculator = DripCalculator(resolver=resolver, tax=tax)
    divs_by = _group_by_ticker(inputs.dividends)
    prices_by = _group_by_ticker(inputs.prices)

    failures: dict[str, str] = {}
    jobs = []
    seen = set()
    for i, row in enumerate(inputs.instruments):
        ticker = str(row.get("ticker", "")).strip().upper()
        if not ticker:
            failures[f"<row {i}>"] = "missing ticker"
            continue
        if ticker in seen:
            failures.setdefault(ticker, "duplicate instrument row")
            continue
        seen.add(ticker)
        jobs.append((ticker, row))

    scores: dict[str, InstrumentScore] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futs = [pool.submit(_score_slot, ticker, row, divs_by.get(ticker, []),
                            prices_by.get(ticker, []), calculator, weights, tax,
                            settings, inputs.rsi.get(ticker), inputs.as_of)
                for ticker, row in jobs]
        for fut in as_completed(futs):
            ticker, result, err = fut.result()
            if result is not None:
                scores[ticker] = result
            else:
                failures[ticker] = err

    composite = {t: s.breakdown.composite for t, s in scores.items()}
    snapshot = stabilizer.rank(composite, timestamp)
    changes = stabilizer.delta(snapshot)
    persisted = stabilizer.persist(snapshot)
    log.info(f"Scored {len(scores)} / {len(jobs)} instruments "
             f"({len(failures)} failed)", extra={"phase": "score", "count": len(scores)})
    return BatchResult(scores=scores, snapshot=snapshot, changes=changes,
                       failures=failures, persisted=persisted)


# =========================================================================
# D. Cached engine
# =========================================================================
class RankingEngine:
    """Holds the cache, ranking store and settings for repeated requests."""

    def __init__(self, cfg: Optional[RunConfig] = None,
                 stabilizer: Optional[RankingStabilizer] = None,
                 cache: Optional[BatchCache] = None):
        self.cfg = cfg or RunConfig()
        self.stabilizer = stabilizer or RankingStabilizer(
            JsonRankingStore(ROOT / self.cfg.ranking.store_path),
            min_change=self.cfg.ranking.min_change,
            max_change=self.cfg.ranking.max_change)
        self.cache = cache or BatchCache(ttl_seconds=self.cfg.cache.ttl_seconds)

    def run(self, inputs: EngineInputs, weights: Optional[ScoringWeights] = None,
            tax: Optional[TaxContext] = None) -> BatchResult:
        weights = weights or self.cfg.scoring_weights()
        tax = tax or self.cfg.tax
        key = CacheKey.build(inputs.tickers(), weights, tax)
        return self.cache.get_or_compute(key, lambda: score_universe(
            inputs, weights, tax, self.stabilizer,
            settings=self.cfg.modifiers,
            max_workers=self.cfg.engine.max_workers))


# =========================================================================
# E. Output
# =========================================================================
def breakdowns_frame(result: BatchResult) -> pd.DataFrame:
    ranks = result.snapshot.rank_map()
    records = []
    for ticker, s in result.scores.items():
        b, sub = s.breakdown, s.breakdown.subscores
        rec = {
            "Rank": ranks.get(ticker),
            "Ticker": ticker,
            "Name": s.instrument.name,
            "Country": s.instrument.country,
            "Composite": b.composite,
            "Return": sub.return_score,
            "Yield": sub.yield_score,
            "Risk": sub.risk_score,
            "Div_Stability": sub.dividend_stability,
            "DRIP_4w_Score": sub.period_4w_score,
            "DRIP_52w_Score": sub.period_52w_score,
            "Trend_Score": sub.trend_score,
            "Momentum": sub.momentum_score,
            "Position": sub.momentum_position,
            "Signal": s.signal.label,
            "Modifiers": round(sum(b.modifiers.values()), 4),
            "Weights_Hash": b.weights_hash,
        }
        for p in PERIODS:
            d = s.drip[p]
            rec[f"DRIP_{p}_Pct"] = d.percent
            rec[f"DRIP_{p}_Dollar"] = d.dollar
            rec[f"DRIP_{p}_Flag"] = "est." if d.is_estimated else ""
        records.append(rec)
    df = pd.DataFrame(records)
    if not df.empty:
        df = df.sort_values("Rank").reset_index(drop=True)
    return df


def write_excel(df: pd.DataFrame, path: Path, sheet: str = "Rankings") -> str:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    ws.append(list(df.columns))
    for row in df.itertuples(index=False):
        vals = []
        for v in row:
            if isinstance(v, float) and np.isnan(v):
                vals.append(None)
            elif isinstance(v, float):
                vals.append(round(v, 4))
            else:
                vals.append(v)
        ws.append(vals)
    wb.save(str(path))
    return str(path)


def print_summary(result: BatchResult, universe_size: int, t0: float,
                  stale: list | None = None):
    elapsed = round(time.time() - t0, 1)
    df = breakdowns_frame(result)
    est = sum(1 for s in result.scores.values() if s.breakdown.has_estimates)
    print()
    print("============================================")
    print("  ETF DRIP RANKER - RUN SUMMARY")
    print("============================================")
    print(f"Universe requested:       {universe_size} ETFs")
    print(f"Successfully scored:      {len(result.scores)} ETFs")
    print(f"Skipped (data errors):    {len(result.failures)} ETFs")
    for t, reason in list(result.failures.items())[:20]:
        print(f"  {t:8s} {reason}")
    if stale:
        print(f"Stale (provider failure): {stale}")
    print(f"With estimated DRIP:      {est} ETFs")
    print(f"Degenerate batch:         {result.degenerate}")
    print(f"Ranking persisted:        {result.persisted}")
    print("--------------------------------------------")
    print("Top 10 by Composite:")
    for _, r in df.head(10).iterrows():
        flag = " est." if any(r[f"DRIP_{p}_Flag"] for p in PERIODS) else ""
        print(f"  {int(r['Rank']):3d}. {r['Ticker']:8s} {r['Composite']:7.2f}  "
              f"{r['Signal']:11s}{flag}")
    if result.changes:
        print("Rank changes:")
        for t, c in sorted(result.changes.items(), key=lambda kv: kv[1].current_rank):
            if c.is_new:
                print(f"  {t:8s} NEW at #{c.current_rank}")
            else:
                arrow = "▲" if c.change > 0 else "▼"
                print(f"  {t:8s} {arrow}{abs(c.change)} (#{c.previous_rank} → #{c.current_rank})")
    print("--------------------------------------------")
    print(f"Total runtime:            {elapsed}s")
    print("============================================")


# =========================================================================
# MAIN
# =========================================================================
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="ETF DRIP Ranker")
    p.add_argument("--input", type=str, default="",
                   help="JSON file with instruments / dividends / prices")
    p.add_argument("--tickers", type=str, default="",
                   help="Comma-separated tickers to fetch via yfinance")
    p.add_argument("--config", type=str, default=str(CONFIG_PATH))
    p.add_argument("--preset", type=str, default="",
                   help="Weight preset (balanced, incomeFirst, totalReturnTilt)")
    p.add_argument("--country", type=str, default="", choices=["", "US", "CA"])
    p.add_argument("--no-excel", action="store_true")
    return p.parse_args(argv)


def main(argv=None):
    from market_data import apply_refresh, fetch_all_etfs, inputs_to_rows, rows_to_inputs
    from run_context import RunContext

    t0 = time.time()
    args = parse_args(argv)

    print("Loading configuration...")
    cfg = load_config(Path(args.config))
    ctx = RunContext()
    ctx.save_config(cfg.model_dump(mode="json"))

    raw = {}
    if args.input:
        with open(args.input) as f:
            raw = json.load(f)

    stale = []
    if args.tickers:
        tickers = [t.strip().upper() for t in args.tickers.split(",") if t.strip()]
        print(f"Fetching {len(tickers)} ETFs...")
        results = fetch_all_etfs(tickers, batch_size=cfg.refresh.batch_size,
                                 max_workers=cfg.refresh.max_workers,
                                 inter_batch_delay=cfg.refresh.inter_batch_delay,
                                 max_retries=cfg.refresh.max_retries)
        refresh = apply_refresh(results, inputs_to_rows(raw))
        stale = refresh["stale"]
        raw = {**raw, **rows_to_inputs(refresh["rows"])}
        for t, reason in refresh["failures"].items():
            print(f"  {t}: {reason}")

    inputs = EngineInputs.model_validate(raw)
    weights = ScoringWeights.preset(args.preset) if args.preset else cfg.scoring_weights()
    tax = TaxContext.for_country(args.country) if args.country else cfg.tax

    print(f"Scoring {len(inputs.instruments)} ETFs "
          f"(weights {weights.weights_hash()}, tax {tax.country})...")
    engine = RankingEngine(cfg)
    result = engine.run(inputs, weights, tax)

    df = breakdowns_frame(result)
    if not df.empty:
        ctx.save_artifact("breakdowns", df)
        if not args.no_excel:
            print("Writing Excel...")
            write_excel(df, ROOT / cfg.output.excel_file, cfg.output.sheet)
    ctx.save_universe(list(result.scores), result.failures, stale)
    ctx.save_metadata({"weights_hash": weights.weights_hash(),
                       "tax": tax.model_dump(),
                       "degenerate": result.degenerate,
                       "persisted": result.persisted})
    print_summary(result, len(inputs.instruments), t0, stale)
    ctx.close()
    return result


if __name__ == "__main__":
    main()
