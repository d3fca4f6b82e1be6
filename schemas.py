#!/usr/bin/env python3
"""
Typed schemas for the ETF DRIP Ranker.

Provides Pydantic models for data validation at engine boundaries.
Raw rows from the ingestion side (instrument table, dividend events,
price series) are validated here; anything that fails validation is a
MalformedRow for that one instrument, never for the whole batch.
"""

import hashlib
import json
import logging
import math
from datetime import date, datetime, timezone
from typing import Literal, Optional

from pydantic import (BaseModel, ConfigDict, Field, ValidationError,
                      ValidationInfo, field_validator, model_validator)

log = logging.getLogger("etf_ranker.schemas")

PERIODS = ("4w", "13w", "26w", "52w")
PERIOD_WEEKS = {"4w": 4, "13w": 13, "26w": 26, "52w": 52}
PERIOD_DAYS = {"4w": 28, "13w": 91, "26w": 182, "52w": 364}

HOME_CURRENCY = {"US": "USD", "CA": "CAD"}


def _finite_or_none(v):
    if v is None:
        return None
    if isinstance(v, str) and not v.strip():
        return None
    f = float(v)
    return f if math.isfinite(f) else None


# =========================================================================
# Raw input rows
# =========================================================================

class Instrument(BaseModel):
    """One row of the instrument table. Read-only to the engine.

    Percent fields are in percentage points (12.0 means 12%);
    max_drawdown_1y is negative.
    """
    ticker: str = Field(min_length=1)
    name: Optional[str] = None
    country: str = "US"
    currency: str = "USD"
    category: Optional[str] = None

    yield_ttm: Optional[float] = None
    total_return_1y: Optional[float] = None
    volatility_1y: Optional[float] = None
    max_drawdown_1y: Optional[float] = None
    avg_volume: Optional[float] = None
    expense_ratio: Optional[float] = None
    aum: Optional[float] = None
    current_price: Optional[float] = None

    # Optional attributes used only by post-score modifiers
    fund_age_days: Optional[int] = None
    is_leveraged: Optional[bool] = None
    distribution_frequency: Optional[Literal["weekly", "monthly", "quarterly",
                                             "semiannual", "annual"]] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("ticker")
    @classmethod
    def ticker_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("country", "currency", mode="before")
    @classmethod
    def code_upper(cls, v, info: ValidationInfo):
        if v is None or (isinstance(v, float) and math.isnan(v)) or not str(v).strip():
            return cls.model_fields[info.field_name].default
        return str(v).strip().upper()

    @field_validator("fund_age_days", mode="before")
    @classmethod
    def age_to_int(cls, v):
        f = _finite_or_none(v)
        return None if f is None else int(f)

    @field_validator("distribution_frequency", mode="before")
    @classmethod
    def frequency_lower(cls, v):
        if v is None or (isinstance(v, float) and math.isnan(v)):
            return None
        v = str(v).strip().lower()
        return v or None

    @field_validator("yield_ttm", "total_return_1y", "volatility_1y",
                     "max_drawdown_1y", "avg_volume", "expense_ratio",
                     "aum", "current_price", mode="before")
    @classmethod
    def nan_to_none(cls, v):
        return _finite_or_none(v)

    def has_fundamentals(self) -> bool:
        return any(v is not None for v in
                   (self.yield_ttm, self.total_return_1y, self.volatility_1y))


class DividendEvent(BaseModel):
    """Append-only dividend event. Amount is cash per share.

    Zero amounts are accepted (provider placeholders); the engine drops
    them before scoring.
    """
    ticker: str = Field(min_length=1)
    ex_date: date
    pay_date: Optional[date] = None
    amount: float = Field(ge=0)
    currency: str = "USD"

    model_config = ConfigDict(extra="ignore")

    @field_validator("ticker")
    @classmethod
    def ticker_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("amount")
    @classmethod
    def amount_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"Dividend amount must be finite, got {v}")
        return v


class PricePoint(BaseModel):
    """Append-only daily close."""
    ticker: str = Field(min_length=1)
    date: date
    close: float = Field(gt=0)

    model_config = ConfigDict(extra="ignore")

    @field_validator("ticker")
    @classmethod
    def ticker_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("close")
    @classmethod
    def close_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"Close must be finite, got {v}")
        return v


class TaxContext(BaseModel):
    """Withholding applied to dividends before reinvestment.

    rate is a percentage (15 means 15%).
    """
    country: Literal["US", "CA"] = "US"
    withholding_enabled: bool = False
    rate: float = Field(0.0, ge=0, le=100)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def for_country(cls, country: str) -> "TaxContext":
        if country.upper() == "CA":
            return cls(country="CA", withholding_enabled=True, rate=15.0)
        return cls(country="US", withholding_enabled=False, rate=0.0)

    @property
    def effective_rate(self) -> float:
        return self.rate / 100.0 if self.withholding_enabled else 0.0

    @property
    def home_currency(self) -> str:
        return HOME_CURRENCY[self.country]

    def cache_tuple(self) -> tuple:
        return (self.country, self.withholding_enabled, float(self.rate))


# =========================================================================
# Scoring weights (fixed record of the seven recognized keys)
# =========================================================================

WEIGHT_DEFAULTS = {
    "return": 15.0,
    "yield": 25.0,
    "risk": 20.0,
    "dividendStability": 20.0,
    "period4wWeight": 8.0,
    "period52wWeight": 2.0,
    "homeCountryBias": 6.0,
}


class ScoringWeights(BaseModel):
    """Relative weights for the composite score.

    Values need not sum to 100; they are applied as relative multipliers.
    homeCountryBias is in points and is capped by ModifierSettings.
    """
    return_weight: float = Field(WEIGHT_DEFAULTS["return"], alias="return")
    yield_weight: float = Field(WEIGHT_DEFAULTS["yield"], alias="yield")
    risk: float = Field(WEIGHT_DEFAULTS["risk"], alias="risk")
    dividend_stability: float = Field(WEIGHT_DEFAULTS["dividendStability"],
                                      alias="dividendStability")
    period_4w: float = Field(WEIGHT_DEFAULTS["period4wWeight"],
                             alias="period4wWeight")
    period_52w: float = Field(WEIGHT_DEFAULTS["period52wWeight"],
                              alias="period52wWeight")
    home_country_bias: float = Field(WEIGHT_DEFAULTS["homeCountryBias"],
                                     alias="homeCountryBias")

    model_config = ConfigDict(frozen=True, populate_by_name=True,
                              extra="ignore")

    @field_validator("return_weight", "yield_weight", "risk",
                     "dividend_stability", "period_4w", "period_52w",
                     "home_country_bias")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @classmethod
    def from_mapping(cls, raw: Optional[dict]) -> "ScoringWeights":
        """Build weights from a loose map, defaulting invalid/missing keys."""
        raw = raw or {}
        clean = {}
        for key, default in WEIGHT_DEFAULTS.items():
            v = raw.get(key, None)
            try:
                f = float(v)
                ok = math.isfinite(f) and f >= 0 and not isinstance(v, bool)
            except (TypeError, ValueError):
                ok = False
            if ok:
                clean[key] = f
            else:
                if key in raw:
                    log.warning(f"Invalid weight {key}={v!r}; using default {default}")
                clean[key] = default
        return cls(**clean)

    @classmethod
    def preset(cls, name: str) -> "ScoringWeights":
        key = _PRESET_ALIASES.get(name, name)
        if key not in PRESETS:
            raise ValueError(f"Unknown weight preset: {name!r} "
                             f"(expected one of {sorted(PRESETS)})")
        return PRESETS[key]

    @classmethod
    def balanced(cls) -> "ScoringWeights":
        return cls()

    @classmethod
    def income_first(cls) -> "ScoringWeights":
        return cls(**{"return": 5, "yield": 35, "risk": 20,
                      "dividendStability": 25, "period4wWeight": 3,
                      "period52wWeight": 2, "homeCountryBias": 6})

    @classmethod
    def total_return_tilt(cls) -> "ScoringWeights":
        return cls(**{"return": 30, "yield": 15, "risk": 20,
                      "dividendStability": 10, "period4wWeight": 10,
                      "period52wWeight": 10, "homeCountryBias": 6})

    def as_dict(self) -> dict:
        return self.model_dump(by_alias=True)

    def weights_hash(self) -> str:
        raw = json.dumps({k: float(v) for k, v in self.as_dict().items()},
                         sort_keys=True)
        return hashlib.sha256(raw.encode()).hexdigest()[:12]


PRESETS = {
    "balanced": ScoringWeights.balanced(),
    "incomeFirst": ScoringWeights.income_first(),
    "totalReturnTilt": ScoringWeights.total_return_tilt(),
}
_PRESET_ALIASES = {"income_first": "incomeFirst",
                   "total_return": "totalReturnTilt",
                   "total_return_tilt": "totalReturnTilt"}


class ModifierSettings(BaseModel):
    """Caps and guardrails for the additive post-score modifiers."""
    cap_home_bias: float = Field(6, ge=0)
    cap_currency: float = Field(2, ge=0)
    weekly_bonus: float = Field(2, ge=0)
    monthly_bonus: float = Field(1, ge=0)
    leverage_penalty: float = Field(8, ge=0)
    cap_aum_age: float = Field(6, ge=0)
    cap_illiquidity: float = Field(6, ge=0)
    aum_min_usd: float = Field(25_000_000, ge=0)
    addv_min_usd: float = Field(150_000, ge=0)
    age_min_days: int = Field(90, ge=0)

    model_config = ConfigDict(frozen=True)


# =========================================================================
# Engine outputs
# =========================================================================

class DripResult(BaseModel):
    """Reinvested-dividend total return for one lookback window."""
    ticker: str
    period: Literal["4w", "13w", "26w", "52w"]
    percent: Optional[float] = None
    dollar: Optional[float] = None
    is_estimated: bool = False
    provenance: Literal["history", "stored", "live", "estimate"] = "history"
    confidence: Literal["high", "medium", "low", "none"] = "high"

    # Audit trail (history path only)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_price: Optional[float] = None
    end_price: Optional[float] = None
    dividend_cash: float = 0.0
    reinvested_shares: float = 0.0


class SubScores(BaseModel):
    """Sub-scores on a 0-100 scale plus the momentum position."""
    return_score: float = 0.0
    yield_score: float = 0.0
    risk_score: float = 0.0
    dividend_stability: float = 0.0
    period_4w_score: float = 50.0
    period_52w_score: float = 50.0
    trend_score: float = 50.0
    momentum_score: float = 0.0
    momentum_position: int = Field(0, ge=-2, le=2)
    has_data: bool = True


class ScoreBreakdown(BaseModel):
    ticker: str
    weights_hash: str
    subscores: SubScores
    home_bias: float = 0.0
    modifiers: dict = {}
    composite: float = 0.0
    has_estimates: bool = False


class RankEntry(BaseModel):
    ticker: str
    rank: int = Field(ge=1)
    score: float
    timestamp: datetime


class RankingSnapshot(BaseModel):
    """Ordered, timestamped ranking. Ranks are a contiguous 1..N permutation."""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    entries: list[RankEntry] = []

    @model_validator(mode="after")
    def ranks_contiguous(self) -> "RankingSnapshot":
        ranks = sorted(e.rank for e in self.entries)
        if ranks != list(range(1, len(ranks) + 1)):
            raise ValueError("Ranks must be a contiguous permutation of 1..N")
        tickers = [e.ticker for e in self.entries]
        if len(set(tickers)) != len(tickers):
            raise ValueError("Duplicate ticker in ranking snapshot")
        return self

    @property
    def is_degenerate(self) -> bool:
        return bool(self.entries) and all(e.score == 0.0 for e in self.entries)

    def rank_map(self) -> dict:
        return {e.ticker: e.rank for e in self.entries}

    def tickers(self) -> list:
        return [e.ticker for e in sorted(self.entries, key=lambda e: e.rank)]


# =========================================================================
# RunConfig - top-level config schema
# =========================================================================

class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class CacheConfig(BaseModel):
        ttl_seconds: float = Field(3600, gt=0)

    class RankingConfig(BaseModel):
        store_path: str = "cache/persisted_ranking.json"
        min_change: int = Field(1, ge=0)
        max_change: int = Field(20, ge=1)

    class EngineConfig(BaseModel):
        max_workers: int = Field(8, ge=1, le=64)

    class RefreshConfig(BaseModel):
        batch_size: int = Field(10, ge=5, le=30)
        inter_batch_delay: float = Field(1.0, ge=0, le=60)
        max_workers: int = Field(3, ge=1)
        max_retries: int = Field(3, ge=1)

    class OutputConfig(BaseModel):
        excel_file: str = "etf_rankings.xlsx"
        sheet: str = "Rankings"

    weights: str | dict = "balanced"
    modifiers: ModifierSettings = ModifierSettings()
    tax: TaxContext = TaxContext()
    cache: CacheConfig = CacheConfig()
    ranking: RankingConfig = RankingConfig()
    engine: EngineConfig = EngineConfig()
    refresh: RefreshConfig = RefreshConfig()
    output: OutputConfig = OutputConfig()

    @field_validator("weights")
    @classmethod
    def known_preset(cls, v):
        if isinstance(v, str):
            ScoringWeights.preset(v)
        return v

    def scoring_weights(self) -> ScoringWeights:
        if isinstance(self.weights, str):
            return ScoringWeights.preset(self.weights)
        return ScoringWeights.from_mapping(self.weights)


__all__ = [
    "PERIODS", "PERIOD_WEEKS", "PERIOD_DAYS", "HOME_CURRENCY",
    "Instrument", "DividendEvent", "PricePoint", "TaxContext",
    "ScoringWeights", "PRESETS", "WEIGHT_DEFAULTS", "ModifierSettings",
    "DripResult", "SubScores", "ScoreBreakdown", "RankEntry",
    "RankingSnapshot", "RunConfig", "ValidationError",
]
