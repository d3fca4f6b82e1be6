#!/usr/bin/env python3
"""
Source Resolver
===============
Resolves one metric for one instrument and period by probing an ordered
list of sources and returning the first finite numeric value:

  1. stored record, canonical field       e.g. ``drip4wPercent``
  2. stored record, ``{period: {"percentage": x}}``
  3. stored record, ``{period: {"growthPercent": x}}``
  4. live feed, same metric and period
  5. Unavailable

Stored records come in two historical shapes: the period object may be
keyed by ``"4w"`` or ``"period_4w"``, and may be a JSON string instead of
a dict. Both are honoured. A tier reader never raises; it yields a value or
falls through.
"""

import json
import logging
import math
from typing import Callable, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

log = logging.getLogger("etf_ranker.resolver")


class Unavailable(BaseModel):
    reason: str = "no source"
    model_config = ConfigDict(frozen=True)


class RealValue(BaseModel):
    value: float
    source: str
    model_config = ConfigDict(frozen=True)


class EstimatedValue(BaseModel):
    value: float
    source: str = "estimate"
    model_config = ConfigDict(frozen=True)


Resolution = Union[Unavailable, RealValue, EstimatedValue]


def _as_number(v) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
        return f if math.isfinite(f) else None
    return None


def _period_object(record: Mapping, period: str) -> Optional[Mapping]:
    for key in (period, f"period_{period}"):
        obj = record.get(key)
        if isinstance(obj, str):
            try:
                obj = json.loads(obj)
            except ValueError:
                continue
        if isinstance(obj, Mapping):
            return obj
    return None


def canonical_field(metric: str, period: str) -> str:
    return f"{metric}{period}Percent"


# =========================================================================
# Tier readers: (record, metric, period) -> float | None
# =========================================================================

def read_canonical(record: Mapping, metric: str, period: str):
    return _as_number(record.get(canonical_field(metric, period)))


def read_nested_percentage(record: Mapping, metric: str, period: str):
    obj = _period_object(record, period)
    return _as_number(obj.get("percentage")) if obj is not None else None


def read_nested_growth(record: Mapping, metric: str, period: str):
    obj = _period_object(record, period)
    return _as_number(obj.get("growthPercent")) if obj is not None else None


def read_live(record: Mapping, metric: str, period: str):
    v = _as_number(record.get(canonical_field(metric, period)))
    if v is None:
        v = _as_number(record.get(period))
    if v is None:
        obj = _period_object(record, period)
        if obj is not None:
            v = _as_number(obj.get("percentage"))
    return v


TierReader = Callable[[Mapping, str, str], Optional[float]]

STORED_TIERS: list[tuple[str, TierReader]] = [
    ("stored:canonical", read_canonical),
    ("stored:percentage", read_nested_percentage),
    ("stored:growthPercent", read_nested_growth),
]
LIVE_TIERS: list[tuple[str, TierReader]] = [
    ("live", read_live),
]


class SourceResolver:
    """Pure read over stored and live records keyed by ticker."""

    def __init__(self, stored: Optional[Mapping] = None,
                 live: Optional[Mapping] = None):
        self.stored = stored or {}
        self.live = live or {}

    def _tiers(self):
        for name, reader in STORED_TIERS:
            yield name, self.stored, reader
        for name, reader in LIVE_TIERS:
            yield name, self.live, reader

    def resolve(self, ticker: str, metric: str, period: str) -> Resolution:
        for name, source, reader in self._tiers():
            record = source.get(ticker)
            if not isinstance(record, Mapping):
                continue
            try:
                v = reader(record, metric, period)
            except Exception as e:  # a malformed record is just a miss
                log.debug(f"{ticker}: tier {name} failed ({e})",
                          extra={"ticker": ticker, "period": period})
                v = None
            if v is not None:
                return RealValue(value=v, source=name)
        return Unavailable(reason=f"no {metric} value for {period}")
