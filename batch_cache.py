#!/usr/bin/env python3
"""
Batch Cache
===========
Time-bounded cache of batch results keyed by
(sorted instrument ids, weights hash, tax context), with single-flight
computation: while one caller computes a key, concurrent callers for the
same key wait for that result instead of recomputing. Failures are
propagated to every waiter and are not cached.
"""

import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from schemas import ScoringWeights, TaxContext

log = logging.getLogger("etf_ranker.cache")


class CacheKey(BaseModel):
    tickers: tuple[str, ...]
    weights_hash: str
    tax: tuple

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(cls, tickers: Iterable[str], weights: ScoringWeights,
              tax: TaxContext) -> "CacheKey":
        return cls(tickers=tuple(sorted({t.upper() for t in tickers})),
                   weights_hash=weights.weights_hash(),
                   tax=tax.cache_tuple())


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    computations: int = 0
    shared_waits: int = 0


class BatchCache:
    def __init__(self, ttl_seconds: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict = {}      # key -> (expires_at, value)
        self._inflight: dict = {}     # key -> Future
        self.stats = CacheStats()

    def _fresh(self, key) -> tuple[bool, Any]:
        item = self._entries.get(key)
        if item is None:
            return False, None
        expires_at, value = item
        if self._clock() >= expires_at:
            del self._entries[key]
            return False, None
        return True, value

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if now >= exp]:
            del self._entries[key]

    def get(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            ok, value = self._fresh(key)
            return value if ok else None

    def set(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._sweep()
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], Any]) -> Any:
        with self._lock:
            ok, value = self._fresh(key)
            if ok:
                self.stats.hits += 1
                return value
            self.stats.misses += 1
            fut = self._inflight.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._inflight[key] = fut
                self.stats.computations += 1
            else:
                self.stats.shared_waits += 1

        if not leader:
            log.debug(f"Waiting on in-flight computation ({len(key.tickers)} tickers)")
            return fut.result()

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            fut.set_exception(e)
            raise
        with self._lock:
            self._sweep()
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._inflight.pop(key, None)
        fut.set_result(value)
        return value

    def invalidate(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
