#!/usr/bin/env python3
"""
Ranking Stabilizer
==================
Turns composite scores into a RankingSnapshot and keeps the last
non-degenerate snapshot in an injected RankingStore, so rank-change
deltas stay meaningful while a background refresh temporarily produces
all-zero scores.

Ordering: score descending, ties by ticker ascending.
Reported changes: previous_rank - current_rank, only when
min_change < |change| < max_change; new tickers are flagged is_new.
"""

import json
import logging
import os
import tempfile
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Protocol

from pydantic import BaseModel

from errors import DegenerateBatchWarning
from schemas import RankEntry, RankingSnapshot

log = logging.getLogger("etf_ranker.ranking")

MIN_CHANGE = 1
MAX_CHANGE = 20


class RankChange(BaseModel):
    ticker: str
    current_rank: int
    previous_rank: Optional[int] = None
    change: int = 0           # positive = moved up
    is_new: bool = False


# =========================================================================
# Stores
# =========================================================================

class RankingStore(Protocol):
    def load(self) -> Optional[RankingSnapshot]: ...

    def save(self, snapshot: RankingSnapshot) -> None: ...


class InMemoryRankingStore:
    def __init__(self, snapshot: Optional[RankingSnapshot] = None):
        self._snapshot = snapshot

    def load(self) -> Optional[RankingSnapshot]:
        return self._snapshot

    def save(self, snapshot: RankingSnapshot) -> None:
        self._snapshot = snapshot


class JsonRankingStore:
    """Persists the snapshot as JSON; writes go through a temp file + rename."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[RankingSnapshot]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return RankingSnapshot.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            log.warning(f"Persisted ranking unreadable ({e}); starting fresh")
            return None

    def save(self, snapshot: RankingSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


# =========================================================================
# Ranking
# =========================================================================

def rank(scores: Mapping[str, float],
         timestamp: Optional[datetime] = None) -> RankingSnapshot:
    ts = timestamp or datetime.now(timezone.utc)
    ordered = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    entries = [RankEntry(ticker=t, rank=i + 1, score=s, timestamp=ts)
               for i, (t, s) in enumerate(ordered)]
    return RankingSnapshot(created_at=ts, entries=entries)


def delta(current: RankingSnapshot, persisted: Optional[RankingSnapshot],
          min_change: int = MIN_CHANGE,
          max_change: int = MAX_CHANGE) -> dict:
    prev = persisted.rank_map() if persisted is not None else {}
    changes = {}
    for e in current.entries:
        before = prev.get(e.ticker)
        if before is None:
            changes[e.ticker] = RankChange(ticker=e.ticker, current_rank=e.rank,
                                           is_new=True)
            continue
        move = before - e.rank
        if min_change < abs(move) < max_change:
            changes[e.ticker] = RankChange(ticker=e.ticker, current_rank=e.rank,
                                           previous_rank=before, change=move)
    return changes


class RankingStabilizer:
    """rank / persist / delta with an explicit store lifecycle."""

    def __init__(self, store: Optional[RankingStore] = None,
                 min_change: int = MIN_CHANGE, max_change: int = MAX_CHANGE):
        self.store = store if store is not None else InMemoryRankingStore()
        self.min_change = min_change
        self.max_change = max_change

    def rank(self, scores: Mapping[str, float],
             timestamp: Optional[datetime] = None) -> RankingSnapshot:
        return rank(scores, timestamp)

    def persist(self, snapshot: RankingSnapshot) -> bool:
        """Save unless degenerate. Returns True when the store was updated."""
        if snapshot.is_degenerate:
            msg = (f"All {len(snapshot.entries)} composite scores are zero; "
                   f"keeping previously persisted ranking")
            log.warning(msg, extra={"phase": "ranking", "count": len(snapshot.entries)})
            warnings.warn(msg, DegenerateBatchWarning, stacklevel=2)
            return False
        if not snapshot.entries:
            return False
        self.store.save(snapshot)
        return True

    def delta(self, current: RankingSnapshot,
              persisted: Optional[RankingSnapshot] = None) -> dict:
        if persisted is None:
            persisted = self.store.load()
        return delta(current, persisted, self.min_change, self.max_change)

    def refresh(self, scores: Mapping[str, float],
                timestamp: Optional[datetime] = None):
        """Rank, diff against the stored snapshot, then persist."""
        snapshot = self.rank(scores, timestamp)
        changes = self.delta(snapshot)
        self.persist(snapshot)
        return snapshot, changes
