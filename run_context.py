#!/usr/bin/env python3
"""
Run Context - reproducibility and logging for one ranking run.

Provides:
  - run_id generation (UUID4, 12 hex chars)
  - Structured JSON logging for every ``etf_ranker.*`` logger
  - Config snapshot saving
  - Breakdown artifact saving (Parquet)
  - Scored / failed / stale universe record
  - Run metadata (timestamps, versions, weights hash)

Usage:
    ctx = RunContext()
    ctx.save_config(cfg)
    ctx.save_artifact("breakdowns", df)
    ctx.save_universe(scored, failed, stale)
    ctx.save_metadata({...})
"""

import json
import logging
import platform
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"
LOGGER_NAME = "etf_ranker"


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        for key in ("ticker", "period", "phase", "count", "run_id"):
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RunContext:
    """Manages a single run's metadata, artifacts, and logging."""

    def __init__(self, run_id: str | None = None, runs_dir: Path | None = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.start_time = datetime.now()
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.log = logging.getLogger(LOGGER_NAME)
        self.log.setLevel(logging.DEBUG)
        self.log.propagate = False
        self.log.handlers.clear()

        fh = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        fh.setFormatter(_JSONFormatter())
        self.log.addHandler(fh)

        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))
        ch.setLevel(logging.WARNING)
        self.log.addHandler(ch)

        self.log.info("Run started", extra={"run_id": self.run_id})

    def close(self) -> None:
        for h in list(self.log.handlers):
            h.close()
            self.log.removeHandler(h)
        self.log.propagate = True

    def save_config(self, cfg: dict) -> Path:
        path = self.run_dir / "config.yaml"
        with open(path, "w") as f:
            yaml.dump(cfg, f, default_flow_style=False, sort_keys=False)
        self.log.info("Config snapshot saved", extra={"phase": "init"})
        return path

    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        """Save an intermediate DataFrame as Parquet."""
        path = self.run_dir / f"{name}.parquet"
        df.to_parquet(str(path), index=False)
        self.log.info(f"Artifact saved: {name} ({len(df)} rows)",
                      extra={"phase": "artifact", "count": len(df)})
        return path

    def save_universe(self, scored: list, failed: dict,
                      stale: list | None = None) -> Path:
        data = {
            "scored": sorted(scored),
            "failed": dict(sorted(failed.items())),
            "stale": sorted(stale or []),
            "scored_count": len(scored),
            "failed_count": len(failed),
        }
        path = self.run_dir / "universe.json"
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
        return path

    def save_metadata(self, extra: dict | None = None) -> Path:
        end_time = datetime.now()
        meta = {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "elapsed_seconds": round((end_time - self.start_time).total_seconds(), 1),
            "python_version": sys.version,
            "platform": platform.platform(),
            "packages": _get_package_versions(),
        }
        if extra:
            meta.update(extra)
        path = self.run_dir / "meta.json"
        with open(path, "w") as f:
            json.dump(meta, f, indent=2, default=str)
        self.log.info("Run metadata saved", extra={"run_id": self.run_id})
        return path


def _get_package_versions() -> dict:
    import importlib.metadata
    versions = {}
    for pkg in ["yfinance", "pandas", "numpy", "scipy", "openpyxl",
                "pyyaml", "pyarrow", "pydantic"]:
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    return versions
