"""Tests for run artifacts and structured logging."""

import json
import logging
import sys
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from run_context import RunContext


class TestRunContext:
    def test_artifacts_written(self, tmp_path):
        ctx = RunContext(run_id="abc123", runs_dir=tmp_path)
        try:
            ctx.save_config({"weights": "balanced"})
            ctx.save_universe(["SCHD", "JEPI"], {"BAD": "price row invalid"}, ["QYLD"])
            ctx.save_metadata({"weights_hash": "deadbeef0000"})
            ctx.save_artifact("breakdowns", pd.DataFrame({"Ticker": ["JEPI"], "Composite": [61.2]}))
        finally:
            ctx.close()

        run_dir = tmp_path / "abc123"
        universe = json.loads((run_dir / "universe.json").read_text())
        assert universe["scored"] == ["JEPI", "SCHD"]
        assert universe["failed_count"] == 1
        assert universe["stale"] == ["QYLD"]
        meta = json.loads((run_dir / "meta.json").read_text())
        assert meta["run_id"] == "abc123"
        assert meta["weights_hash"] == "deadbeef0000"
        assert (run_dir / "breakdowns.parquet").exists()
        assert (run_dir / "config.yaml").exists()

    def test_json_log_lines_carry_extras(self, tmp_path):
        ctx = RunContext(run_id="logs", runs_dir=tmp_path)
        try:
            logging.getLogger("etf_ranker.engine").warning(
                "Skipping BAD", extra={"ticker": "BAD", "phase": "score"})
        finally:
            ctx.close()
        lines = [json.loads(l) for l in (tmp_path / "logs" / "run.log").read_text().splitlines()]
        entry = [l for l in lines if l["msg"] == "Skipping BAD"][0]
        assert entry["ticker"] == "BAD"
        assert entry["phase"] == "score"
        assert entry["logger"] == "etf_ranker.engine"
