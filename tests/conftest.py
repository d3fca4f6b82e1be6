"""Shared fixtures for ETF DRIP Ranker tests."""

import sys
from datetime import date, timedelta
from pathlib import Path

import pandas as pd
import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

AS_OF = date(2024, 6, 28)


def make_prices(ticker, start_price=20.0, weekly_drift=0.002, periods=420,
                as_of=AS_OF):
    """Business-day closes ending at as_of, compounding a weekly drift."""
    dates = pd.bdate_range(end=pd.Timestamp(as_of), periods=periods)
    return [{"ticker": ticker, "date": d.date().isoformat(),
             "close": round(start_price * (1 + weekly_drift) ** (i / 5), 4)}
            for i, d in enumerate(dates)]


def make_dividends(ticker, amount=0.10, every_days=30, count=12, as_of=AS_OF):
    """Regular dividend stream, most recent ex-date 5 days before as_of."""
    out = []
    for k in range(count):
        ex = as_of - timedelta(days=5 + k * every_days)
        out.append({"ticker": ticker, "ex_date": ex.isoformat(),
                    "pay_date": (ex + timedelta(days=3)).isoformat(),
                    "amount": amount, "currency": "USD"})
    return out


UNIVERSE = [
    # ticker, name, country, currency, yield, tr1y, vol, dd, drift, div
    ("JEPI", "JPMorgan Equity Premium Income ETF", "US", "USD", 7.5, 11.0, 9.0, -6.0, 0.002, 0.40),
    ("SCHD", "Schwab US Dividend Equity ETF", "US", "USD", 3.5, 9.0, 14.0, -10.0, 0.0015, 0.25),
    ("QYLD", "Global X NASDAQ 100 Covered Call ETF", "US", "USD", 11.5, 8.0, 12.0, -9.0, 0.0005, 0.17),
    ("VYM", "Vanguard High Dividend Yield ETF", "US", "USD", 3.0, 15.0, 13.0, -8.0, 0.003, 0.30),
    ("XEI.TO", "iShares S&P/TSX Composite High Dividend", "CA", "CAD", 5.5, 7.0, 12.0, -11.0, 0.001, 0.09),
    ("ZWC.TO", "BMO Canadian High Dividend Covered Call", "CA", "CAD", 7.0, 6.0, 10.0, -7.0, 0.0008, 0.10),
    ("DIVO", "Amplify CWP Enhanced Dividend Income ETF", "US", "USD", 4.6, 12.0, 11.0, -7.5, 0.0025, 0.15),
    ("SPYI", "NEOS S&P 500 High Income ETF", "US", "USD", 12.0, 14.0, 12.5, -8.5, 0.002, 0.50),
    ("TQQQ", "ProShares UltraPro QQQ", "US", "USD", 1.0, 40.0, 60.0, -35.0, 0.008, 0.05),
    ("BAD", "Broken Feed ETF", "US", "USD", 4.0, 5.0, 10.0, -5.0, 0.001, 0.10),
]


@pytest.fixture
def cfg():
    """Load the production config.yaml."""
    with open(ROOT / "config.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def mock_universe():
    """10-ETF raw input; BAD carries a negative close and must be skipped."""
    instruments, prices, dividends = [], [], []
    for (t, name, country, ccy, y, tr, vol, dd, drift, div) in UNIVERSE:
        instruments.append({
            "ticker": t, "name": name, "country": country, "currency": ccy,
            "yield_ttm": y, "total_return_1y": tr, "volatility_1y": vol,
            "max_drawdown_1y": dd, "avg_volume": 500_000,
            "aum": 2_000_000_000, "current_price": None, "fund_age_days": 2000,
        })
        prices.extend(make_prices(t, weekly_drift=drift))
        dividends.extend(make_dividends(t, amount=div))
    prices.append({"ticker": "BAD", "date": "2024-07-01", "close": -1.0})
    return {"instruments": instruments, "prices": prices, "dividends": dividends}
