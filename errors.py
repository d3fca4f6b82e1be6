"""Instrument-scoped failures for the ETF DRIP Ranker.

Missing data is not an error (resolver tiers return Unavailable) and
estimated data is a flag on DripResult; only the conditions below are
raised or warned, and none of them is ever fatal to a batch.
"""


class MalformedRow(Exception):
    """A single instrument's input rows are unusable."""

    def __init__(self, ticker: str, reason: str):
        self.ticker = ticker
        self.reason = reason
        super().__init__(f"{ticker}: {reason}")


class ProviderFailure(Exception):
    """An upstream data provider errored for one instrument."""

    def __init__(self, ticker: str, reason: str, rate_limited: bool = False):
        self.ticker = ticker
        self.reason = reason
        self.rate_limited = rate_limited
        super().__init__(f"{ticker}: {reason}")


class DegenerateBatchWarning(UserWarning):
    """Every instrument scored exactly zero; the ranking is not persisted."""
