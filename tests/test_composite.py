"""Tests for sub-scores, modifiers and the composite score."""

import sys
from datetime import date, timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from composite_scorer import (build_subscores, compose, compute_modifiers,
                              dividend_stability_subscore,
                              infer_distribution_frequency, is_leveraged,
                              period_subscore, risk_subscore, score_breakdown,
                              trend_subscore, weighted_base, yield_subscore)
from trend_scorer import momentum
from schemas import (PERIODS, DividendEvent, DripResult, Instrument, ModifierSettings,
                     ScoringWeights, SubScores, TaxContext)

AS_OF = date(2024, 6, 28)


def _divs(amounts, every_days=30):
    return [DividendEvent(ticker="X", ex_date=AS_OF - timedelta(days=5 + i * every_days),
                          amount=a) for i, a in enumerate(amounts)]


def _inst(**kw):
    base = dict(ticker="X", country="US", currency="USD", yield_ttm=6.0,
                total_return_1y=10.0, volatility_1y=12.0, max_drawdown_1y=-8.0,
                aum=1e9, avg_volume=1e6, current_price=25.0, fund_age_days=1000)
    base.update(kw)
    return Instrument(**base)


# =====================================================================
# SUB-SCORES
# =====================================================================

class TestSubScores:
    def test_yield_scaling(self):
        assert yield_subscore(_inst(yield_ttm=5.0)) == 50.0
        assert yield_subscore(_inst(yield_ttm=25.0)) == 100.0
        assert yield_subscore(_inst(yield_ttm=None)) == 0.0

    def test_risk_missing_vol_is_neutral(self):
        assert risk_subscore(_inst(volatility_1y=None)) == 50.0

    def test_lower_vol_scores_higher(self):
        assert risk_subscore(_inst(volatility_1y=8.0)) > risk_subscore(_inst(volatility_1y=20.0))

    def test_stable_dividends_score_100(self):
        assert dividend_stability_subscore(_divs([0.1] * 12), AS_OF) == pytest.approx(100.0)

    def test_erratic_dividends_score_lower(self):
        erratic = dividend_stability_subscore(_divs([0.05, 0.3, 0.1, 0.5]), AS_OF)
        assert 0.0 <= erratic < 100.0

    def test_dividend_stability_edge_counts(self):
        assert dividend_stability_subscore([], AS_OF) == 0.0
        assert dividend_stability_subscore(_divs([0.2]), AS_OF) == 50.0

    @pytest.mark.parametrize("gap,expected", [
        (7, "weekly"), (30, "monthly"), (91, "quarterly"), (182, "semiannual"),
    ])
    def test_infer_frequency(self, gap, expected):
        count = max(2, 364 // gap)
        assert infer_distribution_frequency(_divs([0.1] * count, gap), AS_OF) == expected

    def test_estimated_period_discounted_toward_neutral(self):
        real = DripResult(ticker="X", period="4w", percent=2.0)
        est = DripResult(ticker="X", period="4w", percent=2.0, is_estimated=True,
                         provenance="estimate")
        assert period_subscore(real, 13.0) == pytest.approx(76.0)
        assert period_subscore(est, 13.0) == pytest.approx(63.0)
        assert period_subscore(None, 13.0) == 50.0


# =====================================================================
# MODIFIERS
# =====================================================================

class TestModifiers:
    def test_home_bias_capped(self):
        w = ScoringWeights(homeCountryBias=50)
        mods = compute_modifiers(_inst(), w, TaxContext(), ModifierSettings())
        assert mods["home_bias"] == 6

    def test_home_bias_only_for_home_country(self):
        mods = compute_modifiers(_inst(country="CA", currency="CAD"),
                                 ScoringWeights(), TaxContext(country="US"),
                                 ModifierSettings())
        assert "home_bias" not in mods
        assert "currency" not in mods

    def test_canadian_context_rewards_canadian_listing(self):
        mods = compute_modifiers(_inst(country="CA", currency="CAD"),
                                 ScoringWeights(), TaxContext.for_country("CA"),
                                 ModifierSettings())
        assert mods["home_bias"] == 6
        assert mods["currency"] == 2

    def test_weekly_cadence_bonus(self):
        mods = compute_modifiers(_inst(distribution_frequency="weekly"),
                                 ScoringWeights(), TaxContext(), ModifierSettings())
        assert mods["cadence"] == 2

    def test_leverage_detected_from_name(self):
        inst = _inst(name="ProShares UltraPro QQQ")
        assert is_leveraged(inst)
        mods = compute_modifiers(inst, ScoringWeights(), TaxContext(), ModifierSettings())
        assert mods["leverage"] == -8

    def test_explicit_flag_overrides_name(self):
        assert not is_leveraged(_inst(name="Leveraged Something", is_leveraged=False))

    def test_small_young_fund_penalty_capped(self):
        mods = compute_modifiers(_inst(aum=0.0, fund_age_days=0), ScoringWeights(),
                                 TaxContext(), ModifierSettings())
        assert mods["size_age"] == -6

    def test_illiquidity_penalty(self):
        mods = compute_modifiers(_inst(avg_volume=1000, current_price=10.0),
                                 ScoringWeights(), TaxContext(), ModifierSettings())
        assert -6 <= mods["illiquidity"] < 0


# =====================================================================
# COMPOSITE
# =====================================================================

class TestCompose:
    def test_empty_instrument_scores_zero(self):
        inst = Instrument(ticker="EMPTY")
        drip = {p: DripResult(ticker="EMPTY", period=p, is_estimated=True,
                              provenance="estimate", confidence="none")
                for p in ("4w", "13w", "26w", "52w")}
        sub = build_subscores(inst, drip)
        assert sub.has_data is False
        assert compose(inst, sub, ScoringWeights()) == 0.0

    def test_weighted_base_relative(self):
        sub = SubScores(return_score=100, yield_score=100, risk_score=100,
                        dividend_stability=100, period_4w_score=100,
                        period_52w_score=100, trend_score=100)
        assert weighted_base(sub, ScoringWeights()) == pytest.approx(100.0)
        doubled = ScoringWeights(**{k: v * 2 for k, v in ScoringWeights().as_dict().items()})
        assert weighted_base(sub, doubled) == pytest.approx(100.0)

    def test_zero_weights_give_zero_base(self):
        zero = ScoringWeights(**{k: 0 for k in ScoringWeights().as_dict()})
        assert weighted_base(SubScores(return_score=80), zero) == 0.0

    def test_presets_reorder_income_vs_return(self):
        high_yield = _inst(ticker="HY", yield_ttm=10.0, total_return_1y=2.0)
        high_return = _inst(ticker="HR", yield_ttm=1.0, total_return_1y=40.0)

        def score(inst, w):
            return compose(inst, build_subscores(inst, {}), w)

        income = ScoringWeights.preset("incomeFirst")
        tilt = ScoringWeights.preset("totalReturnTilt")
        assert score(high_yield, income) > score(high_return, income)
        assert score(high_return, tilt) > score(high_yield, tilt)

    def test_deterministic(self):
        inst = _inst()
        sub = build_subscores(inst, {}, dividends=_divs([0.1] * 12), as_of=AS_OF)
        a = compose(inst, sub, ScoringWeights(), TaxContext(), ModifierSettings())
        b = compose(inst, sub, ScoringWeights(), TaxContext(), ModifierSettings())
        assert a == b

    def test_breakdown_flags_estimates(self):
        inst = _inst()
        drip = {"4w": DripResult(ticker="X", period="4w", percent=1.0,
                                 is_estimated=True, provenance="estimate")}
        bd = score_breakdown(inst, build_subscores(inst, drip), ScoringWeights(),
                             drip=drip)
        assert bd.has_estimates is True
        assert bd.weights_hash == ScoringWeights().weights_hash()
        assert bd.home_bias == 6


# =====================================================================
# MOMENTUM IN THE COMPOSITE
# =====================================================================

def _drip(values):
    return {p: DripResult(ticker="X", period=p, percent=v)
            for p, v in zip(PERIODS, values)}


class TestMomentumInComposite:
    def test_trend_subscore_mapping(self):
        assert trend_subscore(-2) == 0.0
        assert trend_subscore(0) == 50.0
        assert trend_subscore(2) == 100.0

    def test_accelerating_beats_decelerating(self):
        """Same 4w and 52w returns; only the ladder shape differs."""
        inst = _inst()
        accel = _drip([4.0, 8.0, 14.0, 26.0])
        decel = _drip([4.0, 20.0, 40.0, 26.0])
        sig_a = momentum(*(accel[p].percent for p in PERIODS))
        sig_d = momentum(*(decel[p].percent for p in PERIODS))
        assert sig_a.position == 2
        assert sig_d.position == -2

        sub_a = build_subscores(inst, accel, sig_a)
        sub_d = build_subscores(inst, decel, sig_d)
        assert sub_a.period_4w_score == sub_d.period_4w_score
        assert sub_a.period_52w_score == sub_d.period_52w_score
        assert sub_a.trend_score == 100.0
        assert sub_d.trend_score == 0.0

        w = ScoringWeights()
        gap = compose(inst, sub_a, w) - compose(inst, sub_d, w)
        # trend weight = period4w + period52w = 10 out of 100
        assert gap == pytest.approx(10.0)

    def test_no_signal_is_neutral(self):
        assert build_subscores(_inst(), {}).trend_score == 50.0
