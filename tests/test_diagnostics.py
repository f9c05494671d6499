import math

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from src.diagnostics import (
    compute_influence,
    cooks_threshold,
    dffits_threshold,
    residual_tests,
)
from src.modeling import fit_ols


def _line_with_outlier(n=50, seed=1):
    rng = np.random.default_rng(seed)
    x = rng.normal(size=n)
    y = 1.0 + 2.0 * x + rng.normal(scale=0.5, size=n)
    x[0] = 8.0
    y[0] = -20.0
    return pd.DataFrame({"x": x, "y": y}, index=pd.RangeIndex(100, 100 + n))


@pytest.mark.parametrize("n,p", [(800, 3), (800, 11), (50, 1), (20, 0)])
def test_thresholds_match_formulas(n, p):
    assert cooks_threshold(n, p) == pytest.approx(stats.f.ppf(0.5, p + 1, n - p - 1))
    assert dffits_threshold(n, p) == pytest.approx(2 * math.sqrt((p + 1) / n))


def test_cooks_threshold_for_large_n_is_near_one():
    # the median of an F distribution with a large denominator df sits just below 1
    value = cooks_threshold(800, 3)
    assert 0.5 < value < 1.0


def test_thresholds_reject_degenerate_sizes():
    with pytest.raises(ValueError):
        cooks_threshold(4, 3)
    with pytest.raises(ValueError):
        dffits_threshold(0, 1)


def test_planted_outlier_is_flagged_by_both_measures():
    df = _line_with_outlier()
    model = fit_ols(df, "y", ["x"])
    summary = compute_influence(model)

    assert summary.n_obs == 50 and summary.n_predictors == 1
    assert 100 in summary.cooks_flagged
    assert 100 in summary.dffits_flagged
    assert summary.cooks_distance.idxmax() == 100
    assert summary.top_observations(3).index[0] == 100
    assert bool(summary.top_observations(3)["cooks_flag"].iloc[0])


def test_influence_counts_are_bounded_and_aligned():
    df = _line_with_outlier(n=80, seed=4)
    model = fit_ols(df, "y", ["x"])
    summary = compute_influence(model)

    for count in (summary.cooks_count, summary.dffits_count):
        assert isinstance(count, int)
        assert 0 <= count <= summary.n_obs
    assert list(summary.cooks_distance.index) == list(df.index)
    assert list(summary.dffits.index) == list(df.index)
    assert (summary.cooks_distance >= 0).all()
    # leverages of an OLS fit sum to the number of coefficients
    assert summary.leverage.sum() == pytest.approx(2.0)


def test_clean_data_has_few_cooks_flags():
    rng = np.random.default_rng(12)
    n = 400
    df = pd.DataFrame({"a": rng.normal(size=n), "b": rng.normal(size=n)})
    df["y"] = df["a"] - df["b"] + rng.normal(size=n)
    summary = compute_influence(fit_ols(df, "y", ["a", "b"]))
    assert summary.cooks_count == 0
    # roughly 5% of well-behaved rows exceed the DFFITS cut-off
    assert summary.dffits_count < 0.15 * n


def test_residual_tests_fields():
    rng = np.random.default_rng(7)
    n = 200
    df = pd.DataFrame({"x": rng.normal(size=n)})
    df["y"] = 3.0 * df["x"] + rng.normal(size=n)
    checks = residual_tests(fit_ols(df, "y", ["x"]))
    assert 0.0 < checks.shapiro_stat <= 1.0
    assert 0.0 <= checks.shapiro_p <= 1.0
    assert checks.breusch_pagan_lm >= 0.0
    assert 0.0 <= checks.breusch_pagan_p <= 1.0
    # independent errors give a Durbin-Watson statistic near 2
    assert 1.5 < checks.durbin_watson < 2.5


def test_residual_tests_intercept_only_skips_breusch_pagan():
    df = pd.DataFrame({"y": np.linspace(0.0, 1.0, 30) ** 2})
    checks = residual_tests(fit_ols(df, "y", []))
    assert math.isnan(checks.breusch_pagan_lm)
    assert math.isnan(checks.breusch_pagan_p)
    assert not math.isnan(checks.durbin_watson)
