"""
Residual and influence diagnostics for a fitted OLS model.

Thresholds:
- Cook's distance: flagged above the median of F(p+1, n-p-1)
- DFFITS: flagged when |DFFITS| > 2 * sqrt((p+1)/n)
where p is the number of predictors (intercept excluded) and n the number of rows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.diagnostic import het_breuschpagan
from statsmodels.stats.stattools import durbin_watson

try:
    from .modeling import FittedModel
except ImportError:
    from modeling import FittedModel

logger = logging.getLogger(__name__)


def cooks_threshold(n_obs: int, n_predictors: int) -> float:
    """50th percentile of the F distribution with (p+1, n-p-1) degrees of freedom."""
    dfd = n_obs - n_predictors - 1
    if dfd <= 0:
        raise ValueError(
            f"Cook's distance threshold undefined for n={n_obs}, p={n_predictors}"
        )
    return float(stats.f.ppf(0.5, n_predictors + 1, dfd))


def dffits_threshold(n_obs: int, n_predictors: int) -> float:
    if n_obs <= 0:
        raise ValueError("DFFITS threshold needs at least one observation")
    return float(2.0 * math.sqrt((n_predictors + 1) / n_obs))


@dataclass
class InfluenceSummary:
    cooks_distance: pd.Series
    dffits: pd.Series
    leverage: pd.Series
    cooks_threshold: float
    dffits_threshold: float
    n_obs: int
    n_predictors: int

    @property
    def cooks_flagged(self) -> pd.Index:
        return self.cooks_distance.index[self.cooks_distance > self.cooks_threshold]

    @property
    def dffits_flagged(self) -> pd.Index:
        return self.dffits.index[self.dffits.abs() > self.dffits_threshold]

    @property
    def cooks_count(self) -> int:
        return int(len(self.cooks_flagged))

    @property
    def dffits_count(self) -> int:
        return int(len(self.dffits_flagged))

    def top_observations(self, n: int = 10) -> pd.DataFrame:
        """Most influential rows by Cook's distance, with both flags."""
        frame = pd.DataFrame(
            {
                "cooks_d": self.cooks_distance,
                "dffits": self.dffits,
                "leverage": self.leverage,
            }
        )
        frame["cooks_flag"] = frame["cooks_d"] > self.cooks_threshold
        frame["dffits_flag"] = frame["dffits"].abs() > self.dffits_threshold
        return frame.sort_values("cooks_d", ascending=False).head(n)


def compute_influence(model: FittedModel) -> InfluenceSummary:
    influence = model.results.get_influence()
    index = model.resid.index
    n_obs = model.nobs
    p = model.n_predictors
    summary = InfluenceSummary(
        cooks_distance=pd.Series(
            np.asarray(influence.cooks_distance[0]), index=index, name="cooks_d"
        ),
        dffits=pd.Series(np.asarray(influence.dffits[0]), index=index, name="dffits"),
        leverage=pd.Series(
            np.asarray(influence.hat_matrix_diag), index=index, name="leverage"
        ),
        cooks_threshold=cooks_threshold(n_obs, p),
        dffits_threshold=dffits_threshold(n_obs, p),
        n_obs=n_obs,
        n_predictors=p,
    )
    logger.info(
        f"Influence on '{model.label}': Cook's D > {summary.cooks_threshold:.4f}: "
        f"{summary.cooks_count}/{n_obs}; |DFFITS| > {summary.dffits_threshold:.4f}: "
        f"{summary.dffits_count}/{n_obs}"
    )
    return summary


@dataclass
class ResidualTests:
    shapiro_stat: float
    shapiro_p: float
    breusch_pagan_lm: float
    breusch_pagan_p: float
    durbin_watson: float


def residual_tests(model: FittedModel) -> ResidualTests:
    """
    Formal companions to the residual plots.

    Shapiro-Wilk for normality, Breusch-Pagan for constant variance and Durbin-Watson
    for serial correlation. Breusch-Pagan needs at least one predictor; it is NaN for
    the intercept-only model.
    """
    resid = np.asarray(model.resid, dtype=float)
    shapiro_stat, shapiro_p = stats.shapiro(resid)
    if model.n_predictors > 0:
        bp_lm, bp_p, _, _ = het_breuschpagan(resid, model.results.model.exog)
    else:
        bp_lm, bp_p = float("nan"), float("nan")
    return ResidualTests(
        shapiro_stat=float(shapiro_stat),
        shapiro_p=float(shapiro_p),
        breusch_pagan_lm=float(bp_lm),
        breusch_pagan_p=float(bp_p),
        durbin_watson=float(durbin_watson(resid)),
    )
