"""
Ordinary least squares fitting and model selection helpers.

Everything here is built on statsmodels:
- fit_ols(): OLS with an explicit intercept column ('const') and a rank check
- variance_inflation_factors(): VIF per predictor, intercept excluded
- partial_f_test(): nested-model F-test with the "fail to reject => accept reduction" policy
- information_criteria(): AIC / AICc / BIC / R² / adjusted R² / in-sample RMSE
- backward_eliminate(): iterated VIF + significance elimination
- build_model_comparison(): fixed-width comparison table plus the policy choice
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from statsmodels.stats.outliers_influence import variance_inflation_factor
from statsmodels.tools import eval_measures

logger = logging.getLogger(__name__)

CONST_COLUMN = "const"


class RankDeficientDesignError(ValueError):
    """Raised when the design matrix has linearly dependent columns."""

    pass


@dataclass
class FittedModel:
    """A fitted OLS model and the names it was fitted with."""

    label: str
    response: str
    predictors: List[str]
    results: Any  # statsmodels RegressionResultsWrapper

    @property
    def n_predictors(self) -> int:
        return len(self.predictors)

    @property
    def nobs(self) -> int:
        return int(self.results.nobs)

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def bse(self) -> pd.Series:
        return self.results.bse

    @property
    def pvalues(self) -> pd.Series:
        return self.results.pvalues

    @property
    def resid(self) -> pd.Series:
        return self.results.resid

    @property
    def fittedvalues(self) -> pd.Series:
        return self.results.fittedvalues

    @property
    def rsquared(self) -> float:
        return float(self.results.rsquared)

    @property
    def rsquared_adj(self) -> float:
        return float(self.results.rsquared_adj)


def build_design(df: pd.DataFrame, predictors: Sequence[str]) -> pd.DataFrame:
    """
    Design matrix with a leading 'const' column followed by `predictors` in order.

    An empty predictor list yields the intercept-only design.
    """
    if not predictors:
        return pd.DataFrame({CONST_COLUMN: np.ones(len(df))}, index=df.index)
    X = df[list(predictors)].astype(float)
    return sm.add_constant(X, has_constant="add")


def _check_rank(X: pd.DataFrame) -> None:
    rank = int(np.linalg.matrix_rank(X.to_numpy()))
    if rank < X.shape[1]:
        raise RankDeficientDesignError(
            f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns: "
            f"{list(X.columns)}); coefficients are not identifiable"
        )


def fit_ols(
    df: pd.DataFrame,
    response: str,
    predictors: Sequence[str],
    label: Optional[str] = None,
) -> FittedModel:
    """
    Fit `response ~ 1 + predictors` by ordinary least squares.

    Raises:
        ValueError: unknown columns, response used as predictor, or too few rows
        RankDeficientDesignError: linearly dependent design columns
    """
    predictors = list(predictors)
    if response in predictors:
        raise ValueError(f"Response '{response}' cannot also be a predictor")
    if len(set(predictors)) != len(predictors):
        raise ValueError(f"Duplicate predictors requested: {predictors}")
    missing = [c for c in [response, *predictors] if c not in df.columns]
    if missing:
        raise ValueError(f"Columns not found in dataset: {missing}")

    X = build_design(df, predictors)
    if len(df) <= X.shape[1]:
        raise ValueError(
            f"Need more rows than coefficients to fit OLS (rows={len(df)}, coefficients={X.shape[1]})"
        )
    _check_rank(X)

    y = df[response].astype(float)
    results = sm.OLS(y, X).fit()
    label = label or f"OLS({len(predictors)} predictors)"
    logger.debug(
        f"Fitted {label}: n={int(results.nobs)}, k={len(predictors)}, adj R²={results.rsquared_adj:.4f}"
    )
    return FittedModel(
        label=label, response=response, predictors=predictors, results=results
    )


def coefficient_table(model: FittedModel) -> pd.DataFrame:
    """Coefficients, standard errors, t statistics, p-values and 95% intervals."""
    res = model.results
    ci = res.conf_int()
    return pd.DataFrame(
        {
            "coef": res.params,
            "std_err": res.bse,
            "t": res.tvalues,
            "p_value": res.pvalues,
            "ci_low": ci.iloc[:, 0],
            "ci_high": ci.iloc[:, 1],
        }
    )


# -------------------------
# Selection statistics
# -------------------------
def significance_candidates(model: FittedModel, alpha: float = 0.05) -> List[str]:
    """
    Predictors whose two-sided t-test p-value exceeds `alpha`, least significant first.
    The intercept is never a candidate.
    """
    pvals = model.pvalues.drop(labels=[CONST_COLUMN], errors="ignore")
    flagged = pvals[pvals > alpha].sort_values(ascending=False)
    return list(flagged.index)


def variance_inflation_factors(
    df: pd.DataFrame, predictors: Sequence[str]
) -> pd.Series:
    """
    VIF for each predictor, computed on the design that includes the intercept.

    The intercept itself is excluded from the result. A single predictor has VIF 1.
    """
    predictors = list(predictors)
    if not predictors:
        return pd.Series(dtype=float, name="VIF")
    X = build_design(df, predictors)
    _check_rank(X)
    exog = X.to_numpy()
    values = {
        name: float(variance_inflation_factor(exog, i))
        for i, name in enumerate(X.columns)
        if name != CONST_COLUMN
    }
    return pd.Series(values, name="VIF")


def vif_candidates(vifs: pd.Series, threshold: float = 5.0) -> List[str]:
    """Predictors whose VIF exceeds `threshold`, largest first."""
    flagged = vifs[vifs > threshold].sort_values(ascending=False)
    return list(flagged.index)


@dataclass
class PartialFTest:
    reduced_label: str
    full_label: str
    removed: List[str]
    f_value: float
    p_value: float
    df_diff: int
    alpha: float

    @property
    def accept_reduction(self) -> bool:
        """Fail to reject H0 (removed terms add nothing) => keep the reduced model."""
        return bool(self.p_value > self.alpha)


def partial_f_test(
    reduced: FittedModel, full: FittedModel, alpha: float = 0.05
) -> PartialFTest:
    """
    Partial F-test of `reduced` against the nested `full` model.

    Both models must share the response and the exact row set, and the reduced
    predictors must be a strict subset of the full predictors.
    """
    if reduced.response != full.response:
        raise ValueError(
            f"Models have different responses: '{reduced.response}' vs '{full.response}'"
        )
    if not set(reduced.predictors) < set(full.predictors):
        raise ValueError(
            f"'{reduced.label}' is not nested in '{full.label}': "
            f"{reduced.predictors} is not a strict subset of {full.predictors}"
        )
    if not reduced.resid.index.equals(full.resid.index):
        raise ValueError("Nested models must be fitted on the same rows")

    f_value, p_value, df_diff = full.results.compare_f_test(reduced.results)
    removed = [p for p in full.predictors if p not in reduced.predictors]
    return PartialFTest(
        reduced_label=reduced.label,
        full_label=full.label,
        removed=removed,
        f_value=float(f_value),
        p_value=float(p_value),
        df_diff=int(round(df_diff)),
        alpha=alpha,
    )


def information_criteria(model: FittedModel) -> Dict[str, float]:
    """
    Goodness-of-fit summary.

    AICc uses the same parameter count as statsmodels' AIC (coefficients including the
    intercept), so AICc - AIC is exactly the small-sample correction term.
    """
    res = model.results
    n = float(res.nobs)
    k = float(res.df_model + res.k_constant)
    return {
        "aic": float(res.aic),
        "aicc": float(eval_measures.aicc(res.llf, n, k)),
        "bic": float(res.bic),
        "r2": float(res.rsquared),
        "adj_r2": float(res.rsquared_adj),
        "rmse": float(np.sqrt(np.mean(np.square(res.resid)))),
        "n_obs": int(n),
        "n_predictors": model.n_predictors,
    }


def criteria_frame(models: Sequence[FittedModel]) -> pd.DataFrame:
    """One row of information_criteria() per model, indexed by label."""
    rows = {m.label: information_criteria(m) for m in models}
    return pd.DataFrame.from_dict(rows, orient="index")


# -------------------------
# Backward elimination
# -------------------------
@dataclass
class SelectionStep:
    step: int
    removed: str
    reason: str  # "vif" or "p-value"
    statistic: float
    f_test: PartialFTest
    model: FittedModel


@dataclass
class SelectionResult:
    initial: FittedModel
    final: FittedModel
    steps: List[SelectionStep] = field(default_factory=list)
    final_vifs: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))

    def steps_frame(self) -> pd.DataFrame:
        rows = []
        for s in self.steps:
            crit = information_criteria(s.model)
            rows.append(
                {
                    "step": s.step,
                    "removed": s.removed,
                    "reason": s.reason,
                    "statistic": s.statistic,
                    "partial_F": s.f_test.f_value,
                    "partial_F_p": s.f_test.p_value,
                    "aicc": crit["aicc"],
                    "bic": crit["bic"],
                    "adj_r2": crit["adj_r2"],
                }
            )
        return pd.DataFrame(rows)


def backward_eliminate(
    df: pd.DataFrame,
    response: str,
    predictors: Sequence[str],
    alpha: float = 0.05,
    vif_threshold: float = 5.0,
    label: str = "Backward eliminated",
) -> SelectionResult:
    """
    Remove one predictor at a time until none qualifies for removal.

    Each round refits the current model and then:
      1. if any VIF exceeds `vif_threshold`, removes the predictor with the largest VIF;
      2. otherwise, if any p-value exceeds `alpha`, removes the least significant predictor;
      3. otherwise stops.

    Every removal is checked with a partial F-test against the previous model and the
    outcome is recorded on the step; a multicollinearity removal is kept even when the
    test rejects, since the collinear term's share is taken over by its correlates.
    """
    current = fit_ols(df, response, predictors, label=f"{label} (start)")
    initial = current
    steps: List[SelectionStep] = []

    while current.predictors:
        vifs = variance_inflation_factors(df, current.predictors)
        collinear = vif_candidates(vifs, vif_threshold)
        if collinear:
            removed = collinear[0]
            reason = "vif"
            statistic = float(vifs[removed])
        else:
            insignificant = significance_candidates(current, alpha)
            if not insignificant:
                break
            removed = insignificant[0]
            reason = "p-value"
            statistic = float(current.pvalues[removed])

        remaining = [p for p in current.predictors if p != removed]
        step_no = len(steps) + 1
        reduced = fit_ols(df, response, remaining, label=f"{label} (step {step_no})")
        f_test = partial_f_test(reduced, current, alpha)
        logger.info(
            f"Backward elimination step {step_no}: removed '{removed}' "
            f"({reason}={statistic:.4g}); partial F p={f_test.p_value:.4g}, "
            f"adj R²={reduced.rsquared_adj:.4f}"
        )
        if reason == "vif" and not f_test.accept_reduction:
            logger.warning(
                f"Partial F-test rejects dropping '{removed}' (p={f_test.p_value:.4g}); "
                "removed anyway for multicollinearity"
            )
        steps.append(
            SelectionStep(
                step=step_no,
                removed=removed,
                reason=reason,
                statistic=statistic,
                f_test=f_test,
                model=reduced,
            )
        )
        current = reduced

    final = dataclasses.replace(current, label=label)
    return SelectionResult(
        initial=initial,
        final=final,
        steps=steps,
        final_vifs=variance_inflation_factors(df, final.predictors),
    )


# -------------------------
# Comparison and hold-out evaluation
# -------------------------
def select_best_label(crit: pd.DataFrame) -> str:
    """
    Policy: lowest AICc, then lowest BIC, then highest adjusted R², then fewer predictors.
    Non-finite values sort last.
    """

    def pos_inf_if_bad(x: Any) -> float:
        try:
            xv = float(x)
        except (TypeError, ValueError):
            return float("inf")
        return xv if math.isfinite(xv) else float("inf")

    ranked = sorted(
        crit.index,
        key=lambda label: (
            pos_inf_if_bad(crit.at[label, "aicc"]),
            pos_inf_if_bad(crit.at[label, "bic"]),
            pos_inf_if_bad(-float(crit.at[label, "adj_r2"])),
            int(crit.at[label, "n_predictors"]),
            str(label),
        ),
    )
    return ranked[0]


def build_model_comparison(models: Sequence[FittedModel]) -> Tuple[str, str]:
    """
    Build the model-comparison table and return (best_label, table_text).

    Formatting:
      - Headers: [Model, k, AICc, BIC, AIC, RMSE_in, Adj R²]
      - Fixed notation; missing/non-finite rendered as "-" centered in the field
    """
    if not models:
        raise ValueError("No models to compare")

    def _fmt_fixed(x: Optional[float], width: int, decimals: int) -> str:
        s = "-"
        if x is not None:
            try:
                xf = float(x)
                if math.isfinite(xf):
                    s = f"{xf:.{decimals}f}"
            except (TypeError, ValueError):
                s = "-"
        if s == "-":
            return s.center(width)
        return s.rjust(width)

    class ModelRow(NamedTuple):
        label: str
        k: str
        aicc: str
        bic: str
        aic: str
        rmse: str
        adj_r2: str

    crit = criteria_frame(models)
    best_label = select_best_label(crit)

    rows = [
        ModelRow(
            label=str(label),
            k=str(int(r["n_predictors"])).rjust(3),
            aicc=_fmt_fixed(r["aicc"], 12, 2),
            bic=_fmt_fixed(r["bic"], 12, 2),
            aic=_fmt_fixed(r["aic"], 12, 2),
            rmse=_fmt_fixed(r["rmse"], 10, 5),
            adj_r2=_fmt_fixed(r["adj_r2"], 10, 5),
        )
        for label, r in crit.iterrows()
    ]

    headers = ModelRow("Model", "k", "AICc", "BIC", "AIC", "RMSE_in", "Adj R²")
    col0_width = max(len(headers.label), max(len(r.label) for r in rows))
    header_line = (
        f"{headers.label:<{col0_width}}  {headers.k:>3}  {headers.aicc:>12}  "
        f"{headers.bic:>12}  {headers.aic:>12}  {headers.rmse:>10}  {headers.adj_r2:>10}"
    )
    lines = ["Model Comparison (OLS, training subset)", header_line, "-" * len(header_line)]
    for r in rows:
        lines.append(
            f"{r.label:<{col0_width}}  {r.k}  {r.aicc}  {r.bic}  {r.aic}  {r.rmse}  {r.adj_r2}"
        )
    lines.append("")
    lines.append(f"Selected model (by policy): {best_label}")
    lines.append("")
    return best_label, "\n".join(lines)


def evaluate_holdout(model: FittedModel, df_test: pd.DataFrame) -> Dict[str, Any]:
    """Predict the held-out rows and score them with scikit-learn metrics."""
    missing = [c for c in [model.response, *model.predictors] if c not in df_test.columns]
    if missing:
        raise ValueError(f"Hold-out set is missing columns: {missing}")
    X = build_design(df_test, model.predictors)
    X = X.reindex(columns=model.results.model.exog_names)
    y_true = df_test[model.response].astype(float).to_numpy()
    y_pred = np.asarray(model.results.predict(X), dtype=float)
    return {
        "n_test": int(len(df_test)),
        "rmse": float(np.sqrt(mean_squared_error(y_true, y_pred))),
        "mae": float(mean_absolute_error(y_true, y_pred)),
        "r2": float(r2_score(y_true, y_pred)),
        "predictions": pd.Series(y_pred, index=df_test.index, name="predicted"),
    }
