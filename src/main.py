#!/usr/bin/env python3
"""
Red wine quality regression report.

This module exposes the pipeline as explicit functional units:
- load_wine_csv()
- split_train_test() / log_transform_columns()
- run_analysis()
- render_plots() / build_report_sections()

Each function takes explicit inputs and returns explicit outputs. Logging is kept for
internal diagnostics; _orchestrate() is the only place that writes artifacts.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import IntFlag
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Select a non-interactive Matplotlib backend before pyplot is imported so rendering
# never tries to open a GUI in headless environments.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split
from statsmodels.graphics.gofplots import qqplot

# Support both package and script execution modes
try:
    # When run as a package: python -m src.main
    from .csv_processor import WineCSVReader, coerce_numeric
    from .diagnostics import (
        InfluenceSummary,
        ResidualTests,
        compute_influence,
        residual_tests,
    )
    from .modeling import (
        FittedModel,
        PartialFTest,
        SelectionResult,
        backward_eliminate,
        build_model_comparison,
        coefficient_table,
        evaluate_holdout,
        fit_ols,
        partial_f_test,
        variance_inflation_factors,
    )
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python src/main.py
    from csv_processor import WineCSVReader, coerce_numeric
    from diagnostics import (
        InfluenceSummary,
        ResidualTests,
        compute_influence,
        residual_tests,
    )
    from modeling import (
        FittedModel,
        PartialFTest,
        SelectionResult,
        backward_eliminate,
        build_model_comparison,
        coefficient_table,
        evaluate_holdout,
        fit_ols,
        partial_f_test,
        variance_inflation_factors,
    )
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

RESPONSE_COLUMN = "quality"

PREDICTOR_COLUMNS: List[str] = [
    "fixed_acidity",
    "volatile_acidity",
    "citric_acid",
    "residual_sugar",
    "chlorides",
    "free_sulfur_dioxide",
    "total_sulfur_dioxide",
    "density",
    "ph",
    "sulphates",
    "alcohol",
]

# Columns whose residual plots on the untransformed full model show curvature or a
# fanning spread. citric_acid holds zeros; density and ph span a very narrow range.
LOG_COLUMNS: List[str] = [
    "fixed_acidity",
    "volatile_acidity",
    "residual_sugar",
    "chlorides",
    "free_sulfur_dioxide",
    "total_sulfur_dioxide",
    "sulphates",
    "alcohol",
]

LOG_PREFIX = "log_"

REDUCED_PREDICTORS: List[str] = [
    "log_volatile_acidity",
    "log_sulphates",
    "log_alcohol",
]

LABEL_FULL_RAW = "Full (untransformed)"
LABEL_FULL = "Full (log-transformed)"
LABEL_BACKWARD = "Backward eliminated"


def reduced_label(n_predictors: int) -> str:
    return f"Reduced ({n_predictors} predictor{'' if n_predictors == 1 else 's'})"


LABEL_REDUCED = reduced_label(len(REDUCED_PREDICTORS))


class NonPositiveValueError(ValueError):
    """Raised when a column passed to the log transform holds values <= 0."""

    pass


@dataclass
class StepResult:
    """Row counts, events and timing of one pipeline step, summarized in the report."""

    label: Optional[str] = None
    original_rows: int = 0
    result_rows: int = 0
    excluded_rows: int = 0
    warnings: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    elapsed_ms: Optional[float] = None
    _t0: Optional[float] = field(default=None, repr=False)

    def start(self) -> None:
        self._t0 = time.perf_counter()

    def stop(self) -> None:
        if self._t0 is not None:
            self.elapsed_ms = (time.perf_counter() - self._t0) * 1000.0

    def set_rows(self, before: int, after: int) -> None:
        self.original_rows = int(before)
        self.result_rows = int(after)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        self.events.append(message)
        logger.info(message)

    def add_metric(self, name: str, value: Any) -> None:
        self.metrics[name] = value

    def summarize(self) -> str:
        """One line: '<label> rows: before → after | key=value ...'."""
        head = f"{self.label or 'step'} rows: {self.original_rows} → {self.result_rows}"
        extras = {
            "excluded_rows": self.excluded_rows or None,
            "warnings": len(self.warnings) or None,
            "elapsed_ms": None if self.elapsed_ms is None else f"{self.elapsed_ms:.1f}",
        }
        extras.update(self.metrics)
        tail = [f"{k}={v}" for k, v in extras.items() if v is not None]
        return " | ".join([head, *tail])


def log_column_name(column: str) -> str:
    """
    Name of the log-transformed counterpart of a column.
    E.g., 'alcohol' -> 'log_alcohol'
    """
    return f"{LOG_PREFIX}{column.strip()}"


# -------------------------
# Data Loader
# -------------------------
@dataclass
class LoadParams:
    """
    Parameters used when loading the wine table.

    Attributes:
        csv_path: Path to the delimited file to read.
        delimiter: Field separator; None sniffs it (the UCI file uses ';').
    """

    csv_path: Optional[Path]
    delimiter: Optional[str] = None


@dataclass
class LoadOutputs:
    df: pd.DataFrame
    raw_rows: int
    step: StepResult
    file_info: Dict[str, Any] = field(default_factory=dict)


def drop_incomplete_rows(
    df: pd.DataFrame, verbose: bool = False
) -> Tuple[pd.DataFrame, StepResult]:
    """
    Drop every row that has a missing value in any column.

    Returns a new frame (original index labels preserved) and the step diagnostics.
    """
    result = StepResult("drop_incomplete_rows")
    result.start()
    complete = df.dropna(how="any")
    result.set_rows(len(df), len(complete))
    result.excluded_rows = result.original_rows - result.result_rows
    if result.excluded_rows:
        per_column = df.isna().sum()
        per_column = per_column[per_column > 0]
        result.add_metric("missing_by_column", str(per_column.to_dict()))
        result.add_event(
            f"Dropped {result.excluded_rows} incomplete row(s) of {result.original_rows}"
        )
    elif verbose:
        result.add_event("No incomplete rows found")
    result.stop()
    return complete, result


def load_wine_csv(params: LoadParams, verbose: bool = False) -> LoadOutputs:
    """
    Load the wine table, keep the 12 canonical columns and drop incomplete rows.
    Raises on a missing file, malformed content, missing columns or an empty result.
    """
    if params.csv_path is None:
        raise ValueError("No CSV path given")
    csv_path = Path(params.csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"CSV file not found at {csv_path}")

    with WineCSVReader(csv_path, delimiter=params.delimiter) as reader:
        raw = reader.read_table()
        file_info = reader.get_file_info()

    required = [*PREDICTOR_COLUMNS, RESPONSE_COLUMN]
    missing = [c for c in required if c not in raw.columns]
    if missing:
        raise ValueError(
            f"CSV is missing required column(s) {missing}; found {list(raw.columns)}"
        )
    extra = [c for c in raw.columns if c not in required]
    if extra:
        logger.warning(f"Ignoring unexpected column(s): {extra}")

    numeric = coerce_numeric(raw[required])
    df, step = drop_incomplete_rows(numeric, verbose=verbose)
    if df.empty:
        raise ValueError("No complete rows found in the CSV")
    logger.info(f"Loaded {len(df)} complete row(s) from {csv_path}")
    return LoadOutputs(df=df, raw_rows=int(len(raw)), step=step, file_info=file_info)


# -------------------------
# Sampler/Splitter and Transformer
# -------------------------
def split_train_test(
    n_rows: int, train_size: int, seed: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Partition row positions 0..n_rows-1 into sorted train and test index arrays.

    The same (n_rows, train_size, seed) always yields the same partition.
    """
    if n_rows < 2:
        raise ValueError(f"Need at least 2 rows to split, got {n_rows}")
    if not 0 < train_size < n_rows:
        raise ValueError(
            f"train_size must be between 1 and {n_rows - 1} for {n_rows} rows, got {train_size}"
        )
    positions = np.arange(n_rows)
    train_idx, test_idx = train_test_split(
        positions, train_size=train_size, random_state=seed, shuffle=True
    )
    return np.sort(train_idx), np.sort(test_idx)


def log_transform_columns(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """
    Return a new frame where each listed column is replaced, at the same position, by
    'log_<column>' holding its natural logarithm. Other columns pass through unchanged.

    Raises:
        ValueError: a listed column is absent
        NonPositiveValueError: a listed column holds a value <= 0
    """
    # a column named twice is still logged once
    columns = list(dict.fromkeys(columns))
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Cannot log-transform missing column(s): {missing}")
    for col in columns:
        bad = df[col] <= 0
        if bad.any():
            raise NonPositiveValueError(
                f"Column '{col}' has {int(bad.sum())} non-positive value(s) "
                f"(min={df[col].min()}); natural log is undefined"
            )

    out = df.copy()
    for col in columns:
        out[col] = np.log(out[col].astype(float))
    return out.rename(columns={c: log_column_name(c) for c in columns})


# -------------------------
# Analysis
# -------------------------
@dataclass
class AnalysisParams:
    train_size: int
    seed: int
    alpha: float
    vif_threshold: float
    log_columns: List[str]
    final_predictors: List[str]
    verbose: bool = False


@dataclass
class AnalysisOutputs:
    df_train_raw: pd.DataFrame
    df_train: pd.DataFrame
    df_test: pd.DataFrame
    split_step: StepResult
    full_raw: FittedModel
    full: FittedModel
    selection: SelectionResult
    final: FittedModel
    final_f_test: Optional[PartialFTest]
    vif_full: pd.Series
    vif_final: pd.Series
    influence: InfluenceSummary
    residual_checks: ResidualTests
    holdout: Dict[str, Any]
    best_label: str
    comparison_text: str


def validate_analysis_params(params: AnalysisParams) -> None:
    """Reject thresholds that would make the selection rules meaningless."""
    if not 0.0 < params.alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1), got {params.alpha}")
    if not params.vif_threshold >= 1.0:
        raise ValueError(f"vif_threshold must be >= 1, got {params.vif_threshold}")


def transformed_predictors(log_columns: List[str]) -> List[str]:
    """PREDICTOR_COLUMNS in order, with the log-transformed ones renamed."""
    return [log_column_name(c) if c in log_columns else c for c in PREDICTOR_COLUMNS]


def run_analysis(df: pd.DataFrame, params: AnalysisParams) -> AnalysisOutputs:
    """
    Split, transform, fit, select and diagnose.

    The full model is fitted on the untransformed and on the transformed training
    subset; backward elimination starts from the transformed full model; the final
    model uses params.final_predictors and is the one diagnosed and scored on the
    test subset.
    """
    validate_analysis_params(params)
    split_step = StepResult("split_train_test")
    split_step.start()
    train_pos, test_pos = split_train_test(len(df), params.train_size, params.seed)
    split_step.set_rows(len(df), len(train_pos))
    split_step.add_metric("seed", params.seed)
    split_step.add_metric("train_rows", int(len(train_pos)))
    split_step.add_metric("test_rows", int(len(test_pos)))
    split_step.add_event(
        f"Split {len(df)} rows into {len(train_pos)} train / {len(test_pos)} test (seed={params.seed})"
    )
    split_step.stop()

    transformed = log_transform_columns(df, params.log_columns)
    df_train_raw = df.iloc[train_pos]
    df_train = transformed.iloc[train_pos]
    df_test = transformed.iloc[test_pos]

    predictors = transformed_predictors(params.log_columns)
    unknown = [p for p in params.final_predictors if p not in predictors]
    if unknown:
        raise ValueError(
            f"Final predictor(s) {unknown} not available; choose from {predictors}"
        )
    if not params.final_predictors:
        raise ValueError("At least one final predictor is required")

    full_raw = fit_ols(df_train_raw, RESPONSE_COLUMN, PREDICTOR_COLUMNS, LABEL_FULL_RAW)
    full = fit_ols(df_train, RESPONSE_COLUMN, predictors, LABEL_FULL)
    vif_full = variance_inflation_factors(df_train, predictors)

    selection = backward_eliminate(
        df_train,
        RESPONSE_COLUMN,
        predictors,
        alpha=params.alpha,
        vif_threshold=params.vif_threshold,
        label=LABEL_BACKWARD,
    )
    logger.info(
        f"Backward elimination kept {selection.final.predictors} after {len(selection.steps)} step(s)"
    )

    final_predictors = [p for p in predictors if p in params.final_predictors]
    final_label = reduced_label(len(final_predictors))
    final = fit_ols(df_train, RESPONSE_COLUMN, final_predictors, final_label)
    final_f_test = None
    if set(final_predictors) < set(predictors):
        final_f_test = partial_f_test(final, full, alpha=params.alpha)
        decision = "accept" if final_f_test.accept_reduction else "reject"
        logger.info(
            f"Partial F-test {final_label} vs {LABEL_FULL}: F={final_f_test.f_value:.4f}, "
            f"p={final_f_test.p_value:.4g} -> {decision} reduction"
        )
    vif_final = variance_inflation_factors(df_train, final_predictors)

    models = [full_raw, full, selection.final, final]
    best_label, comparison_text = build_model_comparison(models)

    influence = compute_influence(final)
    residual_checks = residual_tests(final)
    holdout = evaluate_holdout(final, df_test)
    logger.info(
        f"Hold-out ({holdout['n_test']} rows): RMSE={holdout['rmse']:.4f}, R²={holdout['r2']:.4f}"
    )

    return AnalysisOutputs(
        df_train_raw=df_train_raw,
        df_train=df_train,
        df_test=df_test,
        split_step=split_step,
        full_raw=full_raw,
        full=full,
        selection=selection,
        final=final,
        final_f_test=final_f_test,
        vif_full=vif_full,
        vif_final=vif_final,
        influence=influence,
        residual_checks=residual_checks,
        holdout=holdout,
        best_label=best_label,
        comparison_text=comparison_text,
    )


# -------------------------
# Figures
# -------------------------
class DiagnosticPlot(IntFlag):
    # Exploratory
    DISTRIBUTIONS = 1 << 0
    # Residuals of the untransformed full model (motivates the log transform)
    RESID_FITTED_FULL = 1 << 1
    # Final model residual checks
    RESID_FITTED = 1 << 2
    RESID_PREDICTORS = 1 << 3
    QQ = 1 << 4
    # Influence
    COOKS = 1 << 5
    DFFITS = 1 << 6
    # Test subset
    HOLDOUT = 1 << 7

    # Presets
    NONE = 0
    RESIDUALS = RESID_FITTED | RESID_PREDICTORS | QQ
    INFLUENCE = COOKS | DFFITS
    DEFAULT = RESID_FITTED_FULL | RESID_FITTED | RESID_PREDICTORS | QQ | COOKS | DFFITS
    ALL = DEFAULT | DISTRIBUTIONS | HOLDOUT


# Canonical render order of atomic figures
PLOT_ORDER = [
    "DISTRIBUTIONS",
    "RESID_FITTED_FULL",
    "RESID_FITTED",
    "RESID_PREDICTORS",
    "QQ",
    "COOKS",
    "DFFITS",
    "HOLDOUT",
]

PLOT_TITLES = {
    "DISTRIBUTIONS": "Distributions of the raw measurements (training subset)",
    "RESID_FITTED_FULL": f"Residuals vs fitted: {LABEL_FULL_RAW}",
    "RESID_FITTED": "Residuals vs fitted: final model",
    "RESID_PREDICTORS": "Residuals vs predictors: final model",
    "QQ": "Normal Q-Q plot of residuals: final model",
    "COOKS": "Cook's distance: final model",
    "DFFITS": "DFFITS: final model",
    "HOLDOUT": "Observed vs predicted quality (test subset)",
}


@dataclass
class PlotParams:
    plots: DiagnosticPlot = DiagnosticPlot.DEFAULT


def _plots_suffix(flags: DiagnosticPlot) -> str:
    """
    Stable, human-readable name for a figure selection.

    Exact preset matches return the preset name; anything else is a '+'-joined list of
    atomic names in canonical order.
    """
    for name in ("DEFAULT", "ALL", "NONE", "RESIDUALS", "INFLUENCE"):
        if flags == getattr(DiagnosticPlot, name):
            return name
    tokens = [name for name in PLOT_ORDER if flags & getattr(DiagnosticPlot, name)]
    return "+".join(tokens) if tokens else "NONE"


def _parse_plots(spec: str) -> DiagnosticPlot:
    """
    Parse a figure selection.
    Accepts preset names (e.g., 'DEFAULT') or '+'-joined atomic names
    (e.g., 'QQ+COOKS'), case-insensitive.
    """
    s = spec.strip().upper()
    if not s:
        raise ValueError("Empty plot specification")
    if s in DiagnosticPlot.__members__:
        return DiagnosticPlot[s]
    flags = DiagnosticPlot(0)
    for token in s.split("+"):
        token = token.strip()
        if not token:
            continue
        if token not in DiagnosticPlot.__members__:
            raise ValueError(f"Unknown plot token: {token}")
        flags |= DiagnosticPlot[token]
    return flags


def _residual_scatter(ax, x, resid, xlabel: str) -> None:
    ax.scatter(
        x,
        resid,
        s=14,
        color="#00FFFF",
        edgecolors="#003A3A",
        linewidths=0.3,
        alpha=0.5,
    )
    ax.axhline(0.0, color="#FF3B30", linestyle="--", linewidth=1.0)
    # Binned means make curvature visible
    order = np.argsort(np.asarray(x))
    xs = np.asarray(x)[order]
    rs = np.asarray(resid)[order]
    n_bins = min(20, max(2, len(xs) // 40))
    bins = np.array_split(np.arange(len(xs)), n_bins)
    ax.plot(
        [xs[b].mean() for b in bins if len(b)],
        [rs[b].mean() for b in bins if len(b)],
        color="#FFD60A",
        linewidth=1.5,
        label="binned mean",
    )
    ax.set_xlabel(xlabel)
    ax.set_ylabel("Residual")


def _grid_shape(n: int) -> Tuple[int, int]:
    ncols = min(4, max(1, n))
    nrows = int(np.ceil(n / ncols))
    return nrows, ncols


def _plot_distributions(outputs: AnalysisOutputs, ax_title: str):
    cols = [*PREDICTOR_COLUMNS, RESPONSE_COLUMN]
    nrows, ncols = _grid_shape(len(cols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(14, 3 * nrows))
    for ax, col in zip(np.ravel(axes), cols):
        ax.hist(outputs.df_train_raw[col], bins=30, color="#00FFFF", alpha=0.7)
        ax.set_title(col, fontsize=9)
    for ax in np.ravel(axes)[len(cols) :]:
        ax.set_visible(False)
    fig.suptitle(ax_title)
    return fig


def _plot_resid_fitted(model: FittedModel, ax_title: str):
    fig, ax = plt.subplots(figsize=(10, 6))
    _residual_scatter(ax, model.fittedvalues, model.resid, "Fitted value")
    ax.set_title(ax_title)
    ax.legend(loc="upper right")
    return fig


def _plot_resid_predictors(outputs: AnalysisOutputs, ax_title: str):
    model = outputs.final
    nrows, ncols = _grid_shape(model.n_predictors)
    fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4 * nrows), squeeze=False)
    flat = np.ravel(axes)
    for ax, predictor in zip(flat, model.predictors):
        _residual_scatter(ax, outputs.df_train[predictor], model.resid, predictor)
    for ax in flat[model.n_predictors :]:
        ax.set_visible(False)
    fig.suptitle(ax_title)
    return fig


def _plot_qq(model: FittedModel, ax_title: str):
    fig, ax = plt.subplots(figsize=(7, 7))
    qqplot(np.asarray(model.resid), line="s", ax=ax, markersize=3, alpha=0.6)
    ax.set_title(ax_title)
    return fig


def _plot_cooks(influence: InfluenceSummary, ax_title: str):
    fig, ax = plt.subplots(figsize=(10, 6))
    positions = np.arange(influence.n_obs)
    ax.vlines(positions, 0.0, influence.cooks_distance.to_numpy(), color="#00FFFF", linewidth=0.6)
    ax.axhline(
        influence.cooks_threshold,
        color="#FF3B30",
        linestyle="--",
        label=f"F(p+1, n-p-1) median = {influence.cooks_threshold:.3f} ({influence.cooks_count} above)",
    )
    ax.set_xlabel("Observation (training order)")
    ax.set_ylabel("Cook's distance")
    ax.set_title(ax_title)
    ax.legend(loc="upper right")
    return fig


def _plot_dffits(influence: InfluenceSummary, ax_title: str):
    fig, ax = plt.subplots(figsize=(10, 6))
    positions = np.arange(influence.n_obs)
    ax.vlines(positions, 0.0, influence.dffits.to_numpy(), color="#00FFFF", linewidth=0.6)
    for sign in (1.0, -1.0):
        ax.axhline(
            sign * influence.dffits_threshold,
            color="#FF3B30",
            linestyle="--",
            label=(
                f"±2·√((p+1)/n) = {influence.dffits_threshold:.3f} ({influence.dffits_count} beyond)"
                if sign > 0
                else None
            ),
        )
    ax.set_xlabel("Observation (training order)")
    ax.set_ylabel("DFFITS")
    ax.set_title(ax_title)
    ax.legend(loc="upper right")
    return fig


def _plot_holdout(outputs: AnalysisOutputs, ax_title: str):
    fig, ax = plt.subplots(figsize=(8, 8))
    observed = outputs.df_test[RESPONSE_COLUMN].to_numpy()
    predicted = outputs.holdout["predictions"].to_numpy()
    # Quality ratings are integers; jitter keeps stacked points visible
    jitter = np.random.default_rng(0).uniform(-0.15, 0.15, size=len(observed))
    ax.scatter(predicted, observed + jitter, s=12, color="#00FFFF", alpha=0.5)
    lo = float(min(observed.min(), predicted.min()))
    hi = float(max(observed.max(), predicted.max()))
    ax.plot([lo, hi], [lo, hi], color="#FF3B30", linestyle="--", label="y = x")
    ax.set_xlabel("Predicted quality")
    ax.set_ylabel("Observed quality (jittered)")
    ax.set_title(f"{ax_title}: RMSE={outputs.holdout['rmse']:.3f}, R²={outputs.holdout['r2']:.3f}")
    ax.legend(loc="upper left")
    return fig


def render_figure(name: str, outputs: AnalysisOutputs, output_svg: str) -> str:
    """Render one atomic figure to an SVG file and return its path."""
    title = PLOT_TITLES[name]
    plt.style.use("dark_background")
    if name == "DISTRIBUTIONS":
        fig = _plot_distributions(outputs, title)
    elif name == "RESID_FITTED_FULL":
        fig = _plot_resid_fitted(outputs.full_raw, title)
    elif name == "RESID_FITTED":
        fig = _plot_resid_fitted(outputs.final, title)
    elif name == "RESID_PREDICTORS":
        fig = _plot_resid_predictors(outputs, title)
    elif name == "QQ":
        fig = _plot_qq(outputs.final, title)
    elif name == "COOKS":
        fig = _plot_cooks(outputs.influence, title)
    elif name == "DFFITS":
        fig = _plot_dffits(outputs.influence, title)
    elif name == "HOLDOUT":
        fig = _plot_holdout(outputs, title)
    else:
        raise ValueError(f"Unknown figure: {name}")
    fig.tight_layout()
    fig.savefig(output_svg, format="svg")
    plt.close(fig)
    return output_svg


def render_plots(
    plot_params: PlotParams,
    outputs: AnalysisOutputs,
    short_hash: str,
    output_dir: str | None = None,
) -> list[str]:
    """
    Render every selected figure. Returns artifact paths.

    Filenames: plot-{short_hash}-{ii}-{FIGURE}.svg where ii is the 0-based position in
    the canonical figure order among the selected figures.
    """
    selected = [
        name for name in PLOT_ORDER if plot_params.plots & getattr(DiagnosticPlot, name)
    ]
    artifact_paths: list[str] = []
    for idx, name in enumerate(selected):
        filename = f"plot-{short_hash}-{idx:02}-{name}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        render_figure(name, outputs, str(output_path))
        artifact_paths.append(str(output_path))
    return artifact_paths


# -------------------------
# Report assembly
# -------------------------
def _fmt_frame(df: pd.DataFrame | pd.Series) -> str:
    if len(df) == 0:
        return "(none)"
    return df.to_string(float_format=lambda v: f"{v:.6g}")


def _fmt_f_test(test: Optional[PartialFTest]) -> str:
    if test is None:
        return "(not applicable: final model uses every predictor)"
    decision = (
        "fail to reject H0 -> accept the reduced model"
        if test.accept_reduction
        else "reject H0 -> removed predictors still contribute"
    )
    return "\n".join(
        [
            f"Reduced: {test.reduced_label}",
            f"Full:    {test.full_label}",
            f"Removed: {', '.join(test.removed)}",
            f"F = {test.f_value:.4f} on {test.df_diff} numerator df, p = {test.p_value:.4g}",
            f"Decision at alpha={test.alpha}: {decision}",
        ]
    )


def build_report_sections(
    load_out: LoadOutputs,
    outputs: AnalysisOutputs,
    params: AnalysisParams,
) -> list[tuple[str, str]]:
    """Ordered (title, body) pairs shared by the text and Markdown reports."""
    sections: list[tuple[str, str]] = []

    sections.append(
        (
            "Data",
            "\n".join(
                [
                    f"Input: {load_out.file_info.get('file_path', '-')}",
                    f"Rows read: {load_out.raw_rows}",
                    f"Incomplete rows dropped: {load_out.step.excluded_rows}",
                    f"Complete rows: {len(load_out.df)}",
                    f"Training rows: {len(outputs.df_train)}  Test rows: {len(outputs.df_test)}  (seed={params.seed})",
                ]
            ),
        )
    )

    sections.append(
        (
            "Variable transformation",
            "Natural log applied to: "
            + ", ".join(params.log_columns)
            + "\nAll other columns are used as measured.",
        )
    )

    sections.append(
        (
            f"Full model: {outputs.full.label}",
            _fmt_frame(coefficient_table(outputs.full))
            + f"\n\nR² = {outputs.full.rsquared:.5f}, adjusted R² = {outputs.full.rsquared_adj:.5f}",
        )
    )

    flagged = outputs.vif_full[outputs.vif_full > params.vif_threshold]
    sections.append(
        (
            "Variance inflation factors (full model)",
            _fmt_frame(outputs.vif_full)
            + f"\n\nAbove {params.vif_threshold}: "
            + (", ".join(flagged.index) if len(flagged) else "none"),
        )
    )

    steps = outputs.selection.steps_frame()
    sections.append(
        (
            f"Backward elimination (alpha={params.alpha}, VIF > {params.vif_threshold})",
            (_fmt_frame(steps) if len(steps) else "(no predictor qualified for removal)")
            + "\n\nRetained: "
            + (", ".join(outputs.selection.final.predictors) or "(intercept only)"),
        )
    )

    sections.append(
        (
            f"Partial F-test: {outputs.final.label} vs {LABEL_FULL}",
            _fmt_f_test(outputs.final_f_test),
        )
    )

    sections.append(("Model comparison", outputs.comparison_text))

    sections.append(
        (
            f"Final model: {outputs.final.label}",
            _fmt_frame(coefficient_table(outputs.final))
            + f"\n\nR² = {outputs.final.rsquared:.5f}, adjusted R² = {outputs.final.rsquared_adj:.5f}"
            + f"\nChange in adjusted R² vs full model: {outputs.final.rsquared_adj - outputs.full.rsquared_adj:+.5f}"
            + "\n\nVIF:\n"
            + _fmt_frame(outputs.vif_final),
        )
    )

    rt = outputs.residual_checks
    inf = outputs.influence
    sections.append(
        (
            "Diagnostics (final model, training subset)",
            "\n".join(
                [
                    f"Shapiro-Wilk normality: W = {rt.shapiro_stat:.4f}, p = {rt.shapiro_p:.4g}",
                    f"Breusch-Pagan constant variance: LM = {rt.breusch_pagan_lm:.4f}, p = {rt.breusch_pagan_p:.4g}",
                    f"Durbin-Watson: {rt.durbin_watson:.4f}",
                    f"Cook's distance > F median({inf.n_predictors + 1}, {inf.n_obs - inf.n_predictors - 1}) = "
                    f"{inf.cooks_threshold:.4f}: {inf.cooks_count} of {inf.n_obs}",
                    f"|DFFITS| > 2·√((p+1)/n) = {inf.dffits_threshold:.4f}: {inf.dffits_count} of {inf.n_obs}",
                    "",
                    "Most influential observations (by Cook's distance):",
                    _fmt_frame(inf.top_observations(10)),
                ]
            ),
        )
    )

    ho = outputs.holdout
    sections.append(
        (
            "Hold-out evaluation (final model, test subset)",
            f"n = {ho['n_test']}, RMSE = {ho['rmse']:.5f}, MAE = {ho['mae']:.5f}, R² = {ho['r2']:.5f}",
        )
    )

    sections.append(
        (
            "Processing steps",
            "\n".join([load_out.step.summarize(), outputs.split_step.summarize()]),
        )
    )
    return sections


def assemble_text_report(sections: list[tuple[str, str]]) -> str:
    """Plain-text report: underlined section titles followed by their bodies."""
    parts: list[str] = ["", "Red wine quality: linear regression report", ""]
    for title, body in sections:
        parts.append(title)
        parts.append("=" * len(title))
        parts.append(body)
        parts.append("")
    return "\n".join(parts)


def assemble_markdown_report(
    sections: list[tuple[str, str]], artifact_paths: list[str]
) -> str:
    """Markdown document with the report tables and the figures embedded by file name."""
    parts: list[str] = ["# Red wine quality: linear regression report", ""]
    for title, body in sections:
        parts.extend([f"## {title}", "", "```", body, "```", ""])
    if artifact_paths:
        parts.extend(["## Figures", ""])
        for path in artifact_paths:
            name = Path(path).stem.rsplit("-", 1)[-1]
            parts.extend([f"### {PLOT_TITLES.get(name, name)}", "", f"![{name}]({Path(path).name})", ""])
    return "\n".join(parts)


# -------------------------
# Run identity and manifest
# -------------------------
def get_default_params() -> tuple[LoadParams, AnalysisParams, PlotParams]:
    """Policy-level defaults; the CLI and the web UI merge user input over these."""
    load = LoadParams(csv_path=None, delimiter=None)
    analysis = AnalysisParams(
        train_size=800,
        seed=42,
        alpha=0.05,
        vif_threshold=5.0,
        log_columns=list(LOG_COLUMNS),
        final_predictors=list(REDUCED_PREDICTORS),
        verbose=False,
    )
    return load, analysis, PlotParams(plots=DiagnosticPlot.DEFAULT)


def build_run_identity(
    load: LoadParams, analysis: AnalysisParams
) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    if load.csv_path is None:
        raise ValueError("No CSV path given")
    abs_input_posix = normalize_abs_posix(load.csv_path)
    effective_params = build_effective_parameters(load, analysis)
    canonical_payload = {
        "absolute_input_path": abs_input_posix,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: dict,
    selection: Optional[dict] = None,
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "total_input_rows": int(counts.get("total_input_rows", 0)),
        "complete_rows": int(counts.get("complete_rows", 0)),
        "dropped_incomplete_rows": int(counts.get("dropped_incomplete_rows", 0)),
        "train_rows": int(counts.get("train_rows", 0)),
        "test_rows": int(counts.get("test_rows", 0)),
        "effective_parameters": effective_params,
        "selection": selection or {},
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": artifact_paths,
    }


@dataclass
class RunArtifacts:
    run_dir: Path
    short_hash: str
    report_text: str
    report_path: Path
    markdown_path: Path
    manifest_path: Path
    plot_paths: List[str] = field(default_factory=list)


def _orchestrate(
    params_load: LoadParams,
    params_analysis: AnalysisParams,
    plot_params: PlotParams,
    output_root: Path | str = "output",
    print_report: bool = True,
) -> RunArtifacts:
    """
    Run load, analysis, figures and report for one parameter set and write the artifacts
    into a fresh folder under `output_root`. Shared by the CLI and the web UI.
    """
    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_analysis
    )

    load_out = load_wine_csv(params_load, verbose=params_analysis.verbose)
    outputs = run_analysis(load_out.df, params_analysis)
    # only runs that passed loading and analysis get a folder
    run_output_dir = ensure_run_dir(output_root)

    plot_paths = render_plots(
        plot_params, outputs, short_hash=short_hash, output_dir=str(run_output_dir)
    )

    sections = build_report_sections(load_out, outputs, params_analysis)
    report = assemble_text_report(sections)
    report_path = write_text_report(report, run_output_dir, short_hash, suffix="txt")
    markdown_path = write_text_report(
        assemble_markdown_report(sections, plot_paths),
        run_output_dir,
        short_hash,
        suffix="md",
    )

    counts = {
        "total_input_rows": load_out.raw_rows,
        "complete_rows": int(len(load_out.df)),
        "dropped_incomplete_rows": load_out.step.excluded_rows,
        "train_rows": int(len(outputs.df_train)),
        "test_rows": int(len(outputs.df_test)),
    }
    selection = {
        "backward_eliminated_predictors": outputs.selection.final.predictors,
        "final_predictors": outputs.final.predictors,
        "selected_by_policy": outputs.best_label,
        "adj_r2_full": outputs.full.rsquared_adj,
        "adj_r2_final": outputs.final.rsquared_adj,
        "cooks_flagged": outputs.influence.cooks_count,
        "dffits_flagged": outputs.influence.dffits_count,
    }
    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths={
            "plot_svgs": plot_paths,
            "report_txt": str(report_path),
            "report_md": str(markdown_path),
        },
        selection=selection,
    )
    manifest_path = run_output_dir / f"manifest-{short_hash}.json"
    write_manifest(str(manifest_path), manifest)

    if print_report:
        print(report)

    return RunArtifacts(
        run_dir=run_output_dir,
        short_hash=short_hash,
        report_text=report,
        report_path=report_path,
        markdown_path=markdown_path,
        manifest_path=manifest_path,
        plot_paths=plot_paths,
    )


# -------------------------
# CLI
# -------------------------
def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="wine-quality-report",
        description="Red wine quality regression (load -> split -> transform -> select -> diagnose -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also WINE_REPORT_DEBUG=1).",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--csv-path", type=str, required=True, help="Path to the wine CSV (required)."
    )
    g_load.add_argument(
        "--delimiter", type=str, help="Field separator; sniffed when omitted."
    )

    g_an = parser.add_argument_group("AnalysisParams")
    g_an.add_argument("--train-size", type=int, help="Number of training rows.")
    g_an.add_argument("--seed", type=int, help="Seed for the train/test split.")
    g_an.add_argument(
        "--alpha", type=float, help="Significance level for t-tests and partial F-tests."
    )
    g_an.add_argument(
        "--vif-threshold", type=float, help="Remove predictors whose VIF exceeds this."
    )
    g_an.add_argument(
        "--log-column",
        action="append",
        metavar="COLUMN",
        help="Column to log-transform. Repeatable; replaces the default list.",
    )
    g_an.add_argument(
        "--final-predictor",
        action="append",
        metavar="PREDICTOR",
        help="Predictor of the final model (post-transform name). Repeatable; replaces the default set.",
    )
    g_an.add_argument(
        "--verbose",
        action="store_true",
        help="Log every pipeline step event.",
    )

    g_out = parser.add_argument_group("Output")
    g_out.add_argument(
        "--plots",
        type=str,
        help="Figures: preset (DEFAULT, ALL, NONE, RESIDUALS, INFLUENCE) or '+'-joined names.",
    )
    g_out.add_argument(
        "--output-dir", type=str, default="output", help="Root folder for run outputs."
    )
    return parser


def _args_to_params(args) -> tuple[LoadParams, AnalysisParams, PlotParams]:
    """
    Overlay the arguments the user actually passed on get_default_params().
    Repeatable list options replace the default list rather than extending it.
    """
    d_load, d_an, d_plot = get_default_params()

    def get_arg_or_default(arg_name, default):
        val = getattr(args, arg_name, None)
        return default if val is None else val

    load = LoadParams(
        csv_path=Path(args.csv_path).resolve() if getattr(args, "csv_path", None) else d_load.csv_path,
        delimiter=get_arg_or_default("delimiter", d_load.delimiter),
    )
    analysis = AnalysisParams(
        train_size=get_arg_or_default("train_size", d_an.train_size),
        seed=get_arg_or_default("seed", d_an.seed),
        alpha=get_arg_or_default("alpha", d_an.alpha),
        vif_threshold=get_arg_or_default("vif_threshold", d_an.vif_threshold),
        log_columns=list(get_arg_or_default("log_column", d_an.log_columns)),
        final_predictors=list(
            get_arg_or_default("final_predictor", d_an.final_predictors)
        ),
        verbose=bool(getattr(args, "verbose", False)) or d_an.verbose,
    )
    validate_analysis_params(analysis)

    plots_spec = getattr(args, "plots", None)
    plot = PlotParams(plots=_parse_plots(plots_spec)) if plots_spec else d_plot
    return load, analysis, plot


def _defaults_payload() -> dict:
    d_load, d_an, d_plot = get_default_params()
    return {
        "LoadParams": {
            "csv_path": None if d_load.csv_path is None else str(d_load.csv_path),
            "delimiter": d_load.delimiter,
        },
        "AnalysisParams": {
            "train_size": d_an.train_size,
            "seed": d_an.seed,
            "alpha": d_an.alpha,
            "vif_threshold": d_an.vif_threshold,
            "log_columns": d_an.log_columns,
            "final_predictors": d_an.final_predictors,
            "verbose": d_an.verbose,
        },
        "PlotParams": {"plots": _plots_suffix(d_plot.plots)},
    }


def main() -> None:
    """
    Console entry point (wine-quality-report).
    """
    import sys

    argv = sys.argv[1:]

    # --print-defaults must work without --csv-path
    if "--print-defaults" in argv:
        import json

        print(json.dumps(_defaults_payload(), indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(
        getattr(args, "debug", False) or os.getenv("WINE_REPORT_DEBUG", "") == "1"
    )
    if debug_mode:
        logger.setLevel(logging.DEBUG)
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params_load, params_analysis, plot_params = _args_to_params(args)
        _orchestrate(
            params_load,
            params_analysis,
            plot_params,
            output_root=getattr(args, "output_dir", "output"),
        )
    except (FileNotFoundError, ValueError, TypeError) as e:
        # Bad input: one line on stderr, exit 2
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        # Anything else is a bug: full traceback in the log, exit 1
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set WINE_REPORT_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
