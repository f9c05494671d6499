"""Gradio front end for the wine quality regression report.

Upload the wine CSV, adjust the split and selection knobs, then read the report,
browse the SVG figures and download every artifact of the run as one ZIP.
"""

import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, List, Optional

# The Agg backend is chosen in src.main before pyplot loads; nothing to set here.
try:
    from .main import (
        AnalysisParams,
        LoadParams,
        PlotParams,
        RunArtifacts,
        _orchestrate,
        _parse_plots,
        _plots_suffix,
        get_default_params,
        transformed_predictors,
    )
    from .utils import create_zip_async
except ImportError:
    from main import (  # type: ignore
        AnalysisParams,
        LoadParams,
        PlotParams,
        RunArtifacts,
        _orchestrate,
        _parse_plots,
        _plots_suffix,
        get_default_params,
        transformed_predictors,
    )
    from utils import create_zip_async  # type: ignore

import gradio as gr

logger = logging.getLogger(__name__)

RUN_ROOT = Path("output_gradio")
DEFAULT_RETENTION = 10

_RUN_DIR_NAME = re.compile(r"^\d{8}T\d{6}(-\d+)?$")


def _parse_optional_int(val: Optional[float]) -> Optional[int]:
    """gr.Number hands back floats, None for a blank box, and NaN on some versions."""
    if val is None:
        return None
    try:
        number = float(val)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return int(number)


def _retention_keep() -> int:
    raw = os.getenv("WINE_GRADIO_RETENTION_KEEP", str(DEFAULT_RETENTION))
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            f"Ignoring WINE_GRADIO_RETENTION_KEEP={raw!r}; keeping {DEFAULT_RETENTION} runs"
        )
        return DEFAULT_RETENTION


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Delete all but the newest `keep` run folders under `run_root`.

    Folders named by ensure_run_dir() sort by name; any other mix sorts by mtime.
    `keep` defaults to WINE_GRADIO_RETENTION_KEEP (10); zero or less keeps everything.
    """
    keep = _retention_keep() if keep is None else keep
    if keep <= 0 or not run_root.is_dir():
        return

    runs = [p for p in run_root.iterdir() if p.is_dir()]
    surplus = len(runs) - keep
    if surplus <= 0:
        return

    if all(_RUN_DIR_NAME.match(p.name) for p in runs):
        runs.sort(key=lambda p: p.name)
    else:
        runs.sort(key=lambda p: p.stat().st_mtime)

    for old in runs[:surplus]:
        try:
            shutil.rmtree(old)
            logger.debug(f"Removed old run folder {old}")
        except OSError as e:
            logger.warning(f"Could not remove {old}: {e}")


def _svg_gallery(plot_paths: List[str]) -> str:
    blocks = []
    for svg_path in plot_paths:
        try:
            svg = Path(svg_path).read_text(encoding="utf-8")
        except OSError:
            svg = f"<p>Figure unavailable: {Path(svg_path).name}</p>"
        blocks.append(f'<figure class="wine-fig">{svg}</figure>')
    return "\n".join(blocks)


def _archive(artifacts: RunArtifacts) -> Optional[str]:
    zip_path = artifacts.run_dir / f"report-{artifacts.short_hash}.zip"
    worker = create_zip_async(
        zip_path,
        [
            artifacts.report_path,
            artifacts.markdown_path,
            artifacts.manifest_path,
            *artifacts.plot_paths,
        ],
    )
    # gr.File copies the download into its cache on return, so the archive must be complete
    worker.join()
    if not zip_path.exists():
        return None
    return str(zip_path)


def _run_pipeline(
    file_path: Optional[str],
    train_size: Optional[float],
    seed: Optional[float],
    alpha: Optional[float],
    vif_threshold: Optional[float],
    final_predictors: Optional[list],
    plots_spec: Optional[str],
):
    """
    Run one report from the UI inputs; blank inputs fall back to get_default_params().

    Returns (figures_html, zip_path or None, report_text). User errors come back as
    the message in place of the figures and the report.
    """
    if not file_path:
        return "Upload a CSV file first", None, "Upload a CSV file first"

    started = time.perf_counter()
    d_load, d_an, d_plot = get_default_params()
    train_i = _parse_optional_int(train_size)
    seed_i = _parse_optional_int(seed)
    try:
        load = LoadParams(csv_path=Path(file_path), delimiter=d_load.delimiter)
        analysis = AnalysisParams(
            train_size=d_an.train_size if train_i is None else train_i,
            seed=d_an.seed if seed_i is None else seed_i,
            alpha=d_an.alpha if alpha is None else float(alpha),
            vif_threshold=d_an.vif_threshold if vif_threshold is None else float(vif_threshold),
            log_columns=list(d_an.log_columns),
            final_predictors=list(final_predictors or d_an.final_predictors),
        )
        plot = PlotParams(plots=_parse_plots(plots_spec)) if plots_spec else d_plot
        artifacts = _orchestrate(
            load, analysis, plot, output_root=RUN_ROOT, print_report=False
        )
    except (FileNotFoundError, ValueError, TypeError) as e:
        logger.info("Rejected UI run: %s", e)
        message = f"Error: {e}"
        return message, None, message

    _prune_old_runs(RUN_ROOT)
    zip_path = _archive(artifacts)
    logger.info(
        f"UI run {artifacts.short_hash} finished in {(time.perf_counter() - started) * 1000:.0f} ms"
    )
    return _svg_gallery(artifacts.plot_paths), zip_path, artifacts.report_text


def _upload_path(file_obj: Any) -> Optional[str]:
    # Depending on the Gradio version an upload arrives as a path, a dict or a tempfile
    if file_obj is None or isinstance(file_obj, str):
        return file_obj
    if isinstance(file_obj, dict):
        return file_obj.get("path") or file_obj.get("name")
    return getattr(file_obj, "name", None)


_CSS = """
#wine_report textarea { font-family: "DejaVu Sans Mono", "Consolas", monospace; font-size: 12px; }
.wine-fig { margin: 0 0 1.5em 0; }
"""


def _build_ui():
    _, d_an, d_plot = get_default_params()
    with gr.Blocks(title="Red wine quality regression") as demo:
        gr.HTML(f"<style>{_CSS}</style>")
        gr.Markdown(
            "### Red wine quality: linear regression report\n"
            "Semicolon or comma separated files with the 11 UCI measurements and `quality`."
        )
        file_input = gr.File(label="Wine CSV", file_types=[".csv", ".txt"])
        with gr.Row():
            train_size = gr.Number(label="Training rows", value=d_an.train_size, precision=0)
            seed = gr.Number(label="Split seed", value=d_an.seed, precision=0)
            alpha = gr.Number(label="Significance level", value=d_an.alpha, step=0.01)
            vif_threshold = gr.Number(label="VIF threshold", value=d_an.vif_threshold, step=0.5)
        final_predictors = gr.CheckboxGroup(
            label="Final model predictors",
            choices=transformed_predictors(d_an.log_columns),
            value=d_an.final_predictors,
        )
        plots_spec = gr.Textbox(
            label="Figures",
            value=_plots_suffix(d_plot.plots),
            placeholder="DEFAULT, ALL, NONE, RESIDUALS, INFLUENCE or names joined by '+'",
        )
        run_button = gr.Button("Run analysis", variant="primary")
        report_box = gr.Textbox(
            label="Report", lines=24, interactive=False, elem_id="wine_report"
        )
        figures = gr.HTML()
        download = gr.File(label="All artifacts (ZIP)")

        def _on_run(file_obj, train_v, seed_v, alpha_v, vif_v, preds_v, plots_v):
            return _run_pipeline(
                _upload_path(file_obj), train_v, seed_v, alpha_v, vif_v, preds_v, plots_v
            )

        run_button.click(
            _on_run,
            inputs=[
                file_input,
                train_size,
                seed,
                alpha,
                vif_threshold,
                final_predictors,
                plots_spec,
            ],
            outputs=[figures, download, report_box],
        )

    return demo


if __name__ == "__main__":
    _build_ui().launch()
