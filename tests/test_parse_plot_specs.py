import pytest

from src.main import (
    PLOT_ORDER,
    DiagnosticPlot,
    _args_to_params,
    _build_cli_parser,
    _parse_plots,
    _plots_suffix,
)


def test_parse_presets_case_insensitive():
    assert _parse_plots("default") == DiagnosticPlot.DEFAULT
    assert _parse_plots(" ALL ") == DiagnosticPlot.ALL
    assert _parse_plots("none") == DiagnosticPlot.NONE


def test_parse_joined_atomic_names():
    flags = _parse_plots("qq+Cooks")
    assert flags == DiagnosticPlot.QQ | DiagnosticPlot.COOKS
    assert _plots_suffix(flags) == "QQ+COOKS"


def test_suffix_uses_canonical_order_and_presets():
    flags = DiagnosticPlot.DFFITS | DiagnosticPlot.DISTRIBUTIONS
    assert _plots_suffix(flags) == "DISTRIBUTIONS+DFFITS"
    assert _plots_suffix(DiagnosticPlot.INFLUENCE) == "INFLUENCE"
    assert _plots_suffix(_parse_plots("COOKS+DFFITS")) == "INFLUENCE"
    assert _plots_suffix(DiagnosticPlot(0)) == "NONE"


def test_every_atomic_figure_is_listed_once():
    assert len(PLOT_ORDER) == len(set(PLOT_ORDER))
    combined = DiagnosticPlot(0)
    for name in PLOT_ORDER:
        combined |= DiagnosticPlot[name]
    assert combined == DiagnosticPlot.ALL


@pytest.mark.parametrize("spec", ["", "   ", "QQ+BOGUS", "histogram"])
def test_parse_rejects_bad_specs(spec):
    with pytest.raises(ValueError):
        _parse_plots(spec)


def test_cli_defaults_and_overrides(tmp_path):
    parser = _build_cli_parser()
    args = parser.parse_args(["--csv-path", str(tmp_path / "wine.csv")])
    load, analysis, plot = _args_to_params(args)
    assert load.csv_path == (tmp_path / "wine.csv").resolve()
    assert load.delimiter is None
    assert (analysis.train_size, analysis.seed) == (800, 42)
    assert analysis.final_predictors == ["log_volatile_acidity", "log_sulphates", "log_alcohol"]
    assert plot.plots == DiagnosticPlot.DEFAULT

    args = parser.parse_args(
        [
            "--csv-path",
            "wine.csv",
            "--delimiter",
            ";",
            "--seed",
            "7",
            "--plots",
            "qq",
            "--final-predictor",
            "log_alcohol",
            "--final-predictor",
            "log_sulphates",
        ]
    )
    load, analysis, plot = _args_to_params(args)
    assert load.delimiter == ";"
    assert analysis.seed == 7
    assert analysis.final_predictors == ["log_alcohol", "log_sulphates"]
    assert plot.plots == DiagnosticPlot.QQ


@pytest.mark.parametrize(
    "extra", [["--alpha", "0"], ["--alpha", "1.5"], ["--vif-threshold", "0.5"]]
)
def test_cli_rejects_invalid_thresholds(extra):
    args = _build_cli_parser().parse_args(["--csv-path", "wine.csv", *extra])
    with pytest.raises(ValueError):
        _args_to_params(args)
