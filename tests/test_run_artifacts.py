import zipfile
from pathlib import Path

from src.gradio_ui import _parse_optional_int, _run_pipeline, _upload_path
from src.utils import create_zip_async, ensure_run_dir, write_text_report


def test_ensure_run_dir_never_reuses_a_folder(tmp_path: Path):
    first = ensure_run_dir(tmp_path)
    second = ensure_run_dir(tmp_path)
    assert first != second
    assert first.is_dir() and second.is_dir()
    assert first.parent == second.parent == tmp_path


def test_create_zip_async_packs_existing_files(tmp_path: Path):
    report = write_text_report("hello", tmp_path, "abcd1234")
    zip_path = tmp_path / "bundle.zip"
    thread = create_zip_async(zip_path, [report, tmp_path / "missing.svg"])
    thread.join(timeout=10)
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.namelist() == ["report-abcd1234.txt"]
    assert not (tmp_path / "bundle.zip.part").exists()


def test_parse_optional_int():
    assert _parse_optional_int(None) is None
    assert _parse_optional_int(float("nan")) is None
    assert _parse_optional_int(800.0) == 800
    assert _parse_optional_int("x") is None


def test_upload_path_variants():
    class Upload:
        name = "/tmp/wine.csv"

    assert _upload_path(None) is None
    assert _upload_path("/tmp/a.csv") == "/tmp/a.csv"
    assert _upload_path({"path": "/tmp/b.csv"}) == "/tmp/b.csv"
    assert _upload_path(Upload()) == "/tmp/wine.csv"


def test_ui_pipeline_reports_user_errors(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    html, zip_path, text = _run_pipeline(None, None, None, None, None, None, None)
    assert zip_path is None and "Upload" in text

    html, zip_path, text = _run_pipeline(
        str(tmp_path / "missing.csv"), 800, 42, 0.05, 5.0, None, "DEFAULT"
    )
    assert zip_path is None
    assert text.startswith("Error:")

    html, zip_path, text = _run_pipeline(
        str(tmp_path / "missing.csv"), 800, 42, 0.05, 5.0, None, "NOT_A_FIGURE"
    )
    assert zip_path is None
    assert "Unknown plot token" in text
    assert not (tmp_path / "output_gradio").exists() or not any(
        (tmp_path / "output_gradio").iterdir()
    )


def test_ui_pipeline_end_to_end(tmp_path: Path, monkeypatch, wine_csv: Path):
    monkeypatch.chdir(tmp_path)
    html, zip_path, text = _run_pipeline(
        str(wine_csv), None, None, None, None, ["log_alcohol", "log_sulphates"], "QQ"
    )
    assert "Red wine quality: linear regression report" in text
    assert "<svg" in html
    assert zip_path.endswith(".zip")
    assert Path(zip_path).parent.parent.name == "output_gradio"
    # the archive is complete by the time the UI hands back its path
    assert Path(zip_path).exists()
    assert not Path(zip_path + ".part").exists()
    with zipfile.ZipFile(zip_path) as zf:
        names = zf.namelist()
    assert any(n.endswith(".txt") for n in names)
    assert any(n.endswith(".svg") for n in names)
    assert "2 predictors" in text
