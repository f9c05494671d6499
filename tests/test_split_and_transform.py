import numpy as np
import pandas as pd
import pytest

from src.main import (
    LOG_COLUMNS,
    NonPositiveValueError,
    log_column_name,
    log_transform_columns,
    split_train_test,
)


@pytest.mark.parametrize("n_rows,train_size", [(1599, 800), (10, 1), (10, 9), (57, 30)])
def test_split_is_disjoint_and_covers_all_rows(n_rows, train_size):
    train_idx, test_idx = split_train_test(n_rows, train_size, seed=7)
    assert len(train_idx) == train_size
    assert len(test_idx) == n_rows - train_size
    assert set(train_idx).isdisjoint(set(test_idx))
    combined = np.sort(np.concatenate([train_idx, test_idx]))
    np.testing.assert_array_equal(combined, np.arange(n_rows))


def test_split_sizes_for_full_dataset():
    train_idx, test_idx = split_train_test(1599, 800, seed=42)
    assert (len(train_idx), len(test_idx)) == (800, 799)


def test_split_is_deterministic_for_same_seed():
    a_train, a_test = split_train_test(1599, 800, seed=42)
    b_train, b_test = split_train_test(1599, 800, seed=42)
    np.testing.assert_array_equal(a_train, b_train)
    np.testing.assert_array_equal(a_test, b_test)


def test_split_differs_for_other_seed():
    a_train, _ = split_train_test(1599, 800, seed=42)
    b_train, _ = split_train_test(1599, 800, seed=43)
    assert not np.array_equal(a_train, b_train)


@pytest.mark.parametrize("train_size", [0, 10, -1, 11])
def test_split_rejects_out_of_range_sizes(train_size):
    with pytest.raises(ValueError):
        split_train_test(10, train_size, seed=1)


def test_log_transform_round_trip(wine_frame: pd.DataFrame):
    out = log_transform_columns(wine_frame, LOG_COLUMNS)
    for col in LOG_COLUMNS:
        np.testing.assert_allclose(
            np.exp(out[log_column_name(col)].to_numpy()),
            wine_frame[col].to_numpy(),
            rtol=1e-12,
        )


def test_log_transform_keeps_position_and_other_columns(wine_frame: pd.DataFrame):
    out = log_transform_columns(wine_frame, ["volatile_acidity", "alcohol"])
    expected_cols = [
        log_column_name(c) if c in ("volatile_acidity", "alcohol") else c
        for c in wine_frame.columns
    ]
    assert list(out.columns) == expected_cols
    pd.testing.assert_series_equal(out["density"], wine_frame["density"])
    pd.testing.assert_series_equal(out["citric_acid"], wine_frame["citric_acid"])


def test_log_transform_does_not_mutate_input(wine_frame: pd.DataFrame):
    before = wine_frame.copy()
    log_transform_columns(wine_frame, LOG_COLUMNS)
    pd.testing.assert_frame_equal(wine_frame, before)


@pytest.mark.parametrize("bad_value", [0.0, -1.5])
def test_log_transform_rejects_non_positive(bad_value):
    df = pd.DataFrame({"x": [1.0, bad_value, 3.0], "y": [1.0, 2.0, 3.0]})
    with pytest.raises(NonPositiveValueError, match="'x'"):
        log_transform_columns(df, ["x"])


def test_log_transform_rejects_citric_acid_zeros(wine_frame: pd.DataFrame):
    # The synthetic table, like the real one, has wines with no citric acid
    assert (wine_frame["citric_acid"] == 0).any()
    with pytest.raises(NonPositiveValueError):
        log_transform_columns(wine_frame, ["citric_acid"])


def test_log_transform_unknown_column():
    df = pd.DataFrame({"x": [1.0, 2.0]})
    with pytest.raises(ValueError, match="missing"):
        log_transform_columns(df, ["z"])


def test_log_transform_repeated_column_is_logged_once(wine_frame: pd.DataFrame):
    out = log_transform_columns(wine_frame, ["alcohol", "volatile_acidity", "alcohol"])
    np.testing.assert_allclose(out["log_alcohol"], np.log(wine_frame["alcohol"]))
    np.testing.assert_allclose(
        out["log_volatile_acidity"], np.log(wine_frame["volatile_acidity"])
    )
    assert out["log_volatile_acidity"].notna().all()
    assert list(out.columns).count("log_alcohol") == 1
