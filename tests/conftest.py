from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from src.main import PREDICTOR_COLUMNS, RESPONSE_COLUMN

# Header spelling of the UCI red wine file
UCI_HEADERS = [
    "fixed acidity",
    "volatile acidity",
    "citric acid",
    "residual sugar",
    "chlorides",
    "free sulfur dioxide",
    "total sulfur dioxide",
    "density",
    "pH",
    "sulphates",
    "alcohol",
    "quality",
]


def make_wine_frame(n: int = 1599, seed: int = 2024) -> pd.DataFrame:
    """
    Wine-like table with realistic ranges.

    Quality depends only on log(volatile acidity), log(sulphates) and log(alcohol);
    density and pH are loosely tied to fixed acidity; citric acid contains zeros.
    """
    rng = np.random.default_rng(seed)
    fixed_acidity = np.exp(rng.normal(np.log(8.3), 0.2, n))
    volatile_acidity = np.exp(rng.normal(np.log(0.5), 0.3, n))
    citric_acid = np.clip(rng.normal(0.27, 0.19, n), 0.0, 1.0)
    residual_sugar = np.exp(rng.normal(np.log(2.2), 0.35, n))
    chlorides = np.exp(rng.normal(np.log(0.08), 0.3, n))
    free_so2 = np.exp(rng.normal(np.log(14.0), 0.6, n))
    total_so2 = free_so2 * np.exp(rng.normal(np.log(3.0), 0.4, n))
    fa_z = (np.log(fixed_acidity) - np.log(8.3)) / 0.2
    density = 0.9967 + 0.0008 * fa_z + rng.normal(0.0, 0.0012, n)
    ph = 3.31 - 0.08 * fa_z + rng.normal(0.0, 0.12, n)
    sulphates = np.exp(rng.normal(np.log(0.65), 0.2, n))
    alcohol = np.exp(rng.normal(np.log(10.4), 0.1, n))

    latent = (
        -1.88
        - 0.55 * np.log(volatile_acidity)
        + 0.9 * np.log(sulphates)
        + 3.2 * np.log(alcohol)
        + rng.normal(0.0, 0.45, n)
    )
    quality = np.clip(np.round(latent), 3, 8)

    values = [
        fixed_acidity,
        volatile_acidity,
        citric_acid,
        residual_sugar,
        chlorides,
        free_so2,
        total_so2,
        density,
        ph,
        sulphates,
        alcohol,
        quality,
    ]
    return pd.DataFrame(dict(zip([*PREDICTOR_COLUMNS, RESPONSE_COLUMN], values)))


def write_uci_csv(df: pd.DataFrame, path: Path, sep: str = ";") -> Path:
    """Write `df` with the UCI header spelling."""
    out = df.copy()
    out.columns = UCI_HEADERS
    out.to_csv(path, sep=sep, index=False)
    return path


@pytest.fixture
def wine_frame() -> pd.DataFrame:
    return make_wine_frame()


@pytest.fixture
def wine_csv(tmp_path: Path, wine_frame: pd.DataFrame) -> Path:
    return write_uci_csv(wine_frame, tmp_path / "winequality-red.csv")


@pytest.fixture
def wine_factory():
    return make_wine_frame


@pytest.fixture
def uci_writer():
    return write_uci_csv
