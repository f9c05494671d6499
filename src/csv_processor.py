#!/usr/bin/env python3
"""
Wine CSV Reader
Reads the physicochemical wine table from a delimited file, normalizes header names
and validates that every retained value is numeric.
"""

import csv
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)


class CSVProcessingError(ValueError):
    """Base exception for CSV processing errors."""

    pass


class CSVFormatError(CSVProcessingError):
    """Raised when the file cannot be parsed or holds non-numeric values."""

    pass


class FileAccessError(CSVProcessingError):
    """Raised when file cannot be accessed or read."""

    pass


_HEADER_SEPARATORS = re.compile(r"[\s.\-]+")


def normalize_header(name: str) -> str:
    """
    Canonical form of a column header.

    'Fixed Acidity', 'fixed.acidity' and ' fixed_acidity ' all become 'fixed_acidity'.
    """
    text = str(name).strip().strip('"').strip().lower()
    text = _HEADER_SEPARATORS.sub("_", text)
    return text.strip("_")


class WineCSVReader:
    """
    Reader for a single delimited wine table.

    The delimiter is sniffed when not given, so both the UCI semicolon file and a
    comma-separated export load the same way.
    """

    def __init__(
        self, file_path: Union[str, Path], delimiter: Optional[str] = None
    ) -> None:
        """
        Args:
            file_path: Path to the delimited file
            delimiter: Field separator. None sniffs it from the file.

        Raises:
            FileNotFoundError: If the specified file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        self.delimiter = delimiter
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if self.file_path.suffix.lower() not in (".csv", ".txt"):
            logger.warning(f"File does not have .csv extension: {self.file_path}")

    def _read_kwargs(self) -> Dict[str, Any]:
        if self.delimiter is None:
            return {"sep": None, "engine": "python"}
        return {"sep": self.delimiter}

    def read_table(self) -> pd.DataFrame:
        """
        Read the whole file with normalized headers.

        Values are returned as parsed by pandas; use ``coerce_numeric`` to validate them.

        Raises:
            CSVFormatError: If the file is empty, ragged or otherwise unparseable
        """
        try:
            df = pd.read_csv(self.file_path, header=0, **self._read_kwargs())
        except pd.errors.EmptyDataError as e:
            raise CSVFormatError(f"CSV file is empty: {self.file_path}") from e
        except (pd.errors.ParserError, csv.Error, UnicodeDecodeError) as e:
            raise CSVFormatError(f"Error parsing CSV file {self.file_path}: {e}") from e

        renamed = {col: normalize_header(col) for col in df.columns}
        targets = list(renamed.values())
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise CSVFormatError(
                f"Header normalization produced duplicate column names: {duplicates}"
            )
        return df.rename(columns=renamed)

    def get_file_info(self) -> Dict[str, Any]:
        """Basic facts about the file for the run report."""
        try:
            sample_df = pd.read_csv(self.file_path, nrows=5, **self._read_kwargs())
        except Exception as e:
            raise FileAccessError(f"Error getting file info: {e}") from e
        return {
            "file_path": str(self.file_path),
            "file_size": self.file_path.stat().st_size,
            "columns": [normalize_header(c) for c in sample_df.columns],
            "column_count": len(sample_df.columns),
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        pass


def coerce_numeric(df: pd.DataFrame) -> pd.DataFrame:
    """
    Convert every column to a numeric dtype.

    Missing cells stay missing. Any non-empty cell that cannot be parsed as a number is
    treated as a malformed row and raises CSVFormatError naming the first offenders.
    """
    out = {}
    problems: list[str] = []
    for col in df.columns:
        converted = pd.to_numeric(df[col], errors="coerce")
        bad = converted.isna() & df[col].notna()
        if bad.any():
            rows = [int(i) + 2 for i in df.index[bad][:5]]  # 1-based, header is line 1
            problems.append(f"{col} (lines {rows})")
        out[col] = converted.astype(float)
    if problems:
        raise CSVFormatError("Non-numeric values found in: " + "; ".join(problems))
    return pd.DataFrame(out, index=df.index)
