"""Shared IO utilities for atacdiff."""
from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd

BED_COLUMNS: tuple[str, str, str] = ("Chromosome", "Start", "End")
SAMPLE_COLUMNS: tuple[str, str, str] = ("sample", "cell_type", "donor")


class FormatError(ValueError):
    """Raised when an input table is malformed or misaligned."""


def _resolve_path(path: Path | str) -> Path:
    if isinstance(path, Path):
        return path
    return Path(path)


def read_whitespace_table(
    path: Path | str,
    *,
    header: int | None = 0,
    comment: str | None = "#",
    dtype: object = None,
) -> pd.DataFrame:
    """Load a whitespace-delimited table into a :class:`pandas.DataFrame`.

    Parameters
    ----------
    path:
        Location of the file to read.
    header:
        Row number holding column names, or ``None`` for headerless tables.
    comment:
        Comment indicator passed to :func:`pandas.read_csv`.
    dtype:
        Optional dtype, or per-column dtype overrides, passed to
        :func:`pandas.read_csv`.
    """

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"Input table not found: {target}")

    try:
        frame = pd.read_csv(
            target,
            sep=r"\s+",
            comment=comment,
            header=header,
            dtype=dtype,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise FormatError(f"Failed to read table {target}: {exc}") from exc
    return frame


def ensure_integer_columns(frame: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Return a copy of ``frame`` with specified columns coerced to integers."""

    result = frame.copy()
    for column in columns:
        try:
            values = pd.to_numeric(result[column], errors="raise")
        except (TypeError, ValueError) as exc:
            raise FormatError(f"Column {column} must be numeric: {exc}") from exc
        if values.isna().any():
            raise FormatError(f"Column {column} contains missing values")
        if not (values == values.round()).all():
            raise FormatError(f"Column {column} must contain whole numbers")
        result[column] = values.astype(int)
    return result


def peak_names(frame: pd.DataFrame) -> pd.Index:
    """Build ``chrom:start-end`` identifiers from BED-style coordinate columns."""

    names = (
        frame["Chromosome"].astype(str)
        + ":"
        + frame["Start"].astype(int).astype(str)
        + "-"
        + frame["End"].astype(int).astype(str)
    )
    return pd.Index(names, name="Peak")


def write_table(frame: pd.DataFrame | pd.Series, path: Path, *, index: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, sep="\t", index=index)
    return path
