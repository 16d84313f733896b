"""Read survey tables from delimited files into pandas DataFrames."""

from __future__ import annotations

import os
from typing import Any, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .exceptions import LoadError

__all__ = ["load_table", "pivot_responses", "drop_incomplete"]

PathLike = Union[str, "os.PathLike[str]"]


def load_table(
    path: PathLike,
    group: Optional[str] = None,
    sep: str = ",",
    na_values: Optional[Sequence[str]] = None,
    categorical: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Load an observation table.

    Parameters
    ----------
    path : str or PathLike
        Delimited file with a header row.
    group : str, optional
        Name of the grouping key column (e.g. ``"plot"``). When given, the
        column must be present.
    sep : str, optional
        Field delimiter (default: ``","``).
    na_values : sequence of str, optional
        Extra strings to treat as missing, on top of the pandas defaults.
    categorical : iterable of str, optional
        Columns to force to ``category`` dtype even if they parse as numbers
        (plot identifiers are usually integers).

    Returns
    -------
    pd.DataFrame
        Columns in file order. Numeric columns keep their inferred dtype, all
        other columns are converted to ``category``.
    """
    if not os.path.isfile(path):
        raise LoadError(f"Input file not found: {path}")

    try:
        table = pd.read_csv(path, sep=sep, na_values=na_values)
    except pd.errors.EmptyDataError as exc:
        raise LoadError(f"Input file is empty: {path}") from exc
    except (pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise LoadError(f"Could not parse {path}: {exc}") from exc

    if table.columns.empty:
        raise LoadError(f"Input file has no header: {path}")
    if table.columns.duplicated().any():
        dupes = sorted(set(table.columns[table.columns.duplicated()]))
        raise LoadError(f"Duplicate column names in {path}: {dupes}")
    if group is not None and group not in table.columns:
        raise LoadError(f"Grouping column '{group}' not found in {path}")

    forced = set(categorical or [])
    missing = forced.difference(table.columns)
    if missing:
        raise LoadError(f"Columns {sorted(missing)} not found in {path}")

    for name in table.columns:
        if name in forced or not pd.api.types.is_numeric_dtype(table[name]):
            table[name] = table[name].astype("category")

    return table


def pivot_responses(
    table: pd.DataFrame,
    unit: str,
    taxon: str,
    value: str,
    fill_value: Optional[Any] = None,
) -> pd.DataFrame:
    """Reshape long observations (one row per unit and taxon) into a response matrix.

    Combinations that were never observed become ``NaN`` unless
    ``fill_value`` is given. Rows are the sorted units, columns the taxa in
    order of first appearance.
    """
    missing = [c for c in (unit, taxon, value) if c not in table.columns]
    if missing:
        raise LoadError(f"Columns {missing} not found in observation table")

    keys = table[[unit, taxon]]
    if keys.duplicated().any():
        dupes = keys[keys.duplicated()].head(3).to_dict(orient="records")
        raise LoadError(f"Duplicate {unit} x {taxon} observations, e.g. {dupes}")

    taxa = list(pd.unique(table[taxon].astype(str)))
    wide = table.assign(**{taxon: table[taxon].astype(str)}).pivot(
        index=unit, columns=taxon, values=value
    )
    wide = wide.reindex(columns=taxa).sort_index()
    wide.columns.name = None
    if fill_value is not None:
        wide = wide.fillna(fill_value)
    return wide.astype(float)


def drop_incomplete(table: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Return a copy of ``table`` without rows missing any of ``columns``."""
    columns = list(columns)
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise LoadError(f"Columns {missing} not found in observation table")

    mask = np.ones(len(table), dtype=bool)
    for name in columns:
        mask &= table[name].notna().to_numpy()
    return table.loc[mask].reset_index(drop=True)
