"""Column transforms applied to observation tables before model specification.

Every function returns a new DataFrame (or mapping of DataFrames); inputs are
never modified in place.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Union

import numpy as np
import pandas as pd

from .defaults import OWN_EFFECT
from .exceptions import DomainError

__all__ = [
    "log1p",
    "expm1",
    "relativize",
    "standardize",
    "zero_out_self",
    "species_covariates",
]


def _numeric_columns(table: pd.DataFrame, columns: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(columns, str):
        columns = [columns]
    columns = list(columns)
    for name in columns:
        if name not in table.columns:
            raise DomainError(f"Column '{name}' not found")
        if not pd.api.types.is_numeric_dtype(table[name]):
            raise DomainError(f"Column '{name}' is not numeric")
    return columns


def log1p(table: pd.DataFrame, columns: Union[str, Iterable[str]]) -> pd.DataFrame:
    """Apply ``log(1 + x)`` to ``columns``.

    Raises
    ------
    DomainError
        If any non-missing value is below -1.
    """
    columns = _numeric_columns(table, columns)
    out = table.copy()
    for name in columns:
        values = out[name].to_numpy(dtype=float)
        bad = values < -1
        if bad.any():
            raise DomainError(
                f"log1p is undefined for values < -1; column '{name}' contains {values[bad][0]}"
            )
        with np.errstate(divide="ignore"):
            out[name] = np.log1p(values)
    return out


def expm1(table: pd.DataFrame, columns: Union[str, Iterable[str]]) -> pd.DataFrame:
    """Inverse of :func:`log1p`: apply ``exp(x) - 1`` to ``columns``."""
    columns = _numeric_columns(table, columns)
    out = table.copy()
    for name in columns:
        out[name] = np.expm1(out[name].to_numpy(dtype=float))
    return out


def relativize(table: pd.DataFrame, columns: Union[str, Iterable[str]]) -> pd.DataFrame:
    """Divide each column by its mean over non-missing entries.

    Applied to fitness measures this gives relative fitness, whose mean is 1
    within each species.
    """
    columns = _numeric_columns(table, columns)
    out = table.copy()
    for name in columns:
        values = out[name].to_numpy(dtype=float)
        observed = values[~np.isnan(values)]
        if observed.size == 0:
            raise DomainError(f"Column '{name}' has no non-missing values")
        mean = observed.mean()
        if mean == 0:
            raise DomainError(f"Cannot relativize column '{name}': mean is zero")
        out[name] = values / mean
    return out


def standardize(table: pd.DataFrame, columns: Union[str, Iterable[str]]) -> pd.DataFrame:
    """Centre ``columns`` to mean 0 and scale them to unit standard deviation."""
    columns = _numeric_columns(table, columns)
    out = table.copy()
    for name in columns:
        values = out[name].to_numpy(dtype=float)
        observed = values[~np.isnan(values)]
        if observed.size < 2:
            raise DomainError(f"Column '{name}' needs at least two values to standardize")
        sd = observed.std(ddof=1)
        if sd == 0:
            raise DomainError(f"Cannot standardize column '{name}': zero variance")
        out[name] = (values - observed.mean()) / sd
    return out


def zero_out_self(
    wide: pd.DataFrame,
    taxon: Union[str, int],
    own_name: str = OWN_EFFECT,
) -> pd.DataFrame:
    """Separate a focal taxon's own measurement from the heterospecific ones.

    ``wide`` holds one column per taxon (e.g. number of open flowers of each
    species around the focal plant). The returned copy has the column of the
    focal ``taxon`` set to zero and the original values of that column under
    ``own_name``.

    Parameters
    ----------
    wide : pd.DataFrame
        Per-taxon measurements, one column per taxon.
    taxon : str or int
        Column name or positional index of the focal taxon.
    own_name : str, optional
        Name of the own-effect column (default: ``"own"``).
    """
    if isinstance(taxon, (int, np.integer)) and not isinstance(taxon, bool):
        if not 0 <= taxon < wide.shape[1]:
            raise DomainError(f"Taxon index {taxon} out of range for {wide.shape[1]} columns")
        taxon = wide.columns[taxon]
    if taxon not in wide.columns:
        raise DomainError(f"Taxon '{taxon}' not found")
    if own_name in wide.columns:
        raise DomainError(f"Own-effect name '{own_name}' clashes with an existing column")
    _numeric_columns(wide, [taxon])

    out = wide.copy()
    out[own_name] = wide[taxon].astype(float)
    out[taxon] = 0.0
    return out


def species_covariates(
    shared: pd.DataFrame,
    wide: pd.DataFrame,
    taxa: Sequence[str],
    own_name: str = OWN_EFFECT,
) -> Dict[str, pd.DataFrame]:
    """Build one covariate table per response taxon.

    For every taxon in ``taxa`` the shared covariates are joined column-wise
    with ``zero_out_self(wide, taxon)``, so that each species' model sees the
    heterospecific measurements with its own column zeroed plus its own
    measurement under ``own_name``. All tables keep the row order of
    ``shared``.
    """
    if len(shared) != len(wide):
        raise DomainError(
            f"Shared covariates have {len(shared)} rows but per-taxon table has {len(wide)}"
        )
    clashes = set(shared.columns).intersection(wide.columns) | (
        {own_name} & set(shared.columns)
    )
    if clashes:
        raise DomainError(f"Columns {sorted(clashes)} appear in both tables")

    base = shared.reset_index(drop=True)
    tables: Dict[str, pd.DataFrame] = {}
    for taxon in taxa:
        if taxon not in wide.columns:
            raise DomainError(f"Taxon '{taxon}' not found in per-taxon table")
        own = zero_out_self(wide, taxon, own_name=own_name).reset_index(drop=True)
        tables[taxon] = pd.concat([base, own], axis=1)
    return tables
