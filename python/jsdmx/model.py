"""Model specification front-end.

This module validates responses, covariates and random levels once and bundles
them into an immutable :class:`ModelConfig` understood by :func:`jsdmx.fit`.
The :class:`Model` wrapper accepts lme4-inspired formulas such as
``"~ plant_height + flowers_open + (1 | plot)"``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .defaults import DEFAULT_N_FACTORS, DISTRIBUTIONS, INTERCEPT
from .exceptions import SpecError

__all__ = ["RandomLevel", "ModelConfig", "Model", "build_config"]

Covariates = Union[pd.DataFrame, Mapping[str, pd.DataFrame]]


@dataclass(frozen=True)
class RandomLevel:
    """A grouping factor whose levels share latent random effects.

    Parameters
    ----------
    name:
        Label of the level (e.g. ``"plot"``).
    units:
        Level value of every sampling unit, in row order of the responses.
    n_factors:
        Number of latent factors used to model the residual association
        between species at this level.
    """

    name: str
    units: np.ndarray = field(repr=False, compare=False)
    n_factors: int = DEFAULT_N_FACTORS

    def __post_init__(self) -> None:
        units = np.array(self.units, dtype=object, copy=True)
        if units.ndim != 1:
            raise SpecError(f"Random level '{self.name}' units must be one-dimensional")
        if pd.isna(units).any():
            raise SpecError(f"Random level '{self.name}' has missing units")
        if int(self.n_factors) < 1:
            raise SpecError(f"Random level '{self.name}' needs at least one latent factor")
        units.setflags(write=False)
        object.__setattr__(self, "units", units)

    @classmethod
    def from_column(
        cls, table: pd.DataFrame, column: str, n_factors: int = DEFAULT_N_FACTORS
    ) -> "RandomLevel":
        """Build a level from the grouping key ``column`` of ``table``."""
        if column not in table.columns:
            raise SpecError(f"Grouping column '{column}' not found")
        return cls(column, table[column].to_numpy(), n_factors)

    @property
    def levels(self) -> List[Any]:
        """Sorted unique level values."""
        codes, uniques = pd.factorize(pd.Series(self.units), sort=True)
        return list(uniques)

    @property
    def index(self) -> np.ndarray:
        """Zero-based level code of each sampling unit."""
        codes, _ = pd.factorize(pd.Series(self.units), sort=True)
        return codes.astype(np.int64)

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    def __len__(self) -> int:
        return len(self.units)


@dataclass(frozen=True)
class ModelConfig:
    """Validated inputs for one joint species distribution model.

    Instances are produced by :func:`build_config` (or :meth:`Model.to_config`)
    and should not be constructed directly.
    """

    responses: pd.DataFrame = field(repr=False)
    covariates: Covariates = field(repr=False)
    predictors: Tuple[str, ...]
    random_levels: Tuple[RandomLevel, ...]
    distribution: str = "gaussian"
    formula: str = ""
    intercept: bool = True

    @property
    def species(self) -> List[str]:
        return [str(c) for c in self.responses.columns]

    @property
    def n_units(self) -> int:
        return len(self.responses)

    @property
    def n_species(self) -> int:
        return self.responses.shape[1]

    @property
    def per_species(self) -> bool:
        """Whether covariates differ by response column."""
        return not isinstance(self.covariates, pd.DataFrame)

    @property
    def column_names(self) -> List[str]:
        """Fixed-effect column names, intercept first when present."""
        names = list(self.predictors)
        return [INTERCEPT] + names if self.intercept else names

    def covariate_table(self, taxon: str) -> pd.DataFrame:
        if self.per_species:
            return self.covariates[taxon]
        return self.covariates

    def design_matrix(self, taxon: Optional[str] = None) -> np.ndarray:
        """Return the ``(n_units, n_columns)`` fixed-effect design matrix.

        ``taxon`` is required when covariates are specified per species.
        """
        if self.per_species:
            if taxon is None:
                raise SpecError("taxon is required when covariates differ by species")
            if taxon not in self.covariates:
                raise SpecError(f"No covariate table for '{taxon}'")
        table = self.covariate_table(taxon)
        cols = [table[p].to_numpy(dtype=float) for p in self.predictors]
        if self.intercept:
            cols.insert(0, np.ones(self.n_units))
        if not cols:
            return np.empty((self.n_units, 0))
        return np.column_stack(cols)

    def design_tensor(self) -> np.ndarray:
        """Return the ``(n_species, n_units, n_columns)`` design for all species."""
        if not self.per_species:
            X = self.design_matrix()
            return np.broadcast_to(X, (self.n_species,) + X.shape).copy()
        return np.stack([self.design_matrix(sp) for sp in self.species])

    def response_array(self) -> np.ndarray:
        """Return the ``(n_units, n_species)`` response matrix with ``NaN`` for missing."""
        return self.responses.to_numpy(dtype=float)

    def describe(self) -> str:
        lines = [
            f"Joint model ({self.distribution}): {self.n_units} units x {self.n_species} species",
            f"Fixed effects: {', '.join(self.column_names) or '(none)'}",
        ]
        if self.per_species:
            lines.append("Covariates: one table per species")
        for level in self.random_levels:
            lines.append(
                f"Random level '{level.name}': {level.n_levels} levels, {level.n_factors} factors"
            )
        return "\n".join(lines)


def _check_table(table: Any, label: str, n_rows: int, predictors: Sequence[str]) -> pd.DataFrame:
    if not isinstance(table, pd.DataFrame):
        raise SpecError(f"{label} must be a DataFrame, got {type(table).__name__}")
    if len(table) != n_rows:
        raise SpecError(f"{label} has {len(table)} rows but the responses have {n_rows}")
    missing = [p for p in predictors if p not in table.columns]
    if missing:
        raise SpecError(f"Predictors {missing} not found in {label}")
    for p in predictors:
        if not pd.api.types.is_numeric_dtype(table[p]):
            raise SpecError(f"Predictor '{p}' in {label} is not numeric")
        if table[p].isna().any():
            raise SpecError(f"Predictor '{p}' in {label} has missing values")
    return table.reset_index(drop=True).copy()


def build_config(
    responses: pd.DataFrame,
    covariates: Covariates,
    predictors: Sequence[str],
    random_levels: Sequence[RandomLevel] = (),
    distribution: str = "gaussian",
    formula: Optional[str] = None,
    intercept: bool = True,
) -> ModelConfig:
    """Validate model inputs and bundle them into a :class:`ModelConfig`.

    Parameters
    ----------
    responses : pd.DataFrame
        One column per species, one row per sampling unit. ``NaN`` marks
        species not measured at a unit.
    covariates : DataFrame or mapping
        A table shared by all species, or a mapping from each response
        column to its own table (same rows and row order as ``responses``).
    predictors : sequence of str
        Covariate columns entering the model as fixed effects.
    random_levels : sequence of RandomLevel, optional
        Grouping factors; each must give a level for every response row.
    distribution : str, optional
        ``"gaussian"`` (default), ``"poisson"`` or ``"probit"``.
    formula : str, optional
        Symbolic form of the fixed effects; generated from ``predictors``
        when omitted.
    intercept : bool, optional
        Whether to add an intercept column (default: True).

    Returns
    -------
    ModelConfig

    Raises
    ------
    SpecError
        If any of the inputs disagree with one another.
    """
    if not isinstance(responses, pd.DataFrame):
        raise SpecError("responses must be a DataFrame")
    if responses.shape[0] == 0 or responses.shape[1] == 0:
        raise SpecError("responses must have at least one row and one column")
    if responses.columns.duplicated().any():
        raise SpecError("responses have duplicate column names")
    for name in responses.columns:
        if not pd.api.types.is_numeric_dtype(responses[name]):
            raise SpecError(f"Response column '{name}' is not numeric")

    if not isinstance(distribution, str):
        raise SpecError(f"distribution must be a string, got {type(distribution).__name__}")
    distribution = distribution.strip().lower()
    if distribution not in DISTRIBUTIONS:
        raise SpecError(f"Unknown distribution '{distribution}'; expected one of {DISTRIBUTIONS}")
    values = responses.to_numpy(dtype=float)
    observed = values[~np.isnan(values)]
    if observed.size == 0:
        raise SpecError("responses contain no observed values")
    if not np.isfinite(observed).all():
        raise SpecError("responses contain infinite values")
    if distribution == "poisson" and ((observed < 0).any() or (observed != np.round(observed)).any()):
        raise SpecError("poisson responses must be non-negative counts")
    if distribution == "probit" and not np.isin(observed, (0.0, 1.0)).all():
        raise SpecError("probit responses must be 0/1")

    predictors = tuple(str(p).strip() for p in predictors)
    if len(set(predictors)) != len(predictors):
        raise SpecError(f"Duplicate predictors in {list(predictors)}")
    if INTERCEPT in predictors:
        raise SpecError(f"'{INTERCEPT}' is reserved; use intercept=True instead")
    if not predictors and not intercept:
        raise SpecError("model needs at least one fixed-effect column")

    n_rows = len(responses)
    responses = responses.reset_index(drop=True).copy()
    species = [str(c) for c in responses.columns]
    responses.columns = species

    if isinstance(covariates, pd.DataFrame):
        checked: Covariates = _check_table(covariates, "covariates", n_rows, predictors)
    elif isinstance(covariates, Mapping):
        keys = {str(k) for k in covariates}
        extra = sorted(keys.difference(species))
        absent = sorted(set(species).difference(keys))
        if absent:
            raise SpecError(f"No covariate table for species {absent}")
        if extra:
            raise SpecError(f"Covariate tables given for unknown species {extra}")
        tables: Dict[str, pd.DataFrame] = {}
        for key, table in covariates.items():
            tables[str(key)] = _check_table(table, f"covariates['{key}']", n_rows, predictors)
        checked = {sp: tables[sp] for sp in species}
    else:
        raise SpecError("covariates must be a DataFrame or a mapping of DataFrames")

    names = set()
    for level in random_levels:
        if not isinstance(level, RandomLevel):
            raise SpecError(f"random levels must be RandomLevel instances, got {type(level).__name__}")
        if level.name in names:
            raise SpecError(f"Duplicate random level '{level.name}'")
        names.add(level.name)
        if len(level) != n_rows:
            raise SpecError(
                f"Random level '{level.name}' covers {len(level)} units but the responses have {n_rows}"
            )

    if formula is None:
        terms = (["1"] if intercept else ["0"]) + list(predictors)
        terms += [f"(1 | {level.name})" for level in random_levels]
        formula = "~ " + " + ".join(terms)

    return ModelConfig(
        responses=responses,
        covariates=checked,
        predictors=predictors,
        random_levels=tuple(random_levels),
        distribution=distribution,
        formula=formula,
        intercept=intercept,
    )


class Model:
    """Parse a formula into a :class:`ModelConfig`.

    Parameters
    ----------
    formula:
        lme4-style right-hand side, e.g. ``"~ height + (1 | plot)"``. The
        left-hand side may list response columns to keep (``"morio + mascula
        ~ height"``); empty means all columns of ``responses``. ``1`` and
        ``0`` switch the intercept on and off; ``(1 | g)`` declares a random
        level over column ``g``.
    responses:
        Response matrix.
    covariates:
        Shared covariate table or mapping of per-species tables.
    design:
        Table holding the grouping columns named in random terms. Defaults
        to the shared covariate table.
    distribution:
        Observation family.
    n_factors:
        Latent factors per random level, either one integer or a mapping by
        level name.
    """

    def __init__(
        self,
        formula: str,
        responses: pd.DataFrame,
        covariates: Covariates,
        *,
        design: Optional[pd.DataFrame] = None,
        distribution: str = "gaussian",
        n_factors: Union[int, Mapping[str, int]] = DEFAULT_N_FACTORS,
    ) -> None:
        if not formula or "~" not in formula:
            raise SpecError(f"Formula must contain '~': {formula!r}")
        lhs, rhs = formula.split("~", 1)
        if "~" in rhs:
            raise SpecError(f"Formula has more than one '~': {formula!r}")

        self._formula = formula.strip()
        self._responses = responses
        self._covariates = covariates
        self._design = design
        self._distribution = distribution
        self._n_factors = n_factors
        self._targets = self._split_terms(lhs)
        self._predictors: List[str] = []
        self._groupings: List[str] = []
        self._intercept = True
        self._config: Optional[ModelConfig] = None
        self._parse_rhs(rhs)

    @property
    def predictors(self) -> List[str]:
        return list(self._predictors)

    @property
    def groupings(self) -> List[str]:
        return list(self._groupings)

    @property
    def intercept(self) -> bool:
        return self._intercept

    def _parse_rhs(self, rhs: str) -> None:
        terms = self._split_terms(rhs)
        if not terms:
            raise SpecError(f"Formula has no terms: {self._formula!r}")
        for term in terms:
            grouping = self._parse_random_term(term)
            if grouping is not None:
                if grouping in self._groupings:
                    raise SpecError(f"Random level '{grouping}' declared twice")
                self._groupings.append(grouping)
            elif term == "1":
                self._intercept = True
            elif term == "0":
                self._intercept = False
            elif term.startswith("(") or "|" in term:
                raise SpecError(f"Invalid random term: {term}")
            else:
                if term in self._predictors:
                    raise SpecError(f"Predictor '{term}' listed twice")
                self._predictors.append(term)

    @staticmethod
    def _parse_random_term(term: str) -> Optional[str]:
        if not (term.startswith("(") and term.endswith(")") and "|" in term):
            return None
        parts = term[1:-1].split("|")
        if len(parts) != 2:
            raise SpecError(f"Invalid random term: {term}")
        lhs, rhs = parts[0].strip(), parts[1].strip()
        if lhs != "1":
            raise SpecError(f"Only random intercepts '(1 | group)' are supported, got: {term}")
        if not rhs:
            raise SpecError(f"Random term has no grouping column: {term}")
        return rhs

    def _factors_for(self, name: str) -> int:
        if isinstance(self._n_factors, Mapping):
            return int(self._n_factors.get(name, DEFAULT_N_FACTORS))
        return int(self._n_factors)

    def _design_table(self) -> pd.DataFrame:
        if self._design is not None:
            return self._design
        if isinstance(self._covariates, pd.DataFrame):
            return self._covariates
        raise SpecError("design table is required for random levels with per-species covariates")

    def to_config(self) -> ModelConfig:
        """Materialize the validated configuration (cached after first build)."""
        if self._config is None:
            responses = self._responses
            if self._targets:
                missing = [t for t in self._targets if t not in responses.columns]
                if missing:
                    raise SpecError(f"Responses {missing} not found")
                responses = responses[self._targets]
            covariates = self._covariates
            if not isinstance(covariates, pd.DataFrame) and self._targets:
                covariates = {k: v for k, v in covariates.items() if k in self._targets}

            levels = []
            if self._groupings:
                design = self._design_table()
                levels = [
                    RandomLevel.from_column(design, g, self._factors_for(g))
                    for g in self._groupings
                ]

            self._config = build_config(
                responses,
                covariates,
                self._predictors,
                levels,
                distribution=self._distribution,
                formula=self._formula,
                intercept=self._intercept,
            )
        return self._config

    def fit(self, options: Optional[Any] = None, verbose: bool = False, **kwargs: Any) -> Any:
        """Sample the model; see :func:`jsdmx.fit.fit`."""
        from .fit import fit

        return fit(self.to_config(), options=options, verbose=verbose, **kwargs)

    @staticmethod
    def _split_terms(side: str) -> List[str]:
        terms = []
        current = []
        depth = 0
        for char in side:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1

            if char == "+" and depth == 0:
                terms.append("".join(current).strip())
                current = []
            else:
                current.append(char)
        if current:
            terms.append("".join(current).strip())
        return [t for t in terms if t]
