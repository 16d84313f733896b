"""Convergence statistics, model fit and posterior summaries of a fitted joint model."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, TypeVar, Union

import arviz as az
import numpy as np
import pandas as pd
from scipy.stats import spearmanr

from .defaults import SUPPORT_LEVEL
from .exceptions import SpecError
from .fit import FittedModel

__all__ = [
    "parameter_labels",
    "effective_sample_size",
    "potential_scale_reduction",
    "convergence_summary",
    "explanatory_r2",
    "variance_partition",
    "Association",
    "association_matrix",
    "filter_by_support",
    "parameter_table",
    "selection_gradients",
    "FitSummary",
    "summary",
]

ArrayLike = TypeVar("ArrayLike", np.ndarray, pd.DataFrame)


def parameter_labels(fit: FittedModel, name: str) -> List[str]:
    """Human-readable label of every scalar in variable ``name`` (C order)."""
    config = fit.config
    shape = fit.draws[name].shape[2:]
    if name == "beta":
        pairs = itertools.product(config.column_names, config.species)
    elif name == "sigma":
        return [f"sigma[{sp}]" for sp in config.species]
    elif name.startswith("omega_"):
        pairs = itertools.product(config.species, config.species)
    elif name.startswith("lambda_"):
        pairs = itertools.product(range(1, shape[0] + 1), config.species)
    elif name.startswith("eta_"):
        level = next(lvl for lvl in config.random_levels if f"eta_{lvl.name}" == name)
        pairs = itertools.product(level.levels, range(1, shape[1] + 1))
    else:
        return [f"{name}[{i}]" for i in range(int(np.prod(shape)))]
    return [f"{name}[{a}, {b}]" for a, b in pairs]


def _per_parameter(fit: FittedModel, group: str, func) -> pd.Series:
    draws = fit.posterior(group)
    dataset = az.convert_to_dataset(dict(draws))
    result = func(dataset)
    labels: List[str] = []
    values: List[np.ndarray] = []
    for name in draws:
        labels += parameter_labels(fit, name)
        values.append(np.ravel(result[name].values))
    return pd.Series(np.concatenate(values), index=labels, dtype=float)


def effective_sample_size(fit: FittedModel, group: str = "fixed") -> pd.Series:
    """Bulk effective sample size of every scalar parameter in ``group``.

    No threshold is applied; compare against ``fit.n_samples``.
    """
    return _per_parameter(fit, group, az.ess).rename("ess")


def potential_scale_reduction(fit: FittedModel, group: str = "fixed") -> pd.Series:
    """Rank-normalized split R-hat of every scalar parameter in ``group``.

    Values close to 1 indicate that the chains agree.
    """
    return _per_parameter(fit, group, az.rhat).rename("rhat")


def convergence_summary(fit: FittedModel) -> pd.DataFrame:
    """ESS and R-hat for the fixed effects and the residual covariances."""
    frames = []
    for group in ("fixed", "residual"):
        if not fit.posterior(group):
            continue
        frame = pd.concat(
            [effective_sample_size(fit, group), potential_scale_reduction(fit, group)], axis=1
        )
        frame["group"] = group
        frames.append(frame)
    table = pd.concat(frames)
    table.attrs["divergences"] = fit.divergences
    table.attrs["samples"] = fit.n_samples
    return table


def _signed_square(r: float) -> float:
    return float(np.sign(r) * r**2)


def explanatory_r2(fit: FittedModel, average: bool = False) -> Union[pd.Series, float]:
    """Explanatory power of the model for every species.

    The posterior-predictive mean at each sampling unit is compared with the
    observed, non-missing responses:

    - gaussian: signed squared Pearson correlation,
    - poisson: signed squared Spearman correlation,
    - probit: Tjur's R² (mean prediction at presences minus at absences).

    Species whose observed or predicted values are constant get ``NaN``.
    """
    config = fit.config
    predicted = fit.predict(expected=True).mean(axis=0)
    observed = config.response_array()

    values: Dict[str, float] = {}
    for j, species in enumerate(config.species):
        mask = ~np.isnan(observed[:, j])
        y = observed[mask, j]
        p = predicted[mask, j]
        r2 = np.nan
        if config.distribution == "probit":
            if 0 < y.sum() < y.size:
                r2 = float(p[y == 1].mean() - p[y == 0].mean())
        elif y.size > 1 and np.ptp(y) > 0 and np.ptp(p) > 0:
            if config.distribution == "poisson":
                r2 = _signed_square(spearmanr(p, y)[0])
            else:
                r2 = _signed_square(np.corrcoef(p, y)[0, 1])
        values[species] = r2

    result = pd.Series(values, name="R2", dtype=float)
    if average:
        return float(np.nanmean(result.to_numpy())) if result.notna().any() else float("nan")
    return result


def _validate_groups(groups: Mapping[str, Sequence[str]], columns: List[str]) -> Dict[str, List[int]]:
    if not groups:
        raise SpecError("at least one effect group is required")
    seen: Dict[str, str] = {}
    for group, members in groups.items():
        if isinstance(members, str):
            members = [members]
        for column in members:
            if column not in columns:
                raise SpecError(f"Group '{group}' names unknown fixed-effect column '{column}'")
            if column in seen:
                raise SpecError(
                    f"Column '{column}' appears in groups '{seen[column]}' and '{group}'"
                )
            seen[column] = group
    missing = [c for c in columns if c not in seen]
    if missing:
        raise SpecError(f"Fixed-effect columns {missing} are not assigned to any group")
    return {
        group: [columns.index(c) for c in ([members] if isinstance(members, str) else members)]
        for group, members in groups.items()
    }


def _design_covariance(X: np.ndarray) -> np.ndarray:
    # a single sampling unit carries no covariate variance
    if X.shape[0] < 2:
        return np.zeros((X.shape[1], X.shape[1]))
    return np.atleast_2d(np.cov(X, rowvar=False))


def _quadratic(beta: np.ndarray, cov: np.ndarray) -> np.ndarray:
    # beta: (samples, k, species); cov: (species, k, k) -> (samples, species)
    return np.einsum("skj,jkl,slj->sj", beta, cov, beta)


def variance_partition(fit: FittedModel, groups: Mapping[str, Sequence[str]]) -> pd.DataFrame:
    """Split the explained variance of every species between effect groups and random levels.

    Parameters
    ----------
    fit : FittedModel
        Fitted model.
    groups : mapping
        Group name to fixed-effect column names. Together the groups must
        contain every fixed-effect column (including ``"(Intercept)"`` when
        the model has one) exactly once.

    Returns
    -------
    pd.DataFrame
        Rows are the groups followed by ``"Random: <level>"``; columns are
        species. Each column sums to 1. Species with no explained variance
        in any draw are ``NaN``.

    Notes
    -----
    For every posterior draw the fixed-effect variance of species ``j`` is
    ``beta_j' cov(X_j) beta_j``; the share of group ``g`` is its own
    quadratic form ``beta_gj' cov(X_gj) beta_gj`` normalized over groups. The
    variance of random level ``r`` is the diagonal of ``omega_r``.
    """
    config = fit.config
    index = _validate_groups(groups, config.column_names)

    X = config.design_tensor()
    cov = np.stack([_design_covariance(X[j]) for j in range(config.n_species)])
    beta = fit.stacked("beta")

    fixed = _quadratic(beta, cov)
    parts = np.stack(
        [_quadratic(beta[:, cols, :], cov[:, cols][:, :, cols]) for cols in index.values()]
    )
    if config.random_levels:
        random = np.stack(
            [
                np.diagonal(fit.stacked(f"omega_{level.name}"), axis1=1, axis2=2)
                for level in config.random_levels
            ]
        )
    else:
        random = np.zeros((0,) + fixed.shape)

    total = fixed + random.sum(axis=0)
    valid = total > 0
    with np.errstate(invalid="ignore", divide="ignore"):
        fixed_share = np.where(valid, fixed / total, 0.0)
        random_share = np.where(valid, random / total, 0.0)
        parts_total = parts.sum(axis=0)
        split = np.where(parts_total > 0, parts / parts_total, 0.0)
        values = np.concatenate([fixed_share[None] * split, random_share])
        # average over the draws with non-zero explained variance
        mean = values.sum(axis=1) / valid.sum(axis=0)

    labels = list(index) + [f"Random: {level.name}" for level in config.random_levels]
    return pd.DataFrame(mean, index=labels, columns=config.species)


@dataclass(frozen=True)
class Association:
    """Posterior residual correlations between species at one random level."""

    level: str
    mean: pd.DataFrame
    support: pd.DataFrame
    support_negative: pd.DataFrame
    filtered: pd.DataFrame
    support_level: float


def _check_support_level(support_level: float) -> None:
    if not 0.5 <= support_level < 1:
        raise ValueError(f"support_level must lie in [0.5, 1), got {support_level}")


def filter_by_support(
    mean: ArrayLike,
    positive: ArrayLike,
    negative: ArrayLike,
    support_level: float = SUPPORT_LEVEL,
) -> ArrayLike:
    """Zero every entry lacking posterior support for its sign.

    An entry of ``mean`` is kept when its positive-sign support or its
    negative-sign support exceeds ``support_level``.
    """
    _check_support_level(support_level)
    keep = (np.asarray(positive) > support_level) | (np.asarray(negative) > support_level)
    values = np.where(keep, np.asarray(mean, dtype=float), 0.0)
    if isinstance(mean, pd.DataFrame):
        return pd.DataFrame(values, index=mean.index, columns=mean.columns)
    return values


def association_matrix(
    fit: FittedModel, level: str, support_level: float = SUPPORT_LEVEL
) -> Association:
    """Residual species-to-species correlations at random level ``level``.

    The posterior of ``omega`` is converted to correlations draw by draw;
    ``support`` is the fraction of draws with a positive correlation and
    ``support_negative`` the fraction with a negative one.
    """
    _check_support_level(support_level)
    name = f"omega_{level}"
    if name not in fit.draws:
        known = [lvl.name for lvl in fit.config.random_levels]
        raise ValueError(f"Random level '{level}' not found in model; levels: {known}")

    omega = fit.stacked(name)
    sd = np.sqrt(np.diagonal(omega, axis1=1, axis2=2))
    outer = sd[:, :, None] * sd[:, None, :]
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.where(outer > 0, omega / outer, 0.0)

    species = fit.config.species

    def frame(values: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(values, index=species, columns=species)

    mean = frame(corr.mean(axis=0))
    positive = frame((corr > 0).mean(axis=0))
    negative = frame((corr < 0).mean(axis=0))
    return Association(
        level=level,
        mean=mean,
        support=positive,
        support_negative=negative,
        filtered=filter_by_support(mean, positive, negative, support_level),
        support_level=support_level,
    )


def _describe(samples: np.ndarray) -> Dict[str, np.ndarray]:
    # samples: (draws, parameters)
    return {
        "Estimate": samples.mean(axis=0),
        "Std.Dev": samples.std(axis=0, ddof=1) if samples.shape[0] > 1 else np.full(samples.shape[1], np.nan),
        "2.5%": np.quantile(samples, 0.025, axis=0),
        "97.5%": np.quantile(samples, 0.975, axis=0),
        "P(>0)": (samples > 0).mean(axis=0),
        "P(<0)": (samples < 0).mean(axis=0),
    }


def parameter_table(fit: FittedModel, group: str = "fixed") -> pd.DataFrame:
    """Posterior mean, spread, 95% interval and sign support per parameter."""
    labels: List[str] = []
    blocks: List[np.ndarray] = []
    for name in fit.posterior(group):
        samples = fit.stacked(name)
        blocks.append(samples.reshape(samples.shape[0], -1))
        labels += parameter_labels(fit, name)
    return pd.DataFrame(_describe(np.concatenate(blocks, axis=1)), index=labels)


def selection_gradients(fit: FittedModel, traits: Sequence[str]) -> pd.DataFrame:
    """Posterior summaries of the trait coefficients, one row per species and trait.

    With relative fitness as response and standardized traits these are the
    directional selection gradients acting on each trait in each species.
    """
    columns = fit.config.column_names
    unknown = [t for t in traits if t not in columns]
    if unknown:
        raise ValueError(f"Traits {unknown} are not fixed effects of the model")

    beta = fit.stacked("beta")
    rows = []
    for j, species in enumerate(fit.config.species):
        for trait in traits:
            samples = beta[:, columns.index(trait), j][:, None]
            stats = {key: float(value[0]) for key, value in _describe(samples).items()}
            rows.append({"Species": species, "Trait": trait, **stats})
    return pd.DataFrame(rows)


class FitSummary:
    """Parameter estimates and convergence diagnostics of a fitted model."""

    def __init__(self, fit: FittedModel) -> None:
        self.fit = fit
        self.parameters = parameter_table(fit, "fixed")
        self.convergence = convergence_summary(fit)

    def __repr__(self) -> str:
        fit = self.fit
        lines = [fit.config.describe()]
        lines.append(f"Chains: {fit.n_chains}, draws per chain: {fit.n_draws}")
        lines.append(f"Divergences: {fit.divergences}")
        rhat = self.convergence["rhat"]
        if rhat.notna().any():
            lines.append(f"Max R-hat: {rhat.max():.3f}")
        lines.append(f"Min ESS: {self.convergence['ess'].min():.0f}")
        lines.append("")
        lines.append(self.parameters.to_string(float_format=lambda v: f"{v:.3f}"))
        return "\n".join(lines)


def summary(fit: FittedModel) -> FitSummary:
    """Return a :class:`FitSummary` for ``fit``."""
    return FitSummary(fit)
