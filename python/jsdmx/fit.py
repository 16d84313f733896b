"""Sampler adapter: hand a :class:`ModelConfig` to PyMC and wrap the posterior.

The joint model fitted here is

    y_ij ~ family(g(mu_ij))
    mu_ij = sum_k X_jik beta_kj + sum_r (eta_r lambda_r)[unit_r(i), j]

with independent Normal priors on ``beta``, standard-normal latent factors
``eta_r`` (levels x factors) and Normal loadings ``lambda_r`` (factors x
species) for every random level ``r``. The residual covariance between
species at level ``r`` is ``omega_r = lambda_r' lambda_r``.
"""

from __future__ import annotations

import os
import pickle
import time
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

import arviz as az
import numpy as np
import pymc as pm
import pytensor.tensor as pt
from scipy.stats import norm

from .defaults import (
    BETA_PRIOR_SD,
    DEFAULT_BURN_IN,
    DEFAULT_CHAINS,
    DEFAULT_DRAWS,
    DEFAULT_TARGET_ACCEPT,
    DEFAULT_THIN,
    LAMBDA_PRIOR_SD,
    RHAT_THRESHOLD,
    SIGMA_PRIOR_SD,
)
from .exceptions import ConvergenceWarning, FitError, LoadError
from .model import ModelConfig

__all__ = ["SamplerOptions", "FittedModel", "build_pymc_model", "fit", "load_fit"]

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class SamplerOptions:
    """Settings passed to the sampler.

    Attributes
    ----------
    draws : int
        Posterior draws kept per chain, after thinning.
    chains : int
        Number of independent chains.
    thin : int
        Keep every ``thin``-th iteration; ``draws * thin`` iterations are run.
    burn_in : int
        Tuning iterations discarded before sampling.
    target_accept : float
        NUTS target acceptance rate.
    seed : int, optional
        Seed for the sampler. ``None`` draws fresh entropy.
    cores : int
        Chains run in parallel on this many processes.
    """

    draws: int = DEFAULT_DRAWS
    chains: int = DEFAULT_CHAINS
    thin: int = DEFAULT_THIN
    burn_in: int = DEFAULT_BURN_IN
    target_accept: float = DEFAULT_TARGET_ACCEPT
    seed: Optional[int] = None
    cores: int = 1

    def __post_init__(self) -> None:
        for name in ("draws", "chains", "thin", "cores"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer, got {getattr(self, name)}")
        if int(self.burn_in) < 0:
            raise ValueError(f"burn_in must be non-negative, got {self.burn_in}")
        if not 0 < self.target_accept < 1:
            raise ValueError(f"target_accept must lie in (0, 1), got {self.target_accept}")


class FittedModel:
    """Posterior draws of a fitted joint model.

    ``draws`` maps variable names to arrays shaped ``(chain, draw, ...)``:
    ``beta`` (columns x species), ``sigma`` (species; Gaussian only) and, per
    random level ``r``, ``eta_r``, ``lambda_r`` and ``omega_r``.
    """

    _GROUPS = ("fixed", "random", "residual")

    def __init__(
        self,
        config: ModelConfig,
        options: SamplerOptions,
        draws: Mapping[str, np.ndarray],
        sample_stats: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if "beta" not in draws:
            raise FitError("posterior draws must include 'beta'")
        self.config = config
        self.options = options
        self.draws = {name: np.array(value, dtype=float) for name, value in draws.items()}
        for value in self.draws.values():
            value.setflags(write=False)
        self.sample_stats = dict(sample_stats or {})

    @property
    def n_chains(self) -> int:
        return self.draws["beta"].shape[0]

    @property
    def n_draws(self) -> int:
        return self.draws["beta"].shape[1]

    @property
    def n_samples(self) -> int:
        return self.n_chains * self.n_draws

    @property
    def divergences(self) -> int:
        return int(self.sample_stats.get("divergences", 0))

    def posterior(self, group: str = "fixed") -> Dict[str, np.ndarray]:
        """Return the draws of a parameter group.

        ``group`` is ``"fixed"`` (``beta``), ``"random"`` (latent factors and
        loadings), ``"residual"`` (``omega`` per level and ``sigma``) or the
        name of a single variable.
        """
        levels = [level.name for level in self.config.random_levels]
        if group == "fixed":
            names = ["beta"]
        elif group == "random":
            names = [f"{p}_{lvl}" for lvl in levels for p in ("eta", "lambda")]
        elif group == "residual":
            names = [f"omega_{lvl}" for lvl in levels]
            if "sigma" in self.draws:
                names.append("sigma")
        elif group in self.draws:
            names = [group]
        else:
            raise KeyError(f"Unknown parameter group '{group}'; expected one of {self._GROUPS} or a variable name")
        return {name: self.draws[name] for name in names}

    def stacked(self, name: str) -> np.ndarray:
        """Draws of ``name`` with chains flattened: ``(samples, ...)``."""
        value = self.draws[name]
        return value.reshape((-1,) + value.shape[2:])

    def linear_predictor(self) -> np.ndarray:
        """Posterior linear predictor, shaped ``(samples, units, species)``."""
        X = self.config.design_tensor()
        beta = self.stacked("beta")
        mu = np.einsum("jnk,skj->snj", X, beta)
        for level in self.config.random_levels:
            eta = self.stacked(f"eta_{level.name}")
            lam = self.stacked(f"lambda_{level.name}")
            mu = mu + np.einsum("slf,sfj->slj", eta, lam)[:, level.index, :]
        return mu

    def predict(self, expected: bool = True, seed: Optional[int] = None) -> np.ndarray:
        """Posterior predictions for the fitted sampling units.

        With ``expected=True`` the mean of the observation model under each
        draw is returned (the linear predictor, ``exp`` of it for Poisson,
        the normal CDF for probit). Otherwise one replicate observation is
        drawn per posterior sample using a generator seeded with ``seed``.
        """
        mu = self.linear_predictor()
        family = self.config.distribution
        if family == "gaussian":
            mean = mu
        elif family == "poisson":
            mean = np.exp(mu)
        else:
            mean = norm.cdf(mu)
        if expected:
            return mean

        rng = np.random.default_rng(seed)
        if family == "gaussian":
            sigma = self.stacked("sigma")[:, None, :]
            return mean + rng.normal(size=mean.shape) * sigma
        if family == "poisson":
            return rng.poisson(mean).astype(float)
        return rng.binomial(1, mean).astype(float)

    def summary(self) -> Any:
        """Return a summary object with parameter estimates and convergence diagnostics."""
        from .diagnostics import FitSummary

        return FitSummary(self)

    def save(self, path: PathLike) -> None:
        """Pickle the fitted model to ``path`` so it can be reused without refitting."""
        with open(path, "wb") as handle:
            pickle.dump(self, handle, protocol=pickle.HIGHEST_PROTOCOL)

    def __repr__(self) -> str:
        return (
            f"FittedModel({self.config.distribution}, species={self.config.n_species}, "
            f"units={self.config.n_units}, chains={self.n_chains}, draws={self.n_draws})"
        )


def load_fit(path: PathLike) -> FittedModel:
    """Load a model written by :meth:`FittedModel.save`."""
    if not os.path.isfile(path):
        raise LoadError(f"Fitted model not found: {path}")
    with open(path, "rb") as handle:
        try:
            fitted = pickle.load(handle)
        except (pickle.UnpicklingError, EOFError, AttributeError) as exc:
            raise LoadError(f"Could not read fitted model from {path}: {exc}") from exc
    if not isinstance(fitted, FittedModel):
        raise LoadError(f"{path} does not contain a FittedModel")
    return fitted


def build_pymc_model(config: ModelConfig) -> pm.Model:
    """Translate a :class:`ModelConfig` into a PyMC model."""
    Y = config.response_array()
    rows, cols = np.nonzero(~np.isnan(Y))
    if rows.size == 0:
        raise FitError("responses contain no observed values")
    n_species = config.n_species
    n_columns = len(config.column_names)

    with pm.Model() as model:
        beta = pm.Normal("beta", mu=0.0, sigma=BETA_PRIOR_SD, shape=(n_columns, n_species))
        if config.per_species:
            X = pm.Data("X", config.design_tensor())
            mu = pt.sum(X * beta.T[:, None, :], axis=2).T
        else:
            X = pm.Data("X", config.design_matrix())
            mu = pt.dot(X, beta)

        for level in config.random_levels:
            eta = pm.Normal(
                f"eta_{level.name}", mu=0.0, sigma=1.0, shape=(level.n_levels, level.n_factors)
            )
            lam = pm.Normal(
                f"lambda_{level.name}",
                mu=0.0,
                sigma=LAMBDA_PRIOR_SD,
                shape=(level.n_factors, n_species),
            )
            pm.Deterministic(f"omega_{level.name}", pt.dot(lam.T, lam))
            mu = mu + pt.dot(eta, lam)[level.index]

        mu_obs = mu[rows, cols]
        y_obs = Y[rows, cols]
        if config.distribution == "gaussian":
            sigma = pm.HalfNormal("sigma", sigma=SIGMA_PRIOR_SD, shape=n_species)
            pm.Normal("y", mu=mu_obs, sigma=sigma[cols], observed=y_obs)
        elif config.distribution == "poisson":
            pm.Poisson("y", mu=pt.exp(mu_obs), observed=y_obs)
        else:
            pm.Bernoulli("y", p=pm.math.invprobit(mu_obs), observed=y_obs)

    return model


def _variable_names(config: ModelConfig) -> List[str]:
    names = ["beta"]
    for level in config.random_levels:
        names += [f"eta_{level.name}", f"lambda_{level.name}", f"omega_{level.name}"]
    if config.distribution == "gaussian":
        names.append("sigma")
    return names


def _max_rhat(draws: Mapping[str, np.ndarray], names: List[str]) -> float:
    if not names or draws[names[0]].shape[0] < 2:
        return float("nan")
    dataset = az.convert_to_dataset({name: draws[name] for name in names})
    rhat = az.rhat(dataset)
    values = np.concatenate([np.ravel(rhat[name].values) for name in names])
    values = values[np.isfinite(values)]
    return float(values.max()) if values.size else float("nan")


def fit(
    config: ModelConfig,
    options: Optional[SamplerOptions] = None,
    verbose: bool = False,
    **kwargs: Any,
) -> FittedModel:
    """Sample the posterior of ``config`` with PyMC's NUTS sampler.

    Parameters
    ----------
    config : ModelConfig
        Validated model specification.
    options : SamplerOptions, optional
        Sampler settings. If omitted, built from ``kwargs`` (``draws``,
        ``chains``, ``thin``, ``burn_in``, ``target_accept``, ``seed``,
        ``cores``).
    verbose : bool, optional
        If True, print model dimensions, sampler settings and timing, and
        show the sampler progress bar.

    Returns
    -------
    FittedModel

    Raises
    ------
    FitError
        If the model cannot be built or the sampler fails.

    Warns
    -----
    ConvergenceWarning
        If the largest R-hat of the identified parameters exceeds
        ``defaults.RHAT_THRESHOLD`` or divergent transitions occurred.
    """
    if options is None:
        options = SamplerOptions(**kwargs)
    elif kwargs:
        raise TypeError(f"Pass either options or keyword settings, not both: {sorted(kwargs)}")

    if verbose:
        print(config.describe())
        print(
            f"Sampling {options.chains} chain(s): {options.burn_in} burn-in + "
            f"{options.draws * options.thin} iterations (thin={options.thin})"
        )

    start = time.time()
    names = _variable_names(config)
    try:
        model = build_pymc_model(config)
        with model:
            idata = pm.sample(
                draws=options.draws * options.thin,
                tune=options.burn_in,
                chains=options.chains,
                cores=options.cores,
                target_accept=options.target_accept,
                random_seed=options.seed,
                progressbar=verbose,
                compute_convergence_checks=False,
                return_inferencedata=True,
            )
        draws = {name: idata.posterior[name].values[:, :: options.thin] for name in names}
        diverging = idata.sample_stats["diverging"].values
    except FitError:
        raise
    except Exception as exc:
        raise FitError(f"Sampling failed: {exc}") from exc

    if not all(np.isfinite(value).all() for value in draws.values()):
        raise FitError("Sampler returned non-finite draws")

    stats = {"divergences": int(diverging.sum()), "elapsed": time.time() - start}
    identified = [n for n in names if n == "beta" or n == "sigma" or n.startswith("omega_")]
    stats["max_rhat"] = _max_rhat(draws, identified)

    if verbose:
        print(f"Sampling finished in {stats['elapsed'] / 60:.1f} min")
        print(f"Max R-hat: {stats['max_rhat']:.3f}, divergences: {stats['divergences']}")

    if stats["max_rhat"] > RHAT_THRESHOLD:
        warnings.warn(
            f"Maximum R-hat is {stats['max_rhat']:.3f} (> {RHAT_THRESHOLD}); chains may not have mixed",
            ConvergenceWarning,
            stacklevel=2,
        )
    if stats["divergences"]:
        warnings.warn(
            f"{stats['divergences']} divergent transitions after burn-in",
            ConvergenceWarning,
            stacklevel=2,
        )

    return FittedModel(config, options, draws, stats)
