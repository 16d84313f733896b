"""Data preparation, model specification and reporting for joint species distribution models."""

from __future__ import annotations

from .exceptions import (
    ConvergenceWarning,
    DomainError,
    FitError,
    JsdmxError,
    LoadError,
    SpecError,
)
from .loader import drop_incomplete, load_table, pivot_responses
from .transforms import expm1, log1p, relativize, species_covariates, standardize, zero_out_self
from .model import Model, ModelConfig, RandomLevel, build_config
from .fit import FittedModel, SamplerOptions, build_pymc_model, fit, load_fit
from .diagnostics import (
    Association,
    FitSummary,
    association_matrix,
    convergence_summary,
    effective_sample_size,
    explanatory_r2,
    filter_by_support,
    parameter_table,
    potential_scale_reduction,
    selection_gradients,
    summary,
    variance_partition,
)

__all__ = [
    "__version__",
    "JsdmxError",
    "LoadError",
    "DomainError",
    "SpecError",
    "FitError",
    "ConvergenceWarning",
    "load_table",
    "pivot_responses",
    "drop_incomplete",
    "log1p",
    "expm1",
    "relativize",
    "standardize",
    "zero_out_self",
    "species_covariates",
    "RandomLevel",
    "ModelConfig",
    "Model",
    "build_config",
    "SamplerOptions",
    "FittedModel",
    "build_pymc_model",
    "fit",
    "load_fit",
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

__version__ = "0.1.0"
