"""Exception and warning classes raised across jsdmx.

Errors raised while loading, transforming or specifying a model indicate that
the pipeline was handed invalid inputs and are never recovered internally.
"""

from __future__ import annotations

__all__ = [
    "JsdmxError",
    "LoadError",
    "DomainError",
    "SpecError",
    "FitError",
    "ConvergenceWarning",
]


class JsdmxError(Exception):
    """Base class for all jsdmx errors."""


class LoadError(JsdmxError, IOError):
    """Raised when an input table is missing, malformed or lacks a key column."""


class DomainError(JsdmxError, ValueError):
    """Raised when a transform is applied outside its valid domain."""


class SpecError(JsdmxError, ValueError):
    """Raised when responses, covariates and random levels are inconsistent."""


class FitError(JsdmxError, RuntimeError):
    """Raised when the sampler could not produce a usable posterior."""


class ConvergenceWarning(UserWarning):
    """Issued when sampling finished but the chains show poor mixing."""
