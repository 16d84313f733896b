from typing import Any, Optional

import arviz as az
import numpy as np
import pandas as pd

from .defaults import SUPPORT_LEVEL
from .diagnostics import filter_by_support
from .fit import FittedModel


def _pyplot() -> Any:
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib is required for plotting. Install it with `pip install matplotlib`.")
    return plt


def plot_trace(
    fit: FittedModel,
    group: str = "fixed",
    compact: bool = True,
    filename: Optional[str] = None,
) -> Any:
    """
    Trace and marginal density of every variable in a parameter group.

    Args:
        fit: The fitted model object.
        group: Parameter group (``"fixed"``, ``"random"``, ``"residual"``) or variable name.
        compact: Overlay all scalars of a variable in one panel pair.
        filename: Optional path to save the figure.

    Returns:
        A matplotlib Figure.
    """
    draws = fit.posterior(group)
    if not draws:
        raise ValueError(f"No parameters to plot in group '{group}'")

    axes = az.plot_trace(az.convert_to_dataset(dict(draws)), compact=compact)
    fig = np.ravel(axes)[0].figure

    if filename:
        fig.savefig(filename, bbox_inches="tight")

    return fig


def plot_variance_partition(
    partition: pd.DataFrame, ax: Optional[Any] = None, filename: Optional[str] = None
) -> Any:
    """
    Stacked bars of the explained-variance shares of every species.

    Args:
        partition: Output of :func:`jsdmx.diagnostics.variance_partition`.
        ax: Optional matplotlib axes object.
        filename: Optional path to save the figure.

    Returns:
        The matplotlib axes object.
    """
    plt = _pyplot()

    if ax is None:
        fig, ax = plt.subplots(figsize=(max(6, 0.6 * partition.shape[1]), 5))

    x = np.arange(partition.shape[1])
    bottom = np.zeros(partition.shape[1])
    for label, row in partition.iterrows():
        values = np.nan_to_num(row.to_numpy(dtype=float))
        ax.bar(x, values, bottom=bottom, label=f"{label} (mean = {100 * np.nanmean(row):.1f}%)")
        bottom += values

    ax.set_xticks(x)
    ax.set_xticklabels(partition.columns, rotation=90)
    ax.set_ylim(0, 1)
    ax.set_ylabel("Variance proportion")
    ax.set_title("Variance partitioning")
    ax.legend(loc="upper left", bbox_to_anchor=(1.0, 1.0), fontsize=8)

    if filename:
        ax.figure.savefig(filename, bbox_inches="tight")

    return ax


def plot_association(
    matrix: pd.DataFrame,
    ax: Optional[Any] = None,
    title: Optional[str] = None,
    filename: Optional[str] = None,
) -> Any:
    """
    Heatmap of a species-by-species correlation matrix on a fixed [-1, 1] scale.

    Args:
        matrix: Square DataFrame, e.g. ``association_matrix(...).filtered``.
        ax: Optional matplotlib axes object.
        title: Optional plot title.
        filename: Optional path to save the figure.

    Returns:
        The matplotlib axes object.
    """
    plt = _pyplot()

    if matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"Association matrix must be square, got {matrix.shape}")

    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 5))

    image = ax.imshow(matrix.to_numpy(dtype=float), cmap="RdBu_r", vmin=-1, vmax=1)
    ticks = np.arange(matrix.shape[0])
    ax.set_xticks(ticks)
    ax.set_xticklabels(matrix.columns, rotation=90)
    ax.set_yticks(ticks)
    ax.set_yticklabels(matrix.index)
    ax.set_title(title or "Residual associations")
    ax.figure.colorbar(image, ax=ax)

    if filename:
        ax.figure.savefig(filename, bbox_inches="tight")

    return ax


def plot_beta_support(
    fit: FittedModel,
    support_level: float = SUPPORT_LEVEL,
    ax: Optional[Any] = None,
    filename: Optional[str] = None,
) -> Any:
    """
    Heatmap of posterior-mean fixed effects, with effects lacking sign support set to zero.

    Args:
        fit: The fitted model object.
        support_level: Posterior support required for an effect to be shown.
        ax: Optional matplotlib axes object.
        filename: Optional path to save the figure.

    Returns:
        The matplotlib axes object.
    """
    plt = _pyplot()

    beta = fit.stacked("beta")
    columns = fit.config.column_names
    species = fit.config.species

    def frame(values: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(values, index=columns, columns=species)

    shown = filter_by_support(
        frame(beta.mean(axis=0)),
        frame((beta > 0).mean(axis=0)),
        frame((beta < 0).mean(axis=0)),
        support_level,
    )

    if ax is None:
        fig, ax = plt.subplots(figsize=(max(5, 0.6 * len(species)), max(3, 0.5 * len(columns))))

    limit = float(np.abs(shown.to_numpy()).max()) or 1.0
    image = ax.imshow(shown.to_numpy(), cmap="RdBu_r", vmin=-limit, vmax=limit, aspect="auto")
    ax.set_xticks(np.arange(len(species)))
    ax.set_xticklabels(species, rotation=90)
    ax.set_yticks(np.arange(len(columns)))
    ax.set_yticklabels(columns)
    ax.set_title(f"Fixed effects with support > {support_level:.2f}")
    ax.figure.colorbar(image, ax=ax)

    if filename:
        ax.figure.savefig(filename, bbox_inches="tight")

    return ax
