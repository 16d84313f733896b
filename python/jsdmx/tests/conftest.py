import numpy as np
import pandas as pd
import pytest

from jsdmx import FittedModel, RandomLevel, SamplerOptions, build_config


@pytest.fixture
def orchids():
    """Nine focal plants in three plots, three orchid species."""
    responses = pd.DataFrame(
        {
            "morio": [0.0, 2.0, 1.0, 4.0, 3.0, 0.0, 2.0, 5.0, 1.0],
            "sambucina": [1.0, 0.0, 3.0, 2.0, 2.0, 1.0, 0.0, 4.0, 1.0],
            "mascula": [2.0, 1.0, 0.0, 3.0, 5.0, 2.0, 1.0, 2.0, 0.0],
        }
    )
    covariates = pd.DataFrame(
        {
            "plot": [1, 1, 1, 2, 2, 2, 3, 3, 3],
            "plant_height": [12.0, 15.5, 9.8, 20.1, 18.3, 11.2, 14.7, 16.9, 13.3],
            "flowers_open": [3.0, 5.0, 2.0, 8.0, 6.0, 4.0, 5.0, 7.0, 3.0],
        }
    )
    return responses, covariates


@pytest.fixture
def orchid_config(orchids):
    responses, covariates = orchids
    return build_config(
        responses,
        covariates,
        ["plant_height", "flowers_open"],
        [RandomLevel.from_column(covariates, "plot")],
    )


def make_draws(config, n_chains=2, n_draws=50, seed=0):
    """Random posterior draws with the shapes the sampler adapter produces."""
    rng = np.random.default_rng(seed)
    k = len(config.column_names)
    ns = config.n_species
    draws = {"beta": rng.normal(size=(n_chains, n_draws, k, ns))}
    for level in config.random_levels:
        lam = rng.normal(size=(n_chains, n_draws, level.n_factors, ns))
        draws[f"eta_{level.name}"] = rng.normal(size=(n_chains, n_draws, level.n_levels, level.n_factors))
        draws[f"lambda_{level.name}"] = lam
        draws[f"omega_{level.name}"] = np.einsum("cdfi,cdfj->cdij", lam, lam)
    if config.distribution == "gaussian":
        draws["sigma"] = np.abs(rng.normal(size=(n_chains, n_draws, ns))) + 0.1
    return draws


@pytest.fixture
def orchid_fit(orchid_config):
    options = SamplerOptions(draws=50, chains=2, burn_in=0, seed=1)
    return FittedModel(orchid_config, options, make_draws(orchid_config), {"divergences": 0})
