import warnings

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from jsdmx import (
    FitSummary,
    FittedModel,
    RandomLevel,
    SamplerOptions,
    SpecError,
    association_matrix,
    build_config,
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
from jsdmx.diagnostics import parameter_labels


def _constant_fit(config, n_draws=1, **values):
    """Fit whose every draw equals the given arrays."""
    draws = {name: np.broadcast_to(np.asarray(v, dtype=float), (1, n_draws) + np.shape(v)) for name, v in values.items()}
    return FittedModel(config, SamplerOptions(draws=n_draws, chains=1), draws)


def test_parameter_labels(orchid_fit):
    assert parameter_labels(orchid_fit, "beta")[:2] == ["beta[(Intercept), morio]", "beta[(Intercept), sambucina]"]
    assert parameter_labels(orchid_fit, "sigma") == ["sigma[morio]", "sigma[sambucina]", "sigma[mascula]"]
    assert parameter_labels(orchid_fit, "omega_plot")[1] == "omega_plot[morio, sambucina]"
    assert parameter_labels(orchid_fit, "lambda_plot")[3] == "lambda_plot[2, morio]"
    assert parameter_labels(orchid_fit, "eta_plot")[:3] == ["eta_plot[1, 1]", "eta_plot[1, 2]", "eta_plot[2, 1]"]


def test_ess_and_rhat_per_parameter(orchid_fit):
    ess = effective_sample_size(orchid_fit)
    rhat = potential_scale_reduction(orchid_fit, "residual")

    assert ess.name == "ess"
    assert len(ess) == 9
    assert "beta[flowers_open, mascula]" in ess.index
    assert (ess > 0).all()
    assert rhat.name == "rhat"
    assert len(rhat) == 9 + 3
    assert "sigma[mascula]" in rhat.index


def test_convergence_summary(orchid_fit):
    table = convergence_summary(orchid_fit)

    assert list(table.columns) == ["ess", "rhat", "group"]
    assert set(table["group"]) == {"fixed", "residual"}
    assert len(table) == 9 + 9 + 3
    assert table.attrs["divergences"] == 0
    assert table.attrs["samples"] == 100


def test_variance_partition_sums_to_one(orchid_fit):
    vp = variance_partition(
        orchid_fit, {"intercept": ["(Intercept)"], "traits": ["plant_height", "flowers_open"]}
    )

    assert list(vp.index) == ["intercept", "traits", "Random: plot"]
    assert list(vp.columns) == ["morio", "sambucina", "mascula"]
    np.testing.assert_allclose(vp.sum(axis=0).to_numpy(), 1.0)
    assert (vp.loc["intercept"] == 0).all()
    assert ((vp >= 0) & (vp <= 1)).all().all()


def test_variance_partition_hand_computed(orchids):
    responses, covariates = orchids
    config = build_config(
        responses,
        covariates,
        ["plant_height"],
        [RandomLevel.from_column(covariates, "plot", n_factors=1)],
    )
    lam = np.array([[1.0, 0.0, 0.0]])
    fitted = _constant_fit(
        config,
        beta=[[0.0, 0.0, 0.0], [1.0, 2.0, 0.0]],
        eta_plot=np.zeros((3, 1)),
        lambda_plot=lam,
        omega_plot=lam.T @ lam,
        sigma=np.ones(3),
    )
    v = covariates["plant_height"].var(ddof=1)

    vp = variance_partition(fitted, {"mean": "(Intercept)", "height": ["plant_height"]})

    assert vp.loc["height", "morio"] == pytest.approx(v / (v + 1))
    assert vp.loc["Random: plot", "morio"] == pytest.approx(1 / (v + 1))
    assert vp.loc["height", "sambucina"] == pytest.approx(1.0)
    assert vp.loc["Random: plot", "sambucina"] == 0.0
    # Nothing explained for mascula in any draw
    assert vp["mascula"].isna().all()


def test_variance_partition_without_random_levels(orchids):
    responses, covariates = orchids
    config = build_config(responses, covariates, ["plant_height", "flowers_open"])
    fitted = _constant_fit(config, beta=np.ones((3, 3)), sigma=np.ones(3))

    vp = variance_partition(
        fitted, {"(Intercept)": ["(Intercept)"], "height": ["plant_height"], "flowers": ["flowers_open"]}
    )

    assert list(vp.index) == ["(Intercept)", "height", "flowers"]
    np.testing.assert_allclose(vp.sum(axis=0).to_numpy(), 1.0)
    var_h = covariates["plant_height"].var(ddof=1)
    var_f = covariates["flowers_open"].var(ddof=1)
    assert vp.loc["height", "morio"] == pytest.approx(var_h / (var_h + var_f))


def test_variance_partition_single_unit(orchids):
    responses, covariates = orchids
    config = build_config(
        responses.iloc[:1],
        covariates.iloc[:1],
        ["plant_height"],
        [RandomLevel.from_column(covariates.iloc[:1], "plot", n_factors=1)],
    )
    lam = np.array([[1.0, 0.5, 2.0]])
    fitted = _constant_fit(
        config,
        beta=np.ones((2, 3)),
        eta_plot=np.zeros((1, 1)),
        lambda_plot=lam,
        omega_plot=lam.T @ lam,
        sigma=np.ones(3),
    )

    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        vp = variance_partition(fitted, {"traits": ["(Intercept)", "plant_height"]})

    np.testing.assert_array_equal(vp.loc["traits"].to_numpy(), 0.0)
    np.testing.assert_array_equal(vp.loc["Random: plot"].to_numpy(), 1.0)


@pytest.mark.parametrize(
    "groups, message",
    [
        ({}, "at least one"),
        ({"a": ["(Intercept)", "plant_height", "nectar"]}, "unknown"),
        ({"a": ["(Intercept)", "plant_height"], "b": ["plant_height", "flowers_open"]}, "appears in groups"),
        ({"a": ["(Intercept)", "plant_height"]}, "not assigned"),
    ],
)
def test_variance_partition_group_errors(orchid_fit, groups, message):
    with pytest.raises(SpecError, match=message):
        variance_partition(orchid_fit, groups)


def test_filter_by_support_literal_thresholds():
    mean = np.array([[0.42, -0.3], [0.1, 0.25]])
    positive = np.array([[0.70, 0.10], [0.55, 0.66]])
    negative = np.array([[0.30, 0.90], [0.40, 0.34]])

    filtered = filter_by_support(mean, positive, negative, 0.65)

    np.testing.assert_array_equal(filtered, [[0.42, -0.3], [0.0, 0.25]])


def test_filter_by_support_keeps_frame_labels():
    labels = ["morio", "mascula"]
    mean = pd.DataFrame([[1.0, 0.2], [0.2, 1.0]], index=labels, columns=labels)
    support = pd.DataFrame([[1.0, 0.6], [0.6, 1.0]], index=labels, columns=labels)

    filtered = filter_by_support(mean, support, 1 - support, support_level=0.5)

    assert list(filtered.index) == labels
    assert filtered.loc["morio", "mascula"] == 0.2
    assert filter_by_support(mean, support, 1 - support, 0.65).loc["morio", "mascula"] == 0.0


@pytest.mark.parametrize("level", [0.3, 0.49, 1.0, 1.2])
def test_filter_by_support_rejects_invalid_level(level):
    with pytest.raises(ValueError, match="support_level"):
        filter_by_support(np.zeros(2), np.zeros(2), np.zeros(2), level)


def test_association_matrix(orchid_config):
    signs = np.array([1.0] * 7 + [-1.0] * 3)
    omega = np.tile(np.eye(3), (10, 1, 1))
    omega[:, 0, 1] = omega[:, 1, 0] = 0.5 * signs
    omega[:, 0, 2] = omega[:, 2, 0] = 0.5 * np.array([1.0, -1.0] * 5)
    draws = {
        "beta": np.zeros((1, 10, 3, 3)),
        "eta_plot": np.zeros((1, 10, 3, 2)),
        "lambda_plot": np.zeros((1, 10, 2, 3)),
        "omega_plot": omega[None],
        "sigma": np.ones((1, 10, 3)),
    }
    fitted = FittedModel(orchid_config, SamplerOptions(draws=10, chains=1), draws)

    assoc = association_matrix(fitted, "plot", support_level=0.65)

    assert assoc.level == "plot"
    assert assoc.support.loc["morio", "sambucina"] == pytest.approx(0.7)
    assert assoc.support_negative.loc["morio", "sambucina"] == pytest.approx(0.3)
    assert assoc.mean.loc["morio", "sambucina"] == pytest.approx(0.2)
    assert assoc.filtered.loc["morio", "sambucina"] == pytest.approx(0.2)
    assert assoc.filtered.loc["morio", "mascula"] == 0.0
    assert assoc.filtered.loc["sambucina", "mascula"] == 0.0
    np.testing.assert_allclose(np.diag(assoc.filtered.to_numpy()), 1.0)

    stricter = association_matrix(fitted, "plot", support_level=0.75)
    assert stricter.filtered.loc["morio", "sambucina"] == 0.0


def test_association_matrix_is_a_correlation(orchid_fit):
    assoc = association_matrix(orchid_fit, "plot")

    values = assoc.mean.to_numpy()
    np.testing.assert_allclose(np.diag(values), 1.0)
    np.testing.assert_allclose(values, values.T)
    assert (np.abs(values) <= 1 + 1e-12).all()


def test_association_matrix_unknown_level(orchid_fit):
    with pytest.raises(ValueError, match="site"):
        association_matrix(orchid_fit, "site")


def test_explanatory_r2_gaussian():
    x = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
    responses = pd.DataFrame({"up": 1 + 2 * x, "down": 1 + 2 * x, "flat": np.full(5, 3.0)})
    covariates = pd.DataFrame({"x": x})
    config = build_config(responses, covariates, ["x"])

    fitted = _constant_fit(config, beta=[[1.0, 1.0, 3.0], [2.0, -2.0, 0.0]], sigma=np.ones(3))
    r2 = explanatory_r2(fitted)

    assert r2.name == "R2"
    assert r2["up"] == pytest.approx(1.0)
    assert r2["down"] == pytest.approx(-1.0)
    assert np.isnan(r2["flat"])
    assert explanatory_r2(fitted, average=True) == pytest.approx(0.0)


def test_explanatory_r2_ignores_missing_responses():
    x = np.array([0.0, 1.0, 2.0, 3.0])
    responses = pd.DataFrame({"sp": [0.0, 1.0, 100.0, 3.0]})
    responses.loc[2, "sp"] = np.nan
    config = build_config(responses, pd.DataFrame({"x": x}), ["x"])

    fitted = _constant_fit(config, beta=[[0.0], [1.0]], sigma=np.ones(1))

    assert explanatory_r2(fitted)["sp"] == pytest.approx(1.0)


def test_explanatory_r2_probit_is_tjur():
    present = np.array([0.0, 1.0, 1.0, 0.0, 1.0, 0.0])
    config = build_config(
        pd.DataFrame({"morio": present}), pd.DataFrame({"x": present}), ["x"], distribution="probit"
    )

    fitted = _constant_fit(config, beta=[[-1.0], [2.0]])

    assert explanatory_r2(fitted)["morio"] == pytest.approx(norm.cdf(1) - norm.cdf(-1))


def test_explanatory_r2_poisson_uses_ranks():
    x = np.array([0.0, 1.0, 2.0, 3.0])
    config = build_config(
        pd.DataFrame({"morio": [0.0, 1.0, 5.0, 30.0]}),
        pd.DataFrame({"x": x}),
        ["x"],
        distribution="poisson",
    )

    fitted = _constant_fit(config, beta=[[0.0], [0.3]])

    assert explanatory_r2(fitted)["morio"] == pytest.approx(1.0)


def test_parameter_table(orchid_fit):
    table = parameter_table(orchid_fit)

    assert list(table.columns) == ["Estimate", "Std.Dev", "2.5%", "97.5%", "P(>0)", "P(<0)"]
    assert len(table) == 9
    beta = orchid_fit.stacked("beta")
    assert table.loc["beta[plant_height, sambucina]", "Estimate"] == pytest.approx(beta[:, 1, 1].mean())
    np.testing.assert_allclose((table["P(>0)"] + table["P(<0)"]).to_numpy(), 1.0)
    assert (table["2.5%"] < table["97.5%"]).all()
    assert len(parameter_table(orchid_fit, "residual")) == 12


def test_selection_gradients(orchid_fit):
    gradients = selection_gradients(orchid_fit, ["plant_height", "flowers_open"])

    assert len(gradients) == 6
    assert list(gradients.columns[:3]) == ["Species", "Trait", "Estimate"]
    row = gradients[(gradients["Species"] == "mascula") & (gradients["Trait"] == "flowers_open")].iloc[0]
    assert row["Estimate"] == pytest.approx(orchid_fit.stacked("beta")[:, 2, 2].mean())

    with pytest.raises(ValueError, match="nectar"):
        selection_gradients(orchid_fit, ["nectar"])


def test_summary_structure(orchid_fit):
    result = orchid_fit.summary()

    assert isinstance(result, FitSummary)
    assert isinstance(summary(orchid_fit), FitSummary)
    assert isinstance(result.parameters, pd.DataFrame)
    assert "beta[flowers_open, morio]" in result.parameters.index
    assert "rhat" in result.convergence.columns


def test_summary_repr(orchid_fit):
    text = repr(orchid_fit.summary())

    assert "Joint model (gaussian): 9 units x 3 species" in text
    assert "Random level 'plot': 3 levels, 2 factors" in text
    assert "Chains: 2, draws per chain: 50" in text
    assert "Divergences: 0" in text
    assert "Max R-hat" in text
    assert "beta[plant_height, morio]" in text
