import numpy as np
import pytest
from scipy.special import polygamma

from scpseudo.dispersion_utils import (
    check_residual_df,
    estimate_disp,
    fit_f_dist,
    maximize_interpolant,
    squeeze_var,
    trigamma_inverse,
)
from scpseudo.errors import DispersionEstimationError


def _simulate_nb(n_genes=200, n_per=3, phi=0.1, seed=11):
    rng = np.random.default_rng(seed)
    mu = rng.uniform(50, 500, size=(n_genes, 1)) * np.ones((1, 2 * n_per))
    r = 1.0 / phi
    y = rng.negative_binomial(r, r / (r + mu)).astype(float)
    g = np.repeat([0.0, 1.0], n_per)
    X = np.column_stack([np.ones_like(g), g])
    return y, X


def test_trigamma_inverse_roundtrip():
    x = np.array([0.05, 0.5, 2.0, 10.0, 100.0])
    np.testing.assert_allclose(trigamma_inverse(polygamma(1, x)), x, rtol=1e-6)


def test_maximize_interpolant_finds_peak():
    grid = np.linspace(-2, 2, 9)
    y = -(grid[None, :] - np.array([[0.3], [-1.1]])) ** 2
    np.testing.assert_allclose(maximize_interpolant(grid, y), [0.3, -1.1], atol=0.05)


def test_check_residual_df_raises_without_replication():
    X = np.column_stack([np.ones(3), [0.0, 1.0, 1.0]])
    with pytest.raises(DispersionEstimationError) as exc:
        check_residual_df(X)
    assert exc.value.reason == "dispersion_estimation"
    assert check_residual_df(np.column_stack([np.ones(4), [0.0, 0.0, 1.0, 1.0]])) == 2


def test_estimate_disp_recovers_simulated_dispersion():
    y, X = _simulate_nb()
    est = estimate_disp(y, X, np.zeros(y.shape[1]))

    assert 0.06 < est.common < 0.16
    assert est.trended.shape == (200,)
    assert est.tagwise.shape == (200,)
    assert 0.05 < np.median(est.trended) < 0.2
    assert est.df_residual == 4


def test_estimate_disp_few_genes_uses_pooled_trend():
    y, X = _simulate_nb(n_genes=4)
    est = estimate_disp(y, X, np.zeros(y.shape[1]))
    assert np.allclose(est.trended, est.trended[0])


def test_squeeze_var_constant_variances_unchanged():
    var = np.full(50, 0.7)
    out = squeeze_var(var, 4.0)
    np.testing.assert_allclose(out["var_post"], 0.7)


def test_squeeze_var_posterior_between_raw_and_prior():
    rng = np.random.default_rng(5)
    var = rng.chisquare(4, size=300) / 4 * rng.lognormal(0, 0.5, size=300)
    out = squeeze_var(var, 4.0)
    prior = out["var_prior"]
    lo, hi = np.minimum(var, prior), np.maximum(var, prior)
    assert np.all(out["var_post"] >= lo - 1e-12)
    assert np.all(out["var_post"] <= hi + 1e-12)
    assert np.all(np.isfinite(out["df_prior"]))


def test_squeeze_var_robust_downweights_outlier():
    rng = np.random.default_rng(9)
    var = rng.chisquare(4, size=200) / 4
    var[17] = 100.0
    out = squeeze_var(var, 4.0, robust=True)
    df_prior = np.asarray(out["df_prior"])
    assert df_prior[17] < np.median(df_prior)


def test_fit_f_dist_with_covariate_returns_per_gene_scale():
    rng = np.random.default_rng(2)
    cov = np.linspace(0, 10, 100)
    var = np.exp(0.2 * cov) * rng.chisquare(6, size=100) / 6
    scale, df2 = fit_f_dist(var, 6.0, covariate=cov)
    assert scale.shape == (100,)
    assert scale[-1] > scale[0]
    assert df2 > 0


def test_squeeze_var_needs_two_values():
    with pytest.raises(ValueError):
        squeeze_var(np.array([1.0]), 3.0)


def test_fit_f_dist_without_usable_variances_is_a_comparison_failure():
    with pytest.raises(DispersionEstimationError) as exc:
        fit_f_dist(np.array([np.nan, np.inf, 1.0]), np.array([3.0, 3.0, 0.0]))
    assert exc.value.reason == "dispersion_estimation"
