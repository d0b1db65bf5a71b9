import numpy as np
import pytest

from scpseudo.glm_utils import adjusted_profile_loglik, fit_nb_glm, nb_unit_deviance


def _group_design(n_per=3):
    g = np.repeat([0.0, 1.0], n_per)
    return np.column_stack([np.ones_like(g), g])


def test_poisson_intercept_only_matches_closed_form():
    y = np.array([[10.0, 20.0, 30.0, 25.0]])
    lib = np.array([1000.0, 2000.0, 2500.0, 3000.0])
    X = np.ones((4, 1))
    fit = fit_nb_glm(y, X, 0.0, np.log(lib))
    assert fit.converged.all()
    assert np.isclose(fit.coefficients[0, 0], np.log(y.sum() / lib.sum()))


def test_group_means_recovered_with_equal_offsets():
    rng = np.random.default_rng(3)
    y = rng.poisson(50, size=(20, 6)).astype(float)
    X = _group_design()
    fit = fit_nb_glm(y, X, 0.05, np.zeros(6))

    expected = np.log(np.column_stack([y[:, :3].mean(axis=1), y[:, 3:].mean(axis=1)]))
    np.testing.assert_allclose(fit.coefficients[:, 0], expected[:, 0], rtol=1e-5)
    np.testing.assert_allclose(fit.coefficients[:, 0] + fit.coefficients[:, 1], expected[:, 1], rtol=1e-5)


def test_all_zero_group_gives_finite_coefficients():
    y = np.array([[0.0, 0.0, 0.0, 12.0, 9.0, 15.0]])
    fit = fit_nb_glm(y, _group_design(), 0.1, np.zeros(6))
    assert np.all(np.isfinite(fit.coefficients))
    assert fit.coefficients[0, 1] > 10
    assert np.all(fit.fitted_values[0, :3] < 1e-6)


def test_fit_is_deterministic():
    rng = np.random.default_rng(7)
    y = rng.poisson(30, size=(15, 6)).astype(float)
    off = np.log(rng.uniform(1e4, 2e4, size=6))
    a = fit_nb_glm(y, _group_design(), 0.2, off)
    b = fit_nb_glm(y, _group_design(), 0.2, off)
    assert np.array_equal(a.coefficients, b.coefficients)
    assert np.array_equal(a.deviance, b.deviance)


def test_unit_deviance_zero_at_fitted_mean():
    y = np.array([[0.0, 3.0, 10.0]])
    assert np.allclose(nb_unit_deviance(y, y.copy(), np.array([[0.2]])), 0.0)
    assert np.all(nb_unit_deviance(y, y + 1.0, np.array([[0.2]])) > 0)


def test_dispersion_shape_is_checked():
    y = np.ones((3, 4))
    with pytest.raises(ValueError):
        fit_nb_glm(y, np.ones((4, 1)), np.array([0.1, 0.1]))


def test_adjusted_profile_loglik_shapes():
    rng = np.random.default_rng(0)
    y = rng.poisson(20, size=(5, 6)).astype(float)
    apl, coef = adjusted_profile_loglik(y, _group_design(), 0.1, np.zeros(6))
    assert apl.shape == (5,)
    assert coef.shape == (5, 2)
    assert np.all(np.isfinite(apl))
