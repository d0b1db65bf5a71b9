# src/scpseudo/glm_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy.special import gammaln, xlogy

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Negative-binomial GLM (log link), vectorised over genes.
# -----------------------------------------------------------------------------
# Shapes used throughout:
#   y       (G x n)  counts, genes in rows, pseudobulk libraries in columns
#   design  (n x p)
#   offset  (n,) or (G x n), natural-log effective library sizes
#   phi     scalar, (G,) or (G x 1) dispersion
# -----------------------------------------------------------------------------

_MIN_MU = 1e-12
_MIN_WEIGHT = 1e-10
_MAX_ETA = 50.0


@dataclass
class GLMFit:
    coefficients: np.ndarray   # (G x p), natural-log scale
    fitted_values: np.ndarray  # (G x n)
    deviance: np.ndarray       # (G,)
    iterations: np.ndarray     # (G,)
    converged: np.ndarray      # (G,) bool


def _as_dispersion(dispersion: Union[float, np.ndarray], n_genes: int) -> np.ndarray:
    phi = np.asarray(dispersion, dtype=np.float64)
    if phi.ndim == 0:
        phi = np.full(n_genes, float(phi))
    phi = phi.reshape(-1)
    if phi.shape[0] != n_genes:
        raise ValueError(f"dispersion has length {phi.shape[0]}, expected {n_genes}")
    if np.any(phi < 0) or not np.all(np.isfinite(phi)):
        raise ValueError("dispersion must be finite and non-negative")
    return phi[:, None]


def _as_offset(offset: Optional[np.ndarray], shape: tuple) -> np.ndarray:
    if offset is None:
        return np.zeros(shape)
    off = np.asarray(offset, dtype=np.float64)
    if off.ndim == 1:
        if off.shape[0] != shape[1]:
            raise ValueError("offset length must equal the number of libraries")
        off = np.broadcast_to(off[None, :], shape)
    if off.shape != shape:
        raise ValueError(f"offset shape {off.shape} does not match counts {shape}")
    return off


def nb_unit_deviance(y: np.ndarray, mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
    """Unit deviance of the NB distribution; Poisson limit where phi ~ 0."""
    mu = np.maximum(mu, _MIN_MU)
    phi = np.broadcast_to(phi, y.shape)
    pois = 2.0 * (xlogy(y, y / mu) - (y - mu))

    small = phi < 1e-8
    if np.all(small):
        return np.maximum(pois, 0.0)

    phi_safe = np.where(small, 1.0, phi)
    nb = 2.0 * (
        xlogy(y, y / mu)
        - (y + 1.0 / phi_safe) * (np.log1p(phi_safe * y) - np.log1p(phi_safe * mu))
    )
    return np.maximum(np.where(small, pois, nb), 0.0)


def nb_loglik(y: np.ndarray, mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
    """Elementwise NB log-likelihood, mean mu and dispersion phi (variance mu + phi*mu^2)."""
    mu = np.maximum(mu, _MIN_MU)
    phi = np.broadcast_to(phi, y.shape)
    r = 1.0 / np.maximum(phi, 1e-12)
    return (
        gammaln(y + r)
        - gammaln(r)
        - gammaln(y + 1.0)
        - r * np.log1p(mu / r)
        + xlogy(y, mu / (r + mu))
    )


def _batched_solve(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(a, b[..., None])[..., 0]
    except np.linalg.LinAlgError:
        return np.einsum("gpq,gq->gp", np.linalg.pinv(a), b)


def _working_weights(mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
    return np.maximum(mu / (1.0 + phi * mu), _MIN_WEIGHT)


def _linear_predictor(beta: np.ndarray, design: np.ndarray, offset: np.ndarray) -> np.ndarray:
    return np.clip(offset + beta @ design.T, -_MAX_ETA, _MAX_ETA)


def _start_coefficients(y: np.ndarray, design: np.ndarray, offset: np.ndarray) -> np.ndarray:
    z = np.log(y + 0.5) - offset
    return z @ np.linalg.pinv(design).T


def fit_nb_glm(
    y: np.ndarray,
    design: np.ndarray,
    dispersion: Union[float, np.ndarray],
    offset: Optional[np.ndarray] = None,
    *,
    start: Optional[np.ndarray] = None,
    maxit: int = 50,
    tol: float = 1e-8,
    max_halving: int = 20,
) -> GLMFit:
    """
    Fit a log-link NB GLM to every gene by IRLS with step halving.

    Deterministic: no random starts, no gene-order dependence. Genes whose
    fitted mean for some library tends to zero (all-zero groups) are handled
    by clipping the linear predictor; their coefficients are large negative
    rather than -inf.
    """
    y = np.asarray(y, dtype=np.float64)
    design = np.asarray(design, dtype=np.float64)
    if y.ndim != 2:
        raise ValueError("counts must be 2-D (genes x libraries)")
    n_genes, n_libs = y.shape
    if design.shape[0] != n_libs:
        raise ValueError(f"design has {design.shape[0]} rows, counts have {n_libs} libraries")

    phi = _as_dispersion(dispersion, n_genes)
    off = _as_offset(offset, y.shape)

    beta = _start_coefficients(y, design, off) if start is None else np.array(start, dtype=np.float64)
    eta = _linear_predictor(beta, design, off)
    mu = np.exp(eta)
    dev = nb_unit_deviance(y, mu, phi).sum(axis=1)

    iterations = np.zeros(n_genes, dtype=np.int64)
    converged = np.zeros(n_genes, dtype=bool)
    active = np.arange(n_genes)

    for _ in range(int(maxit)):
        if active.size == 0:
            break

        ya, pa, oa = y[active], phi[active], off[active]
        ba, ea, ma, da = beta[active], eta[active], mu[active], dev[active]

        w = _working_weights(ma, pa)
        z = (ea - oa) + (ya - ma) / np.maximum(ma, _MIN_MU)
        xtwx = np.einsum("np,gn,nq->gpq", design, w, design)
        xtwz = np.einsum("np,gn->gp", design, w * z)
        b_new = _batched_solve(xtwx, xtwz)

        e_new = _linear_predictor(b_new, design, oa)
        m_new = np.exp(e_new)
        d_new = nb_unit_deviance(ya, m_new, pa).sum(axis=1)

        # step halving on genes whose deviance went up
        for _h in range(int(max_halving)):
            worse = d_new > da * (1.0 + 1e-10) + 1e-12
            if not np.any(worse):
                break
            b_new[worse] = 0.5 * (ba[worse] + b_new[worse])
            e_new[worse] = _linear_predictor(b_new[worse], design, oa[worse])
            m_new[worse] = np.exp(e_new[worse])
            d_new[worse] = nb_unit_deviance(ya[worse], m_new[worse], pa[worse]).sum(axis=1)

        worse = d_new > da * (1.0 + 1e-10) + 1e-12
        b_new[worse], e_new[worse], m_new[worse], d_new[worse] = ba[worse], ea[worse], ma[worse], da[worse]

        done = (np.abs(da - d_new) <= tol * (np.abs(d_new) + 0.1)) | worse

        beta[active], eta[active], mu[active], dev[active] = b_new, e_new, m_new, d_new
        iterations[active] += 1
        converged[active[done]] = True
        active = active[~done]

    if active.size:
        LOGGER.debug("NB GLM: %d gene(s) did not converge in %d iterations", active.size, maxit)

    return GLMFit(
        coefficients=beta,
        fitted_values=mu,
        deviance=dev,
        iterations=iterations,
        converged=converged,
    )


def cox_reid_adjustment(mu: np.ndarray, design: np.ndarray, phi: np.ndarray) -> np.ndarray:
    """-0.5 * log det(X' W X) per gene, W the NB working weights."""
    w = _working_weights(mu, phi)
    xtwx = np.einsum("np,gn,nq->gpq", design, w, design)
    sign, logdet = np.linalg.slogdet(xtwx)
    logdet = np.where(sign > 0, logdet, np.log(_MIN_WEIGHT) * design.shape[1])
    return -0.5 * logdet


def adjusted_profile_loglik(
    y: np.ndarray,
    design: np.ndarray,
    dispersion: Union[float, np.ndarray],
    offset: Optional[np.ndarray] = None,
    *,
    start: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Cox-Reid adjusted profile log-likelihood of each gene at the given dispersion.

    Returns (apl, coefficients) so that callers sweeping a dispersion grid can
    warm-start the next fit.
    """
    y = np.asarray(y, dtype=np.float64)
    phi = _as_dispersion(dispersion, y.shape[0])
    fit = fit_nb_glm(y, design, phi, offset, start=start)
    ll = nb_loglik(y, fit.fitted_values, phi).sum(axis=1)
    return ll + cox_reid_adjustment(fit.fitted_values, design, phi), fit.coefficients
