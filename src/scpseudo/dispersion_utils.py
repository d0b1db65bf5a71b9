# src/scpseudo/dispersion_utils.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from scipy.interpolate import CubicSpline
from scipy.special import digamma, polygamma
from scipy.stats import f as f_dist
from scipy.stats import mstats, rankdata
from statsmodels.nonparametric.smoothers_lowess import lowess

from .errors import DispersionEstimationError
from .glm_utils import adjusted_profile_loglik
from .norm_utils import ave_log_cpm

LOGGER = logging.getLogger(__name__)

# Below this many genes the APL curves are pooled instead of smoothed by
# abundance; the trend then equals the common dispersion.
_MIN_GENES_FOR_TREND = 10


@dataclass
class DispersionEstimate:
    common: float
    trended: np.ndarray      # (G,)
    tagwise: np.ndarray      # (G,)
    ave_log_cpm: np.ndarray  # (G,)
    prior_df: float
    span: float
    df_residual: int
    grid: np.ndarray         # dispersion values of the APL grid


def residual_df(design: np.ndarray) -> int:
    design = np.asarray(design, dtype=np.float64)
    return int(design.shape[0] - np.linalg.matrix_rank(design))


def check_residual_df(design: np.ndarray, *, min_df: int = 2) -> int:
    df = residual_df(design)
    if df < min_df:
        raise DispersionEstimationError(
            f"only {df} residual degree(s) of freedom after fitting the design "
            f"({design.shape[0]} libraries, rank {design.shape[0] - df}); need >= {min_df}",
            df_residual=df,
        )
    return df


# -----------------------------------------------------------------------------
# Grid helpers
# -----------------------------------------------------------------------------
def maximize_interpolant(x: np.ndarray, y: np.ndarray, *, resolution: int = 20, chunk: int = 4096) -> np.ndarray:
    """
    Location of the maximum of a cubic spline through each row of y.

    x: (K,) increasing grid, y: (G x K). Returns (G,).
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.atleast_2d(np.asarray(y, dtype=np.float64))
    fine = np.linspace(x[0], x[-1], (x.size - 1) * int(resolution) + 1)

    out = np.empty(y.shape[0])
    for start in range(0, y.shape[0], chunk):
        block = y[start:start + chunk]
        cs = CubicSpline(x, block, axis=1)
        out[start:start + chunk] = fine[np.argmax(cs(fine), axis=1)]
    return out


def _default_span(n_genes: int) -> float:
    if n_genes <= 50:
        return 1.0
    return 0.25 + 0.75 * (50.0 / n_genes) ** 0.5


def smooth_by_abundance(apl: np.ndarray, abundance: np.ndarray, span: float) -> np.ndarray:
    """Smooth each APL grid column across genes as a function of abundance."""
    n_genes = apl.shape[0]
    if n_genes < _MIN_GENES_FOR_TREND:
        return np.broadcast_to(apl.mean(axis=0), apl.shape).copy()

    delta = 0.01 * float(np.ptp(abundance))
    out = np.empty_like(apl)
    for k in range(apl.shape[1]):
        out[:, k] = lowess(apl[:, k], abundance, frac=span, it=0, delta=delta, return_sorted=False)
    return out


# -----------------------------------------------------------------------------
# NB dispersion: common, trended, tagwise
# -----------------------------------------------------------------------------
def apl_grid(
    y: np.ndarray,
    design: np.ndarray,
    offset: np.ndarray,
    grid: np.ndarray,
) -> np.ndarray:
    """APL of every gene at every grid dispersion, (G x K)."""
    out = np.empty((y.shape[0], grid.size))
    start = None
    for k, phi in enumerate(grid):
        out[:, k], start = adjusted_profile_loglik(y, design, float(phi), offset, start=start)
    return out


def estimate_disp(
    y: np.ndarray,
    design: np.ndarray,
    offset: np.ndarray,
    *,
    prior_df: float = 10.0,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    span: Optional[float] = None,
) -> DispersionEstimate:
    """
    Common, trended and tagwise NB dispersions from the Cox-Reid APL.

    The APL of each gene is evaluated on a log2 grid of dispersions around 0.1.
    Summing over genes gives the common dispersion; smoothing the curves by
    average log-CPM gives the trend; the tagwise estimate maximises the gene's
    own APL plus the trend curve weighted by prior_df / df_residual, which
    shrinks gene-wise estimates toward the trend.

    y is (genes x libraries); offset is log effective library size.
    """
    y = np.asarray(y, dtype=np.float64)
    design = np.asarray(design, dtype=np.float64)
    offset = np.asarray(offset, dtype=np.float64)

    df_res = check_residual_df(design)
    n_genes = y.shape[0]
    if n_genes == 0:
        raise DispersionEstimationError("no genes supplied for dispersion estimation")

    eff_lib = np.exp(offset)
    abundance = ave_log_cpm(y, eff_lib)

    spline_pts = np.linspace(grid_range[0], grid_range[1], int(grid_length))
    grid = 0.1 * 2.0 ** spline_pts

    apl = apl_grid(y, design, offset, grid)

    common = float(0.1 * 2.0 ** maximize_interpolant(spline_pts, apl.sum(axis=0, keepdims=True))[0])

    span_used = _default_span(n_genes) if span is None else float(span)
    apl_trend = smooth_by_abundance(apl, abundance, span_used)
    trended = 0.1 * 2.0 ** maximize_interpolant(spline_pts, apl_trend)

    prior_n = float(prior_df) / df_res
    tagwise = 0.1 * 2.0 ** maximize_interpolant(spline_pts, apl + prior_n * apl_trend)

    LOGGER.info(
        "Dispersion: common=%.4g, trended range=[%.4g, %.4g], genes=%d, df_residual=%d, span=%.3f",
        common, float(trended.min()), float(trended.max()), n_genes, df_res, span_used,
    )

    return DispersionEstimate(
        common=common,
        trended=trended,
        tagwise=tagwise,
        ave_log_cpm=abundance,
        prior_df=float(prior_df),
        span=span_used,
        df_residual=df_res,
        grid=grid,
    )


# -----------------------------------------------------------------------------
# Empirical Bayes variance moderation (limma squeezeVar / fitFDist)
# -----------------------------------------------------------------------------
def trigamma_inverse(x: Union[float, np.ndarray]) -> np.ndarray:
    """Solve trigamma(y) = x by Newton iteration (Smyth 2004)."""
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.empty_like(x)

    big = x > 1e7
    small = x < 1e-6
    mid = ~(big | small)
    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]

    if np.any(mid):
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(50):
            tri = polygamma(1, ym)
            dif = tri * (1.0 - tri / xm) / polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        y[mid] = ym
    return y


def _trend_basis(covariate: np.ndarray, n: int) -> np.ndarray:
    n_basis = 1 + int(n >= 3) + int(n >= 6) + int(n >= 30)
    n_basis = min(n_basis, np.unique(covariate).size)
    c = covariate - covariate.mean()
    sd = c.std()
    if sd > 0:
        c = c / sd
    return np.vander(c, N=max(1, n_basis), increasing=True)


def fit_f_dist(
    x: np.ndarray,
    df1: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, float]:
    """
    Moment estimate of the scaled-F prior of the variances x with df1 df.

    Returns (scale, df2); scale is per gene when a covariate trend is fitted.
    """
    x = np.asarray(x, dtype=np.float64)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), x.shape)
    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15)
    n = int(ok.sum())
    if n == 0:
        raise DispersionEstimationError("no finite residual variances with positive df to fit the variance prior")

    xo = np.maximum(x[ok], 0.0)
    d1 = df1[ok]
    m = np.median(xo)
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif np.any(xo == 0):
        LOGGER.debug("Zero sample variances detected, offset away from zero")
    xo = np.maximum(xo, 1e-5 * m)

    z = np.log(xo)
    e = z - digamma(d1 / 2.0) + np.log(d1 / 2.0)

    if covariate is None:
        emean = np.full(x.shape, e.mean())
        n_coef = 1
    else:
        cov = np.asarray(covariate, dtype=np.float64)
        basis = _trend_basis(cov[ok], n)
        coef, *_ = np.linalg.lstsq(basis, e, rcond=None)
        n_coef = basis.shape[1]
        emean = np.full(x.shape, np.nan)
        emean[ok] = basis @ coef
        if np.any(~ok):
            # genes without usable variance get the nearest-abundance fitted value
            order = np.argsort(cov[ok])
            emean[~ok] = np.interp(cov[~ok], cov[ok][order], emean[ok][order])

    resid = e - emean[ok]
    evar = float(np.sum(resid ** 2) / max(n - n_coef, 1)) if n > n_coef else 0.0
    evar -= float(np.mean(polygamma(1, d1 / 2.0)))

    if evar > 0:
        df2 = float(2.0 * trigamma_inverse(evar)[0])
        scale = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        scale = np.exp(emean) if covariate is not None else np.full(x.shape, float(np.mean(xo)))
    return scale, df2


def _outlier_df_prior(
    x: np.ndarray,
    df1: np.ndarray,
    scale: np.ndarray,
    df2: float,
) -> np.ndarray:
    """Per-gene prior df reduced for genes whose variance is an upper outlier."""
    if not np.isfinite(df2):
        df2_eff = 1e6
    else:
        df2_eff = df2
    with np.errstate(divide="ignore", invalid="ignore"):
        tail_p = f_dist.sf(x / scale, df1, df2_eff)
    tail_p = np.where(np.isfinite(tail_p), tail_p, 1.0)
    r = rankdata(tail_p)
    empirical = (r - 0.5) / tail_p.size
    prob_not_outlier = np.minimum(tail_p / empirical, 1.0)
    return np.where(prob_not_outlier >= 1.0, df2, prob_not_outlier * df2_eff)


def squeeze_var(
    var: np.ndarray,
    df: Union[float, np.ndarray],
    covariate: Optional[np.ndarray] = None,
    robust: bool = False,
    winsor_tail_p: Sequence[float] = (0.05, 0.1),
) -> dict:
    """
    Empirical Bayes posterior variances.

    Returns dict with var_post, var_prior (per gene) and df_prior (per gene).
    With robust=True the prior is estimated on winsorized log-variances and
    genes with outlying large variance get a reduced prior df, so they are
    shrunk less toward the trend.
    """
    var = np.asarray(var, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), var.shape).astype(np.float64)

    if var.size < 2:
        raise ValueError("squeeze_var requires at least 2 variances")

    if robust and var.size >= 3:
        lo, hi = float(winsor_tail_p[0]), float(winsor_tail_p[1])
        pos = var > 0
        wins = var.copy()
        if np.any(pos):
            wins[pos] = np.exp(np.asarray(mstats.winsorize(np.log(var[pos]), limits=(lo, hi))))
        scale, df2 = fit_f_dist(wins, df, covariate)
        df_prior = _outlier_df_prior(np.maximum(var, 1e-300), df, scale, df2)
    else:
        scale, df2 = fit_f_dist(var, df, covariate)
        df_prior = np.full(var.shape, df2)

    with np.errstate(invalid="ignore"):
        var_post = np.where(
            np.isinf(df_prior),
            scale,
            (df_prior * scale + df * np.where(df > 0, var, 0.0)) / (df_prior + df),
        )
    # df == 0 and df_prior == 0 leaves nothing to estimate from: use the prior
    var_post = np.where(np.isfinite(var_post), var_post, scale)

    return {"var_post": var_post, "var_prior": scale, "df_prior": df_prior}
