# src/scpseudo/de_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.linalg import null_space
from scipy.stats import f as f_dist
from statsmodels.stats.multitest import multipletests

from .design_utils import ContrastLike, DesignMatrix, contrast_matrix
from .dispersion_utils import DispersionEstimate, estimate_disp, squeeze_var
from .errors import NoGenesLeftError
from .glm_utils import fit_nb_glm, nb_unit_deviance
from .norm_utils import effective_lib_sizes

LOGGER = logging.getLogger(__name__)

DE_COLUMNS = ["gene", "logFC", "logCPM", "F", "PValue", "FDR"]

DispersionChoice = Union[Literal["trended", "tagwise", "common"], float]


# -----------------------------------------------------------------------------
# Quasi-likelihood NB fit (one design, one count matrix)
# -----------------------------------------------------------------------------
@dataclass
class QLFit:
    """
    Per-gene NB GLM fit with quasi-likelihood dispersions.

    Created once per (design, count matrix); every contrast of that
    comparison is tested against the same object. Arrays are (genes, ...)
    in the order of `genes`.
    """
    genes: pd.Index
    libraries: pd.Index
    design: DesignMatrix
    counts: np.ndarray                 # (G x n)
    offset: np.ndarray                 # (n,) log effective library size
    norm_factors: pd.Series
    dispersion: np.ndarray             # NB dispersion used in the fit
    dispersion_estimate: DispersionEstimate
    coefficients: np.ndarray           # (G x p) natural log, prior-count shrunk
    unshrunk_coefficients: np.ndarray  # (G x p)
    fitted_values: np.ndarray          # (G x n)
    deviance: np.ndarray               # (G,)
    df_residual: np.ndarray            # (G,)
    s2: np.ndarray                     # raw QL dispersion
    s2_prior: np.ndarray
    df_prior: np.ndarray
    s2_post: np.ndarray
    robust: bool
    prior_count: float

    @property
    def ave_log_cpm(self) -> np.ndarray:
        return self.dispersion_estimate.ave_log_cpm

    @property
    def df_residual_total(self) -> float:
        return float(np.sum(self.df_residual))


def _residual_df_zero_adjusted(y: np.ndarray, mu: np.ndarray, design: np.ndarray) -> np.ndarray:
    """
    Residual df per gene, discounting libraries with zero count and zero fit.

    A group whose counts are all zero is fitted exactly and contributes no
    information about the dispersion.
    """
    n, p_rank = design.shape[0], np.linalg.matrix_rank(design)
    zero_fit = (y < 1e-4) & (mu < 1e-4)
    df = np.full(y.shape[0], float(n - p_rank))

    any_zero = zero_fit.any(axis=1)
    if not np.any(any_zero):
        return df

    patterns, inverse = np.unique(zero_fit[any_zero], axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    df_pattern = np.empty(patterns.shape[0])
    for i, pat in enumerate(patterns):
        keep = ~pat
        if not np.any(keep):
            df_pattern[i] = 0.0
            continue
        df_pattern[i] = float(keep.sum() - np.linalg.matrix_rank(design[keep]))
    df[any_zero] = np.maximum(df_pattern[inverse], 0.0)
    return df


def _prior_count_fit(
    y: np.ndarray,
    design: np.ndarray,
    dispersion: np.ndarray,
    eff_lib: np.ndarray,
    prior_count: float,
) -> np.ndarray:
    """Coefficients after adding a library-size-scaled prior count (finite logFC for zero groups)."""
    prior = prior_count * eff_lib / eff_lib.mean()
    y_aug = y + prior[None, :]
    offset_aug = np.log(eff_lib + 2.0 * prior)
    return fit_nb_glm(y_aug, design, dispersion, offset_aug).coefficients


def fit_ql(
    counts: pd.DataFrame,
    design: DesignMatrix,
    *,
    norm_factors: Optional[pd.Series] = None,
    dispersion: DispersionChoice = "trended",
    robust: bool = False,
    prior_count: float = 0.125,
    disp_prior_df: float = 10.0,
    winsor_tail_p: Sequence[float] = (0.05, 0.1),
) -> QLFit:
    """
    Fit the NB quasi-likelihood model for every gene.

    counts: (libraries x genes) pseudobulk counts, rows aligned with the design.
    The NB dispersion is the trended estimate by default; the remaining
    gene-specific variability is captured by the QL dispersion s2, which is
    squeezed toward an abundance trend (empirical Bayes). With robust=True,
    genes with outlying s2 receive a smaller prior df.
    """
    if counts.shape[1] == 0:
        raise NoGenesLeftError("no genes to fit")

    X_df = design.matrix.loc[counts.index]
    X = X_df.to_numpy(dtype=np.float64)
    y = counts.to_numpy(dtype=np.float64).T

    if norm_factors is None:
        norm_factors = pd.Series(1.0, index=counts.index, name="norm_factor")
    eff_lib = effective_lib_sizes(counts, norm_factors).to_numpy()
    offset = np.log(eff_lib)

    disp = estimate_disp(y, X, offset, prior_df=disp_prior_df)

    if isinstance(dispersion, str):
        if dispersion == "trended":
            phi = disp.trended
        elif dispersion == "tagwise":
            phi = disp.tagwise
        elif dispersion == "common":
            phi = np.full(y.shape[0], disp.common)
        else:
            raise ValueError(f"Unknown dispersion choice {dispersion!r}")
    else:
        phi = np.full(y.shape[0], float(dispersion))

    fit = fit_nb_glm(y, X, phi, offset)
    shrunk = _prior_count_fit(y, X, phi, eff_lib, prior_count) if prior_count > 0 else fit.coefficients

    df_res = _residual_df_zero_adjusted(y, fit.fitted_values, X)
    with np.errstate(divide="ignore", invalid="ignore"):
        s2 = np.where(df_res > 0, fit.deviance / df_res, 0.0)
    s2 = np.maximum(s2, 0.0)

    if y.shape[0] >= 2:
        sq = squeeze_var(
            s2,
            df_res,
            covariate=disp.ave_log_cpm if y.shape[0] >= 3 else None,
            robust=robust,
            winsor_tail_p=winsor_tail_p,
        )
        s2_post, s2_prior, df_prior = sq["var_post"], sq["var_prior"], np.asarray(sq["df_prior"], dtype=np.float64)
    else:
        s2_post, s2_prior, df_prior = s2.copy(), s2.copy(), np.zeros_like(s2)

    df_prior = np.broadcast_to(df_prior, s2.shape).astype(np.float64)
    LOGGER.info(
        "QL fit: genes=%d, libraries=%d, coefficients=%d, median df_prior=%.3g, robust=%s",
        y.shape[0], y.shape[1], X.shape[1], float(np.median(df_prior)), robust,
    )

    return QLFit(
        genes=pd.Index(counts.columns.astype(str), name="gene"),
        libraries=pd.Index(counts.index),
        design=design,
        counts=y,
        offset=offset,
        norm_factors=norm_factors.reindex(counts.index),
        dispersion=np.asarray(phi, dtype=np.float64),
        dispersion_estimate=disp,
        coefficients=shrunk,
        unshrunk_coefficients=fit.coefficients,
        fitted_values=fit.fitted_values,
        deviance=fit.deviance,
        df_residual=df_res,
        s2=s2,
        s2_prior=np.broadcast_to(s2_prior, s2.shape).astype(np.float64),
        df_prior=df_prior,
        s2_post=s2_post,
        robust=bool(robust),
        prior_count=float(prior_count),
    )


def fit_summary(fit: QLFit) -> pd.DataFrame:
    """Per-gene model diagnostics (dispersions, QL variances, coefficients on log2 scale)."""
    de = fit.dispersion_estimate
    out = pd.DataFrame(
        {
            "gene": fit.genes.to_numpy(),
            "logCPM": de.ave_log_cpm,
            "dispersion_trended": de.trended,
            "dispersion_tagwise": de.tagwise,
            "dispersion_used": fit.dispersion,
            "df_residual": fit.df_residual,
            "s2": fit.s2,
            "s2_prior": fit.s2_prior,
            "df_prior": fit.df_prior,
            "s2_post": fit.s2_post,
        }
    )
    coefs = pd.DataFrame(
        fit.coefficients / np.log(2.0),
        columns=[f"coef.{c}" for c in fit.design.coef_names],
    )
    return pd.concat([out, coefs], axis=1)


# -----------------------------------------------------------------------------
# QL F-test for a contrast
# -----------------------------------------------------------------------------
def _null_deviance(fit: QLFit, X0: np.ndarray) -> np.ndarray:
    if X0.shape[1] == 0:
        mu0 = np.exp(np.broadcast_to(fit.offset[None, :], fit.counts.shape))
        return nb_unit_deviance(fit.counts, mu0, fit.dispersion[:, None]).sum(axis=1)
    return fit_nb_glm(fit.counts, X0, fit.dispersion, fit.offset).deviance


def bh_fdr(pvalues: np.ndarray) -> np.ndarray:
    pvalues = np.asarray(pvalues, dtype=np.float64)
    if pvalues.size == 0:
        return pvalues.copy()
    return multipletests(pvalues, method="fdr_bh")[1]


def sort_by_pvalue(df: pd.DataFrame, *, p_col: str = "PValue", id_col: str = "gene") -> pd.DataFrame:
    """Ascending p-value; ties broken by identifier."""
    order = np.lexsort((df[id_col].astype(str).to_numpy(), df[p_col].to_numpy()))
    return df.iloc[order].reset_index(drop=True)


def ql_f_test(
    fit: QLFit,
    contrast: Union[ContrastLike, Sequence[ContrastLike]],
    *,
    names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Quasi-likelihood F-test of a contrast for every gene.

    The contrast is validated against the design before anything is computed
    (InvalidContrastError). The null model spans the part of the coefficient
    space orthogonal to the contrast, X @ null(C'), so composite and
    multi-column contrasts are tested exactly as single coefficients are.

    Returns columns gene, logFC (logFC.<name> per column for multi-column
    contrasts), logCPM, F, PValue, FDR; sorted by PValue then gene.
    """
    C = contrast_matrix(contrast, fit.design)
    X = fit.design.matrix.loc[fit.libraries].to_numpy(dtype=np.float64)
    k = C.shape[1]

    X0 = X @ null_space(C.T)
    dev0 = _null_deviance(fit, X0)
    lr = np.maximum(dev0 - fit.deviance, 0.0)

    df_total = np.minimum(fit.df_prior + fit.df_residual, fit.df_residual_total)
    with np.errstate(divide="ignore", invalid="ignore"):
        F = lr / k / fit.s2_post
        pvals = f_dist.sf(F, k, df_total)
    pvals = np.where(np.isfinite(pvals), pvals, 1.0)

    log_fc = (fit.coefficients @ C) / np.log(2.0)

    out = pd.DataFrame({"gene": fit.genes.to_numpy()})
    if k == 1:
        out["logFC"] = log_fc[:, 0]
    else:
        labels = list(names) if names is not None else [f"c{i + 1}" for i in range(k)]
        if len(labels) != k:
            raise ValueError(f"{len(labels)} names given for a {k}-column contrast")
        for j, lab in enumerate(labels):
            out[f"logFC.{lab}"] = log_fc[:, j]
    out["logCPM"] = fit.ave_log_cpm
    out["F"] = F
    out["PValue"] = pvals
    out["FDR"] = bh_fdr(pvals)

    res = sort_by_pvalue(out)
    LOGGER.info(
        "QL F-test: %d genes, ndf=%d, FDR<0.05: %d",
        res.shape[0], k, int((res["FDR"] < 0.05).sum()),
    )
    return res
