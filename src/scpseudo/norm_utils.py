# src/scpseudo/norm_utils.py
from __future__ import annotations

import logging
from typing import Literal, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .errors import NormalizationError

LOGGER = logging.getLogger(__name__)

NormMethod = Literal["poscounts", "ratio", "TMM", "upperquartile", "none"]


# -----------------------------------------------------------------------------
# Library normalization
# -----------------------------------------------------------------------------
# Convention: public functions take pseudobulk counts as a DataFrame with one
# row per library and one column per gene (the layout pseudobulk_aggregate
# returns). Norm factors are returned per library, scaled to geometric mean 1,
# so that effective library size = lib_size * norm_factor.
# -----------------------------------------------------------------------------


def lib_sizes(counts: pd.DataFrame) -> pd.Series:
    return counts.sum(axis=1).astype(np.float64).rename("lib_size")


def _geometric_center(f: np.ndarray) -> np.ndarray:
    return f / np.exp(np.mean(np.log(f)))


def _size_factors_ratio(y: np.ndarray, *, positive_only: bool) -> np.ndarray:
    """
    Median-of-ratios size factors.

    y: (libs x genes). With positive_only (DESeq2 'poscounts'), zeros are
    dropped from the per-gene geometric mean and from the per-library median.
    """
    with np.errstate(divide="ignore"):
        logy = np.log(y)

    if positive_only:
        pos = y > 0
        loggeo = np.where(pos, logy, 0.0).sum(axis=0) / y.shape[0]
        usable = pos.any(axis=0)
        sf = np.empty(y.shape[0], dtype=np.float64)
        for j in range(y.shape[0]):
            m = usable & pos[j]
            if not np.any(m):
                raise NormalizationError(
                    f"library {j} has no positive counts in informative genes; cannot compute size factors",
                    library=int(j),
                )
            sf[j] = np.exp(np.median(logy[j, m] - loggeo[m]))
        return _geometric_center(sf)

    loggeo = logy.mean(axis=0)
    finite = np.isfinite(loggeo)
    if not np.any(finite):
        raise NormalizationError(
            "every gene has at least one zero count; median-of-ratios is undefined. "
            "Use norm_method='poscounts' instead."
        )
    sf = np.exp(np.median(logy[:, finite] - loggeo[finite], axis=1))
    return _geometric_center(sf)


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    n_o = obs.sum()
    n_r = ref.sum()

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_o) / (ref / n_r))
        abs_e = (np.log2(obs / n_o) + np.log2(ref / n_r)) / 2.0
        v = (n_o - obs) / n_o / obs + (n_r - ref) / n_r / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    r_l = rankdata(log_r)
    r_s = rankdata(abs_e)
    keep = (r_l >= lo_l) & (r_l <= hi_l) & (r_s >= lo_s) & (r_s <= hi_s)

    if weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def _upper_quartile(y: np.ndarray, libs: np.ndarray, p: float = 0.75) -> np.ndarray:
    return np.quantile(y / libs[:, None], p, axis=1)


def calc_norm_factors(
    counts: pd.DataFrame,
    method: NormMethod = "poscounts",
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> pd.Series:
    """
    Per-library normalization factors (geometric mean 1).

    Methods
    -------
    poscounts      DESeq2 median-of-ratios over positive counts (default)
    ratio          DESeq2 median-of-ratios; genes with any zero are ignored
    TMM            edgeR trimmed mean of M-values against the library whose
                   upper quartile is closest to the mean upper quartile
    upperquartile  75th percentile of the counts-per-library distribution
    none           all ones

    Median-of-ratios results are converted from size factors to norm factors
    (size_factor / lib_size, re-centred), so every method is consumed the same
    way downstream: effective library size = lib_size * norm_factor.
    """
    y = counts.to_numpy(dtype=np.float64)
    if y.ndim != 2 or y.shape[0] == 0:
        raise ValueError("counts must be a non-empty (libraries x genes) table")

    libs = y.sum(axis=1)
    if np.any(libs <= 0):
        bad = counts.index[libs <= 0].tolist()
        raise NormalizationError(f"libraries with zero total counts cannot be normalized: {bad}", libraries=bad)

    # all-zero genes carry no information for any estimator
    y = y[:, y.sum(axis=0) > 0]

    m = str(method)
    if m == "none":
        f = np.ones(y.shape[0])
    elif m in ("poscounts", "ratio"):
        sf = _size_factors_ratio(y, positive_only=(m == "poscounts"))
        f = _geometric_center(sf / libs)
    elif m == "upperquartile":
        uq = _upper_quartile(y, libs)
        if np.any(uq == 0):
            LOGGER.warning("Upper quartile is zero for some libraries; falling back to TMM.")
            return calc_norm_factors(counts, "TMM", logratio_trim=logratio_trim, sum_trim=sum_trim)
        f = _geometric_center(uq)
    elif m == "TMM":
        uq = _upper_quartile(y, libs)
        ref_idx = int(np.argmin(np.abs(uq - uq.mean())))
        f = np.array(
            [
                _tmm_factor(y[j], y[ref_idx], logratio_trim=logratio_trim, sum_trim=sum_trim)
                for j in range(y.shape[0])
            ]
        )
        f = _geometric_center(f)
    else:
        raise ValueError(f"Unknown normalization method {method!r}")

    LOGGER.debug("norm factors (%s): %s", m, np.round(f, 4).tolist())
    return pd.Series(f, index=counts.index, name="norm_factor")


def effective_lib_sizes(counts: pd.DataFrame, norm_factors: Optional[pd.Series] = None) -> pd.Series:
    libs = lib_sizes(counts)
    if norm_factors is None:
        return libs
    return (libs * norm_factors.reindex(counts.index).to_numpy()).rename("eff_lib_size")


def cpm(
    counts: pd.DataFrame,
    norm_factors: Optional[pd.Series] = None,
    *,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """
    Counts per million on effective library sizes.

    With log=True the prior count is scaled by relative library size (edgeR
    convention), and the library size is augmented by twice the prior.
    """
    y = counts.to_numpy(dtype=np.float64)
    eff = effective_lib_sizes(counts, norm_factors).to_numpy()

    if not log:
        out = y / eff[:, None] * 1e6
    else:
        prior = prior_count * eff / eff.mean()
        lib_adj = eff + 2.0 * prior
        out = np.log2((y + prior[:, None]) / lib_adj[:, None] * 1e6)

    return pd.DataFrame(out, index=counts.index, columns=counts.columns)


def ave_log_cpm(y: np.ndarray, eff_lib: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    """
    Average log2-CPM per gene. y is (genes x libs).

    Uses the one-group Poisson estimate of the pooled abundance with the
    library-scaled prior, which is what edgeR's aveLogCPM reduces to at zero
    dispersion.
    """
    prior = prior_count * eff_lib / eff_lib.mean()
    lib_adj = eff_lib + 2.0 * prior
    num = (y + prior[None, :]).sum(axis=1)
    return np.log2(num / lib_adj.sum() * 1e6)


def zscore_log_cpm(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    group_col: str,
    sample_col: str,
    subset_col: Optional[str] = None,
    group_order: Optional[Sequence[str]] = None,
    norm_factors: Optional[pd.Series] = None,
    prior_count: float = 2.0,
    genes: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Heatmap-ready matrix: log-CPM z-scored per gene.

    Returns (genes x libraries) with columns labelled "<group>|<sample>", or
    "<group>|<sample>|<subset>" when libraries are per (sample, subset).
    Columns are ordered by group (in `group_order` if given, e.g. the design
    levels with the reference first; alphabetically otherwise), then sample,
    then subset.
    """
    lc = cpm(counts, norm_factors, log=True, prior_count=prior_count)
    if genes is not None:
        lc = lc.loc[:, [g for g in genes if g in lc.columns]]

    meta = metadata.loc[lc.index]
    groups = meta[group_col].astype(str)
    levels = [str(g) for g in group_order] if group_order is not None else []
    levels += sorted(set(groups) - set(levels))

    label_cols = [sample_col] + ([subset_col] if subset_col is not None else [])
    keys = pd.DataFrame(
        {"_group": pd.Categorical(groups, categories=levels, ordered=True).codes},
        index=meta.index,
    )
    for c in label_cols:
        keys[c] = meta[c].astype(str)
    order = keys.sort_values(["_group", *label_cols], kind="mergesort").index
    lc = lc.loc[order]

    labels = groups.loc[order]
    for c in label_cols:
        labels = labels + "|" + keys.loc[order, c]
    if labels.duplicated().any():
        dupes = sorted(set(labels[labels.duplicated()]))
        raise ValueError(f"heatmap column labels are not unique: {dupes}; pass subset_col")

    mat = lc.T
    mu = mat.mean(axis=1)
    sd = mat.std(axis=1, ddof=1)
    z = mat.sub(mu, axis=0).div(sd.replace(0.0, np.nan), axis=0).fillna(0.0)
    z.columns = pd.Index(labels.tolist(), name="library")
    z.index.name = "gene"
    return z
