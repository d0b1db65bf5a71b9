# src/scpseudo/pseudobulk_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import DesignDegenerateError, NoGenesLeftError

LOGGER = logging.getLogger(__name__)

DROPPED_COLUMNS = ["sample", "group", "n_cells", "reason"]

# -----------------------------------------------------------------------------
# Labeled-cell contract
# -----------------------------------------------------------------------------
# The aggregator consumes an AnnData whose
#   - .X or .layers[counts_layer] holds raw integer counts (cells x features)
#   - .obs[sample_key] identifies the biological replicate (donor/sample)
#   - .obs[group_key] holds the upstream cell-type / subset label
# Labels are opaque: nothing here re-derives clusters.
# -----------------------------------------------------------------------------


@dataclass
class PseudobulkResult:
    counts: pd.DataFrame        # (libraries x genes), int64
    metadata: pd.DataFrame      # (libraries x [sample, group, n_cells, covariates...])
    dropped: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=DROPPED_COLUMNS))

    @property
    def n_libraries(self) -> int:
        return int(self.counts.shape[0])


def get_counts_matrix(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str],
) -> sp.csr_matrix:
    """
    Return counts matrix as CSR (cells x genes).
    Never densifies.
    """
    if counts_layer:
        if counts_layer not in adata.layers:
            raise KeyError(
                f"counts_layer={counts_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[counts_layer]
    else:
        X = adata.X

    if X is None:
        raise RuntimeError("Counts matrix is None (no .X and no counts layer).")

    if sp.issparse(X):
        return X.tocsr()
    LOGGER.debug("Counts matrix is dense; converting to CSR.")
    return sp.csr_matrix(np.asarray(X))


def _feature_mask(adata: ad.AnnData, feature_types: Optional[Sequence[str]]) -> np.ndarray:
    if not feature_types:
        return np.ones(adata.n_vars, dtype=bool)
    if "feature_types" not in adata.var:
        raise KeyError("feature_types requested but adata.var has no 'feature_types' column")
    return adata.var["feature_types"].astype(str).isin([str(x) for x in feature_types]).to_numpy()


def sample_level_covariates(
    obs: pd.DataFrame,
    *,
    sample_key: str,
    covariates: Sequence[str],
    sample_metadata: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    One row per sample with the requested covariates.

    An explicit sample_metadata table (indexed by sample id) takes precedence;
    otherwise covariates come from .obs and must be constant within a sample.
    """
    samples = pd.Index(pd.unique(obs[sample_key].astype(str)), name=sample_key)
    out = pd.DataFrame(index=samples)

    for cov in covariates:
        if sample_metadata is not None and cov in sample_metadata.columns:
            sm = sample_metadata.copy()
            sm.index = sm.index.astype(str)
            missing = [s for s in samples if s not in sm.index]
            if missing:
                raise KeyError(f"samples missing from sample metadata: {missing}")
            out[cov] = sm.loc[samples, cov].to_numpy()
            continue

        if cov not in obs:
            raise KeyError(f"covariate {cov!r} not found in sample metadata or adata.obs")

        per_sample = obs[[sample_key, cov]].copy()
        per_sample[sample_key] = per_sample[sample_key].astype(str)
        n_vals = per_sample.groupby(sample_key, observed=True)[cov].nunique(dropna=False)
        bad = n_vals[n_vals > 1]
        if not bad.empty:
            raise ValueError(
                f"covariate {cov!r} is not constant within sample(s) {bad.index.tolist()}; "
                "sample-level covariates must have one value per sample"
            )
        first = per_sample.drop_duplicates(sample_key).set_index(sample_key)[cov]
        out[cov] = first.loc[samples].to_numpy()

    return out


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def pseudobulk_aggregate(
    adata: ad.AnnData,
    *,
    sample_key: str,
    group_key: Optional[str] = None,
    counts_layer: Optional[str] = None,
    min_cells: int = 10,
    groups: Optional[Sequence[str]] = None,
    exclude_samples: Sequence[str] = (),
    restrict_cells_mask: Optional[np.ndarray] = None,
    feature_types: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
    sample_metadata: Optional[pd.DataFrame] = None,
) -> PseudobulkResult:
    """
    Sum raw counts into one library per (sample, group).

    Sparse throughout: PB = G.T @ X with G the (cells x libraries) indicator.

    Libraries with fewer than `min_cells` cells are removed (not zero-filled)
    and listed in `dropped` with reason "below_min_cells". Samples listed in
    `exclude_samples` never contribute and are listed with reason "excluded".
    If group_key is None, aggregation is by sample only (group "ALL").
    """
    if sample_key not in adata.obs:
        raise KeyError(f"sample_key={sample_key!r} not in adata.obs")
    if group_key is not None and group_key not in adata.obs:
        raise KeyError(f"group_key={group_key!r} not in adata.obs")

    X = get_counts_matrix(adata, counts_layer=counts_layer)
    n_cells = X.shape[0]

    fmask = _feature_mask(adata, feature_types)
    var_names = adata.var_names[fmask].astype(str)
    if not fmask.all():
        X = X[:, np.where(fmask)[0]]

    obs = adata.obs
    s_all = obs[sample_key].astype(str).to_numpy()
    g_all = obs[group_key].astype(str).to_numpy() if group_key else np.full(n_cells, "ALL", dtype=object)

    keep_cells = np.ones(n_cells, dtype=bool)
    if restrict_cells_mask is not None:
        restrict_cells_mask = np.asarray(restrict_cells_mask, dtype=bool)
        if restrict_cells_mask.shape != (n_cells,):
            raise ValueError("restrict_cells_mask has wrong shape")
        keep_cells &= restrict_cells_mask
    if groups is not None:
        keep_cells &= np.isin(g_all, [str(x) for x in groups])

    dropped_rows: list[dict] = []

    excluded = {str(x) for x in exclude_samples}
    if excluded:
        ex_mask = keep_cells & np.isin(s_all, list(excluded))
        if ex_mask.any():
            ex = pd.DataFrame({"sample": s_all[ex_mask], "group": g_all[ex_mask]})
            for (s, g), n in ex.groupby(["sample", "group"]).size().items():
                dropped_rows.append({"sample": s, "group": g, "n_cells": int(n), "reason": "excluded"})
        unknown = excluded - set(s_all)
        if unknown:
            LOGGER.warning("exclude_samples lists unknown sample(s): %s", sorted(unknown))
        keep_cells &= ~np.isin(s_all, list(excluded))

    cell_idx = np.where(keep_cells)[0]
    if cell_idx.size == 0:
        counts_df = pd.DataFrame(np.zeros((0, var_names.size), dtype=np.int64), columns=var_names)
        counts_df.index.name = "pb_id"
        meta_df = pd.DataFrame(columns=[sample_key, "group", "n_cells"], index=counts_df.index)
        return PseudobulkResult(counts_df, meta_df, pd.DataFrame(dropped_rows, columns=DROPPED_COLUMNS))

    X = X[cell_idx, :]
    s = s_all[cell_idx]
    g = g_all[cell_idx]

    pairs = pd.DataFrame({"sample": s, "group": g})
    lib_codes = pairs.groupby(["sample", "group"], sort=True).ngroup().to_numpy()
    lib_keys = pairs.drop_duplicates().sort_values(["sample", "group"], kind="mergesort")
    n_libs = int(lib_keys.shape[0])

    rows = np.arange(cell_idx.size, dtype=np.int64)
    G = sp.csr_matrix(
        (np.ones(rows.size, dtype=np.int64), (rows, lib_codes.astype(np.int64, copy=False))),
        shape=(cell_idx.size, n_libs),
    )
    PB = (G.T @ X).tocsr()
    n_cells_lib = np.asarray(G.sum(axis=0)).ravel().astype(np.int64)

    lib_sample = lib_keys["sample"].to_numpy(dtype=object)
    lib_group = lib_keys["group"].to_numpy(dtype=object)
    pb_id = pd.Index([f"{a}|{b}" for a, b in zip(lib_sample, lib_group)], name="pb_id")
    if pb_id.has_duplicates:
        raise ValueError(
            f"library ids are ambiguous: {sorted(set(pb_id[pb_id.duplicated()]))}; "
            "sample or group labels contain '|'"
        )

    meta_df = pd.DataFrame(
        {sample_key: lib_sample, "group": lib_group, "n_cells": n_cells_lib},
        index=pb_id,
    )

    keep = meta_df["n_cells"].to_numpy() >= int(min_cells)
    for pid in meta_df.index[~keep]:
        row = meta_df.loc[pid]
        dropped_rows.append(
            {"sample": row[sample_key], "group": row["group"], "n_cells": int(row["n_cells"]), "reason": "below_min_cells"}
        )
        LOGGER.warning(
            "Pseudobulk: dropping %s (sample=%s, group=%s): %d cells < min_cells=%d",
            pid, row[sample_key], row["group"], int(row["n_cells"]), int(min_cells),
        )

    meta_df = meta_df.loc[keep].copy()
    PB = PB[np.where(keep)[0], :]

    if covariates:
        sub_obs = obs.iloc[cell_idx]
        cov_df = sample_level_covariates(
            sub_obs,
            sample_key=sample_key,
            covariates=[c for c in covariates if c not in (sample_key, "group")],
            sample_metadata=sample_metadata,
        )
        for c in cov_df.columns:
            meta_df[c] = cov_df.loc[meta_df[sample_key].astype(str), c].to_numpy()

    counts_df = pd.DataFrame(
        PB.toarray().astype(np.int64, copy=False),
        index=meta_df.index,
        columns=var_names,
    )

    dropped = pd.DataFrame(dropped_rows, columns=DROPPED_COLUMNS)
    LOGGER.info(
        "Pseudobulk: %d libraries kept, %d (sample, group) pairs dropped, %d genes",
        counts_df.shape[0], dropped.shape[0], counts_df.shape[1],
    )
    return PseudobulkResult(counts=counts_df, metadata=meta_df, dropped=dropped)


def require_levels(metadata: pd.DataFrame, factor: str, *, min_levels: int = 2) -> list:
    """Levels of `factor` surviving aggregation; DesignDegenerateError if too few."""
    if factor not in metadata:
        raise KeyError(f"factor {factor!r} not in pseudobulk metadata")
    levels = sorted(pd.unique(metadata[factor].astype(str)))
    if len(levels) < int(min_levels):
        raise DesignDegenerateError(
            f"{factor!r} has {len(levels)} level(s) {levels} after minimum-cell filtering",
            factor=factor,
            levels=levels,
        )
    return levels


# -----------------------------------------------------------------------------
# Gene filters (applied once per comparison, before normalization)
# -----------------------------------------------------------------------------
def filter_by_counts(
    counts: pd.DataFrame,
    *,
    min_count: int = 1,
    min_samples: int = 5,
) -> pd.DataFrame:
    """Keep genes with count > min_count in at least min_samples libraries."""
    n_ok = (counts.to_numpy() > int(min_count)).sum(axis=0)
    keep = n_ok >= min(int(min_samples), counts.shape[0])
    return counts.loc[:, keep]


def filter_by_total(counts: pd.DataFrame, *, min_total_counts: int = 10) -> pd.DataFrame:
    keep = counts.sum(axis=0).to_numpy() >= int(min_total_counts)
    return counts.loc[:, keep]


def apply_min_pct_filters(
    counts: pd.DataFrame,
    labels: pd.Series,
    *,
    level_A: str,
    level_B: str,
    min_pct: float = 0.0,
    min_diff_pct: float = 0.0,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Library-prevalence filter between two levels.

    counts: (libs x genes); labels: level of each library. A gene is kept if it
    is detected in >= min_pct of the libraries of either level and the
    detection rates differ by >= min_diff_pct.
    """
    min_pct = float(min_pct)
    min_diff_pct = float(min_diff_pct)

    meta = {
        "min_pct": min_pct,
        "min_diff_pct": min_diff_pct,
        "n_genes_before": int(counts.shape[1]),
        "n_genes_after": int(counts.shape[1]),
    }

    if counts.shape[1] == 0 or (min_pct <= 0.0 and min_diff_pct <= 0.0):
        return counts, meta

    lab = labels.loc[counts.index].astype(str)
    mA = (lab == str(level_A)).to_numpy()
    mB = (lab == str(level_B)).to_numpy()
    if mA.sum() == 0 or mB.sum() == 0:
        return counts, meta

    det = counts.to_numpy(copy=False) > 0
    prevA = det[mA, :].mean(axis=0)
    prevB = det[mB, :].mean(axis=0)

    keep = np.ones(counts.shape[1], dtype=bool)
    if min_pct > 0.0:
        keep &= (prevA >= min_pct) | (prevB >= min_pct)
    if min_diff_pct > 0.0:
        keep &= np.abs(prevA - prevB) >= min_diff_pct

    out = counts.loc[:, keep].copy()
    meta["n_genes_after"] = int(out.shape[1])
    return out, meta


def filter_genes(
    counts: pd.DataFrame,
    *,
    min_count: int = 1,
    min_samples: int = 5,
    min_total_counts: int = 10,
) -> pd.DataFrame:
    """Expression filter chain; NoGenesLeftError if nothing survives."""
    n0 = counts.shape[1]
    out = filter_by_counts(counts, min_count=min_count, min_samples=min_samples)
    out = filter_by_total(out, min_total_counts=min_total_counts)
    LOGGER.info("Gene filter: %d -> %d genes (count > %d in >= %d libraries, total >= %d)",
                n0, out.shape[1], min_count, min_samples, min_total_counts)
    if out.shape[1] == 0:
        raise NoGenesLeftError(
            f"no genes pass the expression filter (count > {min_count} in >= {min_samples} libraries)",
            n_genes_before=int(n0),
        )
    return out
