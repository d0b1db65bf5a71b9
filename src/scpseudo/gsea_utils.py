# src/scpseudo/gsea_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import polygamma

from .de_utils import bh_fdr
from .errors import GeneSetSizeError

LOGGER = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = ["pathway", "ES", "NES", "pval", "padj", "log2err", "size", "leadingEdge"]

# simple-permutation hits below which the multilevel estimator takes over
MIN_SIMPLE_HITS = 10


@dataclass
class GseaResult:
    table: pd.DataFrame
    excluded: List[GeneSetSizeError] = field(default_factory=list)

    def excluded_table(self) -> pd.DataFrame:
        rows = [e.to_record() for e in self.excluded]
        return pd.DataFrame(rows, columns=["reason", "message", "pathway", "size", "min_size", "max_size"])


# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------
def rank_genes(
    de_table: pd.DataFrame,
    *,
    gene_col: str = "gene",
    logfc_col: str = "logFC",
    p_col: str = "PValue",
) -> pd.Series:
    """
    Signed significance ranking: sign(logFC) * -log10(PValue).

    Descending; ties broken by gene identifier so the order is total and
    independent of the input row order. p-values of 0 are floored at the
    smallest positive double.
    """
    df = de_table[[gene_col, logfc_col, p_col]].dropna()
    p = np.clip(df[p_col].to_numpy(dtype=np.float64), np.finfo(np.float64).tiny, 1.0)
    score = np.sign(df[logfc_col].to_numpy(dtype=np.float64)) * -np.log10(p)
    genes = df[gene_col].astype(str).to_numpy()

    if pd.Index(genes).has_duplicates:
        raise ValueError("rank_genes: duplicated gene identifiers in DE table")

    order = np.lexsort((genes, -score))
    return pd.Series(score[order], index=pd.Index(genes[order], name="gene"), name="rank")


# -----------------------------------------------------------------------------
# Running-sum statistic
# -----------------------------------------------------------------------------
def _es_batch(pos: np.ndarray, weights: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Enrichment score for a batch of sets.

    pos: (m x k) sorted 0-based positions in the ranked list.
    Returns (es, tops, bottoms); tops/bottoms are the running sum just after /
    just before each hit.
    """
    m, k = pos.shape
    w = weights[pos]
    cw = np.cumsum(w, axis=1)
    nr = cw[:, -1:]
    nr = np.where(nr > 0, nr, 1.0)
    misses = (pos - np.arange(k)[None, :]) / float(max(n - k, 1))
    tops = cw / nr - misses
    bottoms = tops - w / nr

    max_p = tops.max(axis=1)
    min_p = bottoms.min(axis=1)
    es = np.where(max_p > -min_p, max_p, np.where(max_p < -min_p, min_p, 0.0))
    return es, tops, bottoms


def enrichment_score(
    ranks: np.ndarray,
    positions: np.ndarray,
    *,
    gsea_param: float = 1.0,
) -> Tuple[float, np.ndarray]:
    """ES of one set and the ranked-list positions of its leading edge."""
    ranks = np.asarray(ranks, dtype=np.float64)
    pos = np.sort(np.asarray(positions, dtype=np.int64))
    weights = np.abs(ranks) ** gsea_param
    es, tops, bottoms = _es_batch(pos[None, :], weights, ranks.size)
    es = float(es[0])
    if es > 0:
        le = pos[: int(np.argmax(tops[0])) + 1]
    elif es < 0:
        le = pos[int(np.argmin(bottoms[0])):][::-1]
    else:
        le = pos[:0]
    return es, le


def running_sum(ranks: np.ndarray, positions: np.ndarray, *, gsea_param: float = 1.0) -> np.ndarray:
    """Full running-sum curve over the ranked list (for plotting downstream)."""
    ranks = np.asarray(ranks, dtype=np.float64)
    n = ranks.size
    hit = np.zeros(n, dtype=bool)
    hit[np.asarray(positions, dtype=np.int64)] = True
    w = np.where(hit, np.abs(ranks) ** gsea_param, 0.0)
    nr = w.sum()
    step = np.where(hit, w / nr if nr > 0 else 0.0, -1.0 / max(n - hit.sum(), 1))
    return np.cumsum(step)


# -----------------------------------------------------------------------------
# Null distributions
# -----------------------------------------------------------------------------
def _random_prefixes(rng: np.random.Generator, n: int, max_k: int, n_perm: int) -> np.ndarray:
    """(n_perm x max_k) random draws without replacement; prefixes are random k-sets."""
    out = np.empty((n_perm, max_k), dtype=np.int64)
    for b in range(n_perm):
        out[b] = rng.choice(n, size=max_k, replace=False)
    return out


def _log2err_simple(n_hits: int, n_perm: int) -> float:
    return float(np.sqrt(polygamma(1, n_hits + 1) - polygamma(1, n_perm + 1)) / np.log(2.0))


def _log2err_multilevel(pval: float, sample_size: int) -> float:
    return float(
        np.sqrt(
            np.floor(-np.log2(pval) + 1)
            * (polygamma(1, (sample_size + 1) / 2) - polygamma(1, sample_size + 1))
        )
        / np.log(2.0)
    )


def _multilevel_tail(
    es_obs: float,
    k: int,
    weights: np.ndarray,
    rng: np.random.Generator,
    *,
    sample_size: int,
    eps: float,
    moves_per_level: int = 10,
) -> Tuple[float, bool]:
    """
    P(ES >= es_obs) for a random k-set by adaptive multilevel splitting.

    A population of `sample_size` sets is repeatedly conditioned on exceeding
    its median ES; each level multiplies the probability estimate by the
    surviving fraction and refreshes the population with swap-move MCMC that
    keeps every set above the current level. Returns (p, hit_eps).
    """
    n = weights.size
    if k >= n:
        return 1.0, False
    pos = np.sort(_random_prefixes(rng, n, k, sample_size), axis=1)
    member = np.zeros((sample_size, n), dtype=bool)
    member[np.arange(sample_size)[:, None], pos] = True
    es = _es_batch(pos, weights, n)[0]

    prob = 1.0
    rows = np.arange(sample_size)
    while True:
        level = float(np.median(es))
        if level >= es_obs:
            return max(prob * float(np.mean(es >= es_obs)), eps), False

        above = es > level
        if not np.any(above):
            return max(prob / sample_size, eps), False
        prob *= float(above.sum()) / sample_size
        if prob < eps:
            return eps, True

        # split: replace sets at or below the level by copies of surviving ones
        donors = np.where(above)[0]
        low = np.where(~above)[0]
        pick = donors[rng.integers(0, donors.size, size=low.size)]
        pos[low] = pos[pick]
        member[low] = member[pick]
        es[low] = es[pick]

        for _ in range(moves_per_level * max(1, min(k, 10))):
            out_idx = rng.integers(0, k, size=sample_size)
            cand = rng.integers(0, n, size=sample_size)
            clash = member[rows, cand]
            while np.any(clash):
                cand[clash] = rng.integers(0, n, size=int(clash.sum()))
                clash = member[rows, cand]

            new_pos = pos.copy()
            new_pos[rows, out_idx] = cand
            new_pos.sort(axis=1)
            new_es = _es_batch(new_pos, weights, n)[0]
            ok = new_es > level
            if np.any(ok):
                idx = rows[ok]
                member[idx, pos[idx, out_idx[ok]]] = False
                member[idx, cand[ok]] = True
                pos[ok] = new_pos[ok]
                es[ok] = new_es[ok]


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------
def filter_gene_sets(
    gene_sets: Mapping[str, Sequence[str]],
    universe: pd.Index,
    *,
    min_size: int,
    max_size: int,
) -> Tuple[Dict[str, np.ndarray], List[GeneSetSizeError]]:
    """
    Intersect each set with the ranked genes and apply the size bounds.

    Returns ({pathway: sorted positions}, exclusions). Out-of-range sets are
    returned as GeneSetSizeError records, not raised.
    """
    lookup = pd.Series(np.arange(universe.size), index=universe)
    kept: Dict[str, np.ndarray] = {}
    excluded: List[GeneSetSizeError] = []
    for name in sorted(gene_sets):
        members = pd.Index(pd.unique(pd.Index([str(g) for g in gene_sets[name]])))
        hits = members[members.isin(universe)]
        size = int(hits.size)
        if size < min_size or size > max_size:
            excluded.append(GeneSetSizeError(name, size, min_size, max_size))
            continue
        kept[name] = np.sort(lookup.loc[hits].to_numpy(dtype=np.int64))
    return kept, excluded


def run_gsea(
    ranks: pd.Series,
    gene_sets: Mapping[str, Sequence[str]],
    *,
    min_size: int = 15,
    max_size: int = 500,
    n_perm_simple: int = 1000,
    sample_size: int = 101,
    eps: float = 1e-50,
    gsea_param: float = 1.0,
    seed: int = 42,
) -> GseaResult:
    """
    Preranked GSEA with multilevel p-values.

    ranks must be sorted descending (see rank_genes). All randomness comes
    from numpy.random.default_rng(seed), so ES, NES and leading edges are
    identical across runs for a fixed seed; p-values carry Monte-Carlo error
    reported as log2err, which shrinks as n_perm_simple / sample_size grow.
    """
    if n_perm_simple < 1:
        raise ValueError("n_perm_simple must be >= 1")
    if sample_size < 3 or sample_size % 2 == 0:
        raise ValueError("sample_size must be an odd integer >= 3")

    ranks = ranks.sort_values(ascending=False, kind="mergesort")
    universe = pd.Index(ranks.index.astype(str))
    if universe.has_duplicates:
        raise ValueError("run_gsea: duplicated gene identifiers in ranks")
    values = ranks.to_numpy(dtype=np.float64)
    n = values.size

    sets, excluded = filter_gene_sets(gene_sets, universe, min_size=min_size, max_size=max_size)
    for e in excluded:
        LOGGER.debug("GSEA: excluding %s (size %d)", e.pathway, e.size)
    if excluded:
        LOGGER.warning(
            "GSEA: %d / %d gene sets outside size bounds [%d, %d] were not tested.",
            len(excluded), len(excluded) + len(sets), min_size, max_size,
        )

    if not sets or n < 2:
        return GseaResult(table=pd.DataFrame(columns=ENRICHMENT_COLUMNS), excluded=excluded)

    rng = np.random.default_rng(seed)
    weights = np.abs(values) ** gsea_param

    sizes = sorted({int(p.size) for p in sets.values()})
    perms = _random_prefixes(rng, n, max(sizes), n_perm_simple)
    null_by_size = {
        k: _es_batch(np.sort(perms[:, :k], axis=1), weights, n)[0]
        for k in sizes
    }

    rows = []
    for name, pos in sets.items():
        k = int(pos.size)
        es, le_pos = enrichment_score(values, pos, gsea_param=gsea_param)
        null = null_by_size[k]

        if es >= 0:
            same = null[null >= 0]
            n_hits = int((null >= es).sum())
        else:
            same = null[null <= 0]
            n_hits = int((null <= es).sum())
        n_same = int(same.size)

        nes = es / abs(float(same.mean())) if n_same > 0 and same.mean() != 0 else np.nan
        pval = (n_hits + 1) / (n_same + 1)
        log2err = _log2err_simple(n_hits, n_perm_simple)

        if n_hits < MIN_SIMPLE_HITS:
            # mirror negative sets onto the positive tail
            w = weights if es >= 0 else weights[::-1]
            tail, hit_eps = _multilevel_tail(abs(es), k, w, rng, sample_size=sample_size, eps=eps)
            p_side = (n_same + 1) / (n_perm_simple + 1)
            pval = min(max(tail / p_side, eps), 1.0)
            log2err = np.nan if hit_eps else _log2err_multilevel(pval, sample_size)

        rows.append(
            {
                "pathway": name,
                "ES": es,
                "NES": nes,
                "pval": pval,
                "log2err": log2err,
                "size": k,
                "leadingEdge": [str(g) for g in universe[le_pos]],
            }
        )

    table = pd.DataFrame(rows)
    table["padj"] = bh_fdr(table["pval"].to_numpy())
    order = np.lexsort((table["pathway"].to_numpy(), table["pval"].to_numpy()))
    table = table.iloc[order].reset_index(drop=True)[ENRICHMENT_COLUMNS]

    LOGGER.info(
        "GSEA: %d gene sets tested over %d ranked genes, padj<0.05: %d",
        table.shape[0], n, int((table["padj"] < 0.05).sum()),
    )
    return GseaResult(table=table, excluded=excluded)
