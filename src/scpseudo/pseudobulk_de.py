from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from . import __version__, io_utils, reporting
from .config import ComparisonConfig, GseaConfig, PseudobulkDEConfig
from .de_utils import QLFit, fit_ql, ql_f_test
from .design_utils import DesignMatrix, build_design, check_replicates, contrast_matrix, default_contrasts
from .errors import GeneSetSizeError, InsufficientReplicatesError, PseudobulkError
from .gsea_utils import rank_genes, run_gsea
from .logging_utils import init_logging
from .norm_utils import calc_norm_factors, zscore_log_cpm
from .pseudobulk_utils import (
    PseudobulkResult,
    apply_min_pct_filters,
    filter_genes,
    pseudobulk_aggregate,
    require_levels,
)
from .result_utils import build_de_table, build_enrichment_table, stack_contrast_tables, summarize_de, write_table

LOGGER = logging.getLogger(__name__)

HEATMAP_TOP_N = 50

GeneSetCollections = Mapping[str, Mapping[str, Sequence[str]]]


@dataclass
class ComparisonResult:
    name: str
    pseudobulk: PseudobulkResult
    design: DesignMatrix
    fit: QLFit
    de_tables: Dict[str, pd.DataFrame]
    enrichment_tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    gene_set_exclusions: List[GeneSetSizeError] = field(default_factory=list)
    heatmap: Optional[pd.DataFrame] = None

    @property
    def de(self) -> pd.DataFrame:
        return stack_contrast_tables(self.de_tables)

    @property
    def enrichment(self) -> pd.DataFrame:
        return stack_contrast_tables(self.enrichment_tables)


def _library_layout(comp: ComparisonConfig) -> tuple[Optional[str], bool]:
    """(group_key for aggregation, whether the subset column is restricted)."""
    if comp.subset_key is None:
        return None, False
    if comp.subsets is not None and len(comp.subsets) == 1:
        return None, True
    if comp.subsets is None and comp.design.factor != comp.subset_key:
        return None, False
    return comp.subset_key, comp.subsets is not None


def aggregate_for_comparison(
    adata: ad.AnnData,
    comp: ComparisonConfig,
    *,
    counts_layer: Optional[str],
    sample_metadata: Optional[pd.DataFrame] = None,
) -> PseudobulkResult:
    group_key, restricted = _library_layout(comp)

    mask = None
    if restricted:
        mask = adata.obs[comp.subset_key].astype(str).isin([str(s) for s in comp.subsets]).to_numpy()

    design_cols = [comp.design.factor, *comp.design.covariates, *comp.design.continuous]
    sample_covs = [c for c in design_cols if c not in (comp.subset_key, comp.sample_key)]

    pb = pseudobulk_aggregate(
        adata,
        sample_key=comp.sample_key,
        group_key=group_key,
        counts_layer=counts_layer,
        min_cells=comp.min_cells,
        exclude_samples=comp.exclude_samples,
        restrict_cells_mask=mask,
        covariates=sample_covs,
        sample_metadata=sample_metadata,
    )
    if group_key is not None and comp.subset_key in design_cols:
        pb.metadata[comp.subset_key] = pb.metadata["group"]
    return pb


def run_comparison(
    adata: ad.AnnData,
    comp: ComparisonConfig,
    *,
    counts_layer: Optional[str] = None,
    sample_metadata: Optional[pd.DataFrame] = None,
    gene_sets: Optional[GeneSetCollections] = None,
    gsea: Optional[GseaConfig] = None,
    write_heatmap: bool = True,
) -> ComparisonResult:
    """
    One comparison end to end: aggregate, filter, normalize, fit, test, enrich.

    Statistical precondition failures raise PseudobulkError subclasses; the
    batch runner turns them into status rows.
    """
    LOGGER.info("[%s] Starting comparison.", comp.name)
    pb = aggregate_for_comparison(adata, comp, counts_layer=counts_layer, sample_metadata=sample_metadata)
    if pb.n_libraries == 0:
        raise InsufficientReplicatesError(
            f"no pseudobulk library has >= {comp.min_cells} cells",
            n_dropped=int(pb.dropped.shape[0]),
        )

    meta = pb.metadata
    factor = comp.design.factor
    require_levels(meta, factor)
    check_replicates(
        meta, factor,
        min_samples_per_level=comp.min_samples_per_level,
        sample_key=comp.sample_key,
    )

    design = build_design(meta, comp.design.to_spec())
    contrasts = (
        {c: c for c in comp.contrasts} if comp.contrasts else default_contrasts(design)
    )
    for expr in contrasts.values():
        contrast_matrix(expr, design)

    counts = pb.counts
    if len(design.levels) == 2:
        counts, pct_meta = apply_min_pct_filters(
            counts,
            meta[factor],
            level_A=design.levels[1],
            level_B=design.levels[0],
            min_pct=comp.min_pct,
            min_diff_pct=comp.min_diff_pct,
        )
        if pct_meta["n_genes_after"] != pct_meta["n_genes_before"]:
            LOGGER.info(
                "[%s] prevalence filter: %d -> %d genes",
                comp.name, pct_meta["n_genes_before"], pct_meta["n_genes_after"],
            )
    counts = filter_genes(
        counts,
        min_count=comp.min_count,
        min_samples=comp.min_count_samples,
        min_total_counts=comp.min_total_counts,
    )

    nf = calc_norm_factors(counts, method=comp.norm_method)
    fit = fit_ql(counts, design, norm_factors=nf, dispersion=comp.dispersion, robust=comp.robust)

    de_tables = {name: build_de_table(ql_f_test(fit, expr)) for name, expr in contrasts.items()}

    result = ComparisonResult(name=comp.name, pseudobulk=pb, design=design, fit=fit, de_tables=de_tables)

    if comp.run_gsea and gene_sets:
        gsea = gsea or GseaConfig()
        for cname, table in de_tables.items():
            if "logFC" not in table.columns:
                LOGGER.warning("[%s] GSEA skipped for multi-column contrast %r.", comp.name, cname)
                continue
            ranks = rank_genes(table)
            per_collection = {}
            for label, sets in gene_sets.items():
                res = run_gsea(
                    ranks,
                    sets,
                    min_size=gsea.min_size,
                    max_size=gsea.max_size,
                    n_perm_simple=gsea.n_perm_simple,
                    sample_size=gsea.sample_size,
                    eps=gsea.eps,
                    gsea_param=gsea.gsea_param,
                    seed=gsea.seed,
                )
                per_collection[label] = build_enrichment_table(res.table)
                result.gene_set_exclusions.extend(res.excluded)
            result.enrichment_tables[cname] = stack_contrast_tables(per_collection, key="collection")

    if write_heatmap:
        top = pd.unique(
            np.concatenate([t["gene"].head(HEATMAP_TOP_N).to_numpy() for t in de_tables.values()])
        )
        per_subset = _library_layout(comp)[0] is not None and factor != comp.subset_key
        result.heatmap = zscore_log_cpm(
            counts,
            meta,
            group_col=factor,
            sample_col=comp.sample_key,
            subset_col="group" if per_subset else None,
            group_order=design.levels,
            norm_factors=nf,
            genes=list(top),
        )

    LOGGER.info("[%s] Finished comparison (%d contrasts).", comp.name, len(de_tables))
    return result


def _status_row(comp: ComparisonConfig, result: Optional[ComparisonResult] = None, error: Optional[PseudobulkError] = None) -> dict:
    row = {"comparison": comp.name}
    if error is not None:
        row.update({"status": "failed", "reason": error.reason, "message": error.message})
        return row

    n_sig = sum(summarize_de(t)["n_sig"] for t in result.de_tables.values() if "logFC" in t.columns)
    row.update(
        {
            "status": "ok",
            "reason": "",
            "message": "",
            "n_libraries": result.pseudobulk.n_libraries,
            "n_dropped": int(result.pseudobulk.dropped.shape[0]),
            "n_genes": int(result.fit.genes.size),
            "n_contrasts": len(result.de_tables),
            "n_sig": int(n_sig),
            "n_gene_sets": int(sum(t.shape[0] for t in result.enrichment_tables.values())),
        }
    )
    return row


def run_comparisons(
    adata: ad.AnnData,
    comparisons: Sequence[ComparisonConfig],
    *,
    n_jobs: int = 1,
    **kwargs,
) -> tuple[Dict[str, ComparisonResult], List[dict]]:
    """
    Run independent comparisons; a failed comparison never aborts the others.

    Returns (results by name, status rows in input order). Only
    PseudobulkError is converted into a failed status; anything else
    propagates.
    """
    results: Dict[str, ComparisonResult] = {}
    status: Dict[str, dict] = {}

    def _run_one(comp: ComparisonConfig):
        try:
            return comp, run_comparison(adata, comp, **kwargs), None
        except PseudobulkError as e:
            LOGGER.warning("[%s] comparison failed (%s): %s", comp.name, e.reason, e.message)
            return comp, None, e

    max_workers = min(int(n_jobs), max(1, len(comparisons)))
    t0 = time.perf_counter()
    if max_workers > 1:
        LOGGER.info("Running %d comparisons on %d workers.", len(comparisons), max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as ex:
            futs = [ex.submit(_run_one, comp) for comp in comparisons]
            for i, fut in enumerate(as_completed(futs), start=1):
                comp, res, err = fut.result()
                status[comp.name] = _status_row(comp, res, err)
                if res is not None:
                    results[comp.name] = res
                LOGGER.info("Comparison progress %d/%d (elapsed=%.1fs).", i, len(comparisons), time.perf_counter() - t0)
    else:
        for comp in comparisons:
            comp, res, err = _run_one(comp)
            status[comp.name] = _status_row(comp, res, err)
            if res is not None:
                results[comp.name] = res

    return results, [status[c.name] for c in comparisons]


# -----------------------------------------------------------------------------
# Outputs
# -----------------------------------------------------------------------------
def write_comparison_outputs(result: ComparisonResult, table_dir: Path) -> Path:
    out = Path(table_dir) / result.name
    write_table(result.de, out / "de.tsv")
    if result.enrichment_tables:
        write_table(result.enrichment, out / "enrichment.tsv")
    if result.gene_set_exclusions:
        excluded = pd.DataFrame([e.to_record() for e in result.gene_set_exclusions])
        write_table(excluded.drop_duplicates(), out / "gene_sets_excluded.tsv")
    write_table(result.pseudobulk.dropped, out / "pseudobulk_dropped.tsv")
    write_table(result.fit.norm_factors.rename_axis("library").reset_index(), out / "norm_factors.tsv")
    if result.heatmap is not None:
        write_table(result.heatmap, out / "heatmap_logcpm_z.tsv", index=True)
    return out


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def _settings_lines(cfg: PseudobulkDEConfig, gene_set_labels: Sequence[str]) -> list[str]:
    lines = [
        f"scpseudo version: {__version__}",
        f"input_path: {cfg.input_path}",
        f"counts_layer: {cfg.counts_layer}",
        f"sample_metadata: {cfg.sample_metadata}",
        f"gene_sets: {', '.join(gene_set_labels) or '-'}",
        f"gsea: {cfg.gsea.model_dump()}",
        "",
    ]
    for comp in cfg.comparisons:
        lines.append(f"[{comp.name}]")
        for k, v in comp.model_dump().items():
            if k != "name":
                lines.append(f"  {k}: {v}")
    return lines


def run_pseudobulk_de(cfg: PseudobulkDEConfig) -> List[dict]:
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk-de...")

    adata = io_utils.load_dataset(cfg.input_path)
    sample_meta = io_utils.load_sample_metadata(cfg.sample_metadata) if cfg.sample_metadata else None

    gene_sets: Dict[str, Dict[str, List[str]]] = {}
    if any(c.run_gsea for c in cfg.comparisons) and cfg.gsea.gene_sets:
        gene_sets = io_utils.load_gene_sets(cfg.gsea.gene_sets)

    results, status = run_comparisons(
        adata,
        cfg.comparisons,
        n_jobs=cfg.n_jobs,
        counts_layer=cfg.counts_layer,
        sample_metadata=sample_meta,
        gene_sets=gene_sets,
        gsea=cfg.gsea,
        write_heatmap=cfg.write_heatmap,
    )

    for name, res in results.items():
        write_comparison_outputs(res, cfg.table_dir)

    reporting.write_status(status, cfg.output_dir)
    _write_settings(cfg.output_dir, "settings.txt", _settings_lines(cfg, list(gene_sets)))
    reporting.generate_de_report(
        out_dir=cfg.output_dir,
        cfg=cfg,
        version=__version__,
        records=status,
        top_tables={name: res.de.head(20) for name, res in results.items()},
    )

    n_failed = sum(1 for s in status if s["status"] != "ok")
    if n_failed:
        LOGGER.warning("%d / %d comparisons failed; see comparison_status.tsv", n_failed, len(status))
    LOGGER.info("Finished pseudobulk-de.")
    return status
