from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .pseudobulk_de import run_pseudobulk_de
from .config import GseaConfig, PseudobulkDEConfig, load_comparisons_json


app = typer.Typer(help="scPseudo CLI: pseudobulk quasi-likelihood DE and preranked GSEA for annotated scRNA-seq.")

warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_csv(values: Optional[List[str]]) -> Optional[List[str]]:
    """Supports e.g. --gene-sets HALLMARK,REACTOME --gene-sets my.gmt"""
    if values is None:
        return None
    expanded = []
    for v in values:
        expanded.extend([x.strip() for x in v.split(",") if x.strip()])
    return expanded


def _gene_sets_completion(ctx: typer.Context, args: List[str], incomplete: str) -> List[str]:
    prefix = incomplete.lower()
    standard_sets = ["HALLMARK", "REACTOME", "BIOCARTA", "KEGG", "WIKIPATHWAYS"]
    suggestions = [s for s in standard_sets if s.lower().startswith(prefix)]
    for f in sorted(Path.cwd().glob("*.gmt")):
        if f.name.lower().startswith(prefix):
            suggestions.append(str(f))
    return suggestions


# ======================================================================
#  pseudobulk-de
# ======================================================================
@app.command("pseudobulk-de", help="Pseudobulk QL differential expression + GSEA for configured comparisons.")
def pseudobulk_de(
    input_path: Path = typer.Option(
        ..., "--input-path", "-i", help="Annotated .h5ad or .zarr with raw counts."
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o", help="Output directory (required)."
    ),
    comparisons: Path = typer.Option(
        ..., "--comparisons", "-c", help="JSON file with the comparison definitions."
    ),
    counts_layer: Optional[str] = typer.Option(
        "counts_raw", help="Layer holding raw counts; use '' to read .X."
    ),
    sample_metadata: Optional[Path] = typer.Option(
        None, help="Per-sample covariate table (TSV/CSV, first column = sample id)."
    ),
    gene_sets: Optional[List[str]] = typer.Option(
        None,
        "--gene-sets",
        help="[GSEA] MSigDB keywords or .gmt paths (comma-separated or repeated).",
        autocompletion=_gene_sets_completion,
    ),
    min_size: int = typer.Option(15, help="[GSEA] Minimum gene-set size after intersection."),
    max_size: int = typer.Option(500, help="[GSEA] Maximum gene-set size after intersection."),
    n_perm_simple: int = typer.Option(1000, help="[GSEA] Permutations for the simple p-value / NES."),
    sample_size: int = typer.Option(101, help="[GSEA] Multilevel sample size (odd)."),
    seed: int = typer.Option(42, help="[GSEA] Random seed."),
    n_jobs: int = typer.Option(1, help="Comparisons run in parallel."),
    write_heatmap: bool = typer.Option(True, help="Write z-scored logCPM heatmap tables."),
):
    if not comparisons.is_file():
        raise typer.BadParameter(f"comparisons file not found: {comparisons}", param_hint="--comparisons")
    try:
        comps = load_comparisons_json(comparisons)
    except (ValidationError, ValueError) as e:
        raise typer.BadParameter(str(e), param_hint="--comparisons") from e
    if not comps:
        raise typer.BadParameter("no comparisons defined", param_hint="--comparisons")

    gsea_kwargs = dict(
        min_size=min_size,
        max_size=max_size,
        n_perm_simple=n_perm_simple,
        sample_size=sample_size,
        seed=seed,
    )
    gene_sets_list = _split_csv(gene_sets)
    # Only insert explicitly if user provided it
    if gene_sets_list is not None:
        gsea_kwargs["gene_sets"] = gene_sets_list

    try:
        cfg = PseudobulkDEConfig(
            input_path=input_path,
            output_dir=output_dir,
            comparisons=comps,
            counts_layer=counts_layer or None,
            sample_metadata=sample_metadata,
            gsea=GseaConfig(**gsea_kwargs),
            n_jobs=n_jobs,
            write_heatmap=write_heatmap,
            logfile=output_dir / "pseudobulk-de.log",
        )
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e

    status = run_pseudobulk_de(cfg)
    n_failed = sum(1 for s in status if s["status"] != "ok")
    typer.echo(f"{len(status) - n_failed}/{len(status)} comparisons completed; outputs in {output_dir}")


# ======================================================================
#  list-gene-sets
# ======================================================================
@app.command("list-gene-sets", help="List MSigDB keywords available for --gene-sets.")
def list_gene_sets():
    from .io_utils import list_available_msigdb_keywords

    for key in list_available_msigdb_keywords():
        typer.echo(key)


if __name__ == "__main__":
    app()
