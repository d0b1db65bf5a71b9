from __future__ import annotations

import json
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .design_utils import DesignSpec


class DesignConfig(BaseModel):
    factor: str
    reference: str
    levels: Optional[List[str]] = None
    covariates: List[str] = Field(default_factory=list)
    continuous: List[str] = Field(default_factory=list)
    cell_means: bool = False
    drop_confounded: bool = True

    @model_validator(mode="after")
    def check_reference(self):
        if self.levels is not None and self.reference not in self.levels:
            raise ValueError(
                f"reference {self.reference!r} is not one of the declared levels {self.levels}"
            )
        if self.factor in self.covariates or self.factor in self.continuous:
            raise ValueError(f"factor {self.factor!r} is also listed as a covariate")
        return self

    def to_spec(self) -> DesignSpec:
        return DesignSpec(
            factor=self.factor,
            reference=self.reference,
            levels=tuple(self.levels) if self.levels is not None else None,
            covariates=tuple(self.covariates),
            continuous=tuple(self.continuous),
            cell_means=self.cell_means,
            drop_confounded=self.drop_confounded,
        )


class ComparisonConfig(BaseModel):
    """One pseudobulk comparison: which cells, which design, which contrasts."""

    name: str = Field(..., min_length=1)

    # ---- Cells ----
    subset_key: Optional[str] = Field(
        None, description="obs column with the upstream subset / cell-type label"
    )
    subsets: Optional[List[str]] = Field(
        None, description="Subset labels to include (None = all cells). "
                          "More than one subset adds the subset to the library key."
    )
    sample_key: str = "sample"
    exclude_samples: List[str] = Field(default_factory=list)

    # ---- Model ----
    design: DesignConfig
    contrast: Optional[Union[str, List[str]]] = Field(
        None, description="Contrast expression(s); None = every level vs reference"
    )
    norm_method: Literal["poscounts", "ratio", "TMM", "upperquartile", "none"] = "poscounts"
    dispersion: Literal["trended", "tagwise", "common"] = "trended"
    robust: bool = True

    # ---- Thresholds ----
    min_cells: int = Field(10, ge=1)
    min_samples_per_level: int = Field(2, ge=1)
    min_count: int = Field(1, ge=0)
    min_count_samples: int = Field(5, ge=1)
    min_total_counts: int = Field(10, ge=0)
    min_pct: float = Field(0.0, ge=0.0, le=1.0)
    min_diff_pct: float = Field(0.0, ge=0.0, le=1.0)

    # ---- Enrichment ----
    run_gsea: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if any(ch in v for ch in "/\\"):
            raise ValueError(f"comparison name {v!r} must not contain path separators")
        return v

    @model_validator(mode="after")
    def check_subsets(self):
        if self.subsets is not None and self.subset_key is None:
            raise ValueError("subsets given without subset_key")
        return self

    @property
    def contrasts(self) -> List[str]:
        if self.contrast is None:
            return []
        if isinstance(self.contrast, str):
            return [self.contrast]
        return list(self.contrast)


class GseaConfig(BaseModel):
    gene_sets: List[str] = Field(
        default_factory=lambda: ["HALLMARK"],
        description="MSigDB keywords (e.g. HALLMARK, REACTOME) or paths to .gmt files",
    )
    min_size: int = Field(15, ge=1)
    max_size: int = Field(500, ge=1)
    n_perm_simple: int = Field(1000, ge=1)
    sample_size: int = Field(101, ge=3)
    eps: float = Field(1e-50, ge=0.0)
    seed: int = 42
    gsea_param: float = Field(1.0, ge=0.0)

    @model_validator(mode="after")
    def check_sizes(self):
        if self.min_size > self.max_size:
            raise ValueError("min_size must be <= max_size")
        if self.sample_size % 2 == 0:
            raise ValueError("sample_size must be odd")
        return self


class PseudobulkDEConfig(BaseModel):

    # ---- Input ----
    input_path: Path = Field(..., description="Annotated .h5ad or .zarr with raw counts")
    counts_layer: Optional[str] = Field(
        "counts_raw", description="Layer holding raw counts (None = use .X)"
    )
    sample_metadata: Optional[Path] = Field(
        None, description="Per-sample covariate table (TSV/CSV, first column = sample id)"
    )

    # ---- Output ----
    output_dir: Path
    write_heatmap: bool = True

    # ---- Analyses ----
    comparisons: List[ComparisonConfig] = Field(default_factory=list)
    gsea: GseaConfig = Field(default_factory=GseaConfig)

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def table_dir(self) -> Path:
        return self.output_dir / "tables"

    @model_validator(mode="after")
    def check_unique_names(self):
        names = [c.name for c in self.comparisons]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate comparison names: {dupes}")
        return self


def load_comparisons_json(path: Path) -> List[ComparisonConfig]:
    """
    Read comparisons from JSON: either a list of comparison objects or
    {"comparisons": [...]}.
    """
    path = Path(path)
    with open(path) as fh:
        obj = json.load(fh)
    if isinstance(obj, dict):
        obj = obj.get("comparisons", [])
    if not isinstance(obj, list):
        raise ValueError(f"{path}: expected a list of comparisons")
    return [ComparisonConfig.model_validate(x) for x in obj]
