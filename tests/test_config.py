import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from scpseudo.config import (
    ComparisonConfig,
    DesignConfig,
    GseaConfig,
    PseudobulkDEConfig,
    load_comparisons_json,
)


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def comparison(name="covid_vs_healthy", **kwargs):
    kwargs.setdefault("design", {"factor": "disease", "reference": "healthy"})
    return ComparisonConfig(name=name, **kwargs)


# -------------------------------------------------------------------------
# DesignConfig
# -------------------------------------------------------------------------
def test_design_reference_must_be_declared_level():
    with pytest.raises(ValidationError):
        DesignConfig(factor="disease", reference="flu", levels=["healthy", "covid"])

    spec = DesignConfig(factor="disease", reference="healthy", levels=["healthy", "covid"]).to_spec()
    assert spec.levels == ("healthy", "covid")
    assert spec.covariates == ()


def test_design_factor_cannot_be_covariate():
    with pytest.raises(ValidationError):
        DesignConfig(factor="disease", reference="healthy", covariates=["disease"])


# -------------------------------------------------------------------------
# ComparisonConfig
# -------------------------------------------------------------------------
def test_comparison_defaults():
    c = comparison()
    assert c.sample_key == "sample"
    assert c.norm_method == "poscounts"
    assert c.dispersion == "trended"
    assert c.robust is True
    assert c.min_cells == 10
    assert c.contrasts == []
    assert c.run_gsea is True


def test_comparison_contrast_forms():
    assert comparison(contrast="disease[covid]").contrasts == ["disease[covid]"]
    assert comparison(contrast=["a", "b"]).contrasts == ["a", "b"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "a/b"},
        {"subsets": ["DC1"]},
        {"norm_method": "deseq"},
        {"min_pct": 1.5},
        {"min_cells": 0},
    ],
)
def test_comparison_validation(kwargs):
    name = kwargs.pop("name", "c1")
    with pytest.raises(ValidationError):
        comparison(name=name, **kwargs)


# -------------------------------------------------------------------------
# GseaConfig / PseudobulkDEConfig
# -------------------------------------------------------------------------
def test_gsea_defaults_and_bounds():
    g = GseaConfig()
    assert g.gene_sets == ["HALLMARK"]
    assert g.sample_size == 101
    assert g.seed == 42

    with pytest.raises(ValidationError):
        GseaConfig(min_size=50, max_size=10)
    with pytest.raises(ValidationError):
        GseaConfig(sample_size=100)


def test_top_level_config(tmp_path):
    cfg = PseudobulkDEConfig(
        input_path="data.zarr",
        output_dir=tmp_path,
        comparisons=[comparison("a"), comparison("b")],
    )
    assert cfg.input_path == Path("data.zarr")
    assert cfg.counts_layer == "counts_raw"
    assert cfg.table_dir == tmp_path / "tables"
    assert cfg.n_jobs == 1

    with pytest.raises(ValidationError):
        PseudobulkDEConfig(
            input_path="data.zarr",
            output_dir=tmp_path,
            comparisons=[comparison("a"), comparison("a")],
        )


@pytest.mark.parametrize("wrap", [False, True])
def test_load_comparisons_json(tmp_path, wrap):
    items = [
        {
            "name": "DC_covid_vs_healthy",
            "subset_key": "cell_type",
            "subsets": ["DC1", "DC2"],
            "design": {"factor": "disease", "reference": "healthy", "covariates": ["batch"]},
        }
    ]
    path = tmp_path / "comparisons.json"
    path.write_text(json.dumps({"comparisons": items} if wrap else items))

    comps = load_comparisons_json(path)
    assert len(comps) == 1
    assert comps[0].subsets == ["DC1", "DC2"]
    assert comps[0].design.covariates == ["batch"]


def test_load_comparisons_json_rejects_scalar(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("42")
    with pytest.raises(ValueError):
        load_comparisons_json(path)
