import numpy as np
import pandas as pd
import pytest
import anndata as ad
import scipy.sparse as sp

from scpseudo.errors import DesignDegenerateError, NoGenesLeftError
from scpseudo.pseudobulk_utils import (
    apply_min_pct_filters,
    filter_by_counts,
    filter_genes,
    pseudobulk_aggregate,
    require_levels,
)


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def make_adata(cells=None, n_genes=12, seed=0, sparse=True):
    """
    cells: {(sample, subset): n_cells}. Disease is 'covid' for samples S3/S4.
    """
    if cells is None:
        cells = {
            ("S1", "DC1"): 15, ("S1", "DC2"): 12,
            ("S2", "DC1"): 20, ("S2", "DC2"): 11,
            ("S3", "DC1"): 14, ("S3", "DC2"): 18,
            ("S4", "DC1"): 16, ("S4", "DC2"): 3,
        }
    rng = np.random.default_rng(seed)
    obs_rows = []
    for (s, g), n in cells.items():
        for _ in range(n):
            obs_rows.append({"sample": s, "cell_type": g, "disease": "covid" if s in ("S3", "S4") else "healthy"})
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"c{i}" for i in range(obs.shape[0])]
    X = rng.poisson(2.0, size=(obs.shape[0], n_genes)).astype(np.float32)
    var = pd.DataFrame(index=[f"G{j}" for j in range(n_genes)])
    adata = ad.AnnData(X=sp.csr_matrix(X) if sparse else X, obs=obs, var=var)
    adata.layers["counts_raw"] = adata.X.copy()
    return adata


# -------------------------------------------------------------------------
# Aggregation
# -------------------------------------------------------------------------
def test_profile_equals_sum_of_cells():
    adata = make_adata()
    pb = pseudobulk_aggregate(
        adata, sample_key="sample", group_key="cell_type", counts_layer="counts_raw", min_cells=1
    )

    X = adata.layers["counts_raw"].toarray()
    for pid, row in pb.metadata.iterrows():
        mask = (
            (adata.obs["sample"] == row["sample"]) & (adata.obs["cell_type"] == row["group"])
        ).to_numpy()
        np.testing.assert_array_equal(pb.counts.loc[pid].to_numpy(), X[mask].sum(axis=0).astype(np.int64))
        assert row["n_cells"] == mask.sum()

    assert pb.counts.shape == (8, 12)
    assert pb.counts.dtypes.unique().tolist() == [np.dtype("int64")]


def test_dense_and_sparse_inputs_agree():
    a = pseudobulk_aggregate(make_adata(sparse=True), sample_key="sample", group_key="cell_type", min_cells=1)
    b = pseudobulk_aggregate(make_adata(sparse=False), sample_key="sample", group_key="cell_type", min_cells=1)
    pd.testing.assert_frame_equal(a.counts, b.counts)


def test_library_below_min_cells_is_absent_and_reported():
    adata = make_adata()
    pb = pseudobulk_aggregate(adata, sample_key="sample", group_key="cell_type", min_cells=10)

    assert "S4|DC2" not in pb.counts.index
    assert "S4|DC2" not in pb.metadata.index
    assert pb.n_libraries == 7

    dropped = pb.dropped
    assert dropped.shape[0] == 1
    rec = dropped.iloc[0]
    assert (rec["sample"], rec["group"], rec["n_cells"], rec["reason"]) == ("S4", "DC2", 3, "below_min_cells")


def test_excluded_samples_never_contribute():
    adata = make_adata()
    pb = pseudobulk_aggregate(
        adata, sample_key="sample", group_key="cell_type", min_cells=1, exclude_samples=["S2"]
    )
    assert not pb.metadata["sample"].eq("S2").any()
    ex = pb.dropped[pb.dropped["reason"] == "excluded"]
    assert sorted(ex["group"]) == ["DC1", "DC2"]
    assert set(ex["sample"]) == {"S2"}


def test_sample_only_aggregation_and_restriction():
    adata = make_adata()
    mask = (adata.obs["cell_type"] == "DC1").to_numpy()
    pb = pseudobulk_aggregate(adata, sample_key="sample", min_cells=1, restrict_cells_mask=mask)

    assert list(pb.metadata["group"].unique()) == ["ALL"]
    assert pb.metadata["n_cells"].tolist() == [15, 20, 14, 16]


def test_sample_covariates_from_obs_and_table():
    adata = make_adata()
    pb = pseudobulk_aggregate(
        adata, sample_key="sample", group_key="cell_type", min_cells=1, covariates=["disease"]
    )
    assert pb.metadata.loc["S3|DC1", "disease"] == "covid"
    assert pb.metadata.loc["S1|DC2", "disease"] == "healthy"

    meta = pd.DataFrame({"age": [30, 40, 50, 60]}, index=["S1", "S2", "S3", "S4"])
    pb2 = pseudobulk_aggregate(
        adata, sample_key="sample", group_key="cell_type", min_cells=1,
        covariates=["age"], sample_metadata=meta,
    )
    assert pb2.metadata.loc["S2|DC2", "age"] == 40


def test_covariate_varying_within_sample_raises():
    adata = make_adata()
    adata.obs["batch"] = ["b1", "b2"] * (adata.n_obs // 2) + ["b1"] * (adata.n_obs % 2)
    with pytest.raises(ValueError, match="not constant within sample"):
        pseudobulk_aggregate(adata, sample_key="sample", min_cells=1, covariates=["batch"])


def test_missing_counts_layer_raises():
    with pytest.raises(KeyError):
        pseudobulk_aggregate(make_adata(), sample_key="sample", counts_layer="nope")


def test_require_levels():
    meta = pd.DataFrame({"disease": ["healthy", "healthy"]})
    with pytest.raises(DesignDegenerateError):
        require_levels(meta, "disease")
    meta2 = pd.DataFrame({"disease": ["healthy", "covid"]})
    assert require_levels(meta2, "disease") == ["covid", "healthy"]


# -------------------------------------------------------------------------
# Gene filters
# -------------------------------------------------------------------------
def test_filter_by_counts():
    counts = pd.DataFrame(
        {"a": [5, 5, 5, 0], "b": [2, 0, 0, 0], "c": [1, 1, 1, 1]},
        index=["L1", "L2", "L3", "L4"],
    )
    out = filter_by_counts(counts, min_count=1, min_samples=3)
    assert list(out.columns) == ["a"]


def test_filter_genes_raises_when_nothing_survives():
    counts = pd.DataFrame({"a": [0, 1, 0], "b": [1, 0, 0]}, index=["L1", "L2", "L3"])
    with pytest.raises(NoGenesLeftError) as exc:
        filter_genes(counts, min_count=1, min_samples=2, min_total_counts=0)
    assert exc.value.reason == "no_genes"


def test_apply_min_pct_filters():
    counts = pd.DataFrame(
        {"on_in_A": [3, 4, 0, 0], "everywhere": [1, 1, 1, 1], "rare": [0, 1, 0, 0]},
        index=["a1", "a2", "b1", "b2"],
    )
    labels = pd.Series(["A", "A", "B", "B"], index=counts.index)

    out, meta = apply_min_pct_filters(counts, labels, level_A="A", level_B="B", min_pct=0.75)
    assert list(out.columns) == ["on_in_A", "everywhere"]
    assert meta["n_genes_after"] == 2

    out, _ = apply_min_pct_filters(counts, labels, level_A="A", level_B="B", min_diff_pct=0.5)
    assert list(out.columns) == ["on_in_A", "rare"]

    out, meta = apply_min_pct_filters(counts, labels, level_A="A", level_B="B")
    assert out.shape == counts.shape


def test_sample_ids_with_separator_characters_stay_intact():
    adata = make_adata(cells={("S||1", "DC1"): 12, ("S||1", "DC2"): 11, ("S2", "DC1"): 10})
    pb = pseudobulk_aggregate(
        adata, sample_key="sample", group_key="cell_type", counts_layer="counts_raw", min_cells=1
    )
    assert pb.metadata["sample"].tolist() == ["S2", "S||1", "S||1"]
    assert pb.metadata["group"].tolist() == ["DC1", "DC1", "DC2"]
    assert pb.metadata["n_cells"].tolist() == [10, 12, 11]
    assert pb.counts.index.tolist() == ["S2|DC1", "S||1|DC1", "S||1|DC2"]
