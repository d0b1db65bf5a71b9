import json

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scpseudo import io_utils
from scpseudo.io_utils import (
    load_dataset,
    load_gene_sets,
    load_sample_metadata,
    msigdb_keywords,
    read_gmt,
    resolve_gene_set_sources,
    write_gmt,
)


def test_gmt_roundtrip_and_duplicates(tmp_path):
    path = write_gmt({"IFN": ["IFI27", "ISG15"], "HYPOXIA": ["PGK1"]}, tmp_path / "custom.gmt")
    with open(path, "a") as fh:
        fh.write("IFN\tNA\tOTHER\n")
        fh.write("broken_line\n")
    assert read_gmt(path) == {"IFN": ["IFI27", "ISG15"], "HYPOXIA": ["PGK1"]}


def test_sample_metadata_tsv_and_csv(tmp_path):
    tsv = tmp_path / "meta.tsv"
    tsv.write_text("sample\tbatch\tage\nS1\tb1\t30\nS2\tb2\t41\n")
    df = load_sample_metadata(tsv)
    assert df.index.tolist() == ["S1", "S2"]
    assert df.loc["S2", "batch"] == "b2"

    csv = tmp_path / "meta.csv"
    csv.write_text("sample,batch\n1,b1\n1,b2\n")
    with pytest.raises(ValueError, match="duplicated"):
        load_sample_metadata(csv)


def test_load_dataset_formats(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_dataset(tmp_path / "missing.h5ad")

    bad = tmp_path / "data.loom"
    bad.write_text("")
    with pytest.raises(ValueError):
        load_dataset(bad)

    adata = ad.AnnData(X=np.ones((3, 2), dtype=np.float32))
    adata.write_h5ad(tmp_path / "data.h5ad")
    assert load_dataset(tmp_path / "data.h5ad").shape == (3, 2)


def test_msigdb_keywords():
    assert msigdb_keywords("h.all.v2023.1.Hs.symbols.gmt") == ["H_ALL", "ALL", "HALLMARK"]
    assert msigdb_keywords("c2.cp.reactome.v2023.1.Hs.symbols.gmt") == ["C2_CP_REACTOME", "REACTOME"]


def test_resolve_local_gmt_and_cached_keyword(tmp_path, monkeypatch):
    monkeypatch.setenv("SCPSEUDO_MSIGDB_DIR", str(tmp_path / "cache"))
    hallmark = write_gmt({"HALLMARK_HYPOXIA": ["PGK1", "LDHA"]}, tmp_path / "cache" / "h.all.gmt")
    (tmp_path / "cache" / "msigdb_index.json").write_text(
        json.dumps({"release": "2023.1.Hs", "files": {"HALLMARK": str(hallmark)}})
    )
    custom = write_gmt({"MY_SET": ["A", "B"]}, tmp_path / "my_sets.gmt")

    sources = resolve_gene_set_sources(["hallmark", str(custom), str(tmp_path / "missing.gmt")])
    assert [label for label, _ in sources] == ["HALLMARK", "my_sets"]

    sets = load_gene_sets([str(custom)])
    assert sets == {"my_sets": {"MY_SET": ["A", "B"]}}


def test_resolve_fails_when_nothing_resolves(tmp_path, monkeypatch):
    monkeypatch.setattr(io_utils, "_load_msigdb_index", lambda: ("2023.1.Hs", {"HALLMARK": "x.gmt"}))
    with pytest.raises(ValueError):
        resolve_gene_set_sources(["NOT_A_COLLECTION"])
    with pytest.raises(ValueError):
        resolve_gene_set_sources([])
