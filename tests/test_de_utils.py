import numpy as np
import pandas as pd
import pytest

import scpseudo.de_utils as de_utils
from scpseudo.de_utils import DE_COLUMNS, bh_fdr, fit_ql, fit_summary, ql_f_test
from scpseudo.design_utils import DesignSpec, build_design
from scpseudo.errors import InvalidContrastError
from scpseudo.norm_utils import calc_norm_factors


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def four_sample_scenario():
    """2 healthy + 2 covid libraries; gene A 10x up in covid, B and C flat."""
    counts = pd.DataFrame(
        {
            "A": [98, 105, 1010, 985],
            "B": [502, 497, 510, 489],
            "C": [301, 296, 293, 305],
        },
        index=["healthy_1", "healthy_2", "covid_1", "covid_2"],
    )
    meta = pd.DataFrame(
        {"sample": ["S1", "S2", "S3", "S4"], "disease": ["healthy", "healthy", "covid", "covid"]},
        index=counts.index,
    )
    return counts, meta


def simulated(n_genes=120, n_per=3, seed=1, n_de=10):
    rng = np.random.default_rng(seed)
    n = 2 * n_per
    base = rng.uniform(20, 800, size=n_genes)
    fc = np.ones(n_genes)
    fc[:n_de] = 4.0
    mu = np.outer(base, np.ones(n))
    mu[:, n_per:] *= fc[:, None]
    lib_scale = rng.uniform(0.7, 1.3, size=n)
    mu = mu * lib_scale[None, :]
    r = 1.0 / 0.08
    y = rng.negative_binomial(r, r / (r + mu))
    libs = [f"L{i}" for i in range(n)]
    counts = pd.DataFrame(y.T, index=libs, columns=[f"G{j:03d}" for j in range(n_genes)])
    meta = pd.DataFrame(
        {"sample": [f"S{i}" for i in range(n)], "disease": ["healthy"] * n_per + ["covid"] * n_per},
        index=libs,
    )
    return counts, meta


# -------------------------------------------------------------------------
# Scenarios
# -------------------------------------------------------------------------
def test_upregulated_gene_ranks_first():
    counts, meta = four_sample_scenario()
    design = build_design(meta, DesignSpec(factor="disease", reference="healthy"))
    fit = fit_ql(counts, design, norm_factors=calc_norm_factors(counts), robust=False)
    res = ql_f_test(fit, "disease[covid]")

    assert list(res.columns) == DE_COLUMNS
    assert res.iloc[0]["gene"] == "A"
    assert res.set_index("gene")["logFC"].idxmax() == "A"
    assert res.set_index("gene").loc["A", "logFC"] == pytest.approx(np.log2(10), abs=0.3)
    assert np.all(np.abs(res.set_index("gene").loc[["B", "C"], "logFC"]) < 0.3)


def test_unknown_coefficient_raises_before_fitting(monkeypatch):
    counts, meta = four_sample_scenario()
    design = build_design(meta, DesignSpec(factor="disease", reference="healthy"))
    fit = fit_ql(counts, design, norm_factors=calc_norm_factors(counts))

    def _fail(*args, **kwargs):
        raise AssertionError("per-gene null model fitted for an invalid contrast")

    monkeypatch.setattr(de_utils, "_null_deviance", _fail)
    with pytest.raises(InvalidContrastError):
        ql_f_test(fit, "disease[influenza]")


def test_fdr_monotone_in_pvalue():
    counts, meta = simulated()
    design = build_design(meta, DesignSpec(factor="disease", reference="healthy"))
    fit = fit_ql(counts, design, norm_factors=calc_norm_factors(counts), robust=True)
    res = ql_f_test(fit, "disease[covid]")

    p = res["PValue"].to_numpy()
    fdr = res["FDR"].to_numpy()
    assert np.all(np.diff(p) >= 0)
    assert np.all(np.diff(fdr) >= -1e-15)
    assert np.all(fdr >= p - 1e-15)
    assert np.all((p >= 0) & (p <= 1))

    top = set(res["gene"].head(10))
    assert len(top & {f"G{j:03d}" for j in range(10)}) >= 7


def test_refit_is_bit_identical():
    counts, meta = simulated(seed=4)
    design = build_design(meta, DesignSpec(factor="disease", reference="healthy"))
    nf = calc_norm_factors(counts)

    fit1 = fit_ql(counts, design, norm_factors=nf)
    fit2 = fit_ql(counts, design, norm_factors=nf)
    assert np.array_equal(fit1.coefficients, fit2.coefficients)
    assert np.array_equal(fit1.s2_post, fit2.s2_post)

    pd.testing.assert_frame_equal(ql_f_test(fit1, "disease[covid]"), ql_f_test(fit2, "disease[covid]"))


def test_multi_column_contrast():
    counts, meta = simulated(n_per=2, seed=8)
    meta = meta.copy()
    meta["disease"] = ["healthy", "healthy", "mild", "mild"]
    counts3 = pd.concat([counts, counts.iloc[2:4].rename(index=lambda s: s + "x")])
    meta3 = pd.concat(
        [meta, pd.DataFrame({"sample": ["S4", "S5"], "disease": ["severe", "severe"]}, index=["L2x", "L3x"])]
    )
    design = build_design(meta3, DesignSpec(factor="disease", reference="healthy"))
    fit = fit_ql(counts3, design, norm_factors=calc_norm_factors(counts3))

    res = ql_f_test(fit, ["disease[mild]", "disease[severe]"], names=["mild", "severe"])
    assert {"logFC.mild", "logFC.severe", "F", "PValue", "FDR"} <= set(res.columns)
    assert "logFC" not in res.columns

    with pytest.raises(ValueError):
        ql_f_test(fit, ["disease[mild]", "disease[severe]"], names=["only_one"])


def test_fit_summary_columns():
    counts, meta = simulated(n_genes=30)
    design = build_design(meta, DesignSpec(factor="disease", reference="healthy"))
    fit = fit_ql(counts, design)
    summ = fit_summary(fit)
    assert summ.shape[0] == 30
    assert {"dispersion_trended", "s2_post", "coef.Intercept", "coef.disease[covid]"} <= set(summ.columns)


def test_bh_fdr_matches_manual():
    # sorted p .01, .03, .04, .5 -> raw BH .04, .06, .0533, .5 -> step-up minimum
    p = np.array([0.01, 0.04, 0.03, 0.5])
    np.testing.assert_allclose(bh_fdr(p), [0.04, 0.16 / 3, 0.16 / 3, 0.5])
