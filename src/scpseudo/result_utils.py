# src/scpseudo/result_utils.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .de_utils import DE_COLUMNS
from .gsea_utils import ENRICHMENT_COLUMNS

LOGGER = logging.getLogger(__name__)

LIST_SEP = ","


def attach_identifier(df: pd.DataFrame, *, id_col: str = "gene") -> pd.DataFrame:
    """
    Make the identifier an explicit column.

    If the frame carries it as the (named or unnamed) row index, the index is
    moved into `id_col`; the returned frame always has a RangeIndex.
    """
    out = df.copy()
    if id_col in out.columns:
        return out.reset_index(drop=True)
    idx_name = out.index.name
    out = out.reset_index()
    out = out.rename(columns={idx_name if idx_name is not None else "index": id_col})
    return out


def _keep_public(df: pd.DataFrame, required: Sequence[str], *, keep_extra: Sequence[str] = ()) -> pd.DataFrame:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise KeyError(f"result table missing required columns: {missing}")
    cols = list(required) + [c for c in keep_extra if c in df.columns and c not in required]
    return df.loc[:, cols]


def build_de_table(
    res: pd.DataFrame,
    *,
    id_col: str = "gene",
    keep_extra: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Canonical DE table: gene, logFC, logCPM, F, PValue, FDR.

    Multi-column contrasts keep every logFC.<name> column in place of logFC.
    Internal columns are dropped unless listed in keep_extra.
    """
    df = attach_identifier(res, id_col=id_col)
    if id_col != "gene":
        df = df.rename(columns={id_col: "gene"})

    fc_cols = [c for c in df.columns if c == "logFC" or str(c).startswith("logFC.")]
    required = ["gene"] + fc_cols + [c for c in DE_COLUMNS if c not in ("gene", "logFC")]
    return _keep_public(df, required, keep_extra=keep_extra).reset_index(drop=True)


def build_enrichment_table(res: pd.DataFrame) -> pd.DataFrame:
    """Canonical enrichment table; leadingEdge stays a list of gene ids."""
    if res.empty:
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)
    df = attach_identifier(res, id_col="pathway")
    df = _keep_public(df, ENRICHMENT_COLUMNS)
    df["leadingEdge"] = df["leadingEdge"].map(_as_list)
    return df.reset_index(drop=True)


def _as_list(v) -> list:
    if isinstance(v, (list, tuple, np.ndarray, pd.Index)):
        return [str(x) for x in v]
    if isinstance(v, str):
        return [x for x in v.split(LIST_SEP) if x]
    return []


def stack_contrast_tables(
    tables: Mapping[str, pd.DataFrame],
    *,
    key: str = "contrast",
) -> pd.DataFrame:
    """
    Long format: one block per contrast with a leading `key` column.

    Blocks keep their own row order; contrasts appear in mapping order.
    """
    blocks = []
    for name, df in tables.items():
        if df is None or df.empty:
            continue
        block = df.copy()
        block.insert(0, key, str(name))
        blocks.append(block)
    if not blocks:
        first = next(iter(tables.values()), None)
        cols = [key] + (list(first.columns) if first is not None else [])
        return pd.DataFrame(columns=cols)
    return pd.concat(blocks, axis=0, ignore_index=True)


def serialize_lists(df: pd.DataFrame, cols: Sequence[str] = ("leadingEdge",)) -> pd.DataFrame:
    out = df.copy()
    for c in cols:
        if c in out.columns:
            out[c] = out[c].map(lambda v: LIST_SEP.join(_as_list(v)))
    return out


def write_table(df: pd.DataFrame, path: Path, *, index: bool = False) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    serialize_lists(df).to_csv(path, sep="\t", index=index)
    LOGGER.info("Wrote %s (%d rows)", path, df.shape[0])
    return path


def read_enrichment_table(path: Path) -> pd.DataFrame:
    df = pd.read_csv(path, sep="\t", keep_default_na=False, na_values=[""])
    if "leadingEdge" in df.columns:
        df["leadingEdge"] = df["leadingEdge"].fillna("").map(_as_list)
    return df


def summarize_de(res: pd.DataFrame, *, fdr: float = 0.05, lfc: Optional[float] = None) -> dict:
    """Counts of significant genes by direction (for status rows and the report)."""
    sig = res["FDR"] < fdr
    fc = res["logFC"] if "logFC" in res.columns else None
    if lfc is not None and fc is not None:
        sig &= fc.abs() >= lfc
    out = {"n_genes": int(res.shape[0]), "n_sig": int(sig.sum())}
    if fc is not None:
        out["n_up"] = int((sig & (fc > 0)).sum())
        out["n_down"] = int((sig & (fc < 0)).sum())
    return out
