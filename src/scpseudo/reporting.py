from pathlib import Path
from datetime import datetime
import html
import json

from typing import Dict, List

import pandas as pd


STATUS_COLUMNS = [
    "comparison", "status", "reason", "message",
    "n_libraries", "n_dropped", "n_genes", "n_contrasts", "n_sig", "n_gene_sets",
]


# ======================================================================
# Public API
# ======================================================================

def status_frame(records: List[Dict]) -> pd.DataFrame:
    df = pd.DataFrame(records)
    for c in STATUS_COLUMNS:
        if c not in df.columns:
            df[c] = pd.NA
    return df[STATUS_COLUMNS]


def write_status(records: List[Dict], out_dir: Path) -> pd.DataFrame:
    """
    Write comparison status as TSV and JSON.

    Output:
      <out_dir>/comparison_status.tsv
      <out_dir>/comparison_status.json
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    df = status_frame(records)
    df.to_csv(out_dir / "comparison_status.tsv", sep="\t", index=False)
    with open(out_dir / "comparison_status.json", "w", encoding="utf-8") as fh:
        json.dump(records, fh, indent=2, default=str)
    return df


def generate_de_report(
    *,
    out_dir: Path,
    cfg,
    version: str,
    records: List[Dict],
    top_tables: Dict[str, pd.DataFrame],
) -> Path:
    """
    Generate a self-contained HTML run summary.

    Output:
      <out_dir>/report.html
    """
    out_dir = Path(out_dir).resolve()
    out_html = out_dir / "report.html"
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    css = """
    body {
      font-family: system-ui, -apple-system, sans-serif;
      margin: 2rem;
      max-width: 1400px;
    }

    .meta {
      background: #f6f8fa;
      border: 1px solid #ddd;
      padding: 1rem;
      border-radius: 6px;
      font-family: monospace;
      white-space: pre-wrap;
    }

    table.summary {
      border-collapse: collapse;
      margin-top: 1rem;
      margin-bottom: 2rem;
    }

    table.summary th,
    table.summary td {
      border: 1px solid #ccc;
      padding: 0.4rem 0.6rem;
      text-align: left;
    }

    table.summary th {
      background: #f0f0f0;
    }

    tr.failed td { background: #fdecea; }
    """

    cfg_json = cfg.model_dump_json(indent=2) if hasattr(cfg, "model_dump_json") else json.dumps(
        cfg.__dict__, indent=2, default=str
    )

    header = f"""
    <h1>scPseudo pseudobulk DE report</h1>

    <div class="meta">
    Version:   {html.escape(version)}
    Timestamp: {timestamp}

    Parameters:
    {html.escape(cfg_json)}
    </div>
    """

    body = [header, "<h2>Comparisons</h2>", _render_table(status_frame(records), row_class_col="status")]

    for name, df in top_tables.items():
        if df is None or df.empty:
            continue
        body.append(f"<details open><summary><h3>{html.escape(name)}</h3></summary>")
        body.append(_render_table(df))
        body.append("</details>")

    html_doc = f"""
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="utf-8">
      <title>scPseudo pseudobulk DE report</title>
      <style>{css}</style>
    </head>
    <body>
      {''.join(body)}
    </body>
    </html>
    """

    out_html.write_text(html_doc, encoding="utf-8")
    return out_html


# ======================================================================
# Helpers
# ======================================================================

def _fmt(v) -> str:
    if isinstance(v, (list, tuple)):
        return ", ".join(str(x) for x in v)
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return ""
    if isinstance(v, float):
        return f"{v:.4g}"
    return str(v)


def _render_table(df: pd.DataFrame, row_class_col: str = None) -> str:
    head = "".join(f"<th>{html.escape(str(c))}</th>" for c in df.columns)
    rows = []
    for _, r in df.iterrows():
        cls = f' class="{html.escape(str(r[row_class_col]))}"' if row_class_col else ""
        cells = "".join(f"<td>{html.escape(_fmt(r[c]))}</td>" for c in df.columns)
        rows.append(f"<tr{cls}>{cells}</tr>")
    return f"""
    <table class="summary">
      <thead><tr>{head}</tr></thead>
      <tbody>{''.join(rows)}</tbody>
    </table>
    """
