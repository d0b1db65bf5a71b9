import json

from scpseudo.config import PseudobulkDEConfig
from scpseudo.reporting import STATUS_COLUMNS, generate_de_report, status_frame, write_status


def _records():
    return [
        {"comparison": "DC1_covid", "status": "ok", "reason": "", "message": "", "n_libraries": 6},
        {
            "comparison": "pDC_covid",
            "status": "failed",
            "reason": "insufficient_replicates",
            "message": "level <covid> has 1 sample",
        },
    ]


def test_status_frame_has_all_columns():
    df = status_frame(_records())
    assert df.columns.tolist() == STATUS_COLUMNS
    assert df["reason"].tolist() == ["", "insufficient_replicates"]


def test_write_status(tmp_path):
    write_status(_records(), tmp_path)
    assert (tmp_path / "comparison_status.tsv").is_file()
    back = json.loads((tmp_path / "comparison_status.json").read_text())
    assert back[1]["reason"] == "insufficient_replicates"


def test_report_escapes_and_marks_failures(tmp_path):
    cfg = PseudobulkDEConfig(input_path="data.zarr", output_dir=tmp_path)
    path = generate_de_report(out_dir=tmp_path, cfg=cfg, version="0.1.0", records=_records(), top_tables={})
    text = path.read_text()
    assert path.name == "report.html"
    assert "level &lt;covid&gt; has 1 sample" in text
    assert 'class="failed"' in text
