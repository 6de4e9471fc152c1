import json
import os
import tempfile
from datetime import date

import pytest

from risk_analytics.exception import RecordValidationError
from risk_analytics.ruleset import load_ruleset
from risk_analytics.run import build_metadata, main, write_metadata


ENTITIES_CSV = """customer_id,country,signup_date
1,USA,2023-01-10
2,India,2023-01-20
3,UK,2023-02-05
"""

EVENTS_CSV = """customer_id,month,status
1,2023-02-15,active
1,2023-03-15,cancelled
2,2023-02-25,active
3,2023-03-01,active
3,2023-03-20,active
"""


def write_inputs(directory, entities=ENTITIES_CSV, events=EVENTS_CSV):
    entities_path = os.path.join(directory, "entities.csv")
    events_path = os.path.join(directory, "events.csv")
    with open(entities_path, "w") as f:
        f.write(entities)
    with open(events_path, "w") as f:
        f.write(events)
    return entities_path, events_path


def test_metadata_written():
    with tempfile.TemporaryDirectory() as tmpdir:
        metadata = build_metadata(
            ruleset=load_ruleset("churn"),
            analysis_date=date(2023, 12, 31),
            summary={"valid_entities": 3},
            outputs={"detail": os.path.join(tmpdir, "detail.csv")},
            timestamp="2025-01-01T00:00:00+00:00",
        )
        metadata_path = write_metadata(tmpdir, metadata)

        assert os.path.exists(metadata_path)
        with open(metadata_path, "r") as f:
            loaded = json.load(f)
        assert loaded["ruleset_name"] == "churn"
        assert loaded["analysis_date"] == "2023-12-31"
        assert "summary" in loaded
        assert "outputs" in loaded


def test_cli_writes_reports(tmp_path):
    entities_path, events_path = write_inputs(str(tmp_path))
    artifacts = tmp_path / "artifacts"

    exit_code = main(
        [
            "--entities",
            entities_path,
            "--events",
            events_path,
            "--analysis-date",
            "2023-04-01",
            "--artifacts-dir",
            str(artifacts),
            "--max-workers",
            "2",
            "--store",
        ]
    )

    assert exit_code == 0
    expected = (
        "detail.csv",
        "features.csv",
        "summary.csv",
        "strategy_summary.csv",
        "pivot.csv",
        "cohort_retention.csv",
        "scores.pkl",
    )
    for name in expected:
        assert (artifacts / name).exists(), name

    with open(artifacts / "metadata.json") as f:
        metadata = json.load(f)
    assert metadata["summary"]["valid_entities"] == 3
    assert metadata["summary"]["valid_events"] == 5
    assert metadata["summary"]["churned_entities"] == 1
    assert metadata["summary"]["mode"] == "partial"

    detail_lines = (artifacts / "detail.csv").read_text().strip().splitlines()
    assert detail_lines[0].startswith("entity_id,region,score,category")
    assert [line.split(",")[0] for line in detail_lines[1:]] == ["1", "2", "3"]


def test_cli_partial_mode_skips_bad_rows(tmp_path):
    entities_path, events_path = write_inputs(
        str(tmp_path), events=EVENTS_CSV + "9,2023-03-01,active\n2,not-a-date,active\n"
    )

    main(
        [
            "--entities",
            entities_path,
            "--events",
            events_path,
            "--analysis-date",
            "2023-04-01",
            "--artifacts-dir",
            str(tmp_path / "out"),
        ]
    )

    with open(tmp_path / "out" / "metadata.json") as f:
        metadata = json.load(f)
    assert metadata["summary"]["error_count"] == 2
    assert metadata["summary"]["valid_events"] == 5


def test_cli_strict_mode_raises(tmp_path):
    entities_path, events_path = write_inputs(str(tmp_path), entities=ENTITIES_CSV + "4,,2023-03-01\n")

    with pytest.raises(RecordValidationError, match="Strict mode"):
        main(
            [
                "--entities",
                entities_path,
                "--events",
                events_path,
                "--analysis-date",
                "2023-04-01",
                "--artifacts-dir",
                str(tmp_path / "out"),
                "--strict",
            ]
        )
    assert not (tmp_path / "out" / "metadata.json").exists()
