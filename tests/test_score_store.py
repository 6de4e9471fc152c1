import json
from datetime import date

import pytest

from risk_analytics.components.score_store import ScoreStore, ScoreStoreConfig, make_key
from risk_analytics.schemas.records import FeatureVector, RiskCategory, ScoredEntity, Segment


ANALYSIS_DATE = date(2023, 12, 31)


def scored(score=30, category=RiskCategory.LOW):
    return ScoredEntity(
        entity_id=42,
        region="UK",
        features=FeatureVector(total_count=4, active_count=2, cancelled_count=2, avg_rate=0.5),
        score=score,
        category=category,
        segment=Segment(strategy="Monitor Only", action="Include in loyalty program"),
    )


@pytest.fixture
def store(tmp_path):
    return ScoreStore(
        ScoreStoreConfig(
            snapshot_file_path=str(tmp_path / "scores.pkl"),
            audit_log_file_path=str(tmp_path / "score_audit.jsonl"),
        ),
        actor="analyst",
    )


def audit_lines(store):
    try:
        with open(store.store_config.audit_log_file_path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
    except FileNotFoundError:
        return []


def test_identical_rewrite_is_a_no_op(store):
    key = make_key(42, ANALYSIS_DATE, "1.0.0")

    assert store.put(key, scored()) is True
    assert store.put(key, scored()) is False
    assert audit_lines(store) == []


def test_changed_score_writes_one_audit_line(store):
    key = make_key(42, ANALYSIS_DATE, "1.0.0")
    store.put(key, scored())

    assert store.put(key, scored(score=45, category=RiskCategory.MEDIUM)) is True

    lines = audit_lines(store)
    assert len(lines) == 1
    record = lines[0]
    assert record["operation_type"] == "UPDATE"
    assert record["entity_id"] == 42
    assert record["analysis_date"] == "2023-12-31"
    assert record["ruleset_version"] == "1.0.0"
    assert record["old_values"]["score"] == 30
    assert record["new_values"]["category"] == "Medium"
    assert record["changed_by"] == "analyst"
    assert store.get(key)["score"] == 45


def test_ruleset_version_is_part_of_the_key(store):
    store.put(make_key(42, ANALYSIS_DATE, "1.0.0"), scored())
    store.put(make_key(42, ANALYSIS_DATE, "1.1.0"), scored(score=45, category=RiskCategory.MEDIUM))

    assert len(store) == 2
    assert audit_lines(store) == []


def test_snapshot_round_trip(store):
    key = make_key(42, ANALYSIS_DATE, "1.0.0")
    store.put(key, scored())
    store.save()

    reloaded = ScoreStore(store.store_config)

    assert reloaded.load() == 1
    assert reloaded.get(key)["strategy"] == "Monitor Only"


def test_load_without_snapshot(store):
    assert store.load() == 0
    assert len(store) == 0
