from datetime import date, datetime, timedelta

from risk_analytics.components.score_store import ScoreStore, ScoreStoreConfig, make_key
from risk_analytics.pipeline import ScoringPipeline, ScoringPipelineConfig
from risk_analytics.ruleset import load_ruleset
from risk_analytics.schemas.records import Entity, Event, RiskCategory


REGIONS = ["USA", "UK", "India", "Germany"]


def population(size=40):
    entities = []
    events = []
    start = datetime(2023, 1, 1)
    for entity_id in range(size, 0, -1):
        entities.append(Entity(id=entity_id, region=REGIONS[entity_id % len(REGIONS)]))
        for month in range(entity_id % 7):
            status = "cancelled" if (entity_id + month) % 3 == 0 else "active"
            events.append(
                Event(entity_id=entity_id, timestamp=start + timedelta(days=30 * month), status=status)
            )
    return entities, events


def test_parallel_matches_sequential():
    entities, events = population()
    ruleset = load_ruleset("churn")
    analysis_date = date(2023, 12, 31)

    sequential = ScoringPipeline(ruleset, ScoringPipelineConfig(max_workers=1)).run(entities, events, analysis_date)
    parallel = ScoringPipeline(ruleset, ScoringPipelineConfig(max_workers=8)).run(entities, events, analysis_date)

    assert sequential == parallel
    assert [result.entity_id for result in parallel] == list(range(1, 41))


def test_entity_without_events_is_still_scored():
    pipeline = ScoringPipeline(load_ruleset("churn"))

    results = pipeline.run([Entity(id=7, region="Germany")], [], date(2023, 6, 1))

    assert len(results) == 1
    assert results[0].score == 0
    assert results[0].category == RiskCategory.VERY_LOW
    assert results[0].segment.strategy == "Monitor Only"


def test_events_for_other_entities_are_ignored():
    pipeline = ScoringPipeline(load_ruleset("churn"))
    entity = Entity(id=1, region="USA")
    events = [
        Event(entity_id=2, timestamp=datetime(2023, 1, 1), status="cancelled"),
        Event(entity_id=1, timestamp=datetime(2023, 5, 30), status="active"),
    ]

    result = pipeline.score_entity(entity, events, date(2023, 6, 1))

    assert result.features.total_count == 1
    assert result.features.cancelled_count == 0


def test_fraud_ruleset_scores_high_velocity_accounts():
    ruleset = load_ruleset("fraud")
    start = datetime(2023, 6, 1)
    events = [
        Event(entity_id=11, timestamp=start + timedelta(minutes=5 + 10 * i), amount=60000.0)
        for i in range(60)
    ]

    results = ScoringPipeline(ruleset).run([Entity(id=11, region="Asia")], events, start + timedelta(days=1))

    assert results[0].features.velocity == 60
    assert results[0].contributions == {
        "transaction_velocity": 25,
        "daily_amount": 30,
        "amount_spike": 0,
        "large_average_transaction": 20,
    }
    assert results[0].score == 75
    assert results[0].category == RiskCategory.HIGH
    assert results[0].segment.strategy == "High Risk - Priority Investigation"
    assert results[0].value == 3600000.0


def test_results_are_written_to_store(tmp_path):
    store = ScoreStore(
        ScoreStoreConfig(
            snapshot_file_path=str(tmp_path / "scores.pkl"),
            audit_log_file_path=str(tmp_path / "audit.jsonl"),
        )
    )
    entities, events = population(5)
    ruleset = load_ruleset("churn")
    pipeline = ScoringPipeline(ruleset, ScoringPipelineConfig(store_results=True), store=store)

    pipeline.run(entities, events, date(2023, 12, 31))
    pipeline.run(entities, events, date(2023, 12, 31))

    assert len(store) == 5
    assert store.get(make_key(3, date(2023, 12, 31), ruleset.version)) is not None
    assert not (tmp_path / "audit.jsonl").exists()


def test_sales_ruleset_segments_customers():
    ruleset = load_ruleset("sales")
    analysis_date = datetime(2023, 12, 31)
    vip = [
        Event(entity_id=1, timestamp=analysis_date - timedelta(days=5 + i), amount=500.0)
        for i in range(25)
    ]
    occasional = [
        Event(entity_id=2, timestamp=analysis_date - timedelta(days=100 + 10 * i), amount=1000.0)
        for i in range(3)
    ]
    entities = [Entity(id=1, region="USA"), Entity(id=2, region="UK"), Entity(id=3, region="India")]

    results = ScoringPipeline(ruleset).run(entities, vip + occasional, analysis_date)

    assert [result.score for result in results] == [100, 30, 0]
    assert [result.segment.strategy for result in results] == [
        "VIP Customer",
        "Occasional Customer",
        "At Risk Customer",
    ]
    assert results[0].contributions == {"revenue": 40, "purchase_frequency": 20, "purchase_recency": 40}
    assert results[0].value == 12500.0
