from datetime import date, datetime, timedelta

import pytest

from risk_analytics.components.feature_extractor import (
    ExtractorConfig,
    extract_feature_frame,
    extract_features,
    group_events,
)
from risk_analytics.schemas.records import Event


def status_event(day, status, entity_id=1):
    return Event(entity_id=entity_id, timestamp=datetime(2023, 1, 1) + timedelta(days=day), status=status)


def amount_event(when, amount, entity_id=7):
    return Event(entity_id=entity_id, timestamp=when, amount=amount)


def test_status_features_ignore_input_order():
    events = [
        status_event(90, "cancelled"),
        status_event(0, "active"),
        status_event(60, "active"),
        status_event(30, "active"),
    ]

    features = extract_features(events, datetime(2023, 4, 11), ExtractorConfig())

    assert features.total_count == 4
    assert features.active_count == 3
    assert features.cancelled_count == 1
    assert features.avg_rate == pytest.approx(0.75)
    # Population standard deviation of [1, 1, 1, 0].
    assert features.volatility == pytest.approx(0.4330127, rel=1e-6)
    assert features.recency_days == pytest.approx(10.0)


def test_empty_history_uses_sentinels():
    features = extract_features([], date(2023, 6, 1))

    assert features.total_count == 0
    assert features.avg_rate == 0.0
    assert features.volatility == 0.0
    assert features.velocity == 0.0
    assert features.recency_days is None


def test_single_event_has_zero_volatility():
    features = extract_features([status_event(0, "cancelled")], datetime(2023, 1, 5))

    assert features.volatility == 0.0
    assert features.avg_rate == 0.0
    assert features.cancelled_count == 1


def test_events_outside_lookback_or_after_analysis_date_are_ignored():
    events = [
        status_event(0, "active"),
        status_event(200, "cancelled"),
        status_event(400, "active"),
    ]
    config = ExtractorConfig(lookback_days=100)

    features = extract_features(events, datetime(2023, 1, 1) + timedelta(days=250), config)

    assert features.total_count == 1
    assert features.cancelled_count == 1
    assert features.recency_days == pytest.approx(50.0)


def test_amount_features_and_velocity():
    start = datetime(2023, 6, 1, 0, 0, 0)
    events = [
        amount_event(start + timedelta(hours=1), 100.0),
        amount_event(start + timedelta(hours=2), 300.0),
        amount_event(start + timedelta(hours=13), 150000.0),
    ]
    config = ExtractorConfig(value_kind="amount", lookback_days=1, window_days=0.5, high_value_threshold=100000)

    features = extract_features(events, start + timedelta(hours=24), config)

    assert features.total_count == 3
    assert features.high_value_count == 1
    assert features.total_amount == pytest.approx(150400.0)
    assert features.avg_amount == pytest.approx(150400.0 / 3)
    assert features.max_amount == pytest.approx(150000.0)
    assert features.spike_ratio == pytest.approx(150000.0 / (150400.0 / 3))
    # Only the 13:00 transaction falls in the trailing half-day window.
    assert features.velocity == pytest.approx(2.0)
    # Activity spans 12 hours, so the daily amount doubles the total.
    assert features.amount_per_day == pytest.approx(300800.0)
    assert features.avg_rate == 0.0


def test_same_instant_activity_uses_total_amount_per_day():
    when = datetime(2023, 6, 1, 12, 0)
    features = extract_features(
        [amount_event(when, 500.0), amount_event(when, 700.0)],
        datetime(2023, 6, 2),
        ExtractorConfig(value_kind="amount", lookback_days=2, window_days=1),
    )

    assert features.amount_per_day == pytest.approx(1200.0)
    assert features.volatility == pytest.approx(100.0)


def test_tenure_from_signup_date():
    features = extract_features([], date(2023, 3, 1), signup_date=date(2023, 1, 30))

    assert features.tenure_days == pytest.approx(30.0)


def test_invalid_config_is_rejected():
    with pytest.raises(ValueError, match="value_kind"):
        ExtractorConfig(value_kind="ratio")
    with pytest.raises(ValueError, match="window_days"):
        ExtractorConfig(window_days=0)


def test_group_events_sorts_each_history():
    events = [status_event(5, "active", 2), status_event(1, "active", 1), status_event(0, "cancelled", 2)]

    grouped = group_events(events)

    assert sorted(grouped) == [1, 2]
    assert [event.status for event in grouped[2]] == ["cancelled", "active"]


def test_feature_frame_includes_entities_without_events():
    events = [status_event(0, "active", 1), status_event(10, "cancelled", 1)]

    frame = extract_feature_frame(events, datetime(2023, 2, 1), entity_ids=[1, 3])

    assert list(frame.index) == [1, 3]
    assert frame.loc[1, "total_count"] == 2
    assert frame.loc[3, "total_count"] == 0


def test_configured_statuses_match_case_insensitively():
    config = ExtractorConfig(active_status=" Active", cancelled_status="CANCELLED")
    events = [status_event(0, "Active"), status_event(1, "Cancelled"), status_event(2, "active")]

    features = extract_features(events, datetime(2023, 1, 10), config)

    assert config.active_status == "active"
    assert config.cancelled_status == "cancelled"
    assert features.active_count == 2
    assert features.cancelled_count == 1


def test_blank_status_name_is_rejected():
    with pytest.raises(ValueError, match="active_status"):
        ExtractorConfig(active_status="  ")
