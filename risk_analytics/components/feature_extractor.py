from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable

import numpy as np
import pandas as pd

from risk_analytics.schemas.records import Event, FeatureVector
from risk_analytics.logger import logging


VALUE_KINDS = {"status", "amount"}
_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ExtractorConfig:
    value_kind: str = "status"
    lookback_days: float = 365.0
    window_days: float = 30.0
    high_value_threshold: float = 100000.0
    active_status: str = "active"
    cancelled_status: str = "cancelled"

    def __post_init__(self) -> None:
        if self.value_kind not in VALUE_KINDS:
            raise ValueError("'value_kind' must be one of: amount, status")
        if self.lookback_days <= 0:
            raise ValueError("'lookback_days' must be positive")
        if self.window_days <= 0:
            raise ValueError("'window_days' must be positive")
        if self.high_value_threshold < 0:
            raise ValueError("'high_value_threshold' must not be negative")
        # Event statuses are stored lowercased.
        for name in ("active_status", "cancelled_status"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{name}' must be a non-empty string")
            object.__setattr__(self, name, value.strip().lower())


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ValueError("'analysis_date' must be a date or datetime")


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / _SECONDS_PER_DAY


def _population_std(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def _safe_ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0.0
    return float(numerator / denominator)


def select_history(
    events: Iterable[Event],
    analysis_date: date | datetime,
    lookback_days: float,
) -> list[Event]:
    """Return the events inside the lookback window, oldest first."""
    as_of = _as_datetime(analysis_date)
    start = as_of - timedelta(days=lookback_days)
    in_window = [event for event in events if start < event.timestamp <= as_of]
    return sorted(in_window, key=lambda event: event.timestamp)


def extract_features(
    events: Iterable[Event],
    analysis_date: date | datetime,
    config: ExtractorConfig | None = None,
    signup_date: date | None = None,
) -> FeatureVector:
    """Aggregate one entity's events into a ``FeatureVector``.

    Events may arrive in any order. Empty histories produce zeros for the
    rate-type features and ``None`` for recency; nothing here divides by
    zero.
    """
    cfg = config or ExtractorConfig()
    as_of = _as_datetime(analysis_date)
    history = select_history(events, as_of, cfg.lookback_days)

    tenure_days = None
    if signup_date is not None:
        tenure_days = max(0.0, _days_between(_as_datetime(signup_date), as_of))

    if not history:
        return FeatureVector(tenure_days=tenure_days)

    total_count = len(history)
    active_count = sum(1 for event in history if event.status == cfg.active_status)
    cancelled_count = sum(1 for event in history if event.status == cfg.cancelled_status)
    amounts = [event.amount for event in history if event.amount is not None]
    high_value_count = sum(1 for amount in amounts if amount > cfg.high_value_threshold)

    if cfg.value_kind == "status":
        series = [1.0 if event.status == cfg.active_status else 0.0 for event in history]
    else:
        series = list(amounts)

    recency_days = _days_between(history[-1].timestamp, as_of)

    window_start = as_of - timedelta(days=cfg.window_days)
    in_window = sum(1 for event in history if event.timestamp > window_start)
    velocity = in_window / cfg.window_days

    total_amount = float(sum(amounts))
    avg_amount = _safe_ratio(total_amount, len(amounts))
    max_amount = float(max(amounts)) if amounts else 0.0
    span_days = _days_between(history[0].timestamp, history[-1].timestamp)
    amount_per_day = total_amount / span_days if span_days > 0 else total_amount

    return FeatureVector(
        total_count=total_count,
        active_count=active_count,
        cancelled_count=cancelled_count,
        high_value_count=high_value_count,
        avg_rate=_safe_ratio(active_count, total_count),
        volatility=_population_std(series),
        recency_days=recency_days,
        velocity=velocity,
        total_amount=total_amount,
        avg_amount=avg_amount,
        max_amount=max_amount,
        spike_ratio=_safe_ratio(max_amount, avg_amount),
        amount_per_day=amount_per_day,
        tenure_days=tenure_days,
    )


def group_events(events: Iterable[Event]) -> dict[int, list[Event]]:
    grouped: dict[int, list[Event]] = {}
    for event in events:
        grouped.setdefault(event.entity_id, []).append(event)
    for history in grouped.values():
        history.sort(key=lambda event: event.timestamp)
    return grouped


def extract_feature_frame(
    events: Iterable[Event],
    analysis_date: date | datetime,
    config: ExtractorConfig | None = None,
    entity_ids: Iterable[int] | None = None,
) -> pd.DataFrame:
    """Feature table with one row per entity, indexed by ``entity_id``.

    Entities listed in ``entity_ids`` without any events still get a row.
    """
    grouped = group_events(events)
    ids = sorted(set(grouped) | set(entity_ids or []))
    rows = []
    for entity_id in ids:
        features = extract_features(grouped.get(entity_id, []), analysis_date, config)
        rows.append({"entity_id": entity_id, **features.to_dict()})

    logging.info(f"Extracted features for {len(rows)} entities")
    frame = pd.DataFrame(rows, columns=["entity_id", *FeatureVector.__dataclass_fields__])
    return frame.set_index("entity_id")


__all__ = [
    "ExtractorConfig",
    "VALUE_KINDS",
    "extract_feature_frame",
    "extract_features",
    "group_events",
    "select_history",
]
