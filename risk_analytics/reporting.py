from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from risk_analytics.schemas.records import Entity, Event, ScoredEntity


DETAIL_COLUMNS = ["entity_id", "region", "score", "category", "strategy", "action", "value"]
SUMMARY_METRICS = ["entity_count", "avg_score", "total_value", "avg_value", "pct_of_total"]
PIVOT_METRICS = {"entity_count", "avg_score", "total_value"}


def detail_frame(results: Iterable[ScoredEntity]) -> pd.DataFrame:
    rows = []
    for result in results:
        row = result.to_detail_row()
        for key, value in result.attributes.items():
            row.setdefault(key, value)
        rows.append(row)
    if not rows:
        return pd.DataFrame(columns=DETAIL_COLUMNS)
    return pd.DataFrame(rows)


def _resolve_group_by(frame: pd.DataFrame, group_by: Sequence[str]) -> list[str]:
    keys = list(group_by)
    if not keys:
        raise ValueError("'group_by' must name at least one column")
    missing = [key for key in keys if key not in frame.columns]
    if missing:
        raise ValueError(f"Unknown group_by column(s): {missing}")
    return keys


def summarize(results: Iterable[ScoredEntity], group_by: Sequence[str] = ("category", "region")) -> pd.DataFrame:
    """Grouped aggregates over scored entities.

    Groups are sorted by descending average score, then by their keys.
    Groups with no members do not appear at all.
    """
    frame = detail_frame(results)
    keys = _resolve_group_by(frame, group_by)
    if frame.empty:
        return pd.DataFrame(columns=keys + SUMMARY_METRICS)

    grouped = frame.groupby(keys, sort=False, dropna=False)
    summary = grouped.agg(
        entity_count=("entity_id", "nunique"),
        avg_score=("score", "mean"),
        total_value=("value", "sum"),
        avg_value=("value", "mean"),
    ).reset_index()

    total_entities = frame["entity_id"].nunique()
    summary["pct_of_total"] = (summary["entity_count"] * 100.0 / total_entities).round(2)
    summary = summary.sort_values(
        ["avg_score", *keys],
        ascending=[False] + [True] * len(keys),
        kind="mergesort",
    )
    return summary[keys + SUMMARY_METRICS].reset_index(drop=True)


def pivot_summary(
    results: Iterable[ScoredEntity],
    index: str,
    column: str,
    column_values: Sequence[str],
    metric: str = "entity_count",
) -> pd.DataFrame:
    """Cross-tab with a fixed, pre-declared set of pivot columns.

    Values of ``column`` outside ``column_values`` are left out; declared
    values with no matching entities show up as 0.
    """
    if metric not in PIVOT_METRICS:
        raise ValueError(f"metric must be one of {sorted(PIVOT_METRICS)}")
    if not column_values:
        raise ValueError("'column_values' must not be empty")

    frame = detail_frame(results)
    _resolve_group_by(frame, [index, column])
    declared = [str(value) for value in column_values]
    frame = frame[frame[column].astype(str).isin(declared)]
    if frame.empty:
        return pd.DataFrame(columns=declared, dtype=float).rename_axis(index)

    frame = frame.assign(**{column: frame[column].astype(str)})
    if metric == "entity_count":
        table = frame.pivot_table(index=index, columns=column, values="entity_id", aggfunc="nunique")
    elif metric == "avg_score":
        table = frame.pivot_table(index=index, columns=column, values="score", aggfunc="mean")
    else:
        table = frame.pivot_table(index=index, columns=column, values="value", aggfunc="sum")

    table = table.reindex(columns=declared).fillna(0)
    table.columns.name = None
    return table.sort_index()


def cohort_retention(
    entities: Iterable[Entity],
    events: Iterable[Event],
    active_status: str = "active",
) -> pd.DataFrame:
    """Retention by signup-month cohort and months since signup."""
    columns = [
        "signup_cohort",
        "months_since_signup",
        "active_customers",
        "retained_customers",
        "cohort_size",
        "retention_rate_pct",
    ]
    cohorts = pd.DataFrame(
        [
            {"entity_id": entity.id, "signup_date": pd.Timestamp(entity.signup_date)}
            for entity in entities
            if entity.signup_date is not None
        ],
        columns=["entity_id", "signup_date"],
    )
    activity = pd.DataFrame(
        [{"entity_id": e.entity_id, "timestamp": pd.Timestamp(e.timestamp), "status": e.status} for e in events],
        columns=["entity_id", "timestamp", "status"],
    )
    if cohorts.empty or activity.empty:
        return pd.DataFrame(columns=columns)

    cohorts["signup_cohort"] = cohorts["signup_date"].dt.strftime("%Y-%m")
    cohort_sizes = cohorts.groupby("signup_cohort")["entity_id"].nunique().rename("cohort_size")

    merged = activity.merge(cohorts, on="entity_id", how="inner")
    if merged.empty:
        return pd.DataFrame(columns=columns)

    # Whole months between signup and the event, as TIMESTAMPDIFF(MONTH, ...) counts them.
    months = (merged["timestamp"].dt.year - merged["signup_date"].dt.year) * 12 + (
        merged["timestamp"].dt.month - merged["signup_date"].dt.month
    )
    months -= (merged["timestamp"].dt.day < merged["signup_date"].dt.day).astype(int)
    merged["months_since_signup"] = months
    merged["retained_id"] = merged["entity_id"].where(merged["status"] == active_status)

    retention = (
        merged.groupby(["signup_cohort", "months_since_signup"])
        .agg(
            active_customers=("entity_id", "nunique"),
            retained_customers=("retained_id", "nunique"),
        )
        .reset_index()
        .merge(cohort_sizes, left_on="signup_cohort", right_index=True)
    )
    retention["retention_rate_pct"] = np.round(
        retention["retained_customers"] * 100.0 / retention["cohort_size"], 2
    )
    retention = retention.sort_values(["signup_cohort", "months_since_signup"]).reset_index(drop=True)
    return retention[columns]


def count_churn_transitions(
    events: Iterable[Event],
    active_status: str = "active",
    cancelled_status: str = "cancelled",
) -> int:
    """Entities with at least one active -> cancelled step between consecutive events."""
    frame = pd.DataFrame(
        [{"entity_id": e.entity_id, "timestamp": e.timestamp, "status": e.status} for e in events],
        columns=["entity_id", "timestamp", "status"],
    )
    if frame.empty:
        return 0
    frame = frame.sort_values(["entity_id", "timestamp"], kind="mergesort")
    frame["prev_status"] = frame.groupby("entity_id")["status"].shift(1)
    churned = frame[(frame["prev_status"] == active_status) & (frame["status"] == cancelled_status)]
    return int(churned["entity_id"].nunique())


__all__ = [
    "DETAIL_COLUMNS",
    "SUMMARY_METRICS",
    "cohort_retention",
    "count_churn_transitions",
    "detail_frame",
    "pivot_summary",
    "summarize",
]
