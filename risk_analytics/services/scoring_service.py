from __future__ import annotations

from datetime import date, datetime, timezone
import math
import re
from typing import Any

from risk_analytics.exception import FeatureValidationError
from risk_analytics.logger import logging
from risk_analytics.pipeline.scoring_pipeline import ScoringPipeline, ScoringPipelineConfig
from risk_analytics.reporting import summarize
from risk_analytics.ruleset import DEFAULT_RULESET, Ruleset, load_bundled_ruleset
from risk_analytics.schemas.records import Entity, FeatureVector
from risk_analytics.scoring import assign_segment, classify, score_features
from risk_analytics.services.validation import VALID_BATCH_MODES, parse_date, validate_batch


MAX_BATCH_SIZE = 10000
DEFAULT_MODE = "partial"
_RULESET_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _timestamp_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    if hasattr(value, "item"):
        return _json_safe(value.item())
    return value


def _frame_records(frame) -> list[dict[str, Any]]:
    return [{key: _json_safe(value) for key, value in row.items()} for row in frame.to_dict(orient="records")]


def _build_batch_envelope(
    *,
    status: str,
    results: list[dict[str, Any]],
    report: list[dict[str, Any]] | None = None,
    errors: list[dict[str, Any]] | None,
    summary: dict[str, Any],
    ruleset: Ruleset,
    analysis_date: date | None,
) -> dict[str, Any]:
    return {
        "status": status,
        "results": results,
        "report": report or [],
        "errors": errors if errors else None,
        "summary": summary,
        "metadata": {
            "ruleset_name": ruleset.name,
            "ruleset_version": ruleset.version,
            "analysis_date": analysis_date.isoformat() if analysis_date else None,
        },
        "timestamp": _timestamp_now(),
    }


def _resolve_options(options: Any) -> dict[str, Any]:
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise ValueError("Field 'options' must be an object")

    mode = options.get("mode", DEFAULT_MODE)
    if mode not in VALID_BATCH_MODES:
        raise ValueError("options.mode must be one of: partial, strict")

    raw_date = options.get("analysis_date")
    if raw_date in (None, ""):
        analysis_date = datetime.now(timezone.utc).date()
    else:
        analysis_date = parse_date(raw_date, "analysis_date")

    try:
        max_workers = int(options.get("max_workers", ScoringPipelineConfig.max_workers))
    except (TypeError, ValueError) as exc:
        raise ValueError("options.max_workers must be an integer") from exc
    if max_workers < 1:
        raise ValueError("options.max_workers must be at least 1")

    group_by = options.get("group_by")
    if group_by is not None and (not isinstance(group_by, list) or not all(isinstance(k, str) for k in group_by)):
        raise ValueError("options.group_by must be a list of column names")

    ruleset_name = str(options.get("ruleset") or DEFAULT_RULESET)
    if not _RULESET_NAME_RE.match(ruleset_name):
        raise ValueError("options.ruleset must be the name of a bundled ruleset")

    return {
        "mode": mode,
        "analysis_date": analysis_date,
        "ruleset": ruleset_name,
        "max_workers": max_workers,
        "group_by": group_by,
    }


def score_batch_records(
    entities: Any,
    events: Any,
    options: Any | None = None,
    ruleset: Ruleset | None = None,
) -> dict[str, Any]:
    """Validate, score and summarize one batch of entity and event rows.

    The ruleset is loaded before any row is looked at, so a broken ruleset
    fails the call outright. Row-level problems follow ``options.mode``.
    """
    if not isinstance(entities, list):
        raise ValueError("Field 'entities' must be a list")
    if not isinstance(events, list):
        raise ValueError("Field 'events' must be a list")
    if len(entities) > MAX_BATCH_SIZE:
        raise ValueError(f"Batch size exceeds MAX_BATCH_SIZE ({MAX_BATCH_SIZE})")

    resolved = _resolve_options(options)
    active_ruleset = ruleset or load_bundled_ruleset(resolved["ruleset"])
    group_by = resolved["group_by"] or list(active_ruleset.report_group_by)
    mode = resolved["mode"]
    analysis_date = resolved["analysis_date"]

    validation_result = validate_batch(entities, events, mode)
    errors = validation_result["errors"]
    valid_entities = validation_result["entities"]
    valid_events = validation_result["events"]

    summary = {
        "total_entities": len(entities),
        "total_events": len(events),
        "valid_entities": len(valid_entities),
        "valid_events": len(valid_events),
        "error_count": len(errors),
        "mode": mode,
    }

    if mode == "strict" and errors:
        logging.error(f"Strict mode: aborting batch after {len(errors)} validation error(s)")
        return _build_batch_envelope(
            status="error",
            results=[],
            errors=errors,
            summary=summary,
            ruleset=active_ruleset,
            analysis_date=analysis_date,
        )

    if not valid_entities:
        status = "failed" if errors else "success"
        return _build_batch_envelope(
            status=status,
            results=[],
            errors=errors,
            summary=summary,
            ruleset=active_ruleset,
            analysis_date=analysis_date,
        )

    pipeline = ScoringPipeline(
        ruleset=active_ruleset,
        config=ScoringPipelineConfig(max_workers=resolved["max_workers"]),
    )
    scored = pipeline.run(valid_entities, valid_events, analysis_date)

    results = []
    for item in scored:
        row = item.to_detail_row()
        row["contributions"] = dict(item.contributions)
        row["features"] = {key: _json_safe(value) for key, value in item.features.to_dict().items()}
        results.append(row)

    report = _frame_records(summarize(scored, group_by))
    status = "partial" if errors else "success"
    return _build_batch_envelope(
        status=status,
        results=results,
        report=report,
        errors=errors,
        summary=summary,
        ruleset=active_ruleset,
        analysis_date=analysis_date,
    )


def score_feature_record(features: Any, attributes: Any = None, ruleset: Ruleset | None = None) -> dict[str, Any]:
    """Score a precomputed feature vector without any event history."""
    active_ruleset = ruleset or load_bundled_ruleset()
    vector = FeatureVector.from_mapping(features)
    breakdown = score_features(vector, active_ruleset)
    category = classify(breakdown.score, active_ruleset)

    if attributes is None:
        attributes = {}
    if not isinstance(attributes, dict):
        raise FeatureValidationError("attributes must be an object")
    region = str(attributes.get("region") or attributes.get("country") or "unknown")
    extra = {key: value for key, value in attributes.items() if key not in ("region", "country")}
    entity = Entity(id=0, region=region, attributes=extra)
    segment = assign_segment(category, entity, active_ruleset)

    return {
        "score": breakdown.score,
        "category": category.label,
        "strategy": segment.strategy,
        "action": segment.action,
        "contributions": dict(breakdown.contributions),
        "metadata": {
            "ruleset_name": active_ruleset.name,
            "ruleset_version": active_ruleset.version,
        },
    }


__all__ = [
    "DEFAULT_MODE",
    "MAX_BATCH_SIZE",
    "score_batch_records",
    "score_feature_record",
]
