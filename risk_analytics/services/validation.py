from __future__ import annotations

from datetime import date, datetime
import math
from typing import Any

import pandas as pd

from risk_analytics.exception import RecordValidationError
from risk_analytics.logger import logging
from risk_analytics.schemas.records import Entity, Event


VALID_BATCH_MODES = {"partial", "strict"}
ENTITY_REQUIRED_FIELDS = ["id", "region"]
EVENT_REQUIRED_FIELDS = ["entity_id", "timestamp"]
_ENTITY_RESERVED = {"id", "region", "country", "signup_date"}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Field '{field}' must be an integer (got {value!r})")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{field}' must be an integer (got {value!r})") from exc
    if math.isnan(number) or not number.is_integer():
        raise ValueError(f"Field '{field}' must be an integer (got {value!r})")
    return int(number)


def parse_timestamp(value: Any, field: str = "timestamp") -> datetime:
    """Parse a timestamp into a naive UTC ``datetime``."""
    if isinstance(value, datetime):
        parsed = pd.Timestamp(value)
    elif isinstance(value, date):
        parsed = pd.Timestamp(datetime(value.year, value.month, value.day))
    else:
        try:
            parsed = pd.Timestamp(str(value).strip())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Field '{field}' is not a valid timestamp (got {value!r})") from exc
    if pd.isna(parsed):
        raise ValueError(f"Field '{field}' is not a valid timestamp (got {value!r})")
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert("UTC").tz_localize(None)
    return parsed.to_pydatetime()


def parse_date(value: Any, field: str) -> date:
    return parse_timestamp(value, field).date()


def _record_id(record: Any, key: str) -> Any | None:
    if isinstance(record, dict):
        value = record.get(key)
        return None if _is_missing(value) else value
    return None


def validate_entity_record(record: Any, row_index: int | None = None) -> Entity:
    record_id = _record_id(record, "id")
    if not isinstance(record, dict):
        raise RecordValidationError("Record must be a JSON object", row_index=row_index)

    if _is_missing(record.get("region")) and not _is_missing(record.get("country")):
        record = {**record, "region": record["country"]}

    for field in ENTITY_REQUIRED_FIELDS:
        if _is_missing(record.get(field)):
            raise RecordValidationError(
                f"Missing required field: {field}", row_index=row_index, record_id=record_id, field=field
            )

    try:
        entity_id = _coerce_int(record["id"], "id")
        signup_date = None
        if not _is_missing(record.get("signup_date")):
            signup_date = parse_date(record["signup_date"], "signup_date")
        attributes = {
            key: value
            for key, value in record.items()
            if key not in _ENTITY_RESERVED and not _is_missing(value)
        }
        return Entity(
            id=entity_id,
            region=str(record["region"]),
            signup_date=signup_date,
            attributes=attributes,
        )
    except ValueError as exc:
        raise RecordValidationError(str(exc), row_index=row_index, record_id=record_id) from exc


def validate_event_record(record: Any, row_index: int | None = None) -> Event:
    record_id = _record_id(record, "entity_id")
    if not isinstance(record, dict):
        raise RecordValidationError("Record must be a JSON object", row_index=row_index)

    for field in EVENT_REQUIRED_FIELDS:
        if _is_missing(record.get(field)):
            raise RecordValidationError(
                f"Missing required field: {field}", row_index=row_index, record_id=record_id, field=field
            )

    status = record.get("status")
    amount = record.get("amount")
    if _is_missing(status) and _is_missing(amount):
        raise RecordValidationError(
            "Missing required field: status or amount", row_index=row_index, record_id=record_id, field="status"
        )

    try:
        entity_id = _coerce_int(record["entity_id"], "entity_id")
        timestamp = parse_timestamp(record["timestamp"])
        if not _is_missing(amount):
            try:
                amount = float(amount)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Field 'amount' must be a number (got {record.get('amount')!r})") from exc
        else:
            amount = None
        return Event(
            entity_id=entity_id,
            timestamp=timestamp,
            status=None if _is_missing(status) else str(status),
            amount=amount,
        )
    except ValueError as exc:
        raise RecordValidationError(str(exc), row_index=row_index, record_id=record_id) from exc


def _reject(kind: str, error: RecordValidationError, errors: list[dict[str, Any]]) -> None:
    item = error.to_dict()
    item["record_type"] = kind
    errors.append(item)
    logging.warning(f"Rejected {kind} row {error.row_index} (id={error.record_id}): {error}")


def validate_batch(entities: list[Any], events: list[Any], mode: str) -> dict[str, Any]:
    """Validate entity and event rows.

    ``partial`` keeps every valid row and reports the rejected ones.
    ``strict`` stops at the first rejected row; callers treat a non-empty
    ``errors`` list as an aborted run.
    """
    if mode not in VALID_BATCH_MODES:
        raise ValueError(f"Unsupported batch mode: {mode}")

    result: dict[str, Any] = {
        "entities": [],
        "events": [],
        "errors": [],
    }

    seen_ids: set[int] = set()
    for row_index, record in enumerate(entities):
        try:
            entity = validate_entity_record(record, row_index)
            if entity.id in seen_ids:
                raise RecordValidationError(
                    f"Duplicate entity id: {entity.id}", row_index=row_index, record_id=entity.id, field="id"
                )
        except RecordValidationError as exc:
            _reject("entity", exc, result["errors"])
            if mode == "strict":
                return result
            continue
        seen_ids.add(entity.id)
        result["entities"].append(entity)

    for row_index, record in enumerate(events):
        try:
            event = validate_event_record(record, row_index)
            if event.entity_id not in seen_ids:
                raise RecordValidationError(
                    f"Unknown entity id: {event.entity_id}",
                    row_index=row_index,
                    record_id=event.entity_id,
                    field="entity_id",
                )
        except RecordValidationError as exc:
            _reject("event", exc, result["errors"])
            if mode == "strict":
                return result
            continue
        result["events"].append(event)

    return result


__all__ = [
    "VALID_BATCH_MODES",
    "parse_date",
    "parse_timestamp",
    "validate_batch",
    "validate_entity_record",
    "validate_event_record",
]
