from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import IntEnum
import math
from typing import Any

from risk_analytics.exception import FeatureValidationError


_COUNT_FIELDS = ("total_count", "active_count", "cancelled_count", "high_value_count")
_OPTIONAL_FIELDS = ("recency_days", "tenure_days")


def _require_non_empty_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{field_name}' must be a non-empty string")
    return value.strip()


class RiskCategory(IntEnum):
    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]

    @classmethod
    def from_label(cls, value: Any) -> "RiskCategory":
        if isinstance(value, RiskCategory):
            return value
        text = str(value).strip().replace(" ", "").replace("_", "").lower()
        for category, label in _CATEGORY_LABELS.items():
            if label.lower() == text:
                return category
        raise ValueError(f"Unknown risk category: {value!r}")


_CATEGORY_LABELS = {
    RiskCategory.VERY_LOW: "VeryLow",
    RiskCategory.LOW: "Low",
    RiskCategory.MEDIUM: "Medium",
    RiskCategory.HIGH: "High",
    RiskCategory.VERY_HIGH: "VeryHigh",
}


@dataclass(slots=True)
class Entity:
    id: int
    region: str
    signup_date: date | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.id, bool) or not isinstance(self.id, int):
            raise ValueError("'id' must be an integer")
        self.region = _require_non_empty_str(self.region, "region")
        if isinstance(self.signup_date, datetime):
            self.signup_date = self.signup_date.date()
        if self.signup_date is not None and not isinstance(self.signup_date, date):
            raise ValueError("'signup_date' must be a date when provided")
        if not isinstance(self.attributes, dict):
            raise ValueError("'attributes' must be a dictionary")

    def attribute(self, name: str) -> Any:
        if name in ("region", "country"):
            return self.region
        return self.attributes.get(name)


@dataclass(slots=True)
class Event:
    entity_id: int
    timestamp: datetime
    status: str | None = None
    amount: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.entity_id, bool) or not isinstance(self.entity_id, int):
            raise ValueError("'entity_id' must be an integer")
        if not isinstance(self.timestamp, datetime):
            raise ValueError("'timestamp' must be a datetime")
        if self.status is not None:
            self.status = _require_non_empty_str(self.status, "status").lower()
        if self.amount is not None:
            self.amount = float(self.amount)
            if math.isnan(self.amount) or math.isinf(self.amount):
                raise ValueError("'amount' must be a finite number")
            if self.amount < 0:
                raise ValueError("'amount' must not be negative")
        if self.status is None and self.amount is None:
            raise ValueError("event requires a 'status' or an 'amount'")


def _parse_feature(name: str, raw: Any) -> int | float:
    if isinstance(raw, bool):
        raise FeatureValidationError(f"Feature '{name}' must be a number (got {raw!r})")
    try:
        number = float(raw)
    except (TypeError, ValueError) as exc:
        raise FeatureValidationError(f"Feature '{name}' must be a number (got {raw!r})") from exc
    if name in _COUNT_FIELDS:
        if not number.is_integer():
            raise FeatureValidationError(f"Feature '{name}' must be a whole number (got {raw!r})")
        return int(number)
    return number


@dataclass(frozen=True, slots=True)
class FeatureVector:
    """Per-entity snapshot of an event history as of one analysis date.

    ``recency_days`` and ``tenure_days`` are ``None`` when there is no data
    to measure them from; every other field defaults to zero.
    """

    total_count: int = 0
    active_count: int = 0
    cancelled_count: int = 0
    high_value_count: int = 0
    avg_rate: float = 0.0
    volatility: float = 0.0
    recency_days: float | None = None
    velocity: float = 0.0
    total_amount: float = 0.0
    avg_amount: float = 0.0
    max_amount: float = 0.0
    spike_ratio: float = 0.0
    amount_per_day: float = 0.0
    tenure_days: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, values: Any) -> "FeatureVector":
        if not isinstance(values, dict):
            raise FeatureValidationError("features must be an object")
        unknown = sorted(set(values) - set(FEATURE_NAMES))
        if unknown:
            raise FeatureValidationError(f"Unknown feature(s): {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for name, raw in values.items():
            if raw is None:
                if name not in _OPTIONAL_FIELDS:
                    raise FeatureValidationError(f"Feature '{name}' must not be null")
                kwargs[name] = None
                continue
            kwargs[name] = _parse_feature(name, raw)
        return cls(**kwargs)


FEATURE_NAMES = tuple(FeatureVector.__dataclass_fields__)
# Features measured from the event history; meaningless when there is none.
HISTORY_FEATURES = frozenset(name for name in FEATURE_NAMES if name != "tenure_days")


def validate_features(features: FeatureVector) -> FeatureVector:
    """Reject malformed vectors instead of clamping them into range."""
    if not isinstance(features, FeatureVector):
        raise FeatureValidationError("features must be a FeatureVector")

    for name in FEATURE_NAMES:
        value = getattr(features, name)
        if value is None:
            if name in _OPTIONAL_FIELDS:
                continue
            raise FeatureValidationError(f"Feature '{name}' must not be null")
        if isinstance(value, bool):
            raise FeatureValidationError(f"Feature '{name}' must be a number (got {value!r})")
        if name in _COUNT_FIELDS and not isinstance(value, int):
            raise FeatureValidationError(f"Feature '{name}' must be a whole number (got {value!r})")
        if isinstance(value, float) and math.isnan(value):
            raise FeatureValidationError(f"Feature '{name}' is NaN")
        if value < 0:
            raise FeatureValidationError(f"Feature '{name}' must not be negative (got {value!r})")

    if features.active_count + features.cancelled_count > features.total_count:
        raise FeatureValidationError("active_count + cancelled_count exceeds total_count")
    if features.avg_rate > 1.0:
        raise FeatureValidationError(f"Feature 'avg_rate' must be within [0, 1] (got {features.avg_rate!r})")
    return features


@dataclass(frozen=True, slots=True)
class Segment:
    strategy: str
    action: str


@dataclass(frozen=True, slots=True)
class ScoredEntity:
    entity_id: int
    region: str
    features: FeatureVector
    score: int
    category: RiskCategory
    segment: Segment
    contributions: dict[str, int] = field(default_factory=dict)
    value: float = 0.0
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_detail_row(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "region": self.region,
            "score": self.score,
            "category": self.category.label,
            "strategy": self.segment.strategy,
            "action": self.segment.action,
            "value": self.value,
        }


__all__ = [
    "FEATURE_NAMES",
    "HISTORY_FEATURES",
    "Entity",
    "Event",
    "FeatureVector",
    "RiskCategory",
    "ScoredEntity",
    "Segment",
    "validate_features",
]
