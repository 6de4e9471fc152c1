"""Ruleset definitions for the scorer, classifier and segmenter.

A ruleset is a JSON document holding every business constant the pipeline
uses: feature extraction settings, additive score rules, category
thresholds and the ordered segment table. Churn, fraud and sales variants
share the evaluator and differ only in the ruleset they load.

Rulesets are validated completely at load time. A ruleset that could leave
an entity without a category or segment, or that contains a band or rule
that can never match, raises ``RulesetConfigError`` before any entity is
processed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import math
import os
from typing import Any, Mapping

from risk_analytics.components.feature_extractor import ExtractorConfig
from risk_analytics.exception import RulesetConfigError
from risk_analytics.logger import logging
from risk_analytics.schemas.records import FEATURE_NAMES, HISTORY_FEATURES, RiskCategory


RULESETS_DIR = os.path.join(os.path.dirname(__file__), "rulesets")
DEFAULT_RULESET = "churn"
MAX_SCORE = 100

OPERATORS = {
    ">": lambda value, threshold: value > threshold,
    ">=": lambda value, threshold: value >= threshold,
    "<": lambda value, threshold: value < threshold,
    "<=": lambda value, threshold: value <= threshold,
}
_DESCENDING_OPERATORS = {">", ">="}


@dataclass(frozen=True)
class ScoreRule:
    name: str
    feature: str
    operator: str
    bands: tuple[tuple[float, int], ...] = ()
    compare_to: str | None = None
    points: int = 0

    @property
    def max_points(self) -> int:
        if self.compare_to is not None:
            return self.points
        return max(points for _, points in self.bands)

    def evaluate(self, features: Any) -> int:
        if features.total_count == 0 and self.feature in HISTORY_FEATURES:
            return 0
        value = getattr(features, self.feature)
        if value is None:
            return 0
        matches = OPERATORS[self.operator]
        if self.compare_to is not None:
            other = getattr(features, self.compare_to)
            if other is None:
                return 0
            return self.points if matches(value, other) else 0
        for threshold, points in self.bands:
            if matches(value, threshold):
                return points
        return 0


@dataclass(frozen=True)
class CategoryThreshold:
    category: RiskCategory
    min_score: int | None

    def matches(self, score: int) -> bool:
        return self.min_score is None or score >= self.min_score


@dataclass(frozen=True)
class SegmentRule:
    strategy: str
    action: str
    category: RiskCategory | None = None
    attribute: str | None = None
    values: frozenset[str] = frozenset()

    @property
    def is_catch_all(self) -> bool:
        return self.category is None and self.attribute is None

    def matches(self, category: RiskCategory, entity: Any) -> bool:
        if self.category is not None and self.category != category:
            return False
        if self.attribute is None:
            return True
        value = entity.attribute(self.attribute)
        return value is not None and str(value) in self.values

    def shadows(self, other: "SegmentRule") -> bool:
        """True when every entity matching ``other`` already matches this rule."""
        if self.category is not None and self.category != other.category:
            return False
        if self.attribute is None:
            return True
        return self.attribute == other.attribute and other.values <= self.values


@dataclass(frozen=True)
class Ruleset:
    name: str
    version: str
    extractor: ExtractorConfig
    score_rules: tuple[ScoreRule, ...]
    categories: tuple[CategoryThreshold, ...]
    segments: tuple[SegmentRule, ...]
    value_feature: str = "total_amount"
    value_per_active_period: float | None = None
    report_group_by: tuple[str, ...] = ("category", "region")
    pivot_values: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def max_score(self) -> int:
        return sum(rule.max_points for rule in self.score_rules)


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] in (None, ""):
        raise RulesetConfigError(f"{where}: missing required key '{key}'")
    return data[key]


def _require_feature(name: Any, where: str) -> str:
    if name not in FEATURE_NAMES:
        raise RulesetConfigError(f"{where}: unknown feature {name!r}")
    return name


def _require_points(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RulesetConfigError(f"{where}: points must be a non-negative integer (got {value!r})")
    return value


def _require_number(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise RulesetConfigError(f"{where}: threshold must be a number (got {value!r})")
    return float(value)


def _parse_category(value: Any, where: str) -> RiskCategory:
    try:
        return RiskCategory.from_label(value)
    except ValueError as exc:
        raise RulesetConfigError(f"{where}: {exc}") from exc


def _parse_score_rule(raw: Any, index: int) -> ScoreRule:
    where = f"score_rules[{index}]"
    if not isinstance(raw, Mapping):
        raise RulesetConfigError(f"{where}: must be an object")

    name = str(raw.get("name") or f"rule_{index}")
    feature = _require_feature(_require(raw, "feature", where), where)
    operator = _require(raw, "operator", where)
    if operator not in OPERATORS:
        raise RulesetConfigError(f"{where}: operator must be one of {sorted(OPERATORS)}")

    compare_to = raw.get("compare_to")
    if compare_to is not None:
        if "bands" in raw:
            raise RulesetConfigError(f"{where}: use either 'compare_to' or 'bands', not both")
        return ScoreRule(
            name=name,
            feature=feature,
            operator=operator,
            compare_to=_require_feature(compare_to, where),
            points=_require_points(_require(raw, "points", where), where),
        )

    raw_bands = _require(raw, "bands", where)
    if not isinstance(raw_bands, list) or not raw_bands:
        raise RulesetConfigError(f"{where}: 'bands' must be a non-empty list")

    bands: list[tuple[float, int]] = []
    for band_index, band in enumerate(raw_bands):
        band_where = f"{where}.bands[{band_index}]"
        if isinstance(band, Mapping):
            threshold, points = band.get("threshold"), band.get("points")
        elif isinstance(band, (list, tuple)) and len(band) == 2:
            threshold, points = band
        else:
            raise RulesetConfigError(f"{band_where}: must be [threshold, points]")
        bands.append((_require_number(threshold, band_where), _require_points(points, band_where)))

    # Bands are evaluated top-down, so a band is reachable only when it is
    # strictly tighter than every band above it.
    thresholds = [threshold for threshold, _ in bands]
    if operator in _DESCENDING_OPERATORS:
        ordered = all(a > b for a, b in zip(thresholds, thresholds[1:]))
    else:
        ordered = all(a < b for a, b in zip(thresholds, thresholds[1:]))
    if not ordered:
        direction = "descending" if operator in _DESCENDING_OPERATORS else "ascending"
        raise RulesetConfigError(f"{where}: band thresholds must be strictly {direction} for '{operator}'")

    return ScoreRule(name=name, feature=feature, operator=operator, bands=tuple(bands))


def _parse_categories(raw: Any) -> tuple[CategoryThreshold, ...]:
    if not isinstance(raw, list) or not raw:
        raise RulesetConfigError("categories: must be a non-empty list")

    parsed: list[CategoryThreshold] = []
    for index, item in enumerate(raw):
        where = f"categories[{index}]"
        if not isinstance(item, Mapping):
            raise RulesetConfigError(f"{where}: must be an object")
        category = _parse_category(_require(item, "category", where), where)
        min_score = item.get("min_score")
        if min_score is not None:
            min_score = _require_points(min_score, where)
        parsed.append(CategoryThreshold(category=category, min_score=min_score))

    if parsed[-1].min_score is not None:
        raise RulesetConfigError("categories: the last entry must be a catch-all without 'min_score'")
    if any(item.min_score is None for item in parsed[:-1]):
        raise RulesetConfigError("categories: only the last entry may omit 'min_score'")

    scores = [item.min_score for item in parsed[:-1]]
    if not all(a > b for a, b in zip(scores, scores[1:])):
        raise RulesetConfigError("categories: 'min_score' must be strictly descending")

    ordinals = [item.category for item in parsed]
    if not all(a > b for a, b in zip(ordinals, ordinals[1:])):
        raise RulesetConfigError("categories: must be listed from highest to lowest risk without repeats")
    return tuple(parsed)


def _parse_segments(raw: Any, categories: tuple[CategoryThreshold, ...]) -> tuple[SegmentRule, ...]:
    if not isinstance(raw, list) or not raw:
        raise RulesetConfigError("segments: must be a non-empty list")

    known_categories = {item.category for item in categories}
    parsed: list[SegmentRule] = []
    for index, item in enumerate(raw):
        where = f"segments[{index}]"
        if not isinstance(item, Mapping):
            raise RulesetConfigError(f"{where}: must be an object")

        category = None
        if item.get("category") is not None:
            category = _parse_category(item["category"], where)
            if category not in known_categories:
                raise RulesetConfigError(f"{where}: category {category.label} is never produced by the classifier")

        attribute = item.get("attribute")
        values: frozenset[str] = frozenset()
        if attribute is not None:
            raw_values = item.get("values")
            if not isinstance(raw_values, list) or not raw_values:
                raise RulesetConfigError(f"{where}: 'values' must be a non-empty list when 'attribute' is set")
            values = frozenset(str(value) for value in raw_values)

        rule = SegmentRule(
            strategy=str(_require(item, "strategy", where)).strip(),
            action=str(_require(item, "action", where)).strip(),
            category=category,
            attribute=str(attribute) if attribute is not None else None,
            values=values,
        )
        for earlier_index, earlier in enumerate(parsed):
            if earlier.shadows(rule):
                raise RulesetConfigError(
                    f"{where}: unreachable, every match is already taken by segments[{earlier_index}]"
                )
        parsed.append(rule)

    if not parsed[-1].is_catch_all:
        raise RulesetConfigError("segments: the last rule must be a catch-all without 'category' or 'attribute'")
    return tuple(parsed)


def ruleset_from_dict(data: Any) -> Ruleset:
    if not isinstance(data, Mapping):
        raise RulesetConfigError("ruleset must be an object")

    name = str(_require(data, "name", "ruleset"))
    version = str(_require(data, "version", "ruleset"))

    extractor_raw = data.get("extractor") or {}
    if not isinstance(extractor_raw, Mapping):
        raise RulesetConfigError("extractor: must be an object")
    try:
        extractor = ExtractorConfig(**extractor_raw)
    except (TypeError, ValueError) as exc:
        raise RulesetConfigError(f"extractor: {exc}") from exc

    raw_rules = _require(data, "score_rules", "ruleset")
    if not isinstance(raw_rules, list) or not raw_rules:
        raise RulesetConfigError("score_rules: must be a non-empty list")
    score_rules = tuple(_parse_score_rule(raw, index) for index, raw in enumerate(raw_rules))
    names = [rule.name for rule in score_rules]
    if len(set(names)) != len(names):
        raise RulesetConfigError("score_rules: rule names must be unique")

    categories = _parse_categories(_require(data, "categories", "ruleset"))
    segments = _parse_segments(_require(data, "segments", "ruleset"), categories)

    value_feature = _require_feature(data.get("value_feature", "total_amount"), "value_feature")
    value_per_active_period = data.get("value_per_active_period")
    if value_per_active_period is not None:
        value_per_active_period = _require_number(value_per_active_period, "value_per_active_period")

    report_raw = data.get("report") or {}
    group_by = tuple(report_raw.get("group_by", ("category", "region")))
    pivot_raw = report_raw.get("pivot_values") or {}
    if not isinstance(pivot_raw, Mapping):
        raise RulesetConfigError("report.pivot_values: must be an object")
    pivot_values = {str(key): tuple(str(v) for v in values) for key, values in pivot_raw.items()}

    ruleset = Ruleset(
        name=name,
        version=version,
        extractor=extractor,
        score_rules=score_rules,
        categories=categories,
        segments=segments,
        value_feature=value_feature,
        value_per_active_period=value_per_active_period,
        report_group_by=group_by,
        pivot_values=pivot_values,
    )
    if ruleset.max_score > MAX_SCORE:
        raise RulesetConfigError(
            f"score_rules: maximum attainable score {ruleset.max_score} exceeds {MAX_SCORE}"
        )
    for index, threshold in enumerate(categories):
        if threshold.min_score is not None and threshold.min_score > ruleset.max_score:
            raise RulesetConfigError(
                f"categories[{index}]: {threshold.category.label} is unreachable, min_score "
                f"{threshold.min_score} exceeds the maximum attainable score {ruleset.max_score}"
            )
    return ruleset


def _bundled_path(name: str) -> str | None:
    if not name or os.path.basename(name) != name or name in (".", ".."):
        return None
    path = os.path.join(RULESETS_DIR, f"{name}.json")
    return path if os.path.isfile(path) else None


def resolve_ruleset_path(name_or_path: str, bundled_only: bool = False) -> str:
    """Bundled names win over files of the same name; paths are allowed unless ``bundled_only``."""
    bundled = _bundled_path(str(name_or_path))
    if bundled is not None:
        return bundled
    if not bundled_only and os.path.isfile(name_or_path):
        return name_or_path
    raise RulesetConfigError(f"Ruleset not found: {name_or_path}")


def load_ruleset(name_or_path: str = DEFAULT_RULESET, bundled_only: bool = False) -> Ruleset:
    """Load a bundled ruleset by name (``churn``, ``fraud``, ``sales``) or a JSON file by path."""
    path = resolve_ruleset_path(name_or_path, bundled_only=bundled_only)
    try:
        with open(path, "r", encoding="utf-8") as file:
            raw = json.load(file)
    except json.JSONDecodeError as exc:
        raise RulesetConfigError(f"Ruleset {path} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise RulesetConfigError(f"Ruleset {path} cannot be read: {exc}") from exc

    ruleset = ruleset_from_dict(raw)
    logging.info(f"Loaded ruleset {ruleset.name} v{ruleset.version} from {path}")
    return ruleset


def load_bundled_ruleset(name: str = DEFAULT_RULESET) -> Ruleset:
    """Load a ruleset shipped with the package; never reads outside ``RULESETS_DIR``."""
    return load_ruleset(name, bundled_only=True)


__all__ = [
    "CategoryThreshold",
    "DEFAULT_RULESET",
    "MAX_SCORE",
    "Ruleset",
    "ScoreRule",
    "SegmentRule",
    "load_bundled_ruleset",
    "load_ruleset",
    "resolve_ruleset_path",
    "ruleset_from_dict",
]
