"""Risk scoring, classification and segmentation.

All functions are deterministic and driven entirely by a ``Ruleset``.
Nothing here holds state between calls, so entities can be scored in any
order or in parallel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from risk_analytics.ruleset import Ruleset
from risk_analytics.schemas.records import FeatureVector, RiskCategory, Segment, validate_features


@dataclass(frozen=True)
class ScoreBreakdown:
    score: int
    contributions: dict[str, int]


def score_features(features: FeatureVector, ruleset: Ruleset) -> ScoreBreakdown:
    """Sum the contribution of every score rule.

    Within one rule the first matching band wins; across rules the
    contributions add up. Rules on an undefined feature (``None``, e.g. no
    recency for an empty history) contribute 0. The total is not clamped:
    the ruleset loader already guarantees it cannot exceed 100.
    """
    validate_features(features)
    contributions = {rule.name: rule.evaluate(features) for rule in ruleset.score_rules}
    return ScoreBreakdown(score=sum(contributions.values()), contributions=contributions)


def risk_score(features: FeatureVector, ruleset: Ruleset) -> int:
    return score_features(features, ruleset).score


def classify(score: int, ruleset: Ruleset) -> RiskCategory:
    """Map a score to a category, checking thresholds from the top down.

    A score equal to a threshold belongs to the higher category.
    """
    for threshold in ruleset.categories:
        if threshold.matches(score):
            return threshold.category
    # Unreachable for loaded rulesets; the last threshold is a catch-all.
    raise ValueError(f"No category matches score {score}")


def assign_segment(category: RiskCategory, entity: Any, ruleset: Ruleset) -> Segment:
    """Return the strategy/action of the first segment rule that matches."""
    for rule in ruleset.segments:
        if rule.matches(category, entity):
            return Segment(strategy=rule.strategy, action=rule.action)
    raise ValueError(f"No segment rule matches category {category.label}")


def entity_value(features: FeatureVector, ruleset: Ruleset) -> float:
    """Monetary value used by the reports.

    With ``value_per_active_period`` set (subscription rulesets), value is
    active periods times the periodic price; otherwise it is read from
    ``value_feature``.
    """
    if ruleset.value_per_active_period is not None:
        return float(features.active_count * ruleset.value_per_active_period)
    value = getattr(features, ruleset.value_feature)
    return float(value or 0.0)


__all__ = [
    "ScoreBreakdown",
    "assign_segment",
    "classify",
    "entity_value",
    "risk_score",
    "score_features",
]
