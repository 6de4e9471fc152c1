from .records import (
    FEATURE_NAMES,
    Entity,
    Event,
    FeatureVector,
    RiskCategory,
    ScoredEntity,
    Segment,
    validate_features,
)

__all__ = [
    "FEATURE_NAMES",
    "Entity",
    "Event",
    "FeatureVector",
    "RiskCategory",
    "ScoredEntity",
    "Segment",
    "validate_features",
]
