from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

from risk_analytics.components.feature_extractor import extract_features, group_events
from risk_analytics.components.score_store import ScoreStore
from risk_analytics.logger import logging
from risk_analytics.ruleset import Ruleset, load_ruleset
from risk_analytics.schemas.records import Entity, Event, ScoredEntity
from risk_analytics.scoring import assign_segment, classify, entity_value, score_features


@dataclass
class ScoringPipelineConfig:
    max_workers: int = 4
    store_results: bool = False


class ScoringPipeline:
    """Score every entity independently, then hand the full set back.

    Entities never share state, so the per-entity step is a plain map that
    runs on a thread pool. ``run`` returns only after every entity is done;
    results are ordered by entity id whatever order the workers finish in.
    """

    def __init__(
        self,
        ruleset: Ruleset | None = None,
        config: ScoringPipelineConfig | None = None,
        store: ScoreStore | None = None,
    ):
        self.ruleset = ruleset or load_ruleset()
        self.pipeline_config = config or ScoringPipelineConfig()
        self.store = store
        if self.pipeline_config.max_workers < 1:
            raise ValueError("'max_workers' must be at least 1")

    def score_entity(
        self,
        entity: Entity,
        events: Iterable[Event],
        analysis_date: date | datetime,
    ) -> ScoredEntity:
        own_events = [event for event in events if event.entity_id == entity.id]
        features = extract_features(
            own_events,
            analysis_date,
            self.ruleset.extractor,
            signup_date=entity.signup_date,
        )
        breakdown = score_features(features, self.ruleset)
        category = classify(breakdown.score, self.ruleset)
        segment = assign_segment(category, entity, self.ruleset)
        return ScoredEntity(
            entity_id=entity.id,
            region=entity.region,
            features=features,
            score=breakdown.score,
            category=category,
            segment=segment,
            contributions=breakdown.contributions,
            value=entity_value(features, self.ruleset),
            attributes=dict(entity.attributes),
        )

    def run(
        self,
        entities: Iterable[Entity],
        events: Iterable[Event],
        analysis_date: date | datetime,
    ) -> list[ScoredEntity]:
        entity_list = list(entities)
        events_by_entity = group_events(events)
        logging.info(
            f"Scoring {len(entity_list)} entities with ruleset {self.ruleset.name} "
            f"v{self.ruleset.version} as of {analysis_date}"
        )

        def _score(entity: Entity) -> ScoredEntity:
            return self.score_entity(entity, events_by_entity.get(entity.id, []), analysis_date)

        if self.pipeline_config.max_workers == 1 or len(entity_list) < 2:
            results = [_score(entity) for entity in entity_list]
        else:
            with ThreadPoolExecutor(max_workers=self.pipeline_config.max_workers) as executor:
                results = list(executor.map(_score, entity_list))

        results.sort(key=lambda result: result.entity_id)
        if self.store is not None and self.pipeline_config.store_results:
            self.store.put_many(results, analysis_date, self.ruleset.version)

        logging.info(f"Scored {len(results)} entities")
        return results


__all__ = [
    "ScoringPipeline",
    "ScoringPipelineConfig",
]
