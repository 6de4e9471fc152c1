from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import json
import os
import sys
from typing import Any

from risk_analytics.exception import CustomException
from risk_analytics.logger import logging
from risk_analytics.schemas.records import ScoredEntity
from risk_analytics.utils import load_object, save_object


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
ARTIFACTS_DIR = os.path.join(PROJECT_ROOT, "artifacts")

ScoreKey = tuple[int, str, str]


@dataclass
class ScoreStoreConfig:
    snapshot_file_path: str = os.path.join(ARTIFACTS_DIR, "scores.pkl")
    audit_log_file_path: str = os.path.join(ARTIFACTS_DIR, "score_audit.jsonl")


def make_key(entity_id: int, analysis_date: date | datetime, ruleset_version: str) -> ScoreKey:
    return (int(entity_id), analysis_date.isoformat(), str(ruleset_version))


def _snapshot(result: ScoredEntity) -> dict[str, Any]:
    return {
        "score": result.score,
        "category": result.category.label,
        "strategy": result.segment.strategy,
        "action": result.segment.action,
        "features": result.features.to_dict(),
    }


class ScoreStore:
    """Computed scores keyed by (entity id, analysis date, ruleset version).

    Writing an identical recomputation is a no-op. Writing a different
    result for an existing key replaces it and appends one line to the
    audit log; the log is write-only.
    """

    def __init__(self, config: ScoreStoreConfig | None = None, actor: str | None = None):
        self.store_config = config or ScoreStoreConfig()
        self.actor = actor or os.getenv("RISK_ANALYTICS_ACTOR") or os.getenv("USER") or "risk_analytics"
        self._entries: dict[ScoreKey, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: ScoreKey) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        return dict(entry) if entry is not None else None

    def put(self, key: ScoreKey, result: ScoredEntity) -> bool:
        """Store ``result``; returns True when stored data changed."""
        new_entry = _snapshot(result)
        old_entry = self._entries.get(key)
        if old_entry == new_entry:
            return False

        self._entries[key] = new_entry
        if old_entry is not None:
            self._append_audit(key, old_entry, new_entry)
        return True

    def put_many(self, results: list[ScoredEntity], analysis_date: date | datetime, ruleset_version: str) -> int:
        changed = 0
        for result in results:
            if self.put(make_key(result.entity_id, analysis_date, ruleset_version), result):
                changed += 1
        logging.info(f"Score store updated {changed} of {len(results)} entries")
        return changed

    def _append_audit(self, key: ScoreKey, old_entry: dict[str, Any], new_entry: dict[str, Any]) -> None:
        entity_id, analysis_date, ruleset_version = key
        record = {
            "table_name": "scores",
            "operation_type": "UPDATE",
            "entity_id": entity_id,
            "analysis_date": analysis_date,
            "ruleset_version": ruleset_version,
            "old_values": old_entry,
            "new_values": new_entry,
            "changed_by": self.actor,
            "change_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            audit_path = self.store_config.audit_log_file_path
            os.makedirs(os.path.dirname(audit_path) or ".", exist_ok=True)
            with open(audit_path, "a", encoding="utf-8") as file:
                file.write(json.dumps(record, sort_keys=True) + "\n")
        except Exception as e:
            raise CustomException(e, sys)

    def save(self) -> str:
        save_object(file_path=self.store_config.snapshot_file_path, obj=self._entries)
        return self.store_config.snapshot_file_path

    def load(self) -> int:
        if not os.path.exists(self.store_config.snapshot_file_path):
            return 0
        self._entries = dict(load_object(file_path=self.store_config.snapshot_file_path))
        return len(self._entries)


__all__ = [
    "ScoreStore",
    "ScoreStoreConfig",
    "make_key",
]
