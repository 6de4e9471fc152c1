import argparse
import json
import os
import sys
from datetime import datetime, timezone

from risk_analytics.components.data_ingestion import DataIngestion, DataIngestionConfig
from risk_analytics.components.feature_extractor import extract_feature_frame
from risk_analytics.components.score_store import ScoreStore, ScoreStoreConfig
from risk_analytics.exception import RecordValidationError
from risk_analytics.logger import logging
from risk_analytics.pipeline.scoring_pipeline import ScoringPipeline, ScoringPipelineConfig
from risk_analytics.reporting import cohort_retention, count_churn_transitions, detail_frame, pivot_summary, summarize
from risk_analytics.ruleset import DEFAULT_RULESET, load_ruleset
from risk_analytics.services.validation import parse_date, validate_batch


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
ARTIFACTS_DIR = os.path.join(PROJECT_ROOT, "artifacts")


def build_metadata(ruleset, analysis_date, summary, outputs, timestamp):
    return {
        "run_at": timestamp,
        "ruleset_name": ruleset.name,
        "ruleset_version": ruleset.version,
        "analysis_date": analysis_date.isoformat(),
        "summary": summary,
        "outputs": outputs,
    }


def write_metadata(artifacts_dir, metadata):
    os.makedirs(artifacts_dir, exist_ok=True)
    metadata_path = os.path.join(artifacts_dir, "metadata.json")
    with open(metadata_path, "w") as f:
        json.dump(metadata, f, indent=2)
    return metadata_path


def write_reports(artifacts_dir, ruleset, results, entities, events, analysis_date):
    os.makedirs(artifacts_dir, exist_ok=True)
    outputs = {}

    detail_path = os.path.join(artifacts_dir, "detail.csv")
    detail_frame(results).to_csv(detail_path, index=False)
    outputs["detail"] = detail_path

    features_path = os.path.join(artifacts_dir, "features.csv")
    extract_feature_frame(
        events, analysis_date, ruleset.extractor, entity_ids=[entity.id for entity in entities]
    ).to_csv(features_path)
    outputs["features"] = features_path

    summary_path = os.path.join(artifacts_dir, "summary.csv")
    summarize(results, ruleset.report_group_by).to_csv(summary_path, index=False)
    outputs["summary"] = summary_path

    strategy_path = os.path.join(artifacts_dir, "strategy_summary.csv")
    summarize(results, ("strategy", "action")).to_csv(strategy_path, index=False)
    outputs["strategy_summary"] = strategy_path

    index_key, column_key = (list(ruleset.report_group_by) + ["region"])[:2]
    column_values = ruleset.pivot_values.get(column_key)
    if column_values and index_key != column_key:
        pivot_path = os.path.join(artifacts_dir, "pivot.csv")
        pivot_summary(results, index_key, column_key, column_values).to_csv(pivot_path)
        outputs["pivot"] = pivot_path

    if ruleset.extractor.value_kind == "status":
        cohort_path = os.path.join(artifacts_dir, "cohort_retention.csv")
        cohort_retention(entities, events, ruleset.extractor.active_status).to_csv(cohort_path, index=False)
        outputs["cohort_retention"] = cohort_path

    return outputs


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Score entities against a risk ruleset and write report artifacts."
    )
    parser.add_argument("--entities", default=DataIngestionConfig.entities_data_path, help="Entity CSV file")
    parser.add_argument("--events", default=DataIngestionConfig.events_data_path, help="Event CSV file")
    parser.add_argument(
        "--ruleset",
        default=DEFAULT_RULESET,
        help="Bundled ruleset name (churn, fraud, sales) or path to a ruleset JSON file",
    )
    parser.add_argument("--analysis-date", required=True, help="As-of date, e.g. 2023-12-31")
    parser.add_argument("--strict", action="store_true", help="Abort on the first invalid input row")
    parser.add_argument("--max-workers", type=int, default=ScoringPipelineConfig.max_workers)
    parser.add_argument(
        "--artifacts-dir",
        default=ARTIFACTS_DIR,
        help="Directory for report CSVs, metadata.json and the score store",
    )
    parser.add_argument("--store", action="store_true", help="Persist scores and audit changes")
    args = parser.parse_args(argv)

    # Fail on a bad ruleset before reading any data.
    ruleset = load_ruleset(args.ruleset)
    analysis_date = parse_date(args.analysis_date, "analysis_date")
    mode = "strict" if args.strict else "partial"

    entity_rows, event_rows = DataIngestion(
        DataIngestionConfig(entities_data_path=args.entities, events_data_path=args.events)
    ).initiate_data_ingestion()

    validated = validate_batch(entity_rows, event_rows, mode)
    if mode == "strict" and validated["errors"]:
        first = validated["errors"][0]
        raise RecordValidationError(
            f"Strict mode: {first['record_type']} row {first['row_index']} rejected: {first['message']}",
            row_index=first["row_index"],
            record_id=first["id"],
            field=first.get("field"),
        )

    store = None
    if args.store:
        store = ScoreStore(
            ScoreStoreConfig(
                snapshot_file_path=os.path.join(args.artifacts_dir, "scores.pkl"),
                audit_log_file_path=os.path.join(args.artifacts_dir, "score_audit.jsonl"),
            )
        )
        store.load()

    pipeline = ScoringPipeline(
        ruleset=ruleset,
        config=ScoringPipelineConfig(max_workers=args.max_workers, store_results=store is not None),
        store=store,
    )
    results = pipeline.run(validated["entities"], validated["events"], analysis_date)
    if store is not None:
        store.save()

    outputs = write_reports(
        args.artifacts_dir, ruleset, results, validated["entities"], validated["events"], analysis_date
    )
    summary = {
        "total_entities": len(entity_rows),
        "total_events": len(event_rows),
        "valid_entities": len(validated["entities"]),
        "valid_events": len(validated["events"]),
        "error_count": len(validated["errors"]),
        "mode": mode,
    }
    if ruleset.extractor.value_kind == "status":
        summary["churned_entities"] = count_churn_transitions(
            validated["events"], ruleset.extractor.active_status, ruleset.extractor.cancelled_status
        )

    metadata = build_metadata(
        ruleset=ruleset,
        analysis_date=analysis_date,
        summary=summary,
        outputs=outputs,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    metadata_path = write_metadata(args.artifacts_dir, metadata)
    logging.info(f"Metadata written to {metadata_path}")
    print(json.dumps(metadata, indent=2))
    print(f"Metadata written to {metadata_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
