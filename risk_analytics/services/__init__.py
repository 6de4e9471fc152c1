# Batch-facing services shared by the API and the command-line runner.

from .scoring_service import score_batch_records, score_feature_record
from .validation import validate_batch

__all__ = [
    "score_batch_records",
    "score_feature_record",
    "validate_batch",
]
