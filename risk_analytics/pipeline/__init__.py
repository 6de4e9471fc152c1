from .scoring_pipeline import ScoringPipeline, ScoringPipelineConfig

__all__ = [
    "ScoringPipeline",
    "ScoringPipelineConfig",
]
