import logging
from typing import Dict, Optional, Protocol, Sequence, Union

import numpy as np
from pydantic import BaseModel, Field

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import AnomalyResult, ScoringOutcome
from risk_engine.services.features import FeatureConfig
from risk_engine.services.scoring.reconstruction import ReconstructionScorer
from risk_engine.services.scoring.statistical import StatisticalScorer

logger = logging.getLogger(__name__)


class AnomalyScorer(Protocol):
    kind: str

    def score(self, activities: Sequence[CanonicalActivity]) -> Dict[str, AnomalyResult]:
        ...


Scorer = Union[StatisticalScorer, ReconstructionScorer]


class ScorerConfig(BaseModel):
    z_threshold: float = Field(default_factory=lambda: settings.Z_THRESHOLD)
    epsilon: float = Field(default_factory=lambda: settings.Z_EPSILON)
    min_samples: int = Field(default_factory=lambda: settings.MODEL_MIN_SAMPLES)
    max_training_samples: int = Field(default_factory=lambda: settings.MODEL_MAX_TRAINING_SAMPLES)
    epochs: int = Field(default_factory=lambda: settings.MODEL_EPOCHS)
    learning_rate: float = Field(default_factory=lambda: settings.MODEL_LEARNING_RATE)
    seed: int = Field(default_factory=lambda: settings.MODEL_SEED)
    feature_config: FeatureConfig = Field(default_factory=FeatureConfig)

    class Config:
        frozen = True


def statistical_scorer(config: ScorerConfig) -> StatisticalScorer:
    return StatisticalScorer(threshold=config.z_threshold, epsilon=config.epsilon)


def select_scorer(activity_count: int, use_model: bool = True, config: Optional[ScorerConfig] = None) -> Scorer:
    """Pick the strategy the dataset can support. Pure: no training happens here."""
    config = config or ScorerConfig()
    if use_model and activity_count >= config.min_samples:
        return ReconstructionScorer(
            epochs=config.epochs,
            seed=config.seed,
            learning_rate=config.learning_rate,
            min_samples=config.min_samples,
            max_training_samples=config.max_training_samples,
            feature_config=config.feature_config,
        )
    return statistical_scorer(config)


def iter_score_activities(activities: Sequence[CanonicalActivity], use_model: bool = True,
                          config: Optional[ScorerConfig] = None, chunk_size: Optional[int] = None):
    """
    Generator form of score_activities: yields completion fractions between
    chunks and returns the ScoringOutcome when exhausted.
    """
    config = config or ScorerConfig()
    activities = list(activities or [])
    chunk_size = max(1, chunk_size or settings.CHUNK_SIZE)
    scorer = select_scorer(len(activities), use_model, config)
    fallback_reason = None
    if use_model and scorer.kind == StatisticalScorer.kind and activities:
        fallback_reason = f"only {len(activities)} activities, model needs {config.min_samples}"

    if scorer.kind == ReconstructionScorer.kind:
        try:
            scorer.fit(activities)
            yield 0.3
            errors = []
            for start in range(0, len(activities), chunk_size):
                errors.append(scorer.errors(activities[start:start + chunk_size]))
                yield 0.3 + 0.7 * min(1.0, (start + chunk_size) / len(activities))
            return ScoringOutcome(
                strategy=scorer.kind,
                results=scorer.results_from_errors(activities, np.concatenate(errors)),
                threshold=scorer.threshold,
                training_samples=scorer.training_samples,
                sampled=scorer.sampled,
            )
        except Exception as exc:
            # model scoring is opportunistic; the baseline always answers
            logger.warning("reconstruction scoring failed, using statistical baseline", extra={"error": str(exc)})
            fallback_reason = f"model training failed: {exc}"
            scorer = statistical_scorer(config)

    results = scorer.score(activities)
    yield 1.0
    return ScoringOutcome(
        strategy=scorer.kind,
        results=results,
        threshold=scorer.threshold,
        fallback_reason=fallback_reason,
    )


def score_activities(activities: Sequence[CanonicalActivity], use_model: bool = True,
                     config: Optional[ScorerConfig] = None) -> ScoringOutcome:
    steps = iter_score_activities(activities, use_model, config)
    while True:
        try:
            next(steps)
        except StopIteration as done:
            return done.value
