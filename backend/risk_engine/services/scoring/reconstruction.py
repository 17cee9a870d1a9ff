import math
import logging
from typing import Dict, Optional, Sequence

import numpy as np

from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import AnomalyResult
from risk_engine.services.analytics.sampling import stratified_sample
from risk_engine.services.features import FEATURE_NAMES, FeatureConfig, extract_feature_matrix
from risk_engine.services.scoring.autoencoder import Autoencoder

logger = logging.getLogger(__name__)

THRESHOLD_PERCENTILE = 0.95


class InsufficientDataError(ValueError):
    pass


def percentile_threshold(errors: np.ndarray, percentile: float = THRESHOLD_PERCENTILE) -> float:
    if errors.size == 0:
        return 0.0
    ordered = np.sort(errors)
    index = min(int(math.floor(ordered.size * percentile)), ordered.size - 1)
    return float(ordered[index])


def normalized_scores(errors: np.ndarray, threshold: float) -> np.ndarray:
    if errors.size == 0:
        return np.zeros(0, dtype=int)
    denominator = max(float(errors.max()), threshold * 1.5)
    if denominator <= 0:
        return np.zeros(errors.size, dtype=int)
    return np.minimum(100, np.round(errors / denominator * 100)).astype(int)


class ReconstructionScorer:
    """Scores activities by how badly a small autoencoder reconstructs them."""

    kind = "reconstruction"

    def __init__(self, epochs: int, seed: int, learning_rate: float, min_samples: int,
                 max_training_samples: int, feature_config: Optional[FeatureConfig] = None):
        self.epochs = epochs
        self.seed = seed
        self.learning_rate = learning_rate
        self.min_samples = min_samples
        self.max_training_samples = max_training_samples
        self.feature_config = feature_config or FeatureConfig()
        self.model: Optional[Autoencoder] = None
        self.threshold: Optional[float] = None
        self.training_samples = 0
        self.sampled = False

    def fit(self, activities: Sequence[CanonicalActivity]) -> "ReconstructionScorer":
        if len(activities) < self.min_samples:
            raise InsufficientDataError(
                f"need at least {self.min_samples} activities to train, got {len(activities)}"
            )
        training = list(activities)
        if len(training) > self.max_training_samples:
            training = stratified_sample(training, self.max_training_samples)
            self.sampled = True
        matrix = extract_feature_matrix(training, self.feature_config)
        model = Autoencoder(len(FEATURE_NAMES), seed=self.seed, learning_rate=self.learning_rate)
        model.fit(matrix, epochs=self.epochs)
        self.model = model
        self.threshold = percentile_threshold(model.reconstruction_errors(matrix))
        self.training_samples = len(training)
        logger.info(
            "reconstruction model trained",
            extra={"samples": self.training_samples, "threshold": self.threshold, "sampled": self.sampled},
        )
        return self

    def errors(self, activities: Sequence[CanonicalActivity]) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("reconstruction model has not been trained")
        return self.model.reconstruction_errors(extract_feature_matrix(activities, self.feature_config))

    def score(self, activities: Sequence[CanonicalActivity]) -> Dict[str, AnomalyResult]:
        if not activities:
            return {}
        if self.model is None or self.threshold is None:
            self.fit(activities)
        return self.results_from_errors(activities, self.errors(activities))

    def results_from_errors(self, activities: Sequence[CanonicalActivity], errors: np.ndarray) -> Dict[str, AnomalyResult]:
        """Scores are normalized against the largest error in the whole scored set."""
        scores = normalized_scores(errors, self.threshold)
        results: Dict[str, AnomalyResult] = {}
        for activity, error, score in zip(activities, errors, scores):
            anomalous = bool(error > self.threshold)
            factors = []
            if anomalous:
                factors.append(f"reconstruction error {error:.4f} exceeds learned threshold {self.threshold:.4f}")
            results[activity.id] = AnomalyResult(
                activity_id=activity.id,
                is_anomaly=anomalous,
                anomaly_score=int(score),
                error=float(error),
                strategy=self.kind,
                factors=factors,
            )
        return results
