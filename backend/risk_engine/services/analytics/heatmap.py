import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from risk_engine.core.config import settings
from risk_engine.schemas.activity import INTEGRATION_CATEGORIES, CanonicalActivity
from risk_engine.schemas.analysis import HeatmapCell, HeatmapResult
from risk_engine.services.scoring.autoencoder import Autoencoder

logger = logging.getLogger(__name__)

HOURS = 24


def _accumulate(activities: Sequence[CanonicalActivity]) -> Dict[Tuple[str, int], List[float]]:
    grid: Dict[Tuple[str, int], List[float]] = {
        (integration, hour): [0, 0.0] for integration in INTEGRATION_CATEGORIES for hour in range(HOURS)
    }
    for activity in activities:
        key = (activity.integration if activity.integration in INTEGRATION_CATEGORIES else "other", activity.hour % HOURS)
        grid[key][0] += 1
        grid[key][1] += activity.risk_score
    return grid


def _cell_anomalies(counts: np.ndarray, seed: int, epochs: int) -> np.ndarray:
    """Per-cell squared reconstruction error of the count grid, scaled to [0, 1]."""
    peak = float(counts.max())
    if peak <= 0:
        return np.zeros_like(counts)
    vector = (counts / peak).reshape(1, -1)
    model = Autoencoder(vector.shape[1], seed=seed)
    model.fit(vector, epochs=epochs, batch_size=1)
    squared = (vector - model.reconstruct(vector)) ** 2
    worst = float(squared.max())
    if worst <= 0:
        return np.zeros_like(counts)
    return (squared / worst).reshape(-1)


def build_heatmap(activities: Sequence[CanonicalActivity], use_model: bool = False,
                  seed: Optional[int] = None, epochs: Optional[int] = None) -> HeatmapResult:
    activities = list(activities or [])
    if not activities:
        return HeatmapResult()

    grid = _accumulate(activities)
    keys = list(grid.keys())
    scores = [grid[key][1] / grid[key][0] if grid[key][0] else 0.0 for key in keys]
    max_score = max(scores) if scores else 0.0

    anomalies = np.zeros(len(keys))
    model_applied = False
    if use_model and len(activities) >= settings.HEATMAP_MODEL_MIN_ACTIVITIES:
        counts = np.array([grid[key][0] for key in keys], dtype=np.float64)
        try:
            anomalies = _cell_anomalies(
                counts,
                seed=settings.MODEL_SEED if seed is None else seed,
                epochs=settings.HEATMAP_MODEL_EPOCHS if epochs is None else epochs,
            )
            model_applied = True
        except Exception as exc:
            logger.warning("heatmap model boost skipped", extra={"error": str(exc)})
            anomalies = np.zeros(len(keys))

    cells: List[HeatmapCell] = []
    for (integration, hour), score, anomaly in zip(keys, scores, anomalies):
        count, total_risk = grid[(integration, hour)]
        base = score / max_score if max_score > 0 else 0.0
        intensity = min(1.0, base * (1.0 + 2.0 * float(anomaly))) if model_applied else base
        cells.append(
            HeatmapCell(
                integration=integration,
                hour=hour,
                count=int(count),
                total_risk=float(total_risk),
                score=round(score, 2),
                intensity=round(intensity, 4),
                anomaly=round(float(anomaly), 4),
            )
        )
    return HeatmapResult(
        cells=cells,
        max_score=round(max_score, 2),
        total_activities=len(activities),
        model_applied=model_applied,
    )
