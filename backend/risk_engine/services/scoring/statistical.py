from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import numpy as np

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import AnomalyResult, BucketScore

Z_SCORE_SCALE = 33


def z_scores(values: Sequence[float], epsilon: float) -> np.ndarray:
    data = np.asarray(values, dtype=np.float64)
    if data.size == 0:
        return data
    # population standard deviation
    std = float(data.std())
    return (data - float(data.mean())) / max(epsilon, std)


def score_from_z(z: float) -> int:
    return int(min(100, round(abs(z) * Z_SCORE_SCALE)))


def daily_counts(activities: Sequence[CanonicalActivity]) -> "OrderedDict[str, int]":
    counts: "OrderedDict[str, int]" = OrderedDict()
    for activity in sorted(activities, key=lambda a: a.timestamp):
        counts[activity.date] = counts.get(activity.date, 0) + 1
    return counts


class StatisticalScorer:
    """Z-score baseline over bucketed counts and per-activity risk."""

    kind = "statistical"

    def __init__(self, threshold: Optional[float] = None, epsilon: Optional[float] = None):
        self.threshold = settings.Z_THRESHOLD if threshold is None else threshold
        self.epsilon = settings.Z_EPSILON if epsilon is None else epsilon

    def score_series(self, counts: Sequence[float], labels: Optional[Sequence[str]] = None) -> List[BucketScore]:
        if labels is None:
            labels = [str(i) for i in range(len(counts))]
        zs = z_scores(counts, self.epsilon)
        return [
            BucketScore(
                label=str(label),
                count=float(count),
                z_score=round(float(z), 4),
                is_anomaly=bool(abs(z) > self.threshold),
                anomaly_score=score_from_z(float(z)),
            )
            for label, count, z in zip(labels, counts, zs)
        ]

    def score(self, activities: Sequence[CanonicalActivity]) -> Dict[str, AnomalyResult]:
        if not activities:
            return {}
        risk_z = z_scores([a.risk_score for a in activities], self.epsilon)
        per_day = daily_counts(activities)
        day_z = dict(zip(per_day.keys(), z_scores(list(per_day.values()), self.epsilon)))

        results: Dict[str, AnomalyResult] = {}
        for activity, rz in zip(activities, risk_z):
            # only upward deviations matter: quiet days and low risk are not findings
            rz = max(0.0, float(rz))
            dz = max(0.0, float(day_z.get(activity.date, 0.0)))
            factors = []
            if rz > self.threshold:
                factors.append(f"risk score {activity.risk_score:.0f} is {rz:.1f} standard deviations above the mean")
            if dz > self.threshold:
                factors.append(f"activity volume on {activity.date} is {dz:.1f} standard deviations above normal")
            z = max(rz, dz)
            results[activity.id] = AnomalyResult(
                activity_id=activity.id,
                is_anomaly=z > self.threshold,
                anomaly_score=score_from_z(z),
                z_score=round(z, 4),
                strategy=self.kind,
                factors=factors,
            )
        return results
