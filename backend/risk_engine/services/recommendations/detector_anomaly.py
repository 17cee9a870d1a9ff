from collections import Counter
from typing import List

from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext

TOP_CONTRIBUTORS = 3


def _confidence_from_score(score: float) -> float:
    return min(0.95, 0.6 + score / 250.0)


class VolumeAnomalyDetector(BaseDetector):
    """
    Days whose activity count sits far above the dataset's daily baseline.
    """

    detector_id = "DET-009"
    detector_name = "Volume Anomaly"
    severity = "medium"
    category = "bulk_operations"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for point in context.timeline:
            if not point.is_anomaly or point.z_score <= 0:
                continue
            day_activities = [a for a in context.activities if a.date == point.date and a.username != "unknown"]
            contributors = Counter(a.username for a in day_activities)
            top = sorted(contributors.items(), key=lambda item: (-item[1], item[0]))[:TOP_CONTRIBUTORS]
            if not top:
                continue
            score = min(100, round(abs(point.z_score) * 33))
            recommendations.append(
                self._build_recommendation(
                    title=f"Unusual activity volume on {point.date}",
                    description=(
                        f"{point.activities} activities on {point.date}, "
                        f"{point.z_score:.1f} standard deviations above the daily mean."
                    ),
                    confidence=_confidence_from_score(score),
                    affected_users=[name for name, _ in top],
                    suggested_actions=[
                        "Check for bulk exports or scripted jobs on that day",
                        "Confirm the top contributors' workload justified the volume",
                    ],
                    deviation_factors=[f"{name}: {count} activities" for name, count in top],
                    related_activities=[a.id for a in day_activities],
                    severity="high" if score >= 80 else "medium",
                    fingerprint_key=point.date,
                )
            )
        return recommendations


class AnomalyClusterDetector(BaseDetector):
    """
    Users with several activities the anomaly scorer flagged.
    """

    detector_id = "DET-010"
    detector_name = "Anomaly Cluster"
    severity = "medium"
    category = "unusual_behavior"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        results = context.scoring.results
        recommendations = []
        for user, history in context.user_histories():
            flagged = [(a, results[a.id]) for a in history if a.id in results and results[a.id].is_anomaly]
            if len(flagged) < 2:
                continue
            scores = [r.anomaly_score for _, r in flagged]
            mean_score = sum(scores) / len(scores)
            factors = [f"{len(flagged)} anomalous activities ({context.scoring.strategy} scoring)"]
            for _, result in flagged[:2]:
                factors.extend(result.factors[:1])
            recommendations.append(
                self._build_recommendation(
                    title=f"Anomalous behaviour pattern for {user}",
                    description=(
                        f"{len(flagged)} of {len(history)} activities by {user} deviate from the "
                        f"dataset's normal pattern (mean anomaly score {mean_score:.0f})."
                    ),
                    confidence=_confidence_from_score(mean_score),
                    affected_users=[user],
                    suggested_actions=[
                        "Compare the flagged activities with the user's usual routine",
                        "Interview the user if the deviation is unexplained",
                    ],
                    deviation_factors=factors,
                    related_activities=[a.id for a, _ in flagged],
                    severity="high" if max(scores) >= 80 else "medium",
                )
            )
        return recommendations
