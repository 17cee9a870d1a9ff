from typing import List

from risk_engine.schemas.activity import RISK_THRESHOLDS
from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.features import count_breaches
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext


class HighRiskActivityDetector(BaseDetector):
    """
    Flags users with critical-risk activities, or a run of elevated ones.
    """

    detector_id = "DET-001"
    detector_name = "High Risk Activity"
    severity = "high"
    category = "high_risk_sequence"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            critical = [a for a in history if a.risk_score >= RISK_THRESHOLDS["critical"]]
            elevated = [a for a in history if RISK_THRESHOLDS["medium"] <= a.risk_score < RISK_THRESHOLDS["critical"]]
            if critical:
                peak = max(a.risk_score for a in critical)
                recommendations.append(
                    self._build_recommendation(
                        title=f"Critical-risk activity by {user}",
                        description=(
                            f"{len(critical)} activities scored at or above "
                            f"{RISK_THRESHOLDS['critical']:.0f} (peak {peak:.0f})."
                        ),
                        confidence=0.85,
                        affected_users=[user],
                        suggested_actions=[
                            "Review the flagged activities with the user's manager",
                            "Temporarily restrict access to sensitive resources",
                            "Preserve activity logs for investigation",
                        ],
                        deviation_factors=[
                            f"{a.activity or 'activity'} via {a.integration} scored {a.risk_score:.0f}"
                            for a in critical[:3]
                        ],
                        related_activities=[a.id for a in critical],
                    )
                )
            elif len(elevated) >= 3:
                recommendations.append(
                    self._build_recommendation(
                        title=f"Repeated elevated-risk activity by {user}",
                        description=f"{len(elevated)} activities scored between medium and critical risk.",
                        confidence=0.65,
                        affected_users=[user],
                        suggested_actions=[
                            "Monitor the user's activity over the coming days",
                            "Confirm the activities match the user's role",
                        ],
                        deviation_factors=[
                            f"{len(elevated)} elevated-risk activities",
                            f"{sum(count_breaches(a.policies_breached) for a in elevated)} policy breaches among them",
                        ],
                        related_activities=[a.id for a in elevated],
                        severity="medium",
                        category="unusual_behavior",
                    )
                )
        return recommendations
