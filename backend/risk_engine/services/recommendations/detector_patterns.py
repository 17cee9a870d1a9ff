from typing import List

from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext


class SequencePatternDetector(BaseDetector):
    """
    Turns high-risk mined action chains into findings for the users who ran them.
    """

    detector_id = "DET-011"
    detector_name = "High Risk Sequence"
    severity = "high"
    category = "high_risk_sequence"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for pattern in context.sequences.patterns:
            if not pattern.is_high_risk or not pattern.users:
                continue
            chain = " -> ".join(f"{s.action} ({s.integration})" for s in pattern.steps)
            user_set = set(pattern.users)
            related = [
                a.id for a in context.activities
                if a.username in user_set and a.severity in ("high", "critical")
            ]
            recommendations.append(
                self._build_recommendation(
                    title="High-risk action sequence",
                    description=f"The chain {chain} occurred {pattern.count} times.",
                    confidence=min(0.95, 0.7 + min(0.2, pattern.count / 50.0)),
                    affected_users=pattern.users,
                    suggested_actions=[
                        "Review each occurrence of the sequence end to end",
                        "Add a preventive control at the final step of the chain",
                    ],
                    deviation_factors=[
                        f"average risk {pattern.average_risk_score:.0f}",
                        f"final step risk level {pattern.steps[-1].risk_level}",
                    ],
                    related_activities=related,
                    severity="critical" if pattern.average_risk_score >= 2000 else "high",
                    fingerprint_key=pattern.id,
                )
            )
        return recommendations


class ClusterOutlierDetector(BaseDetector):
    """
    Users the clustering marked both high-risk and outlying.
    """

    detector_id = "DET-012"
    detector_name = "Cluster Outlier"
    severity = "high"
    category = "unusual_behavior"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for point in context.clusters.points:
            if not point.is_outlier or point.cluster != "high_risk":
                continue
            history = context.by_user.get(point.name, [])
            recommendations.append(
                self._build_recommendation(
                    title=f"Behavioural outlier: {point.name}",
                    description=(
                        f"{point.name} averages {point.avg_risk_score:.0f} risk across "
                        f"{point.activities} activities with {point.policy_breaches} breaches."
                    ),
                    confidence=0.75 + min(0.2, point.policy_breaches / 50.0),
                    affected_users=[point.name],
                    suggested_actions=[
                        "Prioritise the user for manual review",
                        "Compare access rights with peers in the same department",
                    ],
                    deviation_factors=[
                        f"average risk {point.avg_risk_score:.0f}",
                        f"behaviour diversity {point.behavior_diversity}",
                        f"{point.policy_breaches} policy breaches",
                    ],
                    related_activities=[a.id for a in history],
                )
            )
        return recommendations
