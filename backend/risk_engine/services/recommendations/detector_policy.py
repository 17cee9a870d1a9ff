from typing import Dict, List

from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.features import count_breaches
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext


class PolicyBreachDetector(BaseDetector):
    """
    Emits one finding per user whose activities breached any policy.
    """

    detector_id = "DET-003"
    detector_name = "Policy Breach"
    severity = "high"
    category = "policy_breach"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            breaching = [a for a in history if count_breaches(a.policies_breached) > 0]
            if not breaching:
                continue
            categories: Dict[str, int] = {}
            for activity in breaching:
                for name, value in activity.policies_breached.items():
                    hits = count_breaches(value)
                    if hits:
                        categories[name] = categories.get(name, 0) + hits
            names = sorted(categories, key=lambda name: (-categories[name], name))
            severity = "critical" if any(a.severity == "critical" for a in breaching) else "high"
            recommendations.append(
                self._build_recommendation(
                    title=f"Policy breaches by {user}",
                    description=(
                        f"{len(breaching)} activities breached {len(names)} policy categories: "
                        + ", ".join(names[:5])
                    ),
                    confidence=0.92,
                    affected_users=[user],
                    suggested_actions=[
                        "Review the breached policies with the user",
                        "Confirm whether sensitive data left the organisation",
                        "Schedule refresher training on data handling",
                    ],
                    deviation_factors=[f"{name}: {categories[name]} occurrences" for name in names[:5]],
                    related_activities=[a.id for a in breaching],
                    severity=severity,
                )
            )
        return recommendations
