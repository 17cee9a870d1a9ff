from typing import List

from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext

OFF_HOURS_START = 22
OFF_HOURS_END = 6


def is_off_hours(hour: int, critical_hours) -> bool:
    return hour >= OFF_HOURS_START or hour < OFF_HOURS_END or hour in critical_hours


class UnusualTimingDetector(BaseDetector):
    """
    Detects activity outside business hours, with critical hours weighted highest.
    """

    detector_id = "DET-002"
    detector_name = "Unusual Timing"
    severity = "medium"
    category = "suspicious_timing"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        critical_hours = set(context.config.critical_hours)
        recommendations = []
        for user, history in context.user_histories():
            off_hours = [a for a in history if is_off_hours(a.hour, critical_hours)]
            in_critical = [a for a in off_hours if a.hour in critical_hours]
            if not in_critical and len(off_hours) < 2:
                continue
            if in_critical:
                confidence = 0.90
                severity = "high"
            else:
                confidence = min(0.95, 0.70 + 0.05 * len(off_hours))
                severity = "high" if len(off_hours) >= 5 else "medium"
            hours = sorted({a.hour for a in off_hours})
            factors = [f"{len(off_hours)} activities outside business hours"]
            if in_critical:
                factors.append(f"{len(in_critical)} activities during critical hours {sorted(critical_hours)}")
            factors.append("active hours: " + ", ".join(f"{h:02d}:00" for h in hours))
            recommendations.append(
                self._build_recommendation(
                    title=f"Late night activity by {user}",
                    description=(
                        f"{user} was active {len(off_hours)} times between "
                        f"{OFF_HOURS_START}:00 and {OFF_HOURS_END:02d}:00."
                    ),
                    confidence=confidence,
                    affected_users=[user],
                    suggested_actions=[
                        "Verify the after hours access was authorised",
                        "Check whether the session originated from a known device",
                    ],
                    deviation_factors=factors,
                    related_activities=[a.id for a in off_hours],
                    severity=severity,
                )
            )
        return recommendations


class TemporalBurstDetector(BaseDetector):
    """
    Dataset-wide check: far more activity in the critical hours than an even
    spread across the day would predict.
    """

    detector_id = "DET-008"
    detector_name = "Critical Hour Burst"
    severity = "critical"
    category = "suspicious_timing"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        critical_hours = set(context.config.critical_hours)
        if not critical_hours or not context.activities:
            return []
        burst = [a for a in context.activities if a.hour in critical_hours and a.username != "unknown"]
        expected = len(context.activities) * len(critical_hours) / 24.0
        if len(burst) < 3 or expected <= 0:
            return []
        ratio = len(burst) / expected
        if ratio < context.config.temporal_burst_multiplier:
            return []
        users = sorted({a.username for a in burst})
        return [
            self._build_recommendation(
                title="Activity burst during critical hours",
                description=(
                    f"{len(burst)} activities fell in critical hours, {ratio:.1f}x the "
                    f"{expected:.1f} expected from an even daily spread."
                ),
                confidence=0.99,
                affected_users=users,
                suggested_actions=[
                    "Escalate to the security operations lead",
                    "Check for automated or scripted access during the burst",
                    "Review all sessions opened in the critical window",
                ],
                deviation_factors=[
                    f"burst ratio {ratio:.1f} against multiplier {context.config.temporal_burst_multiplier:.1f}",
                    f"{len(users)} users involved",
                ],
                related_activities=[a.id for a in burst],
                fingerprint_key="critical-hours-burst",
            )
        ]
