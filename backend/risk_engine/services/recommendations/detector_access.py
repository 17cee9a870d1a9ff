import json
import re
from datetime import timedelta
from typing import List

from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext, parse_instant

_FAILURE_RE = re.compile(r"fail|denied|rejected|unauthori[sz]ed")


def _is_failed_access(activity: CanonicalActivity) -> bool:
    text = activity.activity.lower()
    if activity.values:
        text += " " + json.dumps(activity.values, sort_keys=True, default=str).lower()
    return bool(_FAILURE_RE.search(text))


class FailedAccessDetector(BaseDetector):
    """
    Repeated failed or denied access attempts by one user.
    """

    detector_id = "DET-004"
    detector_name = "Failed Access Attempts"
    severity = "medium"
    category = "access_violation"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            failures = [a for a in history if _is_failed_access(a)]
            if len(failures) < 3:
                continue
            recommendations.append(
                self._build_recommendation(
                    title=f"Repeated failed access by {user}",
                    description=f"{len(failures)} access attempts by {user} failed or were denied.",
                    confidence=0.80,
                    affected_users=[user],
                    suggested_actions=[
                        "Check for credential guessing against the account",
                        "Confirm the user still needs the requested access",
                    ],
                    deviation_factors=[f"{len(failures)} failed attempts"]
                    + sorted({a.integration for a in failures}),
                    related_activities=[a.id for a in failures],
                )
            )
        return recommendations


class MultiLocationDetector(BaseDetector):
    """
    Access from different locations closer together than travel allows.
    """

    detector_id = "DET-005"
    detector_name = "Multi Location Access"
    severity = "high"
    category = "access_violation"
    window = timedelta(hours=4)

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            located = [a for a in history if a.location]
            hops = []
            for previous, current in zip(located, located[1:]):
                if previous.location.lower() == current.location.lower():
                    continue
                if parse_instant(current) - parse_instant(previous) <= self.window:
                    hops.append((previous, current))
            if not hops:
                continue
            related = sorted({a.id for pair in hops for a in pair})
            recommendations.append(
                self._build_recommendation(
                    title=f"Access from multiple locations by {user}",
                    description=f"{user} appeared in different locations {len(hops)} times within four hours.",
                    confidence=0.88,
                    affected_users=[user],
                    suggested_actions=[
                        "Confirm the user's whereabouts",
                        "Force re-authentication and review active sessions",
                    ],
                    deviation_factors=[f"{a.location} -> {b.location}" for a, b in hops[:3]],
                    related_activities=related,
                )
            )
        return recommendations


class AccountSharingDetector(BaseDetector):
    """
    Back-to-back activity from different devices or locations suggests more
    than one person is using the account.
    """

    detector_id = "DET-006"
    detector_name = "Account Sharing"
    severity = "high"
    category = "access_violation"
    gap = timedelta(minutes=5)

    def _switched(self, previous: CanonicalActivity, current: CanonicalActivity) -> bool:
        if previous.device_id and current.device_id and previous.device_id != current.device_id:
            return True
        if previous.location and current.location and previous.location.lower() != current.location.lower():
            return True
        return False

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            if len(history) < 5:
                continue
            switches = [
                (previous, current)
                for previous, current in zip(history, history[1:])
                if parse_instant(current) - parse_instant(previous) < self.gap and self._switched(previous, current)
            ]
            if len(switches) < 2:
                continue
            recommendations.append(
                self._build_recommendation(
                    title=f"Possible account sharing by {user}",
                    description=(
                        f"{len(switches)} times {user}'s activity switched device or location "
                        f"within five minutes."
                    ),
                    confidence=0.80,
                    affected_users=[user],
                    suggested_actions=[
                        "Remind the user that credentials must not be shared",
                        "Reset the account password and enable MFA",
                    ],
                    deviation_factors=[
                        f"{a.device_id or a.location} -> {b.device_id or b.location}" for a, b in switches[:3]
                    ],
                    related_activities=sorted({a.id for pair in switches for a in pair}),
                )
            )
        return recommendations
