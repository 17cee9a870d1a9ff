from typing import List

from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.features import is_download
from risk_engine.services.recommendations.base_detector import BaseDetector, DetectionContext

MIN_TRANSFERS = 3
MIN_VOLUME = 10000.0
HIGH_VOLUME = 50000.0
_TRANSFER_WORDS = ("share", "send", "email", "copy", "transfer", "forward", "attach")


def is_transfer(activity: CanonicalActivity) -> bool:
    text = activity.activity.lower()
    if is_download(text) or any(word in text for word in _TRANSFER_WORDS):
        return True
    return activity.integration == "usb" and (activity.data_volume or 0) > 0


class DataExfiltrationDetector(BaseDetector):
    """
    Several outbound transfers that together move a large volume of data.
    """

    detector_id = "DET-007"
    detector_name = "Data Exfiltration"
    severity = "medium"
    category = "data_exfiltration"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        recommendations = []
        for user, history in context.user_histories():
            transfers = [a for a in history if is_transfer(a)]
            if len(transfers) < MIN_TRANSFERS:
                continue
            volume = sum(a.data_volume or 0.0 for a in transfers)
            if volume < MIN_VOLUME:
                continue
            channels = sorted({a.integration for a in transfers})
            recommendations.append(
                self._build_recommendation(
                    title=f"Possible data exfiltration by {user}",
                    description=(
                        f"{len(transfers)} outbound transfers moved {volume:,.0f} bytes "
                        f"through {', '.join(channels)}."
                    ),
                    confidence=0.7 + min(0.2, volume / 1e6),
                    affected_users=[user],
                    suggested_actions=[
                        "Review the destination of each transfer",
                        "Block removable media and external sharing for the user",
                        "Engage data loss prevention review",
                    ],
                    deviation_factors=[
                        f"transfer volume {volume:,.0f} exceeds {MIN_VOLUME:,.0f}",
                        f"{len(transfers)} transfers via {', '.join(channels)}",
                    ],
                    related_activities=[a.id for a in transfers],
                    severity="high" if volume > HIGH_VOLUME else "medium",
                )
            )
        return recommendations
