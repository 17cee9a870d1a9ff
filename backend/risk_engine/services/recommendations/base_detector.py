import hashlib
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import ClusteringResult, DailyTimelinePoint, ScoringOutcome, SequenceMiningResult
from risk_engine.schemas.recommendations import Recommendation, RecommendationConfig


class DetectionContext:
    """Everything a detector may read during one analysis run."""

    def __init__(
        self,
        activities: Sequence[CanonicalActivity],
        config: RecommendationConfig,
        scoring: ScoringOutcome,
        sequences: SequenceMiningResult,
        clusters: ClusteringResult,
        timeline: List[DailyTimelinePoint],
    ):
        self.activities = list(activities)
        self.config = config
        self.scoring = scoring
        self.sequences = sequences
        self.clusters = clusters
        self.timeline = timeline
        self.by_id: Dict[str, CanonicalActivity] = {a.id: a for a in self.activities}
        grouped: Dict[str, List[CanonicalActivity]] = defaultdict(list)
        for activity in self.activities:
            grouped[activity.username].append(activity)
        self.by_user: Dict[str, List[CanonicalActivity]] = {
            user: sorted(items, key=lambda a: (a.timestamp, a.id)) for user, items in sorted(grouped.items())
        }

    def user_histories(self):
        for user, history in self.by_user.items():
            if user != "unknown":
                yield user, history


def parse_instant(activity: CanonicalActivity) -> datetime:
    return datetime.fromisoformat(activity.timestamp)


class BaseDetector:
    """
    Base detector with helpers to emit recommendation records.
    """

    detector_id: str = "DET-BASE"
    detector_name: str = "Base Detector"
    severity: str = "low"
    category: str = "other"

    def evaluate(self, context: DetectionContext) -> List[Recommendation]:
        raise NotImplementedError()

    def _fingerprint(self, key: str, category: str) -> str:
        payload = f"{self.detector_id}|{category}|{key}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:24]

    def _build_recommendation(
        self,
        title: str,
        description: str,
        confidence: float,
        affected_users: Sequence[str],
        suggested_actions: List[str],
        deviation_factors: Optional[List[str]] = None,
        related_activities: Optional[Sequence[str]] = None,
        severity: Optional[str] = None,
        category: Optional[str] = None,
        fingerprint_key: Optional[str] = None,
    ) -> Recommendation:
        users = sorted(set(affected_users))
        category = category or self.category
        key = fingerprint_key or ",".join(users)
        return Recommendation(
            id=f"rec-{self._fingerprint(key, category)}",
            category=category,
            title=title,
            description=description,
            severity=severity or self.severity,
            confidence=round(max(0.0, min(1.0, confidence)), 4),
            affected_users=users,
            suggested_actions=suggested_actions,
            deviation_factors=deviation_factors or [],
            related_activities=list(related_activities or []),
            detector_id=self.detector_id,
        )
