import logging
from typing import Dict, List, Optional, Sequence

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import ClusteringResult, UserClusterPoint
from risk_engine.services.analytics.sampling import stratified_sample, stratified_select
from risk_engine.services.features import action_type, count_breaches

logger = logging.getLogger(__name__)


class _UserProfile:
    __slots__ = ("name", "risk_scores", "integrations", "actions", "breaches")

    def __init__(self, name: str):
        self.name = name
        self.risk_scores: List[float] = []
        self.integrations = set()
        self.actions = set()
        self.breaches = 0

    @property
    def avg_risk(self) -> float:
        return sum(self.risk_scores) / len(self.risk_scores) if self.risk_scores else 0.0

    @property
    def diversity(self) -> int:
        return len(self.integrations) + len(self.actions)


def classify_cluster(avg_risk: float, breaches: int, diversity: int, activity_count: int) -> str:
    if avg_risk > 800 or breaches > 3:
        return "high_risk"
    if diversity > 10:
        return "diverse"
    if activity_count > 50:
        return "active"
    return "normal"


def is_outlier(avg_risk: float, breaches: int, diversity: int) -> bool:
    return avg_risk > 1200 or breaches > 5 or (avg_risk > 600 and diversity < 2)


def _profiles(activities: Sequence[CanonicalActivity]) -> Dict[str, _UserProfile]:
    profiles: Dict[str, _UserProfile] = {}
    for activity in activities:
        if not activity.username or activity.username == "unknown":
            continue
        profile = profiles.get(activity.username)
        if profile is None:
            profile = profiles[activity.username] = _UserProfile(activity.username)
        profile.risk_scores.append(activity.risk_score)
        profile.integrations.add(activity.integration)
        profile.actions.add(action_type(activity.activity))
        profile.breaches += count_breaches(activity.policies_breached)
    return profiles


def cluster_users(activities: Sequence[CanonicalActivity], max_activities: Optional[int] = None,
                  max_users: Optional[int] = None) -> ClusteringResult:
    activities = list(activities or [])
    max_activities = max_activities or settings.CLUSTERING_MAX_ACTIVITIES
    max_users = max_users or settings.CLUSTERING_MAX_USERS
    sampled = False

    working = activities
    if len(activities) > max_activities:
        working = stratified_sample(activities, max_activities)
        sampled = True

    profiles = _profiles(working)
    total_users = len(profiles)
    names = sorted(profiles.keys())
    if len(names) > max_users:
        names = stratified_select(names, max_users, lambda name: profiles[name].avg_risk)
        sampled = True

    if sampled:
        logger.info(
            "user clustering sampled",
            extra={"activities": len(activities), "kept_activities": len(working), "users": total_users, "kept_users": len(names)},
        )

    points: List[UserClusterPoint] = []
    for name in sorted(names):
        profile = profiles[name]
        avg = profile.avg_risk
        diversity = profile.diversity
        points.append(
            UserClusterPoint(
                name=name,
                cluster=classify_cluster(avg, profile.breaches, diversity, len(profile.risk_scores)),
                x=round(min(1000.0, avg) / 10.0, 2),
                y=round(min(20.0, diversity + profile.breaches * 0.5), 2),
                avg_risk_score=round(avg, 2),
                behavior_diversity=diversity,
                activities=len(profile.risk_scores),
                policy_breaches=profile.breaches,
                is_outlier=is_outlier(avg, profile.breaches, diversity),
            )
        )
    return ClusteringResult(
        points=points,
        sampled=sampled,
        total_users=total_users,
        total_activities=len(activities),
        sampled_activities=len(working),
    )
