from collections import OrderedDict, defaultdict
from typing import Dict, List, Optional, Sequence

from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import DailyTimelinePoint, DashboardStatistics, UserRiskSummary
from risk_engine.services.features import count_breaches
from risk_engine.services.scoring.statistical import StatisticalScorer

HIGH_RISK_SCORE = 1500
TIMELINE_ANOMALY_RISK = 800
TOP_RISK_USERS = 5


def time_of_day(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 24:
        return "evening"
    return "night"


def generate_statistics(activities: Sequence[CanonicalActivity]) -> DashboardStatistics:
    activities = list(activities or [])
    if not activities:
        return DashboardStatistics()

    breach_categories: Dict[str, int] = defaultdict(int)
    user_risk: Dict[str, float] = defaultdict(float)
    user_count: Dict[str, int] = defaultdict(int)
    time_distribution = OrderedDict((name, 0) for name in ("morning", "afternoon", "evening", "night"))
    integration_distribution: Dict[str, int] = defaultdict(int)
    total_breaches = 0
    high_risk = 0

    for activity in activities:
        if activity.risk_score > HIGH_RISK_SCORE:
            high_risk += 1
        for name, value in activity.policies_breached.items():
            hits = count_breaches(value)
            if hits:
                breach_categories[name] += hits
                total_breaches += hits
        user_risk[activity.username] += activity.risk_score
        user_count[activity.username] += 1
        time_distribution[time_of_day(activity.hour)] += 1
        integration_distribution[activity.integration] += 1

    top_users = sorted(user_risk.items(), key=lambda item: (-item[1], item[0]))[:TOP_RISK_USERS]
    return DashboardStatistics(
        total_activities=len(activities),
        high_risk_activities=high_risk,
        total_policy_breaches=total_breaches,
        breach_categories=dict(sorted(breach_categories.items())),
        average_risk_score=round(sum(a.risk_score for a in activities) / len(activities), 2),
        users_at_risk=sum(1 for total in user_risk.values() if total > HIGH_RISK_SCORE),
        top_risk_users=[
            UserRiskSummary(username=name, risk_score=round(total, 2), activities=user_count[name])
            for name, total in top_users
        ],
        time_distribution=dict(time_distribution),
        integration_distribution=dict(sorted(integration_distribution.items())),
    )


def build_daily_timeline(activities: Sequence[CanonicalActivity], scorer: Optional[StatisticalScorer] = None) -> List[DailyTimelinePoint]:
    """Per-day activity, anomaly and breach counts with a z-score flag on volume."""
    activities = list(activities or [])
    if not activities:
        return []
    scorer = scorer or StatisticalScorer()
    days: "OrderedDict[str, Dict[str, float]]" = OrderedDict()
    for activity in sorted(activities, key=lambda a: a.timestamp):
        day = days.setdefault(activity.date, {"activities": 0, "anomalies": 0, "breaches": 0, "risk": 0.0})
        day["activities"] += 1
        day["risk"] += activity.risk_score
        if activity.risk_score > TIMELINE_ANOMALY_RISK:
            day["anomalies"] += 1
        day["breaches"] += count_breaches(activity.policies_breached)

    buckets = scorer.score_series([d["activities"] for d in days.values()], list(days.keys()))
    timeline: List[DailyTimelinePoint] = []
    for (date, day), bucket in zip(days.items(), buckets):
        timeline.append(
            DailyTimelinePoint(
                date=date,
                activities=int(day["activities"]),
                anomalies=int(day["anomalies"]),
                breaches=int(day["breaches"]),
                anomaly_score=round(day["breaches"] * 10 + day["risk"] / 100.0, 2),
                is_anomaly=bucket.is_anomaly,
                z_score=bucket.z_score,
            )
        )
    return timeline
