import hashlib
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.analysis import SequenceMiningResult, SequencePattern, SequenceStep
from risk_engine.services.analytics.sampling import stratified_select
from risk_engine.services.features import action_type

logger = logging.getLogger(__name__)

HIGH_RISK_AVERAGE = 1500.0
RISKY_LEVELS = {"high", "critical"}


def step_risk_level(risk_score: float) -> str:
    if risk_score < 500:
        return "low"
    if risk_score < 1000:
        return "medium"
    if risk_score < 2000:
        return "high"
    return "critical"


def _group_by_user(activities: Sequence[CanonicalActivity]) -> Dict[str, List[CanonicalActivity]]:
    grouped: Dict[str, List[CanonicalActivity]] = defaultdict(list)
    for activity in activities:
        if activity.username and activity.username != "unknown":
            grouped[activity.username].append(activity)
    return grouped


def _sample_users(grouped: Dict[str, List[CanonicalActivity]], max_activities: int) -> Dict[str, List[CanonicalActivity]]:
    """
    Choose users across peak-risk strata, then keep only the most recent
    slice of each history so the total stays within max_activities.
    """
    users = sorted(grouped.keys())
    average = max(1, sum(len(v) for v in grouped.values()) // max(1, len(users)))
    user_quota = min(len(users), max_activities, max(1, max_activities // average))
    chosen = stratified_select(users, user_quota, lambda user: max(a.risk_score for a in grouped[user]))
    per_user = max(1, max_activities // max(1, len(chosen)))
    sampled: Dict[str, List[CanonicalActivity]] = {}
    for user in sorted(chosen):
        history = sorted(grouped[user], key=lambda a: (a.timestamp, a.id))
        sampled[user] = history[-per_user:]
    return sampled


def _pattern_id(steps: List[SequenceStep]) -> str:
    shape = "|".join(f"{s.action}:{s.integration}:{s.risk_level}" for s in steps)
    return hashlib.sha256(shape.encode("utf-8")).hexdigest()[:16]


def mine_sequence_patterns(activities: Sequence[CanonicalActivity], length: Optional[int] = None,
                           max_patterns: Optional[int] = None,
                           max_activities: Optional[int] = None) -> SequenceMiningResult:
    length = length or settings.SEQUENCE_LENGTH
    max_patterns = max_patterns or settings.MAX_SEQUENCE_PATTERNS
    max_activities = max_activities or settings.SEQUENCE_MAX_ACTIVITIES

    grouped = _group_by_user(activities or [])
    sampled = False
    if sum(len(v) for v in grouped.values()) > max_activities:
        grouped = _sample_users(grouped, max_activities)
        sampled = True
        logger.info("sequence mining sampled users", extra={"users": len(grouped)})

    patterns: Dict[str, Dict] = {}
    users_analyzed = 0
    activities_analyzed = 0
    for user in sorted(grouped.keys()):
        history = sorted(grouped[user], key=lambda a: (a.timestamp, a.id))
        if len(history) < length:
            continue
        users_analyzed += 1
        activities_analyzed += len(history)
        for start in range(len(history) - length + 1):
            window = history[start:start + length]
            steps = [
                SequenceStep(
                    action=action_type(a.activity),
                    integration=a.integration,
                    risk_level=step_risk_level(a.risk_score),
                )
                for a in window
            ]
            key = _pattern_id(steps)
            entry = patterns.setdefault(key, {"steps": steps, "count": 0, "total_risk": 0.0, "samples": 0, "users": set()})
            entry["count"] += 1
            entry["total_risk"] += sum(a.risk_score for a in window)
            entry["samples"] += len(window)
            entry["users"].add(user)

    records: List[SequencePattern] = []
    for key, entry in patterns.items():
        average = entry["total_risk"] / entry["samples"] if entry["samples"] else 0.0
        terminal_risky = entry["steps"][-1].risk_level in RISKY_LEVELS
        records.append(
            SequencePattern(
                id=key,
                steps=entry["steps"],
                count=entry["count"],
                average_risk_score=round(average, 2),
                is_high_risk=terminal_risky or average > HIGH_RISK_AVERAGE,
                users=sorted(entry["users"]),
            )
        )
    records.sort(key=lambda p: (not p.is_high_risk, -p.count, p.id))
    return SequenceMiningResult(
        patterns=records[:max_patterns],
        sampled=sampled,
        users_analyzed=users_analyzed,
        activities_analyzed=activities_analyzed,
    )
