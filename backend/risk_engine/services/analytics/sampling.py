import math
from typing import Callable, Dict, List, Sequence, TypeVar

from risk_engine.schemas.activity import CanonicalActivity

T = TypeVar("T")

HIGH_RISK_FLOOR = 1500.0
MEDIUM_RISK_FLOOR = 800.0
# share of the sample reserved for each stratum; low takes the remainder
STRATUM_RATIOS = {"high": 0.3, "medium": 0.3}


def risk_stratum(risk_score: float) -> str:
    if risk_score >= HIGH_RISK_FLOOR:
        return "high"
    if risk_score >= MEDIUM_RISK_FLOOR:
        return "medium"
    return "low"


def even_sample(items: Sequence[T], size: int) -> List[T]:
    """Deterministic, evenly spaced picks across the sequence."""
    if size <= 0:
        return []
    if len(items) <= size:
        return list(items)
    step = len(items) / size
    return [items[int(i * step)] for i in range(size)]


def stratified_select(items: Sequence[T], max_size: int, score: Callable[[T], float]) -> List[T]:
    """
    Pick at most max_size items keeping high and medium risk strata
    represented. Order of the input is preserved inside each stratum.
    """
    if max_size <= 0:
        return []
    if len(items) <= max_size:
        return list(items)

    strata: Dict[str, List[T]] = {"high": [], "medium": [], "low": []}
    for item in items:
        strata[risk_stratum(score(item))].append(item)

    high_quota = min(len(strata["high"]), math.ceil(max_size * STRATUM_RATIOS["high"]))
    medium_quota = min(len(strata["medium"]), math.ceil(max_size * STRATUM_RATIOS["medium"]))
    low_quota = min(len(strata["low"]), max(0, max_size - high_quota - medium_quota))

    # strata that came up short hand their quota to the others
    spare = max_size - high_quota - medium_quota - low_quota
    for name in ("high", "medium"):
        if spare <= 0:
            break
        current = high_quota if name == "high" else medium_quota
        extra = min(spare, len(strata[name]) - current)
        if extra > 0:
            if name == "high":
                high_quota += extra
            else:
                medium_quota += extra
            spare -= extra

    picked = (
        even_sample(strata["high"], high_quota)
        + even_sample(strata["medium"], medium_quota)
        + even_sample(strata["low"], low_quota)
    )
    return picked[:max_size]


def stratified_sample(activities: Sequence[CanonicalActivity], max_size: int) -> List[CanonicalActivity]:
    return stratified_select(activities, max_size, lambda activity: activity.risk_score)
