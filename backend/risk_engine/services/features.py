from typing import Any, Dict, List, Sequence

import numpy as np
from pydantic import BaseModel, Field

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity

FEATURE_NAMES: List[str] = [
    "hour",
    "risk",
    "breaches",
    "integration",
    "download",
    "upload",
    "transfer_volume",
]

_ACTION_PATTERNS = (
    ("login", ("login", "signin", "sign-in", "logon")),
    ("download", ("download", "export")),
    ("upload", ("upload", "import")),
    ("modify", ("modif", "edit", "chang", "updat")),
    ("access", ("view", "read", "access")),
    ("create", ("create", "add")),
    ("delete", ("delete", "remov")),
    ("search", ("search", "find", "query")),
    ("share", ("share", "send")),
)


class FeatureConfig(BaseModel):
    hour_divisor: float = 23.0
    risk_cap: float = Field(default_factory=lambda: settings.RISK_CAP)
    breach_cap: float = Field(default_factory=lambda: settings.BREACH_CAP)
    transfer_volume_floor: float = Field(default_factory=lambda: settings.TRANSFER_VOLUME_FLOOR)
    integration_codes: Dict[str, float] = Field(
        default_factory=lambda: {
            "email": 0.2,
            "cloud": 0.4,
            "usb": 0.6,
            "application": 0.8,
            "file": 1.0,
            "other": 0.0,
        }
    )

    class Config:
        frozen = True


def count_breaches(policies: Any) -> int:
    if isinstance(policies, dict):
        return sum(count_breaches(value) for value in policies.values())
    if isinstance(policies, (list, tuple, set)):
        return len(policies)
    return 1 if policies else 0


def action_type(description: str) -> str:
    text = (description or "").strip().lower()
    if not text:
        return "unknown"
    for action, needles in _ACTION_PATTERNS:
        if any(needle in text for needle in needles):
            return action
    return text.split()[0]


def is_download(description: str) -> bool:
    text = (description or "").lower()
    return "download" in text or "export" in text


def is_upload(description: str) -> bool:
    text = (description or "").lower()
    return "upload" in text or "import" in text


def extract_features(activity: CanonicalActivity, config: FeatureConfig = None) -> np.ndarray:
    config = config or FeatureConfig()
    breaches = count_breaches(activity.policies_breached)
    volume = activity.data_volume or 0.0
    return np.array(
        [
            min(activity.hour / config.hour_divisor, 1.0),
            min(activity.risk_score / config.risk_cap, 1.0),
            min(breaches / config.breach_cap, 1.0),
            config.integration_codes.get(activity.integration, 0.0),
            1.0 if is_download(activity.activity) else 0.0,
            1.0 if is_upload(activity.activity) else 0.0,
            1.0 if volume >= config.transfer_volume_floor else 0.0,
        ],
        dtype=np.float64,
    )


def extract_feature_matrix(activities: Sequence[CanonicalActivity], config: FeatureConfig = None) -> np.ndarray:
    config = config or FeatureConfig()
    if not activities:
        return np.zeros((0, len(FEATURE_NAMES)), dtype=np.float64)
    return np.vstack([extract_features(activity, config) for activity in activities])
