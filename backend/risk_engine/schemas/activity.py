from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field
from pydantic.alias_generators import to_camel

Severity = Literal["low", "medium", "high", "critical"]
ActivityStatus = Literal["underReview", "trusted", "concern", "nonConcern"]
IntegrationCategory = Literal["email", "cloud", "usb", "application", "file", "other"]

SEVERITY_LEVELS: List[str] = ["low", "medium", "high", "critical"]
INTEGRATION_CATEGORIES: List[str] = ["email", "cloud", "usb", "application", "file", "other"]

# riskScore thresholds: below MEDIUM is low, below HIGH medium, below CRITICAL high
RISK_THRESHOLDS = {"medium": 1000.0, "high": 1500.0, "critical": 2000.0}


def severity_for_score(risk_score: float) -> str:
    if risk_score >= RISK_THRESHOLDS["critical"]:
        return "critical"
    if risk_score >= RISK_THRESHOLDS["high"]:
        return "high"
    if risk_score >= RISK_THRESHOLDS["medium"]:
        return "medium"
    return "low"


def severity_rank(severity: Optional[str]) -> int:
    try:
        return SEVERITY_LEVELS.index((severity or "").lower())
    except ValueError:
        return 0


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CanonicalActivity(CamelModel):
    id: str
    user_id: str
    username: str
    timestamp: str
    hour: int = Field(ge=0, le=23)
    integration: IntegrationCategory = "other"
    integration_source: str = ""
    activity: str = ""
    risk_score: float = Field(default=0.0, ge=0)
    status: ActivityStatus = "underReview"
    policies_breached: Dict[str, Any] = Field(default_factory=dict)
    values: Dict[str, Any] = Field(default_factory=dict)
    department: Optional[str] = None
    location: Optional[str] = None
    device_id: Optional[str] = None
    data_volume: Optional[float] = None
    time_degraded: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True

    @computed_field
    @property
    def severity(self) -> str:
        return severity_for_score(self.risk_score)

    @property
    def date(self) -> str:
        return self.timestamp[:10]

    def with_status(self, status: str) -> "CanonicalActivity":
        return self.model_copy(update={"status": status})

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class NormalizationDiagnostics(CamelModel):
    total: int = 0
    malformed_json: int = 0
    invalid_dates: int = 0
    missing_identity: int = 0
    non_mapping_records: int = 0
    formats: Dict[str, int] = Field(default_factory=dict)


class NormalizationResult(CamelModel):
    activities: List[CanonicalActivity] = Field(default_factory=list)
    diagnostics: NormalizationDiagnostics = Field(default_factory=NormalizationDiagnostics)
