from typing import Dict, List, Optional

from pydantic import Field

from risk_engine.schemas.activity import CamelModel


class AnomalyResult(CamelModel):
    activity_id: str
    is_anomaly: bool = False
    anomaly_score: int = Field(default=0, ge=0, le=100)
    error: Optional[float] = None
    z_score: Optional[float] = None
    strategy: str = "statistical"
    factors: List[str] = Field(default_factory=list)


class BucketScore(CamelModel):
    label: str
    count: float
    z_score: float
    is_anomaly: bool
    anomaly_score: int


class ScoringOutcome(CamelModel):
    strategy: str
    results: Dict[str, AnomalyResult] = Field(default_factory=dict)
    threshold: Optional[float] = None
    fallback_reason: Optional[str] = None
    training_samples: int = 0
    sampled: bool = False


class DailyTimelinePoint(CamelModel):
    date: str
    activities: int
    anomalies: int
    breaches: int
    anomaly_score: float
    is_anomaly: bool = False
    z_score: float = 0.0


class HeatmapCell(CamelModel):
    integration: str
    hour: int
    count: int = 0
    total_risk: float = 0.0
    score: float = 0.0
    intensity: float = 0.0
    anomaly: float = 0.0


class HeatmapResult(CamelModel):
    cells: List[HeatmapCell] = Field(default_factory=list)
    max_score: float = 0.0
    total_activities: int = 0
    model_applied: bool = False


class SequenceStep(CamelModel):
    action: str
    integration: str
    risk_level: str


class SequencePattern(CamelModel):
    id: str
    steps: List[SequenceStep] = Field(default_factory=list)
    count: int = 0
    average_risk_score: float = 0.0
    is_high_risk: bool = False
    users: List[str] = Field(default_factory=list)


class SequenceMiningResult(CamelModel):
    patterns: List[SequencePattern] = Field(default_factory=list)
    sampled: bool = False
    users_analyzed: int = 0
    activities_analyzed: int = 0


class UserClusterPoint(CamelModel):
    name: str
    cluster: str
    x: float
    y: float
    avg_risk_score: float
    behavior_diversity: int
    activities: int
    policy_breaches: int
    is_outlier: bool = False


class ClusteringResult(CamelModel):
    points: List[UserClusterPoint] = Field(default_factory=list)
    sampled: bool = False
    total_users: int = 0
    total_activities: int = 0
    sampled_activities: int = 0


class UserRiskSummary(CamelModel):
    username: str
    risk_score: float
    activities: int


class DashboardStatistics(CamelModel):
    total_activities: int = 0
    high_risk_activities: int = 0
    total_policy_breaches: int = 0
    breach_categories: Dict[str, int] = Field(default_factory=dict)
    average_risk_score: float = 0.0
    users_at_risk: int = 0
    top_risk_users: List[UserRiskSummary] = Field(default_factory=list)
    time_distribution: Dict[str, int] = Field(default_factory=dict)
    integration_distribution: Dict[str, int] = Field(default_factory=dict)
