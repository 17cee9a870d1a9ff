from typing import List, Literal, Optional

from pydantic import Field

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CamelModel
from risk_engine.schemas.analysis import (
    ClusteringResult,
    DailyTimelinePoint,
    DashboardStatistics,
    HeatmapResult,
    SequenceMiningResult,
)

RecommendationCategory = Literal[
    "data_exfiltration",
    "unusual_behavior",
    "policy_breach",
    "access_violation",
    "suspicious_timing",
    "bulk_operations",
    "high_risk_sequence",
    "other",
]
SensitivityLevel = Literal["low", "medium", "high"]


class Recommendation(CamelModel):
    id: str
    category: RecommendationCategory = "other"
    title: str
    description: str
    severity: str
    confidence: float = Field(ge=0.0, le=1.0)
    affected_users: List[str] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list)
    deviation_factors: List[str] = Field(default_factory=list)
    related_activities: List[str] = Field(default_factory=list)
    detector_id: str = ""


class RecommendationConfig(CamelModel):
    sensitivity_level: SensitivityLevel = "medium"
    max_recommendations: int = Field(default_factory=lambda: settings.MAX_RECOMMENDATIONS)
    confidence_threshold: float = Field(default_factory=lambda: settings.CONFIDENCE_THRESHOLD)
    use_anomaly_detection: bool = True
    critical_hours: List[int] = Field(default_factory=lambda: list(settings.CRITICAL_HOURS))
    include_all_recommendations: bool = False
    temporal_burst_multiplier: float = Field(default_factory=lambda: settings.TEMPORAL_BURST_MULTIPLIER)
    model_seed: int = Field(default_factory=lambda: settings.MODEL_SEED)
    model_epochs: int = Field(default_factory=lambda: settings.MODEL_EPOCHS)


class AnalysisReport(CamelModel):
    recommendations: List[Recommendation] = Field(default_factory=list)
    scoring_strategy: str = "statistical"
    fallback_reason: Optional[str] = None
    anomaly_count: int = 0
    heatmap: HeatmapResult = Field(default_factory=HeatmapResult)
    sequences: SequenceMiningResult = Field(default_factory=SequenceMiningResult)
    clusters: ClusteringResult = Field(default_factory=ClusteringResult)
    timeline: List[DailyTimelinePoint] = Field(default_factory=list)
    statistics: DashboardStatistics = Field(default_factory=DashboardStatistics)
