from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from risk_engine.schemas.activity import CamelModel
from risk_engine.schemas.recommendations import Recommendation

AlertStatus = Literal["pending", "reviewing", "resolved", "dismissed"]
CLOSED_STATUSES = ("resolved", "dismissed")


class ManagerAction(CamelModel):
    action: str
    comments: str = ""
    timestamp: str
    manager_id: str


class TimelineEvent(CamelModel):
    title: str
    description: str
    timestamp: str
    is_critical: bool = False


class Alert(CamelModel):
    id: str
    status: AlertStatus = "pending"
    assigned_to: Optional[str] = None
    manager_action: Optional[ManagerAction] = None
    recommendation_id: str
    category: str
    title: str
    description: str
    severity: str
    confidence: float
    affected_users: List[str] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list)
    deviation_factors: List[str] = Field(default_factory=list)
    user_id: str = "unknown"
    threat_type: str = "Security Anomaly"
    policies: List[str] = Field(default_factory=list)
    risk_score: int = 0
    detection_time: str
    updated_at: Optional[str] = None
    timeline: List[TimelineEvent] = Field(default_factory=list)


class AlertEvent(CamelModel):
    type: str
    alert_id: Optional[str] = None
    status: Optional[str] = None
    actor: Optional[str] = None
    timestamp: str


class RefreshAlertsRequest(BaseModel):
    recommendations: List[Recommendation] = Field(default_factory=list)


class ReviewRequest(BaseModel):
    reviewer: Optional[str] = None


class AssignRequest(BaseModel):
    reviewer: str


class ManagerActionRequest(BaseModel):
    action: str
    comments: str = ""
    manager_id: str = "current_manager"
