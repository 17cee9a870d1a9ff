import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

from risk_engine.core.errors import AlertNotFoundError, InvalidTransitionError
from risk_engine.schemas.activity import severity_rank
from risk_engine.schemas.alerts import CLOSED_STATUSES, Alert, AlertEvent, ManagerAction, TimelineEvent
from risk_engine.schemas.recommendations import Recommendation

logger = logging.getLogger(__name__)

CATEGORY_DISPLAY_NAMES = {
    "data_exfiltration": "Data Exfiltration",
    "unusual_behavior": "Unusual Behavior",
    "policy_breach": "Policy Breach",
    "access_violation": "Access Violation",
    "suspicious_timing": "Suspicious Timing",
    "bulk_operations": "Bulk Operations",
    "high_risk_sequence": "High Risk Sequence",
}

CATEGORY_POLICIES = {
    "data_exfiltration": "Data Leakage Prevention",
    "access_violation": "Access Control Policy",
    "suspicious_timing": "After Hours Access Policy",
    "bulk_operations": "Bulk Operations Policy",
    "policy_breach": "General Security Policy",
    "unusual_behavior": "Behavioral Security Policy",
}

POLICY_KEYWORDS = {
    "Data Leakage Prevention": ["data leak", "exfiltration", "data export", "sensitive data", "confidential"],
    "USB Device Policy": ["usb", "external device", "removable media", "flash drive"],
    "After Hours Access Policy": ["after hours", "critical hours", "late night"],
    "Bulk Operations Policy": ["bulk", "mass", "large volume", "unusual volume"],
    "Access Control Policy": ["unauthorized", "access violation", "privilege", "permissions"],
    "Email Security Policy": ["email", "phishing", "attachment"],
    "File Security Policy": ["file", "document", "download", "upload", "transfer"],
}

SEVERITY_BASE_RISK = {"low": 300, "medium": 800, "high": 1500, "critical": 2500}
DEFAULT_MANAGER = "current_manager"


class AlertStore(Protocol):
    def get_all(self) -> List[Alert]:
        ...

    def put_all(self, items: Iterable[Alert]) -> int:
        ...

    def clear(self) -> int:
        ...


def threat_type_for(category: str) -> str:
    return CATEGORY_DISPLAY_NAMES.get(category, "Security Anomaly")


def extract_policies(rec: Recommendation) -> List[str]:
    policies: List[str] = []
    if rec.category in CATEGORY_POLICIES:
        policies.append(CATEGORY_POLICIES[rec.category])
    text = " ".join([rec.description, rec.title, rec.category]).lower()
    for policy, keywords in POLICY_KEYWORDS.items():
        if policy not in policies and any(keyword in text for keyword in keywords):
            policies.append(policy)
    if not policies and severity_rank(rec.severity) >= severity_rank("high"):
        policies.append("Security Monitoring Policy")
    return policies


def alert_risk_score(severity: str, confidence: float) -> int:
    return int(round(SEVERITY_BASE_RISK.get(severity, 500) * confidence))


def is_same_finding(rec: Recommendation, alert: Alert) -> bool:
    """Same category and at least one affected user in common."""
    if rec.category != alert.category:
        return False
    if not rec.affected_users or not alert.affected_users:
        return rec.id == alert.recommendation_id
    return bool(set(rec.affected_users) & set(alert.affected_users))


class AlertManager:
    """
    Sole writer of alert state. Every mutation is written to the store before
    the updated alert is returned; store errors propagate to the caller.
    """

    def __init__(self, store: AlertStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: List[Callable[[AlertEvent], None]] = []

    def _now_iso(self) -> str:
        return self.clock().astimezone(timezone.utc).isoformat()

    def subscribe(self, listener: Callable[[AlertEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, alert: Optional[Alert] = None, actor: Optional[str] = None) -> None:
        event = AlertEvent(
            type=event_type,
            alert_id=alert.id if alert else None,
            status=alert.status if alert else None,
            actor=actor,
            timestamp=self._now_iso(),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("alert listener failed", extra={"event": event_type})

    def get_alerts(self) -> List[Alert]:
        return self.store.get_all()

    def get_alert(self, alert_id: str) -> Alert:
        for alert in self.store.get_all():
            if alert.id == alert_id:
                return alert
        raise AlertNotFoundError(alert_id)

    def get_recent_alerts(self, limit: int = 10) -> List[Alert]:
        alerts = sorted(self.store.get_all(), key=lambda a: (a.detection_time, a.id), reverse=True)
        return alerts[: max(0, limit)]

    def filter_alerts(
        self,
        severity: Optional[Sequence[str]] = None,
        status: Optional[Sequence[str]] = None,
        threat_type: Optional[Sequence[str]] = None,
    ) -> List[Alert]:
        alerts = self.store.get_all()
        if severity:
            alerts = [a for a in alerts if a.severity in severity]
        if status:
            alerts = [a for a in alerts if a.status in status]
        if threat_type:
            alerts = [a for a in alerts if a.threat_type in threat_type]
        return alerts

    def create_alert(self, rec: Recommendation) -> Alert:
        now = self._now_iso()
        risk_score = alert_risk_score(rec.severity, rec.confidence)
        timeline = [
            TimelineEvent(
                title="Alert created",
                description=f"{threat_type_for(rec.category)} detected with {rec.confidence:.0%} confidence",
                timestamp=now,
                is_critical=rec.severity in ("high", "critical"),
            )
        ]
        timeline.extend(
            TimelineEvent(title="Detection factor", description=factor, timestamp=now)
            for factor in rec.deviation_factors[:3]
        )
        return Alert(
            id=f"ML-{uuid.uuid4().hex[:12]}",
            recommendation_id=rec.id,
            category=rec.category,
            title=rec.title,
            description=rec.description,
            severity=rec.severity,
            confidence=rec.confidence,
            affected_users=list(rec.affected_users),
            suggested_actions=list(rec.suggested_actions),
            deviation_factors=list(rec.deviation_factors),
            user_id=rec.affected_users[0] if rec.affected_users else "unknown",
            threat_type=threat_type_for(rec.category),
            policies=extract_policies(rec),
            risk_score=risk_score,
            detection_time=now,
            timeline=timeline,
        )

    def refresh_alerts_from_recommendations(self, recommendations: Iterable[Recommendation]) -> List[Alert]:
        """
        Create alerts for recommendations that match no existing alert. Closed
        alerts still count as matches, so they are never recreated.
        """
        known = self.store.get_all()
        created: List[Alert] = []
        skipped = 0
        for rec in recommendations or []:
            if any(is_same_finding(rec, alert) for alert in known + created):
                skipped += 1
                continue
            created.append(self.create_alert(rec))

        if created:
            self.store.put_all(created)
        logger.info("alerts refreshed", extra={"created": len(created), "skipped_duplicates": skipped})

        for alert in created:
            self._emit("created", alert)
            if alert.severity in ("high", "critical"):
                logger.warning(
                    "high priority alert",
                    extra={"alert_id": alert.id, "threat_type": alert.threat_type, "severity": alert.severity},
                )
        return created

    def _save(self, alert: Alert, event_type: str, actor: Optional[str]) -> Alert:
        self.store.put_all([alert])
        self._emit(event_type, alert, actor)
        return alert

    def _with_event(self, alert: Alert, title: str, description: str, **updates) -> Alert:
        now = self._now_iso()
        timeline = list(alert.timeline) + [TimelineEvent(title=title, description=description, timestamp=now)]
        return alert.model_copy(update={**updates, "timeline": timeline, "updated_at": now})

    def mark_as_reviewing(self, alert_id: str, reviewer: Optional[str] = None) -> Alert:
        alert = self.get_alert(alert_id)
        if alert.status == "reviewing":
            return alert
        if alert.status != "pending":
            raise InvalidTransitionError(alert_id, alert.status, "reviewing")
        reviewer = alert.assigned_to or reviewer or DEFAULT_MANAGER
        updated = self._with_event(
            alert,
            "Review started",
            f"Under review by {reviewer}",
            status="reviewing",
            assigned_to=reviewer,
        )
        return self._save(updated, "reviewing", reviewer)

    def assign_to_me(self, alert_id: str, reviewer: str) -> Alert:
        alert = self.get_alert(alert_id)
        if alert.status in CLOSED_STATUSES:
            raise InvalidTransitionError(alert_id, alert.status, "assigned")
        if alert.assigned_to == reviewer:
            return alert
        updated = self._with_event(alert, "Assigned", f"Assigned to {reviewer}", assigned_to=reviewer)
        return self._save(updated, "assigned", reviewer)

    def submit_manager_action(self, alert_id: str, action: str, comments: str = "", manager_id: str = DEFAULT_MANAGER) -> Alert:
        alert = self.get_alert(alert_id)
        target = "dismissed" if (action or "").strip().lower() == "dismissed" else "resolved"
        if alert.status in CLOSED_STATUSES:
            raise InvalidTransitionError(alert_id, alert.status, target)
        record = ManagerAction(action=action, comments=comments or "", timestamp=self._now_iso(), manager_id=manager_id)
        updated = self._with_event(
            alert,
            "Alert dismissed" if target == "dismissed" else "Alert resolved",
            f"{manager_id}: {action}" + (f" ({comments})" if comments else ""),
            status=target,
            manager_action=record,
        )
        return self._save(updated, target, manager_id)

    def clear_all_alerts(self) -> int:
        removed = self.store.clear()
        logger.info("alerts cleared", extra={"removed": removed})
        self._emit("cleared")
        return removed
