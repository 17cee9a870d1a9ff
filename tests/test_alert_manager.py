"""
Alert lifecycle tests against the SQLAlchemy-backed store.
"""

import pytest

from risk_engine.core.errors import AlertNotFoundError, InvalidTransitionError, StorageFullError
from risk_engine.database.store import alert_store
from risk_engine.schemas.recommendations import Recommendation
from risk_engine.services.alert_manager import AlertManager, extract_policies, is_same_finding


STATUS_ORDER = {"pending": 0, "reviewing": 1, "resolved": 2, "dismissed": 2}


def _rec(rec_id, users, category="data_exfiltration", severity="high", confidence=0.8, description="Large export to USB"):
    return Recommendation(
        id=rec_id,
        category=category,
        title=f"Finding {rec_id}",
        description=description,
        severity=severity,
        confidence=confidence,
        affected_users=users,
        suggested_actions=["Contact the user"],
        deviation_factors=["factor one", "factor two"],
    )


@pytest.fixture
def recommendations():
    return [
        _rec("rec-1", ["alice"]),
        _rec("rec-2", ["bob", "carol"], category="suspicious_timing", severity="medium"),
        _rec("rec-3", ["dave"], category="policy_breach", severity="critical", confidence=0.95),
    ]


# ============================================================================
# Creation and de-duplication
# ============================================================================


class TestRefresh:
    def test_second_refresh_creates_nothing(self, manager, recommendations):
        first = manager.refresh_alerts_from_recommendations(recommendations)
        second = manager.refresh_alerts_from_recommendations(recommendations)
        assert len(first) == 3
        assert second == []
        assert len(manager.get_alerts()) == 3

    def test_alert_fields(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations[:1])[0]
        assert alert.id.startswith("ML-")
        assert alert.status == "pending"
        assert alert.user_id == "alice"
        assert alert.threat_type == "Data Exfiltration"
        assert alert.risk_score == 1200
        assert alert.detection_time == "2024-03-01T12:00:00+00:00"
        assert "Data Leakage Prevention" in alert.policies
        assert "USB Device Policy" in alert.policies
        assert alert.timeline[0].title == "Alert created"

    def test_overlapping_users_in_same_category_is_duplicate(self, manager):
        manager.refresh_alerts_from_recommendations([_rec("rec-1", ["alice", "bob"])])
        created = manager.refresh_alerts_from_recommendations([_rec("rec-9", ["bob", "zoe"])])
        assert created == []

    def test_other_category_is_not_duplicate(self, manager):
        manager.refresh_alerts_from_recommendations([_rec("rec-1", ["alice"])])
        created = manager.refresh_alerts_from_recommendations([_rec("rec-2", ["alice"], category="policy_breach")])
        assert len(created) == 1

    def test_duplicates_within_one_call(self, manager):
        created = manager.refresh_alerts_from_recommendations([_rec("rec-1", ["alice"]), _rec("rec-2", ["alice"])])
        assert [a.recommendation_id for a in created] == ["rec-1"]

    def test_closed_alerts_are_never_recreated(self, manager, recommendations):
        created = manager.refresh_alerts_from_recommendations(recommendations)
        manager.submit_manager_action(created[0].id, "resolved")
        manager.submit_manager_action(created[1].id, "dismissed")
        assert manager.refresh_alerts_from_recommendations(recommendations) == []

    def test_users_less_findings_compare_by_recommendation(self):
        rec = _rec("rec-1", [])
        manager_alert = AlertManager(store=None).create_alert(rec)
        assert is_same_finding(rec, manager_alert)
        assert not is_same_finding(_rec("rec-2", []), manager_alert)

    def test_policy_fallback_for_high_severity(self):
        rec = _rec("rec-1", ["a"], category="other", severity="critical", description="Something odd")
        assert extract_policies(rec) == ["Security Monitoring Policy"]


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    def test_review_then_resolve(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        reviewing = manager.mark_as_reviewing(alert.id, "sam")
        assert reviewing.status == "reviewing"
        assert reviewing.assigned_to == "sam"
        resolved = manager.submit_manager_action(alert.id, "Escalated to HR", "confirmed", "sam")
        assert resolved.status == "resolved"
        assert resolved.manager_action.action == "Escalated to HR"
        assert resolved.manager_action.manager_id == "sam"
        assert manager.get_alert(alert.id).status == "resolved"

    def test_dismiss_from_pending(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        assert manager.submit_manager_action(alert.id, "dismissed").status == "dismissed"

    def test_review_keeps_existing_assignee(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        manager.assign_to_me(alert.id, "kim")
        assert manager.mark_as_reviewing(alert.id, "sam").assigned_to == "kim"

    def test_review_default_reviewer(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        assert manager.mark_as_reviewing(alert.id).assigned_to == "current_manager"

    def test_review_is_idempotent(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        first = manager.mark_as_reviewing(alert.id, "sam")
        again = manager.mark_as_reviewing(alert.id, "sam")
        assert again.timeline == first.timeline

    def test_closed_alerts_reject_changes(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        manager.submit_manager_action(alert.id, "resolved")
        with pytest.raises(InvalidTransitionError):
            manager.mark_as_reviewing(alert.id)
        with pytest.raises(InvalidTransitionError):
            manager.submit_manager_action(alert.id, "dismissed")
        with pytest.raises(InvalidTransitionError):
            manager.assign_to_me(alert.id, "kim")
        assert manager.get_alert(alert.id).status == "resolved"

    def test_status_never_regresses(self, manager, recommendations):
        alerts = manager.refresh_alerts_from_recommendations(recommendations)
        calls = [
            lambda a: manager.mark_as_reviewing(a, "sam"),
            lambda a: manager.assign_to_me(a, "kim"),
            lambda a: manager.submit_manager_action(a, "resolved"),
            lambda a: manager.mark_as_reviewing(a),
            lambda a: manager.submit_manager_action(a, "dismissed"),
            lambda a: manager.refresh_alerts_from_recommendations(recommendations),
        ]
        for alert in alerts:
            seen = STATUS_ORDER[manager.get_alert(alert.id).status]
            for call in calls:
                try:
                    call(alert.id)
                except InvalidTransitionError:
                    pass
                current = STATUS_ORDER[manager.get_alert(alert.id).status]
                assert current >= seen
                seen = current

    def test_unknown_alert(self, manager):
        with pytest.raises(AlertNotFoundError):
            manager.mark_as_reviewing("ML-missing")

    def test_timeline_grows(self, manager, recommendations):
        alert = manager.refresh_alerts_from_recommendations(recommendations)[0]
        before = len(alert.timeline)
        updated = manager.mark_as_reviewing(alert.id, "sam")
        assert len(updated.timeline) == before + 1
        assert updated.updated_at == "2024-03-01T12:00:00+00:00"


# ============================================================================
# Queries, events and teardown
# ============================================================================


class TestQueries:
    def test_filters(self, manager, recommendations):
        manager.refresh_alerts_from_recommendations(recommendations)
        assert [a.recommendation_id for a in manager.filter_alerts(severity=["critical"])] == ["rec-3"]
        assert len(manager.filter_alerts(status=["pending"])) == 3
        assert [a.threat_type for a in manager.filter_alerts(threat_type=["Suspicious Timing"])] == ["Suspicious Timing"]

    def test_recent_alerts_limit(self, manager, recommendations):
        manager.refresh_alerts_from_recommendations(recommendations)
        assert len(manager.get_recent_alerts(2)) == 2

    def test_events_are_emitted(self, manager, recommendations):
        events = []
        unsubscribe = manager.subscribe(events.append)
        alert = manager.refresh_alerts_from_recommendations(recommendations[:1])[0]
        manager.mark_as_reviewing(alert.id)
        unsubscribe()
        manager.submit_manager_action(alert.id, "resolved")
        assert [e.type for e in events] == ["created", "reviewing"]

    def test_failing_listener_does_not_break_updates(self, manager, recommendations):
        def bad_listener(event):
            raise ValueError("listener bug")

        manager.subscribe(bad_listener)
        assert len(manager.refresh_alerts_from_recommendations(recommendations)) == 3

    def test_clear_all(self, manager, recommendations):
        manager.refresh_alerts_from_recommendations(recommendations)
        assert manager.clear_all_alerts() == 3
        assert manager.get_alerts() == []
        assert len(manager.refresh_alerts_from_recommendations(recommendations)) == 3

    def test_store_full_is_surfaced(self, session_factory, clock, recommendations):
        manager = AlertManager(alert_store(session_factory, capacity=2), clock=clock)
        with pytest.raises(StorageFullError) as info:
            manager.refresh_alerts_from_recommendations(recommendations)
        assert info.value.written == 2
        assert info.value.rejected == 1
        assert len(manager.get_alerts()) == 2
