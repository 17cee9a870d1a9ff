"""
Recommendation engine tests: detector orchestration, confidence
adjustment, de-duplication, filtering and deterministic ordering.
"""

from risk_engine.schemas.activity import severity_rank
from risk_engine.schemas.recommendations import Recommendation, RecommendationConfig
from risk_engine.services.recommendations.detector_high_risk import HighRiskActivityDetector
from risk_engine.services.recommendations.engine import (
    _deduplicate,
    _load_detectors,
    _rank,
    build_report,
    generate_recommendations,
    z_threshold_for,
)


FAST = RecommendationConfig(model_epochs=5)


def _rec(rec_id, confidence, users, severity="high", category="policy_breach"):
    return Recommendation(
        id=rec_id,
        category=category,
        title=rec_id,
        description="",
        severity=severity,
        confidence=confidence,
        affected_users=users,
    )


class TestEngine:
    def test_empty_dataset(self):
        assert generate_recommendations([]) == []
        report = build_report([])
        assert report.recommendations == []
        assert report.heatmap.cells == []
        assert report.clusters.points == []

    def test_detector_order_is_fixed(self):
        ids = [d.detector_id for d in _load_detectors()]
        assert ids == [
            "DET-001", "DET-002", "DET-003", "DET-004", "DET-005", "DET-006",
            "DET-007", "DET-008", "DET-009", "DET-010", "DET-011", "DET-012",
        ]

    def test_risky_user_is_reported(self, mixed_activities):
        recommendations = generate_recommendations(mixed_activities, FAST)
        assert recommendations
        assert any("erin" in r.affected_users for r in recommendations)
        assert all(severity_rank(r.severity) >= severity_rank("high") for r in recommendations)
        assert all(r.confidence >= FAST.confidence_threshold for r in recommendations)

    def test_same_input_same_output(self, mixed_activities):
        first = generate_recommendations(mixed_activities, FAST)
        second = generate_recommendations(list(mixed_activities), FAST)
        assert [r.model_dump() for r in first] == [r.model_dump() for r in second]

    def test_ranked_by_severity_then_confidence(self, mixed_activities):
        config = RecommendationConfig(model_epochs=5, include_all_recommendations=True, max_recommendations=50)
        recommendations = generate_recommendations(mixed_activities, config)
        keys = [(-severity_rank(r.severity), -r.confidence, r.id) for r in recommendations]
        assert keys == sorted(keys)

    def test_max_recommendations(self, mixed_activities):
        config = RecommendationConfig(model_epochs=5, include_all_recommendations=True, max_recommendations=1)
        assert len(generate_recommendations(mixed_activities, config)) <= 1

    def test_confidence_threshold(self, mixed_activities):
        config = RecommendationConfig(model_epochs=5, confidence_threshold=0.95)
        assert all(r.confidence >= 0.95 for r in generate_recommendations(mixed_activities, config))

    def test_statistical_only_report(self, mixed_activities):
        config = RecommendationConfig(use_anomaly_detection=False)
        report = build_report(mixed_activities, config)
        assert report.scoring_strategy == "statistical"
        assert report.statistics.total_activities == 60
        assert len(report.timeline) == 10

    def test_broken_detector_is_skipped(self, mixed_activities, monkeypatch):
        def broken(self, context):
            raise RuntimeError("detector exploded")

        monkeypatch.setattr(HighRiskActivityDetector, "evaluate", broken)
        recommendations = generate_recommendations(mixed_activities, FAST)
        assert all(r.detector_id != "DET-001" for r in recommendations)

    def test_sensitivity_thresholds(self):
        assert z_threshold_for("low") > z_threshold_for("medium") > z_threshold_for("high")


class TestDeduplication:
    def test_keeps_higher_confidence(self):
        kept = _deduplicate([_rec("rec-a", 0.7, ["bob"]), _rec("rec-b", 0.9, ["bob"])])
        assert [r.id for r in kept] == ["rec-b"]

    def test_ties_keep_lower_id(self):
        kept = _deduplicate([_rec("rec-b", 0.8, ["bob"]), _rec("rec-a", 0.8, ["bob"])])
        assert [r.id for r in kept] == ["rec-a"]

    def test_different_users_are_kept(self):
        kept = _deduplicate([_rec("rec-a", 0.8, ["bob"]), _rec("rec-b", 0.8, ["amy"])])
        assert len(kept) == 2

    def test_rank(self):
        ranked = _rank([_rec("rec-a", 0.7, ["x"], "medium"), _rec("rec-b", 0.7, ["y"], "critical"), _rec("rec-c", 0.9, ["z"], "critical")])
        assert [r.id for r in ranked] == ["rec-c", "rec-b", "rec-a"]
