import logging
from typing import Dict, List, Optional, Sequence, Tuple

from risk_engine.core.config import settings
from risk_engine.schemas.activity import CanonicalActivity, severity_rank
from risk_engine.schemas.analysis import ClusteringResult, HeatmapResult, ScoringOutcome, SequenceMiningResult
from risk_engine.schemas.recommendations import AnalysisReport, Recommendation, RecommendationConfig
from risk_engine.services.analytics.clustering import cluster_users
from risk_engine.services.analytics.heatmap import build_heatmap
from risk_engine.services.analytics.sequences import mine_sequence_patterns
from risk_engine.services.analytics.statistics import build_daily_timeline, generate_statistics
from risk_engine.services.recommendations.base_detector import DetectionContext
from risk_engine.services.recommendations.detector_access import (
    AccountSharingDetector,
    FailedAccessDetector,
    MultiLocationDetector,
)
from risk_engine.services.recommendations.detector_anomaly import AnomalyClusterDetector, VolumeAnomalyDetector
from risk_engine.services.recommendations.detector_exfiltration import DataExfiltrationDetector
from risk_engine.services.recommendations.detector_high_risk import HighRiskActivityDetector
from risk_engine.services.recommendations.detector_patterns import ClusterOutlierDetector, SequencePatternDetector
from risk_engine.services.recommendations.detector_policy import PolicyBreachDetector
from risk_engine.services.recommendations.detector_timing import TemporalBurstDetector, UnusualTimingDetector
from risk_engine.services.scoring.selector import ScorerConfig, score_activities
from risk_engine.services.scoring.statistical import StatisticalScorer

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.99
VOLUME_BONUS_CAP = 0.2
ANOMALY_BOOST_CAP = 0.15
CONCERN_BONUS = 0.05


def _load_detectors():
    # Explicit detector list keeps evaluation deterministic and ordered.
    return [
        HighRiskActivityDetector(),
        UnusualTimingDetector(),
        PolicyBreachDetector(),
        FailedAccessDetector(),
        MultiLocationDetector(),
        AccountSharingDetector(),
        DataExfiltrationDetector(),
        TemporalBurstDetector(),
        VolumeAnomalyDetector(),
        AnomalyClusterDetector(),
        SequencePatternDetector(),
        ClusterOutlierDetector(),
    ]


def z_threshold_for(sensitivity: str) -> float:
    return {"low": 2.5, "medium": settings.Z_THRESHOLD, "high": 1.5}.get(sensitivity, settings.Z_THRESHOLD)


def scorer_config_for(config: RecommendationConfig) -> ScorerConfig:
    return ScorerConfig(
        z_threshold=z_threshold_for(config.sensitivity_level),
        seed=config.model_seed,
        epochs=config.model_epochs,
    )


def _adjust_confidence(rec: Recommendation, context: DetectionContext) -> Recommendation:
    related = [context.by_id[i] for i in rec.related_activities if i in context.by_id]
    confidence = rec.confidence
    if related and not all(a.status == "trusted" for a in related):
        confidence += min(len(related) / 100.0, VOLUME_BONUS_CAP)
        if any(a.status == "concern" for a in related):
            confidence += CONCERN_BONUS
        if context.scoring.strategy == "reconstruction" and context.config.use_anomaly_detection:
            scored = [context.scoring.results[a.id] for a in related if a.id in context.scoring.results]
            flagged = [r for r in scored if r.is_anomaly]
            if flagged:
                ratio = len(flagged) / len(scored)
                peak = max(r.anomaly_score for r in flagged) / 100.0
                confidence += min(ANOMALY_BOOST_CAP, ratio * 0.2 * peak)
    confidence = round(min(MAX_CONFIDENCE, confidence), 4)
    if confidence == rec.confidence:
        return rec
    return rec.model_copy(update={"confidence": confidence})


def _deduplicate(recommendations: List[Recommendation]) -> List[Recommendation]:
    kept: Dict[Tuple[str, Tuple[str, ...]], Recommendation] = {}
    for rec in recommendations:
        key = (rec.category, tuple(sorted(rec.affected_users)))
        existing = kept.get(key)
        if existing is None or (rec.confidence, existing.id) > (existing.confidence, rec.id):
            kept[key] = rec
    return list(kept.values())


def _rank(recommendations: List[Recommendation]) -> List[Recommendation]:
    return sorted(recommendations, key=lambda r: (-severity_rank(r.severity), -r.confidence, r.id))


def finalize_recommendations(candidates: List[Recommendation], context: DetectionContext) -> List[Recommendation]:
    config = context.config
    adjusted = [_adjust_confidence(rec, context) for rec in candidates]
    confident = [rec for rec in adjusted if rec.confidence >= config.confidence_threshold]
    unique = _deduplicate(confident)
    if not config.include_all_recommendations:
        unique = [rec for rec in unique if severity_rank(rec.severity) >= severity_rank("high")]
    return _rank(unique)[: max(0, config.max_recommendations)]


def run_detectors(context: DetectionContext) -> List[Recommendation]:
    candidates: List[Recommendation] = []
    for detector in _load_detectors():
        try:
            found = detector.evaluate(context)
        except Exception:
            # one broken detector must not stop the rest
            logger.exception("detector failed", extra={"detector_id": detector.detector_id})
            continue
        for rec in found:
            logger.debug(
                "recommendation candidate",
                extra={"detector_id": detector.detector_id, "category": rec.category, "confidence": rec.confidence},
            )
        candidates.extend(found)
    return candidates


def build_report(
    activities: Sequence[CanonicalActivity],
    config: Optional[RecommendationConfig] = None,
    scoring: Optional[ScoringOutcome] = None,
    heatmap: Optional[HeatmapResult] = None,
    sequences: Optional[SequenceMiningResult] = None,
    clusters: Optional[ClusteringResult] = None,
) -> AnalysisReport:
    """Run scoring, analytics and detectors over one dataset."""
    config = config or RecommendationConfig()
    activities = list(activities or [])
    if not activities:
        return AnalysisReport()

    if scoring is None:
        scoring = score_activities(activities, config.use_anomaly_detection, scorer_config_for(config))
    if heatmap is None:
        heatmap = build_heatmap(activities, use_model=config.use_anomaly_detection, seed=config.model_seed)
    if sequences is None:
        sequences = mine_sequence_patterns(activities)
    if clusters is None:
        clusters = cluster_users(activities)
    timeline = build_daily_timeline(activities, StatisticalScorer(threshold=z_threshold_for(config.sensitivity_level)))

    context = DetectionContext(activities, config, scoring, sequences, clusters, timeline)
    candidates = run_detectors(context)
    recommendations = finalize_recommendations(candidates, context)
    logger.info(
        "recommendation engine finished",
        extra={
            "activities": len(activities),
            "candidates": len(candidates),
            "recommendations": len(recommendations),
            "strategy": scoring.strategy,
        },
    )
    return AnalysisReport(
        recommendations=recommendations,
        scoring_strategy=scoring.strategy,
        fallback_reason=scoring.fallback_reason,
        anomaly_count=sum(1 for r in scoring.results.values() if r.is_anomaly),
        heatmap=heatmap,
        sequences=sequences,
        clusters=clusters,
        timeline=timeline,
        statistics=generate_statistics(activities),
    )


def generate_recommendations(activities: Sequence[CanonicalActivity], config: Optional[RecommendationConfig] = None) -> List[Recommendation]:
    return build_report(activities, config).recommendations
