import time
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Union

from risk_engine.core.config import settings
from risk_engine.core.errors import AnalysisStepError
from risk_engine.schemas.activity import CanonicalActivity, NormalizationDiagnostics
from risk_engine.schemas.messages import (
    CompleteMessage,
    ErrorMessage,
    PartialResultMessage,
    ProcessRequest,
    ProgressMessage,
)
from risk_engine.schemas.recommendations import AnalysisReport, RecommendationConfig
from risk_engine.services.analytics.clustering import cluster_users
from risk_engine.services.analytics.heatmap import build_heatmap
from risk_engine.services.analytics.sequences import mine_sequence_patterns
from risk_engine.services.normalization.pipeline import _now, normalize_batch, parse_raw_payload
from risk_engine.services.recommendations.engine import build_report, scorer_config_for
from risk_engine.services.scoring.selector import iter_score_activities

logger = logging.getLogger(__name__)

Message = Union[ProgressMessage, PartialResultMessage, CompleteMessage, ErrorMessage]

# progress bands per stage, in percent
NORMALIZE_END = 40
SCORING_END = 60
HEATMAP_END = 70
SEQUENCES_END = 80
CLUSTERS_END = 90


class ProgressTracker:
    """
    Monotonic, throttled progress. Intermediate updates inside the interval
    are dropped; forced updates (stage boundaries) always go out.
    """

    def __init__(self, interval_ms: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.interval = (settings.PROGRESS_REPORT_INTERVAL_MS if interval_ms is None else interval_ms) / 1000.0
        self.clock = clock
        self.last_progress = -1
        self._last_sent: Optional[float] = None

    def update(self, task: str, progress: float, force: bool = False) -> Optional[ProgressMessage]:
        value = max(0, min(100, int(progress)))
        if value <= self.last_progress:
            return None
        now = self.clock()
        if not force and self._last_sent is not None and now - self._last_sent < self.interval:
            return None
        self.last_progress = value
        self._last_sent = now
        return ProgressMessage(task=task, progress=value)


def _merge_diagnostics(into: NormalizationDiagnostics, part: NormalizationDiagnostics) -> None:
    into.total += part.total
    into.malformed_json += part.malformed_json
    into.invalid_dates += part.invalid_dates
    into.missing_identity += part.missing_identity
    into.non_mapping_records += part.non_mapping_records
    for fmt, count in part.formats.items():
        into.formats[fmt] = into.formats.get(fmt, 0) + count


def _records_for(source: Any, index: int, total: int) -> List[Any]:
    """Raw records of one input file: a record list, a text payload or a {name, content|records} dict."""
    if isinstance(source, list):
        return source
    if isinstance(source, str):
        return parse_raw_payload(source)
    if isinstance(source, dict):
        if isinstance(source.get("records"), list):
            return source["records"]
        if isinstance(source.get("content"), str):
            return parse_raw_payload(source["content"])
    raise AnalysisStepError(
        "normalize",
        f"unsupported input of type {type(source).__name__}",
        index=index,
        total=total,
    )


class AnalysisHost:
    """
    Runs the whole pipeline as a generator of messages. The caller decides
    where it runs; BackgroundAnalysisWorker drives it from a thread.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = _now,
        progress_interval_ms: Optional[int] = None,
        sample_size: Optional[int] = None,
    ):
        self.chunk_size = max(1, chunk_size or settings.CHUNK_SIZE)
        self.monotonic = monotonic
        self.clock = clock
        self.progress_interval_ms = progress_interval_ms
        # per-host override of SAMPLE_SIZE, set by the worker's optimize action
        self.sample_size = sample_size

    def run(self, request: ProcessRequest, cancel_event=None) -> Iterator[Message]:
        cancelled = cancel_event.is_set if cancel_event is not None else (lambda: False)
        try:
            for message in self._run(request, cancelled):
                if cancelled():
                    logger.info("analysis cancelled", extra={"job_id": request.job_id})
                    return
                yield message
        except AnalysisStepError as exc:
            if cancelled():
                return
            logger.error("analysis step failed", extra={"job_id": request.job_id, **exc.context()})
            yield ErrorMessage(error=str(exc), context=exc.context(), fatal=True)

    def _stage(self, step: str, work: Callable[[], Any]) -> Any:
        try:
            return work()
        except AnalysisStepError:
            raise
        except Exception as exc:
            logger.exception("analysis stage failed", extra={"step": step})
            raise AnalysisStepError(step, f"{step} failed: {exc}") from exc

    def _run(self, request: ProcessRequest, cancelled: Callable[[], bool]) -> Iterator[Message]:
        config = request.config or RecommendationConfig()
        tracker = ProgressTracker(self.progress_interval_ms, self.monotonic)
        started = self.monotonic()

        def progress(task: str, value: float, force: bool = False):
            return tracker.update(task, value, force)

        first = progress("Starting analysis", 0, force=True)
        if first:
            yield first

        batches = request.batches()
        activities: List[CanonicalActivity] = []
        diagnostics = NormalizationDiagnostics()
        seen: Set[str] = set()
        failed_files = 0
        offset = 0
        for file_index, source in enumerate(batches):
            try:
                records = _records_for(source, file_index, len(batches))
            except AnalysisStepError as exc:
                failed_files += 1
                logger.warning("input file skipped", extra={"job_id": request.job_id, **exc.context()})
                yield ErrorMessage(error=str(exc), context=exc.context(), fatal=False)
                continue
            for start in range(0, len(records), self.chunk_size):
                if cancelled():
                    return
                chunk = records[start:start + self.chunk_size]
                result = normalize_batch(chunk, self.clock, start=offset, seen=seen)
                offset += len(chunk)
                activities.extend(result.activities)
                _merge_diagnostics(diagnostics, result.diagnostics)
                done = (file_index + min(1.0, (start + len(chunk)) / len(records))) / len(batches)
                message = progress(f"Normalizing file {file_index + 1} of {len(batches)}", NORMALIZE_END * done)
                if message:
                    yield message

        message = progress("Normalization complete", NORMALIZE_END, force=True)
        if message:
            yield message
        yield PartialResultMessage(name="normalization", data=diagnostics.model_dump(by_alias=True))

        stats: Dict[str, Any] = {
            "files": len(batches),
            "failedFiles": failed_files,
            "totalRecords": diagnostics.total,
            "activities": len(activities),
            "sampled": False,
            "sampleSize": None,
        }
        if not activities:
            final = progress("Analysis complete", 100, force=True)
            if final:
                yield final
            stats["elapsedMs"] = int((self.monotonic() - started) * 1000)
            yield CompleteMessage(result=AnalysisReport().model_dump(by_alias=True), processing_stats=stats)
            return

        sample_size = self.sample_size or settings.SAMPLE_SIZE
        large = len(activities) > settings.LARGE_DATASET_THRESHOLD
        use_model = config.use_anomaly_detection and len(activities) >= settings.MIN_ACTIVITIES_FOR_ANALYSIS
        scorer_config = scorer_config_for(config)
        if large:
            scorer_config = scorer_config.model_copy(update={"max_training_samples": sample_size})
            stats["sampled"] = True
            stats["sampleSize"] = sample_size
            logger.info(
                "large dataset, sampling for training and clustering",
                extra={"job_id": request.job_id, "activities": len(activities), "sample_size": sample_size},
            )

        steps = iter_score_activities(activities, use_model, scorer_config, self.chunk_size)
        scoring = None
        while scoring is None:
            if cancelled():
                return
            try:
                fraction = next(steps)
            except StopIteration as done:
                scoring = done.value
                break
            except Exception as exc:
                logger.exception("analysis stage failed", extra={"step": "scoring"})
                raise AnalysisStepError("scoring", f"scoring failed: {exc}") from exc
            message = progress("Scoring activities", NORMALIZE_END + (SCORING_END - NORMALIZE_END) * fraction)
            if message:
                yield message
        message = progress("Scoring complete", SCORING_END, force=True)
        if message:
            yield message
        yield PartialResultMessage(
            name="scoring",
            data={
                "strategy": scoring.strategy,
                "fallbackReason": scoring.fallback_reason,
                "anomalyCount": sum(1 for r in scoring.results.values() if r.is_anomaly),
                "trainingSamples": scoring.training_samples,
            },
        )

        if cancelled():
            return
        heatmap = self._stage(
            "heatmap", lambda: build_heatmap(activities, use_model=use_model, seed=config.model_seed)
        )
        message = progress("Heatmap ready", HEATMAP_END, force=True)
        if message:
            yield message
        yield PartialResultMessage(name="heatmap", data=heatmap.model_dump(by_alias=True))

        if cancelled():
            return
        sequences = self._stage("sequences", lambda: mine_sequence_patterns(activities))
        message = progress("Sequence patterns ready", SEQUENCES_END, force=True)
        if message:
            yield message
        yield PartialResultMessage(name="sequences", data=sequences.model_dump(by_alias=True))

        if cancelled():
            return
        cluster_limit = sample_size if large else None
        clusters = self._stage("clustering", lambda: cluster_users(activities, max_activities=cluster_limit))
        message = progress("User clusters ready", CLUSTERS_END, force=True)
        if message:
            yield message
        yield PartialResultMessage(name="clusters", data=clusters.model_dump(by_alias=True))

        if cancelled():
            return
        report = self._stage(
            "recommendations",
            lambda: build_report(activities, config, scoring, heatmap, sequences, clusters),
        )
        message = progress("Analysis complete", 100, force=True)
        if message:
            yield message

        stats.update(
            {
                "strategy": scoring.strategy,
                "trainingSamples": scoring.training_samples,
                "elapsedMs": int((self.monotonic() - started) * 1000),
                "diagnostics": diagnostics.model_dump(by_alias=True),
            }
        )
        logger.info("analysis finished", extra={"job_id": request.job_id, **stats})
        yield CompleteMessage(result=report.model_dump(by_alias=True), processing_stats=stats)
