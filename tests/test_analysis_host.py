"""
Chunked execution host and background worker tests.
"""

import threading
import time

import pytest

from risk_engine.core.config import settings
from risk_engine.core.errors import AnalysisStepError
from risk_engine.schemas.messages import ProcessRequest
from risk_engine.schemas.recommendations import RecommendationConfig
from risk_engine.services.analysis_host import AnalysisHost, ProgressTracker
from risk_engine.services.background_worker import BackgroundAnalysisWorker


FAST = RecommendationConfig(model_epochs=3)


def _raw_records(count, users=5):
    records = []
    for i in range(count):
        records.append(
            {
                "id": f"raw-{i}",
                "username": f"user{i % users}",
                "timestamp": f"2024-01-{1 + i % 28:02d}T{i % 24:02d}:00:00Z",
                "riskScore": 2300 if i % 17 == 0 else 150 + (i % 9) * 40,
                "integration": ["gmail", "onedrive", "usb", "si-files"][i % 4],
                "activity": ["Login", "Download report", "Upload file", "Email sent"][i % 4],
            }
        )
    return records


class FakeMonotonic:
    def __init__(self, step=0.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


def _run(request, **kwargs):
    host = AnalysisHost(chunk_size=kwargs.pop("chunk_size", 50), monotonic=FakeMonotonic(step=1.0), **kwargs)
    return list(host.run(request))


# ============================================================================
# Progress tracking
# ============================================================================


class TestProgressTracker:
    def test_throttles_intermediate_updates(self):
        clock = FakeMonotonic()
        tracker = ProgressTracker(interval_ms=500, clock=clock)
        assert tracker.update("a", 0).progress == 0
        assert tracker.update("a", 5) is None
        clock.now += 0.6
        assert tracker.update("a", 10).progress == 10

    def test_forced_updates_always_report(self):
        tracker = ProgressTracker(interval_ms=10000, clock=FakeMonotonic())
        tracker.update("a", 0)
        assert tracker.update("stage", 40, force=True).progress == 40

    def test_never_goes_backwards(self):
        tracker = ProgressTracker(interval_ms=0, clock=FakeMonotonic(step=1.0))
        tracker.update("a", 50)
        assert tracker.update("a", 30, force=True) is None
        assert tracker.update("a", 150).progress == 100


# ============================================================================
# Host
# ============================================================================


class TestAnalysisHost:
    def test_full_run(self):
        messages = _run(ProcessRequest(data={"records": _raw_records(120)}, config=FAST))
        types = [m.type for m in messages]
        assert types[-1] == "complete"
        assert "error" not in types
        progress = [m.progress for m in messages if m.type == "progress"]
        assert progress == sorted(progress)
        assert progress[0] == 0 and progress[-1] == 100
        partials = [m.name for m in messages if m.type == "partialResult"]
        assert partials == ["normalization", "scoring", "heatmap", "sequences", "clusters"]
        complete = messages[-1]
        assert complete.processing_stats["activities"] == 120
        assert complete.processing_stats["sampled"] is False
        assert complete.result["scoringStrategy"] == "reconstruction"

    def test_small_dataset_is_statistical_only(self):
        messages = _run(ProcessRequest(data={"records": _raw_records(6)}, config=FAST))
        complete = messages[-1]
        assert complete.type == "complete"
        assert complete.result["scoringStrategy"] == "statistical"
        assert complete.result["heatmap"]["modelApplied"] is False

    def test_empty_input_completes(self):
        messages = _run(ProcessRequest(data={"records": []}))
        assert messages[-1].type == "complete"
        assert messages[-1].result["recommendations"] == []
        assert messages[-1].processing_stats["activities"] == 0

    def test_bad_file_is_reported_and_others_processed(self):
        files = [_raw_records(15), 12345, {"name": "b.json", "records": _raw_records(15)}]
        messages = _run(ProcessRequest(data={"files": files}, config=FAST))
        errors = [m for m in messages if m.type == "error"]
        assert len(errors) == 1
        assert errors[0].fatal is False
        assert errors[0].context == {"step": "normalize", "item": 2, "of": 3, "label": "file 2 of 3"}
        complete = messages[-1]
        assert complete.type == "complete"
        assert complete.processing_stats["failedFiles"] == 1
        assert complete.processing_stats["activities"] == 30

    def test_ids_stay_unique_across_files(self):
        files = [[{"username": "a"}] * 3, [{"username": "b"}] * 3]
        host = AnalysisHost(chunk_size=2, monotonic=FakeMonotonic(step=1.0))
        messages = list(host.run(ProcessRequest(data={"files": files}, config=RecommendationConfig(use_anomaly_detection=False))))
        assert messages[-1].processing_stats["activities"] == 6
        assert messages[-1].result["statistics"]["totalActivities"] == 6

    def test_csv_text_file(self):
        text = "activityId,user,date,time,riskScore\n" + "\n".join(
            f"{i},user{i % 3},{1 + i % 9:02d}/02/2024,1{i % 10}:00,{100 * (i % 25)}" for i in range(30)
        )
        messages = _run(ProcessRequest(data={"files": [text]}, config=FAST))
        assert messages[-1].type == "complete"
        assert messages[-1].processing_stats["activities"] == 30

    def test_cancel_stops_all_messages(self):
        cancel = threading.Event()
        host = AnalysisHost(chunk_size=10, monotonic=FakeMonotonic(step=1.0))
        received = []
        for message in host.run(ProcessRequest(data={"records": _raw_records(100)}, config=FAST), cancel):
            received.append(message)
            if len(received) == 3:
                cancel.set()
        assert len(received) == 3
        assert all(m.type != "complete" for m in received)

    def test_large_dataset_uses_samples(self, monkeypatch):
        monkeypatch.setattr(settings, "LARGE_DATASET_THRESHOLD", 100)
        monkeypatch.setattr(settings, "SAMPLE_SIZE", 40)
        messages = _run(ProcessRequest(data={"records": _raw_records(150)}, config=FAST))
        stats = messages[-1].processing_stats
        assert stats["sampled"] is True
        assert stats["sampleSize"] == 40
        assert stats["trainingSamples"] == 40
        assert messages[-1].result["clusters"]["sampledActivities"] == 40

    def test_failing_stage_is_a_structured_error(self, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("grid exploded")

        monkeypatch.setattr("risk_engine.services.analysis_host.build_heatmap", broken)
        messages = _run(ProcessRequest(data={"records": _raw_records(30)}, config=FAST))
        last = messages[-1]
        assert last.type == "error"
        assert last.fatal is True
        assert last.context == {"step": "heatmap"}
        assert "grid exploded" in last.error

    def test_step_error_context(self):
        assert AnalysisStepError("normalize", "bad", index=0, total=4).context()["label"] == "file 1 of 4"
        assert AnalysisStepError("scoring", "bad").context() == {"step": "scoring"}


# ============================================================================
# Background worker
# ============================================================================


def _drain(worker, job_id, timeout=30.0):
    messages = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        messages.extend(worker.poll(job_id))
        if messages and messages[-1]["type"] in ("complete", "error", "status", "optimizationApplied"):
            return messages
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.fixture
def worker():
    worker = BackgroundAnalysisWorker(AnalysisHost(chunk_size=25))
    worker.start()
    yield worker
    worker.stop()


class TestBackgroundWorker:
    def test_submit_returns_immediately_and_completes(self, worker):
        job_id = worker.submit(ProcessRequest(data={"records": _raw_records(40)}, config=FAST))
        assert worker.has_job(job_id)
        messages = _drain(worker, job_id)
        assert messages[-1]["type"] == "complete"
        assert messages[0]["type"] == "progress"

    def test_poll_unknown_job(self, worker):
        assert worker.poll("job-missing") == []
        assert worker.cancel("job-missing") is False

    def test_status_action(self, worker):
        job_id = worker.submit(ProcessRequest(action="status"))
        assert _drain(worker, job_id)[-1]["state"] in ("idle", "busy")

    def test_optimize_action_stays_on_the_worker(self, worker):
        before = settings.SAMPLE_SIZE
        job_id = worker.submit(ProcessRequest(action="optimize", data={"chunkSize": 500, "sampleSize": 1000}))
        message = _drain(worker, job_id)[-1]
        assert message["type"] == "optimizationApplied"
        assert message["settings"] == {"chunkSize": 500, "sampleSize": 1000}
        assert worker.host.chunk_size == 500
        assert worker.host.sample_size == 1000
        assert settings.SAMPLE_SIZE == before
        assert AnalysisHost().sample_size is None

    def test_cancelled_job_goes_quiet(self, worker):
        job_id = worker.submit(ProcessRequest(data={"records": _raw_records(400)}, config=FAST))
        worker.cancel(job_id)
        time.sleep(0.5)
        worker.poll(job_id)
        time.sleep(0.2)
        assert worker.poll(job_id) == []

    def test_finished_jobs_are_released(self, worker):
        job_ids = [worker.submit(ProcessRequest(data={"records": _raw_records(15)}, config=FAST)) for _ in range(5)]
        for job_id in job_ids:
            assert _drain(worker, job_id)[-1]["type"] == "complete"
        assert not any(worker.has_job(job_id) for job_id in job_ids)
        assert worker.poll(job_ids[0]) == []

    def test_cancelled_job_is_released_on_next_poll(self, worker):
        job_id = worker.submit(ProcessRequest(data={"records": _raw_records(200)}, config=FAST))
        worker.cancel(job_id)
        worker.poll(job_id)
        assert not worker.has_job(job_id)
        assert worker.cancel(job_id) is False
