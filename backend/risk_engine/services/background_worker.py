import queue
import uuid
import logging
import threading
from typing import Dict, List, Optional

from risk_engine.core.config import settings
from risk_engine.schemas.messages import (
    ErrorMessage,
    OptimizationAppliedMessage,
    ProcessRequest,
    StatusMessage,
)
from risk_engine.services.analysis_host import AnalysisHost

logger = logging.getLogger(__name__)

_STOP = object()
_worker: Optional["BackgroundAnalysisWorker"] = None
_worker_lock = threading.Lock()

FINAL_TYPES = {"complete", "status", "optimizationApplied"}


def _is_final(message: dict) -> bool:
    if message.get("type") == "error":
        return bool(message.get("fatal"))
    return message.get("type") in FINAL_TYPES


class BackgroundAnalysisWorker:
    """
    Runs AnalysisHost jobs on a daemon thread. Callers only exchange
    messages with it: submit() and cancel() never wait on a running job.
    """

    def __init__(self, host: Optional[AnalysisHost] = None):
        self.host = host or AnalysisHost()
        self._inbox: "queue.Queue" = queue.Queue()
        self._outboxes: Dict[str, "queue.Queue"] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._current: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._loop, name="analysis-worker", daemon=True)
        self._thread.start()
        logger.info("analysis worker started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if not self.running:
            return
        for event in list(self._cancel_events.values()):
            event.set()
        self._inbox.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info("analysis worker stopped")

    def submit(self, request: ProcessRequest) -> str:
        job_id = request.job_id or f"job-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._outboxes[job_id] = queue.Queue()
            self._cancel_events[job_id] = threading.Event()
        self._inbox.put(request.model_copy(update={"job_id": job_id}))
        logger.info("analysis job queued", extra={"job_id": job_id, "action": request.action})
        return job_id

    def has_job(self, job_id: str) -> bool:
        return job_id in self._outboxes

    def poll(self, job_id: str) -> List[dict]:
        """
        Drain whatever the job has produced so far, without waiting. A job
        is released once its final message has been drained, or on the
        first poll after it was cancelled.
        """
        outbox = self._outboxes.get(job_id)
        if outbox is None:
            return []
        messages = []
        while True:
            try:
                messages.append(outbox.get_nowait())
            except queue.Empty:
                break
        event = self._cancel_events.get(job_id)
        if any(_is_final(m) for m in messages) or (event is not None and event.is_set()):
            self.forget(job_id)
        return messages

    def cancel(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("analysis job cancel requested", extra={"job_id": job_id})
        return True

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._outboxes.pop(job_id, None)
            self._cancel_events.pop(job_id, None)

    def _send(self, job_id: str, message) -> None:
        outbox = self._outboxes.get(job_id)
        if outbox is not None:
            outbox.put(message.model_dump(by_alias=True))

    def _apply_optimization(self, request: ProcessRequest) -> OptimizationAppliedMessage:
        data = request.data or {}
        chunk_size = data.get("chunkSize")
        if isinstance(chunk_size, int) and chunk_size > 0:
            self.host.chunk_size = chunk_size
        sample_size = data.get("sampleSize")
        if isinstance(sample_size, int) and sample_size > 0:
            self.host.sample_size = sample_size
        applied = {"chunkSize": self.host.chunk_size, "sampleSize": self.host.sample_size or settings.SAMPLE_SIZE}
        logger.info("analysis worker settings applied", extra=applied)
        return OptimizationAppliedMessage(settings=applied)

    def _status(self) -> StatusMessage:
        return StatusMessage(
            state="busy" if self._current else "idle",
            details={"queued": self._inbox.qsize(), "jobs": len(self._outboxes)},
        )

    def _handle(self, request: ProcessRequest) -> None:
        job_id = request.job_id
        if not self.has_job(job_id):
            # cancelled and released before it started
            return
        if request.action == "optimize":
            self._send(job_id, self._apply_optimization(request))
            return
        if request.action == "status":
            self._send(job_id, self._status())
            return

        cancel_event = self._cancel_events.get(job_id) or threading.Event()
        self._current = job_id
        try:
            for message in self.host.run(request, cancel_event):
                if cancel_event.is_set():
                    break
                self._send(job_id, message)
        finally:
            self._current = None

    def _loop(self) -> None:
        while True:
            request = self._inbox.get()
            if request is _STOP:
                return
            try:
                self._handle(request)
            except Exception as exc:
                logger.exception("analysis job crashed", extra={"job_id": request.job_id})
                self._send(request.job_id, ErrorMessage(error=str(exc), context={"step": request.action}, fatal=True))


def get_worker() -> BackgroundAnalysisWorker:
    global _worker
    with _worker_lock:
        if _worker is None:
            _worker = BackgroundAnalysisWorker()
        return _worker


def start_worker() -> BackgroundAnalysisWorker:
    worker = get_worker()
    worker.start()
    return worker
