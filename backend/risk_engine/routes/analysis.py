from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from risk_engine.core.errors import StorageError, StorageFullError
from risk_engine.database.store import SqlAlchemyStore, activity_store
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.messages import NormalizeRequest, ProcessRequest
from risk_engine.services.analysis_host import AnalysisHost
from risk_engine.services.background_worker import BackgroundAnalysisWorker, get_worker
from risk_engine.services.normalization.pipeline import normalize_batch, parse_raw_payload

router = APIRouter()


def get_activity_store() -> SqlAlchemyStore[CanonicalActivity]:
    return activity_store()


def get_analysis_host() -> AnalysisHost:
    return AnalysisHost()


@router.post("/analysis/normalize")
def normalize(request: NormalizeRequest, store: SqlAlchemyStore[CanonicalActivity] = Depends(get_activity_store)):
    """
    Normalizes raw records (or a raw JSON/CSV payload) into canonical activities.
    """
    records: List[Any] = list(request.records)
    if request.content:
        records.extend(parse_raw_payload(request.content))
    result = normalize_batch(records)
    persisted = 0
    if request.persist and result.activities:
        try:
            persisted = store.put_all(result.activities)
        except StorageFullError as exc:
            raise HTTPException(status_code=507, detail=str(exc))
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
    payload = result.model_dump(by_alias=True)
    payload["persisted"] = persisted
    return payload


@router.post("/analysis/run")
def run_analysis(request: ProcessRequest, host: AnalysisHost = Depends(get_analysis_host)):
    """
    Runs the full pipeline in the request thread and returns the final report.
    """
    errors: List[Dict[str, Any]] = []
    complete = None
    for message in host.run(request):
        if message.type == "error":
            errors.append(message.model_dump(by_alias=True))
            if message.fatal:
                raise HTTPException(status_code=422, detail=errors)
        elif message.type == "complete":
            complete = message
    if complete is None:
        raise HTTPException(status_code=500, detail="analysis produced no result")
    return {"report": complete.result, "processingStats": complete.processing_stats, "errors": errors}


@router.post("/analysis/jobs", status_code=202)
def submit_job(request: ProcessRequest, worker: BackgroundAnalysisWorker = Depends(get_worker)):
    """
    Queues the request on the background worker and returns immediately.
    """
    return {"jobId": worker.submit(request)}


@router.get("/analysis/jobs/{job_id}/messages")
def poll_job(job_id: str, worker: BackgroundAnalysisWorker = Depends(get_worker)):
    if not worker.has_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    # the worker releases the job once its final message has been handed out
    return {"jobId": job_id, "messages": worker.poll(job_id)}


@router.delete("/analysis/jobs/{job_id}")
def cancel_job(job_id: str, worker: BackgroundAnalysisWorker = Depends(get_worker)):
    if not worker.cancel(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    worker.forget(job_id)
    return {"jobId": job_id, "cancelled": True}
