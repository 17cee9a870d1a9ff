from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from risk_engine.core.errors import AlertNotFoundError, InvalidTransitionError, StorageError, StorageFullError
from risk_engine.database.store import alert_store
from risk_engine.schemas.alerts import Alert, AssignRequest, ManagerActionRequest, RefreshAlertsRequest, ReviewRequest
from risk_engine.services.alert_manager import AlertManager

router = APIRouter()


def get_alert_manager() -> AlertManager:
    return AlertManager(alert_store())


def _raise_http(exc: Exception):
    if isinstance(exc, AlertNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageFullError):
        raise HTTPException(status_code=507, detail=str(exc))
    raise HTTPException(status_code=500, detail=str(exc))


@router.get("/alerts", response_model=List[Alert])
def list_alerts(
    severity: Optional[List[str]] = Query(default=None),
    status: Optional[List[str]] = Query(default=None),
    threat_type: Optional[List[str]] = Query(default=None),
    limit: Optional[int] = None,
    manager: AlertManager = Depends(get_alert_manager),
):
    """
    Lists alerts, optionally filtered. With `limit` the most recent alerts come first.
    """
    try:
        if limit is not None:
            alerts = manager.get_recent_alerts(limit)
            if severity or status or threat_type:
                wanted = {a.id for a in manager.filter_alerts(severity, status, threat_type)}
                alerts = [a for a in alerts if a.id in wanted]
            return alerts
        return manager.filter_alerts(severity, status, threat_type)
    except StorageError as exc:
        _raise_http(exc)


@router.get("/alerts/{alert_id}", response_model=Alert)
def get_alert_detail(alert_id: str, manager: AlertManager = Depends(get_alert_manager)):
    try:
        return manager.get_alert(alert_id)
    except (AlertNotFoundError, StorageError) as exc:
        _raise_http(exc)


@router.post("/alerts/refresh", response_model=List[Alert])
def refresh_alerts(request: RefreshAlertsRequest, manager: AlertManager = Depends(get_alert_manager)):
    """
    Creates alerts for recommendations that do not match an existing alert.
    """
    try:
        return manager.refresh_alerts_from_recommendations(request.recommendations)
    except StorageError as exc:
        _raise_http(exc)


@router.post("/alerts/{alert_id}/review", response_model=Alert)
def review_alert(alert_id: str, request: ReviewRequest, manager: AlertManager = Depends(get_alert_manager)):
    try:
        return manager.mark_as_reviewing(alert_id, request.reviewer)
    except (AlertNotFoundError, InvalidTransitionError, StorageError) as exc:
        _raise_http(exc)


@router.post("/alerts/{alert_id}/assign", response_model=Alert)
def assign_alert(alert_id: str, request: AssignRequest, manager: AlertManager = Depends(get_alert_manager)):
    try:
        return manager.assign_to_me(alert_id, request.reviewer)
    except (AlertNotFoundError, InvalidTransitionError, StorageError) as exc:
        _raise_http(exc)


@router.post("/alerts/{alert_id}/action", response_model=Alert)
def submit_action(alert_id: str, request: ManagerActionRequest, manager: AlertManager = Depends(get_alert_manager)):
    """
    Records the manager decision. `dismissed` closes the alert as dismissed, anything else resolves it.
    """
    try:
        return manager.submit_manager_action(alert_id, request.action, request.comments, request.manager_id)
    except (AlertNotFoundError, InvalidTransitionError, StorageError) as exc:
        _raise_http(exc)


@router.delete("/alerts")
def clear_alerts(manager: AlertManager = Depends(get_alert_manager)):
    try:
        return {"removed": manager.clear_all_alerts()}
    except StorageError as exc:
        _raise_http(exc)
