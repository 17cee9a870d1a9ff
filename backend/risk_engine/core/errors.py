from typing import Any, Dict, Optional


class RiskEngineError(Exception):
    """Base class for errors raised by the analytics engine."""


class AlertNotFoundError(RiskEngineError):
    def __init__(self, alert_id: str):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class InvalidTransitionError(RiskEngineError):
    def __init__(self, alert_id: str, current: str, requested: str):
        super().__init__(f"Alert {alert_id} cannot move from {current} to {requested}")
        self.alert_id = alert_id
        self.current = current
        self.requested = requested


class StorageError(RiskEngineError):
    """Raised when the durable store rejects a read or write."""


class StorageFullError(StorageError):
    """
    The store reached its capacity ceiling. Items that fit were written;
    `rejected` counts the ones that were not.
    """

    def __init__(self, written: int, rejected: int, capacity: int):
        super().__init__(
            f"Store capacity {capacity} reached: wrote {written}, rejected {rejected}"
        )
        self.written = written
        self.rejected = rejected
        self.capacity = capacity


class AnalysisStepError(RiskEngineError):
    """A pipeline step failed for one unit of work (e.g. one input file)."""

    def __init__(self, step: str, message: str, index: Optional[int] = None, total: Optional[int] = None):
        super().__init__(message)
        self.step = step
        self.index = index
        self.total = total

    def context(self) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {"step": self.step}
        if self.index is not None and self.total is not None:
            ctx["item"] = self.index + 1
            ctx["of"] = self.total
            ctx["label"] = f"file {self.index + 1} of {self.total}"
        return ctx
