from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from risk_engine.schemas.activity import CamelModel
from risk_engine.schemas.recommendations import RecommendationConfig


class ProcessRequest(BaseModel):
    action: Literal["process", "optimize", "status"] = "process"
    data: Dict[str, Any] = Field(default_factory=dict)
    config: Optional[RecommendationConfig] = None
    job_id: Optional[str] = None

    def batches(self) -> List[Any]:
        """Input grouped per source file. A flat record list is one batch."""
        if "files" in self.data:
            files = self.data.get("files")
            return list(files) if isinstance(files, list) else [files]
        return [self.data.get("records") or self.data.get("activities") or []]


class ProgressMessage(CamelModel):
    type: Literal["progress"] = "progress"
    task: str
    progress: int


class PartialResultMessage(CamelModel):
    type: Literal["partialResult"] = "partialResult"
    name: str
    data: Any = None


class CompleteMessage(CamelModel):
    type: Literal["complete"] = "complete"
    result: Dict[str, Any] = Field(default_factory=dict)
    processing_stats: Dict[str, Any] = Field(default_factory=dict)


class ErrorMessage(CamelModel):
    type: Literal["error"] = "error"
    error: str
    context: Dict[str, Any] = Field(default_factory=dict)
    fatal: bool = False


class StatusMessage(CamelModel):
    type: Literal["status"] = "status"
    state: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OptimizationAppliedMessage(CamelModel):
    type: Literal["optimizationApplied"] = "optimizationApplied"
    settings: Dict[str, Any] = Field(default_factory=dict)


class NormalizeRequest(BaseModel):
    records: List[Any] = Field(default_factory=list)
    content: Optional[str] = None
    persist: bool = False
