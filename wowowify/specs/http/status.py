from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class RunStatusResponse(BaseModel):
    runId: str
    currentPhase: Optional[str] = None
    status: Optional[str] = None
    isComplete: bool = False
    lastUpdateUtc: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    events: Optional[List[Dict[str, Any]]] = None


class MetricsResponse(BaseModel):
    totalRequests: int = 0
    failedRequests: int = 0
    windowSeconds: int
