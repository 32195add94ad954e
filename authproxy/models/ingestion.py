from typing import Any, Dict, List
from pydantic import BaseModel, Field

# Arbitrary JSON object as decoded by the json module
LogRecord = Dict[str, Any]


class BulkResult(BaseModel):
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class IngestionStats(BaseModel):
    """Running counters for the batching engine, exposed on /metrics."""

    accepted: int = 0
    dropped: int = 0
    flushes: int = 0
    flushed: int = 0
    rejected: int = 0
    failed: int = 0
    queue_depth: int = 0
    buffered: int = 0
    inflight_flushes: int = 0
