from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, Field


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.CANCELLED, RunState.COMPLETED)


class WorkItem(BaseModel):
    """One issue or pull request waiting for classification."""

    id: int
    number: int
    title: str
    body: str = ""
    is_pull_request: bool = False
    run_key: str
    html_url: str | None = None


class InFlightItem(BaseModel):
    id: int
    number: int
    title: str
    worker_id: int
    started_at: str | None = None


class ErrorEntry(BaseModel):
    item_id: int
    item_number: int
    message: str
    timestamp: str
    attempts: int = 0


class RunStatus(BaseModel):
    run_key: str
    state: RunState = RunState.NOT_STARTED
    start_time: str | None = None
    end_time: str | None = None
    paused_at: str | None = None
    resumed_at: str | None = None
    total_count: int = 0
    processed_count: int = 0
    success_count: int = 0
    error_count: int = 0
    original_total_count: int = 0
    already_analyzed_count: int = 0
    concurrency: int = 0
    current_items: Dict[str, InFlightItem] = Field(default_factory=dict)
    errors: List[ErrorEntry] = Field(default_factory=list)

    def to_response(self) -> Dict[str, object]:
        return {
            "runKey": self.run_key,
            "status": self.state.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "pausedAt": self.paused_at,
            "resumedAt": self.resumed_at,
            "totalCount": self.total_count,
            "processedCount": self.processed_count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "originalTotalCount": self.original_total_count,
            "alreadyAnalyzedCount": self.already_analyzed_count,
            "concurrency": self.concurrency,
            "currentItems": {
                key: item.model_dump() for key, item in self.current_items.items()
            },
            "errors": [entry.model_dump() for entry in self.errors],
        }
