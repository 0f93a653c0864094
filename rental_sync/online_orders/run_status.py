"""Live status of the scrape run, polled by the status endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from rental_sync.common.json_logger import RingBufferSink

LOG_RING_SIZE = 500


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_USER = "awaiting_user"
    SUCCESS = "success"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.RUNNING}),
    RunState.RUNNING: frozenset({RunState.RUNNING, RunState.AWAITING_USER, RunState.SUCCESS, RunState.ERROR}),
    RunState.AWAITING_USER: frozenset({RunState.AWAITING_USER, RunState.RUNNING, RunState.ERROR}),
    RunState.SUCCESS: frozenset({RunState.RUNNING}),
    RunState.ERROR: frozenset({RunState.RUNNING}),
}

ACTIVE_STATES = frozenset({RunState.RUNNING, RunState.AWAITING_USER})


class InvalidTransition(RuntimeError):
    """Raised when the tracker is asked to move along an edge it does not have."""


@dataclass
class RunResult:
    pending_count: Optional[int] = None
    extracted_count: int = 0
    pages_visited: int = 0
    page_url: Optional[str] = None
    title: Optional[str] = None
    first_page_rows: List[str] = field(default_factory=list)
    parsed_orders: List[Dict[str, Any]] = field(default_factory=list)
    saved: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pendingCount": self.pending_count,
            "extractedCount": self.extracted_count,
            "pagesVisited": self.pages_visited,
            "pageUrl": self.page_url,
            "title": self.title,
            "rows": list(self.first_page_rows),
            "parsedOrders": list(self.parsed_orders),
            "saved": dict(self.saved),
        }


class RunStatusTracker:
    def __init__(self, *, ring_size: int = LOG_RING_SIZE) -> None:
        self.state = RunState.IDLE
        self.message: Optional[str] = None
        self.site_id: Optional[str] = None
        self.last_run_at: Optional[datetime] = None
        self.needs_attention = False
        self.heartbeat_active = False
        self.snapshot_saved = False
        self.last_result: Optional[RunResult] = None
        self.log_sink = RingBufferSink(ring_size)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def transition(self, state: RunState, message: Optional[str] = None, *, needs_attention: bool = False) -> bool:
        """Move to ``state``; returns True when the visible message changed."""

        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {state.value}")
        changed = message is not None and message != self.message
        self.state = state
        if message is not None:
            self.message = message
        self.needs_attention = needs_attention
        return changed

    def begin(self, site_id: str, message: str) -> None:
        self.transition(RunState.RUNNING, message)
        self.site_id = site_id
        self.last_run_at = datetime.now(timezone.utc)
        self.last_result = None
        self.snapshot_saved = False

    def succeed(self, result: RunResult, message: str) -> None:
        self.last_result = result
        self.transition(RunState.SUCCESS, message)

    def fail(self, message: str) -> None:
        if self.state in (RunState.IDLE, RunState.SUCCESS, RunState.ERROR):
            # failure before the run was marked started, e.g. bad site config
            self.transition(RunState.RUNNING)
        self.transition(RunState.ERROR, message)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.state.value,
            "message": self.message,
            "siteId": self.site_id,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "needsAttention": self.needs_attention,
            "heartbeatActive": self.heartbeat_active,
            "snapshotSaved": self.snapshot_saved,
            "lastResult": self.last_result.as_dict() if self.last_result else None,
            "logs": self.log_sink.lines(),
        }
