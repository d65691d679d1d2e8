"""
Flow run state and execution tracking models.
"""

from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Flow run status."""
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    WAITING_DELAY = "waiting_delay"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_waiting(self) -> bool:
        return self in (RunStatus.WAITING_INPUT, RunStatus.WAITING_DELAY)

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunMode(str, Enum):
    """Live runs talk to customers; preview runs back the builder's test panel."""
    LIVE = "live"
    PREVIEW = "preview"


class Outcome(str, Enum):
    SUCCESS = "success"
    BRANCH = "branch"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    ERROR = "error"


class EventKind(str, Enum):
    """External events that resume a suspended run."""
    INPUT = "input"
    BUTTON = "button"
    TIMER = "timer"


class ExecutionLogEntry(BaseModel):
    """One node visit in a run's trace."""
    node_id: str
    node_type: str
    node_label: Optional[str] = None
    resolved_config: Dict[str, Any] = Field(default_factory=dict)
    outcome: Outcome
    branch: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: int = 0
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)


class TriggerContext(BaseModel):
    """What started a run: the conversation, its contact and seed variables."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    contact: Dict[str, Any] = Field(default_factory=dict)
    user: Dict[str, Any] = Field(default_factory=dict)
    conversation: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = Field(default=None, description="Inbound text that triggered the run")
    mode: RunMode = RunMode.LIVE


class ResumeEvent(BaseModel):
    """An external event delivered to a suspended run."""
    kind: EventKind = EventKind.INPUT
    value: Optional[Any] = None
    received_at: datetime = Field(default_factory=utcnow)

    @field_validator("received_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        # Naive timestamps are taken as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class RunState(BaseModel):
    """Durable state of one flow run. Everything needed to resume lives here."""
    run_id: str
    flow_id: Optional[str] = None
    flow_version: int = 1
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    mode: RunMode = RunMode.LIVE
    current_node_id: str
    status: RunStatus = RunStatus.RUNNING
    variables: Dict[str, Any] = Field(default_factory=dict)
    execution_path: List[str] = Field(default_factory=list)
    resume_at: Optional[datetime] = None
    awaiting_variable: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    logs: List[ExecutionLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class FlowRunResult(BaseModel):
    """Result returned to callers of start/resume/cancel/test."""
    run_id: Optional[str] = None
    status: Optional[RunStatus] = None
    success: bool
    error: Optional[str] = None
    execution_path: List[str] = Field(default_factory=list)
    logs: List[ExecutionLogEntry] = Field(default_factory=list)
    final_context: Dict[str, Any] = Field(default_factory=dict)
    resume_at: Optional[datetime] = None
    awaiting_variable: Optional[str] = None
    outbound: List[Dict[str, Any]] = Field(default_factory=list, description="Messages recorded by preview runs")

    @classmethod
    def from_state(cls, state: RunState) -> "FlowRunResult":
        return cls(
            run_id=state.run_id,
            status=state.status,
            success=state.status not in (RunStatus.FAILED, RunStatus.CANCELLED),
            error=state.error,
            execution_path=list(state.execution_path),
            logs=list(state.logs),
            final_context=state.variables,
            resume_at=state.resume_at,
            awaiting_variable=state.awaiting_variable,
        )

    @classmethod
    def rejected(cls, error: str, context: Optional[Dict[str, Any]] = None) -> "FlowRunResult":
        return cls(success=False, error=error, final_context=context or {})


class RunSummary(BaseModel):
    """Summary of a run for list views."""
    run_id: str
    flow_id: Optional[str]
    conversation_id: Optional[str]
    status: RunStatus
    current_node_id: str
    created_at: datetime
    updated_at: datetime


class ReplayStep(BaseModel):
    """One step of a step-by-step run replay."""
    step: int
    node_id: str
    node_type: str
    node_label: Optional[str] = None
    outcome: Outcome
    branch: Optional[str] = None
    error: Optional[str] = None
    resolved_config: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    duration_ms: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)


class ExecutionReplay(BaseModel):
    """Replay payload for the builder's run inspector."""
    run_id: str
    flow_id: Optional[str] = None
    flow_name: Optional[str] = None
    flow_version: int = 1
    flow_data: Optional[Dict[str, Any]] = None
    status: RunStatus
    contact_id: Optional[str] = None
    steps: List[ReplayStep] = Field(default_factory=list)
    final_context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
