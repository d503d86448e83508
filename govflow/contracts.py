"""Domain contracts shared by the session, controller and work item layers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ObjectKind(str, Enum):
    """Object classes exposed by the platform handle."""

    WORKFLOW = "Workflow"
    CASE = "WorkflowCase"
    WORK_ITEM = "WorkItem"
    IDENTITY = "Identity"
    REQUEST = "Request"
    TASK_DEFINITION = "TaskDefinition"
    TASK_RESULT = "TaskResult"
    TASK_SCHEDULE = "TaskSchedule"


class CompletionStatus(str, Enum):
    """Terminal outcome of a workflow case."""

    SUCCESS = "Success"
    WARNING = "Warning"
    ERROR = "Error"
    TERMINATED = "Terminated"


class WorkItemKind(str, Enum):
    FORM = "Form"
    APPROVAL = "Approval"


class WorkItemState(str, Enum):
    PENDING = "Pending"
    FINISHED = "Finished"


class Decision(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Identity(BaseModel):
    """Read-only view of an identity in the platform directory."""

    name: str
    display_name: Optional[str] = None
    manager: Optional[str] = None
    active: bool = True

    @property
    def label(self) -> str:
        return self.display_name or self.name


class ApprovalLine(BaseModel):
    """One individually approvable entry of an approval set."""

    name: str
    value: Optional[Any] = None
    decision: Optional[Decision] = None
    state: Optional[WorkItemState] = None

    def approve(self) -> None:
        self.decision = Decision.APPROVED
        self.state = WorkItemState.FINISHED

    def reject(self) -> None:
        self.decision = Decision.REJECTED
        self.state = WorkItemState.FINISHED


class WorkflowCase(BaseModel):
    """An in-flight or completed workflow instance.

    ``id`` may be unset immediately after launch; ``name`` is always
    populated and unique. ``completion_status`` is ``None`` while the case
    is running and never reverts to ``None`` once set.
    """

    id: Optional[str] = None
    name: str
    workflow_name: str
    launcher: Optional[str] = None
    completion_status: Optional[CompletionStatus] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    messages: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)

    @property
    def is_complete(self) -> bool:
        return self.completion_status is not None

    def mark_completed(self, status: CompletionStatus) -> None:
        """Set a terminal status. Re-writing a terminal value is allowed."""
        if status is None:
            raise ValueError("completion status cannot revert to running")
        self.completion_status = CompletionStatus(status)

    def matches(self, ref: str) -> bool:
        return ref == self.name or (self.id is not None and ref == self.id)


class WorkItem(BaseModel):
    """A unit of human work generated by a running case."""

    id: str = Field(default_factory=new_id)
    kind: WorkItemKind
    state: WorkItemState = WorkItemState.PENDING
    owner: Optional[str] = None
    case_id: Optional[str] = None
    case_name: Optional[str] = None
    level: Optional[int] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    approval_set: List[ApprovalLine] = Field(default_factory=list)
    decision: Optional[Decision] = None
    completion_comments: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

    @property
    def is_finished(self) -> bool:
        return self.state is WorkItemState.FINISHED

    def belongs_to(self, case_ref: str) -> bool:
        return case_ref in (self.case_id, self.case_name)

    def put(self, key: str, value: Any) -> None:
        """Write a form field value."""
        self.fields[key] = value

    def finish(self, comments: Optional[str]) -> None:
        self.state = WorkItemState.FINISHED
        self.completion_comments = comments


class LaunchRequest(BaseModel):
    """Launch parameters handed to the engine."""

    workflow_name: str
    case_name: str
    launcher: str
    variables: Dict[str, Any] = Field(default_factory=dict)


class LaunchResult(BaseModel):
    """Engine response to a launch; ``case`` is absent on rejection."""

    case: Optional[WorkflowCase] = None
    messages: List[str] = Field(default_factory=list)


class ServerRequest(BaseModel):
    """A launch queued for asynchronous processing by the engine."""

    id: str = Field(default_factory=new_id)
    name: str
    definition: str = "Workflow Request"
    attributes: Dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    case_name: Optional[str] = None


class TaskDefinition(BaseModel):
    """A named background task the platform knows how to run."""

    name: str
    type: str = "Generic"
    executor: Optional[str] = None


class TaskResult(BaseModel):
    """Outcome record of one task run; ``completed`` is unset while running."""

    id: str = Field(default_factory=new_id)
    name: str
    definition: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    completed: Optional[datetime] = None
    completion_status: Optional[CompletionStatus] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    messages: List[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.completed is not None

    def mark_completed(self, status: CompletionStatus) -> None:
        self.completed = _now()
        self.completion_status = CompletionStatus(status)


class TaskSchedule(BaseModel):
    """A task run queued for the platform scheduler.

    The scheduler records its outcome as a ``TaskResult`` named
    ``result_name``.
    """

    id: str = Field(default_factory=new_id)
    name: str
    definition: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result_name: str
    processed: bool = False


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class Outcome(BaseModel, Generic[T]):
    """Result that keeps "timed out" and "absent" apart."""

    kind: OutcomeKind
    value: Optional[T] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(kind=OutcomeKind.SUCCESS, value=value)

    @classmethod
    def not_found(cls, reason: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.NOT_FOUND, reason=reason)

    @classmethod
    def timed_out(cls, value: Any = None, reason: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.TIMED_OUT, value=value, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "Outcome":
        return cls(kind=OutcomeKind.FAILED, reason=reason)


class ApprovalResult(BaseModel):
    """Bookkeeping for one processed approval level."""

    level: int
    approver_name: str
    work_item_id: str
    success: bool
    error_message: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return (
            f"ApprovalResult[level={self.level}, approver={self.approver_name}, "
            f"success={self.success}]"
        )


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ApprovalRun(BaseModel):
    """Running result set of one approval automation run."""

    case_ref: str
    decision: Decision
    results: List[ApprovalResult] = Field(default_factory=list)
    status: RunStatus = RunStatus.COMPLETED
    reason: Optional[str] = None

    @property
    def processed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def count(self) -> int:
        """Levels processed, or ``-1`` when the run failed."""
        if self.status is RunStatus.FAILED:
            return -1
        return self.processed


class SessionStatistics(BaseModel):
    """Diagnostic snapshot of a session manager."""

    initialized: bool
    environment: str
    operation_count: int = 0
    operations: Dict[str, int] = Field(default_factory=dict)
    cache_size: int = 0
    caching_enabled: bool = False
    init_time_ms: Optional[float] = None
