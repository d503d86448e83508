"""govflow: unattended driving of governance platform workflows."""

from .approvals import ApprovalAutomation
from .config import GovflowConfig, load_config
from .contracts import (
    ApprovalResult,
    ApprovalRun,
    CompletionStatus,
    Decision,
    Outcome,
    WorkflowCase,
    WorkItem,
    WorkItemKind,
)
from .controller import WorkflowController
from .engines import get_engine
from .session import AcquisitionStrategy, SessionManager
from .tasks import TaskRunner
from .workitems import WorkItemService

__version__ = "0.1.0"
__all__ = [
    "ApprovalAutomation",
    "ApprovalResult",
    "ApprovalRun",
    "AcquisitionStrategy",
    "CompletionStatus",
    "Decision",
    "GovflowConfig",
    "Outcome",
    "SessionManager",
    "TaskRunner",
    "WorkflowCase",
    "WorkflowController",
    "WorkItem",
    "WorkItemKind",
    "WorkItemService",
    "get_engine",
    "load_config",
]
