"""Base interface of the external workflow platform handle."""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..contracts import (
    LaunchRequest,
    LaunchResult,
    ObjectKind,
    ServerRequest,
    TaskDefinition,
    TaskResult,
    WorkItem,
    WorkItemKind,
    WorkItemState,
)


class WorkflowEngine(metaclass=abc.ABCMeta):
    """Abstract handle onto the platform's execution context.

    Objects returned by the getters are in-process representations owned by
    the handle. They stay attached until :meth:`decache` is called, so a
    caller that needs to observe changes made elsewhere must decache first.
    """

    name: str = "engine"

    # -- transactions ---------------------------------------------------
    @abc.abstractmethod
    def start_transaction(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def commit_transaction(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback_transaction(self) -> None:
        raise NotImplementedError

    def decache(self) -> None:
        """Detach all in-process representations (no-op by default)."""
        pass

    def close(self) -> None:
        """Release the handle (no-op by default)."""
        pass

    # -- reads ----------------------------------------------------------
    @abc.abstractmethod
    def get_object_by_id(self, kind: ObjectKind, object_id: str) -> Optional[Any]:
        raise NotImplementedError

    @abc.abstractmethod
    def get_object_by_name(self, kind: ObjectKind, name: str) -> Optional[Any]:
        raise NotImplementedError

    @abc.abstractmethod
    def count_objects(self, kind: ObjectKind) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def query_work_items(
        self,
        case_ref: Optional[str] = None,
        owner: Optional[str] = None,
        kind: Optional[WorkItemKind] = None,
        state: Optional[WorkItemState] = WorkItemState.PENDING,
    ) -> List[WorkItem]:
        """Return work items matching every given filter.

        ``case_ref`` matches either the parent case identifier or its name.
        """
        raise NotImplementedError

    def list_objects(self, kind: ObjectKind, limit: Optional[int] = None) -> List[Any]:
        """Return up to ``limit`` objects of ``kind`` (none by default)."""
        return []

    def get_configuration(self) -> Optional[Dict[str, Any]]:
        """Return the platform's system configuration, if exposed."""
        return None

    # -- writes ---------------------------------------------------------
    @abc.abstractmethod
    def save_object(self, obj: Any) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def launch(self, request: LaunchRequest) -> Optional[LaunchResult]:
        raise NotImplementedError

    @abc.abstractmethod
    def process_work_item(self, item: WorkItem) -> None:
        """Signal the engine to resume the case waiting on ``item``."""
        raise NotImplementedError

    @abc.abstractmethod
    def run_task(
        self, definition: TaskDefinition, arguments: Dict[str, Any], result_name: str
    ) -> Optional[TaskResult]:
        """Run ``definition`` synchronously and return its unsaved result."""
        raise NotImplementedError

    @abc.abstractmethod
    def submit_request(self, request: ServerRequest) -> str:
        """Queue ``request`` for asynchronous processing; return its id."""
        raise NotImplementedError
