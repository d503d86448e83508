"""In-memory engine that mimics the platform's observable workflow behaviour.

Definitions are flat scripts of form and approval steps. The simulator keeps
the external contract the automation layers rely on: cases surface work items
one step at a time, form items only advance after an explicit resume,
approval items are picked up by the engine's own check at the start of the
next transaction, and case identifiers can lag behind case names.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field

from ..contracts import (
    ApprovalLine,
    CompletionStatus,
    Decision,
    Identity,
    LaunchRequest,
    LaunchResult,
    ObjectKind,
    ServerRequest,
    TaskDefinition,
    TaskResult,
    TaskSchedule,
    WorkflowCase,
    WorkItem,
    WorkItemKind,
    WorkItemState,
    new_id,
)
from ..errors import EngineError
from .base import WorkflowEngine

logger = logging.getLogger(__name__)


class FormStep(BaseModel):
    """A data-entry step owned by an identity or workgroup."""

    type: Literal["form"] = "form"
    owner: str
    fields: Dict[str, Any] = Field(default_factory=dict)


class ApprovalStep(BaseModel):
    """One sequential approval level."""

    type: Literal["approval"] = "approval"
    owner: str
    lines: List[str] = Field(default_factory=lambda: ["request"])


Step = Annotated[Union[FormStep, ApprovalStep], Field(discriminator="type")]


class WorkflowDefinition(BaseModel):
    """Script the simulator follows for one named workflow."""

    name: str
    steps: List[Step] = Field(default_factory=list)
    reject_terminates: bool = True
    rejection_status: CompletionStatus = CompletionStatus.SUCCESS


class TaskScript(BaseModel):
    """Canned behaviour of one task definition."""

    name: str
    type: str = "Generic"
    executor: Optional[str] = None
    status: CompletionStatus = CompletionStatus.SUCCESS
    attributes: Dict[str, Any] = Field(default_factory=dict)
    messages: List[str] = Field(default_factory=list)
    duration: float = 0.0

    def definition(self) -> TaskDefinition:
        return TaskDefinition(name=self.name, type=self.type, executor=self.executor)


class _Progress(BaseModel):
    step: int = 0
    waiting_on: Optional[str] = None
    resumed: bool = False
    ready_at: float = 0.0


class _Store(BaseModel):
    cases: Dict[str, WorkflowCase] = Field(default_factory=dict)
    items: Dict[str, WorkItem] = Field(default_factory=dict)
    identities: Dict[str, Identity] = Field(default_factory=dict)
    requests: Dict[str, ServerRequest] = Field(default_factory=dict)
    progress: Dict[str, _Progress] = Field(default_factory=dict)
    task_definitions: Dict[str, TaskDefinition] = Field(default_factory=dict)
    task_results: Dict[str, TaskResult] = Field(default_factory=dict)
    task_schedules: Dict[str, TaskSchedule] = Field(default_factory=dict)
    task_due: Dict[str, float] = Field(default_factory=dict)


def load_definitions(path: str) -> List[WorkflowDefinition]:
    """Load workflow definitions from a YAML file.

    The file holds either a list of definitions or a mapping with a
    ``workflows`` key.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("workflows", [])
    return [WorkflowDefinition.model_validate(entry) for entry in data]


def load_tasks(path: str) -> List[TaskScript]:
    """Load task scripts from the ``tasks`` key of a definitions file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return []
    return [TaskScript.model_validate(entry) for entry in data.get("tasks", [])]


class InMemoryEngine(WorkflowEngine):
    """Simulated platform handle for tests and rehearsals."""

    name = "inmemory"

    def __init__(
        self,
        definitions: Optional[List[WorkflowDefinition]] = None,
        identities: Optional[List[Identity]] = None,
        tasks: Optional[List[TaskScript]] = None,
        materialize_delay: float = 0.0,
        lazy_case_ids: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._task_scripts: Dict[str, TaskScript] = {}
        self._store = _Store()
        self._snapshot: Optional[_Store] = None
        self._attached: Dict[Tuple[ObjectKind, str], Any] = {}
        self._touched: set[Tuple[ObjectKind, str]] = set()
        self._failures: Counter = Counter()
        self._txn = 0
        self._clock = clock
        self.materialize_delay = materialize_delay
        self.lazy_case_ids = lazy_case_ids
        self.journal: List[Tuple[str, int]] = []
        self.lookups: Counter = Counter()
        self.closed = False

        for definition in definitions or []:
            self.register_workflow(definition)
        for identity in identities or []:
            self.add_identity(identity)
        for script in tasks or []:
            self.register_task(script)
        self.add_identity(Identity(name="spadmin", display_name="Administrator"))

    # ------------------------------------------------------------------
    # Setup helpers
    def register_workflow(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.name] = definition

    def add_identity(self, identity: Identity) -> None:
        self._store.identities[identity.name] = identity

    def register_task(self, script: TaskScript) -> None:
        self._task_scripts[script.name] = script
        self._store.task_definitions[script.name] = script.definition()

    def inject_failure(self, method: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``EngineError``."""
        self._failures[method] += times

    def complete_externally(self, case_name: str, status: CompletionStatus) -> None:
        """Complete a case behind the handle's back, as another process would."""
        self._store.cases[case_name].mark_completed(status)
        self._store.progress.pop(case_name, None)

    @property
    def in_transaction(self) -> bool:
        return self._snapshot is not None

    # ------------------------------------------------------------------
    # Transactions
    def start_transaction(self) -> None:
        self._maybe_fail("start_transaction")
        if self._snapshot is not None:
            raise EngineError("a transaction is already open on this handle")
        self._advance_all()
        self._txn += 1
        self._snapshot = self._store.model_copy(deep=True)
        self.journal.append(("begin", self._txn))

    def commit_transaction(self) -> None:
        self._maybe_fail("commit_transaction")
        self._snapshot = None
        self._touched.clear()
        self.journal.append(("commit", self._txn))

    def rollback_transaction(self) -> None:
        if self._snapshot is not None:
            self._store = self._snapshot
            self._snapshot = None
        for key in self._touched:
            self._attached.pop(key, None)
        self._touched.clear()
        self.journal.append(("rollback", self._txn))

    def decache(self) -> None:
        self._attached.clear()

    def close(self) -> None:
        self.decache()
        self.closed = True

    # ------------------------------------------------------------------
    # Reads
    def get_object_by_id(self, kind: ObjectKind, object_id: str) -> Optional[Any]:
        self._maybe_fail("get_object_by_id")
        self.lookups[kind] += 1
        key = self._key_for_id(kind, object_id)
        return self._attach(kind, key) if key is not None else None

    def get_object_by_name(self, kind: ObjectKind, name: str) -> Optional[Any]:
        self._maybe_fail("get_object_by_name")
        self.lookups[kind] += 1
        if kind is ObjectKind.WORK_ITEM:
            return self.get_object_by_id(kind, name)
        if name not in self._table(kind):
            return None
        return self._attach(kind, name)

    def count_objects(self, kind: ObjectKind) -> int:
        return len(self._table(kind))

    def query_work_items(
        self,
        case_ref: Optional[str] = None,
        owner: Optional[str] = None,
        kind: Optional[WorkItemKind] = None,
        state: Optional[WorkItemState] = WorkItemState.PENDING,
    ) -> List[WorkItem]:
        self._maybe_fail("query_work_items")
        matches = []
        for item_id, item in self._store.items.items():
            if case_ref is not None and not item.belongs_to(case_ref):
                continue
            if owner is not None and item.owner != owner:
                continue
            if kind is not None and item.kind is not kind:
                continue
            if state is not None and item.state is not state:
                continue
            matches.append(self._attach(ObjectKind.WORK_ITEM, item_id))
        matches.sort(key=lambda i: i.created_at)
        return matches

    def list_objects(self, kind: ObjectKind, limit: Optional[int] = None) -> List[Any]:
        keys = sorted(self._table(kind))
        if limit is not None:
            keys = keys[:limit]
        return [self._attach(kind, key) for key in keys]

    def get_configuration(self) -> Optional[Dict[str, Any]]:
        return {
            "name": "SystemConfiguration",
            "workflows": sorted(self._definitions),
            "tasks": sorted(self._task_scripts),
        }

    # ------------------------------------------------------------------
    # Writes
    def save_object(self, obj: Any) -> None:
        self._maybe_fail("save_object")
        if isinstance(obj, WorkflowCase):
            current = self._store.cases.get(obj.name)
            if current is not None and current.is_complete and not obj.is_complete:
                raise EngineError(f"case {obj.name} cannot return to running")
            self._store.cases[obj.name] = obj.model_copy(deep=True)
            if obj.is_complete:
                self._store.progress.pop(obj.name, None)
            self._touch(ObjectKind.CASE, obj.name)
        elif isinstance(obj, WorkItem):
            current = self._store.items.get(obj.id)
            if current is not None and current.is_finished:
                raise EngineError(f"work item {obj.id} is already finished")
            self._store.items[obj.id] = obj.model_copy(deep=True)
            self._touch(ObjectKind.WORK_ITEM, obj.id)
        elif isinstance(obj, TaskResult):
            self._store.task_results[obj.name] = obj.model_copy(deep=True)
            self._touch(ObjectKind.TASK_RESULT, obj.name)
        elif isinstance(obj, TaskSchedule):
            self._store.task_schedules[obj.name] = obj.model_copy(deep=True)
            self._touch(ObjectKind.TASK_SCHEDULE, obj.name)
        elif isinstance(obj, Identity):
            self._store.identities[obj.name] = obj.model_copy(deep=True)
            self._touch(ObjectKind.IDENTITY, obj.name)
        else:
            raise EngineError(f"cannot save object of type {type(obj).__name__}")

    def launch(self, request: LaunchRequest) -> Optional[LaunchResult]:
        self._maybe_fail("launch")
        definition = self._definitions.get(request.workflow_name)
        if definition is None:
            return LaunchResult(messages=[f"Workflow '{request.workflow_name}' not found"])
        if request.case_name in self._store.cases:
            return LaunchResult(messages=[f"Case name '{request.case_name}' already in use"])

        case = WorkflowCase(
            id=None if self.lazy_case_ids else new_id(),
            name=request.case_name,
            workflow_name=definition.name,
            launcher=request.launcher,
            variables=dict(request.variables),
        )
        self._store.cases[case.name] = case
        self._store.progress[case.name] = _Progress(ready_at=self._clock())
        self._advance_case(case.name)
        logger.debug(f"Simulated launch of {definition.name} as {case.name}")
        return LaunchResult(case=self._attach(ObjectKind.CASE, case.name))

    def process_work_item(self, item: WorkItem) -> None:
        self._maybe_fail("process_work_item")
        stored = self._store.items.get(item.id)
        if stored is None:
            raise EngineError(f"work item {item.id} not found")
        if not stored.is_finished:
            raise EngineError(f"work item {item.id} is not finished")
        case_name = stored.case_name
        progress = self._store.progress.get(case_name)
        if progress is None or progress.waiting_on != stored.id:
            raise EngineError(f"case {case_name} is not waiting on {stored.id}")
        progress.resumed = True
        self._advance_case(case_name)

    def run_task(
        self, definition: TaskDefinition, arguments: Dict[str, Any], result_name: str
    ) -> Optional[TaskResult]:
        self._maybe_fail("run_task")
        script = self._task_scripts.get(definition.name)
        if script is None:
            raise EngineError(f"no executor for task {definition.name}")
        result = TaskResult(
            name=result_name, definition=definition.name, arguments=dict(arguments)
        )
        self._finish_task(result, script)
        return result

    def submit_request(self, request: ServerRequest) -> str:
        self._maybe_fail("submit_request")
        self._store.requests[request.id] = request.model_copy(deep=True)
        return request.id

    # ------------------------------------------------------------------
    # Simulation
    def _advance_all(self) -> None:
        for request in list(self._store.requests.values()):
            if not request.processed:
                self._process_request(request)
        for schedule in self._store.task_schedules.values():
            if not schedule.processed:
                self._start_scheduled_task(schedule)
        for result_name, due in list(self._store.task_due.items()):
            if self._clock() >= due:
                result = self._store.task_results[result_name]
                self._finish_task(result, self._task_scripts[result.definition])
                del self._store.task_due[result_name]
        for case in self._store.cases.values():
            if case.id is None:
                case.id = new_id()
                self._relink_items(case)
        for case_name in list(self._store.progress):
            self._advance_case(case_name)

    def _process_request(self, request: ServerRequest) -> None:
        attributes = dict(request.attributes)
        workflow = attributes.pop("workflow", None)
        launcher = attributes.pop("launcher", "spadmin")
        request.processed = True
        if workflow is None:
            logger.warning(f"Request {request.name} has no workflow attribute")
            return
        result = self.launch(
            LaunchRequest(
                workflow_name=workflow,
                case_name=f"{launcher} - {request.name}",
                launcher=launcher,
                variables=attributes,
            )
        )
        if result is not None and result.case is not None:
            request.case_name = result.case.name

    def _start_scheduled_task(self, schedule: TaskSchedule) -> None:
        schedule.processed = True
        result = TaskResult(
            name=schedule.result_name,
            definition=schedule.definition,
            arguments=dict(schedule.arguments),
        )
        self._store.task_results[result.name] = result
        script = self._task_scripts.get(schedule.definition)
        if script is None:
            result.messages.append(f"No executor for task {schedule.definition}")
            result.mark_completed(CompletionStatus.ERROR)
            return
        self._store.task_due[result.name] = self._clock() + script.duration
        logger.debug(f"Scheduler started {schedule.definition} as {result.name}")

    def _finish_task(self, result: TaskResult, script: TaskScript) -> None:
        result.attributes.update(script.attributes)
        result.messages.extend(script.messages)
        result.mark_completed(script.status)

    def _advance_case(self, case_name: str) -> None:
        case = self._store.cases[case_name]
        definition = self._definitions[case.workflow_name]
        progress = self._store.progress.get(case_name)
        while progress is not None and not case.is_complete:
            if progress.waiting_on is not None:
                item = self._store.items[progress.waiting_on]
                if not item.is_finished:
                    return
                if item.kind is WorkItemKind.FORM:
                    if not progress.resumed:
                        return
                    case.variables.update(item.fields)
                else:
                    rejected = item.decision is Decision.REJECTED or any(
                        line.decision is Decision.REJECTED for line in item.approval_set
                    )
                    case.variables[f"level{item.level}"] = (
                        "rejected" if rejected else "approved"
                    )
                    if rejected and definition.reject_terminates:
                        case.variables["approved"] = False
                        self._finish(case, definition.rejection_status)
                        return
                progress.step += 1
                progress.waiting_on = None
                progress.resumed = False
                progress.ready_at = self._clock() + self.materialize_delay
                continue

            if progress.step >= len(definition.steps):
                case.variables.setdefault("approved", True)
                self._finish(case, CompletionStatus.SUCCESS)
                return
            if self._clock() < progress.ready_at:
                return
            item = self._create_item(case, definition.steps[progress.step], progress.step)
            progress.waiting_on = item.id

    def _create_item(self, case: WorkflowCase, step: Step, index: int) -> WorkItem:
        if isinstance(step, FormStep):
            item = WorkItem(kind=WorkItemKind.FORM, fields=dict(step.fields))
        else:
            level = 1 + sum(
                1
                for s in self._definitions[case.workflow_name].steps[:index]
                if isinstance(s, ApprovalStep)
            )
            item = WorkItem(
                kind=WorkItemKind.APPROVAL,
                level=level,
                approval_set=[ApprovalLine(name=line) for line in step.lines],
            )
        item.owner = step.owner
        item.case_id = case.id
        item.case_name = case.name
        self._store.items[item.id] = item
        logger.debug(f"Case {case.name} produced {item.kind.value} item {item.id}")
        return item

    def _relink_items(self, case: WorkflowCase) -> None:
        for item in self._store.items.values():
            if item.case_name == case.name:
                item.case_id = case.id

    def _finish(self, case: WorkflowCase, status: CompletionStatus) -> None:
        case.mark_completed(status)
        self._store.progress.pop(case.name, None)
        logger.debug(f"Case {case.name} completed with {status.value}")

    # ------------------------------------------------------------------
    # Identity map
    def _table(self, kind: ObjectKind) -> Dict[str, Any]:
        tables = {
            ObjectKind.CASE: self._store.cases,
            ObjectKind.WORK_ITEM: self._store.items,
            ObjectKind.IDENTITY: self._store.identities,
            ObjectKind.REQUEST: self._store.requests,
            ObjectKind.WORKFLOW: self._definitions,
            ObjectKind.TASK_DEFINITION: self._store.task_definitions,
            ObjectKind.TASK_RESULT: self._store.task_results,
            ObjectKind.TASK_SCHEDULE: self._store.task_schedules,
        }
        return tables[kind]

    def _key_for_id(self, kind: ObjectKind, object_id: str) -> Optional[str]:
        if kind is ObjectKind.CASE:
            for name, case in self._store.cases.items():
                if case.id is not None and case.id == object_id:
                    return name
            return None
        return object_id if object_id in self._table(kind) else None

    def _attach(self, kind: ObjectKind, key: str) -> Any:
        attached = self._attached.get((kind, key))
        if attached is None:
            attached = self._table(kind)[key].model_copy(deep=True)
            self._attached[(kind, key)] = attached
        return attached

    def _touch(self, kind: ObjectKind, key: str) -> None:
        self._touched.add((kind, key))
        self._attached.pop((kind, key), None)

    def _maybe_fail(self, method: str) -> None:
        if self._failures[method] > 0:
            self._failures[method] -= 1
            raise EngineError(f"injected failure in {method}")
