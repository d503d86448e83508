"""Workflow controller: launch, observe and cancel workflow cases."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

from .contracts import (
    CompletionStatus,
    LaunchRequest,
    ObjectKind,
    Outcome,
    OutcomeKind,
    ServerRequest,
    WorkflowCase,
)
from .engines import WorkflowEngine
from .errors import GovflowError
from .session import SessionManager
from .utils.polling import poll_until

logger = logging.getLogger(__name__)

_suffix_lock = threading.Lock()
_last_suffix = 0


def unique_suffix() -> int:
    """Millisecond timestamp that never repeats within this process."""
    global _last_suffix
    with _suffix_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_suffix:
            candidate = _last_suffix + 1
        _last_suffix = candidate
        return candidate


class WorkflowController:
    """Launches workflows and tracks their cases through the session."""

    def __init__(self, session: SessionManager) -> None:
        self._session = session

    @property
    def poll_interval(self) -> float:
        return self._session.config.polling.case_interval

    def launch(
        self,
        workflow_name: str,
        actor: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Launch ``workflow_name`` as ``actor``.

        Returns:
            The case name, which is unique and usable as a case reference
            even before the engine assigns an identifier. ``None`` when the
            engine rejects the launch or returns no case.
        """
        launcher = actor or self._session.config.admin_identity
        request = LaunchRequest(
            workflow_name=workflow_name,
            case_name=f"{launcher} - {unique_suffix()}",
            launcher=launcher,
            variables=variables or {},
        )
        logger.info(f"Launching workflow {workflow_name} as {launcher}")
        for key, value in request.variables.items():
            logger.debug(f"  {key}: {value}")

        try:
            result = self._session.execute(
                lambda engine: engine.launch(request), name="launch", isolated=False
            )
        except GovflowError as e:
            logger.error(f"Error launching workflow {workflow_name}: {e}")
            return None

        if result is None:
            logger.error(f"Launch of {workflow_name} returned nothing")
            return None
        if result.case is None:
            logger.error(
                f"Launch of {workflow_name} returned no case: {'; '.join(result.messages)}"
            )
            return None

        case = result.case
        logger.info(f"Workflow launched: case={case.name} id={case.id}")
        if case.is_complete:
            logger.warning(
                f"Case {case.name} completed immediately with {case.completion_status.value}"
            )
        return case.name

    def schedule_launch(
        self,
        workflow_name: str,
        actor: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Queue a launch for the engine to process on its own schedule.

        Returns the request id, or ``None`` when queuing failed.
        """
        launcher = actor or self._session.config.admin_identity
        attributes: Dict[str, Any] = {"workflow": workflow_name, "launcher": launcher}
        attributes.update(variables or {})
        request = ServerRequest(
            name=f"Launch-{workflow_name}-{unique_suffix()}", attributes=attributes
        )
        try:
            request_id = self._session.execute(
                lambda engine: engine.submit_request(request),
                name="schedule_launch",
                isolated=False,
            )
        except GovflowError as e:
            logger.error(f"Error queuing launch request for {workflow_name}: {e}")
            return None
        logger.info(f"Launch request {request.name} queued as {request_id}")
        return request_id

    def get_case(self, case_ref: str) -> Optional[WorkflowCase]:
        """Look a case up by identifier, then by name."""
        outcome = self.find_case(case_ref)
        return outcome.value if outcome.ok else None

    def find_case(self, case_ref: str) -> Outcome[WorkflowCase]:
        """Like :meth:`get_case` but keeps "absent" and "failed" apart."""

        def lookup(engine: WorkflowEngine) -> Optional[WorkflowCase]:
            case = engine.get_object_by_id(ObjectKind.CASE, case_ref)
            if case is None:
                case = engine.get_object_by_name(ObjectKind.CASE, case_ref)
            return case

        try:
            case = self._session.execute(lookup, commit=False, name="get_case")
        except GovflowError as e:
            logger.error(f"Error getting workflow case {case_ref}: {e}")
            return Outcome.failed(str(e))
        if case is None:
            logger.debug(f"Workflow case not found by id or name: {case_ref}")
            return Outcome.not_found(case_ref)
        return Outcome.success(case)

    def get_status(self, case_ref: str) -> str:
        """Return the status value, ``Unknown`` while running, ``Not Found`` or ``Error``."""
        outcome = self.find_case(case_ref)
        if outcome.ok:
            status = outcome.value.completion_status
            return status.value if status is not None else "Unknown"
        if outcome.kind is OutcomeKind.NOT_FOUND:
            logger.warning(f"Workflow case not found: {case_ref}")
            return "Not Found"
        return "Error"

    def wait_for_completion(self, case_ref: str, timeout: float) -> Optional[WorkflowCase]:
        """Poll until the case has a completion status or ``timeout`` elapses.

        A timeout is not a failure: the last observed case is returned and the
        caller inspects ``completion_status``. ``None`` means the case could
        not be found.
        """
        logger.info(f"Waiting for workflow {case_ref} to complete (timeout: {timeout}s)")
        lost = False

        def probe() -> Optional[WorkflowCase]:
            nonlocal lost
            case = self.get_case(case_ref)
            lost = case is None
            return case

        outcome = poll_until(
            probe,
            lambda case: case is None or case.is_complete,
            timeout=timeout,
            interval=self.poll_interval,
            before_attempt=self._session.refresh,
        )
        if lost:
            logger.error(f"Workflow case not found: {case_ref}")
            return None
        case = outcome.value
        if outcome.satisfied:
            logger.info(f"Workflow completed with status: {case.completion_status.value}")
        else:
            logger.warning(f"Workflow {case_ref} still running after {timeout}s")
        return case

    def cancel(self, case_ref: str) -> bool:
        """Force the case to ``Terminated`` and commit."""
        logger.info(f"Cancelling workflow: {case_ref}")

        def terminate(engine: WorkflowEngine) -> bool:
            case = engine.get_object_by_id(ObjectKind.CASE, case_ref)
            if case is None:
                case = engine.get_object_by_name(ObjectKind.CASE, case_ref)
            if case is None:
                return False
            case.mark_completed(CompletionStatus.TERMINATED)
            engine.save_object(case)
            return True

        try:
            cancelled = self._session.execute(terminate, name="cancel", isolated=False)
        except GovflowError as e:
            logger.error(f"Error cancelling workflow {case_ref}: {e}")
            return False
        if not cancelled:
            logger.error(f"Workflow case not found: {case_ref}")
            return False
        logger.info(f"Workflow {case_ref} cancelled")
        return True
