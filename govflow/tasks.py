"""Running platform task definitions, directly or through the scheduler."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts import (
    CompletionStatus,
    ObjectKind,
    TaskDefinition,
    TaskResult,
    TaskSchedule,
)
from .controller import unique_suffix
from .engines import WorkflowEngine
from .errors import GovflowError
from .session import SessionManager
from .utils.polling import poll_until

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs task definitions by name and waits for their results."""

    def __init__(self, session: SessionManager) -> None:
        self._session = session

    @property
    def poll_interval(self) -> float:
        return self._session.config.polling.task_interval

    def execute_task(
        self, task_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Optional[TaskResult]:
        """Run ``task_name`` synchronously and save its result.

        Returns the saved result, or ``None`` when the definition is unknown,
        the engine produced no result or the run failed.
        """
        logger.info(f"Starting direct execution of task {task_name}")
        definition = self._definition(task_name)
        if definition is None:
            return None
        logger.debug(f"Task {definition.name}: type={definition.type}, executor={definition.executor}")

        result_name = f"{task_name}_Result_{unique_suffix()}"

        def run(engine: WorkflowEngine) -> Optional[TaskResult]:
            result = engine.run_task(definition, dict(arguments or {}), result_name)
            if result is not None:
                engine.save_object(result)
            return result

        try:
            result = self._session.execute(run, name="execute_task", isolated=False)
        except GovflowError as e:
            logger.error(f"Error executing task {task_name}: {e}")
            return None
        if result is None:
            logger.error(f"Task {task_name} returned no result")
            return None

        self._log_result(result)
        return result

    def schedule_task(
        self, task_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Optional[TaskSchedule]:
        """Queue ``task_name`` for the platform scheduler.

        The returned schedule names the result to poll for with
        :meth:`poll_for_result`.
        """
        logger.info(f"Scheduling task {task_name} for asynchronous execution")
        definition = self._definition(task_name)
        if definition is None:
            return None

        suffix = unique_suffix()
        schedule = TaskSchedule(
            name=f"{task_name}_Schedule_{suffix}",
            definition=definition.name,
            arguments=dict(arguments or {}),
            result_name=f"{task_name}_Result_{suffix}",
        )
        try:
            self._session.execute(
                lambda engine: engine.save_object(schedule),
                name="schedule_task",
                isolated=False,
            )
        except GovflowError as e:
            logger.error(f"Error scheduling task {task_name}: {e}")
            return None
        logger.info(f"Task scheduled as {schedule.name}; result will be {schedule.result_name}")
        return schedule

    def get_result(self, result_name: str) -> Optional[TaskResult]:
        try:
            return self._session.execute(
                lambda engine: engine.get_object_by_name(ObjectKind.TASK_RESULT, result_name),
                commit=False,
                name="get_task_result",
            )
        except GovflowError as e:
            logger.error(f"Error getting task result {result_name}: {e}")
            return None

    def poll_for_result(self, result_name: str, timeout: float) -> Optional[TaskResult]:
        """Wait for ``result_name`` to exist and complete; ``None`` on timeout."""
        logger.info(f"Polling for task result {result_name} (max wait: {timeout}s)")
        outcome = poll_until(
            lambda: self.get_result(result_name),
            lambda result: result is not None and result.is_complete,
            timeout=timeout,
            interval=self.poll_interval,
            before_attempt=self._session.refresh,
        )
        if outcome.satisfied:
            logger.info(f"Task result {result_name} completed after {outcome.attempts} attempts")
            self._log_result(outcome.value)
            return outcome.value
        if outcome.value is None:
            logger.warning(f"Task result {result_name} not found after {timeout}s")
        else:
            logger.warning(f"Task result {result_name} still running after {timeout}s")
        return None

    def _definition(self, task_name: str) -> Optional[TaskDefinition]:
        try:
            definition = self._session.resolve_cached(ObjectKind.TASK_DEFINITION, task_name)
        except GovflowError as e:
            logger.error(f"Error resolving task definition {task_name}: {e}")
            return None
        if definition is None:
            logger.error(f"Task definition not found: {task_name}")
        return definition

    def _log_result(self, result: TaskResult) -> None:
        status = result.completion_status
        if status is CompletionStatus.ERROR:
            logger.error(f"Task result {result.name} completed with errors: {result.messages}")
        elif status is CompletionStatus.WARNING:
            logger.warning(f"Task result {result.name} completed with warnings")
        else:
            logger.info(f"Task result {result.name} completed: {status.value if status else None}")
        for key, value in result.attributes.items():
            logger.debug(f"  {key}: {value}")
