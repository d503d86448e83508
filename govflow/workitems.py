"""Discovery and completion of work items generated by running cases."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import (
    Decision,
    ObjectKind,
    Outcome,
    WorkItem,
    WorkItemKind,
    WorkItemState,
)
from .engines import WorkflowEngine
from .errors import GovflowError, WrongItemKind
from .session import SessionManager
from .utils.polling import poll_until

logger = logging.getLogger(__name__)

FORM_COMMENTS = "Completed programmatically"
APPROVE_COMMENTS = "Approved programmatically"
REJECT_COMMENTS = "Rejected programmatically"


class WorkItemService:
    """Finds pending work items and drives them to completion.

    Lookups report "not found" as ``None``/``[]`` and mutations report
    failure as ``False``; details go to the log.
    """

    def __init__(self, session: SessionManager) -> None:
        self._session = session

    @property
    def poll_interval(self) -> float:
        return self._session.config.polling.work_item_interval

    # ------------------------------------------------------------------
    # Discovery
    def find_by_case(self, case_ref: str) -> List[WorkItem]:
        """Pending items whose case identifier or case name equals ``case_ref``."""
        items = self._query(case_ref=case_ref)
        if items:
            logger.debug(f"Found {len(items)} work items for workflow {case_ref}")
            for item in items:
                logger.debug(f"  - {item.id} ({item.kind.value}, owner={item.owner})")
        else:
            logger.debug(f"No work items found for workflow {case_ref}")
        return items

    def find_by_owner(self, owner: str) -> List[WorkItem]:
        items = self._query(owner=owner)
        logger.debug(f"Found {len(items)} work items for owner {owner}")
        return items

    def _query(self, **filters: Any) -> List[WorkItem]:
        try:
            items = self._session.execute(
                lambda engine: engine.query_work_items(
                    state=WorkItemState.PENDING, **filters
                ),
                commit=False,
                name="query_work_items",
            )
        except GovflowError as e:
            logger.error(f"Error querying work items {filters}: {e}")
            return []
        return list(items or [])

    def get_work_item(self, item_id: str) -> Optional[WorkItem]:
        try:
            item = self._session.execute(
                lambda engine: engine.get_object_by_id(ObjectKind.WORK_ITEM, item_id),
                commit=False,
                name="get_work_item",
            )
        except GovflowError as e:
            logger.error(f"Error getting work item {item_id}: {e}")
            return None
        if item is None:
            logger.debug(f"Work item not found: {item_id}")
        return item

    def form_items(self, case_ref: str) -> List[WorkItem]:
        return [i for i in self.find_by_case(case_ref) if i.kind is WorkItemKind.FORM]

    def approval_items(self, case_ref: str) -> List[WorkItem]:
        return [i for i in self.find_by_case(case_ref) if i.kind is WorkItemKind.APPROVAL]

    def has_pending_approvals(self, case_ref: str) -> bool:
        return bool(self.approval_items(case_ref))

    def completed_approval_count(self, case_ref: str) -> int:
        """Number of finished approval items of the case."""
        try:
            items = self._session.execute(
                lambda engine: engine.query_work_items(
                    case_ref=case_ref,
                    kind=WorkItemKind.APPROVAL,
                    state=WorkItemState.FINISHED,
                ),
                commit=False,
                name="completed_approval_count",
            )
        except GovflowError as e:
            logger.error(f"Error counting completed approvals for {case_ref}: {e}")
            return 0
        return len(items or [])

    def wait_for(
        self, case_ref: str, kind: WorkItemKind, timeout: float
    ) -> Optional[WorkItem]:
        """Wait for a pending item of ``kind``; ``None`` when none appeared."""
        return self.wait_for_outcome(case_ref, kind, timeout).value

    def wait_for_outcome(
        self, case_ref: str, kind: WorkItemKind, timeout: float
    ) -> Outcome[WorkItem]:
        logger.debug(f"Waiting for {kind.value} work item for {case_ref} (max {timeout}s)")

        def probe() -> Optional[WorkItem]:
            for item in self.find_by_case(case_ref):
                if item.kind is kind:
                    return item
            return None

        outcome = poll_until(
            probe,
            lambda item: item is not None,
            timeout=timeout,
            interval=self.poll_interval,
        )
        if outcome.satisfied:
            logger.debug(f"Found {kind.value} work item: {outcome.value.id}")
            return Outcome.success(outcome.value)
        logger.warning(f"Timeout waiting for {kind.value} work item for {case_ref}")
        return Outcome.timed_out(reason=f"no {kind.value} item after {timeout}s")

    # ------------------------------------------------------------------
    # Completion
    def complete_form(self, item_id: str, field_values: Optional[Dict[str, Any]] = None) -> bool:
        """Fill in a form item, finish it and resume the waiting case.

        Finishing the item alone does not advance the case; the explicit
        resume after the commit is what lets the workflow continue.
        """
        logger.info(f"Completing form work item: {item_id}")

        def fill(engine: WorkflowEngine) -> Optional[WorkItem]:
            item = engine.get_object_by_id(ObjectKind.WORK_ITEM, item_id)
            if item is None:
                return None
            if item.kind is not WorkItemKind.FORM:
                raise WrongItemKind(f"work item {item_id} is {item.kind.value}, not Form")
            for key, value in (field_values or {}).items():
                logger.debug(f"  {key}: {value}")
                item.put(key, value)
            item.finish(FORM_COMMENTS)
            engine.save_object(item)
            return item

        try:
            item = self._session.execute(fill, name="complete_form", isolated=False)
            if item is None:
                logger.error(f"Work item not found: {item_id}")
                return False
            self._session.execute(
                lambda engine: engine.process_work_item(item),
                name="resume_work_item",
                isolated=False,
            )
        except GovflowError as e:
            cause = e.__cause__ or e
            logger.error(f"Error completing form work item {item_id}: {cause}")
            return False

        logger.info(f"Form work item {item_id} completed")
        return True

    def complete_form_for_case(
        self, case_ref: str, field_values: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Complete the first pending form item of ``case_ref``."""
        forms = self.form_items(case_ref)
        if not forms:
            logger.warning(f"No form work items found for workflow {case_ref}")
            return False
        return self.complete_form(forms[0].id, field_values)

    def approve(self, item_id: str, comments: Optional[str] = None) -> bool:
        return self._decide(item_id, Decision.APPROVED, comments or APPROVE_COMMENTS)

    def reject(self, item_id: str, comments: Optional[str] = None) -> bool:
        return self._decide(item_id, Decision.REJECTED, comments or REJECT_COMMENTS)

    def _decide(self, item_id: str, decision: Decision, comments: str) -> bool:
        verb = "approve" if decision is Decision.APPROVED else "reject"
        logger.info(f"Attempting to {verb} work item: {item_id}")

        def apply(engine: WorkflowEngine) -> bool:
            item = engine.get_object_by_id(ObjectKind.WORK_ITEM, item_id)
            if item is None:
                return False
            for line in item.approval_set:
                if decision is Decision.APPROVED:
                    line.approve()
                else:
                    line.reject()
                logger.debug(f"  {decision.value} line: {line.name}")
            item.decision = decision
            item.finish(comments)
            engine.save_object(item)
            return True

        try:
            found = self._session.execute(
                apply, name=f"{verb}_work_item", isolated=False
            )
        except GovflowError as e:
            cause = e.__cause__ or e
            logger.error(f"Failed to {verb} work item {item_id}: {cause}")
            return False
        if not found:
            logger.error(f"Work item not found: {item_id}")
            return False
        logger.info(f"Work item {item_id} {decision.value.lower()}")
        return True
