"""Automation of sequential multi-level approval chains."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .contracts import (
    ApprovalResult,
    ApprovalRun,
    Decision,
    Identity,
    ObjectKind,
    RunStatus,
    WorkItem,
    WorkItemKind,
)
from .errors import GovflowError
from .session import SessionManager
from .workitems import WorkItemService

logger = logging.getLogger(__name__)

UNKNOWN_OWNER = "Unknown"


class ApprovalAutomation:
    """Drives approval levels one at a time until the chain runs dry.

    Each level waits for the next pending approval item, decides it, then
    pauses for the settle interval so the engine can surface the next
    level. A level that never appears ends the run successfully; a failed
    decision aborts it.
    """

    def __init__(
        self,
        session: SessionManager,
        work_items: Optional[WorkItemService] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._work_items = work_items or WorkItemService(session)
        self._sleep = sleep
        self._clock = clock

    @property
    def settle_interval(self) -> float:
        return self._session.config.polling.settle_interval

    def handle_all_approvals(
        self,
        case_ref: str,
        per_level_timeout: Optional[float] = None,
        max_levels: Optional[int] = None,
        comments: Optional[str] = None,
        overall_timeout: Optional[float] = None,
    ) -> int:
        """Approve every level; return the number approved or ``-1`` on failure."""
        return self.run(
            case_ref,
            Decision.APPROVED,
            per_level_timeout=per_level_timeout,
            max_levels=max_levels,
            comments=comments,
            overall_timeout=overall_timeout,
        ).count

    def handle_all_rejections(
        self,
        case_ref: str,
        per_level_timeout: Optional[float] = None,
        max_levels: Optional[int] = None,
        comments: Optional[str] = None,
        overall_timeout: Optional[float] = None,
    ) -> int:
        """Reject the first level that appears; return ``1``, ``0`` or ``-1``."""
        return self.run(
            case_ref,
            Decision.REJECTED,
            per_level_timeout=per_level_timeout,
            max_levels=max_levels,
            comments=comments,
            overall_timeout=overall_timeout,
        ).count

    def run(
        self,
        case_ref: str,
        decision: Decision,
        per_level_timeout: Optional[float] = None,
        max_levels: Optional[int] = None,
        comments: Optional[str] = None,
        overall_timeout: Optional[float] = None,
    ) -> ApprovalRun:
        """Process approval levels for ``case_ref`` and return the result set.

        Args:
            case_ref: Case identifier or name.
            decision: Whether to approve or reject each level.
            per_level_timeout: Seconds to wait for each level to appear.
            max_levels: Safety limit on the number of levels handled.
            comments: Comments for every decision; defaults name the level.
            overall_timeout: Budget for the whole run. Defaults to
                ``max_levels * per_level_timeout``.
        """
        polling = self._session.config.polling
        per_level_timeout = (
            polling.work_item_timeout if per_level_timeout is None else per_level_timeout
        )
        max_levels = polling.max_approval_levels if max_levels is None else max_levels
        budget = max_levels * per_level_timeout if overall_timeout is None else overall_timeout
        verb = "approval" if decision is Decision.APPROVED else "rejection"

        logger.info(
            f"Starting automatic {verb} handling for {case_ref} "
            f"(per level: {per_level_timeout}s, max levels: {max_levels})"
        )
        run = ApprovalRun(case_ref=case_ref, decision=decision)
        started = self._clock()

        try:
            for level in range(1, max_levels + 1):
                if self._clock() - started >= budget:
                    run.status = RunStatus.PARTIAL
                    run.reason = "overall timeout"
                    logger.warning(
                        f"Overall timeout reached after {run.processed} {verb}s"
                    )
                    break

                logger.info(f"Checking for approval level {level}")
                item = self._work_items.wait_for(
                    case_ref, WorkItemKind.APPROVAL, per_level_timeout
                )
                if item is None:
                    logger.info(f"No more approval work items after {run.processed} levels")
                    break

                result = self._decide(item, level, decision, comments)
                run.results.append(result)
                if not result.success:
                    run.status = RunStatus.FAILED
                    run.reason = result.error_message
                    logger.error(f"Failed {verb} at level {level}; stopping the chain")
                    return run

                if decision is Decision.REJECTED:
                    self._check_chain_ended(case_ref, level)
                    break

                logger.debug("Waiting for the engine to surface the next level")
                self._sleep(self.settle_interval)
            else:
                if max_levels > 0:
                    run.status = RunStatus.PARTIAL
                    run.reason = "max levels reached"
                    logger.warning(f"Stopped after reaching {max_levels} levels")
        except GovflowError as e:
            logger.exception(f"Error during automatic {verb} handling: {e}")
            run.status = RunStatus.FAILED
            run.reason = str(e)
            return run

        logger.info(f"Automatic {verb} handling finished: {run.processed} processed")
        return run

    def approve_single_level(
        self, case_ref: str, level: int, timeout: Optional[float] = None
    ) -> Optional[ApprovalResult]:
        """Approve one level; ``None`` when no approval item appeared in time."""
        if timeout is None:
            timeout = self._session.config.polling.work_item_timeout
        logger.info(f"Approval level {level}: waiting for work item")
        item = self._work_items.wait_for(case_ref, WorkItemKind.APPROVAL, timeout)
        if item is None:
            logger.info(f"No approval work item found at level {level}")
            return None
        result = self._decide(item, level, Decision.APPROVED, None)
        if result.success:
            logger.info(f"Level {level} approved by {result.approver_name}")
        else:
            logger.error(f"Level {level} approval failed")
        return result

    def _decide(
        self, item: WorkItem, level: int, decision: Decision, comments: Optional[str]
    ) -> ApprovalResult:
        owner = self._owner_name(item)
        logger.info(f"Found approval work item {item.id} at level {level} (owner: {owner})")
        if decision is Decision.APPROVED:
            text = comments or f"Approved automatically - Level {level}"
            ok = self._work_items.approve(item.id, text)
        else:
            text = comments or f"Rejected automatically - Level {level}"
            ok = self._work_items.reject(item.id, text)
        return ApprovalResult(
            level=level,
            approver_name=owner,
            work_item_id=item.id,
            success=ok,
            error_message=None if ok else f"{decision.value} operation failed",
        )

    def _owner_name(self, item: WorkItem) -> str:
        if not item.owner:
            return UNKNOWN_OWNER
        try:
            identity = self._session.resolve_cached(ObjectKind.IDENTITY, item.owner)
        except GovflowError as e:
            logger.debug(f"Could not resolve owner {item.owner}: {e}")
            return item.owner
        if isinstance(identity, Identity) and identity.display_name:
            logger.debug(f"Owner {item.owner} is {identity.display_name}")
        return item.owner

    def _check_chain_ended(self, case_ref: str, level: int) -> None:
        # Rejection is assumed to end the chain; only report when it does not.
        self._sleep(self.settle_interval)
        if self._work_items.has_pending_approvals(case_ref):
            logger.warning(
                f"Engine produced another approval level after rejecting level {level}"
            )
