"""Serialized integration of finished worker branches.

One merge is in flight per project; the rest wait in FIFO order. A request
leaves the coordinator when the merger agent reports a result for its branch,
or is abandoned as failed once the merger can no longer be reached.
"""

import logging
from collections import deque
from collections.abc import Callable
from pathlib import Path

from constellation.core.events import MERGE_ENQUEUED, MERGE_RESOLVED, MERGE_STARTED
from constellation.core.prompts import build_merge_instruction
from constellation.core.scheduler import InvalidTransitionError, TaskScheduler
from constellation.core.worktrees import WorktreeManager
from constellation.db.models import (
    ABANDONED,
    SUCCESS,
    MergeRequest,
    MergeResult,
    OrchestrationEvent,
)

logger = logging.getLogger(__name__)


class MergeDeliveryError(Exception):
    """A merge instruction could not reach the merger."""


class MergeCoordinator:
    def __init__(
        self,
        project_id: str,
        root: str | Path,
        scheduler: TaskScheduler,
        worktrees: WorktreeManager,
        send: Callable[[str], None],
        emit: Callable[[OrchestrationEvent], None],
    ):
        self.project_id = project_id
        self.root = Path(root)
        self.scheduler = scheduler
        self.worktrees = worktrees
        self.send = send
        self.emit = emit
        self.conflicts: dict[str, str | None] = {}
        self.abandoned: dict[str, str] = {}
        self._queue: deque[MergeRequest] = deque()
        self._in_flight: MergeRequest | None = None

    @property
    def in_flight(self) -> MergeRequest | None:
        return self._in_flight

    @property
    def pending(self) -> list[MergeRequest]:
        return list(self._queue)

    @property
    def is_idle(self) -> bool:
        return self._in_flight is None

    def has_work(self) -> bool:
        return self._in_flight is not None or bool(self._queue)

    def enqueue(self, request: MergeRequest) -> None:
        self._queue.append(request)
        self._emit(
            MERGE_ENQUEUED,
            request,
            f"Queued {request.branch} ({len(self._queue)} waiting)",
            position=len(self._queue),
        )
        if self.is_idle:
            self._start_next()

    def resolve(self, result: MergeResult) -> MergeRequest | None:
        """Apply a merge result reported by the merger.

        Results with no merge in flight, or for a different branch, are
        ignored. Returns the resolved request.
        """
        request = self._in_flight
        if request is None:
            logger.warning("Merge result for %s with no merge in flight, ignoring", result.branch)
            return None
        if result.branch != request.branch:
            logger.warning(
                "Merge result for %s does not match in-flight %s, ignoring",
                result.branch, request.branch,
            )
            return None

        ordinal = self._ordinal_for(request)
        if result.outcome == SUCCESS:
            self._transition(ordinal, self.scheduler.mark_done)
            if request.agent_id:
                self.worktrees.remove(request.agent_id, self.root, delete_branch=True)
            message = f"Merged {request.branch}"
        else:
            self.conflicts[request.branch] = result.details
            self._transition(ordinal, self.scheduler.mark_failed)
            message = f"Conflict merging {request.branch}: {result.details or 'no details'}"

        self._in_flight = None
        self._emit(
            MERGE_RESOLVED, request, message,
            outcome=result.outcome, details=result.details,
        )
        self._start_next()
        return request

    def discard(self, agent_id: str) -> list[MergeRequest]:
        """Drop queued (not in-flight) requests from one agent."""
        dropped = [r for r in self._queue if r.agent_id == agent_id]
        self._queue = deque(r for r in self._queue if r.agent_id != agent_id)
        return dropped

    def drop_pending(self) -> list[MergeRequest]:
        dropped = list(self._queue)
        self._queue.clear()
        return dropped

    def abandon(self, reason: str) -> list[MergeRequest]:
        """Fail the in-flight merge and every queued one.

        Used once no merger is left to report results. Branches and
        worktrees are kept. Returns the abandoned requests.
        """
        requests = ([self._in_flight] if self._in_flight else []) + list(self._queue)
        self._in_flight = None
        self._queue.clear()
        for request in requests:
            self._fail(request, reason)
        return requests

    def _start_next(self):
        while self._in_flight is None and self._queue:
            request = self._queue.popleft()
            self._in_flight = request
            self._emit(MERGE_STARTED, request, f"Merging {request.branch}")
            try:
                self.send(build_merge_instruction(request.branch, request.task_title))
            except MergeDeliveryError as e:
                logger.error("Merge instruction for %s not delivered: %s", request.branch, e)
                self._in_flight = None
                self._fail(request, str(e))

    def _fail(self, request: MergeRequest, reason: str) -> None:
        self.abandoned[request.branch] = reason
        self._transition(self._ordinal_for(request), self.scheduler.mark_failed)
        self._emit(
            MERGE_RESOLVED, request, f"Merge of {request.branch} abandoned: {reason}",
            outcome=ABANDONED, details=reason,
        )

    def _ordinal_for(self, request: MergeRequest) -> int | None:
        if request.task_ordinal is not None:
            return request.task_ordinal
        task = self.scheduler.find_by_branch(request.branch)
        return task.ordinal if task else None

    def _transition(self, ordinal: int | None, mark: Callable) -> None:
        if ordinal is None:
            logger.warning("No task found for merged branch, scheduler not updated")
            return
        try:
            mark(ordinal)
        except InvalidTransitionError as e:
            logger.warning("Merge result not applied to task %s: %s", ordinal, e)

    def _emit(self, event_type: str, request: MergeRequest, message: str, **data):
        self.emit(
            OrchestrationEvent(
                event_type=event_type,
                project_id=self.project_id,
                task_ordinal=request.task_ordinal,
                agent_id=request.agent_id,
                branch=request.branch,
                message=message,
                data=data,
            )
        )
