"""Task dependency scheduling for a single plan.

Tasks are identified by their 1-based position in the plan. Status moves
pending -> ready -> dispatched -> done | failed and nothing else. A failed
task never releases its dependents: they stay pending until an operator
steps in, and the orchestrator reports the plan as stalled.
"""

import logging
from collections import deque
from collections.abc import Callable

from constellation.db.models import (
    DISPATCHED,
    DONE,
    FAILED,
    PENDING,
    READY,
    PlanEntry,
    PlanTask,
)

logger = logging.getLogger(__name__)

TransitionListener = Callable[[PlanTask, str, str], None]


class PlanError(Exception):
    """Base class for plans that cannot be accepted."""


class ValidationError(PlanError):
    """A dependency refers to a task that does not exist."""


class CycleError(PlanError):
    """The dependency graph is not acyclic."""


class InvalidTransitionError(Exception):
    """A status change was requested from the wrong state."""


class TaskScheduler:
    def __init__(self, on_transition: TransitionListener | None = None):
        self._tasks: dict[int, PlanTask] = {}
        self._dependents: dict[int, list[int]] = {}
        self._unmet: dict[int, int] = {}
        self.on_transition = on_transition

    # ── Loading ──────────────────────────────────────────────────────────

    def load_plan(self, entries: list[PlanEntry]) -> list[PlanTask]:
        """Validate a parsed plan and replace the current task set with it."""
        count = len(entries)
        deps_by_task = {
            idx: tuple(sorted(set(entry.dependencies)))
            for idx, entry in enumerate(entries, start=1)
        }

        out_of_range = [
            f"task {idx} depends on {dep}"
            for idx, deps in deps_by_task.items()
            for dep in deps
            if not 1 <= dep <= count
        ]
        if out_of_range:
            raise ValidationError(
                f"Dependencies out of range 1..{count}: " + "; ".join(out_of_range)
            )

        self_refs = [idx for idx, deps in deps_by_task.items() if idx in deps]
        if self_refs:
            raise CycleError(
                "Tasks depend on themselves: " + ", ".join(str(i) for i in self_refs)
            )

        dependents: dict[int, list[int]] = {idx: [] for idx in deps_by_task}
        for idx, deps in deps_by_task.items():
            for dep in deps:
                dependents[dep].append(idx)

        cyclic = _find_cycle_members(deps_by_task, dependents)
        if cyclic:
            raise CycleError(
                "Dependency cycle among tasks: " + ", ".join(str(i) for i in cyclic)
            )

        self._tasks = {
            idx: PlanTask(
                ordinal=idx,
                title=entry.title,
                description=entry.description,
                dependencies=deps_by_task[idx],
                status=READY if not deps_by_task[idx] else PENDING,
            )
            for idx, entry in enumerate(entries, start=1)
        }
        self._dependents = dependents
        self._unmet = {idx: len(deps) for idx, deps in deps_by_task.items()}
        logger.debug("Loaded plan with %d tasks", count)
        return self.tasks

    # ── Transitions ──────────────────────────────────────────────────────

    def mark_dispatched(
        self,
        ordinal: int,
        agent_id: str | None = None,
        branch: str | None = None,
    ) -> PlanTask:
        task = self._require(ordinal, READY, DISPATCHED)
        task.agent_id = agent_id
        task.branch = branch
        self._set(task, DISPATCHED)
        return task

    def mark_done(self, ordinal: int) -> list[PlanTask]:
        """Complete a task. Returns the dependents that just became ready."""
        task = self._require(ordinal, DISPATCHED, DONE)
        self._set(task, DONE)

        promoted = []
        for dep_idx in self._dependents.get(ordinal, []):
            self._unmet[dep_idx] -= 1
            dependent = self._tasks[dep_idx]
            if self._unmet[dep_idx] == 0 and dependent.status == PENDING:
                self._set(dependent, READY)
                promoted.append(dependent)
        return promoted

    def mark_failed(self, ordinal: int) -> PlanTask:
        task = self._require(ordinal, DISPATCHED, FAILED)
        self._set(task, FAILED)
        return task

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def tasks(self) -> list[PlanTask]:
        return [self._tasks[i] for i in sorted(self._tasks)]

    def get(self, ordinal: int) -> PlanTask:
        task = self._tasks.get(ordinal)
        if task is None:
            raise ValueError(f"Task not found: {ordinal}")
        return task

    def find_by_branch(self, branch: str) -> PlanTask | None:
        for task in self.tasks:
            if task.branch == branch:
                return task
        return None

    def next_ready(self) -> list[PlanTask]:
        return [t for t in self.tasks if t.status == READY]

    def is_complete(self) -> bool:
        return bool(self._tasks) and all(t.is_terminal for t in self._tasks.values())

    def counts(self) -> dict[str, int]:
        counts = {PENDING: 0, READY: 0, DISPATCHED: 0, DONE: 0, FAILED: 0}
        for task in self._tasks.values():
            counts[task.status] += 1
        return counts

    def blocked_by_failure(self) -> list[PlanTask]:
        """Pending tasks that can never run because an ancestor failed."""
        blocked: set[int] = set()
        queue = deque(t.ordinal for t in self._tasks.values() if t.status == FAILED)
        while queue:
            for dep_idx in self._dependents.get(queue.popleft(), []):
                if dep_idx not in blocked and self._tasks[dep_idx].status == PENDING:
                    blocked.add(dep_idx)
                    queue.append(dep_idx)
        return [self._tasks[i] for i in sorted(blocked)]

    # ── Internal ─────────────────────────────────────────────────────────

    def _require(self, ordinal: int, expected: str, target: str) -> PlanTask:
        task = self.get(ordinal)
        if task.status != expected:
            raise InvalidTransitionError(
                f"Task {ordinal} cannot move {task.status} -> {target} (must be {expected})"
            )
        return task

    def _set(self, task: PlanTask, status: str) -> None:
        old = task.status
        task.status = status
        if self.on_transition:
            self.on_transition(task, old, status)


def _find_cycle_members(
    deps_by_task: dict[int, tuple[int, ...]],
    dependents: dict[int, list[int]],
) -> list[int]:
    """Kahn's algorithm; returns the tasks left unsorted (empty if acyclic)."""
    indegree = {idx: len(deps) for idx, deps in deps_by_task.items()}
    queue = deque(idx for idx, n in indegree.items() if n == 0)
    while queue:
        idx = queue.popleft()
        for dep_idx in dependents[idx]:
            indegree[dep_idx] -= 1
            if indegree[dep_idx] == 0:
                queue.append(dep_idx)
    return sorted(idx for idx, n in indegree.items() if n > 0)
