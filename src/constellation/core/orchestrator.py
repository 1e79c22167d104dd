"""The orchestration loop.

Reacts to agent lifecycle callbacks from an AgentHost (started, output,
exited) and to operator commands, and advances each project's scheduler and
merge queue. Every decision runs under one re-entrant lock; agents themselves
run in parallel as separate processes.

Phase flow per project:

    initializing -> planning -> reviewing -> executing -> completed
                       |                         |
                       +--------> error <--------+      (abort -> aborted)
"""

import logging
import threading
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from constellation.core import events
from constellation.core.events import EventBus, task_payload
from constellation.core.hosts import AgentHost, AgentHostError
from constellation.core.merges import MergeCoordinator, MergeDeliveryError
from constellation.core.paths import PathValidationError, validate_agent_cwd
from constellation.core.prompts import (
    build_coordinator_prompt,
    build_merger_prompt,
    build_worker_prompt,
)
from constellation.core.protocol import parse_output, render_plan, strip_ansi
from constellation.core.scheduler import InvalidTransitionError, PlanError, TaskScheduler
from constellation.core.worktrees import (
    RepositoryInitError,
    WorktreeCreationError,
    WorktreeManager,
    short_id,
)
from constellation.db.models import (
    COMPLETED,
    COORDINATOR,
    DISPATCHED,
    DONE,
    ERROR,
    FAILED,
    LAUNCHED,
    MERGER,
    RUNNING,
    WORKER,
    Agent,
    MergeRequest,
    OrchestrationEvent,
    PlanEntry,
    PlanTask,
    Project,
)

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 128 * 1024

# Project phases
INITIALIZING = "initializing"
PLANNING = "planning"
REVIEWING = "reviewing"
EXECUTING = "executing"
ABORTED = "aborted"
PHASES = (INITIALIZING, PLANNING, REVIEWING, EXECUTING, COMPLETED, ERROR, ABORTED)
TERMINAL_PHASES = (COMPLETED, ERROR, ABORTED)


class OrchestrationError(Exception):
    """An operator command that does not fit the project's current state."""


@dataclass
class OrchestratedProject:
    project: Project
    scheduler: TaskScheduler
    merges: MergeCoordinator | None = None
    phase: str = INITIALIZING
    coordinator_id: str | None = None
    merger_id: str | None = None
    worker_ids: set[str] = field(default_factory=set)
    max_workers: int | None = None
    plan: list[PlanEntry] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    stalled: bool = False
    error: str | None = None

    @property
    def id(self) -> str:
        return self.project.id

    @property
    def root(self) -> Path:
        return Path(self.project.root_path).resolve()


class Orchestrator:
    def __init__(
        self,
        host: AgentHost,
        worktrees: WorktreeManager | None = None,
        bus: EventBus | None = None,
        max_workers: int | None = None,
        auto_approve: bool = False,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
    ):
        self.host = host
        self.worktrees = worktrees or WorktreeManager()
        self.bus = bus
        self.max_workers = max_workers
        self.auto_approve = auto_approve
        self.buffer_limit = buffer_limit
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._projects: dict[str, OrchestratedProject] = {}
        self._agents: dict[str, Agent] = {}
        self._buffers: dict[str, str] = {}
        host.bind(self.on_started, self.on_output, self.on_exit)

    # ── Operator commands ────────────────────────────────────────────────

    def start(self, project: Project, max_workers: int | None = None) -> OrchestratedProject:
        """Begin orchestrating a project by launching its coordinator."""
        with self._lock:
            if project.id in self._projects:
                raise OrchestrationError(f"Project already orchestrated: {project.id}")
            if not self.worktrees.ensure_repository(project.root_path):
                raise RepositoryInitError(
                    f"Could not initialize a git repository in {project.root_path}"
                )

            state = OrchestratedProject(
                project=project,
                scheduler=TaskScheduler(),
                max_workers=max_workers if max_workers is not None else self.max_workers,
            )
            state.scheduler.on_transition = (
                lambda task, old, new: self._on_transition(state, task, old, new)
            )
            state.merges = MergeCoordinator(
                project.id,
                state.root,
                state.scheduler,
                self.worktrees,
                send=lambda text: self._send_to_merger(state, text),
                emit=self._emit,
            )
            self._projects[project.id] = state
            self._emit_for(state, events.PHASE_CHANGED, f"Phase {INITIALIZING}", phase=INITIALIZING)

            agent_id = uuid.uuid4().hex
            try:
                self._launch(state, agent_id, COORDINATOR, build_coordinator_prompt(project), state.root)
            except (AgentHostError, PathValidationError) as e:
                state.error = f"Coordinator failed to launch: {e}"
                self._set_phase(state, ERROR)
                del self._projects[project.id]
                raise OrchestrationError(state.error) from e
            state.coordinator_id = agent_id
            self._set_phase(state, PLANNING)
            return state

    def approve_plan(self, project_id: str) -> OrchestratedProject:
        """Accept the reviewed plan, launch the merger and dispatch workers."""
        with self._lock:
            state = self._require(project_id)
            if state.phase != REVIEWING:
                raise OrchestrationError(
                    f"Project {project_id} has no plan awaiting approval (phase {state.phase})"
                )
            self._emit_for(
                state, events.PLAN_APPROVED, f"Plan approved ({len(state.plan)} tasks)"
            )
            self._set_phase(state, EXECUTING)

            agent_id = uuid.uuid4().hex
            try:
                self._launch(state, agent_id, MERGER, build_merger_prompt(state.project), state.root)
            except (AgentHostError, PathValidationError) as e:
                state.error = f"Merger failed to launch: {e}"
                self._set_phase(state, ERROR)
                raise OrchestrationError(state.error) from e
            state.merger_id = agent_id

            self._advance(state)
            return state

    def kill_agent(self, agent_id: str) -> Agent:
        """Terminate one agent. A worker's task fails; dependents are left alone."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise OrchestrationError(f"Agent not found: {agent_id}")
            self._stop_agent(agent, ERROR)
            self._buffers.pop(agent_id, None)

            state = self._projects.get(agent.project_id)
            if state is None:
                return agent
            self._emit_for(
                state, events.AGENT_KILLED, f"Killed {agent.role} {short_id(agent_id)}",
                agent_id=agent_id, task_ordinal=agent.task_ordinal, branch=agent.branch,
                role=agent.role,
            )

            if agent.role == WORKER:
                state.worker_ids.discard(agent_id)
                state.merges.discard(agent_id)
                in_flight = state.merges.in_flight
                merging = in_flight is not None and in_flight.agent_id == agent_id
                if not merging:
                    self._fail_worker_task(state, agent, "Worker killed by operator")
            elif agent.role == COORDINATOR and state.phase == PLANNING:
                state.error = "Coordinator killed before producing a plan"
                self._set_phase(state, ERROR)
            elif agent.role == MERGER and state.phase == EXECUTING:
                self._lose_merger(state, "Merger killed by operator")

            self._advance(state)
            return agent

    def abort(self, project_id: str) -> OrchestratedProject:
        """Stop everything for a project and release all of its worktrees."""
        with self._lock:
            state = self._require(project_id)
            for agent in self.agents_for(project_id):
                if agent.is_live:
                    self._stop_agent(agent, ERROR)
            dropped = state.merges.drop_pending()
            if dropped:
                logger.info("Dropped %d queued merges for %s", len(dropped), project_id)
            removed = self.worktrees.cleanup_all(state.root)
            if removed:
                logger.info("Removed %d worktrees for %s", len(removed), project_id)

            state.completed_at = time.time()
            self._set_phase(state, ABORTED)
            del self._projects[project_id]
            for agent_id in [a.id for a in self.agents_for(project_id)]:
                self._agents.pop(agent_id, None)
                self._buffers.pop(agent_id, None)
            return state

    # ── Queries ──────────────────────────────────────────────────────────

    def get(self, project_id: str) -> OrchestratedProject | None:
        with self._lock:
            return self._projects.get(project_id)

    def projects(self) -> list[OrchestratedProject]:
        with self._lock:
            return list(self._projects.values())

    def role_of(self, agent_id: str) -> str | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.role if agent else None

    @property
    def agents(self) -> list[Agent]:
        with self._lock:
            return list(self._agents.values())

    def agents_for(self, project_id: str) -> list[Agent]:
        with self._lock:
            return [a for a in self._agents.values() if a.project_id == project_id]

    def describe(self, project_id: str) -> dict:
        """Plain-dict snapshot of a project's orchestration state."""
        with self._lock:
            state = self._require(project_id)
            in_flight = state.merges.in_flight
            return {
                "project_id": state.id,
                "name": state.project.name,
                "root_path": str(state.root),
                "phase": state.phase,
                "stalled": state.stalled,
                "error": state.error,
                "max_workers": state.max_workers,
                "counts": state.scheduler.counts(),
                "tasks": [task_payload(t) for t in state.scheduler.tasks],
                "agents": [
                    {
                        "id": a.id,
                        "role": a.role,
                        "status": a.status,
                        "task": a.task_ordinal,
                        "branch": a.branch,
                        "cwd": a.cwd,
                        "exit_code": a.exit_code,
                    }
                    for a in self.agents_for(project_id)
                ],
                "merging": in_flight.branch if in_flight else None,
                "merge_queue": [r.branch for r in state.merges.pending],
                "conflicts": dict(state.merges.conflicts),
                "abandoned_merges": dict(state.merges.abandoned),
                "failures": dict(state.failures),
                "started_at": state.started_at,
                "completed_at": state.completed_at,
            }

    def wait_for(
        self,
        state: OrchestratedProject,
        phases: Iterable[str],
        timeout: float | None = None,
        until_stalled: bool = False,
    ) -> bool:
        """Block until the project reaches one of `phases` (or stalls)."""
        phases = tuple(phases)
        with self._changed:
            return self._changed.wait_for(
                lambda: state.phase in phases or (until_stalled and state.stalled),
                timeout,
            )

    # ── Host callbacks ───────────────────────────────────────────────────

    def on_started(self, agent_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent and agent.status == LAUNCHED:
                agent.status = RUNNING

    def on_output(self, agent_id: str, data: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or not agent.is_live:
                return
            state = self._projects.get(agent.project_id)
            if state is None:
                return

            buffer = self._buffers.get(agent_id, "") + data
            if len(buffer) > self.buffer_limit:
                buffer = buffer[-self.buffer_limit:]
            self._buffers[agent_id] = buffer
            text = strip_ansi(buffer)

            if agent.role == COORDINATOR:
                self._handle_coordinator_output(state, agent, text)
            elif agent.role == WORKER:
                self._handle_worker_output(state, agent, text)
            elif agent.role == MERGER:
                self._handle_merger_output(state, agent, text)

            if state.id in self._projects:
                self._advance(state)

    def on_exit(self, agent_id: str, exit_code: int | None) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return
            self._buffers.pop(agent_id, None)
            if not agent.is_live:
                agent.exit_code = exit_code
                return

            agent.status = COMPLETED if exit_code == 0 else ERROR
            agent.exit_code = exit_code
            agent.completed_at = time.time()

            state = self._projects.get(agent.project_id)
            if state is None:
                return
            self._emit_for(
                state, events.AGENT_EXITED,
                f"{agent.role} {short_id(agent_id)} exited with code {exit_code}",
                agent_id=agent_id, task_ordinal=agent.task_ordinal, branch=agent.branch,
                role=agent.role, exit_code=exit_code,
            )

            if agent.role == COORDINATOR:
                if state.phase == PLANNING:
                    state.error = "Coordinator exited without producing a valid plan"
                    self._set_phase(state, ERROR)
            elif agent.role == WORKER:
                state.worker_ids.discard(agent_id)
                if not agent.completion_signaled:
                    if exit_code == 0:
                        logger.info(
                            "Worker %s exited cleanly without signaling, treating as complete",
                            short_id(agent_id),
                        )
                        self._complete_worker(state, agent)
                    else:
                        self._fail_worker_task(
                            state, agent, f"Worker exited with code {exit_code}"
                        )
            elif agent.role == MERGER and state.phase == EXECUTING:
                self._lose_merger(state, f"Merger exited with code {exit_code}")

            self._advance(state)

    # ── Output handling ──────────────────────────────────────────────────

    def _handle_coordinator_output(self, state: OrchestratedProject, agent: Agent, text: str):
        if state.phase != PLANNING:
            return
        parsed = parse_output(text, expect="plan")
        if parsed is None:
            return

        self._buffers[agent.id] = ""
        try:
            tasks = state.scheduler.load_plan(parsed.plan)
        except PlanError as e:
            logger.warning("Plan for %s rejected: %s", state.id, e)
            self._emit_for(
                state, events.PLAN_REJECTED, str(e),
                agent_id=agent.id, error=type(e).__name__,
            )
            return

        state.plan = parsed.plan
        self._emit_for(
            state, events.PLAN_READY, f"Plan with {len(tasks)} tasks ready for review",
            agent_id=agent.id,
            tasks=[task_payload(t) for t in tasks],
            plan=render_plan(parsed.plan),
        )
        self._set_phase(state, REVIEWING)
        if self.auto_approve:
            try:
                self.approve_plan(state.id)
            except OrchestrationError as e:
                logger.error("Automatic approval for %s failed: %s", state.id, e)

    def _handle_worker_output(self, state: OrchestratedProject, agent: Agent, text: str):
        if agent.completion_signaled:
            return
        if parse_output(text, expect="completion"):
            self._buffers[agent.id] = ""
            self._complete_worker(state, agent)

    def _handle_merger_output(self, state: OrchestratedProject, agent: Agent, text: str):
        parsed = parse_output(text, expect="merge")
        if parsed is None:
            return
        self._buffers[agent.id] = ""
        request = state.merges.resolve(parsed.merge)
        if request and request.agent_id:
            self._retire_worker(state, request.agent_id)

    # ── Internal ─────────────────────────────────────────────────────────

    def _complete_worker(self, state: OrchestratedProject, agent: Agent):
        agent.completion_signaled = True
        task = state.scheduler.get(agent.task_ordinal)
        if task.status != DISPATCHED:
            logger.warning(
                "Worker %s signaled completion but task %d is %s",
                short_id(agent.id), task.ordinal, task.status,
            )
            return
        state.merges.enqueue(
            MergeRequest(
                branch=agent.branch,
                task_title=task.title,
                task_ordinal=task.ordinal,
                agent_id=agent.id,
            )
        )

    def _retire_worker(self, state: OrchestratedProject, agent_id: str):
        # Worktree and branch stay for inspection
        worker = self._agents.get(agent_id)
        if worker and worker.is_live:
            self._stop_agent(worker, COMPLETED if worker.completion_signaled else ERROR)
        state.worker_ids.discard(agent_id)

    def _lose_merger(self, state: OrchestratedProject, reason: str):
        abandoned = state.merges.abandon(reason)
        logger.warning(
            "Project %s: %s, %d merges abandoned", state.id, reason, len(abandoned)
        )

    def _merger_live(self, state: OrchestratedProject) -> bool:
        merger = self._agents.get(state.merger_id) if state.merger_id else None
        return merger is not None and merger.is_live

    def _stop_agent(self, agent: Agent, status: str):
        # Status is set first so the host's exit callback sees a finished agent
        if agent.is_live:
            agent.status = status
            agent.completed_at = time.time()
        self.host.terminate(agent.id)

    def _fail_worker_task(self, state: OrchestratedProject, agent: Agent, reason: str):
        task = state.scheduler.get(agent.task_ordinal)
        if task.status == DISPATCHED:
            self._fail_task(state, task.ordinal, reason)
        self._release_worktree(state, agent.id)

    def _fail_task(self, state: OrchestratedProject, ordinal: int, reason: str):
        state.failures[ordinal] = reason
        try:
            state.scheduler.mark_failed(ordinal)
        except InvalidTransitionError as e:
            logger.warning("Could not fail task %d: %s", ordinal, e)

    def _release_worktree(self, state: OrchestratedProject, agent_id: str):
        worktree = self.worktrees.get(agent_id, state.root)
        if worktree is None:
            return
        self.worktrees.remove(agent_id, state.root)
        self._emit_for(
            state, events.WORKTREE_REMOVED, f"Released {worktree.path}",
            agent_id=agent_id, branch=worktree.branch, path=worktree.path,
        )

    def _advance(self, state: OrchestratedProject):
        self._dispatch(state)
        self._check_completion(state)

    def _active_workers(self, state: OrchestratedProject) -> list[Agent]:
        return [
            self._agents[aid] for aid in state.worker_ids
            if self._agents[aid].is_live and not self._agents[aid].completion_signaled
        ]

    def _dispatch(self, state: OrchestratedProject):
        if state.phase != EXECUTING or not self._merger_live(state):
            return
        ready = state.scheduler.next_ready()
        if state.max_workers:
            slots = max(state.max_workers - len(self._active_workers(state)), 0)
            ready = ready[:slots]
        for task in ready:
            self._dispatch_task(state, task)

    def _dispatch_task(self, state: OrchestratedProject, task: PlanTask):
        agent_id = uuid.uuid4().hex
        branch = f"{self.worktrees.branch_prefix}{short_id(agent_id)}"
        state.scheduler.mark_dispatched(task.ordinal, agent_id, branch)

        try:
            worktree = self.worktrees.create(
                state.root, agent_id, base=state.project.default_branch
            )
        except WorktreeCreationError as e:
            logger.error("Task %d: %s", task.ordinal, e)
            self._fail_task(state, task.ordinal, f"Worktree creation failed: {e}")
            return
        self._emit_for(
            state, events.WORKTREE_CREATED, f"Created {worktree.path}",
            task_ordinal=task.ordinal, agent_id=agent_id, branch=worktree.branch,
            path=worktree.path,
        )

        prompt = build_worker_prompt(state.project, task, state.scheduler.tasks, worktree.branch)
        try:
            self._launch(
                state, agent_id, WORKER, prompt, worktree.path,
                task_ordinal=task.ordinal, branch=worktree.branch,
            )
        except (AgentHostError, PathValidationError) as e:
            logger.error("Task %d: worker launch refused: %s", task.ordinal, e)
            self._fail_task(state, task.ordinal, f"Worker launch failed: {e}")
            self._release_worktree(state, agent_id)
            return
        state.worker_ids.add(agent_id)

    def _launch(
        self,
        state: OrchestratedProject,
        agent_id: str,
        role: str,
        prompt: str,
        cwd: str | Path,
        task_ordinal: int | None = None,
        branch: str | None = None,
    ) -> Agent:
        resolved = validate_agent_cwd(cwd, state.root)
        agent = Agent(
            id=agent_id,
            project_id=state.id,
            role=role,
            cwd=str(resolved),
            task_ordinal=task_ordinal,
            branch=branch,
        )
        self._agents[agent_id] = agent
        self._buffers[agent_id] = ""
        try:
            self.host.launch(agent_id, prompt, str(resolved))
        except AgentHostError:
            self._agents.pop(agent_id, None)
            self._buffers.pop(agent_id, None)
            raise
        self._emit_for(
            state, events.AGENT_LAUNCHED, f"Launched {role} {short_id(agent_id)}",
            agent_id=agent_id, task_ordinal=task_ordinal, branch=branch,
            role=role, cwd=str(resolved),
        )
        return agent

    def _check_completion(self, state: OrchestratedProject):
        if state.phase != EXECUTING:
            return
        tasks = state.scheduler.tasks
        if tasks and all(t.status == DONE for t in tasks):
            state.completed_at = time.time()
            self._set_phase(state, COMPLETED)
            for agent_id in (state.merger_id, state.coordinator_id):
                agent = self._agents.get(agent_id) if agent_id else None
                if agent and agent.is_live:
                    self._stop_agent(agent, COMPLETED)
            return

        if state.stalled:
            return
        if self._active_workers(state) or state.merges.has_work():
            return
        merger_live = self._merger_live(state)
        if merger_live and state.scheduler.next_ready():
            return

        failed = [t.ordinal for t in tasks if t.status == FAILED]
        blocked = [t.ordinal for t in state.scheduler.blocked_by_failure()]
        message = f"No progress possible: failed {failed or 'none'}, blocked {blocked or 'none'}"
        if not merger_live:
            message += ", no merger running"
        state.stalled = True
        self._emit_for(
            state, events.STALLED, message,
            failed=failed, blocked=blocked, merger_running=merger_live,
        )
        self._changed.notify_all()

    def _on_transition(self, state: OrchestratedProject, task: PlanTask, old: str, new: str):
        message = state.failures.get(task.ordinal) if new == FAILED else None
        if new == FAILED and message is None and task.branch in state.merges.conflicts:
            message = f"Merge conflict: {state.merges.conflicts[task.branch] or 'no details'}"
        elif new == FAILED and message is None and task.branch in state.merges.abandoned:
            message = f"Merge abandoned: {state.merges.abandoned[task.branch]}"
        self._emit_for(
            state, f"task-{new}", message or f"Task {task.ordinal} {old} -> {new}",
            task_ordinal=task.ordinal, agent_id=task.agent_id, branch=task.branch,
            task=task_payload(task), **{"from": old},
        )
        if new == FAILED and task.agent_id:
            self._retire_worker(state, task.agent_id)

    def _send_to_merger(self, state: OrchestratedProject, text: str):
        if not self._merger_live(state):
            raise MergeDeliveryError(f"No merger running for {state.id}")
        try:
            self.host.send_input(state.merger_id, text)
        except AgentHostError as e:
            raise MergeDeliveryError(str(e)) from e

    def _set_phase(self, state: OrchestratedProject, phase: str):
        old = state.phase
        state.phase = phase
        logger.info("Project %s: %s -> %s", state.id, old, phase)
        self._emit_for(
            state, events.PHASE_CHANGED, state.error if phase == ERROR else f"Phase {phase}",
            phase=phase, **{"from": old},
        )
        self._changed.notify_all()

    def _require(self, project_id: str) -> OrchestratedProject:
        state = self._projects.get(project_id)
        if state is None:
            raise OrchestrationError(f"Project not orchestrated: {project_id}")
        return state

    def _emit_for(
        self,
        state: OrchestratedProject,
        event_type: str,
        message: str | None = None,
        task_ordinal: int | None = None,
        agent_id: str | None = None,
        branch: str | None = None,
        **data,
    ):
        self._emit(
            OrchestrationEvent(
                event_type=event_type,
                project_id=state.id,
                task_ordinal=task_ordinal,
                agent_id=agent_id,
                branch=branch,
                message=message,
                data=data,
            )
        )

    def _emit(self, event: OrchestrationEvent):
        if self.bus is not None:
            self.bus.publish(event)
