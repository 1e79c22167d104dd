"""Tests for the orchestration loop, driven through a fake agent host."""

import os
import subprocess
import tempfile
from collections import defaultdict
from pathlib import Path
from unittest.mock import patch

import pytest

from constellation.core import events
from constellation.core.events import EventBus
from constellation.core.hosts import AgentHostError
from constellation.core.orchestrator import (
    ABORTED,
    EXECUTING,
    PLANNING,
    REVIEWING,
    TERMINAL_PHASES,
    OrchestrationError,
    Orchestrator,
)
from constellation.core.worktrees import WorktreeCreationError, WorktreeManager
from constellation.db.models import (
    COMPLETED,
    COORDINATOR,
    DISPATCHED,
    DONE,
    ERROR,
    FAILED,
    MERGER,
    PENDING,
    READY,
    RUNNING,
    WORKER,
    Project,
)
from constellation.integrations import git

CHAIN_PLAN = """===PLAN_START===
TASK: Setup
DESC: Scaffold the project
DEPS: none
---
TASK: API
DESC: Build the API
DEPS: 1
===PLAN_END===
"""

PARALLEL_PLAN = """===PLAN_START===
TASK: Backend
DESC: Build the backend
DEPS: none
---
TASK: Frontend
DESC: Build the frontend
DEPS: none
---
TASK: Integrate
DESC: Wire them together
DEPS: 1, 2
===PLAN_END===
"""


class FakeHost:
    """In-memory agent host; tests push output and exits by hand."""

    def __init__(self):
        self.launched: dict[str, tuple[str, str]] = {}
        self.inputs: dict[str, list[str]] = defaultdict(list)
        self.terminated: list[str] = []
        self.fail_launch = False

    def bind(self, on_started, on_output, on_exit):
        self.on_started = on_started
        self.on_output = on_output
        self.on_exit = on_exit

    def launch(self, agent_id, prompt, cwd):
        if self.fail_launch:
            raise AgentHostError("no such command")
        self.launched[agent_id] = (prompt, cwd)
        self.on_started(agent_id)

    def send_input(self, agent_id, text):
        self.inputs[agent_id].append(text)

    def terminate(self, agent_id):
        self.terminated.append(agent_id)

    def say(self, agent_id, text):
        for line in text.splitlines(keepends=True):
            self.on_output(agent_id, line)


class RecordingSink:
    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)

    def types(self):
        return [e.event_type for e in self.events]


@pytest.fixture
def project():
    with tempfile.TemporaryDirectory() as tmp:
        yield Project(id="demo", name="Demo", root_path=str(Path(tmp).resolve()), description="A demo")


@pytest.fixture
def env(project):
    host = FakeHost()
    sink = RecordingSink()
    bus = EventBus([sink])
    orch = Orchestrator(host, worktrees=WorktreeManager(), bus=bus)
    return orch, host, sink, bus


GIT_ENV = {**os.environ, "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
           "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com"}


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=True, env=GIT_ENV)


def _agent(orch, role, ordinal=None):
    matches = [
        a for a in orch.agents
        if a.role == role and (ordinal is None or a.task_ordinal == ordinal)
    ]
    assert len(matches) == 1, matches
    return matches[0]


def _merge_success(branch):
    return f"===MERGE_SUCCESS===\nBRANCH: {branch}\n===END===\n"


def _merge_conflict(branch, details="both modified app.py"):
    return f"===MERGE_CONFLICT===\nBRANCH: {branch}\nDETAILS: {details}\n===END===\n"


def _to_executing(orch, host, project, plan=CHAIN_PLAN):
    orch.start(project)
    coordinator = _agent(orch, COORDINATOR)
    host.say(coordinator.id, plan)
    return orch.approve_plan(project.id)


class TestPlanning:
    def test_start_launches_coordinator(self, env, project):
        orch, host, sink, bus = env
        state = orch.start(project)

        assert state.phase == PLANNING
        coordinator = _agent(orch, COORDINATOR)
        assert coordinator.status == RUNNING
        prompt, cwd = host.launched[coordinator.id]
        assert cwd == project.root_path
        assert "COORDINATOR" in prompt
        assert "===PLAN_START===" in prompt
        assert git.has_commits(project.root_path)

        bus.drain()
        assert events.AGENT_LAUNCHED in sink.types()
        phases = [e.data["phase"] for e in sink.events if e.event_type == events.PHASE_CHANGED]
        assert phases == ["initializing", "planning"]

    def test_double_start_rejected(self, env, project):
        orch, _, _, _ = env
        orch.start(project)
        with pytest.raises(OrchestrationError):
            orch.start(project)

    def test_coordinator_launch_failure(self, env, project):
        orch, host, _, _ = env
        host.fail_launch = True
        with pytest.raises(OrchestrationError):
            orch.start(project)
        assert orch.get(project.id) is None

    def test_plan_moves_to_review(self, env, project):
        orch, host, sink, bus = env
        state = orch.start(project)
        host.say(_agent(orch, COORDINATOR).id, "Let me think...\n" + CHAIN_PLAN)

        assert state.phase == REVIEWING
        assert [t.status for t in state.scheduler.tasks] == [READY, PENDING]
        bus.drain()
        ready = [e for e in sink.events if e.event_type == events.PLAN_READY]
        assert len(ready) == 1
        assert [t["title"] for t in ready[0].data["tasks"]] == ["Setup", "API"]

    def test_plan_split_across_chunks(self, env, project):
        orch, host, _, _ = env
        state = orch.start(project)
        coordinator = _agent(orch, COORDINATOR)
        half = len(CHAIN_PLAN) // 2
        host.on_output(coordinator.id, CHAIN_PLAN[:half])
        assert state.phase == PLANNING
        host.on_output(coordinator.id, CHAIN_PLAN[half:])
        assert state.phase == REVIEWING

    def test_ansi_colored_plan(self, env, project):
        orch, host, _, _ = env
        state = orch.start(project)
        colored = CHAIN_PLAN.replace("===PLAN_START===", "\x1b[36m===PLAN_START===\x1b[0m")
        host.say(_agent(orch, COORDINATOR).id, colored)
        assert state.phase == REVIEWING

    def test_invalid_plan_rejected_then_retried(self, env, project):
        orch, host, sink, bus = env
        state = orch.start(project)
        coordinator = _agent(orch, COORDINATOR)
        host.say(coordinator.id, CHAIN_PLAN.replace("DEPS: none", "DEPS: 2"))

        assert state.phase == PLANNING
        bus.drain()
        rejected = [e for e in sink.events if e.event_type == events.PLAN_REJECTED]
        assert len(rejected) == 1
        assert rejected[0].data["error"] == "CycleError"

        host.say(coordinator.id, CHAIN_PLAN)
        assert state.phase == REVIEWING

    def test_out_of_range_dependency_rejected(self, env, project):
        orch, host, sink, bus = env
        state = orch.start(project)
        host.say(_agent(orch, COORDINATOR).id, CHAIN_PLAN.replace("DEPS: 1", "DEPS: 7"))
        assert state.phase == PLANNING
        bus.drain()
        rejected = [e for e in sink.events if e.event_type == events.PLAN_REJECTED]
        assert "task 2 depends on 7" in rejected[0].message

    def test_coordinator_exit_without_plan_is_error(self, env, project):
        orch, host, _, _ = env
        state = orch.start(project)
        host.on_exit(_agent(orch, COORDINATOR).id, 0)
        assert state.phase == ERROR
        assert "without producing a valid plan" in state.error

    def test_coordinator_exit_after_plan_is_fine(self, env, project):
        orch, host, _, _ = env
        state = orch.start(project)
        coordinator = _agent(orch, COORDINATOR)
        host.say(coordinator.id, CHAIN_PLAN)
        host.on_exit(coordinator.id, 0)
        assert state.phase == REVIEWING
        assert coordinator.status == COMPLETED

    def test_approve_outside_review_rejected(self, env, project):
        orch, _, _, _ = env
        orch.start(project)
        with pytest.raises(OrchestrationError):
            orch.approve_plan(project.id)

    def test_approve_unknown_project(self, env):
        orch, _, _, _ = env
        with pytest.raises(OrchestrationError):
            orch.approve_plan("missing")

    def test_auto_approve(self, project):
        host = FakeHost()
        orch = Orchestrator(host, auto_approve=True)
        state = orch.start(project)
        host.say(_agent(orch, COORDINATOR).id, CHAIN_PLAN)
        assert state.phase == EXECUTING
        assert _agent(orch, MERGER)
        assert state.scheduler.get(1).status == DISPATCHED


class TestDispatch:
    def test_approve_launches_merger_and_ready_workers(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)

        assert state.phase == EXECUTING
        merger = _agent(orch, MERGER)
        assert host.launched[merger.id][1] == project.root_path
        assert "MERGE agent" in host.launched[merger.id][0]

        assert [t.status for t in state.scheduler.tasks] == [DISPATCHED, DISPATCHED, PENDING]
        for ordinal in (1, 2):
            worker = _agent(orch, WORKER, ordinal)
            prompt, cwd = host.launched[worker.id]
            assert cwd == str(Path(project.root_path) / ".worktrees" / worker.id[:8])
            assert worker.branch == f"work/{worker.id[:8]}"
            assert state.scheduler.get(ordinal).branch == worker.branch
            assert worker.branch in prompt
            assert "===TASK_COMPLETE===" in prompt

    def test_max_workers_limits_dispatch(self, project):
        host = FakeHost()
        orch = Orchestrator(host, max_workers=1)
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        assert state.scheduler.counts()[DISPATCHED] == 1
        assert state.scheduler.counts()[READY] == 1

        first = _agent(orch, WORKER, 1)
        host.say(first.id, "===TASK_COMPLETE===\n")
        assert state.scheduler.get(2).status == DISPATCHED

    def test_start_overrides_max_workers(self, env, project):
        orch, host, _, _ = env
        state = orch.start(project, max_workers=1)
        host.say(_agent(orch, COORDINATOR).id, PARALLEL_PLAN)
        orch.approve_plan(project.id)
        assert state.scheduler.counts()[DISPATCHED] == 1

    def test_worktree_failure_fails_only_that_task(self, env, project):
        orch, host, sink, bus = env
        real_create = orch.worktrees.create
        calls = []

        def flaky_create(root, agent_id, base=None):
            calls.append(agent_id)
            if len(calls) == 1:
                raise WorktreeCreationError("disk full")
            return real_create(root, agent_id, base=base)

        with patch.object(orch.worktrees, "create", side_effect=flaky_create):
            state = _to_executing(orch, host, project, PARALLEL_PLAN)

        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == DISPATCHED
        assert "disk full" in state.failures[1]
        bus.drain()
        failed = [e for e in sink.events if e.event_type == events.TASK_FAILED]
        assert "disk full" in failed[0].message

    def test_worker_launch_failure_releases_worktree(self, env, project):
        orch, host, _, _ = env
        orch.start(project)
        host.say(_agent(orch, COORDINATOR).id, CHAIN_PLAN)
        real_launch = host.launch

        def launch(agent_id, prompt, cwd):
            if "WORKER" in prompt:
                raise AgentHostError("spawn failed")
            return real_launch(agent_id, prompt, cwd)

        host.launch = launch
        state = orch.approve_plan(project.id)

        task = state.scheduler.get(1)
        assert task.status == FAILED
        assert orch.worktrees.list_on_disk(project.root_path) == []
        assert git.branch_exists(project.root_path, task.branch)

    def test_workers_branch_from_project_branch(self, env, project):
        orch, host, _, _ = env
        root = project.root_path
        assert orch.worktrees.ensure_repository(root)
        _git(root, "checkout", "-b", "develop")
        Path(root, "develop.txt").write_text("only on develop")
        _git(root, "add", "develop.txt")
        _git(root, "commit", "-m", "develop work")
        _git(root, "checkout", "main")

        on_develop = Project(id="demo", name="Demo", root_path=root, default_branch="develop")
        _to_executing(orch, host, on_develop)

        worker = _agent(orch, WORKER, 1)
        worktree_path = Path(host.launched[worker.id][1])
        assert (worktree_path / "develop.txt").exists()
        assert "git checkout develop" in host.launched[_agent(orch, MERGER).id][0]


class TestMerging:
    def test_completion_enqueues_merge(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        merger = _agent(orch, MERGER)

        host.say(worker.id, "All done.\n===TASK_COMPLETE===\n")

        assert state.merges.in_flight.branch == worker.branch
        assert len(host.inputs[merger.id]) == 1
        assert f"Branch: {worker.branch}" in host.inputs[merger.id][0]
        assert "Task: Setup" in host.inputs[merger.id][0]

        host.say(worker.id, "===TASK_COMPLETE===\n")
        assert len(host.inputs[merger.id]) == 1
        bus.drain()
        assert sink.types().count(events.MERGE_ENQUEUED) == 1

    def test_merge_success_completes_task_and_promotes(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        worktree_path = Path(host.launched[worker.id][1])

        host.say(worker.id, "===TASK_COMPLETE===\n")
        host.say(_agent(orch, MERGER).id, _merge_success(worker.branch))

        assert state.scheduler.get(1).status == DONE
        assert not worktree_path.exists()
        assert not git.branch_exists(project.root_path, worker.branch)
        assert worker.id in host.terminated
        assert state.scheduler.get(2).status == DISPATCHED
        assert state.merges.is_idle

    def test_full_run_completes(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)
        merger = _agent(orch, MERGER)

        for ordinal in (1, 2):
            worker = _agent(orch, WORKER, ordinal)
            host.say(worker.id, "===TASK_COMPLETE===\n")
            host.say(merger.id, _merge_success(worker.branch))

        assert state.phase == COMPLETED
        assert state.completed_at is not None
        assert merger.id in host.terminated
        assert merger.status == COMPLETED
        assert orch.worktrees.list_on_disk(project.root_path) == []
        bus.drain()
        assert sink.events[-1].event_type == events.PHASE_CHANGED
        assert sink.events[-1].data["phase"] == COMPLETED

    def test_merges_are_fifo(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        merger = _agent(orch, MERGER)
        first = _agent(orch, WORKER, 1)
        second = _agent(orch, WORKER, 2)

        host.say(second.id, "===TASK_COMPLETE===\n")
        host.say(first.id, "===TASK_COMPLETE===\n")
        assert state.merges.in_flight.branch == second.branch
        assert [r.branch for r in state.merges.pending] == [first.branch]

        host.say(merger.id, _merge_success(second.branch))
        assert state.merges.in_flight.branch == first.branch
        assert f"Branch: {first.branch}" in host.inputs[merger.id][-1]

    def test_result_for_other_branch_ignored(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        host.say(worker.id, "===TASK_COMPLETE===\n")

        host.say(_agent(orch, MERGER).id, _merge_success("work/deadbeef"))
        assert state.scheduler.get(1).status == DISPATCHED
        assert state.merges.in_flight.branch == worker.branch

    def test_worker_quoting_merge_block_is_not_a_result(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        host.say(worker.id, "===TASK_COMPLETE===\n")
        host.say(_agent(orch, WORKER, 1).id, _merge_success(worker.branch))
        assert state.scheduler.get(1).status == DISPATCHED

    def test_conflict_fails_task_and_keeps_worktree(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        worktree_path = Path(host.launched[worker.id][1])

        host.say(worker.id, "===TASK_COMPLETE===\n")
        host.say(_agent(orch, MERGER).id, _merge_conflict(worker.branch))

        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == PENDING
        assert worktree_path.exists()
        assert git.branch_exists(project.root_path, worker.branch)
        assert state.merges.conflicts[worker.branch] == "both modified app.py"
        assert state.stalled
        assert state.phase == EXECUTING

        bus.drain()
        stalled = [e for e in sink.events if e.event_type == events.STALLED]
        assert len(stalled) == 1
        assert stalled[0].data == {"failed": [1], "blocked": [2], "merger_running": True}
        failed = [e for e in sink.events if e.event_type == events.TASK_FAILED]
        assert "both modified app.py" in failed[0].message

    def test_conflict_terminates_worker(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)

        host.say(worker.id, "===TASK_COMPLETE===\n")
        assert worker.id not in host.terminated
        host.say(_agent(orch, MERGER).id, _merge_conflict(worker.branch))

        assert worker.id in host.terminated
        assert worker.status == COMPLETED
        assert worker.id not in state.worker_ids
        assert Path(host.launched[worker.id][1]).exists()


class TestWorkerExit:
    def test_nonzero_exit_fails_task(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        worktree_path = Path(host.launched[worker.id][1])

        host.on_exit(worker.id, 2)

        assert worker.status == ERROR
        assert worker.exit_code == 2
        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == PENDING
        assert not worktree_path.exists()
        assert git.branch_exists(project.root_path, worker.branch)
        assert state.stalled

    def test_clean_exit_without_signal_counts_as_completion(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)

        host.on_exit(worker.id, 0)

        assert state.merges.in_flight.branch == worker.branch
        assert state.scheduler.get(1).status == DISPATCHED

    def test_exit_after_signal_does_not_fail(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        host.say(worker.id, "===TASK_COMPLETE===\n")
        host.on_exit(worker.id, 1)
        assert state.scheduler.get(1).status == DISPATCHED
        assert state.merges.in_flight is not None

    def test_merger_exit_keeps_executing(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project)
        host.on_exit(_agent(orch, MERGER).id, 1)
        assert state.phase == EXECUTING
        assert not state.stalled

    def test_merger_exit_fails_in_flight_merge_and_stalls(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        host.say(worker.id, "===TASK_COMPLETE===\n")
        assert state.merges.in_flight is not None

        host.on_exit(_agent(orch, MERGER).id, 1)

        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == PENDING
        assert not state.merges.has_work()
        assert state.merges.abandoned[worker.branch] == "Merger exited with code 1"
        assert worker.id in host.terminated
        assert git.branch_exists(project.root_path, worker.branch)
        assert state.stalled
        assert orch.wait_for(state, TERMINAL_PHASES, timeout=0, until_stalled=True)

        bus.drain()
        failed = [e for e in sink.events if e.event_type == events.TASK_FAILED]
        assert "Merger exited with code 1" in failed[0].message
        stalled = [e for e in sink.events if e.event_type == events.STALLED]
        assert stalled[0].data["merger_running"] is False

    def test_no_dispatch_after_merger_exit(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        merger = _agent(orch, MERGER)
        host.on_exit(merger.id, 1)

        for ordinal in (1, 2):
            host.say(_agent(orch, WORKER, ordinal).id, "===TASK_COMPLETE===\n")

        assert host.inputs[merger.id] == []
        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == FAILED
        assert state.scheduler.get(3).status == PENDING
        assert len([a for a in orch.agents if a.role == WORKER]) == 2
        assert state.stalled


class TestOperatorCommands:
    def test_kill_worker_fails_task_without_cascade(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)
        worker = _agent(orch, WORKER, 1)
        worktree_path = Path(host.launched[worker.id][1])

        orch.kill_agent(worker.id)

        assert worker.id in host.terminated
        assert worker.status == ERROR
        assert state.scheduler.get(1).status == FAILED
        assert state.scheduler.get(2).status == PENDING
        assert not worktree_path.exists()
        assert git.branch_exists(project.root_path, worker.branch)

        host.on_exit(worker.id, -15)
        assert worker.status == ERROR
        bus.drain()
        assert sink.types().count(events.TASK_FAILED) == 1

    def test_kill_unknown_agent(self, env):
        orch, _, _, _ = env
        with pytest.raises(OrchestrationError):
            orch.kill_agent("nobody")

    def test_kill_worker_drops_its_queued_merge(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        first = _agent(orch, WORKER, 1)
        second = _agent(orch, WORKER, 2)
        host.say(first.id, "===TASK_COMPLETE===\n")
        host.say(second.id, "===TASK_COMPLETE===\n")

        orch.kill_agent(second.id)

        assert state.merges.pending == []
        assert state.scheduler.get(2).status == FAILED

    def test_kill_merger_abandons_queued_merges(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        host.say(_agent(orch, WORKER, 1).id, "===TASK_COMPLETE===\n")
        host.say(_agent(orch, WORKER, 2).id, "===TASK_COMPLETE===\n")
        assert len(state.merges.pending) == 1

        orch.kill_agent(_agent(orch, MERGER).id)

        assert state.merges.in_flight is None
        assert state.merges.pending == []
        assert [t.status for t in state.scheduler.tasks] == [FAILED, FAILED, PENDING]
        assert state.phase == EXECUTING
        assert state.stalled

    def test_undeliverable_merge_instruction_fails_task(self, env, project):
        orch, host, sink, bus = env
        state = _to_executing(orch, host, project)

        def broken_pipe(agent_id, text):
            raise AgentHostError("broken pipe")

        host.send_input = broken_pipe
        worker = _agent(orch, WORKER, 1)
        host.say(worker.id, "===TASK_COMPLETE===\n")

        assert state.scheduler.get(1).status == FAILED
        assert not state.merges.has_work()
        assert worker.id in host.terminated
        assert state.stalled
        bus.drain()
        failed = [e for e in sink.events if e.event_type == events.TASK_FAILED]
        assert "broken pipe" in failed[0].message

    def test_abort_cleans_up_everything(self, env, project):
        orch, host, _, _ = env
        state = _to_executing(orch, host, project, PARALLEL_PLAN)
        agent_ids = [a.id for a in orch.agents]
        host.say(_agent(orch, WORKER, 1).id, "===TASK_COMPLETE===\n")
        host.say(_agent(orch, WORKER, 2).id, "===TASK_COMPLETE===\n")

        result = orch.abort(project.id)

        assert result is state
        assert state.phase == ABORTED
        assert state.merges.pending == []
        assert orch.get(project.id) is None
        assert orch.agents == []
        assert orch.worktrees.list_on_disk(project.root_path) == []
        for agent_id in agent_ids:
            assert agent_id in host.terminated

    def test_restart_after_abort(self, env, project):
        orch, host, _, _ = env
        orch.start(project)
        orch.abort(project.id)
        state = orch.start(project)
        assert state.phase == PLANNING

    def test_role_of(self, env, project):
        orch, _, _, _ = env
        orch.start(project)
        coordinator = _agent(orch, COORDINATOR)
        assert orch.role_of(coordinator.id) == COORDINATOR
        assert orch.role_of("nobody") is None

    def test_describe(self, env, project):
        orch, host, _, _ = env
        _to_executing(orch, host, project)
        info = orch.describe(project.id)
        assert info["phase"] == EXECUTING
        assert info["counts"][DISPATCHED] == 1
        assert [t["title"] for t in info["tasks"]] == ["Setup", "API"]
        assert {a["role"] for a in info["agents"]} == {COORDINATOR, MERGER, WORKER}
