"""Data models for the constellation orchestrator."""

import time
from dataclasses import dataclass, field
from datetime import datetime

# Task statuses
PENDING = "pending"
READY = "ready"
DISPATCHED = "dispatched"
DONE = "done"
FAILED = "failed"
TASK_STATUSES = (PENDING, READY, DISPATCHED, DONE, FAILED)

# Agent roles and statuses
COORDINATOR = "coordinator"
WORKER = "worker"
MERGER = "merger"

LAUNCHED = "launched"
RUNNING = "running"
COMPLETED = "completed"
ERROR = "error"

# Merge outcomes
SUCCESS = "success"
CONFLICT = "conflict"
# Set locally when no merger is left to report a result
ABANDONED = "abandoned"


@dataclass
class Project:
    id: str
    name: str
    root_path: str
    description: str = ""
    default_branch: str = "main"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PlanEntry:
    """One task as written by the coordinator, before scheduling."""

    title: str
    description: str
    dependencies: list[int] = field(default_factory=list)


@dataclass
class PlanTask:
    ordinal: int
    title: str
    description: str = ""
    dependencies: tuple[int, ...] = ()
    status: str = PENDING
    agent_id: str | None = None
    branch: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DONE, FAILED)


@dataclass
class Agent:
    id: str
    project_id: str
    role: str
    cwd: str
    status: str = LAUNCHED
    task_ordinal: int | None = None
    branch: str | None = None
    launched_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    exit_code: int | None = None
    completion_signaled: bool = False

    @property
    def is_live(self) -> bool:
        return self.status in (LAUNCHED, RUNNING)


@dataclass
class Worktree:
    agent_id: str
    branch: str
    path: str
    created_at: float = field(default_factory=time.time)


@dataclass
class MergeRequest:
    branch: str
    task_title: str
    task_ordinal: int | None = None
    agent_id: str | None = None
    enqueued_at: float = field(default_factory=time.time)


@dataclass
class MergeResult:
    outcome: str
    branch: str
    details: str | None = None


@dataclass
class OrchestrationEvent:
    event_type: str
    project_id: str
    timestamp: float = field(default_factory=time.time)
    task_ordinal: int | None = None
    agent_id: str | None = None
    branch: str | None = None
    message: str | None = None
    data: dict = field(default_factory=dict)


@dataclass
class EventRecord:
    """An event as read back from the event log."""

    id: int | None = None
    project_id: str = ""
    event_type: str = ""
    task_ordinal: int | None = None
    agent_id: str | None = None
    branch: str | None = None
    message: str | None = None
    data: dict = field(default_factory=dict)
    created_at: datetime | None = None
