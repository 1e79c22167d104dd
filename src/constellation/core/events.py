"""Lifecycle event channel between the orchestrator and its observers.

The orchestrator publishes without blocking; a daemon thread hands each event
to every sink in order. A sink that raises is logged and skipped.
"""

import logging
import queue
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Protocol

from constellation.core.projects import clear_plan_tasks, record_event, save_plan_task
from constellation.db.engine import init_db
from constellation.db.models import OrchestrationEvent, PlanTask

logger = logging.getLogger(__name__)

# Event types
PHASE_CHANGED = "phase-changed"
AGENT_LAUNCHED = "agent-launched"
AGENT_EXITED = "agent-exited"
AGENT_KILLED = "agent-killed"
PLAN_READY = "plan-ready"
PLAN_REJECTED = "plan-rejected"
PLAN_APPROVED = "plan-approved"
TASK_READY = "task-ready"
TASK_DISPATCHED = "task-dispatched"
TASK_DONE = "task-done"
TASK_FAILED = "task-failed"
WORKTREE_CREATED = "worktree-created"
WORKTREE_REMOVED = "worktree-removed"
MERGE_ENQUEUED = "merge-enqueued"
MERGE_STARTED = "merge-started"
MERGE_RESOLVED = "merge-resolved"
STALLED = "stalled"

_WARNING_EVENTS = {PLAN_REJECTED, TASK_FAILED, AGENT_KILLED, STALLED}


class EventSink(Protocol):
    def deliver(self, event: OrchestrationEvent) -> None: ...


def task_payload(task: PlanTask) -> dict:
    """Snapshot of a task for an event's data field."""
    data = asdict(task)
    data["dependencies"] = list(task.dependencies)
    return data


def task_from_payload(data: dict) -> PlanTask:
    fields = dict(data)
    fields["dependencies"] = tuple(fields.get("dependencies") or ())
    return PlanTask(**fields)


class EventBus:
    """Queue plus dispatcher thread fanning events out to sinks."""

    def __init__(self, sinks: list[EventSink] | None = None):
        self._sinks: list[EventSink] = list(sinks or [])
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def publish(self, event: OrchestrationEvent) -> None:
        self._queue.put_nowait(event)

    def start(self):
        """Start the dispatcher thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="event-bus", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Deliver what is queued, then stop the dispatcher thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.drain()

    def drain(self) -> int:
        """Deliver every queued event on the calling thread. Returns the count."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            self._deliver(event)
            delivered += 1

    def _run(self):
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            self._deliver(event)

    def _deliver(self, event: OrchestrationEvent):
        for sink in self._sinks:
            try:
                sink.deliver(event)
            except Exception:
                logger.exception(
                    "Event sink %s failed on %s", type(sink).__name__, event.event_type
                )


class LoggingSink:
    """Writes every event to the log."""

    def __init__(self, name: str = "constellation.events"):
        self.logger = logging.getLogger(name)

    def deliver(self, event: OrchestrationEvent) -> None:
        if event.event_type == PHASE_CHANGED and event.data.get("phase") == "error":
            level = logging.ERROR
        elif event.event_type in _WARNING_EVENTS:
            level = logging.WARNING
        elif event.event_type == MERGE_RESOLVED and event.data.get("outcome") == "conflict":
            level = logging.WARNING
        else:
            level = logging.INFO

        where = [f"project={event.project_id}"]
        if event.task_ordinal is not None:
            where.append(f"task={event.task_ordinal}")
        if event.agent_id:
            where.append(f"agent={event.agent_id[:8]}")
        if event.branch:
            where.append(f"branch={event.branch}")
        self.logger.log(
            level, "[%s] %s %s", event.event_type, " ".join(where), event.message or ""
        )


class DatabaseSink:
    """Appends events to the SQLite event log and keeps plan snapshots current."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def deliver(self, event: OrchestrationEvent) -> None:
        db = init_db(self.db_path)
        try:
            record_event(db, event)
            if event.event_type == PLAN_READY and "tasks" in event.data:
                clear_plan_tasks(db, event.project_id)
                for payload in event.data["tasks"]:
                    save_plan_task(db, event.project_id, task_from_payload(payload))
            elif event.event_type.startswith("task-") and "task" in event.data:
                save_plan_task(db, event.project_id, task_from_payload(event.data["task"]))
        finally:
            db.close()
