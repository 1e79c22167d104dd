"""Tests for the event bus and its sinks."""

import logging
import tempfile
import time
from pathlib import Path

import pytest

from constellation.core import events
from constellation.core import projects as projects_mod
from constellation.core.events import (
    DatabaseSink,
    EventBus,
    LoggingSink,
    task_from_payload,
    task_payload,
)
from constellation.db.engine import init_db
from constellation.db.models import DISPATCHED, FAILED, READY, OrchestrationEvent, PlanTask


class RecordingSink:
    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)


class BrokenSink:
    def deliver(self, event):
        raise RuntimeError("sink down")


def _event(event_type=events.PHASE_CHANGED, **kwargs):
    return OrchestrationEvent(event_type=event_type, project_id="demo", **kwargs)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "test.db"
        db = init_db(path)
        projects_mod.create_project(db, "Demo", tmp, project_id="demo")
        db.close()
        yield path


class TestEventBus:
    def test_drain_delivers_in_order(self):
        sink = RecordingSink()
        bus = EventBus([sink])
        for i in range(3):
            bus.publish(_event(message=str(i)))
        assert bus.drain() == 3
        assert [e.message for e in sink.events] == ["0", "1", "2"]
        assert bus.drain() == 0

    def test_failing_sink_does_not_block_others(self, caplog):
        sink = RecordingSink()
        bus = EventBus([BrokenSink(), sink])
        bus.publish(_event())
        with caplog.at_level(logging.ERROR):
            bus.drain()
        assert len(sink.events) == 1
        assert "BrokenSink failed" in caplog.text

    def test_add_sink(self):
        bus = EventBus()
        sink = RecordingSink()
        bus.add_sink(sink)
        bus.publish(_event())
        bus.drain()
        assert len(sink.events) == 1

    def test_background_delivery(self):
        sink = RecordingSink()
        bus = EventBus([sink])
        bus.start()
        try:
            bus.publish(_event())
            deadline = time.time() + 5
            while not sink.events and time.time() < deadline:
                time.sleep(0.01)
        finally:
            bus.stop()
        assert len(sink.events) == 1

    def test_stop_flushes_queue(self):
        sink = RecordingSink()
        bus = EventBus([sink])
        bus.publish(_event())
        bus.publish(_event())
        bus.stop()
        assert len(sink.events) == 2


class TestLoggingSink:
    def test_info_for_routine_events(self, caplog):
        with caplog.at_level(logging.INFO, logger="constellation.events"):
            LoggingSink().deliver(
                _event(events.TASK_DISPATCHED, task_ordinal=2, branch="work/abc", message="go")
            )
        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert "[task-dispatched] project=demo task=2 branch=work/abc go" in record.getMessage()

    @pytest.mark.parametrize("event_type", [events.TASK_FAILED, events.STALLED, events.PLAN_REJECTED])
    def test_warning_events(self, caplog, event_type):
        with caplog.at_level(logging.INFO, logger="constellation.events"):
            LoggingSink().deliver(_event(event_type))
        assert caplog.records[-1].levelno == logging.WARNING

    def test_conflict_is_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="constellation.events"):
            LoggingSink().deliver(_event(events.MERGE_RESOLVED, data={"outcome": "conflict"}))
        assert caplog.records[-1].levelno == logging.WARNING

    def test_error_phase_is_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="constellation.events"):
            LoggingSink().deliver(_event(data={"phase": "error"}))
        assert caplog.records[-1].levelno == logging.ERROR


class TestDatabaseSink:
    def test_records_event(self, db_path):
        DatabaseSink(db_path).deliver(
            _event(events.AGENT_LAUNCHED, agent_id="a" * 32, message="Launched", data={"role": "worker"})
        )
        db = init_db(db_path)
        records = projects_mod.list_events(db, "demo")
        db.close()
        assert len(records) == 1
        assert records[0].event_type == events.AGENT_LAUNCHED
        assert records[0].data == {"role": "worker"}

    def test_plan_ready_replaces_snapshot(self, db_path):
        sink = DatabaseSink(db_path)
        old = [task_payload(PlanTask(i, f"Old {i}")) for i in (1, 2, 3)]
        sink.deliver(_event(events.PLAN_READY, data={"tasks": old}))
        new = [
            task_payload(PlanTask(1, "Setup", status=READY)),
            task_payload(PlanTask(2, "API", dependencies=(1,))),
        ]
        sink.deliver(_event(events.PLAN_READY, data={"tasks": new}))

        db = init_db(db_path)
        tasks = projects_mod.list_plan_tasks(db, "demo")
        db.close()
        assert [t.title for t in tasks] == ["Setup", "API"]
        assert tasks[1].dependencies == (1,)

    def test_task_events_update_snapshot(self, db_path):
        sink = DatabaseSink(db_path)
        task = PlanTask(1, "Setup", status=READY)
        sink.deliver(_event(events.PLAN_READY, data={"tasks": [task_payload(task)]}))

        task.status = DISPATCHED
        task.branch = "work/abcd1234"
        sink.deliver(_event(events.TASK_DISPATCHED, task_ordinal=1, data={"task": task_payload(task)}))
        task.status = FAILED
        sink.deliver(_event(events.TASK_FAILED, task_ordinal=1, data={"task": task_payload(task)}))

        db = init_db(db_path)
        stored = projects_mod.list_plan_tasks(db, "demo")[0]
        db.close()
        assert stored.status == FAILED
        assert stored.branch == "work/abcd1234"


class TestPayloads:
    def test_payload_round_trip(self):
        task = PlanTask(3, "UI", "Build UI", (1, 2), DISPATCHED, "a" * 32, "work/aaaaaaaa")
        payload = task_payload(task)
        assert payload["dependencies"] == [1, 2]
        assert task_from_payload(payload) == task
