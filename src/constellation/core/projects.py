"""Project registry, plan snapshots and the event log."""

import json
import sqlite3
from datetime import datetime

from constellation.core.paths import sanitize_project_name
from constellation.db.models import EventRecord, OrchestrationEvent, PlanTask, Project


def create_project(
    db: sqlite3.Connection,
    name: str,
    root_path: str,
    description: str = "",
    default_branch: str = "main",
    project_id: str | None = None,
) -> Project:
    """Create a new project. The id defaults to a unique slug of the name."""
    project_id = project_id or _unique_id(db, sanitize_project_name(name))
    db.execute(
        """INSERT INTO projects (id, name, root_path, description, default_branch)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, root_path, description, default_branch),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, id").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "description", "root_path", "default_branch"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def remove_project(db: sqlite3.Connection, project_id: str) -> bool:
    """Forget a project along with its plan and events. Files are left alone."""
    cur = db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    db.commit()
    return cur.rowcount > 0


# ── Plan snapshots ───────────────────────────────────────────────────────────


def save_plan_task(db: sqlite3.Connection, project_id: str, task: PlanTask) -> None:
    """Insert or refresh the stored copy of one plan task."""
    db.execute(
        """INSERT INTO plan_tasks
               (project_id, ordinal, title, description, dependencies, status, agent_id, branch)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (project_id, ordinal) DO UPDATE SET
               title = excluded.title,
               description = excluded.description,
               dependencies = excluded.dependencies,
               status = excluded.status,
               agent_id = excluded.agent_id,
               branch = excluded.branch,
               updated_at = datetime('now')""",
        (
            project_id,
            task.ordinal,
            task.title,
            task.description,
            json.dumps(list(task.dependencies)),
            task.status,
            task.agent_id,
            task.branch,
        ),
    )
    db.commit()


def clear_plan_tasks(db: sqlite3.Connection, project_id: str) -> None:
    db.execute("DELETE FROM plan_tasks WHERE project_id = ?", (project_id,))
    db.commit()


def list_plan_tasks(db: sqlite3.Connection, project_id: str) -> list[PlanTask]:
    rows = db.execute(
        "SELECT * FROM plan_tasks WHERE project_id = ? ORDER BY ordinal",
        (project_id,),
    ).fetchall()
    return [_row_to_plan_task(r) for r in rows]


# ── Event log ────────────────────────────────────────────────────────────────


def record_event(db: sqlite3.Connection, event: OrchestrationEvent) -> int:
    cur = db.execute(
        """INSERT INTO events
               (project_id, event_type, task_ordinal, agent_id, branch, message, data, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event.project_id,
            event.event_type,
            event.task_ordinal,
            event.agent_id,
            event.branch,
            event.message,
            json.dumps(event.data, default=str),
            datetime.fromtimestamp(event.timestamp).isoformat(sep=" ", timespec="seconds"),
        ),
    )
    db.commit()
    return cur.lastrowid


def list_events(
    db: sqlite3.Connection,
    project_id: str,
    event_type: str | None = None,
    limit: int = 50,
) -> list[EventRecord]:
    """Most recent events for a project, oldest first."""
    query = "SELECT * FROM events WHERE project_id = ?"
    params: list = [project_id]
    if event_type:
        query += " AND event_type = ?"
        params.append(event_type)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_event(r) for r in reversed(rows)]


# ── Row helpers ──────────────────────────────────────────────────────────────


def _unique_id(db: sqlite3.Connection, base: str) -> str:
    candidate = base
    i = 2
    while db.execute("SELECT 1 FROM projects WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base}-{i}"
        i += 1
    return candidate


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        root_path=row["root_path"],
        description=row["description"] or "",
        default_branch=row["default_branch"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_plan_task(row: sqlite3.Row) -> PlanTask:
    return PlanTask(
        ordinal=row["ordinal"],
        title=row["title"],
        description=row["description"] or "",
        dependencies=tuple(json.loads(row["dependencies"] or "[]")),
        status=row["status"],
        agent_id=row["agent_id"],
        branch=row["branch"],
    )


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=row["id"],
        project_id=row["project_id"],
        event_type=row["event_type"],
        task_ordinal=row["task_ordinal"],
        agent_id=row["agent_id"],
        branch=row["branch"],
        message=row["message"],
        data=json.loads(row["data"] or "{}"),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
