"""Read-only JSON API over the project registry and event log."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from constellation.config import get_config
from constellation.core import projects as projects_mod
from constellation.core.events import task_payload
from constellation.core.worktrees import WorktreeManager
from constellation.db.engine import init_db
from constellation.db.models import DONE, TASK_STATUSES
from constellation.integrations.git import GitError


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _not_found():
    return JSONResponse({"error": "Project not found"}, status_code=404)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
        if not project:
            return _not_found()
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return _not_found()
        tasks = projects_mod.list_plan_tasks(db, project_id)
        if status_filter:
            tasks = [t for t in tasks if t.status == status_filter]
        return JSONResponse([task_payload(t) for t in tasks])
    finally:
        db.close()


async def api_project_summary(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return _not_found()
        tasks = projects_mod.list_plan_tasks(db, project_id)
        counts = {status: 0 for status in TASK_STATUSES}
        for t in tasks:
            counts[t.status] = counts.get(t.status, 0) + 1
        total = len(tasks)
        progress = (counts[DONE] / total * 100) if total > 0 else 0

        last_phase = projects_mod.list_events(db, project_id, event_type="phase-changed", limit=1)
        return JSONResponse({
            "project_id": project_id,
            "phase": last_phase[0].data.get("phase") if last_phase else None,
            "counts": counts,
            "total": total,
            "progress_pct": round(progress, 1),
        })
    finally:
        db.close()


async def api_project_events(request: Request):
    project_id = request.path_params["project_id"]
    event_type = request.query_params.get("type")
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return _not_found()
        records = projects_mod.list_events(db, project_id, event_type=event_type, limit=limit)
        return JSONResponse([_event_dict(e) for e in records])
    finally:
        db.close()


async def api_project_worktrees(request: Request):
    project_id = request.path_params["project_id"]
    config = get_config()
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
    finally:
        db.close()
    if not project:
        return _not_found()

    manager = WorktreeManager(config.worktree_dir, config.branch_prefix, config.git_timeout)
    try:
        worktrees = manager.list_on_disk(project.root_path)
    except GitError:
        return JSONResponse([])
    return JSONResponse([
        {"path": wt.path, "branch": wt.branch, "head": wt.head} for wt in worktrees
    ])


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "root_path": p.root_path,
        "description": p.description,
        "default_branch": p.default_branch,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "task_ordinal": e.task_ordinal,
        "agent_id": e.agent_id,
        "branch": e.branch,
        "message": e.message,
        "data": e.data,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/summary", api_project_summary),
        Route("/api/projects/{project_id}/events", api_project_events),
        Route("/api/projects/{project_id}/worktrees", api_project_worktrees),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
