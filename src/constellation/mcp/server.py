"""MCP server exposing project and orchestration tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from constellation.config import Config, get_config
from constellation.core import events as events_mod
from constellation.core import projects as projects_mod
from constellation.core.hosts import SubprocessAgentHost
from constellation.core.orchestrator import OrchestrationError, Orchestrator
from constellation.core.paths import create_project_directory
from constellation.core.protocol import parse_plan
from constellation.core.scheduler import PlanError, TaskScheduler
from constellation.core.worktrees import RepositoryInitError, WorktreeManager
from constellation.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    orchestrator: Orchestrator
    bus: events_mod.EventBus
    host: SubprocessAgentHost


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and start the event bus; stop all agents on shutdown."""
    config = get_config()
    db = init_db(config.db_path)

    bus = events_mod.EventBus([
        events_mod.LoggingSink(),
        events_mod.DatabaseSink(config.db_path),
    ])
    if config.slack_bot_token and config.slack_channel:
        from constellation.integrations.slack import SlackSink

        bus.add_sink(SlackSink(config.slack_bot_token, config.slack_channel))

    host = SubprocessAgentHost(config.agent_command, log_dir=Path(config.data_dir) / "logs")
    orchestrator = Orchestrator(
        host,
        worktrees=WorktreeManager(config.worktree_dir, config.branch_prefix, config.git_timeout),
        bus=bus,
        max_workers=config.max_workers,
        auto_approve=config.auto_approve,
    )
    bus.start()

    try:
        yield AppContext(db=db, config=config, orchestrator=orchestrator, bus=bus, host=host)
    finally:
        host.terminate_all()
        bus.stop()
        db.close()


mcp = FastMCP("constellation", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_project(
    ctx: Context,
    name: str,
    path: str | None = None,
    description: str = "",
    default_branch: str = "main",
) -> dict:
    """Register a project. Without a path, a fresh directory is created under the base directory.
    The directory is turned into a git repository if it is not one already."""
    app = _ctx(ctx)
    if path:
        root = Path(path).expanduser().resolve()
        root.mkdir(parents=True, exist_ok=True)
    else:
        root = create_project_directory(app.config.base_dir, name)

    manager = app.orchestrator.worktrees
    if not manager.ensure_repository(root):
        return {"error": f"Could not initialize a git repository in {root}"}
    try:
        project = projects_mod.create_project(app.db, name, str(root), description, default_branch)
    except sqlite3.IntegrityError:
        return {"error": f"A project is already registered at {root}"}
    return _project_to_dict(project)


@mcp.tool()
def list_projects(ctx: Context) -> list[dict]:
    """List all registered projects with their orchestration phase, if running."""
    app = _ctx(ctx)
    result = []
    for project in projects_mod.list_projects(app.db):
        d = _project_to_dict(project)
        state = app.orchestrator.get(project.id)
        d["phase"] = state.phase if state else None
        result.append(d)
    return result


# ── Orchestration Tools ──────────────────────────────────────────────────────


@mcp.tool()
def start_orchestration(ctx: Context, project: str, max_workers: int | None = None) -> dict:
    """Launch the coordinator agent for a project. It writes a plan that you then approve
    with approve_plan (unless auto-approval is configured)."""
    app = _ctx(ctx)
    proj = projects_mod.get_project(app.db, project)
    if not proj:
        return {"error": f"Project not found: {project}"}
    try:
        app.orchestrator.start(proj, max_workers=max_workers)
    except (OrchestrationError, RepositoryInitError) as e:
        return {"error": str(e)}
    return app.orchestrator.describe(project)


@mcp.tool()
def approve_plan(ctx: Context, project: str) -> dict:
    """Approve the coordinator's plan: launches the merge agent and dispatches workers."""
    app = _ctx(ctx)
    try:
        app.orchestrator.approve_plan(project)
    except OrchestrationError as e:
        return {"error": str(e)}
    return app.orchestrator.describe(project)


@mcp.tool()
def get_orchestration(ctx: Context, project: str) -> dict:
    """Current phase, tasks, agents and merge queue of a project.
    Falls back to the last recorded plan when the project is not running."""
    app = _ctx(ctx)
    if app.orchestrator.get(project):
        return app.orchestrator.describe(project)
    if not projects_mod.get_project(app.db, project):
        return {"error": f"Project not found: {project}"}
    tasks = projects_mod.list_plan_tasks(app.db, project)
    return {
        "project_id": project,
        "phase": None,
        "tasks": [events_mod.task_payload(t) for t in tasks],
    }


@mcp.tool()
def kill_agent(ctx: Context, agent_id: str) -> dict:
    """Terminate one agent. A worker's task is marked failed; its dependents stay pending."""
    app = _ctx(ctx)
    try:
        agent = app.orchestrator.kill_agent(agent_id)
    except OrchestrationError as e:
        return {"error": str(e)}
    return {"id": agent.id, "role": agent.role, "status": agent.status, "task": agent.task_ordinal}


@mcp.tool()
def abort_orchestration(ctx: Context, project: str) -> dict:
    """Stop every agent of a project, drop queued merges and remove all its worktrees."""
    app = _ctx(ctx)
    try:
        state = app.orchestrator.abort(project)
    except OrchestrationError as e:
        return {"error": str(e)}
    return {"project_id": project, "phase": state.phase, "counts": state.scheduler.counts()}


@mcp.tool()
def check_plan(ctx: Context, plan_text: str) -> dict:
    """Parse and validate plan text written in the plan marker format."""
    entries = parse_plan(plan_text)
    if entries is None:
        return {"valid": False, "error": "No plan found between the plan markers"}
    try:
        tasks = TaskScheduler().load_plan(entries)
    except PlanError as e:
        return {"valid": False, "error": str(e)}
    return {"valid": True, "tasks": [events_mod.task_payload(t) for t in tasks]}


@mcp.tool()
def list_events(ctx: Context, project: str, event_type: str | None = None, limit: int = 30) -> list[dict]:
    """Recent lifecycle events of a project, oldest first."""
    app = _ctx(ctx)
    records = projects_mod.list_events(app.db, project, event_type=event_type, limit=limit)
    return [
        {
            "event_type": e.event_type,
            "task": e.task_ordinal,
            "branch": e.branch,
            "message": e.message,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in records
    ]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _project_to_dict(project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "root_path": project.root_path,
        "description": project.description,
        "default_branch": project.default_branch,
        "created_at": project.created_at.isoformat() if project.created_at else None,
    }
