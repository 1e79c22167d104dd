"""CLI entry point for constellation."""

import json
import logging
import os
import sqlite3
import sys
from pathlib import Path

import click

from constellation.config import get_config
from constellation.core import events as events_mod
from constellation.core import projects as projects_mod
from constellation.core.paths import create_project_directory
from constellation.core.protocol import parse_plan
from constellation.core.scheduler import PlanError, TaskScheduler
from constellation.core.worktrees import WorktreeManager
from constellation.db.engine import get_db
from constellation.db.models import COMPLETED, DISPATCHED, DONE, FAILED, PENDING, READY
from constellation.integrations.git import GitError

STATUS_ICONS = {
    PENDING: "○",
    READY: "◎",
    DISPATCHED: "●",
    DONE: "✓",
    FAILED: "✗",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _worktree_manager(config) -> WorktreeManager:
    return WorktreeManager(config.worktree_dir, config.branch_prefix, config.git_timeout)


def _require_project(db, project_id):
    project = projects_mod.get_project(db, project_id)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    return project


@click.group()
def main():
    """cst - multi-agent coding orchestrator"""
    config = get_config()
    logging.basicConfig(level=config.log_level, format="%(levelname)s: %(message)s")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("name")
@click.option("--path", "path", default=None, help="Existing directory to use (default: new directory under CST_BASE_DIR)")
@click.option("--description", "-d", default="", help="What the project should become")
@click.option("--branch", default="main", help="Branch merged work lands on")
def init_project(name, path, description, branch):
    """Register a project and make sure it is a git repository."""
    config = get_config()
    if path:
        root = Path(os.path.abspath(path))
        root.mkdir(parents=True, exist_ok=True)
    else:
        root = create_project_directory(config.base_dir, name)

    if not _worktree_manager(config).ensure_repository(root):
        click.echo(f"Error: could not initialize a git repository in {root}", err=True)
        sys.exit(1)

    with _get_db() as db:
        try:
            project = projects_mod.create_project(
                db, name, str(root.resolve()), description, branch
            )
        except sqlite3.IntegrityError:
            click.echo(f"Error: a project is already registered at {root}", err=True)
            sys.exit(1)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Path: {project.root_path}")
        click.echo(f"  Branch: {project.default_branch}")


@main.group("project")
def project_group():
    """Manage registered projects."""
    pass


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)

    if json_output:
        click.echo(json.dumps([_project_dict(p) for p in projects], indent=2))
        return
    if not projects:
        click.echo("No projects found.")
        return
    for p in projects:
        click.echo(f"  {p.id}: {p.name} ({p.root_path})")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show project details and its last known plan."""
    with _get_db() as db:
        project = _require_project(db, project_id)
        tasks = projects_mod.list_plan_tasks(db, project_id)

    click.echo(f"Project: {project.id}")
    click.echo(f"  Name: {project.name}")
    click.echo(f"  Path: {project.root_path}")
    click.echo(f"  Branch: {project.default_branch}")
    if project.description:
        click.echo(f"  Description: {project.description}")
    if project.created_at:
        click.echo(f"  Created: {project.created_at}")
    click.echo(f"  Plan: {len(tasks)} tasks" if tasks else "  Plan: none yet")


@project_group.command("remove")
@click.argument("project_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def project_remove(project_id, yes):
    """Forget a project. Its files are left on disk."""
    with _get_db() as db:
        project = _require_project(db, project_id)
        if not yes:
            click.confirm(f"Remove project {project.id} ({project.root_path})?", abort=True)
        projects_mod.remove_project(db, project_id)
    click.echo(f"Removed project: {project_id}")


# ── Plan Commands ─────────────────────────────────────────────────────────────


@main.group("plan")
def plan_group():
    """Work with coordinator plans."""
    pass


@plan_group.command("check")
@click.argument("plan_file", type=click.File("r"))
def plan_check(plan_file):
    """Parse and validate a plan (use - for stdin)."""
    entries = parse_plan(plan_file.read())
    if entries is None:
        click.echo("Error: no plan found between the plan markers", err=True)
        sys.exit(1)
    try:
        tasks = TaskScheduler().load_plan(entries)
    except PlanError as e:
        click.echo(f"Invalid plan: {e}", err=True)
        sys.exit(1)

    click.echo(f"Plan OK: {len(tasks)} tasks")
    for task in tasks:
        _echo_task(task)


# ── Orchestration Commands ────────────────────────────────────────────────────


@main.command("run")
@click.argument("project_id")
@click.option("--max-workers", type=int, default=None, help="Limit concurrent workers")
@click.option("--approve/--review", "approve", default=None, help="Approve the plan automatically or ask first")
@click.option("--command", "agent_command", default=None, help="Agent command (default: CST_AGENT_COMMAND)")
def run_command(project_id, max_workers, approve, agent_command):
    """Run a full orchestration for a project."""
    from constellation.core.hosts import SubprocessAgentHost
    from constellation.core.orchestrator import (
        REVIEWING,
        TERMINAL_PHASES,
        OrchestrationError,
        Orchestrator,
    )
    from constellation.core.worktrees import RepositoryInitError

    config = get_config()
    with _get_db() as db:
        project = _require_project(db, project_id)

    bus = events_mod.EventBus([
        events_mod.LoggingSink(),
        events_mod.DatabaseSink(config.db_path),
        _EchoSink(),
    ])
    if config.slack_bot_token and config.slack_channel:
        from constellation.integrations.slack import SlackSink

        bus.add_sink(SlackSink(config.slack_bot_token, config.slack_channel))

    host = SubprocessAgentHost(
        agent_command or config.agent_command,
        log_dir=Path(config.data_dir) / "logs",
    )
    orchestrator = Orchestrator(
        host,
        worktrees=_worktree_manager(config),
        bus=bus,
        max_workers=max_workers if max_workers is not None else config.max_workers,
        auto_approve=config.auto_approve if approve is None else approve,
    )

    bus.start()
    try:
        try:
            state = orchestrator.start(project)
        except (OrchestrationError, RepositoryInitError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        orchestrator.wait_for(state, (REVIEWING,) + TERMINAL_PHASES, until_stalled=True)
        if state.phase == REVIEWING:
            bus.drain()
            click.echo("")
            for task in state.scheduler.tasks:
                _echo_task(task)
            if click.confirm("Approve this plan?", default=True):
                orchestrator.approve_plan(project_id)
            else:
                orchestrator.abort(project_id)
                click.echo("Plan rejected; orchestration aborted.")
                sys.exit(1)

        orchestrator.wait_for(state, TERMINAL_PHASES, until_stalled=True)
        bus.drain()
        counts = state.scheduler.counts()
        click.echo(
            f"Finished in phase {state.phase}: "
            + ", ".join(f"{k} {v}" for k, v in counts.items() if v)
        )
        if state.phase != COMPLETED:
            if state.error:
                click.echo(f"Error: {state.error}", err=True)
            sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted, aborting orchestration...", err=True)
        try:
            orchestrator.abort(project_id)
        except OrchestrationError:
            pass
        sys.exit(130)
    finally:
        host.terminate_all()
        bus.stop()


@main.command("status")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_command(project_id, json_output):
    """Show the last recorded plan state of a project."""
    with _get_db() as db:
        project = _require_project(db, project_id)
        tasks = projects_mod.list_plan_tasks(db, project_id)

    if json_output:
        click.echo(json.dumps([events_mod.task_payload(t) for t in tasks], indent=2))
        return
    click.echo(f"{project.name} ({project.id})")
    if not tasks:
        click.echo("  No plan recorded.")
        return
    for task in tasks:
        _echo_task(task)
    done = sum(1 for t in tasks if t.status == DONE)
    click.echo(f"  Progress: {done}/{len(tasks)} done")


@main.command("events")
@click.argument("project_id")
@click.option("--limit", "-n", default=30, type=int, help="Number of events to show")
@click.option("--type", "event_type", default=None, help="Only events of this type")
def events_command(project_id, limit, event_type):
    """Show the event log of a project."""
    with _get_db() as db:
        _require_project(db, project_id)
        records = projects_mod.list_events(db, project_id, event_type=event_type, limit=limit)

    if not records:
        click.echo("No events recorded.")
        return
    for e in records:
        task = f" task {e.task_ordinal}" if e.task_ordinal is not None else ""
        click.echo(f"  {e.created_at} [{e.event_type}]{task} {e.message or ''}".rstrip())


# ── Worktree Commands ─────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect and clean up agent worktrees."""
    pass


@worktree_group.command("list")
@click.argument("project_id")
def worktree_list_cmd(project_id):
    """List agent worktrees of a project."""
    config = get_config()
    with _get_db() as db:
        project = _require_project(db, project_id)
    try:
        worktrees = _worktree_manager(config).list_on_disk(project.root_path)
    except GitError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not worktrees:
        click.echo("No agent worktrees.")
        return
    for wt in worktrees:
        click.echo(f"  {wt.branch or '(detached)'} -> {wt.path}")


@worktree_group.command("clean")
@click.argument("project_id")
def worktree_clean_cmd(project_id):
    """Remove every agent worktree of a project along with its branch."""
    config = get_config()
    with _get_db() as db:
        project = _require_project(db, project_id)
    removed = _worktree_manager(config).cleanup_all(project.root_path)
    click.echo(f"Removed {len(removed)} worktrees.")


# ── API Server Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the read-only JSON API."""
    from constellation.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api/projects")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from constellation.mcp.server import mcp
    from constellation.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


class _EchoSink:
    """Prints events to the terminal while `cst run` is active."""

    def deliver(self, event):
        task = f" #{event.task_ordinal}" if event.task_ordinal is not None else ""
        click.echo(f"[{event.event_type}]{task} {event.message or ''}".rstrip())


def _echo_task(task) -> None:
    icon = STATUS_ICONS.get(task.status, "?")
    deps = f" [after {', '.join(str(d) for d in task.dependencies)}]" if task.dependencies else ""
    click.echo(f"  {icon} {task.ordinal}. {task.title} ({task.status}){deps}")
    if task.description:
        click.echo(f"      {task.description}")


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "root_path": p.root_path,
        "description": p.description,
        "default_branch": p.default_branch,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


if __name__ == "__main__":
    main()
