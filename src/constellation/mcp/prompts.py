"""MCP prompt templates for common workflows."""

from constellation.core.prompts import PLAN_FORMAT
from constellation.mcp.server import mcp


@mcp.prompt()
def plan_format(goal: str) -> str:
    """Generate a prompt that asks for a plan in the marker format the orchestrator parses."""
    return (
        f"I want to build the following:\n\n"
        f"{goal}\n\n"
        f"Break this into small tasks that separate agents can work on in parallel.\n\n"
        f"{PLAN_FORMAT}\n\n"
        f"When you have written the plan, validate it with the check_plan tool."
    )


@mcp.prompt()
def review_plan(project: str) -> str:
    """Generate a prompt to review a plan waiting for approval."""
    return (
        f"The coordinator for project '{project}' has proposed a plan.\n\n"
        f"Use get_orchestration to read the tasks, then check:\n"
        f"1. Each task is small enough for one agent session\n"
        f"2. Dependencies are correct and nothing depends on later work by accident\n"
        f"3. Tasks that could run in parallel are not chained needlessly\n"
        f"4. Nothing important from the project description is missing\n\n"
        f"If the plan looks good, call approve_plan. Otherwise explain what should change."
    )


@mcp.prompt()
def status_report(project: str) -> str:
    """Generate a prompt for an orchestration status report."""
    return (
        f"Please report on the orchestration of project '{project}'.\n\n"
        f"Use get_orchestration and list_events, then summarize:\n"
        f"1. Current phase and overall progress\n"
        f"2. Workers running and the task each one has\n"
        f"3. Merges in progress or queued, and any conflicts\n"
        f"4. Failed tasks and the tasks they block\n"
        f"5. What needs operator attention"
    )
