"""Prompts that teach each agent role its job and the marker protocol."""

from constellation.core.protocol import (
    MERGE_CONFLICT,
    MERGE_END,
    MERGE_SUCCESS,
    PLAN_END,
    PLAN_SEPARATOR,
    PLAN_START,
    TASK_COMPLETE,
)
from constellation.db.models import PlanTask, Project

PLAN_FORMAT = (
    "## Plan Output Format\n"
    "When you are ready to present the plan, output it using EXACTLY this format.\n"
    "The server parses these markers to extract tasks.\n\n"
    f"{PLAN_START}\n"
    "TASK: <short title>\n"
    "DESC: <one-line description of what to do>\n"
    'DEPS: <comma-separated task numbers this depends on, or "none">\n'
    f"{PLAN_SEPARATOR}\n"
    "TASK: <short title>\n"
    "DESC: <one-line description>\n"
    "DEPS: none\n"
    f"{PLAN_END}\n\n"
    "Rules for the plan:\n"
    "- Each task should be completable by a single agent in one session\n"
    "- One concern per task, each independently testable\n"
    "- Order tasks so dependencies come first\n"
    '- DEPS uses task numbers, e.g. "1,2" means it depends on tasks 1 and 2\n'
    "- Aim for 3-10 tasks; group related work if you need more"
)

COMPLETION_SIGNAL = (
    "## Signaling Completion\n"
    "When you have finished your task:\n"
    "1. Make sure all changes are committed to your branch\n"
    "2. Output this exact marker on its own line:\n\n"
    f"{TASK_COMPLETE}\n\n"
    "This tells the server you are done and triggers the merge."
)

MERGE_SIGNALS = (
    "## Signaling Merge Results\n"
    "After attempting a merge, output one of these blocks, each marker on its own line.\n\n"
    "On success:\n"
    f"{MERGE_SUCCESS}\n"
    "BRANCH: <branch-name>\n"
    f"{MERGE_END}\n\n"
    "On conflict:\n"
    f"{MERGE_CONFLICT}\n"
    "BRANCH: <branch-name>\n"
    "DETAILS: <brief description of what conflicted>\n"
    f"{MERGE_END}"
)


def _project_section(project: Project) -> str:
    parts = ["## Project Details", f"Name: {project.name}"]
    if project.description:
        parts.append(f"Description: {project.description}")
    parts.append(f"Directory: {project.root_path}")
    return "\n".join(parts)


def build_coordinator_prompt(project: Project) -> str:
    parts = []
    parts.append(f'You are the COORDINATOR agent for the project "{project.name}".')
    parts.append(
        "\n## Your Role\n"
        "Analyze the project description and any existing code, then produce a plan\n"
        "of small, focused tasks that worker agents can carry out in parallel."
    )
    parts.append("\n" + _project_section(project))
    parts.append(
        "\n## Instructions\n"
        "1. Examine the project directory: existing files, tech stack, tests, build setup.\n"
        "2. Break the work into small tasks, each handled by one worker in one session.\n"
        "3. If the directory is empty, start with a scaffolding task.\n"
        "4. Output the plan in the format below."
    )
    parts.append("\n" + PLAN_FORMAT)
    parts.append(
        "\n## Rules\n"
        "- Do NOT implement the tasks yourself and do not write code.\n"
        "- Keep task descriptions actionable and specific.\n"
        "- Once the plan is printed your work is done; the operator reviews it\n"
        "  and the server dispatches workers."
    )
    return "\n".join(parts)


def build_worker_prompt(
    project: Project,
    task: PlanTask,
    all_tasks: list[PlanTask],
    branch: str,
) -> str:
    parts = []
    parts.append(f'You are a WORKER agent for the project "{project.name}".')
    parts.append(f"\n## Your Task\n**{task.title}**\n\n{task.description}")
    parts.append("\n" + _project_section(project))
    parts.append(f"Your branch: {branch}")

    parts.append("\n## Full Plan (context only, do YOUR task)")
    for t in all_tasks:
        marker = "  <- YOUR TASK" if t.ordinal == task.ordinal else ""
        parts.append(f"  {t.ordinal}. [{t.status.upper()}] {t.title}{marker}")

    parts.append(
        "\n## Instructions\n"
        f"1. You are on branch `{branch}` in your own worktree. Verify with\n"
        "   `git branch --show-current`.\n"
        "2. Complete your task and write or update tests where it makes sense.\n"
        '3. Commit your changes: `git add -A && git commit -m "<message>"`.\n'
        "4. Signal completion (see below)."
    )
    parts.append(
        "\n## Rules\n"
        "- Only do YOUR task; note other needed work instead of doing it.\n"
        "- Stay on your branch. Do not checkout or merge other branches.\n"
        "- Do not modify CI or test configuration unless that is your task."
    )
    parts.append("\n" + COMPLETION_SIGNAL)
    return "\n".join(parts)


def build_merger_prompt(project: Project) -> str:
    base = project.default_branch or "main"
    parts = []
    parts.append(f'You are the MERGE agent for the project "{project.name}".')
    parts.append(
        "\n## Your Role\n"
        f"When workers finish, you merge their branches into `{base}`, one at a time."
    )
    parts.append("\n" + _project_section(project))
    parts.append(
        "\n## Merge Procedure\n"
        "The server sends you one message per branch. For each:\n"
        f"1. `git checkout {base}`\n"
        "2. `git merge <branch-name> --no-edit`\n"
        "3. If the merge succeeds, run the tests if there are any, then signal success.\n"
        "4. If it conflicts, resolve straightforward conflicts and commit, then signal\n"
        "   success. Otherwise run `git merge --abort` and signal a conflict."
    )
    parts.append(
        "\n## Rules\n"
        "- Never force anything onto the main branch.\n"
        "- Never skip tests that exist.\n"
        "- One merge at a time; finish and signal before starting the next."
    )
    parts.append("\n" + MERGE_SIGNALS)
    parts.append("\nAfter signaling, wait for the next instruction.")
    return "\n".join(parts)


def build_merge_instruction(branch: str, task_title: str) -> str:
    """Message written to the merger's stdin when a branch is ready."""
    return (
        "A worker has completed their task. Please merge their branch.\n\n"
        f"Branch: {branch}\n"
        f"Task: {task_title}\n\n"
        "Follow your merge procedure and signal the result."
    )
