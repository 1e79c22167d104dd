"""Marker protocol spoken by coordinator, worker and merger agents.

Agents do not call an API; they print fixed text markers into their output.
Everything here is a pure function over text so the leniency rules live in
one place:

* a plan is accepted task by task (malformed blocks are dropped) but only
  when both envelope markers are present, in order;
* a merge result is accepted only as a complete, contiguous marker block,
  since it triggers real repository changes.
"""

import re
from dataclasses import dataclass

from constellation.db.models import CONFLICT, SUCCESS, MergeResult, PlanEntry

PLAN_START = "===PLAN_START==="
PLAN_END = "===PLAN_END==="
PLAN_SEPARATOR = "---"
TASK_COMPLETE = "===TASK_COMPLETE==="
MERGE_SUCCESS = "===MERGE_SUCCESS==="
MERGE_CONFLICT = "===MERGE_CONFLICT==="
MERGE_END = "===END==="

_SEPARATOR_RE = re.compile(r"^---$", re.M)
_TASK_RE = re.compile(r"^TASK:[ \t]*(.+)$", re.M)
_DESC_RE = re.compile(r"^DESC:[ \t]*(.+)$", re.M)
_DEPS_RE = re.compile(r"^DEPS:[ \t]*(.+)$", re.M)

_SUCCESS_RE = re.compile(
    r"===MERGE_SUCCESS===[ \t]*\n"
    r"BRANCH:[ \t]*([^\n]+?)[ \t]*\n"
    r"===END==="
)
_CONFLICT_RE = re.compile(
    r"===MERGE_CONFLICT===[ \t]*\n"
    r"BRANCH:[ \t]*([^\n]+?)[ \t]*\n"
    r"(?:DETAILS:[ \t]*([^\n]*?)[ \t]*\n)?"
    r"===END==="
)

_ANSI_RE = re.compile(
    r"\x1b\[[0-9;?]*[A-Za-z]"
    r"|\x1b\][^\x07]*\x07"
    r"|\x1b[()][A-Z0-9]"
    r"|\x1b[>=<]"
)


@dataclass
class ParsedOutput:
    """Tagged result of parse_output: exactly one payload is set."""

    kind: str  # "plan" | "completion" | "merge"
    plan: list[PlanEntry] | None = None
    merge: MergeResult | None = None


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and normalize line endings."""
    return _ANSI_RE.sub("", text).replace("\r\n", "\n")


def parse_plan(text: str) -> list[PlanEntry] | None:
    """Extract the task list between the plan markers, or None."""
    text = text.replace("\r\n", "\n")
    start = text.find(PLAN_START)
    end = text.find(PLAN_END)
    if start == -1 or end == -1 or end <= start:
        return None

    body = text[start + len(PLAN_START):end].strip()
    if not body:
        return None

    entries = []
    for block in _SEPARATOR_RE.split(body):
        block = block.strip()
        if not block:
            continue
        title_match = _TASK_RE.search(block)
        desc_match = _DESC_RE.search(block)
        if not title_match or not desc_match:
            continue
        title = title_match.group(1).strip()
        description = desc_match.group(1).strip()
        if not title or not description:
            continue

        deps_match = _DEPS_RE.search(block)
        deps_str = deps_match.group(1).strip() if deps_match else "none"
        entries.append(PlanEntry(title, description, _parse_deps(deps_str)))

    return entries or None


def _parse_deps(deps_str: str) -> list[int]:
    if deps_str.lower() == "none":
        return []
    deps = []
    for token in deps_str.split(","):
        try:
            deps.append(int(token.strip()))
        except ValueError:
            continue
    return deps


def render_plan(entries: list[PlanEntry]) -> str:
    """Serialize entries back into the plan marker format."""
    blocks = []
    for entry in entries:
        deps = ", ".join(str(d) for d in entry.dependencies) if entry.dependencies else "none"
        blocks.append(f"TASK: {entry.title}\nDESC: {entry.description}\nDEPS: {deps}")
    body = f"\n{PLAN_SEPARATOR}\n".join(blocks)
    return f"{PLAN_START}\n{body}\n{PLAN_END}"


def detect_completion(text: str) -> bool:
    return TASK_COMPLETE in text


def detect_merge_result(text: str) -> MergeResult | None:
    """Find the first complete merge marker block in the text."""
    text = text.replace("\r\n", "\n")
    success = _SUCCESS_RE.search(text)
    conflict = _CONFLICT_RE.search(text)

    if success and (not conflict or success.start() < conflict.start()):
        return MergeResult(SUCCESS, success.group(1).strip())
    if conflict:
        details = conflict.group(2).strip() if conflict.group(2) else None
        return MergeResult(CONFLICT, conflict.group(1).strip(), details or None)
    return None


def parse_output(text: str, expect: str | None = None) -> ParsedOutput | None:
    """Classify agent output as a merge result, a plan, or a completion signal.

    With `expect` set to one kind, only that detector runs; callers that know
    the role of the agent use this so a worker quoting a merge block cannot
    be mistaken for the merger.
    """
    kinds = (expect,) if expect else ("merge", "plan", "completion")
    for kind in kinds:
        if kind == "merge":
            merge = detect_merge_result(text)
            if merge:
                return ParsedOutput("merge", merge=merge)
        elif kind == "plan":
            plan = parse_plan(text)
            if plan:
                return ParsedOutput("plan", plan=plan)
        elif kind == "completion":
            if detect_completion(text):
                return ParsedOutput("completion")
        else:
            raise ValueError(f"Unknown output kind: {kind}")
    return None
