"""Project directory creation and working-directory validation."""

import re
from pathlib import Path


class PathValidationError(Exception):
    """Raised when a path resolves outside the directory it must stay in."""


def sanitize_project_name(name: str) -> str:
    """Reduce a project name to a directory-safe slug."""
    slug = re.sub(r"[^a-z0-9-]", "-", name.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or "project"


def create_project_directory(base_dir: str | Path, name: str) -> Path:
    """Create a fresh directory for a project under base_dir.

    Appends -2, -3, ... when the slug is taken.
    """
    base = Path(base_dir).expanduser().resolve()
    base.mkdir(parents=True, exist_ok=True)
    slug = sanitize_project_name(name)
    candidate = base / slug
    suffix = 1
    while candidate.exists():
        suffix += 1
        candidate = base / f"{slug}-{suffix}"
    candidate.mkdir()
    return candidate


def is_within(path: str | Path, root: str | Path) -> bool:
    resolved = Path(path).resolve()
    resolved_root = Path(root).resolve()
    return resolved == resolved_root or resolved_root in resolved.parents


def validate_agent_cwd(cwd: str | Path, project_root: str | Path) -> Path:
    """Resolve cwd and ensure it lies inside the project root.

    Symlinks are resolved first, so a link pointing out of the project is
    rejected. Returns the resolved path.
    """
    root = Path(project_root)
    if not root.is_dir():
        raise PathValidationError(f"Project root '{project_root}' does not exist")
    path = Path(cwd)
    if not path.is_dir():
        raise PathValidationError(f"Agent directory '{cwd}' does not exist")
    if not is_within(path, root):
        raise PathValidationError(f"Agent directory '{cwd}' is outside the project directory")
    return path.resolve()
