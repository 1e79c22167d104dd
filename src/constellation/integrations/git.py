"""Git subprocess wrappers for repository, worktree and branch operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 30.0

# Identity used only for the empty root commit of freshly initialized repos
_INIT_IDENTITY = ["-c", "user.name=constellation", "-c", "user.email=constellation@localhost"]


class GitError(Exception):
    """Raised when a git command fails or times out."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e


def toplevel(cwd: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> Path | None:
    """Return the top-level directory of the repository containing cwd, if any."""
    try:
        out = run_git(["rev-parse", "--show-toplevel"], cwd=cwd, timeout=timeout)
    except GitError:
        return None
    return Path(out).resolve() if out else None


def has_commits(cwd: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> bool:
    try:
        run_git(["rev-parse", "--verify", "HEAD"], cwd=cwd, timeout=timeout)
        return True
    except GitError:
        return False


def init_repo(
    repo_path: str | Path,
    branch: str = "main",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> None:
    """Initialize a repository whose HEAD points at `branch` (no commit yet)."""
    run_git(["init"], cwd=repo_path, timeout=timeout)
    run_git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=repo_path, timeout=timeout)


def commit_empty(
    repo_path: str | Path,
    message: str = "Initial commit",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Create an empty commit on the current branch."""
    return run_git(
        _INIT_IDENTITY + ["commit", "--allow-empty", "-m", message],
        cwd=repo_path,
        timeout=timeout,
    )


def git_path(repo_path: str | Path, name: str, timeout: float | None = DEFAULT_TIMEOUT) -> Path:
    """Resolve a path inside the git directory (e.g. 'info/exclude')."""
    out = run_git(["rev-parse", "--git-path", name], cwd=repo_path, timeout=timeout)
    path = Path(out)
    if not path.is_absolute():
        path = Path(repo_path) / path
    return path


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Create a new git worktree on a new branch started from `base_branch`."""
    args = ["worktree", "add", "-b", branch, str(worktree_path), base_branch]
    return run_git(args, cwd=repo_path, timeout=timeout)


def worktree_list(repo_path: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path, timeout=timeout)
    worktrees = []
    current: dict = {}

    for line in output.split("\n") + [""]:
        if not line:
            if current:
                worktrees.append(
                    WorktreeInfo(
                        path=current.get("worktree", ""),
                        branch=current.get("branch", "").replace("refs/heads/", ""),
                        head=current.get("HEAD", ""),
                        is_bare=current.get("bare", False),
                    )
                )
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    return worktrees


def worktree_remove(
    repo_path: str | Path,
    worktree_path: str | Path,
    force: bool = False,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path, timeout=timeout)


def worktree_prune(repo_path: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Drop administrative entries for worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path, timeout=timeout)


def branch_exists(repo_path: str | Path, branch: str, timeout: float | None = DEFAULT_TIMEOUT) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path, timeout=timeout)
        return True
    except GitError:
        return False


def delete_branch(
    repo_path: str | Path,
    branch: str,
    force: bool = False,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path, timeout=timeout)


def get_current_branch(cwd: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Get the branch HEAD points at, including an unborn one."""
    return run_git(["symbolic-ref", "--short", "HEAD"], cwd=cwd, timeout=timeout)
