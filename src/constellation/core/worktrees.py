"""Git worktree lifecycle management for worker agents.

Each worker gets a branch `work/<shortId>` checked out at
`<project-root>/.worktrees/<shortId>/`, where shortId is the first eight
characters of its agent id. Coordinator and merger run in the project root.
"""

import logging
import shutil
import threading
from pathlib import Path

from constellation.db.models import Worktree
from constellation.integrations import git
from constellation.integrations.git import GitError

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 8


class RepositoryInitError(Exception):
    """The project directory is not, and could not be made, a git repository."""


class WorktreeCreationError(Exception):
    """A worktree could not be created, even after clearing a stale branch."""


def short_id(agent_id: str) -> str:
    return agent_id[:SHORT_ID_LENGTH]


def _root_key(project_root: str | Path) -> str:
    return str(Path(project_root).resolve())


class WorktreeManager:
    def __init__(
        self,
        worktree_dir: str = ".worktrees",
        branch_prefix: str = "work/",
        git_timeout: float = git.DEFAULT_TIMEOUT,
    ):
        self.worktree_dir = worktree_dir
        self.branch_prefix = branch_prefix
        self.git_timeout = git_timeout
        self._worktrees: dict[str, dict[str, Worktree]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, project_root: str | Path) -> threading.Lock:
        key = _root_key(project_root)
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def _registry(self, project_root: str | Path) -> dict[str, Worktree]:
        return self._worktrees.setdefault(_root_key(project_root), {})

    # ── Repository ───────────────────────────────────────────────────────

    def ensure_repository(self, project_root: str | Path) -> bool:
        """Make sure the project root is a repository with at least one commit.

        Returns False instead of raising when that cannot be done.
        """
        root = Path(project_root).resolve()
        t = self.git_timeout
        with self._lock(root):
            try:
                root.mkdir(parents=True, exist_ok=True)
                if git.toplevel(root, timeout=t) != root:
                    logger.info("Initializing git repository in %s", root)
                    git.init_repo(root, "main", timeout=t)
                if not git.has_commits(root, timeout=t):
                    git.commit_empty(root, "Initial commit", timeout=t)
                return True
            except (GitError, OSError) as e:
                logger.error("Failed to initialize git repository in %s: %s", root, e)
                return False

    # ── Lifecycle ────────────────────────────────────────────────────────

    def create(self, project_root: str | Path, agent_id: str, base: str | None = None) -> Worktree:
        """Create an isolated worktree and branch for an agent.

        The branch starts from `base`, or from the root's current branch when
        no base is given.
        """
        root = Path(project_root).resolve()
        sid = short_id(agent_id)
        branch = f"{self.branch_prefix}{sid}"
        parent = root / self.worktree_dir
        path = parent / sid
        t = self.git_timeout

        with self._lock(root):
            registry = self._registry(root)
            existing = registry.get(agent_id)
            if existing and Path(existing.path).exists():
                return existing

            try:
                parent.mkdir(parents=True, exist_ok=True)
                self._ensure_excluded(root)
                base = base or self._default_branch(root)
            except (GitError, OSError) as e:
                raise WorktreeCreationError(f"Cannot prepare worktree for {sid}: {e}") from e

            try:
                git.worktree_add(root, path, branch, base, timeout=t)
            except GitError as e:
                if "already exists" not in str(e):
                    raise WorktreeCreationError(str(e)) from e
                logger.warning("Stale branch or worktree for %s, recreating: %s", branch, e)
                self._clear_stale(root, path, branch)
                try:
                    git.worktree_add(root, path, branch, base, timeout=t)
                except GitError as retry_err:
                    raise WorktreeCreationError(str(retry_err)) from retry_err

            worktree = Worktree(agent_id=agent_id, branch=branch, path=str(path))
            registry[agent_id] = worktree
        logger.info("Created worktree %s on %s (base %s)", path, branch, base)
        return worktree

    def remove(self, agent_id: str, project_root: str | Path, delete_branch: bool = False) -> None:
        """Best-effort removal of an agent's worktree. Never raises."""
        root = Path(project_root).resolve()
        with self._lock(root):
            worktree = self._registry(root).pop(agent_id, None)
            if worktree is None:
                return
            self._remove_path(root, Path(worktree.path))
            if delete_branch:
                try:
                    git.delete_branch(root, worktree.branch, force=True, timeout=self.git_timeout)
                except GitError as e:
                    logger.warning("Could not delete branch %s: %s", worktree.branch, e)
        logger.info("Removed worktree %s", worktree.path)

    def cleanup_all(self, project_root: str | Path) -> list[str]:
        """Remove every worktree under the reserved directory, with its branch.

        Covers worktrees left behind by earlier processes as well as those
        this manager created. Returns the removed paths.
        """
        root = Path(project_root).resolve()
        removed = [wt.path for wt in self.list_worktrees(root)]
        for agent_id in list(self._registry(root)):
            self.remove(agent_id, root, delete_branch=True)

        with self._lock(root):
            try:
                leftovers = self.list_on_disk(root)
            except GitError as e:
                logger.warning("Could not list worktrees in %s: %s", root, e)
                leftovers = []
            for wt in leftovers:
                self._remove_path(root, Path(wt.path))
                if wt.branch.startswith(self.branch_prefix):
                    try:
                        git.delete_branch(root, wt.branch, force=True, timeout=self.git_timeout)
                    except GitError as e:
                        logger.warning("Could not delete branch %s: %s", wt.branch, e)
                removed.append(wt.path)
        return removed

    # ── Queries ──────────────────────────────────────────────────────────

    def get(self, agent_id: str, project_root: str | Path) -> Worktree | None:
        return self._registry(project_root).get(agent_id)

    def path_for(self, agent_id: str, project_root: str | Path) -> Path:
        """Worktree path for the agent, or the project root if it has none."""
        worktree = self.get(agent_id, project_root)
        return Path(worktree.path) if worktree else Path(project_root).resolve()

    def list_worktrees(self, project_root: str | Path) -> list[Worktree]:
        return list(self._registry(project_root).values())

    def list_on_disk(self, project_root: str | Path) -> list[git.WorktreeInfo]:
        """Git's view of worktrees under the reserved directory, whoever made them."""
        root = Path(project_root).resolve()
        parent = (root / self.worktree_dir).resolve()
        return [
            wt for wt in git.worktree_list(root, timeout=self.git_timeout)
            if Path(wt.path).resolve().parent == parent
        ]

    # ── Internal helpers ─────────────────────────────────────────────────

    def _default_branch(self, root: Path) -> str:
        try:
            return git.get_current_branch(root, timeout=self.git_timeout) or "main"
        except GitError:
            return "main"

    def _ensure_excluded(self, root: Path) -> None:
        exclude = git.git_path(root, "info/exclude", timeout=self.git_timeout)
        entry = f"/{self.worktree_dir}/"
        content = exclude.read_text() if exclude.exists() else ""
        if entry in content.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not content or content.endswith("\n") else "\n"
        with open(exclude, "a") as f:
            f.write(f"{prefix}{entry}\n")

    def _clear_stale(self, root: Path, path: Path, branch: str) -> None:
        # Caller holds the project lock
        if path.exists():
            self._remove_path(root, path)
        else:
            try:
                git.worktree_prune(root, timeout=self.git_timeout)
            except GitError as e:
                logger.warning("git worktree prune failed in %s: %s", root, e)
        if not git.branch_exists(root, branch, timeout=self.git_timeout):
            return
        try:
            git.delete_branch(root, branch, force=True, timeout=self.git_timeout)
        except GitError as e:
            logger.warning("Could not delete stale branch %s: %s", branch, e)

    def _remove_path(self, root: Path, path: Path) -> None:
        # Caller holds the project lock
        try:
            git.worktree_remove(root, path, force=True, timeout=self.git_timeout)
            return
        except GitError as e:
            logger.warning("git worktree remove failed for %s, removing directly: %s", path, e)
        try:
            shutil.rmtree(path, ignore_errors=True)
            git.worktree_prune(root, timeout=self.git_timeout)
        except (GitError, OSError) as e:
            logger.warning("Cleanup of %s incomplete: %s", path, e)
