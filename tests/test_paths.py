"""Tests for project directory creation and cwd validation."""

import tempfile
from pathlib import Path

import pytest

from constellation.core.paths import (
    PathValidationError,
    create_project_directory,
    is_within,
    sanitize_project_name,
    validate_agent_cwd,
)


@pytest.fixture
def tmp():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d).resolve()


class TestSanitize:
    @pytest.mark.parametrize("name,slug", [
        ("My App", "my-app"),
        ("  weird__name!! ", "weird-name"),
        ("already-fine", "already-fine"),
        ("!!!", "project"),
    ])
    def test_slugs(self, name, slug):
        assert sanitize_project_name(name) == slug


class TestCreateProjectDirectory:
    def test_creates_slug_directory(self, tmp):
        path = create_project_directory(tmp / "projects", "My App")
        assert path == tmp / "projects" / "my-app"
        assert path.is_dir()

    def test_suffix_when_taken(self, tmp):
        first = create_project_directory(tmp, "app")
        second = create_project_directory(tmp, "app")
        third = create_project_directory(tmp, "app")
        assert [p.name for p in (first, second, third)] == ["app", "app-2", "app-3"]


class TestValidateAgentCwd:
    def test_root_itself_is_valid(self, tmp):
        assert validate_agent_cwd(tmp, tmp) == tmp

    def test_subdirectory_is_valid(self, tmp):
        sub = tmp / ".worktrees" / "abc"
        sub.mkdir(parents=True)
        assert validate_agent_cwd(sub, tmp) == sub

    def test_outside_rejected(self, tmp):
        root = tmp / "project"
        other = tmp / "other"
        root.mkdir()
        other.mkdir()
        with pytest.raises(PathValidationError, match="outside"):
            validate_agent_cwd(other, root)

    def test_dotdot_escape_rejected(self, tmp):
        root = tmp / "project"
        root.mkdir()
        (tmp / "other").mkdir()
        with pytest.raises(PathValidationError):
            validate_agent_cwd(root / ".." / "other", root)

    def test_symlink_escape_rejected(self, tmp):
        root = tmp / "project"
        outside = tmp / "outside"
        root.mkdir()
        outside.mkdir()
        (root / "link").symlink_to(outside)
        with pytest.raises(PathValidationError):
            validate_agent_cwd(root / "link", root)

    def test_missing_directory_rejected(self, tmp):
        with pytest.raises(PathValidationError, match="does not exist"):
            validate_agent_cwd(tmp / "missing", tmp)

    def test_missing_root_rejected(self, tmp):
        with pytest.raises(PathValidationError):
            validate_agent_cwd(tmp, tmp / "missing")

    def test_sibling_with_common_prefix_is_outside(self, tmp):
        (tmp / "app").mkdir()
        (tmp / "app-evil").mkdir()
        assert not is_within(tmp / "app-evil", tmp / "app")
