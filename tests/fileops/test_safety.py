from pathlib import Path

import pytest

from slab.fileops.operations import Create, Delete, Edit, Rename
from slab.fileops.safety import Allowed, AllowedWithConfirmation, Denied, check_path, evaluate_safety


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    (root / ".git").mkdir(parents=True)
    (root / "src").mkdir()
    return root.resolve()


class TestCheckPath:
    def test_inside_root_allowed(self, root):
        assert check_path(Path("src/app.py"), root) == Allowed()

    def test_git_config_denied(self, root):
        verdict = check_path(Path(".git/config"), root)
        assert isinstance(verdict, Denied)
        assert "protected" in verdict.reason

    def test_git_component_denied_case_insensitive(self, root):
        assert isinstance(check_path(Path("sub/.GIT/hooks/pre-commit"), root), Denied)

    def test_absolute_git_path_denied(self, root):
        assert isinstance(check_path(root / ".git" / "HEAD", root), Denied)

    def test_traversal_denied(self, root):
        verdict = check_path(Path("../outside.txt"), root)
        assert isinstance(verdict, Denied)
        assert "traversal" in verdict.reason

    def test_traversal_that_returns_inside_is_allowed(self, root):
        assert check_path(Path("src/../README.md"), root) == Allowed()

    def test_absolute_outside_needs_confirmation(self, root):
        assert isinstance(check_path(Path("/etc/hosts"), root), AllowedWithConfirmation)

    def test_absolute_inside_allowed(self, root):
        assert check_path(root / "src" / "x.py", root) == Allowed()

    def test_symlink_into_git_denied(self, root):
        (root / "link").symlink_to(root / ".git")
        assert isinstance(check_path(Path("link/config"), root), Denied)

    def test_symlink_escaping_root_denied(self, root, tmp_path):
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        (root / "escape").symlink_to(outside)
        assert isinstance(check_path(Path("escape/file.txt"), root), Denied)


class TestEvaluateSafety:
    def test_git_config_vs_etc_hosts(self, root):
        assert isinstance(evaluate_safety(Edit(Path(".git/config"), "x"), root), Denied)
        assert isinstance(evaluate_safety(Edit(Path("/etc/hosts"), "x"), root), AllowedWithConfirmation)

    def test_every_kind_is_checked(self, root):
        for op in (Create(Path(".git/x"), ""), Delete(Path(".git/x")), Edit(Path(".git/x"), "")):
            assert isinstance(evaluate_safety(op, root), Denied)

    def test_rename_takes_strictest_end(self, root):
        assert isinstance(evaluate_safety(Rename(Path("src/a.py"), Path(".git/a.py")), root), Denied)
        assert isinstance(evaluate_safety(Rename(Path("src/a.py"), Path("/tmp/a.py")), root), AllowedWithConfirmation)
        assert evaluate_safety(Rename(Path("src/a.py"), Path("src/b.py")), root) == Allowed()

    def test_verdict_is_pure(self, root):
        op = Create(Path("../x"), "")
        assert evaluate_safety(op, root) == evaluate_safety(op, root)
