"""Shared fixtures: throwaway git working copies under a common root."""

from dataclasses import dataclass
from pathlib import Path

import pytest
from git import Repo

from reposync.models.change_set import Repository
from reposync.sync.decisions import Decision, DecisionPolicy, Gate
from reposync.sync.session import SessionManager

BASE_FILES = {
    "README.md": "# project\n",
    "src/app.py": "line1\nline2\nline3\nline4\nline5\n",
    "config/app.json": '{"debug": false}\n',
    "node_modules/lib.js": "module.exports = {};\n",
}


def init_repo(path: Path, files: dict[str, str] | None = None) -> Repo:
    """Create a repo with a local identity and one commit of ``files``."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Sync Tester")
        cw.set_value("user", "email", "tester@example.com")
        cw.set_value("commit", "gpgsign", "false")
        cw.set_value("core", "autocrlf", "false")
    write_files(path, files if files is not None else BASE_FILES)
    repo.git.add("-A")
    repo.git.commit("-m", "initial", "--allow-empty")
    return repo


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        dest = root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(content)


def commit_all(repo: Repo, message: str) -> str:
    repo.git.add("-A")
    repo.git.commit("-m", message)
    return repo.head.commit.hexsha


def snapshot(root: Path) -> dict[str, bytes]:
    """Every file under ``root`` except git metadata, as bytes."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(root).parts
    }


class ScriptedPolicy(DecisionPolicy):
    """Answers gates from a table and remembers every question asked."""

    def __init__(self, answers: dict[Gate, Decision] | None = None, default: Decision = Decision.PROCEED):
        self.answers = answers or {}
        self.default = default
        self.asked: list[tuple[Gate, str]] = []

    def ask(self, gate: Gate, subject: str) -> Decision:
        self.asked.append((gate, subject))
        return self.answers.get(gate, self.default)


@dataclass
class Workspace:
    root: Path
    source: Repository
    target_a: Repository
    target_b: Repository
    bystander: Repository
    sessions: SessionManager

    def repo(self, repository: Repository) -> Repo:
        return Repo(repository.path)


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    root = tmp_path / "repos"
    for name in ("source", "target_a", "target_b", "bystander"):
        init_repo(root / name)
    return Workspace(
        root=root,
        source=Repository.from_path(root / "source"),
        target_a=Repository.from_path(root / "target_a"),
        target_b=Repository.from_path(root / "target_b"),
        bystander=Repository.from_path(root / "bystander"),
        sessions=SessionManager(tmp_path / ".reposync" / "sessions"),
    )
