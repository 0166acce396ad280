"""Core data models for change propagation.

Covers: repositories, change sets (file lists and patch blobs), session
backups, and the per-item results produced by apply and revert runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Strategy(Enum):
    """How a change set is carried over to a target."""

    FILES = "files"  # Whole-file copy and replace
    PATCH = "patch"  # git patch / mailbox application


class ExtractMode(Enum):
    """Where the change set comes from in the source repository."""

    WORKING = "working"  # Uncommitted changes since the last commit
    COMMIT = "commit"  # A single commit
    RANGE = "range"  # A commit range A..B
    MANUAL = "manual"  # Operator-picked subset of the working-tree changes
    COMMITS = "commits"  # Operator-picked commits from recent history


class Scope(Enum):
    """Which working-tree changes count for ``ExtractMode.WORKING``."""

    UNSTAGED = "unstaged"
    STAGED = "staged"
    BOTH = "both"


class PatchKind(Enum):
    """Shape of a patch blob; decides how it is probed and applied."""

    DIFF = "diff"  # Plain working-tree diff (git apply)
    COMMITS = "commits"  # format-patch mailbox (git am)


class ItemStatus(Enum):
    """Outcome of one (target, item) pair in a run."""

    OK = "OK"
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    RESTORED = "RESTORED"
    REVERTED = "REVERTED"


# --- Repository ---


@dataclass(frozen=True)
class Repository:
    """A local git working copy. Source or target is decided per operation."""

    name: str
    path: Path

    @classmethod
    def from_path(cls, path: str | Path) -> "Repository":
        resolved = Path(path).resolve()
        return cls(name=resolved.name, path=resolved)


# --- Change set ---


@dataclass(frozen=True)
class ChangeSet:
    """The output of one extraction. Read-only for every later stage."""

    source: Repository
    strategy: Strategy
    mode: ExtractMode
    paths: tuple[str, ...] = ()
    patch: bytes = b""
    patch_kind: PatchKind | None = None
    commits: tuple[str, ...] = ()

    @property
    def items(self) -> list[str]:
        """Labels of the units a run processes for each target."""
        if self.strategy == Strategy.FILES:
            return list(self.paths)
        return [PATCH_ITEM]

    @property
    def is_empty(self) -> bool:
        if self.strategy == Strategy.FILES:
            return not self.paths
        return not self.patch.strip()

    def with_paths(self, paths: list[str]) -> "ChangeSet":
        """Return a copy restricted to ``paths`` (used by the policy filter)."""
        return ChangeSet(
            source=self.source,
            strategy=self.strategy,
            mode=self.mode,
            paths=tuple(paths),
            patch=self.patch,
            patch_kind=self.patch_kind,
            commits=self.commits,
        )


# Item label used for the single per-repository unit of a patch run
PATCH_ITEM = "(patch)"


# --- Backups ---


@dataclass
class BackupRecord:
    """Ledger entry for one backup artifact inside a session directory."""

    session_id: str
    strategy: Strategy
    repo_name: str
    repo_path: str
    relative_path: str = ""  # Files strategy: path inside the repo
    artifact: str = ""  # Relative to the session directory
    head: str = ""  # Patch strategy: HEAD before the apply

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "strategy": self.strategy.value,
            "repo_name": self.repo_name,
            "repo_path": self.repo_path,
            "relative_path": self.relative_path,
            "artifact": self.artifact,
            "head": self.head,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupRecord":
        return cls(
            session_id=data["session_id"],
            strategy=Strategy(data["strategy"]),
            repo_name=data["repo_name"],
            repo_path=data["repo_path"],
            relative_path=data.get("relative_path", ""),
            artifact=data.get("artifact", ""),
            head=data.get("head", ""),
        )

    @property
    def item(self) -> str:
        return self.relative_path or PATCH_ITEM


# --- Results ---


@dataclass
class ItemResult:
    """Status of one item for one target. Never changed once produced."""

    target: str
    item: str
    status: ItemStatus
    reason: str = ""
    detail: str = ""
    confirmed: list[str] = field(default_factory=list)  # Gates the operator affirmed

    @property
    def label(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value
