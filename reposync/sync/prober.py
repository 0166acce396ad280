"""Conflict probing — the dry run before anything is applied.

Files strategy: a file conflicts when the target's copy already differs from
its last commit, so copying over it would clobber local edits.

Patch strategy: a target conflicts when the patch cannot be applied to its
current tree. Working-tree diffs are checked with ``git apply --check``;
commit mailboxes are replayed in a throwaway worktree. Either way the target
is left exactly as it was found.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from git import GitCommandError
from loguru import logger

from reposync.errors import NotARepository
from reposync.models.change_set import ChangeSet, PatchKind, Repository, Strategy
from reposync.utils import git_ops


@dataclass
class FileCompatibility:
    path: str
    compatible: bool
    reason: str = ""


@dataclass
class CompatibilityReport:
    """Dry-run result for one target."""

    target: Repository
    compatible: bool = True
    reason: str = ""
    files: list[FileCompatibility] = field(default_factory=list)

    @property
    def conflicts(self) -> list[str]:
        return [f.path for f in self.files if not f.compatible]

    def summary(self) -> str:
        if self.compatible and not self.conflicts:
            return f"{self.target.name}: OK"
        if self.files and self.compatible:
            return f"{self.target.name}: {len(self.conflicts)} locally modified file(s)"
        return f"{self.target.name}: FAILED ({self.reason})"


class ConflictProber:
    """Runs non-mutating compatibility checks against targets."""

    def probe(self, target: Repository, change_set: ChangeSet) -> CompatibilityReport:
        try:
            repo = git_ops.open_repo(target.path)
        except NotARepository as e:
            logger.warning(str(e))
            return CompatibilityReport(target=target, compatible=False, reason="NotARepository")

        if change_set.strategy == Strategy.FILES:
            files = [self._probe_file(repo, path) for path in change_set.paths]
            return CompatibilityReport(target=target, files=files)

        with git_ops.patch_file(change_set.patch) as patch:
            try:
                if change_set.patch_kind == PatchKind.COMMITS:
                    git_ops.trial_am(repo, patch)
                else:
                    git_ops.check_apply(repo, patch)
            except GitCommandError as e:
                detail = git_ops.git_error_detail(e)
                logger.warning(f"Dry run failed for {target.name}: {detail}")
                return CompatibilityReport(
                    target=target, compatible=False, reason="patch does not apply cleanly"
                )

        logger.debug(f"Dry run OK for {target.name}")
        return CompatibilityReport(target=target)

    def file_conflict(self, target: Repository, path: str) -> bool:
        """Live check used by the apply engine right before a copy."""
        return not self._probe_file(git_ops.open_repo(target.path), path).compatible

    def _probe_file(self, repo, path: str) -> FileCompatibility:
        if git_ops.is_path_dirty(repo, path):
            return FileCompatibility(path=path, compatible=False, reason="local changes in target")
        return FileCompatibility(path=path, compatible=True)
