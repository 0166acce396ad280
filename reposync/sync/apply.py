"""Apply engine — mutate targets, always after a same-session backup.

Whole-file strategy walks each file through a fixed decision tree (missing
source, missing directory, binary, local conflict, critical path) before a
backup and a byte copy. Patch strategy treats each target repository as one
unit: critical paths it touches are confirmed, then one pre-state backup, then
``git apply --3way`` for working-tree diffs or ``git am -3`` for commit
mailboxes.
"""

from __future__ import annotations

import filecmp
import shutil
from contextlib import nullcontext
from pathlib import Path
from typing import Callable, ContextManager

from git import GitCommandError, Repo
from loguru import logger

from reposync.errors import (
    BackupError,
    ConflictError,
    MutationError,
    NotARepository,
    PathError,
    SessionError,
    SyncError,
)
from reposync.models.change_set import (
    PATCH_ITEM,
    ChangeSet,
    ItemResult,
    ItemStatus,
    PatchKind,
    Repository,
    Strategy,
)
from reposync.sync.decisions import Decision, DecisionPolicy, Gate, RunAborted
from reposync.sync.policy import PolicySet, classify_file, default_policy, is_critical
from reposync.sync.prober import CompatibilityReport, ConflictProber
from reposync.sync.report import RunReport
from reposync.sync.session import Session, SessionManager
from reposync.utils import git_ops

Activity = Callable[[str], ContextManager]


def no_activity(message: str) -> ContextManager:
    return nullcontext()


class ApplyEngine:
    """Applies a change set to targets, one target and one item at a time."""

    def __init__(
        self,
        sessions: SessionManager,
        decisions: DecisionPolicy,
        policy: PolicySet | None = None,
        prober: ConflictProber | None = None,
        skip_binaries: bool = False,
        context_lines: int = 10,
        activity: Activity = no_activity,
        on_result: Callable[[ItemResult], None] | None = None,
    ):
        self.sessions = sessions
        self.decisions = decisions
        self.policy = policy or default_policy()
        self.prober = prober or ConflictProber()
        self.skip_binaries = skip_binaries
        self.context_lines = context_lines
        self.activity = activity
        self.on_result = on_result
        self._dir_answers: dict[tuple[str, Path], bool] = {}

    def run(
        self,
        session: Session,
        targets: list[Repository],
        change_set: ChangeSet,
        reports: dict[str, CompatibilityReport] | None = None,
    ) -> RunReport:
        """Apply ``change_set`` to every target in order.

        Per-item errors become FAILED results; an ABORT answer at any gate
        stops the run but leaves what was already applied in place.
        """
        report = RunReport(
            session_id=session.id,
            action="apply",
            targets=[t.name for t in targets],
            items=change_set.items,
        )
        reports = reports or {}

        try:
            for target in targets:
                if change_set.strategy == Strategy.FILES:
                    self._run_files(report, session, target, change_set)
                else:
                    probe = reports.get(target.name)
                    compatible = probe.compatible if probe else True
                    result = self._guarded(
                        target,
                        PATCH_ITEM,
                        lambda: self.apply_patch(session, target, change_set, compatible),
                    )
                    self._emit(report.add(result))
        except RunAborted as e:
            report.aborted = True
            self._emit(report.add(e.result))
            logger.warning("Run aborted by operator; items already applied stay applied")

        logger.info(report.summary())
        return report

    # ------------------------------------------------------------------
    # Whole-file strategy
    # ------------------------------------------------------------------

    def apply_file(
        self,
        session: Session,
        source: Repository,
        target: Repository,
        path: str,
    ) -> ItemResult:
        """Copy one file from ``source`` over its counterpart in ``target``."""
        confirmed: list[str] = []
        src = source.path / path
        dest = target.path / path

        try:
            self._check_paths(target, src, dest, path)
        except PathError as e:
            return self._result(target, path, ItemStatus.FAILED, e.reason, str(e))

        if self.skip_binaries and classify_file(src) == "binary":
            return self._result(target, path, ItemStatus.SKIPPED, "Binary")

        try:
            self._check_overwrite(target, path, confirmed)
        except ConflictError as e:
            return self._result(target, path, ItemStatus.SKIPPED, e.reason, str(e), confirmed)

        if dest.exists():
            try:
                self.sessions.record_backup(session, target, path, src=dest)
            except (BackupError, SessionError) as e:
                return self._result(
                    target, path, ItemStatus.FAILED, "BackupError", str(e), confirmed
                )

        try:
            with self.activity(f"Copying {path} -> {target.name}"):
                shutil.copyfile(src, dest)
        except OSError as e:
            logger.error(f"Copy failed for {target.name}/{path}: {e}")
            return self._result(target, path, ItemStatus.FAILED, "CopyFailed", str(e), confirmed)

        if dest.is_file() and filecmp.cmp(src, dest, shallow=False):
            return self._result(target, path, ItemStatus.OK, confirmed=confirmed)
        return self._result(target, path, ItemStatus.FAILED, "Mismatch", confirmed=confirmed)

    def _run_files(
        self,
        report: RunReport,
        session: Session,
        target: Repository,
        change_set: ChangeSet,
    ) -> None:
        try:
            git_ops.open_repo(target.path)
        except NotARepository as e:
            logger.error(f"{e}. Skipping {target.name}")
            for path in change_set.paths:
                self._emit(report.add(
                    ItemResult(target.name, path, ItemStatus.FAILED, "NotARepository", str(e))
                ))
            return

        for path in change_set.paths:
            result = self._guarded(
                target,
                path,
                lambda: self.apply_file(session, change_set.source, target, path),
            )
            self._emit(report.add(result))

    def _check_paths(self, target: Repository, src: Path, dest: Path, path: str) -> None:
        if not src.is_file():
            raise PathError(f"Source file missing: {src}", "MissingSource")
        if not dest.parent.is_dir() and not self._ensure_dir(target, dest.parent, path):
            raise PathError(f"No destination directory for {target.name}/{path}", "NoPath")

    def _check_overwrite(self, target: Repository, path: str, confirmed: list[str]) -> None:
        """Gate overwrites of locally modified and critical files."""
        if self.prober.file_conflict(target, path):
            logger.warning(f"Local changes in {target.name}/{path}")
            if not self._confirm(Gate.CONFLICT, target, path, confirmed):
                raise ConflictError(f"Kept local changes in {target.name}/{path}", "Conflict")
        if is_critical(path, self.policy):
            if not self._confirm(Gate.CRITICAL, target, path, confirmed):
                raise ConflictError(f"Critical file {target.name}/{path} not confirmed", "Critical")

    def _ensure_dir(self, target: Repository, directory: Path, path: str) -> bool:
        """Create a missing destination directory if the operator agrees."""
        key = (target.name, directory)
        if key not in self._dir_answers:
            rel = directory.relative_to(target.path).as_posix()
            allowed = self._confirm(Gate.CREATE_DIR, target, rel, [], item=path)
            if allowed:
                try:
                    directory.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    logger.error(f"Cannot create {directory}: {e}")
                    allowed = False
            self._dir_answers[key] = allowed
        return self._dir_answers[key]

    # ------------------------------------------------------------------
    # Patch strategy
    # ------------------------------------------------------------------

    def apply_patch(
        self,
        session: Session,
        target: Repository,
        change_set: ChangeSet,
        compatible: bool = True,
    ) -> ItemResult:
        """Apply the patch blob to one target repository as a single unit."""
        confirmed: list[str] = []
        repo = git_ops.open_repo(target.path)

        if not compatible:
            if not self._confirm(Gate.INCOMPATIBLE, target, PATCH_ITEM, confirmed):
                return self._result(target, PATCH_ITEM, ItemStatus.SKIPPED, "Conflict")

        message = f"Sync apply (uncommitted) from {change_set.source.name} @ {session.id}"
        with git_ops.patch_file(change_set.patch) as patch:
            try:
                paths = git_ops.touched_paths(repo, patch)
            except GitCommandError as e:
                return self._result(
                    target, PATCH_ITEM, ItemStatus.FAILED, "unreadable patch",
                    git_ops.git_error_detail(e), confirmed,
                )

            try:
                self._check_critical(target, paths, confirmed)
            except ConflictError as e:
                return self._result(target, PATCH_ITEM, ItemStatus.SKIPPED, e.reason, str(e), confirmed)

            head = git_ops.head_commit(repo)
            try:
                pre_state = git_ops.diff_against(repo, head, self.context_lines)
                self.sessions.record_backup(session, target, data=pre_state, head=head)
            except (BackupError, SessionError, GitCommandError) as e:
                detail = git_ops.git_error_detail(e) if isinstance(e, GitCommandError) else str(e)
                return self._result(
                    target, PATCH_ITEM, ItemStatus.FAILED, "BackupError", detail, confirmed
                )

            try:
                with self.activity(f"Applying patch to {target.name}"):
                    if change_set.patch_kind == PatchKind.COMMITS:
                        self._apply_commits(repo, patch)
                    else:
                        self._apply_diff(repo, patch, paths, message)
            except MutationError as e:
                logger.error(f"Apply failed for {target.name}: {e}\n{e.detail}")
                return self._result(
                    target, PATCH_ITEM, ItemStatus.FAILED, str(e), e.detail, confirmed
                )

        return self._result(target, PATCH_ITEM, ItemStatus.APPLIED, confirmed=confirmed)

    def _check_critical(self, target: Repository, paths: list[str], confirmed: list[str]) -> None:
        """Every critical path a patch touches needs its own confirmation."""
        for path in paths:
            if is_critical(path, self.policy):
                if not self._confirm(Gate.CRITICAL, target, path, confirmed, item=PATCH_ITEM):
                    raise ConflictError(
                        f"Patch touches critical file {target.name}/{path}", "Critical"
                    )

    def _apply_diff(self, repo: Repo, patch: Path, paths: list[str], message: str) -> None:
        """3-way apply; leave conflicts or rejected hunks visible on failure."""
        try:
            git_ops.apply_3way(repo, patch)
        except GitCommandError as e:
            detail = git_ops.git_error_detail(e)
            if git_ops.has_conflicts(repo):
                raise MutationError("merge conflicts left in working tree", detail)
            try:
                git_ops.apply_reject(repo, patch)
            except GitCommandError as reject_error:
                detail += "\n" + git_ops.git_error_detail(reject_error)
                raise MutationError("rejected hunks left as .rej files", detail)
            logger.warning(f"3-way apply failed, applied without it: {detail}")

        try:
            git_ops.commit_paths_only(repo, message, paths)
        except GitCommandError as e:
            raise MutationError("applied but commit failed", git_ops.git_error_detail(e))

    def _apply_commits(self, repo: Repo, patch: Path) -> None:
        """Replay commits; on failure abort back to the pre-attempt state."""
        try:
            git_ops.am(repo, patch)
        except GitCommandError as e:
            detail = git_ops.git_error_detail(e)
            try:
                git_ops.am_abort(repo)
            except GitCommandError as abort_error:
                detail += "\ngit am --abort failed: " + git_ops.git_error_detail(abort_error)
            raise MutationError("git am failed and was aborted", detail)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _confirm(
        self,
        gate: Gate,
        target: Repository,
        subject: str,
        confirmed: list[str],
        item: str | None = None,
    ) -> bool:
        decision = self.decisions.decide(gate, f"{target.name}/{subject}")
        if decision == Decision.ABORT:
            raise RunAborted(ItemResult(
                target.name, item or subject, ItemStatus.SKIPPED, "Aborted", confirmed=list(confirmed)
            ))
        if decision == Decision.PROCEED:
            confirmed.append(gate.value)
            return True
        return False

    def _guarded(self, target: Repository, item: str, action: Callable[[], ItemResult]) -> ItemResult:
        """Run one item; any error becomes a FAILED result for that item."""
        try:
            return action()
        except (SyncError, GitCommandError, OSError) as e:
            detail = git_ops.git_error_detail(e) if isinstance(e, GitCommandError) else str(e)
            logger.error(f"{target.name}/{item} failed: {detail}")
            return ItemResult(target.name, item, ItemStatus.FAILED, type(e).__name__, detail)

    def _result(
        self,
        target: Repository,
        item: str,
        status: ItemStatus,
        reason: str = "",
        detail: str = "",
        confirmed: list[str] | None = None,
    ) -> ItemResult:
        result = ItemResult(target.name, item, status, reason, detail, list(confirmed or []))
        log = logger.error if status == ItemStatus.FAILED else logger.info
        log(f"{target.name}/{item}: {result.label}")
        return result

    def _emit(self, result: ItemResult) -> None:
        if self.on_result:
            self.on_result(result)
