"""Revert engine — restore every target touched by a session.

Whole-file backups are copied back over the live file. Patch backups restore
the repository by reverse-applying the difference between the recorded
pre-apply HEAD and the current working tree, committing that, and then
re-applying the uncommitted changes the target had before the apply.

Records are independent: a failed one never stops the others. Files that
did not exist before a whole-file apply have no backup and are left in
place.
"""

from __future__ import annotations

import filecmp
import shutil
from pathlib import Path
from typing import Callable

from git import GitCommandError
from loguru import logger

from reposync.errors import SyncError
from reposync.models.change_set import BackupRecord, ItemResult, ItemStatus, Strategy
from reposync.sync.apply import Activity, no_activity
from reposync.sync.decisions import Decision, DecisionPolicy, Gate, RunAborted
from reposync.sync.report import RunReport
from reposync.sync.session import SessionManager
from reposync.utils import git_ops


class RevertEngine:
    """Reverts whole sessions recorded by a ``SessionManager``."""

    def __init__(
        self,
        sessions: SessionManager,
        decisions: DecisionPolicy,
        context_lines: int = 10,
        activity: Activity = no_activity,
        on_result: Callable[[ItemResult], None] | None = None,
    ):
        self.sessions = sessions
        self.decisions = decisions
        self.context_lines = context_lines
        self.activity = activity
        self.on_result = on_result

    def preview(self, session_id: str) -> list[BackupRecord]:
        """What a revert of ``session_id`` would restore, in revert order."""
        self.sessions.get_session(session_id)
        return list(reversed(self.sessions.load_session(session_id)))

    def revert(self, session_id: str) -> RunReport:
        """Restore every backup of a session.

        Raises:
            SessionError: The session does not exist.
        """
        records = self.preview(session_id)
        report = RunReport(session_id=session_id, action="revert")
        logger.info(f"Reverting session {session_id} ({len(records)} backup(s))")

        try:
            for record in records:
                result = self._guarded(record)
                report.add(result)
                if self.on_result:
                    self.on_result(result)
        except RunAborted as e:
            report.aborted = True
            report.add(e.result)
            if self.on_result:
                self.on_result(e.result)
            logger.warning("Revert aborted by operator; items already restored stay restored")

        logger.info(report.summary())
        return report

    def restore_file(self, record: BackupRecord) -> ItemResult:
        """Copy a whole-file snapshot back over the live path."""
        git_ops.open_repo(record.repo_path)
        artifact = self.sessions.artifact_path(record)
        dest = Path(record.repo_path) / record.relative_path

        if not artifact.is_file():
            return self._result(record, ItemStatus.FAILED, "MissingBackup")

        if not dest.parent.is_dir():
            decision = self.decisions.decide(
                Gate.CREATE_DIR, f"{record.repo_name}/{Path(record.relative_path).parent.as_posix()}"
            )
            if decision == Decision.ABORT:
                raise RunAborted(self._result(record, ItemStatus.SKIPPED, "Aborted"))
            if decision == Decision.SKIP:
                return self._result(record, ItemStatus.SKIPPED, "NoPath")
            dest.parent.mkdir(parents=True, exist_ok=True)

        with self.activity(f"Restoring {record.repo_name}/{record.relative_path}"):
            shutil.copyfile(artifact, dest)

        if filecmp.cmp(artifact, dest, shallow=False):
            return self._result(record, ItemStatus.RESTORED)
        return self._result(record, ItemStatus.FAILED, "Mismatch")

    def revert_repository(self, record: BackupRecord) -> ItemResult:
        """Bring a repository back to its recorded pre-apply state."""
        repo = git_ops.open_repo(record.repo_path)
        artifact = self.sessions.artifact_path(record)
        if not artifact.is_file():
            return self._result(record, ItemStatus.FAILED, "MissingBackup")

        message = f"Revert sync session {record.session_id}"
        commit_error = ""
        try:
            with self.activity(f"Reverting {record.repo_name}"):
                current = git_ops.diff_against(repo, record.head, self.context_lines)
                if current.strip():
                    with git_ops.patch_file(current) as patch:
                        paths = git_ops.touched_paths(repo, patch)
                        git_ops.apply_reverse(repo, patch)
                        try:
                            git_ops.commit_paths_only(repo, message, paths)
                        except GitCommandError as e:
                            # The tree is already reversed; local work still goes back below
                            commit_error = git_ops.git_error_detail(e)

                pre_state = artifact.read_bytes()
                if pre_state.strip():
                    with git_ops.patch_file(pre_state) as patch:
                        git_ops.restore_local_changes(repo, patch)
        except GitCommandError as e:
            detail = git_ops.git_error_detail(e)
            if commit_error:
                detail = f"{commit_error}\n{detail}"
            logger.error(f"Revert failed for {record.repo_name}: {detail}")
            return self._result(record, ItemStatus.FAILED, "RevertFailed", detail)

        if commit_error:
            logger.error(f"Revert of {record.repo_name} not committed: {commit_error}")
            return self._result(record, ItemStatus.FAILED, "RevertFailed", commit_error)
        return self._result(record, ItemStatus.REVERTED)

    def _guarded(self, record: BackupRecord) -> ItemResult:
        try:
            if record.strategy == Strategy.FILES:
                return self.restore_file(record)
            return self.revert_repository(record)
        except (SyncError, GitCommandError, OSError) as e:
            detail = git_ops.git_error_detail(e) if isinstance(e, GitCommandError) else str(e)
            logger.error(f"{record.repo_name}/{record.item} revert failed: {detail}")
            return ItemResult(record.repo_name, record.item, ItemStatus.FAILED, type(e).__name__, detail)

    def _result(
        self,
        record: BackupRecord,
        status: ItemStatus,
        reason: str = "",
        detail: str = "",
    ) -> ItemResult:
        result = ItemResult(record.repo_name, record.item, status, reason, detail)
        log = logger.error if status == ItemStatus.FAILED else logger.info
        log(f"[revert] {record.repo_name}/{record.item}: {result.label}")
        return result
