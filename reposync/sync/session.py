"""Sessions — the unit of reversibility.

Every apply run opens one session directory under ``<data_dir>/sessions``.
Backups are written there before each mutation and indexed in an
append-only ledger, so a whole run can be reverted later::

    sessions/20261017142501/
        session.json          # id, created, strategy, source, closed
        backups.jsonl         # one BackupRecord per line
        files/<repo>/<path>   # whole-file snapshots
        <repo>.pre.patch      # per-repository pre-state patch
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from reposync.errors import BackupError, SessionError
from reposync.models.change_set import BackupRecord, Repository, Strategy


@dataclass
class Session:
    """An open or completed apply run."""

    id: str
    path: Path
    strategy: Strategy
    source: str = ""
    created: str = ""
    closed: bool = False


class SessionManager:
    """Creates sessions, records backups, and reads them back for revert."""

    META_FILE = "session.json"
    LEDGER_FILE = "backups.jsonl"
    ID_FORMAT = "%Y%m%d%H%M%S"

    def __init__(self, sessions_dir: str | Path):
        self.sessions_dir = Path(sessions_dir)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open_session(self, strategy: Strategy, source: str = "") -> Session:
        """Allocate a unique, timestamp-ordered session directory."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now()
        base_id = now.strftime(self.ID_FORMAT)
        session_id = base_id
        suffix = 0
        while True:
            path = self.sessions_dir / session_id
            try:
                path.mkdir()
                break
            except FileExistsError:
                suffix += 1
                session_id = f"{base_id}-{suffix:02d}"

        session = Session(
            id=session_id,
            path=path,
            strategy=strategy,
            source=source,
            created=datetime.now(timezone.utc).isoformat(),
        )
        self._write_meta(session)
        logger.info(f"Opened session {session_id} ({strategy.value}) at {path}")
        return session

    def close_session(self, session: Session) -> None:
        """Freeze a session; later runs can never append to it."""
        session.closed = True
        self._write_meta(session)
        logger.info(f"Closed session {session.id}")

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def record_backup(
        self,
        session: Session,
        target: Repository,
        item: str = "",
        data: bytes | None = None,
        src: Path | None = None,
        head: str = "",
    ) -> BackupRecord:
        """Write a backup artifact and its ledger entry.

        Whole-file backups copy ``src`` to ``files/<repo>/<item>``. Patch
        backups write ``data`` to ``<repo>.pre.patch`` together with the
        pre-apply ``head``; only one is allowed per repository per session.

        Raises:
            SessionError: The session is closed.
            BackupError: The artifact or ledger entry could not be written.
        """
        if session.closed or self._is_closed(session):
            raise SessionError(f"Session {session.id} is closed")

        if session.strategy == Strategy.FILES:
            if src is None or not item:
                raise BackupError("Whole-file backup needs a source file and a path")
            artifact = Path("files") / target.name / item
        else:
            if data is None:
                raise BackupError("Patch backup needs pre-state data")
            if any(r.repo_name == target.name for r in self.load_session(session.id)):
                raise BackupError(f"{target.name} already has a backup in session {session.id}")
            artifact = Path(f"{target.name}.pre.patch")

        record = BackupRecord(
            session_id=session.id,
            strategy=session.strategy,
            repo_name=target.name,
            repo_path=str(target.path),
            relative_path=item if session.strategy == Strategy.FILES else "",
            artifact=artifact.as_posix(),
            head=head,
        )

        dest = session.path / artifact
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if src is not None:
                shutil.copy2(src, dest)
            else:
                dest.write_bytes(data)
            with open(session.path / self.LEDGER_FILE, "a") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Backup failed for {target.name}/{item or '(patch)'}: {e}")
            raise BackupError(f"Cannot write backup {dest}: {e}")

        logger.info(f"Backed up {target.name}/{item or '(repository state)'} -> {dest}")
        return record

    def artifact_path(self, record: BackupRecord) -> Path:
        return self.sessions_dir / record.session_id / record.artifact

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[str]:
        """Session ids in creation order."""
        if not self.sessions_dir.exists():
            return []
        return sorted(
            d.name
            for d in self.sessions_dir.iterdir()
            if d.is_dir() and (d / self.META_FILE).exists()
        )

    def get_session(self, session_id: str) -> Session:
        path = self.sessions_dir / session_id
        meta_path = path / self.META_FILE
        if not meta_path.exists():
            raise SessionError(f"Unknown session: {session_id}")
        try:
            meta = json.loads(meta_path.read_text())
            return Session(
                id=meta["id"],
                path=path,
                strategy=Strategy(meta["strategy"]),
                source=meta.get("source", ""),
                created=meta.get("created", ""),
                closed=meta.get("closed", False),
            )
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise SessionError(f"Malformed session metadata in {meta_path}: {e}")

    def load_session(self, session_id: str) -> list[BackupRecord]:
        """Backup records of a session, in the order they were written."""
        ledger = self.sessions_dir / session_id / self.LEDGER_FILE
        if not ledger.exists():
            return []
        records = []
        with open(ledger) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                records.append(BackupRecord.from_dict(json.loads(line)))
        return records

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_meta(self, session: Session) -> None:
        meta = {
            "id": session.id,
            "created": session.created,
            "strategy": session.strategy.value,
            "source": session.source,
            "closed": session.closed,
        }
        (session.path / self.META_FILE).write_text(json.dumps(meta, indent=2) + "\n")

    def _is_closed(self, session: Session) -> bool:
        meta_path = session.path / self.META_FILE
        if not meta_path.exists():
            return False
        return bool(json.loads(meta_path.read_text()).get("closed", False))
