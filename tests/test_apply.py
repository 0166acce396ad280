"""Tests for whole-file propagation."""

from contextlib import contextmanager

from reposync.models.change_set import ExtractMode, ItemStatus, Repository, Strategy
from reposync.sync.apply import ApplyEngine
from reposync.sync.decisions import Decision, Gate
from reposync.sync.extractor import extract
from reposync.sync.policy import default_policy, filter_paths

from conftest import ScriptedPolicy, snapshot, write_files


def _files_change_set(workspace, **changes):
    write_files(workspace.source.path, changes)
    change_set = extract(workspace.source, Strategy.FILES, ExtractMode.MANUAL, selection="a")
    return change_set.with_paths(filter_paths(list(change_set.paths), default_policy()))


def test_excluded_critical_and_plain_files(workspace):
    change_set = _files_change_set(
        workspace,
        **{
            "node_modules/lib.js": "module.exports = 2;\n",
            "config/app.json": '{"debug": true}\n',
            "src/app.py": "print('synced')\n",
        },
    )
    assert change_set.paths == ("config/app.json", "src/app.py")

    decisions = ScriptedPolicy({Gate.CRITICAL: Decision.SKIP})
    engine = ApplyEngine(workspace.sessions, decisions)
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = engine.run(session, [workspace.target_a], change_set)

    assert report.status_for("target_a", "src/app.py") == ItemStatus.OK
    critical = report.get("target_a", "config/app.json")
    assert critical.status == ItemStatus.SKIPPED
    assert critical.reason == "Critical"
    assert "node_modules/lib.js" not in report.items

    target = workspace.target_a.path
    assert (target / "src/app.py").read_text() == "print('synced')\n"
    assert (target / "config/app.json").read_text() == '{"debug": false}\n'
    assert (target / "node_modules/lib.js").read_text() == "module.exports = {};\n"
    assert report.counts()[ItemStatus.OK] == 1
    assert report.counts()[ItemStatus.SKIPPED] == 1


def test_declined_conflict_leaves_target_and_ledger_alone(workspace):
    change_set = _files_change_set(workspace, **{"src/app.py": "from source\n"})
    write_files(workspace.target_a.path, {"src/app.py": "local work\n"})

    decisions = ScriptedPolicy({Gate.CONFLICT: Decision.SKIP})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, decisions).run(session, [workspace.target_a], change_set)

    result = report.get("target_a", "src/app.py")
    assert result.status == ItemStatus.SKIPPED
    assert result.reason == "Conflict"
    assert (workspace.target_a.path / "src/app.py").read_text() == "local work\n"
    assert workspace.sessions.load_session(session.id) == []
    assert (Gate.CONFLICT, "target_a/src/app.py") in decisions.asked


def test_accepted_conflict_is_backed_up_and_recorded(workspace):
    change_set = _files_change_set(workspace, **{"src/app.py": "from source\n"})
    write_files(workspace.target_a.path, {"src/app.py": "local work\n"})

    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, ScriptedPolicy()).run(session, [workspace.target_a], change_set)

    result = report.get("target_a", "src/app.py")
    assert result.status == ItemStatus.OK
    assert result.confirmed == ["conflict"]
    [record] = workspace.sessions.load_session(session.id)
    assert workspace.sessions.artifact_path(record).read_text() == "local work\n"


def test_backup_exists_before_each_copy(workspace):
    change_set = _files_change_set(
        workspace, **{"README.md": "# synced\n", "src/app.py": "synced\n", "docs/new.md": "new\n"}
    )
    (workspace.target_a.path / "docs").mkdir()
    sessions = workspace.sessions
    session = sessions.open_session(Strategy.FILES, "source")
    seen = []

    @contextmanager
    def checking_activity(message):
        backed_up = {r.relative_path for r in sessions.load_session(session.id)}
        for path in change_set.paths:
            if path in message:
                dest = workspace.target_a.path / path
                seen.append(path)
                if dest.exists():
                    assert path in backed_up
                    assert dest.read_bytes() != (workspace.source.path / path).read_bytes()
        yield

    engine = ApplyEngine(sessions, ScriptedPolicy(), activity=checking_activity)
    report = engine.run(session, [workspace.target_a], change_set)

    assert seen == ["README.md", "docs/new.md", "src/app.py"]
    assert all(r.status == ItemStatus.OK for r in report.results)
    # New files have nothing to back up
    assert {r.relative_path for r in sessions.load_session(session.id)} == {"README.md", "src/app.py"}


def test_critical_file_needs_explicit_confirmation(workspace):
    change_set = _files_change_set(workspace, **{"config/app.json": '{"debug": true}\n'})
    decisions = ScriptedPolicy()
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, decisions).run(
        session, [workspace.target_a, workspace.target_b], change_set
    )

    for target in ("target_a", "target_b"):
        result = report.get(target, "config/app.json")
        assert result.status == ItemStatus.OK
        assert "critical" in result.confirmed
        assert (Gate.CRITICAL, f"{target}/config/app.json") in decisions.asked


def test_missing_directory_asked_once_per_target(workspace):
    change_set = _files_change_set(
        workspace, **{"newdir/one.txt": "1\n", "newdir/two.txt": "2\n"}
    )
    decisions = ScriptedPolicy({Gate.CREATE_DIR: Decision.SKIP})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, decisions).run(
        session, [workspace.target_a, workspace.target_b], change_set
    )

    for target in ("target_a", "target_b"):
        for path in ("newdir/one.txt", "newdir/two.txt"):
            result = report.get(target, path)
            assert result.status == ItemStatus.FAILED
            assert result.reason == "NoPath"
    asked = [subject for gate, subject in decisions.asked if gate == Gate.CREATE_DIR]
    assert asked == ["target_a/newdir", "target_b/newdir"]
    assert not (workspace.target_a.path / "newdir").exists()


def test_missing_directory_created_when_allowed(workspace):
    change_set = _files_change_set(workspace, **{"deep/nested/file.txt": "x\n"})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, ScriptedPolicy()).run(session, [workspace.target_a], change_set)

    assert report.status_for("target_a", "deep/nested/file.txt") == ItemStatus.OK
    assert (workspace.target_a.path / "deep/nested/file.txt").read_text() == "x\n"


def test_missing_source_file(workspace):
    (workspace.source.path / "README.md").unlink()
    change_set = extract(workspace.source, Strategy.FILES, ExtractMode.WORKING)
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, ScriptedPolicy()).run(session, [workspace.target_a], change_set)

    result = report.get("target_a", "README.md")
    assert result.status == ItemStatus.FAILED
    assert result.reason == "MissingSource"
    assert (workspace.target_a.path / "README.md").exists()


def test_binary_files_skipped_on_request(workspace):
    (workspace.source.path / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    change_set = _files_change_set(workspace, **{"README.md": "# synced\n"})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    engine = ApplyEngine(workspace.sessions, ScriptedPolicy(), skip_binaries=True)
    report = engine.run(session, [workspace.target_a], change_set)

    assert report.get("target_a", "logo.png").reason == "Binary"
    assert report.status_for("target_a", "README.md") == ItemStatus.OK
    assert not (workspace.target_a.path / "logo.png").exists()


def test_abort_stops_forward_only(workspace):
    change_set = _files_change_set(
        workspace, **{"README.md": "# synced\n", "config/app.json": "{}\n", "src/app.py": "synced\n"}
    )
    before_b = snapshot(workspace.target_b.path)
    decisions = ScriptedPolicy({Gate.CRITICAL: Decision.ABORT})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, decisions).run(
        session, [workspace.target_a, workspace.target_b], change_set
    )

    assert report.aborted
    assert report.status_for("target_a", "README.md") == ItemStatus.OK
    assert report.get("target_a", "config/app.json").reason == "Aborted"
    assert report.get("target_a", "src/app.py") is None

    rows = report.by_target()
    assert [r.label for r in rows["target_b"]] == ["SKIPPED (Aborted)"] * 3
    assert rows["target_a"][2].label == "SKIPPED (Aborted)"
    # Already applied stays applied
    assert (workspace.target_a.path / "README.md").read_text() == "# synced\n"
    assert snapshot(workspace.target_b.path) == before_b


def test_backup_failure_prevents_mutation(workspace):
    change_set = _files_change_set(workspace, **{"README.md": "# synced\n"})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    (session.path / "files").write_text("not a directory")

    report = ApplyEngine(workspace.sessions, ScriptedPolicy()).run(session, [workspace.target_a], change_set)

    result = report.get("target_a", "README.md")
    assert result.status == ItemStatus.FAILED
    assert result.reason == "BackupError"
    assert (workspace.target_a.path / "README.md").read_text() == "# project\n"


def test_invalid_target_fails_every_item(workspace, tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    change_set = _files_change_set(workspace, **{"README.md": "# synced\n", "src/app.py": "x\n"})
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    report = ApplyEngine(workspace.sessions, ScriptedPolicy()).run(
        session, [Repository.from_path(plain), workspace.target_a], change_set
    )

    assert [r.reason for r in report.by_target()["plain"]] == ["NotARepository"] * 2
    assert report.status_for("target_a", "README.md") == ItemStatus.OK
    assert report.has_failures
    assert list((plain).iterdir()) == []


def test_results_are_emitted_as_they_happen(workspace):
    change_set = _files_change_set(workspace, **{"README.md": "# synced\n"})
    emitted = []
    session = workspace.sessions.open_session(Strategy.FILES, "source")
    engine = ApplyEngine(workspace.sessions, ScriptedPolicy(), on_result=emitted.append)
    report = engine.run(session, [workspace.target_a, workspace.target_b], change_set)

    assert emitted == report.results
    assert [r.target for r in emitted] == ["target_a", "target_b"]
