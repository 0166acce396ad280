"""reposync CLI — propagate changes between sibling repos and revert sessions."""

import sys
from pathlib import Path

import click
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

from reposync import __version__
from reposync.errors import SelectionError
from reposync.sync.decisions import Decision, DecisionPolicy, DefaultPolicy, Gate

console = Console()

STATUS_STYLES = {
    "OK": "green",
    "APPLIED": "green",
    "RESTORED": "green",
    "REVERTED": "green",
    "SKIPPED": "yellow",
    "FAILED": "red",
}

MODE_MENU = [
    ("working", "Changed since last commit (default)"),
    ("commit", "Changed in a specific commit"),
    ("range", "Changed in a commit range"),
    ("manual", "Interactive selection from working tree changes"),
    ("commits", "Select specific commits (from recent history)"),
]

SCOPE_MENU = [
    ("unstaged", "Unstaged only"),
    ("staged", "Staged only"),
    ("both", "Both staged + unstaged (default)"),
]


def _fail(message: str, code: int = 1):
    console.print(f"[red][ERROR][/] {message}")
    logger.error(message)
    sys.exit(code)


def _menu(title: str, options: list[tuple[str, str]], default: int = 1) -> str:
    """Print a numbered menu and return the chosen key."""
    console.print(f"\n[cyan]{title}[/]")
    for i, (_, label) in enumerate(options, start=1):
        console.print(f"[{i}] {label}", markup=False)
    choice = click.prompt("Enter choice", default=str(default), show_default=False)
    try:
        index = int(choice)
    except ValueError:
        raise SelectionError(f"Invalid choice: {choice!r}")
    if not 1 <= index <= len(options):
        raise SelectionError(f"Invalid choice: {choice!r}")
    return options[index - 1][0]


def _status_label(result) -> str:
    style = STATUS_STYLES.get(result.status.value, "white")
    return f"[{style}]{result.label}[/]"


def _print_result(result) -> None:
    console.print(f"  {result.target} / {result.item} : {_status_label(result)}")


def _print_report(report) -> None:
    """Final summary table, one row per target and item."""
    table = Table(title=report.summary())
    table.add_column("Repo", style="cyan")
    table.add_column("Item")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    for target, rows in report.by_target().items():
        for result in rows:
            table.add_row(target, result.item, _status_label(result), result.detail.splitlines()[0] if result.detail else "")

    console.print()
    console.print(table)


def _activity(message: str):
    return console.status(message, spinner="line")


def _build_decisions(non_interactive: bool, config) -> DecisionPolicy:
    if non_interactive:
        try:
            return DefaultPolicy.from_config(config.defaults)
        except SelectionError as e:
            _fail(str(e))
    return InteractivePolicy()


def _setup(root: str, config_path: str | None, verbose: bool):
    from reposync.config import load_config
    from reposync.logger import setup_logger

    try:
        config = load_config(config_path, root)
    except (SelectionError, OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Cannot load config: {e}")
    setup_logger(config.log_file(root), verbose=verbose)
    return config


class InteractivePolicy(DecisionPolicy):
    """Asks the operator at every gate (y = proceed, n = skip, a = abort the run)."""

    PROMPTS = {
        Gate.RUN: "Proceed to {subject}?",
        Gate.CREATE_DIR: "Create missing directory: {subject}?",
        Gate.CONFLICT: "Local changes in {subject}. Overwrite anyway?",
        Gate.CRITICAL: "Critical file match ({subject}). Overwrite?",
        Gate.INCOMPATIBLE: "Dry run failed for {subject}. Apply anyway?",
        Gate.REVERT_RUN: "Proceed to revert {subject}?",
    }

    def ask(self, gate: Gate, subject: str) -> Decision:
        question = self.PROMPTS[gate].format(subject=subject)
        answer = click.prompt(
            f"{question} [y/N/a]",
            default="n",
            show_default=False,
            type=click.Choice(["y", "n", "a"], case_sensitive=False),
            show_choices=False,
        ).lower()
        if answer == "y":
            return Decision.PROCEED
        if answer == "a":
            return Decision.ABORT
        return Decision.SKIP


@click.group()
@click.version_option(version=__version__)
def main():
    """reposync — propagate changes across sibling git repos, reversibly.

    Every apply run is recorded as a session of backups; any session can be
    reverted as a whole later.
    """


# ── Propagate ────────────────────────────────────────────────────────


@main.command()
@click.option("--root", default=".", type=click.Path(file_okay=False), help="Directory holding the repos")
@click.option("--strategy", type=click.Choice(["files", "patch"]), default=None, help="Whole-file copy or git patch")
@click.option("--source", default=None, help="Source repo name (prompted if omitted)")
@click.option("--mode", type=click.Choice([m for m, _ in MODE_MENU]), default=None, help="What to extract")
@click.option("--scope", type=click.Choice([s for s, _ in SCOPE_MENU]), default=None, help="Working-tree scope")
@click.option("--commit", default=None, help="Commit id (mode=commit)")
@click.option("--range", "commit_range", default=None, help="Commit range A..B (mode=range)")
@click.option("--commits", default=None, help="Space-separated commit ids (mode=commits)")
@click.option("--select", default=None, help="Indices or 'a' (mode=manual)")
@click.option("--targets", default=None, help="Target indices or 'a' for all except source")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Config file")
@click.option("--defaults", "non_interactive", is_flag=True, help="Answer every gate from the configured defaults")
@click.option("--strict", is_flag=True, help="Exit 2 if any item failed")
@click.option("--verbose", "-v", is_flag=True, help="Echo the log to stderr")
def propagate(
    root: str,
    strategy: str | None,
    source: str | None,
    mode: str | None,
    scope: str | None,
    commit: str | None,
    commit_range: str | None,
    commits: str | None,
    select: str | None,
    targets: str | None,
    config_path: str | None,
    non_interactive: bool,
    strict: bool,
    verbose: bool,
):
    """Extract changes from a source repo and apply them to target repos."""
    from git import GitCommandError

    from reposync.errors import DiscoveryError, EmptyChangeSet
    from reposync.models.change_set import ExtractMode, Scope, Strategy
    from reposync.sync.apply import ApplyEngine
    from reposync.sync.extractor import (
        extract,
        list_working_changes,
        parse_indices,
        recent_commits,
    )
    from reposync.sync.policy import default_policy, filter_paths, load_policy
    from reposync.sync.prober import ConflictProber
    from reposync.sync.revert import RevertEngine
    from reposync.sync.session import SessionManager
    from reposync.utils.git_ops import discover_repos, git_error_detail

    config = _setup(root, config_path, verbose)
    decisions = _build_decisions(non_interactive, config)

    policy = default_policy(config.exclude, config.critical)
    if config.policy_file:
        try:
            policy = policy.extend(load_policy(Path(root) / config.policy_file))
        except (OSError, KeyError, ValueError, yaml.YAMLError) as e:
            _fail(f"Cannot load policy file {config.policy_file}: {e}")

    repos = discover_repos(root)
    if not repos:
        _fail(f"No Git repos found in {Path(root).resolve()}.")

    console.print(f"\n[bold blue]reposync[/] — Propagate changes ({len(repos)} repos)\n")

    try:
        # Source
        if source is None:
            console.print("[cyan]Available repos:[/]")
            for i, repo in enumerate(repos):
                console.print(f"[{i}] {repo.name}", markup=False)
            picked = parse_indices(click.prompt("Enter source repo number"), len(repos))
            if not picked or len(picked) != 1:
                raise SelectionError("Pick exactly one source repo")
            source_repo = repos[picked[0]]
        else:
            matches = [r for r in repos if r.name == source]
            if not matches:
                raise SelectionError(f"Unknown source repo: {source}")
            source_repo = matches[0]

        # Strategy, mode, scope
        if strategy is None:
            strategy = _menu(
                "Sync strategy:",
                [("files", "Copy & replace whole files"), ("patch", "Apply git patches (diffs/commits)")],
            )
        if mode is None:
            mode = _menu("File source options:", MODE_MENU)
        if mode == "working" and scope is None:
            scope = _menu("Which changes to consider?", SCOPE_MENU, default=3)

        # Mode-specific selection
        if mode == "commit" and commit is None:
            commit = click.prompt("Enter commit hash")
        elif mode == "range" and commit_range is None:
            commit_range = click.prompt("Enter commit range (e.g. abc123..def456)")
        elif mode == "commits" and commits is None:
            for sha, summary in recent_commits(source_repo):
                console.print(f"  [yellow]{sha[:10]}[/] {summary}")
            commits = click.prompt("Enter commit hashes (space-separated)")
        elif mode == "manual" and select is None:
            available = list_working_changes(source_repo)
            if available:
                console.print("[cyan]Changed files:[/]")
                for i, path in enumerate(available):
                    console.print(f"[{i}] {path}", markup=False)
                select = click.prompt("Select files (indexes, space-separated) or 'a' for all")

        with console.status(f"Extracting changes from {source_repo.name}...", spinner="line"):
            change_set = extract(
                source_repo,
                Strategy(strategy),
                ExtractMode(mode),
                scope=Scope(scope or "both"),
                commit=commit,
                commit_range=commit_range,
                commits=commits.split() if commits else None,
                selection=select,
                context=config.context_lines,
                policy=policy,
            )
    except EmptyChangeSet as e:
        console.print(f"[yellow][INFO][/] {e}")
        return
    except (SelectionError, DiscoveryError) as e:
        _fail(str(e))
    except GitCommandError as e:
        _fail(f"git failed while extracting: {git_error_detail(e)}")

    # Filter
    skip_binaries = config.skip_binaries
    if change_set.strategy == Strategy.FILES:
        kept = filter_paths(list(change_set.paths), policy)
        if not kept:
            console.print("[yellow][INFO][/] All changed files are excluded by patterns.")
            return
        change_set = change_set.with_paths(kept)
        console.print(f"\n[cyan]Files to sync from {source_repo.name}:[/]")
        for i, path in enumerate(change_set.paths):
            console.print(f"[{i}] {path}", markup=False)
        if not non_interactive:
            skip_binaries = click.confirm("Skip binary files?", default=config.skip_binaries)
    else:
        label = f"{len(change_set.commits)} commit(s)" if change_set.commits else "working-tree diff"
        console.print(f"\n[cyan]Patch from {source_repo.name}:[/] {label}, {len(change_set.patch)} bytes")

    # Targets
    candidates = [r for r in repos if r != source_repo]
    if targets is None:
        console.print("\n[cyan]Target repos:[/]")
        for i, repo in enumerate(repos):
            if repo != source_repo:
                console.print(f"[{i}] {repo.name}", markup=False)
        console.print("[a] All (except source)", markup=False)
        targets = click.prompt("Enter repos (indexes or 'a')")
    try:
        picked = parse_indices(targets, len(repos))
    except SelectionError as e:
        _fail(str(e))
    selected = candidates if picked is None else [repos[i] for i in picked if repos[i] != source_repo]
    if not selected:
        _fail("No targets selected.")

    # Dry run
    console.print("\n[yellow][INFO] Dry-run preview:[/]")
    prober = ConflictProber()
    reports = {}
    for n, target in enumerate(selected, start=1):
        with console.status(f"[CHECK] ({n}/{len(selected)}) {target.name}...", spinner="line"):
            reports[target.name] = prober.probe(target, change_set)
        report = reports[target.name]
        style = "green" if report.compatible and not report.conflicts else "yellow" if report.compatible else "red"
        console.print(f"[cyan] -> {target.name}[/] [{style}]{report.summary()}[/]")
        for file in report.files:
            marker = "" if file.compatible else f" [yellow]({file.reason})[/]"
            console.print(f"    would copy: {file.path}{marker}")

    sessions = SessionManager(config.sessions_dir(root))
    if decisions.decide(Gate.RUN, f"apply to {len(selected)} target(s)") != Decision.PROCEED:
        console.print("[yellow][CANCELLED][/] No changes made.")
        return

    session = sessions.open_session(change_set.strategy, source_repo.name)
    console.print(f"\n[yellow][INFO] Applying (session {session.id}). Backups -> {session.path}[/]")
    engine = ApplyEngine(
        sessions,
        decisions,
        policy=policy,
        prober=prober,
        skip_binaries=skip_binaries,
        context_lines=config.context_lines,
        activity=_activity,
        on_result=_print_result,
    )
    try:
        report = engine.run(session, selected, change_set, reports)
    finally:
        sessions.close_session(session)

    _print_report(report)
    console.print(f"[cyan][DONE][/] Backups stored in: {session.path}")
    console.print(f"[cyan][NOTE][/] Log: {config.log_file(root)}")

    if not non_interactive and sessions.load_session(session.id):
        if click.confirm("Revert this session now?", default=False):
            reverter = RevertEngine(
                sessions,
                decisions,
                context_lines=config.context_lines,
                activity=_activity,
                on_result=_print_result,
            )
            _print_report(reverter.revert(session.id))

    if strict and report.has_failures:
        sys.exit(2)


# ── Revert ───────────────────────────────────────────────────────────


@main.command()
@click.option("--root", default=".", type=click.Path(file_okay=False), help="Directory holding the repos")
@click.option("--session", "session_id", default=None, help="Session id (prompted if omitted)")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Config file")
@click.option("--defaults", "non_interactive", is_flag=True, help="Answer every gate from the configured defaults")
@click.option("--strict", is_flag=True, help="Exit 2 if any item failed")
@click.option("--verbose", "-v", is_flag=True, help="Echo the log to stderr")
def revert(
    root: str,
    session_id: str | None,
    config_path: str | None,
    non_interactive: bool,
    strict: bool,
    verbose: bool,
):
    """Revert an entire previous run (session)."""
    from reposync.errors import SessionError
    from reposync.sync.extractor import parse_indices
    from reposync.sync.revert import RevertEngine
    from reposync.sync.session import SessionManager

    config = _setup(root, config_path, verbose)
    decisions = _build_decisions(non_interactive, config)
    sessions = SessionManager(config.sessions_dir(root))

    available = sessions.list_sessions()
    if not available:
        _fail(f"No previous sessions found in {sessions.sessions_dir}.")

    if session_id is None:
        console.print("[cyan]Available sessions:[/]")
        for i, sid in enumerate(available):
            console.print(f"[{i}] {sid}", markup=False)
        try:
            picked = parse_indices(click.prompt("Select a session to revert"), len(available))
        except SelectionError as e:
            _fail(str(e))
        if not picked or len(picked) != 1:
            _fail("Pick exactly one session.")
        session_id = available[picked[0]]

    engine = RevertEngine(
        sessions,
        decisions,
        context_lines=config.context_lines,
        activity=_activity,
        on_result=_print_result,
    )
    try:
        records = engine.preview(session_id)
    except SessionError as e:
        _fail(str(e))

    console.print("\n[yellow][INFO] Dry-run preview of revert:[/]")
    if not records:
        console.print("  (session holds no backups)")
    for record in records:
        if record.relative_path:
            console.print(f"  Would restore: {record.repo_name} / {record.relative_path}")
        else:
            console.print(f"  Would reverse apply: {record.repo_name} (pre-apply HEAD {record.head[:10] or 'none'})")

    if decisions.decide(Gate.REVERT_RUN, f"session {session_id}") != Decision.PROCEED:
        console.print("[yellow][CANCELLED][/] Revert aborted.")
        return

    report = engine.revert(session_id)
    _print_report(report)
    console.print(f"[green][DONE][/] Revert complete for session {session_id}. Log: {config.log_file(root)}")

    if strict and report.has_failures:
        sys.exit(2)


# ── Sessions ─────────────────────────────────────────────────────────


@main.command(name="sessions")
@click.option("--root", default=".", type=click.Path(file_okay=False), help="Directory holding the repos")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Config file")
def list_sessions(root: str, config_path: str | None):
    """List recorded sessions, oldest first."""
    from reposync.sync.session import SessionManager

    config = _setup(root, config_path, verbose=False)
    sessions = SessionManager(config.sessions_dir(root))
    ids = sessions.list_sessions()

    if not ids:
        console.print("[yellow]No sessions recorded.[/]")
        return

    table = Table(title=f"Sessions ({len(ids)})")
    table.add_column("Session", style="cyan")
    table.add_column("Strategy")
    table.add_column("Source")
    table.add_column("Backups", justify="right")
    table.add_column("Closed", justify="center")

    for sid in ids:
        session = sessions.get_session(sid)
        closed = "[green]Y[/]" if session.closed else "[red]N[/]"
        table.add_row(sid, session.strategy.value, session.source, str(len(sessions.load_session(sid))), closed)

    console.print(table)


if __name__ == "__main__":
    main()
