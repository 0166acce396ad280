"""Git operations — discover repos, list changes, export and apply patches."""

from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from reposync.errors import NotARepository, SelectionError
from reposync.models.change_set import Repository, Scope

# Hash of the empty tree; stands in for HEAD in repos without commits
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

# Tolerance flags shared by every git apply call
LENIENT = ("--ignore-space-change", "--whitespace=nowarn")

_RAW = {"stdout_as_string": False, "strip_newline_in_stdout": False}


def open_repo(path: str | Path) -> Repo:
    """Open a working tree, raising ``NotARepository`` if it is not one.

    Called again before every mutating step: a repo found at discovery time
    may have been moved or deleted since.
    """
    try:
        repo = Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        raise NotARepository(f"Not a git repository: {path}")
    if repo.bare:
        raise NotARepository(f"Bare repository has no working tree: {path}")
    return repo


def discover_repos(root: str | Path) -> list[Repository]:
    """Return the git working copies directly under ``root``, sorted by name."""
    root = Path(root)
    if not root.is_dir():
        return []
    return [
        Repository.from_path(child)
        for child in sorted(root.iterdir())
        if child.is_dir() and (child / ".git").exists()
    ]


def head_commit(repo: Repo) -> str:
    """Return the HEAD sha, or an empty string on an unborn branch."""
    try:
        return repo.head.commit.hexsha
    except ValueError:
        return ""


# ── Selection ────────────────────────────────────────────────────────


def resolve_commit(repo: Repo, rev: str) -> str:
    """Resolve a commit-ish to a full sha or raise ``SelectionError``."""
    rev = rev.strip()
    if not rev or rev.startswith("-"):
        raise SelectionError(f"Invalid commit id: {rev!r}")
    try:
        return repo.git.rev_parse("--verify", "--quiet", f"{rev}^{{commit}}")
    except GitCommandError:
        raise SelectionError(f"Unknown commit: {rev}")


def parse_range(repo: Repo, text: str) -> tuple[str, str]:
    """Split and validate an ``A..B`` range; both ends must resolve."""
    text = text.strip()
    if "..." in text or text.count("..") != 1:
        raise SelectionError(f"Malformed commit range (expected A..B): {text!r}")
    start, end = text.split("..")
    if not start or not end:
        raise SelectionError(f"Malformed commit range (expected A..B): {text!r}")
    return resolve_commit(repo, start), resolve_commit(repo, end)


# ── Change discovery ─────────────────────────────────────────────────


def _split_z(output: str) -> list[str]:
    return [p for p in output.split("\0") if p]


def working_paths(repo: Repo, scope: Scope) -> list[str]:
    """Paths changed since the last commit, for the given scope."""
    paths: set[str] = set()
    if scope in (Scope.UNSTAGED, Scope.BOTH):
        paths.update(_split_z(repo.git.diff("--name-only", "-z")))
    if scope in (Scope.STAGED, Scope.BOTH):
        paths.update(_split_z(repo.git.diff("--name-only", "-z", "--cached")))
    return sorted(paths)


def commit_paths(repo: Repo, sha: str) -> list[str]:
    """Paths touched by a single commit (root commits included)."""
    output = repo.git.diff_tree("--no-commit-id", "--name-only", "-r", "--root", "-z", sha)
    return sorted(set(_split_z(output)))


def range_paths(repo: Repo, start: str, end: str) -> list[str]:
    return sorted(set(_split_z(repo.git.diff("--name-only", "-z", f"{start}..{end}"))))


def status_paths(repo: Repo) -> list[str]:
    """Working-tree status entries, untracked files included, in git's order."""
    tokens = repo.git.status("--porcelain", "-z", "--untracked-files=all").split("\0")
    paths = []
    i = 0
    while i < len(tokens):
        entry = tokens[i]
        i += 1
        if len(entry) < 4:
            continue
        paths.append(entry[3:])
        if entry[0] in "RC":
            i += 1  # rename/copy source follows
    return paths


def recent_commits(repo: Repo, count: int = 30) -> list[tuple[str, str]]:
    """Return ``(sha, summary)`` for the newest ``count`` commits."""
    if not head_commit(repo):
        return []
    return [(c.hexsha, c.summary) for c in repo.iter_commits(max_count=count)]


def is_path_dirty(repo: Repo, path: str) -> bool:
    """True if ``path`` differs from its last-committed version."""
    return repo.is_dirty(index=True, working_tree=True, untracked_files=False, path=path)


# ── Patch export ─────────────────────────────────────────────────────


def working_diff(
    repo: Repo,
    scope: Scope = Scope.BOTH,
    context: int = 10,
    paths: tuple[str, ...] | list[str] = (),
    exclude: tuple[str, ...] | list[str] = (),
) -> bytes:
    """Binary-safe diff of uncommitted changes, with extra context lines.

    ``exclude`` globs keep matching paths out of the diff.
    """
    args = ["--binary", f"-U{context}"]
    if scope == Scope.STAGED:
        args.append("--cached")
    elif scope == Scope.BOTH:
        args.append(head_commit(repo) or EMPTY_TREE)
    return repo.git.diff(*args, "--", *_pathspecs(paths, exclude), **_RAW)


def untracked_diff(repo: Repo, paths: list[str]) -> bytes:
    """Creation patches for untracked files, which ``git diff`` never lists."""
    return b"".join(
        repo.git.diff(
            "--no-index", "--binary", "--", os.devnull, path,
            with_exceptions=False, **_RAW
        )
        for path in paths
    )


def format_patch(repo: Repo, *revs: str, exclude: tuple[str, ...] | list[str] = ()) -> bytes:
    """Export commits as a mailbox that ``git am`` can replay."""
    specs = _pathspecs((), exclude)
    if specs:
        return repo.git.format_patch("--stdout", "--binary", *revs, "--", *specs, **_RAW)
    return repo.git.format_patch("--stdout", "--binary", *revs, **_RAW)


def single_commit(repo: Repo, sha: str) -> list[str]:
    """Revision arguments that select exactly ``sha``, even under a pathspec."""
    if repo.commit(sha).parents:
        return [f"{sha}^!"]
    return ["-1", sha]


def _pathspecs(paths, exclude) -> list[str]:
    """Pathspec arguments; exclusions need a positive spec to subtract from."""
    specs = list(paths)
    if exclude:
        specs = (specs or ["."]) + [f":(exclude){glob}" for glob in exclude]
    return specs


def diff_against(repo: Repo, base: str, context: int = 10) -> bytes:
    """Diff from ``base`` to the current working tree (tracked files)."""
    return repo.git.diff("--binary", f"-U{context}", base or EMPTY_TREE, **_RAW)


# ── Patch application ────────────────────────────────────────────────


@contextmanager
def patch_file(data: bytes) -> Iterator[Path]:
    """Write patch bytes to a temporary file and yield its path."""
    fd, name = tempfile.mkstemp(prefix="reposync_", suffix=".patch")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            if data and not data.endswith(b"\n"):
                fh.write(b"\n")
        yield Path(name)
    finally:
        os.unlink(name)


def touched_paths(repo: Repo, patch: Path) -> list[str]:
    """Paths a patch creates, modifies, deletes or renames (both sides)."""
    tokens = repo.git.apply("--numstat", "-z", str(patch)).split("\0")
    paths: list[str] = []
    i = 0
    while i < len(tokens):
        fields = tokens[i].split("\t")
        i += 1
        if len(fields) < 3:
            continue
        if fields[2]:
            paths.append(fields[2])
        else:
            paths.extend(tokens[i:i + 2])
            i += 2
    return sorted(set(p for p in paths if p))


def check_apply(repo: Repo, patch: Path) -> None:
    """Dry-run a working-tree diff; raises ``GitCommandError`` if it would fail."""
    repo.git.apply("--check", *LENIENT, str(patch))


def apply_3way(repo: Repo, patch: Path) -> None:
    repo.git.apply("--3way", *LENIENT, str(patch))


def apply_reverse(repo: Repo, patch: Path) -> None:
    repo.git.apply("-R", *LENIENT, str(patch))


def apply_reject(repo: Repo, patch: Path) -> None:
    """Apply clean hunks and leave the rest as ``.rej`` files."""
    repo.git.apply("--reject", *LENIENT, str(patch))


def apply_plain(repo: Repo, patch: Path) -> None:
    repo.git.apply("--whitespace=nowarn", str(patch))


def restore_local_changes(repo: Repo, patch: Path) -> None:
    """Re-apply saved uncommitted changes to the working tree.

    Files the patch creates are marked intent-to-add, so they show up in
    ``git diff HEAD`` again just as they did when the patch was saved.
    """
    created = [
        line.split(maxsplit=3)[3]
        for line in repo.git.apply("--summary", str(patch)).splitlines()
        if line.startswith(" create mode ")
    ]
    apply_plain(repo, patch)
    if created:
        repo.git.add("--intent-to-add", "--", *created)


def has_conflicts(repo: Repo) -> bool:
    return bool(_split_z(repo.git.diff("--name-only", "-z", "--diff-filter=U")))


def am(repo: Repo, patch: Path) -> None:
    """Replay a mailbox with 3-way fallback, keeping carriage returns."""
    repo.git.am("-3", "--keep-cr", str(patch))


def am_abort(repo: Repo) -> None:
    repo.git.am("--abort")


def trial_am(repo: Repo, patch: Path) -> None:
    """Replay a mailbox in a throwaway worktree of HEAD.

    The target's own working tree, index and HEAD are never touched; the
    trial worktree (and any half-finished ``am`` in it) is removed whatever
    the outcome. Raises ``GitCommandError`` if the replay fails.
    """
    with tempfile.TemporaryDirectory(prefix="reposync_probe_") as tmp:
        trial_dir = Path(tmp) / "trial"
        repo.git.worktree("add", "--detach", str(trial_dir), "HEAD")
        try:
            Repo(trial_dir).git.am("-3", "--keep-cr", str(patch))
        finally:
            repo.git.worktree("remove", "--force", str(trial_dir))


def commit_paths_only(repo: Repo, message: str, paths: list[str]) -> str:
    """Stage and commit exactly ``paths``. Returns the new sha, or ``""``.

    Paths that end up with nothing to commit (a file that was only ever
    staged and is now gone) are left out of the commit pathspec; git
    rejects a pathspec it does not know.
    """
    if not paths:
        return ""
    repo.git.add("-A", "--", *paths)
    staged = _split_z(
        repo.git.diff("--cached", "--name-only", "--no-renames", "-z", "--", *paths)
    )
    if not staged:
        return ""
    repo.git.commit("-m", message, "--", *staged)
    return head_commit(repo)


def git_error_detail(exc: GitCommandError) -> str:
    """Best human-readable diagnostic carried by a git failure."""
    stderr = exc.stderr or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", "replace")
    stdout = exc.stdout or ""
    if isinstance(stdout, bytes):
        stdout = stdout.decode("utf-8", "replace")
    text = "\n".join(part.strip() for part in (stderr, stdout) if part and part.strip())
    return text or str(exc)
