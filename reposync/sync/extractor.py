"""Change-set extraction — turn a source repo selection into a ChangeSet.

Files strategy yields a sorted, de-duplicated tuple of relative paths.
Patch strategy yields one patch blob: a binary-safe working-tree diff with
extra context, or a ``format-patch`` mailbox for commit-based modes.
"""

from __future__ import annotations

from git import Repo

from reposync.errors import EmptyChangeSet, SelectionError
from reposync.models.change_set import (
    ChangeSet,
    ExtractMode,
    PatchKind,
    Repository,
    Scope,
    Strategy,
)
from reposync.sync.policy import PolicySet, filter_paths
from reposync.utils import git_ops


def parse_indices(text: str, size: int) -> list[int] | None:
    """Parse a space/comma separated index list; ``a``/``all`` returns None.

    Raises ``SelectionError`` for non-integers and out-of-range indices.
    """
    text = text.strip()
    if text.lower() in ("a", "all"):
        return None
    tokens = text.replace(",", " ").split()
    if not tokens:
        raise SelectionError("No indices given")
    indices = []
    for token in tokens:
        try:
            index = int(token)
        except ValueError:
            raise SelectionError(f"Not an index: {token!r}")
        if index < 0 or index >= size:
            raise SelectionError(f"Index out of range: {index} (0-{size - 1})")
        if index not in indices:
            indices.append(index)
    return indices


def list_working_changes(source: Repository) -> list[str]:
    """Enumeration shown to the operator for manual selection."""
    return git_ops.status_paths(git_ops.open_repo(source.path))


def recent_commits(source: Repository, count: int = 30) -> list[tuple[str, str]]:
    return git_ops.recent_commits(git_ops.open_repo(source.path), count)


def extract(
    source: Repository,
    strategy: Strategy,
    mode: ExtractMode,
    scope: Scope = Scope.BOTH,
    commit: str | None = None,
    commit_range: str | None = None,
    commits: list[str] | None = None,
    selection: str | None = None,
    context: int = 10,
    policy: PolicySet | None = None,
) -> ChangeSet:
    """Extract a change set from ``source``.

    Args:
        source: Repository to read changes from.
        strategy: Whole-file paths or a single patch blob.
        mode: Which changes to take.
        scope: Unstaged/staged/both, for ``WORKING``.
        commit: Commit id, for ``COMMIT``.
        commit_range: ``A..B``, for ``RANGE``.
        commits: Commit ids, for ``COMMITS``.
        selection: Index list or ``a``, for ``MANUAL``.
        context: Context lines in exported diffs.
        policy: Excluded paths are left out of manual picks and patches.

    Raises:
        SelectionError: Bad commit id, range or index.
        EmptyChangeSet: Nothing qualifies.
    """
    repo = git_ops.open_repo(source.path)
    exclude = policy.exclude_patterns if policy else []

    if mode == ExtractMode.MANUAL:
        paths = _manual_paths(repo, selection)
        if policy:
            paths = filter_paths(paths, policy)
    elif mode == ExtractMode.COMMIT:
        shas = [git_ops.resolve_commit(repo, commit or "")]
    elif mode == ExtractMode.RANGE:
        start, end = git_ops.parse_range(repo, commit_range or "")
    elif mode == ExtractMode.COMMITS:
        shas = _ordered_commits(repo, commits or [])

    if strategy == Strategy.FILES:
        if mode == ExtractMode.WORKING:
            paths = git_ops.working_paths(repo, scope)
        elif mode in (ExtractMode.COMMIT, ExtractMode.COMMITS):
            paths = sorted({p for sha in shas for p in git_ops.commit_paths(repo, sha)})
        elif mode == ExtractMode.RANGE:
            paths = git_ops.range_paths(repo, start, end)
        change_set = ChangeSet(
            source=source, strategy=strategy, mode=mode, paths=tuple(sorted(set(paths)))
        )
    else:
        if mode == ExtractMode.WORKING:
            patch = git_ops.working_diff(repo, scope, context, exclude=exclude)
            change_set = _diff_change_set(source, mode, patch)
        elif mode == ExtractMode.MANUAL:
            change_set = _diff_change_set(source, mode, _manual_patch(repo, paths, context))
        elif mode == ExtractMode.RANGE:
            change_set = ChangeSet(
                source=source,
                strategy=strategy,
                mode=mode,
                patch=git_ops.format_patch(repo, f"{start}..{end}", exclude=exclude),
                patch_kind=PatchKind.COMMITS,
                commits=(start, end),
            )
        else:
            change_set = ChangeSet(
                source=source,
                strategy=strategy,
                mode=mode,
                patch=b"".join(
                    git_ops.format_patch(repo, *git_ops.single_commit(repo, sha), exclude=exclude)
                    for sha in shas
                ),
                patch_kind=PatchKind.COMMITS,
                commits=tuple(shas),
            )

    if change_set.is_empty:
        raise EmptyChangeSet(f"No changes to sync from {source.name}")
    return change_set


def _diff_change_set(source: Repository, mode: ExtractMode, patch: bytes) -> ChangeSet:
    return ChangeSet(
        source=source,
        strategy=Strategy.PATCH,
        mode=mode,
        patch=patch,
        patch_kind=PatchKind.DIFF,
    )


def _manual_patch(repo: Repo, paths: list[str], context: int) -> bytes:
    """Diff of the picked paths; untracked picks become file creations."""
    if not paths:
        return b""
    untracked = set(repo.untracked_files)
    tracked = [p for p in paths if p not in untracked]
    patch = git_ops.working_diff(repo, Scope.BOTH, context, tracked) if tracked else b""
    return patch + git_ops.untracked_diff(repo, [p for p in paths if p in untracked])


def _manual_paths(repo: Repo, selection: str | None) -> list[str]:
    available = git_ops.status_paths(repo)
    if not available:
        raise EmptyChangeSet("No working-tree changes to select from")
    indices = parse_indices(selection or "", len(available))
    if indices is None:
        return available
    return [available[i] for i in indices]


def _ordered_commits(repo: Repo, commits: list[str]) -> list[str]:
    """Resolve ids and order them oldest first so ``git am`` can replay them."""
    if not commits:
        raise SelectionError("No commit ids given")
    shas = []
    for rev in commits:
        sha = git_ops.resolve_commit(repo, rev)
        if sha not in shas:
            shas.append(sha)
    # An ancestor always has fewer reachable commits than its descendants
    return sorted(shas, key=lambda sha: int(repo.git.rev_list("--count", sha)))
