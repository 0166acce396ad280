"""Tests for change-set extraction from a source repository."""

import pytest

from reposync.errors import EmptyChangeSet, NotARepository, SelectionError
from reposync.models.change_set import ExtractMode, PatchKind, Scope, Strategy
from reposync.sync.extractor import extract, list_working_changes, parse_indices, recent_commits
from reposync.utils import git_ops

from conftest import commit_all, snapshot, write_files


def test_parse_indices():
    assert parse_indices("0 2", 3) == [0, 2]
    assert parse_indices("2,0, 2", 3) == [2, 0]
    assert parse_indices("a", 3) is None
    assert parse_indices(" ALL ", 3) is None


@pytest.mark.parametrize("text", ["", "x", "3", "-1", "1 two"])
def test_parse_indices_rejects_bad_input(text):
    with pytest.raises(SelectionError):
        parse_indices(text, 3)


def test_working_files_both_scopes(workspace):
    repo = workspace.repo(workspace.source)
    write_files(workspace.source.path, {"src/app.py": "changed\n", "README.md": "# staged\n"})
    repo.git.add("README.md")

    both = extract(workspace.source, Strategy.FILES, ExtractMode.WORKING, Scope.BOTH)
    assert both.paths == ("README.md", "src/app.py")
    assert both.items == ["README.md", "src/app.py"]

    staged = extract(workspace.source, Strategy.FILES, ExtractMode.WORKING, Scope.STAGED)
    assert staged.paths == ("README.md",)

    unstaged = extract(workspace.source, Strategy.FILES, ExtractMode.WORKING, Scope.UNSTAGED)
    assert unstaged.paths == ("src/app.py",)


def test_working_without_changes_is_empty(workspace):
    with pytest.raises(EmptyChangeSet):
        extract(workspace.source, Strategy.FILES, ExtractMode.WORKING)
    with pytest.raises(EmptyChangeSet):
        extract(workspace.source, Strategy.PATCH, ExtractMode.WORKING)


def test_commit_files(workspace):
    repo = workspace.repo(workspace.source)
    write_files(workspace.source.path, {"docs/guide.md": "guide\n", "src/app.py": "v2\n"})
    sha = commit_all(repo, "docs and app")

    change_set = extract(workspace.source, Strategy.FILES, ExtractMode.COMMIT, commit=sha[:8])
    assert change_set.paths == ("docs/guide.md", "src/app.py")


def test_root_commit_files(workspace):
    repo = workspace.repo(workspace.source)
    root_sha = repo.git.rev_list("--max-parents=0", "HEAD")

    change_set = extract(workspace.source, Strategy.FILES, ExtractMode.COMMIT, commit=root_sha)
    assert "src/app.py" in change_set.paths
    assert "node_modules/lib.js" in change_set.paths


def test_range_files_and_patch(workspace):
    repo = workspace.repo(workspace.source)
    start = repo.head.commit.hexsha
    write_files(workspace.source.path, {"a.txt": "a\n"})
    commit_all(repo, "add a")
    write_files(workspace.source.path, {"b.txt": "b\n"})
    end = commit_all(repo, "add b")

    files = extract(workspace.source, Strategy.FILES, ExtractMode.RANGE, commit_range=f"{start}..{end}")
    assert files.paths == ("a.txt", "b.txt")

    patch = extract(workspace.source, Strategy.PATCH, ExtractMode.RANGE, commit_range=f"{start}..{end}")
    assert patch.patch_kind == PatchKind.COMMITS
    assert patch.items == ["(patch)"]
    assert patch.patch.count(b"Subject: [PATCH") == 2


@pytest.mark.parametrize("text", ["abc", "a...b", "..HEAD", "HEAD.."])
def test_malformed_range(workspace, text):
    with pytest.raises(SelectionError):
        extract(workspace.source, Strategy.FILES, ExtractMode.RANGE, commit_range=text)


def test_unknown_commit_aborts_before_any_target_is_touched(workspace):
    before = {t.name: snapshot(t.path) for t in (workspace.target_a, workspace.target_b)}
    heads = {t.name: workspace.repo(t).head.commit.hexsha for t in (workspace.target_a, workspace.target_b)}

    with pytest.raises(SelectionError):
        extract(workspace.source, Strategy.PATCH, ExtractMode.COMMIT, commit="0123456789abcdef")

    for target in (workspace.target_a, workspace.target_b):
        assert snapshot(target.path) == before[target.name]
        assert workspace.repo(target).head.commit.hexsha == heads[target.name]


def test_commit_id_cannot_smuggle_options(workspace):
    with pytest.raises(SelectionError):
        extract(workspace.source, Strategy.FILES, ExtractMode.COMMIT, commit="--all")


def test_selected_commits_are_replayed_oldest_first(workspace):
    repo = workspace.repo(workspace.source)
    write_files(workspace.source.path, {"one.txt": "1\n"})
    first = commit_all(repo, "one")
    write_files(workspace.source.path, {"two.txt": "2\n"})
    commit_all(repo, "two")
    write_files(workspace.source.path, {"three.txt": "3\n"})
    third = commit_all(repo, "three")

    change_set = extract(
        workspace.source, Strategy.PATCH, ExtractMode.COMMITS, commits=[third, first, third]
    )
    assert change_set.commits == (first, third)
    assert change_set.patch.index(b"Subject: [PATCH] one") < change_set.patch.index(
        b"Subject: [PATCH] three"
    )

    files = extract(workspace.source, Strategy.FILES, ExtractMode.COMMITS, commits=[third, first])
    assert files.paths == ("one.txt", "three.txt")


def test_manual_selection(workspace):
    write_files(workspace.source.path, {"src/app.py": "edited\n", "new/file.txt": "new\n"})

    available = list_working_changes(workspace.source)
    assert sorted(available) == ["new/file.txt", "src/app.py"]

    index = available.index("new/file.txt")
    picked = extract(workspace.source, Strategy.FILES, ExtractMode.MANUAL, selection=str(index))
    assert picked.paths == ("new/file.txt",)

    everything = extract(workspace.source, Strategy.FILES, ExtractMode.MANUAL, selection="a")
    assert everything.paths == ("new/file.txt", "src/app.py")

    with pytest.raises(SelectionError):
        extract(workspace.source, Strategy.FILES, ExtractMode.MANUAL, selection="7")


def test_manual_without_changes(workspace):
    with pytest.raises(EmptyChangeSet):
        extract(workspace.source, Strategy.FILES, ExtractMode.MANUAL, selection="a")


def test_working_patch_is_binary_safe_with_context(workspace):
    (workspace.source.path / "logo.bin").write_bytes(b"\x00\x01\x02binary\xff")
    repo = workspace.repo(workspace.source)
    repo.git.add("logo.bin")
    write_files(workspace.source.path, {"src/app.py": "line1\nline2\nLINE3\nline4\nline5\n"})

    change_set = extract(workspace.source, Strategy.PATCH, ExtractMode.WORKING, Scope.BOTH, context=10)
    assert change_set.patch_kind == PatchKind.DIFF
    assert b"GIT binary patch" in change_set.patch
    # All five lines are within the 10-line context window
    assert b" line1\n" in change_set.patch
    assert b"+LINE3\n" in change_set.patch


def test_recent_commits_lists_newest_first(workspace):
    repo = workspace.repo(workspace.source)
    write_files(workspace.source.path, {"x.txt": "x\n"})
    sha = commit_all(repo, "add x")

    commits = recent_commits(workspace.source)
    assert commits[0] == (sha, "add x")
    assert commits[-1][1] == "initial"


def test_source_must_be_a_repository(tmp_path):
    from reposync.models.change_set import Repository

    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(NotARepository):
        extract(Repository.from_path(plain), Strategy.FILES, ExtractMode.WORKING)


def test_discover_repos_sorted(workspace):
    (workspace.root / "not_a_repo").mkdir()
    names = [r.name for r in git_ops.discover_repos(workspace.root)]
    assert names == ["bystander", "source", "target_a", "target_b"]
