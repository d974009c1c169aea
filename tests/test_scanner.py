import os
import threading

import pytest

from conftest import write_file
from ctxsync.errors import ScanError, SyncCancelled
from ctxsync.filters import build_path_filter
from ctxsync.hashing import hash_bytes
from ctxsync.models import FileRecord
from ctxsync.scanner import scan_workspace


def test_scan_records_every_tracked_file(workspace):
    write_file(workspace, "a.py", "print('a')\n")
    write_file(workspace, "pkg/b.py", "print('b')\n")
    write_file(workspace, "pkg/deep/c.txt", "c")

    snapshot = scan_workspace(workspace, path_filter=build_path_filter(root=workspace))

    assert list(snapshot) == ["a.py", "pkg/b.py", "pkg/deep/c.txt"]
    assert snapshot["pkg/deep/c.txt"].identity == hash_bytes(b"c")
    assert snapshot["pkg/deep/c.txt"].size == 1
    assert snapshot.skipped == ()


def test_ignored_directories_are_not_entered(workspace):
    write_file(workspace, "src/app.js", "x")
    write_file(workspace, "node_modules/dep/index.js", "y")
    write_file(workspace, ".git/HEAD", "ref: refs/heads/main")
    write_file(workspace, ".gitignore", "out/\n")
    write_file(workspace, "out/bundle.js", "z")

    snapshot = scan_workspace(workspace, path_filter=build_path_filter(root=workspace))

    assert sorted(snapshot) == [".gitignore", "src/app.js"]


def test_duplicate_content_shares_identity(workspace):
    write_file(workspace, "one.txt", "same")
    write_file(workspace, "two/one.txt", "same")

    snapshot = scan_workspace(workspace)

    assert snapshot["one.txt"].identity == snapshot["two/one.txt"].identity


def test_unchanged_files_reuse_previous_identity(workspace, monkeypatch):
    write_file(workspace, "keep.txt", "keep")
    first = scan_workspace(workspace)

    import ctxsync.scanner as scanner_module

    hashed = []
    real_hash_file = scanner_module.hash_file

    def counting_hash(path, *args, **kwargs):
        hashed.append(path.name)
        return real_hash_file(path, *args, **kwargs)

    monkeypatch.setattr(scanner_module, "hash_file", counting_hash)
    write_file(workspace, "new.txt", "new")

    second = scan_workspace(workspace, previous_records=dict(first))

    assert hashed == ["new.txt"]
    assert second["keep.txt"] == first["keep.txt"]


def test_stale_previous_identity_is_not_trusted_when_size_changes(workspace):
    write_file(workspace, "f.txt", "longer content")
    stale = FileRecord(path="f.txt", size=1, mtime_ns=0, identity="0" * 64)

    snapshot = scan_workspace(workspace, previous_records={"f.txt": stale})

    assert snapshot["f.txt"].identity == hash_bytes(b"longer content")


def test_large_files_are_skipped_and_reported(workspace):
    write_file(workspace, "small.txt", "x")
    write_file(workspace, "big.bin", b"\0" * 2048)

    snapshot = scan_workspace(workspace, max_file_bytes=1024)

    assert list(snapshot) == ["small.txt"]
    assert [issue.path for issue in snapshot.skipped] == ["big.bin"]


def test_symlinks_are_skipped_by_default(workspace):
    write_file(workspace, "real/file.txt", "data")
    os.symlink(workspace / "real", workspace / "alias")
    os.symlink(workspace / "real" / "file.txt", workspace / "link.txt")

    snapshot = scan_workspace(workspace)

    assert list(snapshot) == ["real/file.txt"]


def test_symlink_cycle_terminates_with_issue(workspace):
    write_file(workspace, "a/file.txt", "data")
    os.symlink(workspace, workspace / "a" / "loop")

    snapshot = scan_workspace(workspace, follow_symlinks=True)

    assert "a/file.txt" in snapshot
    assert any(issue.reason == "symlink cycle" for issue in snapshot.skipped)
    assert not any(path.startswith("a/loop/") for path in snapshot)


def test_missing_root_raises_scan_error(tmp_path):
    with pytest.raises(ScanError):
        scan_workspace(tmp_path / "does-not-exist")


def test_root_that_is_a_file_raises_scan_error(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    with pytest.raises(ScanError):
        scan_workspace(target)


@pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs POSIX permissions")
def test_unreadable_subdirectory_is_reported_not_fatal(workspace):
    write_file(workspace, "ok.txt", "ok")
    locked = workspace / "locked"
    write_file(workspace, "locked/secret.txt", "s")
    locked.chmod(0)
    try:
        snapshot = scan_workspace(workspace)
    finally:
        locked.chmod(0o755)

    assert list(snapshot) == ["ok.txt"]
    assert [issue.path for issue in snapshot.skipped] == ["locked"]


def test_cancelled_scan_raises(workspace):
    write_file(workspace, "a.txt", "a")
    event = threading.Event()
    event.set()

    with pytest.raises(SyncCancelled):
        scan_workspace(workspace, cancel_event=event)


def test_on_record_sees_every_file(workspace):
    write_file(workspace, "a.txt", "a")
    write_file(workspace, "b/c.txt", "c")
    seen = []

    scan_workspace(workspace, on_record=lambda record: seen.append(record.path))

    assert sorted(seen) == ["a.txt", "b/c.txt"]


def test_nested_gitignore_applies_to_its_subtree(workspace):
    write_file(workspace, "gen.txt", "root copy")
    write_file(workspace, "sub/.gitignore", "gen.txt\n")
    write_file(workspace, "sub/gen.txt", "generated")
    write_file(workspace, "sub/deeper/gen.txt", "generated")
    write_file(workspace, "sub/keep.txt", "keep")

    snapshot = scan_workspace(workspace, path_filter=build_path_filter(root=workspace))

    assert sorted(snapshot) == ["gen.txt", "sub/.gitignore", "sub/keep.txt"]


def test_nested_ignore_file_can_prune_a_directory(workspace):
    write_file(workspace, "pkg/.ctxsyncignore", "fixtures/\n")
    write_file(workspace, "pkg/fixtures/big.json", "{}")
    write_file(workspace, "pkg/mod.py", "x = 1\n")
    write_file(workspace, "fixtures/top.json", "{}")

    snapshot = scan_workspace(workspace, path_filter=build_path_filter(root=workspace))

    assert sorted(snapshot) == ["fixtures/top.json", "pkg/.ctxsyncignore", "pkg/mod.py"]


def test_gitignore_patterns_follow_git_anchoring(workspace):
    write_file(workspace, ".gitignore", "docs/*.md\n**/secret.txt\n")
    write_file(workspace, "docs/readme.md", "top docs")
    write_file(workspace, "src/docs/readme.md", "nested docs")
    write_file(workspace, "secret.txt", "s")
    write_file(workspace, "a/secret.txt", "s")

    snapshot = scan_workspace(workspace, path_filter=build_path_filter(root=workspace))

    assert sorted(snapshot) == [".gitignore", "src/docs/readme.md"]


def test_binary_files_are_skipped_and_reported(workspace):
    write_file(workspace, "notes.md", "# notes\n")
    write_file(workspace, "logo.png", b"\x89PNG\r\n\x1a\n\x00\xff")

    snapshot = scan_workspace(workspace)

    assert list(snapshot) == ["notes.md"]
    assert [(issue.path, issue.reason) for issue in snapshot.skipped] == [("logo.png", "binary file")]


def test_binary_files_can_be_kept(workspace):
    write_file(workspace, "logo.png", b"\x89PNG\r\n\x1a\n\x00\xff")

    snapshot = scan_workspace(workspace, skip_binary=False)

    assert list(snapshot) == ["logo.png"]
