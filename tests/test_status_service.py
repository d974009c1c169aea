import pytest

from ctxsync.models import FileRecord
from ctxsync.status_service import compute_status, diff_records


def _rec(path: str, identity_char: str, mtime_ns: int = 1) -> FileRecord:
    return FileRecord(path=path, size=1, mtime_ns=mtime_ns, identity=identity_char * 64)


def test_diff_records_classifies_changes():
    previous = {
        "same.py": _rec("same.py", "a"),
        "edited.py": _rec("edited.py", "b"),
        "gone.py": _rec("gone.py", "c"),
    }
    current = [
        _rec("same.py", "a"),
        _rec("edited.py", "d"),
        _rec("added.py", "e"),
    ]

    result = diff_records(previous, current)

    assert [r.path for r in result.new_files] == ["added.py"]
    assert [r.path for r in result.modified_files] == ["edited.py"]
    assert [r.path for r in result.deleted_files] == ["gone.py"]
    assert result.snapshot_count == 3
    assert result.has_changes


def test_touch_without_content_change_is_not_modified():
    previous = {"f.py": _rec("f.py", "a", mtime_ns=1)}
    result = diff_records(previous, [_rec("f.py", "a", mtime_ns=99)])
    assert not result.has_changes


@pytest.mark.asyncio
async def test_compute_status_uses_stored_baseline(cache):
    await cache.replace_records([_rec("old.py", "a")])

    result = await compute_status(cache, [_rec("new.py", "b")])

    assert [r.path for r in result.new_files] == ["new.py"]
    assert [r.path for r in result.deleted_files] == ["old.py"]


def test_same_content_at_new_path_is_a_move():
    previous = {"old/name.py": _rec("old/name.py", "a"), "other.py": _rec("other.py", "b")}
    current = [_rec("new/name.py", "a"), _rec("other.py", "b")]

    result = diff_records(previous, current)

    assert result.moved == [("old/name.py", "new/name.py")]
    assert result.new_files == []
    assert result.deleted_files == []
    assert result.has_changes


@pytest.mark.asyncio
async def test_pending_uploads_counts_unconfirmed_content(cache):
    await cache.mark_pending("a" * 64, 1)
    await cache.commit("a" * 64)
    await cache.mark_pending("b" * 64, 1)

    result = await compute_status(
        cache,
        [_rec("a.py", "a"), _rec("copy_of_a.py", "a"), _rec("b.py", "b"), _rec("c.py", "c")],
        previous_records={},
    )

    assert result.pending_uploads == 2
