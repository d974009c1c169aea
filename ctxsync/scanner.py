from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ctxsync.errors import ScanError, SyncCancelled
from ctxsync.filters import IGNORE_FILENAMES, PathFilter
from ctxsync.hashing import hash_file, is_utf8_file
from ctxsync.models import FileRecord, ScanIssue, WorkspaceSnapshot

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

DEFAULT_HASH_WORKERS = 8


@dataclass(slots=True)
class _Candidate:
    abs_path: Path
    path: str
    size: int
    mtime_ns: int


@dataclass(slots=True)
class _PendingDir:
    abs_path: Path
    rel_path: str
    ancestors: frozenset[tuple[int, int]]
    path_filter: PathFilter


class _BinaryContent(Exception):
    pass


def _dir_key(stat: os.stat_result) -> tuple[int, int]:
    return (stat.st_dev, stat.st_ino)


def _join(rel_dir: str, name: str) -> str:
    return f"{rel_dir}/{name}" if rel_dir else name


def _hash_candidate(candidate: _Candidate, skip_binary: bool) -> FileRecord:
    identity = hash_file(candidate.abs_path)
    if skip_binary and not is_utf8_file(candidate.abs_path):
        raise _BinaryContent(candidate.path)
    return FileRecord(
        path=candidate.path,
        size=candidate.size,
        mtime_ns=candidate.mtime_ns,
        identity=identity,
    )


def _reusable(candidate: _Candidate, previous: FileRecord | None) -> bool:
    return (
        previous is not None
        and previous.size == candidate.size
        and previous.mtime_ns == candidate.mtime_ns
    )


def scan_workspace(
    root: Path,
    *,
    path_filter: PathFilter | None = None,
    previous_records: dict[str, FileRecord] | None = None,
    hash_workers: int = DEFAULT_HASH_WORKERS,
    follow_symlinks: bool = False,
    max_file_bytes: int | None = None,
    skip_binary: bool = True,
    cancel_event: threading.Event | None = None,
    on_record: Callable[[FileRecord], None] | None = None,
) -> WorkspaceSnapshot:
    """Walk ``root`` and build a snapshot of every tracked file.

    Directories are walked from an explicit stack; files are handed to a
    bounded thread pool for hashing as soon as they are discovered, so the
    walk never waits on file reads. A file whose size and mtime match its
    ``previous_records`` entry keeps its earlier identity without a re-read.
    Ignore files met along the way apply to their own subtree, and files
    that are not valid UTF-8 are skipped when ``skip_binary`` is set.

    Raises ``ScanError`` if ``root`` cannot be listed and ``SyncCancelled``
    if ``cancel_event`` is set mid-walk. Failures on individual files or
    subdirectories are logged and recorded in ``snapshot.skipped``.
    """
    root = Path(root).resolve()
    path_filter = path_filter or PathFilter()
    previous_records = previous_records or {}

    try:
        root_stat = root.stat()
    except OSError as exc:
        raise ScanError(f"Workspace root is not accessible: {root} ({exc})") from exc
    if not root.is_dir():
        raise ScanError(f"Workspace root is not a directory: {root}")

    issues: list[ScanIssue] = []
    records: list[FileRecord] = []
    futures: dict[Future[FileRecord], _Candidate] = {}
    stack = [_PendingDir(root, "", frozenset({_dir_key(root_stat)}), path_filter)]

    with ThreadPoolExecutor(
        max_workers=max(1, hash_workers), thread_name_prefix="ctxsync-hash"
    ) as executor:
        try:
            while stack:
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelled("Scan cancelled")
                current = stack.pop()
                try:
                    with os.scandir(current.abs_path) as it:
                        entries = sorted(it, key=lambda entry: entry.name)
                except OSError as exc:
                    if not current.rel_path:
                        raise ScanError(f"Workspace root is not readable: {root} ({exc})") from exc
                    logger.warning("Skipping unreadable directory %s: %s", current.rel_path, exc)
                    issues.append(ScanIssue(current.rel_path, f"unreadable directory: {exc}"))
                    continue

                dir_filter = current.path_filter
                if any(entry.name in IGNORE_FILENAMES for entry in entries):
                    dir_filter = dir_filter.for_directory(current.rel_path, current.abs_path)

                for entry in entries:
                    rel_path = _join(current.rel_path, entry.name)
                    try:
                        is_link = entry.is_symlink()
                        if is_link and not follow_symlinks:
                            continue
                        is_dir = entry.is_dir(follow_symlinks=follow_symlinks)
                        is_file = not is_dir and entry.is_file(follow_symlinks=follow_symlinks)
                    except OSError as exc:
                        issues.append(ScanIssue(rel_path, f"stat failed: {exc}"))
                        continue

                    if is_dir:
                        if dir_filter.ignores_dir(rel_path):
                            continue
                        try:
                            key = _dir_key(entry.stat(follow_symlinks=follow_symlinks))
                        except OSError as exc:
                            issues.append(ScanIssue(rel_path, f"stat failed: {exc}"))
                            continue
                        if key in current.ancestors:
                            logger.warning("Symlink cycle detected at %s; not descending", rel_path)
                            issues.append(ScanIssue(rel_path, "symlink cycle"))
                            continue
                        stack.append(
                            _PendingDir(
                                Path(entry.path), rel_path, current.ancestors | {key}, dir_filter
                            )
                        )
                        continue

                    if not is_file or not dir_filter.matches(rel_path):
                        continue

                    try:
                        stat = entry.stat(follow_symlinks=follow_symlinks)
                    except OSError as exc:
                        logger.warning("Skipping %s: %s", rel_path, exc)
                        issues.append(ScanIssue(rel_path, f"stat failed: {exc}"))
                        continue
                    if max_file_bytes is not None and stat.st_size > max_file_bytes:
                        logger.debug("Skipping large file (%d bytes): %s", stat.st_size, rel_path)
                        issues.append(ScanIssue(rel_path, f"larger than {max_file_bytes} bytes"))
                        continue

                    candidate = _Candidate(Path(entry.path), rel_path, stat.st_size, stat.st_mtime_ns)
                    previous = previous_records.get(rel_path)
                    if _reusable(candidate, previous):
                        records.append(previous)
                        if on_record is not None:
                            on_record(previous)
                        continue
                    futures[executor.submit(_hash_candidate, candidate, skip_binary)] = candidate
        except BaseException:
            for future in futures:
                future.cancel()
            raise

        for future, candidate in futures.items():
            try:
                record = future.result()
            except _BinaryContent:
                logger.debug("Skipping binary file: %s", candidate.path)
                issues.append(ScanIssue(candidate.path, "binary file"))
                continue
            except OSError as exc:
                logger.warning("Skipping %s: %s", candidate.path, exc)
                issues.append(ScanIssue(candidate.path, f"read failed: {exc}"))
                continue
            records.append(record)
            if on_record is not None:
                on_record(record)

    records.sort(key=lambda record: record.path)
    issues.sort(key=lambda issue: issue.path)
    logger.debug("Scanned %s: %d file(s), %d skipped", root, len(records), len(issues))
    return WorkspaceSnapshot(records, skipped=issues)


def scan_workspace_with_progress(
    root: Path,
    *,
    console: "Console | None" = None,
    **kwargs,
) -> WorkspaceSnapshot:
    from rich.progress import Progress, SpinnerColumn, TextColumn

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]Scanning"),
        TextColumn("{task.completed} file(s)"),
        TextColumn("{task.fields[path]}"),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("scan", total=None, path="")

        def _advance(record: FileRecord) -> None:
            progress.update(task_id, advance=1, path=record.path)

        return scan_workspace(root, on_record=_advance, **kwargs)
