from __future__ import annotations

import threading

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from ctxsync.models import TaskState, UploadTask


class TransferProgressUI:
    """Rich rendering of an upload pass: one overall bar plus a line per active blob.

    Implements the coordinator's progress hooks.
    """

    def __init__(self, console: Console | None = None, *, transient: bool = False) -> None:
        self._console = console
        self._lock = threading.Lock()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.fields[action]}"),
            TextColumn("{task.fields[path]}"),
            BarColumn(),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[state]}"),
            console=console,
            transient=transient,
            expand=True,
        )
        self._overall: TaskID | None = None
        self._handles: dict[str, TaskID] = {}
        self.failed = 0

    def __enter__(self) -> "TransferProgressUI":
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    def begin(self, tasks: list[UploadTask]) -> None:
        with self._lock:
            total = sum(task.size for task in tasks)
            self._overall = self._progress.add_task(
                "upload",
                total=total or None,
                action="PUT",
                path=f"{len(tasks)} blob(s)",
                state="queued" if tasks else "nothing to upload",
            )

    def task_started(self, task: UploadTask) -> None:
        with self._lock:
            self._handles[task.identity] = self._progress.add_task(
                task.source_path,
                total=task.size or None,
                action="PUT",
                path=task.source_path,
                state="uploading",
            )
            if self._overall is not None:
                self._progress.update(self._overall, state="running")

    def task_finished(self, task: UploadTask) -> None:
        with self._lock:
            handle = self._handles.pop(task.identity, None)
            if task.state is TaskState.COMMITTED:
                if handle is not None:
                    self._progress.update(handle, completed=task.size, state="done", visible=False)
                if self._overall is not None:
                    self._progress.update(self._overall, advance=task.size)
                return
            self.failed += 1
            if handle is not None:
                self._progress.update(handle, state=f"[red]{task.reason or 'failed'}")
            if self._overall is not None:
                self._progress.update(self._overall, state=f"[red]{self.failed} failed")
