from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping


@dataclass(frozen=True, slots=True)
class FileRecord:
    path: str
    size: int
    mtime_ns: int
    identity: str


@dataclass(frozen=True, slots=True)
class ScanIssue:
    path: str
    reason: str


class WorkspaceSnapshot(Mapping[str, FileRecord]):
    """Immutable path -> FileRecord view of the workspace at one scan."""

    __slots__ = ("_records", "skipped")

    def __init__(
        self,
        records: list[FileRecord] | tuple[FileRecord, ...] = (),
        *,
        skipped: list[ScanIssue] | tuple[ScanIssue, ...] = (),
    ) -> None:
        self._records = MappingProxyType({record.path: record for record in records})
        self.skipped = tuple(skipped)

    def __getitem__(self, path: str) -> FileRecord:
        return self._records[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"WorkspaceSnapshot({len(self)} files, {len(self.skipped)} skipped)"

    def records(self) -> list[FileRecord]:
        return list(self._records.values())

    def identities(self) -> dict[str, str]:
        return {path: record.identity for path, record in self._records.items()}

    def total_bytes(self) -> int:
        return sum(record.size for record in self._records.values())

    def diff(self, other: "WorkspaceSnapshot") -> "SnapshotDiff":
        """Compare this snapshot (newer) against ``other`` (older) by identity."""
        mine = self.identities()
        theirs = other.identities()
        return SnapshotDiff(
            added=sorted(path for path in mine if path not in theirs),
            changed=sorted(
                path for path, identity in mine.items() if path in theirs and theirs[path] != identity
            ),
            removed=sorted(path for path in theirs if path not in mine),
        )


@dataclass(slots=True)
class SnapshotDiff:
    added: list[str]
    changed: list[str]
    removed: list[str]

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)


class AckState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    identity: str
    size: int
    state: AckState
    last_used: float

    @property
    def confirmed(self) -> bool:
        return self.state is AckState.CONFIRMED


class TaskState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(slots=True)
class UploadTask:
    identity: str
    source_path: str
    size: int
    state: TaskState = TaskState.PENDING
    reason: str | None = None
    attempts: int = 0

    def fail(self, reason: str) -> None:
        self.state = TaskState.FAILED
        self.reason = reason


@dataclass(frozen=True, slots=True)
class SessionCredential:
    access_token: str
    tenant_url: str
    expires_at: float | None = None
    refresh_token: str | None = None
    scopes: tuple[str, ...] = ("read", "write")

    def is_expired(self, now: float, skew: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at - skew


@dataclass(slots=True)
class SyncReport:
    manifest: dict[str, str]
    uploaded: list[str] = field(default_factory=list)
    already_confirmed: int = 0
    failed: list[UploadTask] = field(default_factory=list)
    scan_issues: tuple[ScanIssue, ...] = ()
    cancelled: bool = False
    evicted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def upload_count(self) -> int:
        return len(self.uploaded)
