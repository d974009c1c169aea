from __future__ import annotations

from dataclasses import dataclass, field

from ctxsync.blob_cache import BlobCache
from ctxsync.models import FileRecord


@dataclass(slots=True)
class StatusResult:
    """Local changes since the last synced baseline.

    ``moved`` pairs a deleted path with a new path holding the same content;
    such files need no upload. ``pending_uploads`` counts distinct identities
    in the current scan that the remote is not known to hold.
    """

    new_files: list[FileRecord]
    modified_files: list[FileRecord]
    deleted_files: list[FileRecord]
    snapshot_count: int
    moved: list[tuple[str, str]] = field(default_factory=list)
    pending_uploads: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.new_files or self.modified_files or self.deleted_files or self.moved)


def _pair_moves(
    added: list[FileRecord], removed: list[FileRecord]
) -> tuple[list[FileRecord], list[FileRecord], list[tuple[str, str]]]:
    removed_by_identity: dict[str, list[FileRecord]] = {}
    for record in removed:
        removed_by_identity.setdefault(record.identity, []).append(record)

    still_added: list[FileRecord] = []
    moved: list[tuple[str, str]] = []
    for record in added:
        sources = removed_by_identity.get(record.identity)
        if sources:
            moved.append((sources.pop(0).path, record.path))
        else:
            still_added.append(record)

    moved_from = {old for old, _ in moved}
    still_removed = [record for record in removed if record.path not in moved_from]
    return still_added, still_removed, moved


def diff_records(
    previous: dict[str, FileRecord], current_records: list[FileRecord]
) -> StatusResult:
    """Classify by path and content identity; an mtime-only touch is no change."""
    current_map = {record.path: record for record in current_records}

    added = sorted(
        (record for path, record in current_map.items() if path not in previous),
        key=lambda r: r.path,
    )
    modified = sorted(
        (
            record
            for path, record in current_map.items()
            if path in previous and previous[path].identity != record.identity
        ),
        key=lambda r: r.path,
    )
    removed = sorted(
        (record for path, record in previous.items() if path not in current_map),
        key=lambda r: r.path,
    )
    added, removed, moved = _pair_moves(added, removed)

    return StatusResult(
        new_files=added,
        modified_files=modified,
        deleted_files=removed,
        snapshot_count=len(current_records),
        moved=moved,
    )


async def compute_status(
    cache: BlobCache,
    current_records: list[FileRecord],
    *,
    previous_records: dict[str, FileRecord] | None = None,
) -> StatusResult:
    previous = previous_records if previous_records is not None else await cache.load_records()
    result = diff_records(previous, current_records)

    identities = {record.identity for record in current_records}
    known = await cache.lookup_many(identities)
    result.pending_uploads = sum(
        1 for identity in identities if identity not in known or not known[identity].confirmed
    )
    return result
