from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable

import aiosqlite

from ctxsync.errors import CacheInconsistency
from ctxsync.models import AckState, CacheEntry, FileRecord


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 256 * 1024 * 1024
_LOOKUP_CHUNK = 500

BLOB_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS blob_state (
    identity TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    state TEXT NOT NULL CHECK (state IN ('unconfirmed', 'confirmed')),
    last_used REAL NOT NULL
);
"""

BLOB_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS blob_state_lru ON blob_state (state, last_used);
"""

FILE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS file_state (
    path TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL
);
"""

META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass(slots=True)
class CacheStats:
    confirmed_count: int
    confirmed_bytes: int
    unconfirmed_count: int
    unconfirmed_bytes: int
    capacity_bytes: int

    @property
    def total_bytes(self) -> int:
        return self.confirmed_bytes + self.unconfirmed_bytes


def _entry_from_row(row: aiosqlite.Row) -> CacheEntry:
    return CacheEntry(
        identity=str(row["identity"]),
        size=int(row["size"]),
        state=AckState(row["state"]),
        last_used=float(row["last_used"]),
    )


class BlobCache:
    """Persistent record of which content identities the remote already holds.

    Backed by one SQLite database per workspace. Every public operation runs
    in its own transaction under a single lock, so a crash leaves either the
    previous or the new state on disk and concurrent callers never interleave
    inside an operation. Sequencing ``lookup`` before ``mark_pending`` across
    a whole pass is the caller's job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.capacity_bytes = capacity_bytes
        self._clock = clock
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> "BlobCache":
        if self._db is not None:
            return self
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        try:
            await db.execute("PRAGMA synchronous=FULL")
            await db.execute(BLOB_SCHEMA_SQL)
            await db.execute(BLOB_INDEX_SQL)
            await db.execute(FILE_SCHEMA_SQL)
            await db.execute(META_SCHEMA_SQL)
            await db.commit()
        except BaseException:
            await db.close()
            raise
        self._db = db
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "BlobCache":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("BlobCache is not open")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            db = self._conn
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def lookup(self, identity: str) -> CacheEntry | None:
        async with self._lock:
            cursor = await self._conn.execute(
                "SELECT identity, size, state, last_used FROM blob_state WHERE identity = ?",
                (identity,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return None if row is None else _entry_from_row(row)

    async def lookup_many(self, identities: Iterable[str]) -> dict[str, CacheEntry]:
        wanted = sorted(set(identities))
        found: dict[str, CacheEntry] = {}
        async with self._lock:
            for start in range(0, len(wanted), _LOOKUP_CHUNK):
                chunk = wanted[start : start + _LOOKUP_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                cursor = await self._conn.execute(
                    "SELECT identity, size, state, last_used FROM blob_state "
                    f"WHERE identity IN ({placeholders})",
                    chunk,
                )
                rows = await cursor.fetchall()
                await cursor.close()
                for row in rows:
                    entry = _entry_from_row(row)
                    found[entry.identity] = entry
        return found

    async def mark_pending(self, identity: str, size: int) -> None:
        await self.mark_pending_many([(identity, size)])

    async def mark_pending_many(self, items: Iterable[tuple[str, int]]) -> None:
        """Record intent to upload every ``(identity, size)`` in one transaction."""
        now = self._clock()
        params = [(identity, size, now) for identity, size in items]
        if not params:
            return
        async with self._transaction() as db:
            await db.executemany(
                """
                INSERT INTO blob_state (identity, size, state, last_used)
                VALUES (?, ?, 'unconfirmed', ?)
                ON CONFLICT(identity) DO UPDATE SET
                    size = excluded.size,
                    state = 'unconfirmed',
                    last_used = excluded.last_used
                """,
                params,
            )

    async def commit(self, identity: str) -> None:
        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT state FROM blob_state WHERE identity = ?",
                (identity,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                raise CacheInconsistency(f"commit for unknown identity {identity}")
            await db.execute(
                "UPDATE blob_state SET state = 'confirmed', last_used = ? WHERE identity = ?",
                (self._clock(), identity),
            )

    async def touch(self, identities: Iterable[str]) -> None:
        now = self._clock()
        params = [(now, identity) for identity in sorted(set(identities))]
        if not params:
            return
        async with self._transaction() as db:
            await db.executemany(
                "UPDATE blob_state SET last_used = ? WHERE identity = ?",
                params,
            )

    async def discard_unconfirmed(self, live: Iterable[str]) -> list[str]:
        """Delete unconfirmed entries whose identity is not in ``live``.

        Such entries belong to uploads that failed for content no longer in
        the workspace; nothing will retry them.
        """
        keep = set(live)
        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT identity FROM blob_state WHERE state = 'unconfirmed' ORDER BY identity"
            )
            stale = [str(row["identity"]) async for row in cursor if row["identity"] not in keep]
            await cursor.close()
            if stale:
                await db.executemany(
                    "DELETE FROM blob_state WHERE identity = ? AND state = 'unconfirmed'",
                    [(identity,) for identity in stale],
                )
        if stale:
            logger.info("Discarded %d stale unconfirmed blob cache entries", len(stale))
        return stale

    async def evict_if_needed(self) -> list[str]:
        """Drop least-recently-used confirmed entries until under capacity.

        Unconfirmed entries belong to uploads that have not been acknowledged
        yet and are never evicted, even if that leaves the cache over capacity.
        """
        async with self._transaction() as db:
            cursor = await db.execute("SELECT COALESCE(SUM(size), 0) FROM blob_state")
            (total,) = await cursor.fetchone()
            await cursor.close()
            total = int(total)
            if total <= self.capacity_bytes:
                return []

            cursor = await db.execute(
                "SELECT identity, size FROM blob_state WHERE state = 'confirmed' "
                "ORDER BY last_used ASC, identity ASC"
            )
            evicted: list[str] = []
            async for row in cursor:
                if total <= self.capacity_bytes:
                    break
                evicted.append(str(row["identity"]))
                total -= int(row["size"])
            await cursor.close()

            if evicted:
                await db.executemany(
                    "DELETE FROM blob_state WHERE identity = ? AND state = 'confirmed'",
                    [(identity,) for identity in evicted],
                )
        if total > self.capacity_bytes:
            logger.warning(
                "Blob cache still over capacity (%d > %d bytes); remaining entries are unconfirmed",
                total,
                self.capacity_bytes,
            )
        if evicted:
            logger.info("Evicted %d blob cache entries", len(evicted))
        return evicted

    async def stats(self) -> CacheStats:
        async with self._lock:
            cursor = await self._conn.execute(
                "SELECT state, COUNT(*), COALESCE(SUM(size), 0) FROM blob_state GROUP BY state"
            )
            rows = await cursor.fetchall()
            await cursor.close()
        counts = {str(row[0]): (int(row[1]), int(row[2])) for row in rows}
        confirmed = counts.get(AckState.CONFIRMED.value, (0, 0))
        unconfirmed = counts.get(AckState.UNCONFIRMED.value, (0, 0))
        return CacheStats(
            confirmed_count=confirmed[0],
            confirmed_bytes=confirmed[1],
            unconfirmed_count=unconfirmed[0],
            unconfirmed_bytes=unconfirmed[1],
            capacity_bytes=self.capacity_bytes,
        )

    async def load_records(self) -> dict[str, FileRecord]:
        async with self._lock:
            cursor = await self._conn.execute(
                "SELECT path, identity, size, mtime_ns FROM file_state ORDER BY path"
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return {
            str(row["path"]): FileRecord(
                path=str(row["path"]),
                size=int(row["size"]),
                mtime_ns=int(row["mtime_ns"]),
                identity=str(row["identity"]),
            )
            for row in rows
        }

    async def replace_records(self, records: list[FileRecord]) -> None:
        async with self._transaction() as db:
            await db.execute("DELETE FROM file_state")
            if records:
                await db.executemany(
                    """
                    INSERT INTO file_state (path, identity, size, mtime_ns)
                    VALUES (?, ?, ?, ?)
                    """,
                    [(r.path, r.identity, r.size, r.mtime_ns) for r in records],
                )

    async def load_manifest(self) -> dict[str, str]:
        return {path: record.identity for path, record in (await self.load_records()).items()}

    async def get_meta(self, key: str) -> str | None:
        async with self._lock:
            cursor = await self._conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return None
        return str(row[0])

    async def set_meta(self, key: str, value: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)",
                (key, value),
            )
