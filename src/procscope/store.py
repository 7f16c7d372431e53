"""Snapshot store and record-store backends."""

import json
import sqlite3
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Protocol

import structlog

from procscope.errors import StoreWriteConflict
from procscope.models import ProcessSample, Snapshot, SystemStats

log = structlog.get_logger()


class RecordStore(Protocol):
    """Key-ordered record store used for persistence."""

    def replace_all(self, records: Iterable[dict]) -> None: ...

    def insert(self, record: dict) -> None: ...

    def query_recent(self, limit: int) -> list[dict]: ...

    def close(self) -> None: ...


class MemoryRecordStore:
    """In-memory record store, ordered by insertion."""

    def __init__(self, max_records: int | None = None) -> None:
        self._records: deque[dict] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def replace_all(self, records: Iterable[dict]) -> None:
        records = list(records)
        with self._lock:
            self._records.clear()
            self._records.extend(records)

    def insert(self, record: dict) -> None:
        with self._lock:
            self._records.append(record)

    def query_recent(self, limit: int) -> list[dict]:
        """Return up to limit records, most recent first."""
        if limit <= 0:
            return []
        with self._lock:
            records = list(self._records)
        return records[::-1][:limit]

    def close(self) -> None:
        pass


class SqliteRecordStore:
    """
    Record store backed by one sqlite table.

    Rows are keyed by an autoincrement id and carry the record as a JSON
    payload; recency is id order.
    """

    def __init__(self, path: str | Path, table: str, max_records: int | None = None) -> None:
        if not table.isidentifier():
            raise ValueError(f"invalid table name: {table!r}")
        self._table = table
        self._max_records = max_records
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        with self._conn:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, payload TEXT NOT NULL)"
            )

    def replace_all(self, records: Iterable[dict]) -> None:
        rows = [(json.dumps(record),) for record in records]
        with self._lock, self._conn:
            self._conn.execute(f"DELETE FROM {self._table}")
            self._conn.executemany(f"INSERT INTO {self._table} (payload) VALUES (?)", rows)

    def insert(self, record: dict) -> None:
        with self._lock, self._conn:
            self._conn.execute(f"INSERT INTO {self._table} (payload) VALUES (?)", (json.dumps(record),))
            if self._max_records is not None:
                self._conn.execute(
                    f"DELETE FROM {self._table} WHERE id <= (SELECT MAX(id) FROM {self._table}) - ?",
                    (self._max_records,),
                )

    def query_recent(self, limit: int) -> list[dict]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"SELECT payload FROM {self._table} ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [json.loads(payload) for (payload,) in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SnapshotStore:
    """
    Owner of the current snapshot and the bounded history.

    Lifetime is process-wide: created empty at startup, closed at shutdown.
    Writers are serialized by a lock; readers of the current snapshot take
    no lock and always get one complete, immutable Snapshot.
    """

    def __init__(
        self,
        history_limit: int = 100,
        process_records: RecordStore | None = None,
        stats_records: RecordStore | None = None,
        write_timeout: float = 5.0,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self._history_limit = history_limit
        self._write_timeout = write_timeout
        self._process_records = process_records or MemoryRecordStore()
        self._stats_records = stats_records or MemoryRecordStore(max_records=history_limit)
        self._write_lock = threading.Lock()
        self._history_lock = threading.Lock()
        self._history: deque[ProcessSample] = deque(maxlen=history_limit)
        self._stats_history: deque[SystemStats] = deque(maxlen=history_limit)
        self._current = Snapshot()
        self._load_history()

    def _load_history(self) -> None:
        """Seed history from whatever the record stores already hold."""
        samples = [ProcessSample.from_dict(r) for r in self._process_records.query_recent(self._history_limit)]
        stats = [SystemStats.from_dict(r) for r in self._stats_records.query_recent(self._history_limit)]
        self._history.extend(reversed(samples))
        self._stats_history.extend(reversed(stats))
        if samples or stats:
            log.info("history_loaded", processes=len(samples), stats=len(stats))

    @property
    def history_limit(self) -> int:
        return self._history_limit

    def replace_current(
        self,
        processes: Iterable[ProcessSample],
        stats: SystemStats,
        total_processes: int,
        monitored_processes: int,
    ) -> Snapshot:
        """
        Commit a new current snapshot.

        Records are persisted first; if that fails nothing in memory has
        changed. The committed samples and stats are appended to history
        and the current reference is swapped last.
        """
        if not self._write_lock.acquire(timeout=self._write_timeout):
            raise StoreWriteConflict("snapshot store is locked by another writer")
        try:
            processes = tuple(processes)
            with self._history_lock:
                last_stats = self._stats_history[-1] if self._stats_history else None
            if last_stats is not None and stats.captured_at < last_stats.captured_at:
                # Wall clock stepped back; keep history time-ordered.
                stats = replace(stats, captured_at=last_stats.captured_at)

            self._process_records.replace_all(proc.to_dict() for proc in processes)
            self._stats_records.insert(stats.to_dict())

            snapshot = Snapshot(
                processes=processes,
                system_stats=stats,
                total_processes=total_processes,
                monitored_processes=monitored_processes,
                cycle=self._current.cycle + 1,
            )
            with self._history_lock:
                self._history.extend(processes)
                self._stats_history.append(stats)
            self._current = snapshot
            return snapshot
        finally:
            self._write_lock.release()

    def read_current(self) -> Snapshot:
        return self._current

    def read_history(self, limit: int | None = None) -> list[ProcessSample]:
        """Most recent process samples first."""
        with self._history_lock:
            samples = list(self._history)
        samples.reverse()
        return samples if limit is None else samples[: max(limit, 0)]

    def read_stats_history(self, limit: int | None = None) -> list[SystemStats]:
        """Most recent system stats first."""
        with self._history_lock:
            stats = list(self._stats_history)
        stats.reverse()
        return stats if limit is None else stats[: max(limit, 0)]

    def close(self) -> None:
        self._process_records.close()
        self._stats_records.close()
