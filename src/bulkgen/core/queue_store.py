"""Durable, client-local record of generation queue entries.

The queue is a cache for display and crash recovery; the server-side
generation log remains the system of record.
"""

from __future__ import annotations

import asyncio
import json
import random
import sqlite3
import string
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from ..models import QueueEntry, Task

SUCCESS_DISMISS_SECONDS = 30.0
RESOLVED_STATUSES = ("success", "failed", "skipped")


class QueueBackend(Protocol):
    def load_all(self) -> List[dict]:
        ...

    def put(self, entry: dict) -> None:
        ...

    def delete(self, entry_ids: Sequence[str]) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryQueueBackend:
    """Process-local backend; survives store re-creation but not a restart."""

    def __init__(self) -> None:
        self._rows: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load_all(self) -> List[dict]:
        with self._lock:
            return [json.loads(raw) for raw in self._rows.values()]

    def put(self, entry: dict) -> None:
        with self._lock:
            self._rows[entry["id"]] = json.dumps(entry)

    def delete(self, entry_ids: Sequence[str]) -> None:
        with self._lock:
            for entry_id in entry_ids:
                self._rows.pop(entry_id, None)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()


class SqliteQueueBackend:
    """One row per queue entry, keyed by entry id."""

    def __init__(self, db_path: str | Path, *, logger) -> None:
        self.db_path = Path(db_path)
        self.logger = logger
        self._lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    def initialize(self) -> None:
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_entries (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_seq INTEGER NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        self._initialized = True

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    def load_all(self) -> List[dict]:
        self.initialize()
        entries: List[dict] = []
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT id, payload FROM queue_entries ORDER BY created_seq").fetchall()
        for row in rows:
            try:
                entries.append(json.loads(row["payload"]))
            except json.JSONDecodeError:
                self.logger.warning("Discarding unreadable queue entry %s", row["id"])
        return entries

    def put(self, entry: dict) -> None:
        self.initialize()
        payload = json.dumps(entry, ensure_ascii=False)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO queue_entries (id, payload, created_seq, updated_at)
                VALUES (?, ?, (SELECT COALESCE(MAX(created_seq), 0) + 1 FROM queue_entries), ?)
                ON CONFLICT(id) DO UPDATE SET payload=excluded.payload, updated_at=excluded.updated_at
                """,
                (entry["id"], payload, time.time()),
            )
            conn.commit()

    def delete(self, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        self.initialize()
        with self._lock, self._connect() as conn:
            conn.executemany("DELETE FROM queue_entries WHERE id=?", [(entry_id,) for entry_id in entry_ids])
            conn.commit()

    def clear(self) -> None:
        self.initialize()
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM queue_entries")
            conn.commit()


QueueListener = Callable[[List[QueueEntry]], None]


class QueueStore:
    """Single writer over the queue entries, with write-through persistence.

    Every mutation takes ``_lock`` and rewrites exactly the entries it
    touched, so concurrent resolves of different tasks never clobber each
    other. Listeners receive a fresh snapshot after each change.
    """

    def __init__(
        self,
        backend: QueueBackend,
        *,
        logger,
        success_dismiss_seconds: float = SUCCESS_DISMISS_SECONDS,
        clock: Callable[[], float] = time.time,
        session_id: Optional[str] = None,
    ) -> None:
        self.backend = backend
        self.logger = logger
        self.success_dismiss_seconds = float(success_dismiss_seconds)
        self.clock = clock
        self.session_id = session_id or uuid.uuid4().hex
        self._lock = asyncio.Lock()
        self._entries: Dict[str, QueueEntry] = {}
        self._listeners: List[QueueListener] = []
        self._counter = 0
        self._load()

    def _load(self) -> None:
        for raw in self.backend.load_all():
            try:
                entry = QueueEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning("Ignoring malformed queue entry %r: %s", raw, exc)
                continue
            self._entries[entry.id] = entry
        if self._entries:
            self.logger.debug("Loaded %d queue entr(ies) from storage", len(self._entries))

    # ------------------------------------------------------------------
    def subscribe(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: QueueListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def entries(self) -> List[QueueEntry]:
        """Newest first, matching the order entries were added."""

        return list(reversed(list(self._entries.values())))

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        return self._entries.get(entry_id)

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in ("queued", "running", "success", "failed", "skipped")}
        for entry in self._entries.values():
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    def stale_running(self) -> List[QueueEntry]:
        """Running entries that were not started by this store's session."""

        return [
            entry
            for entry in self._entries.values()
            if entry.status == "running" and entry.session_id != self.session_id
        ]

    # ------------------------------------------------------------------
    async def add_bulk(
        self,
        tasks: Iterable[Task],
        *,
        mode: Optional[str] = None,
        language: Optional[str] = None,
    ) -> List[str]:
        async with self._lock:
            now = self.clock()
            created = [
                QueueEntry(
                    id=self._new_id(now),
                    task_id=task.id,
                    item_id=task.item_id,
                    post_date=task.post_date,
                    field=task.field,
                    sub_key=task.sub_key,
                    mode=mode,
                    language=language,
                    status="queued",
                    started_at=now,
                    session_id=self.session_id,
                )
                for task in tasks
            ]
            for entry in created:
                self._entries[entry.id] = entry
                await self._persist(entry)
        self._notify()
        return [entry.id for entry in created]

    async def add_item(
        self,
        *,
        item_id: int,
        post_date: str,
        field: str,
        sub_key: Optional[str] = None,
        mode: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        async with self._lock:
            now = self.clock()
            entry = QueueEntry(
                id=self._new_id(now),
                item_id=item_id,
                post_date=post_date,
                field=field,
                sub_key=sub_key,
                mode=mode,
                language=language,
                status="running",
                started_at=now,
                session_id=self.session_id,
            )
            self._entries[entry.id] = entry
            await self._persist(entry)
        self._notify()
        return entry.id

    async def set_running(self, entry_id: str) -> None:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return
            entry.status = "running"
            entry.started_at = self.clock()
            entry.session_id = self.session_id
            entry.error = None
            entry.completed_at = None
            await self._persist(entry)
        self._notify()

    async def requeue(self, entry_ids: Iterable[str]) -> None:
        """Put resolved entries back to ``queued`` for another attempt."""

        async with self._lock:
            now = self.clock()
            touched = []
            for entry_id in entry_ids:
                entry = self._entries.get(entry_id)
                if entry is None:
                    continue
                entry.status = "queued"
                entry.started_at = now
                entry.session_id = self.session_id
                entry.error = None
                entry.log_id = None
                entry.completed_at = None
                await self._persist(entry)
                touched.append(entry_id)
        if touched:
            self._notify()

    def latest_for(self, task_id: str) -> Optional[QueueEntry]:
        """Most recently added entry recorded for ``task_id``."""

        for entry in self.entries():
            if entry.task_id == task_id:
                return entry
        return None

    async def resolve(
        self,
        entry_id: str,
        status: str,
        error: Optional[str] = None,
        log_id: Optional[int] = None,
    ) -> None:
        if status not in RESOLVED_STATUSES:
            raise ValueError(f"Cannot resolve queue entry to {status!r}")
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return
            entry.status = status
            entry.error = error
            entry.log_id = log_id if log_id is not None else entry.log_id
            entry.completed_at = self.clock()
            await self._persist(entry)
        self._notify()

    async def remove(self, entry_id: str) -> None:
        await self._remove_where(lambda entry: entry.id == entry_id)

    async def clear_completed(self) -> int:
        return await self._remove_where(lambda entry: entry.status in RESOLVED_STATUSES)

    async def clear_all(self) -> int:
        async with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            await asyncio.to_thread(self.backend.clear)
        self._notify()
        return removed

    async def expire_successes(self, now: Optional[float] = None) -> int:
        current = self.clock() if now is None else now
        return await self._remove_where(
            lambda entry: entry.status == "success"
            and entry.completed_at is not None
            and current - entry.completed_at >= self.success_dismiss_seconds
        )

    def next_expiry_delay(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until the next success entry is due for removal, if any."""

        current = self.clock() if now is None else now
        delays = [
            max(self.success_dismiss_seconds - (current - entry.completed_at), 0.0)
            for entry in self._entries.values()
            if entry.status == "success" and entry.completed_at is not None
        ]
        return min(delays) if delays else None

    # ------------------------------------------------------------------
    async def _remove_where(self, predicate: Callable[[QueueEntry], bool]) -> int:
        async with self._lock:
            doomed = [entry_id for entry_id, entry in self._entries.items() if predicate(entry)]
            for entry_id in doomed:
                del self._entries[entry_id]
            if doomed:
                await asyncio.to_thread(self.backend.delete, doomed)
        if doomed:
            self._notify()
        return len(doomed)

    async def _persist(self, entry: QueueEntry) -> None:
        await asyncio.to_thread(self.backend.put, entry.to_dict())

    def _new_id(self, now: float) -> str:
        self._counter += 1
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
        return f"gen_{int(now * 1000)}_{self._counter}_{suffix}"

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.entries()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Queue listener %r failed", listener)


__all__ = [
    "MemoryQueueBackend",
    "QueueBackend",
    "QueueStore",
    "SUCCESS_DISMISS_SECONDS",
    "SqliteQueueBackend",
]
