"""Resolve queue entries orphaned in ``running`` by consulting the server log."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol, Set

from ..models import LogRecord, QueueEntry
from .queue_store import QueueStore

STALE_CHECK_INTERVAL = 5.0


class LogSource(Protocol):
    async def query_logs(self, item_id: int) -> Optional[List[LogRecord]]:
        ...


def find_terminal_match(entry: QueueEntry, records: List[LogRecord]) -> Optional[LogRecord]:
    """First terminal record for the entry's field and sub-key.

    Logs are expected newest first, so the first hit is the latest attempt.
    """

    for record in records:
        if record.field == entry.field and record.sub_key == (entry.sub_key or None) and record.is_terminal:
            return record
    return None


class StaleReconciler:
    def __init__(
        self,
        queue: QueueStore,
        logs: LogSource,
        *,
        logger,
        interval: float = STALE_CHECK_INTERVAL,
        max_running_age: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.logs = logs
        self.logger = logger
        self.interval = float(interval)
        self.max_running_age = max_running_age
        self._reported: Set[str] = set()

    async def reconcile_stale(self) -> int:
        """Adopt server-side outcomes for stale running entries; return how many resolved."""

        stale = self.queue.stale_running()
        if not stale:
            return 0
        resolved = 0
        cache: Dict[int, Optional[List[LogRecord]]] = {}
        for entry in stale:
            if entry.item_id not in cache:
                cache[entry.item_id] = await self.logs.query_logs(entry.item_id)
            records = cache[entry.item_id]
            if records is None:
                continue
            match = find_terminal_match(entry, records)
            if match is None:
                self._check_age(entry)
                continue
            await self.queue.resolve(
                entry.id,
                "success" if match.status == "success" else "failed",
                error=match.error_message,
                log_id=match.log_id,
            )
            self._reported.discard(entry.id)
            resolved += 1
            self.logger.info(
                "Reconciled %s for item %s from log %s: %s",
                entry.label,
                entry.item_id,
                match.log_id,
                match.status,
            )
        return resolved

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set, expiring finished entries along the way."""

        while not stop_event.is_set():
            await self.queue.expire_successes()
            await self.reconcile_stale()
            delay = self.interval
            next_expiry = self.queue.next_expiry_delay()
            if next_expiry is not None:
                delay = min(delay, max(next_expiry, 0.05))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def watch_until_settled(self, *, max_polls: Optional[int] = None) -> int:
        """Poll until no stale entries remain running; returns the remaining count."""

        polls = 0
        while True:
            await self.queue.expire_successes()
            await self.reconcile_stale()
            remaining = len(self.queue.stale_running())
            polls += 1
            if remaining == 0 or (max_polls is not None and polls >= max_polls):
                return remaining
            await asyncio.sleep(self.interval)

    def _check_age(self, entry: QueueEntry) -> None:
        if self.max_running_age is None or entry.id in self._reported:
            return
        age = self.queue.clock() - entry.started_at
        if age < self.max_running_age:
            return
        self._reported.add(entry.id)
        self.logger.warning(
            "%s for item %s has been running for %.0fs with no generation log",
            entry.label,
            entry.item_id,
            age,
        )


__all__ = ["LogSource", "STALE_CHECK_INTERVAL", "StaleReconciler", "find_terminal_match"]
