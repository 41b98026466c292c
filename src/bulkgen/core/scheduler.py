"""Phase-by-phase execution of generation tasks with a bounded worker pool."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..models import GenerationResult, QueueEntry, Task, TaskStatus
from .cancellation import CancellationToken
from .events import ProgressReporter
from .queue_store import RESOLVED_STATUSES, QueueStore

DEFAULT_CONCURRENCY = 5
INTERRUPTED_ERROR = "Interrupted before the generation finished"

UpdateCallback = Callable[[int, str, Optional[str], Mapping[str, Any]], Optional[Awaitable[None]]]


class GenerateClient(Protocol):
    async def invoke(self, task: Task) -> GenerationResult:
        ...


class RunState(str, Enum):
    IDLE = "idle"
    PHASE_RUNNING = "phase_running"
    CANCELLED = "cancelled"
    DONE = "done"


@dataclass
class Run:
    tasks: Tuple[Task, ...]
    token: CancellationToken
    state: RunState = RunState.IDLE
    current_phase: int = 0
    _index: Dict[str, Task] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._index = {task.id: task for task in self.tasks}

    def task(self, task_id: str) -> Optional[Task]:
        return self._index.get(task_id)


@dataclass(frozen=True)
class RunResult:
    tasks: Tuple[Task, ...]
    cancelled: bool
    phases: Tuple[int, ...]
    started_at: float
    finished_at: float
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def unfinished(self) -> int:
        return sum(1 for task in self.tasks if not task.is_terminal)

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.counts.get("failed", 0) == 0 and self.unfinished == 0

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def by_status(self, status: TaskStatus) -> List[Task]:
        return [task for task in self.tasks if task.status is status]


class PhasedScheduler:
    """Runs tasks in ascending phase order with up to ``concurrency`` calls in flight.

    No task of phase P+1 is claimed before every task of phase P is terminal.
    Within a phase, workers share one cursor and take the next unclaimed task
    until the bucket is exhausted or the run is cancelled. A task failure is
    recorded and the run carries on.
    """

    def __init__(
        self,
        client: GenerateClient,
        *,
        reporter: ProgressReporter,
        logger: logging.Logger,
        queue: Optional[QueueStore] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_update: Optional[UpdateCallback] = None,
        mode: Optional[str] = None,
    ) -> None:
        if int(concurrency) < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.reporter = reporter
        self.logger = logger
        self.queue = queue
        self.concurrency = int(concurrency)
        self.on_update = on_update
        self.mode = mode
        self._entry_ids: Dict[str, str] = {}

    async def run(
        self,
        tasks: Sequence[Task],
        *,
        concurrency: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        retry_failed: bool = False,
    ) -> RunResult:
        limit = self.concurrency if concurrency is None else int(concurrency)
        if limit < 1:
            raise ValueError("concurrency must be at least 1")
        run = Run(tasks=tuple(tasks), token=token or CancellationToken())
        started = time.time()

        if retry_failed:
            for task in run.tasks:
                if task.status is TaskStatus.FAILED:
                    task.reset()
        await self._enqueue(run)

        buckets = _partition(run.tasks)
        executed: List[int] = []
        try:
            for phase, bucket in buckets:
                if run.token.is_cancelled():
                    break
                pending = [task for task in bucket if not task.is_terminal]
                if not pending:
                    continue
                run.state = RunState.PHASE_RUNNING
                run.current_phase = phase
                executed.append(phase)
                self.reporter.phase_started(phase, len(pending))
                await self._run_phase(run, pending, limit)
        except asyncio.CancelledError:
            run.state = RunState.CANCELLED
            await self._withdraw_unclaimed(run)
            raise

        if run.token.is_cancelled():
            run.state = RunState.CANCELLED
            await self._withdraw_unclaimed(run)
        else:
            run.state = RunState.DONE
        run.current_phase = 0

        counts = Counter(task.status.value for task in run.tasks)
        result = RunResult(
            tasks=run.tasks,
            cancelled=run.state is RunState.CANCELLED,
            phases=tuple(executed),
            started_at=started,
            finished_at=time.time(),
            counts=dict(counts),
        )
        self.reporter.run_completed(result)
        return result

    # ------------------------------------------------------------------
    async def _run_phase(self, run: Run, pending: List[Task], limit: int) -> None:
        runnable: List[Task] = []
        for task in pending:
            reason = self._skip_reason(run, task)
            if reason is None:
                runnable.append(task)
                continue
            task.transition(TaskStatus.SKIPPED, error=reason)
            await self._resolve_entry(task, "skipped", reason)
            self.reporter.task_state_changed(task)

        if not runnable:
            return
        cursor = itertools.count()
        workers = [
            asyncio.create_task(self._worker(run, runnable, cursor), name=f"phase-{run.current_phase}-worker-{idx}")
            for idx in range(min(limit, len(runnable)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(self, run: Run, tasks: List[Task], cursor: Iterator[int]) -> None:
        while not run.token.is_cancelled():
            idx = next(cursor)
            if idx >= len(tasks):
                break
            await self._process(tasks[idx])

    async def _process(self, task: Task) -> None:
        task.transition(TaskStatus.RUNNING)
        try:
            entry_id = self._entry_ids.get(task.id)
            if self.queue is not None and entry_id is not None:
                await self.queue.set_running(entry_id)
            self.reporter.task_state_changed(task)

            result = await self.client.invoke(task)
        except asyncio.CancelledError:
            # outcome unknown, so record it as a failure
            task.transition(TaskStatus.FAILED, error=INTERRUPTED_ERROR)
            await self._resolve_entry(task, "failed", task.error)
            self.reporter.task_state_changed(task)
            raise

        if result.ok:
            task.transition(TaskStatus.SUCCESS)
            await self._resolve_entry(task, "success", None, result.log_id)
        else:
            task.transition(TaskStatus.FAILED, error=result.error or "Unknown error")
            await self._resolve_entry(task, "failed", task.error)
        self.reporter.task_state_changed(task)

        if result.ok and result.content is not None and self.on_update is not None:
            try:
                outcome = self.on_update(task.item_id, task.field, task.sub_key, result.content)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                self.logger.exception("Update callback failed for %s", task.id)

    def _skip_reason(self, run: Run, task: Task) -> Optional[str]:
        if not task.depends_on:
            return None
        dependency = run.task(task.depends_on)
        if dependency is None:
            return None
        if dependency.phase >= task.phase:
            raise ValueError(f"Task {task.id} depends on {dependency.id} from phase {dependency.phase}")
        if dependency.status is TaskStatus.FAILED:
            if task.field == "tts":
                return "Skipped: translation text failed"
            return f"Skipped: {dependency.label} failed"
        if dependency.status is TaskStatus.SKIPPED:
            return f"Skipped: {dependency.label} was skipped"
        return None

    # ------------------------------------------------------------------
    async def _enqueue(self, run: Run) -> None:
        fresh = [task for task in run.tasks if not task.is_terminal]
        for task in fresh:
            if task.status is TaskStatus.PENDING:
                task.transition(TaskStatus.QUEUED)
        if self.queue is None:
            return
        missing: List[Task] = []
        retried: List[str] = []
        for task in fresh:
            entry = self._entry_for(task)
            if entry is None:
                missing.append(task)
            elif entry.status in RESOLVED_STATUSES:
                retried.append(entry.id)
        if retried:
            await self.queue.requeue(retried)
        if missing:
            ids = await self.queue.add_bulk(missing, mode=self.mode)
            self._entry_ids.update({task.id: entry_id for task, entry_id in zip(missing, ids)})

    def _entry_for(self, task: Task) -> Optional[QueueEntry]:
        entry_id = self._entry_ids.get(task.id)
        entry = self.queue.get(entry_id) if entry_id is not None else None
        if entry is None:
            entry = self.queue.latest_for(task.id)
            # a running entry belongs to another session until reconciled
            if entry is None or entry.status == "running":
                return None
            self._entry_ids[task.id] = entry.id
        return entry

    async def _resolve_entry(self, task: Task, status: str, error: Optional[str], log_id: Optional[int] = None) -> None:
        if self.queue is None:
            return
        entry_id = self._entry_ids.get(task.id)
        if entry_id is not None:
            await self.queue.resolve(entry_id, status, error, log_id)

    async def _withdraw_unclaimed(self, run: Run) -> None:
        unclaimed = [task for task in run.tasks if task.status is TaskStatus.QUEUED]
        if unclaimed:
            self.logger.info("Run cancelled with %d task(s) not started", len(unclaimed))
        if self.queue is None:
            return
        for task in unclaimed:
            entry_id = self._entry_ids.pop(task.id, None)
            if entry_id is not None:
                await self.queue.remove(entry_id)


def _partition(tasks: Iterable[Task]) -> List[Tuple[int, List[Task]]]:
    buckets: Dict[int, List[Task]] = {}
    for task in tasks:
        buckets.setdefault(task.phase, []).append(task)
    for bucket in buckets.values():
        bucket.sort(key=lambda task: (task.post_date, task.field, task.sub_key or "", task.item_id))
    return sorted(buckets.items())


__all__ = ["DEFAULT_CONCURRENCY", "GenerateClient", "PhasedScheduler", "Run", "RunResult", "RunState"]
