"""Host-side orchestration: wires the scheduler, queue and observers together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

from .analyzer import PHASE_NAMES, analyze
from .core import (
    CancellationToken,
    ContentWriter,
    GenerationClient,
    LoggingObserver,
    PhasedScheduler,
    ProgressReporter,
    QueueStore,
    RunMetrics,
    RunObserver,
    RunResult,
    SqliteQueueBackend,
    StaleReconciler,
)
from .models import ContentItem, GenerationResult, Task

ClientFactory = Callable[[], GenerationClient]


class RunInProgressError(RuntimeError):
    """Raised when a bulk run is requested while another one is active."""


class BulkGenerationRuntime:
    def __init__(
        self,
        config: Dict[str, Any],
        logger: logging.Logger,
        *,
        queue: Optional[QueueStore] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self._queue = queue
        self._client_factory = client_factory or self._default_client
        self._running = False
        self._token: Optional[CancellationToken] = None

    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue(self) -> QueueStore:
        if self._queue is None:
            paths = self.config.get("paths", {})
            queue_cfg = self.config.get("queue", {})
            backend = SqliteQueueBackend(paths.get("queue_db") or "data/queue.db", logger=self.logger)
            self._queue = QueueStore(
                backend,
                logger=self.logger,
                success_dismiss_seconds=float(queue_cfg.get("success_dismiss_seconds", 30)),
            )
        return self._queue

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    def plan(
        self,
        items: Iterable[ContentItem],
        *,
        mode: Optional[str] = None,
        expected_translations: Optional[Sequence[str]] = None,
    ) -> list[Task]:
        content_cfg = self.config.get("content", {})
        return analyze(
            items,
            mode or content_cfg.get("mode", "bible"),
            expected_translations if expected_translations is not None else content_cfg.get("expected_translations", []),
        )

    # ------------------------------------------------------------------
    async def run_bulk(
        self,
        items: Iterable[ContentItem],
        *,
        mode: Optional[str] = None,
        expected_translations: Optional[Sequence[str]] = None,
        concurrency: Optional[int] = None,
        retry_failed: Optional[bool] = None,
        observers: Sequence[RunObserver] = (),
        install_signals: bool = False,
    ) -> RunResult:
        if self._running:
            raise RunInProgressError("A bulk generation run is already active")
        self._running = True
        try:
            return await self._run_bulk(
                items,
                mode=mode or self.config.get("content", {}).get("mode", "bible"),
                expected_translations=expected_translations,
                concurrency=concurrency,
                retry_failed=retry_failed,
                observers=observers,
                install_signals=install_signals,
            )
        finally:
            self._running = False
            self._token = None

    async def _run_bulk(
        self,
        items: Iterable[ContentItem],
        *,
        mode: str,
        expected_translations: Optional[Sequence[str]],
        concurrency: Optional[int],
        retry_failed: Optional[bool],
        observers: Sequence[RunObserver],
        install_signals: bool,
    ) -> RunResult:
        tasks = self.plan(items, mode=mode, expected_translations=expected_translations)
        phases = sorted({task.phase for task in tasks})
        self.logger.info(
            "Planned %d task(s) across phase(s): %s",
            len(tasks),
            ", ".join(f"{phase} ({PHASE_NAMES.get(phase, '?')})" for phase in phases) or "none",
        )

        paths = self.config.get("paths", {})
        scheduler_cfg = self.config.get("scheduler", {})
        reporter = ProgressReporter(logger=self.logger)
        reporter.subscribe(LoggingObserver(self.logger))
        metrics = RunMetrics(paths.get("metrics"), logger=self.logger)
        reporter.subscribe(metrics)
        for observer in observers:
            reporter.subscribe(observer)

        writer = ContentWriter(paths.get("outputs") or "data/outputs", logger=self.logger)
        token = CancellationToken()
        self._token = token
        if install_signals:
            token.install()

        if retry_failed is None:
            retry_failed = bool(scheduler_cfg.get("retry_failed", False))
        client = self._client_factory()
        try:
            await self._reconcile_once(client)
            self._restore_failures(tasks, retry_failed)
            scheduler = PhasedScheduler(
                client,
                reporter=reporter,
                logger=self.logger,
                queue=self.queue,
                concurrency=int(scheduler_cfg.get("concurrency", 5)),
                on_update=writer,
                mode=mode,
            )
            stop = asyncio.Event()
            poller = asyncio.create_task(self._reconciler(client).run(stop), name="queue-reconciler")
            try:
                result = await scheduler.run(tasks, concurrency=concurrency, token=token, retry_failed=retry_failed)
            finally:
                stop.set()
                await poller
        finally:
            await _close(client)

        metrics.write_summary(paths.get("summaries"), result)
        return result

    async def regenerate(
        self,
        item: ContentItem,
        field: str,
        sub_key: Optional[str] = None,
    ) -> GenerationResult:
        """Regenerate a single field immediately, outside any bulk run."""

        if field in ("tts", "chapter_text") and not sub_key:
            raise ValueError(f"{field} regeneration requires a translation code")
        task = Task(item_id=item.id, post_date=item.post_date, field=field, phase=1, sub_key=sub_key)
        entry_id = await self.queue.add_item(
            item_id=item.id,
            post_date=item.post_date,
            field=field,
            sub_key=sub_key,
            mode=item.mode or self.config.get("content", {}).get("mode"),
        )
        client = self._client_factory()
        try:
            result = await client.invoke(task)
        finally:
            await _close(client)
        if result.ok:
            await self.queue.resolve(entry_id, "success", log_id=result.log_id)
            if result.content is not None:
                writer = ContentWriter(self.config.get("paths", {}).get("outputs") or "data/outputs", logger=self.logger)
                writer(item.id, field, sub_key, result.content)
            self.logger.info("Regenerated %s for %s", task.label, item.post_date)
        else:
            await self.queue.resolve(entry_id, "failed", result.error)
            self.logger.warning("Regeneration of %s for %s failed: %s", task.label, item.post_date, result.error)
        return result

    async def reconcile(self, *, watch: bool = False, max_polls: Optional[int] = None) -> int:
        """Resolve stale running entries; return how many are still unresolved."""

        client = self._client_factory()
        try:
            reconciler = self._reconciler(client)
            if watch:
                return await reconciler.watch_until_settled(max_polls=max_polls)
            await self.queue.expire_successes()
            await reconciler.reconcile_stale()
            return len(self.queue.stale_running())
        finally:
            await _close(client)

    # ------------------------------------------------------------------
    async def _reconcile_once(self, client: GenerationClient) -> None:
        await self.queue.expire_successes()
        stale = self.queue.stale_running()
        if not stale:
            return
        self.logger.info("Checking %d queue entr(ies) left running by a previous session", len(stale))
        await self._reconciler(client).reconcile_stale()

    def _restore_failures(self, tasks: Sequence[Task], retry_failed: bool) -> None:
        """Carry failures recorded in the queue over to the freshly planned tasks."""

        restored = 0
        for task in tasks:
            entry = self.queue.latest_for(task.id)
            if entry is not None and entry.status == "failed":
                task.restore_failure(entry.error, entry.completed_at)
                restored += 1
        if not restored:
            return
        if retry_failed:
            self.logger.info("Retrying %d task(s) that failed in an earlier run", restored)
        else:
            self.logger.info("Leaving %d task(s) that failed in an earlier run; pass --retry-failed to retry", restored)

    def _reconciler(self, client: GenerationClient) -> StaleReconciler:
        queue_cfg = self.config.get("queue", {})
        max_age = queue_cfg.get("max_running_age")
        return StaleReconciler(
            self.queue,
            client,
            logger=self.logger,
            interval=float(queue_cfg.get("stale_check_interval", 5)),
            max_running_age=float(max_age) if max_age is not None else None,
        )

    def _default_client(self) -> GenerationClient:
        api = self.config.get("api", {})
        return GenerationClient(
            base_url=str(api.get("base_url")),
            timeout=float(api.get("timeout", 300)),
            logger=self.logger,
            generate_path=api.get("generate_path") or "/api/admin/content-production/regenerate",
            logs_path=api.get("logs_path") or "/api/admin/content-production/logs",
            auth_token=api.get("auth_token"),
        )


async def _close(client: Any) -> None:
    closer = getattr(client, "aclose", None)
    if closer is not None:
        await closer()


__all__ = ["BulkGenerationRuntime", "RunInProgressError"]
