"""Fan-out of run progress to any number of observers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from tqdm import tqdm

from ..models import Task, TaskStatus

if TYPE_CHECKING:  # pragma: no cover
    from .scheduler import RunResult


class RunObserver:
    """Base class for progress observers; every hook is optional."""

    def phase_started(self, phase: int, total: int) -> None:
        pass

    def task_state_changed(self, task: Task) -> None:
        pass

    def run_completed(self, result: "RunResult") -> None:
        pass


class ProgressReporter:
    """Delivers scheduler events to subscribed observers.

    The scheduler never reads anything back from here. An observer that
    raises is logged and skipped so a broken view cannot stall a run.
    """

    def __init__(self, *, logger: logging.Logger) -> None:
        self.logger = logger
        self._observers: List[RunObserver] = []

    def subscribe(self, observer: RunObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: RunObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @property
    def observers(self) -> tuple[RunObserver, ...]:
        return tuple(self._observers)

    def phase_started(self, phase: int, total: int) -> None:
        self._dispatch("phase_started", phase, total)

    def task_state_changed(self, task: Task) -> None:
        self._dispatch("task_state_changed", task)

    def run_completed(self, result: "RunResult") -> None:
        self._dispatch("run_completed", result)

    def _dispatch(self, hook: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, hook)(*args)
            except Exception:
                self.logger.exception("Observer %s failed in %s", type(observer).__name__, hook)


class LoggingObserver(RunObserver):
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def phase_started(self, phase: int, total: int) -> None:
        self.logger.info("Phase %d started with %d task(s)", phase, total)

    def task_state_changed(self, task: Task) -> None:
        context = {
            "task_id": task.id,
            "item_id": task.item_id,
            "phase": task.phase,
            "field": task.field,
            "sub_key": task.sub_key,
            "status": task.status.value,
        }
        if task.status is TaskStatus.RUNNING:
            self.logger.debug("[%s] %s running", task.post_date, task.label, extra=context)
        elif task.status is TaskStatus.SUCCESS:
            self.logger.info(
                "[%s] %s succeeded in %.1fs", task.post_date, task.label, task.duration or 0.0, extra=context
            )
        elif task.status is TaskStatus.FAILED:
            self.logger.warning("[%s] %s failed: %s", task.post_date, task.label, task.error, extra=context)
        elif task.status is TaskStatus.SKIPPED:
            self.logger.warning("[%s] %s skipped: %s", task.post_date, task.label, task.error, extra=context)

    def run_completed(self, result: "RunResult") -> None:
        counts = result.counts
        self.logger.info(
            "Run %s: success=%d failed=%d skipped=%d unfinished=%d",
            "cancelled" if result.cancelled else "complete",
            counts.get("success", 0),
            counts.get("failed", 0),
            counts.get("skipped", 0),
            result.unfinished,
        )


class ProgressBarObserver(RunObserver):
    """One tqdm bar per phase, advanced as tasks settle."""

    def __init__(self, *, disable: bool = False) -> None:
        self.disable = disable
        self._bar: Optional[tqdm] = None

    def phase_started(self, phase: int, total: int) -> None:
        self._close()
        self._bar = tqdm(total=total, desc=f"Phase {phase}", unit="task", disable=self.disable)

    def task_state_changed(self, task: Task) -> None:
        if self._bar is None or not task.is_terminal:
            return
        self._bar.update(1)
        if task.status is not TaskStatus.SUCCESS:
            self._bar.set_postfix_str(f"{task.label}: {task.status.value}")

    def run_completed(self, result: "RunResult") -> None:
        self._close()

    def _close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


__all__ = ["LoggingObserver", "ProgressBarObserver", "ProgressReporter", "RunObserver"]
