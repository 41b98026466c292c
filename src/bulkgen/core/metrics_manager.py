"""Aggregates per-field run metrics and writes structured reports."""

from __future__ import annotations

import json
import time
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from ..models import Task, TaskStatus
from .events import RunObserver

if TYPE_CHECKING:  # pragma: no cover
    from .scheduler import RunResult


class RunMetrics(RunObserver):
    """Counts outcomes per field and appends every transition to ``events.jsonl``."""

    def __init__(self, metrics_dir: str | Path | None, *, logger) -> None:
        self.metrics_dir = Path(metrics_dir) if metrics_dir else None
        self.logger = logger
        self.events_path: Optional[Path] = None
        if self.metrics_dir is not None:
            self.metrics_dir.mkdir(parents=True, exist_ok=True)
            self.events_path = self.metrics_dir / "events.jsonl"
        self._field_stats: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._phases: Dict[int, int] = {}
        self._running = 0
        self.peak_running = 0

    # ------------------------------------------------------------------
    def phase_started(self, phase: int, total: int) -> None:
        self._phases[phase] = total
        self._append_json({"type": "phase", "phase": phase, "total": total, "timestamp": time.time()})

    def task_state_changed(self, task: Task) -> None:
        if task.status is TaskStatus.RUNNING:
            self._running += 1
            self.peak_running = max(self.peak_running, self._running)
        elif task.status in (TaskStatus.SUCCESS, TaskStatus.FAILED):
            self._running -= 1
        stats = self._field_stats[task.field]
        if task.status.is_terminal:
            stats[task.status.value] += 1
            if task.duration is not None and task.status is not TaskStatus.SKIPPED:
                stats["elapsed"] += task.duration
        self._append_json(
            {
                "type": "task",
                "task_id": task.id,
                "field": task.field,
                "sub_key": task.sub_key,
                "phase": task.phase,
                "status": task.status.value,
                "error": task.error,
                "timestamp": time.time(),
            }
        )

    def run_completed(self, result: "RunResult") -> None:
        self._append_json({"type": "run", **self.summary(result)})

    # ------------------------------------------------------------------
    def summary(self, result: Optional["RunResult"] = None) -> Dict[str, Any]:
        fields: Dict[str, Dict[str, Any]] = {}
        for name, stats in sorted(self._field_stats.items()):
            success = int(stats.get("success", 0))
            failed = int(stats.get("failed", 0))
            attempted = success + failed
            fields[name] = {
                "success": success,
                "failed": failed,
                "skipped": int(stats.get("skipped", 0)),
                "avg_elapsed": stats.get("elapsed", 0.0) / attempted if attempted else 0.0,
            }
        payload: Dict[str, Any] = {
            "fields": fields,
            "phases": {str(phase): total for phase, total in sorted(self._phases.items())},
            "peak_running": self.peak_running,
            "timestamp": time.time(),
        }
        if result is not None:
            payload.update(
                {
                    "counts": dict(result.counts),
                    "cancelled": result.cancelled,
                    "unfinished": result.unfinished,
                    "duration": result.duration,
                }
            )
        return payload

    def write_summary(self, directory: str | Path | None, result: "RunResult") -> Optional[Path]:
        if not directory:
            return None
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        timestamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime(result.finished_at))
        summary_path = target_dir / f"run-summary-{timestamp}.json"
        summary_path.write_text(json.dumps(self.summary(result), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        self.logger.info("Run summary written to %s", summary_path)
        return summary_path

    def _append_json(self, payload: Mapping[str, Any]) -> None:
        if self.events_path is None:
            return
        with self.events_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


__all__ = ["RunMetrics"]
