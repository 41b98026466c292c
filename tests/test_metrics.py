from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from unittest.mock import Mock

from bulkgen.core import LoggingObserver, PhasedScheduler, ProgressReporter, RunMetrics, RunObserver
from bulkgen.models import GenerationResult, Task

LOGGER = logging.getLogger("bulkgen.tests")


class FlakyClient:
    async def invoke(self, task: Task) -> GenerationResult:
        await asyncio.sleep(0)
        if task.field == "chapter_text":
            return GenerationResult.failure("Failed (500)")
        return GenerationResult.success({"ok": True})


def run_with(*observers):
    reporter = ProgressReporter(logger=LOGGER)
    for observer in observers:
        reporter.subscribe(observer)
    tasks = [
        Task(item_id=1, post_date="2024-03-01", field="camera_script", phase=1),
        Task(item_id=2, post_date="2024-03-02", field="camera_script", phase=1),
        Task(item_id=1, post_date="2024-03-01", field="chapter_text", phase=2, sub_key="KJV"),
        Task(item_id=1, post_date="2024-03-01", field="tts", phase=3, sub_key="KJV", depends_on="1_chapter_text_KJV"),
    ]
    scheduler = PhasedScheduler(FlakyClient(), reporter=reporter, logger=LOGGER, concurrency=2)
    return asyncio.run(scheduler.run(tasks))


def test_metrics_summary_and_event_log(tmp_path: Path):
    metrics = RunMetrics(tmp_path / "metrics", logger=LOGGER)

    result = run_with(metrics)
    summary_path = metrics.write_summary(tmp_path / "summaries", result)

    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["fields"]["camera_script"]["success"] == 2
    assert summary["fields"]["chapter_text"]["failed"] == 1
    assert summary["fields"]["tts"]["skipped"] == 1
    assert summary["phases"] == {"1": 2, "2": 1, "3": 1}
    assert summary["counts"] == {"success": 2, "failed": 1, "skipped": 1}
    assert summary["cancelled"] is False
    assert 1 <= summary["peak_running"] <= 2

    lines = (tmp_path / "metrics" / "events.jsonl").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines]
    assert events[0]["type"] == "phase"
    assert events[-1]["type"] == "run"
    assert sum(1 for event in events if event["type"] == "task") == 7


def test_observer_errors_do_not_break_the_run():
    class Broken(RunObserver):
        def task_state_changed(self, task: Task) -> None:
            raise RuntimeError("renderer crashed")

    recorder = Mock(spec=RunObserver)

    result = run_with(Broken(), recorder)

    assert result.counts == {"success": 2, "failed": 1, "skipped": 1}
    assert recorder.task_state_changed.call_count == 7
    recorder.run_completed.assert_called_once_with(result)


def test_logging_observer_reports_outcomes(caplog):
    logger = logging.getLogger("bulkgen.tests.observer")

    with caplog.at_level(logging.INFO, logger="bulkgen.tests.observer"):
        run_with(LoggingObserver(logger))

    messages = [record.getMessage() for record in caplog.records]
    assert any("Phase 1 started with 2 task(s)" in message for message in messages)
    assert any("KJV Text failed" in message or "KJV chapter text failed" in message for message in messages)
    assert any(message.startswith("Run complete: success=2 failed=1 skipped=1") for message in messages)


def test_subscribe_is_idempotent():
    reporter = ProgressReporter(logger=LOGGER)
    observer = RunObserver()

    reporter.subscribe(observer)
    reporter.subscribe(observer)
    assert reporter.observers == (observer,)

    reporter.unsubscribe(observer)
    assert reporter.observers == ()


def test_progress_bars_track_settled_tasks(monkeypatch):
    import bulkgen.core.events as events_module

    bars = []

    class FakeBar:
        def __init__(self, *, total, desc, unit, disable):
            self.total = total
            self.desc = desc
            self.count = 0
            self.postfix = None
            self.closed = False
            bars.append(self)

        def update(self, amount):
            self.count += amount

        def set_postfix_str(self, text):
            self.postfix = text

        def close(self):
            self.closed = True

    monkeypatch.setattr(events_module, "tqdm", FakeBar)

    run_with(events_module.ProgressBarObserver())

    assert [(bar.desc, bar.total, bar.count) for bar in bars] == [
        ("Phase 1", 2, 2),
        ("Phase 2", 1, 1),
        ("Phase 3", 1, 1),
    ]
    assert bars[1].postfix == "KJV chapter text: failed"
    assert all(bar.closed for bar in bars)
