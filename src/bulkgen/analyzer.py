"""Work out which generation tasks are missing for a batch of content items."""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence

from .models import ContentItem, Task

MODES = ("bible", "positivity")

FIELD_PHASES: Dict[str, int] = {
    "camera_script": 1,
    "devotional_reflection": 1,
    "meditation_script": 1,
    "background_prompt": 1,
    "meditation_audio": 2,
    "chapter_text": 2,
    "tts": 3,
    "heygen_video": 4,
}

PHASE_NAMES: Dict[int, str] = {
    1: "Content Fields",
    2: "Translation Text",
    3: "Audio (TTS)",
    4: "Creator Video",
}

_LABELS = {
    "camera_script": "Camera Script",
    "devotional_reflection": "Devotional",
    "meditation_script": "Meditation Script",
    "background_prompt": "BG Prompt",
    "meditation_audio": "Meditation Audio",
    "chapter_text": "Text",
    "tts": "TTS",
    "heygen_video": "Creator Video",
}


class _ItemPlan:
    """Collects the tasks of a single item, rejecting duplicates."""

    def __init__(self, item: ContentItem) -> None:
        self.item = item
        self.tasks: Dict[str, Task] = {}

    def add(self, field: str, *, sub_key: Optional[str] = None, depends_on: Optional[Task] = None) -> Task:
        label = _LABELS[field]
        task = Task(
            item_id=self.item.id,
            post_date=self.item.post_date,
            field=field,
            phase=FIELD_PHASES[field],
            sub_key=sub_key,
            label=f"{sub_key} {label}" if sub_key else label,
            depends_on=depends_on.id if depends_on is not None else None,
        )
        return self.tasks.setdefault(task.id, task)

    def get(self, field: str, sub_key: Optional[str] = None) -> Optional[Task]:
        for task in self.tasks.values():
            if task.field == field and task.sub_key == sub_key:
                return task
        return None


def analyze(
    items: Iterable[ContentItem],
    mode: str,
    expected_sub_keys: Sequence[str] = (),
) -> List[Task]:
    """Return the missing generation tasks for ``items``, ordered for execution."""

    if mode not in MODES:
        raise ValueError(f"Unsupported mode {mode!r}; expected one of {', '.join(MODES)}")
    codes = _unique(code.strip() for code in expected_sub_keys if code and code.strip())

    plans: Dict[int, _ItemPlan] = {}
    for item in items:
        if item.status == "empty" or item.id in plans:
            continue
        plan = _ItemPlan(item)
        _plan_content_fields(plan, mode)
        if mode == "bible":
            _plan_translations(plan, codes)
        _plan_video(plan)
        plans[item.id] = plan

    tasks = [task for plan in plans.values() for task in plan.tasks.values()]
    tasks.sort(key=_sort_key)
    return tasks


def _plan_content_fields(plan: _ItemPlan, mode: str) -> None:
    item = plan.item
    if not item.has_camera_script:
        plan.add("camera_script")
    if mode == "bible" and not item.has_devotional:
        plan.add("devotional_reflection")
    if mode == "positivity":
        script = None
        if not item.has_meditation:
            script = plan.add("meditation_script")
        if not item.has_meditation_audio and (item.has_meditation or script is not None):
            plan.add("meditation_audio", depends_on=script)
    if not item.has_background_prompt:
        plan.add("background_prompt")


def _plan_translations(plan: _ItemPlan, codes: Sequence[str]) -> None:
    item = plan.item
    for code in codes:
        flags = item.translation(code)
        text_task = None
        if flags is None or not flags.has_translated_text or not flags.has_chapter_text:
            text_task = plan.add("chapter_text", sub_key=code)
        if flags is None or not flags.has_audio or not flags.has_srt:
            plan.add("tts", sub_key=code, depends_on=text_task)


def _plan_video(plan: _ItemPlan) -> None:
    item = plan.item
    if item.creator is None or not item.creator.can_generate_video:
        return
    if item.has_creator_video:
        return
    plan.add("heygen_video", depends_on=plan.get("camera_script"))


def _sort_key(task: Task) -> tuple:
    return (task.phase, task.post_date, task.field, task.sub_key or "", task.item_id)


def _unique(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def summarize_plan(tasks: Iterable[Task]) -> Dict[int, Dict[str, int]]:
    """Per-phase task counts keyed by field, for dry-run display."""

    summary: Dict[int, Counter] = {}
    for task in tasks:
        summary.setdefault(task.phase, Counter())[task.field] += 1
    return {phase: dict(sorted(counts.items())) for phase, counts in sorted(summary.items())}


__all__ = ["FIELD_PHASES", "MODES", "PHASE_NAMES", "analyze", "summarize_plan"]
