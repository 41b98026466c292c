"""Shared data structures for content items, tasks and queue entries."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.SKIPPED})

_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.QUEUED: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.SUCCESS, TaskStatus.FAILED},
}


class InvalidTransition(ValueError):
    """Raised when a task is moved along an edge its lifecycle does not allow."""


# ---------------------------------------------------------------------------
# Content snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranslationFlags:
    translation_code: str
    has_translated_text: bool = False
    has_chapter_text: bool = False
    has_audio: bool = False
    has_srt: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TranslationFlags":
        code = data.get("translation_code")
        if not isinstance(code, str) or not code.strip():
            raise ValueError(f"Translation entry without translation_code: {data!r}")
        return cls(
            translation_code=code.strip(),
            # older payloads only carry has_chapter_text
            has_translated_text=bool(data.get("has_translated_text", data.get("has_chapter_text", False))),
            has_chapter_text=bool(data.get("has_chapter_text", False)),
            has_audio=bool(data.get("has_audio", False)),
            has_srt=bool(data.get("has_srt", False)),
        )


@dataclass(frozen=True)
class Creator:
    id: int
    name: str
    is_ai: bool = False
    heygen_avatar_id: Optional[str] = None

    @property
    def can_generate_video(self) -> bool:
        return self.is_ai and bool(self.heygen_avatar_id and self.heygen_avatar_id.strip())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Creator":
        return cls(
            id=int(data.get("id") or 0),
            name=str(data.get("name") or ""),
            is_ai=bool(data.get("is_ai", False)),
            heygen_avatar_id=data.get("heygen_avatar_id") or None,
        )


@dataclass(frozen=True)
class ContentItem:
    """Read-only snapshot of one daily content record and its completeness flags."""

    id: int
    post_date: str
    status: str = "generated"
    mode: Optional[str] = None
    has_camera_script: bool = False
    has_devotional: bool = False
    has_meditation: bool = False
    has_meditation_audio: bool = False
    has_background_prompt: bool = False
    has_creator_video: bool = False
    translations: tuple[TranslationFlags, ...] = ()
    creator: Optional[Creator] = None

    def translation(self, code: str) -> Optional[TranslationFlags]:
        for entry in self.translations:
            if entry.translation_code == code:
                return entry
        return None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContentItem":
        if "id" not in data or "post_date" not in data:
            raise ValueError(f"Content item requires 'id' and 'post_date': {data!r}")
        translations = data.get("translations") or []
        if not isinstance(translations, Sequence):
            raise ValueError(f"Content item {data['id']} has malformed translations")
        creator = data.get("creator")
        return cls(
            id=int(data["id"]),
            post_date=str(data["post_date"]),
            status=str(data.get("status") or "generated"),
            mode=data.get("mode"),
            has_camera_script=bool(data.get("has_camera_script", False)),
            has_devotional=bool(data.get("has_devotional", False)),
            has_meditation=bool(data.get("has_meditation", False)),
            has_meditation_audio=bool(data.get("has_meditation_audio", False)),
            has_background_prompt=bool(data.get("has_background_prompt", False)),
            has_creator_video=bool(data.get("has_creator_video", False)),
            translations=tuple(
                TranslationFlags.from_mapping(entry) for entry in translations if isinstance(entry, Mapping)
            ),
            creator=Creator.from_mapping(creator) if isinstance(creator, Mapping) else None,
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def task_key(item_id: int, field_name: str, sub_key: Optional[str] = None) -> str:
    if sub_key:
        return f"{item_id}_{field_name}_{sub_key}"
    return f"{item_id}_{field_name}"


@dataclass
class Task:
    item_id: int
    post_date: str
    field: str
    phase: int
    sub_key: Optional[str] = None
    label: str = ""
    depends_on: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.phase < 1:
            raise ValueError(f"Task phase must be positive, got {self.phase}")
        if not self.label:
            name = self.field.replace("_", " ")
            self.label = f"{self.sub_key} {name}" if self.sub_key else name

    @property
    def id(self) -> str:
        return task_key(self.item_id, self.field, self.sub_key)

    @property
    def key(self) -> tuple[int, str, Optional[str]]:
        return (self.item_id, self.field, self.sub_key)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def transition(self, status: TaskStatus, *, error: Optional[str] = None, now: Optional[float] = None) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidTransition(f"Task {self.id}: {self.status.value} -> {status.value} is not allowed")
        timestamp = time.time() if now is None else now
        self.status = status
        if status is TaskStatus.RUNNING:
            self.started_at = timestamp
        if status.is_terminal:
            self.completed_at = timestamp
            self.error = error if status is not TaskStatus.SUCCESS else None

    def reset(self) -> None:
        """Return a failed task to ``pending`` so a later run may retry it."""

        if self.status is not TaskStatus.FAILED:
            raise InvalidTransition(f"Task {self.id}: only failed tasks can be reset")
        self.status = TaskStatus.PENDING
        self.error = None
        self.started_at = None
        self.completed_at = None

    def restore_failure(self, error: Optional[str], completed_at: Optional[float] = None) -> None:
        """Adopt a failure recorded by an earlier run for a freshly planned task."""

        if self.status is not TaskStatus.PENDING:
            raise InvalidTransition(f"Task {self.id}: only pending tasks can adopt an earlier failure")
        self.status = TaskStatus.FAILED
        self.error = error or "Failed in an earlier run"
        self.completed_at = completed_at

    def snapshot(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["id"] = self.id
        payload["status"] = self.status.value
        return payload


# ---------------------------------------------------------------------------
# Remote results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationResult:
    outcome: str
    content: Optional[Mapping[str, Any]] = None
    error: Optional[str] = None
    log_id: Optional[int] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

    @classmethod
    def success(cls, content: Optional[Mapping[str, Any]] = None, *, log_id: Optional[int] = None, elapsed: float = 0.0) -> "GenerationResult":
        return cls(outcome="success", content=content, log_id=log_id, elapsed=elapsed)

    @classmethod
    def failure(cls, error: str, *, elapsed: float = 0.0) -> "GenerationResult":
        return cls(outcome="failed", error=error or "Unknown error", elapsed=elapsed)


@dataclass(frozen=True)
class LogRecord:
    log_id: Optional[int]
    field: str
    sub_key: Optional[str]
    status: str
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "failed")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LogRecord":
        log_id = data.get("id", data.get("log_id"))
        return cls(
            log_id=int(log_id) if log_id is not None else None,
            field=str(data.get("field") or ""),
            sub_key=data.get("translation_code") or None,
            status=str(data.get("status") or ""),
            error_message=data.get("error_message") or None,
        )


# ---------------------------------------------------------------------------
# Queue entries
# ---------------------------------------------------------------------------

QUEUE_STATUSES = ("queued", "running", "success", "failed", "skipped")


@dataclass
class QueueEntry:
    id: str
    item_id: int
    post_date: str
    field: str
    status: str
    started_at: float
    task_id: Optional[str] = None
    sub_key: Optional[str] = None
    mode: Optional[str] = None
    language: Optional[str] = None
    error: Optional[str] = None
    log_id: Optional[int] = None
    completed_at: Optional[float] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QueueEntry":
        status = str(data.get("status") or "")
        if status not in QUEUE_STATUSES:
            raise ValueError(f"Unknown queue status {status!r}")
        return cls(
            id=str(data["id"]),
            item_id=int(data["item_id"]),
            post_date=str(data.get("post_date") or ""),
            field=str(data["field"]),
            status=status,
            started_at=float(data.get("started_at") or 0.0),
            task_id=data.get("task_id"),
            sub_key=data.get("sub_key"),
            mode=data.get("mode"),
            language=data.get("language"),
            error=data.get("error"),
            log_id=data.get("log_id"),
            completed_at=data.get("completed_at"),
            session_id=data.get("session_id"),
        )

    @property
    def label(self) -> str:
        name = self.field.replace("_", " ")
        return f"{self.sub_key} {name}" if self.sub_key else name


__all__ = [
    "ContentItem",
    "Creator",
    "GenerationResult",
    "InvalidTransition",
    "LogRecord",
    "QUEUE_STATUSES",
    "QueueEntry",
    "TERMINAL_STATUSES",
    "Task",
    "TaskStatus",
    "TranslationFlags",
    "task_key",
]
