"""Bulk content-generation orchestrator."""

from .analyzer import analyze, summarize_plan
from .models import ContentItem, GenerationResult, QueueEntry, Task, TaskStatus
from .runtime import BulkGenerationRuntime, RunInProgressError

__version__ = "0.1.0"

__all__ = [
    "BulkGenerationRuntime",
    "ContentItem",
    "GenerationResult",
    "QueueEntry",
    "RunInProgressError",
    "Task",
    "TaskStatus",
    "analyze",
    "summarize_plan",
]
