"""Core runtime components for bulkgen."""

from .cancellation import CancellationToken
from .client import GenerationClient
from .events import LoggingObserver, ProgressBarObserver, ProgressReporter, RunObserver
from .metrics_manager import RunMetrics
from .output_writer import ContentWriter
from .queue_store import MemoryQueueBackend, QueueStore, SqliteQueueBackend
from .reconciler import StaleReconciler
from .scheduler import DEFAULT_CONCURRENCY, PhasedScheduler, Run, RunResult, RunState

__all__ = [
    "CancellationToken",
    "ContentWriter",
    "DEFAULT_CONCURRENCY",
    "GenerationClient",
    "LoggingObserver",
    "MemoryQueueBackend",
    "PhasedScheduler",
    "ProgressBarObserver",
    "ProgressReporter",
    "QueueStore",
    "RunMetrics",
    "Run",
    "RunObserver",
    "RunResult",
    "RunState",
    "SqliteQueueBackend",
    "StaleReconciler",
]
