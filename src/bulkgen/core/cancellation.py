"""Cooperative cancellation shared by the workers of one run."""

from __future__ import annotations

import asyncio
import signal
from typing import Iterable


class CancellationToken:
    """Monotonic stop flag: once cancelled it stays cancelled.

    Workers consult :meth:`is_cancelled` before claiming their next task;
    requests already in flight are left to finish.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._installed = False

    def install(self, signals: Iterable[int] | None = None) -> None:
        loop = asyncio.get_running_loop()
        if self._installed:
            return
        self._installed = True
        targets = list(signals) if signals is not None else [signal.SIGINT, signal.SIGTERM]
        for sig in targets:
            try:
                loop.add_signal_handler(sig, self.cancel)
            except NotImplementedError:  # pragma: no cover - windows fallback
                signal.signal(sig, lambda *_: self.cancel())

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled


__all__ = ["CancellationToken"]
