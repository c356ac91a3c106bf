"""Timing and progress reporting for analysis runs."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from analysis_middleware.types import ProgressEvent, ProgressEventType

ProgressCallback = Callable[[ProgressEvent], None]


class Timer:
    """Simple context timer used by the pipeline stages."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


class ProgressReporter:
    """Emits progress events at fixed pipeline milestones.

    Progress never decreases across one run. A callback that raises is logged
    and otherwise ignored so a listener can never abort the analysis.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._progress = 0.0
        self.events: list[ProgressEvent] = []

    @property
    def progress(self) -> float:
        return self._progress

    def emit(
        self,
        event_type: ProgressEventType,
        progress: float,
        data: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        self._progress = min(1.0, max(self._progress, progress))
        event = ProgressEvent(
            type=event_type,
            data=data or {},
            timestamp=time.time(),
            progress=self._progress,
        )
        self.events.append(event)
        if self._callback is not None:
            try:
                self._callback(event)
            except Exception as exc:
                logger.warning(f"Progress callback failed at {self._progress:.2f}: {exc}")
        return event
