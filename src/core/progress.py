"""
Rate-limited stage progress reporting.

A reporter wraps an ``emit(pct, message)`` sink (usually a JobRun update) and
guarantees the reported percentage never decreases and stays within 0..99;
100 is reserved for the job's terminal state.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from src.db.models import JobRun, JobRunEvent

EmitFn = Callable[[int, str], None]


class ProgressReporter:
    """
    Monotonic, rate-limited progress emitter.

    Emission requires both ``min_interval`` seconds since the last emit and a
    change in (pct, message). ``update()`` always emits and resets the gate.

    Example:
        >>> reporter = ProgressReporter(job_sink(session, job_id))
        >>> step = reporter.range(10, 60)
        >>> for i, node in enumerate(nodes):
        ...     step(i + 1, len(nodes), "Building lessons")
    """

    def __init__(
        self,
        emit: EmitFn,
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._emit = emit
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self.pct = 0
        self.message = ""
        self._last_emit_at: float | None = None
        self._last_emitted: tuple[int, str] | None = None

    def _normalize(self, pct: float) -> int:
        p = int(pct)
        if p < 0:
            p = 0
        if p > 99:
            p = 99
        return max(p, self.pct)

    def update(self, pct: float, message: str) -> None:
        """Record progress and emit unconditionally."""
        self.pct = self._normalize(pct)
        self.message = message
        self._send()

    def maybe_emit(self, pct: float, message: str) -> bool:
        """Record progress; emit only if the interval elapsed and something changed."""
        self.pct = self._normalize(pct)
        self.message = message
        if self._last_emit_at is None:
            self._send()
            return True
        if (self.pct, self.message) == self._last_emitted:
            return False
        if self._clock() - self._last_emit_at < self.min_interval:
            return False
        self._send()
        return True

    def range(self, start: int, end: int) -> Callable[[int, int, str], bool]:
        """Map ``done/total`` linearly into ``[start, end]``."""
        lo = max(0, min(start, 99))
        hi = max(lo, min(end, 99))

        def step(done: int, total: int, message: str) -> bool:
            if total <= 0:
                return self.maybe_emit(lo, message)
            frac = min(max(done / total, 0.0), 1.0)
            return self.maybe_emit(lo + (hi - lo) * frac, message)

        return step

    def _send(self) -> None:
        self._last_emit_at = self._clock()
        self._last_emitted = (self.pct, self.message)
        self._emit(self.pct, self.message)


def job_sink(session: Session, job_id: UUID, stage: str = "") -> EmitFn:
    """Emit progress into ``job_runs`` and append a ``job_run_events`` row."""

    def emit(pct: int, message: str) -> None:
        job = session.get(JobRun, job_id)
        if job is None:
            logger.warning(f"Progress for unknown job {job_id}: {pct}% {message}")
            return
        job.progress = pct
        job.message = message
        if stage:
            job.stage = stage
        session.add(JobRunEvent(job_id=job_id, stage=stage, progress=pct, message=message))
        session.flush()

    return emit
