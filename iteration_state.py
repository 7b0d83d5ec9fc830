"""In-memory iteration state and timing statistics for one loop run."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from config import DEFAULT_FAILURE_THRESHOLD, DEFAULT_MAX_OUTPUT_BUFFER

logger = logging.getLogger(__name__)


class LoopStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    MAX_ITERS = "max-iters"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self is not LoopStatus.RUNNING


class IterationStats(BaseModel):
    """Running duration statistics in constant memory (Welford's algorithm).

    Durations are in seconds. ``stddev()`` is the population standard
    deviation (divides by count).
    """

    count: int = 0
    total: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    m2: float = 0.0

    def record(self, duration: float) -> None:
        self.count += 1
        self.total += duration

        if self.count == 1 or duration < self.minimum:
            self.minimum = duration
        if duration > self.maximum:
            self.maximum = duration

        old_mean = (self.total - duration) / (self.count - 1) if self.count > 1 else 0.0
        new_mean = self.total / self.count
        self.m2 += (duration - old_mean) * (duration - new_mean)

    def mean(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total / self.count

    def stddev(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(max(self.m2, 0.0) / self.count)


class IterationState(BaseModel):
    """Mutable state for one loop run, owned by the loop driver."""

    iteration: int = 0
    max_iterations: Optional[int] = Field(default=None, ge=1)
    iteration_timeout: Optional[int] = Field(default=None, ge=1)
    max_output_buffer: int = Field(default=DEFAULT_MAX_OUTPUT_BUFFER, ge=1)
    consecutive_failures: int = 0
    failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: LoopStatus = LoopStatus.RUNNING
    procedure_name: str = ""
    stats: IterationStats = Field(default_factory=IterationStats)

    def advance(self) -> int:
        """Move to the next iteration and return the new index."""
        self.iteration += 1
        return self.iteration

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    def reset_failures(self) -> None:
        self.consecutive_failures = 0

    def max_iterations_reached(self) -> bool:
        return self.max_iterations is not None and self.iteration >= self.max_iterations

    def failure_threshold_reached(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    def finish(self, status: LoopStatus) -> LoopStatus:
        """Set the terminal status once. Later calls keep the first value."""
        if not status.is_terminal:
            raise ValueError(f"{status.value!r} is not a terminal status")
        if self.status.is_terminal:
            logger.warning(
                "Loop already finished with status %s; ignoring %s",
                self.status.value, status.value,
            )
            return self.status
        self.status = status
        return self.status

    def elapsed_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def summary(self) -> str:
        return (
            f"Loop completed status={self.status.value} iterations={self.iteration} "
            f"total_elapsed={self.elapsed_seconds():.1f}s"
        )
