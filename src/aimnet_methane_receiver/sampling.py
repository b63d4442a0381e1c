"""Timed sampling window: a finite capture of primary-channel readings."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Optional

from .config import DEFAULT_TIMED_SAMPLE_DURATION_SECONDS, TIMED_SAMPLE_CAPACITY
from .models import Reading, TimedSample

logger = logging.getLogger(__name__)


class SamplingState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimedSamplingController:
    """Countdown-driven capture window.

    The controller owns no timer; the session ticks it once a second and
    acts on the :class:`TimedSample` returned when the countdown reaches
    zero. Readings are only accepted while sampling.
    """

    def __init__(self, capacity: int = TIMED_SAMPLE_CAPACITY):
        self.state = SamplingState.IDLE
        self.remaining_seconds = 0
        self.target_duration_sec = 0
        self.started_at: Optional[datetime] = None
        self.last_sample: Optional[TimedSample] = None
        self._readings: deque[Reading] = deque(maxlen=capacity)

    @property
    def is_sampling(self) -> bool:
        return self.state == SamplingState.SAMPLING

    @property
    def readings(self) -> tuple[Reading, ...]:
        return tuple(self._readings)

    def start(
        self,
        now: datetime,
        duration_sec: int = DEFAULT_TIMED_SAMPLE_DURATION_SECONDS,
    ) -> int:
        """Begin a new window, discarding the previous window's readings.

        Returns:
            The accepted duration, clamped to at least one second.
        """
        duration = max(1, int(duration_sec))
        self._readings.clear()
        self.state = SamplingState.SAMPLING
        self.target_duration_sec = duration
        self.remaining_seconds = duration
        self.started_at = now
        logger.info("Timed sample started: %ds", duration)
        return duration

    def record(self, reading: Reading) -> bool:
        if not self.is_sampling:
            return False
        self._readings.append(reading)
        return True

    def tick(self, now: datetime) -> Optional[TimedSample]:
        """Advance the countdown by one second; finalise when it reaches zero."""
        if not self.is_sampling:
            return None
        self.remaining_seconds = max(0, self.remaining_seconds - 1)
        if self.remaining_seconds == 0:
            return self.stop(now)
        return None

    def stop(self, now: datetime) -> Optional[TimedSample]:
        if not self.is_sampling or self.started_at is None:
            return None
        sample = TimedSample(
            started_at=self.started_at,
            ended_at=now,
            target_duration_sec=self.target_duration_sec,
            readings=tuple(self._readings),
        )
        self.last_sample = sample
        self.state = SamplingState.COMPLETED
        self.remaining_seconds = 0
        logger.info(
            "Timed sample completed: %d readings, avg %.2f ppm",
            len(sample.readings),
            sample.average_ppm,
        )
        return sample

    def cancel(self) -> bool:
        """Drop the current window without producing a sample.

        Returns:
            True if a window was in progress.
        """
        was_sampling = self.is_sampling
        self._readings.clear()
        self.remaining_seconds = 0
        self.started_at = None
        if was_sampling:
            self.state = SamplingState.CANCELLED
            logger.info("Timed sample cancelled")
        return was_sampling
