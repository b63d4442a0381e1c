"""Timer arena for the telemetry session.

Timers never capture session state. Each armed timer is a slot in a
:class:`TimerTable`, addressed by a :class:`TimerHandle` that carries the
slot's generation at arming time. When a timer fires the session looks the
handle up; a cancelled or re-armed slot has moved to a newer generation, so
the stale fire is recognised and ignored.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class TimerKind(str, Enum):
    WARMUP = "warmup"
    PREPARATION_COUNTDOWN = "preparation_countdown"
    WATCHDOG = "watchdog"
    READ_FALLBACK = "read_fallback"
    DEVICE_DURATION = "device_duration"
    BATTERY_RETRY = "battery_retry"
    SAMPLE_COUNTDOWN = "sample_countdown"


@dataclass(frozen=True)
class TimerHandle:
    slot: int
    generation: int


@dataclass
class _TimerSlot:
    kind: Optional[TimerKind] = None
    key: str = ""
    interval: float = 0.0
    repeating: bool = False
    generation: int = 0
    token: Any = None

    @property
    def armed(self) -> bool:
        return self.kind is not None


class Scheduler(ABC):
    """Runs callbacks after a delay on the session's execution context."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        """Schedule ``callback``; return a token accepted by :meth:`cancel`."""

    @abstractmethod
    def cancel(self, token: Any) -> None:
        """Cancel a scheduled callback. Cancelling twice is harmless."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by ``loop.call_later`` on the session's event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        return self._loop.call_later(delay, callback)

    def cancel(self, token: Any) -> None:
        if token is not None:
            token.cancel()


class TimerTable:
    """Slots of armed timers keyed by ``(kind, key)``.

    ``key`` distinguishes per-channel and per-device timers of the same kind
    (a characteristic UUID or a resolved device identifier); singleton timers
    use the empty key.
    """

    def __init__(self, scheduler: Scheduler, fire: Callable[[TimerHandle], None]):
        self._scheduler = scheduler
        self._fire = fire
        self._slots: list[_TimerSlot] = []
        self._index: dict[tuple[TimerKind, str], int] = {}

    def arm(
        self,
        kind: TimerKind,
        interval: float,
        *,
        key: str = "",
        repeating: bool = False,
    ) -> TimerHandle:
        """Arm (or re-arm) the timer for ``(kind, key)``.

        Re-arming bumps the slot generation, so a fire already in flight for
        the previous arming is ignored.
        """
        slot_index = self._index.get((kind, key))
        if slot_index is None:
            slot_index = self._free_slot()
            self._index[(kind, key)] = slot_index
        slot = self._slots[slot_index]
        self._scheduler.cancel(slot.token)
        slot.kind = kind
        slot.key = key
        slot.interval = interval
        slot.repeating = repeating
        slot.generation += 1
        handle = TimerHandle(slot_index, slot.generation)
        slot.token = self._schedule(handle, interval)
        logger.debug("Timer armed: %s[%s] every %.1fs", kind.value, key, interval)
        return handle

    def cancel(self, kind: TimerKind, key: str = "") -> bool:
        slot_index = self._index.pop((kind, key), None)
        if slot_index is None:
            return False
        self._release(slot_index)
        return True

    def cancel_kind(self, kind: TimerKind) -> None:
        for timer_kind, key in [k for k in self._index if k[0] == kind]:
            self.cancel(timer_kind, key)

    def cancel_all(self) -> None:
        for slot_index in list(self._index.values()):
            self._release(slot_index)
        self._index.clear()

    def is_armed(self, kind: TimerKind, key: str = "") -> bool:
        return (kind, key) in self._index

    def keys(self, kind: TimerKind) -> list[str]:
        return [key for timer_kind, key in self._index if timer_kind == kind]

    def resolve(self, handle: TimerHandle) -> Optional[tuple[TimerKind, str]]:
        """Validate a fired handle and reschedule repeating timers.

        Returns:
            ``(kind, key)`` for a live timer, or ``None`` for a stale fire.
            One-shot timers are released before returning.
        """
        if handle.slot >= len(self._slots):
            return None
        slot = self._slots[handle.slot]
        kind, key = slot.kind, slot.key
        if kind is None or slot.generation != handle.generation:
            logger.debug("Ignoring stale timer fire: %s", handle)
            return None
        if slot.repeating:
            slot.token = self._schedule(handle, slot.interval)
        else:
            self._index.pop((kind, key), None)
            self._release(handle.slot)
        return kind, key

    @property
    def armed_count(self) -> int:
        return len(self._index)

    def _schedule(self, handle: TimerHandle, interval: float) -> Any:
        return self._scheduler.call_later(interval, lambda: self._fire(handle))

    def _free_slot(self) -> int:
        in_use = set(self._index.values())
        for i, slot in enumerate(self._slots):
            if not slot.armed and i not in in_use:
                return i
        self._slots.append(_TimerSlot())
        return len(self._slots) - 1

    def _release(self, slot_index: int) -> None:
        slot = self._slots[slot_index]
        self._scheduler.cancel(slot.token)
        slot.token = None
        slot.kind = None
        slot.key = ""
        slot.generation += 1
