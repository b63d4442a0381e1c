"""Background runtime hosting the telemetry session.

The session is a single-threaded reducer, so everything that touches it
(link callbacks, timer fires and operator commands) is serialised onto one
asyncio loop owned by a dedicated thread. The Dash server and the CSV printer
live on other threads and only use the thread-safe wrappers and the latest
published snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TextIO, TypeVar

from .ble_link import BleakLink, LinkPort, MockLink
from .buffers import TelemetryBufferSet
from .config import MonitorConfig
from .data_recorder import ReadingTailWorker, SessionRecorder
from .events import SessionEvent
from .models import TimedSample
from .session import LowBatteryNotifier, SessionSnapshot, TelemetrySession
from .timers import AsyncioScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMMAND_TIMEOUT_SECONDS = 5.0
LinkFactory = Callable[[Callable[[SessionEvent], None]], LinkPort]


class MonitorRuntime:
    """Owns the session thread, its event loop and its event queue.

    Args:
        config: Session configuration.
        recorder: Session recorder handed to the session.
        mock: Use the synthetic :class:`MockLink` instead of bleak.
        address: Link identifier to connect to as soon as it is discovered.
        auto_connect: Connect to the first AIMNet device discovered when no
            ``address`` is given.
        low_battery_notifier: Forwarded to the session.
        link_factory: Overrides link construction; receives the event poster.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        recorder: Optional[SessionRecorder] = None,
        *,
        mock: bool = False,
        address: Optional[str] = None,
        auto_connect: bool = False,
        low_battery_notifier: Optional[LowBatteryNotifier] = None,
        link_factory: Optional[LinkFactory] = None,
    ):
        self.config = config or MonitorConfig()
        self.recorder = recorder
        self._mock = mock
        self._address = address
        self._auto_connect = auto_connect
        self._auto_connect_enabled = address is not None or auto_connect
        self._low_battery_notifier = low_battery_notifier
        self._link_factory = link_factory

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[SessionEvent]] = None
        self._session: Optional[TelemetrySession] = None
        self._link: Optional[LinkPort] = None
        self._ready = threading.Event()
        self._stop_requested: Optional[asyncio.Event] = None
        self._snapshot: Optional[SessionSnapshot] = None
        self._listeners: list[Callable[[SessionSnapshot], None]] = []
        self._listeners_lock = threading.Lock()
        self._error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self, timeout: float = COMMAND_TIMEOUT_SECONDS) -> None:
        """Start the session thread and begin scanning.

        Idempotent while the thread is alive.
        """
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        self._error = None
        self._thread = threading.Thread(
            target=self._worker, name="TelemetrySession", daemon=True
        )
        self._thread.start()
        if not self._ready.wait(timeout):
            raise RuntimeError("Telemetry session thread did not start in time")
        if self._error is not None:
            raise RuntimeError(f"Telemetry session failed to start: {self._error}")
        self.start_scanning()

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed() and self._stop_requested is not None:
            logger.info("🛑 Stopping telemetry session...")
            loop.call_soon_threadsafe(self._stop_requested.set)
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("⚠️ Telemetry session thread did not stop gracefully")
            else:
                logger.info("✅ Telemetry session stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def _worker(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._main())
        except Exception as e:
            logger.error("💥 Telemetry session fatal error: %s", e)
            self._error = e
        finally:
            self._ready.set()
            loop.close()
            logger.info("🏁 Telemetry session worker finished")

    async def _main(self) -> None:
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stop_requested = asyncio.Event()

        self._link = self._build_link(self._post)
        self._session = TelemetrySession(
            self._link,
            AsyncioScheduler(loop),
            recorder=self.recorder,
            config=self.config,
            low_battery_notifier=self._low_battery_notifier,
            post_event=self._post,
        )
        self._session.subscribe(self._on_snapshot)
        self._snapshot = self._session.snapshot
        self._ready.set()

        pump = loop.create_task(
            self._pump(self._queue, self._session), name="session-event-pump"
        )
        try:
            await self._stop_requested.wait()
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
            self._session.disconnect()
            self._session.stop_scanning()
            await self._link.aclose()

    def _build_link(self, post: Callable[[SessionEvent], None]) -> LinkPort:
        if self._link_factory is not None:
            return self._link_factory(post)
        if self._mock:
            logger.info("🔧 Using mock link (no BLE device required)")
            return MockLink(post)
        return BleakLink(post, scan_timeout=self.config.scan_timeout)

    def _post(self, event: SessionEvent) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, event)

    async def _pump(
        self, queue: asyncio.Queue[SessionEvent], session: TelemetrySession
    ) -> None:
        while True:
            event = await queue.get()
            try:
                session.dispatch(event)
            except Exception:
                logger.exception("❌ Failed to apply session event %r", event)

    # ------------------------------------------------------------------
    # Observation

    @property
    def snapshot(self) -> Optional[SessionSnapshot]:
        return self._snapshot

    @property
    def buffers(self) -> Optional[TelemetryBufferSet]:
        return self._session.buffers if self._session is not None else None

    def subscribe(self, listener: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        """Receive every snapshot on the session thread. Listeners must not block."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snapshot)
        self._maybe_auto_connect(snapshot)

    def _maybe_auto_connect(self, snapshot: SessionSnapshot) -> None:
        if not snapshot.is_scanning or snapshot.is_connected:
            return
        loop, session = self._loop, self._session
        if not self._auto_connect_enabled or loop is None or session is None:
            return
        for device in snapshot.discovered_devices:
            if self._address is None or device.link_id.lower() == self._address.lower():
                logger.info("🔍 Found target device %s, connecting", device.link_id)
                # Connect outside the current publish so listeners see ordered snapshots
                loop.call_soon(session.connect, device.link_id)
                return

    # ------------------------------------------------------------------
    # Commands

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = self._loop
        if loop is None or loop.is_closed() or self._session is None:
            raise RuntimeError("Telemetry session is not running")

        async def invoke() -> T:
            return fn(*args)

        future = asyncio.run_coroutine_threadsafe(invoke(), loop)
        try:
            return future.result(timeout=COMMAND_TIMEOUT_SECONDS)
        except FutureTimeoutError as e:
            future.cancel()
            raise RuntimeError(f"Command {fn.__name__} timed out") from e

    def start_scanning(self) -> bool:
        return self._call(self._require_session().start_scanning)

    def stop_scanning(self) -> None:
        self._call(self._require_session().stop_scanning)

    def connect(self, link_id: str) -> bool:
        self._auto_connect_enabled = self._address is not None or self._auto_connect
        return self._call(self._require_session().connect, link_id)

    def disconnect(self) -> None:
        """Disconnect and stop auto-connecting until :meth:`connect` is called."""
        self._auto_connect_enabled = False
        self._call(self._require_session().disconnect)

    def start_timed_sample(self, duration_sec: Optional[int] = None) -> bool:
        return self._call(self._require_session().start_timed_sample, duration_sec)

    def stop_timed_sample(self) -> Optional[TimedSample]:
        return self._call(self._require_session().stop_timed_sample)

    def cancel_timed_sample(self) -> None:
        self._call(self._require_session().cancel_timed_sample)

    def clear_live_telemetry(self) -> None:
        self._call(self._require_session().clear_live_telemetry)

    def _require_session(self) -> TelemetrySession:
        if self._session is None:
            raise RuntimeError("Telemetry session is not running")
        return self._session


def run(
    config: MonitorConfig,
    *,
    address: Optional[str] = None,
    show_header: bool = True,
    mock: bool = False,
    recorder: Optional[SessionRecorder] = None,
    output: Optional[TextIO] = None,
) -> int:
    """Stream live readings as CSV to standard output until interrupted.

    Connects to ``address`` when given, otherwise to the first AIMNet sensor
    discovered, and writes one line per decoded primary reading.

    Returns:
        int: Exit code following Unix conventions:
            0: Normal completion
            1: Error termination (adapter failure, output closed, etc.)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    runtime = MonitorRuntime(
        config, recorder, mock=mock, address=address, auto_connect=True
    )
    worker: Optional[ReadingTailWorker] = None
    try:
        runtime.start()
        buffers = runtime.buffers
        if buffers is None:
            raise RuntimeError("Telemetry session has no buffers")
        worker = ReadingTailWorker(
            buffers.live_readings, output or sys.stdout, show_header=show_header
        )
        worker.start()
        while runtime.is_running and worker.is_alive():
            time.sleep(0.5)
        if worker.error is not None:
            return 1
        if runtime.error is not None:
            logger.error("Fatal error: %s", runtime.error)
            return 1
        return 0
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except RuntimeError as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        if worker is not None:
            worker.stop()
        runtime.stop()
