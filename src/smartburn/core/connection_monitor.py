"""Background ST-LINK connection polling.

One scheduler thread ticks at the configured interval. Each tick hands a
poll to a short-lived worker only when no other poll is in flight, so a
slow CLI call delays nothing but its own result. Flashing operations
pause the monitor; while paused the scheduler keeps ticking but
dispatches nothing.
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, List, Optional

from .models import ConnectionStatus, Device

logger = logging.getLogger(__name__)

MIN_INTERVAL = 1.0
DEFAULT_INTERVAL = 3.0
# Longer than a worst-case probe: listing, every connect variant, device info and busy backoffs
PAUSE_WAIT_TIMEOUT = 120.0

DeviceCallback = Callable[[Device], None]
Dispatcher = Callable[[Callable[[], None]], None]


class MonitorState(Enum):
    """Externally visible monitor state."""

    STOPPED = "stopped"
    POLLING = "polling"
    POLL_IN_FLIGHT = "poll_in_flight"
    PAUSED = "paused"


def thread_dispatcher(job: Callable[[], None]) -> None:
    """Run a poll on its own daemon thread."""
    threading.Thread(target=job, name="connection-poll", daemon=True).start()


class ConnectionMonitor:
    """Periodically polls for the probe and publishes Device snapshots."""

    def __init__(
        self,
        poll: Callable[[], Device],
        interval: float = DEFAULT_INTERVAL,
        dispatcher: Dispatcher = thread_dispatcher,
        clock: Callable[[], float] = time.monotonic,
        pause_wait_timeout: float = PAUSE_WAIT_TIMEOUT,
    ):
        """Initialize ConnectionMonitor.

        Args:
            poll: Callable producing a fresh Device, usually ConnectionProbe.probe.
            interval: Seconds between ticks, never below MIN_INTERVAL.
            dispatcher: Runs a poll job; tests pass a synchronous one.
            clock: Monotonic time source used for settle windows.
            pause_wait_timeout: Upper bound for pause() waiting on a poll.
        """
        self._poll = poll
        self._interval = max(MIN_INTERVAL, interval)
        self._dispatch = dispatcher
        self._clock = clock
        self.pause_wait_timeout = pause_wait_timeout

        # Held only for short test-and-set sections, never across a poll.
        self._lock = threading.Lock()
        self._flight_token: Optional[int] = None
        self._token_counter = 0
        self._idle = threading.Event()
        self._idle.set()
        self._wake = threading.Event()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._pause_count = 0
        self._resume_at = 0.0
        self._generation = 0
        self._subscribers: List[DeviceCallback] = []
        self._last_device: Optional[Device] = None
        self.skipped_ticks = 0

    # -- status ---------------------------------------------------------

    @property
    def state(self) -> MonitorState:
        with self._lock:
            if not self._running:
                return MonitorState.STOPPED
            if self._pause_count:
                return MonitorState.PAUSED
            if self._flight_token is not None:
                return MonitorState.POLL_IN_FLIGHT
            return MonitorState.POLLING

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_device(self) -> Optional[Device]:
        """Most recently published snapshot."""
        return self._last_device

    # -- subscribers ----------------------------------------------------

    def subscribe(self, callback: DeviceCallback) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: DeviceCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _publish(self, device: Device) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        self._last_device = device
        for callback in subscribers:
            try:
                callback(device)
            except Exception:
                logger.exception("Device subscriber %r raised", callback)

    # -- lifecycle ------------------------------------------------------

    def start(self) -> None:
        """Begin polling. Does nothing if already running."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._generation += 1
            self._wake.clear()
            self._thread = threading.Thread(target=self._run, name="connection-monitor", daemon=True)
            self._thread.start()
        logger.info("Connection monitoring started (every %.1fs)", self._interval)

    def stop(self) -> None:
        """Stop polling. Safe to call repeatedly."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._generation += 1
            self._flight_token = None
            self._idle.set()
            thread, self._thread = self._thread, None
        self._wake.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval + 1.0)
        logger.info("Connection monitoring stopped")

    def set_interval(self, seconds: float) -> None:
        """Change the polling cadence; the scheduler picks it up immediately."""
        seconds = max(MIN_INTERVAL, seconds)
        with self._lock:
            self._interval = seconds
        self._wake.set()
        logger.debug("Polling interval set to %.1fs", seconds)

    def _run(self) -> None:
        last_tick: Optional[float] = None
        while True:
            with self._lock:
                if not self._running:
                    return
                interval = self._interval
            now = self._clock()
            if last_tick is None or now - last_tick >= interval:
                last_tick = now
                self.tick()
                continue
            self._wake.wait(interval - (now - last_tick))
            self._wake.clear()

    # -- dispatch -------------------------------------------------------

    def tick(self) -> bool:
        """Make one scheduling decision.

        Returns True if a poll was dispatched. The scheduler thread calls
        this; tests call it directly.
        """
        with self._lock:
            if not self._running:
                return False
            if self._pause_count:
                logger.debug("Monitor paused, tick skipped")
                return False
            if self._clock() < self._resume_at:
                logger.debug("Settling after operation, tick skipped")
                return False
            if self._flight_token is not None:
                self.skipped_ticks += 1
                logger.debug("Previous poll still running, tick skipped")
                return False
            self._token_counter += 1
            token = self._token_counter
            self._flight_token = token
            self._idle.clear()
            generation = self._generation

        try:
            self._dispatch(lambda: self._run_poll(token, generation))
        except BaseException:
            self._release(token)
            raise
        return True

    def _release(self, token: int) -> None:
        with self._lock:
            if self._flight_token == token:
                self._flight_token = None
                self._idle.set()

    def _run_poll(self, token: int, generation: int) -> None:
        try:
            device = self._poll()
        except Exception as e:
            logger.exception("Connection poll failed")
            device = Device(status=ConnectionStatus.ERROR, error_message=str(e))
        finally:
            self._release(token)

        with self._lock:
            superseded = generation != self._generation or not self._running
        if superseded:
            logger.debug("Discarding poll result superseded by pause or stop")
            return
        self._publish(device)

    # -- exclusivity ----------------------------------------------------

    def pause(self) -> bool:
        """Suspend dispatch and wait for any in-flight poll to finish.

        Calls nest; each needs a matching resume(). Returns False if the
        in-flight poll outlived pause_wait_timeout, in which case the
        caller must not use the probe.
        """
        with self._lock:
            self._pause_count += 1
            self._generation += 1
            depth = self._pause_count
        if depth == 1:
            logger.debug("Connection monitoring paused")
        finished = self._idle.wait(self.pause_wait_timeout)
        if not finished:
            logger.warning("Poll still running after %.1fs", self.pause_wait_timeout)
        return finished

    def resume(self, settle_delay: float = 0.0) -> None:
        """Undo one pause(); dispatch restarts after settle_delay seconds."""
        with self._lock:
            if self._pause_count == 0:
                logger.warning("resume() called without a matching pause()")
                return
            self._pause_count -= 1
            if settle_delay > 0:
                self._resume_at = max(self._resume_at, self._clock() + settle_delay)
            depth = self._pause_count
        if depth == 0:
            logger.debug("Connection monitoring resumed (settle %.1fs)", settle_delay)

    @contextmanager
    def suspended(self, settle_delay: float = 0.0) -> Iterator["ConnectionMonitor"]:
        """Pause for the duration of a with-block."""
        self.pause()
        try:
            yield self
        finally:
            self.resume(settle_delay)
