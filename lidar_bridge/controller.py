"""
Device controller
=================

Owns the sensor for the lifetime of the bridge and runs the blocking
acquisition loop on a dedicated thread.

State machine
-------------
Two states, Running and Stopped, chosen by ``RunState`` at the top of
every loop iteration:

- Stopped -> Running: start motor and scanning
- Running -> Stopped: stop motor, then idle-poll every ``poll_interval``
- Running: grab one revolution, sort it, hand it downstream

The "hardware active" flag starts as the opposite of the requested run
state, so the first iteration always issues an explicit start or stop
instead of trusting the sensor's power-on state.

Failure handling
----------------
- ``LidarTimeout`` while grabbing: retry immediately
- other ``LidarError`` while grabbing: log, keep looping
- ``LidarDisconnected`` or any unexpected error: the session ends, the
  supervisor waits ``restart_backoff`` and reopens the port
- ``LidarOpenError`` before the port was ever opened: fatal
"""

import logging
import threading
from typing import Callable, Optional

from .base import (
    LidarBase,
    LidarDisconnected,
    LidarError,
    LidarOpenError,
    LidarTimeout,
    Revolution,
    sort_revolution,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.5
RESTART_BACKOFF_S = 1.0
SCAN_LOG_INTERVAL = 80


class RunState:
    """
    Shared run/stop flag.

    Written only by the command listener, read only by the controller
    thread. A read may be one loop iteration stale.
    """

    def __init__(self, running: bool):
        self._event = threading.Event()
        self.set(running)

    def set(self, running: bool) -> None:
        if running:
            self._event.set()
        else:
            self._event.clear()

    def is_running(self) -> bool:
        return self._event.is_set()


class DeviceController:
    """
    Drives one sensor through start/stop transitions and acquisition.

    Args:
        driver_factory: Returns a fresh, unopened driver for every session
        run_state: Desired run state, read once per loop iteration
        deliver: Called with every sorted revolution. May block briefly to
            apply backpressure, must not block indefinitely.
        poll_interval: Idle sleep while stopped (seconds)
        restart_backoff: Wait before reopening after a failed session (seconds)
    """

    def __init__(
        self,
        driver_factory: Callable[[], LidarBase],
        run_state: RunState,
        deliver: Callable[[Revolution], None],
        poll_interval: float = POLL_INTERVAL_S,
        restart_backoff: float = RESTART_BACKOFF_S,
    ):
        self.driver_factory = driver_factory
        self.run_state = run_state
        self.deliver = deliver
        self.poll_interval = poll_interval
        self.restart_backoff = restart_backoff

        self._driver: Optional[LidarBase] = None
        self._hardware_active = False
        self._ever_opened = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.revolutions = 0
        self.errors = 0

    # =========================================================================
    # Thread management
    # =========================================================================

    def start(self, on_fatal: Optional[Callable[[BaseException], None]] = None) -> threading.Thread:
        """
        Run the supervised loop on a daemon thread.

        Args:
            on_fatal: Called from the controller thread if the loop gives up
        """
        def target():
            try:
                self.run()
            except BaseException as exc:
                logger.error("Lidar controller stopped: %s", exc)
                if on_fatal is not None:
                    on_fatal(exc)

        self._thread = threading.Thread(target=target, name="lidar-controller", daemon=True)
        self._thread.start()
        return self._thread

    def request_stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # =========================================================================
    # Supervisor
    # =========================================================================

    def run(self) -> None:
        """Run sessions until asked to stop, reopening after failures."""
        while not self.stopping:
            try:
                self.run_session()
            except LidarOpenError:
                if not self._ever_opened:
                    raise
                logger.error("Failed to reopen lidar, retrying in %.1fs", self.restart_backoff)
            except Exception as exc:
                logger.error("Lidar session failed: %s, restarting in %.1fs", exc, self.restart_backoff)
            else:
                continue
            self.errors += 1
            self._stop_event.wait(self.restart_backoff)

    def run_session(self) -> None:
        """Open the port, loop until stopped or failed, always release the port."""
        self.open()
        try:
            while not self.stopping:
                self.step()
        finally:
            self.close()

    # =========================================================================
    # Session
    # =========================================================================

    def open(self) -> None:
        driver = self.driver_factory()
        driver.initialize()
        self._driver = driver
        self._ever_opened = True
        self._hardware_active = not self.run_state.is_running()
        logger.info("Lidar port opened: %s", driver.config.port)

    def close(self) -> None:
        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            if self._hardware_active:
                logger.info("Stopping lidar")
                driver.stop()
        except LidarError as exc:
            logger.warning("Failed to stop lidar on close: %s", exc)
        finally:
            self._hardware_active = False
            driver.shutdown()
            logger.info("Lidar port closed")

    def step(self) -> None:
        """One loop iteration. The port must be open."""
        driver = self._driver
        if driver is None:
            raise LidarError("step() called without an open session")

        if not self.run_state.is_running():
            if self._hardware_active:
                logger.info("Stopping lidar")
                driver.stop()
                self._hardware_active = False
            self._stop_event.wait(self.poll_interval)
            return

        if not self._hardware_active:
            logger.info("Starting lidar")
            driver.start()
            self._hardware_active = True

        try:
            revolution = driver.grab_scan()
        except LidarTimeout:
            return
        except LidarDisconnected:
            raise
        except LidarError as exc:
            self.errors += 1
            logger.warning("Lidar error: %s", exc)
            return

        self.revolutions += 1
        if self.revolutions % SCAN_LOG_INTERVAL == 0:
            logger.info("Scan counter: %d", self.revolutions)
        self.deliver(sort_revolution(revolution))
