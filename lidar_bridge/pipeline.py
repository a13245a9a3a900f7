"""
Acquisition and distribution pipeline
=====================================

Wires the pieces together inside one asyncio event loop:

    controller thread --Handoff--> encoder task --FanOut--> sink tasks
                                         ^
    command listener task --RunState-----'  (read by the controller thread)

``LidarBridge`` runs the full pipeline. ``RelayBridge`` skips the sensor and
forwards already-encoded frames from pub/sub to visualization and log sinks.
``park`` stops the sensor motor and exits.

Shutdown order (SIGINT/SIGTERM, fatal controller error, or a task failing):
    1. stop the controller thread (stops the motor, releases the port)
    2. cancel the command listener and the encoder
    3. drain and close every sink, in configured order
    4. close the pub/sub session
"""

import asyncio
import concurrent.futures
import logging
import signal
import time
from typing import Callable, List, Optional, Sequence, Tuple

from .base import LidarBase, Revolution
from .commands import CommandListener
from .config import BridgeConfig
from .controller import DeviceController, RunState
from .fanout import FanOut
from .frames import encode
from .schemas import FrameKind, SchemaRegistry
from .sinks import Sink, build_sinks, stream_registrations
from .transport import PubSubSession

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_S = 5.0
LOOP_GRACE_S = 1.0


class Handoff:
    """
    Bounded queue carrying revolutions from the controller thread into the
    event loop, stamped with their capture time.

    ``put`` blocks the controller for at most ``timeout`` seconds when the
    queue is full, then drops the revolution with a warning. The timeout is
    applied on the loop side, so a revolution is either queued or counted as
    dropped, never both.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        capacity: int = 10,
        timeout: float = 1.0,
        clock: Callable[[], int] = time.time_ns,
    ):
        self.loop = loop
        self.timeout = timeout
        self.clock = clock
        self.queue: "asyncio.Queue[Tuple[int, Revolution]]" = asyncio.Queue(maxsize=capacity)
        self.dropped = 0

    def put(self, revolution: Revolution) -> None:
        """Called from the controller thread."""
        item = (self.clock(), revolution)
        future = asyncio.run_coroutine_threadsafe(self._put(item), self.loop)
        try:
            queued = future.result(self.timeout + LOOP_GRACE_S)
        except concurrent.futures.TimeoutError:
            # loop unresponsive; a put that finished meanwhile still counts
            queued = False if future.cancel() else future.result()
        if not queued:
            self.dropped += 1
            logger.warning("Encoder is falling behind, dropped revolution (%d dropped)", self.dropped)

    async def _put(self, item: Tuple[int, Revolution]) -> bool:
        try:
            await asyncio.wait_for(self.queue.put(item), self.timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def get(self) -> Tuple[int, Revolution]:
        return await self.queue.get()


def install_signal_handlers(loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> List[int]:
    """Set ``event`` on SIGINT/SIGTERM. Returns the signals actually hooked."""
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # not the main thread, or a platform without loop signal support
            continue
        installed.append(sig)
    return installed


def remove_signal_handlers(loop: asyncio.AbstractEventLoop, signals: Sequence[int]) -> None:
    for sig in signals:
        loop.remove_signal_handler(sig)


async def _wait_first(*aws) -> None:
    await asyncio.wait(list(aws), return_when=asyncio.FIRST_COMPLETED)


async def _cancel(*tasks: asyncio.Task) -> Optional[Exception]:
    """Cancel ``tasks`` and return the first exception one of them died with."""
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    failure = None
    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error("Task %s failed: %s", task.get_name(), result)
            if failure is None:
                failure = result
    return failure


class LidarBridge:
    """
    Full pipeline: sensor -> encoder -> sinks, controlled over pub/sub.

    Args:
        config: Validated configuration
        driver_factory: Returns a fresh driver for every controller session
        session: Pub/sub session (default: one built from ``config.pubsub``)
        sinks: Sinks to use (default: built from ``config.sinks``)
    """

    def __init__(
        self,
        config: BridgeConfig,
        driver_factory: Callable[[], LidarBase],
        session: Optional[PubSubSession] = None,
        sinks: Optional[Sequence[Sink]] = None,
    ):
        self.config = config
        self.driver_factory = driver_factory
        self.session = session if session is not None else PubSubSession(config.pubsub)
        self.sinks = list(sinks) if sinks is not None else build_sinks(config.sinks, self.session)
        self.schemas = SchemaRegistry()
        self.fanout = FanOut(
            self.sinks,
            stream_registrations(config.topics, self.schemas),
        )
        self.run_state = RunState(config.lidar.run_at_startup)
        self.controller: Optional[DeviceController] = None
        self.handoff: Optional[Handoff] = None
        self.frames_encoded = 0

    def process(self, revolution: Revolution, capture_time_ns: int) -> None:
        """Encode one revolution and hand both records to the fan-out."""
        laser_scan, point_cloud = encode(
            revolution, capture_time_ns, self.config.frame_id, self.config.pose,
        )
        self.fanout.publish(FrameKind.LASER_SCAN, laser_scan.serialize(), capture_time_ns)
        self.fanout.publish(FrameKind.POINT_CLOUD, point_cloud.serialize(), capture_time_ns)
        self.frames_encoded += 1

    async def encode_loop(self) -> None:
        while True:
            capture_time_ns, revolution = await self.handoff.get()
            self.process(revolution, capture_time_ns)

    async def run(self, shutdown: Optional[asyncio.Event] = None) -> None:
        """
        Run until ``shutdown`` is set, a signal arrives, or the controller
        gives up. A fatal controller error, or the first exception of a failed
        task, is re-raised after cleanup.
        """
        loop = asyncio.get_running_loop()
        shutdown = shutdown if shutdown is not None else asyncio.Event()
        signals = install_signal_handlers(loop, shutdown)

        fatal: "asyncio.Future[BaseException]" = loop.create_future()

        def report_fatal(exc: BaseException) -> None:
            if not fatal.done():
                fatal.set_result(exc)

        self.handoff = Handoff(
            loop, self.config.handoff_capacity, self.config.handoff_timeout,
        )
        self.controller = DeviceController(
            self.driver_factory,
            self.run_state,
            self.handoff.put,
            poll_interval=self.config.poll_interval,
            restart_backoff=self.config.restart_backoff,
        )
        failure = None
        try:
            listener = CommandListener(
                self.session.subscribe(self.config.topics.control_topic), self.run_state,
            )
            await self.fanout.open()
            logger.info("Lidar bridge started (run at startup: %s)", self.run_state.is_running())
            self.controller.start(on_fatal=lambda exc: loop.call_soon_threadsafe(report_fatal, exc))

            listener_task = asyncio.create_task(listener.run(), name="command-listener")
            encoder_task = asyncio.create_task(self.encode_loop(), name="encoder")
            shutdown_task = asyncio.create_task(shutdown.wait(), name="shutdown")
            try:
                await _wait_first(listener_task, encoder_task, shutdown_task, fatal)
            finally:
                logger.info("Shutting down")
                self.controller.request_stop()
                await loop.run_in_executor(None, self.controller.join, JOIN_TIMEOUT_S)
                failure = await _cancel(listener_task, encoder_task, shutdown_task)
        finally:
            await self.fanout.close()
            self.session.close()
            remove_signal_handlers(loop, signals)
            logger.info(
                "Lidar bridge stopped: revolutions=%d encoded=%d errors=%d",
                self.controller.revolutions, self.frames_encoded, self.controller.errors,
            )

        if fatal.done():
            raise fatal.result()
        if failure is not None:
            raise failure


class RelayBridge:
    """
    Forwards encoded frames from pub/sub to visualization and log sinks,
    logging a per-topic counter every ``config.relay_log_interval`` messages.
    """

    def __init__(
        self,
        config: BridgeConfig,
        session: Optional[PubSubSession] = None,
        sinks: Optional[Sequence[Sink]] = None,
        clock: Callable[[], int] = time.time_ns,
    ):
        self.config = config
        self.clock = clock
        self.session = session if session is not None else PubSubSession(config.pubsub)
        self.sinks = list(sinks) if sinks is not None else build_sinks(config.sinks)
        self.schemas = SchemaRegistry()
        self.fanout = FanOut(self.sinks, stream_registrations(config.topics, self.schemas))
        self.counters = {kind: 0 for kind in self.schemas.kinds()}

    async def relay(self, kind: FrameKind, messages) -> None:
        topic = self.config.topics.for_kind(kind)
        async for payload in messages:
            self.counters[kind] += 1
            self.fanout.publish(kind, payload, self.clock())
            if self.counters[kind] % self.config.relay_log_interval == 0:
                logger.info("%s counter: %d", topic, self.counters[kind])

    async def run(self, shutdown: Optional[asyncio.Event] = None) -> None:
        """
        Run until ``shutdown`` is set or a signal arrives. A relay task that
        fails is re-raised after cleanup.
        """
        loop = asyncio.get_running_loop()
        shutdown = shutdown if shutdown is not None else asyncio.Event()
        signals = install_signal_handlers(loop, shutdown)

        failure = None
        try:
            subscriptions = {
                kind: self.session.subscribe(self.config.topics.for_kind(kind))
                for kind in self.schemas.kinds()
            }
            await self.fanout.open()
            logger.info("Relay started")
            tasks = [
                asyncio.create_task(self.relay(kind, messages), name=f"relay-{kind.value}")
                for kind, messages in subscriptions.items()
            ]
            shutdown_task = asyncio.create_task(shutdown.wait(), name="shutdown")
            try:
                await _wait_first(shutdown_task, *tasks)
            finally:
                logger.info("Shutting down")
                failure = await _cancel(shutdown_task, *tasks)
        finally:
            await self.fanout.close()
            self.session.close()
            remove_signal_handlers(loop, signals)
            logger.info("Relay stopped: %s", ", ".join(
                f"{kind.value}={count}" for kind, count in self.counters.items()))

        if failure is not None:
            raise failure


def park(driver: LidarBase) -> None:
    """Open the sensor, stop its motor and release the port."""
    with driver:
        logger.info("Stopping lidar motor on %s", driver.config.port)
        driver.stop()
    logger.info("Lidar parked")
