"""Background telemetry streams.

A stream is a polling task per session that samples telemetry and hands
every sample to a publish callable. Stopping is cooperative: the loop
finishes its current sample, observes the stop request and exits, and
stop() returns only after the task has exited.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from orion_fleet.config import DEFAULT_POLL_INTERVAL
from orion_fleet.utils.errors import FleetError
from .models import TelemetrySample
from .sampler import TelemetrySampler

logger = logging.getLogger(__name__)

PublishFn = Callable[[TelemetrySample], Union[None, Awaitable[None]]]

DEFAULT_SUBSCRIBER_QUEUE = 100


class SampleBroadcaster:
    """Delivers samples to any number of asyncio.Queue subscribers.

    Publishing never blocks: a subscriber whose queue is full loses its
    oldest queued sample.

    Usage:
        broadcaster = SampleBroadcaster()
        queue = broadcaster.subscribe()
        await controller.start("jetson-1", 1.0, broadcaster.publish)
        sample = await queue.get()
    """

    def __init__(self, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, sample: TelemetrySample) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(sample)


@dataclass
class StreamState:
    """Bookkeeping for one active stream."""

    session_id: str
    poll_interval: float
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    published: int = 0
    failures: int = 0

    @property
    def running(self) -> bool:
        return not self.stop_requested.is_set()


class StreamController:
    """Starts and stops per-session telemetry polling loops.

    At most one loop runs per session id; start() for an active id is a
    no-op and stop() for an inactive id is a no-op.
    """

    def __init__(self, sampler: TelemetrySampler):
        self.sampler = sampler
        self._streams: Dict[str, StreamState] = {}
        self._lock = asyncio.Lock()

    def is_streaming(self, session_id: str) -> bool:
        stream = self._streams.get(session_id)
        return stream is not None and stream.running

    def active(self) -> List[str]:
        return [sid for sid, stream in self._streams.items() if stream.running]

    def state(self, session_id: str) -> Optional[StreamState]:
        return self._streams.get(session_id)

    async def start(
        self,
        session_id: str,
        poll_interval: float,
        publish_fn: PublishFn,
        device_id: Optional[str] = None,
    ) -> bool:
        """Start polling a session.

        Args:
            session_id: Registered session id
            poll_interval: Seconds between samples
            publish_fn: Called with every sample (plain or async callable)
            device_id: Device the samples are attributed to

        A start that arrives while a stop is pending waits for the old
        loop to exit first.

        Returns:
            True if a new loop was started, False if one was already running
        """
        while True:
            async with self._lock:
                existing = self._streams.get(session_id)
                if existing is not None and existing.running:
                    logger.debug(f"[{session_id}] stream already running")
                    return False

                if existing is None or existing.task is None or existing.task.done():
                    stream = StreamState(session_id=session_id, poll_interval=poll_interval or DEFAULT_POLL_INTERVAL)
                    stream.task = asyncio.create_task(
                        self._poll_loop(stream, publish_fn, device_id),
                        name=f"telemetry-stream:{session_id}",
                    )
                    self._streams[session_id] = stream
                    break

            logger.debug(f"[{session_id}] waiting for previous stream to stop")
            await asyncio.wait({existing.task})

        logger.info(f"[{session_id}] telemetry stream started (interval={stream.poll_interval}s)")
        return True

    async def stop(self, session_id: str) -> bool:
        """Stop polling a session and wait for its loop to exit.

        The stream stays registered until the loop has exited, so a
        concurrent stop() waits on the same task and also returns only
        once no further sample can be published.

        Returns:
            True if this call stopped a running stream, False otherwise
        """
        async with self._lock:
            stream = self._streams.get(session_id)
            if stream is None:
                return False
            requested = stream.running
            stream.stop_requested.set()

        await self._join(stream)
        await self._forget(stream)

        if requested:
            logger.info(f"[{session_id}] telemetry stream stopped ({stream.published} samples published)")
        return requested

    async def stop_all(self) -> None:
        async with self._lock:
            streams = list(self._streams.values())
            for stream in streams:
                stream.stop_requested.set()

        await asyncio.gather(*(self._join(stream) for stream in streams))
        for stream in streams:
            await self._forget(stream)

    async def _join(self, stream: StreamState) -> None:
        if stream.task is None:
            return
        await asyncio.wait({stream.task})
        if not stream.task.cancelled() and stream.task.exception() is not None:
            logger.error(
                f"[{stream.session_id}] telemetry stream exited with error",
                exc_info=stream.task.exception(),
            )

    async def _forget(self, stream: StreamState) -> None:
        async with self._lock:
            if self._streams.get(stream.session_id) is stream:
                del self._streams[stream.session_id]

    async def _poll_loop(
        self,
        stream: StreamState,
        publish_fn: PublishFn,
        device_id: Optional[str],
    ) -> None:
        session_id = stream.session_id
        while stream.running:
            try:
                sample = await self.sampler.sample(session_id, device_id)
            except FleetError as e:
                stream.failures += 1
                logger.debug(f"[{session_id}] sample skipped: {e}")
            except Exception:
                stream.failures += 1
                logger.exception(f"[{session_id}] unexpected error while sampling")
            else:
                await self._publish(stream, publish_fn, sample)

            try:
                await asyncio.wait_for(stream.stop_requested.wait(), timeout=stream.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _publish(self, stream: StreamState, publish_fn: PublishFn, sample: TelemetrySample) -> None:
        try:
            result = publish_fn(sample)
            if inspect.isawaitable(result):
                await result
            stream.published += 1
        except Exception as e:
            logger.warning(f"[{stream.session_id}] failed to publish sample: {e}")
