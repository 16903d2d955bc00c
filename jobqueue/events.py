"""
Cross-process event relay.

Every transition script publishes an envelope on `<prefix>:events`. Each
queue lazily subscribes to that topic on a dedicated connection and relays
what it receives to the local Job handles it tracks and to the queue's
activity feed ("job complete", "job progress", ...).

Delivery is at-most-once per connected subscriber; messages published while
a process is not subscribed are not replayed.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobqueue.constants import QUEUE_EVENT_PREFIX, TERMINAL_EVENTS
from jobqueue.exceptions import MalformedMessage, StoreUnavailable
from jobqueue.observability.metrics import get_metrics
from jobqueue.store.connection import ClientFactory, close_client
from jobqueue.types.events import EventEnvelope

if TYPE_CHECKING:
    from jobqueue.job import Job
    from jobqueue.queue import Queue

logger = logging.getLogger(__name__)

EnvelopeListener = Callable[[EventEnvelope], Any]

# Seconds the receive loop waits for a message before re-checking shutdown
RECEIVE_TIMEOUT = 1.0
RECONNECT_DELAY = 1.0


class JobRegistry:
    """In-process job handles that want live updates, keyed by job id."""

    def __init__(self) -> None:
        self._jobs: dict[int, list["Job"]] = {}

    def add(self, job: "Job") -> None:
        if job.id is None:
            return
        handles = self._jobs.setdefault(job.id, [])
        if not any(h is job for h in handles):
            handles.append(job)

    def get(self, job_id: int) -> list["Job"]:
        return list(self._jobs.get(job_id, []))

    def discard(self, job_id: int) -> None:
        self._jobs.pop(job_id, None)

    def clear(self) -> None:
        self._jobs.clear()

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


class Subscription:
    """Cancellable handle for an envelope listener registered on the bus."""

    def __init__(
        self,
        bus: "EventBus",
        listener: EnvelopeListener,
        events: frozenset[str] | None,
    ):
        self._bus = bus
        self._listener = listener
        self._events = events
        self.active = True

    def matches(self, envelope: EventEnvelope) -> bool:
        return self._events is None or envelope.event in self._events

    def deliver(self, envelope: EventEnvelope) -> None:
        if not (self.active and self.matches(envelope)):
            return
        try:
            result = self._listener(envelope)
        except Exception:
            logger.exception(
                "Event subscriber raised",
                extra={"job_id": envelope.id, "event": envelope.event}
            )
            return
        if asyncio.iscoroutine(result):
            self._bus._spawn(result)

    def cancel(self) -> None:
        self.active = False
        self._bus._unsubscribe(self)


class EventBus:
    """
    Publish/subscribe relay for job mutations.

    Features:
    - Lazy subscribe channel on its own connection
    - Registry of local Job handles receiving relayed events
    - Queue-level activity feed for every job event
    """

    def __init__(self, queue: "Queue", client_factory: ClientFactory):
        """
        Initialize the bus.

        Args:
            queue: The owning queue (activity feed and error channel).
            client_factory: Creates the dedicated subscribe client.
        """
        self.queue = queue
        self.key = queue.keys.events
        self.registry = JobRegistry()

        self._client_factory = client_factory
        self._client: Redis | None = None
        self._pubsub: PubSub | None = None
        self._task: asyncio.Task | None = None
        self._connecting: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._subscriptions: list[Subscription] = []
        self._spawned: set[asyncio.Task] = set()

    @property
    def subscribed(self) -> bool:
        return self._task is not None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, job_id: int, event: str, *args: Any) -> int:
        """
        Publish an envelope outside of a transition script.

        Returns:
            Number of subscribers that received it.
        """
        message = EventEnvelope.build(job_id, event, *args).encode()
        try:
            return int(await self.queue.client.publish(self.key, message))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def track(self, job: "Job") -> None:
        """Relay future events of `job` to this handle, subscribing if needed."""
        self.registry.add(job)
        await self.connect()

    def untrack(self, job_id: int) -> None:
        self.registry.discard(job_id)

    def subscribe(
        self,
        listener: EnvelopeListener,
        events: str | Iterable[str] | None = None,
    ) -> Subscription:
        """
        Register `listener` for envelopes, optionally filtered by event name.

        Opens the subscribe channel in the background if it is not open yet.
        """
        if isinstance(events, str):
            events = [events]
        subscription = Subscription(
            self, listener, frozenset(events) if events is not None else None
        )
        self._subscriptions.append(subscription)
        self.ensure_connected()
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def ensure_connected(self) -> None:
        """Schedule connect() from synchronous code; no-op without a running loop."""
        if self.subscribed or (self._connecting and not self._connecting.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._connecting = loop.create_task(self.connect())
        self._connecting.add_done_callback(self._connect_done)

    def _connect_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.queue.emit_error(task.exception())

    async def connect(self) -> None:
        """Open the subscribe channel and start the receive loop (idempotent)."""
        async with self._lock:
            if self.subscribed:
                return
            client = self._client_factory()
            pubsub = client.pubsub()
            try:
                await pubsub.subscribe(self.key)
            except (RedisConnectionError, RedisTimeoutError) as e:
                await pubsub.aclose()
                await close_client(client)
                raise StoreUnavailable(str(e)) from e

            self._client = client
            self._pubsub = pubsub
            self._task = asyncio.create_task(self._receive_loop())
            logger.info("Subscribed to queue events", extra={"channel": self.key})

    async def _receive_loop(self) -> None:
        assert self._pubsub is not None
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=RECEIVE_TIMEOUT
                )
            except (RedisConnectionError, RedisTimeoutError) as e:
                logger.error(f"Event subscription lost: {e}")
                self.queue.emit_error(StoreUnavailable(str(e)))
                await asyncio.sleep(RECONNECT_DELAY)
                continue

            if message is None or message.get("type") != "message":
                continue
            try:
                self.handle_message(message["data"])
            except Exception as e:
                logger.exception(f"Error relaying event message: {e}")
                self.queue.emit_error(e)

    def handle_message(self, raw: str | bytes) -> None:
        """
        Relay one received message.

        Undecodable messages are logged and dropped. A message a local handle
        cannot apply is dropped for that handle only.
        """
        try:
            envelope = EventEnvelope.decode(raw)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed event message: {e}")
            get_metrics().record_event_dropped()
            return

        handles = self.registry.get(envelope.id)
        if handles:
            # Terminal events end tracking; progress and other events keep it
            if envelope.event in TERMINAL_EVENTS:
                self.registry.discard(envelope.id)
            for job in handles:
                try:
                    job.emit(envelope.event, *envelope.args)
                except (TypeError, ValueError) as e:
                    logger.warning(
                        f"Dropping event a job handle could not apply: {e}",
                        extra={"job_id": envelope.id, "event": envelope.event}
                    )
                    get_metrics().record_event_dropped()

        for subscription in list(self._subscriptions):
            subscription.deliver(envelope)

        self.queue.emit(QUEUE_EVENT_PREFIX + envelope.event, *envelope.args, envelope.id)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._spawned.add(task)
        task.add_done_callback(self._spawned.discard)

    async def close(self) -> None:
        """Stop the receive loop, drop the subscribe connection and clear the registry."""
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        self._connecting = None

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.key)
            except (RedisConnectionError, RedisTimeoutError):
                logger.warning("Could not unsubscribe cleanly", extra={"channel": self.key})
            await self._pubsub.aclose()
            self._pubsub = None

        if self._client is not None:
            await close_client(self._client)
            self._client = None

        self._subscriptions.clear()
        self.registry.clear()
        logger.info("Event bus closed", extra={"channel": self.key})
