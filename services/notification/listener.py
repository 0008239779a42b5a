"""
services/notification/listener.py
Change-feed subscriber for the staff fan-out.

One ingest loop reads the Redis change stream (consumer group, XREADGROUP
BLOCK) and offers each event to a bounded queue without waiting. When the
queue is full the event is dropped and counted, so a slow push gateway can
never stall ingestion. A fixed pool of workers drains the queue into the
dispatcher and acknowledges each entry once handled.

Entries that were read but never acknowledged are not lost. On start the
consumer replays its own pending entries, and entries left idle by any
consumer for FANOUT_CLAIM_IDLE_MS are claimed with XAUTOCLAIM, at start and
periodically after. The consumer name is stable (FANOUT_CONSUMER_NAME, or
the hostname) so a restarted process finds its own backlog.

Runs inside the API lifespan when FANOUT_ENABLED is set, or standalone:
    python -m services.notification.listener
"""

import asyncio
import logging
import signal
import socket
from typing import AsyncIterator, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from prometheus_client import Counter
from redis.exceptions import ResponseError

from config.settings import settings
from services.notification.dispatcher import NotificationDispatcher, event_from_change
from shared.events.change_feed import ChangeEvent

logger = logging.getLogger(__name__)

EVENTS_DROPPED = Counter(
    "fanout_events_dropped_total", "Change events dropped because the dispatch queue was full"
)
EVENTS_RECEIVED = Counter("fanout_events_received_total", "Change events read from the stream")
EVENTS_RECOVERED = Counter(
    "fanout_events_recovered_total",
    "Unacknowledged change events picked up again",
    ["source"],
)

GROUP_NAME = "fanout"
READ_COUNT = 100


class ChangeFeedListener:

    def __init__(
        self,
        redis: aioredis.Redis,
        dispatcher: NotificationDispatcher,
        *,
        stream_key: str = settings.FANOUT_STREAM_KEY,
        queue_size: int = settings.FANOUT_QUEUE_SIZE,
        workers: int = settings.FANOUT_WORKERS,
        block_ms: int = settings.FANOUT_BLOCK_MS,
        claim_idle_ms: int = settings.FANOUT_CLAIM_IDLE_MS,
        consumer_name: Optional[str] = None,
    ):
        self.redis = redis
        self.dispatcher = dispatcher
        self.stream_key = stream_key
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.worker_count = workers
        self.consumer_name = consumer_name or settings.FANOUT_CONSUMER_NAME or socket.gethostname()
        self.queue: asyncio.Queue[Tuple[str, ChangeEvent]] = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        # Entry ids queued or being handled by this process
        self.in_flight: Set[str] = set()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    # ── Ingestion ─────────────────────────────────────────────

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream_key, GROUP_NAME, id="$", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def read(self, last_id: str, block: Optional[int] = None) -> list:
        response = await self.redis.xreadgroup(
            GROUP_NAME,
            self.consumer_name,
            {self.stream_key: last_id},
            count=READ_COUNT,
            block=block,
        )
        return [entry for _stream, entries in response or [] for entry in entries]

    async def own_backlog(self) -> list:
        """Entries delivered to this consumer name before a restart, never acknowledged."""
        backlog: list = []
        last_id = "0"
        while True:
            entries = await self.read(last_id)
            if not entries:
                return backlog
            backlog += entries
            last_id = entries[-1][0]

    async def claim_idle(self) -> list:
        """Take over entries any consumer has held unacknowledged for claim_idle_ms."""
        claimed: list = []
        start_id = "0-0"
        while True:
            response = await self.redis.xautoclaim(
                self.stream_key,
                GROUP_NAME,
                self.consumer_name,
                self.claim_idle_ms,
                start_id=start_id,
                count=READ_COUNT,
            )
            start_id, entries = response[0], response[1]
            # Trimmed entries come back without an id on older servers
            claimed += [e for e in entries if e[0] is not None and e[0] not in self.in_flight]
            if start_id in ("0-0", b"0-0") or not entries:
                return claimed

    async def decode(self, entries: list) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        """Malformed entries are acknowledged and skipped."""
        for entry_id, fields in entries:
            try:
                change = ChangeEvent.from_fields(fields or {})
            except (KeyError, ValueError):
                logger.warning("Skipping malformed change entry %s", entry_id)
                await self.ack(entry_id)
                continue
            EVENTS_RECEIVED.inc()
            yield entry_id, change

    async def recover(self) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        backlog = await self.own_backlog()
        claimed = await self.claim_idle()
        if backlog or claimed:
            EVENTS_RECOVERED.labels(source="backlog").inc(len(backlog))
            EVENTS_RECOVERED.labels(source="claimed").inc(len(claimed))
            logger.info(
                "Recovered %d own and %d idle change entries as %s",
                len(backlog), len(claimed), self.consumer_name,
            )
        async for item in self.decode(backlog + claimed):
            yield item

    async def events(self) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        """Yield (entry_id, event): first anything left unacknowledged, then new entries."""
        loop = asyncio.get_running_loop()
        async for item in self.recover():
            yield item

        last_claim = loop.time()
        while self._running:
            if (loop.time() - last_claim) * 1000 >= self.claim_idle_ms:
                last_claim = loop.time()
                claimed = await self.claim_idle()
                if claimed:
                    EVENTS_RECOVERED.labels(source="claimed").inc(len(claimed))
                    logger.info("Claimed %d idle change entries", len(claimed))
                async for item in self.decode(claimed):
                    yield item

            async for item in self.decode(await self.read(">", self.block_ms)):
                yield item

    def offer(self, entry_id: str, change: ChangeEvent) -> bool:
        """Enqueue without waiting. Returns False when the event had to be dropped."""
        if entry_id in self.in_flight:
            return True
        try:
            self.queue.put_nowait((entry_id, change))
        except asyncio.QueueFull:
            self.dropped += 1
            EVENTS_DROPPED.inc()
            logger.warning(
                "Dispatch queue full; dropped %s %s (%d dropped so far)",
                change.kind, change.row_id, self.dropped,
            )
            return False
        self.in_flight.add(entry_id)
        return True

    async def ingest(self) -> None:
        while self._running:
            try:
                async for entry_id, change in self.events():
                    if not self.offer(entry_id, change):
                        await self.ack(entry_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Change stream read failed; retrying")
                await asyncio.sleep(1)

    async def ack(self, entry_id: str) -> None:
        try:
            await self.redis.xack(self.stream_key, GROUP_NAME, entry_id)
        except Exception:
            logger.exception("XACK failed for %s", entry_id)

    # ── Dispatch ──────────────────────────────────────────────

    async def handle(self, change: ChangeEvent) -> None:
        event = event_from_change(change)
        if event is not None:
            await self.dispatcher.dispatch(event)

    async def worker(self, number: int) -> None:
        while True:
            entry_id, change = await self.queue.get()
            try:
                await self.handle(change)
            except Exception:
                logger.exception("Worker %d failed on %s %s", number, change.kind, change.row_id)
            finally:
                await self.ack(entry_id)
                self.in_flight.discard(entry_id)
                self.queue.task_done()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self.ensure_group()
        self._running = True
        self._tasks = [asyncio.create_task(self.ingest(), name="fanout-ingest")]
        self._tasks += [
            asyncio.create_task(self.worker(n), name=f"fanout-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(
            "Change feed listener %s started on %s with %d workers",
            self.consumer_name, self.stream_key, self.worker_count,
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Change feed listener stopped (%d events dropped)", self.dropped)


async def run_standalone() -> None:
    from config.database import close_db
    from config.redis_client import close_redis, get_redis, init_redis

    await init_redis()
    listener = ChangeFeedListener(get_redis(), NotificationDispatcher())
    await listener.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await stop.wait()
    await listener.stop()
    await close_redis()
    await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_standalone())
