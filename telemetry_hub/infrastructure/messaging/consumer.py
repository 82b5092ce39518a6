"""
Consumer-group machinery for the Redis Streams backbone.

Each assigned partition gets one PartitionWorker: a fetch task fills a
bounded queue from XREADGROUP and a dispatch task runs the handler one
message at a time. A message is acknowledged (its offset committed) only
when the handler outcome is ``ok``; failed messages stay in the pending
entries list and are replayed the next time the worker starts.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from ..retry import backoff_delay

logger = logging.getLogger(__name__)


@dataclass
class BackboneMessage:
    """A message delivered to a subscription handler."""
    topic: str
    partition: int
    offset: str  # stream entry id
    value: Any
    key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_entry(
        cls,
        topic: str,
        partition: int,
        entry_id: str,
        fields: Dict[str, str],
    ) -> "BackboneMessage":
        """Create from a raw stream entry."""
        # Entry ids are "<ms>-<seq>"
        ts_ms = int(entry_id.split('-')[0])

        return cls(
            topic=topic,
            partition=partition,
            offset=entry_id,
            value=json.loads(fields.get('value', 'null')),
            key=fields.get('key') or None,
            headers=json.loads(fields.get('headers', '{}')),
            message_id=fields.get('mid'),
            timestamp=datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc),
        )


MessageHandler = Callable[[BackboneMessage], Awaitable[Any]]


class OutcomeStatus(str, Enum):
    """Result of running a handler on one message."""
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class HandlerOutcome:
    """
    Handler result as a value, so the commit decision is explicit.
    """
    status: OutcomeStatus
    attempts: int = 1
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @classmethod
    def success(cls, attempts: int = 1) -> "HandlerOutcome":
        return cls(OutcomeStatus.OK, attempts)

    @classmethod
    def failure(cls, error: BaseException, attempts: int = 1) -> "HandlerOutcome":
        return cls(OutcomeStatus.FAILED, attempts, error)


@dataclass
class RedeliveryPolicy:
    """
    In-process redelivery on handler failure.

    The default of a single attempt logs the failure and moves on, leaving
    the message unacknowledged until the next restart.
    """
    max_attempts: int = 1
    backoff: float = 0.5
    max_backoff: float = 10.0

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff, self.max_backoff)


async def run_handler(
    handler: MessageHandler,
    message: BackboneMessage,
    policy: RedeliveryPolicy,
) -> HandlerOutcome:
    """Invoke handler under the redelivery policy and report the outcome."""
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            await handler(message)
            return HandlerOutcome.success(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                f"Handler failed for {message.topic}[{message.partition}] "
                f"offset {message.offset} (attempt {attempt}/{attempts}): {e}"
            )
            if attempt >= attempts:
                return HandlerOutcome.failure(e, attempt)
            await asyncio.sleep(policy.delay(attempt))

    raise RuntimeError("unreachable")


class PartitionWorker:
    """
    Sequential consumer for one partition stream within one group.
    """

    def __init__(
        self,
        client: redis.Redis,
        group_id: str,
        consumer_name: str,
        topic: str,
        partition: int,
        stream: str,
        handler: MessageHandler,
        policy: RedeliveryPolicy,
        batch_size: int = 10,
        block_ms: int = 1000,
        queue_size: int = 100,
    ):
        self._client = client
        self.group_id = group_id
        self.consumer_name = consumer_name
        self.topic = topic
        self.partition = partition
        self.stream = stream
        self._handler = handler
        self._policy = policy
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

        self._fetch_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._in_flight = False
        self._replay_from = '0'  # resumes here if replay is interrupted

        # Stats
        self.committed = 0
        self.failed = 0
        self.replayed = 0
        self.ack_errors = 0
        self.undecodable = 0

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def ensure_group(self, start_id: str = '$') -> None:
        """Create the consumer group if it doesn't exist."""
        try:
            await self._client.xgroup_create(
                self.stream,
                self.group_id,
                id=start_id,
                mkstream=True
            )
        except ResponseError as e:
            if 'BUSYGROUP' not in str(e):
                raise

    def start(self) -> None:
        """Start the fetch and dispatch tasks."""
        self._stopping = False
        self._replay_from = '0'
        name = f"{self.group_id}:{self.stream}"
        self._fetch_task = asyncio.create_task(self._fetch_loop(), name=f"fetch_{name}")
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name=f"dispatch_{name}")

    async def stop(self) -> None:
        """
        Stop consuming.

        The fetch task is cancelled immediately. A handler that is running
        is allowed to finish (and commit); queued messages that were not
        started stay pending and are replayed on the next start.
        """
        self._stopping = True

        if self._fetch_task and not self._fetch_task.done():
            self._fetch_task.cancel()
            try:
                await self._fetch_task
            except asyncio.CancelledError:
                pass

        if self._dispatch_task and not self._dispatch_task.done():
            if not self._in_flight:
                self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass

    async def _read(self, last_id: str, block: Optional[int]) -> List[BackboneMessage]:
        response = await self._client.xreadgroup(
            self.group_id,
            self.consumer_name,
            {self.stream: last_id},
            count=self._batch_size,
            block=block,
        )

        messages = []
        if response:
            for _stream_name, entries in response:
                for entry_id, fields in entries:
                    if not fields:  # Skip trimmed entries still in the PEL
                        continue
                    message = self._decode(entry_id, fields)
                    if message is not None:
                        messages.append(message)
        return messages

    def _decode(self, entry_id: str, fields: Dict[str, str]) -> Optional[BackboneMessage]:
        """Decode one entry; undecodable entries are logged and left pending."""
        try:
            return BackboneMessage.from_entry(self.topic, self.partition, entry_id, fields)
        except (ValueError, TypeError) as e:
            self.undecodable += 1
            logger.error(f"Skipping undecodable entry {entry_id} on {self.stream} for group {self.group_id}: {e}")
            return None

    async def _replay_pending(self) -> None:
        """Queue messages delivered to this consumer earlier but never acknowledged."""
        while not self._stopping:
            response = await self._client.xreadgroup(
                self.group_id,
                self.consumer_name,
                {self.stream: self._replay_from},
                count=self._batch_size,
            )
            entries = response[0][1] if response else []
            if not entries:
                break

            for entry_id, fields in entries:
                self._replay_from = entry_id
                if not fields:
                    continue
                message = self._decode(entry_id, fields)
                if message is None:
                    continue
                self.replayed += 1
                await self._queue.put(message)

    async def _fetch_loop(self) -> None:
        try:
            while not self._stopping:
                try:
                    await self._replay_pending()
                    break
                except RedisError as e:
                    logger.error(f"Error replaying pending entries on {self.stream} for group {self.group_id}: {e}")
                    await asyncio.sleep(1)

            while not self._stopping:
                try:
                    messages = await self._read('>', self._block_ms)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error reading {self.stream} for group {self.group_id}: {e}")
                    await asyncio.sleep(1)
                    continue

                for message in messages:
                    await self._queue.put(message)
        except asyncio.CancelledError:
            logger.debug(f"Fetch loop cancelled for {self.stream} ({self.group_id})")
            raise

    async def _dispatch_loop(self) -> None:
        while not self._stopping:
            message = await self._queue.get()
            self._in_flight = True
            try:
                outcome = await run_handler(self._handler, message, self._policy)
                await self._settle(message, outcome)
            finally:
                self._in_flight = False
                self._queue.task_done()

    async def _settle(self, message: BackboneMessage, outcome: HandlerOutcome) -> None:
        if outcome.ok:
            try:
                await self._client.xack(self.stream, self.group_id, message.offset)
            except RedisError as e:
                # Entry stays pending and is replayed on the next start
                self.ack_errors += 1
                logger.error(f"Failed to acknowledge {self.stream} offset {message.offset} for group {self.group_id}: {e}")
                return
            self.committed += 1
            return

        self.failed += 1
        logger.error(
            f"Skipping {message.topic}[{message.partition}] offset {message.offset} "
            f"for group {self.group_id} after {outcome.attempts} attempt(s); "
            f"left unacknowledged: {outcome.error}"
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "stream": self.stream,
            "running": self.is_running,
            "committed": self.committed,
            "failed": self.failed,
            "replayed": self.replayed,
            "ack_errors": self.ack_errors,
            "undecodable": self.undecodable,
            "queued": self._queue.qsize(),
        }


class ConsumerGroup:
    """
    A subscription: one group id, its topics and the partition workers
    assigned to this instance.
    """

    def __init__(self, group_id: str, topics: List[str], workers: List[PartitionWorker]):
        self.group_id = group_id
        self.topics = topics
        self.workers = workers

    def start(self) -> None:
        for worker in self.workers:
            worker.start()

    async def stop(self) -> None:
        """Stop all partition workers, letting in-flight handlers finish."""
        await asyncio.gather(*(worker.stop() for worker in self.workers))
        logger.info(f"Consumer group {self.group_id} stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "topics": self.topics,
            "partitions": [worker.get_stats() for worker in self.workers],
        }
