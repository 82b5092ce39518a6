"""
Redis Streams message backbone for Telemetry Hub.

Topics are split into a fixed number of partitions, each stored as its own
stream (``{prefix}:{topic}:{partition}``). The topic set lives in a registry
hash so provisioning is idempotent across processes. Consumer groups map onto
Redis consumer groups, with XACK as the offset commit.
"""
import asyncio
import itertools
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ...config import AppSettings, get_settings
from ...domain.exceptions import BackboneConnectionError, PublishError, TopicNotFound
from ..retry import retry_with_backoff
from .consumer import ConsumerGroup, MessageHandler, PartitionWorker, RedeliveryPolicy
from .topics import TopicDefinition, partition_for_key

logger = logging.getLogger(__name__)

# Errors worth retrying a publish for; the same message ids are reused
TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, WatchError)


@dataclass(frozen=True)
class PublishResult:
    """Where a published message landed."""
    topic: str
    partition: int
    message_id: str
    offset: Optional[str] = None  # None when the message was a duplicate
    duplicate: bool = False


@dataclass
class _PreparedMessage:
    stream: str
    partition: int
    message_id: str
    dedup_key: str
    fields: Dict[str, str]


class MessageBackbone:
    """
    Topic-based publish/subscribe over Redis Streams.

    One instance is created at process start and shared by reference; the
    client is opened by ``connect()`` (or lazily by the first publish) and
    released by ``disconnect_all()``.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        client_factory: Optional[Callable[[], redis.Redis]] = None,
    ):
        self._settings = settings or get_settings()
        self._config = self._settings.backbone
        self._client_factory = client_factory or self._default_client
        self._client: Optional[redis.Redis] = None
        self._connect_lock = asyncio.Lock()
        self._topics: Dict[str, int] = {}
        self._round_robin: Dict[str, Iterator[int]] = {}
        self._groups: List[ConsumerGroup] = []

    def _default_client(self) -> redis.Redis:
        return redis.from_url(
            self._settings.redis.url,
            encoding='utf-8',
            decode_responses=True,
            socket_timeout=self._settings.redis.socket_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def registry_key(self) -> str:
        return f"{self._config.key_prefix}:topics"

    def stream_name(self, topic: str, partition: int) -> str:
        return f"{self._config.key_prefix}:{topic}:{partition}"

    def _dedup_key(self, message_id: str) -> str:
        return f"{self._config.key_prefix}:dedup:{message_id}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> redis.Redis:
        """
        Open the shared client.

        Safe to call concurrently: only the first caller creates a client,
        the others wait on the lock and reuse it.

        Raises:
            BackboneConnectionError: If Redis stays unreachable after retries
        """
        if self._client is not None:
            return self._client

        async with self._connect_lock:
            if self._client is None:
                client = self._client_factory()
                try:
                    await retry_with_backoff(
                        client.ping,
                        attempts=self._config.publish_retries,
                        base_delay=self._config.publish_retry_delay,
                        max_delay=self._config.publish_max_retry_delay,
                        retry_on=(RedisConnectionError, RedisTimeoutError),
                        description="Backbone connect",
                    )
                except RedisError as e:
                    await client.aclose()
                    raise BackboneConnectionError(f"Cannot reach Redis backbone: {e}") from e

                self._client = client
                logger.info(f"Backbone connected (client_id={self._config.client_id})")

        return self._client

    async def disconnect_all(self) -> None:
        """
        Stop every consumer group and close the client.

        Fetchers stop immediately; handlers already running are awaited so
        their messages are committed before the connection goes away.
        """
        groups, self._groups = self._groups, []
        if groups:
            await asyncio.gather(*(group.stop() for group in groups))

        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._topics.clear()
            logger.info("Backbone disconnected")

    # =========================================================================
    # Topics
    # =========================================================================

    async def provision_topics(self, definitions: Iterable[TopicDefinition]) -> List[str]:
        """
        Create topics that don't exist yet.

        Existing topics keep their partition count and replication factor,
        even if the given definition differs.

        Returns:
            Names of the topics created by this call
        """
        client = await self.connect()
        created = []

        for definition in definitions:
            descriptor = json.dumps({
                'partitions': definition.partitions,
                'replication_factor': definition.replication_factor,
            })
            if await client.hsetnx(self.registry_key, definition.name, descriptor):
                created.append(definition.name)
                self._topics[definition.name] = definition.partitions
            else:
                existing = await self._partition_count(definition.name)
                if existing != definition.partitions:
                    logger.warning(
                        f"Topic {definition.name} already has {existing} partitions; "
                        f"ignoring requested {definition.partitions}"
                    )

        if created:
            logger.info(f"Provisioned {len(created)} topic(s): {', '.join(created)}")
        return created

    async def list_topics(self) -> Dict[str, int]:
        """Registered topics and their partition counts."""
        client = await self.connect()
        raw = await client.hgetall(self.registry_key)
        return {name: json.loads(descriptor)['partitions'] for name, descriptor in raw.items()}

    async def _partition_count(self, topic: str) -> int:
        if topic in self._topics:
            return self._topics[topic]

        client = await self.connect()
        descriptor = await client.hget(self.registry_key, topic)
        if descriptor is None:
            raise TopicNotFound(topic)

        partitions = json.loads(descriptor)['partitions']
        self._topics[topic] = partitions
        return partitions

    async def topic_info(self, topic: str) -> Dict[str, Any]:
        """Per-partition length and consumer group lag for a topic."""
        client = await self.connect()
        partitions = await self._partition_count(topic)

        info = []
        for partition in range(partitions):
            stream = self.stream_name(topic, partition)
            length = await client.xlen(stream)
            try:
                groups = await client.xinfo_groups(stream)
            except ResponseError:
                groups = []  # Stream not created yet
            info.append({
                'partition': partition,
                'length': length,
                'groups': [
                    {'name': g['name'], 'pending': g['pending'], 'consumers': g['consumers']}
                    for g in groups
                ],
            })

        return {'topic': topic, 'partitions': info}

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        topic: str,
        value: Any,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        message_id: Optional[str] = None,
    ) -> PublishResult:
        """
        Publish one message.

        Args:
            topic: Provisioned topic name
            value: JSON-serializable payload
            key: Partition key; messages without one are spread round-robin
            headers: Optional string headers
            message_id: Producer id used for deduplication (generated if omitted)

        Returns:
            PublishResult for the message

        Raises:
            PublishError: If the topic is unknown or the backbone is unreachable
        """
        results = await self.publish_batch(topic, [{
            'key': key,
            'value': value,
            'headers': headers,
            'message_id': message_id,
        }])
        return results[0]

    async def publish_batch(self, topic: str, messages: List[Dict[str, Any]]) -> List[PublishResult]:
        """
        Publish several messages to one topic in a single transaction.

        Each message is a dict with ``value`` and optional ``key``,
        ``headers`` and ``message_id``. A message whose id was already
        written inside the dedup window is reported as a duplicate instead of
        being appended again.
        """
        if not messages:
            return []

        try:
            client = await self.connect()
            partitions = await self._partition_count(topic)
        except TopicNotFound as e:
            raise PublishError(topic, f"Topic '{topic}' is not provisioned") from e
        except (BackboneConnectionError, RedisError) as e:
            raise PublishError(topic, f"Backbone unavailable: {e}") from e

        prepared = [self._prepare(topic, partitions, message) for message in messages]

        try:
            return await retry_with_backoff(
                lambda: self._write(client, topic, prepared),
                attempts=self._config.publish_retries,
                base_delay=self._config.publish_retry_delay,
                max_delay=self._config.publish_max_retry_delay,
                retry_on=TRANSIENT_ERRORS,
                description=f"Publish to {topic}",
            )
        except RedisError as e:
            raise PublishError(topic, f"Failed to publish {len(prepared)} message(s) to {topic}: {e}") from e

    def _select_partition(self, topic: str, key: Optional[str], partitions: int) -> int:
        if key is not None:
            return partition_for_key(key, partitions)

        counter = self._round_robin.setdefault(topic, itertools.count())
        return next(counter) % partitions

    def _prepare(self, topic: str, partitions: int, message: Dict[str, Any]) -> _PreparedMessage:
        key = message.get('key')
        if key is not None:
            key = str(key)
        message_id = message.get('message_id') or f"{self._config.client_id}-{uuid.uuid4().hex}"
        partition = self._select_partition(topic, key, partitions)

        fields = {
            'key': key or '',
            'value': json.dumps(message.get('value'), default=str),
            'headers': json.dumps(message.get('headers') or {}),
            'mid': message_id,
            'ts': str(int(time.time() * 1000)),
        }

        return _PreparedMessage(
            stream=self.stream_name(topic, partition),
            partition=partition,
            message_id=message_id,
            dedup_key=self._dedup_key(message_id),
            fields=fields,
        )

    async def _write(
        self,
        client: redis.Redis,
        topic: str,
        prepared: List[_PreparedMessage],
    ) -> List[PublishResult]:
        """One attempt: check dedup markers, then append and mark atomically."""
        async with client.pipeline(transaction=True) as pipe:
            dedup_keys = [p.dedup_key for p in prepared]
            await pipe.watch(*dedup_keys)
            markers = await pipe.mget(dedup_keys)

            fresh: List[_PreparedMessage] = []
            seen = set()
            for message, marker in zip(prepared, markers):
                if marker is None and message.message_id not in seen:
                    fresh.append(message)
                seen.add(message.message_id)

            offsets: Dict[int, str] = {}
            if fresh:
                pipe.multi()
                for message in fresh:
                    pipe.xadd(
                        message.stream,
                        message.fields,
                        maxlen=self._config.stream_max_len,
                        approximate=True,
                    )
                    pipe.set(message.dedup_key, message.partition, ex=self._config.dedup_ttl_seconds)
                replies = await pipe.execute()

                for message, entry_id in zip(fresh, replies[0::2]):
                    offsets[id(message)] = entry_id

        results = []
        for message in prepared:
            offset = offsets.get(id(message))
            if offset is None:
                logger.debug(f"Skipping duplicate message {message.message_id} on {topic}")
            results.append(PublishResult(
                topic=topic,
                partition=message.partition,
                message_id=message.message_id,
                offset=offset,
                duplicate=offset is None,
            ))
        return results

    # =========================================================================
    # Subscribing
    # =========================================================================

    async def subscribe(
        self,
        group_id: str,
        topics: List[str],
        handler: MessageHandler,
        redelivery: Optional[RedeliveryPolicy] = None,
        from_beginning: bool = False,
    ) -> ConsumerGroup:
        """
        Join a consumer group and start consuming the assigned partitions.

        Partitions are assigned statically: this instance takes every
        partition ``p`` with ``p % member_count == member_index``. Messages
        within a partition are handled one at a time; partitions run
        concurrently.

        Args:
            group_id: Consumer group name
            topics: Provisioned topics to consume
            handler: Async callable invoked with each BackboneMessage
            redelivery: In-process retry policy for handler failures
            from_beginning: Start a new group at the oldest entry instead of new ones

        Raises:
            TopicNotFound: If a topic is not provisioned
        """
        client = await self.connect()
        policy = redelivery or RedeliveryPolicy()
        member_count = max(1, self._config.member_count)
        start_id = '0' if from_beginning else '$'

        workers = []
        for topic in topics:
            partitions = await self._partition_count(topic)
            for partition in range(partitions):
                if partition % member_count != self._config.member_index:
                    continue
                worker = PartitionWorker(
                    client=client,
                    group_id=group_id,
                    consumer_name=self._config.consumer_name,
                    topic=topic,
                    partition=partition,
                    stream=self.stream_name(topic, partition),
                    handler=handler,
                    policy=policy,
                    batch_size=self._config.batch_size,
                    block_ms=self._config.block_ms,
                    queue_size=self._config.queue_size,
                )
                await worker.ensure_group(start_id)
                workers.append(worker)

        group = ConsumerGroup(group_id, list(topics), workers)
        group.start()
        self._groups.append(group)

        logger.info(
            f"Consumer group {group_id} subscribed to {', '.join(topics)} "
            f"({len(workers)} partition(s) as {self._config.consumer_name})"
        )
        return group

    # =========================================================================
    # Health
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Report broker reachability and consumer group state."""
        if self._client is None:
            return {'status': 'disconnected', 'groups': []}

        try:
            await self._client.ping()
            status = 'healthy'
        except RedisError as e:
            logger.warning(f"Backbone health check failed: {e}")
            status = 'unhealthy'

        return {
            'status': status,
            'groups': [group.get_stats() for group in self._groups],
        }
