"""
Deferred processing of webhook deliveries.

An envelope moves through ``enqueued -> in-flight -> acknowledged |
requeued | dead-lettered``. Brokers keep in-flight envelopes apart from
pending ones until they are acknowledged, so a crashed consumer does not
lose work: RedisBroker moves anything left in its processing list back to
pending when it connects.

Two brokers are provided:
- RedisBroker: durable, shared by every process pointing at the same Redis
- MemoryBroker: single process, used when no Redis is configured
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from crm_bridge.errors import DownstreamTimeout
from crm_bridge.metrics import record_queue_outcome
from crm_bridge.retry import RetryPolicy
from crm_bridge.storage import utc_now_iso

logger = logging.getLogger(__name__)


class QueueEnvelope(BaseModel):
    """A unit of deferred work, in the wire shape stored by the broker."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    eventKind: str
    instanceName: str
    data: Any = None
    enqueuedAt: str = Field(default_factory=utc_now_iso)
    retryCount: int = Field(default=0, ge=0)


class DeadLetterRecord(QueueEnvelope):
    """The original envelope plus why and when it was given up on."""
    error: str
    deadLetteredAt: str = Field(default_factory=utc_now_iso)


@dataclass
class Delivery:
    """A reserved envelope and the broker receipt needed to settle it."""
    envelope: QueueEnvelope
    receipt: str


class QueueBroker(ABC):
    name: str = "broker"

    async def connect(self) -> None:
        """Verify connectivity; raise when the broker is unreachable."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def publish(self, envelope: QueueEnvelope) -> None: ...

    @abstractmethod
    async def reserve(self, timeout: float) -> Optional[Delivery]:
        """Move the oldest pending envelope to in-flight, or None after timeout."""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None: ...

    @abstractmethod
    async def requeue(self, delivery: Delivery, envelope: QueueEnvelope) -> None: ...

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, record: DeadLetterRecord) -> None: ...

    @abstractmethod
    async def dead_letters(self, limit: int = 100) -> list[DeadLetterRecord]: ...

    @abstractmethod
    async def dead_letter_count(self) -> int: ...

    @abstractmethod
    async def replay(self, envelope_id: str) -> Optional[QueueEnvelope]:
        """Move a dead-lettered envelope back to pending with retryCount reset, or None if absent."""

    @abstractmethod
    async def pending_count(self) -> int: ...

    @abstractmethod
    async def in_flight_count(self) -> int: ...


def _decode(raw: str) -> QueueEnvelope:
    return QueueEnvelope.model_validate(json.loads(raw))


def _revived(record: DeadLetterRecord) -> QueueEnvelope:
    values = record.model_dump(exclude={"error", "deadLetteredAt"})
    values.update(retryCount=0, enqueuedAt=utc_now_iso())
    return QueueEnvelope(**values)


class MemoryBroker(QueueBroker):
    """In-process broker. Envelopes are kept serialized, as Redis would."""

    name = "memory"

    def __init__(self):
        self._pending: Optional[asyncio.Queue] = None
        self._in_flight: dict[str, str] = {}
        self._dead: list[str] = []

    @property
    def _queue(self) -> asyncio.Queue:
        if self._pending is None:
            self._pending = asyncio.Queue()
        return self._pending

    async def publish(self, envelope: QueueEnvelope) -> None:
        await self._queue.put(envelope.model_dump_json())
        logger.debug(f"Envelope published: {envelope.id} ({envelope.eventKind})")

    async def reserve(self, timeout: float) -> Optional[Delivery]:
        try:
            raw = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        receipt = str(uuid.uuid4())
        self._in_flight[receipt] = raw
        return Delivery(envelope=_decode(raw), receipt=receipt)

    async def ack(self, delivery: Delivery) -> None:
        self._in_flight.pop(delivery.receipt, None)

    async def requeue(self, delivery: Delivery, envelope: QueueEnvelope) -> None:
        self._in_flight.pop(delivery.receipt, None)
        await self._queue.put(envelope.model_dump_json())

    async def dead_letter(self, delivery: Delivery, record: DeadLetterRecord) -> None:
        self._in_flight.pop(delivery.receipt, None)
        self._dead.append(record.model_dump_json())

    async def dead_letters(self, limit: int = 100) -> list[DeadLetterRecord]:
        return [DeadLetterRecord.model_validate_json(raw) for raw in self._dead[-limit:]]

    async def dead_letter_count(self) -> int:
        return len(self._dead)

    async def replay(self, envelope_id: str) -> Optional[QueueEnvelope]:
        for index, raw in enumerate(self._dead):
            record = DeadLetterRecord.model_validate_json(raw)
            if record.id == envelope_id:
                del self._dead[index]
                envelope = _revived(record)
                await self.publish(envelope)
                return envelope
        return None

    async def pending_count(self) -> int:
        return self._queue.qsize()

    async def in_flight_count(self) -> int:
        return len(self._in_flight)


class RedisBroker(QueueBroker):
    """
    Redis lists as a reliable queue.

    Keys:
        <name>:pending     LPUSH on publish, consumed from the right
        <name>:processing  in-flight envelopes, moved atomically by BLMOVE
        <name>:dead        dead-letter records, newest first
    """

    name = "redis"

    def __init__(self, url: str, queue_name: str, op_timeout: float = 5.0):
        self.queue_name = queue_name
        self.op_timeout = op_timeout
        self.pending_key = f"{queue_name}:pending"
        self.processing_key = f"{queue_name}:processing"
        self.dead_key = f"{queue_name}:dead"
        self._redis = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=op_timeout,
        )

    async def connect(self) -> None:
        await asyncio.wait_for(self._redis.ping(), timeout=self.op_timeout)
        recovered = await self.recover()
        logger.info(f"Redis broker connected: queue={self.queue_name}, recovered={recovered}")

    async def close(self) -> None:
        await self._redis.aclose()

    async def recover(self) -> int:
        """Return envelopes left in-flight by a dead consumer to pending."""
        moved = 0
        while await self._redis.lmove(self.processing_key, self.pending_key, "RIGHT", "RIGHT"):
            moved += 1
        if moved:
            logger.warning(f"Recovered {moved} in-flight envelopes into {self.pending_key}")
        return moved

    async def publish(self, envelope: QueueEnvelope) -> None:
        try:
            await asyncio.wait_for(
                self._redis.lpush(self.pending_key, envelope.model_dump_json()),
                timeout=self.op_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DownstreamTimeout("queue broker did not acknowledge publish") from e
        logger.debug(f"Envelope published: {envelope.id} ({envelope.eventKind})")

    async def reserve(self, timeout: float) -> Optional[Delivery]:
        raw = await self._redis.blmove(self.pending_key, self.processing_key, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        return Delivery(envelope=_decode(raw), receipt=raw)

    async def ack(self, delivery: Delivery) -> None:
        await self._redis.lrem(self.processing_key, 1, delivery.receipt)

    async def requeue(self, delivery: Delivery, envelope: QueueEnvelope) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, delivery.receipt)
            pipe.lpush(self.pending_key, envelope.model_dump_json())
            await pipe.execute()

    async def dead_letter(self, delivery: Delivery, record: DeadLetterRecord) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, delivery.receipt)
            pipe.lpush(self.dead_key, record.model_dump_json())
            await pipe.execute()

    async def dead_letters(self, limit: int = 100) -> list[DeadLetterRecord]:
        raws = await self._redis.lrange(self.dead_key, 0, limit - 1)
        return [DeadLetterRecord.model_validate_json(raw) for raw in raws]

    async def dead_letter_count(self) -> int:
        return await self._redis.llen(self.dead_key)

    async def replay(self, envelope_id: str) -> Optional[QueueEnvelope]:
        for raw in await self._redis.lrange(self.dead_key, 0, -1):
            record = DeadLetterRecord.model_validate_json(raw)
            if record.id != envelope_id:
                continue
            # Another replay may have taken it first
            if not await self._redis.lrem(self.dead_key, 1, raw):
                return None
            envelope = _revived(record)
            await self.publish(envelope)
            return envelope
        return None

    async def pending_count(self) -> int:
        return await self._redis.llen(self.pending_key)

    async def in_flight_count(self) -> int:
        return await self._redis.llen(self.processing_key)


def is_retryable(error: BaseException) -> bool:
    """Errors without an explicit ``retryable`` flag are assumed transient."""
    return bool(getattr(error, "retryable", True))


class QueueWorker:
    """
    Consumes envelopes with at most ``concurrency`` handlers in flight.

    A failing envelope is requeued with ``retryCount + 1`` after the
    policy's backoff until ``retryCount`` reaches ``max_retries``; the next
    failure, or any non-retryable error, sends it to the dead-letter sink.
    """

    def __init__(
        self,
        broker: QueueBroker,
        handler: Callable[[QueueEnvelope], Awaitable[Any]],
        *,
        concurrency: int = 5,
        max_retries: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        handler_timeout: float = 30.0,
        poll_timeout: float = 1.0,
    ):
        self.broker = broker
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_retries = max_retries
        self.retry_policy = retry_policy or RetryPolicy()
        self.handler_timeout = handler_timeout
        self.poll_timeout = poll_timeout
        self._running = False
        self._tasks: set[asyncio.Task] = set()

    async def run(self) -> None:
        """Consume until stop() is called."""
        slots = asyncio.Semaphore(self.concurrency)
        self._running = True
        logger.info(f"Queue worker started: broker={self.broker.name}, concurrency={self.concurrency}")

        while self._running:
            await slots.acquire()
            try:
                delivery = await self.broker.reserve(self.poll_timeout)
            except asyncio.CancelledError:
                slots.release()
                raise
            except Exception as e:
                slots.release()
                logger.error(f"Queue reserve failed: {e}")
                await asyncio.sleep(self.poll_timeout)
                continue

            if delivery is None:
                slots.release()
                continue

            task = asyncio.create_task(self._process_and_release(delivery, slots))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Queue worker stopped")

    def stop(self) -> None:
        self._running = False

    async def _process_and_release(self, delivery: Delivery, slots: asyncio.Semaphore) -> None:
        try:
            await self.process(delivery)
        except Exception as e:
            logger.error(f"Failed to settle envelope {delivery.envelope.id}: {e}")
        finally:
            slots.release()

    async def process(self, delivery: Delivery) -> str:
        """
        Run the handler for one reserved envelope and settle it.

        Returns:
            "acked", "requeued" or "dead_lettered"
        """
        envelope = delivery.envelope
        logger.info(f"Processing envelope {envelope.id} ({envelope.eventKind}, attempt {envelope.retryCount + 1})")
        try:
            await asyncio.wait_for(self.handler(envelope), timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            return await self._fail(delivery, DownstreamTimeout(f"handler exceeded {self.handler_timeout}s"))
        except Exception as e:
            return await self._fail(delivery, e)

        await self.broker.ack(delivery)
        record_queue_outcome("acked")
        logger.info(f"Envelope acknowledged: {envelope.id}")
        return "acked"

    async def _fail(self, delivery: Delivery, error: Exception) -> str:
        envelope = delivery.envelope
        if is_retryable(error) and envelope.retryCount < self.max_retries:
            delay = self.retry_policy.delay_for(envelope.retryCount)
            logger.warning(
                f"Envelope {envelope.id} failed ({type(error).__name__}: {error}), "
                f"requeueing in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            retried = envelope.model_copy(update={"retryCount": envelope.retryCount + 1})
            await self.broker.requeue(delivery, retried)
            record_queue_outcome("requeued")
            return "requeued"

        record = DeadLetterRecord(
            **envelope.model_dump(),
            error=f"{type(error).__name__}: {error}",
        )
        await self.broker.dead_letter(delivery, record)
        record_queue_outcome("dead_lettered")
        logger.error(f"Envelope dead-lettered after {envelope.retryCount + 1} attempts: {envelope.id}")
        return "dead_lettered"

    async def drain(self) -> dict[str, int]:
        """Process until the queue is empty, one envelope at a time."""
        outcomes: dict[str, int] = {}
        while True:
            delivery = await self.broker.reserve(0.01)
            if delivery is None:
                return outcomes
            outcome = await self.process(delivery)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1


def build_broker(backend: str, redis_url: Optional[str], queue_name: str) -> Optional[QueueBroker]:
    if backend == "memory":
        return MemoryBroker()
    if backend == "redis" and redis_url:
        return RedisBroker(redis_url, queue_name)
    return None
