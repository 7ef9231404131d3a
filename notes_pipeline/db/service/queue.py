"""
RabbitMQ queue wrapper for conversion jobs:
- Durable main queue
- Delay queues (TTL -> dead-letter -> main queue) for retries/backoff
- Batched consumption; each delivery exposes ack()/retry(delay_seconds)

The attempt counter travels in the ``x-attempt`` header, not in the job body,
so a producer enqueueing a fresh job always starts at attempt 1.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage
import orjson

from shared.config import get_settings
from notes_pipeline.models.dto import ConversionJob
from shared.utils.logging import get_logger

logger = get_logger(__name__)

ATTEMPT_HEADER = "x-attempt"


class RabbitDelivery:
    """One broker delivery, adapted to the ack/retry interface the consumer drives."""

    def __init__(self, mq: "MessageQueue", incoming: AbstractIncomingMessage) -> None:
        self._mq = mq
        self._incoming = incoming
        self.id: str = incoming.message_id or str(incoming.delivery_tag)
        self.body: bytes = incoming.body
        headers = incoming.headers or {}
        try:
            self.attempts = max(1, int(headers.get(ATTEMPT_HEADER, 1)))
        except (TypeError, ValueError):
            self.attempts = 1

    async def ack(self) -> None:
        await self._incoming.ack()

    async def retry(self, *, delay_seconds: float) -> None:
        """Re-publish with attempt + 1 into a delay queue, then ack this delivery."""
        try:
            await self._mq.publish_raw_delayed(
                self.body,
                message_id=self.id,
                attempt=self.attempts + 1,
                delay_seconds=delay_seconds,
            )
        except Exception:
            # Broker keeps the message; it is redelivered with the same attempt count.
            await self._incoming.nack(requeue=True)
            raise
        await self._incoming.ack()


class MessageQueue:
    def __init__(self) -> None:
        self.s = get_settings()

        self._conn: Optional[aio_pika.RobustConnection] = None
        self._ch: Optional[aio_pika.abc.AbstractChannel] = None
        self._main: Optional[aio_pika.abc.AbstractQueue] = None

        self._delay: Dict[int, aio_pika.abc.AbstractQueue] = {}  # delay queues by delay_ms

    async def connect(self) -> None:
        """Connect and declare the main queue once."""
        if self._conn and not self._conn.is_closed and self._ch and self._main:
            return

        logger.info("Connecting to RabbitMQ", queue=self.s.job_queue_name)

        self._conn = await aio_pika.connect_robust(str(self.s.rabbitmq_url))
        self._ch = await self._conn.channel()

        # One batch worth of unacked messages in flight
        await self._ch.set_qos(prefetch_count=self.s.batch_size)

        self._main = await self._ch.declare_queue(self.s.job_queue_name, durable=True)

        logger.info("RabbitMQ ready", queue=self.s.job_queue_name)

    async def disconnect(self) -> None:
        if self._conn and not self._conn.is_closed:
            await self._conn.close()

        self._conn = None
        self._ch = None
        self._main = None
        self._delay.clear()

    async def _publish(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        attempt: int,
    ) -> None:
        await self.connect()
        assert self._ch is not None

        msg = Message(
            body=body,
            message_id=message_id,
            headers={ATTEMPT_HEADER: attempt},
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
        )
        await self._ch.default_exchange.publish(msg, routing_key=routing_key)

    async def publish_job(self, job: ConversionJob) -> str:
        """Enqueue a fresh job at attempt 1; returns the message id."""
        message_id = str(uuid4())
        await self._publish(
            self.s.job_queue_name,
            orjson.dumps(job.to_wire()),
            message_id=message_id,
            attempt=1,
        )
        logger.info(
            "Job enqueued",
            message_id=message_id,
            job_type=job.type.value,
            note_id=job.note_id,
        )
        return message_id

    async def publish_raw_delayed(
        self,
        body: bytes,
        *,
        message_id: str,
        attempt: int,
        delay_seconds: float,
    ) -> None:
        """
        Send a message body to a delay queue.
        Delay queue has TTL; when TTL expires, it dead-letters into the main queue.
        """
        await self.connect()

        delay_ms = max(0, int(delay_seconds * 1000))
        delay_queue = await self._get_delay_queue(delay_ms)

        await self._publish(delay_queue.name, body, message_id=message_id, attempt=attempt)

    async def _get_delay_queue(self, delay_ms: int) -> aio_pika.abc.AbstractQueue:
        assert self._ch is not None

        if delay_ms in self._delay:
            return self._delay[delay_ms]

        main = self.s.job_queue_name
        q = await self._ch.declare_queue(
            f"{main}.delay.{delay_ms}",
            durable=True,
            arguments={
                "x-message-ttl": delay_ms,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": main,
                "x-expires": delay_ms + 60_000,
            },
        )

        self._delay[delay_ms] = q
        return q

    async def consume_batches(
        self,
        handler: Callable[[list[RabbitDelivery]], Awaitable[Any]],
    ) -> None:
        """
        Consume forever, handing the handler batches of up to ``batch_size``
        deliveries. A batch closes when it is full or ``batch_timeout`` seconds
        after its first message. The handler owns ack/retry of every delivery.
        """
        await self.connect()
        assert self._main is not None

        loop = asyncio.get_running_loop()
        logger.info(
            "Consuming jobs",
            queue=self.s.job_queue_name,
            batch_size=self.s.batch_size,
        )

        async with self._main.iterator() as it:
            while True:
                batch = [await anext(it)]
                deadline = loop.time() + self.s.batch_timeout

                while len(batch) < self.s.batch_size:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    try:
                        batch.append(await asyncio.wait_for(anext(it), remaining))
                    except asyncio.TimeoutError:
                        break

                await handler([RabbitDelivery(self, incoming) for incoming in batch])


@asynccontextmanager
async def get_message_queue() -> AsyncGenerator[MessageQueue, None]:
    mq = MessageQueue()
    try:
        await mq.connect()
        yield mq
    finally:
        await mq.disconnect()
