from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (KafkaError, OSError)


@dataclass(frozen=True)
class Message:
    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes | None


class Publisher(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def send(self, topic: str, key: str, value: str) -> None: ...


class EventSource(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def getone(self) -> Message: ...

    async def commit(self, message: Message) -> None: ...

    async def rewind(self, message: Message) -> None: ...


class KafkaPublisher:
    def __init__(self, brokers: str, request_timeout_ms: int = 5000) -> None:
        self.brokers = brokers
        self._producer = AIOKafkaProducer(
            bootstrap_servers=brokers,
            request_timeout_ms=request_timeout_ms,
        )

    async def start(self) -> None:
        await self._producer.start()
        logger.info("Kafka producer connected brokers=%s", self.brokers)

    async def stop(self) -> None:
        await self._producer.stop()

    async def send(self, topic: str, key: str, value: str) -> None:
        await self._producer.send_and_wait(
            topic,
            value=value.encode("utf-8"),
            key=key.encode("utf-8"),
        )


class KafkaEventSource:
    def __init__(self, brokers: str, topic: str, group_id: str) -> None:
        self.brokers = brokers
        self.topic = topic
        self.group_id = group_id
        self._consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=brokers,
            group_id=group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            session_timeout_ms=6000,
        )

    async def start(self) -> None:
        await self._consumer.start()
        logger.info(
            "Kafka consumer connected brokers=%s topic=%s group=%s",
            self.brokers,
            self.topic,
            self.group_id,
        )

    async def stop(self) -> None:
        await self._consumer.stop()

    async def getone(self) -> Message:
        record = await self._consumer.getone()
        return Message(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=record.key,
            value=record.value,
        )

    async def commit(self, message: Message) -> None:
        tp = TopicPartition(message.topic, message.partition)
        await self._consumer.commit({tp: message.offset + 1})

    async def rewind(self, message: Message) -> None:
        tp = TopicPartition(message.topic, message.partition)
        self._consumer.seek(tp, message.offset)
