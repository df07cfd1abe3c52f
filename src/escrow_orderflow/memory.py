from __future__ import annotations

import asyncio
from collections import defaultdict

from .transport import Message


class MemoryBroker:
    """Single-partition, in-process topic log with per-group committed offsets."""

    def __init__(self) -> None:
        self._topics: dict[str, list[Message]] = defaultdict(list)
        self._committed: dict[tuple[str, str], int] = {}
        self._waiters: list[asyncio.Future[None]] = []

    def records(self, topic: str) -> list[Message]:
        return list(self._topics[topic])

    def committed(self, topic: str, group_id: str) -> int:
        return self._committed.get((group_id, topic), 0)

    def append(self, topic: str, key: str, value: str) -> Message:
        log = self._topics[topic]
        message = Message(
            topic=topic,
            partition=0,
            offset=len(log),
            key=key.encode("utf-8"),
            value=value.encode("utf-8"),
        )
        log.append(message)
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        return message

    async def wait_for_append(self) -> None:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def publisher(self) -> MemoryPublisher:
        return MemoryPublisher(self)

    def source(self, topic: str, group_id: str) -> MemoryEventSource:
        return MemoryEventSource(self, topic, group_id)

    def commit_offset(self, topic: str, group_id: str, offset: int) -> None:
        key = (group_id, topic)
        self._committed[key] = max(self._committed.get(key, 0), offset)


class MemoryPublisher:
    def __init__(self, broker: MemoryBroker) -> None:
        self.broker = broker

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def send(self, topic: str, key: str, value: str) -> None:
        self.broker.append(topic, key, value)


class MemoryEventSource:
    def __init__(self, broker: MemoryBroker, topic: str, group_id: str) -> None:
        self.broker = broker
        self.topic = topic
        self.group_id = group_id
        self.position = 0

    async def start(self) -> None:
        self.position = self.broker.committed(self.topic, self.group_id)

    async def stop(self) -> None:
        return None

    async def getone(self) -> Message:
        while True:
            records = self.broker.records(self.topic)
            if self.position < len(records):
                message = records[self.position]
                self.position += 1
                return message
            await self.broker.wait_for_append()

    async def commit(self, message: Message) -> None:
        self.broker.commit_offset(self.topic, self.group_id, message.offset + 1)

    async def rewind(self, message: Message) -> None:
        self.position = message.offset
