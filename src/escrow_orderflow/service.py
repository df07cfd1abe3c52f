from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable
from dataclasses import asdict, dataclass
from typing import Protocol, TypeVar

from .formatting import describe_alert, describe_event
from .normalizer import EventNormalizer
from .rules import RuleEngine
from .storage import EventStore
from .transport import TRANSIENT_ERRORS, EventSource, Message, Publisher
from .types import AlertEvent, EventDecodeError, LogNotification, NormalizedEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Metrics:
    messages: int = 0
    decode_errors: int = 0
    events_published: int = 0
    publish_failed: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    events_written: int = 0
    duplicate_events: int = 0
    retries: int = 0

    def summary(self) -> str:
        return " ".join(f"{key}={value}" for key, value in asdict(self).items())


async def next_or_stop(awaitable: Awaitable[T], stop: asyncio.Event) -> T | None:
    """Wait for ``awaitable`` or the stop signal, whichever comes first.

    Returns ``None`` when the stop signal wins; the pending wait is cancelled.
    """
    next_task = asyncio.ensure_future(awaitable)
    stop_task = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        next_task.cancel()
        raise
    finally:
        stop_task.cancel()

    if next_task in done:
        return next_task.result()

    next_task.cancel()
    await asyncio.gather(next_task, return_exceptions=True)
    return None


async def sleep_or_stop(delay: float, stop: asyncio.Event) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


async def _health_loop(name: str, metrics: Metrics, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        logger.info("health %s %s", name, metrics.summary())


class StreamProcessor:
    """Sequential consumer of the normalized event topic.

    ``handle_event`` returns ``True`` when the event's effects are complete and
    its offset may be committed, ``False`` to rewind and retry the same event.
    """

    name = "processor"
    initial_backoff_seconds = 1.0
    max_backoff_seconds = 30.0

    def __init__(self, source: EventSource, health_log_interval_seconds: float = 60) -> None:
        self.source = source
        self.metrics = Metrics()
        self.health_log_interval_seconds = health_log_interval_seconds
        self._backoff = self.initial_backoff_seconds

    async def run(self, stop: asyncio.Event) -> None:
        await self.start()
        health_task = asyncio.create_task(
            _health_loop(self.name, self.metrics, self.health_log_interval_seconds)
        )
        logger.info("%s started", self.name)
        try:
            while not stop.is_set():
                try:
                    message = await next_or_stop(self.source.getone(), stop)
                except TRANSIENT_ERRORS as exc:
                    logger.warning("%s consume error: %s", self.name, exc)
                    await sleep_or_stop(1.0, stop)
                    continue
                if message is None:
                    break
                self.metrics.messages += 1
                await self._process(message, stop)
        finally:
            health_task.cancel()
            await asyncio.gather(health_task, return_exceptions=True)
            await self.close()
            logger.info("%s stopped %s", self.name, self.metrics.summary())

    async def start(self) -> None:
        await self.source.start()

    async def close(self) -> None:
        await self.source.stop()

    async def handle_event(self, event: NormalizedEvent) -> bool:
        raise NotImplementedError

    async def _process(self, message: Message, stop: asyncio.Event) -> None:
        try:
            event = NormalizedEvent.from_json(message.value or b"")
        except EventDecodeError as exc:
            self.metrics.decode_errors += 1
            logger.warning(
                "%s skipping bad event at %s[%d]@%d: %s",
                self.name,
                message.topic,
                message.partition,
                message.offset,
                exc,
            )
            await self._commit(message)
            return

        if await self.handle_event(event):
            self._backoff = self.initial_backoff_seconds
            await self._commit(message)
            return

        self.metrics.retries += 1
        await self.source.rewind(message)
        logger.warning("%s retrying event_id=%s in %.1fs", self.name, event.event_id, self._backoff)
        await sleep_or_stop(self._backoff, stop)
        self._backoff = min(self._backoff * 2, self.max_backoff_seconds)

    async def _commit(self, message: Message) -> None:
        try:
            await self.source.commit(message)
        except TRANSIENT_ERRORS as exc:
            # Uncommitted offsets are redelivered; every consumer is idempotent.
            logger.warning("%s commit failed at offset %d: %s", self.name, message.offset, exc)


class RiskEngineService(StreamProcessor):
    name = "risk-engine"

    def __init__(
        self,
        source: EventSource,
        publisher: Publisher,
        engine: RuleEngine,
        alerts_topic: str,
        publish_timeout_seconds: float = 5.0,
        health_log_interval_seconds: float = 60,
    ) -> None:
        super().__init__(source, health_log_interval_seconds)
        self.publisher = publisher
        self.engine = engine
        self.alerts_topic = alerts_topic
        self.publish_timeout_seconds = publish_timeout_seconds

    async def start(self) -> None:
        await self.publisher.start()
        await super().start()

    async def close(self) -> None:
        try:
            await super().close()
            await self.publisher.stop()
        finally:
            self.engine.close()

    async def handle_event(self, event: NormalizedEvent) -> bool:
        try:
            alerts = await asyncio.to_thread(self.engine.evaluate, event)
        except sqlite3.Error as exc:
            logger.error("Rule state unavailable for event_id=%s: %s", event.event_id, exc)
            return False

        for alert in alerts:
            await self._emit(alert)
        return True

    async def _emit(self, alert: AlertEvent) -> None:
        try:
            await asyncio.wait_for(
                self.publisher.send(self.alerts_topic, alert.subject, alert.to_json()),
                timeout=self.publish_timeout_seconds,
            )
        except Exception as exc:
            self.metrics.alerts_failed += 1
            logger.error("Failed to publish alert %s: %r", alert.alert_id, exc)
            return
        self.metrics.alerts_sent += 1
        logger.info("ALERT %s %s", alert.alert_id, describe_alert(alert))


class StorageWriterService(StreamProcessor):
    name = "storage-writer"

    def __init__(
        self,
        source: EventSource,
        store: EventStore,
        health_log_interval_seconds: float = 60,
    ) -> None:
        super().__init__(source, health_log_interval_seconds)
        self.store = store

    async def handle_event(self, event: NormalizedEvent) -> bool:
        try:
            inserted = await asyncio.to_thread(self.store.write_event, event)
        except (sqlite3.Error, OSError) as exc:
            logger.error("Storage write failed event_id=%s: %s", event.event_id, exc)
            return False

        if inserted:
            self.metrics.events_written += 1
            logger.debug("Stored %s", describe_event(event))
        else:
            self.metrics.duplicate_events += 1
        return True


class LogFeed(Protocol):
    def notifications(self) -> AsyncIterator[LogNotification]: ...


async def _next_notification(iterator: AsyncIterator[LogNotification]) -> LogNotification | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class NormalizerService:
    name = "normalizer"

    def __init__(
        self,
        feed: LogFeed,
        normalizer: EventNormalizer,
        publisher: Publisher,
        events_topic: str,
        publish_timeout_seconds: float = 5.0,
        publish_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        health_log_interval_seconds: float = 60,
    ) -> None:
        self.feed = feed
        self.normalizer = normalizer
        self.publisher = publisher
        self.events_topic = events_topic
        self.publish_timeout_seconds = publish_timeout_seconds
        self.publish_retries = max(1, publish_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self.health_log_interval_seconds = health_log_interval_seconds
        self.metrics = Metrics()

    async def run(self, stop: asyncio.Event) -> None:
        await self.publisher.start()
        health_task = asyncio.create_task(
            _health_loop(self.name, self.metrics, self.health_log_interval_seconds)
        )
        notifications = self.feed.notifications()
        logger.info("%s started topic=%s", self.name, self.events_topic)
        try:
            while not stop.is_set():
                notification = await next_or_stop(_next_notification(notifications), stop)
                if notification is None:
                    break
                self.metrics.messages += 1
                for event in self.normalizer.normalize(notification):
                    await self.publish(event, stop)
        finally:
            health_task.cancel()
            await asyncio.gather(health_task, return_exceptions=True)
            aclose = getattr(notifications, "aclose", None)
            if aclose is not None:
                await aclose()
            await self.publisher.stop()
            logger.info("%s stopped %s", self.name, self.metrics.summary())

    async def publish(self, event: NormalizedEvent, stop: asyncio.Event | None = None) -> bool:
        delay = self.retry_delay_seconds
        for attempt in range(self.publish_retries):
            try:
                await asyncio.wait_for(
                    self.publisher.send(self.events_topic, event.offer_id, event.to_json()),
                    timeout=self.publish_timeout_seconds,
                )
                self.metrics.events_published += 1
                logger.debug("Published %s", describe_event(event))
                return True
            except Exception as exc:
                if attempt == self.publish_retries - 1:
                    self.metrics.publish_failed += 1
                    logger.error(
                        "Dropping event %s after %d publish attempts: %r",
                        event.event_id,
                        self.publish_retries,
                        exc,
                    )
                    return False
                logger.warning("Publish attempt %d for %s failed: %r", attempt + 1, event.event_id, exc)
                if stop is None:
                    await asyncio.sleep(delay)
                else:
                    await sleep_or_stop(delay, stop)
                    if stop.is_set():
                        self.metrics.publish_failed += 1
                        logger.error(
                            "Dropping event %s on shutdown after %d publish attempts",
                            event.event_id,
                            attempt + 1,
                        )
                        return False
                delay *= 2
        return False
