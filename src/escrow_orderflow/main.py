from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from .config import Settings, load_settings
from .ledger_stream import LedgerLogStream
from .normalizer import EventNormalizer
from .rules import RuleEngine
from .service import NormalizerService, RiskEngineService, StorageWriterService
from .state_store import MemoryStateStore, SqliteStateStore, StateStore
from .storage import EventStore
from .transport import KafkaEventSource, KafkaPublisher

logger = logging.getLogger(__name__)

COMPONENTS = ("normalizer", "risk-engine", "storage-writer")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_rule_stores(settings: Settings) -> tuple[StateStore, StateStore]:
    window_ttl = settings.rules.cancel_window_ms / 1000
    dedup_ttl = settings.rules.alert_dedup_ttl_seconds
    if settings.state_db_path is None:
        logger.warning("STATE_DB_PATH not set; alert de-duplication will not survive restarts")
        return MemoryStateStore(window_ttl), MemoryStateStore(dedup_ttl)
    return (
        SqliteStateStore(settings.state_db_path, "cancel_windows", window_ttl),
        SqliteStateStore(settings.state_db_path, "emitted_alerts", dedup_ttl),
    )


def build_service(
    component: str, settings: Settings
) -> NormalizerService | RiskEngineService | StorageWriterService:
    if component == "normalizer":
        ws_url, program_id = settings.require_ledger()
        feed = LedgerLogStream(ws_url, program_id, settings.commitment)
        return NormalizerService(
            feed=feed,
            normalizer=EventNormalizer(settings.cluster, program_id, feed.commitment),
            publisher=KafkaPublisher(settings.kafka_brokers),
            events_topic=settings.events_topic,
            publish_timeout_seconds=settings.publish_timeout_seconds,
            publish_retries=settings.publish_retries,
            health_log_interval_seconds=settings.health_log_interval_seconds,
        )

    if component == "risk-engine":
        windows, emitted = build_rule_stores(settings)
        return RiskEngineService(
            source=KafkaEventSource(
                settings.kafka_brokers, settings.events_topic, settings.risk_engine_group_id
            ),
            publisher=KafkaPublisher(settings.kafka_brokers),
            engine=RuleEngine(settings.rules, windows, emitted),
            alerts_topic=settings.alerts_topic,
            publish_timeout_seconds=settings.publish_timeout_seconds,
            health_log_interval_seconds=settings.health_log_interval_seconds,
        )

    if component == "storage-writer":
        return StorageWriterService(
            source=KafkaEventSource(
                settings.kafka_brokers, settings.events_topic, settings.storage_writer_group_id
            ),
            store=EventStore(settings.database_path),
            health_log_interval_seconds=settings.health_log_interval_seconds,
        )

    raise ValueError(f"Unknown component: {component}")


def install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops fall back to KeyboardInterrupt.
            pass


async def _main(component: str) -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    service = build_service(component, settings)
    stop = asyncio.Event()
    install_stop_handlers(stop)
    await service.run(stop)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="escrow-orderflow")
    parser.add_argument("component", choices=COMPONENTS)
    args = parser.parse_args(argv)
    try:
        asyncio.run(_main(args.component))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
