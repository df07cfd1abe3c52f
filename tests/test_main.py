import asyncio

from escrow_orderflow.config import RuleSettings, Settings
from escrow_orderflow.main import build_rule_stores, build_service
from escrow_orderflow.service import NormalizerService, StorageWriterService
from escrow_orderflow.state_store import MemoryStateStore, SqliteStateStore


def _settings(**overrides) -> Settings:
    values = dict(
        solana_ws_url=None,
        program_id=None,
        cluster="localnet",
        commitment="finalized",
        kafka_brokers="localhost:9092",
        events_topic="escrow.events.v1",
        alerts_topic="escrow.alerts.v1",
        risk_engine_group_id="risk-engine-v1",
        storage_writer_group_id="storage-writer-v1",
        database_path=":memory:",
        state_db_path=None,
        rules=RuleSettings(),
        publish_timeout_seconds=5.0,
        publish_retries=3,
        health_log_interval_seconds=60,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def test_rule_stores_default_to_memory() -> None:
    windows, emitted = build_rule_stores(_settings())
    assert isinstance(windows, MemoryStateStore)
    assert windows.ttl_seconds == 600
    assert isinstance(emitted, MemoryStateStore)


def test_rule_stores_use_sqlite_when_configured(tmp_path) -> None:
    windows, emitted = build_rule_stores(_settings(state_db_path=str(tmp_path / "state.db")))
    assert isinstance(windows, SqliteStateStore)
    assert windows.namespace == "cancel_windows"
    assert emitted.namespace == "emitted_alerts"
    windows.close()
    emitted.close()


def test_build_storage_writer() -> None:
    async def build():
        # Kafka clients bind to the running loop on construction.
        return build_service("storage-writer", _settings())

    service = asyncio.run(build())
    assert isinstance(service, StorageWriterService)
    assert service.source.group_id == "storage-writer-v1"


def test_build_normalizer_stamps_the_subscribed_commitment() -> None:
    settings = _settings(
        solana_ws_url="ws://127.0.0.1:8900", program_id="Escrow111", commitment="bogus"
    )

    async def build():
        return build_service("normalizer", settings)

    service = asyncio.run(build())
    assert isinstance(service, NormalizerService)
    assert service.feed.commitment == "finalized"
    assert service.normalizer.commitment_level == service.feed.commitment
