from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")


@dataclass(frozen=True)
class RuleSettings:
    cancel_threshold: int = 5
    cancel_window_minutes: int = 10
    large_amount_threshold: int = 1_000_000_000
    alert_dedup_ttl_seconds: int = 7 * 24 * 3600

    @property
    def cancel_window_ms(self) -> int:
        return self.cancel_window_minutes * 60_000


@dataclass(frozen=True)
class Settings:
    solana_ws_url: str | None
    program_id: str | None
    cluster: str
    commitment: str
    kafka_brokers: str
    events_topic: str
    alerts_topic: str
    risk_engine_group_id: str
    storage_writer_group_id: str
    database_path: str
    state_db_path: str | None
    rules: RuleSettings
    publish_timeout_seconds: float
    publish_retries: int
    health_log_interval_seconds: int
    log_level: str

    def require_ledger(self) -> tuple[str, str]:
        if not self.solana_ws_url:
            raise ValueError("Missing required environment variable: SOLANA_WS_URL")
        if not self.program_id:
            raise ValueError("Missing required environment variable: PROGRAM_ID")
        return self.solana_ws_url, self.program_id


def _optional_str(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


def _optional_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _optional_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _commitment(name: str, default: str = "finalized") -> str:
    value = os.getenv(name, "").strip().lower() or default
    if value not in COMMITMENT_LEVELS:
        logger.warning("Unknown %s=%r, using %s", name, value, default)
        return default
    return value


def _positive_int(name: str, default: int) -> int:
    value = _optional_int(name, default)
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        solana_ws_url=_optional_str("SOLANA_WS_URL"),
        program_id=_optional_str("PROGRAM_ID"),
        cluster=os.getenv("CLUSTER", "localnet").strip(),
        commitment=_commitment("COMMITMENT"),
        kafka_brokers=os.getenv("KAFKA_BROKERS", "localhost:9092").strip(),
        events_topic=(
            _optional_str("EVENTS_TOPIC") or _optional_str("KAFKA_TOPIC") or "escrow.events.v1"
        ),
        alerts_topic=os.getenv("ALERTS_TOPIC", "escrow.alerts.v1").strip(),
        risk_engine_group_id=os.getenv("RISK_ENGINE_GROUP_ID", "risk-engine-v1").strip(),
        storage_writer_group_id=os.getenv("STORAGE_WRITER_GROUP_ID", "storage-writer-v1").strip(),
        database_path=os.getenv("DATABASE_PATH", "orderflow.db").strip(),
        state_db_path=_optional_str("STATE_DB_PATH"),
        rules=RuleSettings(
            cancel_threshold=_positive_int("CANCEL_THRESHOLD", 5),
            cancel_window_minutes=_positive_int("CANCEL_WINDOW_MIN", 10),
            large_amount_threshold=_positive_int("LARGE_AMOUNT_THRESHOLD", 1_000_000_000),
            alert_dedup_ttl_seconds=_positive_int("ALERT_DEDUP_TTL_SECONDS", 7 * 24 * 3600),
        ),
        publish_timeout_seconds=_optional_float("PUBLISH_TIMEOUT_SECONDS", 5.0),
        publish_retries=_positive_int("PUBLISH_RETRIES", 3),
        health_log_interval_seconds=_optional_int("HEALTH_LOG_INTERVAL_SECONDS", 60),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
