from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

U64_MAX = 2**64 - 1


def now_ms() -> int:
    return int(time.time() * 1000)


class EventDecodeError(ValueError):
    pass


class EventKind(str, Enum):
    CREATED = "Created"
    FILLED = "Filled"
    CANCELLED = "Cancelled"

    @classmethod
    def from_raw(cls, raw: str) -> EventKind | None:
        name = (raw or "").strip()
        if name.startswith("Offer"):
            name = name[len("Offer"):]
        for kind in cls:
            if kind.value == name:
                return kind
        return None


def parse_u64(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            return None
        number = int(text)
    else:
        return None
    if number < 0 or number > U64_MAX:
        return None
    return number


@dataclass(frozen=True)
class RawLogEvent:
    event_kind: str
    offer_id: str
    maker: str
    taker: str | None
    asset_a: str
    asset_b: str
    amount_a: int
    amount_b: int


@dataclass(frozen=True)
class LogNotification:
    sequence: int
    transaction_signature: str
    logs: tuple[str, ...]
    failed: bool = False


@dataclass(frozen=True)
class NormalizedEvent:
    event_id: str
    event_kind: EventKind
    network: str
    sequence: int
    transaction_signature: str
    contract_id: str
    offer_id: str
    maker: str
    taker: str | None
    asset_a: str
    asset_b: str
    amount_a: str
    amount_b: str
    commitment_level: str
    ingested_at_ms: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_kind"] = self.event_kind.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> NormalizedEvent:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise EventDecodeError(f"invalid event json: {exc}") from exc
        if not isinstance(payload, dict):
            raise EventDecodeError("event payload must be a JSON object")
        return cls.from_dict(payload)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> NormalizedEvent:
        kind = EventKind.from_raw(str(payload.get("event_kind", "")))
        if kind is None:
            raise EventDecodeError(f"unknown event_kind: {payload.get('event_kind')!r}")

        for name in ("amount_a", "amount_b"):
            value = payload.get(name)
            if not isinstance(value, str) or parse_u64(value) is None:
                raise EventDecodeError(f"{name} must be a u64 decimal string, got {value!r}")

        for name in ("sequence", "ingested_at_ms"):
            value = payload.get(name)
            if not isinstance(value, int) or parse_u64(value) is None:
                raise EventDecodeError(f"{name} must be an unsigned integer")

        taker = payload.get("taker")
        if taker is not None and not isinstance(taker, str):
            raise EventDecodeError("taker must be a string or null")

        return cls(
            event_id=_required_str(payload, "event_id"),
            event_kind=kind,
            network=_required_str(payload, "network"),
            sequence=int(payload["sequence"]),
            transaction_signature=_required_str(payload, "transaction_signature"),
            contract_id=_required_str(payload, "contract_id"),
            offer_id=_required_str(payload, "offer_id"),
            maker=_required_str(payload, "maker"),
            taker=taker,
            asset_a=_required_str(payload, "asset_a"),
            asset_b=_required_str(payload, "asset_b"),
            amount_a=payload["amount_a"],
            amount_b=payload["amount_b"],
            commitment_level=_required_str(payload, "commitment_level"),
            ingested_at_ms=int(payload["ingested_at_ms"]),
        )


@dataclass(frozen=True)
class AlertEvent:
    alert_id: str
    rule_id: str
    severity: str
    subject: str
    offer_id: str | None
    emitted_at_ms: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> AlertEvent:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise EventDecodeError(f"invalid alert json: {exc}") from exc
        if not isinstance(payload, dict):
            raise EventDecodeError("alert payload must be a JSON object")
        details = payload.get("details") or {}
        if not isinstance(details, dict):
            raise EventDecodeError("alert details must be a JSON object")
        return cls(
            alert_id=_required_str(payload, "alert_id"),
            rule_id=_required_str(payload, "rule_id"),
            severity=_required_str(payload, "severity"),
            subject=_required_str(payload, "subject"),
            offer_id=payload.get("offer_id"),
            emitted_at_ms=int(payload.get("emitted_at_ms", 0)),
            details=details,
        )


@dataclass(frozen=True)
class OfferProjection:
    offer_id: str
    status: str
    maker: str
    taker: str | None
    asset_a: str
    asset_b: str
    amount_a: str
    amount_b: str
    created_sequence: int | None
    updated_sequence: int
    updated_at: str


def _required_str(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value:
        raise EventDecodeError(f"{name} must be a non-empty string")
    return value
