from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from .types import EventKind, LogNotification, NormalizedEvent, RawLogEvent, now_ms, parse_u64

logger = logging.getLogger(__name__)

LOG_PREFIX = "Program log: "
# Top-level instructions show up as depth [1] invocations.
_TOP_LEVEL_INVOKE = re.compile(r"^Program \S+ invoke \[1\]$")


def parse_log_line(line: str) -> RawLogEvent | None:
    if not line.startswith(LOG_PREFIX):
        return None
    body = line[len(LOG_PREFIX):]
    if '"event":' not in body:
        return None

    try:
        record = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict):
        return None

    return _raw_event(record)


def _raw_event(record: dict[str, Any]) -> RawLogEvent | None:
    offer_id = _string_or_none(record.get("offer_id"))
    maker = _string_or_none(record.get("maker"))
    asset_a = _string_or_none(record.get("asset_a") or record.get("mint_a"))
    asset_b = _string_or_none(record.get("asset_b") or record.get("mint_b"))
    if not (offer_id and maker and asset_a and asset_b):
        return None

    amount_a = parse_u64(record.get("amount_a"))
    amount_b = parse_u64(record.get("amount_b"))
    if amount_a is None or amount_b is None:
        return None

    return RawLogEvent(
        event_kind=str(record.get("event", "")),
        offer_id=offer_id,
        maker=maker,
        taker=_string_or_none(record.get("taker")),
        asset_a=asset_a,
        asset_b=asset_b,
        amount_a=amount_a,
        amount_b=amount_b,
    )


def make_event_id(signature: str, instruction_index: int, log_index: int) -> str:
    return f"{signature}:{instruction_index}:{log_index}"


class EventNormalizer:
    def __init__(
        self,
        network: str,
        contract_id: str,
        commitment_level: str,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.network = network
        self.contract_id = contract_id
        self.commitment_level = commitment_level
        self._clock = clock

    def normalize(self, notification: LogNotification) -> list[NormalizedEvent]:
        if notification.failed:
            return []

        events: list[NormalizedEvent] = []
        instruction_index = 0
        invokes_seen = 0
        for log_index, line in enumerate(notification.logs):
            if _TOP_LEVEL_INVOKE.match(line):
                instruction_index = invokes_seen
                invokes_seen += 1
                continue

            raw = parse_log_line(line)
            if raw is None:
                continue

            kind = EventKind.from_raw(raw.event_kind)
            if kind is None:
                logger.debug(
                    "Skipping unknown event kind %r in %s",
                    raw.event_kind,
                    notification.transaction_signature,
                )
                continue

            events.append(
                NormalizedEvent(
                    event_id=make_event_id(
                        notification.transaction_signature, instruction_index, log_index
                    ),
                    event_kind=kind,
                    network=self.network,
                    sequence=notification.sequence,
                    transaction_signature=notification.transaction_signature,
                    contract_id=self.contract_id,
                    offer_id=raw.offer_id,
                    maker=raw.maker,
                    taker=raw.taker,
                    asset_a=raw.asset_a,
                    asset_b=raw.asset_b,
                    amount_a=str(raw.amount_a),
                    amount_b=str(raw.amount_b),
                    commitment_level=self.commitment_level,
                    ingested_at_ms=self._clock(),
                )
            )
        return events


def _string_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
