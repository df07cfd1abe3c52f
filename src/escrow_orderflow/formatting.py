from __future__ import annotations

from datetime import datetime, timezone

from .types import AlertEvent, NormalizedEvent


def short_address(address: str | None) -> str:
    if not address:
        return "Unknown"
    addr = address.strip()
    if len(addr) <= 12:
        return addr
    return f"{addr[:6]}...{addr[-4:]}"


def ms_to_iso(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def describe_event(event: NormalizedEvent) -> str:
    return (
        f"{event.event_kind.value} offer={event.offer_id} "
        f"maker={short_address(event.maker)} seq={event.sequence} id={event.event_id}"
    )


def describe_alert(alert: AlertEvent) -> str:
    details = " ".join(f"{key}={alert.details[key]}" for key in sorted(alert.details))
    offer = f" offer={alert.offer_id}" if alert.offer_id else ""
    return (
        f"[{alert.severity.upper()}] {alert.rule_id} subject={short_address(alert.subject)}"
        f"{offer} at={ms_to_iso(alert.emitted_at_ms)} {details}".rstrip()
    )
