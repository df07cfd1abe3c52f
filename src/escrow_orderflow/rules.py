from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from .config import RuleSettings
from .state_store import StateStore
from .types import AlertEvent, EventKind, NormalizedEvent, now_ms, parse_u64

logger = logging.getLogger(__name__)

FREQ_CANCEL = "freq_cancel"
LARGE_AMOUNT = "large_amount"


def large_amount_rule(event: NormalizedEvent, threshold: int, emitted_at_ms: int) -> AlertEvent | None:
    amount_a = parse_u64(event.amount_a) or 0
    amount_b = parse_u64(event.amount_b) or 0
    if amount_a < threshold and amount_b < threshold:
        return None

    return AlertEvent(
        alert_id=f"{LARGE_AMOUNT}:{event.offer_id}:{event.transaction_signature}:{event.sequence}",
        rule_id=LARGE_AMOUNT,
        severity="high",
        subject=event.maker,
        offer_id=event.offer_id,
        emitted_at_ms=emitted_at_ms,
        details={
            "amount_a": event.amount_a,
            "amount_b": event.amount_b,
            "threshold": threshold,
            "event_kind": event.event_kind.value,
        },
    )


class CancelWindows:
    """Per-maker sliding windows of cancellation times.

    Each window is stored as a list of ``[ts_ms, event_id]`` pairs in arrival
    order. Stale entries are evicted from the front.
    """

    def __init__(self, store: StateStore, window_ms: int) -> None:
        self.store = store
        self.window_ms = window_ms

    def record(self, maker: str, ts_ms: int, event_id: str) -> deque[tuple[int, str]]:
        window = deque((int(ts), str(eid)) for ts, eid in (self.store.get(maker) or []))

        if all(eid != event_id for _, eid in window):
            window.append((ts_ms, event_id))

        while window and ts_ms - window[0][0] > self.window_ms:
            window.popleft()

        self.store.put(maker, [[ts, eid] for ts, eid in window])
        return window


class RuleEngine:
    def __init__(
        self,
        settings: RuleSettings,
        windows: StateStore,
        emitted: StateStore,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.settings = settings
        self.cancels = CancelWindows(windows, settings.cancel_window_ms)
        self.emitted = emitted
        self._clock = clock

    def close(self) -> None:
        self.cancels.store.close()
        self.emitted.close()

    def evaluate(self, event: NormalizedEvent) -> list[AlertEvent]:
        candidates: list[AlertEvent] = []

        alert = large_amount_rule(event, self.settings.large_amount_threshold, self._clock())
        if alert is not None:
            candidates.append(alert)

        if event.event_kind is EventKind.CANCELLED:
            alert = self._freq_cancel_rule(event)
            if alert is not None:
                candidates.append(alert)

        return [alert for alert in candidates if self._claim(alert)]

    def _freq_cancel_rule(self, event: NormalizedEvent) -> AlertEvent | None:
        window = self.cancels.record(event.maker, event.ingested_at_ms, event.event_id)
        threshold = self.settings.cancel_threshold
        if len(window) < threshold:
            return None

        window_start = window[0][0]
        return AlertEvent(
            alert_id=f"{FREQ_CANCEL}:{event.maker}:{window_start}:{threshold}",
            rule_id=FREQ_CANCEL,
            severity="medium",
            subject=event.maker,
            offer_id=event.offer_id,
            emitted_at_ms=self._clock(),
            details={
                "window_ms": self.settings.cancel_window_ms,
                "cancel_count": len(window),
                "threshold": threshold,
            },
        )

    def _claim(self, alert: AlertEvent) -> bool:
        if self.emitted.put_if_absent(alert.alert_id, alert.emitted_at_ms):
            return True
        logger.debug("Suppressed duplicate alert %s", alert.alert_id)
        return False
