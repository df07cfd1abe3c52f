from escrow_orderflow.config import RuleSettings
from escrow_orderflow.rules import RuleEngine, large_amount_rule
from escrow_orderflow.state_store import MemoryStateStore
from escrow_orderflow.types import EventKind, NormalizedEvent

MINUTE_MS = 60_000
T0 = 1730000000000


def _event(
    kind: EventKind = EventKind.CANCELLED,
    offer_id: str = "1",
    maker: str = "Maker1111",
    sequence: int = 10,
    ts_ms: int = T0,
    amount_a: str = "1000",
    amount_b: str = "2000",
    event_id: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        event_id=event_id or f"sig-{offer_id}-{sequence}:0:1",
        event_kind=kind,
        network="localnet",
        sequence=sequence,
        transaction_signature=f"sig-{offer_id}-{sequence}",
        contract_id="Escrow111",
        offer_id=offer_id,
        maker=maker,
        taker=None,
        asset_a="MintA",
        asset_b="MintB",
        amount_a=amount_a,
        amount_b=amount_b,
        commitment_level="finalized",
        ingested_at_ms=ts_ms,
    )


def _engine(**overrides) -> RuleEngine:
    settings = RuleSettings(**overrides)
    return RuleEngine(settings, MemoryStateStore(), MemoryStateStore(), clock=lambda: T0)


def test_freq_cancel_fires_once_on_fifth_cancel_in_window() -> None:
    engine = _engine()
    fired = []
    for minute in range(5):
        event = _event(offer_id=str(minute), sequence=100 + minute, ts_ms=T0 + minute * MINUTE_MS)
        fired.append(engine.evaluate(event))

    assert [len(alerts) for alerts in fired] == [0, 0, 0, 0, 1]
    alert = fired[-1][0]
    assert alert.rule_id == "freq_cancel"
    assert alert.alert_id == f"freq_cancel:Maker1111:{T0}:5"
    assert alert.subject == "Maker1111"
    assert alert.details == {"window_ms": 10 * MINUTE_MS, "cancel_count": 5, "threshold": 5}

    # A sixth cancel with the same window anchor maps to the same alert id.
    sixth = engine.evaluate(_event(offer_id="5", sequence=105, ts_ms=T0 + 5 * MINUTE_MS))
    assert sixth == []


def test_freq_cancel_evicts_stale_entries() -> None:
    engine = _engine()
    for minute in (0, 1, 2, 3):
        assert engine.evaluate(_event(offer_id=str(minute), ts_ms=T0 + minute * MINUTE_MS)) == []
    # Minute 13 pushes the first three cancels out of the 10 minute window.
    assert engine.evaluate(_event(offer_id="9", ts_ms=T0 + 13 * MINUTE_MS)) == []
    window = engine.cancels.store.get("Maker1111")
    assert [ts for ts, _ in window] == [T0 + 3 * MINUTE_MS, T0 + 13 * MINUTE_MS]


def test_redelivered_cancel_is_not_counted_twice() -> None:
    engine = _engine(cancel_threshold=2)
    event = _event(offer_id="7")
    assert engine.evaluate(event) == []
    assert engine.evaluate(event) == []
    assert len(engine.cancels.store.get("Maker1111")) == 1


def test_windows_are_tracked_per_maker() -> None:
    engine = _engine(cancel_threshold=2)
    assert engine.evaluate(_event(offer_id="1", maker="A")) == []
    assert engine.evaluate(_event(offer_id="2", maker="B")) == []
    alerts = engine.evaluate(_event(offer_id="3", maker="A", ts_ms=T0 + 1))
    assert [a.subject for a in alerts] == ["A"]


def test_large_amount_alert_id_derives_from_offer_signature_sequence() -> None:
    engine = _engine()
    event = _event(kind=EventKind.CREATED, offer_id="42", sequence=10, amount_a="2000000000")
    alerts = engine.evaluate(event)
    assert len(alerts) == 1
    assert alerts[0].alert_id == "large_amount:42:sig-42-10:10"
    assert alerts[0].severity == "high"
    assert alerts[0].details["event_kind"] == "Created"

    assert engine.evaluate(event) == []


def test_large_amount_threshold_is_inclusive_and_checks_both_legs() -> None:
    assert large_amount_rule(_event(amount_a="999999999"), 1_000_000_000, T0) is None
    assert large_amount_rule(_event(amount_b="1000000000"), 1_000_000_000, T0) is not None


def test_unparsable_amounts_count_as_zero() -> None:
    event = _event(amount_a="lots", amount_b="99999999999999999999999")
    assert large_amount_rule(event, 1, T0) is None
