from escrow_orderflow.formatting import describe_alert, ms_to_iso, short_address
from escrow_orderflow.types import AlertEvent


def test_short_address() -> None:
    assert short_address("9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM") == "9WzDXw...AWWM"
    assert short_address("Maker1") == "Maker1"
    assert short_address(None) == "Unknown"


def test_ms_to_iso() -> None:
    assert ms_to_iso(1770724800000) == "2026-02-10T12:00:00.000Z"


def test_describe_alert_contains_rule_and_details() -> None:
    alert = AlertEvent(
        alert_id="freq_cancel:Maker1:1770724800000:5",
        rule_id="freq_cancel",
        severity="medium",
        subject="Maker1",
        offer_id="42",
        emitted_at_ms=1770724800000,
        details={"threshold": 5, "cancel_count": 5},
    )
    text = describe_alert(alert)
    assert text.startswith("[MEDIUM] freq_cancel subject=Maker1 offer=42")
    assert "cancel_count=5 threshold=5" in text
