from escrow_orderflow.normalizer import EventNormalizer, parse_log_line
from escrow_orderflow.types import EventKind, LogNotification

CREATED_LINE = (
    'Program log: {"event":"OfferCreated","offer_id":"42","maker":"Maker1111",'
    '"mint_a":"MintA","amount_a":2000000000,"mint_b":"MintB","amount_b":500 }'
)
FILLED_LINE = (
    'Program log: {"event":"OfferFilled","offer_id":"42","maker":"Maker1111","taker":"Taker2222",'
    '"mint_a":"MintA","amount_a":1000,"mint_b":"MintB","amount_b":2000 }'
)


def _normalizer() -> EventNormalizer:
    return EventNormalizer("localnet", "Escrow111", "finalized", clock=lambda: 1730000000000)


def test_parse_log_line_accepts_contract_payload() -> None:
    raw = parse_log_line(CREATED_LINE)
    assert raw is not None
    assert raw.event_kind == "OfferCreated"
    assert raw.asset_a == "MintA"
    assert raw.amount_a == 2000000000
    assert raw.taker is None


def test_parse_log_line_skips_unrelated_and_malformed_lines() -> None:
    assert parse_log_line("Program Escrow111 consumed 5000 of 200000 compute units") is None
    assert parse_log_line("Program log: Instruction: MakeOffer") is None
    assert parse_log_line('Program log: {"event": broken') is None
    assert parse_log_line('Program log: {"event":"OfferCreated","offer_id":"42"}') is None
    assert parse_log_line(CREATED_LINE.replace("2000000000", "-5")) is None
    assert parse_log_line(CREATED_LINE.replace("2000000000", '"\u00b2"')) is None


def test_normalize_builds_deterministic_event_ids() -> None:
    notification = LogNotification(
        sequence=10,
        transaction_signature="sig1",
        logs=("Program Escrow111 invoke [1]", "Program log: Instruction: MakeOffer", CREATED_LINE),
    )
    first = _normalizer().normalize(notification)
    second = EventNormalizer("localnet", "Escrow111", "finalized", clock=lambda: 1).normalize(
        notification
    )

    assert [e.event_id for e in first] == ["sig1:0:2"]
    assert [e.event_id for e in second] == ["sig1:0:2"]
    event = first[0]
    assert event.event_kind is EventKind.CREATED
    assert event.sequence == 10
    assert event.amount_a == "2000000000"
    assert event.contract_id == "Escrow111"
    assert event.network == "localnet"
    assert event.commitment_level == "finalized"
    assert event.ingested_at_ms == 1730000000000


def test_instruction_index_follows_top_level_invocations() -> None:
    notification = LogNotification(
        sequence=11,
        transaction_signature="sig2",
        logs=(
            "Program Escrow111 invoke [1]",
            CREATED_LINE,
            "Program TokenkegQ invoke [2]",
            "Program TokenkegQ success",
            "Program Escrow111 success",
            "Program Escrow111 invoke [1]",
            FILLED_LINE,
        ),
    )
    events = _normalizer().normalize(notification)
    assert [e.event_id for e in events] == ["sig2:0:1", "sig2:1:6"]
    assert events[1].taker == "Taker2222"


def test_instruction_index_defaults_to_zero_without_invocations() -> None:
    notification = LogNotification(sequence=1, transaction_signature="sig3", logs=(FILLED_LINE,))
    assert _normalizer().normalize(notification)[0].event_id == "sig3:0:0"


def test_unknown_kinds_and_failed_transactions_are_skipped() -> None:
    expired = CREATED_LINE.replace("OfferCreated", "OfferExpired")
    ok = LogNotification(sequence=1, transaction_signature="sig4", logs=(expired,))
    failed = LogNotification(sequence=1, transaction_signature="sig5", logs=(CREATED_LINE,), failed=True)
    assert _normalizer().normalize(ok) == []
    assert _normalizer().normalize(failed) == []
