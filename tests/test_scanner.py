"""
ShadowVest Scanner Tests
"""

import base64
import secrets

import pytest

from shadowvest.errors import InvalidParameterError, MalformedRecordError
from shadowvest.stealth.address import generate_meta_keys, generate_payment
from shadowvest.stealth.scanner import (
    LOG_DATA_PREFIX,
    PaymentEvent,
    StealthScanner,
    parse_payment_events,
)


def make_event(meta_address, note="", position_id=0, timestamp=1_700_000_000) -> PaymentEvent:
    payment = generate_payment(meta_address, note)
    return PaymentEvent(
        organization=secrets.token_bytes(32),
        stealth_address=payment.stealth_address,
        ephemeral_pub=payment.ephemeral_pub,
        encrypted_payload=payment.encrypted_payload,
        position_id=position_id,
        token_mint=secrets.token_bytes(32),
        timestamp=timestamp,
    )


class TestPaymentEvent:

    def test_log_data_roundtrip(self):
        event = make_event(generate_meta_keys().meta_address, note="March", position_id=9)
        assert PaymentEvent.from_log_data(event.to_log_data()) == event

    def test_wrong_tag_rejected(self):
        data = make_event(generate_meta_keys().meta_address).to_log_data()
        with pytest.raises(MalformedRecordError):
            PaymentEvent.from_log_data(b"\x00" * 8 + data[8:])

    def test_truncated_rejected(self):
        data = make_event(generate_meta_keys().meta_address).to_log_data()
        with pytest.raises(MalformedRecordError):
            PaymentEvent.from_log_data(data[:-3])


class TestStealthScanner:

    def test_finds_only_own_payments(self):
        alice, bob = generate_meta_keys(), generate_meta_keys()
        events = [
            make_event(alice.meta_address, note="a1", position_id=0),
            make_event(bob.meta_address, note="b1", position_id=1),
            make_event(alice.meta_address, note="a2", position_id=2),
        ]

        found = StealthScanner.from_meta_keys(alice).scan(events)

        assert [d.event.position_id for d in found] == [0, 2]
        assert [d.note for d in found] == ["a1", "a2"]

    def test_spending_keypair_matches_event(self):
        keys = generate_meta_keys()
        event = make_event(keys.meta_address)
        (found,) = StealthScanner.from_meta_keys(keys).scan([event])
        assert found.spending_keypair().public == event.stealth_address

    def test_view_only_scanner_cannot_spend(self):
        keys = generate_meta_keys()
        event = make_event(keys.meta_address, note="payday")
        (found,) = StealthScanner.from_meta_keys(keys, view_only=True).scan([event])

        assert found.note == "payday"
        with pytest.raises(InvalidParameterError):
            found.spending_keypair()

    def test_after_timestamp_filter(self):
        keys = generate_meta_keys()
        events = [
            make_event(keys.meta_address, timestamp=100),
            make_event(keys.meta_address, timestamp=200),
        ]
        found = StealthScanner.from_meta_keys(keys).scan(events, after_timestamp=100)
        assert [d.event.timestamp for d in found] == [200]

    def test_scan_logs(self):
        keys = generate_meta_keys()
        event = make_event(keys.meta_address, note="from logs")
        logs = [
            "Program log: Instruction: CreateCompressedStealthPosition",
            LOG_DATA_PREFIX + base64.b64encode(b"\x01" * 40).decode(),
            LOG_DATA_PREFIX + base64.b64encode(event.to_log_data()).decode(),
            LOG_DATA_PREFIX + "not base64!",
        ]

        found = StealthScanner.from_meta_keys(keys).scan_logs(logs, transaction_id="sig")

        assert len(found) == 1
        assert found[0].note == "from logs"
        assert found[0].event.transaction_id == "sig"

    def test_parse_ignores_other_events(self):
        assert parse_payment_events(["Program log: hello", LOG_DATA_PREFIX + "AAAA"]) == []

    def test_malformed_payment_event_skipped(self, caplog):
        keys = generate_meta_keys()
        event = make_event(keys.meta_address, note="still found")
        data = event.to_log_data()
        logs = [
            LOG_DATA_PREFIX + base64.b64encode(data[:-20]).decode(),
            LOG_DATA_PREFIX + base64.b64encode(data).decode(),
        ]

        with caplog.at_level("WARNING", logger="shadowvest.stealth.scanner"):
            found = StealthScanner.from_meta_keys(keys).scan_logs(logs, transaction_id="sig")

        assert [d.note for d in found] == ["still found"]
        assert "Skipping payment event" in caplog.text


class TestLedgerEvents:

    @pytest.mark.asyncio
    async def test_employee_discovers_funded_position(self, employer, meta_keys):
        funded = await employer.pay(meta_keys.meta_address, 500, note="Q1 bonus")
        await employer.pay(generate_meta_keys().meta_address, 700)

        found = StealthScanner.from_meta_keys(meta_keys).scan(employer.ledger.payment_events)

        assert len(found) == 1
        assert found[0].event.position_id == funded.position_id
        assert found[0].event.token_mint == employer.token_mint
        assert found[0].note == "Q1 bonus"
