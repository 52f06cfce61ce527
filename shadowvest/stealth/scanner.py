"""
Stealth payment scanner.

Walks payment events emitted by the vesting program and keeps the ones
addressed to a meta-address. Holding only the view key is enough to
discover payments and read their notes; deriving a spending key also
needs the spend key.
"""

import base64
import binascii
import hashlib
import logging
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional

from shadowvest.constants import ACCOUNT_TAG_SIZE
from shadowvest.errors import InvalidParameterError, MalformedRecordError
from shadowvest.stealth.address import (
    DecryptedPayload,
    MetaKeys,
    StealthKeypair,
    StealthPayment,
    decrypt_payload,
    derive_spending_keypair,
    is_my_payment,
)

logger = logging.getLogger(__name__)

LOG_DATA_PREFIX = "Program data: "
PAYMENT_EVENT_TAG = hashlib.sha256(b"event:StealthPaymentEvent").digest()[:ACCOUNT_TAG_SIZE]


@dataclass(frozen=True)
class PaymentEvent:
    """
    On-ledger announcement of a stealth payment.

    Layout: tag(8) | organization(32) | stealth_address(32) |
    ephemeral_pub(32) | payload_len(u32 LE) | payload |
    position_id(u64 LE) | token_mint(32) | timestamp(i64 LE)
    """
    organization: bytes
    stealth_address: bytes
    ephemeral_pub: bytes
    encrypted_payload: bytes
    position_id: int
    token_mint: bytes
    timestamp: int
    transaction_id: Optional[str] = None

    @property
    def payment(self) -> StealthPayment:
        return StealthPayment(
            ephemeral_pub=self.ephemeral_pub,
            stealth_address=self.stealth_address,
            encrypted_payload=self.encrypted_payload,
        )

    def to_log_data(self) -> bytes:
        return (
            PAYMENT_EVENT_TAG
            + self.organization
            + self.stealth_address
            + self.ephemeral_pub
            + struct.pack("<I", len(self.encrypted_payload))
            + self.encrypted_payload
            + struct.pack("<Q", self.position_id)
            + self.token_mint
            + struct.pack("<q", self.timestamp)
        )

    @classmethod
    def from_log_data(cls, data: bytes, transaction_id: Optional[str] = None) -> "PaymentEvent":
        fixed = ACCOUNT_TAG_SIZE + 32 * 3 + 4
        if len(data) < fixed or data[:ACCOUNT_TAG_SIZE] != PAYMENT_EVENT_TAG:
            raise MalformedRecordError("PaymentEvent", "not a stealth payment event")

        offset = ACCOUNT_TAG_SIZE
        organization = data[offset:offset + 32]
        stealth_address = data[offset + 32:offset + 64]
        ephemeral_pub = data[offset + 64:offset + 96]
        offset += 96
        (payload_len,) = struct.unpack_from("<I", data, offset)
        offset += 4

        if len(data) != offset + payload_len + 8 + 32 + 8:
            raise MalformedRecordError("PaymentEvent", f"unexpected length {len(data)}")

        payload = data[offset:offset + payload_len]
        offset += payload_len
        (position_id,) = struct.unpack_from("<Q", data, offset)
        token_mint = data[offset + 8:offset + 40]
        (timestamp,) = struct.unpack_from("<q", data, offset + 40)

        return cls(
            organization=organization,
            stealth_address=stealth_address,
            ephemeral_pub=ephemeral_pub,
            encrypted_payload=payload,
            position_id=position_id,
            token_mint=token_mint,
            timestamp=timestamp,
            transaction_id=transaction_id,
        )


@dataclass
class DiscoveredPayment:
    """A payment that passed the ownership test."""
    event: PaymentEvent
    scanner: "StealthScanner"

    def decrypt(self) -> DecryptedPayload:
        return decrypt_payload(
            self.event.encrypted_payload,
            self.scanner.view_priv,
            self.event.ephemeral_pub,
        )

    @property
    def note(self) -> str:
        return self.decrypt().note

    def spending_keypair(self) -> StealthKeypair:
        if self.scanner.spend_priv is None:
            raise InvalidParameterError("spend_priv", "view-only scanner cannot derive spending keys")
        return derive_spending_keypair(
            self.scanner.spend_priv,
            self.scanner.view_pub,
            self.decrypt().ephemeral_priv,
            expected_address=self.event.stealth_address,
        )


class StealthScanner:
    """Filters payment events down to the ones owned by one meta-address."""

    def __init__(
        self,
        view_priv: bytes,
        view_pub: bytes,
        spend_pub: bytes,
        spend_priv: Optional[bytes] = None,
    ):
        self.view_priv = view_priv
        self.view_pub = view_pub
        self.spend_pub = spend_pub
        self.spend_priv = spend_priv

    @classmethod
    def from_meta_keys(cls, keys: MetaKeys, view_only: bool = False) -> "StealthScanner":
        return cls(
            view_priv=keys.view_priv,
            view_pub=keys.view_pub,
            spend_pub=keys.spend_pub,
            spend_priv=None if view_only else keys.spend_priv,
        )

    def check(self, event: PaymentEvent) -> Optional[DiscoveredPayment]:
        if is_my_payment(self.view_priv, self.spend_pub, event.ephemeral_pub, event.stealth_address):
            return DiscoveredPayment(event=event, scanner=self)
        return None

    def scan(
        self,
        events: Iterable[PaymentEvent],
        after_timestamp: Optional[int] = None
    ) -> List[DiscoveredPayment]:
        found = []
        scanned = 0
        for event in events:
            if after_timestamp is not None and event.timestamp <= after_timestamp:
                continue
            scanned += 1
            hit = self.check(event)
            if hit is not None:
                found.append(hit)

        logger.debug(f"Scanned {scanned} payment events, {len(found)} owned")
        return found

    def scan_logs(self, log_messages: Iterable[str], transaction_id: Optional[str] = None) -> List[DiscoveredPayment]:
        """Scan raw program log lines ("Program data: <base64>")."""
        return self.scan(parse_payment_events(log_messages, transaction_id))


def parse_payment_events(log_messages: Iterable[str], transaction_id: Optional[str] = None) -> List[PaymentEvent]:
    """
    Extract payment events from program logs.

    Other events are ignored. A tagged event with a bad layout is logged
    and skipped so the rest of the batch is still returned.
    """
    events = []
    for line in log_messages:
        if not line.startswith(LOG_DATA_PREFIX):
            continue
        try:
            data = base64.b64decode(line[len(LOG_DATA_PREFIX):], validate=True)
        except binascii.Error:
            continue
        if data[:ACCOUNT_TAG_SIZE] != PAYMENT_EVENT_TAG:
            continue
        try:
            events.append(PaymentEvent.from_log_data(data, transaction_id))
        except MalformedRecordError as e:
            logger.warning(f"Skipping payment event in {transaction_id}: {e}")
    return events
