"""
ShadowVest Stealth Addressing
One-time recipient addresses, encrypted payloads, and payment scanning.
"""

from shadowvest.stealth.address import (
    MetaAddress,
    MetaKeys,
    StealthKeypair,
    StealthPayment,
    DecryptedPayload,
    generate_meta_keys,
    generate_payment,
    is_my_payment,
    decrypt_payload,
    derive_spending_keypair,
)
from shadowvest.stealth.scanner import (
    PaymentEvent,
    DiscoveredPayment,
    StealthScanner,
    parse_payment_events,
)

__all__ = [
    "MetaAddress",
    "MetaKeys",
    "StealthKeypair",
    "StealthPayment",
    "DecryptedPayload",
    "generate_meta_keys",
    "generate_payment",
    "is_my_payment",
    "decrypt_payload",
    "derive_spending_keypair",
    "PaymentEvent",
    "DiscoveredPayment",
    "StealthScanner",
    "parse_payment_events",
]
