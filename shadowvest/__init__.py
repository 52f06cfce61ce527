"""
ShadowVest
Confidential payroll vesting

Stealth payments to employees and a confidential claim pipeline driven by
an encrypted-compute oracle over compressed ledger records.
"""

__version__ = "0.3.0"
__author__ = "ShadowVest"

from shadowvest.stealth.address import (
    MetaKeys,
    MetaAddress,
    StealthPayment,
    generate_meta_keys,
    generate_payment,
    is_my_payment,
    decrypt_payload,
    derive_spending_keypair,
)
from shadowvest.claims.orchestrator import ClaimOrchestrator, ClaimResult

__all__ = [
    "MetaKeys",
    "MetaAddress",
    "StealthPayment",
    "generate_meta_keys",
    "generate_payment",
    "is_my_payment",
    "decrypt_payload",
    "derive_spending_keypair",
    "ClaimOrchestrator",
    "ClaimResult",
    "__version__",
]
