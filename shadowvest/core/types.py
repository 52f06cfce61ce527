"""
ShadowVest Data Model

Ledger records and claim state. Addresses, commitments and ciphertexts are
raw 32-byte values; integers are little-endian on the wire.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import base58

from shadowvest.constants import ADDRESS_SIZE, CIPHERTEXT_SIZE, HASH_SIZE
from shadowvest.errors import (
    AlreadyWithdrawnError,
    ClaimNotProcessedError,
    InvalidParameterError,
)


def b58(address: bytes) -> str:
    """Text form of a 32-byte address."""
    return base58.b58encode(address).decode()


def address_from_b58(text: str) -> bytes:
    try:
        raw = base58.b58decode(text)
    except ValueError as e:
        raise InvalidParameterError("address", f"not base58: {text}") from e
    if len(raw) != ADDRESS_SIZE:
        raise InvalidParameterError("address", f"{text} decodes to {len(raw)} bytes")
    return raw


ZERO_ADDRESS = bytes(ADDRESS_SIZE)
ZERO_CIPHERTEXT = bytes(CIPHERTEXT_SIZE)


# ==============================================================================
# Compressed position
# ==============================================================================

@dataclass(frozen=True)
class CompressedVestingPosition:
    """
    Confidential vesting position kept in the compressed-account store.

    Only the confidential-compute update path produces a new version of
    this record (with_claim_update); it is never edited in plaintext.
    """
    owner: bytes
    organization: bytes
    schedule: bytes
    position_id: int
    beneficiary_commitment: bytes       # the stealth address
    encrypted_total_amount: bytes
    encrypted_claimed_amount: bytes
    nonce: int                          # u128
    start_timestamp: int
    is_active: bool = True
    is_fully_claimed: bool = False

    def with_claim_update(self, encrypted_claimed_amount: bytes, is_fully_claimed: bool) -> CompressedVestingPosition:
        return replace(
            self,
            encrypted_claimed_amount=encrypted_claimed_amount,
            is_fully_claimed=is_fully_claimed,
        )


@dataclass(frozen=True)
class ValidityProof:
    """Compressed Groth16 proof from the compressed-state indexer."""
    a: bytes = b""          # 32
    b: bytes = b""          # 64
    c: bytes = b""          # 32
    root_indices: List[int] = field(default_factory=list)

    @property
    def is_present(self) -> bool:
        return bool(self.a)


@dataclass(frozen=True)
class CompressedAccountMeta:
    """Inclusion witness that authorizes an update of one compressed account."""
    root_index: int
    tree_index: int
    queue_index: int
    leaf_index: int
    address: bytes
    output_tree_index: int
    prove_by_index: bool = False


@dataclass(frozen=True)
class CompressedPositionAccount:
    """A compressed position as read back together with its freshness data."""
    position: CompressedVestingPosition
    address: bytes
    hash: bytes
    merkle_tree: bytes
    queue: bytes
    leaf_index: int


# ==============================================================================
# Program accounts
# ==============================================================================

@dataclass
class Organization:
    admin: bytes
    name_hash: bytes
    schedule_count: int
    position_count: int
    treasury: bytes
    token_mint: bytes
    is_active: bool = True
    bump: int = 0


@dataclass
class VestingSchedule:
    organization: bytes
    schedule_id: int
    cliff_duration: int
    total_duration: int
    vesting_interval: int
    token_mint: bytes
    is_active: bool = True
    position_count: int = 0
    bump: int = 0


@dataclass
class VestingPosition:
    """Uncompressed position; the claim pipeline uses these as scratch callback targets."""
    organization: bytes
    schedule: bytes
    position_id: int
    beneficiary_commitment: bytes
    encrypted_total_amount: bytes = ZERO_CIPHERTEXT
    encrypted_claimed_amount: bytes = ZERO_CIPHERTEXT
    nonce: int = 0
    start_timestamp: int = 0
    is_active: bool = True
    is_fully_claimed: bool = False
    bump: int = 0

    @property
    def is_initialized(self) -> bool:
        """The compute callback has written the encrypted claimed amount."""
        return self.encrypted_claimed_amount != ZERO_CIPHERTEXT


class ClaimStatus(Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"
    PROCESSED = "processed"
    WITHDRAWN = "withdrawn"


@dataclass
class ClaimAuthorization:
    """
    One per (position, nullifier).

    unauthorized -> authorized -> processed -> withdrawn, no skipping.
    """
    position: bytes
    nullifier: bytes
    withdrawal_destination: bytes
    claim_amount: int = 0
    is_authorized: bool = False
    is_processed: bool = False
    is_withdrawn: bool = False
    authorized_at: int = 0
    bump: int = 0

    def __post_init__(self):
        if len(self.nullifier) != HASH_SIZE:
            raise InvalidParameterError("nullifier", f"must be {HASH_SIZE} bytes")

    @property
    def status(self) -> ClaimStatus:
        if self.is_withdrawn:
            return ClaimStatus.WITHDRAWN
        if self.is_processed:
            return ClaimStatus.PROCESSED
        if self.is_authorized:
            return ClaimStatus.AUTHORIZED
        return ClaimStatus.UNAUTHORIZED

    def mark_authorized(self, now: int) -> None:
        if self.status is not ClaimStatus.UNAUTHORIZED:
            raise InvalidParameterError("claim_authorization", f"cannot authorize from {self.status.value}")
        self.is_authorized = True
        self.authorized_at = now

    def mark_processed(self, claim_amount: int) -> None:
        if self.status is not ClaimStatus.AUTHORIZED:
            raise InvalidParameterError("claim_authorization", f"cannot process from {self.status.value}")
        self.claim_amount = claim_amount
        self.is_processed = True

    def mark_withdrawn(self) -> None:
        if self.is_withdrawn:
            raise AlreadyWithdrawnError()
        if self.status is not ClaimStatus.PROCESSED:
            raise ClaimNotProcessedError()
        self.is_withdrawn = True


@dataclass(frozen=True)
class NullifierRecord:
    """Uniqueness witness keyed by (organization, nullifier)."""
    organization: bytes
    nullifier: bytes
    position: bytes
    used_at: int


@dataclass
class ServiceOrganization:
    """
    Handle to the organization the service administers itself.

    A cache over ledger state; rebuildable at any time.
    """
    admin: bytes
    organization: bytes
    schedule: bytes
    schedule_id: int
    token_mint: bytes
    created_by_us: bool = False
    transaction_ids: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return b58(self.organization)


def is_withdrawable(auth: Optional[ClaimAuthorization]) -> bool:
    return auth is not None and auth.status is ClaimStatus.PROCESSED
