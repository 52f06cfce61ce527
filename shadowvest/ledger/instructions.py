"""
Typed instruction schemas for the vesting program.

Each instruction names its account roles in program order (ACCOUNTS) and
carries its arguments as typed fields. encode_args() yields the argument
payload: 8-byte instruction tag, then arguments in program order. Queued
computations lead with their computation offset (request_id).
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import ClassVar, Dict, Tuple

from shadowvest.compute.request import ComputationRequest
from shadowvest.core.codec import encode_account_meta, encode_position, encode_validity_proof
from shadowvest.core.types import CompressedAccountMeta, CompressedVestingPosition, ValidityProof


def instruction_tag(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


@dataclass(frozen=True)
class Instruction:
    NAME: ClassVar[str] = ""
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ()

    def account_keys(self) -> Dict[str, bytes]:
        return {role: getattr(self, role) for role in self.ACCOUNTS}

    def _args(self) -> bytes:
        raise NotImplementedError

    def encode_args(self) -> bytes:
        return instruction_tag(self.NAME) + self._args()


@dataclass(frozen=True)
class CreateOrganization(Instruction):
    NAME: ClassVar[str] = "create_organization"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ("admin", "organization")

    admin: bytes
    organization: bytes
    name_hash: bytes
    treasury: bytes
    token_mint: bytes

    def _args(self) -> bytes:
        return self.name_hash + self.treasury + self.token_mint


@dataclass(frozen=True)
class CreateVestingSchedule(Instruction):
    NAME: ClassVar[str] = "create_vesting_schedule"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ("admin", "organization", "schedule")

    admin: bytes
    organization: bytes
    schedule: bytes
    cliff_duration: int
    total_duration: int
    vesting_interval: int

    def _args(self) -> bytes:
        return struct.pack("<QQQ", self.cliff_duration, self.total_duration, self.vesting_interval)


@dataclass(frozen=True)
class CreateVestingPosition(Instruction):
    """Creates a position and queues its init computation."""
    NAME: ClassVar[str] = "create_vesting_position"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ("admin", "organization", "schedule", "position")

    admin: bytes
    organization: bytes
    schedule: bytes
    position: bytes
    position_id: int
    beneficiary_commitment: bytes
    encrypted_total_amount: bytes
    nonce: int
    start_timestamp: int
    computation: ComputationRequest

    def _args(self) -> bytes:
        return (
            struct.pack("<QQ", self.computation.request_id, self.position_id)
            + self.beneficiary_commitment
            + self.encrypted_total_amount
            + self.nonce.to_bytes(16, "little")
            + struct.pack("<q", self.start_timestamp)
            + self.computation.encode_inputs()
        )


@dataclass(frozen=True)
class AuthorizeClaim(Instruction):
    """Ed25519-gated; creates the NullifierRecord and ClaimAuthorization together."""
    NAME: ClassVar[str] = "authorize_claim_compressed"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = (
        "fee_payer", "organization", "claim_authorization", "nullifier_record",
    )

    fee_payer: bytes
    organization: bytes
    claim_authorization: bytes
    nullifier_record: bytes
    position: bytes                 # compressed position address
    position_id: int
    nullifier: bytes
    withdrawal_destination: bytes
    signer: bytes                   # stealth public key
    message: bytes
    signature: bytes

    def _args(self) -> bytes:
        return (
            struct.pack("<Q", self.position_id)
            + self.nullifier
            + self.withdrawal_destination
            + self.signer
            + self.signature
        )


@dataclass(frozen=True)
class QueueProcessClaim(Instruction):
    NAME: ClassVar[str] = "queue_process_claim_compressed"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = (
        "payer", "organization", "schedule", "position", "claim_authorization",
    )

    payer: bytes
    organization: bytes             # service organization hosting the scratch target
    schedule: bytes
    position: bytes                 # scratch position (callback target)
    claim_authorization: bytes
    position_id: int                # the user's compressed position id
    computation: ComputationRequest

    def _args(self) -> bytes:
        return (
            struct.pack("<QQ", self.computation.request_id, self.position_id)
            + self.computation.encode_inputs()
        )


@dataclass(frozen=True)
class UpdateCompressedPosition(Instruction):
    NAME: ClassVar[str] = "update_compressed_position_claimed"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ("fee_payer", "organization", "claim_authorization")

    fee_payer: bytes
    organization: bytes
    claim_authorization: bytes
    proof: ValidityProof
    account_meta: CompressedAccountMeta
    current: CompressedVestingPosition
    new_encrypted_claimed_amount: bytes
    new_is_fully_claimed: bool

    def _args(self) -> bytes:
        return (
            encode_validity_proof(self.proof)
            + encode_account_meta(self.account_meta)
            + encode_position(self.current)
            + self.new_encrypted_claimed_amount
            + bytes([int(self.new_is_fully_claimed)])
        )


@dataclass(frozen=True)
class WithdrawCompressed(Instruction):
    NAME: ClassVar[str] = "withdraw_compressed"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = (
        "payer", "organization", "claim_authorization", "vault", "vault_authority", "destination",
    )

    payer: bytes
    organization: bytes
    claim_authorization: bytes
    vault: bytes
    vault_authority: bytes
    destination: bytes
    position_id: int
    nullifier: bytes

    def _args(self) -> bytes:
        return struct.pack("<Q", self.position_id) + self.nullifier


@dataclass(frozen=True)
class CreateCompressedPosition(Instruction):
    """Employer funds a compressed position addressed to a stealth payment."""
    NAME: ClassVar[str] = "create_compressed_stealth_position"
    ACCOUNTS: ClassVar[Tuple[str, ...]] = ("admin", "organization", "schedule")

    admin: bytes
    organization: bytes
    schedule: bytes
    address: bytes                  # compressed position address
    position_id: int
    beneficiary_commitment: bytes   # stealth address
    ephemeral_pub: bytes
    encrypted_payload: bytes
    encrypted_total_amount: bytes
    encrypted_claimed_amount: bytes
    nonce: int
    start_timestamp: int

    def _args(self) -> bytes:
        return (
            struct.pack("<Q", self.position_id)
            + self.beneficiary_commitment
            + self.ephemeral_pub
            + struct.pack("<I", len(self.encrypted_payload))
            + self.encrypted_payload
            + self.encrypted_total_amount
            + self.encrypted_claimed_amount
            + self.nonce.to_bytes(16, "little")
            + struct.pack("<q", self.start_timestamp)
        )
