"""
ShadowVest Binary Codec

CompressedVestingPosition (226 bytes, little-endian):

    owner(32) | organization(32) | schedule(32) | position_id(u64) |
    beneficiary_commitment(32) | encrypted_total_amount(32) |
    encrypted_claimed_amount(32) | nonce(u128) | start_timestamp(i64) |
    is_active(u8) | is_fully_claimed(u8)

Some stores prepend an 8-byte record tag (234 bytes); the decoder tells the
two apart by length. Program accounts carry an 8-byte account tag followed
by their fields in declaration order.
"""

import hashlib
import struct
from typing import Tuple

from shadowvest.constants import (
    ACCOUNT_META_SIZE,
    ACCOUNT_TAG_SIZE,
    ADDRESS_SIZE,
    CIPHERTEXT_SIZE,
    POSITION_RECORD_SIZE,
    RECORD_TAG_SIZE,
    U64_MAX,
    VALIDITY_PROOF_SIZE,
)
from shadowvest.core.types import (
    ClaimAuthorization,
    CompressedAccountMeta,
    CompressedVestingPosition,
    NullifierRecord,
    Organization,
    ValidityProof,
    VestingPosition,
    VestingSchedule,
)
from shadowvest.errors import MalformedRecordError

U128_MAX = 2**128 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

POSITION_RECORD_TAG = hashlib.sha256(b"CompressedVestingPosition").digest()[:RECORD_TAG_SIZE]

_POSITION_FMT = "<32s32s32sQ32s32s32s16sqBB"


def account_tag(name: str) -> bytes:
    """8-byte account discriminator: sha256("account:<Name>")[:8]."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:ACCOUNT_TAG_SIZE]


def _flag(record: str, value: int) -> bool:
    if value not in (0, 1):
        raise MalformedRecordError(record, f"boolean byte is {value}")
    return value == 1


def _check_bytes(record: str, name: str, value: bytes, size: int) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        raise MalformedRecordError(record, f"{name} must be {size} bytes")


def _check_range(record: str, name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise MalformedRecordError(record, f"{name} out of range")


# ==============================================================================
# Compressed position
# ==============================================================================

def encode_position(position: CompressedVestingPosition, tagged: bool = False) -> bytes:
    record = "CompressedVestingPosition"
    for name in ("owner", "organization", "schedule", "beneficiary_commitment"):
        _check_bytes(record, name, getattr(position, name), ADDRESS_SIZE)
    for name in ("encrypted_total_amount", "encrypted_claimed_amount"):
        _check_bytes(record, name, getattr(position, name), CIPHERTEXT_SIZE)
    _check_range(record, "position_id", position.position_id, 0, U64_MAX)
    _check_range(record, "nonce", position.nonce, 0, U128_MAX)
    _check_range(record, "start_timestamp", position.start_timestamp, I64_MIN, I64_MAX)

    body = struct.pack(
        _POSITION_FMT,
        position.owner,
        position.organization,
        position.schedule,
        position.position_id,
        position.beneficiary_commitment,
        position.encrypted_total_amount,
        position.encrypted_claimed_amount,
        position.nonce.to_bytes(16, "little"),
        position.start_timestamp,
        int(position.is_active),
        int(position.is_fully_claimed),
    )
    return POSITION_RECORD_TAG + body if tagged else body


def decode_position(data: bytes) -> CompressedVestingPosition:
    record = "CompressedVestingPosition"
    if len(data) == POSITION_RECORD_SIZE + RECORD_TAG_SIZE:
        data = data[RECORD_TAG_SIZE:]
    elif len(data) != POSITION_RECORD_SIZE:
        raise MalformedRecordError(
            record,
            f"{len(data)} bytes, expected {POSITION_RECORD_SIZE} or {POSITION_RECORD_SIZE + RECORD_TAG_SIZE}"
        )

    (owner, organization, schedule, position_id, commitment, total, claimed,
     nonce, start, active, fully_claimed) = struct.unpack(_POSITION_FMT, data)

    return CompressedVestingPosition(
        owner=owner,
        organization=organization,
        schedule=schedule,
        position_id=position_id,
        beneficiary_commitment=commitment,
        encrypted_total_amount=total,
        encrypted_claimed_amount=claimed,
        nonce=int.from_bytes(nonce, "little"),
        start_timestamp=start,
        is_active=_flag(record, active),
        is_fully_claimed=_flag(record, fully_claimed),
    )


# ==============================================================================
# Compressed-state update witnesses
# ==============================================================================

def encode_validity_proof(proof: ValidityProof) -> bytes:
    """[1] || a || b || c, or [0] when the account is proven by index."""
    if not proof.is_present:
        return b"\x00"
    _check_bytes("ValidityProof", "a", proof.a, 32)
    _check_bytes("ValidityProof", "b", proof.b, 64)
    _check_bytes("ValidityProof", "c", proof.c, 32)
    out = b"\x01" + proof.a + proof.b + proof.c
    return out


def decode_validity_proof(data: bytes) -> ValidityProof:
    if data == b"\x00":
        return ValidityProof()
    if len(data) != VALIDITY_PROOF_SIZE or data[0] != 1:
        raise MalformedRecordError("ValidityProof", f"{len(data)} bytes")
    return ValidityProof(a=data[1:33], b=data[33:97], c=data[97:129])


def encode_account_meta(meta: CompressedAccountMeta) -> bytes:
    record = "CompressedAccountMeta"
    _check_bytes(record, "address", meta.address, ADDRESS_SIZE)
    _check_range(record, "root_index", meta.root_index, 0, 0xFFFF)
    _check_range(record, "leaf_index", meta.leaf_index, 0, 0xFFFFFFFF)
    for name in ("tree_index", "queue_index", "output_tree_index"):
        _check_range(record, name, getattr(meta, name), 0, 0xFF)

    out = struct.pack(
        "<HBBBI32sB",
        meta.root_index,
        int(meta.prove_by_index),
        meta.tree_index,
        meta.queue_index,
        meta.leaf_index,
        meta.address,
        meta.output_tree_index,
    )
    return out


def decode_account_meta(data: bytes) -> CompressedAccountMeta:
    if len(data) != ACCOUNT_META_SIZE:
        raise MalformedRecordError("CompressedAccountMeta", f"{len(data)} bytes")
    root, by_index, tree, queue, leaf, address, out_tree = struct.unpack("<HBBBI32sB", data)
    return CompressedAccountMeta(
        root_index=root,
        tree_index=tree,
        queue_index=queue,
        leaf_index=leaf,
        address=address,
        output_tree_index=out_tree,
        prove_by_index=_flag("CompressedAccountMeta", by_index),
    )


# ==============================================================================
# Program accounts
# ==============================================================================

_ORGANIZATION_FMT = "<32s32sQQ32s32sBB"
_SCHEDULE_FMT = "<32sQQQQ32sBQB"
_VESTING_POSITION_FMT = "<32s32sQ32s32s32s16sqBBB"
_CLAIM_AUTH_FMT = "<32s32s32sQBBBqB"
_NULLIFIER_FMT = "<32s32sqB"


def _pack_account(name: str, fmt: str, *fields) -> bytes:
    try:
        return account_tag(name) + struct.pack(fmt, *fields)
    except struct.error as e:
        raise MalformedRecordError(name, str(e)) from e


def _unpack_account(name: str, fmt: str, data: bytes) -> Tuple:
    # allocated space may exceed the struct, trailing bytes are ignored
    needed = ACCOUNT_TAG_SIZE + struct.calcsize(fmt)
    if len(data) < needed:
        raise MalformedRecordError(name, f"{len(data)} bytes, need {needed}")
    if data[:ACCOUNT_TAG_SIZE] != account_tag(name):
        raise MalformedRecordError(name, "account tag mismatch")
    return struct.unpack_from(fmt, data, ACCOUNT_TAG_SIZE)


def encode_organization(org: Organization) -> bytes:
    return _pack_account(
        "Organization", _ORGANIZATION_FMT,
        org.admin, org.name_hash, org.schedule_count, org.position_count,
        org.treasury, org.token_mint, int(org.is_active), org.bump,
    )


def decode_organization(data: bytes) -> Organization:
    (admin, name_hash, schedules, positions, treasury, mint,
     active, bump) = _unpack_account("Organization", _ORGANIZATION_FMT, data)
    return Organization(
        admin=admin,
        name_hash=name_hash,
        schedule_count=schedules,
        position_count=positions,
        treasury=treasury,
        token_mint=mint,
        is_active=_flag("Organization", active),
        bump=bump,
    )


def encode_schedule(schedule: VestingSchedule) -> bytes:
    return _pack_account(
        "VestingSchedule", _SCHEDULE_FMT,
        schedule.organization, schedule.schedule_id, schedule.cliff_duration,
        schedule.total_duration, schedule.vesting_interval, schedule.token_mint,
        int(schedule.is_active), schedule.position_count, schedule.bump,
    )


def decode_schedule(data: bytes) -> VestingSchedule:
    (org, schedule_id, cliff, total, interval, mint, active,
     positions, bump) = _unpack_account("VestingSchedule", _SCHEDULE_FMT, data)
    return VestingSchedule(
        organization=org,
        schedule_id=schedule_id,
        cliff_duration=cliff,
        total_duration=total,
        vesting_interval=interval,
        token_mint=mint,
        is_active=_flag("VestingSchedule", active),
        position_count=positions,
        bump=bump,
    )


def encode_vesting_position(position: VestingPosition) -> bytes:
    return _pack_account(
        "VestingPosition", _VESTING_POSITION_FMT,
        position.organization, position.schedule, position.position_id,
        position.beneficiary_commitment, position.encrypted_total_amount,
        position.encrypted_claimed_amount, position.nonce.to_bytes(16, "little"),
        position.start_timestamp, int(position.is_active),
        int(position.is_fully_claimed), position.bump,
    )


def decode_vesting_position(data: bytes) -> VestingPosition:
    (org, schedule, position_id, commitment, total, claimed, nonce, start,
     active, fully, bump) = _unpack_account("VestingPosition", _VESTING_POSITION_FMT, data)
    return VestingPosition(
        organization=org,
        schedule=schedule,
        position_id=position_id,
        beneficiary_commitment=commitment,
        encrypted_total_amount=total,
        encrypted_claimed_amount=claimed,
        nonce=int.from_bytes(nonce, "little"),
        start_timestamp=start,
        is_active=_flag("VestingPosition", active),
        is_fully_claimed=_flag("VestingPosition", fully),
        bump=bump,
    )


def encode_claim_authorization(auth: ClaimAuthorization) -> bytes:
    return _pack_account(
        "ClaimAuthorization", _CLAIM_AUTH_FMT,
        auth.position, auth.nullifier, auth.withdrawal_destination,
        auth.claim_amount, int(auth.is_authorized), int(auth.is_processed),
        int(auth.is_withdrawn), auth.authorized_at, auth.bump,
    )


def decode_claim_authorization(data: bytes) -> ClaimAuthorization:
    record = "ClaimAuthorization"
    (position, nullifier, destination, amount, authorized, processed,
     withdrawn, authorized_at, bump) = _unpack_account(record, _CLAIM_AUTH_FMT, data)
    return ClaimAuthorization(
        position=position,
        nullifier=nullifier,
        withdrawal_destination=destination,
        claim_amount=amount,
        is_authorized=_flag(record, authorized),
        is_processed=_flag(record, processed),
        is_withdrawn=_flag(record, withdrawn),
        authorized_at=authorized_at,
        bump=bump,
    )


def encode_nullifier_record(record: NullifierRecord, bump: int = 0) -> bytes:
    return _pack_account(
        "NullifierRecord", _NULLIFIER_FMT,
        record.nullifier, record.position, record.used_at, bump,
    )


def decode_nullifier_record(data: bytes, organization: bytes) -> NullifierRecord:
    """The account does not store its organization; it is part of the address."""
    nullifier, position, used_at, _bump = _unpack_account("NullifierRecord", _NULLIFIER_FMT, data)
    return NullifierRecord(
        organization=organization,
        nullifier=nullifier,
        position=position,
        used_at=used_at,
    )
