"""
Deterministic ledger addresses.

Program-derived addresses: sha256(seeds || bump || program_id ||
"ProgramDerivedAddress"), taking the first bump from 255 down whose hash
is not a point on the Ed25519 curve.

Compressed-account addresses: keccak256 over (program_id, seeds) truncated
into the BN254 scalar field, then hashed again with the address tree.
"""

import hashlib
import struct
from typing import Sequence, Tuple

from Crypto.Hash import keccak

from shadowvest.constants import (
    FIELD_PRIME,
    PDA_MARKER,
    SEED_CLAIM_AUTH,
    SEED_COMPRESSED_POSITION,
    SEED_NULLIFIER,
    SEED_ORGANIZATION,
    SEED_POSITION,
    SEED_SCHEDULE,
    SEED_VAULT,
    SEED_VAULT_AUTHORITY,
)
from shadowvest.errors import InvalidParameterError

MAX_SEEDS = 16
MAX_SEED_LEN = 32

_D = (-121665 * pow(121666, FIELD_PRIME - 2, FIELD_PRIME)) % FIELD_PRIME


def is_on_curve(data: bytes) -> bool:
    """Whether 32 bytes decompress to an Edwards point (any subgroup)."""
    if len(data) != 32:
        return False
    y = (int.from_bytes(data, "little") & ((1 << 255) - 1)) % FIELD_PRIME
    y2 = y * y % FIELD_PRIME
    u = (y2 - 1) % FIELD_PRIME
    v = (_D * y2 + 1) % FIELD_PRIME
    x2 = u * pow(v, FIELD_PRIME - 2, FIELD_PRIME) % FIELD_PRIME
    return x2 == 0 or pow(x2, (FIELD_PRIME - 1) // 2, FIELD_PRIME) == 1


def create_program_address(seeds: Sequence[bytes], program_id: bytes) -> bytes:
    if len(seeds) > MAX_SEEDS or any(len(s) > MAX_SEED_LEN for s in seeds):
        raise InvalidParameterError("seeds", "too many or too long")
    digest = hashlib.sha256(b"".join(seeds) + program_id + PDA_MARKER).digest()
    if is_on_curve(digest):
        raise InvalidParameterError("seeds", "derived address lies on the curve")
    return digest


def find_program_address(seeds: Sequence[bytes], program_id: bytes) -> Tuple[bytes, int]:
    for bump in range(255, -1, -1):
        try:
            return create_program_address(list(seeds) + [bytes([bump])], program_id), bump
        except InvalidParameterError:
            continue
    raise InvalidParameterError("seeds", "no viable bump")


def _u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def organization_address(admin: bytes, program_id: bytes) -> bytes:
    return find_program_address([SEED_ORGANIZATION, admin], program_id)[0]


def schedule_address(organization: bytes, schedule_id: int, program_id: bytes) -> bytes:
    return find_program_address([SEED_SCHEDULE, organization, _u64(schedule_id)], program_id)[0]


def position_address(organization: bytes, position_id: int, program_id: bytes) -> bytes:
    return find_program_address([SEED_POSITION, organization, _u64(position_id)], program_id)[0]


def claim_authorization_address(organization: bytes, position_id: int, nullifier: bytes, program_id: bytes) -> bytes:
    return find_program_address(
        [SEED_CLAIM_AUTH, organization, _u64(position_id), nullifier], program_id
    )[0]


def nullifier_record_address(organization: bytes, nullifier: bytes, program_id: bytes) -> bytes:
    return find_program_address([SEED_NULLIFIER, organization, nullifier], program_id)[0]


def vault_address(organization: bytes, program_id: bytes) -> bytes:
    return find_program_address([SEED_VAULT, organization], program_id)[0]


def vault_authority_address(organization: bytes, program_id: bytes) -> bytes:
    return find_program_address([SEED_VAULT_AUTHORITY, organization], program_id)[0]


# ==============================================================================
# Compressed accounts
# ==============================================================================

def _keccak_field(*parts: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    for part in parts:
        h.update(part)
    digest = bytearray(h.digest())
    digest[0] = 0
    return bytes(digest)


def compressed_address_seed(seeds: Sequence[bytes], program_id: bytes) -> bytes:
    return _keccak_field(program_id, *seeds)


def compressed_address(address_seed: bytes, address_tree: bytes) -> bytes:
    return _keccak_field(address_tree, address_seed, b"\xff")


def compressed_position_address(
    organization: bytes,
    position_id: int,
    program_id: bytes,
    address_tree: bytes
) -> bytes:
    seed = compressed_address_seed(
        [SEED_COMPRESSED_POSITION, organization, _u64(position_id)], program_id
    )
    return compressed_address(seed, address_tree)
