"""
ShadowVest KeyMath

Ed25519 scalar/point arithmetic, key pairs, ECDH and short-payload AEAD.

Every operation validates its inputs and fails closed: an out-of-range
scalar or an invalid point raises InvalidKeyMaterialError, it is never
clamped or reduced into something usable.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import nacl.bindings
import nacl.exceptions
import nacl.utils
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shadowvest.constants import (
    CURVE_ORDER,
    DOMAIN_PAYLOAD_KEY,
    PAYLOAD_NONCE_SIZE,
    POINT_SIZE,
    SCALAR_SIZE,
)
from shadowvest.errors import (
    DecryptionFailedError,
    InvalidKeyMaterialError,
    InvalidParameterError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# VALIDATION
# ============================================================================

def scalar_to_int(scalar: bytes) -> int:
    return int.from_bytes(scalar, "little")


def int_to_scalar(value: int) -> bytes:
    if not 0 < value < CURVE_ORDER:
        raise InvalidKeyMaterialError("Scalar out of range")
    return value.to_bytes(SCALAR_SIZE, "little")


def validate_scalar(scalar: bytes, name: str = "scalar") -> bytes:
    """Reject anything that is not a canonical, non-zero scalar mod L."""
    if not isinstance(scalar, (bytes, bytearray)) or len(scalar) != SCALAR_SIZE:
        raise InvalidKeyMaterialError(f"{name} must be {SCALAR_SIZE} bytes")
    value = scalar_to_int(scalar)
    if value == 0:
        raise InvalidKeyMaterialError(f"{name} is zero")
    if value >= CURVE_ORDER:
        raise InvalidKeyMaterialError(f"{name} is not reduced mod L")
    return bytes(scalar)


def is_valid_point(point: bytes) -> bool:
    """Check if bytes encode a valid prime-order Ed25519 point."""
    if not isinstance(point, (bytes, bytearray)) or len(point) != POINT_SIZE:
        return False
    return nacl.bindings.crypto_core_ed25519_is_valid_point(bytes(point))


def validate_point(point: bytes, name: str = "point") -> bytes:
    if not is_valid_point(point):
        raise InvalidKeyMaterialError(f"{name} is not a valid curve point")
    return bytes(point)


# ============================================================================
# ARITHMETIC
# ============================================================================

def random_scalar() -> bytes:
    """Uniform non-zero scalar: 64 random bytes reduced mod L."""
    while True:
        s = nacl.bindings.crypto_core_ed25519_scalar_reduce(nacl.utils.random(64))
        if scalar_to_int(s) != 0:
            return s


def hash_to_scalar(data: bytes) -> bytes:
    """Wide reduction of SHA-512(data) into a scalar."""
    s = nacl.bindings.crypto_core_ed25519_scalar_reduce(hashlib.sha512(data).digest())
    return validate_scalar(s)


def scalar_add(a: bytes, b: bytes) -> bytes:
    """(a + b) mod L; a zero result is rejected."""
    a = validate_scalar(a, "left scalar")
    b = validate_scalar(b, "right scalar")
    return validate_scalar(nacl.bindings.crypto_core_ed25519_scalar_add(a, b), "scalar sum")


def public_from_scalar(scalar: bytes) -> bytes:
    """scalar * G."""
    scalar = validate_scalar(scalar)
    return nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(scalar)


def scalar_mult(scalar: bytes, point: bytes) -> bytes:
    """scalar * P for a validated point P."""
    scalar = validate_scalar(scalar)
    point = validate_point(point)
    try:
        return nacl.bindings.crypto_scalarmult_ed25519_noclamp(scalar, point)
    except nacl.exceptions.RuntimeError as e:
        raise InvalidKeyMaterialError("Scalar multiplication produced the identity") from e


def point_add(p: bytes, q: bytes) -> bytes:
    p = validate_point(p, "left point")
    q = validate_point(q, "right point")
    return validate_point(nacl.bindings.crypto_core_ed25519_add(p, q), "point sum")


# ============================================================================
# KEY PAIRS AND ECDH
# ============================================================================

@dataclass(frozen=True)
class KeyPair:
    """Ed25519 scalar key pair (priv is the raw scalar, not an RFC 8032 seed)."""
    private: bytes
    public: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public={self.public.hex()[:16]}...)"


def generate_keypair() -> KeyPair:
    priv = random_scalar()
    return KeyPair(private=priv, public=public_from_scalar(priv))


def shared_secret(priv: bytes, other_pub: bytes) -> bytes:
    """ECDH on Ed25519: priv * other_pub, compressed."""
    return scalar_mult(priv, other_pub)


def derive_tweak(shared: bytes) -> bytes:
    """
    Hash-to-scalar of an ECDH secret.

    SHA-256 digest read big-endian and reduced mod L.
    """
    if len(shared) != POINT_SIZE:
        raise InvalidKeyMaterialError("Shared secret must be 32 bytes")
    value = int.from_bytes(hashlib.sha256(shared).digest(), "big") % CURVE_ORDER
    return int_to_scalar(value)


def payload_key(shared: bytes) -> bytes:
    """Symmetric key for the payment payload."""
    return hashlib.sha256(DOMAIN_PAYLOAD_KEY + shared).digest()


# ============================================================================
# SHORT PAYLOAD ENCRYPTION
# ============================================================================

def encrypt_short(
    key: bytes,
    nonce: bytes,
    plaintext: bytes,
    aad: Optional[bytes] = None
) -> bytes:
    """AES-256-GCM; returns ciphertext || tag."""
    if len(key) != 32:
        raise InvalidParameterError("key", "must be 32 bytes")
    if len(nonce) != PAYLOAD_NONCE_SIZE:
        raise InvalidParameterError("nonce", f"must be {PAYLOAD_NONCE_SIZE} bytes")
    return AESGCM(key).encrypt(nonce, plaintext, aad)


def decrypt_short(
    key: bytes,
    nonce: bytes,
    ciphertext: bytes,
    aad: Optional[bytes] = None
) -> bytes:
    if len(key) != 32:
        raise InvalidParameterError("key", "must be 32 bytes")
    if len(nonce) != PAYLOAD_NONCE_SIZE:
        raise InvalidParameterError("nonce", f"must be {PAYLOAD_NONCE_SIZE} bytes")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise DecryptionFailedError() from e
