"""
Ed25519 signatures from a raw scalar.

Stealth spending keys are scalars (spend + tweak mod L) with no RFC 8032
seed behind them, so signing computes R and S directly. The result is an
ordinary Ed25519 signature and verifies with any standard verifier.
"""

import hashlib

import nacl.bindings
import nacl.exceptions
import nacl.signing

from shadowvest.constants import DOMAIN_SIGN_NONCE, POINT_SIZE, SIGNATURE_SIZE
from shadowvest.crypto.keymath import public_from_scalar, validate_scalar


def _reduce(data: bytes) -> bytes:
    return nacl.bindings.crypto_core_ed25519_scalar_reduce(hashlib.sha512(data).digest())


def sign_with_scalar(scalar: bytes, message: bytes) -> bytes:
    """Sign message with scalar a; returns R || S (64 bytes)."""
    validate_scalar(scalar, "signing scalar")
    public = public_from_scalar(scalar)

    prefix = hashlib.sha512(DOMAIN_SIGN_NONCE + scalar).digest()[32:]
    r = _reduce(prefix + message)
    big_r = nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(r)

    k = _reduce(big_r + public + message)
    s = nacl.bindings.crypto_core_ed25519_scalar_add(
        r, nacl.bindings.crypto_core_ed25519_scalar_mul(k, scalar)
    )
    return big_r + s


def verify_signature(public: bytes, message: bytes, signature: bytes) -> bool:
    """Standard Ed25519 verification. Never raises."""
    if len(public) != POINT_SIZE or len(signature) != SIGNATURE_SIZE:
        return False
    try:
        nacl.signing.VerifyKey(public).verify(message, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
        return False
