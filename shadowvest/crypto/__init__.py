"""
ShadowVest Cryptography
Ed25519 key arithmetic, raw-scalar signing, and the compute-cluster input cipher.
"""

from shadowvest.crypto.keymath import (
    KeyPair,
    generate_keypair,
    random_scalar,
    scalar_add,
    public_from_scalar,
    scalar_mult,
    point_add,
    shared_secret,
    derive_tweak,
    encrypt_short,
    decrypt_short,
)
from shadowvest.crypto.signing import sign_with_scalar, verify_signature
from shadowvest.crypto.cluster import ClusterCipher, EncryptedValue

__all__ = [
    # Key math
    "KeyPair",
    "generate_keypair",
    "random_scalar",
    "scalar_add",
    "public_from_scalar",
    "scalar_mult",
    "point_add",
    "shared_secret",
    "derive_tweak",
    "encrypt_short",
    "decrypt_short",
    # Signing
    "sign_with_scalar",
    "verify_signature",
    # Cluster inputs
    "ClusterCipher",
    "EncryptedValue",
]
