"""
Confidential-compute input cipher.

A request encrypts every u64 input separately under a key agreed with the
compute cluster (X25519 + HKDF-SHA256). Each input gets its own fresh nonce
and becomes a fixed 32-byte ciphertext (AES-CTR over a 32-byte
little-endian field element).
"""

import secrets
from dataclasses import dataclass
from typing import Tuple

from Crypto.Cipher import AES
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from shadowvest.constants import (
    CIPHERTEXT_SIZE,
    CLUSTER_NONCE_SIZE,
    DOMAIN_CLUSTER_KEY,
    U64_MAX,
)
from shadowvest.errors import (
    DecryptionFailedError,
    InvalidKeyMaterialError,
    InvalidParameterError,
)


@dataclass(frozen=True)
class EncryptedValue:
    ciphertext: bytes   # 32 bytes
    nonce: bytes        # 16 bytes

    @property
    def nonce_u128(self) -> int:
        return int.from_bytes(self.nonce, "little")


def x25519_public_bytes(private_key: X25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def _derive_key(private_key: X25519PrivateKey, peer_public: bytes) -> bytes:
    if len(peer_public) != 32:
        raise InvalidKeyMaterialError("X25519 public key must be 32 bytes")
    try:
        shared = private_key.exchange(X25519PublicKey.from_public_bytes(peer_public))
    except ValueError as e:
        # all-zero shared secret (low-order peer key)
        raise InvalidKeyMaterialError("X25519 exchange rejected peer key") from e
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=DOMAIN_CLUSTER_KEY,
    ).derive(shared)


class ClusterCipher:
    """Symmetric cipher bound to one computation request."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise InvalidParameterError("key", "must be 32 bytes")
        self._key = key

    @classmethod
    def for_request(cls, cluster_public_key: bytes) -> Tuple["ClusterCipher", bytes]:
        """
        Client side: fresh ephemeral X25519 key against the cluster key.

        Returns:
            (cipher, ephemeral public key to submit with the request)
        """
        ephemeral = X25519PrivateKey.generate()
        return cls(_derive_key(ephemeral, cluster_public_key)), x25519_public_bytes(ephemeral)

    @classmethod
    def for_cluster(cls, cluster_private_key: X25519PrivateKey, request_public_key: bytes) -> "ClusterCipher":
        """Cluster side: same key from the request's ephemeral public key."""
        return cls(_derive_key(cluster_private_key, request_public_key))

    def _ctr(self, nonce: bytes):
        return AES.new(self._key, AES.MODE_CTR, nonce=b"", initial_value=nonce)

    def encrypt_u64(self, value: int) -> EncryptedValue:
        if not 0 <= value <= U64_MAX:
            raise InvalidParameterError("value", "must fit in u64")
        nonce = secrets.token_bytes(CLUSTER_NONCE_SIZE)
        plaintext = value.to_bytes(CIPHERTEXT_SIZE, "little")
        return EncryptedValue(ciphertext=self._ctr(nonce).encrypt(plaintext), nonce=nonce)

    def decrypt_u64(self, encrypted: EncryptedValue) -> int:
        if len(encrypted.ciphertext) != CIPHERTEXT_SIZE or len(encrypted.nonce) != CLUSTER_NONCE_SIZE:
            raise DecryptionFailedError("Ciphertext has wrong width")
        value = int.from_bytes(self._ctr(encrypted.nonce).decrypt(encrypted.ciphertext), "little")
        if value > U64_MAX:
            raise DecryptionFailedError("Decrypted value does not fit in u64")
        return value
