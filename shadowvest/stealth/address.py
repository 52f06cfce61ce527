"""
ShadowVest Stealth Addressing

Dual-key (spend/view) stealth payments on Ed25519.

Protocol:
1. Recipient publishes meta-address (S, V) = (s*G, v*G)
2. Payer picks fresh r, R = r*G, shared = r*V
3. t = H(shared), stealth address P = S + t*G
4. (r, note) is encrypted under a key from the same shared secret
5. Recipient scans: shared' = v*R, checks S + H(shared')*G == P
6. Recipient spends with p = s + t (mod L), p*G == P

The view key alone discovers payments and reads notes; spending needs s.
"""

import hmac
import logging
import secrets
import struct
from dataclasses import dataclass
from typing import Optional

import base58

from shadowvest.constants import (
    DOMAIN_META_SEED,
    MAX_NOTE_SIZE,
    META_ADDRESS_PREFIX,
    PAYLOAD_NONCE_SIZE,
    PAYLOAD_TAG_SIZE,
    POINT_SIZE,
    SCALAR_SIZE,
)
from shadowvest.crypto.keymath import (
    decrypt_short,
    derive_tweak,
    encrypt_short,
    generate_keypair,
    hash_to_scalar,
    payload_key,
    point_add,
    public_from_scalar,
    scalar_add,
    shared_secret,
    validate_point,
    validate_scalar,
)
from shadowvest.crypto.signing import sign_with_scalar
from shadowvest.errors import (
    DecryptionFailedError,
    InvalidKeyMaterialError,
    InvalidParameterError,
    MalformedRecordError,
    ShadowVestError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# KEYS
# ============================================================================

@dataclass(frozen=True)
class MetaAddress:
    """Public (spend, view) pair a recipient publishes."""
    spend_pub: bytes
    view_pub: bytes

    def __post_init__(self):
        validate_point(self.spend_pub, "spend public key")
        validate_point(self.view_pub, "view public key")

    def to_string(self) -> str:
        return ":".join((
            META_ADDRESS_PREFIX,
            base58.b58encode(self.spend_pub).decode(),
            base58.b58encode(self.view_pub).decode(),
        ))

    @classmethod
    def from_string(cls, text: str) -> "MetaAddress":
        parts = text.strip().split(":")
        if len(parts) != 3 or parts[0] != META_ADDRESS_PREFIX:
            raise InvalidParameterError("meta_address", f"expected '{META_ADDRESS_PREFIX}:<spend>:<view>'")
        try:
            spend_pub = base58.b58decode(parts[1])
            view_pub = base58.b58decode(parts[2])
        except ValueError as e:
            raise InvalidKeyMaterialError("Meta-address is not base58") from e
        return cls(spend_pub=spend_pub, view_pub=view_pub)

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class MetaKeys:
    """
    Recipient's long-lived stealth identity.

    spend_priv / view_priv never leave the recipient's device in plaintext.
    """
    spend_priv: bytes
    view_priv: bytes
    spend_pub: bytes
    view_pub: bytes

    def __post_init__(self):
        validate_scalar(self.spend_priv, "spend private key")
        validate_scalar(self.view_priv, "view private key")
        if public_from_scalar(self.spend_priv) != self.spend_pub:
            raise InvalidKeyMaterialError("spend public key does not match private key")
        if public_from_scalar(self.view_priv) != self.view_pub:
            raise InvalidKeyMaterialError("view public key does not match private key")

    @classmethod
    def generate(cls) -> "MetaKeys":
        """Two independent key pairs."""
        spend = generate_keypair()
        view = generate_keypair()
        return cls(
            spend_priv=spend.private,
            view_priv=view.private,
            spend_pub=spend.public,
            view_pub=view.public,
        )

    @classmethod
    def from_seed(cls, seed: bytes) -> "MetaKeys":
        """Deterministic keys for wallet recovery."""
        if len(seed) < 32:
            raise InvalidKeyMaterialError("Seed must be at least 32 bytes")
        spend_priv = hash_to_scalar(DOMAIN_META_SEED + b"spend" + seed)
        view_priv = hash_to_scalar(DOMAIN_META_SEED + b"view" + seed)
        return cls(
            spend_priv=spend_priv,
            view_priv=view_priv,
            spend_pub=public_from_scalar(spend_priv),
            view_pub=public_from_scalar(view_priv),
        )

    @property
    def meta_address(self) -> MetaAddress:
        return MetaAddress(spend_pub=self.spend_pub, view_pub=self.view_pub)

    def __repr__(self) -> str:
        return f"MetaKeys({self.meta_address.to_string()})"


@dataclass(frozen=True)
class StealthKeypair:
    """One-time spending key for a single stealth address."""
    private: bytes
    public: bytes

    @property
    def address(self) -> str:
        return base58.b58encode(self.public).decode()

    def sign(self, message: bytes) -> bytes:
        return sign_with_scalar(self.private, message)

    def __repr__(self) -> str:
        return f"StealthKeypair({self.address})"


def generate_meta_keys() -> MetaKeys:
    return MetaKeys.generate()


# ============================================================================
# PAYMENTS
# ============================================================================

@dataclass(frozen=True)
class StealthPayment:
    """
    One payment instance. Never mutated.

    Wire format: ephemeral_pub(32) || stealth_address(32) ||
    payload_len(u16 LE) || encrypted_payload
    """
    ephemeral_pub: bytes
    stealth_address: bytes
    encrypted_payload: bytes

    @property
    def stealth_address_b58(self) -> str:
        return base58.b58encode(self.stealth_address).decode()

    def to_bytes(self) -> bytes:
        return (
            self.ephemeral_pub
            + self.stealth_address
            + struct.pack("<H", len(self.encrypted_payload))
            + self.encrypted_payload
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "StealthPayment":
        header = 2 * POINT_SIZE + 2
        if len(data) < header:
            raise MalformedRecordError("StealthPayment", f"{len(data)} bytes, need at least {header}")
        (payload_len,) = struct.unpack_from("<H", data, 2 * POINT_SIZE)
        if len(data) != header + payload_len:
            raise MalformedRecordError("StealthPayment", "payload length does not match")
        return cls(
            ephemeral_pub=data[0:32],
            stealth_address=data[32:64],
            encrypted_payload=data[header:],
        )


@dataclass(frozen=True)
class DecryptedPayload:
    ephemeral_priv: bytes
    note: str


def _stealth_point(spend_pub: bytes, shared: bytes) -> bytes:
    tweak = derive_tweak(shared)
    return point_add(spend_pub, public_from_scalar(tweak))


def _encode_note(note: str) -> bytes:
    note_bytes = note.encode("utf-8")
    if len(note_bytes) > MAX_NOTE_SIZE:
        raise InvalidParameterError("note", f"longer than {MAX_NOTE_SIZE} bytes")
    return struct.pack("<H", len(note_bytes)) + note_bytes


def generate_payment(meta_address: MetaAddress, note: str = "") -> StealthPayment:
    """
    Employer side: derive a one-time address for the recipient.

    Every call draws a fresh ephemeral key.
    """
    ephemeral = generate_keypair()
    shared = shared_secret(ephemeral.private, meta_address.view_pub)
    stealth_pub = _stealth_point(meta_address.spend_pub, shared)

    nonce = secrets.token_bytes(PAYLOAD_NONCE_SIZE)
    plaintext = ephemeral.private + _encode_note(note)
    payload = nonce + encrypt_short(payload_key(shared), nonce, plaintext, aad=ephemeral.public)

    return StealthPayment(
        ephemeral_pub=ephemeral.public,
        stealth_address=stealth_pub,
        encrypted_payload=payload,
    )


def is_my_payment(
    view_priv: bytes,
    spend_pub: bytes,
    ephemeral_pub: bytes,
    claimed_stealth_address: bytes
) -> bool:
    """
    Ownership test used while scanning.

    Returns False on foreign or malformed input, never raises.
    """
    if not isinstance(claimed_stealth_address, (bytes, bytearray)):
        return False
    if len(claimed_stealth_address) != POINT_SIZE:
        return False
    try:
        shared = shared_secret(view_priv, ephemeral_pub)
        expected = _stealth_point(spend_pub, shared)
    except ShadowVestError:
        return False
    return hmac.compare_digest(expected, bytes(claimed_stealth_address))


def decrypt_payload(encrypted_payload: bytes, view_priv: bytes, ephemeral_pub: bytes) -> DecryptedPayload:
    """
    Recipient side: recover (ephemeral_priv, note).

    Raises:
        DecryptionFailedError: not addressed to this viewer, or tampered
    """
    minimum = PAYLOAD_NONCE_SIZE + SCALAR_SIZE + 2 + PAYLOAD_TAG_SIZE
    if len(encrypted_payload) < minimum:
        raise DecryptionFailedError("Payload too short")

    shared = shared_secret(view_priv, ephemeral_pub)
    nonce = encrypted_payload[:PAYLOAD_NONCE_SIZE]
    plaintext = decrypt_short(
        payload_key(shared), nonce, encrypted_payload[PAYLOAD_NONCE_SIZE:], aad=ephemeral_pub
    )

    ephemeral_priv = plaintext[:SCALAR_SIZE]
    (note_len,) = struct.unpack_from("<H", plaintext, SCALAR_SIZE)
    note_bytes = plaintext[SCALAR_SIZE + 2:]
    if len(note_bytes) != note_len:
        raise DecryptionFailedError("Note length mismatch")

    try:
        if public_from_scalar(ephemeral_priv) != ephemeral_pub:
            raise DecryptionFailedError("Ephemeral key mismatch")
        note = note_bytes.decode("utf-8")
    except (InvalidKeyMaterialError, UnicodeDecodeError) as e:
        raise DecryptionFailedError("Payload content is invalid") from e

    return DecryptedPayload(ephemeral_priv=ephemeral_priv, note=note)


def derive_spending_keypair(
    spend_priv: bytes,
    view_pub: bytes,
    ephemeral_priv: bytes,
    expected_address: Optional[bytes] = None
) -> StealthKeypair:
    """
    p = (s + H(r*V)) mod L.

    With expected_address given, the derived public key must equal it.
    """
    shared = shared_secret(ephemeral_priv, view_pub)
    stealth_priv = scalar_add(spend_priv, derive_tweak(shared))
    stealth_pub = public_from_scalar(stealth_priv)

    if expected_address is not None and not hmac.compare_digest(stealth_pub, expected_address):
        raise InvalidKeyMaterialError("Stealth key derivation mismatch")

    return StealthKeypair(private=stealth_priv, public=stealth_pub)
