"""
ShadowVest Claim Authorizer

Binds a claim to (position, nullifier, destination) with an Ed25519
signature from the stealth key, and submits it. The ledger creates the
NullifierRecord and the ClaimAuthorization in one step; that record
creation is the at-most-once lock.

Message layout (72 bytes):
    position_id(u64 LE) || nullifier(32) || destination(32)
"""

import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass
from typing import Optional

from shadowvest.core.types import ClaimAuthorization, ClaimStatus, b58
from shadowvest.crypto.signing import verify_signature
from shadowvest.errors import (
    AuthorizationDeniedError,
    InvalidParameterError,
    PositionNotFoundError,
)
from shadowvest.ledger.addresses import (
    claim_authorization_address,
    compressed_position_address,
    nullifier_record_address,
)
from shadowvest.ledger.instructions import AuthorizeClaim
from shadowvest.ledger.interface import LedgerProgram, LedgerReader
from shadowvest.stealth.address import StealthKeypair

logger = logging.getLogger(__name__)

CLAIM_MESSAGE_SIZE = 72


def derive_nullifier(stealth_pub: bytes, position_id: int) -> bytes:
    """sha256(stealth_pub || position_id LE). Deterministic, one-way."""
    if len(stealth_pub) != 32:
        raise InvalidParameterError("stealth_pub", "must be 32 bytes")
    return hashlib.sha256(stealth_pub + struct.pack("<Q", position_id)).digest()


def build_claim_message(position_id: int, nullifier: bytes, destination: bytes) -> bytes:
    if len(nullifier) != 32:
        raise InvalidParameterError("nullifier", "must be 32 bytes")
    if len(destination) != 32:
        raise InvalidParameterError("destination", "must be 32 bytes")
    return struct.pack("<Q", position_id) + nullifier + destination


@dataclass(frozen=True)
class SignedClaim:
    position_id: int
    nullifier: bytes
    destination: bytes
    signer: bytes
    message: bytes
    signature: bytes


def sign_claim(
    stealth_keypair: StealthKeypair,
    position_id: int,
    nullifier: bytes,
    destination: bytes
) -> SignedClaim:
    message = build_claim_message(position_id, nullifier, destination)
    return SignedClaim(
        position_id=position_id,
        nullifier=nullifier,
        destination=destination,
        signer=stealth_keypair.public,
        message=message,
        signature=stealth_keypair.sign(message),
    )


def verify_claim(
    message: bytes,
    signature: bytes,
    signer: bytes,
    beneficiary_commitment: bytes,
    position_id: int,
    nullifier: bytes,
    destination: bytes,
) -> None:
    """
    Verifier side of the gate.

    Raises:
        AuthorizationDeniedError: wrong signer, wrong message or bad signature
    """
    if not hmac.compare_digest(signer, beneficiary_commitment):
        raise AuthorizationDeniedError("Signer is not the position beneficiary")
    if message != build_claim_message(position_id, nullifier, destination):
        raise AuthorizationDeniedError("Signed message does not match claim arguments")
    if not verify_signature(signer, message, signature):
        raise AuthorizationDeniedError("Invalid Ed25519 signature")


@dataclass(frozen=True)
class AuthorizationReceipt:
    transaction_id: str
    claim_authorization: bytes
    nullifier_record: bytes
    claim: SignedClaim


class ClaimAuthorizer:
    """The single gate that admits a claim into processing."""

    def __init__(self, reader: LedgerReader, program: LedgerProgram, fee_payer: bytes):
        self.reader = reader
        self.program = program
        self.fee_payer = fee_payer

    def position_address(self, organization: bytes, position_id: int) -> bytes:
        return compressed_position_address(
            organization, position_id, self.reader.program_id, self.reader.address_tree
        )

    def claim_authorization_address(self, organization: bytes, position_id: int, nullifier: bytes) -> bytes:
        return claim_authorization_address(organization, position_id, nullifier, self.reader.program_id)

    async def authorize(
        self,
        stealth_keypair: StealthKeypair,
        organization: bytes,
        position_id: int,
        destination: bytes,
        nullifier: Optional[bytes] = None,
    ) -> AuthorizationReceipt:
        """
        Sign and submit a claim authorization.

        Raises:
            PositionNotFoundError: no compressed position at (organization, position_id)
            AuthorizationDeniedError: keypair is not the beneficiary
            AlreadyClaimedError: nullifier already recorded (from the ledger)
        """
        if nullifier is None:
            nullifier = derive_nullifier(stealth_keypair.public, position_id)

        address = self.position_address(organization, position_id)
        account = await self.reader.get_compressed_position(address)
        if account is None:
            raise PositionNotFoundError(b58(organization), position_id)
        if not hmac.compare_digest(account.position.beneficiary_commitment, stealth_keypair.public):
            raise AuthorizationDeniedError("Stealth key does not own this position")

        claim = sign_claim(stealth_keypair, position_id, nullifier, destination)
        auth_address = self.claim_authorization_address(organization, position_id, nullifier)
        record_address = nullifier_record_address(organization, nullifier, self.reader.program_id)

        tx = await self.program.authorize_claim(AuthorizeClaim(
            fee_payer=self.fee_payer,
            organization=organization,
            claim_authorization=auth_address,
            nullifier_record=record_address,
            position=address,
            position_id=position_id,
            nullifier=nullifier,
            withdrawal_destination=destination,
            signer=claim.signer,
            message=claim.message,
            signature=claim.signature,
        ))
        logger.info(f"Claim authorized for position {position_id}: {tx}")

        return AuthorizationReceipt(
            transaction_id=tx,
            claim_authorization=auth_address,
            nullifier_record=record_address,
            claim=claim,
        )

    async def fetch(self, organization: bytes, position_id: int, nullifier: bytes) -> Optional[ClaimAuthorization]:
        return await self.reader.fetch_claim_authorization(
            self.claim_authorization_address(organization, position_id, nullifier)
        )

    async def status(self, organization: bytes, position_id: int, nullifier: bytes) -> ClaimStatus:
        auth = await self.fetch(organization, position_id, nullifier)
        return auth.status if auth is not None else ClaimStatus.UNAUTHORIZED
