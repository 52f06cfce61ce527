"""
ShadowVest Claim Authorization Tests
Ed25519 gate, nullifiers and at-most-once claims.
"""

import asyncio
import secrets
import struct

import pytest

from shadowvest.claims.authorizer import (
    CLAIM_MESSAGE_SIZE,
    build_claim_message,
    derive_nullifier,
    sign_claim,
    verify_claim,
)
from shadowvest.core.types import ClaimStatus
from shadowvest.crypto.keymath import generate_keypair
from shadowvest.errors import AlreadyClaimedError, AuthorizationDeniedError, PositionNotFoundError
from shadowvest.ledger.addresses import claim_authorization_address, nullifier_record_address
from shadowvest.ledger.instructions import AuthorizeClaim
from shadowvest.stealth.address import (
    StealthKeypair,
    decrypt_payload,
    derive_spending_keypair,
    generate_meta_keys,
)
from shadowvest.stealth.scanner import StealthScanner


async def receive(employer, keys, amount=1_000, note=""):
    """Employer funds a position for keys; returns (funded, stealth keypair)."""
    funded = await employer.pay(keys.meta_address, amount, note=note)
    decrypted = decrypt_payload(funded.payment.encrypted_payload, keys.view_priv, funded.payment.ephemeral_pub)
    keypair = derive_spending_keypair(
        keys.spend_priv, keys.view_pub, decrypted.ephemeral_priv, expected_address=funded.payment.stealth_address
    )
    return funded, keypair


# =============================================================================
# Test: Nullifier and message
# =============================================================================

class TestNullifier:

    def test_deterministic(self):
        key = secrets.token_bytes(32)
        assert derive_nullifier(key, 7) == derive_nullifier(key, 7)

    def test_distinct_per_position(self):
        key = secrets.token_bytes(32)
        assert derive_nullifier(key, 1) != derive_nullifier(key, 2)

    def test_distinct_per_identity(self):
        assert derive_nullifier(secrets.token_bytes(32), 1) != derive_nullifier(secrets.token_bytes(32), 1)

    def test_message_layout(self):
        nullifier, destination = secrets.token_bytes(32), secrets.token_bytes(32)
        message = build_claim_message(258, nullifier, destination)

        assert len(message) == CLAIM_MESSAGE_SIZE
        assert struct.unpack_from("<Q", message, 0)[0] == 258
        assert message[8:40] == nullifier
        assert message[40:72] == destination


class TestVerifyClaim:

    @pytest.fixture
    def signed(self):
        kp = generate_keypair()
        keypair = StealthKeypair(private=kp.private, public=kp.public)
        claim = sign_claim(keypair, 3, secrets.token_bytes(32), secrets.token_bytes(32))
        return keypair, claim

    def test_valid(self, signed):
        keypair, claim = signed
        verify_claim(claim.message, claim.signature, claim.signer, keypair.public,
                     claim.position_id, claim.nullifier, claim.destination)

    def test_signer_not_beneficiary(self, signed):
        _, claim = signed
        with pytest.raises(AuthorizationDeniedError):
            verify_claim(claim.message, claim.signature, claim.signer, secrets.token_bytes(32),
                         claim.position_id, claim.nullifier, claim.destination)

    def test_message_bound_to_destination(self, signed):
        keypair, claim = signed
        with pytest.raises(AuthorizationDeniedError):
            verify_claim(claim.message, claim.signature, claim.signer, keypair.public,
                         claim.position_id, claim.nullifier, secrets.token_bytes(32))

    def test_bad_signature(self, signed):
        keypair, claim = signed
        forged = bytes(64)
        with pytest.raises(AuthorizationDeniedError):
            verify_claim(claim.message, forged, claim.signer, keypair.public,
                         claim.position_id, claim.nullifier, claim.destination)


# =============================================================================
# Test: Authorization against the ledger
# =============================================================================

class TestAuthorize:

    @pytest.mark.asyncio
    async def test_happy_path(self, employer, authorizer, meta_keys):
        """Pay with a note, read it back, derive the key and authorize a claim."""
        await employer.pay(meta_keys.meta_address, 1_000, note="Q1 bonus")

        (found,) = StealthScanner.from_meta_keys(meta_keys).scan(employer.ledger.payment_events)
        assert found.note == "Q1 bonus"
        keypair = found.spending_keypair()
        assert keypair.public == found.event.stealth_address

        destination = secrets.token_bytes(32)
        receipt = await authorizer.authorize(keypair, employer.organization, found.event.position_id, destination)

        auth = await authorizer.fetch(employer.organization, found.event.position_id, receipt.claim.nullifier)
        assert auth.is_authorized is True
        assert auth.is_processed is False
        assert auth.withdrawal_destination == destination
        assert auth.status is ClaimStatus.AUTHORIZED

        record = await employer.ledger.nullifiers.get(employer.organization, receipt.claim.nullifier)
        assert record is not None
        assert record.position == authorizer.position_address(employer.organization, found.event.position_id)

    @pytest.mark.asyncio
    async def test_default_nullifier(self, employer, authorizer, meta_keys):
        funded, keypair = await receive(employer, meta_keys)
        receipt = await authorizer.authorize(keypair, employer.organization, funded.position_id, secrets.token_bytes(32))
        assert receipt.claim.nullifier == derive_nullifier(keypair.public, funded.position_id)

    @pytest.mark.asyncio
    async def test_double_claim_rejected(self, employer, authorizer, meta_keys):
        funded, keypair = await receive(employer, meta_keys)
        nullifier = derive_nullifier(keypair.public, funded.position_id)

        await authorizer.authorize(keypair, employer.organization, funded.position_id, secrets.token_bytes(32), nullifier)

        # Different destination, same nullifier
        with pytest.raises(AlreadyClaimedError):
            await authorizer.authorize(
                keypair, employer.organization, funded.position_id, secrets.token_bytes(32), nullifier
            )

    @pytest.mark.asyncio
    async def test_replay_leaves_single_authorization(self, employer, authorizer, meta_keys):
        funded, keypair = await receive(employer, meta_keys)
        destination = secrets.token_bytes(32)
        receipt = await authorizer.authorize(keypair, employer.organization, funded.position_id, destination)

        ix = employer.ledger.transactions[-1][1]
        assert isinstance(ix, AuthorizeClaim)
        with pytest.raises(AlreadyClaimedError):
            await employer.ledger.authorize_claim(ix)

        assert await employer.ledger.claim_authorization_count(employer.organization, receipt.claim.nullifier) == 1
        auth = await authorizer.fetch(employer.organization, funded.position_id, receipt.claim.nullifier)
        assert auth.withdrawal_destination == destination

    @pytest.mark.asyncio
    async def test_concurrent_replays_admit_one(self, employer, authorizer, meta_keys):
        funded, keypair = await receive(employer, meta_keys)
        nullifier = derive_nullifier(keypair.public, funded.position_id)

        results = await asyncio.gather(*[
            authorizer.authorize(keypair, employer.organization, funded.position_id, secrets.token_bytes(32), nullifier)
            for _ in range(5)
        ], return_exceptions=True)

        assert sum(1 for r in results if not isinstance(r, BaseException)) == 1
        assert all(isinstance(r, AlreadyClaimedError) for r in results if isinstance(r, BaseException))
        assert await employer.ledger.claim_authorization_count(employer.organization, nullifier) == 1

    @pytest.mark.asyncio
    async def test_other_employee_denied(self, employer, authorizer, meta_keys):
        funded, _ = await receive(employer, meta_keys)
        _, intruder = await receive(employer, generate_meta_keys())

        with pytest.raises(AuthorizationDeniedError):
            await authorizer.authorize(intruder, employer.organization, funded.position_id, secrets.token_bytes(32))

    @pytest.mark.asyncio
    async def test_ledger_rejects_forged_signer(self, employer, meta_keys, fee_payer):
        """The ledger checks the signature itself, not only the client."""
        funded, keypair = await receive(employer, meta_keys)
        _, intruder = await receive(employer, generate_meta_keys())
        ledger = employer.ledger
        org = employer.organization
        nullifier = derive_nullifier(keypair.public, funded.position_id)
        claim = sign_claim(intruder, funded.position_id, nullifier, secrets.token_bytes(32))

        with pytest.raises(AuthorizationDeniedError):
            await ledger.authorize_claim(AuthorizeClaim(
                fee_payer=fee_payer,
                organization=org,
                claim_authorization=claim_authorization_address(org, funded.position_id, nullifier, ledger.program_id),
                nullifier_record=nullifier_record_address(org, nullifier, ledger.program_id),
                position=ledger.compressed_address(org, funded.position_id),
                position_id=funded.position_id,
                nullifier=nullifier,
                withdrawal_destination=claim.destination,
                signer=claim.signer,
                message=claim.message,
                signature=claim.signature,
            ))
        assert await ledger.claim_authorization_count(org, nullifier) == 0

    @pytest.mark.asyncio
    async def test_position_not_found(self, employer, authorizer, meta_keys):
        _, keypair = await receive(employer, meta_keys)
        with pytest.raises(PositionNotFoundError):
            await authorizer.authorize(keypair, employer.organization, 99, secrets.token_bytes(32))

    @pytest.mark.asyncio
    async def test_status_unauthorized_before_claim(self, employer, authorizer, meta_keys):
        funded, keypair = await receive(employer, meta_keys)
        nullifier = derive_nullifier(keypair.public, funded.position_id)
        assert await authorizer.status(employer.organization, funded.position_id, nullifier) is ClaimStatus.UNAUTHORIZED
