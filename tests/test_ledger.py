"""
ShadowVest Local Ledger Tests
Program constraints, compute callbacks and withdrawal gating.
"""

import secrets

import pytest

from shadowvest.constants import COMPUTATION_PROCESS_CLAIM, PRECISION
from shadowvest.core.types import ClaimStatus, CompressedAccountMeta
from shadowvest.errors import (
    AlreadyWithdrawnError,
    AuthorizationDeniedError,
    ClaimNotProcessedError,
    InsufficientVaultBalanceError,
    InvalidDestinationError,
    InvalidParameterError,
    LedgerRpcError,
)
from shadowvest.ledger.addresses import (
    claim_authorization_address,
    schedule_address,
    vault_address,
    vault_authority_address,
)
from shadowvest.ledger.instructions import (
    CreateVestingSchedule,
    QueueProcessClaim,
    UpdateCompressedPosition,
    WithdrawCompressed,
)

from conftest import Employer, authorized_claim


def claim_address(ledger, request):
    return claim_authorization_address(request.organization, request.position_id, request.nullifier, ledger.program_id)


async def queue_claim(ledger, compute, service, request, inputs, circuit=COMPUTATION_PROCESS_CLAIM):
    """Queue a claim computation on a fresh scratch target and wait for its callback."""
    target = await service.ensure_callback_target(secrets.token_bytes(32))
    scratch = await service.create_scratch_target(target, secrets.token_bytes(32), compute)
    computation = await compute.encrypt(circuit, inputs)
    await ledger.queue_process_claim(QueueProcessClaim(
        payer=secrets.token_bytes(32),
        organization=target.organization,
        schedule=target.schedule,
        position=scratch.address,
        claim_authorization=claim_address(ledger, request),
        position_id=request.position_id,
        computation=computation,
    ))
    await ledger.settle()
    return scratch


def withdrawal(ledger, request, destination=None) -> WithdrawCompressed:
    return WithdrawCompressed(
        payer=secrets.token_bytes(32),
        organization=request.organization,
        claim_authorization=claim_address(ledger, request),
        vault=vault_address(request.organization, ledger.program_id),
        vault_authority=vault_authority_address(request.organization, ledger.program_id),
        destination=destination or request.destination,
        position_id=request.position_id,
        nullifier=request.nullifier,
    )


async def commit(ledger, request, scratch, root_index=None, prove_by_index=False) -> UpdateCompressedPosition:
    account = await ledger.get_compressed_position(ledger.compressed_address(request.organization, request.position_id))
    proof = await ledger.get_validity_proof(account)
    scratch_position = await ledger.fetch_vesting_position(scratch.address)
    return UpdateCompressedPosition(
        fee_payer=secrets.token_bytes(32),
        organization=request.organization,
        claim_authorization=claim_address(ledger, request),
        proof=proof,
        account_meta=CompressedAccountMeta(
            root_index=proof.root_indices[0] if root_index is None else root_index,
            tree_index=0,
            queue_index=1,
            leaf_index=account.leaf_index,
            address=account.address,
            output_tree_index=0,
            prove_by_index=prove_by_index,
        ),
        current=account.position,
        new_encrypted_claimed_amount=scratch_position.encrypted_claimed_amount,
        new_is_fully_claimed=scratch_position.is_fully_claimed,
    )


# =============================================================================
# Test: Program constraints
# =============================================================================

class TestProgramConstraints:

    @pytest.mark.asyncio
    async def test_schedule_requires_admin(self, employer):
        with pytest.raises(AuthorizationDeniedError):
            await employer.ledger.create_vesting_schedule(CreateVestingSchedule(
                admin=secrets.token_bytes(32),
                organization=employer.organization,
                schedule=schedule_address(employer.organization, 1, employer.ledger.program_id),
                cliff_duration=0,
                total_duration=10,
                vesting_interval=1,
            ))

    @pytest.mark.asyncio
    async def test_cliff_beyond_total_rejected(self, employer):
        with pytest.raises(InvalidParameterError):
            await employer.ledger.create_vesting_schedule(CreateVestingSchedule(
                admin=employer.admin,
                organization=employer.organization,
                schedule=schedule_address(employer.organization, 1, employer.ledger.program_id),
                cliff_duration=11,
                total_duration=10,
                vesting_interval=1,
            ))

    @pytest.mark.asyncio
    async def test_position_ids_are_sequential(self, employer, meta_keys):
        await employer.pay(meta_keys.meta_address, 10)
        employer.next_position_id = 5
        with pytest.raises(InvalidParameterError):
            await employer.pay(meta_keys.meta_address, 10)

    @pytest.mark.asyncio
    async def test_unknown_token_account(self, ledger):
        with pytest.raises(LedgerRpcError):
            await ledger.get_token_balance(secrets.token_bytes(32))

    @pytest.mark.asyncio
    async def test_funding_events_published(self, employer, meta_keys):
        funded = await employer.pay(meta_keys.meta_address, 10, note="March salary")
        (event,) = employer.ledger.payment_events
        assert event.position_id == funded.position_id
        assert event.stealth_address == funded.payment.stealth_address
        assert event.token_mint == employer.token_mint


# =============================================================================
# Test: Claim computation callbacks
# =============================================================================

class TestClaimCallbacks:

    @pytest.mark.asyncio
    async def test_callback_marks_processed(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])

        auth = await ledger.fetch_claim_authorization(claim_address(ledger, request))
        assert auth.status is ClaimStatus.PROCESSED
        assert auth.claim_amount == 250

    @pytest.mark.asyncio
    async def test_queue_requires_authorized_status(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])

        with pytest.raises(InvalidParameterError):
            await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])

    @pytest.mark.asyncio
    async def test_failed_callback_never_lands(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1], circuit="unknown_circuit")

        assert len(ledger.callback_errors) == 1
        auth = await ledger.fetch_claim_authorization(claim_address(ledger, request))
        assert auth.status is ClaimStatus.AUTHORIZED


# =============================================================================
# Test: Compressed state commit
# =============================================================================

class TestCommit:

    @pytest.mark.asyncio
    async def test_commit_requires_processed_claim(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        target = await service.ensure_callback_target(secrets.token_bytes(32))
        scratch = await service.create_scratch_target(target, secrets.token_bytes(32), compute)
        await ledger.settle()

        with pytest.raises(ClaimNotProcessedError):
            await ledger.update_compressed_position(await commit(ledger, request, scratch))

    @pytest.mark.asyncio
    async def test_stale_update_rejected(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        scratch = await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])

        ix = await commit(ledger, request, scratch)
        await ledger.update_compressed_position(ix)

        with pytest.raises(InvalidParameterError):
            await ledger.update_compressed_position(ix)

    @pytest.mark.asyncio
    async def test_stale_proof_rejected(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        address = ledger.compressed_address(request.organization, request.position_id)
        before = await ledger.get_compressed_position(address)
        scratch = await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])
        await ledger.update_compressed_position(await commit(ledger, request, scratch))

        with pytest.raises(LedgerRpcError):
            await ledger.get_validity_proof(before)

    @pytest.mark.asyncio
    async def test_old_root_needs_prove_by_index(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        scratch = await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 250])
        old_root = 2_000

        with pytest.raises(InvalidParameterError):
            await ledger.update_compressed_position(await commit(ledger, request, scratch, root_index=old_root))

        await ledger.update_compressed_position(
            await commit(ledger, request, scratch, root_index=old_root, prove_by_index=True)
        )


# =============================================================================
# Test: Withdrawal gating
# =============================================================================

class TestWithdraw:

    @pytest.mark.asyncio
    async def test_withdraw_before_processed(self, ledger, employer, authorizer, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        with pytest.raises(ClaimNotProcessedError):
            await ledger.withdraw(withdrawal(ledger, request))

    @pytest.mark.asyncio
    async def test_withdraw_once(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 500])

        await ledger.withdraw(withdrawal(ledger, request))
        assert await ledger.get_token_balance(request.destination) == 500

        with pytest.raises(AlreadyWithdrawnError):
            await ledger.withdraw(withdrawal(ledger, request))
        assert await ledger.get_token_balance(request.destination) == 500
        assert await ledger.get_token_balance(ledger.vault_of(employer.organization)) == 500

    @pytest.mark.asyncio
    async def test_wrong_destination(self, ledger, compute, employer, authorizer, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 500])

        with pytest.raises(InvalidDestinationError):
            await ledger.withdraw(withdrawal(ledger, request, destination=secrets.token_bytes(32)))

    @pytest.mark.asyncio
    async def test_insufficient_vault(self, ledger, compute, authorizer, service, meta_keys):
        employer = await Employer(ledger, compute).setup(vault_funding=100)
        request = await authorized_claim(employer, authorizer, meta_keys)
        await queue_claim(ledger, compute, service, request, [1_000, 0, PRECISION, 500])

        with pytest.raises(InsufficientVaultBalanceError):
            await ledger.withdraw(withdrawal(ledger, request))

        auth = await ledger.fetch_claim_authorization(claim_address(ledger, request))
        assert auth.status is ClaimStatus.PROCESSED
        assert await ledger.get_token_balance(ledger.vault_of(employer.organization)) == 100
