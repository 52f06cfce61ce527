"""
ShadowVest Claim Orchestrator Tests
Full claim pipeline against the in-process ledger and compute cluster.
"""

import asyncio
import secrets
import time

import pytest

from shadowvest.claims.orchestrator import ClaimOrchestrator, ClaimRequest, ClaimResult, ClaimStage
from shadowvest.compute.polling import CancellationToken
from shadowvest.config import ComputeConfig
from shadowvest.errors import ComputationTimeoutError, ErrorCode, LedgerRpcError, MalformedRecordError
from shadowvest.ledger.instructions import (
    CreateOrganization,
    CreateVestingPosition,
    CreateVestingSchedule,
    QueueProcessClaim,
    UpdateCompressedPosition,
    WithdrawCompressed,
)
from shadowvest.stealth.address import generate_meta_keys

from conftest import Employer, authorized_claim


def kinds(ledger, tx_ids):
    by_id = dict(ledger.transactions)
    return [type(by_id[tx]) for tx in tx_ids]


# =============================================================================
# Test: Happy path
# =============================================================================

class TestClaimPipeline:

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_claim_to_withdrawal(self, employer, authorizer, orchestrator, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        ledger = employer.ledger

        result = await orchestrator.process_claim(request)

        assert result.success, result.error
        assert result.stage is ClaimStage.WITHDRAWN
        assert result.claim_amount == 400
        assert result.error is None
        assert await ledger.get_token_balance(request.destination) == 400
        assert await ledger.get_token_balance(ledger.vault_of(employer.organization)) == 600
        assert kinds(ledger, result.transaction_ids) == [
            CreateOrganization,
            CreateVestingSchedule,
            CreateVestingPosition,
            QueueProcessClaim,
            UpdateCompressedPosition,
            WithdrawCompressed,
        ]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_compressed_position_updated(self, employer, authorizer, orchestrator, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        address = employer.ledger.compressed_address(employer.organization, request.position_id)
        before = await employer.ledger.get_compressed_position(address)

        result = await orchestrator.process_claim(request)
        assert result.success

        after = await employer.ledger.get_compressed_position(address)
        assert after.position.encrypted_claimed_amount != before.position.encrypted_claimed_amount
        assert after.position.encrypted_total_amount == before.position.encrypted_total_amount
        assert after.leaf_index != before.leaf_index

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_second_run_rejected(self, employer, authorizer, orchestrator, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        assert (await orchestrator.process_claim(request)).success

        again = await orchestrator.process_claim(request)

        assert not again.success
        assert again.error["code"] == ErrorCode.ALREADY_CLAIMED
        assert again.stage is ClaimStage.NOT_STARTED
        assert again.transaction_ids == []
        assert await employer.ledger.get_token_balance(request.destination) == 400

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_concurrent_claims_share_one_bootstrap(self, employer, authorizer, orchestrator, service):
        requests = [
            await authorized_claim(employer, authorizer, generate_meta_keys(), amount=300, request_amount=100)
            for _ in range(3)
        ]

        results = await asyncio.gather(*[orchestrator.process_claim(r) for r in requests])

        assert all(r.success for r in results), [r.error for r in results]
        assert service.bootstrap_attempts == 1
        created = [
            ix for _, ix in employer.ledger.transactions
            if isinstance(ix, CreateOrganization) and ix.admin == service.admin
        ]
        assert len(created) == 1
        scratch_ids = sorted(
            ix.position_id for _, ix in employer.ledger.transactions if isinstance(ix, CreateVestingPosition)
        )
        assert scratch_ids == [0, 1, 2]
        assert await employer.ledger.get_token_balance(employer.ledger.vault_of(employer.organization)) == 700


# =============================================================================
# Test: Failures
# =============================================================================

class TestClaimFailures:

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_unvested_claim_rejected(self, ledger, compute, authorizer, orchestrator, meta_keys):
        employer = await Employer(ledger, compute).setup(cliff=3_600, total=7_200)
        request = await authorized_claim(employer, authorizer, meta_keys, start_timestamp=int(time.time()))

        result = await orchestrator.process_claim(request)

        assert not result.success
        assert result.error["code"] == ErrorCode.CLAIM_REJECTED
        assert result.stage is ClaimStage.COMPUTED
        assert result.claim_amount == 0
        assert kinds(ledger, result.transaction_ids)[-1] is QueueProcessClaim
        assert await ledger.get_token_balance(ledger.vault_of(employer.organization)) == 1_000

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_unauthorized_claim(self, employer, orchestrator, meta_keys):
        funded = await employer.pay(meta_keys.meta_address, 1_000)
        request = ClaimRequest(
            organization=employer.organization,
            position_id=funded.position_id,
            nullifier=secrets.token_bytes(32),
            destination=secrets.token_bytes(32),
            amount=100,
        )

        result = await orchestrator.process_claim(request)

        assert result.error["code"] == ErrorCode.AUTHORIZATION_DENIED
        assert result.stage is ClaimStage.NOT_STARTED

    @pytest.mark.asyncio
    async def test_unknown_position(self, employer, orchestrator):
        result = await orchestrator.process_claim(ClaimRequest(
            organization=employer.organization,
            position_id=42,
            nullifier=secrets.token_bytes(32),
            destination=secrets.token_bytes(32),
            amount=100,
        ))

        assert result.error["code"] == ErrorCode.POSITION_NOT_FOUND
        assert result.stage is ClaimStage.NOT_STARTED
        assert result.transaction_ids == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_destination_must_match_authorization(self, employer, authorizer, orchestrator, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        result = await orchestrator.process_claim(ClaimRequest(
            organization=request.organization,
            position_id=request.position_id,
            nullifier=request.nullifier,
            destination=secrets.token_bytes(32),
            amount=request.amount,
        ))
        assert result.error["code"] == ErrorCode.INVALID_DESTINATION

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, employer, authorizer, orchestrator, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys, request_amount=0)
        result = await orchestrator.process_claim(request)
        assert result.error["code"] == ErrorCode.INVALID_PARAMETER

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_stalled_compute_times_out(self, ledger, employer, authorizer, service, fee_payer, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        config = ComputeConfig(poll_interval_sec=0.01, default_timeout_sec=0.05,
                               claim_timeout_sec=0.05, max_poll_attempts=2)
        orchestrator = ClaimOrchestrator(ledger, ledger, employer.compute, service, fee_payer, config=config)
        ledger.drop_callbacks = True

        result = await orchestrator.process_claim(request)

        assert result.error["code"] == ErrorCode.COMPUTATION_TIMEOUT
        assert result.stage is ClaimStage.SCRATCH_CREATED
        assert kinds(ledger, result.transaction_ids)[-1] is CreateVestingPosition

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_cancelled_before_bootstrap(self, employer, authorizer, orchestrator, service, meta_keys):
        request = await authorized_claim(employer, authorizer, meta_keys)
        token = CancellationToken()
        token.cancel()

        result = await orchestrator.process_claim(request, cancel=token)

        assert result.error["code"] == ErrorCode.COMPUTATION_CANCELLED
        assert result.stage is ClaimStage.VALIDATED
        assert result.transaction_ids == []
        assert service.bootstrap_attempts == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_read_errors_exhaust_retry_limit(self, employer, orchestrator):
        calls = []

        async def failing_read():
            calls.append(1)
            raise LedgerRpcError("getAccountInfo", "node is behind")

        with pytest.raises(ComputationTimeoutError) as exc:
            await orchestrator._await(failing_read, bool, label="flaky read", timeout=0.05, cancel=None)

        assert exc.value.code == ErrorCode.COMPUTATION_TIMEOUT
        assert isinstance(exc.value.__cause__, LedgerRpcError)
        assert len(calls) == orchestrator.config.max_poll_attempts

    @pytest.mark.asyncio
    async def test_terminal_read_error_not_retried(self, employer, orchestrator):
        calls = []

        async def corrupt_read():
            calls.append(1)
            raise MalformedRecordError("ClaimAuthorization", "12 bytes")

        assert not MalformedRecordError.retryable
        with pytest.raises(MalformedRecordError):
            await orchestrator._await(corrupt_read, bool, label="corrupt read", timeout=0.05, cancel=None)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retryable_error_then_success(self, employer, orchestrator):
        outcomes = [LedgerRpcError("getAccountInfo", "node is behind"), "ready"]

        async def recovering_read():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        state = await orchestrator._await(recovering_read, bool, label="recovering read", timeout=1.0, cancel=None)
        assert state == "ready"
        assert outcomes == []


class TestClaimResult:

    def test_to_dict(self):
        result = ClaimResult(success=False, transaction_ids=["a", "b"], error={"code": 6001}, stage=ClaimStage.COMPUTED)
        assert result.to_dict() == {
            "success": False,
            "transaction_ids": ["a", "b"],
            "claim_amount": None,
            "error": {"code": 6001},
            "stage": "computed",
        }
