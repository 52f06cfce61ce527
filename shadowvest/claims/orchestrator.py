"""
ShadowVest Claim Orchestrator

Drives one authorized claim to withdrawal:

1. Validate   - compressed position, organization, schedule and claim authorization
2. Bootstrap  - service organization (once per process)
3. Scratch    - create a scratch position, await its init callback
4. Compute    - encrypt claim inputs, queue process_claim, await is_processed
5. Commit     - refetch the compressed position and its proof, write the new claimed amount
6. Withdraw   - release tokens to the authorized destination

Every transaction id is collected in order. A typed failure stops the run
and comes back in the ClaimResult together with that partial trace and the
stage reached; it is never collapsed to a bare boolean.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from shadowvest.claims.policy import ClaimContext, ClaimInputPolicy, VaultBalanceCapPolicy
from shadowvest.claims.service_org import CallbackTargetProvider
from shadowvest.compute.client import ConfidentialComputeClient
from shadowvest.compute.polling import CancellationToken
from shadowvest.config import ComputeConfig
from shadowvest.constants import COMPUTATION_PROCESS_CLAIM
from shadowvest.core.types import (
    ClaimStatus,
    CompressedAccountMeta,
    CompressedPositionAccount,
    b58,
    is_withdrawable,
)
from shadowvest.errors import (
    AlreadyClaimedError,
    AlreadyWithdrawnError,
    AuthorizationDeniedError,
    ClaimNotProcessedError,
    ClaimRejectedError,
    ComputationCancelledError,
    ComputationTimeoutError,
    InvalidDestinationError,
    InvalidParameterError,
    LedgerRpcError,
    OrganizationNotFoundError,
    PositionNotFoundError,
    ScheduleNotFoundError,
    ShadowVestError,
)
from shadowvest.ledger.addresses import (
    claim_authorization_address,
    compressed_position_address,
    vault_address,
    vault_authority_address,
)
from shadowvest.ledger.instructions import QueueProcessClaim, UpdateCompressedPosition, WithdrawCompressed
from shadowvest.ledger.interface import LedgerProgram, LedgerReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Packed account indices of the compressed-state update
STATE_TREE_INDEX = 0
STATE_QUEUE_INDEX = 1
OUTPUT_TREE_INDEX = 0


class ClaimStage(Enum):
    """Furthest step a claim completed."""
    NOT_STARTED = "not_started"
    VALIDATED = "validated"
    BOOTSTRAPPED = "bootstrapped"
    SCRATCH_CREATED = "scratch_created"
    SCRATCH_INITIALIZED = "scratch_initialized"
    COMPUTATION_QUEUED = "computation_queued"
    COMPUTED = "computed"
    COMMITTED = "committed"
    WITHDRAWN = "withdrawn"


@dataclass(frozen=True)
class ClaimRequest:
    organization: bytes
    position_id: int
    nullifier: bytes
    destination: bytes
    amount: int


@dataclass
class ClaimResult:
    success: bool
    transaction_ids: List[str] = field(default_factory=list)
    claim_amount: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    stage: ClaimStage = ClaimStage.NOT_STARTED

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction_ids": list(self.transaction_ids),
            "claim_amount": self.claim_amount,
            "error": self.error,
            "stage": self.stage.value,
        }


@dataclass
class _ClaimRun:
    request: ClaimRequest
    transaction_ids: List[str] = field(default_factory=list)
    stage: ClaimStage = ClaimStage.NOT_STARTED
    claim_amount: Optional[int] = None

    def advance(self, stage: ClaimStage) -> None:
        self.stage = stage
        logger.info(f"Claim position {self.request.position_id}: {stage.value}")


class ClaimOrchestrator:
    """Runs authorized claims through compute, commit and withdrawal."""

    def __init__(
        self,
        reader: LedgerReader,
        program: LedgerProgram,
        compute: ConfidentialComputeClient,
        callback_targets: CallbackTargetProvider,
        fee_payer: bytes,
        policy: Optional[ClaimInputPolicy] = None,
        config: Optional[ComputeConfig] = None,
    ):
        self.reader = reader
        self.program = program
        self.compute = compute
        self.callback_targets = callback_targets
        self.fee_payer = fee_payer
        self.policy = policy or VaultBalanceCapPolicy()
        self.config = config or ComputeConfig()

        if self.policy.approximate:
            logger.warning(f"Claim inputs use approximating policy {type(self.policy).__name__}")

    async def process_claim(
        self,
        request: ClaimRequest,
        cancel: Optional[CancellationToken] = None,
    ) -> ClaimResult:
        """
        Run one claim.

        Typed failures are returned inside the result. Anything else,
        including task cancellation, propagates.
        """
        run = _ClaimRun(request)
        try:
            await self._run(run, cancel)
        except ShadowVestError as e:
            logger.error(
                f"Claim position {request.position_id} failed at {run.stage.value}: {e} "
                f"({len(run.transaction_ids)} transactions sent)"
            )
            return ClaimResult(
                success=False,
                transaction_ids=run.transaction_ids,
                claim_amount=run.claim_amount,
                error=e.to_dict(),
                stage=run.stage,
            )

        return ClaimResult(
            success=True,
            transaction_ids=run.transaction_ids,
            claim_amount=run.claim_amount,
            stage=run.stage,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run(self, run: _ClaimRun, cancel: Optional[CancellationToken]) -> None:
        request = run.request
        if request.amount <= 0:
            raise InvalidParameterError("amount", "must be positive")

        program_id = self.reader.program_id
        position_address = compressed_position_address(
            request.organization, request.position_id, program_id, self.reader.address_tree
        )
        claim_address = claim_authorization_address(
            request.organization, request.position_id, request.nullifier, program_id
        )

        # 1. Validate
        account = await self._load_position(request, position_address)
        org = await self.reader.fetch_organization(request.organization)
        if org is None:
            raise OrganizationNotFoundError(b58(request.organization))
        schedule = await self.reader.fetch_schedule(account.position.schedule)
        if schedule is None:
            raise ScheduleNotFoundError(b58(account.position.schedule))

        auth = await self.reader.fetch_claim_authorization(claim_address)
        if auth is None or auth.status is ClaimStatus.UNAUTHORIZED:
            raise AuthorizationDeniedError("Claim has not been authorized")
        if auth.is_withdrawn:
            raise AlreadyClaimedError(request.nullifier)
        if auth.status is not ClaimStatus.AUTHORIZED:
            raise InvalidParameterError("claim_authorization", f"is {auth.status.value}, expected authorized")
        if auth.position != position_address:
            raise AuthorizationDeniedError("Claim authorization belongs to another position")
        if auth.withdrawal_destination != request.destination:
            raise InvalidDestinationError(b58(auth.withdrawal_destination), b58(request.destination))
        run.advance(ClaimStage.VALIDATED)

        # 2. Bootstrap
        self._check_cancel(cancel, "bootstrap")
        target = await self.callback_targets.ensure_callback_target(org.token_mint, run.transaction_ids)
        run.advance(ClaimStage.BOOTSTRAPPED)

        # 3. Scratch callback target
        self._check_cancel(cancel, "scratch position")
        scratch = await self.callback_targets.create_scratch_target(
            target, account.position.beneficiary_commitment, self.compute
        )
        run.transaction_ids.append(scratch.transaction_id)
        run.advance(ClaimStage.SCRATCH_CREATED)

        await self._await(
            lambda: self.reader.fetch_vesting_position(scratch.address),
            lambda p: p.is_initialized,
            label=f"scratch position {scratch.position_id} initialization",
            timeout=self.config.default_timeout_sec,
            cancel=cancel,
        )
        run.advance(ClaimStage.SCRATCH_INITIALIZED)

        # 4. Claim computation
        self._check_cancel(cancel, "claim computation")
        inputs = await self.policy.resolve(
            ClaimContext(
                organization=request.organization,
                position=account.position,
                schedule=schedule,
                requested_amount=request.amount,
            ),
            self.reader,
        )
        computation = await self.compute.encrypt(COMPUTATION_PROCESS_CLAIM, inputs.as_values())
        tx = await self.compute.submit(computation, lambda r: self.program.queue_process_claim(QueueProcessClaim(
            payer=self.fee_payer,
            organization=target.organization,
            schedule=target.schedule,
            position=scratch.address,
            claim_authorization=claim_address,
            position_id=request.position_id,
            computation=r,
        )))
        run.transaction_ids.append(tx)
        run.advance(ClaimStage.COMPUTATION_QUEUED)

        auth = await self._await(
            lambda: self.reader.fetch_claim_authorization(claim_address),
            lambda a: a.is_processed,
            label=f"claim computation for position {request.position_id}",
            timeout=self.config.claim_timeout_sec,
            cancel=cancel,
        )
        run.claim_amount = auth.claim_amount
        run.advance(ClaimStage.COMPUTED)
        if auth.claim_amount == 0:
            raise ClaimRejectedError(request.position_id)

        # 5. Commit the new claimed amount to the compressed position
        self._check_cancel(cancel, "state commit")
        scratch_position = await self.reader.fetch_vesting_position(scratch.address)
        if scratch_position is None:
            raise PositionNotFoundError(target.label, scratch.position_id)

        account = await self._load_position(request, position_address)
        proof = await self.reader.get_validity_proof(account)
        if not proof.root_indices:
            raise LedgerRpcError("getValidityProof", "proof carries no root index")

        tx = await self.program.update_compressed_position(UpdateCompressedPosition(
            fee_payer=self.fee_payer,
            organization=request.organization,
            claim_authorization=claim_address,
            proof=proof,
            account_meta=CompressedAccountMeta(
                root_index=proof.root_indices[0],
                tree_index=STATE_TREE_INDEX,
                queue_index=STATE_QUEUE_INDEX,
                leaf_index=account.leaf_index,
                address=position_address,
                output_tree_index=OUTPUT_TREE_INDEX,
                prove_by_index=not proof.is_present,
            ),
            current=account.position,
            new_encrypted_claimed_amount=scratch_position.encrypted_claimed_amount,
            new_is_fully_claimed=scratch_position.is_fully_claimed,
        ))
        run.transaction_ids.append(tx)
        run.advance(ClaimStage.COMMITTED)

        # 6. Withdraw
        auth = await self.reader.fetch_claim_authorization(claim_address)
        if auth is not None and auth.is_withdrawn:
            raise AlreadyWithdrawnError()
        if not is_withdrawable(auth):
            raise ClaimNotProcessedError()

        tx = await self.program.withdraw(WithdrawCompressed(
            payer=self.fee_payer,
            organization=request.organization,
            claim_authorization=claim_address,
            vault=vault_address(request.organization, program_id),
            vault_authority=vault_authority_address(request.organization, program_id),
            destination=request.destination,
            position_id=request.position_id,
            nullifier=request.nullifier,
        ))
        run.transaction_ids.append(tx)
        run.advance(ClaimStage.WITHDRAWN)

    async def _load_position(self, request: ClaimRequest, address: bytes) -> CompressedPositionAccount:
        account = await self.reader.get_compressed_position(address)
        if account is None:
            raise PositionNotFoundError(b58(request.organization), request.position_id)
        return account

    @staticmethod
    def _check_cancel(cancel: Optional[CancellationToken], label: str) -> None:
        if cancel is not None and cancel.cancelled:
            raise ComputationCancelledError(label)

    async def _await(
        self,
        read: Callable[[], Awaitable[Optional[T]]],
        predicate: Callable[[T], bool],
        *,
        label: str,
        timeout: float,
        cancel: Optional[CancellationToken],
    ) -> T:
        """
        Poll with the configured attempt limit.

        Errors marked retryable are retried; once the limit is spent they
        surface as ComputationTimeoutError. Anything else propagates at once.
        """
        attempts = max(self.config.max_poll_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await self.compute.wait_for(read, predicate, label=label, timeout=timeout, cancel=cancel)
            except ShadowVestError as e:
                if not e.retryable:
                    raise
                if attempt == attempts:
                    if isinstance(e, ComputationTimeoutError):
                        raise
                    raise ComputationTimeoutError(label, timeout) from e
                logger.warning(f"{label} failed ({e.message}), attempt {attempt}/{attempts}")
        raise ComputationTimeoutError(label, timeout)
