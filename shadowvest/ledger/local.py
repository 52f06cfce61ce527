"""
In-process ledger.

Emulates the vesting program, the token vaults and the compressed-state
store closely enough to run the full claim pipeline without a network:
account constraints, the Ed25519 claim gate, atomic nullifier creation,
asynchronous compute callbacks and the withdrawal checks.
"""

import asyncio
import hashlib
import itertools
import logging
import secrets
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Set, Tuple

import base58

from shadowvest.claims.authorizer import verify_claim
from shadowvest.compute.local import ComputationOutput, LocalComputeCluster
from shadowvest.constants import ADDRESS_SIZE
from shadowvest.core.codec import (
    decode_claim_authorization,
    decode_organization,
    decode_schedule,
    decode_vesting_position,
    encode_claim_authorization,
    encode_nullifier_record,
    encode_organization,
    encode_position,
    encode_schedule,
    encode_vesting_position,
)
from shadowvest.core.types import (
    ClaimAuthorization,
    ClaimStatus,
    CompressedPositionAccount,
    CompressedVestingPosition,
    NullifierRecord,
    Organization,
    ValidityProof,
    VestingPosition,
    VestingSchedule,
    b58,
)
from shadowvest.errors import (
    AlreadyWithdrawnError,
    AuthorizationDeniedError,
    ClaimNotProcessedError,
    InsufficientVaultBalanceError,
    InvalidDestinationError,
    InvalidParameterError,
    LedgerRpcError,
    OrganizationNotFoundError,
    PositionNotFoundError,
    ScheduleNotFoundError,
)
from shadowvest.ledger.addresses import (
    claim_authorization_address,
    compressed_position_address,
    nullifier_record_address,
    organization_address,
    position_address,
    schedule_address,
    vault_address,
    vault_authority_address,
)
from shadowvest.ledger.instructions import (
    AuthorizeClaim,
    CreateCompressedPosition,
    CreateOrganization,
    CreateVestingPosition,
    CreateVestingSchedule,
    Instruction,
    QueueProcessClaim,
    UpdateCompressedPosition,
    WithdrawCompressed,
)
from shadowvest.ledger.interface import LedgerProgram, LedgerReader
from shadowvest.ledger.nullifiers import NullifierStore
from shadowvest.stealth.scanner import PaymentEvent

logger = logging.getLogger(__name__)

ROOT_HISTORY = 16
ROOT_HISTORY_CAPACITY = 2400


class LocalLedger(LedgerReader, LedgerProgram):
    """Vesting program, token vaults and compressed store in one process."""

    def __init__(
        self,
        cluster: Optional[LocalComputeCluster] = None,
        program_id: Optional[bytes] = None,
        callback_delay: float = 0.0,
        nullifier_db: str = ":memory:",
        clock: Callable[[], float] = time.time,
    ):
        self.program_id = program_id or secrets.token_bytes(ADDRESS_SIZE)
        self.address_tree = secrets.token_bytes(ADDRESS_SIZE)
        self.merkle_tree = secrets.token_bytes(ADDRESS_SIZE)
        self.queue = secrets.token_bytes(ADDRESS_SIZE)
        self.cluster = cluster or LocalComputeCluster()
        self.callback_delay = callback_delay
        self.clock = clock

        # Set to stall the compute network: requests are accepted, callbacks never land
        self.drop_callbacks = False

        self.nullifiers = NullifierStore(nullifier_db)
        self.transactions: List[Tuple[str, Instruction]] = []
        self.payment_events: List[PaymentEvent] = []
        self.callback_errors: List[BaseException] = []

        self._accounts: Dict[bytes, bytes] = {}
        self._token_balances: Dict[bytes, int] = {}
        self._compressed: Dict[bytes, CompressedPositionAccount] = {}
        self._leaf_counter = itertools.count()
        self._root_index = 0
        self._recent_roots = deque([0], maxlen=ROOT_HISTORY)
        self._pending: Set[asyncio.Task] = set()

    async def open(self) -> None:
        await self.nullifiers.open()

    async def close(self) -> None:
        await self.settle()
        await self.nullifiers.close()

    async def __aenter__(self) -> "LocalLedger":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def settle(self) -> None:
        """Wait for every scheduled compute callback."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return int(self.clock())

    def _wire(self, ix: Instruction) -> bytes:
        """Account keys in program order, then the argument payload."""
        accounts = ix.account_keys()
        for role, key in accounts.items():
            if len(key) != ADDRESS_SIZE:
                raise InvalidParameterError(role, f"account must be {ADDRESS_SIZE} bytes")
        return b"".join(accounts.values()) + ix.encode_args()

    def _record(self, ix: Instruction, wire: bytes) -> str:
        tx = base58.b58encode(hashlib.sha512(secrets.token_bytes(32) + wire).digest()).decode()
        self.transactions.append((tx, ix))
        logger.debug(f"{ix.NAME} ({len(wire)} bytes) -> {tx[:16]}...")
        return tx

    def _load_org(self, address: bytes) -> Organization:
        data = self._accounts.get(address)
        if data is None:
            raise OrganizationNotFoundError(b58(address))
        return decode_organization(data)

    def _load_schedule(self, address: bytes) -> VestingSchedule:
        data = self._accounts.get(address)
        if data is None:
            raise ScheduleNotFoundError(b58(address))
        return decode_schedule(data)

    def _load_claim(self, address: bytes) -> ClaimAuthorization:
        data = self._accounts.get(address)
        if data is None:
            raise InvalidParameterError("claim_authorization", "account does not exist")
        return decode_claim_authorization(data)

    def _require_admin(self, org: Organization, admin: bytes) -> None:
        if org.admin != admin:
            raise AuthorizationDeniedError("Signer is not the organization admin")

    @staticmethod
    def _expect(name: str, given: bytes, derived: bytes) -> None:
        if given != derived:
            raise InvalidParameterError(name, "address does not match its seeds")

    def _schedule_callback(self, apply: Callable[[], None]) -> None:
        if self.drop_callbacks:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(apply))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, apply: Callable[[], None]) -> None:
        await asyncio.sleep(self.callback_delay)
        try:
            apply()
        except Exception as e:
            # A failed callback never lands, exactly like a lost one on the network
            logger.error(f"Compute callback failed: {e}")
            self.callback_errors.append(e)

    # ------------------------------------------------------------------
    # Test and operator helpers
    # ------------------------------------------------------------------

    def mint_to(self, token_account: bytes, amount: int) -> None:
        self._token_balances[token_account] = self._token_balances.get(token_account, 0) + amount

    def fund_vault(self, organization: bytes, amount: int) -> None:
        self._load_org(organization)
        self.mint_to(vault_address(organization, self.program_id), amount)

    def vault_of(self, organization: bytes) -> bytes:
        return vault_address(organization, self.program_id)

    def compressed_address(self, organization: bytes, position_id: int) -> bytes:
        return compressed_position_address(organization, position_id, self.program_id, self.address_tree)

    async def claim_authorization_count(self, organization: bytes, nullifier: bytes) -> int:
        return await self.nullifiers.count(organization, nullifier)

    def _store_compressed(self, address: bytes, position: CompressedVestingPosition) -> CompressedPositionAccount:
        data = encode_position(position)
        account = CompressedPositionAccount(
            position=position,
            address=address,
            hash=hashlib.sha256(address + data).digest(),
            merkle_tree=self.merkle_tree,
            queue=self.queue,
            leaf_index=next(self._leaf_counter),
        )
        self._compressed[address] = account
        self._root_index = (self._root_index + 1) % ROOT_HISTORY_CAPACITY
        self._recent_roots.append(self._root_index)
        return account

    # ------------------------------------------------------------------
    # LedgerReader
    # ------------------------------------------------------------------

    async def fetch_account_data(self, address: bytes) -> Optional[bytes]:
        return self._accounts.get(address)

    async def get_token_balance(self, token_account: bytes) -> int:
        if token_account not in self._token_balances:
            raise LedgerRpcError("getTokenAccountBalance", f"could not find account {b58(token_account)}")
        return self._token_balances[token_account]

    async def get_compressed_position(self, address: bytes) -> Optional[CompressedPositionAccount]:
        return self._compressed.get(address)

    async def get_validity_proof(self, account: CompressedPositionAccount) -> ValidityProof:
        current = self._compressed.get(account.address)
        if current is None or current.hash != account.hash:
            raise LedgerRpcError("getValidityProof", "account hash is not in the current tree")
        return ValidityProof(
            a=secrets.token_bytes(32),
            b=secrets.token_bytes(64),
            c=secrets.token_bytes(32),
            root_indices=[self._root_index],
        )

    async def get_cluster_public_key(self) -> bytes:
        return self.cluster.public_key

    # ------------------------------------------------------------------
    # LedgerProgram
    # ------------------------------------------------------------------

    async def create_organization(self, ix: CreateOrganization) -> str:
        wire = self._wire(ix)
        self._expect("organization", ix.organization, organization_address(ix.admin, self.program_id))
        if ix.organization in self._accounts:
            raise InvalidParameterError("organization", "already exists")

        org = Organization(
            admin=ix.admin,
            name_hash=ix.name_hash,
            schedule_count=0,
            position_count=0,
            treasury=ix.treasury,
            token_mint=ix.token_mint,
        )
        self._accounts[ix.organization] = encode_organization(org)
        self._token_balances.setdefault(vault_address(ix.organization, self.program_id), 0)
        return self._record(ix, wire)

    async def create_vesting_schedule(self, ix: CreateVestingSchedule) -> str:
        wire = self._wire(ix)
        org = self._load_org(ix.organization)
        self._require_admin(org, ix.admin)
        self._expect("schedule", ix.schedule,
                     schedule_address(ix.organization, org.schedule_count, self.program_id))
        if ix.total_duration == 0 or ix.vesting_interval == 0 or ix.cliff_duration > ix.total_duration:
            raise InvalidParameterError("schedule", "invalid durations")

        schedule = VestingSchedule(
            organization=ix.organization,
            schedule_id=org.schedule_count,
            cliff_duration=ix.cliff_duration,
            total_duration=ix.total_duration,
            vesting_interval=ix.vesting_interval,
            token_mint=org.token_mint,
        )
        org.schedule_count += 1
        self._accounts[ix.schedule] = encode_schedule(schedule)
        self._accounts[ix.organization] = encode_organization(org)
        return self._record(ix, wire)

    def _next_position_id(self, ix, org: Organization, schedule: VestingSchedule) -> None:
        if ix.position_id != org.position_count:
            raise InvalidParameterError("position_id", f"expected {org.position_count}")
        if schedule.organization != ix.organization or not schedule.is_active:
            raise ScheduleNotFoundError(b58(ix.schedule))
        org.position_count += 1
        schedule.position_count += 1
        self._accounts[ix.organization] = encode_organization(org)
        self._accounts[ix.schedule] = encode_schedule(schedule)

    async def create_vesting_position(self, ix: CreateVestingPosition) -> str:
        wire = self._wire(ix)
        org = self._load_org(ix.organization)
        self._require_admin(org, ix.admin)
        schedule = self._load_schedule(ix.schedule)
        self._expect("position", ix.position,
                     position_address(ix.organization, ix.position_id, self.program_id))
        self._next_position_id(ix, org, schedule)

        self._accounts[ix.position] = encode_vesting_position(VestingPosition(
            organization=ix.organization,
            schedule=ix.schedule,
            position_id=ix.position_id,
            beneficiary_commitment=ix.beneficiary_commitment,
            encrypted_total_amount=ix.encrypted_total_amount,
            nonce=ix.nonce,
            start_timestamp=ix.start_timestamp,
        ))
        tx = self._record(ix, wire)

        def apply():
            output = self.cluster.run(ix.computation)
            self._apply_to_position(ix.position, output)

        self._schedule_callback(apply)
        return tx

    async def create_compressed_position(self, ix: CreateCompressedPosition) -> str:
        wire = self._wire(ix)
        org = self._load_org(ix.organization)
        self._require_admin(org, ix.admin)
        schedule = self._load_schedule(ix.schedule)
        self._expect("address", ix.address, self.compressed_address(ix.organization, ix.position_id))
        if ix.address in self._compressed:
            raise InvalidParameterError("address", "compressed position already exists")
        self._next_position_id(ix, org, schedule)

        self._store_compressed(ix.address, CompressedVestingPosition(
            owner=ix.admin,
            organization=ix.organization,
            schedule=ix.schedule,
            position_id=ix.position_id,
            beneficiary_commitment=ix.beneficiary_commitment,
            encrypted_total_amount=ix.encrypted_total_amount,
            encrypted_claimed_amount=ix.encrypted_claimed_amount,
            nonce=ix.nonce,
            start_timestamp=ix.start_timestamp,
        ))
        tx = self._record(ix, wire)
        self.payment_events.append(PaymentEvent(
            organization=ix.organization,
            stealth_address=ix.beneficiary_commitment,
            ephemeral_pub=ix.ephemeral_pub,
            encrypted_payload=ix.encrypted_payload,
            position_id=ix.position_id,
            token_mint=org.token_mint,
            timestamp=self._now(),
            transaction_id=tx,
        ))
        return tx

    async def authorize_claim(self, ix: AuthorizeClaim) -> str:
        wire = self._wire(ix)
        self._load_org(ix.organization)
        account = self._compressed.get(ix.position)
        if (account is None
                or account.position.organization != ix.organization
                or account.position.position_id != ix.position_id):
            raise PositionNotFoundError(b58(ix.organization), ix.position_id)

        verify_claim(
            ix.message,
            ix.signature,
            ix.signer,
            account.position.beneficiary_commitment,
            ix.position_id,
            ix.nullifier,
            ix.withdrawal_destination,
        )
        self._expect("claim_authorization", ix.claim_authorization,
                     claim_authorization_address(ix.organization, ix.position_id, ix.nullifier, self.program_id))
        self._expect("nullifier_record", ix.nullifier_record,
                     nullifier_record_address(ix.organization, ix.nullifier, self.program_id))

        now = self._now()
        record = NullifierRecord(
            organization=ix.organization,
            nullifier=ix.nullifier,
            position=ix.position,
            used_at=now,
        )
        async with self.nullifiers.reserve(record):
            auth = ClaimAuthorization(
                position=ix.position,
                nullifier=ix.nullifier,
                withdrawal_destination=ix.withdrawal_destination,
            )
            auth.mark_authorized(now)
            self._accounts[ix.claim_authorization] = encode_claim_authorization(auth)
            self._accounts[ix.nullifier_record] = encode_nullifier_record(record)

        return self._record(ix, wire)

    async def queue_process_claim(self, ix: QueueProcessClaim) -> str:
        wire = self._wire(ix)
        self._load_org(ix.organization)
        self._load_schedule(ix.schedule)
        if ix.position not in self._accounts:
            raise PositionNotFoundError(b58(ix.organization), ix.position_id)
        auth = self._load_claim(ix.claim_authorization)
        if auth.status is not ClaimStatus.AUTHORIZED:
            raise InvalidParameterError("claim_authorization", f"is {auth.status.value}, expected authorized")
        tx = self._record(ix, wire)

        def apply():
            output = self.cluster.run(ix.computation)
            self._apply_to_position(ix.position, output)
            claim = self._load_claim(ix.claim_authorization)
            claim.mark_processed(output.claim_amount)
            self._accounts[ix.claim_authorization] = encode_claim_authorization(claim)

        self._schedule_callback(apply)
        return tx

    def _apply_to_position(self, address: bytes, output: ComputationOutput) -> None:
        position = decode_vesting_position(self._accounts[address])
        position.encrypted_claimed_amount = output.encrypted_claimed_amount.ciphertext
        position.nonce = output.encrypted_claimed_amount.nonce_u128
        position.is_fully_claimed = output.is_fully_claimed
        self._accounts[address] = encode_vesting_position(position)

    async def update_compressed_position(self, ix: UpdateCompressedPosition) -> str:
        wire = self._wire(ix)
        address = ix.account_meta.address
        account = self._compressed.get(address)
        if account is None:
            raise PositionNotFoundError(b58(ix.organization), ix.current.position_id)
        if account.position.organization != ix.organization:
            raise PositionNotFoundError(b58(ix.organization), ix.current.position_id)
        if ix.current != account.position or ix.account_meta.leaf_index != account.leaf_index:
            raise InvalidParameterError("account_meta", "stale compressed account state")
        if ix.account_meta.root_index not in self._recent_roots and not ix.account_meta.prove_by_index:
            raise InvalidParameterError("account_meta", "root index is too old")

        auth = self._load_claim(ix.claim_authorization)
        if auth.position != address:
            raise InvalidParameterError("claim_authorization", "belongs to another position")
        if not auth.is_processed:
            raise ClaimNotProcessedError()

        self._store_compressed(
            address,
            account.position.with_claim_update(ix.new_encrypted_claimed_amount, ix.new_is_fully_claimed),
        )
        return self._record(ix, wire)

    async def withdraw(self, ix: WithdrawCompressed) -> str:
        wire = self._wire(ix)
        self._load_org(ix.organization)
        self._expect("vault", ix.vault, vault_address(ix.organization, self.program_id))
        self._expect("vault_authority", ix.vault_authority,
                     vault_authority_address(ix.organization, self.program_id))
        self._expect("claim_authorization", ix.claim_authorization,
                     claim_authorization_address(ix.organization, ix.position_id, ix.nullifier, self.program_id))

        auth = self._load_claim(ix.claim_authorization)
        if auth.is_withdrawn:
            raise AlreadyWithdrawnError()
        if not auth.is_processed:
            raise ClaimNotProcessedError()
        if auth.withdrawal_destination != ix.destination:
            raise InvalidDestinationError(b58(auth.withdrawal_destination), b58(ix.destination))

        available = self._token_balances.get(ix.vault, 0)
        if available < auth.claim_amount:
            raise InsufficientVaultBalanceError(auth.claim_amount, available)

        auth.mark_withdrawn()
        self._token_balances[ix.vault] = available - auth.claim_amount
        self.mint_to(ix.destination, auth.claim_amount)
        self._accounts[ix.claim_authorization] = encode_claim_authorization(auth)
        return self._record(ix, wire)
