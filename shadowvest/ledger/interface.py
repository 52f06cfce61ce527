"""
Ledger program interfaces.

LedgerReader is the read side (account fetch, token balances, compressed
state with its freshness proof, compute cluster key). LedgerProgram is
the write side: one typed method per program instruction, each returning
the transaction id.
"""

from abc import ABC, abstractmethod
from typing import Optional

from shadowvest.core.codec import (
    decode_claim_authorization,
    decode_organization,
    decode_schedule,
    decode_vesting_position,
)
from shadowvest.core.types import (
    ClaimAuthorization,
    CompressedPositionAccount,
    Organization,
    ValidityProof,
    VestingPosition,
    VestingSchedule,
)
from shadowvest.ledger.instructions import (
    AuthorizeClaim,
    CreateCompressedPosition,
    CreateOrganization,
    CreateVestingPosition,
    CreateVestingSchedule,
    QueueProcessClaim,
    UpdateCompressedPosition,
    WithdrawCompressed,
)


class LedgerReader(ABC):
    """Read side of the ledger."""

    program_id: bytes
    address_tree: bytes

    @abstractmethod
    async def fetch_account_data(self, address: bytes) -> Optional[bytes]:
        """Raw account bytes, or None if the account does not exist."""

    @abstractmethod
    async def get_token_balance(self, token_account: bytes) -> int:
        """Raw token amount held by a token account."""

    @abstractmethod
    async def get_compressed_position(self, address: bytes) -> Optional[CompressedPositionAccount]:
        """Current compressed record and its tree/queue/leaf coordinates."""

    @abstractmethod
    async def get_validity_proof(self, account: CompressedPositionAccount) -> ValidityProof:
        """Freshness proof for one compressed account."""

    @abstractmethod
    async def get_cluster_public_key(self) -> bytes:
        """X25519 public key of the confidential-compute cluster."""

    async def fetch_organization(self, address: bytes) -> Optional[Organization]:
        data = await self.fetch_account_data(address)
        return decode_organization(data) if data is not None else None

    async def fetch_schedule(self, address: bytes) -> Optional[VestingSchedule]:
        data = await self.fetch_account_data(address)
        return decode_schedule(data) if data is not None else None

    async def fetch_vesting_position(self, address: bytes) -> Optional[VestingPosition]:
        data = await self.fetch_account_data(address)
        return decode_vesting_position(data) if data is not None else None

    async def fetch_claim_authorization(self, address: bytes) -> Optional[ClaimAuthorization]:
        data = await self.fetch_account_data(address)
        return decode_claim_authorization(data) if data is not None else None


class LedgerProgram(ABC):
    """Write side of the ledger: the vesting program's instructions."""

    @abstractmethod
    async def create_organization(self, ix: CreateOrganization) -> str:
        ...

    @abstractmethod
    async def create_vesting_schedule(self, ix: CreateVestingSchedule) -> str:
        ...

    @abstractmethod
    async def create_vesting_position(self, ix: CreateVestingPosition) -> str:
        ...

    @abstractmethod
    async def create_compressed_position(self, ix: CreateCompressedPosition) -> str:
        """Creates the compressed record and emits its stealth payment event."""

    @abstractmethod
    async def authorize_claim(self, ix: AuthorizeClaim) -> str:
        """
        Must reject with AuthorizationDeniedError on a bad signature and
        AlreadyClaimedError when the nullifier is already recorded.
        """

    @abstractmethod
    async def queue_process_claim(self, ix: QueueProcessClaim) -> str:
        ...

    @abstractmethod
    async def update_compressed_position(self, ix: UpdateCompressedPosition) -> str:
        ...

    @abstractmethod
    async def withdraw(self, ix: WithdrawCompressed) -> str:
        ...
