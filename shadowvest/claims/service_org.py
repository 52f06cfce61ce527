"""
ShadowVest Service Organization

Confidential-compute callbacks must land on a position record, and
creating one needs the organization admin's signature. The claim service
does not hold that signature for user organizations, so it administers
one organization of its own and creates disposable scratch positions in
it as callback targets. Scratch contents are never authoritative.

CallbackTargetProvider is the narrow seam the orchestrator depends on.
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from shadowvest.compute.client import ConfidentialComputeClient
from shadowvest.config import ServiceConfig
from shadowvest.constants import (
    COMPUTATION_INIT_POSITION,
    SERVICE_ORG_NAME,
    SERVICE_SCHEDULE_CLIFF,
    SERVICE_SCHEDULE_INTERVAL,
    SERVICE_SCHEDULE_TOTAL,
)
from shadowvest.core.types import ServiceOrganization, b58
from shadowvest.errors import BootstrapFailedError, OrganizationNotFoundError, ShadowVestError
from shadowvest.ledger.addresses import organization_address, position_address, schedule_address
from shadowvest.ledger.instructions import CreateOrganization, CreateVestingPosition, CreateVestingSchedule
from shadowvest.ledger.interface import LedgerProgram, LedgerReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScratchTarget:
    address: bytes
    position_id: int
    transaction_id: str


class CallbackTargetProvider(ABC):
    """Supplies places for confidential-compute callbacks to land."""

    @abstractmethod
    async def ensure_callback_target(
        self,
        token_mint: bytes,
        trace: Optional[List[str]] = None,
    ) -> ServiceOrganization:
        """
        Return the service organization, creating it on first use.

        Transactions sent while creating it are appended to trace.
        """

    @abstractmethod
    async def create_scratch_target(
        self,
        target: ServiceOrganization,
        beneficiary_commitment: bytes,
        compute: ConfidentialComputeClient,
    ) -> ScratchTarget:
        """Create a scratch position and queue its init computation."""


class ServiceOrganizationManager(CallbackTargetProvider):
    """Bootstraps and caches the organization the service administers itself."""

    def __init__(
        self,
        reader: LedgerReader,
        program: LedgerProgram,
        admin: bytes,
        name: str = SERVICE_ORG_NAME,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.program = program
        self.admin = admin
        self.name = name
        self.clock = clock

        self._handle: Optional[ServiceOrganization] = None
        self._bootstrap_lock = asyncio.Lock()
        self._scratch_lock = asyncio.Lock()
        self._next_position_id = 0
        self.bootstrap_attempts = 0

    @classmethod
    def from_config(cls, reader: LedgerReader, program: LedgerProgram, config: ServiceConfig) -> "ServiceOrganizationManager":
        admin = bytes(config.signing_key().verify_key)
        return cls(reader, program, admin, name=config.name)

    @property
    def name_hash(self) -> bytes:
        return hashlib.sha256(self.name.encode()).digest()

    @property
    def handle(self) -> Optional[ServiceOrganization]:
        return self._handle

    def reset(self) -> None:
        """Forget the cached handle; the next claim re-reads the ledger."""
        self._handle = None

    async def ensure_callback_target(
        self,
        token_mint: bytes,
        trace: Optional[List[str]] = None,
    ) -> ServiceOrganization:
        if self._handle is not None:
            return self._handle

        async with self._bootstrap_lock:
            # Another claim may have finished the bootstrap while we waited
            if self._handle is not None:
                return self._handle

            self.bootstrap_attempts += 1
            sent: List[str] = []
            try:
                handle = await self._bootstrap(token_mint, sent)
            except BootstrapFailedError:
                raise
            except ShadowVestError as e:
                raise BootstrapFailedError(
                    f"Service organization bootstrap failed: {e.message}",
                    {"cause": e.to_dict(), "transaction_ids": sent},
                ) from e
            finally:
                if trace is not None:
                    trace.extend(sent)

            self._handle = handle
            logger.info(
                f"Service organization {handle.label} ready "
                f"({'created' if handle.created_by_us else 'found on ledger'})"
            )
            return handle

    async def _bootstrap(self, token_mint: bytes, sent: List[str]) -> ServiceOrganization:
        program_id = self.reader.program_id
        org_address = organization_address(self.admin, program_id)

        org = await self.reader.fetch_organization(org_address)
        created = org is None
        if created:
            tx = await self.program.create_organization(CreateOrganization(
                admin=self.admin,
                organization=org_address,
                name_hash=self.name_hash,
                treasury=self.admin,
                token_mint=token_mint,
            ))
            sent.append(tx)
            org = await self.reader.fetch_organization(org_address)
            if org is None:
                raise OrganizationNotFoundError(b58(org_address))
        elif org.admin != self.admin:
            raise BootstrapFailedError("Service organization is administered by another key")

        schedule = schedule_address(org_address, 0, program_id)
        if org.schedule_count == 0:
            tx = await self.program.create_vesting_schedule(CreateVestingSchedule(
                admin=self.admin,
                organization=org_address,
                schedule=schedule,
                cliff_duration=SERVICE_SCHEDULE_CLIFF,
                total_duration=SERVICE_SCHEDULE_TOTAL,
                vesting_interval=SERVICE_SCHEDULE_INTERVAL,
            ))
            sent.append(tx)

        return ServiceOrganization(
            admin=self.admin,
            organization=org_address,
            schedule=schedule,
            schedule_id=0,
            token_mint=org.token_mint,
            created_by_us=created,
            transaction_ids=list(sent),
        )

    async def create_scratch_target(
        self,
        target: ServiceOrganization,
        beneficiary_commitment: bytes,
        compute: ConfidentialComputeClient,
    ) -> ScratchTarget:
        request = await compute.encrypt(COMPUTATION_INIT_POSITION, [0])
        encrypted_total = request.inputs[0]

        # Position ids are sequential per organization; allocation and
        # submission must not interleave between concurrent claims
        async with self._scratch_lock:
            org = await self.reader.fetch_organization(target.organization)
            if org is None:
                self.reset()
                raise OrganizationNotFoundError(target.label)
            position_id = max(org.position_count, self._next_position_id)
            address = position_address(target.organization, position_id, self.reader.program_id)

            tx = await compute.submit(request, lambda r: self.program.create_vesting_position(CreateVestingPosition(
                admin=self.admin,
                organization=target.organization,
                schedule=target.schedule,
                position=address,
                position_id=position_id,
                beneficiary_commitment=beneficiary_commitment,
                encrypted_total_amount=encrypted_total.ciphertext,
                nonce=encrypted_total.nonce_u128,
                start_timestamp=int(self.clock()),
                computation=r,
            )))
            self._next_position_id = position_id + 1

        logger.info(f"Scratch position {position_id} created in {target.label}")
        return ScratchTarget(address=address, position_id=position_id, transaction_id=tx)
