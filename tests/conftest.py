"""
ShadowVest Test Fixtures
"""

import secrets
import time
from dataclasses import dataclass

import pytest
import pytest_asyncio

from shadowvest.claims.authorizer import ClaimAuthorizer
from shadowvest.claims.orchestrator import ClaimOrchestrator, ClaimRequest
from shadowvest.claims.service_org import ServiceOrganizationManager
from shadowvest.compute.client import ConfidentialComputeClient
from shadowvest.config import ComputeConfig
from shadowvest.constants import COMPUTATION_INIT_POSITION
from shadowvest.ledger.addresses import organization_address, schedule_address
from shadowvest.ledger.instructions import (
    CreateCompressedPosition,
    CreateOrganization,
    CreateVestingSchedule,
)
from shadowvest.ledger.local import LocalLedger
from shadowvest.stealth.address import MetaAddress, StealthPayment, generate_meta_keys, generate_payment
from shadowvest.stealth.scanner import StealthScanner


@dataclass
class FundedPosition:
    organization: bytes
    position_id: int
    payment: StealthPayment


class Employer:
    """Organization admin that funds stealth positions on a LocalLedger."""

    def __init__(self, ledger: LocalLedger, compute: ConfidentialComputeClient):
        self.ledger = ledger
        self.compute = compute
        self.admin = secrets.token_bytes(32)
        self.token_mint = secrets.token_bytes(32)
        self.organization = organization_address(self.admin, ledger.program_id)
        self.schedule = schedule_address(self.organization, 0, ledger.program_id)
        self.next_position_id = 0

    async def setup(self, vault_funding: int = 1_000, cliff: int = 0, total: int = 100, interval: int = 1):
        await self.ledger.create_organization(CreateOrganization(
            admin=self.admin,
            organization=self.organization,
            name_hash=secrets.token_bytes(32),
            treasury=self.admin,
            token_mint=self.token_mint,
        ))
        await self.ledger.create_vesting_schedule(CreateVestingSchedule(
            admin=self.admin,
            organization=self.organization,
            schedule=self.schedule,
            cliff_duration=cliff,
            total_duration=total,
            vesting_interval=interval,
        ))
        self.ledger.fund_vault(self.organization, vault_funding)
        return self

    async def pay(self, meta_address: MetaAddress, amount: int, note: str = "", start_timestamp=None) -> FundedPosition:
        payment = generate_payment(meta_address, note)
        position_id = self.next_position_id
        request = await self.compute.encrypt(COMPUTATION_INIT_POSITION, [amount, 0])
        total, claimed = request.inputs
        if start_timestamp is None:
            start_timestamp = int(time.time()) - 10_000

        await self.ledger.create_compressed_position(CreateCompressedPosition(
            admin=self.admin,
            organization=self.organization,
            schedule=self.schedule,
            address=self.ledger.compressed_address(self.organization, position_id),
            position_id=position_id,
            beneficiary_commitment=payment.stealth_address,
            ephemeral_pub=payment.ephemeral_pub,
            encrypted_payload=payment.encrypted_payload,
            encrypted_total_amount=total.ciphertext,
            encrypted_claimed_amount=claimed.ciphertext,
            nonce=total.nonce_u128,
            start_timestamp=start_timestamp,
        ))
        self.next_position_id += 1
        return FundedPosition(organization=self.organization, position_id=position_id, payment=payment)


async def authorized_claim(employer, authorizer, keys, amount=1_000, request_amount=400, **pay) -> ClaimRequest:
    """Pay keys, authorize a claim to a fresh destination and build the request."""
    funded = await employer.pay(keys.meta_address, amount, **pay)
    found = [
        p for p in StealthScanner.from_meta_keys(keys).scan(employer.ledger.payment_events)
        if p.event.position_id == funded.position_id
    ][0]
    destination = secrets.token_bytes(32)
    receipt = await authorizer.authorize(found.spending_keypair(), employer.organization, funded.position_id, destination)
    return ClaimRequest(
        organization=employer.organization,
        position_id=funded.position_id,
        nullifier=receipt.claim.nullifier,
        destination=destination,
        amount=request_amount,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def compute_config() -> ComputeConfig:
    """Fast polling so compute callbacks are observed within milliseconds."""
    return ComputeConfig(
        poll_interval_sec=0.01,
        default_timeout_sec=2.0,
        claim_timeout_sec=2.0,
        max_poll_attempts=2,
    )


@pytest_asyncio.fixture
async def ledger():
    async with LocalLedger() as ledger:
        yield ledger


@pytest.fixture
def compute(ledger, compute_config) -> ConfidentialComputeClient:
    return ConfidentialComputeClient(
        ledger,
        poll_interval=compute_config.poll_interval_sec,
        default_timeout=compute_config.default_timeout_sec,
    )


@pytest_asyncio.fixture
async def employer(ledger, compute) -> Employer:
    return await Employer(ledger, compute).setup()


@pytest.fixture
def meta_keys():
    return generate_meta_keys()


@pytest.fixture
def fee_payer() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def authorizer(ledger, fee_payer) -> ClaimAuthorizer:
    return ClaimAuthorizer(ledger, ledger, fee_payer)


@pytest.fixture
def service(ledger) -> ServiceOrganizationManager:
    return ServiceOrganizationManager(ledger, ledger, admin=secrets.token_bytes(32))


@pytest.fixture
def orchestrator(ledger, compute, service, fee_payer, compute_config) -> ClaimOrchestrator:
    return ClaimOrchestrator(
        ledger,
        ledger,
        compute,
        service,
        fee_payer,
        config=compute_config,
    )
