"""
Claim input policy.

The claim circuit takes (total, claimed, vesting numerator, claim). The
position's own total and claimed amounts are encrypted under the key the
employer used at funding time, which the claim service does not hold, so
the service needs a policy for what to feed the circuit in their place.

VaultBalanceCapPolicy is an APPROXIMATION: it substitutes the
organization's vault balance for the total and zero for the amount
already claimed. It bounds a claim by what the vault can pay out, not by
the position's real entitlement. Replace it once positions are encrypted
under a key the service can re-encrypt from.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, ClassVar

from shadowvest.constants import PRECISION, U64_MAX
from shadowvest.core.types import CompressedVestingPosition, VestingSchedule, b58
from shadowvest.errors import InvalidParameterError
from shadowvest.ledger.addresses import vault_address
from shadowvest.ledger.interface import LedgerReader

logger = logging.getLogger(__name__)


def vesting_numerator(schedule: VestingSchedule, start_timestamp: int, now: int) -> int:
    """
    Vested fraction of a position, scaled by PRECISION.

    Nothing vests before the cliff. After it, vesting advances in whole
    intervals; at or past the end of the schedule everything has vested.
    """
    cliff_end = start_timestamp + schedule.cliff_duration
    if now < cliff_end:
        return 0
    if now >= start_timestamp + schedule.total_duration:
        return PRECISION

    vesting_duration = schedule.total_duration - schedule.cliff_duration
    if vesting_duration <= 0 or schedule.vesting_interval <= 0:
        return PRECISION

    intervals = (now - cliff_end) // schedule.vesting_interval
    vested_seconds = intervals * schedule.vesting_interval
    return min(vested_seconds * PRECISION // vesting_duration, PRECISION)


@dataclass(frozen=True)
class ClaimInputs:
    """Plaintext inputs of one claim computation, in circuit order."""
    total_amount: int
    claimed_amount: int
    vesting_numerator: int
    claim_amount: int

    def __post_init__(self):
        for name in ("total_amount", "claimed_amount", "vesting_numerator", "claim_amount"):
            value = getattr(self, name)
            if not 0 <= value <= U64_MAX:
                raise InvalidParameterError(name, "must fit in u64")

    def as_values(self):
        return [self.total_amount, self.claimed_amount, self.vesting_numerator, self.claim_amount]


@dataclass(frozen=True)
class ClaimContext:
    organization: bytes
    position: CompressedVestingPosition
    schedule: VestingSchedule
    requested_amount: int


class ClaimInputPolicy(ABC):
    """Decides the plaintext inputs of the claim computation."""

    #: True when the inputs are not the position's real encrypted state
    approximate: ClassVar[bool] = False

    @abstractmethod
    async def resolve(self, context: ClaimContext, reader: LedgerReader) -> ClaimInputs:
        ...


class VaultBalanceCapPolicy(ClaimInputPolicy):
    """
    APPROXIMATION: vault balance as total, nothing claimed so far.

    The claim is capped at the vault balance. The vesting numerator is
    computed from the public schedule and the position's start time.
    """

    approximate = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    async def resolve(self, context: ClaimContext, reader: LedgerReader) -> ClaimInputs:
        vault = vault_address(context.organization, reader.program_id)
        balance = await reader.get_token_balance(vault)

        logger.warning(
            f"Approximating claim inputs for position {context.position.position_id}: "
            f"vault balance {balance} of {b58(context.organization)} used as total, claimed assumed 0"
        )

        return ClaimInputs(
            total_amount=balance,
            claimed_amount=0,
            vesting_numerator=vesting_numerator(
                context.schedule, context.position.start_timestamp, int(self.clock())
            ),
            claim_amount=min(context.requested_amount, balance),
        )
