"""
In-process confidential-compute cluster.

Stands in for the MPC network in tests and local development, the same
way a mock oracle stands in for a remote API: it holds the cluster key,
decrypts request inputs, evaluates the circuit and re-encrypts the result.
"""

import logging
from dataclasses import dataclass
from typing import List

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from shadowvest.compute.request import ComputationRequest
from shadowvest.constants import (
    COMPUTATION_INIT_POSITION,
    COMPUTATION_PROCESS_CLAIM,
    PRECISION,
)
from shadowvest.crypto.cluster import ClusterCipher, EncryptedValue, x25519_public_bytes
from shadowvest.errors import InvalidParameterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComputationOutput:
    request_id: int
    encrypted_claimed_amount: EncryptedValue
    is_fully_claimed: bool
    claim_amount: int       # revealed; 0 when the claim was rejected
    valid: bool


def process_claim(total: int, claimed: int, numerator: int, claim: int):
    """
    Returns (valid, new_claimed, is_fully_claimed).

    vested = total * numerator / PRECISION; the claim must fit in
    vested - claimed.
    """
    vested = total * min(numerator, PRECISION) // PRECISION
    claimable = max(vested - claimed, 0)
    valid = claim <= claimable
    new_claimed = claimed + claim if valid else claimed
    return valid, new_claimed, new_claimed >= total


class LocalComputeCluster:
    """Evaluates init_position and process_claim_v2 over encrypted inputs."""

    def __init__(self):
        self._private_key = X25519PrivateKey.generate()
        self.public_key = x25519_public_bytes(self._private_key)
        self.history: List[ComputationOutput] = []

    async def get_cluster_public_key(self) -> bytes:
        return self.public_key

    def run(self, request: ComputationRequest) -> ComputationOutput:
        cipher = ClusterCipher.for_cluster(self._private_key, request.public_key)
        values = [cipher.decrypt_u64(v) for v in request.inputs]

        if request.computation == COMPUTATION_INIT_POSITION:
            output = ComputationOutput(
                request_id=request.request_id,
                encrypted_claimed_amount=cipher.encrypt_u64(0),
                is_fully_claimed=False,
                claim_amount=0,
                valid=True,
            )
        elif request.computation == COMPUTATION_PROCESS_CLAIM:
            if len(values) != 4:
                raise InvalidParameterError("inputs", f"{request.computation} takes 4 inputs")
            total, claimed, numerator, claim = values
            valid, new_claimed, fully = process_claim(total, claimed, numerator, claim)
            output = ComputationOutput(
                request_id=request.request_id,
                encrypted_claimed_amount=cipher.encrypt_u64(new_claimed),
                is_fully_claimed=fully,
                claim_amount=claim if valid else 0,
                valid=valid,
            )
        else:
            raise InvalidParameterError("computation", f"unknown circuit {request.computation}")

        logger.debug(f"Computed {request.computation} for request {request.request_id}")
        self.history.append(output)
        return output
