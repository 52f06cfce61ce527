"""
ShadowVest Confidential Compute
Encrypted request submission, cancellable polling, and the in-process cluster.
"""

from shadowvest.compute.client import ConfidentialComputeClient
from shadowvest.compute.local import LocalComputeCluster, process_claim
from shadowvest.compute.polling import CancellationToken, poll_until
from shadowvest.compute.request import ComputationRequest

__all__ = [
    "ConfidentialComputeClient",
    "ComputationRequest",
    "CancellationToken",
    "poll_until",
    "LocalComputeCluster",
    "process_claim",
]
