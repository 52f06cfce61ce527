"""
ShadowVest Claims
Authorization gate, service organization bootstrap, and the claim pipeline.
"""

from shadowvest.claims.authorizer import ClaimAuthorizer, derive_nullifier, sign_claim, verify_claim
from shadowvest.claims.policy import ClaimInputPolicy, VaultBalanceCapPolicy, vesting_numerator
from shadowvest.claims.service_org import CallbackTargetProvider, ServiceOrganizationManager
from shadowvest.claims.orchestrator import ClaimOrchestrator, ClaimRequest, ClaimResult, ClaimStage

__all__ = [
    "ClaimAuthorizer",
    "derive_nullifier",
    "sign_claim",
    "verify_claim",
    "ClaimInputPolicy",
    "VaultBalanceCapPolicy",
    "vesting_numerator",
    "CallbackTargetProvider",
    "ServiceOrganizationManager",
    "ClaimOrchestrator",
    "ClaimRequest",
    "ClaimResult",
    "ClaimStage",
]
