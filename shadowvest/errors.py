"""
ShadowVest Error Handling

All error codes and exception classes.
"""

from enum import IntEnum
from typing import Any, Optional


class ErrorCode(IntEnum):
    """Error codes."""

    # 1xxx - General errors
    UNKNOWN_ERROR = 1000
    INVALID_PARAMETER = 1001
    CONFIG_ERROR = 1002

    # 2xxx - Cryptographic errors
    INVALID_KEY_MATERIAL = 2001
    DECRYPTION_FAILED = 2002

    # 3xxx - Codec errors
    MALFORMED_RECORD = 3001

    # 4xxx - Claim errors
    AUTHORIZATION_DENIED = 4001
    ALREADY_CLAIMED = 4002
    CLAIM_NOT_PROCESSED = 4003
    ALREADY_WITHDRAWN = 4004
    INVALID_DESTINATION = 4005
    INSUFFICIENT_VAULT_BALANCE = 4006
    CLAIM_REJECTED = 4007

    # 5xxx - Lookup errors
    POSITION_NOT_FOUND = 5001
    ORGANIZATION_NOT_FOUND = 5002
    SCHEDULE_NOT_FOUND = 5003

    # 6xxx - Confidential compute errors
    COMPUTATION_TIMEOUT = 6001
    COMPUTATION_CANCELLED = 6002

    # 7xxx - Service errors
    BOOTSTRAP_FAILED = 7001
    LEDGER_RPC_ERROR = 7002


class ShadowVestError(Exception):
    """Base exception for all ShadowVest errors."""

    #: Terminal errors must never be retried by the claim pipeline.
    retryable = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses."""
        result = {
            "code": self.code.value,
            "name": self.code.name,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


# ==============================================================================
# General Errors (1xxx)
# ==============================================================================

class InvalidParameterError(ShadowVestError):
    def __init__(self, param: str, message: str = ""):
        msg = f"Invalid parameter: {param}"
        if message:
            msg += f" - {message}"
        super().__init__(ErrorCode.INVALID_PARAMETER, msg, {"parameter": param})


class ConfigError(ShadowVestError):
    def __init__(self, errors):
        super().__init__(
            ErrorCode.CONFIG_ERROR,
            "Invalid configuration: " + "; ".join(errors),
            {"errors": list(errors)}
        )


# ==============================================================================
# Cryptographic Errors (2xxx)
# ==============================================================================

class InvalidKeyMaterialError(ShadowVestError):
    """Malformed scalar or point."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_KEY_MATERIAL, message)


class DecryptionFailedError(ShadowVestError):
    """Authentication tag mismatch: not addressed to this viewer, or tampered."""

    def __init__(self, message: str = "Payload authentication failed"):
        super().__init__(ErrorCode.DECRYPTION_FAILED, message)


# ==============================================================================
# Codec Errors (3xxx)
# ==============================================================================

class MalformedRecordError(ShadowVestError):
    def __init__(self, record: str, message: str):
        super().__init__(
            ErrorCode.MALFORMED_RECORD,
            f"Malformed {record}: {message}",
            {"record": record}
        )


# ==============================================================================
# Claim Errors (4xxx)
# ==============================================================================

class AuthorizationDeniedError(ShadowVestError):
    def __init__(self, message: str = "Claim signature does not match beneficiary"):
        super().__init__(ErrorCode.AUTHORIZATION_DENIED, message)


class AlreadyClaimedError(ShadowVestError):
    def __init__(self, nullifier: bytes):
        super().__init__(
            ErrorCode.ALREADY_CLAIMED,
            "Nullifier already used",
            {"nullifier": nullifier.hex()}
        )


class ClaimNotProcessedError(ShadowVestError):
    def __init__(self):
        super().__init__(
            ErrorCode.CLAIM_NOT_PROCESSED,
            "Claim has not been processed by the confidential computation"
        )


class AlreadyWithdrawnError(ShadowVestError):
    def __init__(self):
        super().__init__(ErrorCode.ALREADY_WITHDRAWN, "Claim already withdrawn")


class InvalidDestinationError(ShadowVestError):
    def __init__(self, expected: str, actual: str):
        super().__init__(
            ErrorCode.INVALID_DESTINATION,
            "Withdrawal destination does not match authorization",
            {"expected": expected, "actual": actual}
        )


class InsufficientVaultBalanceError(ShadowVestError):
    def __init__(self, required: int, available: int):
        super().__init__(
            ErrorCode.INSUFFICIENT_VAULT_BALANCE,
            f"Vault holds {available}, claim requires {required}",
            {"required": required, "available": available}
        )


class ClaimRejectedError(ShadowVestError):
    """The circuit found the requested amount above what is claimable."""

    def __init__(self, position_id: int):
        super().__init__(
            ErrorCode.CLAIM_REJECTED,
            f"Confidential computation rejected the claim for position {position_id}",
            {"position_id": position_id}
        )


# ==============================================================================
# Lookup Errors (5xxx)
# ==============================================================================

class PositionNotFoundError(ShadowVestError):
    def __init__(self, organization: str, position_id: int):
        super().__init__(
            ErrorCode.POSITION_NOT_FOUND,
            f"Position {position_id} not found in organization {organization}",
            {"organization": organization, "position_id": position_id}
        )


class OrganizationNotFoundError(ShadowVestError):
    def __init__(self, organization: str):
        super().__init__(
            ErrorCode.ORGANIZATION_NOT_FOUND,
            f"Organization {organization} not found",
            {"organization": organization}
        )


class ScheduleNotFoundError(ShadowVestError):
    def __init__(self, schedule: str):
        super().__init__(
            ErrorCode.SCHEDULE_NOT_FOUND,
            f"Vesting schedule {schedule} not found",
            {"schedule": schedule}
        )


# ==============================================================================
# Confidential Compute Errors (6xxx)
# ==============================================================================

class ComputationTimeoutError(ShadowVestError):
    retryable = True

    def __init__(self, label: str, timeout: float):
        super().__init__(
            ErrorCode.COMPUTATION_TIMEOUT,
            f"Timed out after {timeout:.0f}s waiting for {label}",
            {"label": label, "timeout": timeout}
        )


class ComputationCancelledError(ShadowVestError):
    def __init__(self, label: str):
        super().__init__(
            ErrorCode.COMPUTATION_CANCELLED,
            f"Wait for {label} was cancelled",
            {"label": label}
        )


# ==============================================================================
# Service Errors (7xxx)
# ==============================================================================

class BootstrapFailedError(ShadowVestError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(ErrorCode.BOOTSTRAP_FAILED, message, details)


class LedgerRpcError(ShadowVestError):
    retryable = True

    def __init__(self, method: str, message: str, rpc_code: Optional[int] = None):
        super().__init__(
            ErrorCode.LEDGER_RPC_ERROR,
            f"{method}: {message}",
            {"method": method, "rpc_code": rpc_code}
        )
