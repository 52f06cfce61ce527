"""
ShadowVest Constants

Sizes, domain tags, seeds and timing defaults shared by every layer.
"""

from typing import Final

# ==============================================================================
# CURVE
# ==============================================================================

# Ed25519 prime-order subgroup order (L)
CURVE_ORDER: Final[int] = 2**252 + 27742317777372353535851937790883648493

# Ed25519 field prime
FIELD_PRIME: Final[int] = 2**255 - 19

SCALAR_SIZE: Final[int] = 32
POINT_SIZE: Final[int] = 32
SIGNATURE_SIZE: Final[int] = 64
ADDRESS_SIZE: Final[int] = 32
HASH_SIZE: Final[int] = 32

# ==============================================================================
# DOMAIN SEPARATION
# ==============================================================================

DOMAIN_PAYLOAD_KEY: Final[bytes] = b"ShadowVest_Payload_v1"
DOMAIN_SIGN_NONCE: Final[bytes] = b"ShadowVest_SignNonce_v1"
DOMAIN_META_SEED: Final[bytes] = b"ShadowVest_MetaSeed_v1"
DOMAIN_CLUSTER_KEY: Final[bytes] = b"ShadowVest_ClusterInput_v1"

# ==============================================================================
# STEALTH PAYLOAD
# ==============================================================================

PAYLOAD_NONCE_SIZE: Final[int] = 12             # AES-GCM nonce
PAYLOAD_TAG_SIZE: Final[int] = 16               # AES-GCM tag
MAX_NOTE_SIZE: Final[int] = 512                 # UTF-8 bytes
META_ADDRESS_PREFIX: Final[str] = "sv"

# ==============================================================================
# CONFIDENTIAL COMPUTE
# ==============================================================================

CLUSTER_NONCE_SIZE: Final[int] = 16             # AES-CTR initial counter block
CIPHERTEXT_SIZE: Final[int] = 32                # fixed-width encrypted u64
U64_MAX: Final[int] = 2**64 - 1

COMPUTATION_INIT_POSITION: Final[str] = "init_position"
COMPUTATION_PROCESS_CLAIM: Final[str] = "process_claim_v2"

POLL_INTERVAL_SEC: Final[float] = 3.0
DEFAULT_COMPUTE_TIMEOUT_SEC: Final[float] = 300.0
CLAIM_COMPUTE_TIMEOUT_SEC: Final[float] = 600.0
DEFAULT_POLL_ATTEMPTS: Final[int] = 2

# ==============================================================================
# VESTING
# ==============================================================================

PRECISION: Final[int] = 1_000_000               # vesting numerator scale

# ==============================================================================
# RECORD LAYOUT
# ==============================================================================

POSITION_RECORD_SIZE: Final[int] = 226
RECORD_TAG_SIZE: Final[int] = 8                 # optional storage-backend tag
ACCOUNT_TAG_SIZE: Final[int] = 8                # ledger account discriminator
VALIDITY_PROOF_SIZE: Final[int] = 129           # flag + a(32) + b(64) + c(32)
ACCOUNT_META_SIZE: Final[int] = 42

# ==============================================================================
# ADDRESS SEEDS
# ==============================================================================

SEED_ORGANIZATION: Final[bytes] = b"organization"
SEED_SCHEDULE: Final[bytes] = b"vesting_schedule"
SEED_POSITION: Final[bytes] = b"vesting_position"
SEED_CLAIM_AUTH: Final[bytes] = b"claim_auth"
SEED_NULLIFIER: Final[bytes] = b"nullifier"
SEED_VAULT: Final[bytes] = b"vault"
SEED_VAULT_AUTHORITY: Final[bytes] = b"vault_authority"
SEED_COMPRESSED_POSITION: Final[bytes] = b"compressed_position"
PDA_MARKER: Final[bytes] = b"ProgramDerivedAddress"

# ==============================================================================
# SERVICE ORGANIZATION
# ==============================================================================

SERVICE_ORG_NAME: Final[str] = "shadowvest-claim-service"
SERVICE_SCHEDULE_CLIFF: Final[int] = 0
SERVICE_SCHEDULE_TOTAL: Final[int] = 1
SERVICE_SCHEDULE_INTERVAL: Final[int] = 1

# ==============================================================================
# NETWORK DEFAULTS
# ==============================================================================

DEFAULT_LEDGER_RPC_URL: Final[str] = "https://api.devnet.solana.com"
DEFAULT_COMPRESSED_RPC_URL: Final[str] = "https://devnet.helius-rpc.com"
DEFAULT_PROGRAM_ID: Final[str] = "3bPHRjdQb1a6uxE5TAVwJRMBCLdjAwsorNKJgwAALGbA"
DEFAULT_CLUSTER_OFFSET: Final[int] = 456
DEFAULT_COMMITMENT: Final[str] = "confirmed"
DEFAULT_ADDRESS_TREE: Final[str] = "amt1Ayt45jfbdw5YSo7iz6WZxUmnZsQTYXy82hVwyC2"
