"""
ShadowVest Confidential Compute Client

One round of confidential computation:
1. Get (and cache) the cluster's X25519 public key
2. Ephemeral ECDH with it for a per-request key
3. Encrypt every input separately with a fresh nonce
4. Submit the bundle with a caller-chosen request id
5. Poll a ledger location until a predicate holds, or time out

Retrying is the caller's business; nothing here resubmits.
"""

import asyncio
import logging
import secrets
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from shadowvest.compute.polling import CancellationToken, poll_until
from shadowvest.compute.request import ComputationRequest
from shadowvest.constants import DEFAULT_COMPUTE_TIMEOUT_SEC, POLL_INTERVAL_SEC, U64_MAX
from shadowvest.crypto.cluster import ClusterCipher
from shadowvest.errors import InvalidKeyMaterialError, InvalidParameterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfidentialComputeClient:
    """Encrypts inputs for the compute cluster, submits, and awaits results."""

    def __init__(
        self,
        key_source,
        poll_interval: float = POLL_INTERVAL_SEC,
        default_timeout: float = DEFAULT_COMPUTE_TIMEOUT_SEC,
    ):
        """
        Args:
            key_source: anything with `async get_cluster_public_key() -> bytes`
                (a LedgerReader, or a local cluster in tests)
        """
        if poll_interval <= 0:
            raise InvalidParameterError("poll_interval", "must be positive")
        self._key_source = key_source
        self.poll_interval = poll_interval
        self.default_timeout = default_timeout
        self._cluster_key: Optional[bytes] = None
        self._key_lock = asyncio.Lock()

    async def cluster_public_key(self, refresh: bool = False) -> bytes:
        """Cached process-wide; refresh=True refetches."""
        async with self._key_lock:
            if self._cluster_key is None or refresh:
                key = await self._key_source.get_cluster_public_key()
                if len(key) != 32:
                    raise InvalidKeyMaterialError("Cluster public key must be 32 bytes")
                if key != self._cluster_key:
                    logger.info(f"Compute cluster key {key.hex()[:16]}...")
                self._cluster_key = key
            return self._cluster_key

    def invalidate_cluster_key(self) -> None:
        self._cluster_key = None

    async def encrypt(
        self,
        computation: str,
        values: Sequence[int],
        request_id: Optional[int] = None,
    ) -> ComputationRequest:
        """Encrypt plaintext u64 inputs for one request."""
        if request_id is None:
            request_id = secrets.randbits(64)
        if not 0 <= request_id <= U64_MAX:
            raise InvalidParameterError("request_id", "must fit in u64")

        cipher, public_key = ClusterCipher.for_request(await self.cluster_public_key())
        return ComputationRequest(
            computation=computation,
            request_id=request_id,
            public_key=public_key,
            inputs=[cipher.encrypt_u64(v) for v in values],
        )

    async def submit(
        self,
        request: ComputationRequest,
        send: Callable[[ComputationRequest], Awaitable[str]],
    ) -> str:
        """Hand the request to the ledger instruction that queues it."""
        tx = await send(request)
        logger.info(f"Queued {request.computation} request {request.request_id}: {tx}")
        return tx

    async def wait_for(
        self,
        read: Callable[[], Awaitable[Optional[T]]],
        predicate: Callable[[T], bool],
        *,
        label: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> T:
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug(f"Waiting up to {timeout:.0f}s for {label}")
        state = await poll_until(
            read,
            predicate,
            interval=self.poll_interval,
            timeout=timeout,
            label=label,
            cancel=cancel,
        )
        logger.debug(f"{label} observed")
        return state
