"""
JSON-RPC read side.

Account data and token balances come from the ledger RPC node; compressed
records and their validity proofs from the compressed-state indexer.
"""

import base64
import itertools
import logging
from typing import Any, Optional

import base58
import httpx

from shadowvest.config import ShadowVestConfig
from shadowvest.core.codec import decode_position
from shadowvest.core.types import CompressedPositionAccount, ValidityProof, address_from_b58, b58
from shadowvest.errors import ConfigError, LedgerRpcError, MalformedRecordError
from shadowvest.ledger.interface import LedgerReader

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over httpx."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise LedgerRpcError(method, str(e)) from e
        except ValueError as e:
            raise LedgerRpcError(method, f"invalid JSON response: {e}") from e

        if body.get("error"):
            error = body["error"]
            raise LedgerRpcError(method, error.get("message", "unknown error"), error.get("code"))

        return body.get("result")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


def _proof_bytes(value: Any, size: int, name: str) -> bytes:
    if isinstance(value, list):
        raw = bytes(value)
    elif isinstance(value, str):
        raw = base64.b64decode(value)
    else:
        raise MalformedRecordError("ValidityProof", f"{name} has unexpected type")
    if len(raw) != size:
        raise MalformedRecordError("ValidityProof", f"{name} is {len(raw)} bytes")
    return raw


class RpcLedgerReader(LedgerReader):
    """LedgerReader over a ledger RPC node and a compressed-state indexer."""

    def __init__(
        self,
        ledger: JsonRpcClient,
        compressed: JsonRpcClient,
        program_id: bytes,
        address_tree: bytes,
        commitment: str = "confirmed",
        cluster_public_key: Optional[bytes] = None,
    ):
        self.ledger = ledger
        self.compressed = compressed
        self.program_id = program_id
        self.address_tree = address_tree
        self.commitment = commitment
        self._cluster_public_key = cluster_public_key

    @classmethod
    def from_config(cls, config: ShadowVestConfig) -> "RpcLedgerReader":
        key = config.compute.cluster_public_key
        return cls(
            ledger=JsonRpcClient(config.rpc.ledger_url, config.rpc.request_timeout_sec),
            compressed=JsonRpcClient(config.rpc.compressed_url, config.rpc.request_timeout_sec),
            program_id=address_from_b58(config.program.program_id),
            address_tree=address_from_b58(config.program.address_tree),
            commitment=config.rpc.commitment,
            cluster_public_key=bytes.fromhex(key) if key else None,
        )

    async def close(self) -> None:
        await self.ledger.close()
        await self.compressed.close()

    async def fetch_account_data(self, address: bytes) -> Optional[bytes]:
        result = await self.ledger.call(
            "getAccountInfo",
            [b58(address), {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def get_token_balance(self, token_account: bytes) -> int:
        result = await self.ledger.call(
            "getTokenAccountBalance",
            [b58(token_account), {"commitment": self.commitment}],
        )
        return int(result["value"]["amount"])

    async def get_compressed_position(self, address: bytes) -> Optional[CompressedPositionAccount]:
        result = await self.compressed.call("getCompressedAccount", {"address": b58(address)})
        value = (result or {}).get("value")
        if value is None or not value.get("data"):
            return None

        tree_info = value.get("treeInfo") or {}
        tree = tree_info.get("tree") or value.get("tree")
        queue = tree_info.get("queue") or value.get("queue")
        if not tree or not queue:
            raise MalformedRecordError("CompressedAccount", "missing tree or queue")

        position = decode_position(base64.b64decode(value["data"]["data"]))
        return CompressedPositionAccount(
            position=position,
            address=address,
            hash=base58.b58decode(value["hash"]),
            merkle_tree=address_from_b58(tree),
            queue=address_from_b58(queue),
            leaf_index=int(value["leafIndex"]),
        )

    async def get_validity_proof(self, account: CompressedPositionAccount) -> ValidityProof:
        result = await self.compressed.call(
            "getValidityProof",
            {"hashes": [b58(account.hash)], "newAddressesWithTrees": []},
        )
        value = (result or {}).get("value") or {}
        root_indices = [int(i) for i in value.get("rootIndices", [])]
        if not root_indices:
            raise MalformedRecordError("ValidityProof", "no root index returned")

        compressed_proof = value.get("compressedProof")
        if compressed_proof is None:
            return ValidityProof(root_indices=root_indices)

        return ValidityProof(
            a=_proof_bytes(compressed_proof["a"], 32, "a"),
            b=_proof_bytes(compressed_proof["b"], 64, "b"),
            c=_proof_bytes(compressed_proof["c"], 32, "c"),
            root_indices=root_indices,
        )

    async def get_cluster_public_key(self) -> bytes:
        if self._cluster_public_key is None:
            raise ConfigError(["compute.cluster_public_key is not configured"])
        return self._cluster_public_key
