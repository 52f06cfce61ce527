"""
Encrypted computation request as submitted to the ledger program.
"""

import struct
from dataclasses import dataclass, field
from typing import List

from shadowvest.crypto.cluster import EncryptedValue


@dataclass(frozen=True)
class ComputationRequest:
    """
    One confidential computation.

    request_id is the caller-chosen computation offset; public_key is the
    request's ephemeral X25519 key; each input carries its own nonce.
    """
    computation: str
    request_id: int
    public_key: bytes
    inputs: List[EncryptedValue] = field(default_factory=list)

    def encode_inputs(self) -> bytes:
        """public_key(32) | n(u32) | (ciphertext(32) | nonce(u128))*n"""
        out = self.public_key + struct.pack("<I", len(self.inputs))
        for value in self.inputs:
            out += value.ciphertext + value.nonce
        return out
