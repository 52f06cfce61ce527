"""
ShadowVest Ledger
Program interfaces, derived addresses, the JSON-RPC reader and the nullifier store.

The in-process ledger lives in shadowvest.ledger.local and is imported explicitly.
"""

from shadowvest.ledger.interface import LedgerProgram, LedgerReader
from shadowvest.ledger.nullifiers import NullifierStore
from shadowvest.ledger.rpc import JsonRpcClient, RpcLedgerReader

__all__ = [
    "LedgerProgram",
    "LedgerReader",
    "NullifierStore",
    "JsonRpcClient",
    "RpcLedgerReader",
]
